"""
Top-level package for the exam board platform.

The allocation engine lives under `exam_board.center_assignment`; the HTTP
service and command line are its `service` and `cli` modules.
"""

__all__: list[str] = []
