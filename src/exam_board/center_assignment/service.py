"""Flask service wrapper for center assignment."""

from __future__ import annotations

import argparse
from typing import Any

from flask import Flask, jsonify, request

from exam_board.logging_utils import configure_logging

from .config import load_profile
from .contracts import AssignmentContractError
from .engine import CenterAssignmentEngine
from .store import StorageError
from .writer import ManualAssignmentError


def create_app(profile_path: str) -> Flask:
    profile = load_profile(profile_path)
    configure_logging(level=profile.log_level, log_paths=list(profile.log_paths))
    engine = CenterAssignmentEngine.from_profile(profile)

    app = Flask(__name__)

    @app.post("/v1/exam-years/<int:exam_year_id>/center-assignments/run")
    def run_assignment(exam_year_id: int) -> Any:
        try:
            report = engine.run_assignment(exam_year_id)
        except StorageError as exc:
            return jsonify({"error": "STORAGE_UNAVAILABLE", "detail": str(exc)}), 503
        return jsonify(report.as_dict())

    @app.post("/v1/exam-years/<int:exam_year_id>/schools/<int:school_id>/assign-center")
    def assign_center(exam_year_id: int, school_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            if not isinstance(payload, dict):
                raise AssignmentContractError("request body must be a JSON object")
            center_id = payload.get("center_id", payload.get("centerId"))
            if center_id in (None, ""):
                raise AssignmentContractError("center_id required")
            seats = payload.get("seats")
            record = engine.assign_manually(
                exam_year_id=exam_year_id,
                school_id=school_id,
                center_id=int(center_id),
                seats=None if seats is None else int(seats),
            )
        except ManualAssignmentError as exc:
            return jsonify({"error": exc.reason.upper(), "detail": exc.detail}), 409
        except (ValueError, TypeError) as exc:
            return jsonify({"error": "INVALID_REQUEST", "detail": str(exc)}), 400
        except StorageError as exc:
            return jsonify({"error": "STORAGE_UNAVAILABLE", "detail": str(exc)}), 503
        return jsonify(record.as_dict()), 201

    @app.get("/v1/exam-years/<int:exam_year_id>/center-usage")
    def center_usage(exam_year_id: int) -> Any:
        try:
            centers = engine.center_usage(exam_year_id)
        except StorageError as exc:
            return jsonify({"error": "STORAGE_UNAVAILABLE", "detail": str(exc)}), 503
        return jsonify({"examYearId": exam_year_id, "centers": centers})

    @app.get("/v1/exam-years/<int:exam_year_id>/center-assignments/runs/latest")
    def latest_run(exam_year_id: int) -> Any:
        try:
            run = engine.latest_run(exam_year_id)
        except StorageError as exc:
            return jsonify({"error": "STORAGE_UNAVAILABLE", "detail": str(exc)}), 503
        if run is None:
            return jsonify({"error": "RUN_NOT_FOUND", "detail": f"no recorded run for exam year {exam_year_id}"}), 404
        return jsonify(
            {
                "runId": run.run_id,
                "examYearId": run.exam_year_id,
                "startedAtUtc": run.started_at_utc,
                "finishedAtUtc": run.finished_at_utc,
                "assignedCount": run.assigned_count,
                "skippedCount": run.skipped_count,
                "planDigest": run.plan_digest,
                "report": run.report,
            }
        )

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Center assignment service")
    parser.add_argument("--profile", required=True, help="Path to center assignment profile YAML")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8095)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    app = create_app(args.profile)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
