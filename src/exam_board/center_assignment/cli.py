"""Command line entry point for center assignment."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Any, Sequence

import yaml

from exam_board.logging_utils import configure_logging

from .config import CenterAssignmentConfigError, load_profile
from .engine import CenterAssignmentEngine
from .store import StorageError
from .writer import ManualAssignmentError


logger = logging.getLogger("exam_board.center_assignment.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Exam center assignment")
    parser.add_argument("--profile", required=True, help="Path to center assignment profile YAML")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Assign every unassigned school for an exam year")
    run.add_argument("--exam-year", type=int, required=True)
    run.add_argument("--run-id", default=None)

    snapshot = sub.add_parser("import-snapshot", help="Load regions, clusters, centers, schools and students")
    snapshot.add_argument("path", help="YAML or JSON snapshot document")

    assign = sub.add_parser("assign", help="Assign one school to a center by hand")
    assign.add_argument("--exam-year", type=int, required=True)
    assign.add_argument("--school", type=int, required=True)
    assign.add_argument("--center", type=int, required=True)
    assign.add_argument("--seats", type=int, default=None, help="Defaults to the school's roster headcount")

    usage = sub.add_parser("usage", help="Show committed and remaining seats per active center")
    usage.add_argument("--exam-year", type=int, required=True)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        profile = load_profile(args.profile)
    except CenterAssignmentConfigError as exc:
        print(f"invalid profile: {exc}", file=sys.stderr)
        return 2
    configure_logging(level=profile.log_level, log_paths=list(profile.log_paths))

    try:
        engine = CenterAssignmentEngine.from_profile(profile)
        result = _dispatch(engine, args)
    except ManualAssignmentError as exc:
        print(json.dumps({"error": exc.reason.upper(), "detail": exc.detail}), file=sys.stderr)
        return 3
    except StorageError as exc:
        logger.error("Center assignment storage failure: %s", exc)
        return 1
    except (ValueError, OSError, yaml.YAMLError) as exc:
        print(f"invalid input: {exc}", file=sys.stderr)
        return 2
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


def _dispatch(engine: CenterAssignmentEngine, args: argparse.Namespace) -> Any:
    if args.command == "run":
        return engine.run_assignment(args.exam_year, run_id=args.run_id).as_dict()
    if args.command == "import-snapshot":
        payload = yaml.safe_load(Path(args.path).read_text(encoding="utf-8"))
        return engine.store.import_snapshot(payload)
    if args.command == "assign":
        record = engine.assign_manually(
            exam_year_id=args.exam_year,
            school_id=args.school,
            center_id=args.center,
            seats=args.seats,
        )
        return record.as_dict()
    return {"examYearId": args.exam_year, "centers": engine.center_usage(args.exam_year)}


if __name__ == "__main__":
    raise SystemExit(main())
