"""Center assignment run orchestration."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any
import uuid

from .config import CenterAssignmentProfile, load_profile
from .ledger import CapacityLedger
from .planner import AssignmentPlanner, load_planning_inputs
from .report import AssignmentReport, build_report, previous_skips_from_payload
from .roster import RosterError, RosterService, StoreRosterService
from .store import AssignmentRecord, AssignmentStore, RunRecord, StorageError
from .writer import AssignmentWriter, CommitOutcome, RunMetadata


logger = logging.getLogger("exam_board.center_assignment.engine")


class DuplicateRunError(ValueError):
    """Raised when a caller-supplied run id is already recorded."""


class CenterAssignmentEngine:
    """
    Load inputs, plan, commit, report.

    Each run only sees schools without an assignment for the exam year, so a
    repeat run with nothing new commits nothing. A StorageError at load or
    commit aborts the run with nothing written.
    """

    def __init__(
        self,
        store: AssignmentStore,
        roster: RosterService,
        *,
        record_runs: bool = True,
    ) -> None:
        self.store = store
        self.roster = roster
        self.record_runs = record_runs
        self.writer = AssignmentWriter(store)

    @classmethod
    def from_profile(cls, profile: CenterAssignmentProfile | Path | str) -> "CenterAssignmentEngine":
        if not isinstance(profile, CenterAssignmentProfile):
            profile = load_profile(profile)
        store = AssignmentStore(profile.locator, timeout_seconds=profile.commit_timeout_seconds)
        roster = StoreRosterService(store, eligible_statuses=profile.eligible_student_statuses)
        return cls(store, roster, record_runs=profile.record_runs)

    def run_assignment(self, exam_year_id: int, *, run_id: str | None = None) -> AssignmentReport:
        exam_year_id = int(exam_year_id)
        if run_id and self.record_runs and self.store.run_exists(run_id):
            raise DuplicateRunError(f"run id {run_id!r} is already recorded")
        run_id = run_id or uuid.uuid4().hex
        started_at_utc = _utc_now()
        logger.info("Center assignment run started exam_year_id=%s run_id=%s", exam_year_id, run_id)

        inputs = load_planning_inputs(self.store, self.roster, exam_year_id)
        plan = AssignmentPlanner.from_inputs(inputs).plan_inputs(inputs)

        previous_skips: dict[int, str] = {}
        if self.record_runs:
            previous = self.store.read_latest_run(exam_year_id)
            if previous is not None:
                previous_skips = previous_skips_from_payload(previous.report)

        built: list[AssignmentReport] = []

        def _metadata(outcome: CommitOutcome) -> RunMetadata:
            report = build_report(plan, outcome, run_id=run_id, previous_skips=previous_skips)
            built.append(report)
            return RunMetadata(
                run_id=run_id,
                started_at_utc=started_at_utc,
                plan_digest=report.plan_digest,
                report_json=report.canonical_json(),
                skipped_count=report.skipped_count,
            )

        if self.record_runs:
            outcome = self.writer.commit(plan, run_id=run_id, run_metadata_factory=_metadata)
            report = built[-1]
        else:
            outcome = self.writer.commit(plan, run_id=run_id)
            report = build_report(plan, outcome, run_id=run_id)

        logger.info(
            "Center assignment run finished exam_year_id=%s run_id=%s assigned=%s skipped=%s carried=%s",
            exam_year_id,
            run_id,
            report.assigned_count,
            report.skipped_count,
            report.carried_count,
        )
        return report

    def assign_manually(
        self,
        *,
        exam_year_id: int,
        school_id: int,
        center_id: int,
        seats: int | None = None,
    ) -> AssignmentRecord:
        """Manual override; seats default to the school's roster headcount."""

        if seats is None:
            try:
                counts = self.roster.candidate_counts(int(exam_year_id), [int(school_id)])
            except RosterError as exc:
                raise StorageError(f"ROSTER_UNAVAILABLE:{exc}") from exc
            seats = int(counts.get(int(school_id), 0))
        return self.writer.assign_manually(
            exam_year_id=int(exam_year_id),
            school_id=int(school_id),
            center_id=int(center_id),
            seats=int(seats),
        )

    def center_usage(self, exam_year_id: int) -> list[dict[str, Any]]:
        """Capacity, committed seats and remaining seats per active center."""

        ledger = CapacityLedger.load(self.store, int(exam_year_id))
        return [
            {
                "centerId": center_id,
                "capacity": ledger.capacity(center_id),
                "used": ledger.capacity(center_id) - ledger.remaining(center_id),
                "remaining": ledger.remaining(center_id),
            }
            for center_id in ledger.center_ids
        ]

    def latest_run(self, exam_year_id: int) -> RunRecord | None:
        return self.store.read_latest_run(int(exam_year_id))


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
