"""Center assignment writer: transactional, idempotent commit of planned assignments."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable

from .contracts import (
    REASON_CONFLICT_DETECTED,
    SOURCE_AUTO,
    SOURCE_MANUAL,
    TIER_MANUAL,
    PlannedAssignment,
    SkipRecord,
)
from .planner import AssignmentPlan
from .store import AssignmentRecord, AssignmentStore, execute, query_all, query_one


logger = logging.getLogger("exam_board.center_assignment.writer")

CONFLICT_ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
CONFLICT_CENTER_INACTIVE = "CENTER_INACTIVE"
CONFLICT_CENTER_MISSING = "CENTER_MISSING"
CONFLICT_CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
CONFLICT_INSERT_RACE = "INSERT_RACE"

MANUAL_ALREADY_ASSIGNED = "already_assigned"
MANUAL_UNKNOWN_SCHOOL = "unknown_school"
MANUAL_CENTER_INACTIVE = "center_inactive"
MANUAL_NO_CAPACITY = "no_capacity"


class ManualAssignmentError(RuntimeError):
    """Raised when a manual assignment would break an assignment invariant."""

    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(f"{reason}:{detail}")
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class RunMetadata:
    run_id: str
    started_at_utc: str
    plan_digest: str
    report_json: str
    skipped_count: int


@dataclass(frozen=True)
class CommitOutcome:
    exam_year_id: int
    committed: tuple[PlannedAssignment, ...]
    conflicts: tuple[SkipRecord, ...]
    committed_at_utc: str


@dataclass
class _CenterState:
    capacity: int
    is_active: bool
    used: int


class AssignmentWriter:
    """
    Commits a plan in a single transaction, re-checking every row first.

    The re-check reads committed state inside the transaction: a school that
    gained an assignment since planning, a center that was deactivated, or a
    center whose committed seats no longer leave room, downgrades that one
    row to a conflict_detected skip. Everything else still commits.
    """

    def __init__(self, store: AssignmentStore) -> None:
        self.store = store

    def commit(
        self,
        plan: AssignmentPlan,
        *,
        run_id: str | None = None,
        run_metadata_factory: Callable[[CommitOutcome], RunMetadata] | None = None,
    ) -> CommitOutcome:
        """
        Persist the plan's assignments.

        `run_metadata_factory`, when given, is called with the CommitOutcome
        inside the transaction and returns RunMetadata to record alongside the
        assignment rows.
        """

        committed_at_utc = _utc_now()
        exam_year_id = int(plan.exam_year_id)
        if not plan.assignments and run_metadata_factory is None:
            return CommitOutcome(
                exam_year_id=exam_year_id,
                committed=(),
                conflicts=(),
                committed_at_utc=committed_at_utc,
            )

        def _tx(conn: Any) -> CommitOutcome:
            outcome = self._commit_tx(
                conn,
                exam_year_id=exam_year_id,
                planned=plan.assignments,
                run_id=run_id,
                committed_at_utc=committed_at_utc,
            )
            if run_metadata_factory is not None:
                metadata = run_metadata_factory(outcome)
                self._insert_run(conn, exam_year_id=exam_year_id, outcome=outcome, metadata=metadata)
            return outcome

        outcome = self.store.run_write_tx(_tx)
        logger.info(
            "Commit exam_year_id=%s run_id=%s committed=%s conflicts=%s",
            exam_year_id,
            run_id,
            len(outcome.committed),
            len(outcome.conflicts),
        )
        return outcome

    def assign_manually(
        self,
        *,
        exam_year_id: int,
        school_id: int,
        center_id: int,
        seats: int,
    ) -> AssignmentRecord:
        """Per-school override. Held to the same capacity and activity rules as the batch."""

        if seats < 0:
            raise ValueError("seats must be >= 0")
        assigned_at_utc = _utc_now()

        def _tx(conn: Any) -> AssignmentRecord:
            school = query_one(
                conn,
                self.store.backend,
                "SELECT school_id FROM schools WHERE school_id = {p1}",
                (int(school_id),),
            )
            if school is None:
                raise ManualAssignmentError(MANUAL_UNKNOWN_SCHOOL, f"school {school_id} does not exist")
            existing = query_one(
                conn,
                self.store.backend,
                "SELECT center_id FROM center_assignments WHERE exam_year_id = {p1} AND school_id = {p2}",
                (int(exam_year_id), int(school_id)),
            )
            if existing is not None:
                raise ManualAssignmentError(
                    MANUAL_ALREADY_ASSIGNED,
                    f"school {school_id} already assigned to center {existing[0]} for exam year {exam_year_id}",
                )
            states = self._lock_centers(conn, exam_year_id=int(exam_year_id), center_ids=[int(center_id)])
            state = states.get(int(center_id))
            if state is None or not state.is_active:
                raise ManualAssignmentError(MANUAL_CENTER_INACTIVE, f"center {center_id} is missing or inactive")
            if state.used + seats > state.capacity:
                raise ManualAssignmentError(
                    MANUAL_NO_CAPACITY,
                    f"center {center_id} has {state.capacity - state.used} seats remaining; {seats} requested",
                )
            record = AssignmentRecord(
                exam_year_id=int(exam_year_id),
                school_id=int(school_id),
                center_id=int(center_id),
                seats=int(seats),
                tier=TIER_MANUAL,
                source=SOURCE_MANUAL,
                run_id=None,
                assigned_at_utc=assigned_at_utc,
            )
            if not self._insert_assignment(conn, record):
                raise ManualAssignmentError(
                    MANUAL_ALREADY_ASSIGNED,
                    f"school {school_id} was assigned concurrently for exam year {exam_year_id}",
                )
            return record

        record = self.store.run_write_tx(_tx)
        logger.info(
            "Manual assignment exam_year_id=%s school_id=%s center_id=%s seats=%s",
            exam_year_id,
            school_id,
            center_id,
            seats,
        )
        return record

    def _commit_tx(
        self,
        conn: Any,
        *,
        exam_year_id: int,
        planned: tuple[PlannedAssignment, ...],
        run_id: str | None,
        committed_at_utc: str,
    ) -> CommitOutcome:
        states = self._lock_centers(
            conn,
            exam_year_id=exam_year_id,
            center_ids=[item.center_id for item in planned],
        )
        already = self._assigned_schools(conn, exam_year_id=exam_year_id, school_ids=[item.school_id for item in planned])

        committed: list[PlannedAssignment] = []
        conflicts: list[SkipRecord] = []
        for item in planned:
            conflict = _revalidate(item, states=states, already=already)
            if conflict is None:
                inserted = self._insert_assignment(
                    conn,
                    AssignmentRecord(
                        exam_year_id=exam_year_id,
                        school_id=item.school_id,
                        center_id=item.center_id,
                        seats=item.seats,
                        tier=item.tier,
                        source=SOURCE_AUTO,
                        run_id=run_id,
                        assigned_at_utc=committed_at_utc,
                    ),
                )
                if inserted:
                    states[item.center_id].used += item.seats
                    already.add(item.school_id)
                    committed.append(item)
                    continue
                conflict = CONFLICT_INSERT_RACE
            logger.info(
                "Conflict exam_year_id=%s school_id=%s center_id=%s reason=%s",
                exam_year_id,
                item.school_id,
                item.center_id,
                conflict,
            )
            conflicts.append(
                SkipRecord(
                    school_id=item.school_id,
                    reason=REASON_CONFLICT_DETECTED,
                    detail=f"{conflict}:center={item.center_id}",
                )
            )

        return CommitOutcome(
            exam_year_id=exam_year_id,
            committed=tuple(committed),
            conflicts=tuple(conflicts),
            committed_at_utc=committed_at_utc,
        )

    def _lock_centers(self, conn: Any, *, exam_year_id: int, center_ids: Iterable[int]) -> dict[int, _CenterState]:
        """
        Read capacity, activity and committed seats for the given centers.

        On Postgres the center rows are locked in ascending id order for the
        rest of the transaction; on SQLite the whole database is already
        write-locked by BEGIN IMMEDIATE.
        """

        ids = sorted({int(item) for item in center_ids})
        if not ids:
            return {}
        markers = ", ".join(f"{{p{idx}}}" for idx in range(1, len(ids) + 1))
        lock_clause = " FOR UPDATE" if self.store.backend == "postgres" else ""
        rows = query_all(
            conn,
            self.store.backend,
            f"""
            SELECT center_id, capacity, is_active
            FROM exam_centers
            WHERE center_id IN ({markers})
            ORDER BY center_id{lock_clause}
            """,
            tuple(ids),
        )
        states = {
            int(row[0]): _CenterState(capacity=int(row[1]), is_active=bool(int(row[2])), used=0) for row in rows
        }
        usage_markers = ", ".join(f"{{p{idx}}}" for idx in range(2, len(ids) + 2))
        usage = query_all(
            conn,
            self.store.backend,
            f"""
            SELECT center_id, COALESCE(SUM(seats), 0)
            FROM center_assignments
            WHERE exam_year_id = {{p1}} AND center_id IN ({usage_markers})
            GROUP BY center_id
            """,
            (exam_year_id, *ids),
        )
        for row in usage:
            state = states.get(int(row[0]))
            if state is not None:
                state.used = int(row[1])
        return states

    def _assigned_schools(self, conn: Any, *, exam_year_id: int, school_ids: Iterable[int]) -> set[int]:
        ids = sorted({int(item) for item in school_ids})
        if not ids:
            return set()
        markers = ", ".join(f"{{p{idx}}}" for idx in range(2, len(ids) + 2))
        rows = query_all(
            conn,
            self.store.backend,
            f"""
            SELECT school_id
            FROM center_assignments
            WHERE exam_year_id = {{p1}} AND school_id IN ({markers})
            """,
            (exam_year_id, *ids),
        )
        return {int(row[0]) for row in rows}

    def _insert_assignment(self, conn: Any, record: AssignmentRecord) -> bool:
        inserted = execute(
            conn,
            self.store.backend,
            """
            INSERT INTO center_assignments (
                exam_year_id, school_id, center_id, seats, tier, source, run_id, assigned_at_utc
            ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8})
            ON CONFLICT (exam_year_id, school_id) DO NOTHING
            """,
            (
                record.exam_year_id,
                record.school_id,
                record.center_id,
                record.seats,
                record.tier,
                record.source,
                record.run_id,
                record.assigned_at_utc,
            ),
        )
        return inserted > 0

    def _insert_run(self, conn: Any, *, exam_year_id: int, outcome: CommitOutcome, metadata: RunMetadata) -> None:
        execute(
            conn,
            self.store.backend,
            """
            INSERT INTO assignment_runs (
                run_id, exam_year_id, started_at_utc, finished_at_utc,
                assigned_count, skipped_count, plan_digest, report_json
            ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8})
            """,
            (
                metadata.run_id,
                exam_year_id,
                metadata.started_at_utc,
                outcome.committed_at_utc,
                len(outcome.committed),
                metadata.skipped_count,
                metadata.plan_digest,
                metadata.report_json,
            ),
        )


def _revalidate(
    item: PlannedAssignment,
    *,
    states: dict[int, _CenterState],
    already: set[int],
) -> str | None:
    if item.school_id in already:
        return CONFLICT_ALREADY_ASSIGNED
    state = states.get(item.center_id)
    if state is None:
        return CONFLICT_CENTER_MISSING
    if not state.is_active:
        return CONFLICT_CENTER_INACTIVE
    if state.used + item.seats > state.capacity:
        return CONFLICT_CAPACITY_EXCEEDED
    return None


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
