from __future__ import annotations

from pathlib import Path
import threading

import pytest

from exam_board.center_assignment.contracts import (
    REASON_CONFLICT_DETECTED,
    SOURCE_AUTO,
    SOURCE_MANUAL,
    TIER_CLUSTER,
    TIER_MANUAL,
    ExamCenter,
    PlannedAssignment,
)
from exam_board.center_assignment.planner import AssignmentPlan, AssignmentPlanner, load_planning_inputs
from exam_board.center_assignment.roster import StaticRosterService, StoreRosterService
from exam_board.center_assignment.store import AssignmentStore, StorageError, execute
from exam_board.center_assignment.writer import (
    CONFLICT_ALREADY_ASSIGNED,
    CONFLICT_CAPACITY_EXCEEDED,
    CONFLICT_CENTER_INACTIVE,
    CONFLICT_CENTER_MISSING,
    MANUAL_ALREADY_ASSIGNED,
    MANUAL_CENTER_INACTIVE,
    MANUAL_NO_CAPACITY,
    MANUAL_UNKNOWN_SCHOOL,
    AssignmentWriter,
    ManualAssignmentError,
)


YEAR = 2026


def _students(school_id: int, count: int, *, start: int, status: str = "approved") -> list[dict[str, object]]:
    return [
        {"student_id": start + idx, "school_id": school_id, "exam_year_id": YEAR, "status": status}
        for idx in range(count)
    ]


def _seed(tmp_path: Path, *, capacity_a: int = 100, capacity_b: int = 50) -> AssignmentStore:
    store = AssignmentStore(tmp_path / "center_assignment.sqlite")
    store.import_snapshot(
        {
            "regions": [{"region_id": 1, "name": "R1"}],
            "clusters": [{"cluster_id": 10, "name": "C1", "region_id": 1}],
            "exam_centers": [
                {"center_id": 1, "name": "A", "region_id": 1, "cluster_id": 10, "capacity": capacity_a},
                {"center_id": 2, "name": "B", "region_id": 1, "cluster_id": 10, "capacity": capacity_b},
            ],
            "schools": [
                {"school_id": 1, "name": "S1", "region_id": 1, "cluster_id": 10},
                {"school_id": 2, "name": "S2", "region_id": 1, "cluster_id": 10},
            ],
            "students": _students(1, 40, start=1000)
            + _students(2, 20, start=2000)
            + _students(2, 5, start=3000, status="pending"),
        }
    )
    return store


def _plan(store: AssignmentStore, roster: object) -> AssignmentPlan:
    inputs = load_planning_inputs(store, roster, YEAR)  # type: ignore[arg-type]
    return AssignmentPlanner.from_inputs(inputs).plan_inputs(inputs)


def test_snapshot_import_upserts_reference_data(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    assert [center.center_id for center in store.read_active_centers()] == [1, 2]
    assert [school.school_id for school in store.read_unassigned_schools(YEAR)] == [1, 2]
    assert store.count_students(YEAR, statuses=["approved"]) == {1: 40, 2: 20}
    assert store.count_students(YEAR, statuses=["approved", "pending"]) == {1: 40, 2: 25}

    store.upsert_center(ExamCenter(center_id=2, region_id=1, cluster_id=10, capacity=50, is_active=False, name="B"))
    assert [center.center_id for center in store.read_active_centers()] == [1]
    assert [center.center_id for center in store.read_centers()] == [1, 2]


def test_store_roster_counts_only_eligible_statuses(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    roster = StoreRosterService(store)
    assert roster.candidate_counts(YEAR, [1, 2, 3]) == {1: 40, 2: 20, 3: 0}
    wide = StoreRosterService(store, eligible_statuses=["approved", "pending"])
    assert wide.candidate_counts(YEAR, [2]) == {2: 25}


def test_commit_persists_assignments_with_seat_snapshot(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    plan = _plan(store, StoreRosterService(store))
    outcome = AssignmentWriter(store).commit(plan, run_id="run-1")

    assert [(item.school_id, item.center_id) for item in outcome.committed] == [(1, 1), (2, 1)]
    assert outcome.conflicts == ()
    records = store.read_assignments(YEAR)
    assert [(record.school_id, record.center_id, record.seats) for record in records] == [(1, 1, 40), (2, 1, 20)]
    assert all(record.source == SOURCE_AUTO and record.tier == TIER_CLUSTER for record in records)
    assert all(record.run_id == "run-1" for record in records)
    assert store.read_center_usage(YEAR) == {1: 60}


def test_rerun_commits_nothing_and_keeps_existing_rows(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    roster = StoreRosterService(store)
    writer = AssignmentWriter(store)
    writer.commit(_plan(store, roster))
    before = store.read_assignments(YEAR)

    second = _plan(store, roster)
    assert second.is_empty
    outcome = writer.commit(second)
    assert outcome.committed == ()
    assert store.read_assignments(YEAR) == before


def test_stale_plans_downgrade_to_conflict_detected(tmp_path: Path) -> None:
    store = _seed(tmp_path, capacity_a=10)
    roster = StaticRosterService({1: 10, 2: 0})
    first = _plan(store, roster)
    second = _plan(store, roster)
    assert first == second

    writer = AssignmentWriter(store)
    winner = writer.commit(first)
    loser = writer.commit(second)

    assert [item.school_id for item in winner.committed] == [1, 2]
    assert loser.committed == ()
    assert [(item.school_id, item.reason) for item in loser.conflicts] == [
        (1, REASON_CONFLICT_DETECTED),
        (2, REASON_CONFLICT_DETECTED),
    ]
    assert all(CONFLICT_ALREADY_ASSIGNED in (item.detail or "") for item in loser.conflicts)
    assert store.read_center_usage(YEAR) == {2: 10}


def test_concurrent_commits_for_last_seats_never_overfill(tmp_path: Path) -> None:
    store = AssignmentStore(tmp_path / "concurrent.sqlite")
    store.import_snapshot(
        {
            "clusters": [{"cluster_id": 10, "name": "C1", "region_id": 1}],
            "exam_centers": [{"center_id": 1, "region_id": 1, "cluster_id": 10, "capacity": 10}],
            "schools": [{"school_id": 4, "region_id": 1, "cluster_id": 10}],
        }
    )
    roster = StaticRosterService({4: 10})
    plans = [_plan(store, roster), _plan(store, roster)]
    writers = [AssignmentWriter(AssignmentStore(store.locator)) for _ in range(2)]
    outcomes: list[object] = [None, None]
    barrier = threading.Barrier(2)

    def _commit(index: int) -> None:
        barrier.wait()
        outcomes[index] = writers[index].commit(plans[index])

    threads = [threading.Thread(target=_commit, args=(idx,)) for idx in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    committed = [len(outcome.committed) for outcome in outcomes]  # type: ignore[union-attr]
    conflicts = [len(outcome.conflicts) for outcome in outcomes]  # type: ignore[union-attr]
    assert sorted(committed) == [0, 1]
    assert sorted(conflicts) == [0, 1]
    assert store.read_center_usage(YEAR) == {1: 10}
    assert len(store.read_assignments(YEAR)) == 1


def test_capacity_consumed_since_planning_is_a_conflict(tmp_path: Path) -> None:
    store = _seed(tmp_path, capacity_a=45, capacity_b=20)
    roster = StaticRosterService({1: 40, 2: 0})
    plan = _plan(store, roster)
    assert plan.assignments[0].center_id == 1

    # School 2 takes 10 seats of A by hand before the batch commits.
    AssignmentWriter(store).assign_manually(exam_year_id=YEAR, school_id=2, center_id=1, seats=10)
    outcome = AssignmentWriter(store).commit(plan)

    details = {item.school_id: item.detail for item in outcome.conflicts}
    assert CONFLICT_CAPACITY_EXCEEDED in (details[1] or "")
    assert CONFLICT_ALREADY_ASSIGNED in (details[2] or "")
    assert store.read_center_usage(YEAR) == {1: 10}


def test_center_deactivated_since_planning_is_a_conflict(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    plan = _plan(store, StaticRosterService({1: 5, 2: 5}))
    store.upsert_center(ExamCenter(center_id=1, region_id=1, cluster_id=10, capacity=100, is_active=False, name="A"))

    outcome = AssignmentWriter(store).commit(plan)
    assert outcome.committed == ()
    assert all(CONFLICT_CENTER_INACTIVE in (item.detail or "") for item in outcome.conflicts)
    assert store.read_assignments(YEAR) == []


def test_unknown_center_in_plan_is_a_conflict(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    plan = AssignmentPlan(
        exam_year_id=YEAR,
        order=(1,),
        assignments=(PlannedAssignment(school_id=1, center_id=999, tier=TIER_CLUSTER, seats=5),),
        skips=(),
    )
    outcome = AssignmentWriter(store).commit(plan)
    assert outcome.committed == ()
    assert CONFLICT_CENTER_MISSING in (outcome.conflicts[0].detail or "")


def test_manual_assignment_records_override(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    record = AssignmentWriter(store).assign_manually(exam_year_id=YEAR, school_id=1, center_id=2, seats=40)
    assert record.tier == TIER_MANUAL
    assert record.source == SOURCE_MANUAL
    assert store.read_assignment(YEAR, 1) == record
    assert [school.school_id for school in store.read_unassigned_schools(YEAR)] == [2]
    # Another exam year is untouched.
    assert [school.school_id for school in store.read_unassigned_schools(YEAR + 1)] == [1, 2]


@pytest.mark.parametrize(
    ("school_id", "center_id", "seats", "reason"),
    [
        (99, 1, 5, MANUAL_UNKNOWN_SCHOOL),
        (1, 99, 5, MANUAL_CENTER_INACTIVE),
        (1, 2, 51, MANUAL_NO_CAPACITY),
    ],
)
def test_manual_assignment_refusals(tmp_path: Path, school_id: int, center_id: int, seats: int, reason: str) -> None:
    store = _seed(tmp_path)
    with pytest.raises(ManualAssignmentError) as excinfo:
        AssignmentWriter(store).assign_manually(
            exam_year_id=YEAR, school_id=school_id, center_id=center_id, seats=seats
        )
    assert excinfo.value.reason == reason
    assert store.read_assignments(YEAR) == []


def test_manual_assignment_refuses_second_assignment(tmp_path: Path) -> None:
    store = _seed(tmp_path)
    writer = AssignmentWriter(store)
    writer.assign_manually(exam_year_id=YEAR, school_id=1, center_id=1, seats=40)
    with pytest.raises(ManualAssignmentError) as excinfo:
        writer.assign_manually(exam_year_id=YEAR, school_id=1, center_id=2, seats=40)
    assert excinfo.value.reason == MANUAL_ALREADY_ASSIGNED
    assert store.read_assignment(YEAR, 1).center_id == 1  # type: ignore[union-attr]


def test_failed_transaction_rolls_back_everything(tmp_path: Path) -> None:
    store = _seed(tmp_path)

    def _tx(conn: object) -> None:
        execute(
            conn,
            store.backend,
            """
            INSERT INTO center_assignments (
                exam_year_id, school_id, center_id, seats, tier, source, run_id, assigned_at_utc
            ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5}, {p6}, {p7}, {p8})
            """,
            (YEAR, 1, 1, 40, TIER_CLUSTER, SOURCE_AUTO, None, "2026-01-01T00:00:00+00:00"),
        )
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        store.run_write_tx(_tx)
    assert store.read_assignments(YEAR) == []

    with pytest.raises(StorageError):
        store.run_write_tx(lambda conn: conn.execute("INSERT INTO missing_table VALUES (1)"))


def test_manual_assignment_refuses_when_insert_loses_a_race(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _seed(tmp_path)
    writer = AssignmentWriter(store)
    # A concurrent commit took the (exam year, school) key after the pre-check.
    monkeypatch.setattr(writer, "_insert_assignment", lambda conn, record: False)

    with pytest.raises(ManualAssignmentError) as excinfo:
        writer.assign_manually(exam_year_id=YEAR, school_id=1, center_id=1, seats=10)
    assert excinfo.value.reason == MANUAL_ALREADY_ASSIGNED
    assert store.read_assignments(YEAR) == []
