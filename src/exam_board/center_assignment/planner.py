"""Greedy, deterministic center assignment planner."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from .affinity import AffinityResolver, CandidateTiers
from .contracts import (
    REASON_NO_CAPACITY,
    Cluster,
    ExamCenter,
    PlannedAssignment,
    School,
    SkipRecord,
)
from .ledger import CapacityLedger, InsufficientCapacity
from .roster import RosterError, RosterService

if TYPE_CHECKING:
    from .store import AssignmentStore


logger = logging.getLogger("exam_board.center_assignment.planner")


@dataclass(frozen=True)
class AssignmentPlan:
    """
    Outcome of one planning pass.

    `order` lists school ids in the order they were processed; assignments and
    skips keep that same relative order.
    """

    exam_year_id: int
    order: tuple[int, ...]
    assignments: tuple[PlannedAssignment, ...]
    skips: tuple[SkipRecord, ...]

    @property
    def is_empty(self) -> bool:
        return not self.assignments and not self.skips

    def as_dict(self) -> dict[str, Any]:
        return {
            "exam_year_id": self.exam_year_id,
            "order": list(self.order),
            "assignments": [
                {
                    "school_id": item.school_id,
                    "center_id": item.center_id,
                    "tier": item.tier,
                    "seats": item.seats,
                }
                for item in self.assignments
            ],
            "skips": [{"school_id": item.school_id, "reason": item.reason} for item in self.skips],
        }

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))

    def digest(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class PlanningInputs:
    exam_year_id: int
    centers: tuple[ExamCenter, ...]
    clusters: tuple[Cluster, ...]
    schools: tuple[School, ...]
    ledger: CapacityLedger


def order_schools(schools: Iterable[School]) -> list[School]:
    """Largest demand first, then lowest school id."""

    return sorted(schools, key=lambda school: (-school.demand, school.school_id))


def load_planning_inputs(
    store: "AssignmentStore",
    roster: RosterService,
    exam_year_id: int,
) -> PlanningInputs:
    """
    Read everything a planning pass needs, in one go.

    Any read failure (store or roster) surfaces as StorageError; nothing is
    planned from a partial input set.
    """

    from .store import StorageError

    centers = tuple(store.read_active_centers())
    clusters = tuple(store.read_clusters())
    unassigned = store.read_unassigned_schools(exam_year_id)
    try:
        counts = roster.candidate_counts(exam_year_id, [school.school_id for school in unassigned])
    except RosterError as exc:
        raise StorageError(f"ROSTER_UNAVAILABLE:{exc}") from exc
    schools = tuple(school.with_demand(int(counts.get(school.school_id, 0))) for school in unassigned)
    used = store.read_center_usage(exam_year_id)
    ledger = CapacityLedger.from_centers(centers, used)
    logger.debug(
        "Planning inputs exam_year_id=%s centers=%s clusters=%s unassigned_schools=%s",
        exam_year_id,
        len(centers),
        len(clusters),
        len(schools),
    )
    return PlanningInputs(
        exam_year_id=exam_year_id,
        centers=centers,
        clusters=clusters,
        schools=schools,
        ledger=ledger,
    )


class AssignmentPlanner:
    """
    Walks schools in a fixed order and places each one greedily.

    For every school the cluster tier is tried before the region tier. Inside a
    tier, the fitting center with the most remaining seats wins, lowest center
    id on ties. Reservations go to the ledger as the pass proceeds, so later
    schools see the seats consumed by earlier ones.
    """

    def __init__(self, resolver: AffinityResolver) -> None:
        self._resolver = resolver

    @classmethod
    def from_inputs(cls, inputs: PlanningInputs) -> "AssignmentPlanner":
        return cls(AffinityResolver(inputs.centers, inputs.clusters))

    def plan(
        self,
        *,
        exam_year_id: int,
        schools: Sequence[School],
        ledger: CapacityLedger,
    ) -> AssignmentPlan:
        order: list[int] = []
        assignments: list[PlannedAssignment] = []
        skips: list[SkipRecord] = []

        for school in order_schools(schools):
            order.append(school.school_id)
            tiers = self._resolver.resolve(school)
            placed = self._place(school, tiers, ledger)
            if placed is not None:
                assignments.append(placed)
                continue
            reason = tiers.empty_reason() or REASON_NO_CAPACITY
            detail = _skip_detail(school, tiers, ledger)
            logger.debug("Skip school_id=%s reason=%s %s", school.school_id, reason, detail)
            skips.append(SkipRecord(school_id=school.school_id, reason=reason, detail=detail))

        return AssignmentPlan(
            exam_year_id=exam_year_id,
            order=tuple(order),
            assignments=tuple(assignments),
            skips=tuple(skips),
        )

    def plan_inputs(self, inputs: PlanningInputs) -> AssignmentPlan:
        return self.plan(exam_year_id=inputs.exam_year_id, schools=inputs.schools, ledger=inputs.ledger)

    def _place(
        self,
        school: School,
        tiers: CandidateTiers,
        ledger: CapacityLedger,
    ) -> PlannedAssignment | None:
        for tier_name, candidates in tiers.ordered():
            placed = self._place_in_tier(school, tier_name, candidates, ledger)
            if placed is not None:
                return placed
        return None

    def _place_in_tier(
        self,
        school: School,
        tier_name: str,
        candidates: Sequence[ExamCenter],
        ledger: CapacityLedger,
    ) -> PlannedAssignment | None:
        fitting = [
            center
            for center in candidates
            if ledger.tracks(center.center_id) and ledger.remaining(center.center_id) >= school.demand
        ]
        if not fitting:
            return None
        fitting.sort(key=lambda center: (-ledger.remaining(center.center_id), center.center_id))
        for center in fitting:
            try:
                ledger.reserve(center.center_id, school.demand)
            except InsufficientCapacity:
                continue
            return PlannedAssignment(
                school_id=school.school_id,
                center_id=center.center_id,
                tier=tier_name,
                seats=school.demand,
            )
        return None


def _skip_detail(school: School, tiers: CandidateTiers, ledger: CapacityLedger) -> str:
    candidates = [center.center_id for center in tiers.cluster + tiers.region if ledger.tracks(center.center_id)]
    best = max((ledger.remaining(center_id) for center_id in candidates), default=None)
    return (
        f"demand={school.demand} cluster_candidates={len(tiers.cluster)} "
        f"region_candidates={len(tiers.region)} best_remaining={best}"
    )
