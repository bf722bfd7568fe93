"""Run report for center assignment."""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Mapping

from .contracts import PlannedAssignment, SkipRecord
from .planner import AssignmentPlan
from .writer import CommitOutcome


@dataclass(frozen=True)
class SkipEntry:
    school_id: int
    reason: str
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"schoolId": self.school_id, "reason": self.reason}


@dataclass(frozen=True)
class AssignmentReport:
    """
    What one run committed and which schools it could not place.

    `skips` holds only skips new to this run. A school skipped for the same
    reason by the previous recorded run lands in `carried_skips` instead, so a
    re-run with nothing new reports zero skipped.
    """

    exam_year_id: int
    run_id: str | None
    plan_digest: str
    assignments: tuple[PlannedAssignment, ...]
    skips: tuple[SkipEntry, ...]
    carried_skips: tuple[SkipEntry, ...] = ()

    @property
    def assigned_count(self) -> int:
        return len(self.assignments)

    @property
    def skipped_count(self) -> int:
        return len(self.skips)

    @property
    def carried_count(self) -> int:
        return len(self.carried_skips)

    def skip_reasons(self) -> dict[int, str]:
        """Every school left unplaced by this run, new or carried."""
        return {item.school_id: item.reason for item in (*self.skips, *self.carried_skips)}

    def as_dict(self) -> dict[str, Any]:
        return {
            "examYearId": self.exam_year_id,
            "runId": self.run_id,
            "planDigest": self.plan_digest,
            "assignedCount": self.assigned_count,
            "skippedCount": self.skipped_count,
            "skips": [item.as_dict() for item in self.skips],
            "carriedSkips": [item.as_dict() for item in self.carried_skips],
            "assignments": [item.as_dict() for item in self.assignments],
        }

    def canonical_json(self) -> str:
        return json.dumps(self.as_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def build_report(
    plan: AssignmentPlan,
    outcome: CommitOutcome,
    *,
    run_id: str | None = None,
    previous_skips: Mapping[int, str] | None = None,
) -> AssignmentReport:
    """
    Aggregate what was actually committed.

    Plan skips come first in processing order, followed by commit-time
    conflicts. A skip whose school and reason match the previous recorded run
    is carried rather than reported again.
    """

    previous = dict(previous_skips or {})
    skips: list[SkipEntry] = []
    carried: list[SkipEntry] = []
    for item in (*plan.skips, *outcome.conflicts):
        entry = _entry(item)
        if previous.get(item.school_id) == item.reason:
            carried.append(entry)
        else:
            skips.append(entry)
    return AssignmentReport(
        exam_year_id=int(plan.exam_year_id),
        run_id=run_id,
        plan_digest=plan.digest(),
        assignments=tuple(outcome.committed),
        skips=tuple(skips),
        carried_skips=tuple(carried),
    )


def previous_skips_from_payload(payload: Mapping[str, Any] | None) -> dict[int, str]:
    """Recover {school_id: reason} from a stored report payload; tolerant of odd shapes."""

    if not isinstance(payload, Mapping):
        return {}
    result: dict[int, str] = {}
    for key in ("carriedSkips", "skips"):
        raw = payload.get(key)
        if not isinstance(raw, list):
            continue
        for item in raw:
            if not isinstance(item, Mapping):
                continue
            school_id = item.get("schoolId")
            reason = item.get("reason")
            if isinstance(school_id, int) and isinstance(reason, str):
                result[school_id] = reason
    return result


def _entry(item: SkipRecord) -> SkipEntry:
    return SkipEntry(school_id=item.school_id, reason=item.reason, detail=item.detail)
