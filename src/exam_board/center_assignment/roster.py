"""Roster collaborators: per-school candidate headcounts for an exam year."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Mapping, Protocol, Sequence

from .contracts import ensure_student_status, AssignmentContractError

if TYPE_CHECKING:
    from .store import AssignmentStore


class RosterError(RuntimeError):
    """Raised when candidate headcounts cannot be produced."""


class RosterService(Protocol):
    def candidate_counts(self, exam_year_id: int, school_ids: Sequence[int]) -> dict[int, int]:
        ...


@dataclass(frozen=True)
class StaticRosterService:
    """Headcounts keyed by (exam_year_id, school_id), or by school_id for any year."""

    counts: Mapping[object, int] = field(default_factory=dict)

    def candidate_counts(self, exam_year_id: int, school_ids: Sequence[int]) -> dict[int, int]:
        result: dict[int, int] = {}
        for school_id in school_ids:
            value = self.counts.get((exam_year_id, school_id), self.counts.get(school_id, 0))
            result[school_id] = _checked_count(school_id, value)
        return result


class StoreRosterService:
    """Counts a school's students for the exam year whose status is eligible."""

    def __init__(self, store: "AssignmentStore", *, eligible_statuses: Iterable[str] = ("approved",)) -> None:
        try:
            statuses = tuple(sorted({ensure_student_status(item) for item in eligible_statuses}))
        except AssignmentContractError as exc:
            raise RosterError(str(exc)) from exc
        if not statuses:
            raise RosterError("eligible_statuses must be non-empty")
        self._store = store
        self._statuses = statuses

    @property
    def eligible_statuses(self) -> tuple[str, ...]:
        return self._statuses

    def candidate_counts(self, exam_year_id: int, school_ids: Sequence[int]) -> dict[int, int]:
        from .store import StorageError

        try:
            counted = self._store.count_students(exam_year_id, statuses=self._statuses)
        except StorageError as exc:
            raise RosterError(f"student counts unavailable: {exc}") from exc
        return {school_id: _checked_count(school_id, counted.get(school_id, 0)) for school_id in school_ids}


def _checked_count(school_id: int, value: object) -> int:
    try:
        count = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise RosterError(f"headcount for school {school_id} is not an integer: {value!r}") from exc
    if count < 0:
        raise RosterError(f"headcount for school {school_id} must be >= 0; got {count}")
    return count
