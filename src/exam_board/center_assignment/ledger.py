"""Run-scoped capacity ledger for exam centers."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Iterable, Mapping

from .contracts import ExamCenter

if TYPE_CHECKING:
    from .store import AssignmentStore


logger = logging.getLogger("exam_board.center_assignment.ledger")


class CapacityLedgerError(LookupError):
    """Raised when the ledger is asked about a center it does not track."""


class InsufficientCapacity(Exception):
    """Raised by reserve() when a center cannot hold the requested seats."""

    def __init__(self, center_id: int, requested: int, remaining: int) -> None:
        super().__init__(
            f"center {center_id} has {remaining} seats remaining; {requested} requested"
        )
        self.center_id = center_id
        self.requested = requested
        self.remaining = remaining


@dataclass(frozen=True)
class Reservation:
    center_id: int
    amount: int
    remaining_after: int


class CapacityLedger:
    """
    Remaining seats per active center for one run.

    Seeded once from storage; every later change is an in-memory reservation
    that the writer turns into rows at commit time.
    """

    def __init__(self, *, capacities: Mapping[int, int], used: Mapping[int, int] | None = None) -> None:
        used = used or {}
        self._capacity: dict[int, int] = {}
        self._remaining: dict[int, int] = {}
        for center_id in sorted(capacities):
            capacity = int(capacities[center_id])
            seats_used = int(used.get(center_id, 0))
            remaining = capacity - seats_used
            if remaining < 0:
                logger.warning(
                    "Center %s already over capacity: capacity=%s used=%s",
                    center_id,
                    capacity,
                    seats_used,
                )
            self._capacity[center_id] = capacity
            self._remaining[center_id] = remaining
        self._reservations: list[Reservation] = []

    @classmethod
    def from_centers(
        cls,
        centers: Iterable[ExamCenter],
        used: Mapping[int, int] | None = None,
    ) -> "CapacityLedger":
        return cls(
            capacities={center.center_id: center.capacity for center in centers if center.is_active},
            used=used,
        )

    @classmethod
    def load(cls, store: "AssignmentStore", exam_year_id: int) -> "CapacityLedger":
        """Seed remaining seats from the store; StorageError propagates."""

        centers = store.read_active_centers()
        used = store.read_center_usage(exam_year_id)
        return cls.from_centers(centers, used)

    def remaining(self, center_id: int) -> int:
        try:
            return self._remaining[center_id]
        except KeyError:
            raise CapacityLedgerError(f"center {center_id} is not tracked by this ledger") from None

    def capacity(self, center_id: int) -> int:
        try:
            return self._capacity[center_id]
        except KeyError:
            raise CapacityLedgerError(f"center {center_id} is not tracked by this ledger") from None

    def reserve(self, center_id: int, amount: int) -> Reservation:
        if amount < 0:
            raise ValueError("reservation amount must be >= 0")
        remaining = self.remaining(center_id)
        if remaining < amount:
            raise InsufficientCapacity(center_id, amount, remaining)
        remaining_after = remaining - amount
        self._remaining[center_id] = remaining_after
        reservation = Reservation(center_id=center_id, amount=amount, remaining_after=remaining_after)
        self._reservations.append(reservation)
        return reservation

    def tracks(self, center_id: int) -> bool:
        return center_id in self._remaining

    @property
    def center_ids(self) -> tuple[int, ...]:
        return tuple(self._remaining)

    @property
    def reservations(self) -> tuple[Reservation, ...]:
        return tuple(self._reservations)

    def snapshot(self) -> dict[int, int]:
        return dict(self._remaining)
