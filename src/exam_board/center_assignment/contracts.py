"""Center assignment contracts: entity records, tiers, and skip reasons."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


TIER_CLUSTER = "cluster"
TIER_REGION = "region"
TIER_NONE = "none"
TIER_MANUAL = "manual"
TIER_SEQUENCE: tuple[str, ...] = (TIER_CLUSTER, TIER_REGION, TIER_NONE)

REASON_NO_REGION_ASSIGNED = "no_region_assigned"
REASON_NO_ACTIVE_CENTER = "no_active_center"
REASON_NO_CAPACITY = "no_capacity"
REASON_CONFLICT_DETECTED = "conflict_detected"
SKIP_REASONS: tuple[str, ...] = (
    REASON_NO_REGION_ASSIGNED,
    REASON_NO_ACTIVE_CENTER,
    REASON_NO_CAPACITY,
    REASON_CONFLICT_DETECTED,
)

SOURCE_AUTO = "auto"
SOURCE_MANUAL = "manual"

STUDENT_STATUSES: tuple[str, ...] = ("pending", "approved", "rejected")


class AssignmentContractError(ValueError):
    """Raised when center assignment records fail validation."""


@dataclass(frozen=True)
class Region:
    region_id: int
    name: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Region":
        mapped = _as_mapping(payload, "region")
        return cls(
            region_id=_require_id(mapped.get("region_id"), "region.region_id"),
            name=_require_non_empty_string(mapped.get("name"), "region.name"),
        )


@dataclass(frozen=True)
class Cluster:
    cluster_id: int
    name: str
    region_id: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Cluster":
        mapped = _as_mapping(payload, "cluster")
        return cls(
            cluster_id=_require_id(mapped.get("cluster_id"), "cluster.cluster_id"),
            name=_require_non_empty_string(mapped.get("name"), "cluster.name"),
            region_id=_require_id(mapped.get("region_id"), "cluster.region_id"),
        )


@dataclass(frozen=True)
class ExamCenter:
    center_id: int
    region_id: int
    cluster_id: int
    capacity: int
    is_active: bool = True
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ExamCenter":
        mapped = _as_mapping(payload, "exam_center")
        capacity = _require_int(mapped.get("capacity"), "exam_center.capacity")
        if capacity < 0:
            raise AssignmentContractError("exam_center.capacity must be >= 0")
        return cls(
            center_id=_require_id(mapped.get("center_id"), "exam_center.center_id"),
            region_id=_require_id(mapped.get("region_id"), "exam_center.region_id"),
            cluster_id=_require_id(mapped.get("cluster_id"), "exam_center.cluster_id"),
            capacity=capacity,
            is_active=_as_bool(mapped.get("is_active", True)),
            name=str(mapped.get("name") or "").strip(),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "center_id": self.center_id,
            "name": self.name,
            "region_id": self.region_id,
            "cluster_id": self.cluster_id,
            "capacity": self.capacity,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class School:
    """A school as the planner sees it: geography plus the year's demand."""

    school_id: int
    region_id: int | None
    cluster_id: int | None
    demand: int = 0
    name: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "School":
        mapped = _as_mapping(payload, "school")
        demand = _require_int(mapped.get("demand", 0), "school.demand")
        if demand < 0:
            raise AssignmentContractError("school.demand must be >= 0")
        return cls(
            school_id=_require_id(mapped.get("school_id"), "school.school_id"),
            region_id=_optional_id(mapped.get("region_id"), "school.region_id"),
            cluster_id=_optional_id(mapped.get("cluster_id"), "school.cluster_id"),
            demand=demand,
            name=str(mapped.get("name") or "").strip(),
        )

    @property
    def has_geography(self) -> bool:
        return self.region_id is not None or self.cluster_id is not None

    def with_demand(self, demand: int) -> "School":
        if demand < 0:
            raise AssignmentContractError(f"school {self.school_id} demand must be >= 0")
        return School(
            school_id=self.school_id,
            region_id=self.region_id,
            cluster_id=self.cluster_id,
            demand=demand,
            name=self.name,
        )


@dataclass(frozen=True)
class PlannedAssignment:
    school_id: int
    center_id: int
    tier: str
    seats: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "schoolId": self.school_id,
            "centerId": self.center_id,
            "tier": self.tier,
            "seats": self.seats,
        }


@dataclass(frozen=True)
class SkipRecord:
    school_id: int
    reason: str
    detail: str | None = None

    def __post_init__(self) -> None:
        if self.reason not in SKIP_REASONS:
            raise AssignmentContractError(
                f"skip reason must be one of {list(SKIP_REASONS)}; got {self.reason!r}"
            )

    def as_dict(self) -> dict[str, Any]:
        return {"schoolId": self.school_id, "reason": self.reason}


def ensure_student_status(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized not in STUDENT_STATUSES:
        raise AssignmentContractError(
            f"student status must be one of {list(STUDENT_STATUSES)}; got {value!r}"
        )
    return normalized


def _as_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise AssignmentContractError(f"{field_name} must be a mapping")
    return value


def _require_non_empty_string(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise AssignmentContractError(f"{field_name} is required")
    return text


def _require_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise AssignmentContractError(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise AssignmentContractError(f"{field_name} must be an integer; got {value!r}") from exc


def _require_id(value: Any, field_name: str) -> int:
    if value in (None, ""):
        raise AssignmentContractError(f"{field_name} is required")
    number = _require_int(value, field_name)
    if number <= 0:
        raise AssignmentContractError(f"{field_name} must be a positive integer")
    return number


def _optional_id(value: Any, field_name: str) -> int | None:
    if value in (None, ""):
        return None
    return _require_id(value, field_name)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "t"}
    return bool(value)
