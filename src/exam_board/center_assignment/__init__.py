"""Examination center assignment: plan, commit and report per exam year."""

from .affinity import AffinityResolver, CandidateTiers
from .config import CenterAssignmentConfigError, CenterAssignmentProfile, load_profile, parse_profile
from .contracts import (
    REASON_CONFLICT_DETECTED,
    REASON_NO_ACTIVE_CENTER,
    REASON_NO_CAPACITY,
    REASON_NO_REGION_ASSIGNED,
    SKIP_REASONS,
    SOURCE_AUTO,
    SOURCE_MANUAL,
    TIER_CLUSTER,
    TIER_MANUAL,
    TIER_NONE,
    TIER_REGION,
    TIER_SEQUENCE,
    AssignmentContractError,
    Cluster,
    ExamCenter,
    PlannedAssignment,
    Region,
    School,
    SkipRecord,
)
from .engine import CenterAssignmentEngine, DuplicateRunError
from .ledger import CapacityLedger, CapacityLedgerError, InsufficientCapacity, Reservation
from .planner import AssignmentPlan, AssignmentPlanner, PlanningInputs, load_planning_inputs, order_schools
from .report import AssignmentReport, SkipEntry, build_report
from .roster import RosterError, RosterService, StaticRosterService, StoreRosterService
from .store import AssignmentRecord, AssignmentStore, RunRecord, StorageError, is_postgres_dsn
from .writer import (
    MANUAL_ALREADY_ASSIGNED,
    MANUAL_CENTER_INACTIVE,
    MANUAL_NO_CAPACITY,
    MANUAL_UNKNOWN_SCHOOL,
    AssignmentWriter,
    CommitOutcome,
    ManualAssignmentError,
    RunMetadata,
)

__all__ = [
    "MANUAL_ALREADY_ASSIGNED",
    "MANUAL_CENTER_INACTIVE",
    "MANUAL_NO_CAPACITY",
    "MANUAL_UNKNOWN_SCHOOL",
    "REASON_CONFLICT_DETECTED",
    "REASON_NO_ACTIVE_CENTER",
    "REASON_NO_CAPACITY",
    "REASON_NO_REGION_ASSIGNED",
    "SKIP_REASONS",
    "SOURCE_AUTO",
    "SOURCE_MANUAL",
    "TIER_CLUSTER",
    "TIER_MANUAL",
    "TIER_NONE",
    "TIER_REGION",
    "TIER_SEQUENCE",
    "AffinityResolver",
    "AssignmentContractError",
    "AssignmentPlan",
    "AssignmentPlanner",
    "AssignmentRecord",
    "AssignmentReport",
    "AssignmentStore",
    "AssignmentWriter",
    "CandidateTiers",
    "CapacityLedger",
    "CapacityLedgerError",
    "CenterAssignmentConfigError",
    "CenterAssignmentEngine",
    "CenterAssignmentProfile",
    "Cluster",
    "CommitOutcome",
    "DuplicateRunError",
    "ExamCenter",
    "InsufficientCapacity",
    "ManualAssignmentError",
    "PlannedAssignment",
    "PlanningInputs",
    "Region",
    "Reservation",
    "RosterError",
    "RosterService",
    "RunMetadata",
    "RunRecord",
    "School",
    "SkipEntry",
    "SkipRecord",
    "StaticRosterService",
    "StorageError",
    "StoreRosterService",
    "build_report",
    "is_postgres_dsn",
    "load_planning_inputs",
    "load_profile",
    "order_schools",
    "parse_profile",
]
