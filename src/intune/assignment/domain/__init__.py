"""Domain layer for bulk assignment.

Contains:
- Entities: Work items, batch envelopes, results
- Outcomes: Classification of per-item HTTP responses
- Conflicts: Advisory intent conflict detection
- Ports: Interface definitions for infrastructure adapters
"""

from .conflicts import (
    AssignmentConflict,
    ConflictType,
    Severity,
    detect_conflicts,
    would_cause_conflict,
)
from .entities import (
    ALREADY_EXISTS,
    ALREADY_EXISTS_SKIPPED,
    ArtifactKind,
    AssignmentFilter,
    BatchRequestEnvelope,
    ExistingAssignment,
    FailureCode,
    FilterMode,
    Intent,
    ProgressPhase,
    ProgressSnapshot,
    RunResult,
    SubResponse,
    TargetType,
    WorkItem,
    WorkItemStatus,
)
from .outcomes import Outcome, OutcomeKind, classify_response
from .ports import IAssignmentSource, IBatchTransport, RefreshCallback

__all__ = [
    # Entities
    "ArtifactKind",
    "Intent",
    "TargetType",
    "FilterMode",
    "AssignmentFilter",
    "WorkItem",
    "WorkItemStatus",
    "FailureCode",
    "ExistingAssignment",
    "BatchRequestEnvelope",
    "SubResponse",
    "ProgressPhase",
    "ProgressSnapshot",
    "RunResult",
    "ALREADY_EXISTS",
    "ALREADY_EXISTS_SKIPPED",
    # Outcomes
    "Outcome",
    "OutcomeKind",
    "classify_response",
    # Conflicts
    "AssignmentConflict",
    "ConflictType",
    "Severity",
    "detect_conflicts",
    "would_cause_conflict",
    # Ports
    "IBatchTransport",
    "IAssignmentSource",
    "RefreshCallback",
]
