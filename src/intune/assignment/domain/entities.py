"""Domain entities for bulk assignment.

These are pure domain objects with no infrastructure dependencies.
They represent the work list, the batch envelope that carries it over the
wire, the remote state it is checked against and the result of a run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


class ArtifactKind(str, Enum):
    """What is being assigned; selects the assign endpoint."""

    MOBILE_APP = "mobileApp"
    DEVICE_CONFIGURATION = "deviceConfiguration"
    CONFIGURATION_POLICY = "configurationPolicy"  # Settings catalog


class Intent(str, Enum):
    """Deployment semantics of an assignment."""

    AVAILABLE = "available"
    REQUIRED = "required"
    UNINSTALL = "uninstall"
    AVAILABLE_WITHOUT_ENROLLMENT = "availableWithoutEnrollment"
    APPLY = "apply"  # Configuration profiles carry no intent on the wire


class TargetType(str, Enum):
    """Assignment target kinds, valued by their Graph @odata.type."""

    ALL_USERS = "#microsoft.graph.allUsersAssignmentTarget"
    ALL_LICENSED_USERS = "#microsoft.graph.allLicensedUsersAssignmentTarget"
    ALL_DEVICES = "#microsoft.graph.allDevicesAssignmentTarget"
    GROUP = "#microsoft.graph.groupAssignmentTarget"
    EXCLUSION_GROUP = "#microsoft.graph.exclusionGroupAssignmentTarget"
    CONFIGURATION_MANAGER_COLLECTION = (
        "#microsoft.graph.configurationManagerCollectionAssignmentTarget"
    )

    @property
    def is_pseudo(self) -> bool:
        """Built-in targets that have no group id."""
        return self in (
            TargetType.ALL_USERS,
            TargetType.ALL_LICENSED_USERS,
            TargetType.ALL_DEVICES,
        )

    @property
    def display_name(self) -> str:
        return {
            TargetType.ALL_USERS: "All Users",
            TargetType.ALL_LICENSED_USERS: "All Licensed Users",
            TargetType.ALL_DEVICES: "All Devices",
            TargetType.GROUP: "Group",
            TargetType.EXCLUSION_GROUP: "Exclusion Group",
            TargetType.CONFIGURATION_MANAGER_COLLECTION: "Configuration Manager Collection",
        }[self]


class FilterMode(str, Enum):
    """How an assignment filter narrows the target."""

    INCLUDE = "include"
    EXCLUDE = "exclude"


class WorkItemStatus(str, Enum):
    """Lifecycle of a work item during a run."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkItemStatus.COMPLETED,
            WorkItemStatus.FAILED,
            WorkItemStatus.CANCELLED,
        )


class FailureCode(str, Enum):
    """Why a work item ended failed."""

    INVALID_REQUEST = "invalid_request"  # 400
    FORBIDDEN = "forbidden"  # 403
    NOT_FOUND = "not_found"  # 404
    TRANSIENT_SERVER_ERROR = "transient_server_error"
    EXHAUSTED_RETRIES = "exhausted_retries"
    RATE_LIMIT_EXHAUSTED = "rate_limit_exhausted"
    TRANSPORT_ERROR = "transport_error"


ALREADY_EXISTS_SKIPPED = "already exists (skipped)"
ALREADY_EXISTS = "already exists"


@dataclass(frozen=True)
class AssignmentFilter:
    """An assignment filter applied on top of the target."""

    filter_id: str
    mode: FilterMode = FilterMode.INCLUDE


@dataclass
class WorkItem:
    """One artifact x target assignment to perform.

    Created by the caller from the cross-product of selected artifacts and
    targets; mutated in place as it moves through a run and never removed.

    attempt_count counts the transient retries consumed; rate-limit
    resubmissions do not count.
    """

    artifact_id: str
    target_id: str
    intent: Intent
    artifact_name: str = ""
    target_name: str = ""
    artifact_kind: ArtifactKind = ArtifactKind.MOBILE_APP
    target_type: TargetType = TargetType.GROUP
    filter: Optional[AssignmentFilter] = None
    settings: Optional[dict[str, Any]] = None  # Graph app assignment settings

    id: str = field(default_factory=lambda: str(uuid4()))
    status: WorkItemStatus = WorkItemStatus.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    error_code: Optional[FailureCode] = None
    status_code: Optional[int] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.artifact_name:
            self.artifact_name = self.artifact_id
        if not self.target_name:
            self.target_name = (
                self.target_type.display_name if self.target_type.is_pseudo else self.target_id
            )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def mark_completed(self, at: datetime, message: Optional[str] = None) -> None:
        self.status = WorkItemStatus.COMPLETED
        self.last_error = message
        self.error_code = None
        self.completed_at = at

    def mark_failed(self, code: FailureCode, message: str) -> None:
        self.status = WorkItemStatus.FAILED
        self.error_code = code
        self.last_error = message

    def mark_cancelled(self) -> None:
        self.status = WorkItemStatus.CANCELLED

    def reset(self) -> None:
        """Return the item to pending so it can be run again."""
        self.status = WorkItemStatus.PENDING
        self.attempt_count = 0
        self.last_error = None
        self.error_code = None
        self.status_code = None
        self.completed_at = None

    def to_dict(self) -> dict:
        """Convert to dictionary for reports."""
        return {
            "id": self.id,
            "artifact_id": self.artifact_id,
            "artifact_name": self.artifact_name,
            "artifact_kind": self.artifact_kind.value,
            "target_id": self.target_id,
            "target_name": self.target_name,
            "target_type": self.target_type.display_name,
            "intent": self.intent.value,
            "filter_id": self.filter.filter_id if self.filter else None,
            "filter_mode": self.filter.mode.value if self.filter else None,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "status_code": self.status_code,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.last_error,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class ExistingAssignment:
    """An assignment that already exists remotely for an artifact."""

    artifact_id: str
    target_type: TargetType
    intent: Intent
    target_id: Optional[str] = None  # Group or collection id; None for pseudo-targets
    filter: Optional[AssignmentFilter] = None
    assignment_id: Optional[str] = None

    def matches(self, item: WorkItem) -> bool:
        """True if this assignment already satisfies ``item``."""
        if self.artifact_id != item.artifact_id or self.intent != item.intent:
            return False
        if self.target_type != item.target_type:
            return False
        if item.target_type.is_pseudo:
            return True
        return self.target_id == item.target_id


@dataclass
class BatchRequestEnvelope:
    """An ordered batch of work items with a correlation id per item.

    Correlation ids are the 1-based positions ("1".."n") so every
    sub-response can be mapped back to exactly one item.
    """

    items: list[WorkItem]
    correlation_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.correlation_ids:
            self.correlation_ids = [str(i) for i in range(1, len(self.items) + 1)]
        if len(self.correlation_ids) != len(self.items):
            raise ValueError("Every item needs exactly one correlation id")

    def __len__(self) -> int:
        return len(self.items)

    def entries(self) -> list[tuple[str, WorkItem]]:
        return list(zip(self.correlation_ids, self.items))

    def item_for(self, correlation_id: str) -> Optional[WorkItem]:
        for cid, item in zip(self.correlation_ids, self.items):
            if cid == correlation_id:
                return item
        return None


@dataclass
class SubResponse:
    """The transport's answer for one sub-request of a batch."""

    correlation_id: str
    status: int
    body: Optional[dict[str, Any]] = None
    headers: dict[str, str] = field(default_factory=dict)


class ProgressPhase(str, Enum):
    """Phase of a bulk run as seen by observers."""

    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    RATE_LIMITED = "rate_limited"
    VERIFYING = "verifying"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Read-only view of a run's progress."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    phase: ProgressPhase = ProgressPhase.IDLE
    batch_index: int = 0
    batch_count: int = 0
    wait_seconds: float = 0.0
    message: str = ""

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def percent_complete(self) -> float:
        if self.total == 0:
            return 0.0
        return min(100.0, self.processed / self.total * 100)

    @property
    def is_verifying(self) -> bool:
        return self.phase == ProgressPhase.VERIFYING

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "phase": self.phase.value,
            "batch_index": self.batch_index,
            "batch_count": self.batch_count,
            "wait_seconds": self.wait_seconds,
            "message": self.message,
            "percent_complete": round(self.percent_complete, 1),
        }


@dataclass
class RunResult:
    """Final outcome of a bulk assignment run."""

    items: list[WorkItem] = field(default_factory=list)
    skipped: list[WorkItem] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    batches_submitted: int = 0
    was_cancelled: bool = False
    refresh_succeeded: Optional[bool] = None  # None when no refresh was attempted
    warnings: list[str] = field(default_factory=list)

    @property
    def successful(self) -> list[WorkItem]:
        return [i for i in self.items if i.status == WorkItemStatus.COMPLETED]

    @property
    def failed(self) -> list[WorkItem]:
        return [i for i in self.items if i.status == WorkItemStatus.FAILED]

    @property
    def cancelled(self) -> list[WorkItem]:
        return [i for i in self.items if i.status == WorkItemStatus.CANCELLED]

    @property
    def success(self) -> bool:
        return not self.failed and not self.was_cancelled

    @property
    def duration_seconds(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def statistics(self) -> dict[str, int]:
        """Counts per final status."""
        completed = len(self.successful)
        failed = len(self.failed)
        cancelled = len(self.cancelled)
        return {
            "total": len(self.items),
            "completed": completed,
            "skipped": len(self.skipped),
            "failed": failed,
            "cancelled": cancelled,
            "pending": len(self.items) - completed - failed - cancelled,
        }

    def report_rows(self) -> list[dict[str, Any]]:
        """Per-item rows: artifact, target, intent, final status and message."""
        return [
            {
                "artifact": item.artifact_name,
                "target": item.target_name,
                "intent": item.intent.value,
                "status": item.status.value,
                "message": item.last_error or "",
            }
            for item in self.items
        ]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        return {
            "success": self.success,
            "statistics": self.statistics(),
            "batches_submitted": self.batches_submitted,
            "was_cancelled": self.was_cancelled,
            "refresh_succeeded": self.refresh_succeeded,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "items": [i.to_dict() for i in self.items],
        }
