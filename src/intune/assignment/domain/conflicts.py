"""Intent conflict detection.

Combines the intents already assigned to an artifact for a target with
the intents requested in a run, and reports combinations that Intune
either rejects or resolves in surprising ways. Findings are advisory;
nothing here stops a run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

from .entities import ExistingAssignment, Intent, TargetType, WorkItem


class ConflictType(str, Enum):
    CONFLICTING_INTENTS = "conflicting_intents"  # Required + Uninstall
    REDUNDANT_ASSIGNMENT = "redundant_assignment"  # Required + Available
    LOGICAL_CONFLICT = "logical_conflict"  # Available w/o enrollment + Required


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"


@dataclass
class AssignmentConflict:
    """A problematic intent combination for one artifact on one target."""

    artifact_id: str
    artifact_name: str
    target_key: str
    target_name: str
    conflict_type: ConflictType
    severity: Severity
    intents: set[Intent] = field(default_factory=set)
    resolution: str = ""

    def __str__(self) -> str:
        return (
            f"[{self.severity.value}] {self.artifact_name} -> {self.target_name}: "
            f"{self.resolution}"
        )


# (pair of intents, type, severity, resolution template)
_RULES: list[tuple[frozenset, ConflictType, Severity, str]] = [
    (
        frozenset({Intent.REQUIRED, Intent.UNINSTALL}),
        ConflictType.CONFLICTING_INTENTS,
        Severity.CRITICAL,
        "Cannot have both 'Required' and 'Uninstall' intents for '{name}' "
        "assigned to the same group. Choose one intent.",
    ),
    (
        frozenset({Intent.REQUIRED, Intent.AVAILABLE}),
        ConflictType.REDUNDANT_ASSIGNMENT,
        Severity.WARNING,
        "'Required' makes 'Available' redundant for '{name}'. "
        "Consider using only 'Required' for this group.",
    ),
    (
        frozenset({Intent.AVAILABLE_WITHOUT_ENROLLMENT, Intent.REQUIRED}),
        ConflictType.LOGICAL_CONFLICT,
        Severity.CRITICAL,
        "Cannot use 'Available without enrollment' with 'Required' for '{name}' "
        "assigned to the same group. Enrolled devices should use standard intents.",
    ),
]


def _target_key(target_type: TargetType, target_id: Optional[str]) -> str:
    if target_type.is_pseudo or not target_id:
        return target_type.value
    return target_id


def detect_conflicts(
    items: Iterable[WorkItem],
    known_assignments: Optional[Mapping[str, list[ExistingAssignment]]] = None,
) -> list[AssignmentConflict]:
    """Find conflicting intent combinations per artifact and target."""
    intents: dict[tuple[str, str], set[Intent]] = {}
    names: dict[tuple[str, str], tuple[str, str]] = {}

    items = list(items)
    artifact_ids = {item.artifact_id for item in items}

    for artifact_id, existing in (known_assignments or {}).items():
        if artifact_id not in artifact_ids:
            continue
        for assignment in existing:
            key = (artifact_id, _target_key(assignment.target_type, assignment.target_id))
            intents.setdefault(key, set()).add(assignment.intent)

    for item in items:
        key = (item.artifact_id, _target_key(item.target_type, item.target_id))
        intents.setdefault(key, set()).add(item.intent)
        names[key] = (item.artifact_name, item.target_name)

    conflicts = []
    for key, found in intents.items():
        if len(found) < 2 or key not in names:
            continue
        artifact_name, target_name = names[key]
        for pair, conflict_type, severity, template in _RULES:
            if pair <= found:
                conflicts.append(
                    AssignmentConflict(
                        artifact_id=key[0],
                        artifact_name=artifact_name,
                        target_key=key[1],
                        target_name=target_name,
                        conflict_type=conflict_type,
                        severity=severity,
                        intents=set(pair),
                        resolution=template.format(name=artifact_name),
                    )
                )
    return conflicts


def would_cause_conflict(
    new_intent: Intent,
    existing_intents: Iterable[Intent],
) -> tuple[bool, Optional[str]]:
    """Check a single new intent against intents already on the target.

    Returns (has_conflict, message). A redundancy returns False with a
    warning message.
    """
    existing = set(existing_intents)

    if new_intent == Intent.REQUIRED and Intent.UNINSTALL in existing:
        return True, "Cannot assign 'Required' when 'Uninstall' is already assigned to this group"
    if new_intent == Intent.UNINSTALL and Intent.REQUIRED in existing:
        return True, "Cannot assign 'Uninstall' when 'Required' is already assigned to this group"
    if new_intent == Intent.AVAILABLE_WITHOUT_ENROLLMENT and Intent.REQUIRED in existing:
        return True, "Cannot use 'Available without enrollment' when 'Required' is already assigned"
    if new_intent == Intent.REQUIRED and Intent.AVAILABLE_WITHOUT_ENROLLMENT in existing:
        return True, "Cannot assign 'Required' when 'Available without enrollment' is already assigned"
    if new_intent == Intent.AVAILABLE and Intent.REQUIRED in existing:
        return False, "Warning: 'Available' is redundant when 'Required' is already assigned"
    return False, None
