"""Translation between work items and Microsoft Graph assignment JSON."""

import logging
from typing import Any, Optional

from ..domain.entities import (
    ArtifactKind,
    AssignmentFilter,
    ExistingAssignment,
    FilterMode,
    Intent,
    TargetType,
    WorkItem,
)

logger = logging.getLogger(__name__)

APP_ASSIGNMENT_ODATA_TYPE = "#microsoft.graph.mobileAppAssignment"

_COLLECTIONS = {
    ArtifactKind.MOBILE_APP: "/deviceAppManagement/mobileApps",
    ArtifactKind.DEVICE_CONFIGURATION: "/deviceManagement/deviceConfigurations",
    ArtifactKind.CONFIGURATION_POLICY: "/deviceManagement/configurationPolicies",
}

_GROUP_TARGETS = (TargetType.GROUP, TargetType.EXCLUSION_GROUP)


def assign_path(kind: ArtifactKind, artifact_id: str) -> str:
    """The ``/assign`` action URL for an artifact."""
    return f"{_COLLECTIONS[kind]}/{artifact_id}/assign"


def assignments_path(kind: ArtifactKind, artifact_id: str) -> str:
    """The ``/assignments`` collection URL for an artifact."""
    return f"{_COLLECTIONS[kind]}/{artifact_id}/assignments"


def build_target(item: WorkItem) -> dict[str, Any]:
    target: dict[str, Any] = {"@odata.type": item.target_type.value}
    if item.target_type in _GROUP_TARGETS:
        target["groupId"] = item.target_id
    elif item.target_type == TargetType.CONFIGURATION_MANAGER_COLLECTION:
        target["collectionId"] = item.target_id
    if item.filter is not None:
        target["deviceAndAppManagementAssignmentFilterId"] = item.filter.filter_id
        target["deviceAndAppManagementAssignmentFilterType"] = item.filter.mode.value
    return target


def build_assign_body(item: WorkItem) -> dict[str, Any]:
    """Request body for the artifact's ``/assign`` action."""
    if item.artifact_kind == ArtifactKind.MOBILE_APP:
        assignment: dict[str, Any] = {
            "@odata.type": APP_ASSIGNMENT_ODATA_TYPE,
            "intent": item.intent.value,
            "target": build_target(item),
        }
        # Graph rejects install settings on uninstall assignments
        if item.settings and item.intent != Intent.UNINSTALL:
            assignment["settings"] = item.settings
        return {"mobileAppAssignments": [assignment]}

    return {"assignments": [{"target": build_target(item)}]}


def build_sub_request(item: WorkItem, correlation_id: str) -> dict[str, Any]:
    """One ``$batch`` sub-request that assigns ``item``."""
    return {
        "id": correlation_id,
        "method": "POST",
        "url": assign_path(item.artifact_kind, item.artifact_id),
        "body": build_assign_body(item),
        "headers": {"Content-Type": "application/json"},
    }


def parse_existing_assignment(
    artifact_id: str,
    data: dict[str, Any],
) -> Optional[ExistingAssignment]:
    """Parse one Graph assignment object; None if the target is unknown."""
    target = data.get("target") or {}
    try:
        target_type = TargetType(target.get("@odata.type"))
    except ValueError:
        logger.debug(f"Ignoring assignment with unknown target {target.get('@odata.type')!r}")
        return None

    raw_intent = data.get("intent")
    try:
        intent = Intent(raw_intent) if raw_intent else Intent.APPLY
    except ValueError:
        logger.debug(f"Ignoring assignment with unknown intent {raw_intent!r}")
        return None

    assignment_filter = None
    filter_id = target.get("deviceAndAppManagementAssignmentFilterId")
    filter_type = target.get("deviceAndAppManagementAssignmentFilterType")
    if filter_id and filter_type in (FilterMode.INCLUDE.value, FilterMode.EXCLUDE.value):
        assignment_filter = AssignmentFilter(filter_id, FilterMode(filter_type))

    return ExistingAssignment(
        artifact_id=artifact_id,
        target_type=target_type,
        intent=intent,
        target_id=target.get("groupId") or target.get("collectionId"),
        filter=assignment_filter,
        assignment_id=data.get("id"),
    )


def parse_assignment_list(artifact_id: str, body: Optional[dict[str, Any]]) -> list[ExistingAssignment]:
    parsed = (parse_existing_assignment(artifact_id, a) for a in (body or {}).get("value", []))
    return [a for a in parsed if a is not None]
