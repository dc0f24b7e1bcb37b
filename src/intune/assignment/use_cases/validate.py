"""Drop work items that the remote system already satisfies.

Deduplication is an optimization that saves a network call; it is never
the source of truth. When the known state for an artifact is missing the
item is submitted, and a duplicate that slips through comes back as 409,
which the executor treats as success.
"""

import logging
from datetime import datetime, timezone
from typing import Mapping, Optional

from ..domain.entities import ALREADY_EXISTS_SKIPPED, ExistingAssignment, WorkItem

logger = logging.getLogger(__name__)


def find_existing(
    item: WorkItem,
    known_assignments: Mapping[str, list[ExistingAssignment]],
) -> Optional[ExistingAssignment]:
    """Return the existing assignment that already satisfies ``item``, if any."""
    for assignment in known_assignments.get(item.artifact_id) or ():
        if assignment.matches(item):
            return assignment
    return None


def validate(
    items: list[WorkItem],
    known_assignments: Optional[Mapping[str, list[ExistingAssignment]]],
    now: Optional[datetime] = None,
) -> tuple[list[WorkItem], list[WorkItem]]:
    """Split work items into (skip, submit).

    Items matching an existing assignment (same target, same intent) are
    marked completed with "already exists (skipped)" and returned in
    ``skip``. Everything else goes to ``submit``. Both lists keep the
    input order.
    """
    known_assignments = known_assignments or {}
    now = now or datetime.now(timezone.utc)

    skip: list[WorkItem] = []
    submit: list[WorkItem] = []

    for item in items:
        if find_existing(item, known_assignments) is not None:
            item.mark_completed(now, ALREADY_EXISTS_SKIPPED)
            skip.append(item)
        else:
            submit.append(item)

    misses = {i.artifact_id for i in submit if i.artifact_id not in known_assignments}
    if misses:
        logger.debug(f"No known assignments for {len(misses)} artifact(s); submitting optimistically")
    logger.info(f"Validation: {len(skip)} already assigned, {len(submit)} to submit")

    return skip, submit
