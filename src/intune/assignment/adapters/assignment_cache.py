"""In-memory cache of known remote assignments.

Holds what the engine validates against between runs. ``refresh`` is
passed to BulkAssignmentUseCase as its post-run refresh callback.
"""

import logging
from typing import Optional

from ..domain.entities import ArtifactKind, ExistingAssignment
from ..domain.ports import IAssignmentSource

logger = logging.getLogger(__name__)


class AssignmentCache:
    """Known assignments per artifact id, reloaded from an IAssignmentSource."""

    def __init__(self, source: IAssignmentSource):
        self.source = source
        self._assignments: dict[str, list[ExistingAssignment]] = {}
        self._tracked: dict[str, ArtifactKind] = {}

    @property
    def known_assignments(self) -> dict[str, list[ExistingAssignment]]:
        return dict(self._assignments)

    def get(self, artifact_id: str) -> Optional[list[ExistingAssignment]]:
        """Cached assignments for an artifact, or None on a cache miss."""
        return self._assignments.get(artifact_id)

    def track(self, artifacts: list[tuple[str, ArtifactKind]]) -> None:
        for artifact_id, kind in artifacts:
            self._tracked[artifact_id] = kind

    async def load(
        self,
        artifacts: list[tuple[str, ArtifactKind]],
    ) -> dict[str, list[ExistingAssignment]]:
        """Track ``artifacts`` and read their assignments."""
        self.track(artifacts)
        fetched = await self.source.fetch_existing(artifacts)
        self._assignments.update(fetched)
        return self.known_assignments

    async def refresh(self) -> dict[str, list[ExistingAssignment]]:
        """Re-read every tracked artifact (force refresh)."""
        artifacts = list(self._tracked.items())
        logger.info(f"Refreshing cached assignments for {len(artifacts)} artifact(s)")
        fetched = await self.source.fetch_existing(artifacts)
        for artifact_id, _ in artifacts:
            # Keep nothing stale for artifacts the refresh could not read
            self._assignments.pop(artifact_id, None)
        self._assignments.update(fetched)
        return self.known_assignments

    def clear(self) -> None:
        self._assignments.clear()
        self._tracked.clear()
