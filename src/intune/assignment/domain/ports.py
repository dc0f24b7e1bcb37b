"""Port interfaces for bulk assignment.

These are abstract interfaces (ports) that define how the engine talks to
the outside world. Concrete implementations (adapters) live in the
adapters module; tests provide in-memory fakes.

This follows the Hexagonal Architecture pattern.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from .entities import ArtifactKind, BatchRequestEnvelope, ExistingAssignment, SubResponse

# Invoked once after a run to reload authoritative remote state
RefreshCallback = Callable[[], Awaitable[Any]]


class IBatchTransport(ABC):
    """Port for the remote batch endpoint."""

    @abstractmethod
    async def submit_batch(self, envelope: BatchRequestEnvelope) -> list[SubResponse]:
        """Submit every item of the envelope as one batch call.

        Args:
            envelope: Ordered items with their correlation ids

        Returns:
            One SubResponse per answered sub-request, keyed by correlation id

        Raises:
            IntuneError: If the batch call itself could not be delivered
        """
        ...


class IAssignmentSource(ABC):
    """Port for reading the assignments that already exist remotely."""

    @abstractmethod
    async def fetch_existing(
        self,
        artifacts: list[tuple[str, ArtifactKind]],
    ) -> dict[str, list[ExistingAssignment]]:
        """Fetch current assignments for the given artifacts.

        Args:
            artifacts: (artifact id, kind) pairs; duplicates are allowed

        Returns:
            Map of artifact id to its assignments. Artifacts whose state
            could not be read are left out of the map.
        """
        ...
