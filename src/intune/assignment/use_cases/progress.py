"""Live progress of a bulk assignment run.

The orchestrator is the only writer. All updates happen on the event loop
between awaits, so observers always see a consistent snapshot. Counters
only move forward.
"""

import logging
from dataclasses import replace
from typing import Callable, Optional

from ..domain.entities import ProgressPhase, ProgressSnapshot

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[ProgressSnapshot], None]


class ProgressReporter:
    """Holds the current ProgressSnapshot and notifies observers."""

    def __init__(self):
        self._snapshot: Optional[ProgressSnapshot] = None
        self._observers: list[ProgressObserver] = []

    @property
    def snapshot(self) -> Optional[ProgressSnapshot]:
        """Current snapshot, or None when no run is active."""
        return self._snapshot

    def subscribe(self, observer: ProgressObserver) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _publish(self, snapshot: Optional[ProgressSnapshot]) -> None:
        self._snapshot = snapshot
        if snapshot is None:
            return
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception as e:
                logger.warning(f"Progress observer failed: {e}")

    def _update(self, **changes) -> None:
        current = self._snapshot or ProgressSnapshot()
        self._publish(replace(current, **changes))

    # ----------------------------------------
    # Phase transitions
    # ----------------------------------------

    def start(self, total: int) -> None:
        self._publish(
            ProgressSnapshot(
                total=total,
                phase=ProgressPhase.VALIDATING,
                message="Validating assignments...",
            )
        )

    def submitting(
        self,
        batch_index: Optional[int] = None,
        batch_count: Optional[int] = None,
    ) -> None:
        """Enter the submitting phase; without arguments, resume the current batch."""
        current = self._snapshot or ProgressSnapshot()
        batch_index = current.batch_index if batch_index is None else batch_index
        batch_count = current.batch_count if batch_count is None else batch_count
        self._update(
            phase=ProgressPhase.SUBMITTING,
            batch_index=batch_index,
            batch_count=batch_count,
            wait_seconds=0.0,
            message=f"Processing batch {batch_index} of {batch_count}",
        )

    def rate_limited(self, wait_seconds: float) -> None:
        self._update(
            phase=ProgressPhase.RATE_LIMITED,
            wait_seconds=wait_seconds,
            message=f"Rate limited - waiting {wait_seconds:.0f} seconds...",
        )

    def verifying(self, message: str = "Verifying assignments...") -> None:
        self._update(phase=ProgressPhase.VERIFYING, wait_seconds=0.0, message=message)

    def done(self, message: str = "Complete") -> None:
        self._update(phase=ProgressPhase.DONE, wait_seconds=0.0, message=message)

    def cancelled(self) -> None:
        self._update(
            phase=ProgressPhase.CANCELLED,
            wait_seconds=0.0,
            message="Cancelled",
        )

    def clear(self) -> None:
        self._publish(None)

    # ----------------------------------------
    # Counters
    # ----------------------------------------

    def record(self, completed: int = 0, failed: int = 0) -> None:
        """Add finished items to the counters."""
        if completed < 0 or failed < 0:
            raise ValueError("Progress counters only move forward")
        if not completed and not failed:
            return
        current = self._snapshot or ProgressSnapshot()
        self._update(
            completed=current.completed + completed,
            failed=current.failed + failed,
        )
