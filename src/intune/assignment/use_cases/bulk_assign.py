"""Bulk Assign use case.

Assigns a list of artifact x target work items through the Graph $batch
endpoint:

VALIDATING
├── Load existing assignments (unless the caller passed them in)
├── Report intent conflicts (advisory)
└── Skip items that already exist remotely

SUBMITTING (batch i of n, in order)
├── Wait for the shared rate-limit window  <-> RATE_LIMITED
└── Execute the batch (retries and 429 resubmission inside)

VERIFYING
├── Settle for a few seconds (Graph reads lag its writes)
└── Refresh cached state through the injected callback (best effort)

DONE / CANCELLED

Batches run one at a time unless max_concurrent_batches > 1; the
dispatch step (rate-limit wait + progress update) is serialized either
way so waits compose instead of overlapping.

Key Design Decisions:
- Per-item failures are recorded on the items, never raised
- A run with failed items raises PartialFailureError carrying the result
- Cancellation stops new batches and retries; nothing already sent is undone
- A failed refresh never turns a success into a failure
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from ...api.exceptions import (
    IntuneError,
    OperationCancelledError,
    PartialFailureError,
    TransportUnavailableError,
)
from ...api.resilience import CancellationToken, Clock, SystemClock
from ..config import BulkAssignmentConfig
from ..domain.conflicts import Severity, detect_conflicts
from ..domain.entities import (
    ExistingAssignment,
    RunResult,
    WorkItem,
    WorkItemStatus,
)
from ..domain.ports import IAssignmentSource, IBatchTransport, RefreshCallback
from .batching import chunk
from .execute_batch import BatchExecutor, BatchResult
from .progress import ProgressReporter
from .rate_limit import RateLimitCoordinator
from .validate import validate

logger = logging.getLogger(__name__)


@dataclass
class _DispatchState:
    batches_submitted: int = 0
    batches_delivered: int = 0
    submitted_successes: int = 0
    last_transport_error: Optional[IntuneError] = None


class BulkAssignmentUseCase:
    """Orchestrates validation, batching, submission and verification."""

    def __init__(
        self,
        transport: IBatchTransport,
        rate_limiter: Optional[RateLimitCoordinator] = None,
        refresh: Optional[RefreshCallback] = None,
        assignment_source: Optional[IAssignmentSource] = None,
        config: Optional[BulkAssignmentConfig] = None,
        clock: Optional[Clock] = None,
        progress: Optional[ProgressReporter] = None,
    ):
        """Initialize the use case.

        Args:
            transport: Batch endpoint adapter
            rate_limiter: Coordinator shared by every batch (one per tenant)
            refresh: Called after a run with successes to reload cached state
            assignment_source: Used to read existing assignments when the
                caller does not pass ``known_assignments``
            config: Batch size, retry and wait settings
            clock: Time source (fake in tests)
            progress: Reporter observers subscribe to
        """
        self.config = config or BulkAssignmentConfig()
        self._clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or RateLimitCoordinator(
            self._clock, self.config.default_retry_after_seconds
        )
        self.progress = progress or ProgressReporter()
        self.executor = BatchExecutor(
            transport,
            self.rate_limiter,
            config=self.config,
            clock=self._clock,
            progress=self.progress,
        )
        self._refresh = refresh
        self._assignment_source = assignment_source
        self._dispatch_lock = asyncio.Lock()
        self._active_token: Optional[CancellationToken] = None
        self.last_result: Optional[RunResult] = None

    async def execute(
        self,
        work_items: list[WorkItem],
        known_assignments: Optional[Mapping[str, list[ExistingAssignment]]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        """Run the whole workflow for ``work_items``.

        Returns:
            RunResult when every item completed (or the run was cancelled
            without failures)

        Raises:
            PartialFailureError: If any item ended failed; ``.result`` holds
                the full RunResult
            TransportUnavailableError: If not a single batch reached the API
        """
        token = cancel_token or CancellationToken()
        self._active_token = token
        items = list(work_items)
        result = RunResult(items=items, started_at=self._clock.now())
        logger.info(f"Starting bulk assignment of {len(items)} item(s)")

        # ========================================
        # VALIDATING
        # ========================================
        self.progress.start(len(items))

        if known_assignments is None and self._assignment_source is not None and items:
            known_assignments = await self._load_known_assignments(items)

        for conflict in detect_conflicts(items, known_assignments):
            if conflict.severity == Severity.CRITICAL:
                logger.warning(f"Assignment conflict: {conflict}")
            else:
                logger.info(f"Assignment note: {conflict}")
            result.warnings.append(str(conflict))

        skip, submit = validate(items, known_assignments, now=self._clock.now())
        result.skipped = skip
        self.progress.record(completed=len(skip))

        # ========================================
        # SUBMITTING
        # ========================================
        batches = chunk(submit, self.config.batch_limit)
        logger.info(
            f"Submitting {len(submit)} item(s) in {len(batches)} batch(es) "
            f"of up to {self.config.batch_limit}"
        )
        state = await self._dispatch(batches, token)
        result.batches_submitted = state.batches_submitted

        # ========================================
        # VERIFYING / DONE
        # ========================================
        if not token.is_cancelled:
            await self._verify(result, state, token)

        if token.is_cancelled:
            self._cancel_remaining(items)
            result.was_cancelled = True
            self.progress.cancelled()
            logger.warning(f"Bulk assignment cancelled: {token.reason}")
        else:
            self.progress.done(
                "Verification complete (refresh failed)"
                if result.refresh_succeeded is False
                else "Complete"
            )

        result.completed_at = self._clock.now()
        self.progress.clear()
        self._active_token = None
        self.last_result = result

        stats = result.statistics()
        logger.info(
            f"Bulk assignment finished in {result.duration_seconds:.1f}s: "
            f"{stats['completed']} completed ({stats['skipped']} skipped), "
            f"{stats['failed']} failed, {stats['cancelled']} cancelled"
        )

        if batches and state.batches_delivered == 0 and state.last_transport_error:
            raise TransportUnavailableError(
                f"None of {state.batches_submitted} batch(es) reached the API",
                result=result,
                cause=state.last_transport_error,
            )
        if result.failed:
            raise PartialFailureError(
                successful=stats["completed"],
                failed=stats["failed"],
                result=result,
            )
        return result

    async def retry_failed(
        self,
        result: Optional[RunResult] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunResult:
        """Run the failed items of ``result`` (default: the last run) again.

        Failed items are reset to pending with a fresh retry budget.
        """
        source = result or self.last_result
        if source is None:
            raise ValueError("No previous run to retry")

        failed = source.failed
        logger.info(f"Retrying {len(failed)} failed item(s)")
        for item in failed:
            item.reset()
        return await self.execute(failed, cancel_token=cancel_token)

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """Cancel the run in progress, if any."""
        if self._active_token is not None:
            self._active_token.cancel(reason)

    def statistics(self) -> dict[str, int]:
        """Per-status counts of the last run."""
        if self.last_result is None:
            return {"total": 0, "completed": 0, "skipped": 0, "failed": 0, "cancelled": 0, "pending": 0}
        return self.last_result.statistics()

    # ----------------------------------------
    # Phases
    # ----------------------------------------

    async def _load_known_assignments(
        self,
        items: list[WorkItem],
    ) -> dict[str, list[ExistingAssignment]]:
        artifacts = list(dict.fromkeys((i.artifact_id, i.artifact_kind) for i in items))
        try:
            known = await self._assignment_source.fetch_existing(artifacts)
        except IntuneError as e:
            logger.warning(f"Could not load existing assignments, submitting everything: {e}")
            return {}
        logger.info(f"Loaded existing assignments for {len(known)}/{len(artifacts)} artifact(s)")
        return known

    async def _dispatch(
        self,
        batches: list[list[WorkItem]],
        token: CancellationToken,
    ) -> _DispatchState:
        state = _DispatchState()
        count = len(batches)

        if self.config.max_concurrent_batches <= 1:
            for index, batch in enumerate(batches, start=1):
                batch_result = await self._run_batch(index, count, batch, token, state)
                if batch_result is None:
                    break
            return state

        semaphore = asyncio.Semaphore(self.config.max_concurrent_batches)

        async def worker(index: int, batch: list[WorkItem]) -> Optional[BatchResult]:
            async with semaphore:
                return await self._run_batch(index, count, batch, token, state)

        await asyncio.gather(
            *(worker(index, batch) for index, batch in enumerate(batches, start=1))
        )
        return state

    async def _run_batch(
        self,
        index: int,
        count: int,
        batch: list[WorkItem],
        token: CancellationToken,
        state: _DispatchState,
    ) -> Optional[BatchResult]:
        """Wait for the send window, then execute one batch.

        Returns None when the batch was not started because of cancellation.
        """
        async with self._dispatch_lock:
            if token.is_cancelled:
                return None
            self.progress.submitting(index, count)
            try:
                await self.executor.wait_for_send_window(token)
            except OperationCancelledError:
                return None
            state.batches_submitted += 1

        logger.info(f"Processing batch {index} of {count} ({len(batch)} item(s))")
        batch_result = await self.executor.execute(batch, token)

        if batch_result.delivered:
            state.batches_delivered += 1
        if batch_result.transport_error is not None:
            state.last_transport_error = batch_result.transport_error
        state.submitted_successes += len(batch_result.successful)

        self.progress.record(
            completed=len(batch_result.successful),
            failed=len(batch_result.failed),
        )
        logger.info(
            f"Batch {index}/{count}: {len(batch_result.successful)} succeeded, "
            f"{len(batch_result.failed)} failed"
        )
        return batch_result

    async def _verify(
        self,
        result: RunResult,
        state: _DispatchState,
        token: CancellationToken,
    ) -> None:
        """Settle, then refresh cached state. Never fails the run."""
        if state.submitted_successes == 0 or self._refresh is None:
            return

        self.progress.verifying()
        try:
            await self._clock.sleep(self.config.post_submit_settle_seconds, token)
        except OperationCancelledError:
            logger.info("Verification skipped: run cancelled during settle time")
            return
        if token.is_cancelled:
            return

        self.progress.verifying("Refreshing assignment data...")
        try:
            await self._refresh()
            result.refresh_succeeded = True
        except Exception as e:
            logger.warning(f"Post-run refresh failed, cached state may be stale: {e}")
            result.refresh_succeeded = False

    @staticmethod
    def _cancel_remaining(items: list[WorkItem]) -> None:
        open_states = (
            WorkItemStatus.PENDING,
            WorkItemStatus.SUBMITTED,
            WorkItemStatus.RETRYING,
        )
        cancelled = 0
        for item in items:
            if item.status in open_states:
                item.mark_cancelled()
                cancelled += 1
        if cancelled:
            logger.info(f"Marked {cancelled} unfinished item(s) cancelled")
