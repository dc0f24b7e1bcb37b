"""Submit one batch and drive it to a final outcome for every item.

Algorithm:
    1. Send all items as one $batch envelope.
    2. Classify each sub-response:
       - 2xx / 409   -> completed
       - 400/403/404 -> failed, never retried
       - 429         -> re-queued, does not consume the retry budget
       - other       -> retried alone with backoff (base ** attempt seconds)
                        up to retry_limit times, then failed
    3. Rate-limited items are resubmitted together as a new batch once the
       shared rate-limit window opens, until none are left.

A 429 on the envelope itself rate-limits every item in it. A 5xx or
network fault on the envelope is retried with the same backoff as single
items; an envelope that still cannot be delivered marks its items failed
with TRANSPORT_ERROR and is reported on the BatchResult.

Per-item failures are recorded on the WorkItem and never raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from ...api.exceptions import (
    IntuneError,
    NetworkError,
    OperationCancelledError,
    RateLimitError,
    ServerError,
)
from ...api.resilience import CancellationToken, Clock, SystemClock, backoff_delay
from ..config import BulkAssignmentConfig
from ..domain.entities import (
    BatchRequestEnvelope,
    FailureCode,
    SubResponse,
    WorkItem,
    WorkItemStatus,
)
from ..domain.outcomes import Outcome, OutcomeKind, classify_response
from ..domain.ports import IBatchTransport
from .progress import ProgressReporter
from .rate_limit import RateLimitCoordinator

logger = logging.getLogger(__name__)

MISSING_RESPONSE = "No response returned for sub-request"


@dataclass
class BatchResult:
    """Final partition of one batch after all of its retries."""

    successful: list[WorkItem] = field(default_factory=list)
    failed: list[WorkItem] = field(default_factory=list)
    cancelled: list[WorkItem] = field(default_factory=list)
    delivered: bool = False  # Some call for this batch reached the API
    transport_error: Optional[IntuneError] = None
    rate_limit_rounds: int = 0
    requests_sent: int = 0


class BatchExecutor:
    """Runs a batch through the transport, retries and rate-limit waits."""

    def __init__(
        self,
        transport: IBatchTransport,
        rate_limiter: RateLimitCoordinator,
        config: Optional[BulkAssignmentConfig] = None,
        clock: Optional[Clock] = None,
        progress: Optional[ProgressReporter] = None,
    ):
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.config = config or BulkAssignmentConfig()
        self._clock = clock or SystemClock()
        self.progress = progress

    async def execute(
        self,
        batch: list[WorkItem],
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """Submit ``batch`` and return its successful / failed partition."""
        result = BatchResult()
        pending = list(batch)

        while pending:
            rate_limited = await self._submit_round(pending, result, cancel_token)
            if not rate_limited:
                break

            result.rate_limit_rounds += 1
            limit = self.config.rate_limit_retry_limit
            if limit is not None and result.rate_limit_rounds > limit:
                for item in rate_limited:
                    item.mark_failed(
                        FailureCode.RATE_LIMIT_EXHAUSTED,
                        f"Still rate limited after {limit} resubmission(s)",
                    )
                    result.failed.append(item)
                break

            try:
                await self.wait_for_send_window(cancel_token)
            except OperationCancelledError:
                self._cancel(rate_limited, result)
                break

            logger.info(f"Resubmitting {len(rate_limited)} rate-limited item(s) as a new batch")
            pending = rate_limited

        logger.debug(
            f"Batch finished: {len(result.successful)} succeeded, {len(result.failed)} failed, "
            f"{len(result.cancelled)} cancelled, {result.requests_sent} request(s) sent"
        )
        return result

    async def wait_for_send_window(
        self,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """Sleep until the rate-limit coordinator allows the next send.

        Raises:
            OperationCancelledError: If cancelled before or during the wait
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        wait = await self.rate_limiter.before_send()
        if wait <= 0:
            return
        if self.progress:
            self.progress.rate_limited(wait)
        await self._clock.sleep(wait, cancel_token)
        if self.progress:
            self.progress.submitting()

    # ----------------------------------------
    # Internals
    # ----------------------------------------

    async def _submit_round(
        self,
        items: list[WorkItem],
        result: BatchResult,
        cancel_token: Optional[CancellationToken],
    ) -> list[WorkItem]:
        """Send ``items`` as one batch; returns the items that hit 429."""
        envelope = BatchRequestEnvelope(items)
        for item in items:
            item.status = WorkItemStatus.SUBMITTED

        try:
            responses = await self._deliver(envelope, result, cancel_token)
        except RateLimitError as e:
            result.delivered = True
            logger.warning(f"Batch of {len(items)} throttled as a whole: {e.message}")
            await self.rate_limiter.on_response(e.details.get("retry_after_seconds"))
            for item in items:
                item.status_code = 429
                item.status = WorkItemStatus.PENDING
            return list(items)
        except OperationCancelledError:
            self._cancel(items, result)
            return []
        except IntuneError as e:
            logger.error(f"Batch of {len(items)} could not be delivered: {e}")
            result.transport_error = e
            for item in items:
                item.mark_failed(FailureCode.TRANSPORT_ERROR, f"Transport error: {e.message}")
                result.failed.append(item)
            return []

        result.delivered = True

        by_id = {r.correlation_id: r for r in responses}
        rate_limited: list[WorkItem] = []
        transient: list[tuple[WorkItem, Outcome]] = []

        for correlation_id, item in envelope.entries():
            outcome = self._classify(by_id.get(correlation_id))
            item.status_code = outcome.status_code or None

            if outcome.is_success:
                item.mark_completed(self._clock.now(), outcome.message)
                result.successful.append(item)
            elif outcome.is_rate_limited:
                item.status = WorkItemStatus.PENDING
                rate_limited.append(item)
                await self.rate_limiter.on_response(outcome.retry_after_seconds)
            elif outcome.is_permanent:
                logger.error(f"{item.artifact_name} -> {item.target_name}: {outcome.message}")
                item.mark_failed(outcome.code, outcome.message)
                result.failed.append(item)
            else:
                transient.append((item, outcome))

        if not rate_limited:
            await self.rate_limiter.on_response(rate_limited=False)

        for item, outcome in transient:
            await self._retry_single(item, outcome, result, cancel_token)

        return rate_limited

    async def _submit(
        self,
        envelope: BatchRequestEnvelope,
        result: BatchResult,
    ) -> list[SubResponse]:
        """One transport call. Errors outside IntuneError surface as NetworkError."""
        result.requests_sent += 1
        try:
            return await self.transport.submit_batch(envelope)
        except IntuneError:
            raise
        except Exception as e:
            logger.exception(f"Transport failed unexpectedly for a batch of {len(envelope)}")
            raise NetworkError(f"Unexpected transport failure: {e}", cause=e) from e

    async def _deliver(
        self,
        envelope: BatchRequestEnvelope,
        result: BatchResult,
        cancel_token: Optional[CancellationToken],
    ) -> list[SubResponse]:
        """Send ``envelope``, backing off on 5xx and network faults.

        Raises:
            RateLimitError: If Graph throttled the whole envelope
            IntuneError: If still undeliverable after retry_limit retries
            OperationCancelledError: If cancelled during a backoff wait
        """
        attempt = 0
        while True:
            try:
                return await self._submit(envelope, result)
            except (ServerError, NetworkError) as e:
                if attempt >= self.config.retry_limit:
                    raise
                attempt += 1
                delay = backoff_delay(attempt, self.config.backoff_base_seconds)
                logger.warning(
                    f"Batch of {len(envelope)} failed ({e.message}); "
                    f"retry {attempt}/{self.config.retry_limit} in {delay:.0f}s"
                )
                await self._clock.sleep(delay, cancel_token)
                await self.wait_for_send_window(cancel_token)

    @staticmethod
    def _classify(response: Optional[SubResponse]) -> Outcome:
        if response is None:
            return Outcome(
                OutcomeKind.TRANSIENT_FAILURE,
                0,
                message=MISSING_RESPONSE,
                code=FailureCode.TRANSIENT_SERVER_ERROR,
            )
        return classify_response(response.status, response.body, response.headers)

    async def _send_single(self, item: WorkItem, result: BatchResult) -> Outcome:
        """Resubmit one item on its own."""
        envelope = BatchRequestEnvelope([item])
        item.status = WorkItemStatus.SUBMITTED
        try:
            responses = await self._submit(envelope, result)
        except RateLimitError as e:
            return Outcome(
                OutcomeKind.RATE_LIMITED,
                429,
                message="Rate limited",
                retry_after_seconds=e.details.get("retry_after_seconds"),
            )
        except IntuneError as e:
            return Outcome(
                OutcomeKind.TRANSIENT_FAILURE,
                0,
                message=f"Transport error: {e.message}",
                code=FailureCode.TRANSIENT_SERVER_ERROR,
            )
        by_id = {r.correlation_id: r for r in responses}
        return self._classify(by_id.get(envelope.correlation_ids[0]))

    async def _retry_single(
        self,
        item: WorkItem,
        outcome: Outcome,
        result: BatchResult,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        """Retry a transiently failed item alone until it settles."""
        last = outcome
        rate_limit_retries = 0

        while True:
            if last.is_transient:
                if item.attempt_count >= self.config.retry_limit:
                    logger.error(
                        f"{item.artifact_name} -> {item.target_name}: giving up after "
                        f"{item.attempt_count} retries ({last.message})"
                    )
                    item.mark_failed(
                        FailureCode.EXHAUSTED_RETRIES,
                        f"Failed after {item.attempt_count} retries: {last.message}",
                    )
                    result.failed.append(item)
                    return

                attempt = item.attempt_count + 1
                item.status = WorkItemStatus.RETRYING
                item.last_error = last.message
                delay = backoff_delay(attempt, self.config.backoff_base_seconds)
                logger.warning(
                    f"{item.artifact_name} -> {item.target_name}: {last.message}; "
                    f"retry {attempt}/{self.config.retry_limit} in {delay:.0f}s"
                )
                try:
                    await self._clock.sleep(delay, cancel_token)
                except OperationCancelledError:
                    self._cancel([item], result)
                    return
                item.attempt_count = attempt

            try:
                await self.wait_for_send_window(cancel_token)
            except OperationCancelledError:
                self._cancel([item], result)
                return

            last = await self._send_single(item, result)
            item.status_code = last.status_code or None

            if last.is_success:
                item.mark_completed(self._clock.now(), last.message)
                result.successful.append(item)
                return

            if last.is_permanent:
                item.mark_failed(last.code, last.message)
                result.failed.append(item)
                return

            if last.is_rate_limited:
                await self.rate_limiter.on_response(last.retry_after_seconds)
                item.status = WorkItemStatus.RETRYING
                rate_limit_retries += 1
                limit = self.config.rate_limit_retry_limit
                if limit is not None and rate_limit_retries > limit:
                    item.mark_failed(
                        FailureCode.RATE_LIMIT_EXHAUSTED,
                        f"Still rate limited after {limit} resubmission(s)",
                    )
                    result.failed.append(item)
                    return

    @staticmethod
    def _cancel(items: list[WorkItem], result: BatchResult) -> None:
        for item in items:
            item.mark_cancelled()
            result.cancelled.append(item)
