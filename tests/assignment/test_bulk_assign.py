"""Tests for the BulkAssignmentUseCase orchestration."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.intune.api.exceptions import (
    PartialFailureError,
    ServerError,
    TransportUnavailableError,
)
from src.intune.assignment.adapters.graph_batch_transport import GraphBatchTransport
from src.intune.assignment.config import BulkAssignmentConfig
from src.intune.assignment.domain.entities import (
    ExistingAssignment,
    FailureCode,
    Intent,
    ProgressPhase,
    WorkItem,
    WorkItemStatus,
)
from src.intune.assignment.use_cases.bulk_assign import BulkAssignmentUseCase


@pytest.fixture
def refresh():
    return AsyncMock(return_value=None)


@pytest.fixture
def use_case(transport, refresh, fake_clock):
    return BulkAssignmentUseCase(transport, refresh=refresh, clock=fake_clock)


def existing_for(item):
    return ExistingAssignment(
        item.artifact_id, item.target_type, item.intent, target_id=item.target_id
    )


class TestBulkAssignmentHappyPath:
    """Tests for complete runs."""

    @pytest.mark.asyncio
    async def test_45_items_with_conflict_and_rate_limit(
        self, use_case, transport, refresh, fake_clock, make_items
    ):
        items = make_items(45)
        transport.script(items[25], 409)
        transport.script(items[30], (429, {"Retry-After": "3"}))
        snapshots = []
        use_case.progress.subscribe(snapshots.append)

        result = await use_case.execute(items)

        assert [len(c) for c in transport.calls] == [20, 20, 1, 5]
        assert items[25].id in transport.calls[1] and items[30].id in transport.calls[1]
        assert transport.sends_for(items[25]) == 1
        assert transport.calls[2] == [items[30].id]
        assert result.batches_submitted == 3
        assert len(result.successful) == 45
        assert items[25].last_error == "already exists"
        assert fake_clock.sleeps == [3.0, 2.0]
        refresh.assert_awaited_once()
        assert result.refresh_succeeded is True

        assert all(s.processed <= 45 for s in snapshots)
        assert ProgressPhase.RATE_LIMITED in {s.phase for s in snapshots}
        assert snapshots[-1].phase == ProgressPhase.DONE
        assert snapshots[-1].completed == 45
        assert use_case.progress.snapshot is None

    @pytest.mark.asyncio
    async def test_progress_counts_are_monotonic(self, use_case, make_items):
        seen = []
        use_case.progress.subscribe(lambda s: seen.append(s.processed))

        await use_case.execute(make_items(45))

        assert seen == sorted(seen)
        assert seen[-1] == 45

    @pytest.mark.asyncio
    async def test_empty_run(self, use_case, transport, refresh):
        result = await use_case.execute([])

        assert result.items == []
        assert transport.calls == []
        refresh.assert_not_awaited()
        assert result.refresh_succeeded is None

    @pytest.mark.asyncio
    async def test_batch_limit_from_config(self, transport, fake_clock, make_items):
        use_case = BulkAssignmentUseCase(
            transport, config=BulkAssignmentConfig(batch_limit=5), clock=fake_clock
        )

        await use_case.execute(make_items(12))

        assert [len(c) for c in transport.calls] == [5, 5, 2]


class TestDeduplication:
    """Already-assigned items are never sent."""

    @pytest.mark.asyncio
    async def test_known_assignment_is_skipped(self, use_case, transport, make_items):
        items = make_items(3)
        known = {items[0].artifact_id: [existing_for(items[0])]}

        result = await use_case.execute(items, known_assignments=known)

        assert transport.sends_for(items[0]) == 0
        assert result.skipped == [items[0]]
        assert items[0].last_error == "already exists (skipped)"
        assert result.statistics()["completed"] == 3

    @pytest.mark.asyncio
    async def test_all_skipped_means_no_calls_and_no_refresh(
        self, use_case, transport, refresh, make_items
    ):
        items = make_items(2)
        known = {i.artifact_id: [existing_for(i)] for i in items}

        result = await use_case.execute(items, known_assignments=known)

        assert transport.calls == []
        refresh.assert_not_awaited()
        assert result.success

    @pytest.mark.asyncio
    async def test_known_state_loaded_from_source(self, transport, fake_clock, make_items):
        items = make_items(2)
        source = AsyncMock()
        source.fetch_existing = AsyncMock(
            return_value={items[1].artifact_id: [existing_for(items[1])]}
        )
        use_case = BulkAssignmentUseCase(transport, assignment_source=source, clock=fake_clock)

        result = await use_case.execute(items)

        source.fetch_existing.assert_awaited_once()
        assert result.skipped == [items[1]]
        assert transport.calls == [[items[0].id]]

    @pytest.mark.asyncio
    async def test_source_failure_submits_everything(self, transport, fake_clock, make_items):
        items = make_items(2)
        source = AsyncMock()
        source.fetch_existing = AsyncMock(side_effect=ServerError("down", status_code=503))
        use_case = BulkAssignmentUseCase(transport, assignment_source=source, clock=fake_clock)

        result = await use_case.execute(items)

        assert result.skipped == []
        assert len(transport.calls[0]) == 2

    @pytest.mark.asyncio
    async def test_conflicts_become_warnings(self, use_case):
        items = [
            WorkItem(artifact_id="app-1", target_id="g1", intent=Intent.REQUIRED),
            WorkItem(artifact_id="app-1", target_id="g1", intent=Intent.UNINSTALL),
        ]

        result = await use_case.execute(items)

        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("[critical]")


class TestFailures:
    """Run-level errors."""

    @pytest.mark.asyncio
    async def test_partial_failure_raises_with_result(
        self, use_case, transport, refresh, make_items
    ):
        items = make_items(3)
        transport.script(items[1], 403)

        with pytest.raises(PartialFailureError) as exc_info:
            await use_case.execute(items)

        error = exc_info.value
        assert error.successful == 2
        assert error.failed == 1
        assert error.result.failed == [items[1]]
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_batch_delivered_raises_transport_unavailable(
        self, use_case, transport, refresh, fake_clock, make_items
    ):
        items = make_items(45)
        # Three batches, each sent once and retried three times
        transport.batch_errors = [ServerError("unreachable", status_code=503)] * 12

        with pytest.raises(TransportUnavailableError) as exc_info:
            await use_case.execute(items)

        result = exc_info.value.result
        assert len(result.failed) == 45
        assert fake_clock.sleeps == [2.0, 4.0, 8.0] * 3
        assert all(i.error_code == FailureCode.TRANSPORT_ERROR for i in items)
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_lost_batch_is_a_partial_failure(self, use_case, transport, make_items):
        items = make_items(45)
        transport.batch_errors = [None] + [ServerError("blip", status_code=502)] * 4

        with pytest.raises(PartialFailureError) as exc_info:
            await use_case.execute(items)

        assert exc_info.value.failed == 20
        assert exc_info.value.successful == 25

    @pytest.mark.asyncio
    async def test_refresh_failure_does_not_fail_the_run(
        self, transport, fake_clock, make_items
    ):
        refresh = AsyncMock(side_effect=RuntimeError("cache offline"))
        use_case = BulkAssignmentUseCase(transport, refresh=refresh, clock=fake_clock)
        messages = []
        use_case.progress.subscribe(lambda s: messages.append(s.message))

        result = await use_case.execute(make_items(2))

        assert result.success
        assert result.refresh_succeeded is False
        assert messages[-1] == "Verification complete (refresh failed)"


class TestCancellation:
    """Cancellation stops new work without undoing sent batches."""

    @pytest.mark.asyncio
    async def test_cancel_after_first_batch(self, use_case, transport, refresh, make_items):
        items = make_items(45)
        transport.on_call = lambda index, envelope: use_case.cancel("stop")

        result = await use_case.execute(items)

        assert len(transport.calls) == 1
        assert result.was_cancelled
        assert len(result.successful) == 20
        assert len(result.cancelled) == 25
        assert not any(i.status == WorkItemStatus.PENDING for i in items)
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_rate_limit_wait(self, use_case, transport, fake_clock, make_items):
        items = make_items(45)
        transport.script(items[0], (429, {"Retry-After": "30"}))
        fake_clock.on_sleep = lambda seconds: use_case.cancel()

        result = await use_case.execute(items)

        assert len(transport.calls) == 1
        assert items[0].status == WorkItemStatus.CANCELLED
        assert len(result.cancelled) == 26
        assert len(result.successful) == 19

    @pytest.mark.asyncio
    async def test_cancelled_run_with_failures_still_raises(
        self, use_case, transport, make_items
    ):
        items = make_items(25)
        transport.script(items[0], 400)
        transport.on_call = lambda index, envelope: use_case.cancel()

        with pytest.raises(PartialFailureError) as exc_info:
            await use_case.execute(items)

        assert exc_info.value.result.was_cancelled

    @pytest.mark.asyncio
    async def test_cancel_during_settle_wait(
        self, use_case, transport, refresh, fake_clock, make_items
    ):
        items = make_items(2)
        phases = []
        use_case.progress.subscribe(lambda s: phases.append(s.phase))
        fake_clock.on_sleep = lambda seconds: use_case.cancel("closing")

        result = await use_case.execute(items)

        assert fake_clock.sleeps == [2.0]
        assert result.was_cancelled
        assert result.refresh_succeeded is None
        assert len(result.successful) == 2
        refresh.assert_not_awaited()
        assert phases[-1] == ProgressPhase.CANCELLED
        assert ProgressPhase.DONE not in phases


class TestRetryAndStatistics:
    """retry_failed() and statistics()."""

    @pytest.mark.asyncio
    async def test_retry_failed_resubmits_only_failures(self, use_case, transport, make_items):
        items = make_items(3)
        transport.script(items[2], 404)
        with pytest.raises(PartialFailureError):
            await use_case.execute(items)

        result = await use_case.retry_failed()

        assert result.items == [items[2]]
        assert items[2].status == WorkItemStatus.COMPLETED
        assert transport.calls[-1] == [items[2].id]

    @pytest.mark.asyncio
    async def test_retry_failed_without_previous_run(self, use_case):
        with pytest.raises(ValueError):
            await use_case.retry_failed()

    @pytest.mark.asyncio
    async def test_statistics(self, use_case, make_items):
        assert use_case.statistics()["total"] == 0

        await use_case.execute(make_items(4))

        stats = use_case.statistics()
        assert stats["total"] == 4
        assert stats["completed"] == 4


class TestConcurrentBatches:
    """Optional overlap of batches."""

    @pytest.mark.asyncio
    async def test_sequential_by_default(self, use_case, transport, make_items):
        await use_case.execute(make_items(60))
        assert transport.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_batches_overlap_when_configured(self, transport, fake_clock, make_items):
        use_case = BulkAssignmentUseCase(
            transport,
            config=BulkAssignmentConfig(max_concurrent_batches=3),
            clock=fake_clock,
        )
        snapshots = []
        use_case.progress.subscribe(snapshots.append)

        result = await use_case.execute(make_items(60))

        assert transport.max_in_flight > 1
        assert len(result.successful) == 60
        assert all(s.processed <= 60 for s in snapshots)

    @pytest.mark.asyncio
    async def test_rate_limit_while_batches_overlap(self, transport, fake_clock, make_items):
        use_case = BulkAssignmentUseCase(
            transport,
            config=BulkAssignmentConfig(max_concurrent_batches=3),
            clock=fake_clock,
        )
        items = make_items(60)
        transport.script(items[25], (429, {"Retry-After": "5"}))

        result = await use_case.execute(items)

        assert len(result.successful) == 60
        assert transport.sends_for(items[25]) == 2
        assert items[25].attempt_count == 0
        assert use_case.rate_limiter.rate_limit_count == 1
        assert max(fake_clock.sleeps) == 5.0


class TestEnvelopeThrottling:
    """429 and 5xx on the $batch call itself, through the Graph adapter."""

    @pytest.fixture
    def graph_use_case(self, graph_client, refresh, fake_clock):
        return BulkAssignmentUseCase(
            GraphBatchTransport(graph_client), refresh=refresh, clock=fake_clock
        )

    @pytest.mark.asyncio
    async def test_throttled_envelope_is_resubmitted(
        self, graph_use_case, graph_client, graph_response, batch_reply, fake_clock, make_items
    ):
        items = make_items(3)
        graph_client._session.request = MagicMock(
            side_effect=[
                graph_response(429, headers={"Retry-After": "30"}),
                batch_reply(201, 201, 201),
            ]
        )

        result = await graph_use_case.execute(items)

        assert len(result.successful) == 3
        assert all(i.attempt_count == 0 for i in items)
        assert graph_client._session.request.call_count == 2
        assert graph_use_case.rate_limiter.rate_limit_count == 1
        # Shared 30s wait, then the settle time
        assert fake_clock.sleeps == [30.0, 2.0]

    @pytest.mark.asyncio
    async def test_cancel_during_envelope_wait(
        self, graph_use_case, graph_client, graph_response, refresh, fake_clock, make_items
    ):
        items = make_items(3)
        graph_client._session.request = MagicMock(
            side_effect=[graph_response(429, headers={"Retry-After": "30"})]
        )
        fake_clock.on_sleep = lambda seconds: graph_use_case.cancel("stop")

        result = await graph_use_case.execute(items)

        assert result.was_cancelled
        assert len(result.cancelled) == 3
        assert result.failed == []
        assert graph_client._session.request.call_count == 1
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_envelope_server_error_backs_off(
        self, graph_use_case, graph_client, graph_response, batch_reply, fake_clock, make_items
    ):
        items = make_items(2)
        graph_client._session.request = MagicMock(
            side_effect=[graph_response(503, text="unavailable"), batch_reply(201, 409)]
        )

        result = await graph_use_case.execute(items)

        assert len(result.successful) == 2
        assert items[1].last_error == "already exists"
        assert fake_clock.sleeps == [2.0, 2.0]
        assert graph_client._session.request.call_count == 2
