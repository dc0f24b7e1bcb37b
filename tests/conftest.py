"""Shared fixtures: a deterministic clock, an in-memory batch endpoint and a
GraphClient on a mocked aiohttp session."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.intune.api.client import GraphClient
from src.intune.api.resilience import CancellationToken, Clock
from src.intune.assignment.domain.entities import (
    ArtifactKind,
    BatchRequestEnvelope,
    Intent,
    SubResponse,
    WorkItem,
)
from src.intune.assignment.domain.ports import IBatchTransport


class FakeClock(Clock):
    """Clock whose sleep advances virtual time and records the duration."""

    def __init__(self, start: Optional[datetime] = None):
        self._monotonic = 1000.0
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self.sleeps: list[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def monotonic(self) -> float:
        return self._monotonic

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._elapsed += seconds

    async def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> None:
        if token is not None:
            token.raise_if_cancelled()
        self.sleeps.append(seconds)
        if self.on_sleep:
            self.on_sleep(seconds)
        self.advance(max(0.0, seconds))
        await asyncio.sleep(0)
        if token is not None:
            token.raise_if_cancelled()


@pytest.fixture
def fake_clock():
    return FakeClock()


class ScriptedTransport(IBatchTransport):
    """In-memory batch endpoint answering from per-item scripts.

    A script entry is a status code, a (status, headers) or
    (status, headers, body) tuple, or None to leave the item out of the
    response. Items without a script (or with an exhausted one) get 201.
    """

    def __init__(self, default_status: int = 201):
        self.default_status = default_status
        self.scripts: dict[str, list] = {}
        self.batch_errors: list[Optional[Exception]] = []
        self.calls: list[list[str]] = []
        self.on_call: Optional[Callable[[int, BatchRequestEnvelope], None]] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, item: WorkItem, *responses) -> None:
        self.scripts.setdefault(item.id, []).extend(responses)

    def sends_for(self, item: WorkItem) -> int:
        return sum(call.count(item.id) for call in self.calls)

    async def submit_batch(self, envelope: BatchRequestEnvelope) -> list[SubResponse]:
        self.calls.append([item.id for item in envelope.items])
        call_index = len(self.calls)
        if self.on_call:
            self.on_call(call_index, envelope)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.batch_errors:
                error = self.batch_errors.pop(0)
                if error is not None:
                    raise error
        finally:
            self.in_flight -= 1

        responses = []
        for correlation_id, item in envelope.entries():
            script = self.scripts.get(item.id)
            entry = script.pop(0) if script else self.default_status
            if entry is None:
                continue
            if isinstance(entry, tuple):
                status, headers, *rest = entry
                body = rest[0] if rest else None
            else:
                status, headers, body = entry, {}, None
            responses.append(SubResponse(correlation_id, status, body, dict(headers)))
        # Graph does not promise response order
        responses.reverse()
        return responses


def make_work_items(
    count: int,
    intent: Intent = Intent.REQUIRED,
    artifact_kind: ArtifactKind = ArtifactKind.MOBILE_APP,
) -> list[WorkItem]:
    """``count`` distinct app x group items (app-1 -> group-1, ...)."""
    return [
        WorkItem(
            artifact_id=f"app-{n}",
            target_id=f"group-{n}",
            intent=intent,
            artifact_name=f"App {n}",
            target_name=f"Group {n}",
            artifact_kind=artifact_kind,
        )
        for n in range(1, count + 1)
    ]


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def make_items():
    return make_work_items


def make_graph_response(status=200, json_data=None, headers=None, text=""):
    """aiohttp-style response usable as ``async with session.request(...)``."""
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.content_length = None
    response.json = AsyncMock(return_value=json_data if json_data is not None else {})
    response.text = AsyncMock(return_value=text)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


@pytest.fixture
def graph_client(fake_clock):
    """GraphClient whose session replies from ``_session.request.side_effect``."""
    token_manager = MagicMock()
    token_manager.get_token = AsyncMock(return_value="test-token")
    client = GraphClient(token_manager, base_url="https://graph.test/beta", clock=fake_clock)
    client._session = MagicMock()
    return client


@pytest.fixture
def graph_response():
    return make_graph_response


@pytest.fixture
def batch_reply():
    """Build a 200 $batch reply from sub-request statuses, ids "1", "2", ..."""

    def build(*statuses):
        responses = [{"id": str(n), "status": s} for n, s in enumerate(statuses, start=1)]
        return make_graph_response(200, {"responses": responses})

    return build
