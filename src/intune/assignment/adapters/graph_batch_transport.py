"""Batch transport adapter backed by the Graph ``$batch`` endpoint."""

import logging

from ...api.client import GraphClient
from ..domain.entities import BatchRequestEnvelope, SubResponse
from ..domain.ports import IBatchTransport
from .graph_mapping import build_sub_request

logger = logging.getLogger(__name__)


class GraphBatchTransport(IBatchTransport):
    """Sends each work item as one ``/assign`` sub-request of a $batch call."""

    def __init__(self, client: GraphClient):
        self.client = client

    async def submit_batch(self, envelope: BatchRequestEnvelope) -> list[SubResponse]:
        requests = [build_sub_request(item, cid) for cid, item in envelope.entries()]
        raw = await self.client.batch(requests)

        responses = []
        for entry in raw:
            body = entry.get("body")
            responses.append(
                SubResponse(
                    correlation_id=str(entry.get("id")),
                    status=int(entry.get("status", 0)),
                    body=body if isinstance(body, dict) else None,
                    headers=entry.get("headers") or {},
                )
            )
        logger.debug(f"$batch returned {len(responses)}/{len(requests)} responses")
        return responses
