"""Read existing assignments from Graph.

Few artifacts are read one GET at a time. More than
BATCH_THRESHOLD artifacts are read through $batch in chunks of 20; when a
$batch call fails its chunk falls back to individual GETs. An artifact
whose assignments cannot be read is left out of the result, so its items
get submitted and the API decides.
"""

import logging

from ...api.client import MAX_BATCH_REQUESTS, GraphClient
from ...api.exceptions import IntuneError
from ..domain.entities import ArtifactKind, ExistingAssignment
from ..domain.ports import IAssignmentSource
from ..use_cases.batching import chunk
from .graph_mapping import assignments_path, parse_assignment_list

logger = logging.getLogger(__name__)

BATCH_THRESHOLD = 5


class GraphAssignmentSource(IAssignmentSource):
    """Fetches ``/assignments`` for apps and configuration profiles."""

    def __init__(self, client: GraphClient, batch_threshold: int = BATCH_THRESHOLD):
        self.client = client
        self.batch_threshold = batch_threshold

    async def fetch_existing(
        self,
        artifacts: list[tuple[str, ArtifactKind]],
    ) -> dict[str, list[ExistingAssignment]]:
        unique = list(dict.fromkeys(artifacts))
        if not unique:
            return {}

        if len(unique) > self.batch_threshold:
            known = await self._fetch_batched(unique)
        else:
            known = await self._fetch_individually(unique)

        missing = len(unique) - len(known)
        logger.info(
            f"Read existing assignments for {len(known)} artifact(s)"
            + (f", {missing} unavailable" if missing else "")
        )
        return known

    async def _fetch_one(
        self,
        artifact_id: str,
        kind: ArtifactKind,
    ) -> list[ExistingAssignment]:
        items = await self.client.fetch_all(assignments_path(kind, artifact_id))
        return parse_assignment_list(artifact_id, {"value": items})

    async def _fetch_individually(
        self,
        artifacts: list[tuple[str, ArtifactKind]],
    ) -> dict[str, list[ExistingAssignment]]:
        known: dict[str, list[ExistingAssignment]] = {}
        for artifact_id, kind in artifacts:
            try:
                known[artifact_id] = await self._fetch_one(artifact_id, kind)
            except IntuneError as e:
                logger.warning(f"Could not fetch existing assignments for {artifact_id}: {e}")
        return known

    async def _fetch_batched(
        self,
        artifacts: list[tuple[str, ArtifactKind]],
    ) -> dict[str, list[ExistingAssignment]]:
        known: dict[str, list[ExistingAssignment]] = {}

        for group in chunk(artifacts, MAX_BATCH_REQUESTS):
            requests = [
                {
                    "id": str(index),
                    "method": "GET",
                    "url": assignments_path(kind, artifact_id),
                }
                for index, (artifact_id, kind) in enumerate(group, start=1)
            ]
            try:
                responses = await self.client.batch(requests)
            except IntuneError as e:
                logger.error(f"Batch fetch failed, falling back to individual requests: {e}")
                known.update(await self._fetch_individually(group))
                continue

            by_id = {str(r.get("id")): r for r in responses}
            for index, (artifact_id, kind) in enumerate(group, start=1):
                response = by_id.get(str(index))
                if response is None or response.get("status") != 200:
                    logger.warning(f"Could not fetch existing assignments for {artifact_id}")
                    continue
                body = response.get("body")
                if isinstance(body, dict) and body.get("@odata.nextLink"):
                    # Too many assignments for one page; read the rest directly
                    try:
                        known[artifact_id] = await self._fetch_one(artifact_id, kind)
                    except IntuneError as e:
                        logger.warning(f"Could not fetch existing assignments for {artifact_id}: {e}")
                    continue
                known[artifact_id] = parse_assignment_list(
                    artifact_id, body if isinstance(body, dict) else None
                )

        return known
