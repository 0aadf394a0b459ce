"""Graph API batch executor.

WHAT:
    Packs independent GET requests (mostly per-entity insights) into Graph
    batch calls of at most 50 sub-requests each, and maps the positional
    response array back onto the input order.

WHY:
    - Per-entity insight calls would cost one round trip per ad
    - A batch of 50 costs one HTTP call (Meta still counts sub-requests
      against quota, so chunks are throttled)
    - A single failing sub-request must not cost the whole batch

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/batch-requests
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from adsync.exceptions import (
    AuthError,
    BatchChunkFailure,
    MetaApiError,
    SyncCancelled,
    TransientNetworkError,
)
from adsync.services.meta_graph_client import MetaGraphClient

logger = logging.getLogger(__name__)

# Hard platform limit on sub-requests per batch call
MAX_BATCH_SIZE = 50


@dataclass(frozen=True)
class BatchRequest:
    """One sub-request: method + URL relative to the versioned Graph root."""

    relative_url: str
    method: str = "GET"

    def to_payload(self) -> dict:
        return {"method": self.method, "relative_url": self.relative_url}


class MetaBatchExecutor:
    """Executes sub-requests through the Graph batch endpoint.

    Contract:
        - len(output) == len(requests), order preserved
        - exactly ceil(k / batch_size) physical calls for k requests
        - non-200 sub-responses become None (counted in `failed_items`)
        - raises BatchChunkFailure only when a chunk's own call fails

    Usage:
        executor = MetaBatchExecutor(client, batch_size=50, chunk_delay=5.0)
        results = executor.execute([BatchRequest("123/insights?fields=clicks")])
    """

    def __init__(self, client: MetaGraphClient, batch_size: int = MAX_BATCH_SIZE, chunk_delay: float = 5.0):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.batch_size = min(batch_size, MAX_BATCH_SIZE)
        self.chunk_delay = chunk_delay
        self.failed_items = 0
        self.physical_calls = 0

    def execute(self, requests: Sequence[BatchRequest]) -> List[Optional[Any]]:
        """Run every request, returning decoded bodies (or None) positionally."""
        results: List[Optional[Any]] = []
        if not requests:
            return results

        chunks = [
            list(requests[i:i + self.batch_size])
            for i in range(0, len(requests), self.batch_size)
        ]
        logger.info(
            "[META_BATCH] Executing %d sub-requests in %d chunk(s) of up to %d",
            len(requests), len(chunks), self.batch_size,
        )

        for index, chunk in enumerate(chunks):
            results.extend(self._execute_chunk(index, chunk))
            if index < len(chunks) - 1:
                self.client.control.sleep(self.chunk_delay)

        return results

    def _execute_chunk(self, index: int, chunk: List[BatchRequest]) -> List[Optional[Any]]:
        data = {
            "access_token": self.client.access_token,
            "batch": json.dumps([request.to_payload() for request in chunk]),
            "include_headers": "false",
        }

        self.physical_calls += 1
        try:
            response = self.client.post(self.client.graph_root, data=data)
        except (AuthError, SyncCancelled):
            raise
        except (MetaApiError, TransientNetworkError) as e:
            logger.error("[META_BATCH] Chunk %d (%d requests) failed: %s", index, len(chunk), e)
            raise BatchChunkFailure(
                f"Batch chunk {index} failed: {e}",
                chunk_index=index,
                chunk_size=len(chunk),
                cause=e,
            ) from e

        if not isinstance(response, list) or len(response) != len(chunk):
            got = len(response) if isinstance(response, list) else type(response).__name__
            raise BatchChunkFailure(
                f"Batch chunk {index} returned {got} results for {len(chunk)} requests",
                chunk_index=index,
                chunk_size=len(chunk),
            )

        return [self._parse_item(item, request) for item, request in zip(response, chunk)]

    def _parse_item(self, item: Optional[dict], request: BatchRequest) -> Optional[Any]:
        # Meta returns null for sub-requests it did not get to (timeout)
        if not item:
            self.failed_items += 1
            logger.warning("[META_BATCH] No response for %s", request.relative_url)
            return None

        body = item.get("body")
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                body = None

        code = item.get("code")
        if code == 200:
            return body

        self.failed_items += 1
        error = body.get("error", {}) if isinstance(body, dict) else {}
        error_code = error.get("code")
        if error_code in self.client.rate_limit_codes:
            # Losing one sub-item of a bulk insights fetch is acceptable
            logger.info(
                "[META_BATCH] Sub-request rate limited (code %s): %s",
                error_code, request.relative_url,
            )
        else:
            logger.warning(
                "[META_BATCH] Sub-request failed (HTTP %s, code %s): %s - %s",
                code, error_code, request.relative_url, error.get("message"),
            )
        return None
