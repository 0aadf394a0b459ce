"""Unit tests for MetaBatchExecutor.

WHAT:
    Chunking, positional mapping of sub-responses, per-item failure
    isolation and chunk-level failures.

WHY:
    Insights for thousands of ads go through here. One bad sub-request must
    cost one metric row, not the whole phase.

REFERENCES:
    - adsync/services/meta_batch.py (module under test)
"""

import json

import httpx
import pytest

from adsync.exceptions import AuthError, BatchChunkFailure
from adsync.services.meta_batch import MAX_BATCH_SIZE, BatchRequest, MetaBatchExecutor

from conftest import TEST_TOKEN, batch_items, batch_responder, graph_error


def _insight_requests(count: int):
    return [BatchRequest(f"ad_{i}/insights?fields=clicks") for i in range(count)]


class TestChunking:
    def test_physical_calls_equal_ceil_of_requests_over_batch_size(self, graph, meta_client, sleeps):
        """WHAT: 120 requests at batch size 50 make 3 calls with 2 chunk delays."""
        graph.add("", batch_responder({}), method="POST")
        executor = MetaBatchExecutor(meta_client, batch_size=50, chunk_delay=5.0)

        results = executor.execute(_insight_requests(120))

        assert len(results) == 120
        assert executor.physical_calls == 3
        assert [len(batch_items(r)) for r in graph.requests] == [50, 50, 20]
        assert sleeps == [5.0, 5.0]

    def test_batch_size_is_capped_at_platform_maximum(self, meta_client):
        assert MetaBatchExecutor(meta_client, batch_size=500).batch_size == MAX_BATCH_SIZE

    def test_invalid_batch_size_rejected(self, meta_client):
        with pytest.raises(ValueError):
            MetaBatchExecutor(meta_client, batch_size=0)

    def test_empty_input_makes_no_calls(self, graph, meta_client):
        executor = MetaBatchExecutor(meta_client)

        assert executor.execute([]) == []
        assert graph.requests == []

    def test_chunk_payload_carries_token_and_sub_requests(self, graph, meta_client):
        graph.add("", batch_responder({}), method="POST")

        MetaBatchExecutor(meta_client).execute([BatchRequest("ad_1/insights?fields=clicks")])

        request = graph.requests[0]
        body = request.content.decode()
        assert f"access_token={TEST_TOKEN}" in body
        assert "include_headers=false" in body
        assert batch_items(request) == [{"method": "GET", "relative_url": "ad_1/insights?fields=clicks"}]


class TestItemMapping:
    def test_results_are_positional_and_failures_are_none(self, graph, meta_client):
        """WHAT: A rate-limited or failed sub-request maps to None at its own position."""
        graph.add(
            "",
            batch_responder({
                "ad_0": {"data": [{"clicks": "1"}]},
                "ad_1": (400, {"error": {"code": 17, "message": "User request limit reached"}}),
                "ad_2": (500, {"error": {"code": 100, "message": "boom"}}),
                "ad_3": None,
                "ad_4": {"data": [{"clicks": "5"}]},
            }),
            method="POST",
        )
        executor = MetaBatchExecutor(meta_client)

        results = executor.execute(_insight_requests(5))

        assert results == [
            {"data": [{"clicks": "1"}]},
            None,
            None,
            None,
            {"data": [{"clicks": "5"}]},
        ]
        assert executor.failed_items == 3

    def test_order_preserved_across_chunks(self, graph, meta_client):
        bodies = {f"ad_{i}": {"data": [{"clicks": str(i)}]} for i in range(7)}
        graph.add("", batch_responder(bodies), method="POST")

        results = MetaBatchExecutor(meta_client, batch_size=3, chunk_delay=0).execute(_insight_requests(7))

        assert [r["data"][0]["clicks"] for r in results] == [str(i) for i in range(7)]


class TestChunkFailures:
    def test_failed_chunk_call_raises_batch_chunk_failure(self, graph, meta_client, sleeps):
        graph.add("", graph_error(100, message="Invalid batch"), method="POST")

        with pytest.raises(BatchChunkFailure) as exc_info:
            MetaBatchExecutor(meta_client).execute(_insight_requests(3))

        assert exc_info.value.chunk_index == 0
        assert exc_info.value.chunk_size == 3
        assert exc_info.value.cause is not None

    def test_mismatched_response_length_raises(self, graph, meta_client):
        graph.add("", [{"code": 200, "body": json.dumps({"data": []})}], method="POST")

        with pytest.raises(BatchChunkFailure):
            MetaBatchExecutor(meta_client).execute(_insight_requests(2))

    def test_auth_error_propagates_unchanged(self, graph, meta_client):
        graph.add("", graph_error(190, message="Session has expired"), method="POST")

        with pytest.raises(AuthError):
            MetaBatchExecutor(meta_client).execute(_insight_requests(2))

    def test_chunk_is_retried_by_fetcher_before_failing(self, graph, meta_client, sleeps):
        """WHAT: A throttled chunk call goes through the fetcher's backoff first."""
        graph.add(
            "",
            graph_error(4),
            lambda request: httpx.Response(
                200, json=[{"code": 200, "body": "{}"} for _ in batch_items(request)]
            ),
            method="POST",
        )

        results = MetaBatchExecutor(meta_client).execute(_insight_requests(2))

        assert results == [{}, {}]
        assert sleeps == [3.0]
