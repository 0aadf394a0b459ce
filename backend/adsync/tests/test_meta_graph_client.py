"""Unit tests for MetaGraphClient.

WHAT:
    Retry policy for rate limits, transport errors and transient platform
    errors; fail-fast behaviour for auth and other API errors.

WHY:
    The fetcher is the only place that decides whether a failure is worth
    another attempt. Getting it wrong either burns quota (retrying a dead
    token) or aborts syncs that would have succeeded a minute later.

REFERENCES:
    - adsync/services/meta_graph_client.py (module under test)
"""

import httpx
import pytest

from adsync.config import Settings
from adsync.exceptions import (
    AuthError,
    MetaApiError,
    RateLimitError,
    RateLimitExceeded,
    SyncCancelled,
    TransientNetworkError,
)
from adsync.services.meta_graph_client import MetaGraphClient, redact_token
from adsync.services.sync_control import SyncControl

from conftest import GRAPH_ROOT, TEST_TOKEN, graph_error


class TestUrls:
    def test_build_url_adds_version_and_token(self, meta_client):
        url = meta_client.build_url("act_123/campaigns", {"fields": "id,name", "limit": 100})

        assert url.startswith(f"{GRAPH_ROOT}/act_123/campaigns?")
        assert "fields=id%2Cname" in url
        assert "limit=100" in url
        assert f"access_token={TEST_TOKEN}" in url

    def test_redact_token_hides_access_token(self):
        url = f"{GRAPH_ROOT}/act_1/ads?limit=5&access_token=SECRET&after=x"

        redacted = redact_token(url)

        assert "SECRET" not in redacted
        assert "access_token=***" in redacted
        assert "after=x" in redacted

    def test_from_settings_uses_configured_policy(self, http_client, control):
        settings = Settings(
            META_MAX_RETRIES=2,
            META_RATE_LIMIT_BACKOFF_SECONDS=1.5,
            META_RATE_LIMIT_ERROR_CODES=[613],
        )

        client = MetaGraphClient.from_settings(TEST_TOKEN, http_client, settings, control)

        assert client.max_retries == 2
        assert client.rate_limit_backoff == 1.5
        assert client.rate_limit_codes == frozenset({613})
        assert client.control is control


class TestRateLimits:
    def test_retries_rate_limit_then_succeeds(self, graph, meta_client, sleeps):
        """WHAT: Code 17 is retried after 3s; the second answer is returned."""
        graph.add("act_1/campaigns", graph_error(17), {"data": [{"id": "c1"}]})

        data = meta_client.get("act_1/campaigns")

        assert data == {"data": [{"id": "c1"}]}
        assert sleeps == [3.0]
        assert meta_client.request_count == 2

    @pytest.mark.parametrize("code", [4, 17, 80004])
    def test_every_configured_rate_limit_code_is_retried(self, graph, meta_client, sleeps, code):
        graph.add("me", graph_error(code), {"id": "me"})

        assert meta_client.get("me") == {"id": "me"}
        assert len(sleeps) == 1

    def test_exhausted_retries_raise_rate_limit_exceeded(self, graph, meta_client, sleeps):
        """WHAT: Persistent throttling gives up after max_retries with growing delays.
        WHY: Delays must strictly increase and never exceed the retry budget.
        """
        graph.add("act_1/campaigns", graph_error(80004))

        with pytest.raises(RateLimitExceeded) as exc_info:
            meta_client.get("act_1/campaigns")

        assert sleeps == [3.0, 6.0, 12.0, 24.0, 48.0]
        assert exc_info.value.attempts == 5
        assert exc_info.value.code == 80004
        assert isinstance(exc_info.value, RateLimitError)
        assert graph.count("act_1/campaigns") == 6

    def test_custom_retry_budget(self, graph, http_client, control, sleeps):
        client = MetaGraphClient(TEST_TOKEN, http_client, max_retries=2, rate_limit_backoff=1.0, control=control)
        graph.add("me", graph_error(4))

        with pytest.raises(RateLimitExceeded):
            client.get("me")

        assert sleeps == [1.0, 2.0]


class TestAuthErrors:
    @pytest.mark.parametrize("code", [190, 102])
    def test_auth_codes_fail_without_retry(self, graph, meta_client, sleeps, code):
        """WHAT: Invalid/expired token errors are raised on the first attempt.
        WHY: Retrying a revoked token only burns quota.
        """
        graph.add("me", graph_error(code, status=400, message="Invalid OAuth access token"))

        with pytest.raises(AuthError) as exc_info:
            meta_client.get("me")

        assert exc_info.value.code == code
        assert sleeps == []
        assert graph.count("me") == 1

    def test_http_401_without_body_is_auth_error(self, graph, meta_client, sleeps):
        graph.add("me", httpx.Response(401, content=b""))

        with pytest.raises(AuthError):
            meta_client.get("me")

        assert sleeps == []


class TestNetworkErrors:
    def test_transport_error_is_retried(self, graph, meta_client, sleeps):
        graph.add("me", httpx.ConnectError("connection reset"), {"id": "me"})

        assert meta_client.get("me") == {"id": "me"}
        assert sleeps == [1.0]

    def test_exhausted_transport_retries_raise_transient_error(self, graph, meta_client, sleeps):
        graph.add("me", httpx.ReadTimeout("timed out"))

        with pytest.raises(TransientNetworkError) as exc_info:
            meta_client.get("me")

        assert sleeps == [1.0, 2.0, 4.0, 8.0, 16.0]
        assert exc_info.value.attempts == 5

    def test_transient_platform_code_is_retried(self, graph, meta_client, sleeps):
        """WHAT: Code 2 ("service temporarily unavailable") is treated like a network blip."""
        graph.add("me", graph_error(2, status=500), {"id": "me"})

        assert meta_client.get("me") == {"id": "me"}
        assert sleeps == [1.0]

    def test_server_error_without_json_is_retried(self, graph, meta_client, sleeps):
        graph.add("me", httpx.Response(502, text="<html>Bad gateway</html>"), {"id": "me"})

        assert meta_client.get("me") == {"id": "me"}
        assert sleeps == [1.0]


class TestOtherErrors:
    def test_unknown_error_code_raises_immediately(self, graph, meta_client, sleeps):
        graph.add("act_1/ads", graph_error(100, message="Unsupported get request", subcode=33))

        with pytest.raises(MetaApiError) as exc_info:
            meta_client.get("act_1/ads")

        error = exc_info.value
        assert not isinstance(error, (AuthError, RateLimitError))
        assert error.code == 100
        assert error.subcode == 33
        assert error.fbtrace_id == "trace"
        assert "code=100" in str(error)
        assert sleeps == []

    def test_post_sends_form_body(self, graph, meta_client):
        seen = {}

        def respond(request):
            seen["body"] = request.content.decode()
            return httpx.Response(200, json=[])

        graph.add("", respond, method="POST")

        assert meta_client.post(meta_client.graph_root, data={"batch": "[]"}) == []
        assert "batch=%5B%5D" in seen["body"]


class TestCancellation:
    def test_cancelled_control_stops_before_request(self, graph, meta_client, control):
        graph.add("me", {"id": "me"})
        control.cancel()

        with pytest.raises(SyncCancelled):
            meta_client.get("me")

        assert graph.requests == []

    def test_cancel_during_backoff_stops_retrying(self, graph, http_client):
        control = SyncControl(sleep=lambda seconds: control.cancel())
        client = MetaGraphClient(TEST_TOKEN, http_client, control=control)
        graph.add("me", graph_error(17))

        with pytest.raises(SyncCancelled):
            client.get("me")

        assert graph.count("me") == 1
