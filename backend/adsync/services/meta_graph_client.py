"""Meta Graph API fetcher with backoff.

WHAT:
    Performs single HTTP calls against the Graph API and retries the ones
    worth retrying: rate-limit error payloads (long exponential backoff) and
    transport failures (short exponential backoff).

WHY:
    - Meta throttles per app, per user and per ad account (codes 4, 17, 80004)
    - Large accounts routinely hit those limits during a full sync
    - Non-transient errors (invalid token, bad field) must fail fast, retrying
      them only wastes quota

WHERE USED:
    - adsync/services/meta_paginator.py (one fetch per page)
    - adsync/services/meta_batch.py (one post per batch chunk)
    - adsync/services/asset_resolver.py (image hash / creative lookups)

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
    - https://developers.facebook.com/docs/marketing-api/error-reference
"""

import logging
import re
from typing import Any, Dict, FrozenSet, Iterable, Optional
from urllib.parse import urlencode

import httpx

from adsync.config import Settings
from adsync.exceptions import (
    AuthError,
    MetaApiError,
    RateLimitExceeded,
    TransientNetworkError,
)
from adsync.services.sync_control import SyncControl

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v21.0"
DEFAULT_RATE_LIMIT_CODES = frozenset({4, 17, 80004})
DEFAULT_AUTH_ERROR_CODES = frozenset({102, 190})
DEFAULT_TRANSIENT_ERROR_CODES = frozenset({1, 2})

_TOKEN_PATTERN = re.compile(r"access_token=[^&\s]+")


def redact_token(url: str) -> str:
    """Strip the access token from a URL before it reaches a log line."""
    return _TOKEN_PATTERN.sub("access_token=***", url)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MetaGraphClient:
    """Backoff-aware client for the Meta Graph API.

    WHAT:
        `fetch(url)` / `post(url, data)` return decoded JSON or raise one of
        the errors in adsync.exceptions.

    WHY:
        Every other component goes through this class, so retry policy and
        error classification live in exactly one place.

    Usage:
        ```python
        with httpx.Client(timeout=30.0) as http:
            client = MetaGraphClient("TOKEN", http)
            page = client.fetch(client.build_url("act_123/campaigns", {"fields": "id,name"}))
        ```
    """

    def __init__(
        self,
        access_token: str,
        http_client: httpx.Client,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        max_retries: int = 5,
        rate_limit_backoff: float = 3.0,
        network_backoff: float = 1.0,
        rate_limit_codes: Iterable[int] = DEFAULT_RATE_LIMIT_CODES,
        auth_error_codes: Iterable[int] = DEFAULT_AUTH_ERROR_CODES,
        transient_error_codes: Iterable[int] = DEFAULT_TRANSIENT_ERROR_CODES,
        control: Optional[SyncControl] = None,
    ):
        """Initialize the client.

        Args:
            access_token: Integration access token (sent as a query/body field)
            http_client: Caller-owned httpx.Client (injected, never global)
            base_url: Graph host
            api_version: Fixed API version path segment
            max_retries: Retries per call for retryable failures
            rate_limit_backoff: Base delay for rate-limit retries (base * 2^attempt)
            network_backoff: Base delay for transport-failure retries
            rate_limit_codes: Error codes treated as throttling
            auth_error_codes: Error codes treated as an invalid token
            transient_error_codes: Error codes treated like a transport failure
            control: Cancellation/deadline control for the current pass
        """
        self.access_token = access_token
        self.http = http_client
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.max_retries = max_retries
        self.rate_limit_backoff = rate_limit_backoff
        self.network_backoff = network_backoff
        self.rate_limit_codes: FrozenSet[int] = frozenset(rate_limit_codes)
        self.auth_error_codes: FrozenSet[int] = frozenset(auth_error_codes)
        self.transient_error_codes: FrozenSet[int] = frozenset(transient_error_codes)
        self.control = control or SyncControl()
        self.request_count = 0

    @classmethod
    def from_settings(
        cls,
        access_token: str,
        http_client: httpx.Client,
        settings: Settings,
        control: Optional[SyncControl] = None,
    ) -> "MetaGraphClient":
        return cls(
            access_token,
            http_client,
            base_url=settings.META_GRAPH_BASE_URL,
            api_version=settings.META_API_VERSION,
            max_retries=settings.META_MAX_RETRIES,
            rate_limit_backoff=settings.META_RATE_LIMIT_BACKOFF_SECONDS,
            network_backoff=settings.META_NETWORK_BACKOFF_SECONDS,
            rate_limit_codes=settings.META_RATE_LIMIT_ERROR_CODES,
            auth_error_codes=settings.META_AUTH_ERROR_CODES,
            transient_error_codes=settings.META_TRANSIENT_ERROR_CODES,
            control=control,
        )

    # =========================================================================
    # URL HELPERS
    # =========================================================================

    @property
    def graph_root(self) -> str:
        """Versioned Graph root, also the batch endpoint."""
        return f"{self.base_url}/{self.api_version}"

    def build_url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Build an absolute, token-bearing URL for `path`."""
        query = dict(params or {})
        query["access_token"] = self.access_token
        return f"{self.graph_root}/{path.lstrip('/')}?{urlencode(query)}"

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def fetch(self, url: str) -> Dict[str, Any]:
        """GET an absolute URL (e.g. a paging.next link) and return JSON."""
        return self._request("GET", url)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a Graph path relative to the versioned root."""
        return self.fetch(self.build_url(path, params))

    def post(self, url: str, data: Dict[str, Any]) -> Any:
        """POST a form body (batch protocol) and return JSON."""
        return self._request("POST", url, data=data)

    def backoff_delay(self, attempt: int, base: float) -> float:
        """Exponential delay for the given zero-based retry attempt."""
        return base * (2 ** attempt)

    def _request(self, method: str, url: str, data: Optional[Dict[str, Any]] = None) -> Any:
        attempt = 0
        safe_url = redact_token(url)

        while True:
            self.control.check()
            self.request_count += 1

            try:
                response = self.http.request(method, url, data=data)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "[META_GRAPH] Network error on %s %s, giving up after %d retries: %s",
                        method, safe_url, attempt, e,
                    )
                    raise TransientNetworkError(
                        f"Network error calling Meta API: {e}", attempts=attempt
                    ) from e
                delay = self.backoff_delay(attempt, self.network_backoff)
                logger.warning(
                    "[META_GRAPH] Network error, retrying in %.1fs (%d/%d): %s",
                    delay, attempt + 1, self.max_retries, e,
                )
                self.control.sleep(delay)
                attempt += 1
                continue

            payload = self._decode(response)
            error = payload.get("error") if isinstance(payload, dict) else None

            if error is None and response.status_code < 400:
                return payload

            if error is None:
                # HTTP failure without a Graph error body
                if response.status_code == 401:
                    raise AuthError(
                        "Authentication failed. Token may be expired or invalid.",
                        http_status=401,
                    )
                if response.status_code >= 500 and attempt < self.max_retries:
                    delay = self.backoff_delay(attempt, self.network_backoff)
                    logger.warning(
                        "[META_GRAPH] HTTP %d from Meta, retrying in %.1fs (%d/%d)",
                        response.status_code, delay, attempt + 1, self.max_retries,
                    )
                    self.control.sleep(delay)
                    attempt += 1
                    continue
                raise MetaApiError(
                    f"Meta API returned HTTP {response.status_code}",
                    http_status=response.status_code,
                )

            code = _as_int(error.get("code"))
            subcode = _as_int(error.get("error_subcode"))
            message = error.get("message", "Unknown Meta API error")
            details = dict(
                code=code,
                subcode=subcode,
                http_status=response.status_code,
                fbtrace_id=error.get("fbtrace_id"),
            )

            if code in self.rate_limit_codes:
                if attempt >= self.max_retries:
                    logger.error(
                        "[META_GRAPH] Rate limit (code %s) persisted after %d retries: %s",
                        code, attempt, safe_url,
                    )
                    raise RateLimitExceeded(
                        f"Meta API rate limit exceeded: {message}", attempts=attempt, **details
                    )
                delay = self.backoff_delay(attempt, self.rate_limit_backoff)
                logger.warning(
                    "[META_GRAPH] Rate limit hit (code %s), waiting %.1fs before retry %d/%d",
                    code, delay, attempt + 1, self.max_retries,
                )
                self.control.sleep(delay)
                attempt += 1
                continue

            if code in self.auth_error_codes or response.status_code == 401:
                logger.error("[META_GRAPH] Auth error (code %s): %s", code, message)
                raise AuthError(f"Meta API authentication failed: {message}", **details)

            if code in self.transient_error_codes and attempt < self.max_retries:
                delay = self.backoff_delay(attempt, self.network_backoff)
                logger.warning(
                    "[META_GRAPH] Transient Meta error (code %s), retrying in %.1fs (%d/%d)",
                    code, delay, attempt + 1, self.max_retries,
                )
                self.control.sleep(delay)
                attempt += 1
                continue

            logger.error(
                "[META_GRAPH] API error on %s %s: HTTP %d, code %s, message: %s",
                method, safe_url, response.status_code, code, message,
            )
            raise MetaApiError(f"Meta API error: {message}", **details)

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            # Gateways and expired sessions answer with HTML or an empty body
            if response.status_code >= 500 or response.status_code == 401:
                return {}
            raise MetaApiError(
                f"Meta API returned a non-JSON body (HTTP {response.status_code})",
                http_status=response.status_code,
            )
