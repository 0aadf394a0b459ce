"""
Sync Exceptions
===============

Error taxonomy for the Meta synchronization engine.

WHY THIS FILE EXISTS
--------------------
A sync pass has very different failure modes and each one needs a different
reaction:
- Transient network errors and rate limits are retried inside the fetcher
- Invalid/expired tokens are fatal and must never be retried
- Orphans and missing images are counted, never fatal
- A failed batch chunk aborts the phase

Callers catch `AdSyncError` for "anything from the engine" and the specific
subclasses when they need to react differently.

RELATED FILES
-------------
- adsync/services/meta_graph_client.py: Raises MetaApiError family
- adsync/services/meta_batch.py: Raises BatchChunkFailure
- adsync/services/meta_sync_service.py: Raises SyncPhaseError
- adsync/services/sync_lock.py: Raises SyncAlreadyRunningError
"""

from typing import Any, Optional


class AdSyncError(Exception):
    """
    Base exception for all sync engine errors.

    WHAT:
        Parent class for every error raised by adsync.

    WHY:
        Allows catching all engine errors with a single except clause
        while still being able to handle specific error types.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MetaApiError(AdSyncError):
    """
    Non-retryable error payload returned by the Graph API.

    WHAT:
        Carries the platform error code/subcode so callers and logs can
        tell exactly what Meta rejected.
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        http_status: Optional[int] = None,
        fbtrace_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.subcode = subcode
        self.http_status = http_status
        self.fbtrace_id = fbtrace_id

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"{self.message} (code={self.code}, subcode={self.subcode})"


class AuthError(MetaApiError):
    """
    Access token invalid, expired or revoked.

    WHAT:
        Raised for HTTP 401 and for the configured auth error codes (190, 102).

    WHY:
        Retrying an invalid token only burns quota. The pass is aborted and
        the integration must be reconnected by the token refresh flow.
    """


class RateLimitError(MetaApiError):
    """Base class for platform throttling errors."""


class RateLimitExceeded(RateLimitError):
    """
    Rate limit still in effect after every retry was spent.

    WHAT:
        Raised by the fetcher once `max_retries` backoff attempts failed.
    """

    def __init__(self, message: str, attempts: int = 0, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class TransientNetworkError(AdSyncError):
    """
    Connection reset, timeout or DNS failure that survived every retry.
    """

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class BatchChunkFailure(AdSyncError):
    """
    The physical HTTP call for one batch chunk failed.

    WHAT:
        Only raised when the chunk-level call fails after its own retries or
        returns an unusable payload. Failed sub-items inside a successful
        chunk degrade to None results instead.
    """

    def __init__(self, message: str, chunk_index: int, chunk_size: int, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.chunk_size = chunk_size
        self.cause = cause


class OrphanReference(AdSyncError):
    """
    Child entity whose parent external id is not in the current id map.

    Raised and caught inside the orchestrator. It is counted and logged and
    never escapes a sync pass.
    """

    def __init__(self, kind: str, external_id: str, parent_external_id: Optional[str]):
        super().__init__(
            f"{kind} {external_id} references unknown parent {parent_external_id}"
        )
        self.kind = kind
        self.external_id = external_id
        self.parent_external_id = parent_external_id


class AssetResolutionFailure(AdSyncError):
    """
    No usable image could be resolved or stored for a creative.

    Non-fatal: the creative is kept without an image and flagged.
    """

    def __init__(self, ad_external_id: str, reason: str):
        super().__init__(f"Could not resolve asset for ad {ad_external_id}: {reason}")
        self.ad_external_id = ad_external_id
        self.reason = reason


class SyncCancelled(AdSyncError):
    """Sync pass was cancelled by its caller."""


class SyncDeadlineExceeded(SyncCancelled):
    """Sync pass ran past its configured deadline."""


class SyncPhaseError(AdSyncError):
    """
    Fatal error surfaced by the orchestrator with phase context.

    WHAT:
        Wraps the underlying fatal error with the phase that failed, how many
        items were processed in that phase, and the partial result built by
        the phases that completed.

    WHY:
        Lets the caller commit completed phases and report a meaningful
        summary ("campaigns synced, failed while fetching ads after 312 items").
    """

    def __init__(self, phase: Any, processed: int, cause: BaseException, partial_result: Any = None):
        phase_name = getattr(phase, "value", phase)
        super().__init__(
            f"Sync failed during {phase_name} after {processed} items: {cause}"
        )
        self.phase = phase
        self.processed = processed
        self.cause = cause
        self.partial_result = partial_result


class SyncAlreadyRunningError(AdSyncError):
    """Another sync for the same integration holds the lock."""

    def __init__(self, integration_id: str):
        super().__init__(f"A sync is already running for integration {integration_id}")
        self.integration_id = integration_id
