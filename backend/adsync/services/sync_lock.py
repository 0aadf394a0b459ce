"""
Per-Integration Sync Lock
=========================

At most one sync pass may run per integration at a time.

WHY THIS FILE EXISTS
--------------------
Two overlapping passes for the same ad account would double the API quota
they burn and race each other on the id maps. The engine itself is
single-flow and does not lock; the calling layer wraps each pass in this
lock.

HOW
---
Uses redis-py's `Lock` (SET NX with expiry under the hood).
- Key format: "adsync:sync-lock:{integration_id}"
- Non-blocking acquire: a held lock raises SyncAlreadyRunningError
- The timeout releases the lock if a worker dies mid-sync

RELATED FILES
-------------
- adsync/workers/sync_worker.py: Takes the lock around each pass
- adsync/exceptions.py: SyncAlreadyRunningError
"""

import logging
from typing import Optional

from redis import Redis
from redis.exceptions import LockError

from adsync.exceptions import SyncAlreadyRunningError

logger = logging.getLogger(__name__)

KEY_PREFIX = "adsync:sync-lock"


class IntegrationSyncLock:
    """
    Redis-backed mutual exclusion for sync passes.

    USAGE:
        with IntegrationSyncLock(redis_client, integration.id, timeout=3600):
            orchestrator.run()
    """

    def __init__(self, redis_client: Redis, integration_id: str, timeout: Optional[int] = 3600):
        self.redis = redis_client
        self.integration_id = str(integration_id)
        self.timeout = timeout
        self._lock = self.redis.lock(self.key, timeout=timeout, blocking=False)

    @property
    def key(self) -> str:
        return f"{KEY_PREFIX}:{self.integration_id}"

    def acquire(self) -> None:
        if not self._lock.acquire(blocking=False):
            logger.warning(
                "[SYNC_LOCK] Sync already running for integration %s", self.integration_id
            )
            raise SyncAlreadyRunningError(self.integration_id)
        logger.debug("[SYNC_LOCK] Acquired %s", self.key)

    def release(self) -> None:
        try:
            self._lock.release()
            logger.debug("[SYNC_LOCK] Released %s", self.key)
        except LockError as e:
            # Expired (or was taken over) while the pass was still running
            logger.warning("[SYNC_LOCK] Could not release %s: %s", self.key, e)

    def __enter__(self) -> "IntegrationSyncLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
