"""Sync worker entrypoint.

WHAT:
    Wires the engine from settings, runs one pass for one integration under
    its Redis lock, saves the creatives and turns the outcome into a
    SyncReport. Every pass is recorded in the sync history, which also picks
    the `since` of the next incremental pass. `refresh_integration_assets`
    runs a media re-sync over stored creatives. A small CLI runs a pass by
    hand.

WHY:
    - Keeps the orchestrator free of locking, telemetry, sync history and
      persistence of its final output
    - One place that decides what "completed", "partial" and "failed" mean

REFERENCES:
    - adsync/services/meta_sync_service.py
    - adsync/services/sync_lock.py
"""

import argparse
import json
import logging
import signal
import sys
import uuid
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import redis
from redis import Redis

from adsync.config import Settings, get_settings
from adsync.exceptions import AdSyncError, AuthError, SyncCancelled, SyncPhaseError
from adsync.models import Integration, SyncPhase, SyncRunStatus, SyncType
from adsync.schemas import MediaResyncReport, SyncReport, SyncResult, SyncRun, SyncStats
from adsync.services.asset_resolver import AssetResolver, ExistingAsset
from adsync.services.asset_store import AssetStore, LocalAssetStore
from adsync.services.meta_batch import MetaBatchExecutor
from adsync.services.meta_graph_client import MetaGraphClient
from adsync.services.meta_paginator import MetaPaginator
from adsync.services.meta_sync_service import MetaSyncOrchestrator, ProgressCallback
from adsync.services.sync_control import SyncControl
from adsync.services.sync_lock import IntegrationSyncLock
from adsync.services.sync_store import InMemorySyncStore, SyncPersistence
from adsync.telemetry.sentry import capture_exception, capture_message, init_sentry
from adsync.utils.env import load_env_file, require_env

logger = logging.getLogger(__name__)

# Phases after which earlier tiers are already persisted
_PARTIAL_PHASES = (SyncPhase.fetch_ad_sets, SyncPhase.fetch_ads)


def build_orchestrator(
    integration: Integration,
    http_client: httpx.Client,
    persistence: SyncPersistence,
    asset_store: AssetStore,
    settings: Optional[Settings] = None,
    control: Optional[SyncControl] = None,
) -> MetaSyncOrchestrator:
    """Build a fully wired orchestrator for one integration."""
    settings = settings or get_settings()
    control = control or SyncControl(deadline_seconds=settings.sync_deadline_seconds)

    client = MetaGraphClient.from_settings(integration.access_token, http_client, settings, control)
    return MetaSyncOrchestrator(
        integration,
        client,
        MetaPaginator(client, page_delay=settings.META_PAGE_DELAY_SECONDS),
        MetaBatchExecutor(
            client,
            batch_size=settings.META_BATCH_SIZE,
            chunk_delay=settings.META_BATCH_DELAY_SECONDS,
        ),
        AssetResolver(client, integration.ad_account_id, asset_store),
        persistence,
        page_limit=settings.META_PAGE_LIMIT,
        conversion_action_types=settings.META_CONVERSION_ACTION_TYPES,
        control=control,
    )


def run_integration_sync(
    integration: Integration,
    persistence: SyncPersistence,
    *,
    redis_client: Optional[Redis] = None,
    since: Optional[datetime] = None,
    full: bool = False,
    existing_assets: Optional[Dict[str, ExistingAsset]] = None,
    http_client: Optional[httpx.Client] = None,
    asset_store: Optional[AssetStore] = None,
    settings: Optional[Settings] = None,
    control: Optional[SyncControl] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> SyncReport:
    """Run one locked sync pass, record it in the sync history and summarize it.

    Args:
        integration: Integration to sync
        persistence: Receives campaigns/ad sets during the pass and the
            creatives at the end; keeps the sync history
        redis_client: Used for the per-integration lock. Without it the pass
            runs unlocked (single-process use only).
        since: Fetch only campaigns updated after this instant. When omitted,
            the start of the last completed run in the sync history is used.
        full: Ignore the sync history and run a full pass
        existing_assets: Ad external id -> stored image from earlier passes

    Returns:
        SyncReport. status is "completed", "partial" (campaigns or ad sets
        were saved before the failure) or "failed".

    Raises:
        SyncAlreadyRunningError: Another pass holds the integration lock
    """
    settings = settings or get_settings()
    owns_http = http_client is None
    if http_client is None:
        http_client = httpx.Client(timeout=settings.META_REQUEST_TIMEOUT_SECONDS)
    asset_store = asset_store or LocalAssetStore(settings.ASSET_STORAGE_DIR, http_client)

    lock = _integration_lock(redis_client, integration, settings)
    orchestrator = build_orchestrator(integration, http_client, persistence, asset_store, settings, control)
    logger.info("[SYNC_WORKER] Processing integration %s (%s)", integration.id, integration)

    try:
        with lock:
            if since is None and not full:
                since = _since_last_sync(persistence, integration)
            run = _start_run(persistence, integration, SyncType.incremental if since else SyncType.full, since)

            try:
                result = orchestrator.run(since=since, existing_assets=existing_assets, on_progress=on_progress)
                creatives_saved = persistence.save_creatives(result.creatives)
            except SyncPhaseError as e:
                report = _failed_report(integration, persistence, e, since)
                status = SyncRunStatus.cancelled if isinstance(e.cause, SyncCancelled) else SyncRunStatus(report.status)
                _finish_run(persistence, run, status, error=report.error, stats=report.stats.model_dump())
                return report

            report = _completed_report(integration, result, creatives_saved)
            _finish_run(persistence, run, SyncRunStatus.completed, stats=report.stats.model_dump())
            return report
    finally:
        if owns_http:
            http_client.close()


def refresh_integration_assets(
    integration: Integration,
    persistence: SyncPersistence,
    *,
    only_missing: bool = False,
    redis_client: Optional[Redis] = None,
    http_client: Optional[httpx.Client] = None,
    asset_store: Optional[AssetStore] = None,
    settings: Optional[Settings] = None,
    control: Optional[SyncControl] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> MediaResyncReport:
    """Re-resolve and re-store the images of an integration's stored creatives.

    WHAT:
        Media re-sync. Runs under the same integration lock as a sync pass
        and is recorded in the sync history as a `media` run (which never
        counts as the last successful sync).

    Args:
        only_missing: Only creatives without an image, or videos without a
            thumbnail

    Raises:
        SyncAlreadyRunningError: Another pass holds the integration lock
    """
    settings = settings or get_settings()
    owns_http = http_client is None
    if http_client is None:
        http_client = httpx.Client(timeout=settings.META_REQUEST_TIMEOUT_SECONDS)
    asset_store = asset_store or LocalAssetStore(settings.ASSET_STORAGE_DIR, http_client)

    lock = _integration_lock(redis_client, integration, settings)
    orchestrator = build_orchestrator(integration, http_client, persistence, asset_store, settings, control)
    logger.info("[SYNC_WORKER] Media re-sync for integration %s (only_missing=%s)", integration.id, only_missing)

    try:
        with lock:
            run = _start_run(persistence, integration, SyncType.media)
            try:
                creatives = persistence.creatives_for_integration(integration.id)
                result = orchestrator.refresh_assets(creatives, only_missing=only_missing, on_progress=on_progress)
                persistence.save_creatives(result.creatives)
            except AdSyncError as e:
                logger.error("[SYNC_WORKER] Media re-sync for integration %s failed: %s", integration.id, e)
                capture_exception(e, extra={"integration_id": integration.id, "operation": "media_resync"})
                status = SyncRunStatus.cancelled if isinstance(e, SyncCancelled) else SyncRunStatus.failed
                _finish_run(persistence, run, status, error=str(e))
                return MediaResyncReport(
                    integration_id=integration.id,
                    success=False,
                    status="failed",
                    only_missing=only_missing,
                    error=str(e),
                )

            report = MediaResyncReport(
                integration_id=integration.id,
                success=True,
                status="completed",
                only_missing=only_missing,
                requested=result.requested,
                updated=result.updated,
                degraded=result.degraded,
                no_image=result.no_image,
                failed=result.failed,
            )
            _finish_run(
                persistence, run, SyncRunStatus.completed,
                stats=report.model_dump(include={"requested", "updated", "degraded", "no_image", "failed"}),
            )
            return report
    finally:
        if owns_http:
            http_client.close()


# =============================================================================
# HELPERS
# =============================================================================

def _integration_lock(redis_client: Optional[Redis], integration: Integration, settings: Settings):
    if redis_client is None:
        logger.warning(
            "[SYNC_WORKER] No Redis client - running integration %s without a lock", integration.id
        )
        return nullcontext()
    return IntegrationSyncLock(redis_client, integration.id, timeout=settings.SYNC_LOCK_TIMEOUT_SECONDS)


def _since_last_sync(persistence: SyncPersistence, integration: Integration) -> Optional[datetime]:
    """Start of the last completed pass; changes made while it ran are re-fetched."""
    last = persistence.last_successful_sync(integration.id)
    if last is None:
        logger.info("[SYNC_WORKER] No completed sync for integration %s, running a full pass", integration.id)
        return None
    logger.info(
        "[SYNC_WORKER] Incremental sync for integration %s since %s", integration.id, last.started_at.isoformat()
    )
    return last.started_at


def _start_run(
    persistence: SyncPersistence,
    integration: Integration,
    sync_type: SyncType,
    since: Optional[datetime] = None,
) -> SyncRun:
    run = SyncRun(
        id=str(uuid.uuid4()),
        integration_id=integration.id,
        sync_type=sync_type,
        started_at=datetime.now(timezone.utc),
        since=since,
    )
    persistence.record_sync_run(run)
    return run


def _finish_run(
    persistence: SyncPersistence,
    run: SyncRun,
    status: SyncRunStatus,
    error: Optional[str] = None,
    stats: Optional[Dict[str, Any]] = None,
) -> None:
    run.status = status
    run.completed_at = datetime.now(timezone.utc)
    run.error = error
    run.stats = stats or {}
    persistence.record_sync_run(run)


def _completed_report(integration: Integration, result: SyncResult, creatives_saved: int) -> SyncReport:
    stats = result.stats
    if stats.skipped_orphans or stats.failed_asset_resolutions or stats.failed_insights:
        capture_message(
            f"Sync for integration {integration.id} completed with skipped items",
            level="warning",
            extra=stats.model_dump(),
        )

    logger.info(
        "[SYNC_WORKER] Integration %s completed: %d campaigns, %d ad sets, %d creatives",
        integration.id, len(result.campaigns), len(result.ad_sets), creatives_saved,
    )
    return SyncReport(
        integration_id=integration.id,
        success=True,
        status="completed",
        incremental=result.incremental,
        campaigns_synced=len(result.campaigns),
        ad_sets_synced=len(result.ad_sets),
        creatives_synced=creatives_saved,
        stats=stats,
    )


def _failed_report(
    integration: Integration,
    persistence: SyncPersistence,
    error: SyncPhaseError,
    since: Optional[datetime],
) -> SyncReport:
    partial = error.partial_result
    creatives_saved = persistence.save_creatives(partial.creatives) if partial and partial.creatives else 0

    if isinstance(error.cause, AuthError):
        logger.error(
            "[SYNC_WORKER] Token rejected for integration %s, reconnect required", integration.id
        )
    else:
        logger.error("[SYNC_WORKER] Integration %s failed: %s", integration.id, error)

    capture_exception(
        error.cause,
        extra={
            "integration_id": integration.id,
            "phase": error.phase.value,
            "processed": error.processed,
        },
    )

    return SyncReport(
        integration_id=integration.id,
        success=False,
        status="partial" if error.phase in _PARTIAL_PHASES else "failed",
        incremental=since is not None,
        campaigns_synced=len(partial.campaigns) if partial else 0,
        ad_sets_synced=len(partial.ad_sets) if partial else 0,
        creatives_synced=creatives_saved,
        stats=partial.stats if partial else SyncStats(),
        failed_phase=error.phase,
        error=str(error),
    )


# =============================================================================
# CLI
# =============================================================================

def _parse_since(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adsync-sync",
        description="Run one Meta Ads sync pass into an in-memory store and print a JSON summary.",
    )
    parser.add_argument("--account-id", required=True, help="Ad account id (with or without act_)")
    parser.add_argument("--since", type=_parse_since, help="ISO timestamp of the last sync (incremental mode)")
    parser.add_argument("--output", help="Write the JSON summary here instead of stdout")
    parser.add_argument("--integration-id", default="cli", help="Integration id used for ownership and locking")
    parser.add_argument("--lock", action="store_true", help="Take the Redis sync lock (uses REDIS_URL)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    load_env_file()
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    init_sentry(settings)

    integration = Integration(
        id=args.integration_id,
        access_token=require_env("META_ACCESS_TOKEN"),
        account_id=args.account_id,
    )
    store = InMemorySyncStore()
    control = SyncControl(deadline_seconds=settings.sync_deadline_seconds)
    signal.signal(signal.SIGTERM, lambda signum, frame: control.cancel())

    redis_client = redis.from_url(settings.REDIS_URL) if args.lock else None
    report = run_integration_sync(
        integration,
        store,
        redis_client=redis_client,
        since=args.since,
        settings=settings,
        control=control,
    )

    summary = json.dumps(
        {"report": report.model_dump(mode="json"), "data": store.snapshot()},
        indent=2,
    )
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            fh.write(summary)
        logger.info("[SYNC_WORKER] Summary written to %s", args.output)
    else:
        print(summary)

    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
