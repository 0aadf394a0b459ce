"""Meta sync orchestrator.

WHAT:
    Runs one sync pass for one integration: campaigns, then ad sets, then
    ads/creatives. Each tier is one paginated account-level fetch, followed
    by batched insights and (for ads) asset resolution.

WHY:
    - Account-level edges cost three paginated fetches regardless of how many
      campaigns the account has (per-parent fetches cost one per campaign)
    - Insights go through the batch endpoint, 50 entities per HTTP call
    - Parent/child links go through id maps returned by persistence, so a
      child whose parent is unknown is skipped instead of stored dangling

PHASES:
    fetch_campaigns -> fetch_ad_sets -> fetch_ads -> done
    Any fatal error moves the pass to `error` and surfaces as SyncPhaseError
    carrying the records of the phases that completed.

MEDIA RE-SYNC:
    `refresh_assets` re-resolves the images of already stored creatives
    without re-running the hierarchy fetch (optionally only the ones that
    ended up without an image).

REFERENCES:
    - adsync/workers/sync_worker.py (calls run() under the integration lock)
    - https://developers.facebook.com/docs/marketing-api/reference/ad-account
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from adsync.exceptions import OrphanReference, SyncPhaseError
from adsync.models import AssetQuality, Integration, SyncPhase, ThumbnailState
from adsync.schemas import (
    AdSetRecord,
    AdSetRef,
    CampaignRecord,
    CreativeRecord,
    ExternalAd,
    ExternalAdSet,
    ExternalCampaign,
    InsightMetrics,
    MediaResyncResult,
    SyncResult,
)
from adsync.services.asset_resolver import AdReference, AssetResolver, ExistingAsset, ResolvedAsset
from adsync.services.asset_store import AssetOwner
from adsync.services.meta_batch import BatchRequest, MetaBatchExecutor
from adsync.services.meta_graph_client import MetaGraphClient
from adsync.services.meta_normalizer import (
    DEFAULT_CONVERSION_ACTION_TYPES,
    dedupe_by_id,
    extract_insight_row,
    map_status,
    minor_units_to_decimal,
    normalize_budget,
    parse_insights,
)
from adsync.services.meta_paginator import MetaPaginator
from adsync.services.sync_control import SyncControl
from adsync.services.sync_store import SyncPersistence

logger = logging.getLogger(__name__)

CAMPAIGN_FIELDS = "id,name,status,effective_status,objective,daily_budget,lifetime_budget,updated_time"
AD_SET_FIELDS = (
    "id,name,campaign_id,status,effective_status,daily_budget,lifetime_budget,"
    "bid_strategy,targeting,start_time,end_time"
)
CREATIVE_FIELDS = (
    "id,name,title,body,image_hash,image_url,thumbnail_url,video_id,"
    "call_to_action_type,object_story_spec,asset_feed_spec,effective_object_story_id"
)
AD_FIELDS = f"id,name,adset_id,campaign_id,status,effective_status,creative{{{CREATIVE_FIELDS}}}"
INSIGHT_FIELDS = "impressions,clicks,spend,ctr,cpc,actions"

# on_progress(phase, items processed so far in the phase, message)
ProgressCallback = Callable[[SyncPhase, int, str], None]


class MetaSyncOrchestrator:
    """Sequences one sync pass over the campaign -> ad set -> ad hierarchy.

    Usage:
        orchestrator = MetaSyncOrchestrator(
            integration, client, paginator, batch, resolver, store,
        )
        result = orchestrator.run(since=last_sync_at)
        store.save_creatives(result.creatives)
    """

    def __init__(
        self,
        integration: Integration,
        client: MetaGraphClient,
        paginator: MetaPaginator,
        batch: MetaBatchExecutor,
        resolver: AssetResolver,
        persistence: SyncPersistence,
        *,
        page_limit: int = 100,
        conversion_action_types: Sequence[str] = DEFAULT_CONVERSION_ACTION_TYPES,
        control: Optional[SyncControl] = None,
    ):
        self.integration = integration
        self.client = client
        self.paginator = paginator
        self.batch = batch
        self.resolver = resolver
        self.persistence = persistence
        self.page_limit = page_limit
        self.conversion_action_types = tuple(conversion_action_types)
        self.control = control or client.control
        self._processed = 0
        self._on_progress: Optional[ProgressCallback] = None

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def run(
        self,
        since: Optional[datetime] = None,
        existing_assets: Optional[Dict[str, ExistingAsset]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """Run a full (or incremental) pass.

        Args:
            since: Only campaigns updated after this instant are fetched.
                Ad sets and ads are always fetched account-wide.
            existing_assets: Ad external id -> image stored by earlier passes.
                Full-quality image creatives found here skip resolution and
                download, keeping their recorded quality and source.
            on_progress: Optional callback, see ProgressCallback

        Returns:
            SyncResult with records, id maps and counters. Creatives are
            returned unsaved; the caller persists them.

        Raises:
            SyncPhaseError: Any fatal error, with phase context and the
                partial result of completed phases.
        """
        started = time.monotonic()
        self._on_progress = on_progress
        result = SyncResult(
            integration_id=self.integration.id,
            incremental=since is not None,
            since=since,
        )

        logger.info(
            "[META_SYNC] Starting %s sync for integration %s (%s)",
            "incremental" if since else "full",
            self.integration.id,
            self.integration.ad_account_id,
        )

        try:
            self._enter(result, SyncPhase.fetch_campaigns)
            self._sync_campaigns(result, since)

            self._enter(result, SyncPhase.fetch_ad_sets)
            self._sync_ad_sets(result)

            self._enter(result, SyncPhase.fetch_ads)
            self._sync_ads(result, existing_assets or {})
        except Exception as e:
            failed_phase = result.phase
            result.phase = SyncPhase.error
            result.stats.duration_seconds = round(time.monotonic() - started, 3)
            logger.error(
                "[META_SYNC] Integration %s failed during %s after %d items: %s",
                self.integration.id, failed_phase.value, self._processed, e,
            )
            raise SyncPhaseError(failed_phase, self._processed, e, partial_result=result) from e

        result.phase = SyncPhase.done
        result.stats.duration_seconds = round(time.monotonic() - started, 3)
        self._progress(SyncPhase.done, len(result.creatives), "Sync complete")

        stats = result.stats
        logger.info(
            "[META_SYNC] Integration %s done in %.1fs: %d campaigns, %d ad sets, %d creatives "
            "(orphans=%d, failed_assets=%d, degraded_assets=%d, failed_insights=%d, duplicates=%d)",
            self.integration.id, stats.duration_seconds,
            len(result.campaigns), len(result.ad_sets), len(result.creatives),
            stats.skipped_orphans, stats.failed_asset_resolutions, stats.degraded_assets,
            stats.failed_insights, stats.duplicate_ids,
        )
        return result

    # =========================================================================
    # PHASES
    # =========================================================================

    def _sync_campaigns(self, result: SyncResult, since: Optional[datetime]) -> None:
        params: Dict[str, Any] = {"fields": CAMPAIGN_FIELDS, "limit": self.page_limit}
        if since is not None:
            params["filtering"] = incremental_filter(since)

        raw = self._fetch_edge("campaigns", params, SyncPhase.fetch_campaigns)
        raw, duplicates = dedupe_by_id(raw, "campaign")
        result.stats.duplicate_ids += duplicates
        result.stats.campaigns_fetched = len(raw)

        records: List[CampaignRecord] = []
        for item in raw:
            campaign = ExternalCampaign.model_validate(item)
            status, raw_status = map_status(campaign.effective_status, campaign.status)
            records.append(CampaignRecord(
                external_id=campaign.id,
                integration_id=self.integration.id,
                name=campaign.name,
                status=status,
                raw_status=raw_status,
                objective=campaign.objective,
                budget=normalize_budget(campaign.daily_budget, campaign.lifetime_budget),
                account_name=self.integration.account_name,
            ))
            self._processed += 1

        result.campaign_id_map = dict(self.persistence.save_campaigns(records))
        result.campaigns = records
        self._progress(SyncPhase.fetch_campaigns, len(records), f"Synced {len(records)} campaigns")

    def _sync_ad_sets(self, result: SyncResult) -> None:
        params = {"fields": AD_SET_FIELDS, "limit": self.page_limit}
        raw = self._fetch_edge("adsets", params, SyncPhase.fetch_ad_sets)
        raw, duplicates = dedupe_by_id(raw, "ad set")
        result.stats.duplicate_ids += duplicates
        result.stats.ad_sets_fetched = len(raw)

        kept: List[ExternalAdSet] = []
        for item in raw:
            ad_set = ExternalAdSet.model_validate(item)
            try:
                self._require_parent("ad set", ad_set.id, ad_set.campaign_id, result.campaign_id_map)
            except OrphanReference as e:
                logger.warning("[META_SYNC] Skipping orphan: %s", e)
                result.stats.skipped_orphan_ad_sets += 1
                result.stats.skipped_orphans += 1
                continue
            kept.append(ad_set)

        insights = self._fetch_insights([a.id for a in kept], result)

        records: List[AdSetRecord] = []
        for ad_set in kept:
            status, raw_status = map_status(ad_set.effective_status, ad_set.status)
            metrics = insights.get(ad_set.id) or InsightMetrics()
            records.append(AdSetRecord(
                external_id=ad_set.id,
                campaign_id=result.campaign_id_map[ad_set.campaign_id],
                campaign_external_id=ad_set.campaign_id,
                name=ad_set.name,
                status=status,
                raw_status=raw_status,
                budget=normalize_budget(ad_set.daily_budget, ad_set.lifetime_budget),
                daily_budget=minor_units_to_decimal(ad_set.daily_budget),
                lifetime_budget=minor_units_to_decimal(ad_set.lifetime_budget),
                bid_strategy=ad_set.bid_strategy,
                targeting=ad_set.targeting,
                start_time=ad_set.start_time,
                end_time=ad_set.end_time,
                impressions=metrics.impressions,
                clicks=metrics.clicks,
                spend=metrics.spend,
            ))
            self._processed += 1

        # Ad sets are always fetched account-wide, so every linkable parent
        # of this pass's ads is in `records`
        saved = self.persistence.save_ad_sets(records)
        result.ad_set_id_map = {
            record.external_id: AdSetRef(ad_set_id=saved[record.external_id], campaign_id=record.campaign_id)
            for record in records
        }
        result.ad_sets = records
        self._progress(SyncPhase.fetch_ad_sets, len(records), f"Synced {len(records)} ad sets")

    def _sync_ads(self, result: SyncResult, existing_assets: Dict[str, ExistingAsset]) -> None:
        params = {"fields": AD_FIELDS, "limit": self.page_limit}
        raw = self._fetch_edge("ads", params, SyncPhase.fetch_ads)
        raw, duplicates = dedupe_by_id(raw, "ad")
        result.stats.duplicate_ids += duplicates
        result.stats.ads_fetched = len(raw)

        kept: List[ExternalAd] = []
        for item in raw:
            ad = ExternalAd.model_validate(item)
            try:
                self._require_parent("ad", ad.id, ad.adset_id, result.ad_set_id_map)
            except OrphanReference as e:
                logger.warning("[META_SYNC] Skipping orphan: %s", e)
                result.stats.skipped_orphan_ads += 1
                result.stats.skipped_orphans += 1
                continue
            kept.append(ad)

        insights = self._fetch_insights([a.id for a in kept], result)

        creatives: List[CreativeRecord] = []
        for index, ad in enumerate(kept, start=1):
            creatives.append(self._build_creative(ad, result, insights, existing_assets))
            self._processed += 1
            if index % 25 == 0:
                self._progress(SyncPhase.fetch_ads, index, f"Processed {index}/{len(kept)} ads")

        result.creatives = creatives
        self._progress(SyncPhase.fetch_ads, len(creatives), f"Synced {len(creatives)} ads")

    # =========================================================================
    # MEDIA RE-SYNC
    # =========================================================================

    def refresh_assets(
        self,
        creatives: Sequence[CreativeRecord],
        only_missing: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MediaResyncResult:
        """Re-resolve the assets of stored creatives.

        The current creative payload of every ad is fetched through the batch
        endpoint, then resolved from scratch (stored locations are ignored).
        Copy, status and metrics of the records are left untouched.

        Args:
            creatives: Stored records to refresh
            only_missing: Only refresh records without an image, or videos
                whose thumbnail is missing
            on_progress: Optional callback, see ProgressCallback

        Returns:
            MediaResyncResult with the updated records (unsaved) and counters.
            Ads whose payload could not be fetched are counted as failed and
            left out of `creatives`.
        """
        self._on_progress = on_progress
        if only_missing:
            creatives = [record for record in creatives if needs_media_resync(record)]

        result = MediaResyncResult(
            integration_id=self.integration.id,
            only_missing=only_missing,
            requested=len(creatives),
        )
        logger.info(
            "[META_SYNC] Refreshing assets of %d creatives for integration %s (only_missing=%s)",
            len(creatives), self.integration.id, only_missing,
        )
        if not creatives:
            return result

        requests = [
            BatchRequest(f"{record.external_id}?fields=creative{{{CREATIVE_FIELDS}}}")
            for record in creatives
        ]
        bodies = self.batch.execute(requests)

        for index, (record, body) in enumerate(zip(creatives, bodies), start=1):
            self.control.check()
            payload = (body or {}).get("creative")
            if not isinstance(payload, dict):
                logger.warning(
                    "[META_SYNC] Could not fetch creative of ad %s, keeping stored assets", record.external_id
                )
                result.failed += 1
                continue

            owner = AssetOwner(
                integration_id=self.integration.id,
                ad_set_external_id=record.ad_set_external_id,
                ad_external_id=record.external_id,
                company_id=self.integration.company_id,
            )
            asset = self.resolver.resolve(AdReference(record.external_id, payload), owner)

            updated = record.model_copy(deep=True)
            apply_asset(updated, asset)
            if updated.asset_quality is AssetQuality.missing:
                result.no_image += 1
            else:
                result.updated += 1
                if updated.asset_quality is AssetQuality.degraded:
                    result.degraded += 1
            result.creatives.append(updated)

            if index % 25 == 0:
                self._progress(SyncPhase.refresh_assets, index, f"Refreshed {index}/{len(creatives)} creatives")

        self._progress(SyncPhase.done, len(result.creatives), "Media re-sync complete")
        logger.info(
            "[META_SYNC] Media re-sync for integration %s: %d updated (%d degraded), %d without image, %d failed",
            self.integration.id, result.updated, result.degraded, result.no_image, result.failed,
        )
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _build_creative(
        self,
        ad: ExternalAd,
        result: SyncResult,
        insights: Dict[str, InsightMetrics],
        existing_assets: Dict[str, ExistingAsset],
    ) -> CreativeRecord:
        parent = result.ad_set_id_map[ad.adset_id]
        owner = AssetOwner(
            integration_id=self.integration.id,
            ad_set_external_id=ad.adset_id,
            ad_external_id=ad.id,
            company_id=self.integration.company_id,
        )

        asset = self.resolver.resolve(
            AdReference(ad.id, ad.creative),
            owner,
            existing=existing_assets.get(ad.id),
        )

        stats = result.stats
        if asset is None or asset.quality is AssetQuality.missing:
            stats.failed_asset_resolutions += 1
        elif asset.quality is AssetQuality.degraded:
            stats.degraded_assets += 1
        if asset is not None and asset.reused:
            stats.reused_assets += 1

        status, raw_status = map_status(ad.effective_status, ad.status)
        metrics = insights.get(ad.id) or InsightMetrics()
        copy = creative_copy(ad.creative)

        record = CreativeRecord(
            external_id=ad.id,
            ad_set_id=parent.ad_set_id,
            campaign_id=parent.campaign_id,
            ad_set_external_id=ad.adset_id,
            name=ad.name,
            status=status,
            raw_status=raw_status,
            impressions=metrics.impressions,
            clicks=metrics.clicks,
            conversions=metrics.conversions,
            ctr=metrics.ctr,
            cpc=metrics.cpc,
            spend=metrics.spend,
            **copy,
        )
        if asset is not None:
            apply_asset(record, asset)
        return record

    def _fetch_edge(self, edge: str, params: Dict[str, Any], phase: SyncPhase) -> List[Dict[str, Any]]:
        url = self.client.build_url(f"{self.integration.ad_account_id}/{edge}", params)

        def on_page(page: int, total: int) -> None:
            self._progress(phase, total, f"Fetched {total} {edge} (page {page})")

        items = self.paginator.fetch_all_pages(url, on_page=on_page)
        logger.info(
            "[META_SYNC] Fetched %d %s for %s", len(items), edge, self.integration.ad_account_id
        )
        return items

    def _fetch_insights(self, entity_ids: List[str], result: SyncResult) -> Dict[str, InsightMetrics]:
        """Batch-fetch insights; entities whose sub-request failed are absent."""
        if not entity_ids:
            return {}

        requests = [BatchRequest(f"{entity_id}/insights?fields={INSIGHT_FIELDS}") for entity_id in entity_ids]
        bodies = self.batch.execute(requests)

        metrics: Dict[str, InsightMetrics] = {}
        for entity_id, body in zip(entity_ids, bodies):
            row = extract_insight_row(body)
            if row is None:
                result.stats.failed_insights += 1
                continue
            metrics[entity_id] = parse_insights(row, self.conversion_action_types)
        return metrics

    @staticmethod
    def _require_parent(kind: str, external_id: str, parent_id: Optional[str], id_map: Dict[str, Any]) -> None:
        if not parent_id or parent_id not in id_map:
            raise OrphanReference(kind, external_id, parent_id)

    def _enter(self, result: SyncResult, phase: SyncPhase) -> None:
        self.control.check()
        result.phase = phase
        self._processed = 0
        logger.info("[META_SYNC] Phase %s", phase.value)

    def _progress(self, phase: SyncPhase, count: int, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(phase, count, message)


def incremental_filter(since: datetime) -> str:
    """Graph `filtering` value selecting entities updated after `since`."""
    return json.dumps([
        {"field": "updated_time", "operator": "GREATER_THAN", "value": int(since.timestamp())}
    ])


def creative_copy(creative: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Headline, body and call to action, falling back to the story spec."""
    link_data = (creative.get("object_story_spec") or {}).get("link_data") or {}
    call_to_action = creative.get("call_to_action_type")
    if not call_to_action and isinstance(link_data.get("call_to_action"), dict):
        call_to_action = link_data["call_to_action"].get("type")
    return {
        "headline": creative.get("title") or link_data.get("name"),
        "body": creative.get("body") or link_data.get("message"),
        "call_to_action": call_to_action,
    }


def apply_asset(record: CreativeRecord, asset: Optional[ResolvedAsset]) -> None:
    """Copy a resolution outcome onto a record; None clears the stored image."""
    if asset is None:
        record.image_location = None
        record.image_locations = []
        record.video_location = None
        record.asset_quality = AssetQuality.missing
        record.asset_source = None
        return
    record.format = asset.format
    record.image_location = asset.image_location
    record.image_locations = list(asset.image_locations)
    record.video_location = asset.video_location
    record.thumbnail_state = asset.thumbnail_state
    record.asset_quality = asset.quality
    record.asset_source = asset.source


def needs_media_resync(record: CreativeRecord) -> bool:
    """True for creatives without an image or videos without a thumbnail."""
    return (
        not record.image_location
        or record.asset_quality is AssetQuality.missing
        or record.thumbnail_state is ThumbnailState.missing
    )
