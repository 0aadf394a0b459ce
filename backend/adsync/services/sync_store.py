"""Persistence collaborator for sync passes.

WHAT:
    `SyncPersistence` is what the sync worker needs from storage:
    - save a tier of records and get back the external -> internal id map
      used to link the next tier
    - list an integration's stored creatives (media re-sync)
    - keep the sync history that decides between full and incremental passes
    `InMemorySyncStore` is the reference implementation used by the CLI and
    the tests.

WHY:
    The engine never generates internal ids itself. Ad sets can only be
    linked once their campaigns have ids, so saving happens between phases.

CONTRACT:
    - The returned map covers every entity the store knows for the platform,
      not only the records just saved. Incremental passes fetch only changed
      campaigns but still have to link ad sets of unchanged ones.
    - Saving the same record twice is an upsert (same internal id).
    - `record_sync_run` is an upsert keyed by run id.
"""

import logging
import uuid
from typing import Dict, List, Optional, Protocol, Sequence

from adsync.models import CreativeFormat, SyncRunStatus, SyncType
from adsync.schemas import AdSetRecord, CampaignRecord, CreativeRecord, SyncRun
from adsync.services.asset_resolver import ExistingAsset

logger = logging.getLogger(__name__)


class SyncPersistence(Protocol):
    def save_campaigns(self, records: Sequence[CampaignRecord]) -> Dict[str, str]:
        ...

    def save_ad_sets(self, records: Sequence[AdSetRecord]) -> Dict[str, str]:
        ...

    def save_creatives(self, records: Sequence[CreativeRecord]) -> int:
        ...

    def creatives_for_integration(self, integration_id: str) -> List[CreativeRecord]:
        ...

    def record_sync_run(self, run: SyncRun) -> None:
        ...

    def last_successful_sync(self, integration_id: str) -> Optional[SyncRun]:
        ...


class InMemorySyncStore:
    """Dict-backed store with deterministic ids.

    Internal ids are uuid5 of (kind, platform, external id), so two stores fed
    the same data agree on every id.
    """

    def __init__(self):
        self.campaigns: Dict[str, CampaignRecord] = {}
        self.ad_sets: Dict[str, AdSetRecord] = {}
        self.creatives: Dict[str, CreativeRecord] = {}
        self.sync_runs: Dict[str, SyncRun] = {}
        self._campaign_ids: Dict[str, str] = {}
        self._ad_set_ids: Dict[str, str] = {}

    @staticmethod
    def internal_id(kind: str, platform: str, external_id: str) -> str:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"adsync:{kind}:{platform}:{external_id}"))

    def save_campaigns(self, records: Sequence[CampaignRecord]) -> Dict[str, str]:
        for record in records:
            self.campaigns[record.external_id] = record
            self._campaign_ids[record.external_id] = self.internal_id(
                "campaign", record.platform.value, record.external_id
            )
        logger.info("[SYNC_STORE] Saved %d campaigns (%d known)", len(records), len(self.campaigns))
        return dict(self._campaign_ids)

    def save_ad_sets(self, records: Sequence[AdSetRecord]) -> Dict[str, str]:
        for record in records:
            self.ad_sets[record.external_id] = record
            self._ad_set_ids[record.external_id] = self.internal_id(
                "ad_set", record.platform.value, record.external_id
            )
        logger.info("[SYNC_STORE] Saved %d ad sets (%d known)", len(records), len(self.ad_sets))
        return dict(self._ad_set_ids)

    def save_creatives(self, records: Sequence[CreativeRecord]) -> int:
        for record in records:
            self.creatives[record.external_id] = record
        logger.info("[SYNC_STORE] Saved %d creatives (%d known)", len(records), len(self.creatives))
        return len(records)

    def creatives_for_integration(self, integration_id: str) -> List[CreativeRecord]:
        """Creatives whose campaign belongs to the integration."""
        campaign_ids = {
            self._campaign_ids[external_id]
            for external_id, campaign in self.campaigns.items()
            if campaign.integration_id == integration_id
        }
        return [record for record in self.creatives.values() if record.campaign_id in campaign_ids]

    def existing_assets(self) -> Dict[str, ExistingAsset]:
        """Ad external id -> stored image, for image creatives that have one."""
        return {
            external_id: ExistingAsset(record.image_location, record.asset_quality, record.asset_source)
            for external_id, record in self.creatives.items()
            if record.image_location and record.format is CreativeFormat.image
        }

    # -------------------------------------------------------------------------
    # Sync history
    # -------------------------------------------------------------------------

    def record_sync_run(self, run: SyncRun) -> None:
        self.sync_runs[run.id] = run.model_copy()
        logger.info(
            "[SYNC_STORE] Sync run %s for integration %s is %s",
            run.id, run.integration_id, run.status.value,
        )

    def last_successful_sync(self, integration_id: str) -> Optional[SyncRun]:
        """Latest completed full or incremental run (media re-syncs don't count)."""
        runs = [
            run for run in self.sync_runs.values()
            if run.integration_id == integration_id
            and run.status is SyncRunStatus.completed
            and run.sync_type is not SyncType.media
        ]
        return max(runs, key=lambda run: run.started_at, default=None)

    def snapshot(self) -> Dict[str, List[dict]]:
        """JSON-ready dump of everything stored."""
        return {
            "campaigns": [r.model_dump(mode="json") for r in self.campaigns.values()],
            "ad_sets": [r.model_dump(mode="json") for r in self.ad_sets.values()],
            "creatives": [r.model_dump(mode="json") for r in self.creatives.values()],
        }
