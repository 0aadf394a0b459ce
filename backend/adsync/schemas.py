"""Pydantic schemas for platform payloads and normalized sync output."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    AssetQuality,
    CreativeFormat,
    DisplayStatus,
    PlatformEnum,
    SyncPhase,
    SyncRunStatus,
    SyncType,
    ThumbnailState,
)


# Graph API wire shapes
# ---------------------------------------------------------------------
# Transient DTOs, only alive during one sync pass. Unknown fields are kept
# so nothing the platform sends is silently dropped.

class ExternalCampaign(BaseModel):
    """Campaign as returned by /<act>/campaigns."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = "Unnamed Campaign"
    status: Optional[str] = None
    effective_status: Optional[str] = None
    objective: Optional[str] = None
    daily_budget: Optional[Union[int, str]] = None
    lifetime_budget: Optional[Union[int, str]] = None
    updated_time: Optional[str] = None


class ExternalAdSet(BaseModel):
    """Ad set as returned by /<act>/adsets."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = "Unnamed Ad Set"
    campaign_id: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    daily_budget: Optional[Union[int, str]] = None
    lifetime_budget: Optional[Union[int, str]] = None
    bid_strategy: Optional[str] = None
    targeting: Optional[Dict[str, Any]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class ExternalAd(BaseModel):
    """Ad as returned by /<act>/ads, with the nested creative payload."""

    model_config = ConfigDict(extra="allow")

    id: str
    name: str = "Unnamed Ad"
    adset_id: Optional[str] = None
    campaign_id: Optional[str] = None
    status: Optional[str] = None
    effective_status: Optional[str] = None
    creative: Dict[str, Any] = Field(default_factory=dict)


class InsightMetrics(BaseModel):
    """Performance counters parsed from one insights row."""

    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    spend: Decimal = Decimal("0.00")
    ctr: Decimal = Decimal("0")
    cpc: Decimal = Decimal("0")


# Normalized records
# ---------------------------------------------------------------------
# Insert-ready output. Internal ids come from the persistence layer; the
# engine only fills the parent ids it read from the id maps.

class CampaignRecord(BaseModel):
    """Normalized campaign ready for persistence."""

    external_id: str
    platform: PlatformEnum = PlatformEnum.meta
    integration_id: str
    name: str
    status: DisplayStatus
    raw_status: Optional[str] = Field(
        default=None,
        description="Platform status string, preserved even when status is Unknown",
    )
    objective: Optional[str] = None
    budget: Optional[Decimal] = Field(
        default=None,
        description="Daily (or lifetime) budget in currency units",
    )
    account_name: Optional[str] = None


class AdSetRecord(BaseModel):
    """Normalized ad set ready for persistence."""

    external_id: str
    platform: PlatformEnum = PlatformEnum.meta
    campaign_id: str
    campaign_external_id: str
    name: str
    status: DisplayStatus
    raw_status: Optional[str] = None
    budget: Optional[Decimal] = None
    daily_budget: Optional[Decimal] = None
    lifetime_budget: Optional[Decimal] = None
    bid_strategy: Optional[str] = None
    targeting: Optional[Dict[str, Any]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    spend: Decimal = Decimal("0.00")


class CreativeRecord(BaseModel):
    """Normalized ad/creative ready for persistence.

    WHAT: One ad with its resolved assets, copy, and performance counters
    WHY: Downstream compliance analysis needs the best image it can get and
         must know when only a degraded thumbnail was available
    """

    external_id: str
    platform: PlatformEnum = PlatformEnum.meta
    ad_set_id: str
    campaign_id: str
    ad_set_external_id: str
    name: str
    status: DisplayStatus
    raw_status: Optional[str] = None
    format: CreativeFormat = CreativeFormat.image
    image_location: Optional[str] = Field(
        default=None,
        description="Stored location of the primary image",
    )
    image_locations: List[str] = Field(
        default_factory=list,
        description="Every stored image, in display order (carousel children)",
    )
    video_location: Optional[str] = None
    thumbnail_state: ThumbnailState = ThumbnailState.not_applicable
    asset_quality: AssetQuality = AssetQuality.missing
    asset_source: Optional[str] = Field(
        default=None,
        description="Name of the resolution step that produced the primary image",
    )
    headline: Optional[str] = None
    body: Optional[str] = None
    call_to_action: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    ctr: Decimal = Decimal("0")
    cpc: Decimal = Decimal("0")
    spend: Decimal = Decimal("0.00")


class AdSetRef(NamedTuple):
    """Value of the ad set id map: internal ad set id + its internal campaign id."""

    ad_set_id: str
    campaign_id: str


# Sync summary
# ---------------------------------------------------------------------

class SyncStats(BaseModel):
    """Per-pass counters.

    WHAT: Fetch counts plus every non-fatal condition the pass absorbed
    WHY: Lets the caller report "synced with 3 orphans skipped" instead of a
         binary success/failure
    """

    campaigns_fetched: int = 0
    ad_sets_fetched: int = 0
    ads_fetched: int = 0
    skipped_orphans: int = 0
    skipped_orphan_ad_sets: int = 0
    skipped_orphan_ads: int = 0
    failed_asset_resolutions: int = 0
    degraded_assets: int = 0
    reused_assets: int = 0
    failed_insights: int = 0
    duplicate_ids: int = 0
    duration_seconds: float = 0.0


class SyncResult(BaseModel):
    """Everything one sync pass produced."""

    integration_id: str
    phase: SyncPhase = SyncPhase.fetch_campaigns
    incremental: bool = False
    since: Optional[datetime] = None
    campaigns: List[CampaignRecord] = Field(default_factory=list)
    ad_sets: List[AdSetRecord] = Field(default_factory=list)
    creatives: List[CreativeRecord] = Field(default_factory=list)
    campaign_id_map: Dict[str, str] = Field(default_factory=dict)
    ad_set_id_map: Dict[str, AdSetRef] = Field(default_factory=dict)
    stats: SyncStats = Field(default_factory=SyncStats)


class SyncReport(BaseModel):
    """Summary returned by the sync worker.

    status is one of: completed, partial, failed.
    """

    integration_id: str
    success: bool
    status: str
    incremental: bool = False
    campaigns_synced: int = 0
    ad_sets_synced: int = 0
    creatives_synced: int = 0
    stats: SyncStats = Field(default_factory=SyncStats)
    failed_phase: Optional[SyncPhase] = None
    error: Optional[str] = None


class SyncRun(BaseModel):
    """One entry of an integration's sync history.

    WHAT: Written as `running` when a pass starts and rewritten when it ends
    WHY: The next pass reads the last completed run to decide between a full
         and an incremental sync
    """

    id: str
    integration_id: str
    sync_type: SyncType
    status: SyncRunStatus = SyncRunStatus.running
    started_at: datetime
    completed_at: Optional[datetime] = None
    since: Optional[datetime] = None
    error: Optional[str] = None
    stats: Dict[str, Any] = Field(default_factory=dict)


# Media re-sync
# ---------------------------------------------------------------------

class MediaResyncResult(BaseModel):
    """Outcome of re-resolving the assets of stored creatives."""

    integration_id: str
    only_missing: bool = False
    requested: int = 0
    updated: int = 0
    degraded: int = 0
    no_image: int = 0
    failed: int = 0
    creatives: List[CreativeRecord] = Field(default_factory=list)


class MediaResyncReport(BaseModel):
    """Summary returned by the media re-sync worker.

    status is one of: completed, failed.
    """

    integration_id: str
    success: bool
    status: str
    only_missing: bool = False
    requested: int = 0
    updated: int = 0
    degraded: int = 0
    no_image: int = 0
    failed: int = 0
    error: Optional[str] = None
