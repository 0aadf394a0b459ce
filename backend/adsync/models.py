"""Domain enums and the Integration model.

This module defines the closed vocabularies the engine emits (status,
creative format, asset quality) and the read-only Integration the engine
syncs. Normalized output records live in `adsync.schemas`.
"""

import enum
from dataclasses import dataclass
from typing import Optional


# Enums ---------------------------------------------------------

class PlatformEnum(str, enum.Enum):
    meta = "meta"
    google = "google"


class IntegrationStatusEnum(str, enum.Enum):
    active = "active"
    error = "error"
    reconnecting = "reconnecting"


class DisplayStatus(str, enum.Enum):
    """Normalized display status shown in the dashboard.

    Every platform status maps to exactly one member. Statuses we don't know
    map to `unknown`; records keep the raw platform string next to it.
    """
    active = "Active"
    not_delivering = "Not delivering"
    campaign_disabled = "Parent campaign disabled"
    adset_disabled = "Parent ad set disabled"
    archived = "Archived"
    deleted = "Deleted"
    in_review = "In review"
    processing = "Processing"
    rejected = "Rejected"
    with_issues = "With issues"
    unknown = "Unknown"


# Platform (effective_)status -> display status
PLATFORM_STATUS_MAP = {
    "ACTIVE": DisplayStatus.active,
    "PAUSED": DisplayStatus.not_delivering,
    "CAMPAIGN_PAUSED": DisplayStatus.campaign_disabled,
    "ADSET_PAUSED": DisplayStatus.adset_disabled,
    "ARCHIVED": DisplayStatus.archived,
    "DELETED": DisplayStatus.deleted,
    "PENDING_REVIEW": DisplayStatus.in_review,
    "PENDING_BILLING_INFO": DisplayStatus.in_review,
    "PREAPPROVED": DisplayStatus.in_review,
    "IN_PROCESS": DisplayStatus.processing,
    "DISAPPROVED": DisplayStatus.rejected,
    "WITH_ISSUES": DisplayStatus.with_issues,
}


class CreativeFormat(str, enum.Enum):
    """Type of creative media asset."""
    image = "image"
    video = "video"
    carousel = "carousel"


class AssetQuality(str, enum.Enum):
    """How good the resolved primary image is.

    - full: resolved through a hash lookup, direct URL or creative detail
    - degraded: only the low-resolution thumbnail was available
    - missing: nothing could be resolved or stored
    """
    full = "full"
    degraded = "degraded"
    missing = "missing"


class ThumbnailState(str, enum.Enum):
    """Thumbnail availability for video creatives.

    `missing` is an explicit sentinel so the UI can render a placeholder
    deterministically. `not_applicable` is used for non-video creatives.
    """
    resolved = "resolved"
    missing = "missing"
    not_applicable = "not_applicable"


class SyncPhase(str, enum.Enum):
    """Orchestrator state machine.

    fetch_campaigns -> fetch_ad_sets -> fetch_ads -> done, with `error`
    reachable from any phase.
    """
    fetch_campaigns = "fetch_campaigns"
    fetch_ad_sets = "fetch_ad_sets"
    fetch_ads = "fetch_ads"
    refresh_assets = "refresh_assets"  # media re-sync only
    done = "done"
    error = "error"


class SyncType(str, enum.Enum):
    """Kind of pass recorded in the sync history."""
    full = "full"
    incremental = "incremental"
    media = "media"


class SyncRunStatus(str, enum.Enum):
    running = "running"
    completed = "completed"
    partial = "partial"
    failed = "failed"
    cancelled = "cancelled"


# Models --------------------------------------------------------

@dataclass(frozen=True)
class Integration:
    """One connected ads account.

    Created by the connect flow and read-only to the sync engine. The token is
    refreshed by a separate collaborator.
    """
    id: str
    access_token: str
    account_id: str
    platform: PlatformEnum = PlatformEnum.meta
    status: IntegrationStatusEnum = IntegrationStatusEnum.active
    company_id: Optional[str] = None
    account_name: Optional[str] = None

    @property
    def ad_account_id(self) -> str:
        """Account id in Graph API form (`act_<digits>`)."""
        if self.account_id.startswith("act_"):
            return self.account_id
        return f"act_{self.account_id}"

    def __str__(self):
        return f"{self.platform.value}:{self.ad_account_id}"
