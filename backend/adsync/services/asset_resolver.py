"""Creative asset resolution.

WHAT:
    Finds the highest-resolution image (or video) behind an ad creative and
    hands it to the Asset Store. Image creatives go through an ordered chain
    of strategies; carousels resolve every child; videos fetch a thumbnail
    set plus the source file.

WHY:
    Meta exposes the same picture in many places depending on how the ad
    was created (hash in the story spec, direct URL, dynamic asset feed,
    linked page post). Compliance review needs the original, not the
    64px thumbnail, and must be told when the thumbnail is all there is.

DESIGN:
    - Each strategy is a named callable (AdReference) -> Optional[SourceAsset]
    - `first_success` walks the ordered tuple; the order is data, so tests
      can inspect it directly (`AssetResolver.strategy_names`)
    - A step whose image the Asset Store rejects yields nothing, so the walk
      continues with the next step
    - Platform errors inside a strategy only disqualify that step
    - AuthError and cancellation always propagate

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/reference/ad-image
    - https://developers.facebook.com/docs/marketing-api/reference/ad-creative
"""

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

from adsync.exceptions import (
    AssetResolutionFailure,
    AuthError,
    MetaApiError,
    TransientNetworkError,
)
from adsync.models import AssetQuality, CreativeFormat, ThumbnailState
from adsync.services.asset_store import AssetOwner, AssetStore
from adsync.services.meta_graph_client import MetaGraphClient

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class AdReference:
    """The part of an ad the resolver needs."""

    ad_id: str
    creative: Dict[str, Any]

    @property
    def creative_id(self) -> Optional[str]:
        return self.creative.get("id")


@dataclass(frozen=True)
class SourceAsset:
    """A remote URL found by one strategy."""

    url: str
    strategy: str
    quality: AssetQuality = AssetQuality.full


@dataclass
class ResolvedAsset:
    """Outcome of resolving one creative, with stored locations."""

    format: CreativeFormat
    image_location: Optional[str] = None
    image_locations: List[str] = field(default_factory=list)
    video_location: Optional[str] = None
    thumbnail_state: ThumbnailState = ThumbnailState.not_applicable
    quality: AssetQuality = AssetQuality.full
    source: Optional[str] = None
    reused: bool = False

    @property
    def url(self) -> Optional[str]:
        return self.image_location


class ExistingAsset(NamedTuple):
    """Image stored by an earlier pass, with the quality it was stored at."""

    location: str
    quality: AssetQuality = AssetQuality.full
    source: Optional[str] = None


Strategy = Callable[[AdReference], Optional[SourceAsset]]


@dataclass(frozen=True)
class NamedStrategy:
    name: str
    run: Strategy


def first_success(strategies: Sequence[NamedStrategy], ref: AdReference) -> Optional[SourceAsset]:
    """Return the first strategy result that is not None, in order."""
    for strategy in strategies:
        result = strategy.run(ref)
        if result is not None:
            logger.debug("[ASSET_RESOLVER] Ad %s resolved by %s", ref.ad_id, strategy.name)
            return result
    return None


# =============================================================================
# PAYLOAD INSPECTION (pure)
# =============================================================================

def _story_spec(creative: Dict[str, Any]) -> Dict[str, Any]:
    spec = creative.get("object_story_spec")
    return spec if isinstance(spec, dict) else {}


def story_spec_hash(creative: Dict[str, Any]) -> Optional[str]:
    """Image hash from the story spec (link or photo data), else the creative's own."""
    spec = _story_spec(creative)
    for key in ("link_data", "photo_data"):
        data = spec.get(key) or {}
        if isinstance(data, dict) and data.get("image_hash"):
            return data["image_hash"]
    return creative.get("image_hash") or None


def asset_feed_hash(creative: Dict[str, Any]) -> Optional[str]:
    """Hash of the first image in a dynamic creative's asset feed."""
    feed = creative.get("asset_feed_spec") or {}
    images = feed.get("images") if isinstance(feed, dict) else None
    if images and isinstance(images[0], dict):
        return images[0].get("hash") or None
    return None


def carousel_children(creative: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Child attachments when the creative is a multi-card carousel."""
    link_data = _story_spec(creative).get("link_data") or {}
    children = link_data.get("child_attachments") if isinstance(link_data, dict) else None
    if isinstance(children, list) and len(children) > 1:
        return [child for child in children if isinstance(child, dict)]
    return []


def creative_video_id(creative: Dict[str, Any]) -> Optional[str]:
    if creative.get("video_id"):
        return creative["video_id"]
    video_data = _story_spec(creative).get("video_data") or {}
    if isinstance(video_data, dict):
        return video_data.get("video_id") or None
    return None


def detect_format(creative: Dict[str, Any]) -> CreativeFormat:
    if creative_video_id(creative):
        return CreativeFormat.video
    if carousel_children(creative):
        return CreativeFormat.carousel
    return CreativeFormat.image


def _pixels(thumbnail: Dict[str, Any]) -> int:
    try:
        return int(thumbnail.get("width") or 0) * int(thumbnail.get("height") or 0)
    except (TypeError, ValueError):
        return 0


def pick_thumbnail(thumbnails: Sequence[Dict[str, Any]]) -> Optional[str]:
    """Largest thumbnail by width x height.

    Meta lists thumbnails smallest first, so ties (and entries without
    dimensions) go to the later entry. `is_preferred` marks the frame the
    advertiser chose, not the resolution, and is not used.
    """
    best = None
    best_pixels = -1
    for thumbnail in thumbnails:
        if not thumbnail.get("uri"):
            continue
        pixels = _pixels(thumbnail)
        if pixels >= best_pixels:
            best, best_pixels = thumbnail, pixels
    return best["uri"] if best else None


# =============================================================================
# RESOLVER
# =============================================================================

class AssetResolver:
    """Resolves and stores the best asset for each creative.

    Usage:
        resolver = AssetResolver(client, "act_123", store)
        asset = resolver.resolve(AdReference(ad["id"], ad["creative"]), owner)
        if asset is None or asset.quality is AssetQuality.missing:
            ...  # keep the creative without an image
    """

    def __init__(self, client: MetaGraphClient, ad_account_id: str, store: AssetStore):
        self.client = client
        self.ad_account_id = ad_account_id
        self.store = store
        self._hash_cache: Dict[str, Optional[str]] = {}

        self.image_strategies: tuple = (
            NamedStrategy("story_spec_hash", self._guarded("story_spec_hash", self._from_story_spec_hash)),
            NamedStrategy("direct_image_url", self._from_direct_url),
            NamedStrategy("asset_feed_hash", self._guarded("asset_feed_hash", self._from_asset_feed_hash)),
            NamedStrategy("creative_detail", self._guarded("creative_detail", self._from_creative_detail)),
            NamedStrategy("thumbnail", self._from_thumbnail),
        )

    @property
    def strategy_names(self) -> List[str]:
        return [strategy.name for strategy in self.image_strategies]

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def resolve(
        self,
        ref: AdReference,
        owner: AssetOwner,
        existing: Optional[ExistingAsset] = None,
    ) -> Optional[ResolvedAsset]:
        """Resolve, store and describe the creative's assets.

        Args:
            ref: Ad id + creative payload
            owner: Ownership context passed to the Asset Store
            existing: Image stored by a previous sync. A full-quality one
                skips lookups and downloads for single-image creatives; a
                degraded one is re-resolved in case the original is back.

        Returns:
            ResolvedAsset, or None when no image could be resolved/stored.
            Video creatives always return a ResolvedAsset so the thumbnail
            sentinel is recorded.
        """
        creative_format = detect_format(ref.creative)

        if creative_format is CreativeFormat.video:
            return self._resolve_video(ref, owner)

        if creative_format is CreativeFormat.carousel:
            carousel = self._resolve_carousel(ref, owner)
            if carousel is not None:
                return carousel
            logger.info(
                "[ASSET_RESOLVER] No carousel child resolved for ad %s, using image chain", ref.ad_id
            )
        elif existing is not None and existing.quality is AssetQuality.full:
            return ResolvedAsset(
                format=creative_format,
                image_location=existing.location,
                image_locations=[existing.location],
                quality=existing.quality,
                source=existing.source or "existing",
                reused=True,
            )

        try:
            return self._resolve_image(ref, owner, creative_format)
        except AssetResolutionFailure as e:
            logger.warning("[ASSET_RESOLVER] %s", e)
            return None

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    def _resolve_image(self, ref: AdReference, owner: AssetOwner, creative_format: CreativeFormat) -> ResolvedAsset:
        stored = first_success(
            [NamedStrategy(s.name, self._stored(s, owner)) for s in self.image_strategies],
            ref,
        )
        if stored is None:
            raise AssetResolutionFailure(ref.ad_id, "no strategy produced a storable image")

        if stored.quality is AssetQuality.degraded:
            logger.warning(
                "[ASSET_RESOLVER] Ad %s only has a low-resolution thumbnail", ref.ad_id
            )

        return ResolvedAsset(
            format=creative_format,
            image_location=stored.url,
            image_locations=[stored.url],
            quality=stored.quality,
            source=stored.strategy,
        )

    def _stored(self, strategy: NamedStrategy, owner: AssetOwner) -> Strategy:
        """Wrap a strategy so its result is the stored location, not the remote URL."""

        def run(ref: AdReference) -> Optional[SourceAsset]:
            source = strategy.run(ref)
            if source is None:
                return None
            location = self.store.download_and_save(source.url, owner)
            if location is None:
                logger.info(
                    "[ASSET_RESOLVER] Store rejected %s image of ad %s, trying next step",
                    strategy.name, ref.ad_id,
                )
                return None
            return replace(source, url=location)

        return run

    def _resolve_carousel(self, ref: AdReference, owner: AssetOwner) -> Optional[ResolvedAsset]:
        locations: List[str] = []
        for position, child in enumerate(carousel_children(ref.creative)):
            url = None
            image_hash = child.get("image_hash")
            if image_hash:
                url = self._guarded("carousel_child_hash", lambda _: self.lookup_image_hash(image_hash))(ref)
            if not url:
                url = child.get("picture") or child.get("image_url")
            if not url:
                logger.info("[ASSET_RESOLVER] Carousel card %d of ad %s has no image", position, ref.ad_id)
                continue

            location = self.store.download_and_save(url, owner)
            if location:
                locations.append(location)

        if not locations:
            return None

        return ResolvedAsset(
            format=CreativeFormat.carousel,
            image_location=locations[0],
            image_locations=locations,
            source="carousel_children",
        )

    def _resolve_video(self, ref: AdReference, owner: AssetOwner) -> ResolvedAsset:
        video_id = creative_video_id(ref.creative)

        thumbnail_url = self._guarded("video_thumbnails", self._video_thumbnail)(video_id)
        source_url = self._guarded("video_source", self._video_source)(video_id)

        image_location = self.store.download_and_save(thumbnail_url, owner) if thumbnail_url else None
        video_location = self.store.download_and_save(source_url, owner) if source_url else None

        if image_location is None:
            logger.warning("[ASSET_RESOLVER] Video %s of ad %s has no thumbnail", video_id, ref.ad_id)

        return ResolvedAsset(
            format=CreativeFormat.video,
            image_location=image_location,
            image_locations=[image_location] if image_location else [],
            video_location=video_location,
            thumbnail_state=ThumbnailState.resolved if image_location else ThumbnailState.missing,
            quality=AssetQuality.full if image_location else AssetQuality.missing,
            source="video_thumbnails" if image_location else None,
        )

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    def _from_story_spec_hash(self, ref: AdReference) -> Optional[SourceAsset]:
        image_hash = story_spec_hash(ref.creative)
        if not image_hash:
            return None
        url = self.lookup_image_hash(image_hash)
        return SourceAsset(url, "story_spec_hash") if url else None

    def _from_direct_url(self, ref: AdReference) -> Optional[SourceAsset]:
        url = ref.creative.get("image_url")
        return SourceAsset(url, "direct_image_url") if url else None

    def _from_asset_feed_hash(self, ref: AdReference) -> Optional[SourceAsset]:
        image_hash = asset_feed_hash(ref.creative)
        if not image_hash:
            return None
        url = self.lookup_image_hash(image_hash)
        return SourceAsset(url, "asset_feed_hash") if url else None

    def _from_creative_detail(self, ref: AdReference) -> Optional[SourceAsset]:
        if not ref.creative_id:
            return None
        detail = self.client.get(ref.creative_id, {"fields": "image_url,effective_object_story_id"})
        if detail.get("image_url"):
            return SourceAsset(detail["image_url"], "creative_detail")

        # Ads built from an existing page post carry the picture on the post
        story_id = detail.get("effective_object_story_id") or ref.creative.get("effective_object_story_id")
        if story_id:
            story = self.client.get(story_id, {"fields": "full_picture"})
            if story.get("full_picture"):
                return SourceAsset(story["full_picture"], "creative_detail")
        return None

    def _from_thumbnail(self, ref: AdReference) -> Optional[SourceAsset]:
        url = ref.creative.get("thumbnail_url")
        return SourceAsset(url, "thumbnail", AssetQuality.degraded) if url else None

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def lookup_image_hash(self, image_hash: str) -> Optional[str]:
        """Full-resolution URL for an ad image hash (memoized per pass)."""
        if image_hash in self._hash_cache:
            return self._hash_cache[image_hash]

        response = self.client.get(
            f"{self.ad_account_id}/adimages",
            {"hashes": json.dumps([image_hash]), "fields": "hash,url,permalink_url"},
        )
        rows = response.get("data") or []
        url = None
        if rows:
            url = rows[0].get("url") or rows[0].get("permalink_url")
        self._hash_cache[image_hash] = url
        return url

    def _video_thumbnail(self, video_id: str) -> Optional[str]:
        response = self.client.get(f"{video_id}/thumbnails", {"fields": "uri,width,height,is_preferred"})
        return pick_thumbnail(response.get("data") or [])

    def _video_source(self, video_id: str) -> Optional[str]:
        response = self.client.get(video_id, {"fields": "source"})
        return response.get("source")

    def _guarded(self, name: str, func: Callable[[Any], Optional[Any]]) -> Callable[[Any], Optional[Any]]:
        """Turn non-fatal platform errors inside a lookup into "no result"."""

        def run(arg: Any) -> Optional[Any]:
            try:
                return func(arg)
            except AuthError:
                raise
            except (MetaApiError, TransientNetworkError) as e:
                logger.info("[ASSET_RESOLVER] Step %s failed, skipping: %s", name, e)
                return None

        return run
