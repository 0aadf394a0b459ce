"""Asset Store contract and a filesystem-backed implementation.

WHAT:
    `download_and_save(source_url, owner)` downloads a creative asset and
    returns the location it was persisted at (or None).

WHY:
    Meta CDN URLs expire. The dashboard and the compliance AI need a stable
    copy, but the sync engine must not care where bytes end up, so it only
    talks to the `AssetStore` protocol.

WHERE USED:
    - adsync/services/asset_resolver.py (hands every resolved URL here)
    - adsync/workers/sync_worker.py (builds LocalAssetStore from settings)
"""

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)

OBJECT_PREFIX = "/objects/"
LEGACY_PREFIX = "/uploads/"
PLACEHOLDER_HOSTS = ("placeholder.com", "via.placeholder")

IMAGE_EXTENSIONS = (
    ("png", "png"),
    ("gif", "gif"),
    ("webp", "webp"),
    ("svg", "svg"),
    ("jpeg", "jpg"),
    ("jpg", "jpg"),
)
VIDEO_EXTENSIONS = (
    ("webm", "webm"),
    ("quicktime", "mov"),
    ("mov", "mov"),
    ("mp4", "mp4"),
)


@dataclass(frozen=True)
class AssetOwner:
    """Who an asset belongs to; used to organize stored objects."""

    integration_id: str
    ad_set_external_id: str
    ad_external_id: str
    company_id: Optional[str] = None


class AssetStore(Protocol):
    """Download-and-persist collaborator. Implementations own the backend."""

    def download_and_save(self, source_url: str, owner: AssetOwner) -> Optional[str]:
        ...


def _extension_for(content_type: Optional[str], source_url: str) -> str:
    content_type = (content_type or "").lower()
    if content_type.startswith("video/") or source_url.split("?")[0].endswith((".mp4", ".mov", ".webm")):
        table, default = VIDEO_EXTENSIONS, "mp4"
    else:
        table, default = IMAGE_EXTENSIONS, "jpg"
    for marker, extension in table:
        if marker in content_type:
            return extension
    return default


def source_digest(source_url: str) -> str:
    """sha1 of the URL without its query string.

    Meta CDN URLs carry signature parameters (oh, oe, _nc_*) that rotate on
    every API call while the path stays the same for the same image.
    """
    parts = urlsplit(source_url)
    stable = f"{parts.scheme}://{parts.netloc}{parts.path}"
    return hashlib.sha1(stable.encode("utf-8")).hexdigest()


class LocalAssetStore:
    """Stores assets on local disk under an object-style path.

    WHAT:
        Layout: <root>/<company>/<integration>/<ad_set>/<source_digest>.<ext>,
        returned as "/objects/<company>/<integration>/<ad_set>/<file>".

    WHY:
        File names derive from the source URL minus its signature, so
        re-syncing unchanged data yields the same locations. Any failure
        (download or disk) returns None; one ad never fails the pass.
    """

    def __init__(self, root_dir: str, http_client: httpx.Client):
        self.root = Path(root_dir)
        self.http = http_client

    def download_and_save(self, source_url: str, owner: AssetOwner) -> Optional[str]:
        # Already stored
        if source_url.startswith((OBJECT_PREFIX, LEGACY_PREFIX)):
            return source_url

        if any(host in source_url for host in PLACEHOLDER_HOSTS):
            return None

        if not source_url.startswith(("http://", "https://")):
            logger.debug("[ASSET_STORE] Skipping non-http source: %s", source_url[:80])
            return None

        try:
            response = self.http.get(source_url, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning("[ASSET_STORE] Download failed for ad %s: %s", owner.ad_external_id, e)
            return None

        if response.status_code != 200:
            logger.warning(
                "[ASSET_STORE] Download failed for ad %s: HTTP %d",
                owner.ad_external_id, response.status_code,
            )
            return None

        extension = _extension_for(response.headers.get("content-type"), source_url)
        relative = Path(
            owner.company_id or "default",
            owner.integration_id,
            owner.ad_set_external_id,
            f"{source_digest(source_url)}.{extension}",
        )

        target = self.root / relative
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(response.content)
        except OSError as e:
            logger.warning(
                "[ASSET_STORE] Could not write asset for ad %s to %s: %s",
                owner.ad_external_id, target, e,
            )
            return None

        location = OBJECT_PREFIX + relative.as_posix()
        logger.info("[ASSET_STORE] Saved asset for ad %s to %s", owner.ad_external_id, location)
        return location
