"""Cursor pagination over Graph API edges.

WHAT:
    Follows `paging.next` links until the platform stops returning one,
    sleeping a short, configurable delay between pages.

WHY:
    Full-account fetches for large accounts span dozens of pages. Pausing
    between them keeps a sync under the per-hour call quota.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from adsync.services.meta_graph_client import MetaGraphClient, redact_token

logger = logging.getLogger(__name__)

# Called after each page with (page_number, running_total)
PageCallback = Callable[[int, int], None]


class MetaPaginator:
    """Collects every item of a paginated Graph edge.

    Usage:
        paginator = MetaPaginator(client, page_delay=2.0)
        campaigns = paginator.fetch_all_pages(url, on_page=lambda page, total: ...)
    """

    def __init__(self, client: MetaGraphClient, page_delay: float = 2.0):
        self.client = client
        self.page_delay = page_delay

    def fetch_all_pages(
        self,
        initial_url: str,
        on_page: Optional[PageCallback] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch `initial_url` and every following page.

        Args:
            initial_url: Absolute, token-bearing URL of the first page
            on_page: Optional progress callback, invoked after each page

        Returns:
            All items in platform order. An empty first page returns [].
        """
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = initial_url
        page_count = 0

        logger.debug("[META_PAGINATOR] Starting pagination from %s", redact_token(initial_url)[:120])

        while next_url:
            page_count += 1
            data = self.client.fetch(next_url)
            page_items = data.get("data") or []
            items.extend(page_items)

            logger.debug(
                "[META_PAGINATOR] Page %d: %d items (total so far: %d)",
                page_count, len(page_items), len(items),
            )

            if on_page is not None:
                on_page(page_count, len(items))

            next_url = (data.get("paging") or {}).get("next")
            if next_url:
                self.client.control.sleep(self.page_delay)

        logger.info(
            "[META_PAGINATOR] Pagination finished: %d pages, %d items", page_count, len(items)
        )
        return items
