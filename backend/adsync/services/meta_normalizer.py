"""Pure normalization helpers for Meta payloads.

WHAT:
    Status translation, currency conversion, insight parsing and duplicate
    filtering. No I/O.

WHY:
    Keeps the orchestrator focused on sequencing and makes each rule testable
    in isolation.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from adsync.models import PLATFORM_STATUS_MAP, DisplayStatus
from adsync.schemas import InsightMetrics

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
DEFAULT_CONVERSION_ACTION_TYPES = ("offsite_conversion.fb_pixel_purchase",)


def map_status(*candidates: Optional[str]) -> Tuple[DisplayStatus, Optional[str]]:
    """Translate a platform status into the display vocabulary.

    Args:
        candidates: Status strings in priority order (effective_status first)

    Returns:
        (display status, raw platform string). Unknown strings map to
        DisplayStatus.unknown and the raw string is kept.

    Example:
        >>> map_status("CAMPAIGN_PAUSED", "ACTIVE")
        (<DisplayStatus.campaign_disabled: 'Parent campaign disabled'>, 'CAMPAIGN_PAUSED')
    """
    raw = next((c for c in candidates if c), None)
    if raw is None:
        return DisplayStatus.unknown, None

    display = PLATFORM_STATUS_MAP.get(raw.upper())
    if display is None:
        logger.debug("[META_NORMALIZER] Unmapped platform status: %s", raw)
        return DisplayStatus.unknown, raw
    return display, raw


def minor_units_to_decimal(value: Any) -> Optional[Decimal]:
    """Convert integer minor units (cents) to currency units.

    Example:
        >>> minor_units_to_decimal("150000")
        Decimal('1500.00')
    """
    if value is None or value == "":
        return None
    try:
        return (Decimal(str(value)) / 100).quantize(CENTS)
    except InvalidOperation:
        logger.warning("[META_NORMALIZER] Unparseable budget value: %r", value)
        return None


def normalize_budget(daily_budget: Any, lifetime_budget: Any) -> Optional[Decimal]:
    """Daily budget when set (non-zero), else lifetime budget, in currency units."""
    daily = minor_units_to_decimal(daily_budget)
    if daily:
        return daily
    lifetime = minor_units_to_decimal(lifetime_budget)
    if lifetime:
        return lifetime
    return None


def _decimal(value: Any, default: str = "0") -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal(default)
    except InvalidOperation:
        return Decimal(default)


def _int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def extract_insight_row(body: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First row of an insights response body, or None."""
    if not isinstance(body, dict):
        return None
    rows = body.get("data") or []
    return rows[0] if rows else {}


def parse_insights(
    row: Optional[Dict[str, Any]],
    conversion_action_types: Sequence[str] = DEFAULT_CONVERSION_ACTION_TYPES,
) -> InsightMetrics:
    """Parse one insights row into counters.

    Meta sends every metric as a string; missing rows mean zero activity.
    Conversions are summed over `conversion_action_types` in the actions array.
    """
    if not row:
        return InsightMetrics()

    conversions = 0
    for action in row.get("actions") or []:
        if action.get("action_type") in conversion_action_types:
            conversions += _int(action.get("value"))

    return InsightMetrics(
        impressions=_int(row.get("impressions")),
        clicks=_int(row.get("clicks")),
        conversions=conversions,
        spend=_decimal(row.get("spend"), "0.00").quantize(CENTS),
        ctr=_decimal(row.get("ctr")),
        cpc=_decimal(row.get("cpc")),
    )


def dedupe_by_id(items: Iterable[Dict[str, Any]], kind: str) -> Tuple[List[Dict[str, Any]], int]:
    """Drop repeated external ids from one paginated response.

    First occurrence wins; later copies are dropped and counted.

    Returns:
        (unique items in original order, number of duplicates dropped)
    """
    seen = set()
    unique: List[Dict[str, Any]] = []
    duplicates = 0
    for item in items:
        external_id = item.get("id")
        if external_id in seen:
            duplicates += 1
            logger.warning("[META_NORMALIZER] Duplicate %s id %s in response, keeping first", kind, external_id)
            continue
        seen.add(external_id)
        unique.append(item)
    return unique, duplicates
