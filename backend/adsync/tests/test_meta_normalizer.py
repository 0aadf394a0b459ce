"""Unit tests for the pure normalization helpers."""

from decimal import Decimal

import pytest

from adsync.models import DisplayStatus
from adsync.services.meta_normalizer import (
    dedupe_by_id,
    extract_insight_row,
    map_status,
    minor_units_to_decimal,
    normalize_budget,
    parse_insights,
)


class TestMapStatus:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("ACTIVE", DisplayStatus.active),
            ("PAUSED", DisplayStatus.not_delivering),
            ("CAMPAIGN_PAUSED", DisplayStatus.campaign_disabled),
            ("ADSET_PAUSED", DisplayStatus.adset_disabled),
            ("ARCHIVED", DisplayStatus.archived),
            ("DELETED", DisplayStatus.deleted),
            ("PENDING_REVIEW", DisplayStatus.in_review),
            ("IN_PROCESS", DisplayStatus.processing),
            ("DISAPPROVED", DisplayStatus.rejected),
            ("WITH_ISSUES", DisplayStatus.with_issues),
        ],
    )
    def test_known_statuses(self, raw, expected):
        assert map_status(raw) == (expected, raw)

    def test_effective_status_takes_priority(self):
        status, raw = map_status("ADSET_PAUSED", "ACTIVE")

        assert status is DisplayStatus.adset_disabled
        assert raw == "ADSET_PAUSED"

    def test_falls_back_to_configured_status(self):
        assert map_status(None, "PAUSED") == (DisplayStatus.not_delivering, "PAUSED")

    def test_unknown_status_keeps_raw_value(self):
        """WHAT: New platform statuses map to Unknown without losing the original string."""
        assert map_status("SOMETHING_NEW") == (DisplayStatus.unknown, "SOMETHING_NEW")

    def test_missing_status(self):
        assert map_status(None, None) == (DisplayStatus.unknown, None)


class TestBudgets:
    def test_minor_units_become_currency_units(self):
        assert minor_units_to_decimal("150000") == Decimal("1500.00")
        assert minor_units_to_decimal(1999) == Decimal("19.99")

    @pytest.mark.parametrize("value", [None, "", "abc"])
    def test_unusable_values_are_none(self, value):
        assert minor_units_to_decimal(value) is None

    def test_daily_budget_preferred(self):
        assert normalize_budget("5000", "900000") == Decimal("50.00")

    def test_zero_daily_falls_back_to_lifetime(self):
        assert normalize_budget("0", "900000") == Decimal("9000.00")

    def test_no_budget(self):
        assert normalize_budget(None, "0") is None


class TestInsights:
    def test_parses_string_metrics_and_purchase_conversions(self):
        row = {
            "impressions": "1200",
            "clicks": "34",
            "spend": "56.789",
            "ctr": "2.83",
            "cpc": "1.67",
            "actions": [
                {"action_type": "link_click", "value": "34"},
                {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "3"},
            ],
        }

        metrics = parse_insights(row)

        assert metrics.impressions == 1200
        assert metrics.clicks == 34
        assert metrics.conversions == 3
        assert metrics.spend == Decimal("56.79")
        assert metrics.ctr == Decimal("2.83")
        assert metrics.cpc == Decimal("1.67")

    def test_conversion_action_types_are_configurable(self):
        row = {"actions": [{"action_type": "lead", "value": "7"}]}

        assert parse_insights(row, ("lead",)).conversions == 7
        assert parse_insights(row).conversions == 0

    def test_empty_row_means_zero_activity(self):
        metrics = parse_insights({})

        assert metrics.impressions == 0
        assert metrics.spend == Decimal("0.00")

    def test_extract_insight_row(self):
        assert extract_insight_row({"data": [{"clicks": "1"}, {"clicks": "2"}]}) == {"clicks": "1"}
        assert extract_insight_row({"data": []}) == {}
        assert extract_insight_row(None) is None


class TestDedupe:
    def test_first_occurrence_wins(self):
        items = [
            {"id": "1", "name": "first"},
            {"id": "2", "name": "other"},
            {"id": "1", "name": "copy"},
        ]

        unique, duplicates = dedupe_by_id(items, "campaign")

        assert [i["name"] for i in unique] == ["first", "other"]
        assert duplicates == 1
