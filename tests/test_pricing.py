"""
Unit tests for credit pricing.

Tests the price list, event type mapping and error handling.
"""

import pytest

from research_guard.config.loader import PricingSettings
from research_guard.core.pricing import DEFAULT_PRICING, BillableAction, PricingTable
from research_guard.storage.models import EventType


class TestPricingTable:
    """Test pricing table functionality."""

    def test_default_prices(self):
        assert DEFAULT_PRICING.as_dict() == {
            "questionAsked": 1,
            "reportGenerated": 3,
            "sourceProcessed": 1,
            "imageOCR": 2,
            "liveDataRefresh": 1,
            "corpusSummary": 2,
        }

    def test_credits_for(self):
        assert DEFAULT_PRICING.credits_for(BillableAction.REPORT) == 3
        assert DEFAULT_PRICING.credits_for(BillableAction.QUESTION) == 1

    def test_unsupported_action(self):
        with pytest.raises(ValueError, match="Unsupported action"):
            DEFAULT_PRICING.credits_for("reportGenerated")

    def test_event_types(self):
        assert DEFAULT_PRICING.event_type_for(BillableAction.QUESTION) == EventType.QUESTION_ASKED
        assert DEFAULT_PRICING.event_type_for(BillableAction.REPORT) == EventType.REPORT_GENERATED
        assert DEFAULT_PRICING.event_type_for(BillableAction.CORPUS_SUMMARY) == EventType.REPORT_GENERATED
        assert DEFAULT_PRICING.event_type_for(BillableAction.IMAGE_OCR) == EventType.SOURCE_PROCESSED

    def test_from_settings(self):
        table = PricingTable.from_settings(PricingSettings(report_generated=7))
        assert table.credits_for(BillableAction.REPORT) == 7

    def test_every_action_must_be_priced(self):
        with pytest.raises(ValueError, match="Missing prices"):
            PricingTable({BillableAction.QUESTION: 1})

    def test_prices_must_be_positive(self):
        prices = {action: 1 for action in BillableAction}
        prices[BillableAction.REPORT] = 0
        with pytest.raises(ValueError, match="must be > 0"):
            PricingTable(prices)
