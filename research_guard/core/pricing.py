"""
Credit pricing for billable actions.

Maps each billable action to its fixed credit cost and the usage event
type it is recorded under.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict

from research_guard.config.loader import PricingSettings
from research_guard.storage.models import EventType


class BillableAction(Enum):
    """Actions that consume credits."""
    QUESTION = "questionAsked"
    REPORT = "reportGenerated"
    SOURCE = "sourceProcessed"
    IMAGE_OCR = "imageOCR"
    LIVE_DATA_REFRESH = "liveDataRefresh"
    CORPUS_SUMMARY = "corpusSummary"


# Usage event type each action is recorded under
ACTION_EVENT_TYPES: Dict[BillableAction, EventType] = {
    BillableAction.QUESTION: EventType.QUESTION_ASKED,
    BillableAction.REPORT: EventType.REPORT_GENERATED,
    BillableAction.SOURCE: EventType.SOURCE_PROCESSED,
    BillableAction.IMAGE_OCR: EventType.SOURCE_PROCESSED,
    BillableAction.LIVE_DATA_REFRESH: EventType.SOURCE_PROCESSED,
    BillableAction.CORPUS_SUMMARY: EventType.REPORT_GENERATED,
}


@dataclass(frozen=True)
class PricingTable:
    """Fixed credit prices for every billable action."""
    prices: Dict[BillableAction, int]

    def __post_init__(self):
        """Validate every action is priced with a positive integer."""
        missing = set(BillableAction) - set(self.prices)
        if missing:
            raise ValueError(f"Missing prices for actions: {sorted(a.value for a in missing)}")
        for action, credits in self.prices.items():
            if credits <= 0:
                raise ValueError(f"Price for {action.value} must be > 0")

    def credits_for(self, action: BillableAction) -> int:
        """Get the credit cost of an action.

        Args:
            action: Billable action

        Returns:
            Credits charged per invocation

        Raises:
            ValueError: If action is not a BillableAction
        """
        if action not in self.prices:
            raise ValueError(f"Unsupported action: {action}")
        return self.prices[action]

    def event_type_for(self, action: BillableAction) -> EventType:
        return ACTION_EVENT_TYPES[action]

    def as_dict(self) -> Dict[str, int]:
        """Public price list keyed by action name."""
        return {action.value: credits for action, credits in self.prices.items()}

    @classmethod
    def from_settings(cls, settings: PricingSettings) -> "PricingTable":
        return cls({
            BillableAction.QUESTION: settings.question_asked,
            BillableAction.REPORT: settings.report_generated,
            BillableAction.SOURCE: settings.source_processed,
            BillableAction.IMAGE_OCR: settings.image_ocr,
            BillableAction.LIVE_DATA_REFRESH: settings.live_data_refresh,
            BillableAction.CORPUS_SUMMARY: settings.corpus_summary,
        })


DEFAULT_PRICING = PricingTable.from_settings(PricingSettings())
