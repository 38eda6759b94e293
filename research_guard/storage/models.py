"""
Data models for storage layer.

Defines usage ledger entities and derived usage summaries.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EventType(Enum):
    """Billable action categories recorded in the usage ledger."""
    QUESTION_ASKED = "question_asked"
    REPORT_GENERATED = "report_generated"
    SOURCE_PROCESSED = "source_processed"


def _new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one billable action.

    Created once per billable action and handed to a ledger client for
    persistence. Once written, these records must never be modified.
    A zero-credit event is an audit entry for an attempted action that
    failed; it never reduces a balance.
    """
    user_id: str
    event_type: EventType
    credits: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_event_id)

    def __post_init__(self):
        """Validate event fields."""
        if not self.user_id or not str(self.user_id).strip():
            raise ValueError("user_id is required and cannot be empty")
        if not isinstance(self.event_type, EventType):
            raise ValueError(f"event_type must be an EventType, got {self.event_type!r}")
        if isinstance(self.credits, bool) or not isinstance(self.credits, int):
            raise ValueError("credits must be an integer")
        if self.credits < 0:
            raise ValueError("credits cannot be negative")
        if not self.id:
            raise ValueError("id cannot be empty")

    @property
    def succeeded(self) -> bool:
        """Whether the billed action completed (defaults to True)."""
        return bool(self.metadata.get("success", True))


@dataclass(frozen=True)
class UsageSummary:
    """Per-user usage aggregate, derived from usage events on demand."""
    user_id: str
    total_credits_used: int
    total_reports: int
    total_sources: int
    last_activity: Optional[datetime]
    credit_limit: int

    def __post_init__(self):
        """Validate aggregates are non-negative."""
        if self.total_credits_used < 0:
            raise ValueError("total_credits_used cannot be negative")
        if self.total_reports < 0:
            raise ValueError("total_reports cannot be negative")
        if self.total_sources < 0:
            raise ValueError("total_sources cannot be negative")
        if self.credit_limit < 0:
            raise ValueError("credit_limit cannot be negative")

    @property
    def remaining_credits(self) -> int:
        return max(self.credit_limit - self.total_credits_used, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "totalCreditsUsed": self.total_credits_used,
            "totalReports": self.total_reports,
            "totalSources": self.total_sources,
            "lastActivity": self.last_activity.isoformat() if self.last_activity else None,
            "creditLimit": self.credit_limit,
            "remainingCredits": self.remaining_credits,
        }

    @classmethod
    def empty(cls, user_id: str, credit_limit: int) -> "UsageSummary":
        """Zero-usage summary for a user with no recorded events."""
        return cls(
            user_id=user_id,
            total_credits_used=0,
            total_reports=0,
            total_sources=0,
            last_activity=None,
            credit_limit=credit_limit,
        )
