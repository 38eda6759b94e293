"""
Repository pattern for usage ledger access.

Handles the append-only usage event table and the aggregation queries
that derive per-user usage summaries from it.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import EventType, UsageEvent, UsageSummary


_EVENT_COLUMNS = "id, user_id, event_type, credits, metadata, timestamp"


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row[0],
        user_id=row[1],
        event_type=EventType(row[2]),
        credits=row[3],
        metadata=json.loads(row[4]) if row[4] else {},
        timestamp=datetime.fromisoformat(row[5]),
    )


class UsageRepository:
    """Repository for the local append-only usage ledger.

    Every read derives its answer from the stored events; nothing is
    cached between calls, so concurrent writers are always observed.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the usage_event table if it doesn't exist.

        This creates an append-only ledger for immutable usage events.
        No UPDATE or DELETE operations should ever be performed on this table.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_event (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    credits INTEGER NOT NULL CHECK (credits >= 0),
                    metadata TEXT NOT NULL DEFAULT '{}',
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_event_user "
                "ON usage_event (user_id, timestamp)"
            )
            conn.commit()
        finally:
            conn.close()

    def insert_event(self, event: UsageEvent) -> bool:
        """Append a usage event to the ledger.

        The event id is the primary key, so writing the same event twice
        stores it once.

        Args:
            event: The usage event to record

        Returns:
            True if the event was stored, False if it was already present
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO usage_event ({_EVENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.user_id,
                    event.event_type.value,
                    event.credits,
                    json.dumps(event.metadata, default=str, sort_keys=True),
                    _to_utc(event.timestamp).isoformat(),
                ),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def fetch_events(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> List[UsageEvent]:
        """Fetch recent usage events, newest first.

        Args:
            user_id: Optional filter for a specific user
            event_type: Optional filter for a specific event type
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_EVENT_COLUMNS} FROM usage_event"
            params: List[Any] = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if event_type:
                conditions.append("event_type = ?")
                params.append(event_type.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY timestamp DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [_row_to_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def summarize_user(self, user_id: str, credit_limit: int) -> UsageSummary:
        """Aggregate a user's events into a usage summary.

        total_credits_used is the sum of credits over every event of the
        user, including zero-credit failure entries.

        Args:
            user_id: User to summarize
            credit_limit: Credit limit to report alongside the usage

        Returns:
            UsageSummary (all zeros for a user with no events)
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(credits), 0),
                    COALESCE(SUM(CASE WHEN event_type = ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN event_type = ? THEN 1 ELSE 0 END), 0),
                    MAX(timestamp)
                FROM usage_event
                WHERE user_id = ?
                """,
                (
                    EventType.REPORT_GENERATED.value,
                    EventType.SOURCE_PROCESSED.value,
                    user_id,
                ),
            )
            count, credits, reports, sources, last_activity = cursor.fetchone()
        finally:
            conn.close()

        if not count:
            return UsageSummary.empty(user_id, credit_limit)

        return UsageSummary(
            user_id=user_id,
            total_credits_used=int(credits),
            total_reports=int(reports),
            total_sources=int(sources),
            last_activity=datetime.fromisoformat(last_activity),
            credit_limit=credit_limit,
        )

    def usage_analytics(self, user_id: str, days: int = 7) -> List[Dict[str, Any]]:
        """Daily usage breakdown per event type for the last `days` days.

        Args:
            user_id: User to report on
            days: Number of days to look back

        Returns:
            Rows of {date, eventType, count, creditsUsed, avgProcessingTime},
            newest day first
        """
        if days <= 0:
            raise ValueError("days must be > 0")

        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT
                    substr(timestamp, 1, 10) AS day,
                    event_type,
                    COUNT(*),
                    COALESCE(SUM(credits), 0),
                    AVG(json_extract(metadata, '$.processingTime'))
                FROM usage_event
                WHERE user_id = ? AND timestamp >= ?
                GROUP BY day, event_type
                ORDER BY day DESC, event_type
                """,
                (user_id, cutoff),
            )
            return [
                {
                    "date": row[0],
                    "eventType": row[1],
                    "count": row[2],
                    "creditsUsed": row[3],
                    "avgProcessingTime": row[4],
                }
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage ledger schema at db_path."""
    UsageRepository(db_path).initialize_schema()
