"""
Ledger provider clients.

Issues credit checks, usage records and usage summary queries against the
system of record for credit balances. Two implementations share one
interface: LedgerClient talks to the billing provider's REST API, and
LocalLedgerClient keeps the ledger in the local SQLite usage store.

Failure policy, identical for both:
- check_credits fails closed (any error denies)
- record_usage never raises on provider failure; it logs for reconciliation
- get_user_usage falls back to a zero-usage summary with a zero credit limit
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from research_guard.config.loader import LedgerBackend, LedgerSettings
from research_guard.core.retry import RetryPolicy
from research_guard.storage.models import UsageEvent, UsageSummary
from research_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Ledger provider transport or protocol failure."""


class LedgerTransportError(LedgerError):
    """Transient failure worth retrying (network error, 5xx, 429)."""


def validate_credit_request(user_id: str, required_credits: int) -> None:
    """Reject malformed credit requests before any provider call.

    Raises:
        ValueError: If user_id is empty or required_credits is not a
            positive integer
    """
    if not user_id or not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("user_id is required and cannot be empty")
    if isinstance(required_credits, bool) or not isinstance(required_credits, int):
        raise ValueError("required_credits must be an integer")
    if required_credits <= 0:
        raise ValueError("required_credits must be > 0")


class LedgerClient:
    """REST client for the external billing provider.

    Holds no balances or usage locally; the provider is the sole source
    of truth and is queried on every call.
    """

    def __init__(
        self,
        settings: LedgerSettings,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize the ledger client.

        Args:
            settings: Ledger connection settings
            session: HTTP session (defaults to a new requests.Session)
            retry_policy: Retry policy for transient failures (defaults
                to the one described by settings)
        """
        if not settings.api_key:
            logger.warning("Ledger API key not configured")

        self.base_url = settings.base_url.rstrip("/")
        self.timeout = settings.timeout_seconds
        self.default_credit_limit = settings.default_credit_limit
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=settings.max_retries,
            initial_backoff=settings.initial_backoff_seconds,
            max_backoff=settings.max_backoff_seconds,
        )
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {settings.api_key}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"

        def attempt() -> requests.Response:
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                raise LedgerTransportError(f"{method} {path} failed: {e}") from e
            if response.status_code >= 500 or response.status_code == 429:
                raise LedgerTransportError(f"{method} {path} returned {response.status_code}")
            return response

        return self.retry_policy.call(
            attempt,
            retry_on=(LedgerTransportError,),
            description=f"ledger {method} {path}",
        )

    def check_credits(self, user_id: str, required_credits: int) -> bool:
        """Check whether a user can afford an action.

        Args:
            user_id: User to check
            required_credits: Credits the action will consume

        Returns:
            True only if the provider reports enough available credits;
            False on insufficient balance or any provider error

        Raises:
            ValueError: If the request itself is malformed
        """
        validate_credit_request(user_id, required_credits)

        try:
            response = self._request("GET", f"/users/{quote(user_id, safe='')}/credits")
            if not response.ok:
                logger.warning(
                    "Credit check for user %s rejected by ledger: HTTP %s",
                    user_id, response.status_code,
                )
                return False
            available = response.json().get("available_credits")
            if isinstance(available, bool) or not isinstance(available, (int, float)):
                raise LedgerError(f"malformed available_credits: {available!r}")
            return available >= required_credits
        except (LedgerError, ValueError, AttributeError) as e:
            logger.error("Failed to check credits for user %s: %s", user_id, e)
            return False

    def record_usage(self, event: UsageEvent) -> None:
        """Record a usage event with the provider.

        The event id travels as the idempotency key, so a retried POST
        cannot bill the same action twice. Provider failures are logged
        for reconciliation and never propagate to the caller.

        Args:
            event: The usage event to record
        """
        payload = {
            "event_id": event.id,
            "user_id": event.user_id,
            "event_type": event.event_type.value,
            "credits_used": event.credits,
            "metadata": event.metadata,
            "timestamp": event.timestamp.isoformat(),
        }
        try:
            response = self._request(
                "POST",
                "/usage",
                json=payload,
                headers={"Idempotency-Key": event.id},
            )
            if not response.ok:
                raise LedgerError(f"POST /usage returned {response.status_code}")
        except LedgerError as e:
            logger.error(
                "Failed to record usage event %s (%s, %d credits) for user %s; "
                "needs reconciliation: %s",
                event.id, event.event_type.value, event.credits, event.user_id, e,
            )
            return

        logger.info(
            "Recorded usage: %s for user %s - %d credits",
            event.event_type.value, event.user_id, event.credits,
        )

    def get_user_usage(self, user_id: str) -> UsageSummary:
        """Get a user's aggregated usage.

        Args:
            user_id: User to summarize

        Returns:
            UsageSummary from the provider; the default summary for an
            unknown user; a zero-usage, zero-limit summary on error
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        try:
            response = self._request("GET", f"/users/{quote(user_id, safe='')}/usage")
            if response.status_code == 404:
                return UsageSummary.empty(user_id, self.default_credit_limit)
            if not response.ok:
                raise LedgerError(f"GET usage returned {response.status_code}")
            return self._parse_summary(user_id, response.json())
        except (LedgerError, ValueError, TypeError, AttributeError) as e:
            logger.error("Failed to get usage for user %s: %s", user_id, e)
            return UsageSummary.empty(user_id, 0)

    def _parse_summary(self, user_id: str, data: Dict[str, Any]) -> UsageSummary:
        last_activity = data.get("last_activity")
        return UsageSummary(
            user_id=user_id,
            total_credits_used=int(data.get("total_credits_used", data.get("total_credits", 0)) or 0),
            total_reports=int(data.get("reports_generated", 0) or 0),
            total_sources=int(data.get("sources_processed", 0) or 0),
            last_activity=datetime.fromisoformat(last_activity) if last_activity else None,
            credit_limit=int(data.get("credit_limit", self.default_credit_limit)),
        )


class LocalLedgerClient:
    """Ledger backed by the local SQLite usage store.

    Every user starts with default_credit_limit credits; the available
    balance is the limit minus the sum of recorded credits.
    """

    def __init__(self, repository: UsageRepository, default_credit_limit: int = 100):
        if default_credit_limit < 0:
            raise ValueError("default_credit_limit cannot be negative")
        self.repository = repository
        self.default_credit_limit = default_credit_limit

    def check_credits(self, user_id: str, required_credits: int) -> bool:
        validate_credit_request(user_id, required_credits)
        try:
            summary = self.repository.summarize_user(user_id, self.default_credit_limit)
        except sqlite3.Error as e:
            logger.error("Failed to check credits for user %s: %s", user_id, e)
            return False
        return summary.remaining_credits >= required_credits

    def record_usage(self, event: UsageEvent) -> None:
        try:
            inserted = self.repository.insert_event(event)
        except sqlite3.Error as e:
            logger.error(
                "Failed to record usage event %s for user %s; needs reconciliation: %s",
                event.id, event.user_id, e,
            )
            return
        if not inserted:
            logger.warning("Usage event %s already recorded, ignoring duplicate", event.id)
            return
        logger.info(
            "Recorded usage: %s for user %s - %d credits",
            event.event_type.value, event.user_id, event.credits,
        )

    def get_user_usage(self, user_id: str) -> UsageSummary:
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        try:
            return self.repository.summarize_user(user_id, self.default_credit_limit)
        except sqlite3.Error as e:
            logger.error("Failed to get usage for user %s: %s", user_id, e)
            return UsageSummary.empty(user_id, 0)


def build_ledger_client(settings: LedgerSettings):
    """Create the ledger client selected by settings.backend."""
    if settings.backend == LedgerBackend.HTTP:
        return LedgerClient(settings)
    repository = UsageRepository(settings.db_path)
    repository.initialize_schema()
    return LocalLedgerClient(repository, settings.default_credit_limit)
