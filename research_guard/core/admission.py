"""
Credit admission control for billable actions.

Every billable action runs through the same three steps, in order:
1. Check - the ledger must confirm the user can afford the action
2. Execute - the action runs only if admitted
3. Record - exactly one usage event is written once the action ends

A failed action is recorded with zero credits and success=false so the
attempt stays auditable, then its exception propagates.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

from research_guard.sdk.ledger_client import validate_credit_request
from research_guard.storage.models import EventType, UsageEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
INSUFFICIENT_CREDITS_MESSAGE = "Insufficient credits. Add credits to continue."


@dataclass(frozen=True)
class CreditCheckResult:
    """Outcome of a credit check. Never persisted."""
    admitted: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"admitted": self.admitted}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class Rejected:
    """Typed rejection returned instead of running an unaffordable action."""
    required_credits: int
    reason: str = INSUFFICIENT_CREDITS_MESSAGE
    code: str = INSUFFICIENT_CREDITS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.reason,
            "requiredCredits": self.required_credits,
        }


class InsufficientCredits(Exception):
    """Raised by metered() when the ledger denies an action."""
    code = INSUFFICIENT_CREDITS

    def __init__(self, message: str, required_credits: int):
        super().__init__(message)
        self.required_credits = required_credits


@dataclass
class Charge:
    """Credits and metadata to record once a metered action ends.

    Starts at the pre-check estimate; the action may lower or raise it
    to what was actually consumed.
    """
    credits: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def settle(self, credits: int) -> None:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits < 0:
            raise ValueError("settled credits must be a non-negative integer")
        self.credits = credits


class AdmissionController:
    """Gates billable actions on the ledger's credit check.

    Holds no balance state of its own; each check asks the ledger.
    """

    def __init__(self, ledger):
        """Initialize with a ledger client.

        Args:
            ledger: Object providing check_credits() and record_usage()
        """
        self.ledger = ledger

    def check(self, user_id: str, required_credits: int) -> CreditCheckResult:
        """Ask the ledger whether the user can afford required_credits.

        Raises:
            ValueError: If user_id is empty or required_credits is not positive
        """
        validate_credit_request(user_id, required_credits)
        if self.ledger.check_credits(user_id, required_credits):
            return CreditCheckResult(admitted=True)
        logger.warning(
            "Admission denied for user %s: %d credits required", user_id, required_credits
        )
        return CreditCheckResult(admitted=False, reason=INSUFFICIENT_CREDITS_MESSAGE)

    def admit(
        self,
        user_id: str,
        required_credits: int,
        action: Callable[[], T],
        event_type: EventType = EventType.QUESTION_ASKED,
        metadata: Optional[Dict[str, Any]] = None,
        settle: Optional[Callable[[T], int]] = None,
    ) -> Union[T, Rejected]:
        """Run action only if the user can afford it, then record usage.

        Args:
            user_id: User performing the action
            required_credits: Pre-check estimate of the action's cost
            action: Zero-argument callable performing the billable work
            event_type: Usage event type to record
            metadata: Extra metadata stored on the usage event
            settle: Optional function mapping the action's result to the
                credits actually consumed (defaults to required_credits)

        Returns:
            The action's result, or Rejected if the ledger denied it

        Raises:
            ValueError: If the request is malformed (nothing is recorded)
            Any exception raised by action, after a zero-credit failure
            event has been recorded
        """
        check = self.check(user_id, required_credits)
        if not check.admitted:
            return Rejected(required_credits=required_credits, reason=check.reason)

        with self._metering(user_id, event_type, required_credits, metadata) as charge:
            result = action()
            if settle is not None:
                charge.settle(settle(result))
        return result

    @contextmanager
    def metered(
        self,
        user_id: str,
        event_type: EventType,
        required_credits: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Charge]:
        """Context manager form of admit() for actions spanning a block.

        Raises InsufficientCredits on entry when the ledger denies the
        action. Records exactly one usage event on exit: the charged
        credits on success, zero credits with success=false on an
        exception, and the charged credits with aborted=true if the
        block is interrupted (e.g. a closed generator).
        """
        check = self.check(user_id, required_credits)
        if not check.admitted:
            raise InsufficientCredits(check.reason, required_credits)

        with self._metering(user_id, event_type, required_credits, metadata) as charge:
            yield charge

    @contextmanager
    def _metering(
        self,
        user_id: str,
        event_type: EventType,
        required_credits: int,
        metadata: Optional[Dict[str, Any]],
    ) -> Iterator[Charge]:
        charge = Charge(credits=required_credits, metadata=dict(metadata or {}))
        started = time.monotonic()
        try:
            yield charge
        except Exception as e:
            self._record(user_id, event_type, 0, charge.metadata, started, success=False, error=str(e))
            raise
        except BaseException:
            # Cancellation: the work already happened, so it stays billed.
            self._record(user_id, event_type, charge.credits, charge.metadata, started, aborted=True)
            raise
        else:
            self._record(user_id, event_type, charge.credits, charge.metadata, started)

    def _record(
        self,
        user_id: str,
        event_type: EventType,
        credits: int,
        metadata: Dict[str, Any],
        started: float,
        success: bool = True,
        error: Optional[str] = None,
        aborted: bool = False,
    ) -> None:
        event_metadata = dict(metadata)
        event_metadata.update({
            "creditsUsed": credits,
            "success": success,
            "processingTime": int((time.monotonic() - started) * 1000),
        })
        if error is not None:
            event_metadata["error"] = error[:500]
        if aborted:
            event_metadata["aborted"] = True

        self.ledger.record_usage(UsageEvent(
            user_id=user_id,
            event_type=event_type,
            credits=credits,
            metadata=event_metadata,
        ))
