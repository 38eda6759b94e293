"""
Unit tests for credit admission control.

Tests the check, execute, record ordering and its failure semantics.
"""

from unittest.mock import Mock

import pytest
import requests

from conftest import FakeLedger
from research_guard.config.loader import LedgerBackend, LedgerSettings
from research_guard.core.admission import (
    INSUFFICIENT_CREDITS,
    AdmissionController,
    InsufficientCredits,
    Rejected,
)
from research_guard.core.retry import NO_RETRY
from research_guard.sdk.ledger_client import LedgerClient
from research_guard.storage.models import EventType


class TestCheck:
    """Test the bare admission check."""

    def test_admitted(self, ledger):
        result = AdmissionController(ledger).check("u1", 1)

        assert result.admitted
        assert result.to_dict() == {"admitted": True}

    def test_denied_with_reason(self):
        result = AdmissionController(FakeLedger(available=0)).check("u1", 1)

        assert not result.admitted
        assert result.to_dict() == {
            "admitted": False,
            "reason": "Insufficient credits. Add credits to continue.",
        }

    def test_invalid_input_never_reaches_ledger(self, ledger):
        controller = AdmissionController(ledger)

        with pytest.raises(ValueError):
            controller.check("", 1)
        with pytest.raises(ValueError):
            controller.check("u1", 0)
        assert ledger.checks == []


class TestAdmit:
    """Test admit() around a billable action."""

    def test_insufficient_credits_skips_action(self):
        """Zero available credits: Rejected, action never invoked, nothing recorded."""
        ledger = FakeLedger(available=0)
        action = Mock()

        result = AdmissionController(ledger).admit("u1", 1, action)

        assert isinstance(result, Rejected)
        assert result.code == INSUFFICIENT_CREDITS
        assert result.to_dict()["requiredCredits"] == 1
        action.assert_not_called()
        assert ledger.events == []

    def test_success_records_once_after_action(self, ledger):
        order = []

        def action():
            order.append(("action", len(ledger.events)))
            return "report"

        result = AdmissionController(ledger).admit(
            "u1", 3, action,
            event_type=EventType.REPORT_GENERATED,
            metadata={"reportType": "summary"},
        )

        assert result == "report"
        assert order == [("action", 0)]
        assert len(ledger.events) == 1
        event = ledger.events[0]
        assert event.user_id == "u1"
        assert event.event_type == EventType.REPORT_GENERATED
        assert event.credits == 3
        assert event.metadata["creditsUsed"] == 3
        assert event.metadata["success"] is True
        assert event.metadata["reportType"] == "summary"
        assert "processingTime" in event.metadata

    def test_settle_records_actual_credits(self, ledger):
        result = AdmissionController(ledger).admit("u1", 3, lambda: [], settle=lambda hits: len(hits))

        assert result == []
        assert ledger.events[0].credits == 0
        assert ledger.events[0].metadata["creditsUsed"] == 0

    def test_failure_after_side_effect_records_zero_once(self, ledger):
        """An action that throws after producing output is recorded once, at zero credits."""
        side_effects = []

        def action():
            side_effects.append("report written")
            raise RuntimeError("renderer crashed")

        with pytest.raises(RuntimeError, match="renderer crashed"):
            AdmissionController(ledger).admit("u1", 3, action, event_type=EventType.REPORT_GENERATED)

        assert side_effects == ["report written"]
        assert len(ledger.events) == 1
        event = ledger.events[0]
        assert event.credits == 0
        assert event.metadata["creditsUsed"] == 0
        assert event.metadata["success"] is False
        assert event.metadata["error"] == "renderer crashed"

    def test_ledger_transport_error_fails_closed(self):
        """A ledger that cannot be reached never admits."""
        session = Mock()
        session.request.side_effect = requests.Timeout("timed out")
        ledger = LedgerClient(
            LedgerSettings(backend=LedgerBackend.HTTP, api_key="k"),
            session=session,
            retry_policy=NO_RETRY,
        )
        action = Mock()

        result = AdmissionController(ledger).admit("u1", 1, action)

        assert isinstance(result, Rejected)
        assert result.code == INSUFFICIENT_CREDITS
        action.assert_not_called()

    def test_each_admit_rechecks_the_ledger(self):
        ledger = FakeLedger(available=1)
        controller = AdmissionController(ledger)

        controller.admit("u1", 1, lambda: None)
        ledger.available = 0
        result = controller.admit("u1", 1, lambda: None)

        assert isinstance(result, Rejected)
        assert len(ledger.checks) == 2


class TestMetered:
    """Test the context manager form."""

    def test_denied_raises(self):
        with pytest.raises(InsufficientCredits) as exc_info:
            with AdmissionController(FakeLedger(available=0)).metered("u1", EventType.QUESTION_ASKED, 1):
                pytest.fail("block must not run")

        assert exc_info.value.code == INSUFFICIENT_CREDITS
        assert exc_info.value.required_credits == 1

    def test_charge_metadata_is_recorded(self, ledger):
        with AdmissionController(ledger).metered("u1", EventType.QUESTION_ASKED, 1, {"requestId": "r1"}) as charge:
            charge.metadata["toolRounds"] = 2

        event = ledger.events[0]
        assert event.credits == 1
        assert event.metadata["requestId"] == "r1"
        assert event.metadata["toolRounds"] == 2

    def test_cancellation_is_still_billed(self, ledger):
        def turn():
            with AdmissionController(ledger).metered("u1", EventType.QUESTION_ASKED, 1):
                yield "first chunk"
                yield "second chunk"

        stream = turn()
        assert next(stream) == "first chunk"
        stream.close()

        assert len(ledger.events) == 1
        assert ledger.events[0].credits == 1
        assert ledger.events[0].metadata["aborted"] is True

    def test_settle_rejects_negative(self, ledger):
        with pytest.raises(ValueError):
            with AdmissionController(ledger).metered("u1", EventType.QUESTION_ASKED, 1) as charge:
                charge.settle(-1)

        assert ledger.events[0].credits == 0
        assert ledger.events[0].metadata["success"] is False
