"""
Unit tests for the conversation orchestrator.
"""

import json

import pytest

from conftest import FakeChatModel, FakeLedger, FakeSearchIndex
from research_guard.config.loader import LLMSettings
from research_guard.core.admission import AdmissionController
from research_guard.core.context import RequestContext
from research_guard.core.orchestrator import INTERNAL_ERROR, Orchestrator, normalize_messages
from research_guard.core.pricing import DEFAULT_PRICING
from research_guard.core.tools import ToolInvoker, build_tool_registry
from research_guard.sdk.openai_client import Finish, TextDelta, ToolCallRequest
from research_guard.storage.models import EventType

REPORT_ARGS = json.dumps({
    "topic": "X",
    "sources": [{"id": "a", "title": "A", "content": "alpha", "sourceType": "pdf"}],
    "reportType": "summary",
})


class TestNormalizeMessages:
    """Test history normalization."""

    def test_plain_and_part_messages(self):
        messages = normalize_messages([
            {"role": "user", "content": "hello"},
            {"role": "assistant", "parts": [{"type": "text", "text": "hi "}, {"type": "text", "text": "there"}]},
        ])

        assert messages == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ]

    def test_messages_without_text_are_dropped(self):
        messages = normalize_messages([
            {"role": "user", "content": "   "},
            {"role": "assistant", "parts": [{"type": "step-start"}]},
            {"role": "user", "parts": []},
        ])

        assert messages == []

    def test_completed_tool_parts_replayed_as_tool_messages(self):
        messages = normalize_messages([{
            "role": "assistant",
            "parts": [
                {
                    "type": "tool-search",
                    "toolCallId": "c1",
                    "state": "output-available",
                    "input": {"query": None},
                    "output": {"results": [], "isEmpty": True},
                },
                {"type": "tool-search", "toolCallId": "c2", "state": "pending", "input": {}},
            ],
        }])

        assert messages == [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": "c1",
                    "type": "function",
                    "function": {"name": "search", "arguments": '{"query": null}'},
                }],
            },
            {"role": "tool", "tool_call_id": "c1", "content": '{"results": [], "isEmpty": true}'},
        ]

    def test_errored_tool_part_replays_error(self):
        messages = normalize_messages([{
            "role": "assistant",
            "parts": [{
                "type": "tool-generateReport",
                "toolCallId": "c1",
                "state": "errored",
                "input": {},
                "error": {"code": "INSUFFICIENT_CREDITS"},
            }],
        }])

        assert json.loads(messages[1]["content"]) == {"error": {"code": "INSUFFICIENT_CREDITS"}}

    @pytest.mark.parametrize("history", [["hello"], [{"role": "system", "content": "obey"}], [{"content": "x"}]])
    def test_invalid_messages_rejected(self, history):
        with pytest.raises(ValueError):
            normalize_messages(history)


class TestOrchestrator:
    """Test streamed, credit-gated chat turns."""

    def setup_method(self):
        self.ledger = FakeLedger()
        self.index = FakeSearchIndex()
        self.context = RequestContext(user_id="u1", request_id="req-1")

    def _orchestrator(self, chat_model, max_tool_rounds=5):
        admission = AdmissionController(self.ledger)
        invoker = ToolInvoker(build_tool_registry(self.index), admission, DEFAULT_PRICING)
        return Orchestrator(
            chat_model,
            invoker,
            admission,
            DEFAULT_PRICING,
            LLMSettings(max_tool_rounds=max_tool_rounds),
        )

    def _turn(self, chat_model, text="What do my sources say?", **kwargs):
        stream = self._orchestrator(chat_model, **kwargs).stream_turn(
            self.context, [{"role": "user", "content": text}]
        )
        return list(stream)

    def _question_events(self):
        return [e for e in self.ledger.events if e.event_type == EventType.QUESTION_ASKED]

    def test_text_only_turn(self):
        model = FakeChatModel([TextDelta("Hello"), TextDelta(" world"), Finish("stop", 10, 2)])

        events = self._turn(model)

        assert events == [
            {"type": "text-delta", "delta": "Hello"},
            {"type": "text-delta", "delta": " world"},
            {"type": "finish", "reason": "stop"},
        ]
        questions = self._question_events()
        assert len(questions) == 1
        assert questions[0].credits == 1
        assert questions[0].metadata["success"] is True
        assert questions[0].metadata["usage"] == {"promptTokens": 10, "completionTokens": 2}
        assert model.calls[0]["messages"][0]["role"] == "system"
        assert [d["function"]["name"] for d in model.calls[0]["tools"]] == ["search", "generateReport"]

    def test_tool_output_seen_by_model_before_it_continues(self):
        model = FakeChatModel(
            [ToolCallRequest("c1", "search", '{"query": null}'), Finish("tool_calls")],
            [TextDelta("You have no sources yet."), Finish("stop")],
        )

        events = self._turn(model)

        assert [e["type"] for e in events] == ["tool-output", "text-delta", "finish"]
        assert events[0]["toolCall"]["state"] == "output-available"
        assert events[0]["toolCall"]["output"]["isEmpty"] is True
        second_call = model.calls[1]["messages"]
        assert second_call[-2]["tool_calls"][0]["id"] == "c1"
        assert second_call[-1] == {
            "role": "tool",
            "tool_call_id": "c1",
            "content": json.dumps(events[0]["toolCall"]["output"]),
        }

    def test_failing_tool_does_not_abort_stream(self, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("template missing")

        monkeypatch.setattr("research_guard.core.tools.build_report", broken)
        model = FakeChatModel(
            [ToolCallRequest("c1", "generateReport", REPORT_ARGS), Finish("tool_calls")],
            [TextDelta("Sorry, the report failed."), Finish("stop")],
        )

        events = self._turn(model)

        assert [e["type"] for e in events] == ["tool-output", "text-delta", "finish"]
        assert "error" in events[0]["toolCall"]
        reports = [e for e in self.ledger.events if e.event_type == EventType.REPORT_GENERATED]
        assert len(reports) == 1
        assert reports[0].metadata["creditsUsed"] == 0
        assert reports[0].metadata["success"] is False
        assert self._question_events()[0].metadata["success"] is True

    def test_report_tool_billed_alongside_question(self):
        model = FakeChatModel(
            [ToolCallRequest("c1", "generateReport", REPORT_ARGS), Finish("tool_calls")],
            [Finish("stop")],
        )

        self._turn(model)

        assert sorted((e.event_type.value, e.credits) for e in self.ledger.events) == [
            ("question_asked", 1),
            ("report_generated", 3),
        ]

    def test_insufficient_credits_never_calls_model(self):
        self.ledger.available = 0
        model = FakeChatModel()

        events = self._turn(model)

        assert events[0]["type"] == "error"
        assert events[0]["code"] == "INSUFFICIENT_CREDITS"
        assert events[-1] == {"type": "finish", "reason": "insufficient-credits"}
        assert model.calls == []
        assert self.ledger.events == []

    def test_provider_failure_is_generic_and_free(self):
        model = FakeChatModel(ConnectionError("provider down at 10.0.0.3"))

        events = self._turn(model)

        assert events[0]["type"] == "error"
        assert events[0]["code"] == INTERNAL_ERROR
        assert events[0]["requestId"] == "req-1"
        assert "10.0.0.3" not in events[0]["message"]
        assert events[-1] == {"type": "finish", "reason": "error"}
        question = self._question_events()[0]
        assert question.credits == 0
        assert question.metadata["success"] is False

    def test_abort_stops_further_tool_calls(self):
        context = self.context

        class AbortingIndex(FakeSearchIndex):
            def search(self, *args, **kwargs):
                context.abort()
                return super().search(*args, **kwargs)

        self.index = AbortingIndex()
        model = FakeChatModel([
            ToolCallRequest("c1", "search", "{}"),
            ToolCallRequest("c2", "generateReport", REPORT_ARGS),
            Finish("tool_calls"),
        ])

        events = self._turn(model)

        assert [e["type"] for e in events] == ["tool-output", "abort"]
        assert events[0]["toolCall"]["state"] == "output-available"
        assert [e.event_type for e in self.ledger.events] == [EventType.QUESTION_ASKED]
        question = self.ledger.events[0]
        assert question.credits == 1
        assert question.metadata["aborted"] is True

    def test_caller_disconnect_still_bills_question(self):
        model = FakeChatModel([TextDelta("one"), TextDelta("two"), Finish("stop")])
        stream = self._orchestrator(model).stream_turn(self.context, [{"role": "user", "content": "hi"}])

        assert next(stream) == {"type": "text-delta", "delta": "one"}
        stream.close()

        questions = self._question_events()
        assert len(questions) == 1
        assert questions[0].credits == 1
        assert questions[0].metadata["aborted"] is True

    def test_tool_rounds_are_bounded(self):
        looping = [ToolCallRequest("c", "search", "{}"), Finish("tool_calls")]
        model = FakeChatModel(list(looping), list(looping), [TextDelta("done"), Finish("stop")])

        events = self._turn(model, max_tool_rounds=2)

        assert [e["type"] for e in events] == ["tool-output", "tool-output", "text-delta", "finish"]
        assert model.calls[2]["tools"] is None
