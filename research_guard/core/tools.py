"""
Tool registry and invoker.

The set of tools is closed: ToolName enumerates them and the registry
must map every member to exactly one ToolSpec with a typed input. The
invoker validates model-supplied arguments against that input type,
runs the handler (through admission control when the tool is billable)
and folds the outcome into a ToolCall record for the conversation.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .admission import AdmissionController, Rejected
from .context import RequestContext
from .pricing import BillableAction, PricingTable
from .reports import ReportSource, ReportType, build_report
from research_guard.sdk.search_client import MATCH_ALL, SearchError, SourceType

logger = logging.getLogger(__name__)

INVALID_TOOL_INPUT = "INVALID_TOOL_INPUT"
UNKNOWN_TOOL = "UNKNOWN_TOOL"
TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"

EMPTY_SEARCH_MESSAGE = "No sources found. Add a source first, then ask again."
SEARCH_FAILED_MESSAGE = "Failed to search sources"


class ToolName(Enum):
    """Every tool the model may call."""
    SEARCH = "search"
    GENERATE_REPORT = "generateReport"


class ToolCallState(Enum):
    PENDING = "pending"
    OUTPUT_AVAILABLE = "output-available"
    ERRORED = "errored"


class ToolCallStateError(Exception):
    """A ToolCall was moved out of a terminal state."""


@dataclass
class ToolCall:
    """A model-requested tool invocation.

    Starts pending and transitions exactly once, to output-available or
    errored; both are terminal.
    """
    id: str
    name: str
    input: Any
    state: ToolCallState = ToolCallState.PENDING
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None

    def complete(self, output: Dict[str, Any]) -> None:
        self._leave_pending()
        self.state = ToolCallState.OUTPUT_AVAILABLE
        self.output = output

    def fail(self, code: str, message: str, **details: Any) -> None:
        self._leave_pending()
        self.state = ToolCallState.ERRORED
        self.error = {"code": code, "message": message, **details}

    def _leave_pending(self) -> None:
        if self.state != ToolCallState.PENDING:
            raise ToolCallStateError(f"Tool call {self.id} already {self.state.value}")

    def result_payload(self) -> Dict[str, Any]:
        """What the model sees as the tool's result."""
        if self.state == ToolCallState.OUTPUT_AVAILABLE:
            return self.output
        if self.state == ToolCallState.ERRORED:
            return {"error": self.error}
        raise ToolCallStateError(f"Tool call {self.id} has no result yet")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": f"tool-{self.name}",
            "toolCallId": self.id,
            "state": self.state.value,
            "input": self.input,
        }
        if self.state == ToolCallState.OUTPUT_AVAILABLE:
            data["output"] = self.output
        elif self.state == ToolCallState.ERRORED:
            data["error"] = self.error
        return data


def _require_mapping(data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError("tool input must be an object")
    return data


def _reject_unknown_keys(data: Mapping[str, Any], allowed: set) -> None:
    extra = sorted(set(data) - allowed)
    if extra:
        raise ValueError(f"unexpected arguments: {extra}")


@dataclass(frozen=True)
class SearchInput:
    """Arguments of the search tool. A missing or blank query matches everything."""
    query: Optional[str] = None
    source_types: Tuple[SourceType, ...] = ()

    JSON_SCHEMA = {
        "type": "object",
        "properties": {
            "query": {
                "type": ["string", "null"],
                "description": "The search query to find relevant information. Null or empty lists every source.",
            },
            "sourceTypes": {
                "type": "array",
                "items": {"type": "string", "enum": [t.value for t in SourceType]},
                "description": "Filter by source types",
            },
        },
        "additionalProperties": False,
    }

    @property
    def effective_query(self) -> str:
        if self.query is None or not self.query.strip():
            return MATCH_ALL
        return self.query.strip()

    @classmethod
    def from_dict(cls, data: Any) -> "SearchInput":
        data = _require_mapping(data)
        _reject_unknown_keys(data, {"query", "sourceTypes"})

        query = data.get("query")
        if query is not None and not isinstance(query, str):
            raise ValueError("query must be a string or null")

        raw_types = data.get("sourceTypes")
        if raw_types is None:
            raw_types = []
        if not isinstance(raw_types, list):
            raise ValueError("sourceTypes must be an array")
        try:
            source_types = tuple(SourceType(t) for t in raw_types)
        except ValueError:
            raise ValueError(f"sourceTypes must be drawn from {[t.value for t in SourceType]}")

        return cls(query=query, source_types=source_types)


@dataclass(frozen=True)
class GenerateReportInput:
    """Arguments of the report generation tool."""
    topic: str
    sources: Tuple[ReportSource, ...]
    report_type: ReportType

    JSON_SCHEMA = {
        "type": "object",
        "properties": {
            "topic": {"type": "string", "description": "The main topic of the report"},
            "sources": {
                "type": "array",
                "description": "Relevant sources to include in the report",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "title": {"type": "string"},
                        "content": {"type": "string"},
                        "sourceType": {"type": "string"},
                    },
                    "required": ["id", "title", "content", "sourceType"],
                    "additionalProperties": False,
                },
            },
            "reportType": {
                "type": "string",
                "enum": [t.value for t in ReportType],
                "description": "Type of report to generate",
            },
        },
        "required": ["topic", "sources", "reportType"],
        "additionalProperties": False,
    }

    @classmethod
    def from_dict(cls, data: Any) -> "GenerateReportInput":
        data = _require_mapping(data)
        _reject_unknown_keys(data, {"topic", "sources", "reportType"})

        topic = data.get("topic")
        if not isinstance(topic, str) or not topic.strip():
            raise ValueError("topic must be a non-empty string")

        raw_sources = data.get("sources")
        if not isinstance(raw_sources, list):
            raise ValueError("sources must be an array")
        sources = []
        for index, raw in enumerate(raw_sources):
            if not isinstance(raw, Mapping):
                raise ValueError(f"sources[{index}] must be an object")
            _reject_unknown_keys(raw, {"id", "title", "content", "sourceType"})
            for key in ("id", "title", "content", "sourceType"):
                if not isinstance(raw.get(key), str):
                    raise ValueError(f"sources[{index}].{key} must be a string")
            if not raw["id"]:
                raise ValueError(f"sources[{index}].id cannot be empty")
            sources.append(ReportSource(
                id=raw["id"],
                title=raw["title"],
                content=raw["content"],
                source_type=raw["sourceType"],
            ))

        try:
            report_type = ReportType(data.get("reportType"))
        except ValueError:
            raise ValueError(f"reportType must be one of {[t.value for t in ReportType]}")

        return cls(topic=topic.strip(), sources=tuple(sources), report_type=report_type)


@dataclass(frozen=True)
class ToolSpec:
    """Complete declaration of one tool."""
    name: ToolName
    description: str
    input_type: type
    handler: Callable[[RequestContext, Any], Dict[str, Any]]
    billable_action: Optional[BillableAction] = None
    usage_metadata: Callable[[Any], Dict[str, Any]] = field(default=lambda tool_input: {})

    def declaration(self) -> Dict[str, Any]:
        """Function-calling declaration shown to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.input_type.JSON_SCHEMA,
            },
        }


def build_tool_registry(search_index, top_n: int = 5) -> Dict[ToolName, ToolSpec]:
    """Build the registry of every exposed tool.

    Args:
        search_index: Object with search(query, source_types=, top=)
        top_n: Number of search hits returned to the model

    Returns:
        Mapping with exactly one ToolSpec per ToolName
    """
    if top_n <= 0:
        raise ValueError("top_n must be > 0")

    def search(context: RequestContext, tool_input: SearchInput) -> Dict[str, Any]:
        try:
            hits = search_index.search(
                tool_input.effective_query,
                source_types=list(tool_input.source_types) or None,
                top=top_n,
            )
        except SearchError as e:
            logger.error("Search failed for request %s: %s", context.request_id, e)
            return {"results": [], "error": SEARCH_FAILED_MESSAGE}

        hits = sorted(hits, key=lambda hit: hit.relevance_score, reverse=True)[:top_n]
        if not hits:
            return {"results": [], "isEmpty": True, "message": EMPTY_SEARCH_MESSAGE}
        return {"results": [hit.to_dict() for hit in hits], "isEmpty": False}

    def generate_report(context: RequestContext, tool_input: GenerateReportInput) -> Dict[str, Any]:
        report = build_report(tool_input.topic, tool_input.sources, tool_input.report_type)
        return {"report": report.to_dict()}

    tools = {
        ToolName.SEARCH: ToolSpec(
            name=ToolName.SEARCH,
            description=(
                "Search through the user's indexed sources. Pass a null or empty query "
                "to list every source."
            ),
            input_type=SearchInput,
            handler=search,
        ),
        ToolName.GENERATE_REPORT: ToolSpec(
            name=ToolName.GENERATE_REPORT,
            description="Generate a structured research report with citations from the given sources.",
            input_type=GenerateReportInput,
            handler=generate_report,
            billable_action=BillableAction.REPORT,
            usage_metadata=lambda tool_input: {
                "reportType": tool_input.report_type.value,
                "sourcesUsed": len(tool_input.sources),
            },
        ),
    }

    missing = set(ToolName) - set(tools)
    if missing:
        raise KeyError(f"Tools without a spec: {sorted(t.value for t in missing)}")
    return tools


class ToolInvoker:
    """Validates and executes model tool calls."""

    def __init__(
        self,
        registry: Dict[ToolName, ToolSpec],
        admission: AdmissionController,
        pricing: PricingTable,
    ):
        self.registry = registry
        self.admission = admission
        self.pricing = pricing

    def declarations(self) -> List[Dict[str, Any]]:
        return [self.registry[name].declaration() for name in ToolName]

    def invoke(self, context: RequestContext, call_id: str, name: str, arguments: Any) -> ToolCall:
        """Run one tool call to a terminal state.

        Never raises for tool-level problems: unknown tools, invalid
        arguments, credit denials and handler failures all end as an
        errored ToolCall the model can read.

        Args:
            context: The calling request
            call_id: Provider-assigned tool call id
            name: Tool name requested by the model
            arguments: JSON string or already-decoded object

        Returns:
            The ToolCall in state output-available or errored
        """
        call = ToolCall(id=call_id, name=name, input=arguments)

        try:
            tool_name = ToolName(name)
        except ValueError:
            call.fail(UNKNOWN_TOOL, f"Unknown tool '{name}'")
            return call
        spec = self.registry[tool_name]

        if isinstance(arguments, (str, bytes)):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except ValueError as e:
                call.fail(INVALID_TOOL_INPUT, f"Arguments for '{name}' are not valid JSON: {e}")
                return call
            call.input = arguments

        try:
            tool_input = spec.input_type.from_dict(arguments)
        except ValueError as e:
            call.fail(INVALID_TOOL_INPUT, f"Invalid arguments for '{name}': {e}")
            return call

        try:
            output = self._execute(context, call, spec, tool_input)
        except Exception as e:
            logger.exception("Tool %s failed for request %s", name, context.request_id)
            call.fail(TOOL_EXECUTION_FAILED, f"{name} failed: {e}")
            return call

        if isinstance(output, Rejected):
            call.fail(output.code, output.reason, requiredCredits=output.required_credits)
        else:
            call.complete(output)
        return call

    def _execute(self, context: RequestContext, call: ToolCall, spec: ToolSpec, tool_input: Any):
        if spec.billable_action is None:
            return spec.handler(context, tool_input)

        metadata = {"tool": spec.name.value, "toolCallId": call.id, "requestId": context.request_id}
        metadata.update(spec.usage_metadata(tool_input))
        return self.admission.admit(
            context.user_id,
            self.pricing.credits_for(spec.billable_action),
            lambda: spec.handler(context, tool_input),
            event_type=self.pricing.event_type_for(spec.billable_action),
            metadata=metadata,
        )
