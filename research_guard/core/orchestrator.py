"""
Conversation orchestrator.

Drives one chat turn: normalizes the incoming history, streams the model
response with the tool registry attached, hands every requested tool call
to the invoker before the model continues, and bills the turn itself as a
question through admission control.

A turn moves receiving -> streaming -> (tool-call)* -> completed | aborted.
Events are plain dicts so the HTTP layer can serialize them directly.
"""

import json
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from research_guard.config.loader import LLMSettings
from research_guard.sdk.openai_client import Finish, TextDelta, ToolCallRequest
from research_guard.storage.models import EventType
from .admission import AdmissionController, Charge, InsufficientCredits
from .context import RequestContext
from .pricing import BillableAction, PricingTable
from .tools import ToolCallState, ToolInvoker

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "INTERNAL_ERROR"
GENERIC_FAILURE_MESSAGE = "Something went wrong while generating a response. Please try again."

SYSTEM_PROMPT = """You are ResearchAI, a research assistant that answers from the user's indexed sources.

When a user asks a question:
1. Use search to find relevant information in the indexed sources. Pass a null query to list every source.
2. For comprehensive analysis, use generateReport to create a structured report with citations.
3. Always cite sources with specific references and relevance scores.
4. If search reports that no sources exist, tell the user to add a source first.

Format responses with clear structure, citations and actionable insights."""

_CONVERSATION_ROLES = ("user", "assistant")
_COMPLETED_TOOL_STATES = (
    ToolCallState.OUTPUT_AVAILABLE.value,
    ToolCallState.ERRORED.value,
    "output-error",
)


def _text_of(message: Mapping[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    texts = []
    for part in message.get("parts") or []:
        if isinstance(part, Mapping) and part.get("type") == "text" and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "".join(texts)


def _completed_tool_parts(message: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    parts = []
    for part in message.get("parts") or []:
        if not isinstance(part, Mapping):
            continue
        part_type = part.get("type")
        if not isinstance(part_type, str) or not part_type.startswith("tool-"):
            continue
        if part.get("state") in _COMPLETED_TOOL_STATES and part.get("toolCallId"):
            parts.append(part)
    return parts


def normalize_messages(history: Sequence[Any]) -> List[Dict[str, Any]]:
    """Convert client message history into provider chat messages.

    Messages without text and without completed tool parts are dropped.
    Completed tool parts are replayed as an assistant tool call followed
    by its tool result, never as text; pending ones are dropped.

    Args:
        history: Client messages, each with a role and either a content
            string or a list of typed parts

    Returns:
        Messages ready to send to the model (without the system prompt)

    Raises:
        ValueError: If a message is not an object or has an unsupported role
    """
    messages: List[Dict[str, Any]] = []
    for index, message in enumerate(history):
        if not isinstance(message, Mapping):
            raise ValueError(f"messages[{index}] must be an object")
        role = message.get("role")
        if role not in _CONVERSATION_ROLES:
            raise ValueError(f"messages[{index}].role must be one of {list(_CONVERSATION_ROLES)}")

        text = _text_of(message)
        tool_parts = _completed_tool_parts(message) if role == "assistant" else []

        if tool_parts:
            messages.append({
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": part["toolCallId"],
                        "type": "function",
                        "function": {
                            "name": part["type"][len("tool-"):],
                            "arguments": json.dumps(part.get("input") or {}),
                        },
                    }
                    for part in tool_parts
                ],
            })
            for part in tool_parts:
                if "output" in part:
                    result = part["output"]
                else:
                    result = {"error": part.get("error") or part.get("errorText")}
                messages.append({
                    "role": "tool",
                    "tool_call_id": part["toolCallId"],
                    "content": json.dumps(result),
                })
        elif text.strip():
            messages.append({"role": role, "content": text})

    return messages


class Orchestrator:
    """Runs credit-gated chat turns with tool calling."""

    def __init__(
        self,
        chat_model,
        invoker: ToolInvoker,
        admission: AdmissionController,
        pricing: PricingTable,
        settings: LLMSettings,
        system_prompt: str = SYSTEM_PROMPT,
    ):
        self.chat_model = chat_model
        self.invoker = invoker
        self.admission = admission
        self.pricing = pricing
        self.settings = settings
        self.system_prompt = system_prompt

    def stream_turn(self, context: RequestContext, history: Sequence[Any]) -> Iterator[Dict[str, Any]]:
        """Stream one chat turn as events.

        Yields text-delta, tool-output and error events, always ending in
        a finish or abort event. Closing the generator early counts as a
        caller abort: the turn is still billed and the tool call in flight,
        if any, has already completed and been recorded.

        Raises:
            ValueError: If the history is malformed (before anything is billed)
        """
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(normalize_messages(history))
        metadata = {"requestId": context.request_id, "messageCount": len(history)}

        try:
            with self.admission.metered(
                context.user_id,
                EventType.QUESTION_ASKED,
                self.pricing.credits_for(BillableAction.QUESTION),
                metadata=metadata,
            ) as charge:
                yield from self._run(context, messages, charge)
        except InsufficientCredits as e:
            yield {
                "type": "error",
                "code": e.code,
                "message": str(e),
                "requiredCredits": e.required_credits,
            }
            yield {"type": "finish", "reason": "insufficient-credits"}
        except Exception:
            logger.exception("Chat turn failed for request %s", context.request_id)
            yield {
                "type": "error",
                "code": INTERNAL_ERROR,
                "message": GENERIC_FAILURE_MESSAGE,
                "requestId": context.request_id,
            }
            yield {"type": "finish", "reason": "error"}

    def _run(
        self,
        context: RequestContext,
        messages: List[Dict[str, Any]],
        charge: Charge,
    ) -> Iterator[Dict[str, Any]]:
        tools = self.invoker.declarations()
        usage = {"promptTokens": 0, "completionTokens": 0}
        charge.metadata["usage"] = usage

        for round_number in range(self.settings.max_tool_rounds + 1):
            # The last round gets no tools so the model has to answer in text.
            offered = tools if round_number < self.settings.max_tool_rounds else None
            text: List[str] = []
            requests: List[ToolCallRequest] = []
            finish: Optional[Finish] = None

            for chunk in self.chat_model.stream(messages, tools=offered):
                if context.aborted:
                    yield self._abort(charge)
                    return
                if isinstance(chunk, TextDelta):
                    text.append(chunk.text)
                    yield {"type": "text-delta", "delta": chunk.text}
                elif isinstance(chunk, ToolCallRequest):
                    requests.append(chunk)
                elif isinstance(chunk, Finish):
                    finish = chunk
                    usage["promptTokens"] += chunk.prompt_tokens
                    usage["completionTokens"] += chunk.completion_tokens

            if not requests:
                charge.metadata["toolRounds"] = round_number
                yield {"type": "finish", "reason": finish.reason if finish else "stop"}
                return

            messages.append({
                "role": "assistant",
                "content": "".join(text) or None,
                "tool_calls": [
                    {
                        "id": request.id,
                        "type": "function",
                        "function": {"name": request.name, "arguments": request.arguments},
                    }
                    for request in requests
                ],
            })

            for request in requests:
                if context.aborted:
                    yield self._abort(charge)
                    return
                call = self.invoker.invoke(context, request.id, request.name, request.arguments)
                yield {"type": "tool-output", "toolCall": call.to_dict()}
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(call.result_payload()),
                })

        # Only reached when the model requests tools on the final round.
        charge.metadata["toolRounds"] = self.settings.max_tool_rounds
        yield {"type": "finish", "reason": "tool-rounds-exhausted"}

    def _abort(self, charge: Charge) -> Dict[str, Any]:
        charge.metadata["aborted"] = True
        return {"type": "abort"}
