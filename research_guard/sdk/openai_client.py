"""
Streaming OpenAI chat model adapter.

Wraps chat completions with function calling and flattens the provider's
incremental stream into three kinds of chunk: text deltas, complete tool
call requests and a final finish marker carrying token usage.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union

from openai import OpenAI

from research_guard.config.loader import LLMSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """A fully assembled tool call emitted by the model."""
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class Finish:
    reason: Optional[str]
    prompt_tokens: int = 0
    completion_tokens: int = 0


ChatChunk = Union[TextDelta, ToolCallRequest, Finish]


class OpenAIChatModel:
    """Streaming chat model backed by the OpenAI API.

    Provider errors propagate unchanged; callers decide how to bill and
    report them.
    """

    def __init__(self, settings: LLMSettings, client: Optional[OpenAI] = None):
        """Initialize the chat model.

        Args:
            settings: Model name and sampling settings
            client: OpenAI client (defaults to one configured from the environment)

        Raises:
            ValueError: If no model is configured
        """
        if not settings.model or not settings.model.strip():
            raise ValueError("model is required and cannot be empty")

        self.settings = settings
        self.client = client or OpenAI()

    def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Iterator[ChatChunk]:
        """Stream one model response.

        Tool call fragments are accumulated by index and emitted once the
        response ends, so every ToolCallRequest carries complete arguments.

        Args:
            messages: Chat messages in provider format (required)
            tools: Function declarations the model may call

        Yields:
            TextDelta chunks as they arrive, then one ToolCallRequest per
            requested call, then exactly one Finish

        Raises:
            ValueError: If messages is empty
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        params: Dict[str, Any] = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_output_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            params["tools"] = tools

        response = self.client.chat.completions.create(**params)

        pending: Dict[int, Dict[str, Any]] = {}
        finish_reason = None
        prompt_tokens = completion_tokens = 0

        for chunk in response:
            if chunk.usage is not None:
                prompt_tokens = chunk.usage.prompt_tokens
                completion_tokens = chunk.usage.completion_tokens

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta is not None and delta.content:
                yield TextDelta(delta.content)

            for fragment in (delta.tool_calls if delta is not None else None) or []:
                call = pending.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                if fragment.id:
                    call["id"] = fragment.id
                if fragment.function is not None:
                    if fragment.function.name:
                        call["name"] += fragment.function.name
                    if fragment.function.arguments:
                        call["arguments"] += fragment.function.arguments

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        for index in sorted(pending):
            call = pending[index]
            yield ToolCallRequest(id=call["id"], name=call["name"], arguments=call["arguments"])

        logger.debug(
            "Model %s finished (%s): %d prompt, %d completion tokens",
            self.settings.model, finish_reason, prompt_tokens, completion_tokens,
        )
        yield Finish(reason=finish_reason, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
