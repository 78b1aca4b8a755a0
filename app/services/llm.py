"""Model provider — LiteLLM completion with a bounded tool-call loop.

One loop drives both modes. Each round calls the model; if it asks for
tools, the calls are dispatched through the request's enabled tool set and
their results appended as ``tool`` messages for the next round. After
``max_tool_rounds`` rounds of tool use the model is called once more with
no tools so it has to answer in text.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from litellm import acompletion

from app.services.tools.base import tool_error
from app.services.tools.resolution import EnabledTool, encode_tool_result

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: TokenUsage) -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationResult:
    """Outcome of a full generation, tool rounds included."""
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_trace: list[dict[str, Any]] = field(default_factory=list)
    tool_rounds: int = 0


@dataclass
class StreamEvent:
    """A single event in the streaming response."""
    event: str  # "delta", "tool_call", "tool_result", "done"
    data: dict = field(default_factory=dict)
    result: GenerationResult | None = None  # set on "done"


class ModelProvider(ABC):
    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        history: list[dict[str, Any]],
        tools: Mapping[str, EnabledTool] | None,
        max_tool_rounds: int,
    ) -> GenerationResult:
        ...

    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        history: list[dict[str, Any]],
        tools: Mapping[str, EnabledTool] | None,
        max_tool_rounds: int,
    ) -> AsyncIterator[StreamEvent]:
        ...


@dataclass
class _Round:
    text: str
    tool_calls: list[dict[str, str]]
    usage: TokenUsage


def _usage_from(usage: Any) -> TokenUsage:
    if not usage:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
    )


async def dispatch_tool_call(
    tools: Mapping[str, EnabledTool], name: str, raw_arguments: str | None
) -> Any:
    """Run one model-requested call. Always returns a result, never raises."""
    tool = tools.get(name)
    if tool is None:
        return tool_error("UNKNOWN_TOOL", f"Unknown tool: {name}")
    try:
        arguments = json.loads(raw_arguments or "{}")
    except ValueError as exc:
        return tool_error("INVALID_ARGUMENTS", f"Arguments for {name} are not valid JSON: {exc}")
    if not isinstance(arguments, dict):
        return tool_error("INVALID_ARGUMENTS", f"Arguments for {name} must be a JSON object")
    try:
        return await tool.invoke(arguments)
    except Exception as exc:
        logger.exception("Tool %s raised", name)
        return tool_error("EXECUTION_FAILED", str(exc) or type(exc).__name__)


class LiteLLMProvider(ModelProvider):
    """ModelProvider over ``litellm.acompletion``."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate(
        self,
        system_prompt: str,
        history: list[dict[str, Any]],
        tools: Mapping[str, EnabledTool] | None,
        max_tool_rounds: int,
    ) -> GenerationResult:
        async for event in self._run(system_prompt, history, tools, max_tool_rounds, streaming=False):
            if event.event == "done" and event.result is not None:
                return event.result
        raise RuntimeError("Generation ended without a result")

    async def stream(
        self,
        system_prompt: str,
        history: list[dict[str, Any]],
        tools: Mapping[str, EnabledTool] | None,
        max_tool_rounds: int,
    ) -> AsyncIterator[StreamEvent]:
        async for event in self._run(system_prompt, history, tools, max_tool_rounds, streaming=True):
            yield event

    async def _run(
        self,
        system_prompt: str,
        history: list[dict[str, Any]],
        tools: Mapping[str, EnabledTool] | None,
        max_tool_rounds: int,
        streaming: bool,
    ) -> AsyncIterator[StreamEvent]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}, *history]
        tool_specs = [t.as_openai_tool() for t in tools.values()] if tools else None
        usage = TokenUsage()
        trace: list[dict[str, Any]] = []
        rounds = 0

        while True:
            offer_tools = tool_specs if rounds < max_tool_rounds else None

            current: _Round | None = None
            async for item in self._call_model(messages, offer_tools, streaming):
                if isinstance(item, _Round):
                    current = item
                else:
                    yield item
            if current is None:
                raise RuntimeError("Model call ended without a response")
            usage.add(current.usage)

            if not offer_tools or not current.tool_calls:
                trace.append({"role": "assistant", "content": current.text})
                yield StreamEvent(
                    event="done",
                    data={"content": current.text},
                    result=GenerationResult(
                        text=current.text, usage=usage, tool_trace=trace, tool_rounds=rounds
                    ),
                )
                return

            assistant_message = {
                "role": "assistant",
                "content": current.text or None,
                "tool_calls": [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": call["arguments"]},
                    }
                    for call in current.tool_calls
                ],
            }
            messages.append(assistant_message)
            trace.append(assistant_message)

            for call in current.tool_calls:
                yield StreamEvent(
                    event="tool_call",
                    data={"id": call["id"], "name": call["name"], "arguments": call["arguments"]},
                )
                result = await dispatch_tool_call(tools or {}, call["name"], call["arguments"])
                tool_message = {
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "name": call["name"],
                    "content": encode_tool_result(result),
                }
                messages.append(tool_message)
                trace.append(tool_message)
                yield StreamEvent(
                    event="tool_result",
                    data={"id": call["id"], "name": call["name"], "result": result},
                )

            rounds += 1
            if rounds >= max_tool_rounds:
                logger.info("Tool round limit (%d) reached, requesting final answer", max_tool_rounds)

    def _kwargs(self, messages: list[dict[str, Any]], tool_specs: list[dict] | None) -> dict:
        kwargs: dict = {"model": self.model, "messages": list(messages)}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if tool_specs:
            kwargs["tools"] = tool_specs
        return kwargs

    async def _call_model(
        self,
        messages: list[dict[str, Any]],
        tool_specs: list[dict] | None,
        streaming: bool,
    ) -> AsyncIterator[StreamEvent | _Round]:
        kwargs = self._kwargs(messages, tool_specs)

        if not streaming:
            response = await acompletion(**kwargs)
            message = response.choices[0].message
            calls = [
                {
                    "id": call.id,
                    "name": call.function.name,
                    "arguments": call.function.arguments or "",
                }
                for call in list(getattr(message, "tool_calls", None) or [])
            ]
            yield _Round(
                text=message.content or "",
                tool_calls=calls,
                usage=_usage_from(getattr(response, "usage", None)),
            )
            return

        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        text = ""
        partial_calls: dict[int, dict[str, str]] = {}
        round_usage = TokenUsage()

        response = await acompletion(**kwargs)
        async for chunk in response:
            delta = chunk.choices[0].delta if chunk.choices else None
            if delta is not None:
                if delta.content:
                    text += delta.content
                    yield StreamEvent(event="delta", data={"content": delta.content})
                for position, piece in enumerate(list(getattr(delta, "tool_calls", None) or [])):
                    index = piece.index if isinstance(piece.index, int) else position
                    slot = partial_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
                    if piece.id:
                        slot["id"] = piece.id
                    function = piece.function
                    if function is not None:
                        if function.name:
                            slot["name"] = function.name
                        if function.arguments:
                            slot["arguments"] += function.arguments

            # Some providers include usage in the final chunk
            if getattr(chunk, "usage", None):
                round_usage = _usage_from(chunk.usage)

        calls = [partial_calls[i] for i in sorted(partial_calls)]
        for i, call in enumerate(calls):
            call["id"] = call["id"] or f"call_{i}"
        yield _Round(text=text, tool_calls=calls, usage=round_usage)
