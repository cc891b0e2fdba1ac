"""
Base classes for LLM providers and the shared message model.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Literal, Union


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True)
class TextPart:
    """Plain text inside a message."""

    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ReasoningPart:
    """Reasoning trace emitted by a thinking model."""

    text: str
    type: Literal["reasoning"] = "reasoning"


@dataclass(frozen=True)
class ToolCallPart:
    """A tool call made by the LLM."""

    tool_call_id: str
    tool_name: str
    input: dict[str, Any]
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class ToolResultPart:
    """Result of a tool call, referencing it by id."""

    tool_call_id: str
    tool_name: str
    output: Any
    is_error: bool = False
    type: Literal["tool-result"] = "tool-result"


Part = Union[TextPart, ReasoningPart, ToolCallPart, ToolResultPart]

Role = Literal["system", "user", "assistant", "tool"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Role
    content: str | list[Part]
    timestamp: datetime = field(default_factory=_now)
    provider_options: dict[str, Any] | None = None

    @property
    def parts(self) -> list[Part]:
        """Content as a list of parts, wrapping plain text."""
        if isinstance(self.content, str):
            return [TextPart(self.content)] if self.content else []
        return list(self.content)

    @property
    def text(self) -> str:
        """Concatenated text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.parts if isinstance(p, ToolResultPart)]

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def render_output(output: Any) -> str:
    """Render a tool output as text for providers that only take strings."""
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, default=str)


def part_to_dict(part: Part) -> dict[str, Any]:
    if isinstance(part, (TextPart, ReasoningPart)):
        return {"type": part.type, "text": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "type": part.type,
            "toolCallId": part.tool_call_id,
            "toolName": part.tool_name,
            "input": part.input,
        }
    data = {
        "type": part.type,
        "toolCallId": part.tool_call_id,
        "toolName": part.tool_name,
        "output": part.output,
    }
    if part.is_error:
        data["isError"] = True
    return data


def part_from_dict(data: dict[str, Any]) -> Part:
    part_type = data.get("type")
    if part_type == "text":
        return TextPart(data.get("text", ""))
    if part_type == "reasoning":
        return ReasoningPart(data.get("text", ""))
    if part_type == "tool-call":
        return ToolCallPart(
            tool_call_id=data["toolCallId"],
            tool_name=data.get("toolName", ""),
            input=dict(data.get("input") or {}),
        )
    if part_type == "tool-result":
        return ToolResultPart(
            tool_call_id=data["toolCallId"],
            tool_name=data.get("toolName", ""),
            output=data.get("output"),
            is_error=bool(data.get("isError", False)),
        )
    raise ValueError(f"Unknown message part type: {part_type!r}")


def message_to_dict(message: LLMMessage) -> dict[str, Any]:
    """Convert a message to a JSON-safe dict."""
    data: dict[str, Any] = {
        "role": message.role,
        "content": (
            message.content
            if isinstance(message.content, str)
            else [part_to_dict(p) for p in message.content]
        ),
        "timestamp": message.timestamp.isoformat(),
    }
    if message.provider_options:
        data["providerOptions"] = message.provider_options
    return data


def message_from_dict(data: dict[str, Any]) -> LLMMessage:
    """Build a message from the dict produced by message_to_dict."""
    raw_content = data.get("content", "")
    content: str | list[Part]
    if isinstance(raw_content, str):
        content = raw_content
    else:
        content = [part_from_dict(p) for p in raw_content]

    timestamp = data.get("timestamp")
    message = LLMMessage(
        role=data["role"],
        content=content,
        provider_options=data.get("providerOptions"),
    )
    if timestamp:
        message.timestamp = datetime.fromisoformat(timestamp)
    return message


EventType = Literal["text-delta", "reasoning-delta", "tool-call", "usage", "done", "error"]


@dataclass
class StreamEvent:
    """One event from a streaming model invocation."""

    type: EventType
    text: str = ""
    tool_call: ToolCallPart | None = None
    usage: Any = None
    total_usage: Any = None
    error: str | None = None
    finish_reason: str | None = None


@dataclass
class LLMResponse:
    """Response from a non-streaming LLM call."""

    content: str
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    reasoning: str = ""
    usage: Any = None
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None


class BaseLLM(ABC):
    """Base class for LLM providers (the model-invocation collaborator)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a complete response from the LLM."""
        pass

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream response events from the LLM."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass
