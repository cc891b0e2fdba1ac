"""
Anthropic Claude LLM provider.
"""

import asyncio
from typing import Any, AsyncIterator

import anthropic
import structlog

from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
    render_output,
)

logger = structlog.get_logger()


def _cache_control(msg: LLMMessage) -> dict[str, Any] | None:
    options = (msg.provider_options or {}).get("anthropic", {})
    return options.get("cacheControl")


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_part(self, part: Any) -> dict[str, Any] | None:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text} if part.text else None
        if isinstance(part, ToolCallPart):
            return {
                "type": "tool_use",
                "id": part.tool_call_id,
                "name": part.tool_name,
                "input": part.input,
            }
        if isinstance(part, ToolResultPart):
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": part.tool_call_id,
                "content": render_output(part.output),
            }
            if part.is_error:
                block["is_error"] = True
            return block
        # Reasoning is not replayed; unsigned thinking blocks are rejected.
        return None

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to Anthropic format."""
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                continue

            blocks = [b for b in (self._convert_part(p) for p in msg.parts) if b is not None]
            if not blocks:
                continue

            cache_control = _cache_control(msg)
            if cache_control:
                blocks[-1] = {**blocks[-1], "cache_control": cache_control}

            # Tool results travel in a user turn.
            role = "user" if msg.role == "tool" else msg.role
            converted.append({"role": role, "content": blocks})

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _extract_system_prompt(self, messages: list[LLMMessage]) -> str | None:
        """Extract system prompt from messages."""
        for msg in messages:
            if msg.role == "system":
                return msg.text
        return None

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        model: str | None,
    ) -> dict[str, Any]:
        system = system_prompt or self._extract_system_prompt(messages)
        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": self.max_tokens,
            "messages": self._convert_messages(messages),
        }

        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._convert_tools(tools)
        return kwargs

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, model)

        try:
            response = await self.client.messages.create(**kwargs)

            content = ""
            reasoning = ""
            tool_calls = []

            for block in response.content:
                if block.type == "text":
                    content += block.text
                elif block.type == "thinking":
                    reasoning += block.thinking
                elif block.type == "tool_use":
                    tool_calls.append(ToolCallPart(
                        tool_call_id=block.id,
                        tool_name=block.name,
                        input=dict(block.input) if isinstance(block.input, dict) else {},
                    ))

            return LLMResponse(
                content=content,
                tool_calls=tool_calls,
                reasoning=reasoning,
                usage=response.usage,
                model=response.model,
                stop_reason=response.stop_reason,
                raw_response=response,
            )

        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream events from Claude."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, model)

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if abort is not None and abort.is_set():
                        return
                    if event.type != "content_block_delta":
                        continue
                    if event.delta.type == "text_delta":
                        yield StreamEvent(type="text-delta", text=event.delta.text)
                    elif event.delta.type == "thinking_delta":
                        yield StreamEvent(type="reasoning-delta", text=event.delta.thinking)

                final = await stream.get_final_message()

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise

        for block in final.content:
            if block.type == "tool_use":
                yield StreamEvent(
                    type="tool-call",
                    tool_call=ToolCallPart(
                        tool_call_id=block.id,
                        tool_name=block.name,
                        input=dict(block.input) if isinstance(block.input, dict) else {},
                    ),
                )
        yield StreamEvent(type="usage", usage=final.usage)
        yield StreamEvent(type="done", finish_reason=final.stop_reason)
