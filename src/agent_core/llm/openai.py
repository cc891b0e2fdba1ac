"""
OpenAI-compatible LLM provider (OpenAI, OpenRouter, DeepSeek, Moonshot).
"""

import asyncio
import json
from typing import Any, AsyncIterator

import openai
import structlog

from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    StreamEvent,
    ToolCallPart,
    ToolDefinition,
    render_output,
)
from .transform import OPENAI_COMPATIBLE_KEY, REASONING_CONTENT_KEY

logger = structlog.get_logger()


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON", arguments=raw[:200])
        return {"_raw_arguments": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class OpenAILLM(BaseLLM):
    """OpenAI chat-completions provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        provider_id: str = "openai",
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self.provider_id = provider_id
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return self.provider_id

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to OpenAI format."""
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "tool":
                for result in msg.tool_results:
                    converted.append({
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": render_output(result.output),
                    })
            elif msg.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.text or None}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": tc.tool_call_id,
                            "type": "function",
                            "function": {
                                "name": tc.tool_name,
                                "arguments": json.dumps(tc.input),
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                options = (msg.provider_options or {}).get(OPENAI_COMPATIBLE_KEY, {})
                if REASONING_CONTENT_KEY in options:
                    entry[REASONING_CONTENT_KEY] = options[REASONING_CONTENT_KEY]
                converted.append(entry)
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.text,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        model: str | None,
    ) -> dict[str, Any]:
        converted_messages = self._convert_messages(messages)

        if system_prompt:
            converted_messages.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": converted_messages,
        }

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
        """Generate a response from the chat-completions endpoint."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, model)

        try:
            response = await self.client.chat.completions.create(**kwargs)

            choice = response.choices[0]
            message = choice.message

            tool_calls = [
                ToolCallPart(
                    tool_call_id=tc.id,
                    tool_name=tc.function.name,
                    input=_parse_arguments(tc.function.arguments),
                )
                for tc in message.tool_calls or []
            ]

            return LLMResponse(
                content=message.content or "",
                tool_calls=tool_calls,
                reasoning=getattr(message, REASONING_CONTENT_KEY, None) or "",
                usage=response.usage,
                model=response.model,
                stop_reason=choice.finish_reason,
                raw_response=response,
            )

        except openai.APIError as e:
            logger.error("OpenAI API error", provider=self.provider_id, error=str(e))
            raise

    async def stream(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream events from the chat-completions endpoint."""
        kwargs = self._build_kwargs(messages, tools, system_prompt, model)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        # Tool call fragments arrive keyed by index.
        pending: dict[int, dict[str, str]] = {}
        usage: Any = None
        finish_reason: str | None = None

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                if abort is not None and abort.is_set():
                    break
                if chunk.usage:
                    usage = chunk.usage
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                reasoning = getattr(delta, REASONING_CONTENT_KEY, None)
                if reasoning:
                    yield StreamEvent(type="reasoning-delta", text=reasoning)
                if delta.content:
                    yield StreamEvent(type="text-delta", text=delta.content)
                for tc in delta.tool_calls or []:
                    entry = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        entry["id"] = tc.id
                    if tc.function and tc.function.name:
                        entry["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        entry["arguments"] += tc.function.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

        except openai.APIError as e:
            logger.error("OpenAI streaming error", provider=self.provider_id, error=str(e))
            raise

        for index in sorted(pending):
            entry = pending[index]
            yield StreamEvent(
                type="tool-call",
                tool_call=ToolCallPart(
                    tool_call_id=entry["id"] or f"call_{index}",
                    tool_name=entry["name"],
                    input=_parse_arguments(entry["arguments"]),
                ),
            )
        if usage is not None:
            yield StreamEvent(type="usage", usage=usage)
        yield StreamEvent(type="done", finish_reason=finish_reason)
