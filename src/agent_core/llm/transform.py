"""
Provider message transform.

Some OpenAI-compatible backends need assistant turns replayed in a specific
shape:

- DeepSeek-style reasoning models expect the reasoning trace in a separate
  ``reasoning_content`` field, and reject a request where that field is
  missing, even when it is empty.
- Moonshot Kimi K2 models with thinking enabled reject an assistant tool call
  that carries no ``reasoning_content`` at all, so a single-space placeholder
  is sent instead.
- Anthropic-family models accept prompt-cache markers on recent messages.

Everything here is a pure function of its inputs.
"""

import copy
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .base import LLMMessage, Part, ReasoningPart, ToolCallPart

OPENAI_COMPATIBLE_KEY = "openaiCompatible"
REASONING_CONTENT_KEY = "reasoning_content"
TOOL_CALL_REASONING_PLACEHOLDER = " "


class ProviderFamily(str, Enum):
    DEEPSEEK = "deepseek"
    MOONSHOT = "moonshot"
    ANTHROPIC = "anthropic"
    UNKNOWN = "unknown"


# Checked in order. Provider ids match exactly, model patterns run against the
# normalized model id.
PROVIDER_ID_FAMILIES: dict[str, ProviderFamily] = {
    "deepseek": ProviderFamily.DEEPSEEK,
    "moonshot": ProviderFamily.MOONSHOT,
    "moonshotai": ProviderFamily.MOONSHOT,
    "kimi": ProviderFamily.MOONSHOT,
    "anthropic": ProviderFamily.ANTHROPIC,
    "claude": ProviderFamily.ANTHROPIC,
}

MODEL_FAMILY_PATTERNS: list[tuple[re.Pattern[str], ProviderFamily]] = [
    (re.compile(r"(^|-)deepseek(-|$)"), ProviderFamily.DEEPSEEK),
    # kimi-k2, kimi-2, kimi-k2-5, kimi-k2-thinking, kimi-k2-0905-preview ...
    (re.compile(r"(^|-)kimi-k?2(-|$)"), ProviderFamily.MOONSHOT),
    (re.compile(r"(^|-)(claude|anthropic|minimax)(-|$)"), ProviderFamily.ANTHROPIC),
]

_SUFFIX_RE = re.compile(r":[a-z0-9-]+$")


def normalize_model_id(model_id: str) -> str:
    """Lowercase, drop the vendor prefix and routing suffix, unify separators.

    ``moonshotai/Kimi-K2.5:free`` becomes ``kimi-k2-5``.
    """
    normalized = model_id.strip().lower()
    if "/" in normalized:
        normalized = normalized.rsplit("/", 1)[1]
    normalized = _SUFFIX_RE.sub("", normalized)
    normalized = re.sub(r"[._\s]+", "-", normalized)
    return normalized.strip("-")


def detect_provider_family(model_id: str, provider_id: str | None = None) -> ProviderFamily:
    """Resolve the provider family, preferring an explicit provider id."""
    if provider_id:
        family = PROVIDER_ID_FAMILIES.get(provider_id.strip().lower())
        if family is not None:
            return family

    normalized = normalize_model_id(model_id or "")
    for pattern, family in MODEL_FAMILY_PATTERNS:
        if pattern.search(normalized):
            return family
    return ProviderFamily.UNKNOWN


@dataclass(frozen=True)
class TransformResult:
    """Transformed assistant content plus side-channel provider options."""

    content: list[Part]
    provider_options: dict[str, Any] | None = None


def _existing_reasoning(provider_options: dict[str, Any] | None) -> str | None:
    if not provider_options:
        return None
    value = provider_options.get(OPENAI_COMPATIBLE_KEY, {}).get(REASONING_CONTENT_KEY)
    return value if isinstance(value, str) else None


def _with_reasoning(provider_options: dict[str, Any] | None, reasoning: str) -> dict[str, Any]:
    options = copy.deepcopy(provider_options) if provider_options else {}
    compatible = dict(options.get(OPENAI_COMPATIBLE_KEY, {}))
    compatible[REASONING_CONTENT_KEY] = reasoning
    options[OPENAI_COMPATIBLE_KEY] = compatible
    return options


def _split_reasoning(content: list[Part]) -> tuple[list[Part], str | None]:
    reasoning = [p for p in content if isinstance(p, ReasoningPart)]
    if not reasoning:
        return list(content), None
    remaining = [p for p in content if not isinstance(p, ReasoningPart)]
    return remaining, "".join(p.text for p in reasoning)


def _tool_call_in_current_turn(messages: list[LLMMessage]) -> bool:
    """True if an assistant tool call happened since the last user message."""
    for message in reversed(messages):
        if message.role == "user":
            return False
        if message.role == "assistant" and message.has_tool_calls:
            return True
    return False


def transform_assistant_content(
    messages: list[LLMMessage],
    model_id: str,
    provider_id: str | None,
    content: list[Part],
    provider_options: dict[str, Any] | None = None,
) -> TransformResult:
    """Adapt one assistant turn to the provider family's reasoning conventions.

    Feeding a result's ``content`` and ``provider_options`` back in returns an
    equal result.
    """
    family = detect_provider_family(model_id, provider_id)
    remaining, reasoning = _split_reasoning(content)
    existing = _existing_reasoning(provider_options)
    base_options = copy.deepcopy(provider_options) if provider_options else None

    if family is ProviderFamily.DEEPSEEK:
        if reasoning is not None:
            return TransformResult(remaining, _with_reasoning(base_options, reasoning))
        return TransformResult(remaining, _with_reasoning(base_options, existing or ""))

    if family is ProviderFamily.MOONSHOT:
        if reasoning:
            return TransformResult(remaining, _with_reasoning(base_options, reasoning))
        if existing:
            return TransformResult(remaining, base_options)
        has_tool_call = any(isinstance(p, ToolCallPart) for p in remaining)
        if has_tool_call or _tool_call_in_current_turn(messages):
            return TransformResult(
                remaining, _with_reasoning(base_options, TOOL_CALL_REASONING_PLACEHOLDER)
            )
        return TransformResult(remaining, base_options)

    return TransformResult(list(content), base_options)


def transform_message(
    messages: list[LLMMessage],
    model_id: str,
    provider_id: str | None,
    message: LLMMessage,
) -> LLMMessage:
    """Apply transform_assistant_content to a whole assistant message."""
    if message.role != "assistant":
        return message
    result = transform_assistant_content(
        messages, model_id, provider_id, message.parts, message.provider_options
    )
    return replace(message, content=result.content, provider_options=result.provider_options)


def should_apply_caching(provider_id: str | None, model_id: str) -> bool:
    if not provider_id:
        return False
    provider = provider_id.lower()
    model = model_id.lower()
    return (
        "anthropic" in provider
        or "claude" in provider
        or "anthropic" in model
        or "claude" in model
        or "minimax" in model
    )


def cache_options_for(provider_id: str) -> dict[str, Any]:
    provider = provider_id.lower()
    if "anthropic" in provider or "claude" in provider:
        return {"anthropic": {"cacheControl": {"type": "ephemeral"}}}
    if "openrouter" in provider:
        return {"openrouter": {"cache_control": {"type": "ephemeral"}}}
    return {OPENAI_COMPATIBLE_KEY: {"cache_control": {"type": "ephemeral"}}}


def apply_prompt_caching(
    messages: list[LLMMessage],
    model_id: str,
    provider_id: str | None,
) -> list[LLMMessage]:
    """Mark the last two non-system messages as cacheable.

    Returns a new list; the input messages are left untouched.
    """
    if not provider_id or not should_apply_caching(provider_id, model_id):
        return list(messages)

    targets = [i for i, m in enumerate(messages) if m.role != "system"][-2:]
    cache_options = cache_options_for(provider_id)
    result = list(messages)
    for index in targets:
        message = messages[index]
        options = copy.deepcopy(message.provider_options) if message.provider_options else {}
        options.update(copy.deepcopy(cache_options))
        result[index] = replace(message, provider_options=options)
    return result
