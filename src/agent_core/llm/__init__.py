"""
LLM module: message model, provider adapters and the provider message transform.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- OpenRouter, DeepSeek, Moonshot (via OpenAI-compatible endpoints)
"""

from .anthropic import AnthropicLLM
from .base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    Part,
    ReasoningPart,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
    message_from_dict,
    message_to_dict,
)
from .factory import create_llm
from .openai import OpenAILLM
from .transform import (
    ProviderFamily,
    TransformResult,
    apply_prompt_caching,
    detect_provider_family,
    transform_assistant_content,
)

__all__ = [
    "BaseLLM",
    "LLMMessage",
    "LLMResponse",
    "Part",
    "ReasoningPart",
    "StreamEvent",
    "TextPart",
    "ToolCallPart",
    "ToolDefinition",
    "ToolResultPart",
    "message_from_dict",
    "message_to_dict",
    "AnthropicLLM",
    "OpenAILLM",
    "create_llm",
    "ProviderFamily",
    "TransformResult",
    "apply_prompt_caching",
    "detect_provider_family",
    "transform_assistant_content",
]
