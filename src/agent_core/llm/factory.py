"""
LLM factory for creating provider instances.

Supports: Anthropic Claude, OpenAI GPT, and the OpenAI-compatible endpoints
of OpenRouter, DeepSeek and Moonshot.
"""

from ..config import LLMConfig, Settings
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .openai import OpenAILLM

OPENAI_COMPATIBLE_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "moonshot": "https://api.moonshot.ai/v1",
}


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create an LLM instance based on configuration.

    Provider routing:
    - anthropic -> AnthropicLLM (native Anthropic SDK)
    - openai -> OpenAILLM (native OpenAI SDK)
    - openrouter, deepseek, moonshot -> OpenAILLM (OpenAI-compatible endpoint)

    The adapter keeps the provider id so the message transform can pick the
    right reasoning conventions.
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    provider = config.provider

    if provider == "anthropic":
        return AnthropicLLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider == "openai":
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    elif provider in OPENAI_COMPATIBLE_BASE_URLS:
        return OpenAILLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url or OPENAI_COMPATIBLE_BASE_URLS[provider],
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            provider_id=provider,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
