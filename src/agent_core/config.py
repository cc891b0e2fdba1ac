"""
Configuration management for agent-core

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .agent.compaction import CompressionConfig
    from .agent.state import LoopConfig
    from .agent.stop_criteria import StopCriteria

ProviderId = Literal["anthropic", "openai", "openrouter", "deepseek", "moonshot"]


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: ProviderId = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "agent-core"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    deepseek_api_key: str = Field(default="", description="DeepSeek API key")
    moonshot_api_key: str = Field(default="", description="Moonshot (Kimi) API key")

    # Default model settings
    default_provider: ProviderId = "anthropic"
    default_model: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7
    context_window_tokens: int = Field(default=128_000, description="Context window of the task model")

    # Agent loop
    max_iterations: int = Field(default=20, description="Loop iterations before stopping")
    max_wall_time_ms: int = Field(default=60 * 60 * 1000, description="Wall-clock budget per loop")
    max_tool_steps: int = Field(default=25, description="Model calls per iteration")
    include_last_n_messages: int | None = Field(
        default=None, ge=0, description="Recent messages carried into each continuation"
    )
    success_regex: str = Field(default=r"<ralph>COMPLETE</ralph>")
    blocked_regex: str = Field(default=r"<ralph>BLOCKED:(.*?)</ralph>")
    require_passing_tests: bool = False
    require_lint: bool = False
    require_tsc: bool = False
    require_no_errors: bool = False

    # Compaction
    compression_enabled: bool = True
    preserve_recent_messages: int = Field(default=6, ge=0)
    compression_threshold: float = Field(default=0.8, gt=0, le=1)
    compression_model: str = Field(default="", description="Model used only for summaries")

    # Artifacts
    artifacts_dir: str = Field(default="./data/tasks", description="Per-task artifact directory root")

    @field_validator("log_level", mode="before")
    @classmethod
    def parse_log_level(cls, v: str) -> str:
        return v.strip().upper() if v else "INFO"

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
            "deepseek": self.deepseek_api_key,
            "moonshot": self.moonshot_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
            "deepseek": "deepseek-reasoner",
            "moonshot": "kimi-k2.5",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
            "deepseek": "https://api.deepseek.com/v1",
            "moonshot": "https://api.moonshot.ai/v1",
        }

        model = model_map.get(provider, "")
        if self.default_model and provider == self.default_provider:
            model = self.default_model

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    def compression_config(self) -> "CompressionConfig":
        """Build the compaction policy for one loop invocation."""
        from .agent.compaction import CompressionConfig

        return CompressionConfig(
            enabled=self.compression_enabled,
            preserve_recent_messages=self.preserve_recent_messages,
            compression_threshold=self.compression_threshold,
            compression_model=self.compression_model or None,
        )

    def stop_criteria(self) -> "StopCriteria":
        from .agent.stop_criteria import StopCriteria

        return StopCriteria(
            require_passing_tests=self.require_passing_tests,
            require_lint=self.require_lint,
            require_tsc=self.require_tsc,
            require_no_errors=self.require_no_errors,
            success_regex=self.success_regex,
            blocked_regex=self.blocked_regex,
        )

    def loop_config(self) -> "LoopConfig":
        from .agent.state import LoopConfig

        return LoopConfig(
            max_iterations=self.max_iterations,
            max_wall_time_ms=self.max_wall_time_ms,
            max_tool_steps=self.max_tool_steps,
            context_window_tokens=self.context_window_tokens,
            include_last_n_messages=self.include_last_n_messages,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
