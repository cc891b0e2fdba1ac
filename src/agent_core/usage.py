"""
Token usage normalization.

Providers report usage under different names (``inputTokens`` vs
``prompt_tokens`` vs ``input_tokens``) and often leave fields out. This module
folds those reports into one ``NormalizedUsage``.
"""

import math
from dataclasses import dataclass
from typing import Any, Mapping

INPUT_KEYS = ("inputTokens", "promptTokens", "prompt_tokens", "input_tokens")
OUTPUT_KEYS = ("outputTokens", "completionTokens", "completion_tokens", "output_tokens")
TOTAL_KEYS = ("totalTokens", "total_tokens")
CACHED_KEYS = ("cachedInputTokens", "cached_tokens", "cache_read_input_tokens")
CACHE_CREATION_KEYS = ("cacheCreationInputTokens", "cache_creation_input_tokens")


@dataclass(frozen=True)
class NormalizedUsage:
    """Canonical token accounting for one model call."""

    input_tokens: int
    output_tokens: int
    total_tokens: int
    cached_input_tokens: int | None = None
    cache_creation_input_tokens: int | None = None


def _read(report: Any, key: str) -> Any:
    if report is None:
        return None
    if isinstance(report, Mapping):
        return report.get(key)
    return getattr(report, key, None)


def _as_number(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def _first_number(reports: tuple[Any, ...], keys: tuple[str, ...]) -> int | None:
    for report in reports:
        for key in keys:
            number = _as_number(_read(report, key))
            if number is not None:
                return number
    return None


def _has_tokens(report: Any) -> bool:
    for key in INPUT_KEYS + OUTPUT_KEYS + TOTAL_KEYS:
        number = _as_number(_read(report, key))
        if number is not None and number > 0:
            return True
    return False


def normalize_usage(usage: Any = None, total_usage: Any = None) -> NormalizedUsage | None:
    """Normalize a usage report, falling back to ``total_usage``.

    Args:
        usage: Primary report for the call (mapping or SDK object)
        total_usage: Optional aggregate report used when ``usage`` is empty

    Returns:
        NormalizedUsage, or None when neither report carries token counts
    """
    primary = usage if usage is not None else total_usage
    effective = primary if _has_tokens(primary) else total_usage
    reports = (effective, total_usage)

    input_tokens = _first_number(reports, INPUT_KEYS) or 0
    output_tokens = _first_number(reports, OUTPUT_KEYS) or 0
    cached = _first_number(reports, CACHED_KEYS)
    cache_creation = _first_number(reports, CACHE_CREATION_KEYS)

    total_tokens = _first_number(reports, TOTAL_KEYS)
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens

    # The sum is authoritative over a possibly stale total field.
    if total_tokens > 0 and (input_tokens > 0 or output_tokens > 0):
        total_tokens = input_tokens + output_tokens

    # Policy choice kept for compatibility: an unexplained total is counted as input.
    if total_tokens > 0 and input_tokens == 0 and output_tokens == 0:
        input_tokens = total_tokens

    if total_tokens == 0 and (input_tokens > 0 or output_tokens > 0):
        total_tokens = input_tokens + output_tokens

    if total_tokens == 0:
        return None

    return NormalizedUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        cached_input_tokens=cached,
        cache_creation_input_tokens=cache_creation,
    )


@dataclass
class UsageAccumulator:
    """Running token totals across the calls of one loop."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_input_tokens: int = 0
    calls: int = 0

    def add(self, usage: NormalizedUsage | None) -> None:
        if usage is None:
            return
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.total_tokens += usage.total_tokens
        self.cached_input_tokens += usage.cached_input_tokens or 0
        self.calls += 1
