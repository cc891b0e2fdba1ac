"""
Loop-scoped state and the result handed back to the host.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

from ..llm.base import LLMMessage
from ..usage import UsageAccumulator


class StopReason(str, Enum):
    COMPLETE = "complete"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max-iterations"
    MAX_WALL_TIME = "max-wall-time"
    CANCELLED = "cancelled"
    ERROR = "error"
    UNKNOWN = "unknown"


class LoopStatus(str, Enum):
    RUNNING = "running"
    COMPACTING = "compacting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class LoopConfig:
    """Budgets for one loop invocation."""

    max_iterations: int = 20
    max_wall_time_ms: int | None = 60 * 60 * 1000
    max_tool_steps: int = 25
    context_window_tokens: int = 128_000
    # Keep only the goal plus this many recent messages between iterations
    include_last_n_messages: int | None = None


@dataclass(frozen=True)
class CompactionSummary:
    """Figures from the most recent compaction, for the host's summary line."""

    original_message_count: int
    compressed_message_count: int
    reduction_percent: float


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LoopState:
    """Mutable state owned by a single AgentLoop.run() call."""

    task_id: str
    messages: list[LLMMessage]
    iteration: int = 0
    status: LoopStatus = LoopStatus.RUNNING
    stop_reason: StopReason | None = None
    stop_message: str | None = None
    completion_matched: bool = False
    usage: UsageAccumulator = field(default_factory=UsageAccumulator)
    last_request_tokens: int = 0
    errors: list[str] = field(default_factory=list)
    feedback: list[str] = field(default_factory=list)
    started_at: int = field(default_factory=_now_ms)
    last_activity_at: int = field(default_factory=_now_ms)
    compaction_count: int = 0
    last_compaction: CompactionSummary | None = None

    def touch(self) -> None:
        self.last_activity_at = _now_ms()

    def stop(self, reason: StopReason, message: str | None = None) -> None:
        self.status = LoopStatus.STOPPED
        self.stop_reason = reason
        self.stop_message = message
        self.touch()

    @property
    def stopped(self) -> bool:
        return self.status is LoopStatus.STOPPED


@dataclass(frozen=True)
class LoopResult:
    """Immutable outcome of a loop invocation."""

    stop_reason: StopReason
    success: bool
    messages: tuple[LLMMessage, ...]
    iterations: int
    stop_message: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    errors: tuple[str, ...] = ()
    compressed_messages: tuple[LLMMessage, ...] | None = None
    original_message_count: int | None = None
    compressed_message_count: int | None = None
    reduction_percent: float | None = None

    @classmethod
    def from_state(
        cls,
        state: LoopState,
        compressed_messages: list[LLMMessage] | None = None,
    ) -> "LoopResult":
        reason = state.stop_reason or StopReason.UNKNOWN
        compaction = state.last_compaction
        return cls(
            stop_reason=reason,
            success=reason is StopReason.COMPLETE,
            messages=tuple(state.messages),
            iterations=state.iteration,
            stop_message=state.stop_message,
            input_tokens=state.usage.input_tokens,
            output_tokens=state.usage.output_tokens,
            total_tokens=state.usage.total_tokens,
            errors=tuple(state.errors),
            compressed_messages=tuple(compressed_messages) if compressed_messages else None,
            original_message_count=compaction.original_message_count if compaction else None,
            compressed_message_count=compaction.compressed_message_count if compaction else None,
            reduction_percent=compaction.reduction_percent if compaction else None,
        )
