"""
Agent module - the execution engine.

Includes:
- AgentLoop: Autonomous model/tool iteration with stop criteria
- ContextCompactor: Structured summarization of older turns
- compact_task_context: User-triggered compaction persisted as an artifact
- FileArtifactStore: Per-task artifact files
"""

from .artifacts import ArtifactStore, FileArtifactStore
from .compaction import (
    CompactionError,
    CompactionResult,
    CompressionConfig,
    ContextCompactor,
    SummarySections,
    enforce_tool_pairing,
    estimate_tokens,
)
from .loop import AgentLoop, ArtifactNames, LoopCallbacks, LoopError, ModelInvocationError
from .manual_compaction import ManualCompactionResult, compact_task_context
from .state import LoopConfig, LoopResult, StopReason
from .stop_criteria import CheckOutcome, CheckRunner, StopCriteria, StopDecision

__all__ = [
    "AgentLoop",
    "ArtifactNames",
    "LoopCallbacks",
    "LoopError",
    "ModelInvocationError",
    "LoopConfig",
    "LoopResult",
    "StopReason",
    "StopCriteria",
    "StopDecision",
    "CheckOutcome",
    "CheckRunner",
    "ContextCompactor",
    "CompressionConfig",
    "CompactionResult",
    "CompactionError",
    "SummarySections",
    "enforce_tool_pairing",
    "estimate_tokens",
    "compact_task_context",
    "ManualCompactionResult",
    "ArtifactStore",
    "FileArtifactStore",
]
