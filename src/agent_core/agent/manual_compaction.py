"""
Manual (user-triggered) context compaction for a task.
"""

import json
import time
from dataclasses import dataclass

import structlog

from ..llm.base import BaseLLM, LLMMessage, message_to_dict
from .artifacts import ArtifactStore
from .compaction import CompressionConfig, ContextCompactor

logger = structlog.get_logger()

COMPACTED_MESSAGES_FILE = "compacted-messages.json"
CONTEXT_ARTIFACT_KIND = "context"

NO_TASK = "No active task - cannot compact context"
NO_MESSAGES = "No messages to compact"
NO_CHANGE = "No compression needed - context is already compact"


def success_message(count: int, reduction_percent: float) -> str:
    return f"Context compacted successfully. Reduced to {count} messages ({reduction_percent}% reduction)"


def failure_message(error: str) -> str:
    return f"Failed to compact context: {error}"


@dataclass
class ManualCompactionResult:
    success: bool
    message: str
    error: str | None = None
    compressed_messages: list[LLMMessage] | None = None
    compression_ratio: float | None = None
    original_message_count: int | None = None
    compressed_message_count: int | None = None
    reduction_percent: float | None = None


def _failure(message: str) -> ManualCompactionResult:
    return ManualCompactionResult(success=False, message=message, error=message)


async def compact_task_context(
    task_id: str,
    messages: list[LLMMessage],
    llm: BaseLLM,
    store: ArtifactStore,
    config: CompressionConfig | None = None,
    system_prompt: str | None = None,
) -> ManualCompactionResult:
    """Compact a task's history on request and save it as a context artifact.

    The caller's message list is not modified; the compacted list is returned
    and written to ``compacted-messages.json``.
    """
    if not task_id:
        return _failure(NO_TASK)
    if not messages:
        return _failure(NO_MESSAGES)

    config = config or CompressionConfig()
    if system_prompt is None:
        first = messages[0]
        system_prompt = first.text if first.role == "system" else ""

    try:
        result = await ContextCompactor(llm).compact_messages(messages, config, system_prompt)
        if result is None:
            return _failure(NO_CHANGE)

        data = {
            "messages": [message_to_dict(m) for m in result.messages],
            "sourceMessageCount": len(messages),
            "lastRequestTokens": 0,
            "updatedAt": int(time.time() * 1000),
        }
        await store.write(CONTEXT_ARTIFACT_KIND, task_id, COMPACTED_MESSAGES_FILE, json.dumps(data))

        return ManualCompactionResult(
            success=True,
            message=success_message(result.compressed_message_count, result.reduction_percent),
            compressed_messages=result.messages,
            compression_ratio=result.compression_ratio,
            original_message_count=result.original_message_count,
            compressed_message_count=result.compressed_message_count,
            reduction_percent=result.reduction_percent,
        )
    except Exception as e:
        logger.exception("Failed to compact context", task_id=task_id)
        return _failure(failure_message(str(e)))
