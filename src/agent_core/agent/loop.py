"""
Agent Loop - autonomous iteration until the task completes or blocks.

Each iteration runs the model until it answers without tool calls:

1. Check cancellation, the iteration budget and the wall-clock budget
2. Stream the model response (text, reasoning, tool calls, usage)
3. Run requested tools and append the call/result pair to the history
4. Pass every assistant turn through the provider message transform
5. Evaluate stop criteria against the final text of the iteration
6. Write the iteration artifacts (summary, feedback, state snapshot)
7. Compact the history if the last request crossed the threshold
8. Continue from the stored summary and feedback, optionally keeping only
   the goal and the most recent messages

Collaborators (model, tools, artifact store, check runner) are injected;
the loop holds no global state and one instance may serve many tasks.
"""

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from ..llm.base import (
    BaseLLM,
    LLMMessage,
    Part,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from ..llm.transform import apply_prompt_caching, transform_message
from ..tools import ToolRegistry, ToolResult
from ..usage import NormalizedUsage, normalize_usage
from .artifacts import ArtifactStore, read_artifact, write_artifact
from .compaction import (
    CompactionError,
    CompactionResult,
    CompressionConfig,
    ContextCompactor,
    enforce_tool_pairing,
    estimate_tokens,
    should_compact,
)
from .state import CompactionSummary, LoopConfig, LoopResult, LoopState, LoopStatus, StopReason
from .stop_criteria import CheckRunner, StopCriteria, StopDecision, evaluate_stop_criteria

logger = structlog.get_logger()

LOOP_ARTIFACT_KIND = "loop"

LOOP_INSTRUCTIONS = """You are running in an autonomous loop. Keep working until the task is done.
When the task is fully complete, end your reply with <ralph>COMPLETE</ralph>.
If you cannot proceed without help, end your reply with <ralph>BLOCKED: <reason></ralph>."""

CONTINUATION_PROMPT = (
    "Continue working on the task. Review what has been done so far and take the next step."
)

CANCELLED_TOOL_OUTPUT = "[Tool execution cancelled]"


class ModelInvocationError(Exception):
    """The model call failed in a way the loop cannot recover from."""


@dataclass(frozen=True)
class ArtifactNames:
    summary_file_name: str = "summary.md"
    feedback_file_name: str = "feedback.md"
    state_file_name: str = "state.json"


@dataclass(frozen=True)
class LoopError:
    """A recoverable error reported to observers as it happens."""

    iteration: int
    kind: str  # tool, compaction
    message: str
    tool_name: str | None = None
    tool_call_id: str | None = None


@dataclass
class LoopCallbacks:
    """Optional observers. Sync or async callables; failures are only logged."""

    on_text_delta: Callable[[str], Any] | None = None
    on_error: Callable[[LoopError], Any] | None = None
    on_iteration: Callable[[int, StopDecision], Any] | None = None
    on_compaction: Callable[[CompactionResult], Any] | None = None


@dataclass
class _AssistantTurn:
    text: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallPart] = field(default_factory=list)
    usage: NormalizedUsage | None = None
    finish_reason: str | None = None

    def parts(self) -> list[Part]:
        parts: list[Part] = []
        if self.reasoning:
            parts.append(ReasoningPart(self.reasoning))
        if self.text:
            parts.append(TextPart(self.text))
        parts.extend(self.tool_calls)
        return parts


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.warning("Loop callback failed", callback=getattr(callback, "__name__", "?"), error=str(e))


def fresh_context(messages: list[LLMMessage], include_last_n: int) -> list[LLMMessage]:
    """Keep leading system messages, the first user message and the last N others."""
    head: list[LLMMessage] = []
    index = 0
    while index < len(messages) and messages[index].role == "system":
        head.append(messages[index])
        index += 1
    if index < len(messages) and messages[index].role == "user":
        head.append(messages[index])
        index += 1

    rest = messages[index:]
    tail = rest[max(len(rest) - include_last_n, 0):] if include_last_n > 0 else []
    return head + tail


class AgentLoop:
    """Drives repeated model/tool cycles for one task at a time per run() call."""

    def __init__(
        self,
        llm: BaseLLM,
        tools: ToolRegistry | None = None,
        *,
        model: str | None = None,
        provider_id: str | None = None,
        system_prompt: str = "",
        config: LoopConfig | None = None,
        stop_criteria: StopCriteria | None = None,
        compression: CompressionConfig | None = None,
        compactor: ContextCompactor | None = None,
        artifact_store: ArtifactStore | None = None,
        check_runner: CheckRunner | None = None,
        callbacks: LoopCallbacks | None = None,
        artifact_names: ArtifactNames | None = None,
    ):
        self.llm = llm
        self.tools = tools
        self.model = model or llm.model
        self.provider_id = provider_id or llm.provider_name
        self.system_prompt = system_prompt
        self.config = config or LoopConfig()
        self.stop_criteria = stop_criteria or StopCriteria()
        self.compression = compression or CompressionConfig()
        self.compactor = compactor or ContextCompactor(llm)
        self.artifact_store = artifact_store
        self.check_runner = check_runner
        self.callbacks = callbacks or LoopCallbacks()
        self.artifact_names = artifact_names or ArtifactNames()

    async def run(
        self,
        task_id: str,
        messages: list[LLMMessage],
        *,
        abort: asyncio.Event | None = None,
        max_iterations: int | None = None,
        max_wall_time_ms: int | None = None,
    ) -> LoopResult:
        """Run the loop until a stop reason is reached.

        Args:
            task_id: Identifier used for artifacts and logging
            messages: Initial history (typically ending with the user's goal)
            abort: Cooperative cancellation signal
            max_iterations: Overrides LoopConfig.max_iterations
            max_wall_time_ms: Overrides LoopConfig.max_wall_time_ms

        Returns:
            The immutable loop result
        """
        abort = abort or asyncio.Event()
        iteration_limit = max_iterations if max_iterations is not None else self.config.max_iterations
        wall_limit_ms = max_wall_time_ms if max_wall_time_ms is not None else self.config.max_wall_time_ms

        state = LoopState(task_id=task_id, messages=list(messages))
        started = time.monotonic()
        last_compacted: list[LLMMessage] | None = None
        log = logger.bind(task_id=task_id, model=self.model, provider=self.provider_id)
        log.info("Agent loop started", max_iterations=iteration_limit, max_wall_time_ms=wall_limit_ms)

        try:
            while not state.stopped:
                if abort.is_set():
                    state.stop(StopReason.CANCELLED, "Loop cancelled")
                    break
                if state.iteration >= iteration_limit:
                    state.stop(
                        StopReason.MAX_ITERATIONS,
                        f"Reached the maximum of {iteration_limit} iterations",
                    )
                    break
                if wall_limit_ms is not None and (time.monotonic() - started) * 1000 >= wall_limit_ms:
                    state.stop(StopReason.MAX_WALL_TIME, f"Exceeded wall time of {wall_limit_ms} ms")
                    break

                state.iteration += 1
                state.touch()
                iteration_errors: list[str] = []
                log.info("Iteration started", iteration=state.iteration)

                final_text = await self._run_iteration(state, abort, iteration_errors)
                if abort.is_set():
                    state.stop(StopReason.CANCELLED, "Loop cancelled")
                    break

                decision, feedback = await evaluate_stop_criteria(
                    self.stop_criteria, final_text, iteration_errors, self.check_runner
                )
                state.completion_matched = decision.completion_matched
                state.feedback = feedback
                if decision.reason is not None:
                    state.stop(decision.reason, decision.message)

                await self._write_iteration_artifacts(state, final_text, iteration_errors, abort)
                await _notify(self.callbacks.on_iteration, state.iteration, decision)
                log.info(
                    "Iteration finished",
                    iteration=state.iteration,
                    stop_reason=decision.reason.value if decision.reason else None,
                    errors=len(iteration_errors),
                )
                if state.stopped:
                    break

                compacted = await self._maybe_compact(state)
                if compacted is not None:
                    last_compacted = compacted
                if abort.is_set():
                    state.stop(StopReason.CANCELLED, "Loop cancelled")
                    break

                if self.config.include_last_n_messages is not None:
                    state.messages = fresh_context(state.messages, self.config.include_last_n_messages)
                state.messages.append(await self._continuation_message(state, feedback))

        except ModelInvocationError as e:
            log.error("Model invocation failed", iteration=state.iteration, error=str(e))
            state.stop(StopReason.ERROR, str(e))
        except Exception:
            log.exception("Agent loop crashed", iteration=state.iteration)
            state.stop(StopReason.ERROR, "The agent loop stopped because of an internal error")

        if state.stop_reason is not StopReason.CANCELLED and not abort.is_set():
            await self._write_state_artifact(state)

        log.info(
            "Agent loop stopped",
            stop_reason=state.stop_reason.value if state.stop_reason else None,
            iterations=state.iteration,
            total_tokens=state.usage.total_tokens,
        )
        return LoopResult.from_state(state, compressed_messages=last_compacted)

    async def _run_iteration(
        self,
        state: LoopState,
        abort: asyncio.Event,
        iteration_errors: list[str],
    ) -> str:
        """Call the model until it answers without tool calls. Returns its final text."""
        text = ""
        for _ in range(self.config.max_tool_steps):
            turn = await self._invoke_model(state, abort)
            self._record_usage(state, turn.usage)
            text = turn.text

            message = LLMMessage(role="assistant", content=turn.parts())
            message = transform_message(state.messages, self.model, self.provider_id, message)

            if not turn.tool_calls:
                if message.content:
                    state.messages.append(message)
                return text

            state.messages.append(message)
            results = await self._execute_tool_calls(state, turn.tool_calls, abort, iteration_errors)
            state.messages.append(LLMMessage(role="tool", content=list(results)))
            if abort.is_set():
                return text

        logger.warning(
            "Tool step limit reached for iteration",
            task_id=state.task_id,
            iteration=state.iteration,
            max_tool_steps=self.config.max_tool_steps,
        )
        return text

    async def _invoke_model(self, state: LoopState, abort: asyncio.Event) -> _AssistantTurn:
        request = enforce_tool_pairing(state.messages)
        request = apply_prompt_caching(request, self.model, self.provider_id)
        definitions = self.tools.get_definitions() if self.tools else []

        turn = _AssistantTurn()
        try:
            async for event in self.llm.stream(
                request,
                tools=definitions or None,
                system_prompt=self.system_prompt or None,
                model=self.model,
                abort=abort,
            ):
                if abort.is_set():
                    break
                if event.type == "text-delta":
                    turn.text += event.text
                    await _notify(self.callbacks.on_text_delta, event.text)
                elif event.type == "reasoning-delta":
                    turn.reasoning += event.text
                elif event.type == "tool-call" and event.tool_call is not None:
                    turn.tool_calls.append(event.tool_call)
                elif event.type == "usage":
                    turn.usage = normalize_usage(event.usage, event.total_usage) or turn.usage
                elif event.type == "done":
                    if event.usage is not None or event.total_usage is not None:
                        turn.usage = normalize_usage(event.usage, event.total_usage) or turn.usage
                    turn.finish_reason = event.finish_reason
                    break
                elif event.type == "error":
                    raise ModelInvocationError(event.error or "Model stream reported an error")
        except ModelInvocationError:
            raise
        except Exception as e:
            raise ModelInvocationError(str(e)) from e

        state.touch()
        return turn

    def _record_usage(self, state: LoopState, usage: NormalizedUsage | None) -> None:
        state.usage.add(usage)
        if usage is not None:
            state.last_request_tokens = usage.total_tokens
        else:
            state.last_request_tokens = estimate_tokens(state.messages)

    def _is_concurrency_safe(self, call: ToolCallPart) -> bool:
        return self.tools is not None and self.tools.is_concurrency_safe(call.tool_name)

    async def _invoke_tool(self, call: ToolCallPart) -> ToolResult:
        if self.tools is None:
            return ToolResult(success=False, error=f"Tool '{call.tool_name}' not found")
        return await self.tools.execute(call.tool_name, dict(call.input))

    async def _execute_tool_calls(
        self,
        state: LoopState,
        calls: list[ToolCallPart],
        abort: asyncio.Event,
        iteration_errors: list[str],
    ) -> list[ToolResultPart]:
        """Run the calls of one turn. Results come back in request order.

        Consecutive concurrency-safe calls run together; everything else runs
        one at a time.
        """
        results: list[ToolResultPart] = []
        index = 0
        while index < len(calls):
            if abort.is_set():
                for call in calls[index:]:
                    results.append(ToolResultPart(
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        output=CANCELLED_TOOL_OUTPUT,
                        is_error=True,
                    ))
                break

            batch = [calls[index]]
            if self._is_concurrency_safe(calls[index]):
                while index + len(batch) < len(calls) and self._is_concurrency_safe(calls[index + len(batch)]):
                    batch.append(calls[index + len(batch)])

            if len(batch) > 1:
                outcomes = await asyncio.gather(*(self._invoke_tool(c) for c in batch))
            else:
                outcomes = [await self._invoke_tool(batch[0])]

            for call, outcome in zip(batch, outcomes):
                results.append(await self._to_result_part(state, call, outcome, iteration_errors))
            index += len(batch)

        return results

    async def _to_result_part(
        self,
        state: LoopState,
        call: ToolCallPart,
        outcome: ToolResult,
        iteration_errors: list[str],
    ) -> ToolResultPart:
        if outcome.success:
            return ToolResultPart(call.tool_call_id, call.tool_name, outcome.output)

        error = outcome.error or "Unknown error"
        iteration_errors.append(f"{call.tool_name}: {error}")
        state.errors.append(f"{call.tool_name}: {error}")
        await _notify(
            self.callbacks.on_error,
            LoopError(
                iteration=state.iteration,
                kind="tool",
                message=error,
                tool_name=call.tool_name,
                tool_call_id=call.tool_call_id,
            ),
        )
        return ToolResultPart(call.tool_call_id, call.tool_name, f"Error: {error}", is_error=True)

    async def _maybe_compact(self, state: LoopState) -> list[LLMMessage] | None:
        if not should_compact(state.last_request_tokens, self.config.context_window_tokens, self.compression):
            return None

        logger.info(
            "Context approaching limit, running compaction",
            task_id=state.task_id,
            tokens=state.last_request_tokens,
            context_window=self.config.context_window_tokens,
        )
        state.status = LoopStatus.COMPACTING
        try:
            result = await self.compactor.compact_messages(
                state.messages, self.compression, self.system_prompt
            )
        except CompactionError as e:
            logger.warning("Compaction failed, continuing without it", task_id=state.task_id, error=str(e))
            await _notify(
                self.callbacks.on_error,
                LoopError(iteration=state.iteration, kind="compaction", message=str(e)),
            )
            return None
        finally:
            state.status = LoopStatus.RUNNING

        if result is None:
            return None

        state.messages = list(result.messages)
        state.compaction_count += 1
        state.last_compaction = CompactionSummary(
            original_message_count=result.original_message_count,
            compressed_message_count=result.compressed_message_count,
            reduction_percent=result.reduction_percent,
        )
        state.last_request_tokens = estimate_tokens(state.messages)
        await _notify(self.callbacks.on_compaction, result)
        return list(result.messages)

    async def _continuation_message(self, state: LoopState, feedback: list[str]) -> LLMMessage:
        """Seed the next iteration from the stored summary and feedback notes.

        Falls back to the in-memory feedback when no store is configured or
        the artifacts cannot be read.
        """
        summary = await read_artifact(
            self.artifact_store, LOOP_ARTIFACT_KIND, state.task_id, self.artifact_names.summary_file_name
        )
        notes = await read_artifact(
            self.artifact_store, LOOP_ARTIFACT_KIND, state.task_id, self.artifact_names.feedback_file_name
        )

        sections = [CONTINUATION_PROMPT]
        if summary and summary.strip():
            sections.append(summary.strip())
        if notes and notes.strip():
            sections.append(notes.strip())
        elif feedback:
            sections.append("Feedback from the previous iteration:\n" + "\n\n".join(feedback))
        return LLMMessage(role="user", content="\n\n".join(sections))

    def _state_snapshot(self, state: LoopState) -> dict[str, Any]:
        return {
            "taskId": state.task_id,
            "startedAt": state.started_at,
            "updatedAt": state.last_activity_at,
            "iteration": state.iteration,
            "stopReason": state.stop_reason.value if state.stop_reason else None,
            "stopMessage": state.stop_message,
            "completionMatched": state.completion_matched,
            "errors": list(state.errors),
            "usage": {
                "inputTokens": state.usage.input_tokens,
                "outputTokens": state.usage.output_tokens,
                "totalTokens": state.usage.total_tokens,
            },
        }

    async def _write_state_artifact(self, state: LoopState) -> None:
        await write_artifact(
            self.artifact_store,
            LOOP_ARTIFACT_KIND,
            state.task_id,
            self.artifact_names.state_file_name,
            json.dumps(self._state_snapshot(state), indent=2),
        )

    async def _write_iteration_artifacts(
        self,
        state: LoopState,
        final_text: str,
        iteration_errors: list[str],
        abort: asyncio.Event,
    ) -> None:
        if self.artifact_store is None or abort.is_set():
            return

        stop_reason = state.stop_reason.value if state.stop_reason else "continue"
        summary = (
            f"# Iteration {state.iteration}\n\n"
            f"- Stop reason: {stop_reason}\n"
            f"- Messages: {len(state.messages)}\n"
            f"- Tokens: {state.usage.input_tokens} in / {state.usage.output_tokens} out\n\n"
            f"## Last assistant output\n\n{final_text.strip() or '(no text)'}\n"
        )
        await write_artifact(
            self.artifact_store,
            LOOP_ARTIFACT_KIND,
            state.task_id,
            self.artifact_names.summary_file_name,
            summary,
        )

        notes = list(state.feedback) + [f"Error: {e}" for e in iteration_errors]
        feedback = "# Feedback\n\n" + ("\n\n".join(notes) if notes else "No feedback.") + "\n"
        await write_artifact(
            self.artifact_store,
            LOOP_ARTIFACT_KIND,
            state.task_id,
            self.artifact_names.feedback_file_name,
            feedback,
        )
        await self._write_state_artifact(state)
