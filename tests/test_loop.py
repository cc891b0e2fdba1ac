"""
Tests for the agent loop.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from agent_core.agent.artifacts import FileArtifactStore
from agent_core.agent.compaction import SUMMARY_HEADER, CompressionConfig
from agent_core.agent.loop import CANCELLED_TOOL_OUTPUT, AgentLoop, LoopCallbacks, fresh_context
from agent_core.agent.state import LoopConfig, StopReason
from agent_core.agent.stop_criteria import StopCriteria
from agent_core.llm.base import (
    BaseLLM,
    LLMMessage,
    LLMResponse,
    ReasoningPart,
    StreamEvent,
    TextPart,
    ToolCallPart,
)
from agent_core.tools import Tool, ToolRegistry, ToolResult

COMPLETE = "<ralph>COMPLETE</ralph>"


def turn(text: str = "", calls=(), reasoning: str = "", usage=(10, 5)) -> list[StreamEvent]:
    """Build the stream events of one model call."""
    events = []
    if reasoning:
        events.append(StreamEvent(type="reasoning-delta", text=reasoning))
    if text:
        events.append(StreamEvent(type="text-delta", text=text))
    for call in calls:
        events.append(StreamEvent(type="tool-call", tool_call=call))
    if usage:
        events.append(StreamEvent(type="usage", usage={"inputTokens": usage[0], "outputTokens": usage[1]}))
    events.append(StreamEvent(type="done", finish_reason="stop"))
    return events


class ScriptedLLM(BaseLLM):
    """Replays a fixed list of turns; records every request."""

    def __init__(self, turns, model: str = "gpt-4o", provider: str = "openai", summary: str = "1. Primary Request and Intent:\nKeep going"):
        super().__init__(api_key="test", model=model)
        self.turns = list(turns)
        self.provider = provider
        self.summary = summary
        self.requests: list[list[LLMMessage]] = []

    @property
    def provider_name(self) -> str:
        return self.provider

    async def generate(self, messages, tools=None, system_prompt=None, model=None) -> LLMResponse:
        return LLMResponse(content=self.summary)

    async def stream(self, messages, tools=None, system_prompt=None, model=None, abort=None):
        self.requests.append(list(messages))
        events = self.turns.pop(0) if self.turns else turn("Still working")
        for event in events:
            yield event


def _goal() -> list[LLMMessage]:
    return [LLMMessage(role="user", content="Fix the bug")]


@pytest.mark.asyncio
async def test_loop_completes_on_marker():
    """Test the loop stops on the completion marker and reports usage."""
    llm = ScriptedLLM([turn(f"Fixed it. {COMPLETE}", usage=(100, 20))])

    result = await AgentLoop(llm).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    assert result.success is True
    assert result.iterations == 1
    assert result.input_tokens == 100
    assert result.output_tokens == 20
    assert result.total_tokens == 120
    assert result.messages[-1].role == "assistant"
    assert COMPLETE in result.messages[-1].text


@pytest.mark.asyncio
async def test_loop_blocked_with_message():
    llm = ScriptedLLM([turn("I need credentials. <ralph>BLOCKED: missing key</ralph>")])

    result = await AgentLoop(llm).run("task-1", _goal())

    assert result.stop_reason is StopReason.BLOCKED
    assert result.success is False
    assert result.stop_message == "missing key"
    assert result.iterations == 1


@pytest.mark.asyncio
async def test_loop_stops_at_max_iterations():
    """Test exactly N model calls happen when no marker is emitted."""
    llm = ScriptedLLM([])

    result = await AgentLoop(llm).run("task-1", _goal(), max_iterations=3)

    assert result.stop_reason is StopReason.MAX_ITERATIONS
    assert result.iterations == 3
    assert len(llm.requests) == 3
    # goal + (assistant reply, continuation) per iteration
    assert len(result.messages) == 7
    assert result.messages[2].role == "user"
    assert "Continue working" in result.messages[2].text


@pytest.mark.asyncio
async def test_loop_wall_time_zero():
    llm = ScriptedLLM([turn(COMPLETE)])

    result = await AgentLoop(llm).run("task-1", _goal(), max_wall_time_ms=0)

    assert result.stop_reason is StopReason.MAX_WALL_TIME
    assert result.iterations == 0
    assert llm.requests == []


@pytest.mark.asyncio
async def test_loop_cancelled_before_start():
    """Test a pre-set abort signal stops the loop without artifacts."""
    store = MagicMock()
    store.write = AsyncMock(return_value="path")
    abort = asyncio.Event()
    abort.set()

    result = await AgentLoop(ScriptedLLM([]), artifact_store=store).run("task-1", _goal(), abort=abort)

    assert result.stop_reason is StopReason.CANCELLED
    assert result.iterations == 0
    store.write.assert_not_called()


@pytest.mark.asyncio
async def test_loop_cancelled_during_tools():
    """Test calls after an abort get cancelled results and nothing is written."""
    abort = asyncio.Event()
    store = MagicMock()
    store.write = AsyncMock(return_value="path")

    async def stop_everything() -> ToolResult:
        abort.set()
        return ToolResult(success=True, output="stopping")

    async def never() -> ToolResult:
        raise AssertionError("should not run")

    tools = ToolRegistry([
        Tool("stop", "Sets the abort flag", stop_everything),
        Tool("later", "Never runs", never),
    ])
    llm = ScriptedLLM([
        turn(calls=[ToolCallPart("c1", "stop", {}), ToolCallPart("c2", "later", {})]),
    ])

    result = await AgentLoop(llm, tools, artifact_store=store).run("task-1", _goal(), abort=abort)

    assert result.stop_reason is StopReason.CANCELLED
    results = result.messages[-1].tool_results
    assert [r.tool_call_id for r in results] == ["c1", "c2"]
    assert results[0].output == "stopping"
    assert results[1].output == CANCELLED_TOOL_OUTPUT
    assert results[1].is_error is True
    store.write.assert_not_called()


@pytest.mark.asyncio
async def test_tool_call_and_result_appended():
    """Test a tool turn appends the call, then the result, then the final reply."""

    async def read_file(file_path: str) -> ToolResult:
        return ToolResult(success=True, output=f"contents of {file_path}")

    tools = ToolRegistry([Tool("readFile", "Read a file", read_file)])
    llm = ScriptedLLM([
        turn("Let me look", calls=[ToolCallPart("call_1", "readFile", {"file_path": "a.py"})]),
        turn(f"Done {COMPLETE}"),
    ])

    result = await AgentLoop(llm, tools).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    assert [m.role for m in result.messages] == ["user", "assistant", "tool", "assistant"]
    assert result.messages[1].tool_calls[0].tool_call_id == "call_1"
    tool_result = result.messages[2].tool_results[0]
    assert tool_result.tool_call_id == "call_1"
    assert tool_result.output == "contents of a.py"
    assert result.input_tokens == 20
    # The second request already sees the pair.
    assert [m.role for m in llm.requests[1]] == ["user", "assistant", "tool"]


@pytest.mark.asyncio
async def test_concurrency_safe_tools_run_together_in_order():
    """Test safe tools overlap but results keep request order."""
    finished: list[str] = []

    async def slow() -> ToolResult:
        await asyncio.sleep(0.05)
        finished.append("slow")
        return ToolResult(success=True, output="slow")

    async def fast() -> ToolResult:
        finished.append("fast")
        return ToolResult(success=True, output="fast")

    tools = ToolRegistry([
        Tool("slow", "Slow read", slow, concurrency_safe=True),
        Tool("fast", "Fast read", fast, concurrency_safe=True),
    ])
    llm = ScriptedLLM([
        turn(calls=[ToolCallPart("a", "slow", {}), ToolCallPart("b", "fast", {})]),
        turn(COMPLETE),
    ])

    result = await AgentLoop(llm, tools).run("task-1", _goal())

    assert finished == ["fast", "slow"]
    outputs = [r.output for r in result.messages[2].tool_results]
    assert outputs == ["slow", "fast"]


@pytest.mark.asyncio
async def test_unsafe_tools_run_sequentially():
    finished: list[str] = []

    async def slow() -> ToolResult:
        await asyncio.sleep(0.02)
        finished.append("slow")
        return ToolResult(success=True, output="slow")

    async def fast() -> ToolResult:
        finished.append("fast")
        return ToolResult(success=True, output="fast")

    tools = ToolRegistry([Tool("slow", "Write", slow), Tool("fast", "Write", fast)])
    llm = ScriptedLLM([
        turn(calls=[ToolCallPart("a", "slow", {}), ToolCallPart("b", "fast", {})]),
        turn(COMPLETE),
    ])

    await AgentLoop(llm, tools).run("task-1", _goal())

    assert finished == ["slow", "fast"]


@pytest.mark.asyncio
async def test_tool_error_reported_before_iteration_ends():
    """Test on_error fires during the iteration and the loop keeps going."""
    events: list[tuple] = []

    async def broken() -> ToolResult:
        return ToolResult(success=False, error="boom")

    callbacks = LoopCallbacks(
        on_error=lambda error: events.append(("error", error.kind, error.tool_name, error.message)),
        on_iteration=lambda iteration, decision: events.append(("iteration", iteration)),
    )
    tools = ToolRegistry([Tool("broken", "Fails", broken)])
    llm = ScriptedLLM([
        turn(calls=[ToolCallPart("c1", "broken", {})]),
        turn(f"Worked around it {COMPLETE}"),
    ])

    result = await AgentLoop(llm, tools, callbacks=callbacks).run("task-1", _goal())

    assert events == [("error", "tool", "broken", "boom"), ("iteration", 1)]
    assert result.stop_reason is StopReason.COMPLETE
    assert result.errors == ("broken: boom",)
    tool_result = result.messages[2].tool_results[0]
    assert tool_result.is_error is True
    assert tool_result.output == "Error: boom"


@pytest.mark.asyncio
async def test_unknown_tool_is_recoverable():
    llm = ScriptedLLM([
        turn(calls=[ToolCallPart("c1", "missing", {})]),
        turn(COMPLETE),
    ])

    result = await AgentLoop(llm, ToolRegistry()).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    assert "not found" in result.messages[2].tool_results[0].output


@pytest.mark.asyncio
async def test_require_no_errors_continues_with_feedback():
    """Test a refused completion feeds the errors into the next iteration."""

    async def broken() -> ToolResult:
        return ToolResult(success=False, error="disk full")

    tools = ToolRegistry([Tool("broken", "Fails", broken)])
    llm = ScriptedLLM([
        turn(calls=[ToolCallPart("c1", "broken", {})]),
        turn(f"Done {COMPLETE}"),
        turn(f"Really done {COMPLETE}"),
    ])

    result = await AgentLoop(
        llm, tools, stop_criteria=StopCriteria(require_no_errors=True)
    ).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    assert result.iterations == 2
    continuation = llm.requests[2][-1]
    assert continuation.role == "user"
    assert "disk full" in continuation.text


@pytest.mark.asyncio
async def test_error_event_stops_loop():
    llm = ScriptedLLM([[StreamEvent(type="error", error="upstream 500")]])

    result = await AgentLoop(llm).run("task-1", _goal())

    assert result.stop_reason is StopReason.ERROR
    assert result.stop_message == "upstream 500"


@pytest.mark.asyncio
async def test_stream_exception_stops_loop():
    llm = ScriptedLLM([])

    async def failing_stream(*args, **kwargs):
        raise ConnectionError("connection reset")
        yield  # pragma: no cover

    llm.stream = failing_stream

    result = await AgentLoop(llm).run("task-1", _goal())

    assert result.stop_reason is StopReason.ERROR
    assert result.stop_message == "connection reset"


@pytest.mark.asyncio
async def test_compaction_triggered_by_last_request_tokens():
    """Test the history is compacted when the last request crosses the threshold."""
    compactions = []
    history = [
        LLMMessage(role="user", content="Fix the bug"),
        LLMMessage(role="assistant", content="Looking"),
        LLMMessage(role="user", content="It is in parser.py"),
        LLMMessage(role="assistant", content="Reading it"),
    ]
    llm = ScriptedLLM([turn("Progress", usage=(900, 100)), turn(COMPLETE, usage=(50, 5))])

    result = await AgentLoop(
        llm,
        config=LoopConfig(context_window_tokens=1000),
        compression=CompressionConfig(preserve_recent_messages=1),
        callbacks=LoopCallbacks(on_compaction=compactions.append),
    ).run("task-1", history)

    assert result.stop_reason is StopReason.COMPLETE
    assert len(compactions) == 1
    assert result.original_message_count == 5
    assert result.compressed_message_count == 2
    assert result.reduction_percent == 60.0
    assert result.compressed_messages is not None
    second_request = llm.requests[1]
    assert second_request[0].text.startswith(SUMMARY_HEADER)
    assert second_request[1].text == "Progress"
    assert second_request[-1].role == "user"


@pytest.mark.asyncio
async def test_compaction_failure_does_not_stop_loop():
    errors = []
    llm = ScriptedLLM([turn("Progress", usage=(900, 100)), turn(COMPLETE)])
    llm.generate = AsyncMock(side_effect=RuntimeError("summary model down"))
    history = [LLMMessage(role="user", content="a"), LLMMessage(role="assistant", content="b")]

    result = await AgentLoop(
        llm,
        config=LoopConfig(context_window_tokens=1000),
        compression=CompressionConfig(preserve_recent_messages=1),
        callbacks=LoopCallbacks(on_error=errors.append),
    ).run("task-1", history)

    assert result.stop_reason is StopReason.COMPLETE
    assert [e.kind for e in errors] == ["compaction"]
    assert "summary model down" in errors[0].message
    assert result.compressed_messages is None


@pytest.mark.asyncio
async def test_artifacts_written(tmp_path):
    """Test summary, feedback and state files land in the loop artifact folder."""
    llm = ScriptedLLM([turn(f"Done {COMPLETE}")])

    await AgentLoop(llm, artifact_store=FileArtifactStore(tmp_path)).run("task-1", _goal())

    folder = tmp_path / "task-1" / "loop"
    assert "Done" in (folder / "summary.md").read_text()
    assert (folder / "feedback.md").exists()
    state = json.loads((folder / "state.json").read_text())
    assert state["taskId"] == "task-1"
    assert state["stopReason"] == "complete"
    assert state["completionMatched"] is True
    assert state["iteration"] == 1


@pytest.mark.asyncio
async def test_artifact_failure_does_not_abort():
    store = MagicMock()
    store.write = AsyncMock(side_effect=OSError("read-only file system"))
    llm = ScriptedLLM([turn(f"Done {COMPLETE}")])

    result = await AgentLoop(llm, artifact_store=store).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    assert store.write.await_count > 0


@pytest.mark.asyncio
async def test_transform_applied_to_assistant_turns():
    """Test DeepSeek reasoning is moved to provider options on appended turns."""
    llm = ScriptedLLM(
        [turn(f"answer {COMPLETE}", reasoning="think")],
        model="deepseek-reasoner",
        provider="deepseek",
    )

    result = await AgentLoop(llm).run("task-1", _goal())

    assistant = result.messages[-1]
    assert assistant.provider_options == {"openaiCompatible": {"reasoning_content": "think"}}
    assert not any(isinstance(p, ReasoningPart) for p in assistant.parts)
    assert assistant.parts == [TextPart(f"answer {COMPLETE}")]


@pytest.mark.asyncio
async def test_text_deltas_streamed_to_callback():
    deltas = []
    llm = ScriptedLLM([turn(f"Done {COMPLETE}")])

    await AgentLoop(llm, callbacks=LoopCallbacks(on_text_delta=deltas.append)).run("task-1", _goal())

    assert deltas == [f"Done {COMPLETE}"]


@pytest.mark.asyncio
async def test_tool_step_limit_ends_iteration():
    """Test an iteration ends after max_tool_steps model calls."""

    async def noop() -> ToolResult:
        return ToolResult(success=True, output="ok")

    tools = ToolRegistry([Tool("noop", "Does nothing", noop)])
    llm = ScriptedLLM([turn(calls=[ToolCallPart(f"c{i}", "noop", {})]) for i in range(5)])

    result = await AgentLoop(
        llm, tools, config=LoopConfig(max_tool_steps=2)
    ).run("task-1", _goal(), max_iterations=1)

    assert result.stop_reason is StopReason.MAX_ITERATIONS
    assert len(llm.requests) == 2


@pytest.mark.asyncio
async def test_empty_deepseek_turn_not_appended():
    """Test a turn with no text and no tool calls adds nothing, even with provider options."""
    llm = ScriptedLLM(
        [turn(""), turn(f"Done {COMPLETE}")],
        model="deepseek-reasoner",
        provider="deepseek",
    )

    result = await AgentLoop(llm).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    assert [m.role for m in result.messages] == ["user", "user", "assistant"]
    assert all(m.content for m in result.messages)
    assert [m.role for m in llm.requests[1]] == ["user", "user"]


@pytest.mark.asyncio
async def test_continuation_built_from_stored_artifacts(tmp_path):
    """Test the next iteration is seeded with the saved summary and feedback notes."""
    llm = ScriptedLLM([turn("Patched parser.py"), turn(f"Done {COMPLETE}")])

    result = await AgentLoop(llm, artifact_store=FileArtifactStore(tmp_path)).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    continuation = llm.requests[1][-1]
    assert continuation.role == "user"
    assert continuation.text.startswith("Continue working")
    assert "# Iteration 1" in continuation.text
    assert "Patched parser.py" in continuation.text
    assert "# Feedback" in continuation.text


@pytest.mark.asyncio
async def test_continuation_uses_store_read():
    store = MagicMock()
    store.write = AsyncMock(return_value="path")
    store.read = AsyncMock(side_effect=["# Iteration 1\n\nnotes from disk", "# Feedback\n\nrun the linter"])
    llm = ScriptedLLM([turn("Working"), turn(COMPLETE)])

    await AgentLoop(llm, artifact_store=store).run("task-1", _goal())

    continuation = llm.requests[1][-1].text
    assert "notes from disk" in continuation
    assert "run the linter" in continuation
    assert [c.args[2] for c in store.read.await_args_list] == ["summary.md", "feedback.md"]


@pytest.mark.asyncio
async def test_include_last_n_messages_trims_history(tmp_path):
    """Test each continuation keeps only the goal and the most recent messages."""
    llm = ScriptedLLM([turn("step one"), turn("step two"), turn(f"step three {COMPLETE}")])

    result = await AgentLoop(
        llm,
        config=LoopConfig(include_last_n_messages=1),
        artifact_store=FileArtifactStore(tmp_path),
    ).run("task-1", _goal())

    assert result.stop_reason is StopReason.COMPLETE
    third_request = llm.requests[2]
    assert [m.role for m in third_request] == ["user", "assistant", "user"]
    assert third_request[0].text == "Fix the bug"
    assert third_request[1].text == "step two"
    assert "# Iteration 2" in third_request[2].text


@pytest.mark.asyncio
async def test_include_zero_messages_keeps_only_goal():
    llm = ScriptedLLM([turn("step one"), turn(COMPLETE)])

    await AgentLoop(llm, config=LoopConfig(include_last_n_messages=0)).run("task-1", _goal())

    assert [m.role for m in llm.requests[1]] == ["user", "user"]
    assert llm.requests[1][0].text == "Fix the bug"


def test_fresh_context_keeps_system_and_goal():
    messages = [
        LLMMessage(role="system", content="rules"),
        LLMMessage(role="user", content="goal"),
        LLMMessage(role="assistant", content="a"),
        LLMMessage(role="user", content="b"),
        LLMMessage(role="assistant", content="c"),
    ]

    assert [m.text for m in fresh_context(messages, 2)] == ["rules", "goal", "b", "c"]
    assert [m.text for m in fresh_context(messages, 10)] == ["rules", "goal", "a", "b", "c"]
    assert [m.text for m in fresh_context(messages, 0)] == ["rules", "goal"]
