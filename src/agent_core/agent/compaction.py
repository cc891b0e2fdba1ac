"""
Context Compaction - structured summarization of older turns.

When the conversation nears the model's context window, the older prefix of
the history is summarized by a separate compression model into an
eight-section summary, and the history is rebuilt as:

    [leading system messages] + [summary message] + [most recent N messages]

The preserved window is copied verbatim, with one exception: a tool result
whose tool call was summarized away is rewritten as plain text. A tool result
that references an absent call is rejected by most provider APIs.
"""

import re
from dataclasses import dataclass, field, fields

import structlog

from ..llm.base import (
    BaseLLM,
    LLMMessage,
    Part,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    render_output,
)

logger = structlog.get_logger()

# Approximate tokens per character (conservative estimate)
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_CHARS = 20

DEFAULT_PRESERVE_RECENT = 6
DEFAULT_COMPRESSION_THRESHOLD = 0.8

TRANSCRIPT_CHARS_PER_MESSAGE = 1500
SYSTEM_PROMPT_EXCERPT_CHARS = 2000

SUMMARY_HEADER = "[Previous conversation summary]"

COMPACTION_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with summarizing conversations between "
    "a user and an autonomous coding agent. Produce precise, fact-preserving summaries."
)


class CompactionError(Exception):
    """The summarization call failed."""


@dataclass(frozen=True)
class CompressionConfig:
    """Compaction policy for one loop invocation."""

    enabled: bool = True
    preserve_recent_messages: int = DEFAULT_PRESERVE_RECENT
    compression_threshold: float = DEFAULT_COMPRESSION_THRESHOLD
    compression_model: str | None = None

    def __post_init__(self) -> None:
        if self.preserve_recent_messages < 0:
            raise ValueError("preserve_recent_messages must be >= 0")
        if not 0 < self.compression_threshold <= 1:
            raise ValueError("compression_threshold must be in (0, 1]")


@dataclass(frozen=True)
class SummarySections:
    """Sections parsed out of the summary text. Any of them may be missing."""

    primary_request: str | None = None
    key_technical_concepts: str | None = None
    files_and_code: str | None = None
    errors_and_fixes: str | None = None
    problem_solving: str | None = None
    user_messages: str | None = None
    pending_tasks: str | None = None
    current_work: str | None = None

    def present(self) -> dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name)}

    def is_empty(self) -> bool:
        return not self.present()


SECTION_TITLES = [
    ("primary_request", "Primary Request and Intent"),
    ("key_technical_concepts", "Key Technical Concepts"),
    ("files_and_code", "Files and Code Sections"),
    ("errors_and_fixes", "Errors and fixes"),
    ("problem_solving", "Problem Solving"),
    ("user_messages", "All user messages"),
    ("pending_tasks", "Pending Tasks"),
    ("current_work", "Current Work"),
]


@dataclass
class CompactionResult:
    """Result of a compaction pass."""

    compressed_summary: str
    sections: SummarySections
    original_message_count: int
    compressed_message_count: int
    compression_ratio: float
    messages: list[LLMMessage] = field(default_factory=list)

    @property
    def reduction_percent(self) -> float:
        return round((1 - self.compression_ratio) * 100, 1)


def estimate_tokens(messages: list[LLMMessage]) -> int:
    """Estimate token count for a list of messages."""
    total_chars = 0
    for message in messages:
        for part in message.parts:
            if isinstance(part, (TextPart, ReasoningPart)):
                total_chars += len(part.text)
            elif isinstance(part, ToolCallPart):
                total_chars += len(part.tool_name) + len(render_output(part.input))
            else:
                total_chars += len(render_output(part.output))
    overhead = len(messages) * MESSAGE_OVERHEAD_CHARS
    return (total_chars + overhead) // CHARS_PER_TOKEN


def should_compact(token_count: int, context_window_tokens: int, config: CompressionConfig) -> bool:
    if not config.enabled or context_window_tokens <= 0:
        return False
    return token_count > config.compression_threshold * context_window_tokens


def _orphan_text(part: ToolResultPart) -> TextPart:
    return TextPart(
        f"[Result of tool '{part.tool_name}' (call {part.tool_call_id}); "
        f"the call itself was summarized]: {render_output(part.output)}"
    )


def enforce_tool_pairing(messages: list[LLMMessage]) -> list[LLMMessage]:
    """Rewrite tool results with no earlier matching tool call as plain text.

    Results are never dropped. A tool message whose results are all orphaned
    becomes a user text message in the same position; a mixed message keeps
    its paired results and is followed by a user message with the rest.
    """
    seen_calls: set[str] = set()
    repaired: list[LLMMessage] = []

    for message in messages:
        if isinstance(message.content, str):
            repaired.append(message)
            continue

        kept: list[Part] = []
        orphaned: list[TextPart] = []
        for part in message.content:
            if isinstance(part, ToolCallPart):
                seen_calls.add(part.tool_call_id)
                kept.append(part)
            elif isinstance(part, ToolResultPart) and part.tool_call_id not in seen_calls:
                orphaned.append(_orphan_text(part))
            else:
                kept.append(part)

        if not orphaned:
            repaired.append(message)
            continue

        logger.debug(
            "Rewrote orphaned tool results",
            role=message.role,
            count=len(orphaned),
        )
        if kept:
            repaired.append(LLMMessage(
                role=message.role,
                content=kept,
                timestamp=message.timestamp,
                provider_options=message.provider_options,
            ))
        repaired.append(LLMMessage(
            role="user",
            content=list(orphaned),
            timestamp=message.timestamp,
        ))

    return repaired


_ANALYSIS_RE = re.compile(r"<analysis>.*?</analysis>", re.DOTALL | re.IGNORECASE)
_SUMMARY_TAG_RE = re.compile(r"</?summary>", re.IGNORECASE)
_SECTION_FIELDS = {title.lower(): name for name, title in SECTION_TITLES}
_SECTION_RE = re.compile(
    r"^[ \t]*#*[ \t]*\**(?:[1-8]\.[ \t]*)?("
    + "|".join(re.escape(title) for _, title in SECTION_TITLES)
    + r")[ \t]*\**[ \t]*:\**[ \t]*",
    re.MULTILINE | re.IGNORECASE,
)


def clean_summary(text: str) -> str:
    text = _ANALYSIS_RE.sub("", text)
    text = _SUMMARY_TAG_RE.sub("", text)
    return text.strip()


def parse_summary_sections(text: str) -> SummarySections:
    """Split a numbered eight-section summary into its parts.

    Best effort: sections the model left out are simply absent.
    """
    # Only the known titles start a section, so nested numbered lists stay put.
    matches = list(_SECTION_RE.finditer(text))

    values: dict[str, str] = {}
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        body = text[match.end():end].strip()
        name = _SECTION_FIELDS[match.group(1).lower()]
        if body and name not in values:
            values[name] = body
    return SummarySections(**values)


def _format_part(part: Part) -> str:
    if isinstance(part, TextPart):
        return part.text
    if isinstance(part, ReasoningPart):
        return f"(thinking) {part.text}"
    if isinstance(part, ToolCallPart):
        return f"[called {part.tool_name} with {render_output(part.input)}]"
    status = "error" if part.is_error else "result"
    return f"[{part.tool_name} {status}]: {render_output(part.output)}"


def _build_transcript(messages: list[LLMMessage]) -> str:
    lines = []
    for message in messages:
        body = "\n".join(_format_part(p) for p in message.parts)
        if len(body) > TRANSCRIPT_CHARS_PER_MESSAGE:
            body = body[:TRANSCRIPT_CHARS_PER_MESSAGE] + " ...[truncated]"
        lines.append(f"{message.role.upper()}: {body}")
    return "\n\n".join(lines)


def build_summary_prompt(messages: list[LLMMessage], system_prompt: str) -> str:
    section_list = "\n".join(
        f"{i}. {title}:" for i, (_, title) in enumerate(SECTION_TITLES, start=1)
    )
    instructions = ""
    if system_prompt:
        instructions = (
            "\n\nThe agent was working under these instructions (excerpt):\n"
            + system_prompt[:SYSTEM_PROMPT_EXCERPT_CHARS]
        )

    return f"""Your task is to create a detailed summary of the conversation so far, so that the agent can continue the work without losing context.

First think inside <analysis></analysis> tags, then write the summary with exactly these numbered sections:
{section_list}

Be specific: keep file paths, function names, commands, error messages and the exact wording of the user's requests. Under "Current Work" describe precisely what was being done right before this summary.{instructions}

Conversation:
{_build_transcript(messages)}

Summary:"""


def render_summary_message(summary: str) -> LLMMessage:
    return LLMMessage(role="assistant", content=f"{SUMMARY_HEADER}\n{summary}")


class ContextCompactor:
    """Summarizes the older prefix of a conversation with one model call."""

    def __init__(self, llm: BaseLLM):
        self.llm = llm

    async def compact_messages(
        self,
        messages: list[LLMMessage],
        config: CompressionConfig,
        system_prompt: str = "",
    ) -> CompactionResult | None:
        """Compact a conversation.

        Returns:
            The compaction result, or None when there is nothing to compress
            (compaction disabled, nothing older than the preserved window, or
            an empty summary from the model).

        Raises:
            CompactionError: the summarization call failed
        """
        if not config.enabled:
            return None

        leading_system = 0
        while leading_system < len(messages) and messages[leading_system].role == "system":
            leading_system += 1
        system_messages = messages[:leading_system]
        conversation = messages[leading_system:]

        keep = min(config.preserve_recent_messages, len(conversation))
        split = len(conversation) - keep
        to_summarize = conversation[:split]
        preserved = conversation[split:]

        if not to_summarize:
            logger.debug("Nothing older than the preserved window", message_count=len(messages))
            return None

        logger.info(
            "Starting context compaction",
            message_count=len(messages),
            summarizing=len(to_summarize),
            preserving=len(preserved),
            compression_model=config.compression_model or self.llm.model,
        )
        if config.compression_model is None:
            logger.info("No compression model configured, summarizing with the task model", model=self.llm.model)

        prompt = build_summary_prompt(to_summarize, system_prompt)
        try:
            response = await self.llm.generate(
                messages=[LLMMessage(role="user", content=prompt)],
                system_prompt=COMPACTION_SYSTEM_PROMPT,
                model=config.compression_model or self.llm.model,
            )
        except Exception as e:
            logger.error("Compaction summarization failed", error=str(e))
            raise CompactionError(str(e)) from e

        summary = clean_summary(response.content or "")
        if not summary:
            logger.info("Compaction returned an empty summary, nothing to change")
            return None

        compacted = (
            list(system_messages)
            + [render_summary_message(summary)]
            + enforce_tool_pairing(list(preserved))
        )

        result = CompactionResult(
            compressed_summary=summary,
            sections=parse_summary_sections(summary),
            original_message_count=len(messages),
            compressed_message_count=len(compacted),
            compression_ratio=len(compacted) / len(messages),
            messages=compacted,
        )

        logger.info(
            "Compaction complete",
            original=result.original_message_count,
            compacted=result.compressed_message_count,
            reduction_percent=result.reduction_percent,
        )
        return result
