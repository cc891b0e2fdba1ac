"""
Command-line interface for agent-core.
"""

import argparse
import asyncio
import json
import logging
import sys
import uuid
from dataclasses import asdict
from pathlib import Path

import structlog

from .config import Settings, get_settings

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for console output."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="agent-core",
        description="agent-core - autonomous LLM agent execution engine",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    compact_parser = subparsers.add_parser("compact", help="Compact a saved message history")
    compact_parser.add_argument("file", help="JSON file with a message list")
    compact_parser.add_argument("--task-id", default=None, help="Task id for the context artifact")
    compact_parser.add_argument("--preserve", type=int, default=None, help="Recent messages to keep")

    usage_parser = subparsers.add_parser("usage", help="Normalize a provider usage report")
    usage_parser.add_argument("report", help='JSON usage object, or {"usage": ..., "totalUsage": ...}')

    run_parser = subparsers.add_parser("run", help="Run the agent loop on a goal")
    run_parser.add_argument("goal", help="Task description for the agent")
    run_parser.add_argument("--task-id", default=None, help="Task id (default: random)")
    run_parser.add_argument("--max-iterations", type=int, default=None, help="Iteration budget")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging("DEBUG" if settings.debug else settings.log_level)

    if args.command == "config":
        return show_config(settings, args.check)
    elif args.command == "compact":
        return asyncio.run(compact_file(settings, Path(args.file), args.task_id, args.preserve))
    elif args.command == "usage":
        return show_usage(args.report)
    elif args.command == "run":
        task_id = args.task_id or uuid.uuid4().hex[:12]
        return asyncio.run(run_goal(settings, args.goal, task_id, args.max_iterations))

    parser.print_help()
    return 0


def _mask(value: str) -> str:
    if not value:
        return "(not set)"
    return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"


def show_config(settings: Settings, check: bool) -> int:
    """Show current configuration."""
    llm_config = settings.get_llm_config()

    print("\n=== agent-core Configuration ===\n")

    print("LLM:")
    print(f"  Provider: {llm_config.provider}")
    print(f"  Model: {llm_config.model}")
    print(f"  Base URL: {llm_config.base_url or '(provider default)'}")
    print(f"  Anthropic Key: {_mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {_mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {_mask(settings.openrouter_api_key)}")
    print(f"  DeepSeek Key: {_mask(settings.deepseek_api_key)}")
    print(f"  Moonshot Key: {_mask(settings.moonshot_api_key)}")

    print("\nLoop:")
    print(f"  Max Iterations: {settings.max_iterations}")
    print(f"  Max Wall Time: {settings.max_wall_time_ms} ms")
    print(f"  Max Tool Steps: {settings.max_tool_steps}")
    print(f"  Include Last N Messages: {settings.include_last_n_messages}")
    print(f"  Context Window: {settings.context_window_tokens} tokens")

    print("\nCompaction:")
    print(f"  Enabled: {settings.compression_enabled}")
    print(f"  Preserve Recent: {settings.preserve_recent_messages}")
    print(f"  Threshold: {settings.compression_threshold}")
    print(f"  Model: {settings.compression_model or '(task model)'}")

    print(f"\nArtifacts: {settings.artifacts_dir}")

    if not check:
        return 0

    print("\n=== Configuration Check ===\n")
    errors = []
    warnings = []

    if not llm_config.api_key:
        errors.append(f"No API key set for the default provider '{llm_config.provider}'")

    if settings.require_passing_tests or settings.require_lint or settings.require_tsc:
        warnings.append("Required checks are ignored unless the host provides a check runner")

    if errors:
        print("Errors:")
        for e in errors:
            print(f"   - {e}")

    if warnings:
        print("Warnings:")
        for w in warnings:
            print(f"   - {w}")

    if not errors and not warnings:
        print("Configuration looks good!")
    elif not errors:
        print("\nConfiguration is valid (with warnings)")
    else:
        print("\nConfiguration has errors - fix them before running")
    return 1 if errors else 0


def show_usage(report: str) -> int:
    """Print the normalized form of a usage report."""
    from .usage import normalize_usage

    try:
        data = json.loads(report)
    except json.JSONDecodeError as e:
        print(f"Invalid JSON: {e}", file=sys.stderr)
        return 2

    if isinstance(data, dict) and ("usage" in data or "totalUsage" in data):
        usage = normalize_usage(data.get("usage"), data.get("totalUsage"))
    else:
        usage = normalize_usage(data)

    print(json.dumps(asdict(usage) if usage else None, indent=2))
    return 0


def _load_messages(path: Path) -> list:
    from .llm.base import message_from_dict

    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("messages", [])
    return [message_from_dict(item) for item in data]


async def compact_file(settings: Settings, path: Path, task_id: str | None, preserve: int | None) -> int:
    """Compact a saved history and write it as a context artifact."""
    from dataclasses import replace

    from .agent.artifacts import FileArtifactStore
    from .agent.manual_compaction import compact_task_context
    from .llm.factory import create_llm

    try:
        messages = _load_messages(path)
    except (OSError, ValueError, KeyError) as e:
        print(f"Could not read messages from {path}: {e}", file=sys.stderr)
        return 2

    config = settings.compression_config()
    if preserve is not None:
        config = replace(config, preserve_recent_messages=preserve)

    result = await compact_task_context(
        task_id=task_id or path.stem,
        messages=messages,
        llm=create_llm(settings=settings),
        store=FileArtifactStore(settings.artifacts_dir),
        config=config,
    )
    print(result.message)
    return 0 if result.success else 1


async def run_goal(settings: Settings, goal: str, task_id: str, max_iterations: int | None) -> int:
    """Run the agent loop until it stops, streaming text to stdout."""
    from .agent.artifacts import FileArtifactStore
    from .agent.loop import LOOP_INSTRUCTIONS, AgentLoop, LoopCallbacks
    from .llm.base import LLMMessage
    from .llm.factory import create_llm
    from .tools import ToolRegistry

    def on_text(delta: str) -> None:
        sys.stdout.write(delta)
        sys.stdout.flush()

    def on_error(error) -> None:
        logger.warning("Loop error", kind=error.kind, tool_name=error.tool_name, error=error.message)

    llm = create_llm(settings=settings)
    loop = AgentLoop(
        llm,
        ToolRegistry(),
        provider_id=settings.default_provider,
        system_prompt=LOOP_INSTRUCTIONS,
        config=settings.loop_config(),
        stop_criteria=settings.stop_criteria(),
        compression=settings.compression_config(),
        artifact_store=FileArtifactStore(settings.artifacts_dir),
        callbacks=LoopCallbacks(on_text_delta=on_text, on_error=on_error),
    )

    result = await loop.run(
        task_id,
        [LLMMessage(role="user", content=goal)],
        max_iterations=max_iterations,
    )

    print()
    logger.info(
        "Run finished",
        task_id=task_id,
        stop_reason=result.stop_reason.value,
        message=result.stop_message,
        iterations=result.iterations,
        total_tokens=result.total_tokens,
    )
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
