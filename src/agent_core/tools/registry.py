"""
Tool registry for managing available tools.

The registry is the loop's tool-invocation collaborator. Hosts build one per
task and pass it in; there is no process-wide default.
"""

from typing import Any

import structlog

from ..llm.base import ToolDefinition
from .base import Tool, ToolResult

logger = structlog.get_logger()


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def is_concurrency_safe(self, name: str) -> bool:
        tool = self.get(name)
        return bool(tool is not None and tool.concurrency_safe)

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.to_definition() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                output="",
                error=f"Tool '{name}' not found",
            )

        try:
            bound = tool.bind(arguments)
        except TypeError as e:
            logger.warning("Invalid tool input", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=f"Invalid input for tool '{name}': {e}",
            )

        try:
            logger.info("Executing tool", tool_name=name, arguments=arguments)
            result = await tool.handler(*bound.args, **bound.kwargs)
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=str(e),
            )
