"""
Tool wrapper handed to the agent loop.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from ..llm.base import ToolDefinition


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: Any = ""
    error: str | None = None


def _empty_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "required": []}


@dataclass
class Tool:
    """
    An async handler plus the JSON Schema the model sees for its arguments.

    Set ``concurrency_safe`` for read-only tools whose calls may run in
    parallel when the model requests several of them in one turn.
    """

    name: str
    description: str
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]
    parameters: dict[str, Any] = field(default_factory=_empty_schema)
    concurrency_safe: bool = False

    def bind(self, arguments: dict[str, Any]) -> inspect.BoundArguments:
        """Match model arguments to the handler signature. Raises TypeError on mismatch."""
        return inspect.signature(self.handler).bind(**arguments)

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description, parameters=self.parameters)
