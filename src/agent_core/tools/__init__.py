"""
Tools module: the tool-invocation capability consumed by the agent loop.
"""

from .base import Tool, ToolResult
from .registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolResult",
    "ToolRegistry",
]
