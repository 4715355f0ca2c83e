"""Embedded tool-call extraction and execution."""

from .executor import ToolExecutor
from .extractor import ToolCall, ToolCallScanner, find_tool_calls, scan_directive

__all__ = ["ToolCall", "ToolCallScanner", "ToolExecutor", "find_tool_calls", "scan_directive"]
