"""Tool registry and execution."""

from .executor import (
    ComputerExecutor,
    LocalShellExecutor,
    ShellExecutor,
    ToolExecutor,
    ToolFailure,
    ToolSuccess,
    should_continue,
)
from .registry import FunctionTool, ToolRegistry

__all__ = [
    "ComputerExecutor",
    "FunctionTool",
    "LocalShellExecutor",
    "ShellExecutor",
    "ToolExecutor",
    "ToolFailure",
    "ToolRegistry",
    "ToolSuccess",
    "should_continue",
]
