"""Tools the reasoning loop can call, and the registry that dispatches them."""

from triage_agent.tools.registry import (
    ToolName,
    ToolRegistry,
    ToolResult,
    ToolSpec,
    build_default_registry,
)

__all__ = [
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "build_default_registry",
]
