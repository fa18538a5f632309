"""Tool registries and toolsets."""

from sanctuary.tools.context import ToolContext
from sanctuary.tools.registry import ToolRegistry, ToolSpec

__all__ = ["ToolContext", "ToolRegistry", "ToolSpec"]
