"""Sandpiper agent tools."""

from sandpiper.tools.registry import TOOL_SPECS, ToolRegistry

__all__ = ["TOOL_SPECS", "ToolRegistry"]
