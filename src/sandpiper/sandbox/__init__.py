"""Sandpiper execution sandbox."""

from sandpiper.sandbox.docker import (
    DockerSandbox,
    Sandbox,
    SandboxError,
    format_tool_result,
    resolve_path,
    truncate_output,
)

__all__ = [
    "DockerSandbox",
    "Sandbox",
    "SandboxError",
    "format_tool_result",
    "resolve_path",
    "truncate_output",
]
