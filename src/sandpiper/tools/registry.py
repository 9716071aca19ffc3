"""The agent's four sandbox tools and their OpenAI-format definitions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from sandpiper.sandbox.docker import (
    DEFAULT_MAX_OUTPUT_CHARS,
    Sandbox,
    SandboxError,
    format_tool_result,
    truncate_output,
)


class ExecuteCommandArgs(BaseModel):
    command: str


class ReadFileArgs(BaseModel):
    path: str


class WriteFileArgs(BaseModel):
    path: str
    content: str


class ListDirectoryArgs(BaseModel):
    path: str = "."


TOOL_SPECS: list[dict[str, Any]] = [
    {
        "name": "execute_command",
        "description": (
            "Execute a shell command in the workspace container. Returns stdout, "
            "stderr (if any) and the exit code."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to run."},
            },
            "required": ["command"],
        },
    },
    {
        "name": "read_file",
        "description": "Read the contents of a file in the workspace.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace."},
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_file",
        "description": (
            "Write content to a file in the workspace, creating parent directories "
            "and overwriting any existing file."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path relative to the workspace."},
                "content": {"type": "string", "description": "The full file content."},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "list_directory",
        "description": "List contents of a directory in the workspace.",
        "parameters": {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory relative to the workspace. Defaults to '.'.",
                },
            },
            "required": [],
        },
    },
]


class ToolRegistry:
    """
    Dispatches model tool calls to a :class:`Sandbox`.

    ``execute()`` always returns a string. Unknown tools, bad arguments and
    sandbox failures come back as ``"Error: ..."`` text so the model can
    react instead of the loop aborting.
    """

    def __init__(self, sandbox: Sandbox, max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS) -> None:
        self._sandbox = sandbox
        self._max_output_chars = max_output_chars
        self._logger = structlog.get_logger("sandpiper.tools")
        self._handlers: dict[str, tuple[type[BaseModel], Callable[[Any], Awaitable[str]]]] = {
            "execute_command": (ExecuteCommandArgs, self._execute_command),
            "read_file": (ReadFileArgs, self._read_file),
            "write_file": (WriteFileArgs, self._write_file),
            "list_directory": (ListDirectoryArgs, self._list_directory),
        }

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    def get_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in OpenAI function format."""
        return [{"type": "function", "function": dict(spec)} for spec in TOOL_SPECS]

    async def execute(self, name: str, arguments: dict[str, Any]) -> str:
        entry = self._handlers.get(name)
        if entry is None:
            return f"Error: Unknown tool '{name}'"
        args_model, handler = entry

        try:
            args = args_model.model_validate(arguments)
        except ValidationError as exc:
            return f"Error: Invalid arguments for tool '{name}': {exc.errors(include_url=False)}"

        try:
            output = await handler(args)
        except SandboxError as exc:
            self._logger.warning("tool_failed", tool=name, code=exc.code, error=exc.message)
            return f"Error: {exc.message} ({exc.code})"
        return truncate_output(output, self._max_output_chars)

    async def _execute_command(self, args: ExecuteCommandArgs) -> str:
        result = await self._sandbox.execute(args.command)
        return format_tool_result(result)

    async def _read_file(self, args: ReadFileArgs) -> str:
        result = await self._sandbox.read_file(args.path)
        if result.exit_code != 0:
            return f"Error reading file: {result.stderr.strip()}"
        return result.stdout

    async def _write_file(self, args: WriteFileArgs) -> str:
        result = await self._sandbox.write_file(args.path, args.content)
        if result.exit_code != 0:
            return f"Error writing file: {result.stderr.strip()}"
        return f"File written: {args.path}"

    async def _list_directory(self, args: ListDirectoryArgs) -> str:
        result = await self._sandbox.list_directory(args.path)
        if result.exit_code != 0:
            return f"Error listing directory: {result.stderr.strip()}"
        return result.stdout
