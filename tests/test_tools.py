"""Tests for the ToolRegistry."""

from __future__ import annotations

from sandpiper.sandbox.docker import SandboxError
from sandpiper.tools.registry import ToolRegistry
from tests.conftest import FakeSandbox


class TestDefinitions:
    def test_four_tools_in_openai_format(self, fake_sandbox):
        definitions = ToolRegistry(fake_sandbox).get_definitions()
        names = [d["function"]["name"] for d in definitions]
        assert names == ["execute_command", "read_file", "write_file", "list_directory"]
        assert all(d["type"] == "function" for d in definitions)
        assert all(d["function"]["parameters"]["type"] == "object" for d in definitions)

    def test_descriptions(self, fake_sandbox):
        by_name = {
            d["function"]["name"]: d["function"]["description"]
            for d in ToolRegistry(fake_sandbox).get_definitions()
        }
        assert "shell command" in by_name["execute_command"]
        assert "Read the contents" in by_name["read_file"]
        assert "Write content" in by_name["write_file"]
        assert "List contents" in by_name["list_directory"]


class TestExecute:
    async def test_execute_command_formats_result(self):
        sandbox = FakeSandbox(stdout="Hello from container")
        output = await ToolRegistry(sandbox).execute("execute_command", {"command": "echo hi"})
        assert output == "Hello from container\n[exit code: 0]"
        assert sandbox.commands == ["echo hi"]

    async def test_write_then_read(self, fake_sandbox):
        registry = ToolRegistry(fake_sandbox)
        written = await registry.execute(
            "write_file", {"path": "deep/nested/file.txt", "content": "payload"}
        )
        assert written == "File written: deep/nested/file.txt"
        assert await registry.execute("read_file", {"path": "deep/nested/file.txt"}) == "payload"

    async def test_read_missing_file(self, fake_sandbox):
        output = await ToolRegistry(fake_sandbox).execute("read_file", {"path": "nope.txt"})
        assert output.startswith("Error reading file")
        assert "No such file" in output

    async def test_list_directory(self, fake_sandbox):
        registry = ToolRegistry(fake_sandbox)
        await registry.execute("write_file", {"path": "dir/listable-file.txt", "content": ""})
        assert "listable-file.txt" in await registry.execute("list_directory", {"path": "dir"})
        assert "listable-file.txt" in await registry.execute("list_directory", {})

    async def test_list_missing_directory(self, fake_sandbox):
        output = await ToolRegistry(fake_sandbox).execute("list_directory", {"path": "ghost"})
        assert output.startswith("Error listing directory")

    async def test_unknown_tool(self, fake_sandbox):
        output = await ToolRegistry(fake_sandbox).execute("rm_rf", {})
        assert output == "Error: Unknown tool 'rm_rf'"

    async def test_missing_argument(self, fake_sandbox):
        output = await ToolRegistry(fake_sandbox).execute("write_file", {"path": "a.txt"})
        assert output.startswith("Error: Invalid arguments for tool 'write_file'")

    async def test_sandbox_error_becomes_text(self, fake_sandbox):
        fake_sandbox.error = SandboxError("Command timed out after 60000ms", "COMMAND_TIMEOUT")
        output = await ToolRegistry(fake_sandbox).execute("execute_command", {"command": "sleep"})
        assert output == "Error: Command timed out after 60000ms (COMMAND_TIMEOUT)"

    async def test_output_is_truncated(self):
        sandbox = FakeSandbox(stdout="x" * 500)
        output = await ToolRegistry(sandbox, max_output_chars=100).execute(
            "execute_command", {"command": "cat big"}
        )
        assert output.startswith("x" * 100)
        assert output.endswith("[...truncated at 100 chars...]")
