"""Docker-backed sandbox the agent's tools run in.

Everything goes through the ``docker`` CLI via
``asyncio.create_subprocess_exec``; no Docker SDK is required. One
long-lived container per session is started with ``tail -f /dev/null`` and
every command is a ``docker exec`` into it.
"""

from __future__ import annotations

import asyncio
from typing import Literal, Protocol, runtime_checkable

import structlog

from sandpiper.models.config import SandboxConfig
from sandpiper.models.message import ExecResult

SandboxErrorCode = Literal["CONTAINER_START_FAILED", "EXEC_FAILED", "COMMAND_TIMEOUT"]

DEFAULT_WORKDIR = "/workspace"
DEFAULT_MAX_OUTPUT_CHARS = 10_000

# Shell scripts run with the target path as $1 so that no user-controlled text
# is ever interpolated into a command line.
_WRITE_SCRIPT = 'mkdir -p "$(dirname "$1")" && cat > "$1"'
_READ_SCRIPT = 'cat "$1"'
_LIST_SCRIPT = 'ls -la "$1"'


class SandboxError(Exception):
    """Raised when the container cannot be started or a command cannot run."""

    def __init__(self, message: str, code: SandboxErrorCode) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


@runtime_checkable
class Sandbox(Protocol):
    """What the tool registry needs from an execution environment."""

    async def execute(self, command: str, timeout_ms: int | None = None) -> ExecResult: ...

    async def read_file(self, path: str) -> ExecResult: ...

    async def write_file(self, path: str, content: str) -> ExecResult: ...

    async def list_directory(self, path: str = ".") -> ExecResult: ...


def truncate_output(text: str, max_chars: int = DEFAULT_MAX_OUTPUT_CHARS) -> str:
    """Cut ``text`` to ``max_chars``, appending a marker when anything was dropped."""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n[...truncated at {max_chars} chars...]"


def resolve_path(path: str, workdir: str = DEFAULT_WORKDIR) -> str:
    """Map a tool-supplied path into ``workdir``: ``"/src/a.ts"`` → ``"/workspace/src/a.ts"``."""
    return f"{workdir.rstrip('/')}/{path.lstrip('/')}"


def format_tool_result(result: ExecResult) -> str:
    """Render an ExecResult as the text a model sees for ``execute_command``."""
    text = result.stdout
    if result.stderr:
        text += ("\n" if text else "") + f"[stderr]\n{result.stderr}"
    return f"{text}\n[exit code: {result.exit_code}]"


class DockerSandbox:
    """
    One Docker container per agent session.

    Example::

        sandbox = DockerSandbox(SandboxConfig())
        await sandbox.start("01JXYZ...")
        try:
            result = await sandbox.execute("bun --version")
        finally:
            await sandbox.cleanup()
    """

    def __init__(self, config: SandboxConfig) -> None:
        self._config = config
        self._container_id: str | None = None
        self._logger = structlog.get_logger("sandpiper.sandbox")

    @property
    def container_id(self) -> str | None:
        return self._container_id

    def container_name(self, session_id: str) -> str:
        return f"{self._config.container_prefix}{session_id}"

    async def start(self, session_id: str) -> str:
        """
        Start a detached container for ``session_id`` and return its short ID.

        Raises:
            SandboxError: ``CONTAINER_START_FAILED`` if ``docker run`` fails.
        """
        name = self.container_name(session_id)
        try:
            result = await self._docker(
                "run",
                "-d",
                "--name",
                name,
                "-w",
                self._config.workdir,
                self._config.image,
                "tail",
                "-f",
                "/dev/null",
            )
        except OSError as exc:
            raise SandboxError(f"Could not run docker: {exc}", "CONTAINER_START_FAILED") from exc

        if result.exit_code != 0:
            raise SandboxError(
                f"Failed to start container {name}: {result.stderr.strip()}",
                "CONTAINER_START_FAILED",
            )
        self._container_id = result.stdout.strip()[:12]
        self._logger.info(
            "container_started",
            session_id=session_id,
            container=name,
            container_id=self._container_id,
            image=self._config.image,
        )
        return self._container_id

    async def execute(self, command: str, timeout_ms: int | None = None) -> ExecResult:
        """
        Run ``command`` with ``sh -c`` inside the container.

        A non-zero exit code is a normal result, not an error.

        Raises:
            SandboxError: ``COMMAND_TIMEOUT`` when the command outlives the
                timeout (the ``docker exec`` client is killed), ``EXEC_FAILED``
                when no container is running or docker cannot be invoked.
        """
        timeout_ms = timeout_ms if timeout_ms is not None else self._config.command_timeout_ms
        return await self._exec("sh", "-c", command, timeout_ms=timeout_ms)

    async def read_file(self, path: str) -> ExecResult:
        return await self._exec("sh", "-c", _READ_SCRIPT, "sh", self._resolve(path))

    async def write_file(self, path: str, content: str) -> ExecResult:
        """Write ``content`` to ``path``, creating parent directories."""
        return await self._exec(
            "sh", "-c", _WRITE_SCRIPT, "sh", self._resolve(path), stdin=content
        )

    async def list_directory(self, path: str = ".") -> ExecResult:
        return await self._exec("sh", "-c", _LIST_SCRIPT, "sh", self._resolve(path))

    async def cleanup(self) -> None:
        """Force-remove the container. Never raises."""
        if self._container_id is None:
            return
        container_id, self._container_id = self._container_id, None
        try:
            result = await self._docker("rm", "-f", container_id)
        except OSError as exc:
            self._logger.warning("container_cleanup_failed", container_id=container_id, error=str(exc))
            return
        if result.exit_code != 0:
            self._logger.warning(
                "container_cleanup_failed",
                container_id=container_id,
                error=result.stderr.strip(),
            )
            return
        self._logger.info("container_removed", container_id=container_id)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _resolve(self, path: str) -> str:
        return resolve_path(path, self._config.workdir)

    async def _exec(
        self,
        *argv: str,
        stdin: str | None = None,
        timeout_ms: int | None = None,
    ) -> ExecResult:
        if self._container_id is None:
            raise SandboxError("No running container; call start() first", "EXEC_FAILED")
        timeout_ms = timeout_ms if timeout_ms is not None else self._config.command_timeout_ms
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        args.extend(["-w", self._config.workdir, self._container_id, *argv])
        try:
            result = await self._docker(*args, stdin=stdin, timeout=timeout_ms / 1000)
        except OSError as exc:
            raise SandboxError(f"Could not run docker exec: {exc}", "EXEC_FAILED") from exc
        self._logger.debug(
            "sandbox_exec",
            container_id=self._container_id,
            argv=argv[-1] if argv else "",
            exit_code=result.exit_code,
        )
        return result

    async def _docker(
        self,
        *args: str,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        proc = await asyncio.create_subprocess_exec(
            "docker",
            *args,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode() if stdin is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SandboxError(
                f"Command timed out after {int((timeout or 0) * 1000)}ms",
                "COMMAND_TIMEOUT",
            ) from exc
        return ExecResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )
