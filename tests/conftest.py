"""Shared fixtures for Sandpiper tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from sandpiper.events.bus import EventBus, SandpiperEvent
from sandpiper.models.config import (
    AgentConfig,
    CompactionConfig,
    SandpiperConfig,
    StoreConfig,
)
from sandpiper.models.message import AgentTurn, ChatMessage, ExecResult
from sandpiper.store.pool import StorePool
from sandpiper.store.session_store import SessionStore
from sandpiper.tokens.estimator import TokenEstimator


class FakeModel:
    """Scripted ModelClient: pops queued turns and returns a fixed summary."""

    model = "fake/test-model"

    def __init__(
        self,
        turns: list[AgentTurn | BaseException] | None = None,
        summary: str = "#### Original Task\nBuild a CLI\n\n#### Current State\nIn progress.",
    ) -> None:
        self.turns = list(turns or [])
        self.summary = summary
        self.summary_error: Exception | None = None
        self.summary_calls: list[dict[str, Any]] = []
        self.complete_calls: list[list[ChatMessage]] = []

    async def generate_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        self.summary_calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "max_output_tokens": max_output_tokens,
                "temperature": temperature,
            }
        )
        if self.summary_error is not None:
            raise self.summary_error
        return self.summary

    async def complete(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None,
        max_output_tokens: int,
    ) -> AgentTurn:
        self.complete_calls.append(list(messages))
        if not self.turns:
            return AgentTurn(text="Done.")
        turn = self.turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        return turn


class FakeSandbox:
    """In-memory Sandbox: files live in a dict, commands are recorded."""

    def __init__(self, stdout: str = "ok") -> None:
        self.files: dict[str, str] = {}
        self.commands: list[str] = []
        self.stdout = stdout
        self.started: str | None = None
        self.cleaned = False
        self.error: Exception | None = None

    async def start(self, session_id: str) -> str:
        self.started = session_id
        return "abcdef123456"

    async def cleanup(self) -> None:
        self.cleaned = True

    async def execute(self, command: str, timeout_ms: int | None = None) -> ExecResult:
        if self.error is not None:
            raise self.error
        self.commands.append(command)
        return ExecResult(stdout=self.stdout, exit_code=0)

    async def read_file(self, path: str) -> ExecResult:
        if path not in self.files:
            return ExecResult(
                stderr=f"cat: /workspace/{path}: No such file or directory", exit_code=1
            )
        return ExecResult(stdout=self.files[path])

    async def write_file(self, path: str, content: str) -> ExecResult:
        self.files[path] = content
        return ExecResult()

    async def list_directory(self, path: str = ".") -> ExecResult:
        if path != "." and not any(name.startswith(path.rstrip("/") + "/") for name in self.files):
            return ExecResult(stderr=f"ls: {path}: No such file or directory", exit_code=2)
        return ExecResult(stdout="\n".join(sorted(self.files)))


@pytest.fixture
def small_compaction():
    """Budget with a 500-token threshold and a 4-message protected tail."""
    return CompactionConfig(
        context_size=1_000,
        system_reserve=0,
        output_reserve=0,
        safety_margin=0,
        trigger_fraction=0.5,
        keep_tail=4,
    )


@pytest.fixture
def config(tmp_path, small_compaction):
    """SandpiperConfig with a temp database path and a small compaction budget."""
    return SandpiperConfig(
        compaction=small_compaction,
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        agent=AgentConfig(model="fake/test-model", system_prompt="You are a test agent."),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized SessionStore backed by a temp SQLite database (pool-managed)."""
    s = SessionStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def estimator():
    return TokenEstimator()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[SandpiperEvent, dict[str, Any]]] = []

    def _collect(event: SandpiperEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    session = await store.create_session("Build a CLI", id="sess_TEST01")
    return session.id


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def fake_sandbox():
    return FakeSandbox()


def make_conversation(count: int, body_chars: int = 200) -> list[ChatMessage]:
    """System prompt, the task, then ``count - 2`` alternating assistant/user messages."""
    messages = [ChatMessage.system("You are a test agent."), ChatMessage.user("Build a CLI")]
    for i in range(count - 2):
        text = f"m{i:02d} " + "x" * body_chars
        messages.append(ChatMessage.assistant(text) if i % 2 == 0 else ChatMessage.user(text))
    return messages


async def persist(
    store: SessionStore,
    session_id: str,
    messages: list[ChatMessage],
    estimator: TokenEstimator | None = None,
) -> None:
    """Append ``messages`` to the store in order."""
    est = estimator or TokenEstimator()
    for msg in messages:
        await store.append_message(session_id, msg.role, msg.content, est.estimate_message(msg))
