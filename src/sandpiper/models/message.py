"""Core message, part, and result models for Sandpiper."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant", "tool"]

SessionStatus = Literal["active", "completed", "failed"]

# ── Part Models ────────────────────────────────────────────────────────────────


class TextPart(BaseModel):
    """A plain text segment of a message."""

    type: Literal["text"] = "text"
    text: str


class ToolCallPart(BaseModel):
    """A tool invocation requested by the assistant."""

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """The output of a tool invocation, paired to its call by ``tool_call_id``."""

    type: Literal["tool-result"] = "tool-result"
    tool_call_id: str
    tool_name: str = "unknown"
    output: Any = None


# Discriminated union: the ``type`` field is the discriminator key.
MessagePart = Annotated[
    TextPart | ToolCallPart | ToolResultPart,
    Field(discriminator="type"),
]

MessageContent = str | list[MessagePart]


# ── Message Models ─────────────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    """
    One turn of conversation as the agent loop and compaction engine see it.

    ``content`` is either plain text or an ordered list of typed parts.
    """

    role: Role
    content: MessageContent

    @classmethod
    def system(cls, text: str) -> ChatMessage:
        return cls(role="system", content=text)

    @classmethod
    def user(cls, text: str) -> ChatMessage:
        return cls(role="user", content=text)

    @classmethod
    def assistant(
        cls,
        text: str,
        tool_calls: list[ToolCallPart] | None = None,
    ) -> ChatMessage:
        """Build an assistant turn; plain text unless tool calls are present."""
        if not tool_calls:
            return cls(role="assistant", content=text)
        parts: list[MessagePart] = []
        if text:
            parts.append(TextPart(text=text))
        parts.extend(tool_calls)
        return cls(role="assistant", content=parts)

    @classmethod
    def tool_result(cls, tool_call_id: str, tool_name: str, output: Any) -> ChatMessage:
        return cls(
            role="tool",
            content=[ToolResultPart(tool_call_id=tool_call_id, tool_name=tool_name, output=output)],
        )

    def text_content(self) -> str:
        """Concatenate the text of this message (plain content or all TextParts)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    def tool_calls(self) -> list[ToolCallPart]:
        """Return every tool call requested in this message, in order."""
        if isinstance(self.content, str):
            return []
        return [part for part in self.content if isinstance(part, ToolCallPart)]


class StoredMessage(BaseModel):
    """
    A message row as persisted by the SessionStore.

    Messages are append-only; ``retired`` is the only field that ever changes,
    and only the compaction commit changes it.
    """

    id: str
    """ULID-based sortable ID, e.g. ``msg_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    session_id: str
    sequence: int
    """Strictly increasing per session; 1 is the system prompt."""
    role: Role
    content: MessageContent
    token_count: int = 0
    """Heuristic estimate recorded at write time, never recomputed."""
    retired: bool = False
    """True once a compaction round has superseded this message."""
    is_summary: bool = False
    """True if this message is a compaction summary written by the committer."""
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    """Unix millisecond timestamp."""

    def to_chat(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class CompactionEvent(BaseModel):
    """A record of one successful compaction round. Never mutated."""

    id: str
    session_id: str
    round: int
    created_at: int
    tokens_before: int
    tokens_after: int
    summary_content: str


class Session(BaseModel):
    """A task execution context: ``active`` until ``completed`` or ``failed``."""

    id: str
    task: str
    status: SessionStatus = "active"
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_terminal(self) -> bool:
        return self.status != "active"


# ── Compaction Types ───────────────────────────────────────────────────────────


class Selection(BaseModel):
    """Partition of the active message list produced by the selector."""

    to_summarize: list[ChatMessage] = Field(default_factory=list)
    to_keep: list[ChatMessage] = Field(default_factory=list)
    prior_summary: str | None = None
    boundary_index: int | None = None
    """Index of the first kept message after the system prompt; None when nothing is summarized."""


class CompactionResult(BaseModel):
    """
    The outcome of one ``compact()`` call.

    ``round == 0`` means no compaction happened (nothing to summarize, not due,
    or skipped after a failure) and ``messages`` is the unchanged input.
    """

    round: int = 0
    messages: list[ChatMessage]
    boundary_index: int | None = None
    tokens_before: int
    tokens_after: int
    summary: str | None = None

    @property
    def compacted(self) -> bool:
        return self.round > 0


class CompactionMetrics(BaseModel):
    """Round and token numbers recorded alongside a compaction commit."""

    round: int = Field(ge=1)
    tokens_before: int = Field(ge=0)
    tokens_after: int = Field(ge=0)


class SummaryPayload(BaseModel):
    """The summary message the committer appends."""

    content: str
    token_count: int = Field(ge=0)


# ── Sandbox / Agent Types ──────────────────────────────────────────────────────


class ExecResult(BaseModel):
    """Result of one command executed inside the sandbox."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class AgentTurn(BaseModel):
    """A single model response inside the agent loop."""

    text: str = ""
    tool_calls: list[ToolCallPart] = Field(default_factory=list)
    finish_reason: str = "stop"

    def to_message(self) -> ChatMessage:
        return ChatMessage.assistant(self.text, self.tool_calls)


class RunResult(BaseModel):
    """The result of ``AgentSession.run()``."""

    session_id: str
    status: SessionStatus
    steps: int
    compaction_rounds: int = 0
    final_text: str = ""
    error: str | None = None
