"""Typed payload definitions for each SandpiperEvent.

Usage example::

    from sandpiper.events.bus import EventBus, SandpiperEvent
    from sandpiper.events.payloads import CompactionCompletedPayload

    def on_compaction(event: SandpiperEvent, payload: CompactionCompletedPayload) -> None:
        print(f"round {payload['round']}: {payload['tokens_before']} -> {payload['tokens_after']}")

    bus.subscribe(SandpiperEvent.COMPACTION_COMPLETED, on_compaction)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`SandpiperEvent.SESSION_CREATED`."""

    session_id: str
    task: str
    model: str


class SessionFinishedPayload(TypedDict):
    """Payload for ``SESSION_COMPLETED`` and ``SESSION_FAILED``."""

    session_id: str
    steps: int
    error: NotRequired[str]
    """Only present on ``SESSION_FAILED``."""


# ── Messages and tools ────────────────────────────────────────────────────────


class MessageCreatedPayload(TypedDict):
    """Payload for :attr:`SandpiperEvent.MESSAGE_CREATED`."""

    session_id: str
    message_id: str
    role: str
    sequence: int


class ToolExecutedPayload(TypedDict):
    """Payload for :attr:`SandpiperEvent.TOOL_EXECUTED`."""

    session_id: str
    tool_call_id: str
    tool_name: str
    output_chars: int


# ── Compaction lifecycle ──────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`SandpiperEvent.COMPACTION_TRIGGERED`."""

    session_id: str
    tokens: int
    """Estimated conversation size that crossed the threshold."""
    threshold: int


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`SandpiperEvent.COMPACTION_COMPLETED`."""

    session_id: str
    round: int
    tokens_before: int
    tokens_after: int


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`SandpiperEvent.COMPACTION_FAILED`."""

    session_id: str
    error: str
