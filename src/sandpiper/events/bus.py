"""In-process pub/sub event bus for Sandpiper session lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["SandpiperEvent", Mapping[str, Any]], None | Awaitable[None]]


class SandpiperEvent(StrEnum):
    """All event types published by Sandpiper components.

    Typed payload definitions for each event live in
    :mod:`sandpiper.events.payloads`.

    ``SESSION_CREATED`` — ``session_id``, ``task``, ``model``

    ``SESSION_COMPLETED`` / ``SESSION_FAILED`` — ``session_id``, ``steps``,
    plus ``error`` for failures.

    ``MESSAGE_CREATED`` — ``session_id``, ``message_id``, ``role``, ``sequence``

    ``TOOL_EXECUTED`` — ``session_id``, ``tool_call_id``, ``tool_name``,
    ``output_chars``

    ``COMPACTION_TRIGGERED`` — ``session_id``, ``tokens``, ``threshold``

    ``COMPACTION_COMPLETED`` — ``session_id``, ``round``, ``tokens_before``,
    ``tokens_after``

    ``COMPACTION_FAILED`` — ``session_id``, ``error``
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"

    # Message lifecycle
    MESSAGE_CREATED = "message.created"

    # Tools
    TOOL_EXECUTED = "tool.executed"

    # Compaction lifecycle
    COMPACTION_TRIGGERED = "compaction.triggered"
    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.

    Example::

        bus = EventBus()

        def on_compaction(event, payload):
            print(f"Round {payload['round']}: {payload['tokens_before']} -> {payload['tokens_after']}")

        bus.subscribe(SandpiperEvent.COMPACTION_COMPLETED, on_compaction)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[SandpiperEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._logger = logger or structlog.get_logger("sandpiper.events")

    def subscribe(self, event: SandpiperEvent, handler: Handler) -> None:
        """Register a handler, sync or async, for one event type."""
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: SandpiperEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: SandpiperEvent, payload: Mapping[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        # No running event loop; the coroutine is never awaited.
                        result.close()
                        continue
                    loop.create_task(result)  # noqa: RUF006
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event_type=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
