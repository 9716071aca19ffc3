"""Sandpiper event bus."""

from sandpiper.events.bus import EventBus, Handler, SandpiperEvent
from sandpiper.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
    MessageCreatedPayload,
    SessionCreatedPayload,
    SessionFinishedPayload,
    ToolExecutedPayload,
)

__all__ = [
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "Handler",
    "MessageCreatedPayload",
    "SandpiperEvent",
    "SessionCreatedPayload",
    "SessionFinishedPayload",
    "ToolExecutedPayload",
]
