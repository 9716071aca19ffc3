"""Sandpiper data models."""

from sandpiper.models.config import (
    AgentConfig,
    CompactionConfig,
    SandboxConfig,
    SandpiperConfig,
    StoreConfig,
)
from sandpiper.models.message import (
    AgentTurn,
    ChatMessage,
    CompactionEvent,
    CompactionMetrics,
    CompactionResult,
    ExecResult,
    MessageContent,
    MessagePart,
    Role,
    RunResult,
    Selection,
    Session,
    SessionStatus,
    StoredMessage,
    SummaryPayload,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)

__all__ = [
    # Config
    "AgentConfig",
    "CompactionConfig",
    "SandboxConfig",
    "SandpiperConfig",
    "StoreConfig",
    # Message parts
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "MessagePart",
    "MessageContent",
    # Messages
    "Role",
    "ChatMessage",
    "StoredMessage",
    "CompactionEvent",
    "Session",
    "SessionStatus",
    # Compaction
    "Selection",
    "CompactionResult",
    "CompactionMetrics",
    "SummaryPayload",
    # Agent
    "AgentTurn",
    "ExecResult",
    "RunResult",
]
