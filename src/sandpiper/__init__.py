"""
Sandpiper — an autonomous coding agent with budgeted context compaction.

Primary entry point::

    from sandpiper import AgentSession, DockerSandbox, LiteLLMClient, SandpiperConfig

    config = SandpiperConfig()
    sandbox = DockerSandbox(config.sandbox)
    session = await AgentSession.create(
        "Build a todo CLI", model_client=LiteLLMClient("openai/gpt-4o"), sandbox=sandbox
    )
    await sandbox.start(session.id)
    try:
        result = await session.run()
    finally:
        await sandbox.cleanup()
        await session.close()
"""

from sandpiper.compaction import (
    CompactionCoordinator,
    CompactionEngine,
    CompactionTrigger,
    SummaryGenerator,
    select_messages,
)
from sandpiper.events.bus import EventBus, SandpiperEvent
from sandpiper.llm.client import LiteLLMClient, ModelClient, resolve_model
from sandpiper.models import (
    AgentConfig,
    ChatMessage,
    CompactionConfig,
    CompactionResult,
    RunResult,
    SandboxConfig,
    SandpiperConfig,
    StoreConfig,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from sandpiper.sandbox.docker import DockerSandbox, SandboxError
from sandpiper.session import AgentSession, make_id
from sandpiper.store import SessionStore, StorePool
from sandpiper.tokens.estimator import TokenEstimator
from sandpiper.tools.registry import ToolRegistry

__version__ = "0.1.0"

__all__ = [
    # Core
    "AgentSession",
    "make_id",
    # Config
    "SandpiperConfig",
    "CompactionConfig",
    "StoreConfig",
    "SandboxConfig",
    "AgentConfig",
    # Models
    "ChatMessage",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "CompactionResult",
    "RunResult",
    # Compaction
    "CompactionCoordinator",
    "CompactionEngine",
    "CompactionTrigger",
    "SummaryGenerator",
    "select_messages",
    # Collaborators
    "DockerSandbox",
    "SandboxError",
    "LiteLLMClient",
    "ModelClient",
    "resolve_model",
    "SessionStore",
    "StorePool",
    "ToolRegistry",
    # Infrastructure
    "EventBus",
    "SandpiperEvent",
    "TokenEstimator",
]
