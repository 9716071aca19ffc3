"""Configuration models for Sandpiper sessions and components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

DEFAULT_SYSTEM_PROMPT = """\
You are an autonomous coding agent working inside an isolated Linux container.
Your working directory is the container workspace; every path you use is
relative to it.

You have four tools:
- execute_command: run a shell command and see stdout, stderr and the exit code
- read_file: read a file from the workspace
- write_file: create or overwrite a file (parent directories are created)
- list_directory: list the contents of a directory

Work step by step. Inspect before you change things, verify your work by
running it, and fix errors you encounter. When the task is complete, reply
with a short description of what you built and do not call any more tools.
"""


class CompactionConfig(BaseModel):
    """
    Token budget and trigger settings for the compaction engine.

    The budget fields have no implicit defaults; callers either supply every
    value or ask for :meth:`default` explicitly.
    """

    context_size: int = Field(gt=0, description="Total model context window in tokens.")
    system_reserve: int = Field(
        ge=0, description="Tokens reserved for the system prompt and tool definitions."
    )
    output_reserve: int = Field(ge=0, description="Tokens reserved for the model's next output.")
    safety_margin: int = Field(
        ge=0, description="Extra headroom absorbing the heuristic estimator's error."
    )
    trigger_fraction: float = Field(
        gt=0.0,
        le=1.0,
        description="Fraction of the available budget at which compaction triggers.",
    )
    keep_tail: int = Field(
        ge=1, description="Number of most recent messages that always stay intact."
    )

    summary_max_tokens: int = Field(
        default=2_000,
        ge=100,
        description="Output budget for the summary call (also stated in the prompt).",
    )
    summary_temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    @property
    def available_budget(self) -> int:
        """Tokens available for conversation history."""
        return self.context_size - self.system_reserve - self.output_reserve - self.safety_margin

    @model_validator(mode="after")
    def validate_budget(self) -> CompactionConfig:
        if self.available_budget <= 0:
            raise ValueError(
                "context_size must exceed system_reserve + output_reserve + safety_margin"
            )
        return self

    @classmethod
    def default(cls) -> CompactionConfig:
        """Budget for a 128k-token model, triggering at 80 % and keeping 10 messages."""
        return cls(
            context_size=128_000,
            system_reserve=2_000,
            output_reserve=4_000,
            safety_margin=5_000,
            trigger_fraction=0.80,
            keep_tail=10,
        )


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.sandpiper/agent.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class SandboxConfig(BaseModel):
    """Configuration for the Docker sandbox."""

    image: str = "oven/bun:latest"
    container_prefix: str = "coding-agent-"
    workdir: str = "/workspace"
    command_timeout_ms: int = Field(default=60_000, ge=1_000)
    max_output_chars: int = Field(
        default=10_000,
        ge=100,
        description="Command output beyond this many characters is truncated.",
    )


class AgentConfig(BaseModel):
    """Configuration for the agent loop."""

    model: str | None = Field(
        default=None,
        description="litellm model string. None = resolve from environment.",
    )
    max_steps: int = Field(default=50, ge=1, le=1_000)
    max_output_tokens: int = Field(default=4_096, ge=256)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class SandpiperConfig(BaseModel):
    """
    Top-level configuration for a Sandpiper agent session.

    Example::

        config = SandpiperConfig(
            compaction=CompactionConfig(
                context_size=200_000, system_reserve=4_000, output_reserve=8_000,
                safety_margin=10_000, trigger_fraction=0.75, keep_tail=12,
            ),
            agent=AgentConfig(model="anthropic/claude-sonnet-4-5", max_steps=80),
        )
    """

    compaction: CompactionConfig = Field(default_factory=CompactionConfig.default)
    store: StoreConfig = Field(default_factory=StoreConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @classmethod
    def default(cls) -> SandpiperConfig:
        """Return a config instance with all defaults."""
        return cls()
