"""Tests for configuration models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from sandpiper.models.config import (
    DEFAULT_SYSTEM_PROMPT,
    AgentConfig,
    CompactionConfig,
    SandpiperConfig,
    StoreConfig,
)


class TestCompactionConfig:
    def test_default_values(self):
        config = CompactionConfig.default()
        assert config.context_size == 128_000
        assert config.system_reserve == 2_000
        assert config.output_reserve == 4_000
        assert config.safety_margin == 5_000
        assert config.trigger_fraction == 0.80
        assert config.keep_tail == 10
        assert config.available_budget == 117_000

    def test_budget_fields_are_required(self):
        with pytest.raises(ValidationError):
            CompactionConfig()

    def test_non_positive_budget_rejected(self):
        with pytest.raises(ValidationError, match="context_size must exceed"):
            CompactionConfig(
                context_size=10_000,
                system_reserve=4_000,
                output_reserve=4_000,
                safety_margin=2_000,
                trigger_fraction=0.8,
                keep_tail=4,
            )

    @pytest.mark.parametrize("fraction", [0.0, 1.5, -0.1])
    def test_trigger_fraction_bounds(self, fraction):
        with pytest.raises(ValidationError):
            CompactionConfig.model_validate(
                {**CompactionConfig.default().model_dump(), "trigger_fraction": fraction}
            )

    def test_keep_tail_must_be_positive(self):
        with pytest.raises(ValidationError):
            CompactionConfig.model_validate(
                {**CompactionConfig.default().model_dump(), "keep_tail": 0}
            )


class TestSandpiperConfig:
    def test_default(self):
        config = SandpiperConfig.default()
        assert config.compaction == CompactionConfig.default()
        assert config.store.db_path == "~/.sandpiper/agent.db"
        assert config.store.wal_mode is True
        assert config.sandbox.image == "oven/bun:latest"
        assert config.agent.model is None
        assert config.agent.max_steps == 50
        assert config.agent.system_prompt == DEFAULT_SYSTEM_PROMPT

    def test_nested_override(self, tmp_path):
        config = SandpiperConfig(
            store=StoreConfig(db_path=str(tmp_path / "x.db")),
            agent=AgentConfig(max_steps=5),
        )
        assert config.store.db_path.endswith("x.db")
        assert config.agent.max_steps == 5

    def test_max_steps_bounds(self):
        with pytest.raises(ValidationError):
            AgentConfig(max_steps=0)

    def test_system_prompt_names_every_tool(self):
        for tool in ("execute_command", "read_file", "write_file", "list_directory"):
            assert tool in DEFAULT_SYSTEM_PROMPT
