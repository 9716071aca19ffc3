"""Tests for CompactionCoordinator and CompactionEngine.safe_compact."""

from __future__ import annotations

import pytest

from sandpiper.compaction.engine import CompactionCoordinator, CompactionEngine
from sandpiper.compaction.errors import SummaryGenerationError
from sandpiper.compaction.selector import summary_header
from sandpiper.compaction.summarizer import SummaryGenerator
from sandpiper.compaction.trigger import CompactionTrigger
from sandpiper.events.bus import SandpiperEvent
from sandpiper.events.payloads import CompactionCompletedPayload, CompactionTriggeredPayload
from sandpiper.models.message import ChatMessage
from tests.conftest import FakeModel, make_conversation, persist


@pytest.fixture
def model():
    return FakeModel(summary="#### Current State\nScaffolded the project.")


@pytest.fixture
def coordinator(model, small_compaction, estimator):
    return CompactionCoordinator(
        SummaryGenerator(model, small_compaction),
        estimator,
        keep_tail=small_compaction.keep_tail,
    )


@pytest.fixture
def engine(store, estimator, small_compaction, coordinator, event_bus):
    return CompactionEngine(
        store,
        estimator,
        CompactionTrigger(small_compaction, estimator),
        coordinator,
        event_bus,
    )


def _events(bus) -> list[SandpiperEvent]:
    return [event for event, _ in bus.collected]


class TestCompactionCoordinator:
    async def test_nothing_to_summarize_is_a_no_op(self, coordinator, model):
        messages = make_conversation(5)
        result = await coordinator.compact(messages, "sess_x", last_round=0)

        assert result.round == 0
        assert result.compacted is False
        assert result.messages == messages
        assert result.tokens_before == result.tokens_after
        assert model.summary_calls == []

    async def test_builds_system_summary_tail(self, coordinator):
        messages = make_conversation(12)
        result = await coordinator.compact(messages, "sess_x", last_round=0)

        assert result.round == 1
        assert result.boundary_index == 8
        assert result.messages[0] == messages[0]
        assert result.messages[1].role == "assistant"
        assert result.messages[1].text_content() == result.summary
        assert result.messages[2:] == messages[8:]
        assert result.tokens_after < result.tokens_before

    async def test_missing_header_is_prepended(self, coordinator):
        result = await coordinator.compact(make_conversation(12), "sess_x", last_round=2)
        assert result.round == 3
        assert result.summary.startswith(summary_header(3) + "\n\n#### Current State")

    async def test_existing_header_is_not_duplicated(self, small_compaction, estimator):
        model = FakeModel(summary=summary_header(1) + "\n\nbody")
        coordinator = CompactionCoordinator(
            SummaryGenerator(model, small_compaction), estimator, keep_tail=4
        )
        result = await coordinator.compact(make_conversation(12), "sess_x", last_round=0)
        assert result.summary == summary_header(1) + "\n\nbody"

    async def test_original_task_defaults_to_first_user_message(self, coordinator, model):
        await coordinator.compact(make_conversation(12), "sess_x", last_round=0)
        assert "Original task:\nBuild a CLI" in model.summary_calls[0]["user_prompt"]

    async def test_explicit_original_task_wins(self, coordinator, model):
        await coordinator.compact(
            make_conversation(12), "sess_x", last_round=0, original_task="Ship the API"
        )
        assert "Original task:\nShip the API" in model.summary_calls[0]["user_prompt"]

    async def test_generator_errors_propagate(self, coordinator, model):
        model.summary_error = RuntimeError("overloaded")
        with pytest.raises(SummaryGenerationError):
            await coordinator.compact(make_conversation(12), "sess_x", last_round=0)

    async def test_input_is_not_mutated(self, coordinator):
        messages = make_conversation(12)
        snapshot = list(messages)
        await coordinator.compact(messages, "sess_x", last_round=0)
        assert messages == snapshot


class TestSafeCompact:
    async def test_not_triggered_returns_input(self, engine, store, session_id, event_bus):
        messages = make_conversation(5)
        await persist(store, session_id, messages)

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 0
        assert result.messages == messages
        assert event_bus.collected == []
        assert await store.get_last_compaction_event(session_id) is None

    async def test_commits_round_one(self, engine, store, session_id, event_bus):
        messages = make_conversation(12)
        await persist(store, session_id, messages)

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 1
        event = await store.get_last_compaction_event(session_id)
        assert event is not None
        assert event.round == 1
        assert event.tokens_before == result.tokens_before
        assert event.tokens_after == result.tokens_after
        assert event.summary_content == result.summary

        persisted = await store.load_active_chat_messages(session_id)
        assert persisted == result.messages
        assert _events(event_bus) == [
            SandpiperEvent.COMPACTION_TRIGGERED,
            SandpiperEvent.COMPACTION_COMPLETED,
        ]

    async def test_event_payloads_match_their_typed_shapes(
        self, engine, store, session_id, event_bus
    ):
        messages = make_conversation(12)
        await persist(store, session_id, messages)

        await engine.safe_compact(session_id, messages)

        payloads = dict(event_bus.collected)
        triggered = payloads[SandpiperEvent.COMPACTION_TRIGGERED]
        completed = payloads[SandpiperEvent.COMPACTION_COMPLETED]
        assert set(triggered) == set(CompactionTriggeredPayload.__annotations__)
        assert set(completed) == set(CompactionCompletedPayload.__annotations__)
        assert triggered["threshold"] == 500
        assert completed["round"] == 1

    async def test_rounds_increase_and_chain(self, engine, store, session_id, model):
        await persist(store, session_id, make_conversation(12))
        first = await engine.safe_compact(
            session_id, await store.load_active_chat_messages(session_id)
        )
        assert first.round == 1

        await persist(store, session_id, make_conversation(12)[2:])
        active = await store.load_active_chat_messages(session_id)
        assert active[1].text_content() == first.summary

        second = await engine.safe_compact(session_id, active)

        assert second.round == 2
        assert second.summary.startswith(summary_header(2))
        assert first.summary in model.summary_calls[1]["user_prompt"]
        events = await store.list_compaction_events(session_id)
        assert [e.round for e in events] == [1, 2]
        assert await store.load_active_chat_messages(session_id) == second.messages

    async def test_summary_failure_is_skipped(self, engine, store, session_id, model, event_bus):
        messages = make_conversation(12)
        await persist(store, session_id, messages)
        model.summary_error = RuntimeError("provider down")

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 0
        assert result.messages == messages
        assert await store.get_last_compaction_event(session_id) is None
        assert not any(m.retired for m in await store.get_messages(session_id))
        failed = [p for e, p in event_bus.collected if e == SandpiperEvent.COMPACTION_FAILED]
        assert len(failed) == 1
        assert "provider down" in failed[0]["error"]

    async def test_unmappable_boundary_is_skipped(self, engine, store, session_id, event_bus):
        # Only the first three messages are persisted; index 8 has no row.
        messages = make_conversation(12)
        await persist(store, session_id, messages[:3])

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 0
        assert await store.get_last_compaction_event(session_id) is None
        assert SandpiperEvent.COMPACTION_FAILED in _events(event_bus)

    async def test_store_failure_is_skipped(
        self, engine, store, session_id, event_bus, monkeypatch
    ):
        messages = make_conversation(12)
        await persist(store, session_id, messages)

        async def _boom(*args, **kwargs):
            from sandpiper.store.session_store import SandpiperStoreError

            raise SandpiperStoreError("locked")

        monkeypatch.setattr(store, "commit_compaction", _boom)
        result = await engine.safe_compact(session_id, messages)

        assert result.round == 0
        assert result.messages == messages
        assert SandpiperEvent.COMPACTION_FAILED in _events(event_bus)

    async def test_result_never_starts_tail_with_tool(self, engine, store, session_id):
        # Bodies sized so the conversation still crosses the 500-token threshold
        # after one message is swapped for a short tool result.
        messages = make_conversation(12, body_chars=240)
        messages[8] = ChatMessage.tool_result("call_1", "execute_command", "ok")
        await persist(store, session_id, messages)

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 1
        assert result.boundary_index == 7
        assert result.messages[2].role != "tool"
        assert await store.load_active_chat_messages(session_id) == result.messages
        persisted = await store.get_active_messages(session_id)
        assert persisted[2].sequence == 8
        assert persisted[2].role != "tool"

    async def test_raising_subscriber_does_not_break_compaction(
        self, engine, store, session_id, event_bus
    ):
        def broken(event, payload):
            raise ValueError("subscriber bug")

        for event in (
            SandpiperEvent.COMPACTION_TRIGGERED,
            SandpiperEvent.COMPACTION_COMPLETED,
            SandpiperEvent.COMPACTION_FAILED,
        ):
            event_bus.subscribe(event, broken)
        messages = make_conversation(12)
        await persist(store, session_id, messages)

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 1
        assert (await store.get_last_compaction_event(session_id)).round == 1
        assert SandpiperEvent.COMPACTION_COMPLETED in _events(event_bus)

    async def test_raising_subscriber_on_failure_path(
        self, engine, store, session_id, model, event_bus
    ):
        def broken(event, payload):
            raise RuntimeError("subscriber bug")

        event_bus.subscribe(SandpiperEvent.COMPACTION_FAILED, broken)
        model.summary_error = SummaryGenerationError("empty summary")
        messages = make_conversation(12)
        await persist(store, session_id, messages)

        result = await engine.safe_compact(session_id, messages)

        assert result.round == 0
        assert result.messages == messages
