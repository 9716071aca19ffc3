"""Tests for the in-process EventBus."""

from __future__ import annotations

import asyncio

from structlog.testing import capture_logs

from sandpiper.events.bus import EventBus, SandpiperEvent


class TestEventBus:
    def test_event_names(self):
        assert SandpiperEvent.COMPACTION_COMPLETED == "compaction.completed"
        assert SandpiperEvent.TOOL_EXECUTED == "tool.executed"
        assert SandpiperEvent.SESSION_FAILED == "session.failed"

    def test_subscribe_and_publish(self):
        bus = EventBus()
        received = []
        bus.subscribe(SandpiperEvent.MESSAGE_CREATED, lambda e, p: received.append((e, p)))

        bus.publish(SandpiperEvent.MESSAGE_CREATED, {"message_id": "msg_1"})
        bus.publish(SandpiperEvent.SESSION_CREATED, {"session_id": "s"})

        assert received == [(SandpiperEvent.MESSAGE_CREATED, {"message_id": "msg_1"})]

    def test_subscribe_all_receives_everything(self):
        bus = EventBus()
        received = []
        bus.subscribe_all(lambda e, p: received.append(e))
        bus.publish(SandpiperEvent.SESSION_CREATED, {})
        bus.publish(SandpiperEvent.COMPACTION_FAILED, {})
        assert received == [SandpiperEvent.SESSION_CREATED, SandpiperEvent.COMPACTION_FAILED]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []

        def handler(e, p):
            received.append(e)

        bus.subscribe(SandpiperEvent.TOOL_EXECUTED, handler)
        bus.unsubscribe(SandpiperEvent.TOOL_EXECUTED, handler)
        bus.unsubscribe(SandpiperEvent.TOOL_EXECUTED, handler)
        bus.publish(SandpiperEvent.TOOL_EXECUTED, {})
        assert received == []

    def test_handler_errors_do_not_propagate(self):
        bus = EventBus()
        received = []

        def broken(e, p):
            raise ValueError("boom")

        bus.subscribe(SandpiperEvent.SESSION_COMPLETED, broken)
        bus.subscribe(SandpiperEvent.SESSION_COMPLETED, lambda e, p: received.append(p))
        bus.publish(SandpiperEvent.SESSION_COMPLETED, {"steps": 3})
        assert received == [{"steps": 3}]

    async def test_async_handlers_are_scheduled(self):
        bus = EventBus()
        received = []

        async def handler(e, p):
            received.append(p)

        bus.subscribe(SandpiperEvent.COMPACTION_TRIGGERED, handler)
        bus.publish(SandpiperEvent.COMPACTION_TRIGGERED, {"tokens": 600})
        await asyncio.sleep(0)
        assert received == [{"tokens": 600}]

    def test_async_handler_without_loop_is_dropped(self):
        bus = EventBus()
        received = []

        async def handler(e, p):
            received.append(p)

        bus.subscribe(SandpiperEvent.COMPACTION_TRIGGERED, handler)
        bus.publish(SandpiperEvent.COMPACTION_TRIGGERED, {"tokens": 600})
        assert received == []

    def test_handler_error_is_logged_with_event_type(self):
        bus = EventBus()

        def broken(e, p):
            raise ValueError("boom")

        bus.subscribe(SandpiperEvent.TOOL_EXECUTED, broken)
        with capture_logs() as logs:
            bus.publish(SandpiperEvent.TOOL_EXECUTED, {})

        assert logs == [
            {
                "event": "event_handler_error",
                "event_type": "tool.executed",
                "handler": broken.__qualname__,
                "error": "boom",
                "log_level": "error",
            }
        ]
