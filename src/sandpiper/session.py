"""AgentSession — the multi-step tool-using agent loop with automatic compaction."""

from __future__ import annotations

from typing import Any

import structlog
from ulid import ULID

from sandpiper.compaction.engine import CompactionCoordinator, CompactionEngine
from sandpiper.compaction.summarizer import SummaryGenerator
from sandpiper.compaction.trigger import CompactionTrigger
from sandpiper.events.bus import EventBus, SandpiperEvent
from sandpiper.events.payloads import (
    MessageCreatedPayload,
    SessionCreatedPayload,
    SessionFinishedPayload,
    ToolExecutedPayload,
)
from sandpiper.llm.client import ModelClient, ModelInvocationError
from sandpiper.models.config import SandpiperConfig
from sandpiper.models.message import ChatMessage, RunResult, Session, SessionStatus, StoredMessage
from sandpiper.sandbox.docker import Sandbox
from sandpiper.store.pool import StorePool
from sandpiper.store.session_store import SessionStore
from sandpiper.tokens.estimator import TokenEstimator
from sandpiper.tools.registry import ToolRegistry


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"sess"``, ``"cmp"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class AgentSession:
    """
    One coding task driven to completion by a model and a sandbox.

    Each step reloads the active messages from the store, compacts them if
    the budget requires it, asks the model for the next turn, and executes
    any requested tool calls. Every message is persisted before the next
    step, so a crashed run can be resumed with :meth:`load`.

    Usage::

        sandbox = DockerSandbox(config.sandbox)
        session = await AgentSession.create(
            "Build a todo CLI in TypeScript",
            config=config,
            model_client=LiteLLMClient("anthropic/claude-sonnet-4-5"),
            sandbox=sandbox,
        )
        await sandbox.start(session.id)
        try:
            result = await session.run()
        finally:
            await sandbox.cleanup()
            await session.close()
    """

    def __init__(
        self,
        session: Session,
        config: SandpiperConfig,
        store: SessionStore,
        model_client: ModelClient,
        tools: ToolRegistry,
        compaction_engine: CompactionEngine,
        token_estimator: TokenEstimator,
        event_bus: EventBus,
    ) -> None:
        self._session = session
        self._config = config
        self._store = store
        self._model = model_client
        self._tools = tools
        self._compaction_engine = compaction_engine
        self._estimator = token_estimator
        self._event_bus = event_bus
        self._logger = structlog.get_logger("sandpiper.session").bind(session_id=session.id)

    @classmethod
    async def create(
        cls,
        task: str,
        *,
        model_client: ModelClient,
        sandbox: Sandbox,
        config: SandpiperConfig | None = None,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
    ) -> AgentSession:
        """
        Persist a new session with its system prompt and task message.

        The system prompt is stored at sequence 1 and the task as the first
        user message at sequence 2.

        Raises:
            aiosqlite.Error: If the database cannot be initialized.
        """
        cfg = config or SandpiperConfig()
        store = SessionStore(cfg.store, pool=pool, id_generator=make_id)
        await store.initialize()

        session = await store.create_session(task, id=make_id("sess"))
        agent = cls._assemble(session, cfg, store, model_client, sandbox, event_bus)

        await agent._persist(ChatMessage.system(cfg.agent.system_prompt))
        await agent._persist(ChatMessage.user(task))

        model = getattr(model_client, "model", "unknown")
        agent._event_bus.publish(
            SandpiperEvent.SESSION_CREATED,
            SessionCreatedPayload(session_id=session.id, task=task, model=model),
        )
        agent._logger.info("session_created", model=model)
        return agent

    @classmethod
    async def load(
        cls,
        session_id: str,
        *,
        model_client: ModelClient,
        sandbox: Sandbox,
        config: SandpiperConfig | None = None,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
    ) -> AgentSession:
        """
        Resume a stored session from its active messages.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        cfg = config or SandpiperConfig()
        store = SessionStore(cfg.store, pool=pool, id_generator=make_id)
        await store.initialize()
        try:
            session = await store.get_session(session_id)
        except Exception:
            await store.close()
            raise

        agent = cls._assemble(session, cfg, store, model_client, sandbox, event_bus)
        agent._logger.info("session_loaded", status=session.status)
        return agent

    @classmethod
    def _assemble(
        cls,
        session: Session,
        cfg: SandpiperConfig,
        store: SessionStore,
        model_client: ModelClient,
        sandbox: Sandbox,
        event_bus: EventBus | None,
    ) -> AgentSession:
        estimator = TokenEstimator()
        bus = event_bus or EventBus()
        coordinator = CompactionCoordinator(
            SummaryGenerator(model_client, cfg.compaction),
            estimator,
            keep_tail=cfg.compaction.keep_tail,
        )
        engine = CompactionEngine(
            store,
            estimator,
            CompactionTrigger(cfg.compaction, estimator),
            coordinator,
            bus,
        )
        return cls(
            session=session,
            config=cfg,
            store=store,
            model_client=model_client,
            tools=ToolRegistry(sandbox, max_output_chars=cfg.sandbox.max_output_chars),
            compaction_engine=engine,
            token_estimator=estimator,
            event_bus=bus,
        )

    async def run(self) -> RunResult:
        """
        Drive the agent loop until the model stops calling tools.

        The session ends ``completed`` when a turn has no tool calls, and
        ``failed`` on a model error or after ``AgentConfig.max_steps`` steps.
        Compaction failures never end the session.

        Returns:
            RunResult with the final status, step count and compaction rounds.
        """
        if self._session.is_terminal:
            self._logger.warning("session_already_finished", status=self._session.status)
            return RunResult(
                session_id=self.id,
                status=self._session.status,
                steps=0,
                error=f"Session is already {self._session.status}",
            )

        max_steps = self._config.agent.max_steps
        tool_definitions = self._tools.get_definitions()
        rounds = 0
        final_text = ""

        for step in range(1, max_steps + 1):
            messages = await self._store.load_active_chat_messages(self.id)
            compaction = await self._compaction_engine.safe_compact(
                self.id, messages, original_task=self._session.task
            )
            if compaction.compacted:
                rounds += 1
                messages = compaction.messages

            try:
                turn = await self._model.complete(
                    messages,
                    tool_definitions,
                    max_output_tokens=self._config.agent.max_output_tokens,
                )
            except ModelInvocationError as exc:
                return await self._finish("failed", step, rounds, final_text, error=str(exc))

            await self._persist(turn.to_message())
            if turn.text:
                final_text = turn.text
            self._logger.debug(
                "agent_step",
                step=step,
                tool_calls=len(turn.tool_calls),
                finish_reason=turn.finish_reason,
            )

            if not turn.tool_calls:
                return await self._finish("completed", step, rounds, final_text)

            for call in turn.tool_calls:
                output = await self._tools.execute(call.tool_name, call.input)
                await self._persist(
                    ChatMessage.tool_result(call.tool_call_id, call.tool_name, output)
                )
                self._event_bus.publish(
                    SandpiperEvent.TOOL_EXECUTED,
                    ToolExecutedPayload(
                        session_id=self.id,
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        output_chars=len(output),
                    ),
                )

        return await self._finish(
            "failed",
            max_steps,
            rounds,
            final_text,
            error=f"Step limit of {max_steps} reached before the task completed",
        )

    async def mark_failed(self, error: str) -> None:
        """Mark the session failed from outside the loop (e.g. on interrupt)."""
        if self._session.is_terminal:
            return
        await self._store.update_session_status(self.id, "failed")
        self._session = self._session.model_copy(update={"status": "failed"})
        self._event_bus.publish(
            SandpiperEvent.SESSION_FAILED,
            SessionFinishedPayload(session_id=self.id, steps=0, error=error),
        )

    async def close(self) -> None:
        """Release the store connection. The sandbox is owned by the caller."""
        await self._store.close()
        self._logger.info("session_closed")

    async def __aenter__(self) -> AgentSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def id(self) -> str:
        """The session ID."""
        return self._session.id

    @property
    def task(self) -> str:
        return self._session.task

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        """The event bus for this session. Subscribe to monitor events."""
        return self._event_bus

    def subscribe(self, event: SandpiperEvent, handler: Any) -> None:
        """Convenience wrapper for ``session.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)

    # ── Private Helpers ────────────────────────────────────────────────────────

    async def _persist(self, message: ChatMessage) -> StoredMessage:
        stored = await self._store.append_message(
            self.id,
            message.role,
            message.content,
            self._estimator.estimate_message(message),
        )
        self._event_bus.publish(
            SandpiperEvent.MESSAGE_CREATED,
            MessageCreatedPayload(
                session_id=self.id,
                message_id=stored.id,
                role=stored.role,
                sequence=stored.sequence,
            ),
        )
        return stored

    async def _finish(
        self,
        status: SessionStatus,
        steps: int,
        rounds: int,
        final_text: str,
        error: str | None = None,
    ) -> RunResult:
        await self._store.update_session_status(self.id, status)
        self._session = self._session.model_copy(update={"status": status})

        payload = SessionFinishedPayload(session_id=self.id, steps=steps)
        if error is not None:
            payload["error"] = error
        event = (
            SandpiperEvent.SESSION_COMPLETED if status == "completed" else SandpiperEvent.SESSION_FAILED
        )
        self._event_bus.publish(event, payload)
        log = self._logger.info if status == "completed" else self._logger.error
        log("session_finished", status=status, steps=steps, compaction_rounds=rounds, error=error)

        return RunResult(
            session_id=self.id,
            status=status,
            steps=steps,
            compaction_rounds=rounds,
            final_text=final_text,
            error=error,
        )
