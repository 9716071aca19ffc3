"""Compaction orchestration: the pure coordinator and the persisting engine.

One compaction round runs in this order:

1. **Trigger** — estimate the active conversation against the threshold.
2. **Select** — split the history into a span to summarise and a protected
   tail, lifting out any previous summary so it is chained, not re-summarised.
3. **Summarise** — one model call producing the round's structured summary.
4. **Commit** — event row, retirement and summary insert in one transaction.

Steps 2-3 live in :class:`CompactionCoordinator`, which performs no I/O
beyond the model call. :class:`CompactionEngine` wraps it with the trigger,
the boundary mapping and the commit, and is the only place where a failed
round is turned into a skipped one.
"""

from __future__ import annotations

from collections.abc import Sequence

import aiosqlite
import structlog

from sandpiper.compaction.errors import BoundaryMappingError, CompactionError
from sandpiper.compaction.selector import is_summary_text, select_messages, summary_header
from sandpiper.compaction.summarizer import SummaryGenerator, extract_original_task
from sandpiper.compaction.trigger import CompactionTrigger
from sandpiper.events.bus import EventBus, SandpiperEvent
from sandpiper.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
)
from sandpiper.llm.client import ModelInvocationError
from sandpiper.models.message import (
    ChatMessage,
    CompactionMetrics,
    CompactionResult,
    SummaryPayload,
)
from sandpiper.store.session_store import SandpiperStoreError, SessionStore
from sandpiper.tokens.estimator import TokenEstimator


class CompactionCoordinator:
    """
    Builds the compacted message list for one round.

    Example::

        coordinator = CompactionCoordinator(generator, TokenEstimator(), keep_tail=10)
        result = await coordinator.compact(messages, "sess_01", last_round=0)
        if result.compacted:
            messages = result.messages  # [system, summary, *tail]
    """

    def __init__(
        self,
        generator: SummaryGenerator,
        estimator: TokenEstimator,
        keep_tail: int,
    ) -> None:
        self._generator = generator
        self._estimator = estimator
        self._keep_tail = keep_tail
        self._logger = structlog.get_logger("sandpiper.compaction")

    async def compact(
        self,
        messages: Sequence[ChatMessage],
        session_id: str,
        last_round: int,
        original_task: str | None = None,
    ) -> CompactionResult:
        """
        Summarise everything between the system prompt and the protected tail.

        Args:
            messages: Active messages; index 0 is the system prompt.
            session_id: Used for log context only.
            last_round: Highest committed round for the session (0 if none).
            original_task: Task text for the summary prompt. Defaults to the
                first user message found in ``messages``.

        Returns:
            A CompactionResult with ``round == last_round + 1``, or a no-op
            result (``round == 0``) when there is nothing to summarise.

        Raises:
            SummaryGenerationError: Propagated from the generator.
        """
        tokens_before = self._estimator.estimate_conversation(messages)
        selection = select_messages(messages, self._keep_tail)
        if not selection.to_summarize:
            return CompactionResult(
                messages=list(messages),
                tokens_before=tokens_before,
                tokens_after=tokens_before,
            )

        round = last_round + 1
        summary = await self._generator.generate(
            selection.to_summarize,
            selection.prior_summary,
            original_task or extract_original_task(messages),
            round,
        )
        if not is_summary_text(summary):
            summary = f"{summary_header(round)}\n\n{summary}"

        compacted = [
            selection.to_keep[0],
            ChatMessage.assistant(summary),
            *selection.to_keep[1:],
        ]
        tokens_after = self._estimator.estimate_conversation(compacted)

        self._logger.info(
            "compaction_round_built",
            session_id=session_id,
            round=round,
            summarized=len(selection.to_summarize),
            kept=len(selection.to_keep),
            chained=selection.prior_summary is not None,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
        )
        return CompactionResult(
            round=round,
            messages=compacted,
            boundary_index=selection.boundary_index,
            tokens_before=tokens_before,
            tokens_after=tokens_after,
            summary=summary,
        )


class CompactionEngine:
    """
    Trigger check, coordinator run and transactional commit for one session.

    Guarantees:
    - ``safe_compact()`` never raises for summary, mapping, model or store
      failures; the round is skipped and ``COMPACTION_FAILED`` is published.
    - A skipped round persists nothing.
    - Committed rounds are numbered 1, 2, 3, … per session.
    """

    def __init__(
        self,
        store: SessionStore,
        estimator: TokenEstimator,
        trigger: CompactionTrigger,
        coordinator: CompactionCoordinator,
        event_bus: EventBus,
    ) -> None:
        self._store = store
        self._estimator = estimator
        self._trigger = trigger
        self._coordinator = coordinator
        self._event_bus = event_bus
        self._logger = structlog.get_logger("sandpiper.compaction")

    async def safe_compact(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        original_task: str | None = None,
    ) -> CompactionResult:
        """
        Compact ``messages`` if the trigger fires, persisting the round.

        ``messages`` must be the session's active messages in context order,
        as returned by :meth:`SessionStore.load_active_chat_messages`.

        Returns:
            The committed CompactionResult, or a ``round == 0`` result carrying
            the original messages when compaction was not due or failed.
        """
        if not self._trigger.should_compact(messages):
            tokens = self._estimator.estimate_conversation(messages)
            return CompactionResult(
                messages=list(messages), tokens_before=tokens, tokens_after=tokens
            )

        tokens = self._estimator.estimate_conversation(messages)
        self._logger.info(
            "compaction_triggered",
            session_id=session_id,
            tokens=tokens,
            threshold=self._trigger.threshold,
        )
        self._event_bus.publish(
            SandpiperEvent.COMPACTION_TRIGGERED,
            CompactionTriggeredPayload(
                session_id=session_id, tokens=tokens, threshold=self._trigger.threshold
            ),
        )

        try:
            result = await self._compact_and_commit(session_id, messages, original_task)
        except (CompactionError, ModelInvocationError, SandpiperStoreError, aiosqlite.Error) as exc:
            self._logger.warning(
                "compaction_failed",
                session_id=session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._event_bus.publish(
                SandpiperEvent.COMPACTION_FAILED,
                CompactionFailedPayload(session_id=session_id, error=str(exc)),
            )
            return CompactionResult(
                messages=list(messages), tokens_before=tokens, tokens_after=tokens
            )

        if result.compacted:
            self._event_bus.publish(
                SandpiperEvent.COMPACTION_COMPLETED,
                CompactionCompletedPayload(
                    session_id=session_id,
                    round=result.round,
                    tokens_before=result.tokens_before,
                    tokens_after=result.tokens_after,
                ),
            )
        return result

    async def _compact_and_commit(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        original_task: str | None,
    ) -> CompactionResult:
        last_event = await self._store.get_last_compaction_event(session_id)
        last_round = last_event.round if last_event is not None else 0

        result = await self._coordinator.compact(
            messages, session_id, last_round, original_task=original_task
        )
        if not result.compacted or result.summary is None or result.boundary_index is None:
            return result

        persisted = await self._store.get_active_messages(session_id)
        if result.boundary_index >= len(persisted):
            raise BoundaryMappingError(session_id, result.boundary_index, len(persisted))
        boundary_sequence = persisted[result.boundary_index].sequence

        summary_msg = result.messages[1]
        await self._store.commit_compaction(
            session_id,
            boundary_sequence=boundary_sequence,
            summary=SummaryPayload(
                content=result.summary,
                token_count=self._estimator.estimate_message(summary_msg),
            ),
            metrics=CompactionMetrics(
                round=result.round,
                tokens_before=result.tokens_before,
                tokens_after=result.tokens_after,
            ),
        )
        self._logger.info(
            "compaction_completed",
            session_id=session_id,
            round=result.round,
            boundary_sequence=boundary_sequence,
            tokens_before=result.tokens_before,
            tokens_after=result.tokens_after,
        )
        return result
