"""Append-only SQLite-backed session, message and compaction-event store."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
import structlog
from pydantic import TypeAdapter

from sandpiper.models.config import StoreConfig
from sandpiper.models.message import (
    ChatMessage,
    CompactionEvent,
    CompactionMetrics,
    MessageContent,
    MessagePart,
    Role,
    Session,
    SessionStatus,
    StoredMessage,
    SummaryPayload,
)
from sandpiper.store.pool import StorePool, open_connection

_PARTS_ADAPTER: TypeAdapter[list[MessagePart]] = TypeAdapter(list[MessagePart])

# System prompt first, then the live summary, then everything else in order.
# Keeps the persisted active list aligned with the in-memory list the
# compaction coordinator builds ([system, summary, *kept]).
_ACTIVE_ORDER = "CASE WHEN sequence = 1 THEN 0 WHEN is_summary = 1 THEN 1 ELSE 2 END, sequence"

# ── Exceptions ─────────────────────────────────────────────────────────────────


class SandpiperStoreError(Exception):
    """Base class for store errors."""


class SessionNotFoundError(SandpiperStoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class DuplicateIDError(SandpiperStoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


class StaleRoundError(SandpiperStoreError):
    """Raised when a compaction commit does not carry the next round number."""

    def __init__(self, session_id: str, expected: int, got: int) -> None:
        super().__init__(
            f"Compaction round {got} for session {session_id!r} is stale; expected {expected}"
        )
        self.session_id = session_id
        self.expected = expected
        self.got = got


# ── Content encoding ───────────────────────────────────────────────────────────


def encode_content(content: MessageContent) -> tuple[str, str]:
    """Return ``(content_kind, serialized)`` for a message's content."""
    if isinstance(content, str):
        return "text", content
    return "parts", json.dumps([part.model_dump(mode="json") for part in content])


def decode_content(kind: str, raw: str) -> MessageContent:
    """Inverse of :func:`encode_content`."""
    if kind == "text":
        return raw
    return _PARTS_ADAPTER.validate_python(json.loads(raw))


# ── SessionStore ───────────────────────────────────────────────────────────────


class SessionStore:
    """
    SQLite store for sessions, their message log, and compaction events.

    Messages are never deleted; the only mutation is retiring them.
    Multi-statement writes run inside ``BEGIN IMMEDIATE`` … ``COMMIT``
    under a write lock, rolling back on any exception. The lock is the
    pool's per-path lock when a ``StorePool`` is supplied, otherwise a
    private one.

    Usage::

        store = SessionStore(StoreConfig(db_path="agent.db"))
        await store.initialize()
        try:
            session = await store.create_session("Build a CLI")
            await store.append_message(session.id, "system", "You are ...", 12)
        finally:
            await store.close()
    """

    def __init__(
        self,
        config: StoreConfig,
        pool: StorePool | None = None,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None
        self._id_gen = id_generator or _default_id_generator
        self._logger = structlog.get_logger("sandpiper.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
            self._write_lock = self._pool.write_lock(self._db_path)
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
            self._write_lock = asyncio.Lock()

        schema = (Path(__file__).parent / "schema.sql").read_text()
        await conn.executescript(schema)
        await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection. Pool-owned connections stay open."""
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise SandpiperStoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialized write transaction: commit on success, roll back on any error."""
        conn = self._conn_or_raise()
        assert self._write_lock is not None
        async with self._write_lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(self, task: str, id: str | None = None) -> Session:
        """
        Insert a new ``active`` session row, generating a ``sess_`` ID if none is given.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
        """
        session = Session(id=id or self._id_gen("sess"), task=task)
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    "INSERT INTO sessions (id, task, status, created_at, updated_at)"
                    " VALUES (?, ?, 'active', ?, ?)",
                    (session.id, session.task, session.created_at, session.created_at),
                )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIDError(session.id) from exc
        return session

    async def get_session(self, session_id: str) -> Session:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return Session(
            id=row["id"],
            task=row["task"],
            status=row["status"],
            created_at=row["created_at"],
        )

    async def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        """
        Move a session to ``status``.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        now = int(time.time() * 1000)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, session_id),
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        self._logger.info("session_status_updated", session_id=session_id, status=status)

    # ── Message Methods ────────────────────────────────────────────────────────

    async def append_message(
        self,
        session_id: str,
        role: Role,
        content: MessageContent,
        token_count: int,
        *,
        is_summary: bool = False,
    ) -> StoredMessage:
        """
        Append a message with the next sequence number for the session.

        Raises:
            SessionNotFoundError: If session_id does not exist.
        """
        try:
            async with self._transaction() as conn:
                sequence = await self._next_sequence(conn, session_id)
                return await self._insert_message(
                    conn,
                    session_id=session_id,
                    sequence=sequence,
                    role=role,
                    content=content,
                    token_count=token_count,
                    is_summary=is_summary,
                )
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise SessionNotFoundError(session_id) from exc
            raise

    async def get_active_messages(self, session_id: str) -> list[StoredMessage]:
        """
        Return the non-retired messages of a session in context order.

        Context order is: the system prompt (sequence 1), then the live
        compaction summary, then every other message by ascending sequence.
        """
        conn = self._conn_or_raise()
        async with conn.execute(
            f"SELECT * FROM messages WHERE session_id = ? AND retired = 0 ORDER BY {_ACTIVE_ORDER}",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def get_messages(self, session_id: str) -> list[StoredMessage]:
        """Return every message of a session, retired ones included, by sequence."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY sequence ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def load_active_chat_messages(self, session_id: str) -> list[ChatMessage]:
        """Active messages converted to the ChatMessage shape the agent loop uses."""
        return [m.to_chat() for m in await self.get_active_messages(session_id)]

    async def retire_messages_before(self, session_id: str, before_sequence: int) -> int:
        """
        Retire active messages with ``sequence < before_sequence``.

        The system prompt (sequence 1) is never retired and already-retired
        rows are left alone.

        Returns:
            Number of messages retired.
        """
        async with self._transaction() as conn:
            return await self._retire(conn, session_id, before_sequence, include_summaries=False)

    # ── Compaction Event Methods ───────────────────────────────────────────────

    async def append_compaction_event(
        self,
        session_id: str,
        round: int,
        tokens_before: int,
        tokens_after: int,
        summary_content: str,
    ) -> CompactionEvent:
        """Insert a compaction event row on its own."""
        try:
            async with self._transaction() as conn:
                return await self._insert_event(
                    conn,
                    session_id,
                    CompactionMetrics(
                        round=round, tokens_before=tokens_before, tokens_after=tokens_after
                    ),
                    summary_content,
                )
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise SessionNotFoundError(session_id) from exc
            raise StaleRoundError(session_id, expected=round + 1, got=round) from exc

    async def get_last_compaction_event(self, session_id: str) -> CompactionEvent | None:
        """Return the highest-round compaction event for a session, or None."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM compaction_events WHERE session_id = ? ORDER BY round DESC LIMIT 1",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    async def list_compaction_events(self, session_id: str) -> list[CompactionEvent]:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM compaction_events WHERE session_id = ? ORDER BY round ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_event(r) for r in rows]

    # ── Transactional Compaction Commit ────────────────────────────────────────

    async def commit_compaction(
        self,
        session_id: str,
        boundary_sequence: int,
        summary: SummaryPayload,
        metrics: CompactionMetrics,
    ) -> CompactionEvent:
        """
        Atomically apply one compaction round.

        Within a single transaction:

        1. Insert the CompactionEvent (``metrics.round`` must be the next round).
        2. Retire every active message with ``sequence < boundary_sequence``,
           plus any earlier summary still active (it is folded into the new
           one). The system prompt is never retired.
        3. Append the summary as a new active assistant message.

        Either all three effects are visible afterwards or none are.

        Raises:
            StaleRoundError: If ``metrics.round`` is not last round + 1.
            SessionNotFoundError: If session_id does not exist.
        """
        try:
            async with self._transaction() as conn:
                last_round = await self._last_round(conn, session_id)
                if metrics.round != last_round + 1:
                    raise StaleRoundError(session_id, expected=last_round + 1, got=metrics.round)

                event = await self._insert_event(conn, session_id, metrics, summary.content)
                retired = await self._retire(
                    conn, session_id, boundary_sequence, include_summaries=True
                )
                sequence = await self._next_sequence(conn, session_id)
                summary_msg = await self._insert_message(
                    conn,
                    session_id=session_id,
                    sequence=sequence,
                    role="assistant",
                    content=summary.content,
                    token_count=summary.token_count,
                    is_summary=True,
                )
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise SessionNotFoundError(session_id) from exc
            raise

        self._logger.info(
            "compaction_committed",
            session_id=session_id,
            round=event.round,
            boundary_sequence=boundary_sequence,
            retired=retired,
            summary_sequence=summary_msg.sequence,
        )
        return event

    # ── Private Helpers ────────────────────────────────────────────────────────

    async def _next_sequence(self, conn: aiosqlite.Connection, session_id: str) -> int:
        async with conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM messages WHERE session_id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return (row[0] if row else 0) + 1

    async def _last_round(self, conn: aiosqlite.Connection, session_id: str) -> int:
        async with conn.execute(
            "SELECT COALESCE(MAX(round), 0) FROM compaction_events WHERE session_id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def _insert_message(
        self,
        conn: aiosqlite.Connection,
        *,
        session_id: str,
        sequence: int,
        role: Role,
        content: MessageContent,
        token_count: int,
        is_summary: bool,
    ) -> StoredMessage:
        message = StoredMessage(
            id=self._id_gen("msg"),
            session_id=session_id,
            sequence=sequence,
            role=role,
            content=content,
            token_count=token_count,
            is_summary=is_summary,
        )
        kind, serialized = encode_content(message.content)
        await conn.execute(
            """
            INSERT INTO messages
                (id, session_id, sequence, role, content_kind, content,
                 token_count, is_summary, retired, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                message.id,
                message.session_id,
                message.sequence,
                message.role,
                kind,
                serialized,
                message.token_count,
                int(message.is_summary),
                message.created_at,
            ),
        )
        return message

    async def _insert_event(
        self,
        conn: aiosqlite.Connection,
        session_id: str,
        metrics: CompactionMetrics,
        summary_content: str,
    ) -> CompactionEvent:
        event = CompactionEvent(
            id=self._id_gen("cmp"),
            session_id=session_id,
            round=metrics.round,
            created_at=int(time.time() * 1000),
            tokens_before=metrics.tokens_before,
            tokens_after=metrics.tokens_after,
            summary_content=summary_content,
        )
        await conn.execute(
            """
            INSERT INTO compaction_events
                (id, session_id, round, created_at, tokens_before, tokens_after, summary_content)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.session_id,
                event.round,
                event.created_at,
                event.tokens_before,
                event.tokens_after,
                event.summary_content,
            ),
        )
        return event

    async def _retire(
        self,
        conn: aiosqlite.Connection,
        session_id: str,
        before_sequence: int,
        *,
        include_summaries: bool,
    ) -> int:
        condition = "(sequence < ? OR is_summary = 1)" if include_summaries else "sequence < ?"
        cursor = await conn.execute(
            f"UPDATE messages SET retired = 1"
            f" WHERE session_id = ? AND retired = 0 AND sequence > 1 AND {condition}",
            (session_id, before_sequence),
        )
        return cursor.rowcount

    def _row_to_message(self, row: aiosqlite.Row) -> StoredMessage:
        return StoredMessage(
            id=row["id"],
            session_id=row["session_id"],
            sequence=row["sequence"],
            role=row["role"],
            content=decode_content(row["content_kind"], row["content"]),
            token_count=row["token_count"],
            retired=bool(row["retired"]),
            is_summary=bool(row["is_summary"]),
            created_at=row["created_at"],
        )

    def _row_to_event(self, row: aiosqlite.Row) -> CompactionEvent:
        return CompactionEvent(
            id=row["id"],
            session_id=row["session_id"],
            round=row["round"],
            created_at=row["created_at"],
            tokens_before=row["tokens_before"],
            tokens_after=row["tokens_after"],
            summary_content=row["summary_content"],
        )


def _default_id_generator(prefix: str) -> str:
    from sandpiper.session import make_id

    return make_id(prefix)
