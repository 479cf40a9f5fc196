"""Persistence for the crawl corpus: profiles, messages, edges and work queues."""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    event,
    func,
    select,
)
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ..errors import StorageError
from ..identity import ByHandle, ByNumericID, Identity
from .models import MessageSnapshot, ProfileSnapshot, RelationshipKind, StoredProfile


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Bound parameters allowed per statement on SQLite builds older than 3.32.
SQLITE_MAX_VARIABLES = 999

_STOP = object()


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _row_chunks(rows: Sequence[dict]) -> Iterator[Sequence[dict]]:
    """Split multi-row INSERT values so no statement binds more than SQLITE_MAX_VARIABLES."""

    width = len(rows[0]) if rows else 1
    return _chunks(rows, max(SQLITE_MAX_VARIABLES // width, 1))


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class CorpusStore:
    """Typed wrapper around the corpus database.

    Reads run directly on pooled connections. Every mutation is queued on a
    bounded write queue and applied, one transaction per operation, by a
    single writer thread; producers block while the queue is full.
    """

    PROFILE_TABLE = "profiles"
    MESSAGE_TABLE = "messages"
    HANDLE_QUEUE_TABLE = "pending_handles"
    ID_QUEUE_TABLE = "pending_ids"
    _RETRYABLE_SQLITE_ERRORS = ("disk i/o error", "database is locked")

    def __init__(self, engine: Engine, *, write_queue_size: int = 100) -> None:
        self._engine = engine
        if engine.dialect.name == "sqlite":
            event.listen(engine, "connect", _set_sqlite_pragmas)

        self._metadata = MetaData()
        self._profile_table = Table(
            self.PROFILE_TABLE,
            self._metadata,
            Column("user_id", Integer, primary_key=True, autoincrement=False),
            Column("handle", String, unique=True),
            Column("description", Text, server_default=""),
            Column("last_looked_at", Integer, nullable=False, server_default="0"),
            Column("latest_message_id", Integer, nullable=False, server_default="0"),
            Column("latest_following_id", Integer, nullable=False, server_default="0"),
            Column("latest_follower_id", Integer, nullable=False, server_default="0"),
            Column("protected", Integer, nullable=False, server_default="0"),
            Column("processed", Integer, nullable=False, server_default="0"),
            Column("accepted", Integer, nullable=False, server_default="0"),
            Column("blob", LargeBinary, nullable=True),
        )
        self._message_table = Table(
            self.MESSAGE_TABLE,
            self._metadata,
            Column("message_id", Integer, primary_key=True, autoincrement=False),
            Column("created_at", Integer, nullable=False),
            Column("language", String, nullable=True),
            Column("user_id", Integer, ForeignKey("profiles.user_id"), nullable=False, index=True),
            Column("text", Text, nullable=False, server_default=""),
            Column("blob", LargeBinary, nullable=True),
        )
        self._handle_queue_table = Table(
            self.HANDLE_QUEUE_TABLE,
            self._metadata,
            Column("handle", String, primary_key=True),
            Column("processed", Integer, nullable=False, server_default="0"),
        )
        self._id_queue_table = Table(
            self.ID_QUEUE_TABLE,
            self._metadata,
            Column("user_id", Integer, primary_key=True, autoincrement=False),
            Column("processed", Integer, nullable=False, server_default="0"),
        )
        self._edge_tables: Dict[RelationshipKind, Table] = {}
        for kind in RelationshipKind:
            self._edge_tables[kind] = Table(
                kind.value,
                self._metadata,
                Column("user_id", Integer, ForeignKey("profiles.user_id"), nullable=False),
                Column(kind.other_column, Integer, nullable=False),
                UniqueConstraint("user_id", kind.other_column, name=f"uq_{kind.value}_pair"),
            )
        self._run_sync(
            "create_schema", lambda engine: self._metadata.create_all(engine, checkfirst=True)
        )

        self._write_queue: "queue.Queue[object]" = queue.Queue(maxsize=write_queue_size)
        self._writer_error: Optional[StorageError] = None
        self._writer = threading.Thread(target=self._writer_loop, name="corpus-writer", daemon=True)
        self._writer.start()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
    ) -> T:
        last_exc: Optional[OperationalError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_SQLITE_ERRORS):
                    raise

                last_exc = exc
                LOGGER.error(
                    "Retryable SQLite error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )

                if attempt == max_attempts:
                    break

                time.sleep(base_delay_seconds * (2 ** (attempt - 1)))

        assert last_exc is not None
        LOGGER.error("Exhausted retries for %s after %s attempts; re-raising.", op_name, max_attempts)
        raise last_exc

    def _run_sync(self, op_name: str, fn: Callable[[Engine], T]) -> T:
        try:
            return self._execute_with_retry(op_name, fn)
        except SQLAlchemyError as exc:
            raise StorageError(f"Store operation {op_name} failed: {exc}", operation=op_name) from exc

    def _submit(self, op_name: str, fn: Callable[[Engine], object]) -> None:
        self.check_writer()
        self._write_queue.put((op_name, fn, None))

    def _writer_loop(self) -> None:
        while True:
            item = self._write_queue.get()
            try:
                if item is _STOP:
                    return
                op_name, fn, done = item
                if done is not None:
                    continue
                if self._writer_error is not None:
                    LOGGER.debug("Discarding %s after writer failure", op_name)
                    continue
                try:
                    self._execute_with_retry(op_name, fn)
                except Exception as exc:
                    self._writer_error = StorageError(
                        f"Write {op_name} failed: {exc}", operation=op_name
                    )
                    self._writer_error.__cause__ = exc
                    LOGGER.error("Corpus writer stopped applying writes: %s failed: %s", op_name, exc)
            finally:
                if item is not _STOP and item[2] is not None:
                    item[2].set()
                self._write_queue.task_done()

    def check_writer(self) -> None:
        """Raise the writer's failure, if it has one."""

        if self._writer_error is not None:
            raise self._writer_error

    def flush(self) -> None:
        """Block until every write submitted so far has been applied."""

        self.check_writer()
        if not self._writer.is_alive():
            raise StorageError("Corpus writer is not running", operation="flush")
        done = threading.Event()
        self._write_queue.put(("flush", None, done))
        done.wait()
        self.check_writer()

    def close(self) -> None:
        """Flush pending writes, stop the writer thread and release connections."""

        try:
            if self._writer.is_alive():
                self._write_queue.put(_STOP)
                self._writer.join()
        finally:
            self._engine.dispose()
        self.check_writer()

    @property
    def pending_writes(self) -> int:
        return self._write_queue.qsize()

    # ------------------------------------------------------------------
    # Profile operations
    # ------------------------------------------------------------------
    @staticmethod
    def _profile_row(profile: ProfileSnapshot) -> dict:
        return {
            "user_id": profile.user_id,
            "handle": profile.handle,
            "description": profile.description,
            "protected": int(profile.protected),
            "blob": profile.blob,
        }

    def store_profile(self, profile: ProfileSnapshot) -> None:
        """Insert ``profile`` unless a row with its ID or handle already exists."""

        row = self._profile_row(profile)

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(insert(self._profile_table).values(row).on_conflict_do_nothing())

        self._submit("store_profile", _op)

    def record_resolved_profiles(self, resolved: Sequence[Tuple[ProfileSnapshot, bool]]) -> None:
        """Store profiles and set ``processed``/``accepted`` in one transaction.

        Existing rows keep their snapshot columns; only the flags change.
        """

        if not resolved:
            return
        rows = [self._profile_row(profile) for profile, _ in resolved]
        flags = [(profile.user_id, int(accepted)) for profile, accepted in resolved]

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                for chunk in _row_chunks(rows):
                    conn.execute(insert(self._profile_table).values(list(chunk)).on_conflict_do_nothing())
                for user_id, accepted in flags:
                    result = conn.execute(
                        self._profile_table.update()
                        .where(self._profile_table.c.user_id == user_id)
                        .values(processed=1, accepted=accepted)
                    )
                    if result.rowcount == 0:
                        LOGGER.warning(
                            "Profile %s was not stored (handle already held by another ID?)", user_id
                        )

        self._submit("record_resolved_profiles", _op)

    def record_resolved_profile(self, profile: ProfileSnapshot, accepted: bool) -> None:
        self.record_resolved_profiles([(profile, accepted)])

    def mark_profile_processed(self, user_id: int, accepted: bool) -> None:
        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(
                    self._profile_table.update()
                    .where(self._profile_table.c.user_id == user_id)
                    .values(processed=1, accepted=int(accepted))
                )

        self._submit("mark_profile_processed", _op)

    def advance_message_watermark(self, user_id: int, message_id: int, looked_at: int) -> None:
        """Raise ``latest_message_id`` and ``last_looked_at``; never lowers either."""

        table = self._profile_table

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(
                    table.update()
                    .where(table.c.user_id == user_id)
                    .values(
                        latest_message_id=func.max(table.c.latest_message_id, message_id),
                        last_looked_at=func.max(table.c.last_looked_at, looked_at),
                    )
                )

        self._submit("advance_message_watermark", _op)

    def advance_relationship_watermark(self, kind: RelationshipKind, user_id: int, value: int) -> None:
        """Raise the ``kind`` watermark to ``value``; never lowers it."""

        table = self._profile_table
        column = table.c[kind.watermark_column]

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(
                    table.update()
                    .where(table.c.user_id == user_id)
                    .values({column: func.max(column, value)})
                )

        self._submit(f"advance_{kind.value}_watermark", _op)

    def get_profile(self, identity: Identity) -> Optional[StoredProfile]:
        """Return the stored profile for ``identity`` or ``None``.

        Handles match case-insensitively.
        """

        table = self._profile_table
        if isinstance(identity, ByNumericID):
            condition = table.c.user_id == identity.user_id
        elif isinstance(identity, ByHandle):
            condition = func.lower(table.c.handle) == identity.handle.lower()
        else:
            raise TypeError(f"identity must be ByHandle or ByNumericID, got {type(identity)!r}")

        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(select(table).where(condition).limit(1)).fetchone()

        row = self._run_sync("get_profile", _op)
        if row is None:
            return None
        return StoredProfile(
            user_id=row.user_id,
            handle=row.handle,
            description=row.description or "",
            last_looked_at=row.last_looked_at,
            latest_message_id=row.latest_message_id,
            latest_following_id=row.latest_following_id,
            latest_follower_id=row.latest_follower_id,
            protected=bool(row.protected),
            processed=bool(row.processed),
            accepted=bool(row.accepted),
            blob=row.blob,
        )

    def accepted_ids(self) -> List[int]:
        """IDs of the frontier: processed profiles the acceptance policy kept."""

        table = self._profile_table

        def _op(engine: Engine) -> List[int]:
            with engine.connect() as conn:
                stmt = (
                    select(table.c.user_id)
                    .where(table.c.processed == 1, table.c.accepted == 1)
                    .order_by(table.c.user_id)
                )
                return [row.user_id for row in conn.execute(stmt)]

        return self._run_sync("accepted_ids", _op)

    # ------------------------------------------------------------------
    # Message operations
    # ------------------------------------------------------------------
    def store_messages(self, messages: Sequence[MessageSnapshot]) -> None:
        if not messages:
            return
        rows = [
            {
                "message_id": message.message_id,
                "created_at": message.created_at,
                "language": message.language,
                "user_id": message.user_id,
                "text": message.text,
                "blob": message.blob,
            }
            for message in messages
        ]

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                for chunk in _row_chunks(rows):
                    conn.execute(insert(self._message_table).values(list(chunk)).on_conflict_do_nothing())

        self._submit("store_messages", _op)

    def store_message(self, message: MessageSnapshot) -> None:
        self.store_messages([message])

    def fetch_messages(self, user_id: Optional[int] = None) -> List[dict]:
        table = self._message_table

        def _op(engine: Engine) -> List[dict]:
            with engine.connect() as conn:
                stmt = select(table).order_by(table.c.message_id.desc())
                if user_id is not None:
                    stmt = stmt.where(table.c.user_id == user_id)
                return [dict(row._mapping) for row in conn.execute(stmt)]

        return self._run_sync("fetch_messages", _op)

    # ------------------------------------------------------------------
    # Edge operations
    # ------------------------------------------------------------------
    def store_edges(self, kind: RelationshipKind, user_id: int, other_ids: Iterable[int]) -> None:
        """Record ``user_id -> other`` pairs in the ``kind`` table; duplicates are ignored."""

        table = self._edge_tables[kind]
        rows = [{"user_id": user_id, kind.other_column: other_id} for other_id in other_ids]
        if not rows:
            return

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                for chunk in _row_chunks(rows):
                    conn.execute(insert(table).values(list(chunk)).on_conflict_do_nothing())

        self._submit(f"store_{kind.value}_edges", _op)

    def fetch_edges(self, kind: RelationshipKind, user_id: Optional[int] = None) -> List[Tuple[int, int]]:
        table = self._edge_tables[kind]
        other = table.c[kind.other_column]

        def _op(engine: Engine) -> List[Tuple[int, int]]:
            with engine.connect() as conn:
                stmt = select(table.c.user_id, other).order_by(table.c.user_id, other)
                if user_id is not None:
                    stmt = stmt.where(table.c.user_id == user_id)
                return [(row[0], row[1]) for row in conn.execute(stmt)]

        return self._run_sync(f"fetch_{kind.value}_edges", _op)

    # ------------------------------------------------------------------
    # Work queue operations
    # ------------------------------------------------------------------
    def enqueue_handles(self, handles: Iterable[str]) -> None:
        rows = [{"handle": handle} for handle in dict.fromkeys(handles)]
        if not rows:
            return

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                for chunk in _row_chunks(rows):
                    conn.execute(insert(self._handle_queue_table).values(list(chunk)).on_conflict_do_nothing())

        self._submit("enqueue_handles", _op)

    def enqueue_ids(self, user_ids: Iterable[int]) -> None:
        rows = [{"user_id": user_id} for user_id in dict.fromkeys(user_ids)]
        if not rows:
            return

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                for chunk in _row_chunks(rows):
                    conn.execute(insert(self._id_queue_table).values(list(chunk)).on_conflict_do_nothing())

        self._submit("enqueue_ids", _op)

    def mark_handle_processed(self, handle: str) -> None:
        table = self._handle_queue_table

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(table.update().where(table.c.handle == handle).values(processed=1))

        self._submit("mark_handle_processed", _op)

    def mark_ids_processed(self, user_ids: Iterable[int]) -> None:
        ids = list(user_ids)
        if not ids:
            return
        table = self._id_queue_table

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                for chunk in _chunks(ids, SQLITE_MAX_VARIABLES):
                    conn.execute(table.update().where(table.c.user_id.in_(list(chunk))).values(processed=1))

        self._submit("mark_ids_processed", _op)

    def _queue_scan(self, op_name: str, column, processed_column, processed: bool) -> list:
        def _op(engine: Engine) -> list:
            with engine.connect() as conn:
                stmt = select(column).where(processed_column == int(processed)).order_by(column)
                return [row[0] for row in conn.execute(stmt)]

        return self._run_sync(op_name, _op)

    def unprocessed_handles(self) -> List[str]:
        table = self._handle_queue_table
        return self._queue_scan("unprocessed_handles", table.c.handle, table.c.processed, False)

    def processed_handles(self) -> List[str]:
        table = self._handle_queue_table
        return self._queue_scan("processed_handles", table.c.handle, table.c.processed, True)

    def unprocessed_ids(self) -> List[int]:
        table = self._id_queue_table
        return self._queue_scan("unprocessed_ids", table.c.user_id, table.c.processed, False)

    def processed_ids(self) -> List[int]:
        table = self._id_queue_table
        return self._queue_scan("processed_ids", table.c.user_id, table.c.processed, True)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def summary(self) -> Dict[str, int]:
        """Row counts per relation, plus frontier and queue backlog sizes."""

        profiles = self._profile_table

        def _op(engine: Engine) -> Dict[str, int]:
            counts: Dict[str, int] = {}
            with engine.connect() as conn:
                def count(table: Table, *conditions) -> int:
                    stmt = select(func.count()).select_from(table)
                    if conditions:
                        stmt = stmt.where(*conditions)
                    return conn.execute(stmt).scalar() or 0

                counts["profiles"] = count(profiles)
                counts["accepted"] = count(profiles, profiles.c.accepted == 1)
                counts["protected"] = count(profiles, profiles.c.protected == 1)
                counts["messages"] = count(self._message_table)
                for kind, table in self._edge_tables.items():
                    counts[kind.value] = count(table)
                counts["pending_handles"] = count(
                    self._handle_queue_table, self._handle_queue_table.c.processed == 0
                )
                counts["pending_ids"] = count(self._id_queue_table, self._id_queue_table.c.processed == 0)
            return counts

        return self._run_sync("summary", _op)


def get_corpus_store(engine: Engine, *, write_queue_size: int = 100) -> CorpusStore:
    """Helper for one-line store construction."""

    return CorpusStore(engine, write_queue_size=write_queue_size)
