"""
Memory Store — SQLite persistent backend

One MemoryStore owns one connection to one SQLite file. Opening the store
brings the file to the current schema (see memvault.schema); the FTS index
is kept in sync by triggers (see memvault.index).

Transactions: the connection runs in autocommit mode and every operation
opens its own transaction through transaction(). Nested calls become
savepoints, so composite operations never commit halfway. Read-only
snapshots (snapshot()) use a deferred BEGIN and take no write lock.

Thread safety: sqlite3 check_same_thread=False, serialized by an RLock.

Author: memvault contributors
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from memvault import context as context_mod
from memvault import index, prune as prune_mod, schema, search as search_mod
from memvault.config import ContextConfig, PruneConfig, SearchConfig
from memvault.errors import MigrationError, ValidationError
from memvault.index import IndexDrift
from memvault.prune import PruneAnalysis
from memvault.search import SearchRequest
from memvault.types import (
    DEFAULT_IMPORTANCE,
    Memory,
    MemoryContext,
    VersionInfo,
    dump_tags,
    generate_session_id,
    now_ms,
    validate_importance,
    validate_tags,
)

logger = logging.getLogger(__name__)

# Session id shared by every store opened in this process unless overridden.
_PROCESS_SESSION_ID = generate_session_id()

_IN_CHUNK = 500

# Marks an update() field that was not supplied; None clears a nullable field.
_UNSET: Any = object()


def _check_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("content must be a non-empty string")
    return content


class MemoryStore:
    """
    SQLite-backed persistent store for agent memories.

    Usable as a context manager; close() is idempotent.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
        session_id: Optional[str] = None,
        busy_timeout_ms: int = 5000,
        search_config: Optional[SearchConfig] = None,
        context_config: Optional[ContextConfig] = None,
    ):
        """Open (or create) the store and bring it to the current schema.

        Args:
            db_path: SQLite database path (or ":memory:").
            wal_mode: Enable WAL journal mode for file databases.
            fts_tokenizer: FTS5 tokenizer for a new index. Defaults to
                ``"unicode61 remove_diacritics 2"``.
            session_id: Session stamped on new memories. Defaults to an id
                generated once per process.
            busy_timeout_ms: How long SQLite waits on a locked file.

        Raises:
            MigrationError: The file could not be migrated; nothing was changed
                and the connection is closed.
        """
        self._lock = threading.RLock()
        self._depth = 0
        self._conn: Optional[sqlite3.Connection] = None
        self._wal_mode = wal_mode
        self._busy_timeout_ms = busy_timeout_ms
        self._fts_tokenizer = index.validate_tokenizer(
            fts_tokenizer or index.DEFAULT_TOKENIZER
        )
        self._session_id = session_id or _PROCESS_SESSION_ID
        self.search_config = search_config or SearchConfig()
        self.context_config = context_config or ContextConfig()
        self._open(db_path)

    # -- Lifecycle ---------------------------------------------------------

    def _open(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn = conn
        self._db_path = db_path
        self._depth = 0

        try:
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            if self._wal_mode and db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            with self.transaction():
                found = schema.open_or_init(conn, self._fts_tokenizer)
        except MigrationError as exc:
            logger.error("Schema migration failed for %s: %s", db_path, exc)
            self.close()
            raise
        except Exception:
            self.close()
            raise

        logger.info(
            "MemoryStore opened: %s (schema v%d, found v%d, tokenizer=%s)",
            db_path, schema.SCHEMA_VERSION, found,
            index.existing_tokenizer(conn) or self._fts_tokenizer,
        )

    def reopen(self, db_path: str) -> None:
        """Close the current file and open *db_path* with the same settings."""
        with self._lock:
            self.close()
            self._open(db_path)

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                self._depth = 0

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def closed(self) -> bool:
        return self._conn is None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic block. Outermost level is BEGIN IMMEDIATE; nested levels
        are savepoints. Yields the connection.
        """
        with self._lock:
            conn = self._conn
            if conn is None:
                raise sqlite3.ProgrammingError("Cannot operate on a closed MemoryStore")
            level = self._depth
            savepoint = f"memvault_sp{level}"
            conn.execute("BEGIN IMMEDIATE" if level == 0 else f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield conn
            except BaseException:
                self._depth = level
                self._rollback(conn, level, savepoint)
                raise
            try:
                conn.execute("COMMIT" if level == 0 else f"RELEASE {savepoint}")
            except sqlite3.Error:
                self._rollback(conn, level, savepoint)
                raise
            finally:
                self._depth = level

    @staticmethod
    def _rollback(conn: sqlite3.Connection, level: int, savepoint: str) -> None:
        # Never raises: the caller re-raises the error that caused the rollback.
        try:
            if level == 0:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
            else:
                conn.execute(f"ROLLBACK TO {savepoint}")
                conn.execute(f"RELEASE {savepoint}")
        except sqlite3.Error as exc:
            logger.warning("Rollback failed (level %d): %s", level, exc)

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Consistent read view. Yields the connection.

        Outermost level is a deferred BEGIN, which takes no write lock, so a
        writer on another connection does not block it in WAL mode. Inside a
        transaction() it simply reuses the open one.
        """
        with self._lock:
            conn = self._connection()
            if self._depth > 0:
                yield conn
                return
            conn.execute("BEGIN")
            self._depth += 1
            try:
                yield conn
            finally:
                self._depth = 0
                if conn.in_transaction:
                    conn.execute("COMMIT")

    # -- CRUD --------------------------------------------------------------

    def remember(
        self,
        content: str,
        *,
        tags: Optional[List[str]] = None,
        importance: str = DEFAULT_IMPORTANCE,
        context: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> int:
        """Store a new memory. Returns its id."""
        content = _check_content(content)
        tag_list = validate_tags(tags) if tags is not None else []
        validate_importance(importance)
        ts = now_ms()
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT INTO memories
                   (content, tags, importance, context, session_id,
                    created_at, updated_at, last_accessed)
                   VALUES (?,?,?,?,?,?,?,?)""",
                (
                    content, dump_tags(tag_list), importance, context,
                    session_id or self._session_id, ts, ts, ts,
                ),
            )
            memory_id = cur.lastrowid
        logger.debug("remember id=%d importance=%s tags=%s", memory_id, importance, tag_list)
        return memory_id

    def update(
        self,
        memory_id: int,
        *,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        importance: Optional[str] = None,
        context: Optional[str] = _UNSET,
    ) -> bool:
        """Patch the given fields of a memory.

        Omitted fields are left alone. ``context=None`` clears the context.
        Returns False, changing nothing, when the id is unknown or no field
        was supplied.
        """
        fields: Dict[str, Any] = {}
        if content is not None:
            fields["content"] = _check_content(content)
        if tags is not None:
            fields["tags"] = dump_tags(validate_tags(tags))
        if importance is not None:
            fields["importance"] = validate_importance(importance)
        if context is not _UNSET:
            fields["context"] = context
        if not fields:
            return False

        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE memories SET {assignments}, "
                "updated_at = MAX(?, created_at) WHERE id = ?",
                [*fields.values(), now_ms(), memory_id],
            )
            updated = cur.rowcount > 0
        if updated:
            logger.debug("update id=%d fields=%s", memory_id, sorted(fields))
        return updated

    def forget(self, memory_id: int) -> bool:
        """Delete a memory. Returns False if it did not exist."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            removed = cur.rowcount > 0
        if removed:
            logger.debug("forget id=%d", memory_id)
        return removed

    def batch_delete_memories(self, ids: Iterable[int]) -> int:
        """Delete many memories in one transaction. Returns how many existed."""
        id_list = list(dict.fromkeys(ids))
        if not id_list:
            return 0
        removed = 0
        with self.transaction() as conn:
            for start in range(0, len(id_list), _IN_CHUNK):
                chunk = id_list[start:start + _IN_CHUNK]
                cur = conn.execute(
                    f"DELETE FROM memories WHERE id IN ({','.join('?' * len(chunk))})",
                    chunk,
                )
                removed += cur.rowcount
        logger.debug("batch delete: %d of %d id(s) removed", removed, len(id_list))
        return removed

    def get_by_id(self, memory_id: int) -> Optional[Memory]:
        """Read one memory. Does not touch last_accessed."""
        with self._lock:
            row = self._connection().execute(
                "SELECT * FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
        return Memory.from_row(row) if row else None

    def get_all_memories(self) -> List[Memory]:
        """Every memory, most recently updated first. Does not touch."""
        with self._lock:
            rows = self._connection().execute(
                "SELECT * FROM memories ORDER BY updated_at DESC, id DESC"
            ).fetchall()
        return [Memory.from_row(r) for r in rows]

    def list_memories(
        self,
        *,
        importance_levels: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """Importance-then-recency listing. Does not touch."""
        if importance_levels is not None:
            importance_levels = [validate_importance(i) for i in importance_levels]
        with self._lock:
            return search_mod.select_ranked(self._connection(), importance_levels, limit)

    def count(self) -> int:
        with self._lock:
            return self._connection().execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("Cannot operate on a closed MemoryStore")
        return self._conn

    # -- Search ------------------------------------------------------------

    def search(
        self,
        query: Optional[str] = None,
        *,
        tags: Optional[List[str]] = None,
        importance: Optional[str] = None,
        since: Optional[int] = None,
        session_only: bool = False,
        limit: Optional[int] = None,
    ) -> List[Memory]:
        """Full-text and filtered search. Stamps last_accessed on results.

        Args:
            query: Free text; FTS operators are neutralized. Empty or None
                lists by importance then recency.
            tags: Any-of tag filter.
            importance: Exact importance level.
            since: Only memories created at or after this epoch-ms time.
            session_only: Only memories from this store's session.
            limit: Max results (default search_config.default_limit, capped
                at search_config.max_limit).
        """
        if limit is None:
            limit = self.search_config.default_limit
        elif isinstance(limit, int) and not isinstance(limit, bool) and limit > 0:
            limit = min(limit, self.search_config.max_limit)
        request = SearchRequest(
            query=query, tags=tags, importance=importance,
            since=since, session_only=session_only, limit=limit,
        )
        return search_mod.search(self, request)

    # -- Index -------------------------------------------------------------

    def rebuild_index(self, tokenizer: Optional[str] = None) -> int:
        """Rebuild the FTS index from the memories table. Returns rows indexed."""
        with self.transaction() as conn:
            count = index.rebuild_index(conn, tokenizer)
        if tokenizer:
            self._fts_tokenizer = index.validate_tokenizer(tokenizer)
        return count

    def find_index_drift(self) -> IndexDrift:
        with self._lock:
            return index.find_index_drift(self._connection())

    def verify_index(self) -> None:
        """Raise IndexDriftError if the FTS index does not mirror memories."""
        with self._lock:
            index.verify_index(self._connection())

    # -- Context -----------------------------------------------------------

    def get_memory_context(self) -> MemoryContext:
        return context_mod.build_context(self, self.context_config)

    build_context = get_memory_context

    def build_memory_prompt(self, session_writes: int = 0, turns_idle: int = 0) -> str:
        """Render the prompt memory block for the current contents."""
        return context_mod.build_prompt(
            self.get_memory_context(), session_writes, turns_idle, self.context_config,
        )

    # -- Prune -------------------------------------------------------------

    def prune(
        self,
        config: Optional[PruneConfig] = None,
        *,
        dry_run: bool = True,
        now: Optional[int] = None,
    ) -> PruneAnalysis:
        """Analyze memories for pruning; delete the candidates unless dry_run."""
        analysis = prune_mod.analyze(
            self.get_all_memories(), self._session_id, config, now,
        )
        if not dry_run and analysis.candidates:
            analysis.deleted = self.batch_delete_memories(analysis.candidate_ids)
            logger.info("Pruned %d memories", analysis.deleted)
        return analysis

    # -- Introspection -----------------------------------------------------

    def get_version_info(self) -> VersionInfo:
        with self._lock:
            return schema.get_version_info(self._connection())

    def get_database_schema(self) -> str:
        with self._lock:
            return schema.get_database_schema(self._connection())

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the store."""
        with self._lock:
            conn = self._connection()
            total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            by_importance = {
                r["importance"]: r["cnt"]
                for r in conn.execute(
                    "SELECT importance, COUNT(*) AS cnt FROM memories GROUP BY importance"
                ).fetchall()
            }
            tokenizer = index.existing_tokenizer(conn)
            version = schema.read_version(conn)
        by_category: Dict[str, int] = {}
        for m in self.get_all_memories():
            category = context_mod.classify(m)
            by_category[category] = by_category.get(category, 0) + 1
        return {
            "total": total,
            "by_importance": by_importance,
            "by_category": by_category,
            "session_id": self._session_id,
            "schema_version": version,
            "db_path": self._db_path,
            "fts_tokenizer": tokenizer,
        }
