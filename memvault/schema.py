"""
Schema Manager — version detection, migrations, introspection

Tables (current, v4):
    memories        - Canonical memory rows (single durable entity)
    memories_fts    - FTS5 shadow of content/tags/context (see memvault.index)
    schema_version  - Single-row stamp of the applied schema version

History:
    v0/v1  Unversioned multi-table layout: kv, episodes, tasks, project_notes
    v2     tasks moved out of the memory file; memory_index catalog added
    v3     last_accessed column on episodes, project_notes, kv
    v4     Unified memories table + memories_fts; legacy relations removed

Every function here expects to run inside a transaction owned by the caller
(MemoryStore.transaction()). open_or_init() raises MigrationError from inside
that transaction so the whole upgrade rolls back.

Author: memvault contributors
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, List, Optional, Tuple

from memvault import index
from memvault.errors import MigrationError
from memvault.types import (
    DEFAULT_IMPORTANCE,
    VALID_IMPORTANCE,
    IMPORTANCE_RANK,
    VersionInfo,
    dump_tags,
    load_tags,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 4

# ---------------------------------------------------------------------------
# Schema DDL (one statement per string: executescript() would commit)
# ---------------------------------------------------------------------------

_VERSION_TABLE_SQL = """CREATE TABLE IF NOT EXISTS schema_version (
    id      INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
    version INTEGER NOT NULL
)"""

_SCHEMA_STATEMENTS = [
    """CREATE TABLE IF NOT EXISTS memories (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    content       TEXT NOT NULL,
    tags          TEXT,                              -- JSON array
    importance    TEXT NOT NULL DEFAULT 'normal',
    context       TEXT,
    session_id    TEXT,
    created_at    INTEGER NOT NULL,                  -- epoch ms
    updated_at    INTEGER NOT NULL,
    last_accessed INTEGER NOT NULL
)""",
    "CREATE INDEX IF NOT EXISTS idx_memories_importance ON memories(importance)",
    "CREATE INDEX IF NOT EXISTS idx_memories_session ON memories(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_memories_updated ON memories(updated_at)",
]

# Relations from earlier layouts. Dropped by the v4 migration and again, if
# still present, on every open.
LEGACY_DATA_RELATIONS = ("episodes", "project_notes", "kv")
LEGACY_CATALOG_RELATIONS = ("memory_index_fts", "memory_index")
LEGACY_RELATIONS = ("tasks",) + LEGACY_CATALOG_RELATIONS + LEGACY_DATA_RELATIONS


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    return conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ).fetchone() is not None


def _columns(conn: sqlite3.Connection, table: str) -> set:
    return {r[1] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def is_fresh(conn: sqlite3.Connection) -> bool:
    """True if the database holds no user tables at all."""
    row = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master "
        "WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    ).fetchone()
    return row[0] == 0


def read_version(conn: sqlite3.Connection) -> Optional[int]:
    """Stored schema version, or None if the file was never stamped."""
    if not _table_exists(conn, "schema_version"):
        return None
    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    return row[0] if row else None


def stamp_version(conn: sqlite3.Connection, version: int) -> None:
    """Replace the stored schema version."""
    conn.execute(_VERSION_TABLE_SQL)
    conn.execute("DELETE FROM schema_version")
    conn.execute("INSERT INTO schema_version (id, version) VALUES (1, ?)", (version,))


def create_current_schema(
    conn: sqlite3.Connection, tokenizer: str = index.DEFAULT_TOKENIZER,
) -> None:
    """Create (IF NOT EXISTS) every current table, index, FTS table and trigger.

    If the FTS table had to be created next to existing rows, it is
    populated so the index never lags the table.
    """
    for stmt in _SCHEMA_STATEMENTS:
        conn.execute(stmt)
    created = index.ensure_index(conn, tokenizer)
    if created:
        has_rows = conn.execute("SELECT 1 FROM memories LIMIT 1").fetchone()
        if has_rows:
            index.rebuild_index(conn, tokenizer)


def cleanup_legacy(conn: sqlite3.Connection) -> List[str]:
    """Drop every legacy relation still present. Returns the names dropped."""
    dropped = []
    for name in LEGACY_RELATIONS:
        if _table_exists(conn, name):
            conn.execute(f"DROP TABLE IF EXISTS {name}")
            dropped.append(name)
    if dropped:
        logger.info("Dropped stale legacy relations: %s", ", ".join(dropped))
    return dropped


# ---------------------------------------------------------------------------
# Migration steps (each idempotent)
# ---------------------------------------------------------------------------


def _migrate_to_v2(conn: sqlite3.Connection, tokenizer: str) -> None:
    """Tasks moved out of the memory file."""
    conn.execute("DROP TABLE IF EXISTS tasks")


def _migrate_to_v3(conn: sqlite3.Connection, tokenizer: str) -> None:
    """Add last_accessed to the legacy tables that lack it."""
    for table in LEGACY_DATA_RELATIONS:
        if _table_exists(conn, table) and "last_accessed" not in _columns(conn, table):
            conn.execute(f"ALTER TABLE {table} ADD COLUMN last_accessed INTEGER")


def _insert_folded(
    conn: sqlite3.Connection,
    content: str,
    tags: Optional[List[str]],
    importance: str,
    context: Optional[str],
    session_id: Optional[str],
    created_at: int,
    updated_at: int,
    last_accessed: int,
) -> None:
    conn.execute(
        """INSERT INTO memories
           (content, tags, importance, context, session_id,
            created_at, updated_at, last_accessed)
           VALUES (?,?,?,?,?,?,?,?)""",
        (
            content,
            dump_tags(tags) if tags is not None else None,
            importance if importance in VALID_IMPORTANCE else DEFAULT_IMPORTANCE,
            context,
            session_id,
            created_at,
            max(updated_at, created_at),
            last_accessed,
        ),
    )


def _fold_episodes(conn: sqlite3.Connection) -> int:
    """Timestamped event records: carried through, importance normal."""
    has_access = "last_accessed" in _columns(conn, "episodes")
    rows = conn.execute(
        "SELECT * FROM episodes ORDER BY timestamp, id"
    ).fetchall()
    for r in rows:
        ts = r["timestamp"]
        raw_tags = r["tags"]
        _insert_folded(
            conn,
            content=r["content"],
            tags=load_tags(raw_tags) if raw_tags is not None else None,
            importance=DEFAULT_IMPORTANCE,
            context=r["context"],
            session_id=r["session_id"],
            created_at=ts,
            updated_at=ts,
            last_accessed=(r["last_accessed"] if has_access else None) or ts,
        )
    return len(rows)


def _fold_project_notes(conn: sqlite3.Connection) -> int:
    """Titled notes: title + blank line + body, category tag, archived tag."""
    has_access = "last_accessed" in _columns(conn, "project_notes")
    rows = conn.execute(
        "SELECT * FROM project_notes ORDER BY created_at, id"
    ).fetchall()
    for r in rows:
        tags = [r["category"]] if r["category"] else []
        if not r["active"]:
            tags.append("archived")
        _insert_folded(
            conn,
            content=f"{r['title']}\n\n{r['content']}",
            tags=tags,
            importance=r["importance"],
            context=None,
            session_id=None,
            created_at=r["created_at"],
            updated_at=r["updated_at"],
            last_accessed=(r["last_accessed"] if has_access else None) or r["updated_at"],
        )
    return len(rows)


def _fold_kv(conn: sqlite3.Connection) -> int:
    """Flat key/value pairs: "<key>: <value>" tagged kv + key."""
    has_access = "last_accessed" in _columns(conn, "kv")
    rows = conn.execute("SELECT * FROM kv ORDER BY created_at, key").fetchall()
    for r in rows:
        _insert_folded(
            conn,
            content=f"{r['key']}: {r['value']}",
            tags=["kv", r["key"]],
            importance=DEFAULT_IMPORTANCE,
            context=None,
            session_id=None,
            created_at=r["created_at"],
            updated_at=r["updated_at"],
            last_accessed=(r["last_accessed"] if has_access else None) or r["updated_at"],
        )
    return len(rows)


_FOLDERS: Tuple[Tuple[str, Callable[[sqlite3.Connection], int]], ...] = (
    ("episodes", _fold_episodes),
    ("project_notes", _fold_project_notes),
    ("kv", _fold_kv),
)


def _migrate_to_v4(conn: sqlite3.Connection, tokenizer: str) -> None:
    """Fold legacy tables into memories and drop them.

    Each legacy table is dropped right after it is folded, so running this
    step again never folds the same rows twice.
    """
    create_current_schema(conn, tokenizer)
    for table, fold in _FOLDERS:
        if not _table_exists(conn, table):
            continue
        n = fold(conn)
        conn.execute(f"DROP TABLE {table}")
        logger.info("Folded %d row(s) from legacy table %s", n, table)
    for name in LEGACY_CATALOG_RELATIONS:
        conn.execute(f"DROP TABLE IF EXISTS {name}")


MIGRATIONS: Tuple[Tuple[int, Callable[[sqlite3.Connection, str], None]], ...] = (
    (2, _migrate_to_v2),
    (3, _migrate_to_v3),
    (4, _migrate_to_v4),
)


def run_migrations(
    conn: sqlite3.Connection,
    from_version: int,
    tokenizer: str = index.DEFAULT_TOKENIZER,
) -> int:
    """Apply every migration newer than *from_version*, in ascending order.

    Any failure is re-raised as MigrationError; the caller's transaction
    must then roll back.
    """
    applied = 0
    for target, step in MIGRATIONS:
        if target <= from_version:
            continue
        try:
            step(conn, tokenizer)
        except Exception as exc:
            raise MigrationError(
                f"Migration to schema v{target} failed: {exc}",
                from_version, target,
            ) from exc
        logger.info("Applied schema migration v%d -> v%d", target - 1, target)
        applied += 1
    return applied


def open_or_init(
    conn: sqlite3.Connection, tokenizer: str = index.DEFAULT_TOKENIZER,
) -> int:
    """Bring the database to SCHEMA_VERSION.

    Fresh file: stamp and create the current schema only. Older file: migrate
    then stamp. Current file: validate the schema and drop leftover legacy
    relations. Returns the version the file was found at.
    """
    if is_fresh(conn):
        conn.execute(_VERSION_TABLE_SQL)
        create_current_schema(conn, tokenizer)
        stamp_version(conn, SCHEMA_VERSION)
        logger.debug("Initialized fresh database at schema v%d", SCHEMA_VERSION)
        return SCHEMA_VERSION

    found = read_version(conn) or 0
    if found > SCHEMA_VERSION:
        raise MigrationError(
            f"Database schema v{found} is newer than this release (v{SCHEMA_VERSION})",
            found, SCHEMA_VERSION,
        )
    if found < SCHEMA_VERSION:
        run_migrations(conn, found, tokenizer)
        stamp_version(conn, SCHEMA_VERSION)
    try:
        create_current_schema(conn, tokenizer)
        cleanup_legacy(conn)
    except sqlite3.Error as exc:
        raise MigrationError(
            f"Schema validation failed: {exc}", found, SCHEMA_VERSION,
        ) from exc
    return found


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


def get_version_info(conn: sqlite3.Connection) -> VersionInfo:
    """Stored vs. shipped schema version."""
    return VersionInfo(current=read_version(conn), shipped=SCHEMA_VERSION)


def get_database_schema(conn: sqlite3.Connection) -> str:
    """Full DDL text of every schema object, ordered by type then name."""
    rows = conn.execute(
        "SELECT type, name, sql FROM sqlite_master "
        "WHERE sql IS NOT NULL ORDER BY type, name"
    ).fetchall()
    if not rows:
        return "No schema objects found."
    return "\n\n".join(f"-- {r[0]}: {r[1]}\n{r[2]};" for r in rows)


def importance_order_sql(column: str = "importance") -> str:
    """CASE expression ranking importance levels (higher = more important)."""
    whens = " ".join(
        f"WHEN '{level}' THEN {rank}"
        for level, rank in sorted(IMPORTANCE_RANK.items(), key=lambda kv: -kv[1])
    )
    return f"CASE {column} {whens} ELSE 0 END"
