"""
Full-Text Index Sync — FTS5 shadow of memories.content/tags/context

The index is an external-content FTS5 table keyed by ``memories.id``. Three
triggers keep it in lockstep with the source table inside the writer's own
transaction, so no call site can change a row without changing its entry:

    memories_fts_ai   after INSERT: add entry
    memories_fts_ad   after DELETE: remove entry
    memories_fts_au   after UPDATE OF content, tags, context:
                      remove old entry, insert new one

Updates that touch other columns (importance, last_accessed, ...) leave the
index alone. None of the functions here commit; callers wrap them in a
transaction.

Author: memvault contributors
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional

from memvault.errors import IndexDriftError, ValidationError

logger = logging.getLogger(__name__)

FTS_TABLE = "memories_fts"
FTS_TRIGGERS = ("memories_fts_ai", "memories_fts_ad", "memories_fts_au")

DEFAULT_TOKENIZER = "unicode61 remove_diacritics 2"

# Only alphanumeric, space, underscore, dot and hyphen: the tokenizer string
# is interpolated into DDL.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

FTS_TOKENIZER_PRESETS = {
    "default": DEFAULT_TOKENIZER,
    "en": "porter unicode61 remove_diacritics 2",
    "raw": "unicode61",
}


def validate_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = (tokenizer or "").strip()
    if not tokenizer:
        raise ValidationError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValidationError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} "
            "(only [a-zA-Z0-9_ .-] characters allowed)"
        )
    return tokenizer


def index_ddl(tokenizer: str = DEFAULT_TOKENIZER) -> List[str]:
    """FTS5 table and trigger statements, one string per statement."""
    safe = validate_tokenizer(tokenizer)
    return [
        f"""CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    content, tags, context,
    content='memories',
    content_rowid='id',
    tokenize='{safe}'
)""",
        """CREATE TRIGGER IF NOT EXISTS memories_fts_ai
AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, content, tags, context)
    VALUES (new.id, new.content, new.tags, new.context);
END""",
        """CREATE TRIGGER IF NOT EXISTS memories_fts_ad
AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, tags, context)
    VALUES ('delete', old.id, old.content, old.tags, old.context);
END""",
        """CREATE TRIGGER IF NOT EXISTS memories_fts_au
AFTER UPDATE OF content, tags, context ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, tags, context)
    VALUES ('delete', old.id, old.content, old.tags, old.context);
    INSERT INTO memories_fts(rowid, content, tags, context)
    VALUES (new.id, new.content, new.tags, new.context);
END""",
    ]


def existing_tokenizer(conn: sqlite3.Connection) -> Optional[str]:
    """Tokenizer of the existing FTS table, or None if there is no table.

    An FTS table declared without a tokenize clause reports "unicode61".
    """
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
        (FTS_TABLE,),
    ).fetchone()
    if row is None:
        return None
    match = re.search(r"tokenize='([^']*)'", row[0] or "")
    return match.group(1).strip() if match else "unicode61"


def ensure_index(conn: sqlite3.Connection, tokenizer: str = DEFAULT_TOKENIZER) -> bool:
    """Create the FTS table and triggers if missing.

    Returns True if the FTS table did not exist before (a fresh index must be
    populated by the caller, see rebuild_index()).
    """
    current = existing_tokenizer(conn)
    if current is not None and current != tokenizer.strip():
        logger.warning(
            "FTS tokenizer mismatch: existing='%s', configured='%s'. "
            "Call rebuild_index(tokenizer=...) to recreate the index.",
            current, tokenizer,
        )
    for stmt in index_ddl(current or tokenizer):
        conn.execute(stmt)
    return current is None


def drop_index(conn: sqlite3.Connection) -> None:
    """Drop the FTS table and its triggers."""
    for name in FTS_TRIGGERS:
        conn.execute(f"DROP TRIGGER IF EXISTS {name}")
    conn.execute(f"DROP TABLE IF EXISTS {FTS_TABLE}")


def rebuild_index(
    conn: sqlite3.Connection,
    tokenizer: Optional[str] = None,
) -> int:
    """Clear the whole index and repopulate it from ``memories``.

    Re-creates missing triggers first, so it also repairs a store whose
    triggers were dropped by hand. When *tokenizer* differs from the current
    one the FTS table is dropped and recreated with it. Idempotent.

    Returns the number of rows indexed.
    """
    current = existing_tokenizer(conn)
    target = validate_tokenizer(tokenizer or current or DEFAULT_TOKENIZER)
    if current is not None and current != target:
        logger.info("FTS tokenizer change: '%s' -> '%s'", current, target)
        drop_index(conn)
    for stmt in index_ddl(target):
        conn.execute(stmt)
    conn.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES ('rebuild')")
    count = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
    logger.info("FTS index rebuilt: %d memories indexed (tokenizer=%s)", count, target)
    return count


# ---------------------------------------------------------------------------
# Drift detection
# ---------------------------------------------------------------------------


@dataclass
class IndexDrift:
    """Ids present on one side only."""

    missing: List[int] = field(default_factory=list)   # row without entry
    orphaned: List[int] = field(default_factory=list)  # entry without row

    @property
    def clean(self) -> bool:
        return not self.missing and not self.orphaned


def find_index_drift(conn: sqlite3.Connection) -> IndexDrift:
    """Compare memory ids with indexed document ids.

    Uses the FTS5 ``_docsize`` shadow table, which holds exactly one row per
    indexed document.
    """
    missing = [
        r[0] for r in conn.execute(
            "SELECT id FROM memories "
            "WHERE id NOT IN (SELECT id FROM memories_fts_docsize) ORDER BY id"
        ).fetchall()
    ]
    orphaned = [
        r[0] for r in conn.execute(
            "SELECT id FROM memories_fts_docsize "
            "WHERE id NOT IN (SELECT id FROM memories) ORDER BY id"
        ).fetchall()
    ]
    drift = IndexDrift(missing=missing, orphaned=orphaned)
    if not drift.clean:
        logger.warning(
            "FTS index drift detected: missing=%s orphaned=%s", missing, orphaned,
        )
    return drift


def verify_index(conn: sqlite3.Connection) -> None:
    """Raise IndexDriftError if the index does not mirror the table."""
    drift = find_index_drift(conn)
    if not drift.clean:
        raise IndexDriftError(drift.missing, drift.orphaned)
