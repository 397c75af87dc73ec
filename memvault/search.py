"""
Search Engine — FTS5 query, LIKE fallback, structured filters

Three plans, chosen per call:

    fts       query has at least one usable token: sanitized MATCH, bm25 rank
    like      FTS raised OperationalError: substring match on content
    filtered  no usable query: importance rank, then recency

Filters (tags any-of, importance, since, session) are ANDed onto every plan.
Every memory returned gets its last_accessed stamped in the same transaction.

Author: memvault contributors
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from memvault.errors import ValidationError
from memvault.schema import importance_order_sql
from memvault.types import Memory, now_ms, validate_importance, validate_tags

logger = logging.getLogger(__name__)

# FTS5 operators and punctuation that break MATCH syntax, plus control chars.
_FTS_RESERVED_RE = re.compile(r"[\x00-\x1f\x7f\"*^(){}\[\]:+\-~<>=!',;.\\/|&%$#@?]")

# A token the tokenizer can index holds at least one letter or digit.
_INDEXABLE_RE = re.compile(r"[^\W_]")

# Keeps IN (...) lists well under SQLITE_MAX_VARIABLE_NUMBER on old builds.
_IN_CHUNK = 500

ORDER_BY_IMPORTANCE = (
    f"{importance_order_sql('m.importance')} DESC, m.updated_at DESC, m.id DESC"
)


@dataclass
class SearchRequest:
    """Parameters of one search call. All filters are optional."""

    query: Optional[str] = None
    tags: Optional[List[str]] = None
    importance: Optional[str] = None
    since: Optional[int] = None
    session_only: bool = False
    limit: int = 50

    def validate(self) -> None:
        if self.tags is not None:
            self.tags = validate_tags(self.tags)
        if self.importance is not None:
            validate_importance(self.importance)
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise ValidationError(f"limit must be a positive integer, got {self.limit!r}")
        if self.since is not None and (
            isinstance(self.since, bool) or not isinstance(self.since, int)
        ):
            raise ValidationError(f"since must be epoch milliseconds, got {self.since!r}")


# ---------------------------------------------------------------------------
# Query text helpers
# ---------------------------------------------------------------------------


def sanitize_fts_query(query: Optional[str]) -> str:
    """Turn free text into a safe FTS5 MATCH expression.

    Reserved characters become spaces; each remaining token is quoted and the
    tokens are joined with spaces (implicit AND). Tokens with no letter or
    digit match nothing in the index and are dropped. Returns "" when nothing
    usable is left.

    >>> sanitize_fts_query('fix: "race" in (queue)')
    '"fix" "race" "in" "queue"'
    """
    if not query:
        return ""
    cleaned = _FTS_RESERVED_RE.sub(" ", query)
    tokens = [t for t in cleaned.split() if _INDEXABLE_RE.search(t)]
    return " ".join('"' + t.replace('"', '""') + '"' for t in tokens)


def escape_like(text: str) -> str:
    """Escape LIKE wildcards for use with ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def tag_pattern(tag: str) -> str:
    """LIKE pattern matching *tag* as a whole element of the JSON tags array."""
    return "%" + escape_like(json.dumps(tag, ensure_ascii=False)) + "%"


def build_filters(
    request: SearchRequest, session_id: Optional[str],
) -> Tuple[List[str], List[Any]]:
    """WHERE clauses (over alias ``m``) and their parameters."""
    clauses: List[str] = []
    params: List[Any] = []
    if request.tags:
        clauses.append(
            "(" + " OR ".join("m.tags LIKE ? ESCAPE '\\'" for _ in request.tags) + ")"
        )
        params.extend(tag_pattern(t) for t in request.tags)
    if request.importance is not None:
        clauses.append("m.importance = ?")
        params.append(request.importance)
    if request.since is not None:
        clauses.append("m.created_at >= ?")
        params.append(request.since)
    if request.session_only:
        clauses.append("m.session_id = ?")
        params.append(session_id)
    return clauses, params


def _where(clauses: Sequence[str], lead: str = "WHERE") -> str:
    return f" {lead} " + " AND ".join(clauses) if clauses else ""


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def _search_fts(conn, match: str, clauses, params, limit) -> List[sqlite3.Row]:
    sql = (
        "SELECT m.* FROM memories_fts "
        "JOIN memories m ON m.id = memories_fts.rowid "
        "WHERE memories_fts MATCH ?"
        + _where(clauses, "AND")
        + " ORDER BY memories_fts.rank, m.updated_at DESC LIMIT ?"
    )
    return conn.execute(sql, [match, *params, limit]).fetchall()


def _search_like(conn, text: str, clauses, params, limit) -> List[sqlite3.Row]:
    sql = (
        "SELECT m.* FROM memories m WHERE m.content LIKE ? ESCAPE '\\'"
        + _where(clauses, "AND")
        + " ORDER BY m.updated_at DESC, m.id DESC LIMIT ?"
    )
    return conn.execute(sql, [f"%{escape_like(text)}%", *params, limit]).fetchall()


def _search_filtered(conn, clauses, params, limit) -> List[sqlite3.Row]:
    sql = (
        "SELECT m.* FROM memories m"
        + _where(clauses)
        + f" ORDER BY {ORDER_BY_IMPORTANCE} LIMIT ?"
    )
    return conn.execute(sql, [*params, limit]).fetchall()


def select_ranked(
    conn: sqlite3.Connection,
    importance_levels: Optional[Iterable[str]] = None,
    limit: Optional[int] = None,
) -> List[Memory]:
    """Importance-then-recency listing without touching last_accessed."""
    clauses: List[str] = []
    params: List[Any] = []
    if importance_levels is not None:
        levels = list(importance_levels)
        if not levels:
            return []
        clauses.append(f"m.importance IN ({','.join('?' * len(levels))})")
        params.extend(levels)
    sql = "SELECT m.* FROM memories m" + _where(clauses) + f" ORDER BY {ORDER_BY_IMPORTANCE}"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return [Memory.from_row(r) for r in conn.execute(sql, params).fetchall()]


def touch(conn: sqlite3.Connection, ids: Sequence[int], when: int) -> int:
    """Set last_accessed on *ids*. Does not rewrite the FTS index."""
    for start in range(0, len(ids), _IN_CHUNK):
        chunk = ids[start:start + _IN_CHUNK]
        conn.execute(
            f"UPDATE memories SET last_accessed = ? "
            f"WHERE id IN ({','.join('?' * len(chunk))})",
            [when, *chunk],
        )
    return len(ids)


def search(store, request: SearchRequest) -> List[Memory]:
    """Run *request* against *store* and touch every memory returned.

    *store* is a MemoryStore (anything with ``transaction()`` and
    ``session_id``).
    """
    request.validate()
    clauses, params = build_filters(request, store.session_id)
    text = (request.query or "").strip()
    match = sanitize_fts_query(text)

    with store.transaction() as conn:
        if match:
            try:
                rows = _search_fts(conn, match, clauses, params, request.limit)
                plan = "fts"
            except sqlite3.OperationalError as exc:
                logger.debug("FTS query %r failed (%s), falling back to LIKE", match, exc)
                rows = _search_like(conn, text, clauses, params, request.limit)
                plan = "like"
        else:
            rows = _search_filtered(conn, clauses, params, request.limit)
            plan = "filtered"

        results = [Memory.from_row(r) for r in rows]
        if results:
            stamp = now_ms()
            touch(conn, [m.id for m in results], stamp)
            for m in results:
                m.last_accessed = stamp

    logger.debug(
        "search plan=%s query=%r filters=%d -> %d result(s)",
        plan, text, len(clauses), len(results),
    )
    return results
