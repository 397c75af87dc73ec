"""
Memory Data Model

Defines the memory record, importance ordering, context snapshot, and
version metadata. Tags are a plain list here; JSON serialization lives in
the storage layer only.

Author: memvault contributors
"""

from __future__ import annotations

import json
import random
import string
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from memvault.errors import ValidationError

# ---------------------------------------------------------------------------
# Importance
# ---------------------------------------------------------------------------

Importance = Literal["low", "normal", "high", "critical"]

VALID_IMPORTANCE: set = {"low", "normal", "high", "critical"}

# Total order used for sorting: critical > high > normal > low
IMPORTANCE_RANK: Dict[str, int] = {
    "critical": 4,
    "high": 3,
    "normal": 2,
    "low": 1,
}

DEFAULT_IMPORTANCE: Importance = "normal"


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def generate_session_id() -> str:
    """Generate a session identifier: ``<epoch_ms>-<6 base36 chars>``."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choice(alphabet) for _ in range(6))
    return f"{now_ms()}-{suffix}"


def validate_importance(value: str) -> str:
    """Return *value* if it is a known importance level."""
    if value not in VALID_IMPORTANCE:
        raise ValidationError(
            f"Invalid importance: {value!r} "
            f"(expected one of: {', '.join(sorted(VALID_IMPORTANCE, key=IMPORTANCE_RANK.get))})"
        )
    return value


def validate_tags(tags: Any) -> List[str]:
    """Return a copy of *tags* as a list of strings, preserving order."""
    if isinstance(tags, (str, bytes)) or not isinstance(tags, (list, tuple)):
        raise ValidationError(f"tags must be a list of strings, got {type(tags).__name__}")
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError(f"tag must be a string, got {type(tag).__name__}")
    return list(tags)


# ---------------------------------------------------------------------------
# Tag serialization (storage adapter side)
# ---------------------------------------------------------------------------


def dump_tags(tags: List[str]) -> str:
    """Serialize tags as a JSON array for the ``tags`` column."""
    return json.dumps(list(tags), ensure_ascii=False)


def load_tags(raw: Optional[str]) -> List[str]:
    """Parse the ``tags`` column. NULL or malformed values read as []."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(value, list):
        return []
    return [t for t in value if isinstance(t, str)]


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """A single stored memory.

    ``id`` is assigned by the store. Timestamps are epoch milliseconds;
    ``last_accessed`` starts at creation time and only moves on search.
    """

    id: int
    content: str
    tags: List[str] = field(default_factory=list)
    importance: Importance = DEFAULT_IMPORTANCE
    context: Optional[str] = None
    session_id: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    last_accessed: int = 0

    @classmethod
    def from_row(cls, row) -> Memory:
        """Build a Memory from a ``memories`` row (sqlite3.Row or mapping)."""
        importance = row["importance"]
        if importance not in VALID_IMPORTANCE:
            importance = DEFAULT_IMPORTANCE
        return cls(
            id=row["id"],
            content=row["content"],
            tags=load_tags(row["tags"]),
            importance=importance,
            context=row["context"],
            session_id=row["session_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed=row["last_accessed"],
        )

    @property
    def first_line(self) -> str:
        """First non-empty line of the content, stripped."""
        for line in self.content.splitlines():
            if line.strip():
                return line.strip()
        return self.content.strip()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Context snapshot and version info
# ---------------------------------------------------------------------------


@dataclass
class MemoryContext:
    """Snapshot used to render the prompt block.

    ``memories`` is importance-then-recency ordered and capped; ``important``
    holds only high/critical memories, shown with full content.
    """

    memories: List[Memory] = field(default_factory=list)
    important: List[Memory] = field(default_factory=list)
    total: int = 0


@dataclass
class VersionInfo:
    """Stored vs. shipped schema version."""

    current: Optional[int]
    shipped: int

    @property
    def match(self) -> bool:
        return self.current == self.shipped

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "shipped": self.shipped, "match": self.match}
