"""
Prune Analysis — scoring memories for removal

A pure function over a list of memories: nothing here touches the database.
MemoryStore.prune() feeds it get_all_memories() and, when asked, deletes the
candidates it returns.

Each memory gets a 0-100 keep score from three components:

    importance  critical 1.0, high 0.8, normal 0.5, low 0.2
    recency     step curve on days since last update
    access      how recently it was returned by search, relative to its age

Notes weight importance more; episodes and kv pairs weight recency and
access more. A memory becomes a candidate when it has at least one reason
or its score falls under min_score_threshold. High/critical memories updated
in the last 60 days are protected unless their content is trivially short.

Author: memvault contributors
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

from memvault.config import PruneConfig
from memvault.similarity import similar_pairs
from memvault.types import Memory, now_ms

MemoryKind = Literal["episode", "note", "kv"]

PRUNE_REASONS = ("stale", "old_session", "low_importance", "duplicate", "low_content")

REASON_LABELS: Dict[str, str] = {
    "stale": "Stale (never accessed or old)",
    "old_session": "Old session episode",
    "low_importance": "Low importance + stale",
    "duplicate": "Duplicate content",
    "low_content": "Minimal content (likely test/junk)",
}

IMPORTANCE_WEIGHTS: Dict[str, float] = {
    "critical": 1.0,
    "high": 0.8,
    "normal": 0.5,
    "low": 0.2,
}

NOTE_TAGS = frozenset({"issue", "convention", "workflow", "reminder", "general"})

DAY_MS = 24 * 60 * 60 * 1000
PROTECTED_DAYS = 60
SUMMARY_CHARS = 80


def memory_kind(memory: Memory) -> MemoryKind:
    """Display grouping: kv pairs, note-like memories, everything else."""
    if "kv" in memory.tags:
        return "kv"
    if NOTE_TAGS.intersection(memory.tags):
        return "note"
    return "episode"


def recency_score(days_since_update: float) -> float:
    for limit, score in ((1, 1.0), (7, 0.9), (14, 0.7), (30, 0.5), (60, 0.3), (90, 0.2)):
        if days_since_update <= limit:
            return score
    return 0.1


def access_score(last_accessed: int, created_at: int, now: int) -> float:
    if last_accessed == 0:
        return 0.1
    total_age = now - created_at
    if total_age <= 0:
        return 1.0
    ratio = 1 - (now - last_accessed) / total_age
    return max(0.1, min(1.0, ratio + 0.3))


def keep_score(memory: Memory, kind: MemoryKind, now: int) -> int:
    days = (now - memory.updated_at) / DAY_MS
    importance = IMPORTANCE_WEIGHTS.get(memory.importance, 0.5)
    recency = recency_score(days)
    access = access_score(memory.last_accessed, memory.created_at, now)
    if kind == "note":
        raw = importance * 0.3 + recency * 0.35 + access * 0.35
    else:
        raw = importance * 0.1 + recency * 0.45 + access * 0.45
    return int(round(raw * 100))


def _summary(content: str, max_chars: int = SUMMARY_CHARS) -> str:
    first = content.split("\n", 1)[0].strip() or content
    clean = " ".join(first.split())
    return clean if len(clean) <= max_chars else clean[: max_chars - 1] + "…"


def _add_reason(reasons: List[str], reason: str) -> None:
    if reason not in reasons:
        reasons.append(reason)


@dataclass
class PruneCandidate:
    """A memory proposed for deletion, with the reasons why."""

    id: int
    kind: MemoryKind
    summary: str
    content: str
    reasons: List[str]
    score: int
    importance: str
    tags: List[str]
    created_at: int
    updated_at: int
    last_accessed: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PruneStats:
    total_by_kind: Dict[str, int] = field(default_factory=dict)
    by_kind: Dict[str, int] = field(default_factory=dict)
    by_reason: Dict[str, int] = field(default_factory=dict)
    total_candidates: int = 0
    analysis_time_ms: int = 0


@dataclass
class PruneAnalysis:
    """Result of analyze(). ``deleted`` is filled in by MemoryStore.prune()."""

    candidates: List[PruneCandidate]
    stats: PruneStats
    current_session_id: str
    timestamp: int
    deleted: int = 0

    @property
    def candidate_ids(self) -> List[int]:
        return [c.id for c in self.candidates]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def evaluate(
    memory: Memory,
    current_session_id: str,
    config: PruneConfig,
    now: int,
) -> Optional[PruneCandidate]:
    """Score one memory. Returns None when it should be kept."""
    reasons: List[str] = []
    days = (now - memory.updated_at) / DAY_MS
    kind = memory_kind(memory)

    if len(memory.content.strip()) < config.min_content_length:
        reasons.append("low_content")
    if memory.last_accessed == 0 or days > config.stale_age_days:
        _add_reason(reasons, "stale")
    if memory.session_id and memory.session_id != current_session_id and days > 1:
        reasons.append("old_session")
    if kind == "note" and memory.importance == "low" and days > 14:
        reasons.append("low_importance")
    if "archived" in memory.tags and days > 7:
        _add_reason(reasons, "stale")

    if (
        memory.importance in ("high", "critical")
        and days < PROTECTED_DAYS
        and "low_content" not in reasons
    ):
        return None

    score = keep_score(memory, kind, now)
    if not reasons:
        if score >= config.min_score_threshold:
            return None
        reasons.append("stale")

    return PruneCandidate(
        id=memory.id,
        kind=kind,
        summary=_summary(memory.content),
        content=memory.content,
        reasons=reasons,
        score=score,
        importance=memory.importance,
        tags=list(memory.tags),
        created_at=memory.created_at,
        updated_at=memory.updated_at,
        last_accessed=memory.last_accessed,
    )


def mark_duplicates(candidates: List[PruneCandidate], threshold: float) -> None:
    """Tag the lower-scoring member of each near-identical pair of the same kind."""
    pairs = similar_pairs(
        [c.content for c in candidates], threshold, groups=[c.kind for c in candidates],
    )
    for i, j in pairs:
        a, b = candidates[i], candidates[j]
        _add_reason(a.reasons if a.score <= b.score else b.reasons, "duplicate")


def analyze(
    memories: List[Memory],
    current_session_id: str,
    config: Optional[PruneConfig] = None,
    now: Optional[int] = None,
) -> PruneAnalysis:
    """Run the full prune analysis.

    Args:
        memories: Every memory to consider (typically get_all_memories()).
        current_session_id: Memories from other sessions may get old_session.
        config: Thresholds; defaults to PruneConfig().
        now: Reference time in epoch ms (defaults to the current time).

    Returns:
        PruneAnalysis with candidates sorted by ascending keep score.
    """
    started = time.monotonic()
    config = config or PruneConfig()
    now = now_ms() if now is None else now

    candidates = [
        c for c in (evaluate(m, current_session_id, config, now) for m in memories)
        if c is not None
    ]
    if config.detect_duplicates:
        mark_duplicates(candidates, config.duplicate_similarity)
    candidates.sort(key=lambda c: c.score)

    total_by_kind = {"episode": 0, "note": 0, "kv": 0}
    for m in memories:
        total_by_kind[memory_kind(m)] += 1
    by_kind = {"episode": 0, "note": 0, "kv": 0}
    by_reason = {r: 0 for r in PRUNE_REASONS}
    for c in candidates:
        by_kind[c.kind] += 1
        for r in c.reasons:
            by_reason[r] += 1

    stats = PruneStats(
        total_by_kind=total_by_kind,
        by_kind=by_kind,
        by_reason=by_reason,
        total_candidates=len(candidates),
        analysis_time_ms=int((time.monotonic() - started) * 1000),
    )
    return PruneAnalysis(
        candidates=candidates,
        stats=stats,
        current_session_id=current_session_id,
        timestamp=now,
    )
