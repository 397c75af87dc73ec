"""
Context Builder — category classification and prompt rendering

build_context() takes a read-only snapshot of the store; build_prompt()
renders it into the text block injected at the start of an agent turn.
Neither touches last_accessed.

Author: memvault contributors
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List, Optional, Tuple

from memvault.config import ContextConfig
from memvault.search import select_ranked
from memvault.types import Memory, MemoryContext

logger = logging.getLogger(__name__)

# Ordered (tags, category) rules: the first rule sharing a tag with the
# memory decides its category.
CATEGORY_RULES: Tuple[Tuple[FrozenSet[str], str], ...] = (
    (frozenset({"commit", "auto-captured"}), "commits"),
    (frozenset({"decision"}), "decisions"),
    (frozenset({"preference", "pref"}), "preferences"),
    (frozenset({"environment", "env"}), "environment"),
    (frozenset({"workflow"}), "workflows"),
    (frozenset({"convention", "approach"}), "conventions"),
    (frozenset({"architecture"}), "architecture"),
    (frozenset({"issue", "bug", "gotcha", "reminder"}), "issues"),
    (frozenset({"exploration"}), "explorations"),
)

FALLBACK_CATEGORY = "other"

CATEGORY_ORDER: Tuple[str, ...] = tuple(c for _, c in CATEGORY_RULES) + (FALLBACK_CATEGORY,)

PROMPT_OPEN = "<memory>"
PROMPT_CLOSE = "</memory>"

PREAMBLE = """\
You have a persistent memory for this project that survives across sessions.
- Search it before starting a task: earlier decisions, conventions and known
  issues are recorded there.
- Save durable knowledge as you learn it (decisions, preferences, environment
  facts, workflows, bugs). Tag every memory; tags drive the map below.
- Use importance high or critical only for project-wide rules. Those are
  always shown in full."""


def classify(memory: Memory) -> str:
    """Category of *memory* from its tags (case-insensitive)."""
    tags = {t.lower() for t in memory.tags}
    for rule_tags, category in CATEGORY_RULES:
        if rule_tags & tags:
            return category
    return FALLBACK_CATEGORY


def build_context(store, config: Optional[ContextConfig] = None) -> MemoryContext:
    """Snapshot for prompt rendering; does not touch last_accessed."""
    config = config or ContextConfig()
    with store.snapshot() as conn:
        total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
        memories = select_ranked(conn, limit=config.max_memories)
        important = select_ranked(
            conn, importance_levels=("critical", "high"), limit=config.max_important,
        )
    logger.debug(
        "context snapshot: total=%d listed=%d important=%d",
        total, len(memories), len(important),
    )
    return MemoryContext(memories=memories, important=important, total=total)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _truncate(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[: max_chars - 1] + "…"


def _plural(n: int, one: str, many: str) -> str:
    return f"{n} {one if n == 1 else many}"


def session_status(session_writes: int, turns_idle: int, idle_nudge_turns: int) -> str:
    if session_writes == 0:
        line = "Session: nothing saved yet."
    else:
        line = (
            f"Session: {_plural(session_writes, 'memory', 'memories')} saved, "
            f"last save {_plural(turns_idle, 'turn', 'turns')} ago."
        )
    if turns_idle >= idle_nudge_turns:
        line += " Consider saving what you have learned since."
    return line


def _format_important(memory: Memory) -> List[str]:
    lines = memory.content.strip().splitlines() or [""]
    out = [f"- [{memory.importance.upper()}] {lines[0]}"]
    out.extend(f"  {line}" for line in lines[1:])
    if memory.tags:
        out.append(f"  tags: {', '.join(memory.tags)}")
    return out


def group_by_category(memories: List[Memory]) -> Dict[str, List[Memory]]:
    """Memories bucketed by category, input order kept within each bucket."""
    groups: Dict[str, List[Memory]] = {c: [] for c in CATEGORY_ORDER}
    for m in memories:
        groups[classify(m)].append(m)
    return groups


def build_prompt(
    ctx: MemoryContext,
    session_writes: int = 0,
    turns_idle: int = 0,
    config: Optional[ContextConfig] = None,
) -> str:
    """Render *ctx* as the memory block of the system prompt."""
    config = config or ContextConfig()
    parts = [
        PROMPT_OPEN,
        PREAMBLE,
        session_status(session_writes, turns_idle, config.idle_nudge_turns),
    ]

    if ctx.important:
        section = ["## Critical knowledge"]
        for m in ctx.important:
            section.extend(_format_important(m))
        parts.append("\n".join(section))

    if ctx.memories:
        section = [
            f"## Memory map ({_plural(ctx.total, 'memory', 'memories')}, "
            "search for details)"
        ]
        for category, members in group_by_category(ctx.memories).items():
            if not members:
                continue
            snippets = [
                _truncate(m.first_line, config.snippet_chars)
                for m in members[: config.snippets_per_category]
            ]
            line = f"- {category} ({len(members)})"
            if snippets:
                line += ": " + " | ".join(snippets)
            section.append(line)
        parts.append("\n".join(section))

    parts.append(PROMPT_CLOSE)
    return "\n\n".join(parts)
