"""
memvault CLI — inspect and maintain a memory file from the shell

Commands:
    memvault remember "text" [--tags T] [--importance I]   — store a memory
    memvault search  ["query"] [--tags T] [-k N]           — search → stdout
    memvault show    <id>                                  — one memory
    memvault update  <id> [--content ...] [--tags ...]     — patch a memory
    memvault forget  <id> [<id> ...]                       — delete memories
    memvault context [--writes N] [--idle N]               — prompt block → stdout
    memvault reindex [--check] [--fts-tokenizer P]         — rebuild / verify FTS
    memvault schema                                        — DDL dump
    memvault version                                       — schema version info
    memvault stats                                         — store metrics
    memvault prune   [--apply]                             — prune analysis

Environment variables:
    MEMVAULT_DB       Path to SQLite database (default: .memory/memvault.db)
    MEMVAULT_CONFIG   Path to a JSON config file
    MEMVAULT_SESSION  Session id stamped on new memories

Precedence (invariant):
    CLI --flag  >  MEMVAULT_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (not found, invalid input, index drift)
    2  Internal failure (unexpected exception, I/O error)

Author: memvault contributors
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

from memvault.config import MemvaultConfig, load_config
from memvault.errors import MemvaultError
from memvault.index import FTS_TOKENIZER_PRESETS
from memvault.store import MemoryStore
from memvault.types import Memory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name) or default


def _resolve_config(args: argparse.Namespace) -> MemvaultConfig:
    """--config > MEMVAULT_CONFIG > compiled defaults."""
    path = getattr(args, "config", None) or _env_str("MEMVAULT_CONFIG")
    return load_config(path, strict=bool(path))


def _resolve_db(args: argparse.Namespace, cfg: MemvaultConfig) -> str:
    """--db > MEMVAULT_DB > config store.db_path."""
    return getattr(args, "db", None) or _env_str("MEMVAULT_DB", cfg.store.db_path)


def _resolve_fts(value: Optional[str], cfg: MemvaultConfig) -> str:
    """Preset name (default|en|raw) or raw tokenizer string."""
    v = value or cfg.store.fts_tokenizer
    return FTS_TOKENIZER_PRESETS.get(v, v)


def _open_store(args: argparse.Namespace) -> MemoryStore:
    cfg = _resolve_config(args)
    return MemoryStore(
        _resolve_db(args, cfg),
        wal_mode=cfg.store.wal_mode,
        fts_tokenizer=_resolve_fts(None, cfg),
        session_id=_env_str("MEMVAULT_SESSION"),
        busy_timeout_ms=cfg.store.busy_timeout_ms,
        search_config=cfg.search,
        context_config=cfg.context,
    )


def _split_tags(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [t.strip() for t in value.split(",") if t.strip()]


# ---------------------------------------------------------------------------
# Output helpers (respect --quiet / --json)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    print(msg, file=sys.stderr)


def _json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json", False))


def _dump(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _fmt_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _print_memory_line(m: Memory) -> None:
    print(f"  #{m.id:<5d} [{m.importance.upper():8s}] {m.first_line[:100]}")
    if m.tags:
        print(f"         tags: {', '.join(m.tags)}")


# ===========================================================================
# Commands
# ===========================================================================


def cmd_remember(args: argparse.Namespace) -> int:
    """Store a new memory (content "-" reads stdin)."""
    content = sys.stdin.read() if args.content == "-" else args.content
    with _open_store(args) as store:
        memory_id = store.remember(
            content,
            tags=_split_tags(args.tags),
            importance=args.importance,
            context=args.context,
        )
    if _json(args):
        _dump({"id": memory_id, "status": "ok"})
    else:
        print(memory_id)
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """Search memories (FTS5 with LIKE fallback)."""
    with _open_store(args) as store:
        results = store.search(
            args.query,
            tags=_split_tags(args.tags),
            importance=args.importance,
            since=args.since,
            session_only=args.session,
            limit=args.k,
        )

    if _json(args):
        _dump([m.to_dict() for m in results])
        return 0
    if not results:
        _info("No results found.")
        return 0
    print(f"Found {len(results)} memor{'y' if len(results) == 1 else 'ies'}:\n")
    for m in results:
        _print_memory_line(m)
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    """Show one memory by id."""
    with _open_store(args) as store:
        memory = store.get_by_id(args.id)
    if memory is None:
        _warn(f"Memory not found: {args.id}")
        return 1
    if _json(args):
        _dump(memory.to_dict())
        return 0
    print(f"Memory #{memory.id}")
    print("=" * 40)
    print(f"  Importance:    {memory.importance}")
    print(f"  Tags:          {', '.join(memory.tags) or '-'}")
    print(f"  Session:       {memory.session_id or '-'}")
    print(f"  Created:       {_fmt_ms(memory.created_at)}")
    print(f"  Updated:       {_fmt_ms(memory.updated_at)}")
    print(f"  Last accessed: {_fmt_ms(memory.last_accessed)}")
    if memory.context:
        print(f"  Context:       {memory.context}")
    print()
    print(memory.content)
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    """Patch fields of an existing memory."""
    patch = {}
    if args.context is not None:
        patch["context"] = args.context or None
    with _open_store(args) as store:
        ok = store.update(
            args.id,
            content=args.content,
            tags=_split_tags(args.tags),
            importance=args.importance,
            **patch,
        )
    if not ok:
        _warn(f"Nothing updated: memory {args.id} not found or no fields given")
        return 1
    _info(f"Updated memory {args.id}")
    return 0


def cmd_forget(args: argparse.Namespace) -> int:
    """Delete memories. Unknown ids are a no-op."""
    with _open_store(args) as store:
        if len(args.ids) == 1:
            removed = int(store.forget(args.ids[0]))
        else:
            removed = store.batch_delete_memories(args.ids)
    if _json(args):
        _dump({"removed": removed, "requested": len(args.ids)})
    else:
        _info(f"Removed {removed} of {len(args.ids)} memor{'y' if len(args.ids) == 1 else 'ies'}")
    return 0


def cmd_context(args: argparse.Namespace) -> int:
    """Print the prompt memory block."""
    with _open_store(args) as store:
        if _json(args):
            ctx = store.get_memory_context()
            _dump({
                "total": ctx.total,
                "memories": [m.to_dict() for m in ctx.memories],
                "important": [m.to_dict() for m in ctx.important],
            })
        else:
            print(store.build_memory_prompt(args.writes, args.idle))
    return 0


def cmd_reindex(args: argparse.Namespace) -> int:
    """Rebuild the FTS index, or only report drift with --check."""
    with _open_store(args) as store:
        if args.check:
            drift = store.find_index_drift()
            if _json(args):
                _dump({
                    "clean": drift.clean,
                    "missing": drift.missing,
                    "orphaned": drift.orphaned,
                })
            elif drift.clean:
                print("FTS index is in sync.")
            else:
                print(f"FTS index drift: {len(drift.missing)} missing, "
                      f"{len(drift.orphaned)} orphaned")
                print("Run `memvault reindex` to repair.")
            return 0 if drift.clean else 1

        tokenizer = (
            _resolve_fts(args.fts_tokenizer, MemvaultConfig())
            if args.fts_tokenizer else None
        )
        count = store.rebuild_index(tokenizer)
    if _json(args):
        _dump({"indexed": count, "status": "ok"})
    else:
        _info(f"Reindexed {count} memor{'y' if count == 1 else 'ies'}")
    return 0


def cmd_schema(args: argparse.Namespace) -> int:
    """Print every schema object's DDL."""
    with _open_store(args) as store:
        print(store.get_database_schema())
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Print stored vs. shipped schema version."""
    with _open_store(args) as store:
        info = store.get_version_info()
    if _json(args):
        _dump(info.to_dict())
    else:
        print(f"Schema version: {info.current} (shipped: {info.shipped})"
              f"{'' if info.match else '  MISMATCH'}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show store statistics."""
    with _open_store(args) as store:
        stats = store.stats()
    if _json(args):
        stats["status"] = "ok"
        _dump(stats)
        return 0
    print("Memory Store Statistics")
    print("=" * 40)
    print(f"  Total memories: {stats['total']}")
    print(f"  Schema:         v{stats['schema_version']}")
    print(f"  Tokenizer:      {stats['fts_tokenizer']}")
    print(f"  Database:       {stats['db_path']}")
    print("  By importance:")
    for level in ("critical", "high", "normal", "low"):
        if level in stats["by_importance"]:
            print(f"    {level:9s}: {stats['by_importance'][level]}")
    print("  By category:")
    for category, count in sorted(stats["by_category"].items()):
        print(f"    {category:12s}: {count}")
    return 0


def cmd_prune(args: argparse.Namespace) -> int:
    """Analyze memories for pruning; delete candidates with --apply."""
    cfg = _resolve_config(args)
    with _open_store(args) as store:
        analysis = store.prune(cfg.prune, dry_run=not args.apply)
    if _json(args):
        _dump(analysis.to_dict())
        return 0
    s = analysis.stats
    print(f"Prune analysis: {s.total_candidates} candidate(s) "
          f"out of {sum(s.total_by_kind.values())} memories")
    for c in analysis.candidates:
        print(f"  #{c.id:<5d} score={c.score:3d}  {c.kind:8s} "
              f"{','.join(c.reasons):24s} {c.summary}")
    if args.apply:
        _info(f"Deleted {analysis.deleted} memor{'y' if analysis.deleted == 1 else 'ies'}")
    elif analysis.candidates:
        _info("Dry run. Re-run with --apply to delete.")
    return 0


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    # SUPPRESS defaults keep subparser defaults from overriding flags given
    # before the subcommand.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: MEMVAULT_DB or .memory/memvault.db)",
    )
    common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: MEMVAULT_CONFIG)",
    )
    common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="memvault",
        description="memvault: persistent memory store for coding agents",
        parents=[common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    importance = ("low", "normal", "high", "critical")

    p = sub.add_parser("remember", parents=[common], help="Store a new memory")
    p.add_argument("content", help='Memory text ("-" reads stdin)')
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--importance", choices=importance, default="normal")
    p.add_argument("--context", default=None, help="Free-form context")
    p.set_defaults(func=cmd_remember)

    p = sub.add_parser("search", parents=[common], help="Search memories")
    p.add_argument("query", nargs="?", default=None, help="Search text (optional)")
    p.add_argument("--tags", default=None, help="Comma-separated tags (any of)")
    p.add_argument("--importance", choices=importance, default=None)
    p.add_argument("--since", type=int, default=None, help="Created at or after (epoch ms)")
    p.add_argument("--session", action="store_true", help="Only this session's memories")
    p.add_argument("-k", "--limit", dest="k", type=int, default=None, help="Max results")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("show", parents=[common], help="Show one memory")
    p.add_argument("id", type=int, help="Memory id")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("update", parents=[common], help="Patch a memory")
    p.add_argument("id", type=int, help="Memory id")
    p.add_argument("--content", default=None)
    p.add_argument("--tags", default=None, help="Comma-separated tags (replaces)")
    p.add_argument("--importance", choices=importance, default=None)
    p.add_argument("--context", default=None, help="Replace context (\"\" clears it)")
    p.set_defaults(func=cmd_update)

    p = sub.add_parser("forget", parents=[common], help="Delete memories")
    p.add_argument("ids", type=int, nargs="+", help="Memory id(s)")
    p.set_defaults(func=cmd_forget)

    p = sub.add_parser("context", parents=[common], help="Print the prompt memory block")
    p.add_argument("--writes", type=int, default=0, help="Memories saved this session")
    p.add_argument("--idle", type=int, default=0, help="Turns since the last save")
    p.set_defaults(func=cmd_context)

    p = sub.add_parser("reindex", parents=[common], help="Rebuild the FTS index")
    p.add_argument("--check", action="store_true", help="Only report drift (exit 1 if any)")
    p.add_argument(
        "--fts-tokenizer", default=None,
        help="Tokenizer preset (default|en|raw) or raw tokenizer string",
    )
    p.set_defaults(func=cmd_reindex)

    p = sub.add_parser("schema", parents=[common], help="Print schema DDL")
    p.set_defaults(func=cmd_schema)

    p = sub.add_parser("version", parents=[common], help="Schema version info")
    p.set_defaults(func=cmd_version)

    p = sub.add_parser("stats", parents=[common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("prune", parents=[common], help="Prune analysis")
    p.add_argument("--apply", action="store_true", help="Delete the candidates")
    p.set_defaults(func=cmd_prune)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: memvault <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)
    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        code = args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except MemvaultError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
