"""
Memvault Configuration

Configuration dataclasses for the store, search, prompt context, and prune
analysis. Includes load_config() for reading a JSON config file with silent
fallback to compiled defaults.

Author: memvault contributors
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from memvault.errors import ValidationError


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".memory/memvault.db"
    wal_mode: bool = True
    fts_tokenizer: str = "unicode61 remove_diacritics 2"
    busy_timeout_ms: int = 5000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.db_path:
            errors.append("store.db_path: must not be empty")
        _check_range(errors, "store.busy_timeout_ms",
                      self.busy_timeout_ms, 0, 600000, int)
        return errors


@dataclass
class SearchConfig:
    """Retrieval defaults."""
    default_limit: int = 50
    max_limit: int = 1000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.default_limit",
                      self.default_limit, 1, 100000, int)
        _check_range(errors, "search.max_limit",
                      self.max_limit, 1, 100000, int)
        if not errors and self.default_limit > self.max_limit:
            errors.append("search.default_limit: exceeds search.max_limit")
        return errors


@dataclass
class ContextConfig:
    """Prompt context sizing."""
    max_memories: int = 100
    max_important: int = 50
    snippets_per_category: int = 3
    snippet_chars: int = 60
    idle_nudge_turns: int = 5

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "context.max_memories",
                      self.max_memories, 1, 10000, int)
        _check_range(errors, "context.max_important",
                      self.max_important, 0, 10000, int)
        _check_range(errors, "context.snippets_per_category",
                      self.snippets_per_category, 0, 20, int)
        _check_range(errors, "context.snippet_chars",
                      self.snippet_chars, 10, 500, int)
        _check_range(errors, "context.idle_nudge_turns",
                      self.idle_nudge_turns, 1, 1000, int)
        return errors


@dataclass
class PruneConfig:
    """Prune analysis thresholds."""
    stale_age_days: int = 30
    min_score_threshold: int = 30
    detect_duplicates: bool = True
    duplicate_similarity: float = 0.8
    min_content_length: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "prune.stale_age_days",
                      self.stale_age_days, 1, 3650, int)
        _check_range(errors, "prune.min_score_threshold",
                      self.min_score_threshold, 0, 100, int)
        _check_range(errors, "prune.duplicate_similarity",
                      self.duplicate_similarity, 0.0, 1.0, float)
        _check_range(errors, "prune.min_content_length",
                      self.min_content_length, 0, 10000, int)
        return errors


@dataclass
class MemvaultConfig:
    """Top-level memvault configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    prune: PruneConfig = field(default_factory=PruneConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemvaultConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "context" in d:
            kwargs["context"] = ContextConfig(**d["context"])
        if "prune" in d:
            kwargs["prune"] = PruneConfig(**d["prune"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.search.validate())
        errors.extend(self.context.validate())
        errors.extend(self.prune.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemvaultConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemvaultConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemvaultConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemvaultConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = MemvaultConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
