"""
Exception hierarchy for memvault.

Missing ids are not errors: update/forget return False and batch deletes
return 0. FTS query syntax errors never leave the search module.

Author: memvault contributors
"""

from __future__ import annotations


class MemvaultError(Exception):
    """Base class for all memvault errors."""


class ValidationError(MemvaultError, ValueError):
    """Raised for malformed input detected before anything is written."""

    pass


class MigrationError(MemvaultError):
    """Raised when a schema migration cannot complete.

    The migration transaction has been rolled back; the file is left at its
    previous version and must not be used by this process.
    """

    def __init__(self, message: str, from_version: int, to_version: int):
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version


class IndexDriftError(MemvaultError):
    """Raised when the FTS index no longer mirrors the memories table."""

    def __init__(self, missing: list, orphaned: list):
        super().__init__(
            f"FTS index drift: {len(missing)} row(s) unindexed, "
            f"{len(orphaned)} orphaned index entr{'y' if len(orphaned) == 1 else 'ies'}. "
            "Call rebuild_index() to repair."
        )
        self.missing = missing
        self.orphaned = orphaned
