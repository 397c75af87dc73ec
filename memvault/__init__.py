"""
memvault — persistent memory for coding agents.

One SQLite file per project: a single memories table, an FTS5 index kept in
sync by triggers, and versioned migrations from older multi-table layouts.

Author: memvault contributors
"""

__version__ = "0.4.0"

from memvault.types import Memory, MemoryContext, VersionInfo
from memvault.errors import (
    IndexDriftError,
    MemvaultError,
    MigrationError,
    ValidationError,
)
from memvault.schema import SCHEMA_VERSION
from memvault.store import MemoryStore
from memvault.config import MemvaultConfig

__all__ = [
    "__version__",
    "Memory",
    "MemoryContext",
    "VersionInfo",
    "MemoryStore",
    "MemvaultConfig",
    "MemvaultError",
    "ValidationError",
    "MigrationError",
    "IndexDriftError",
    "SCHEMA_VERSION",
]
