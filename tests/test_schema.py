"""
Tests for memvault.schema — fresh init, legacy migration, cleanup, introspection.

Scenarios:
  fresh file        stamped at the shipped version, current objects only
  unversioned file  episodes + notes + kv folded into memories, legacy gone
  v3 file           last_accessed carried over from the legacy columns
  re-open           idempotent, nothing folded twice
  failure           MigrationError, file left untouched

Author: memvault contributors
"""

import sqlite3

import pytest

from memvault import schema
from memvault.errors import MigrationError
from memvault.store import MemoryStore


LEGACY_DDL = """
CREATE TABLE kv (
    key TEXT PRIMARY KEY, value TEXT NOT NULL,
    created_at INTEGER NOT NULL, updated_at INTEGER NOT NULL
);
CREATE TABLE episodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT, content TEXT NOT NULL,
    context TEXT, tags TEXT, timestamp INTEGER NOT NULL, session_id TEXT
);
CREATE TABLE tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
);
CREATE TABLE project_notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT, title TEXT NOT NULL,
    content TEXT NOT NULL, category TEXT NOT NULL DEFAULT 'general',
    importance TEXT NOT NULL DEFAULT 'normal', active INTEGER NOT NULL DEFAULT 1,
    created_at INTEGER NOT NULL, updated_at INTEGER NOT NULL
);
"""

T0 = 1_700_000_000_000


def _tables(path):
    conn = sqlite3.connect(path)
    try:
        return {
            r[0] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
    finally:
        conn.close()


def _make_db(path, script):
    conn = sqlite3.connect(path)
    conn.executescript(script)
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def legacy_db(tmp_path):
    """Unversioned file with one episode, one archived note and a task."""
    return _make_db(str(tmp_path / "legacy.db"), LEGACY_DDL + f"""
        INSERT INTO episodes (content, context, tags, timestamp, session_id)
        VALUES ('Fixed race in queue', 'ctx', '["bug","concurrency"]', {T0}, 's1');
        INSERT INTO project_notes
            (title, content, category, importance, active, created_at, updated_at)
        VALUES ('Old API', 'Deprecated endpoints', 'convention', 'high', 0,
                {T0}, {T0 + 1000});
        INSERT INTO tasks (title) VALUES ('write docs');
    """)


# ---------------------------------------------------------------------------
# Fresh file
# ---------------------------------------------------------------------------


class TestFreshInit:
    def test_version_stamped(self, tmp_path):
        with MemoryStore(str(tmp_path / "m.db")) as s:
            info = s.get_version_info()
        assert info.current == schema.SCHEMA_VERSION == 4
        assert info.match

    def test_current_objects_only(self, tmp_path):
        path = str(tmp_path / "m.db")
        MemoryStore(path).close()
        tables = _tables(path)
        assert {"memories", "memories_fts", "schema_version"} <= tables
        assert not tables & set(schema.LEGACY_RELATIONS)

    def test_open_or_init_on_raw_connection(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        conn.row_factory = sqlite3.Row
        assert schema.is_fresh(conn)
        assert schema.open_or_init(conn) == schema.SCHEMA_VERSION
        assert schema.read_version(conn) == schema.SCHEMA_VERSION
        assert not schema.is_fresh(conn)
        conn.close()

    def test_indexes_created(self):
        with MemoryStore(":memory:") as s:
            ddl = s.get_database_schema()
        for name in (
            "idx_memories_importance", "idx_memories_session",
            "idx_memories_created", "idx_memories_updated",
        ):
            assert f"-- index: {name}" in ddl

    def test_reopen_current_is_noop(self, tmp_path):
        path = str(tmp_path / "m.db")
        with MemoryStore(path) as s:
            s.remember("keep me")
        with MemoryStore(path) as s:
            assert s.count() == 1
            assert s.get_version_info().current == 4


# ---------------------------------------------------------------------------
# Legacy migration
# ---------------------------------------------------------------------------


class TestLegacyMigration:
    def test_event_and_archived_note(self, legacy_db):
        with MemoryStore(legacy_db) as s:
            memories = {m.content: m for m in s.get_all_memories()}
            assert len(memories) == 2
            assert s.get_version_info().current == 4

        episode = memories["Fixed race in queue"]
        assert episode.tags == ["bug", "concurrency"]
        assert episode.importance == "normal"
        assert episode.context == "ctx"
        assert episode.session_id == "s1"
        assert episode.created_at == episode.updated_at == T0
        assert episode.last_accessed == T0

        note = memories["Old API\n\nDeprecated endpoints"]
        assert note.tags == ["convention", "archived"]
        assert note.importance == "high"
        assert note.context is None
        assert note.created_at == T0
        assert note.updated_at == T0 + 1000

    def test_legacy_relations_gone(self, legacy_db):
        MemoryStore(legacy_db).close()
        tables = _tables(legacy_db)
        assert not tables & set(schema.LEGACY_RELATIONS)
        assert "memories" in tables

    def test_folded_rows_are_searchable(self, legacy_db):
        with MemoryStore(legacy_db) as s:
            assert [m.content for m in s.search("race")] == ["Fixed race in queue"]
            assert s.find_index_drift().clean

    def test_active_note_not_archived(self, tmp_path):
        path = _make_db(str(tmp_path / "n.db"), LEGACY_DDL + f"""
            INSERT INTO project_notes
                (title, content, category, importance, active, created_at, updated_at)
            VALUES ('Style', 'Use black', 'workflow', 'bogus', 1, {T0}, {T0});
        """)
        with MemoryStore(path) as s:
            (m,) = s.get_all_memories()
        assert m.tags == ["workflow"]
        assert m.importance == "normal"

    def test_kv_folding(self, tmp_path):
        path = _make_db(str(tmp_path / "kv.db"), LEGACY_DDL + f"""
            INSERT INTO kv (key, value, created_at, updated_at)
            VALUES ('python', '3.12', {T0}, {T0 + 5});
        """)
        with MemoryStore(path) as s:
            (m,) = s.get_all_memories()
        assert m.content == "python: 3.12"
        assert m.tags == ["kv", "python"]
        assert m.importance == "normal"
        assert m.updated_at == T0 + 5

    def test_null_episode_tags_stay_empty(self, tmp_path):
        path = _make_db(str(tmp_path / "e.db"), LEGACY_DDL + f"""
            INSERT INTO episodes (content, timestamp) VALUES ('bare', {T0});
        """)
        with MemoryStore(path) as s:
            (m,) = s.get_all_memories()
            raw = s._conn.execute("SELECT tags FROM memories").fetchone()[0]
        assert m.tags == []
        assert raw is None

    def test_v3_last_accessed_carried(self, tmp_path):
        path = _make_db(str(tmp_path / "v3.db"), LEGACY_DDL + f"""
            ALTER TABLE episodes ADD COLUMN last_accessed INTEGER;
            ALTER TABLE project_notes ADD COLUMN last_accessed INTEGER;
            ALTER TABLE kv ADD COLUMN last_accessed INTEGER;
            DROP TABLE tasks;
            CREATE TABLE memory_index (id INTEGER PRIMARY KEY, title TEXT);
            CREATE TABLE schema_version (
                id INTEGER PRIMARY KEY DEFAULT 1 CHECK (id = 1),
                version INTEGER NOT NULL
            );
            INSERT INTO schema_version (id, version) VALUES (1, 3);
            INSERT INTO episodes (content, timestamp, last_accessed)
            VALUES ('seen later', {T0}, {T0 + 777});
        """)
        with MemoryStore(path) as s:
            (m,) = s.get_all_memories()
            assert s.get_version_info().current == 4
        assert m.last_accessed == T0 + 777
        assert "memory_index" not in _tables(path)

    def test_reopen_does_not_fold_twice(self, legacy_db):
        MemoryStore(legacy_db).close()
        with MemoryStore(legacy_db) as s:
            assert s.count() == 2

    def test_migration_steps_are_idempotent(self, legacy_db):
        conn = sqlite3.connect(legacy_db, isolation_level=None)
        conn.row_factory = sqlite3.Row
        schema.run_migrations(conn, 0)
        schema.run_migrations(conn, 0)
        assert conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0] == 2
        conn.close()


# ---------------------------------------------------------------------------
# Cleanup and failure
# ---------------------------------------------------------------------------


class TestCleanupAndFailure:
    def test_stale_legacy_dropped_on_current_file(self, tmp_path):
        path = str(tmp_path / "dirty.db")
        MemoryStore(path).close()
        _make_db(path, "CREATE TABLE tasks (id INTEGER); CREATE TABLE kv (key TEXT);")
        MemoryStore(path).close()
        assert not _tables(path) & set(schema.LEGACY_RELATIONS)

    def test_failed_migration_rolls_back(self, tmp_path):
        # episodes without a timestamp column cannot be folded
        path = _make_db(str(tmp_path / "broken.db"), """
            CREATE TABLE episodes (id INTEGER PRIMARY KEY, content TEXT NOT NULL);
            INSERT INTO episodes (content) VALUES ('orphan');
            CREATE TABLE tasks (id INTEGER PRIMARY KEY);
        """)
        with pytest.raises(MigrationError) as excinfo:
            MemoryStore(path)
        assert excinfo.value.from_version == 0
        assert excinfo.value.to_version == 4

        tables = _tables(path)
        assert "episodes" in tables
        assert "tasks" in tables
        assert "memories" not in tables
        assert "schema_version" not in tables

    def test_newer_file_refused(self, tmp_path):
        path = str(tmp_path / "future.db")
        MemoryStore(path).close()
        _make_db(path, "UPDATE schema_version SET version = 99;")
        with pytest.raises(MigrationError, match="newer"):
            MemoryStore(path)


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


class TestIntrospection:
    def test_schema_dump_format(self):
        with MemoryStore(":memory:") as s:
            ddl = s.get_database_schema()
        assert "CREATE TABLE" in ddl
        assert "-- table: memories\nCREATE TABLE" in ddl
        assert "-- trigger: memories_fts_au" in ddl
        blocks = ddl.split("\n\n-- ")
        assert all(b.rstrip().endswith(";") for b in blocks)

    def test_schema_dump_ordered_by_type_then_name(self):
        with MemoryStore(":memory:") as s:
            ddl = s.get_database_schema()
        headers = [line[3:] for line in ddl.splitlines() if line.startswith("-- ")]
        pairs = [tuple(h.split(": ", 1)) for h in headers]
        assert pairs == sorted(pairs)
        assert pairs[0][0] == "index"

    def test_empty_database(self):
        conn = sqlite3.connect(":memory:")
        assert schema.get_database_schema(conn) == "No schema objects found."
        info = schema.get_version_info(conn)
        assert info.current is None
        assert info.shipped == 4
        assert not info.match
        conn.close()
