"""
Tests for the memvault CLI via subprocess.

Every test runs the real entry point (`python -m memvault.cli`) against a
temporary SQLite file.

Author: memvault contributors
"""

import json
import os
import subprocess
import sys

import pytest


PYTHON = sys.executable
CLI = [PYTHON, "-m", "memvault.cli"]


def run(args, *, env=None, stdin=None):
    """Run a memvault CLI command and return CompletedProcess."""
    merged_env = {k: v for k, v in os.environ.items() if not k.startswith("MEMVAULT_")}
    merged_env.update(env or {})
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        input=stdin,
        timeout=30,
    )


@pytest.fixture
def db(tmp_path):
    return str(tmp_path / "vault" / "memvault.db")


@pytest.fixture
def populated_db(db):
    for args in (
        ["Race condition in job queue", "--tags", "bug,queue"],
        ["Use RS256 for JWT", "--tags", "decision", "--importance", "critical"],
        ["Format with black", "--tags", "workflow", "--importance", "low"],
    ):
        r = run(["remember", *args, "--db", db, "-q"])
        assert r.returncode == 0, r.stderr
    return db


class TestRemember:
    def test_prints_id(self, db):
        r = run(["remember", "first memory", "--db", db])
        assert r.returncode == 0
        assert r.stdout.strip() == "1"

    def test_json(self, db):
        r = run(["remember", "x y z", "--db", db, "--json"])
        assert json.loads(r.stdout) == {"id": 1, "status": "ok"}

    def test_stdin(self, db):
        r = run(["remember", "-", "--db", db], stdin="from stdin\n")
        assert r.returncode == 0
        shown = json.loads(run(["show", "1", "--db", db, "--json"]).stdout)
        assert shown["content"] == "from stdin\n"

    def test_empty_content_exit_1(self, db):
        r = run(["remember", "   ", "--db", db])
        assert r.returncode == 1
        assert "content" in r.stderr

    def test_session_env(self, db):
        run(["remember", "tagged", "--db", db], env={"MEMVAULT_SESSION": "sess-42"})
        shown = json.loads(run(["show", "1", "--db", db, "--json"]).stdout)
        assert shown["session_id"] == "sess-42"

    def test_db_env(self, db):
        r = run(["remember", "via env"], env={"MEMVAULT_DB": db})
        assert r.returncode == 0
        assert os.path.exists(db)


class TestSearch:
    def test_query(self, populated_db):
        r = run(["search", "queue", "--db", populated_db, "--json"])
        assert r.returncode == 0
        results = json.loads(r.stdout)
        assert [m["content"] for m in results] == ["Race condition in job queue"]

    def test_no_query_orders_by_importance(self, populated_db):
        results = json.loads(run(["search", "--db", populated_db, "--json"]).stdout)
        assert [m["importance"] for m in results] == ["critical", "normal", "low"]

    def test_tag_filter(self, populated_db):
        results = json.loads(
            run(["search", "--tags", "workflow,decision", "--db", populated_db, "--json"]).stdout
        )
        assert len(results) == 2

    def test_reserved_chars(self, populated_db):
        r = run(["search", "(){}[]", "--db", populated_db, "--json"])
        assert r.returncode == 0
        assert len(json.loads(r.stdout)) == 3

    def test_no_results(self, populated_db):
        r = run(["search", "zeppelin", "--db", populated_db])
        assert r.returncode == 0
        assert "No results" in r.stderr

    def test_bad_limit(self, populated_db):
        r = run(["search", "-k", "0", "--db", populated_db])
        assert r.returncode == 1

    def test_human_output(self, populated_db):
        r = run(["search", "JWT", "--db", populated_db])
        assert "Found 1 memory" in r.stdout
        assert "[CRITICAL]" in r.stdout


class TestShowUpdateForget:
    def test_show_missing(self, db):
        r = run(["show", "99", "--db", db])
        assert r.returncode == 1
        assert "not found" in r.stderr

    def test_show_human(self, populated_db):
        r = run(["show", "2", "--db", populated_db])
        assert r.returncode == 0
        assert "Memory #2" in r.stdout
        assert "Use RS256 for JWT" in r.stdout

    def test_update(self, populated_db):
        r = run(["update", "1", "--importance", "high", "--db", populated_db, "-q"])
        assert r.returncode == 0
        shown = json.loads(run(["show", "1", "--db", populated_db, "--json"]).stdout)
        assert shown["importance"] == "high"
        assert shown["tags"] == ["bug", "queue"]

    def test_update_clears_context(self, db):
        run(["remember", "x", "--context", "setup", "--db", db, "-q"])
        r = run(["update", "1", "--context", "", "--db", db, "-q"])
        assert r.returncode == 0
        shown = json.loads(run(["show", "1", "--db", db, "--json"]).stdout)
        assert shown["context"] is None

    def test_update_missing(self, populated_db):
        r = run(["update", "99", "--content", "x", "--db", populated_db])
        assert r.returncode == 1

    def test_forget_many(self, populated_db):
        r = run(["forget", "1", "2", "77", "--db", populated_db, "--json"])
        assert r.returncode == 0
        assert json.loads(r.stdout) == {"removed": 2, "requested": 3}

    def test_forget_missing_is_noop(self, populated_db):
        r = run(["forget", "77", "--db", populated_db])
        assert r.returncode == 0


class TestMaintenance:
    def test_context(self, populated_db):
        r = run(["context", "--writes", "2", "--db", populated_db])
        assert r.returncode == 0
        assert r.stdout.startswith("<memory>")
        assert "[CRITICAL] Use RS256 for JWT" in r.stdout
        assert "- issues (1)" in r.stdout

    def test_reindex(self, populated_db):
        r = run(["reindex", "--db", populated_db, "--json"])
        assert json.loads(r.stdout) == {"indexed": 3, "status": "ok"}

    def test_reindex_check_clean(self, populated_db):
        r = run(["reindex", "--check", "--db", populated_db])
        assert r.returncode == 0
        assert "in sync" in r.stdout

    def test_reindex_tokenizer_preset(self, populated_db):
        run(["reindex", "--fts-tokenizer", "en", "--db", populated_db, "-q"])
        stats = json.loads(run(["stats", "--db", populated_db, "--json"]).stdout)
        assert stats["fts_tokenizer"] == "porter unicode61 remove_diacritics 2"

    def test_schema(self, populated_db):
        r = run(["schema", "--db", populated_db])
        assert "CREATE TABLE" in r.stdout
        assert "memories" in r.stdout

    def test_version(self, db):
        r = run(["version", "--db", db, "--json"])
        assert json.loads(r.stdout) == {"current": 4, "shipped": 4, "match": True}

    def test_stats(self, populated_db):
        stats = json.loads(run(["stats", "--db", populated_db, "--json"]).stdout)
        assert stats["status"] == "ok"
        assert stats["total"] == 3
        assert stats["by_category"]["decisions"] == 1

    def test_prune_dry_run(self, db):
        run(["remember", "x", "--db", db])
        r = run(["prune", "--db", db, "--json"])
        analysis = json.loads(r.stdout)
        assert analysis["stats"]["total_candidates"] == 1
        assert analysis["deleted"] == 0

    def test_prune_apply(self, db):
        run(["remember", "x", "--db", db])
        run(["remember", "a longer memory worth keeping", "--db", db])
        r = run(["prune", "--apply", "--db", db])
        assert r.returncode == 0
        assert "Deleted 1 memory" in r.stderr


class TestGlobal:
    def test_no_command(self):
        r = run([])
        assert r.returncode == 1

    def test_config_file(self, tmp_path):
        cfg = tmp_path / "config.json"
        db = str(tmp_path / "from-config.db")
        cfg.write_text(json.dumps({"store": {"db_path": db}}), encoding="utf-8")
        r = run(["remember", "configured", "--config", str(cfg)])
        assert r.returncode == 0
        assert os.path.exists(db)

    def test_invalid_config_exit_1(self, tmp_path, db):
        cfg = tmp_path / "bad.json"
        cfg.write_text(json.dumps({"search": {"max_limit": 0}}), encoding="utf-8")
        r = run(["stats", "--db", db, "--config", str(cfg)])
        assert r.returncode == 1
        assert "search.max_limit" in r.stderr

    def test_flags_before_command(self, populated_db):
        r = run(["--db", populated_db, "--json", "stats"])
        assert json.loads(r.stdout)["total"] == 3
