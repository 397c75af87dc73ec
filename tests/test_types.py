"""
Tests for memvault.types — Memory model, validators, tag serialization.

Author: memvault contributors
"""

import re

import pytest

from memvault.errors import ValidationError
from memvault.types import (
    IMPORTANCE_RANK,
    Memory,
    VersionInfo,
    dump_tags,
    generate_session_id,
    load_tags,
    now_ms,
    validate_importance,
    validate_tags,
)


class TestImportance:
    def test_total_order(self):
        assert (
            IMPORTANCE_RANK["critical"] > IMPORTANCE_RANK["high"]
            > IMPORTANCE_RANK["normal"] > IMPORTANCE_RANK["low"]
        )

    @pytest.mark.parametrize("level", ["low", "normal", "high", "critical"])
    def test_valid(self, level):
        assert validate_importance(level) == level

    @pytest.mark.parametrize("level", ["urgent", "", "HIGH", None])
    def test_invalid(self, level):
        with pytest.raises(ValidationError):
            validate_importance(level)

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_importance("bogus")


class TestTags:
    def test_order_preserved(self):
        assert validate_tags(["b", "a", "c"]) == ["b", "a", "c"]

    def test_tuple_accepted(self):
        assert validate_tags(("x",)) == ["x"]

    def test_string_rejected(self):
        with pytest.raises(ValidationError):
            validate_tags("decision")

    def test_non_string_element_rejected(self):
        with pytest.raises(ValidationError):
            validate_tags(["ok", 3])

    def test_dump_is_json_array(self):
        assert dump_tags(["a", "é"]) == '["a", "é"]'

    def test_load_round_trip(self):
        assert load_tags(dump_tags(["x", "y"])) == ["x", "y"]

    @pytest.mark.parametrize("raw", [None, "", "not json", '{"a": 1}', "42"])
    def test_load_malformed_is_empty(self, raw):
        assert load_tags(raw) == []

    def test_load_drops_non_strings(self):
        assert load_tags('["a", 1, null, "b"]') == ["a", "b"]


class TestMemory:
    def _row(self, **overrides):
        row = {
            "id": 1, "content": "first\nsecond", "tags": '["a"]',
            "importance": "high", "context": None, "session_id": "s",
            "created_at": 10, "updated_at": 20, "last_accessed": 30,
        }
        row.update(overrides)
        return row

    def test_from_row(self):
        m = Memory.from_row(self._row())
        assert m.id == 1
        assert m.tags == ["a"]
        assert m.importance == "high"
        assert m.last_accessed == 30

    def test_unknown_importance_reads_as_normal(self):
        assert Memory.from_row(self._row(importance="weird")).importance == "normal"

    def test_null_tags_read_as_empty(self):
        assert Memory.from_row(self._row(tags=None)).tags == []

    def test_first_line_skips_blank_lines(self):
        m = Memory(id=1, content="\n\n  Title here  \nbody")
        assert m.first_line == "Title here"

    def test_to_dict(self):
        d = Memory(id=3, content="x", tags=["t"]).to_dict()
        assert d["id"] == 3
        assert d["tags"] == ["t"]
        assert d["importance"] == "normal"


class TestHelpers:
    def test_session_id_format(self):
        sid = generate_session_id()
        assert re.fullmatch(r"\d+-[0-9a-z]{6}", sid)

    def test_now_ms_is_milliseconds(self):
        assert now_ms() > 1_600_000_000_000

    def test_version_info_match(self):
        assert VersionInfo(current=4, shipped=4).match
        assert not VersionInfo(current=None, shipped=4).match
        assert VersionInfo(current=3, shipped=4).to_dict() == {
            "current": 3, "shipped": 4, "match": False,
        }
