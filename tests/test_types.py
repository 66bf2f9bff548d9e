"""
Tests for factctl.types — digest, three-way reconciliation, row types.
"""

import json

import pytest

from factctl.types import (
    Fact,
    SearchResult,
    Skill,
    SkillResourceLink,
    Tag,
    _parse_iso,
    content_hash,
    reconcile,
)


class TestContentHash:
    def test_prefixed_sha256(self):
        h = content_hash("hello")
        assert h.startswith("sha256:")
        assert len(h) == len("sha256:") + 64

    def test_known_digest(self):
        # sha256("") is a fixed, documented value
        assert content_hash("") == (
            "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_deterministic(self):
        assert content_hash("same text") == content_hash("same text")

    def test_no_normalization(self):
        assert content_hash("a b") != content_hash("a  b")
        assert content_hash("line\n") != content_hash("line")
        assert content_hash("Case") != content_hash("case")

    def test_unicode(self):
        assert content_hash("café") != content_hash("cafe")


class TestReconcile:
    def test_unmodified_allows_update(self):
        h0, h1 = content_hash("F"), content_hash("F-updated")
        assert reconcile(h0, h0, h1) == "unmodified"

    def test_user_modified_is_skipped(self):
        h0, h1, h2 = content_hash("F"), content_hash("F-updated"), content_hash("F-edited")
        assert reconcile(h0, h2, h1) == "modified"

    def test_user_matching_new_value_is_still_modified(self):
        h0, h1 = content_hash("F"), content_hash("F-updated")
        # live already equals the new content, but not what the system wrote
        assert reconcile(h0, h1, h1) == "modified"

    def test_no_stored_hash_is_modified(self):
        h = content_hash("x")
        assert reconcile(None, h, h) == "modified"


class TestFact:
    def test_defaults(self):
        f = Fact(content="x")
        assert f.verified is False
        assert f.tags == []
        assert f.deleted_at is None

    def test_invalid_source_type(self):
        with pytest.raises(ValueError, match="Invalid source type"):
            Fact(content="x", source_type="rumor")

    def test_user_modified(self):
        f = Fact(content="edited", system_hash=content_hash("original"))
        assert f.user_modified is True
        f2 = Fact(content="original", system_hash=content_hash("original"))
        assert f2.user_modified is False

    def test_user_content_never_modified(self):
        assert Fact(content="mine").user_modified is False

    def test_to_dict_json_safe(self):
        d = Fact(content="x", tags=["a"]).to_dict()
        json.dumps(d)
        assert d["content"] == "x"
        assert d["tags"] == ["a"]


class TestSkill:
    def test_to_json(self):
        s = Skill(name="deploy", title="Deploy")
        parsed = json.loads(s.to_json())
        assert parsed["name"] == "deploy"
        assert parsed["needs_review"] is False


class TestSkillResourceLink:
    def test_stale_when_hash_drifts(self):
        link = SkillResourceLink(snapshot_hash_at_link="sha256:a", current_hash="sha256:b")
        assert link.stale is True
        assert link.to_dict()["stale"] is True

    def test_fresh_when_equal(self):
        link = SkillResourceLink(snapshot_hash_at_link="sha256:a", current_hash="sha256:a")
        assert link.stale is False

    def test_both_missing_is_fresh(self):
        assert SkillResourceLink().stale is False


class TestSearchResult:
    def test_suggestions_only_when_empty(self):
        empty = SearchResult(items=[], suggested_tags=["build"])
        assert empty.to_dict("facts") == {"facts": [], "suggested_tags": ["build"]}
        full = SearchResult(items=[Tag(name="x")], suggested_tags=["build"])
        assert "suggested_tags" not in full.to_dict()
        assert len(full) == 1

    def test_expanded_tags_included(self):
        r = SearchResult(items=[], expanded_tags=["db", "database"])
        assert r.to_dict()["expanded_tags"] == ["db", "database"]


class TestParseIso:
    def test_z_suffix(self):
        assert _parse_iso("2025-01-01T00:00:00Z").tzinfo is not None

    def test_sqlite_form(self):
        dt = _parse_iso("2025-01-01 12:30:00")
        assert dt.hour == 12
        assert dt.tzinfo is not None
