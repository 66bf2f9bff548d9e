"""
Tests for factctl.tags — synonym and hierarchy expansion, required tags.
"""

import pytest

from factctl.config import TagRelationsConfig
from factctl.tags import (
    expand_tags,
    expand_with_hierarchy,
    expand_with_synonyms,
    validate_required_tags,
)


@pytest.fixture
def relations():
    return TagRelationsConfig(
        synonyms={"db": "database", "js": "javascript", "pg": "postgres"},
        hierarchies={"postgres": "database", "mysql": "database", "pgvector": "postgres"},
    )


class TestSynonyms:
    def test_alias_adds_canonical(self):
        assert expand_with_synonyms(["db"], {"db": "database"}) == ["db", "database"]

    def test_canonical_adds_aliases(self):
        out = expand_with_synonyms(["database"], {"db": "database", "store": "database"})
        assert out == ["database", "db", "store"]

    def test_symmetry(self):
        syn = {"a": "b"}
        assert set(expand_tags(["a"], TagRelationsConfig(synonyms=syn))) >= {"a", "b"}
        assert set(expand_tags(["b"], TagRelationsConfig(synonyms=syn))) >= {"a", "b"}

    def test_chain_followed(self):
        out = expand_with_synonyms(["a"], {"a": "b", "b": "c"})
        assert set(out) == {"a", "b", "c"}

    def test_no_map(self):
        assert expand_with_synonyms(["x", "x"], {}) == ["x"]


class TestHierarchy:
    def test_parent_reaches_descendants(self):
        h = {"x": "p", "x2": "x"}
        assert set(expand_with_hierarchy(["p"], h)) == {"p", "x", "x2"}

    def test_child_never_reaches_parent(self):
        h = {"x": "p", "x2": "x"}
        out = expand_tags(["x2"], TagRelationsConfig(hierarchies=h))
        assert "x" not in out
        assert "p" not in out

    def test_cycle_terminates(self):
        h = {"a": "b", "b": "c", "c": "a"}
        assert set(expand_with_hierarchy(["a"], h)) == {"a", "b", "c"}

    def test_self_loop(self):
        assert expand_with_hierarchy(["a"], {"a": "a"}) == ["a"]


class TestExpandTags:
    def test_empty_input_is_empty(self, relations):
        assert expand_tags([], relations) == []
        assert expand_tags([""], relations) == []

    def test_requested_order_kept(self, relations):
        out = expand_tags(["js", "db"], relations)
        assert out[:2] == ["js", "db"]

    def test_synonym_then_hierarchy_then_synonym(self, relations):
        # db -> database (synonym) -> postgres, mysql (hierarchy) -> pg (synonym)
        out = expand_tags(["db"], relations)
        assert set(out) == {"db", "database", "postgres", "mysql", "pg", "pgvector"}

    def test_idempotent(self, relations):
        for tags in (["db"], ["pg"], ["js", "mysql"], ["unknown"]):
            once = expand_tags(tags, relations)
            assert expand_tags(once, relations) == once

    def test_no_relations(self):
        assert expand_tags(["a", "b"]) == ["a", "b"]

    def test_unknown_tag_passthrough(self, relations):
        assert expand_tags(["nothing-related"], relations) == ["nothing-related"]


class TestRequiredTags:
    def test_no_requirements(self):
        assert validate_required_tags("facts", ["a"], {}) == (True, [])

    def test_exact_missing(self):
        ok, missing = validate_required_tags("facts", ["a"], {"facts": ["a", "b"]})
        assert ok is False
        assert missing == ["b"]

    def test_prefix_pattern(self):
        required = {"resources": ["project:*"]}
        assert validate_required_tags("resources", ["project:api"], required) == (True, [])
        assert validate_required_tags("resources", ["api"], required) == (False, ["project:*"])

    def test_other_entity_unaffected(self):
        assert validate_required_tags("skills", [], {"facts": ["a"]}) == (True, [])
