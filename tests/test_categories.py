"""
Tests for factctl.categories — two-pass URI classification.
"""

import random

import pytest

from factctl.categories import CATEGORIES, CATEGORY_RULES, CategoryRule, classify


class TestClassify:
    def test_lock_file(self):
        cats = classify("package-lock.json")
        assert "lockFiles" in cats
        assert "default" not in cats

    def test_lock_file_not_config(self):
        assert "configFiles" not in classify("Cargo.lock")

    def test_unknown_is_default_only(self):
        assert classify("random.unknown") == {"default"}

    @pytest.mark.parametrize("uri,expected", [
        ("src/app.ts", {"sourceCode"}),
        ("README.md", {"documentation"}),
        ("dist/app.min.js", {"generatedFiles"}),
        ("tests/test_app.py", {"tests"}),
        ("deploy/main.tf", {"infrastructure"}),
        ("api/service.proto", {"apiSchemas"}),
        ("logo.png", {"assets"}),
    ])
    def test_common_paths(self, uri, expected):
        assert classify(uri) == expected

    def test_case_insensitive(self):
        assert classify("SRC/APP.TS") == classify("src/app.ts")

    def test_test_file_excludes_source(self):
        cats = classify("src/widget.test.ts")
        assert "tests" in cats
        assert "sourceCode" not in cats

    def test_fixtures_exclude_source(self):
        cats = classify("/fixtures/app.ts")
        assert "sourceCode" not in cats
        assert "tests" in cats

    def test_database_negative_include(self):
        assert "database" not in classify("/test/data.sql")

    def test_default_always_last(self):
        assert CATEGORIES[-1] == "default"


class TestOrderIndependence:
    RULES = (
        CategoryRule("fixtures", includes=("/fixtures/",)),
        CategoryRule("sourceCode", ends_with=(".ts",), not_tagged=("fixtures",)),
    )

    def test_exclusion_either_order(self):
        forward = classify("/fixtures/app.ts", self.RULES)
        backward = classify("/fixtures/app.ts", tuple(reversed(self.RULES)))
        assert forward == backward == {"fixtures"}

    def test_builtin_table_shuffled(self):
        rules = list(CATEGORY_RULES)
        uris = ["src/a.ts", "scripts/build.sh", "/fixtures/x.ts", "package-lock.json",
                "docs/guide.md", "db/migrations/001.sql", "random.unknown"]
        expected = {u: classify(u) for u in uris}
        rng = random.Random(7)
        for _ in range(5):
            rng.shuffle(rules)
            for u in uris:
                assert classify(u, rules) == expected[u]


class TestCategoryRule:
    def test_catch_all(self):
        rule = CategoryRule("any")
        assert rule.catch_all is True
        assert rule.matches_uri("whatever")

    def test_catch_all_with_negative(self):
        rule = CategoryRule("any", not_ends_with=(".tmp",))
        assert not rule.matches_uri("x.tmp")
        assert rule.matches_uri("x.txt")

    def test_catch_all_in_table(self):
        rules = (CategoryRule("everything"),)
        assert classify("random.unknown", rules) == {"everything"}
