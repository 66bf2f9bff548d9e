"""
Resource Category Classification

Infers freshness categories for a resource URI or path from pattern rules.

Each category rule has positive patterns (``ends_with``, ``includes``; any
match is enough), URI-level negatives (``not_ends_with``, ``not_includes``;
any match rejects the category) and a category-level negative
(``not_tagged``; the category is dropped when another listed category also
matched). A rule with no positive pattern matches everything.

Classification runs in two passes so that category-level exclusion never
depends on the order rules are declared in:

    pass 1: URI patterns only, over every category except "default"
    pass 2: drop categories whose not_tagged set meets the pass-1 result

An empty result becomes {"default"}. Matching is case-insensitive.

Public API:
    CategoryRule
    CATEGORY_RULES
    CATEGORIES
    classify(uri, rules=CATEGORY_RULES) -> set[str]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Set, Tuple

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"


@dataclass(frozen=True)
class CategoryRule:
    """URI pattern rule for one freshness category."""
    category: str
    ends_with: Tuple[str, ...] = ()
    includes: Tuple[str, ...] = ()
    not_ends_with: Tuple[str, ...] = ()
    not_includes: Tuple[str, ...] = ()
    not_tagged: Tuple[str, ...] = ()

    @property
    def catch_all(self) -> bool:
        return not self.ends_with and not self.includes

    def matches_uri(self, lowered: str) -> bool:
        """Pass-1 test against an already lower-cased URI."""
        if any(lowered.endswith(p) for p in self.not_ends_with):
            return False
        if any(p in lowered for p in self.not_includes):
            return False
        if self.catch_all:
            return True
        return (
            any(lowered.endswith(p) for p in self.ends_with)
            or any(p in lowered for p in self.includes)
        )


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

CATEGORY_RULES: Tuple[CategoryRule, ...] = (
    CategoryRule(
        "lockFiles",
        ends_with=(".lock", ".lockb"),
        includes=(
            "package-lock.json", "yarn.lock", "pnpm-lock.yaml", "bun.lockb",
            "bun.lock", "gemfile.lock", "pipfile.lock", "poetry.lock",
            "cargo.lock", "go.sum", "composer.lock", "podfile.lock",
            "pubspec.lock", "mix.lock", "flake.lock", "packages.lock.json",
            "shrinkwrap.json",
        ),
    ),
    CategoryRule(
        "database",
        ends_with=(".sql", ".sqlite", ".sqlite3", ".db", ".prisma", ".dump"),
        includes=(
            "/migrations/", "/db/migrations/", "/database/migrations/",
            "/prisma/migrations/", "/drizzle/", "/seeds/", "/seeders/",
            "/fixtures/", "/sql/", "schema.prisma",
        ),
        not_includes=("__fixtures__", "__mocks__", "/test", "/spec"),
    ),
    CategoryRule(
        "tests",
        ends_with=(
            ".test.ts", ".test.js", ".test.tsx", ".test.jsx", ".test.mjs",
            ".test.cjs", ".spec.ts", ".spec.js", ".spec.tsx", ".spec.jsx",
            ".spec.mjs", ".spec.cjs", "_test.py", "_test.go", "_test.rb",
            "_spec.rb",
        ),
        includes=(
            "test_", "/__tests__/", "/test/", "/tests/", "/spec/",
            "/__mocks__/", "/__fixtures__/", "/testdata/", "/testing/",
            "/fixtures/", "conftest.py", ".snap",
        ),
    ),
    CategoryRule(
        "infrastructure",
        ends_with=(".tf", ".tfvars", ".hcl"),
        includes=(
            "dockerfile", "docker-compose", "compose.yaml", "compose.yml",
            ".dockerignore", "/k8s/", "/kubernetes/", "/manifests/",
            "/charts/", "chart.yaml", "values.yaml", "values-",
            "kustomization.yaml", ".github/workflows/", ".gitlab-ci",
            ".circleci/", ".buildkite/", "jenkinsfile", ".travis.yml",
            "azure-pipelines", "bitbucket-pipelines", ".drone.yml",
            "/playbooks/", "/roles/", "ansible.cfg", "inventory",
            "/terraform/",
        ),
    ),
    CategoryRule(
        "apiSchemas",
        ends_with=(
            ".graphql", ".gql", ".proto", ".thrift", ".wsdl", ".raml", ".xsd",
            ".openapi.yaml", ".openapi.json", ".swagger.yaml",
            ".swagger.json", ".asyncapi.yaml", ".asyncapi.json",
        ),
        includes=(
            "/graphql/", "/proto/", "/protos/", "/idl/", "/contracts/",
            "openapi.yaml", "openapi.json", "swagger.yaml", "swagger.json",
        ),
        not_includes=("prisma", "drizzle", "/migrations/", "/db/"),
    ),
    CategoryRule(
        "scripts",
        ends_with=(
            ".sh", ".bash", ".zsh", ".fish", ".ps1", ".psm1", ".psd1",
            ".bat", ".cmd", ".awk", ".sed", ".mk",
        ),
        includes=(
            "/scripts/", "/bin/", "/tools/", "/hack/", "/build-scripts/",
            "/devtools/", ".husky/", "makefile", "gnumakefile", "justfile",
            "taskfile", "rakefile", "jakefile",
        ),
    ),
    CategoryRule(
        "generatedFiles",
        ends_with=(
            ".min.js", ".min.css", ".min.html", ".bundle.js", ".bundle.css",
            ".map", ".js.map", ".css.map", ".pyc", ".pyo", ".class", ".o",
            ".obj", ".so", ".dylib", ".dll", ".pb.go", ".pb.js", ".pb.ts",
        ),
        includes=(
            "/dist/", "/build/", "/out/", "/output/", "/target/",
            "/node_modules/", "/__pycache__/", "/.pytest_cache/",
            "/coverage/", "/.next/", "/.nuxt/", "/.svelte-kit/", "/.vercel/",
            "/.netlify/", "/.gradle/", "_generated.", ".gen.", ".auto.",
        ),
    ),
    CategoryRule(
        "assets",
        ends_with=(
            ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".icns",
            ".webp", ".avif", ".bmp", ".tiff", ".tif", ".psd", ".ai",
            ".woff", ".woff2", ".ttf", ".otf", ".eot", ".mp3", ".wav",
            ".ogg", ".flac", ".aac", ".mp4", ".webm", ".mov", ".avi",
            ".mkv", ".pdf",
        ),
        includes=(
            "/assets/", "/images/", "/img/", "/fonts/", "/media/",
            "/static/", "/public/",
        ),
    ),
    CategoryRule(
        "documentation",
        ends_with=(".md", ".markdown", ".mdx", ".rst", ".adoc", ".asciidoc"),
        includes=(
            "/docs/", "/doc/", "/documentation/", "readme", "changelog",
            "contributing", "license", "authors", "history", "news",
        ),
    ),
    CategoryRule(
        "configFiles",
        ends_with=(".toml", ".ini", ".cfg", ".conf", ".properties"),
        includes=(
            "/config/", "/configs/", "/.config/", ".env", "package.json",
            "tsconfig", "jsconfig", ".eslintrc", ".prettierrc", "biome.json",
            ".babelrc", "babel.config", "vite.config", "webpack.config",
            "rollup.config", "jest.config", "vitest.config", ".npmrc",
            ".yarnrc", "turbo.json", "nx.json", ".editorconfig",
            "pyproject.toml", "setup.py", "setup.cfg", "requirements.txt",
            "pipfile", "pytest.ini", "tox.ini", ".flake8", "mypy.ini",
            "gemfile", ".rubocop", "go.mod", "cargo.toml", "rustfmt.toml",
            ".csproj", ".sln", "nuget.config", "appsettings", "pom.xml",
            "build.gradle", "settings.gradle", "gradle.properties",
            "composer.json", "phpunit.xml",
        ),
        not_tagged=("lockFiles",),
    ),
    CategoryRule(
        "sourceCode",
        ends_with=(
            ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".mts", ".cts",
            ".py", ".pyi", ".pyx", ".pxd", ".rs", ".go", ".c", ".cc", ".cpp",
            ".cxx", ".h", ".hpp", ".hxx", ".java", ".kt", ".kts", ".scala",
            ".groovy", ".clj", ".cljs", ".cs", ".fs", ".vb", ".rb", ".erb",
            ".php", ".swift", ".m", ".mm", ".hs", ".ml", ".mli", ".elm",
            ".ex", ".exs", ".erl", ".hrl", ".r", ".jl", ".lua", ".pl", ".pm",
            ".dart", ".v", ".vh", ".sv", ".vhd", ".vhdl", ".nim", ".zig",
            ".d", ".cr", ".rkt", ".s", ".asm", ".vue", ".svelte", ".astro",
        ),
        not_tagged=("tests", "scripts", "database", "generatedFiles"),
    ),
    CategoryRule(DEFAULT_CATEGORY),
)

CATEGORIES: Tuple[str, ...] = tuple(rule.category for rule in CATEGORY_RULES)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify(uri: str, rules: Iterable[CategoryRule] = CATEGORY_RULES) -> Set[str]:
    """Return the set of freshness categories a URI belongs to.

    Args:
        uri: Resource URI or file path.
        rules: Rule table; any iteration order gives the same result.

    Returns:
        Non-empty set of category names; {"default"} when nothing matched.
    """
    rules = [r for r in rules if r.category != DEFAULT_CATEGORY]
    lowered = uri.lower()

    matched = {r.category for r in rules if r.matches_uri(lowered)}
    result = {
        r.category for r in rules
        if r.category in matched and not matched.intersection(r.not_tagged)
    }

    if not result:
        return {DEFAULT_CATEGORY}
    logger.debug("Classified %s -> %s", uri, sorted(result))
    return result
