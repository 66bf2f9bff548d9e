"""
Tests for the factctl CLI via subprocess.

Every test runs the real entry point (`python -m factctl.cli`) against a
temporary workspace so nothing touches the developer machine.
"""

import json
import os
import subprocess
import sys

import pytest

PYTHON = sys.executable
CLI = [PYTHON, "-m", "factctl.cli"]


def run(args, *, env=None):
    """Run a factctl CLI command and return CompletedProcess."""
    merged_env = {
        k: v for k, v in os.environ.items()
        if k not in ("FACTCTL_DB", "FACTCTL_SKILLS_DIR")
    }
    merged_env.update(env or {})
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        timeout=30,
    )


@pytest.fixture
def db(tmp_path):
    """Create an initialized, seeded workspace and return the DB path."""
    target = tmp_path / "ws"
    r = run(["init", str(target), "-q"])
    assert r.returncode == 0, f"init failed: {r.stderr}"
    return str(target / "knowledge.db")


def run_json(args):
    r = run(args + ["--json"])
    assert r.returncode == 0, r.stderr
    return json.loads(r.stdout)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_workspace(self, tmp_path):
        target = tmp_path / "ws"
        r = run(["init", str(target)])
        assert r.returncode == 0
        assert (target / "knowledge.db").is_file()
        assert (target / ".gitignore").is_file()
        assert (target / "skills" / "factctl-quickstart.md").is_file()
        assert "export FACTCTL_DB" in r.stdout

    def test_idempotent(self, db, tmp_path):
        r = run(["init", str(tmp_path / "ws")])
        assert r.returncode == 0
        assert "exists" in r.stderr
        assert "already current" in r.stderr

    def test_no_seed(self, tmp_path):
        target = tmp_path / "bare"
        assert run(["init", str(target), "--no-seed", "-q"]).returncode == 0
        stats = run_json(["stats", "--db", str(target / "knowledge.db")])
        assert stats["seed_version"] == 0
        assert stats["facts"] == 0

    def test_quiet(self, tmp_path):
        r = run(["init", str(tmp_path / "q"), "-q"])
        assert r.stderr == ""


# ---------------------------------------------------------------------------
# seed
# ---------------------------------------------------------------------------


class TestSeed:
    def test_already_applied(self, db):
        r = run(["seed", "--db", db])
        assert r.returncode == 0
        assert "already applied" in r.stdout

    def test_force(self, db):
        data = run_json(["seed", "--db", db, "--force"])
        assert data["applied"] is True
        assert data["facts"]["skipped"] == 8

    def test_manifest(self, db, tmp_path):
        p = tmp_path / "seed.json"
        p.write_text(json.dumps({
            "version": 5,
            "facts": [{"content": "Builds use make", "system_id": "acme:fact:make"}],
        }), encoding="utf-8")
        r = run(["seed", "--db", db, "--manifest", str(p)])
        assert r.returncode == 0
        assert "Seed v5 applied" in r.stdout
        assert run_json(["stats", "--db", db])["seed_version"] == 5

    def test_bad_manifest(self, db, tmp_path):
        p = tmp_path / "bad.json"
        p.write_text('{"version": 0}', encoding="utf-8")
        r = run(["seed", "--db", db, "--manifest", str(p)])
        assert r.returncode == 1
        assert "cannot load manifest" in r.stderr


# ---------------------------------------------------------------------------
# stale, classify, expand
# ---------------------------------------------------------------------------


class TestStale:
    def test_fresh_workspace(self, db):
        r = run(["stale", "--db", db])
        assert r.returncode == 0
        assert "Total: 0" in r.stdout

    def test_json(self, db):
        data = run_json(["stale", "--db", db, "--max-age-hours", "24"])
        assert data["max_age_hours"] == 24
        assert data["summary"]["total_stale"] == 0


class TestReport:
    def test_markdown(self, db):
        r = run(["report", "--db", db])
        assert r.returncode == 0
        assert r.stdout.startswith("# Knowledge Base Maintenance Report")
        assert "## All Clear" in r.stdout

    def test_lists_task_runs(self, db):
        run(["maintain", "--db", db, "--task", "prune_tags"])
        data = run_json(["report", "--db", db, "--max-age-hours", "48"])
        assert data["max_age_hours"] == 48
        assert "Stale threshold: 48.0 hours (2 days)" in data["markdown"]
        assert "prune_tags" in data["tasks"]
        assert "## Maintenance Tasks" in data["markdown"]


class TestClassify:
    def test_text(self, db):
        r = run(["classify", "README.md", "--db", db])
        assert r.returncode == 0
        assert r.stdout.strip() == "README.md\tdocumentation\t72h"

    def test_json(self, db):
        data = run_json(["classify", "package-lock.json", "dist/a.min.js", "--db", db])
        assert [row["threshold_hours"] for row in data["results"]] == [168, 1]


class TestExpand:
    def test_no_relations(self, db):
        r = run(["expand", "db", "api", "--db", db])
        assert r.returncode == 0
        assert r.stdout.split() == ["db", "api"]


# ---------------------------------------------------------------------------
# maintain, stats
# ---------------------------------------------------------------------------


class TestMaintain:
    def test_all_then_nothing_due(self, db):
        data = run_json(["maintain", "--db", db, "--all"])
        assert [r["task"] for r in data["results"]] == [
            "auto_verify", "expire_facts", "prune_tags", "hard_delete", "staleness_sweep",
        ]
        assert data["results"][0]["status"] == "skipped"
        r = run(["maintain", "--db", db])
        assert r.returncode == 0
        assert "No tasks due" in r.stdout

    def test_single_task(self, db):
        data = run_json(["maintain", "--db", db, "--task", "hard_delete"])
        assert [r["task"] for r in data["results"]] == ["hard_delete"]

    def test_unknown_task(self, db):
        r = run(["maintain", "--db", db, "--task", "vacuum"])
        assert r.returncode == 1
        assert "unknown task" in r.stderr


class TestStats:
    def test_json(self, db):
        data = run_json(["stats", "--db", db])
        assert data["status"] == "ok"
        assert data["tags"] == 4
        assert data["facts"] == 8
        assert data["skills"] == 1

    def test_text(self, db):
        r = run(["stats", "--db", db])
        assert "Knowledge Store Statistics" in r.stdout

    def test_env_db(self, db):
        r = run(["stats", "--json"], env={"FACTCTL_DB": db})
        assert json.loads(r.stdout)["facts"] == 8


class TestEntry:
    def test_no_command(self):
        r = run([])
        assert r.returncode == 1
