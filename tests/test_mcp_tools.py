"""
Tests for factctl.mcp.tools — the 36 knowledge tools, called through a mock MCP.
"""

import io
import json

import pytest

from factctl.config import FactctlConfig, StoreConfig
from factctl.mcp.audit import AuditLogger
from factctl.store import KnowledgeStore


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


@pytest.fixture
def mcp_env(tmp_path):
    """Create store, config, audit sink, mock MCP, and register all tools."""
    db_path = str(tmp_path / "knowledge.db")
    config = FactctlConfig(store=StoreConfig(db_path=db_path))
    store = KnowledgeStore(db_path=db_path, skills_dir=str(tmp_path / "skills"))
    sink = io.StringIO()
    audit = AuditLogger(output=sink, db_path=db_path)
    mcp = MockMCP()

    from factctl.mcp.tools import register_knowledge_tools
    register_knowledge_tools(mcp, store, config, audit=audit)

    yield {
        "mcp": mcp,
        "store": store,
        "sink": sink,
        "db_path": db_path,
        "tmp_path": tmp_path,
    }
    store.close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    return [json.loads(line) for line in env["sink"].getvalue().splitlines()]


# ---------------------------------------------------------------------------
# Tool count
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_36_tools_registered(self, mcp_env):
        assert len(mcp_env["mcp"].tools) == 36

    def test_tool_names(self, mcp_env):
        assert set(mcp_env["mcp"].tools) == {
            "submit_facts", "search_facts", "verify_facts",
            "update_fact", "delete_facts", "restore_facts",
            "add_resources", "get_resource", "update_resource_snapshot",
            "mark_resources_refreshed", "classify_resource",
            "search_resources", "delete_resources", "restore_resources",
            "create_skill", "link_skill", "sync_skill", "get_skill", "search_skills",
            "update_skill", "register_skill", "mark_skill_reviewed", "delete_skills",
            "get_knowledge_context",
            "submit_execution_logs", "search_execution_logs", "get_execution_log",
            "check_stale", "get_maintenance_report",
            "expand_tags", "list_tags", "create_tags",
            "apply_seed", "get_config", "set_config", "delete_config",
        }


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------


class TestFactTools:
    def test_submit_and_search(self, mcp_env):
        r = call(mcp_env, "submit_facts", facts=[
            {"content": "API uses OAuth2", "tags": ["api-auth"], "source_type": "code"},
        ])
        assert r["status"] == "ok"
        assert r["created"] == 1
        found = call(mcp_env, "search_facts", tags=["api-auth"])
        assert found["count"] == 1
        assert found["facts"][0]["content"] == "API uses OAuth2"

    def test_submit_invalid(self, mcp_env):
        r = call(mcp_env, "submit_facts", facts=[{"content": ""}])
        assert r["status"] == "error"
        assert "empty" in r["message"]

    def test_search_suggests(self, mcp_env):
        call(mcp_env, "submit_facts", facts=[{"content": "x", "tags": ["build"]}])
        r = call(mcp_env, "search_facts", tags=["nothing"])
        assert r["count"] == 0
        assert r["suggested_tags"] == ["build"]

    def test_verify_by_ids_and_tags(self, mcp_env):
        r = call(mcp_env, "submit_facts", facts=[
            {"content": "a", "tags": ["t"]}, {"content": "b"},
        ])
        ids = [f["id"] for f in r["facts"]]
        v = call(mcp_env, "verify_facts", ids=[ids[1]], tags=["t"])
        assert v["verified"] == 2
        assert v["tagged_ids"] == [ids[0]]

    def test_verify_needs_selector(self, mcp_env):
        assert call(mcp_env, "verify_facts")["status"] == "error"

    def test_update_by_content(self, mcp_env):
        call(mcp_env, "submit_facts", facts=[{"content": "port is 8080", "tags": ["net"]}])
        r = call(mcp_env, "update_fact", content_match="port is 8080",
                 content="port is 9090", append_tags=["config"])
        assert r["status"] == "ok"
        assert r["fact"]["content"] == "port is 9090"
        assert sorted(r["fact"]["tags"]) == ["config", "net"]

    def test_update_needs_selector(self, mcp_env):
        r = call(mcp_env, "update_fact", content="x")
        assert r["status"] == "error"

    def test_update_missing(self, mcp_env):
        r = call(mcp_env, "update_fact", id=999, content="x")
        assert r == {"status": "error", "message": "Fact 999"}

    def test_delete_and_restore(self, mcp_env):
        ids = [f["id"] for f in call(mcp_env, "submit_facts", facts=[
            {"content": "a", "tags": ["old"]}, {"content": "b"},
        ])["facts"]]
        r = call(mcp_env, "delete_facts", tags=["old"])
        assert r["deleted"] == 1
        assert r["soft"] is True
        assert call(mcp_env, "search_facts", query="a")["count"] == 0
        assert call(mcp_env, "restore_facts", ids=ids)["restored"] == 1
        assert call(mcp_env, "search_facts", query="a")["count"] == 1

    def test_delete_needs_filter(self, mcp_env):
        call(mcp_env, "submit_facts", facts=[{"content": "a"}])
        r = call(mcp_env, "delete_facts", unverified_only=True)
        assert r["status"] == "error"
        assert call(mcp_env, "search_facts")["count"] == 1


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class TestResourceTools:
    def test_add_and_get_fresh(self, mcp_env):
        call(mcp_env, "add_resources", resources=[
            {"uri": "src/app.py", "snapshot": "print(1)"},
        ])
        r = call(mcp_env, "get_resource", uri="src/app.py")
        assert r["status"] == "ok"
        assert r["resource"]["snapshot"] == "print(1)"
        assert r["freshness"]["categories"] == ["sourceCode"]
        assert r["freshness"]["is_fresh"] is True
        assert "hint" not in r

    def test_get_stale_has_hint(self, mcp_env):
        call(mcp_env, "add_resources", resources=[{"uri": "src/app.py", "snapshot": "x"}])
        mcp_env["store"]._conn.execute(
            "UPDATE resources SET last_verified_at='2020-01-01T00:00:00+00:00'"
        )
        mcp_env["store"]._conn.commit()
        r = call(mcp_env, "get_resource", uri="src/app.py")
        assert r["freshness"]["is_fresh"] is False
        assert "update_resource_snapshot" in r["hint"]

    def test_get_missing(self, mcp_env):
        r = call(mcp_env, "get_resource", uri="nope")
        assert r["status"] == "error"
        assert "not found" in r["message"]

    def test_update_snapshot_and_refresh(self, mcp_env):
        rid = call(mcp_env, "add_resources", resources=[{"uri": "a", "snapshot": "1"}])[
            "resources"][0]["id"]
        call(mcp_env, "create_skill", name="s", title="S", content="x", resources=[rid])
        assert call(mcp_env, "update_resource_snapshot", snapshot="2", resource_id=rid)[
            "updated"] is True
        r = call(mcp_env, "mark_resources_refreshed", ids=[rid])
        assert r["affected"] == 1
        assert [s["name"] for s in r["skills_to_review"]] == ["s"]

    def test_update_snapshot_missing(self, mcp_env):
        r = call(mcp_env, "update_resource_snapshot", snapshot="x", uri="ghost")
        assert r["status"] == "error"

    def test_classify(self, mcp_env):
        r = call(mcp_env, "classify_resource", uri="package-lock.json")
        assert "lockFiles" in r["categories"]
        assert r["threshold_hours"] == 168

    def test_classify_uses_config(self, mcp_env):
        call(mcp_env, "set_config", key="freshness_tests", value="2")
        r = call(mcp_env, "classify_resource", uri="tests/test_x.py")
        assert r["threshold_hours"] == 2

    def test_search_leaves_out_snapshots(self, mcp_env):
        call(mcp_env, "add_resources", resources=[
            {"uri": "docs/api.md", "snapshot": "long body", "tags": ["api"]},
            {"uri": "https://example.com", "type": "url"},
        ])
        r = call(mcp_env, "search_resources", tags=["api"])
        assert r["count"] == 1
        assert r["resources"][0]["uri"] == "docs/api.md"
        assert "snapshot" not in r["resources"][0]
        assert call(mcp_env, "search_resources", type="url")["count"] == 1

    def test_delete_and_restore(self, mcp_env):
        rid = call(mcp_env, "add_resources", resources=[{"uri": "a"}])["resources"][0]["id"]
        assert call(mcp_env, "delete_resources", uris=["a"])["deleted"] == 1
        assert call(mcp_env, "search_resources")["count"] == 0
        assert call(mcp_env, "restore_resources", ids=[rid])["restored"] == 1
        assert call(mcp_env, "search_resources")["count"] == 1

    def test_delete_needs_selector(self, mcp_env):
        assert call(mcp_env, "delete_resources")["status"] == "error"


# ---------------------------------------------------------------------------
# Skills
# ---------------------------------------------------------------------------


class TestSkillTools:
    def test_create(self, mcp_env):
        r = call(mcp_env, "create_skill", name="deploy", title="Deploy",
                 content="# Deploy", tags=["ops"])
        assert r["status"] == "ok"
        assert r["content_hash"].startswith("sha256:")
        assert (mcp_env["tmp_path"] / "skills" / "deploy.md").is_file()

    def test_create_duplicate(self, mcp_env):
        call(mcp_env, "create_skill", name="d", title="D", content="x")
        r = call(mcp_env, "create_skill", name="d", title="D", content="y")
        assert r["status"] == "error"
        assert "already exists" in r["message"]

    def test_link(self, mcp_env):
        call(mcp_env, "create_skill", name="base", title="B", content="x")
        call(mcp_env, "create_skill", name="s", title="S", content="y")
        r = call(mcp_env, "link_skill", name="s", skills=[{"name": "base", "relation": "extends"}])
        assert r["skills"] == 1

    def test_link_missing(self, mcp_env):
        r = call(mcp_env, "link_skill", name="ghost")
        assert r == {"status": "error", "message": "Skill not found: ghost"}

    def test_sync(self, mcp_env):
        r = call(mcp_env, "create_skill", name="s", title="S", content="v1")
        with open(r["file_path"], "w", encoding="utf-8") as f:
            f.write("v2")
        assert call(mcp_env, "sync_skill", name="s")["updated"] is True

    def test_get_with_links(self, mcp_env):
        rid = call(mcp_env, "add_resources", resources=[{"uri": "a", "snapshot": "1"}])[
            "resources"][0]["id"]
        call(mcp_env, "create_skill", name="s", title="S", content="# body", resources=[rid])
        call(mcp_env, "update_resource_snapshot", snapshot="2", resource_id=rid)
        r = call(mcp_env, "get_skill", name="s")
        assert r["status"] == "ok"
        assert r["content"] == "# body"
        assert r["skill"]["retrieval_count"] == 1
        assert [(link["uri"], link["stale"]) for link in r["resource_links"]] == [("a", True)]

    def test_get_missing(self, mcp_env):
        assert call(mcp_env, "get_skill", name="ghost") == {
            "status": "error", "message": "Skill not found: ghost",
        }

    def test_search(self, mcp_env):
        call(mcp_env, "create_skill", name="deploy", title="Deploy", content="x", tags=["ops"])
        call(mcp_env, "create_skill", name="lint", title="Lint", content="y")
        assert [s["name"] for s in call(mcp_env, "search_skills", tags=["ops"])["skills"]] == [
            "deploy",
        ]
        assert call(mcp_env, "search_skills", query="lin")["count"] == 1

    def test_update_acknowledges_changed_resource(self, mcp_env):
        rid = call(mcp_env, "add_resources", resources=[{"uri": "a", "snapshot": "1"}])[
            "resources"][0]["id"]
        call(mcp_env, "create_skill", name="s", title="S", content="x", resources=[rid])
        call(mcp_env, "update_resource_snapshot", snapshot="2", resource_id=rid)
        assert call(mcp_env, "check_stale")["summary"]["skills"] == 1

        r = call(mcp_env, "update_skill", name="s", description="checked", add_resources=[rid])
        assert r["status"] == "ok"
        assert r["skill"]["description"] == "checked"
        assert call(mcp_env, "check_stale")["stale_skills"] == []

    def test_update_missing(self, mcp_env):
        r = call(mcp_env, "update_skill", name="ghost", title="G")
        assert r == {"status": "error", "message": "Skill not found: ghost"}

    def test_register_and_review(self, mcp_env):
        path = mcp_env["tmp_path"] / "found.md"
        path.write_text("# Found\nsteps", encoding="utf-8")
        r = call(mcp_env, "register_skill", file_path=str(path))
        assert r["is_new"] is True
        assert call(mcp_env, "check_stale")["summary"]["pending_review"] == 1
        assert call(mcp_env, "mark_skill_reviewed", name="found")["needs_review"] is False
        assert call(mcp_env, "check_stale")["summary"]["pending_review"] == 0

    def test_register_not_markdown(self, mcp_env):
        r = call(mcp_env, "register_skill", file_path=str(mcp_env["tmp_path"] / "x.txt"))
        assert r["status"] == "error"

    def test_review_missing(self, mcp_env):
        assert call(mcp_env, "mark_skill_reviewed", name="ghost")["status"] == "error"

    def test_delete_with_file(self, mcp_env):
        r = call(mcp_env, "create_skill", name="s", title="S", content="x")
        d = call(mcp_env, "delete_skills", names=["s"], delete_files=True)
        assert (d["deleted"], d["files_deleted"]) == (1, 1)
        assert not (mcp_env["tmp_path"] / "skills" / "s.md").exists()
        assert r["file_path"].endswith("s.md")


# ---------------------------------------------------------------------------
# Context and execution logs
# ---------------------------------------------------------------------------


class TestContextTool:
    @pytest.fixture
    def seeded(self, mcp_env):
        call(mcp_env, "submit_facts", facts=[{"content": "tokens expire hourly", "tags": ["auth"]}])
        call(mcp_env, "add_resources", resources=[
            {"uri": "docs/auth.md", "snapshot": "OAuth2 flow", "tags": ["auth"]},
        ])
        call(mcp_env, "create_skill", name="login", title="Login", content="1. get token",
             tags=["auth"])
        return mcp_env

    def test_json(self, seeded):
        r = call(seeded, "get_knowledge_context", tags=["auth"])
        assert r["status"] == "ok"
        assert [f["content"] for f in r["facts"]] == ["tokens expire hourly"]
        assert r["resources"][0]["preview"] == "OAuth2 flow"
        assert r["skills"][0]["content"] == "1. get token"

    def test_markdown(self, seeded):
        r = call(seeded, "get_knowledge_context", tags=["auth"], format="markdown",
                 include_skills=False)
        assert "## Facts" in r["markdown"]
        assert "- [auth] tokens expire hourly" in r["markdown"]
        assert "## Skills" not in r["markdown"]

    def test_no_match(self, seeded):
        r = call(seeded, "get_knowledge_context", tags=["nothing"], format="markdown")
        assert r["markdown"] == "No matching knowledge found."

    def test_bad_format(self, seeded):
        r = call(seeded, "get_knowledge_context", tags=["auth"], format="xml")
        assert r["status"] == "error"


class TestExecutionLogTools:
    def test_submit_search_get(self, mcp_env):
        r = call(mcp_env, "submit_execution_logs", logs=[
            {"command": "make test", "exit_code": 2, "output": "1 failed", "tags": ["ci"]},
            {"command": "make lint", "success": True, "tags": ["ci"]},
        ])
        assert r["created"] == 2
        failed = call(mcp_env, "search_execution_logs", tags=["ci"], success=False)
        assert failed["count"] == 1
        assert failed["logs"][0]["command"] == "make test"
        log = call(mcp_env, "get_execution_log", id=failed["logs"][0]["id"])
        assert log["log"]["output"] == "1 failed"
        assert log["log"]["success"] is False

    def test_submit_invalid(self, mcp_env):
        r = call(mcp_env, "submit_execution_logs", logs=[{"command": "ls"}])
        assert r["status"] == "error"
        assert "success or exit_code" in r["message"]

    def test_get_missing(self, mcp_env):
        assert call(mcp_env, "get_execution_log", id=42)["status"] == "error"


# ---------------------------------------------------------------------------
# Staleness, tags, admin
# ---------------------------------------------------------------------------


class TestStaleTool:
    def test_reports_drift(self, mcp_env):
        rid = call(mcp_env, "add_resources", resources=[{"uri": "a", "snapshot": "1"}])[
            "resources"][0]["id"]
        call(mcp_env, "create_skill", name="s", title="S", content="x", resources=[rid])
        call(mcp_env, "update_resource_snapshot", snapshot="2", resource_id=rid)
        r = call(mcp_env, "check_stale")
        assert r["status"] == "ok"
        assert r["max_age_hours"] == 168
        assert r["stale_skills"][0]["reason"] == "resource_changed"
        assert r["summary"]["skills"] == 1

    def test_config_default(self, mcp_env):
        call(mcp_env, "set_config", key="staleness_max_age_hours", value="24")
        assert call(mcp_env, "check_stale")["max_age_hours"] == 24

    def test_maintenance_report(self, mcp_env):
        rid = call(mcp_env, "add_resources", resources=[{"uri": "a", "snapshot": "1"}])[
            "resources"][0]["id"]
        call(mcp_env, "create_skill", name="s", title="S", content="x", resources=[rid])
        call(mcp_env, "update_resource_snapshot", snapshot="2", resource_id=rid)
        r = call(mcp_env, "get_maintenance_report", max_age_hours=48)
        assert r["status"] == "ok"
        assert r["max_age_hours"] == 48
        assert r["summary"]["skills"] == 1
        assert "## Skills Needing Review" in r["markdown"]
        assert "### s" in r["markdown"]

    def test_maintenance_report_all_clear(self, mcp_env):
        r = call(mcp_env, "get_maintenance_report")
        assert r["max_age_hours"] == 168
        assert "## All Clear" in r["markdown"]


class TestTagTools:
    def test_expand(self, mcp_env):
        call(mcp_env, "set_config", key="tag_synonyms", value='{"db": "database"}')
        r = call(mcp_env, "expand_tags", tags=["db"])
        assert r["expanded"] == ["db", "database"]

    def test_list(self, mcp_env):
        call(mcp_env, "submit_facts", facts=[{"content": "x", "tags": ["api-a", "other"]}])
        r = call(mcp_env, "list_tags", filter="api")
        assert [t["name"] for t in r["tags"]] == ["api-a"]

    def test_create(self, mcp_env):
        r = call(mcp_env, "create_tags", tags=[{"name": "api", "description": "HTTP API"}])
        assert r["count"] == 1
        assert r["tags"][0]["description"] == "HTTP API"

    def test_create_keeps_description(self, mcp_env):
        call(mcp_env, "create_tags", tags=[{"name": "api", "description": "HTTP API"}])
        r = call(mcp_env, "create_tags", tags=[{"name": "api", "description": "REST"}])
        assert r["updated"] == 0
        assert r["tags"][0]["description"] == "HTTP API"

    def test_create_update_descriptions(self, mcp_env):
        call(mcp_env, "create_tags", tags=[{"name": "api", "description": "HTTP API"}])
        r = call(mcp_env, "create_tags", tags=[{"name": "api", "description": "REST"}],
                 update_descriptions=True)
        assert r["updated"] == 1
        assert r["tags"][0]["description"] == "REST"

    def test_create_empty_name(self, mcp_env):
        assert call(mcp_env, "create_tags", tags=[{"name": " "}])["status"] == "error"


class TestAdminTools:
    def test_apply_seed(self, mcp_env):
        r = call(mcp_env, "apply_seed")
        assert r["applied"] is True
        assert r["facts"]["created"] == 8
        again = call(mcp_env, "apply_seed")
        assert again["applied"] is False

    def test_apply_seed_bad_path(self, mcp_env):
        r = call(mcp_env, "apply_seed", manifest_path=str(mcp_env["tmp_path"] / "none.json"))
        assert r["status"] == "error"

    def test_config_roundtrip(self, mcp_env):
        assert call(mcp_env, "set_config", key="freshness_default", value="72")["value"] == "72"
        r = call(mcp_env, "get_config", key="freshness_default")
        assert r["value"] == "72"
        assert r["schema"]["type"] == "number"
        everything = call(mcp_env, "get_config")
        assert everything["config"]["freshness_default"] == "72"
        assert "tag_synonyms" in everything["schema"]

    def test_set_invalid(self, mcp_env):
        r = call(mcp_env, "set_config", key="auto_prune_orphan_tags", value="maybe")
        assert r["status"] == "error"

    def test_delete_config(self, mcp_env):
        call(mcp_env, "set_config", key="freshness_default", value="72")
        assert call(mcp_env, "delete_config", key="freshness_default")["deleted"] is True
        assert call(mcp_env, "get_config", key="freshness_default")["value"] is None
        assert call(mcp_env, "delete_config", key="freshness_default")["deleted"] is False


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class TestToolAudit:
    def test_one_record_per_call(self, mcp_env):
        call(mcp_env, "list_tags")
        call(mcp_env, "link_skill", name="ghost")
        records = audit_records(mcp_env)
        assert [(r["tool"], r["outcome"]) for r in records] == [
            ("list_tags", "ok"), ("link_skill", "error"),
        ]
        assert records[0]["db"] == mcp_env["db_path"]

    def test_fact_content_not_logged_in_full(self, mcp_env):
        long = "secret " * 40
        call(mcp_env, "submit_facts", facts=[{"content": long}])
        record = audit_records(mcp_env)[0]
        assert record["d"]["count"] == 1
        assert record["d"]["created"] == 1
        assert long not in mcp_env["sink"].getvalue()
        assert record["d"]["preview"].endswith("…")
