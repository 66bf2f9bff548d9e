"""
Tests for factctl.maintenance — periodic tasks and their bookkeeping.
"""

from datetime import datetime, timedelta, timezone

import pytest

import factctl.maintenance as maintenance
from factctl.maintenance import (
    TASKS,
    auto_verify_facts,
    due_tasks,
    expire_facts,
    hard_delete,
    maintenance_report,
    prune_tags,
    run_tasks,
    staleness_sweep,
    worker_state,
)
from factctl.store import KnowledgeStore

NOW = datetime.now(timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = KnowledgeStore(":memory:", skills_dir=str(tmp_path / "skills"))
    yield s
    s.close()


def _set(store, sql, days_ago, row_id):
    store._conn.execute(sql, ((NOW - timedelta(days=days_ago)).isoformat(), row_id))
    store._conn.commit()


def _add_fact(store, content, days_old, retrieved=0, source_type=None):
    fid = store.submit_facts([{"content": content, "source_type": source_type}])["facts"][0]["id"]
    _set(store, "UPDATE facts SET created_at=? WHERE id=?", days_old, fid)
    store._conn.execute("UPDATE facts SET retrieval_count=? WHERE id=?", (retrieved, fid))
    store._conn.commit()
    return fid


class TestAutoVerify:
    def test_disabled_by_default(self, store):
        result = auto_verify_facts(store, NOW)
        assert result.status == "skipped"
        assert "fact_auto_verify_after_days not set" in result.message

    def test_verifies_eligible(self, store):
        store.set_config("fact_auto_verify_after_days", "30")
        old = _add_fact(store, "old retrieved", 40, retrieved=2, source_type="code")
        no_source = _add_fact(store, "old untyped", 40, retrieved=1)
        inferred = _add_fact(store, "old inference", 40, retrieved=3, source_type="inference")
        unread = _add_fact(store, "never read", 40)
        young = _add_fact(store, "young", 5, retrieved=4)

        result = auto_verify_facts(store, NOW)
        assert result.status == "success"
        assert result.items_processed == 2
        assert result.message == "Auto-verified 2 facts older than 30 days"
        assert store.get_fact(old).verified is True
        assert store.get_fact(no_source).verified is True
        for fid in (inferred, unread, young):
            assert store.get_fact(fid).verified is False


class TestExpireFacts:
    def test_disabled_by_default(self, store):
        assert expire_facts(store, NOW).status == "skipped"

    def test_expires_old_unverified(self, store):
        store.set_config("fact_expiration_days", "10")
        old = _add_fact(store, "old", 20)
        young = _add_fact(store, "young", 2)
        store.verify_facts([_add_fact(store, "verified", 20)])

        result = expire_facts(store, NOW)
        assert result.items_processed == 1
        assert result.message == "Expired 1 unverified facts older than 10 days"
        assert store.get_fact(old).deleted_at == NOW.isoformat()
        assert store.get_fact(young).deleted_at is None


class TestPruneTags:
    def test_needs_opt_in(self, store):
        store.get_or_create_tags(["orphan"])
        assert prune_tags(store, NOW).status == "skipped"
        assert store.get_tag("orphan") is not None

    def test_prunes(self, store):
        store.set_config("auto_prune_orphan_tags", "true")
        store.get_or_create_tags(["orphan"])
        result = prune_tags(store, NOW)
        assert result.message == "Pruned 1 orphan tags"
        assert store.get_tag("orphan") is None


class TestHardDelete:
    def test_purges_past_retention(self, store):
        old = _add_fact(store, "old", 1)
        recent = _add_fact(store, "recent", 1)
        rid = store.add_resources([{"uri": "r"}])["resources"][0]["id"]
        store.delete_facts(ids=[old, recent])
        store.delete_resources(ids=[rid])
        _set(store, "UPDATE facts SET deleted_at=? WHERE id=?", 10, old)
        _set(store, "UPDATE resources SET deleted_at=? WHERE id=?", 10, rid)

        result = hard_delete(store, NOW)
        assert result.items_processed == 2
        assert result.message == (
            "Hard deleted 2 items (1 facts, 1 resources, 0 skills) older than 7 days"
        )
        assert store.get_fact(old) is None
        assert store.get_fact(recent) is not None

    def test_retention_config(self, store):
        store.set_config("soft_delete_retention_days", "30")
        fid = _add_fact(store, "x", 1)
        store.delete_facts(ids=[fid])
        _set(store, "UPDATE facts SET deleted_at=? WHERE id=?", 10, fid)
        assert hard_delete(store, NOW).items_processed == 0


class TestStalenessSweep:
    def test_counts(self, store):
        store.add_resources([{"uri": "never-verified"}])
        result = staleness_sweep(store, NOW)
        assert result.status == "success"
        assert result.items_processed == 1

    def test_error_recorded(self, store, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(maintenance, "check_stale", boom)
        result = staleness_sweep(store, NOW)
        assert result.status == "error"
        assert result.message == "disk on fire"
        assert worker_state(store)["staleness_sweep"].status == "error"


class TestScheduling:
    def test_state_persisted(self, store):
        expire_facts(store, NOW)
        state = worker_state(store)
        assert state["expire_facts"].status == "skipped"
        assert state["expire_facts"].ran_at == NOW.isoformat()

    def test_all_due_initially(self, store):
        assert due_tasks(store, NOW) == list(TASKS)

    def test_interval(self, store):
        prune_tags(store, NOW)
        assert "prune_tags" not in due_tasks(store, NOW + timedelta(hours=1))
        assert "prune_tags" in due_tasks(store, NOW + timedelta(days=1))

    def test_interval_config(self, store):
        store.set_config("worker_interval_prune_tags", "60")
        prune_tags(store, NOW)
        assert "prune_tags" in due_tasks(store, NOW + timedelta(minutes=2))

    def test_run_due(self, store):
        results = run_tasks(store, now=NOW)
        assert [r.task for r in results] == list(TASKS)
        assert run_tasks(store, now=NOW + timedelta(seconds=1)) == []

    def test_run_named(self, store):
        results = run_tasks(store, ["hard_delete"], now=NOW)
        assert [r.task for r in results] == ["hard_delete"]

    def test_unknown_task(self, store):
        with pytest.raises(ValueError, match="Unknown task"):
            run_tasks(store, ["vacuum"])


class TestTaskWrapper:
    def test_keeps_metadata(self):
        assert auto_verify_facts.__name__ == "auto_verify_facts"
        assert auto_verify_facts.__doc__.startswith("Verify unverified facts")
        assert staleness_sweep.__wrapped__.__name__ == "staleness_sweep"


class TestReport:
    def test_all_clear(self, store):
        report = maintenance_report(store, now=NOW)
        assert report["max_age_hours"] == 168
        assert report["summary"]["total_stale"] == 0
        assert "## All Clear" in report["markdown"]
        assert report["tasks"] == {}

    def test_lists_attention_items(self, store):
        store.add_resources([{
            "uri": "docs/api.md",
            "retrieval_method": {"type": "command", "command": "cat docs/api.md"},
        }])
        rid = store.add_resources([{"uri": "a", "snapshot": "1"}])["resources"][0]["id"]
        store.create_skill("deploy", "Deploy", "x", references={"resources": [rid]})
        store.update_resource_snapshot("2", resource_id=rid)
        report = maintenance_report(store, max_age_hours=24, now=NOW)
        text = report["markdown"]
        assert "Stale threshold: 24 hours (1 days)" in text
        assert "### docs/api.md" in text
        assert "  - Command: `cat docs/api.md`" in text
        assert "### deploy" in text
        assert "- Reason: resource_changed" in text
        assert "All Clear" not in text

    def test_includes_task_runs(self, store):
        hard_delete(store, NOW)
        report = maintenance_report(store, now=NOW)
        assert report["tasks"]["hard_delete"]["status"] == "success"
        assert "- hard_delete: success" in report["markdown"]

    def test_uses_configured_cutoff(self, store):
        store.set_config("staleness_max_age_hours", "48")
        assert maintenance_report(store, now=NOW)["max_age_hours"] == 48
