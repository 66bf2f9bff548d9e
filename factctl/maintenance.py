"""
Maintenance Tasks

The periodic jobs an external scheduler runs against the store:

    auto_verify      verify retrieved, non-inference facts older than N days
    expire_facts     soft-delete unverified facts older than N days
    prune_tags       delete orphan tags (only when auto_prune_orphan_tags=true)
    hard_delete      purge rows soft-deleted longer than the retention window
    staleness_sweep  run the staleness detector with the configured cutoff

Each task returns a TaskResult and records it in ``worker_state``; a task
never raises, failures become status "error". ``due_tasks`` compares each
task's last run with its configured interval.

Public API:
    TASKS
    TaskResult
    auto_verify_facts(store, now=None) -> TaskResult
    expire_facts(store, now=None) -> TaskResult
    prune_tags(store, now=None) -> TaskResult
    hard_delete(store, now=None) -> TaskResult
    staleness_sweep(store, now=None) -> TaskResult
    worker_state(store) -> dict[str, TaskResult]
    due_tasks(store, now=None) -> list[str]
    run_tasks(store, names=None, now=None) -> list[TaskResult]
    maintenance_report(store, max_age_hours=None, now=None) -> dict
"""

from __future__ import annotations

import functools
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

from factctl.config import maintenance_from_kv
from factctl.staleness import check_stale
from factctl.store import KnowledgeStore
from factctl.types import _now_iso, _parse_iso

logger = logging.getLogger(__name__)

TaskStatus = Literal["success", "skipped", "error"]


@dataclass
class TaskResult:
    """Outcome of one task run."""
    task: str
    status: TaskStatus
    message: str = ""
    items_processed: int = 0
    ran_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _record(store: KnowledgeStore, result: TaskResult) -> TaskResult:
    with store.transaction() as conn:
        conn.execute(
            "INSERT INTO worker_state (task_name, last_run_at, last_status, last_message, "
            "items_processed, updated_at) VALUES (?,?,?,?,?,?) "
            "ON CONFLICT(task_name) DO UPDATE SET last_run_at=excluded.last_run_at, "
            "last_status=excluded.last_status, last_message=excluded.last_message, "
            "items_processed=excluded.items_processed, updated_at=excluded.updated_at",
            (result.task, result.ran_at, result.status, result.message,
             result.items_processed, _now_iso()),
        )
    logger.info("Task %s: %s (%s)", result.task, result.status, result.message)
    return result


def _task(name: str):
    """Wrap a task body: stamp, catch failures, persist the result."""

    def decorator(fn: Callable[[KnowledgeStore, datetime], TaskResult]):
        @functools.wraps(fn)
        def run(store: KnowledgeStore, now: Optional[datetime] = None) -> TaskResult:
            ts = _now(now)
            try:
                result = fn(store, ts)
            except Exception as e:
                logger.exception("Task %s failed", name)
                result = TaskResult(task=name, status="error", message=str(e))
            result.ran_at = ts.isoformat()
            return _record(store, result)

        return run

    return decorator


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@_task("auto_verify")
def auto_verify_facts(store: KnowledgeStore, now: datetime) -> TaskResult:
    """Verify unverified facts older than fact_auto_verify_after_days.

    Only facts retrieved at least once and not sourced from inference.
    """
    days = maintenance_from_kv(store.all_config()).fact_auto_verify_after_days
    if days is None:
        return TaskResult(
            "auto_verify", "skipped",
            "Auto-verify disabled (fact_auto_verify_after_days not set)",
        )
    cutoff = now - timedelta(days=days)
    with store.transaction() as conn:
        rows = conn.execute(
            "SELECT id, created_at FROM facts WHERE verified=0 AND deleted_at IS NULL "
            "AND retrieval_count > 0 "
            "AND (source_type IS NULL OR source_type != 'inference')"
        ).fetchall()
        ids = [r["id"] for r in rows if _parse_iso(r["created_at"]) < cutoff]
        for fid in ids:
            conn.execute(
                "UPDATE facts SET verified=1, updated_at=? WHERE id=?", (_now_iso(), fid),
            )
    return TaskResult(
        "auto_verify", "success",
        f"Auto-verified {len(ids)} facts older than {days} days", len(ids),
    )


@_task("expire_facts")
def expire_facts(store: KnowledgeStore, now: datetime) -> TaskResult:
    """Soft-delete unverified facts older than fact_expiration_days."""
    days = maintenance_from_kv(store.all_config()).fact_expiration_days
    if days is None:
        return TaskResult(
            "expire_facts", "skipped",
            "Fact expiration disabled (fact_expiration_days not set)",
        )
    cutoff = now - timedelta(days=days)
    with store.transaction() as conn:
        rows = conn.execute(
            "SELECT id, created_at FROM facts WHERE verified=0 AND deleted_at IS NULL"
        ).fetchall()
        ids = [r["id"] for r in rows if _parse_iso(r["created_at"]) < cutoff]
        stamp = now.isoformat()
        for fid in ids:
            conn.execute("UPDATE facts SET deleted_at=? WHERE id=?", (stamp, fid))
    return TaskResult(
        "expire_facts", "success",
        f"Expired {len(ids)} unverified facts older than {days} days", len(ids),
    )


@_task("prune_tags")
def prune_tags(store: KnowledgeStore, now: datetime) -> TaskResult:
    """Delete orphan tags when auto_prune_orphan_tags is "true"."""
    if store.get_config("auto_prune_orphan_tags") != "true":
        return TaskResult(
            "prune_tags", "skipped",
            "Auto prune disabled (auto_prune_orphan_tags not true)",
        )
    result = store.prune_orphan_tags(dry_run=False)
    return TaskResult(
        "prune_tags", "success", f"Pruned {result['pruned']} orphan tags", result["pruned"],
    )


@_task("hard_delete")
def hard_delete(store: KnowledgeStore, now: datetime) -> TaskResult:
    """Purge facts, resources and skills soft-deleted beyond the retention window."""
    days = maintenance_from_kv(store.all_config()).soft_delete_retention_days
    cutoff = now - timedelta(days=days)
    deleted: Dict[str, int] = {}
    with store.transaction() as conn:
        for table in ("facts", "resources", "skills"):
            rows = conn.execute(
                f"SELECT id, deleted_at FROM {table} WHERE deleted_at IS NOT NULL"
            ).fetchall()
            ids = [r["id"] for r in rows if _parse_iso(r["deleted_at"]) < cutoff]
            for row_id in ids:
                conn.execute(f"DELETE FROM {table} WHERE id=?", (row_id,))
            deleted[table] = len(ids)
    total = sum(deleted.values())
    return TaskResult(
        "hard_delete", "success",
        f"Hard deleted {total} items ({deleted['facts']} facts, {deleted['resources']} "
        f"resources, {deleted['skills']} skills) older than {days} days",
        total,
    )


@_task("staleness_sweep")
def staleness_sweep(store: KnowledgeStore, now: datetime) -> TaskResult:
    """Run the staleness detector with staleness_max_age_hours."""
    hours = maintenance_from_kv(store.all_config()).staleness_max_age_hours
    report = check_stale(store, hours, now=now)
    summary = report.summary
    return TaskResult(
        "staleness_sweep", "success",
        f"{summary['total_stale']} stale items ({summary['resources']} resources, "
        f"{summary['skills']} skills, {summary['facts']} facts, "
        f"{summary['pending_review']} pending review) at {hours}h",
        summary["total_stale"],
    )


TASKS: Dict[str, Callable[..., TaskResult]] = {
    "auto_verify": auto_verify_facts,
    "expire_facts": expire_facts,
    "prune_tags": prune_tags,
    "hard_delete": hard_delete,
    "staleness_sweep": staleness_sweep,
}


# ---------------------------------------------------------------------------
# Scheduling helpers
# ---------------------------------------------------------------------------


def worker_state(store: KnowledgeStore) -> Dict[str, TaskResult]:
    """Last recorded result per task."""
    with store.transaction() as conn:
        rows = conn.execute("SELECT * FROM worker_state").fetchall()
    return {
        r["task_name"]: TaskResult(
            task=r["task_name"],
            status=r["last_status"],
            message=r["last_message"] or "",
            items_processed=r["items_processed"],
            ran_at=r["last_run_at"] or "",
        )
        for r in rows
    }


def _interval(name: str, store: KnowledgeStore) -> int:
    cfg = maintenance_from_kv(store.all_config())
    return getattr(cfg, f"interval_{name}")


def due_tasks(store: KnowledgeStore, now: Optional[datetime] = None) -> List[str]:
    """Tasks never run, or whose interval (seconds) has elapsed."""
    ts = _now(now)
    state = worker_state(store)
    due = []
    for name in TASKS:
        last = state.get(name)
        if last is None or not last.ran_at:
            due.append(name)
            continue
        elapsed = (ts - _parse_iso(last.ran_at)).total_seconds()
        if elapsed >= _interval(name, store):
            due.append(name)
    return due


def run_tasks(
    store: KnowledgeStore,
    names: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> List[TaskResult]:
    """Run the named tasks back to back (all due tasks when names is None).

    Raises:
        ValueError: On an unknown task name.
    """
    if names is None:
        names = due_tasks(store, now)
    unknown = [n for n in names if n not in TASKS]
    if unknown:
        raise ValueError(f"Unknown task(s): {', '.join(unknown)}")
    return [TASKS[n](store, now) for n in names]


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def maintenance_report(
    store: KnowledgeStore,
    max_age_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Markdown digest of what needs attention, plus the last task runs.

    ``max_age_hours`` defaults to the ``staleness_max_age_hours`` setting.
    Returns ``{"markdown", "summary", "max_age_hours", "tasks"}``.
    """
    if max_age_hours is None:
        max_age_hours = maintenance_from_kv(store.all_config()).staleness_max_age_hours
    report = check_stale(store, max_age_hours, now=now)
    summary = report.summary
    tasks = worker_state(store)

    lines = [
        "# Knowledge Base Maintenance Report",
        "",
        f"Stale threshold: {max_age_hours} hours ({round(max_age_hours / 24)} days)",
        "",
        f"**Summary:** {summary['total_stale']} items need attention",
        f"- Resources: {summary['resources']}",
        f"- Skills: {summary['skills']}",
        f"- Unverified Facts: {summary['facts']}",
        f"- Skills Pending Review: {summary['pending_review']}",
        "",
    ]

    if report.stale_resources:
        lines += ["## Stale Resources", ""]
        for r in report.stale_resources:
            lines.append(f"### {r.uri}")
            lines.append(f"- Type: {r.type}")
            lines.append(f"- Days stale: {r.days_stale}")
            lines.append(f"- Last verified: {r.last_verified_at or 'never'}")
            method = r.retrieval_method or {}
            if method.get("type"):
                lines.append(f"- Retrieval: {method['type']}")
                if method.get("command"):
                    lines.append(f"  - Command: `{method['command']}`")
                if method.get("url"):
                    lines.append(f"  - URL: {method['url']}")
            lines.append("")

    if report.stale_skills:
        lines += ["## Skills Needing Review", ""]
        for s in report.stale_skills:
            lines.append(f"### {s.name}")
            lines.append(f"- Reason: {s.reason}")
            if s.stale_dependencies:
                lines.append("- Changed dependencies:")
                for dep in s.stale_dependencies:
                    lines.append(f"  - [{dep.type}] {dep.name}")
                lines.append(
                    "- Action: check the skill, then re-link the resources with "
                    "`update_skill` or `link_skill`"
                )
            lines.append("")

    if report.unverified_facts:
        lines += ["## Unverified Facts", ""]
        for f in report.unverified_facts:
            lines.append(f"- **[{f.days_old}d old]** {f.content}")
            lines.append(f"  - Source type: {f.source_type}")
        lines.append("")

    if report.skills_needing_review:
        lines += ["## Skills Pending Review", ""]
        for s in report.skills_needing_review:
            lines.append(f"### {s.name}")
            lines.append(f"- Title: {s.title}")
            lines.append(f"- File: {s.file_path}")
            lines.append("- Action: add tags and description via `update_skill`")
            lines.append("")

    if summary["total_stale"] == 0:
        lines += ["## All Clear", "", "No stale content found."]

    if tasks:
        lines += ["", "## Maintenance Tasks", ""]
        for name in TASKS:
            last = tasks.get(name)
            if last is not None:
                lines.append(f"- {name}: {last.status} at {last.ran_at} ({last.message})")

    return {
        "markdown": "\n".join(lines),
        "summary": summary,
        "max_age_hours": max_age_hours,
        "tasks": {name: r.to_dict() for name, r in tasks.items()},
    }
