"""
Staleness Detection

Walks resources, skills and facts and reports what needs attention:

    resources   last_verified_at missing or older than the cutoff
    skills      resource_changed: a linked resource's snapshot digest differs
                from the digest captured when the link was made
                not_updated: updated_at older than the cutoff and no drifted link
    facts       unverified, with whole-day age * 24 >= max_age_hours
    review      skills flagged needs_review, whatever their age

The bulk report uses one global cutoff. Per-category thresholds only apply
to single-resource checks (freshness.check_resource_freshness).

Read-only. Storage errors propagate to the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from factctl.store import KnowledgeStore
from factctl.types import SkillResourceLink, StaleReason, _parse_iso

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_HOURS = 168


@dataclass
class StaleResource:
    id: int
    uri: str
    type: str
    last_verified_at: Optional[str]
    hours_stale: int
    days_stale: int
    retrieval_method: Optional[Dict[str, Any]] = None


@dataclass
class StaleDependency:
    id: int
    name: str
    type: str = "resource"


@dataclass
class StaleSkill:
    id: int
    name: str
    reason: StaleReason
    stale_dependencies: List[StaleDependency] = field(default_factory=list)


@dataclass
class UnverifiedFact:
    id: int
    content: str
    days_old: int
    source_type: str


@dataclass
class ReviewSkill:
    id: int
    name: str
    title: str
    file_path: str


@dataclass
class StalenessReport:
    """Result of one staleness pass.

    summary.total_stale is a plain sum: a skill both stale and pending
    review is counted twice.
    """
    max_age_hours: float
    checked_at: str
    stale_resources: List[StaleResource] = field(default_factory=list)
    stale_skills: List[StaleSkill] = field(default_factory=list)
    unverified_facts: List[UnverifiedFact] = field(default_factory=list)
    skills_needing_review: List[ReviewSkill] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        resources = len(self.stale_resources)
        skills = len(self.stale_skills)
        facts = len(self.unverified_facts)
        pending = len(self.skills_needing_review)
        return {
            "total_stale": resources + skills + facts + pending,
            "resources": resources,
            "skills": skills,
            "facts": facts,
            "pending_review": pending,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["summary"] = self.summary
        return d


def _whole_days(delta: timedelta) -> int:
    return max(0, delta.days)


def _whole_hours(delta: timedelta) -> int:
    return max(0, int(delta.total_seconds() // 3600))


def check_stale(
    store: KnowledgeStore,
    max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    *,
    check_resources: bool = True,
    check_skills: bool = True,
    check_facts: bool = True,
    now: Optional[datetime] = None,
) -> StalenessReport:
    """Build a staleness report over live (not soft-deleted) rows.

    Args:
        store: Knowledge store to inspect.
        max_age_hours: Global cutoff for resources, skills and facts.
        check_resources, check_skills, check_facts: Section switches.
        now: Reference time (defaults to current UTC time).

    Raises:
        sqlite3.Error: On storage failure.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=max_age_hours)
    report = StalenessReport(max_age_hours=max_age_hours, checked_at=now.isoformat())

    with store.transaction() as conn:
        if check_resources:
            rows = conn.execute(
                "SELECT id, uri, type, last_verified_at, retrieval_method FROM resources "
                "WHERE deleted_at IS NULL ORDER BY id"
            ).fetchall()
            for r in rows:
                verified_at = r["last_verified_at"]
                if verified_at is not None and _parse_iso(verified_at) >= cutoff:
                    continue
                age = now - _parse_iso(verified_at) if verified_at else timedelta(0)
                method = r["retrieval_method"]
                report.stale_resources.append(StaleResource(
                    id=r["id"],
                    uri=r["uri"],
                    type=r["type"],
                    last_verified_at=verified_at,
                    hours_stale=_whole_hours(age),
                    days_stale=_whole_days(age),
                    retrieval_method=json.loads(method) if method else None,
                ))

        if check_skills:
            links: Dict[int, List[SkillResourceLink]] = {}
            for link in store._skill_resource_links():
                links.setdefault(link.skill_id, []).append(link)
            rows = conn.execute(
                "SELECT id, name, title, file_path, updated_at, needs_review FROM skills "
                "WHERE deleted_at IS NULL ORDER BY id"
            ).fetchall()
            for s in rows:
                if s["needs_review"]:
                    report.skills_needing_review.append(ReviewSkill(
                        id=s["id"], name=s["name"], title=s["title"], file_path=s["file_path"],
                    ))
                drifted = [
                    StaleDependency(id=link.resource_id, name=link.uri)
                    for link in links.get(s["id"], [])
                    if link.stale
                ]
                if drifted:
                    report.stale_skills.append(StaleSkill(
                        id=s["id"], name=s["name"], reason="resource_changed",
                        stale_dependencies=drifted,
                    ))
                elif _parse_iso(s["updated_at"]) < cutoff:
                    report.stale_skills.append(StaleSkill(
                        id=s["id"], name=s["name"], reason="not_updated",
                    ))

        if check_facts:
            rows = conn.execute(
                "SELECT id, content, created_at, source_type FROM facts "
                "WHERE verified=0 AND deleted_at IS NULL ORDER BY id"
            ).fetchall()
            for f in rows:
                days_old = _whole_days(now - _parse_iso(f["created_at"]))
                if days_old * 24 >= max_age_hours:
                    report.unverified_facts.append(UnverifiedFact(
                        id=f["id"],
                        content=f["content"],
                        days_old=days_old,
                        source_type=f["source_type"] or "unknown",
                    ))

    logger.debug("Staleness check (%sh): %s", max_age_hours, report.summary)
    return report
