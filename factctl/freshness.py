"""
Freshness Threshold Resolution

Maps resource categories to an effective staleness threshold (the strictest
category wins) and checks a single resource's snapshot age against it.

Public API:
    threshold_for_categories(categories, freshness) -> float
    ResourceFreshness
    check_resource_freshness(resource, freshness, max_age_hours=None, now=None)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from factctl.categories import classify
from factctl.config import FreshnessConfig
from factctl.types import Resource, _parse_iso


def threshold_for_categories(
    categories: Iterable[str], freshness: Optional[FreshnessConfig] = None,
) -> float:
    """Minimum configured hours across categories; ``default`` when empty."""
    freshness = freshness or FreshnessConfig()
    hours = [freshness.hours_for(c) for c in categories]
    if not hours:
        return freshness.default_hours
    return min(hours)


@dataclass
class ResourceFreshness:
    """Single-resource freshness verdict."""
    uri: str
    categories: List[str] = field(default_factory=list)
    threshold_hours: float = 0
    effective_threshold_hours: float = 0
    snapshot_age_seconds: float = 0
    is_fresh: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def check_resource_freshness(
    resource: Resource,
    freshness: Optional[FreshnessConfig] = None,
    max_age_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ResourceFreshness:
    """Check one resource against its category threshold.

    ``max_age_hours`` overrides the category threshold when given. A
    resource that was never verified has an age of zero and is fresh.
    """
    now = now or datetime.now(timezone.utc)
    categories = sorted(classify(resource.uri))
    threshold = threshold_for_categories(categories, freshness)
    effective = max_age_hours if max_age_hours is not None else threshold

    age = 0.0
    if resource.last_verified_at:
        age = max(0.0, (now - _parse_iso(resource.last_verified_at)).total_seconds())

    return ResourceFreshness(
        uri=resource.uri,
        categories=categories,
        threshold_hours=threshold,
        effective_threshold_hours=effective,
        snapshot_age_seconds=age,
        is_fresh=age < effective * 3600,
    )
