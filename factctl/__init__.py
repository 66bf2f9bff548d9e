"""
factctl — a tagged knowledge store for agents.

Facts, resources and skills share one tag taxonomy in a single SQLite
database. Seeded system content is reconciled by digest so user edits
survive upgrades; resources and skills are tracked for staleness.
"""

__version__ = "0.1.0"

from factctl.types import (
    Fact,
    Resource,
    Skill,
    SkillResourceLink,
    Tag,
    content_hash,
    reconcile,
)
from factctl.store import KnowledgeStore, NotFoundError, SCHEMA_VERSION
from factctl.config import FactctlConfig, load_config
from factctl.seed import apply_seed
from factctl.staleness import check_stale

__all__ = [
    "__version__",
    "Fact",
    "Resource",
    "Skill",
    "SkillResourceLink",
    "Tag",
    "content_hash",
    "reconcile",
    "KnowledgeStore",
    "NotFoundError",
    "SCHEMA_VERSION",
    "FactctlConfig",
    "load_config",
    "apply_seed",
    "check_stale",
]
