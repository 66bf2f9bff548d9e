"""
Knowledge Store Configuration

Configuration dataclasses for factctl: store, freshness thresholds, tag
relationships, search limits, skills directory and maintenance tasks.
Includes load_config() for reading a JSON config file with silent fallback
to compiled defaults, and the parsers for the key/value config persisted in
the store's ``config`` table (tag_synonyms, tag_hierarchies, freshness_*).

Malformed values never fail the caller: they degrade to the documented
default and are logged at WARNING.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


# ---------------------------------------------------------------------------
# Key/value parsing (store-backed config)
# ---------------------------------------------------------------------------


def parse_json_config(value: Optional[str], default: Any) -> Any:
    """Parse a JSON config value. Missing or malformed -> default."""
    if not value:
        return default
    try:
        parsed = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Malformed JSON config value, using default: %.60r", value)
        return default
    if default is not None and not isinstance(parsed, type(default)):
        logger.warning("JSON config value has wrong shape, using default: %.60r", value)
        return default
    return parsed


def parse_number_config(value: Optional[str], default: Optional[float]) -> Optional[float]:
    """Parse a non-negative number. Missing, non-numeric or negative -> default."""
    if value is None or str(value).strip() == "":
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        logger.warning("Non-numeric config value, using default: %r", value)
        return default
    if math.isnan(num) or math.isinf(num) or num < 0:
        logger.warning("Out of range config value, using default: %r", value)
        return default
    return int(num) if num.is_integer() else num


def parse_bool_config(value: Optional[str], default: bool) -> bool:
    """Parse 'true'/'false'. Anything else -> default."""
    if value is None:
        return default
    v = str(value).strip().lower()
    if v == "true":
        return True
    if v == "false":
        return False
    return default


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".factctl/knowledge.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        return []


# category name -> store config key
FRESHNESS_KEYS: Dict[str, str] = {
    "lockFiles": "freshness_lock_files",
    "configFiles": "freshness_config_files",
    "documentation": "freshness_documentation",
    "generatedFiles": "freshness_generated_files",
    "apiSchemas": "freshness_api_schemas",
    "sourceCode": "freshness_source_code",
    "database": "freshness_database",
    "scripts": "freshness_scripts",
    "tests": "freshness_tests",
    "assets": "freshness_assets",
    "infrastructure": "freshness_infrastructure",
    "default": "freshness_default",
}

# category name -> hours
DEFAULT_FRESHNESS_HOURS: Dict[str, float] = {
    "lockFiles": 24 * 7,
    "configFiles": 24,
    "documentation": 24 * 3,
    "generatedFiles": 1,
    "apiSchemas": 24,
    "sourceCode": 12,
    "database": 24 * 3,
    "scripts": 24 * 3,
    "tests": 24,
    "assets": 24 * 7,
    "infrastructure": 24,
    "default": 24 * 7,
}


@dataclass(frozen=True)
class FreshnessConfig:
    """Staleness thresholds per resource category, in hours.

    ``hours`` is keyed by category name. Missing categories take the
    compiled default; unknown names are dropped.
    """
    hours: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        merged = dict(DEFAULT_FRESHNESS_HOURS)
        for category, value in self.hours.items():
            if category in DEFAULT_FRESHNESS_HOURS and value is not None:
                merged[category] = value
        object.__setattr__(self, "hours", merged)

    @property
    def default_hours(self) -> float:
        return self.hours["default"]

    def hours_for(self, category: str) -> float:
        """Threshold for one category; unknown categories use ``default``."""
        return self.hours.get(category, self.default_hours)

    def as_dict(self) -> Dict[str, float]:
        return dict(self.hours)

    @classmethod
    def from_kv(
        cls,
        values: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, float]] = None,
    ) -> FreshnessConfig:
        """Build thresholds from store config, then apply runtime overrides.

        Precedence: overrides > store ``freshness_*`` keys > compiled defaults.
        """
        hours: Dict[str, float] = {}
        for category, key in FRESHNESS_KEYS.items():
            parsed = parse_number_config((values or {}).get(key), None)
            if parsed is not None:
                hours[category] = parsed
        hours.update(overrides or {})
        return cls(hours=hours)

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for name, hours in self.hours.items():
            _check_range(errors, f"freshness.{name}", hours, 0, 24 * 365 * 10, (int, float))
        return errors


@dataclass(frozen=True)
class TagRelationsConfig:
    """Tag synonym (alias -> canonical) and hierarchy (child -> parent) maps."""
    synonyms: Mapping[str, str] = field(default_factory=dict)
    hierarchies: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_kv(cls, values: Optional[Mapping[str, str]] = None) -> TagRelationsConfig:
        """Read ``tag_synonyms`` and ``tag_hierarchies`` JSON objects."""
        values = values or {}
        return cls(
            synonyms=_str_map(parse_json_config(values.get("tag_synonyms"), {})),
            hierarchies=_str_map(parse_json_config(values.get("tag_hierarchies"), {})),
        )

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        for alias, canonical in self.synonyms.items():
            if alias == canonical:
                errors.append(f"tags.synonyms: {alias!r} maps to itself")
        return errors


def _str_map(d: Dict[Any, Any]) -> Dict[str, str]:
    """Keep only string -> string entries of a parsed JSON object."""
    return {k: v for k, v in d.items() if isinstance(k, str) and isinstance(v, str)}


@dataclass
class SearchConfig:
    """Default result limits per entity type."""
    limit_tags: int = 100
    limit_facts: int = 50
    limit_resources: int = 100
    limit_skills: int = 30
    limit_execution_logs: int = 50
    include_deleted: bool = False
    suggested_tags: int = 5

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.limit_tags", self.limit_tags, 1, 10000, int)
        _check_range(errors, "search.limit_facts", self.limit_facts, 1, 10000, int)
        _check_range(errors, "search.limit_resources", self.limit_resources, 1, 10000, int)
        _check_range(errors, "search.limit_skills", self.limit_skills, 1, 10000, int)
        _check_range(errors, "search.limit_execution_logs", self.limit_execution_logs,
                     1, 10000, int)
        return errors


@dataclass
class SkillsConfig:
    """Where skill markdown files live."""
    skills_dir: str = ".factctl/skills"

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        if not self.skills_dir.strip():
            return ["skills.skills_dir: must not be empty"]
        return []


@dataclass
class MaintenanceConfig:
    """Maintenance task configuration (intervals in seconds)."""
    staleness_max_age_hours: int = 168
    fact_auto_verify_after_days: Optional[int] = None
    fact_expiration_days: Optional[int] = None
    soft_delete_retention_days: int = 7
    auto_prune_orphan_tags: bool = False
    interval_auto_verify: int = 60 * 60
    interval_expire_facts: int = 6 * 60 * 60
    interval_prune_tags: int = 24 * 60 * 60
    interval_hard_delete: int = 24 * 60 * 60
    interval_staleness_sweep: int = 6 * 60 * 60

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "maintenance.staleness_max_age_hours",
                     self.staleness_max_age_hours, 1, 24 * 365 * 10, int)
        _check_range(errors, "maintenance.soft_delete_retention_days",
                     self.soft_delete_retention_days, 1, 3650, int)
        return errors


@dataclass
class FactctlConfig:
    """Top-level factctl configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    freshness: FreshnessConfig = field(default_factory=FreshnessConfig)
    tags: TagRelationsConfig = field(default_factory=TagRelationsConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    skills: SkillsConfig = field(default_factory=SkillsConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> FactctlConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "freshness" in d:
            kwargs["freshness"] = FreshnessConfig(hours=d["freshness"])
        if "tags" in d:
            kwargs["tags"] = TagRelationsConfig(**d["tags"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "skills" in d:
            kwargs["skills"] = SkillsConfig(**d["skills"])
        if "maintenance" in d:
            kwargs["maintenance"] = MaintenanceConfig(**d["maintenance"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.freshness.validate())
        errors.extend(self.tags.validate())
        errors.extend(self.search.validate())
        errors.extend(self.skills.validate())
        errors.extend(self.maintenance.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> FactctlConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        FactctlConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = FactctlConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = FactctlConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = FactctlConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg


# ---------------------------------------------------------------------------
# Store config schema (discoverable keys)
# ---------------------------------------------------------------------------

_MAINT = MaintenanceConfig()
_SEARCH = SearchConfig()

CONFIG_SCHEMA: Dict[str, Dict[str, Any]] = {
    "skills_dir": {
        "description": "Override skills directory path",
        "type": "string", "default": None,
    },
    **{
        key: {
            "description": f"Hours before {category} resources are considered stale",
            "type": "number", "default": DEFAULT_FRESHNESS_HOURS[category],
        }
        for category, key in FRESHNESS_KEYS.items()
    },
    "search_limit_tags": {
        "description": "Default limit for list_tags results",
        "type": "number", "default": _SEARCH.limit_tags,
    },
    "search_limit_facts": {
        "description": "Default limit for search_facts results",
        "type": "number", "default": _SEARCH.limit_facts,
    },
    "search_limit_resources": {
        "description": "Default limit for search_resources results",
        "type": "number", "default": _SEARCH.limit_resources,
    },
    "search_limit_skills": {
        "description": "Default limit for search_skills results",
        "type": "number", "default": _SEARCH.limit_skills,
    },
    "search_limit_execution_logs": {
        "description": "Default limit for search_execution_logs results",
        "type": "number", "default": _SEARCH.limit_execution_logs,
    },
    "search_include_deleted": {
        "description": "Include soft-deleted items in search results",
        "type": "boolean", "default": False,
    },
    "tag_synonyms": {
        "description": "JSON object mapping alias tags to canonical tags for query expansion",
        "type": "json", "default": "{}",
    },
    "tag_hierarchies": {
        "description": "JSON object mapping child tags to parent tags for hierarchical search",
        "type": "json", "default": "{}",
    },
    "required_tags": {
        "description": "JSON object mapping entity types to required tag arrays for creation",
        "type": "json", "default": "{}",
    },
    "fact_auto_verify_after_days": {
        "description": "Days after which retrieved, uncontested facts are auto-verified (unset = disabled)",
        "type": "number", "default": None,
    },
    "fact_expiration_days": {
        "description": "Days after which unverified facts are soft-deleted (unset = disabled)",
        "type": "number", "default": None,
    },
    "auto_prune_orphan_tags": {
        "description": "Automatically prune tags not linked to any entities",
        "type": "boolean", "default": False,
    },
    "soft_delete_retention_days": {
        "description": "Days to retain soft-deleted items before hard deletion",
        "type": "number", "default": _MAINT.soft_delete_retention_days,
    },
    "staleness_max_age_hours": {
        "description": "Global cutoff used by the maintenance staleness sweep",
        "type": "number", "default": _MAINT.staleness_max_age_hours,
    },
    "worker_interval_auto_verify": {
        "description": "Seconds between auto-verify runs",
        "type": "number", "default": _MAINT.interval_auto_verify,
    },
    "worker_interval_expire_facts": {
        "description": "Seconds between fact expiration runs",
        "type": "number", "default": _MAINT.interval_expire_facts,
    },
    "worker_interval_prune_tags": {
        "description": "Seconds between orphan tag pruning runs",
        "type": "number", "default": _MAINT.interval_prune_tags,
    },
    "worker_interval_hard_delete": {
        "description": "Seconds between hard deletion runs",
        "type": "number", "default": _MAINT.interval_hard_delete,
    },
    "worker_interval_staleness_sweep": {
        "description": "Seconds between staleness sweeps",
        "type": "number", "default": _MAINT.interval_staleness_sweep,
    },
}


def validate_config_value(key: str, value: str) -> Optional[str]:
    """Check a value before it is written to the store.

    Returns an error message, or None when the value is acceptable.
    Unknown keys are accepted.
    """
    schema = CONFIG_SCHEMA.get(key)
    if schema is None:
        return None
    typ = schema["type"]
    if typ == "number":
        try:
            num = float(value)
        except (TypeError, ValueError):
            return f"{key} must be a number"
        if math.isnan(num) or num < 0:
            return f"{key} must be non-negative"
    elif typ == "boolean":
        if value not in ("true", "false"):
            return f"{key} must be 'true' or 'false'"
    elif typ == "json":
        try:
            json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return f"{key} must be valid JSON"
    return None


def maintenance_from_kv(values: Optional[Mapping[str, str]] = None) -> MaintenanceConfig:
    """Build maintenance settings from store config, falling back to defaults."""
    values = values or {}
    d = MaintenanceConfig()

    def _int(key: str, default: Optional[int]) -> Optional[int]:
        parsed = parse_number_config(values.get(key), None)
        if parsed is None or parsed <= 0:
            return default
        return int(parsed)

    return MaintenanceConfig(
        staleness_max_age_hours=_int("staleness_max_age_hours", d.staleness_max_age_hours),
        fact_auto_verify_after_days=_int("fact_auto_verify_after_days", None),
        fact_expiration_days=_int("fact_expiration_days", None),
        soft_delete_retention_days=max(
            1, _int("soft_delete_retention_days", d.soft_delete_retention_days)
        ),
        auto_prune_orphan_tags=parse_bool_config(values.get("auto_prune_orphan_tags"), False),
        interval_auto_verify=_int("worker_interval_auto_verify", d.interval_auto_verify),
        interval_expire_facts=_int("worker_interval_expire_facts", d.interval_expire_facts),
        interval_prune_tags=_int("worker_interval_prune_tags", d.interval_prune_tags),
        interval_hard_delete=_int("worker_interval_hard_delete", d.interval_hard_delete),
        interval_staleness_sweep=_int(
            "worker_interval_staleness_sweep", d.interval_staleness_sweep
        ),
    )


def initialize_config_defaults(store) -> List[str]:
    """Write schema defaults for keys the store does not hold yet.

    Keys whose default is None (disabled features) are left unset.
    Returns the list of keys written.
    """
    existing = store.all_config()
    written: List[str] = []
    for key, schema in CONFIG_SCHEMA.items():
        default = schema["default"]
        if default is None or key in existing:
            continue
        if isinstance(default, bool):
            value = "true" if default else "false"
        else:
            value = str(default)
        store.set_config(key, value)
        written.append(key)
    if written:
        logger.info("Initialized %d config defaults", len(written))
    return written
