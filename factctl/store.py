"""
Knowledge Store — SQLite Persistent Backend

Tables:
    config           - Key/value settings (tag relations, thresholds, seed version)
    tags             - Shared taxonomy with usage counters
    facts            - Atomic statements, soft-deletable
    resources        - Tracked artifacts with snapshot and snapshot digest
    skills           - Markdown procedures (body lives in <skills_dir>/<name>.md)
    fact_tags, resource_tags, skill_tags
    skill_skills     - Skill -> skill relations (relation_type)
    skill_resources  - Skill -> resource links with the digest captured at link time
    skill_facts      - Skill -> fact links
    execution_logs   - Recorded command runs (execution_log_tags)
    worker_state     - Last outcome of each maintenance task
    schema_meta      - Schema identity

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
Multi-step engine passes (seed, maintenance, staleness) run inside
``transaction()`` so they commit or roll back as one unit.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from factctl.config import (
    FreshnessConfig,
    SearchConfig,
    SkillsConfig,
    TagRelationsConfig,
    parse_bool_config,
    parse_json_config,
    parse_number_config,
    validate_config_value,
)
from factctl.tags import expand_tags, validate_required_tags
from factctl.types import (
    CONTEXT_PREVIEW_CHARS,
    VALID_SOURCE_TYPES,
    ExecutionLog,
    Fact,
    KnowledgeContext,
    Resource,
    SearchResult,
    Skill,
    SkillResourceLink,
    Tag,
    _now_iso,
    content_hash,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SEED_VERSION_KEY = "system_seed_version"


class NotFoundError(KeyError):
    """Raised when a lookup that must resolve finds nothing."""

    pass


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS config (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tags (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    usage_count INTEGER NOT NULL DEFAULT 0,
    system_id   TEXT UNIQUE,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS facts (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    content           TEXT NOT NULL,
    source            TEXT,
    source_type       TEXT,
    verified          INTEGER NOT NULL DEFAULT 0,
    retrieval_count   INTEGER NOT NULL DEFAULT 0,
    last_retrieved_at TEXT,
    system_id         TEXT UNIQUE,
    system_hash       TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    deleted_at        TEXT
);

CREATE TABLE IF NOT EXISTS fact_tags (
    fact_id INTEGER NOT NULL REFERENCES facts(id) ON DELETE CASCADE,
    tag_id  INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (fact_id, tag_id)
);

CREATE TABLE IF NOT EXISTS resources (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    uri              TEXT NOT NULL UNIQUE,
    type             TEXT NOT NULL,
    description      TEXT NOT NULL DEFAULT '',
    snapshot         TEXT,
    snapshot_hash    TEXT,
    retrieval_method TEXT,                -- JSON object
    last_verified_at TEXT,
    retrieval_count  INTEGER NOT NULL DEFAULT 0,
    system_id        TEXT UNIQUE,
    system_hash      TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    deleted_at       TEXT
);

CREATE TABLE IF NOT EXISTS resource_tags (
    resource_id INTEGER NOT NULL REFERENCES resources(id) ON DELETE CASCADE,
    tag_id      INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (resource_id, tag_id)
);

CREATE TABLE IF NOT EXISTS skills (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    name              TEXT NOT NULL UNIQUE,
    title             TEXT NOT NULL,
    description       TEXT NOT NULL DEFAULT '',
    file_path         TEXT NOT NULL,
    content_hash      TEXT,
    retrieval_count   INTEGER NOT NULL DEFAULT 0,
    last_retrieved_at TEXT,
    needs_review      INTEGER NOT NULL DEFAULT 0,
    system_id         TEXT UNIQUE,
    system_hash       TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    deleted_at        TEXT
);

CREATE TABLE IF NOT EXISTS skill_tags (
    skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    tag_id   INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (skill_id, tag_id)
);

CREATE TABLE IF NOT EXISTS skill_skills (
    skill_id            INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    referenced_skill_id INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    relation_type       TEXT NOT NULL,
    created_at          TEXT NOT NULL,
    PRIMARY KEY (skill_id, referenced_skill_id)
);

CREATE TABLE IF NOT EXISTS skill_resources (
    skill_id              INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    resource_id           INTEGER NOT NULL REFERENCES resources(id) ON DELETE CASCADE,
    snapshot_hash_at_link TEXT,
    created_at            TEXT NOT NULL,
    PRIMARY KEY (skill_id, resource_id)
);

CREATE TABLE IF NOT EXISTS skill_facts (
    skill_id   INTEGER NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    fact_id    INTEGER NOT NULL REFERENCES facts(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (skill_id, fact_id)
);

CREATE TABLE IF NOT EXISTS execution_logs (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    command           TEXT NOT NULL,
    working_directory TEXT,
    context           TEXT,
    output            TEXT,
    exit_code         INTEGER,
    success           INTEGER NOT NULL,
    duration_ms       INTEGER,
    skill_name        TEXT,
    created_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS execution_log_tags (
    execution_log_id INTEGER NOT NULL REFERENCES execution_logs(id) ON DELETE CASCADE,
    tag_id           INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (execution_log_id, tag_id)
);

CREATE TABLE IF NOT EXISTS worker_state (
    task_name       TEXT PRIMARY KEY,
    last_run_at     TEXT,
    last_status     TEXT,            -- success | skipped | error
    last_message    TEXT,
    items_processed INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_facts_content ON facts(content);
CREATE INDEX IF NOT EXISTS idx_facts_source_type ON facts(source_type);
CREATE INDEX IF NOT EXISTS idx_facts_deleted ON facts(deleted_at);
CREATE INDEX IF NOT EXISTS idx_resources_type ON resources(type);
CREATE INDEX IF NOT EXISTS idx_resources_deleted ON resources(deleted_at);
CREATE INDEX IF NOT EXISTS idx_skills_deleted ON skills(deleted_at);
CREATE INDEX IF NOT EXISTS idx_skill_resources_res ON skill_resources(resource_id);
CREATE INDEX IF NOT EXISTS idx_logs_command ON execution_logs(command);
CREATE INDEX IF NOT EXISTS idx_logs_success ON execution_logs(success);
CREATE INDEX IF NOT EXISTS idx_logs_skill ON execution_logs(skill_name);
CREATE INDEX IF NOT EXISTS idx_logs_created ON execution_logs(created_at);
"""

# entity -> (table, junction, junction key column)
_TAGGED = {
    "facts": ("facts", "fact_tags", "fact_id"),
    "resources": ("resources", "resource_tags", "resource_id"),
    "skills": ("skills", "skill_tags", "skill_id"),
    "execution_logs": ("execution_logs", "execution_log_tags", "execution_log_id"),
}

_FACT_ORDER = {
    "recent": "f.updated_at DESC, f.id DESC",
    "oldest": "f.updated_at ASC, f.id ASC",
    "usage": "f.retrieval_count DESC, f.id DESC",
}

_LOG_ORDER = {
    "recent": "l.created_at DESC, l.id DESC",
    "oldest": "l.created_at ASC, l.id ASC",
}

_TAG_ORDER = {
    "usage": "usage_count DESC, name ASC",
    "name": "name ASC",
    "recent": "created_at DESC, id DESC",
}

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


# ---------------------------------------------------------------------------
# KnowledgeStore
# ---------------------------------------------------------------------------

class KnowledgeStore:
    """
    SQLite-backed store for tags, facts, resources and skills.

    Thread-safe via explicit lock. Skill bodies are plain markdown files
    under the skills directory; the database keeps their last-known digest.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        skills_dir: Optional[str] = None,
        freshness_overrides: Optional[Dict[str, float]] = None,
    ):
        """Open (and create if needed) the knowledge database.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            skills_dir: Runtime override for the skills directory. Wins over
                the ``skills_dir`` config key.
            freshness_overrides: Runtime per-category thresholds (hours).
                Win over ``freshness_*`` config keys.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        self._skills_dir_override = skills_dir
        self._freshness_overrides = dict(freshness_overrides or {})
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'factctl')",
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', ?)",
            (_now_iso(),),
        )
        self._conn.commit()
        logger.info("KnowledgeStore initialized: %s", db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the store lock and yield the connection; commit or roll back."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

    # -- Config ------------------------------------------------------------

    def get_config(self, key: str) -> Optional[str]:
        """Read one config value (None when unset)."""
        with self._lock:
            return self._get_config(key)

    def set_config(self, key: str, value: str) -> None:
        """Write one config value.

        Raises:
            ValueError: If the value does not fit the key's schema type.
        """
        value = str(value)
        error = validate_config_value(key, value)
        if error:
            raise ValueError(error)
        with self._lock:
            self._set_config(key, value)
            self._conn.commit()

    def delete_config(self, key: str) -> bool:
        """Remove a config key. Returns True if it existed."""
        with self._lock:
            cur = self._conn.execute("DELETE FROM config WHERE key=?", (key,))
            self._conn.commit()
            return cur.rowcount > 0

    def all_config(self) -> Dict[str, str]:
        """All config key/value pairs."""
        with self._lock:
            return self._all_config()

    def freshness_config(self, overrides: Optional[Dict[str, float]] = None) -> FreshnessConfig:
        """Effective thresholds: call overrides > store overrides > config > defaults."""
        merged = {**self._freshness_overrides, **(overrides or {})}
        return FreshnessConfig.from_kv(self.all_config(), merged)

    def tag_relations(self) -> TagRelationsConfig:
        """Synonym and hierarchy maps read from config."""
        return TagRelationsConfig.from_kv(self.all_config())

    def expand_tags(self, tags: Sequence[str]) -> List[str]:
        """Expand tags through the configured synonyms and hierarchies."""
        return expand_tags(tags, self.tag_relations())

    @property
    def skills_dir(self) -> Path:
        """Runtime override > ``skills_dir`` config key > default."""
        if self._skills_dir_override:
            return Path(self._skills_dir_override)
        configured = self.get_config("skills_dir")
        return Path(configured or SkillsConfig().skills_dir)

    # -- Tags --------------------------------------------------------------

    def get_or_create_tags(self, names: Sequence[str]) -> Dict[str, int]:
        """Resolve tag names to ids, creating missing tags."""
        with self._lock:
            result = self._get_or_create_tags(names)
            self._conn.commit()
            return result

    def create_tags(self, tags: Sequence[Dict[str, str]]) -> List[Tag]:
        """Create tags with explicit descriptions. Existing names are kept as is."""
        if not tags:
            return []
        now = _now_iso()
        with self._lock:
            for t in tags:
                name = (t.get("name") or "").strip()
                if not name:
                    raise ValueError("Tag name must not be empty")
                self._conn.execute(
                    "INSERT OR IGNORE INTO tags (name, description, created_at, updated_at) "
                    "VALUES (?,?,?,?)",
                    (name, t.get("description") or "", now, now),
                )
            self._conn.commit()
            names = [t["name"].strip() for t in tags]
            rows = self._conn.execute(
                f"SELECT * FROM tags WHERE name IN ({_placeholders(names)}) ORDER BY id",
                names,
            ).fetchall()
            return [self._row_to_tag(r) for r in rows]

    def update_tag_descriptions(self, updates: Dict[str, str]) -> int:
        """Set descriptions by tag name. Returns number of tags changed."""
        count = 0
        with self._lock:
            for name, description in updates.items():
                cur = self._conn.execute(
                    "UPDATE tags SET description=?, updated_at=? WHERE name=?",
                    (description, _now_iso(), name),
                )
                count += cur.rowcount
            self._conn.commit()
        return count

    def get_tag(self, name: str) -> Optional[Tag]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM tags WHERE name=?", (name,)).fetchone()
            return self._row_to_tag(row) if row else None

    def list_tags(
        self,
        filter: Optional[str] = None,
        order_by: str = "usage",
        limit: Optional[int] = None,
    ) -> List[Tag]:
        """List tags, optionally filtered by a name substring."""
        limit = limit or self._search_limit("tags")
        order = _TAG_ORDER.get(order_by, _TAG_ORDER["usage"])
        with self._lock:
            if filter:
                rows = self._conn.execute(
                    f"SELECT * FROM tags WHERE name LIKE ? ORDER BY {order} LIMIT ?",
                    (f"%{filter}%", limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT * FROM tags ORDER BY {order} LIMIT ?", (limit,),
                ).fetchall()
            return [self._row_to_tag(r) for r in rows]

    def prune_orphan_tags(self, dry_run: bool = False) -> Dict[str, Any]:
        """Delete tags linked to no fact, resource, skill or execution log."""
        with self._lock:
            result = self._prune_orphan_tags(dry_run)
            self._conn.commit()
            return result

    # -- Facts -------------------------------------------------------------

    def submit_facts(self, facts: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Insert facts, or refresh metadata of facts with identical content.

        Each entry: content, tags, source, source_type, verified.

        Raises:
            ValueError: Empty content, bad source_type or missing required tags.
        """
        if not facts:
            return {"created": 0, "updated": 0, "facts": []}
        required = parse_json_config(self.get_config("required_tags"), {})
        for f in facts:
            if not (f.get("content") or "").strip():
                raise ValueError("Fact content must not be empty")
            st = f.get("source_type")
            if st is not None and st not in VALID_SOURCE_TYPES:
                raise ValueError(f"Invalid source type: {st!r}")
            valid, missing = validate_required_tags("facts", f.get("tags") or [], required)
            if not valid:
                raise ValueError(f"Required tags missing for fact: {', '.join(missing)}")

        created = updated = 0
        out: List[Dict[str, Any]] = []
        now = _now_iso()
        with self._lock:
            tag_map = self._get_or_create_tags(
                [t for f in facts for t in (f.get("tags") or [])]
            )
            for f in facts:
                content = f["content"]
                row = self._conn.execute(
                    "SELECT id FROM facts WHERE content=? ORDER BY id LIMIT 1", (content,),
                ).fetchone()
                if row is not None:
                    fact_id = row["id"]
                    self._conn.execute(
                        "UPDATE facts SET source=?, source_type=?, verified=?, updated_at=? "
                        "WHERE id=?",
                        (f.get("source"), f.get("source_type"),
                         int(bool(f.get("verified", False))), now, fact_id),
                    )
                    self._link_tags("facts", fact_id, f.get("tags") or [], tag_map)
                    updated += 1
                else:
                    cur = self._conn.execute(
                        "INSERT INTO facts (content, source, source_type, verified, "
                        "created_at, updated_at) VALUES (?,?,?,?,?,?)",
                        (content, f.get("source"), f.get("source_type"),
                         int(bool(f.get("verified", False))), now, now),
                    )
                    fact_id = cur.lastrowid
                    self._link_tags("facts", fact_id, f.get("tags") or [], tag_map)
                    created += 1
                out.append({"id": fact_id, "content": content})
            self._conn.commit()
        logger.debug("submit_facts: created=%d updated=%d", created, updated)
        return {"created": created, "updated": updated, "facts": out}

    def search_facts(
        self,
        tags: Optional[Sequence[str]] = None,
        query: Optional[str] = None,
        verified_only: bool = False,
        source_type: Optional[str] = None,
        order_by: str = "recent",
        limit: Optional[int] = None,
    ) -> SearchResult:
        """Search facts by (expanded) tags and content substring.

        Matching tags get their usage_count bumped; returned facts get their
        retrieval_count bumped. No match returns suggested tags instead.
        """
        limit = limit or self._search_limit("facts")
        include_deleted = self._include_deleted()
        expanded = self.expand_tags(tags or [])
        with self._lock:
            conditions: List[str] = []
            params: List[Any] = []
            join = ""
            tag_ids: List[int] = []
            if tags:
                tag_ids = self._tag_ids(expanded)
                if not tag_ids:
                    return SearchResult(
                        items=[], suggested_tags=self._suggested_tags(5),
                        expanded_tags=expanded,
                    )
                join = "JOIN fact_tags ft ON ft.fact_id = f.id"
                conditions.append(f"ft.tag_id IN ({_placeholders(tag_ids)})")
                params.extend(tag_ids)
            if not include_deleted:
                conditions.append("f.deleted_at IS NULL")
            if query:
                conditions.append("f.content LIKE ?")
                params.append(f"%{query}%")
            if verified_only:
                conditions.append("f.verified=1")
            if source_type:
                conditions.append("f.source_type=?")
                params.append(source_type)
            where = " AND ".join(conditions) if conditions else "1=1"
            order = _FACT_ORDER.get(order_by, _FACT_ORDER["recent"])
            rows = self._conn.execute(
                f"SELECT DISTINCT f.* FROM facts f {join} WHERE {where} "
                f"ORDER BY {order} LIMIT ?",
                params + [limit],
            ).fetchall()

            self._increment_tag_usage(tag_ids)
            if rows:
                ids = [r["id"] for r in rows]
                self._conn.execute(
                    f"UPDATE facts SET retrieval_count=retrieval_count+1, "
                    f"last_retrieved_at=? WHERE id IN ({_placeholders(ids)})",
                    [_now_iso()] + ids,
                )
            self._conn.commit()
            items = [self._row_to_fact(r) for r in rows]
            suggested = [] if items else self._suggested_tags(5)
        return SearchResult(items=items, suggested_tags=suggested, expanded_tags=expanded)

    def get_fact(self, fact_id: int) -> Optional[Fact]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM facts WHERE id=?", (fact_id,)).fetchone()
            return self._row_to_fact(row) if row else None

    def update_fact(
        self,
        fact_id: Optional[int] = None,
        content_match: Optional[str] = None,
        *,
        content: Optional[str] = None,
        source: Optional[str] = None,
        source_type: Optional[str] = None,
        verified: Optional[bool] = None,
        tags: Optional[Sequence[str]] = None,
        append_tags: Optional[Sequence[str]] = None,
        remove_tags: Optional[Sequence[str]] = None,
    ) -> Fact:
        """Patch a fact found by id or by exact content.

        ``tags`` replaces the tag set; otherwise ``append_tags`` and
        ``remove_tags`` are applied.

        Raises:
            NotFoundError: If no fact matches.
        """
        if source_type is not None and source_type not in VALID_SOURCE_TYPES:
            raise ValueError(f"Invalid source type: {source_type!r}")
        with self._lock:
            if fact_id is not None:
                row = self._conn.execute("SELECT id FROM facts WHERE id=?", (fact_id,)).fetchone()
            elif content_match is not None:
                row = self._conn.execute(
                    "SELECT id FROM facts WHERE content=? ORDER BY id LIMIT 1", (content_match,),
                ).fetchone()
            else:
                row = None
            if row is None:
                raise NotFoundError(
                    f"Fact {fact_id}" if fact_id is not None else f"Fact {content_match!r}"
                )
            fid = row["id"]
            sets = ["updated_at=?"]
            params: List[Any] = [_now_iso()]
            for col, val in (("content", content), ("source", source),
                             ("source_type", source_type)):
                if val is not None:
                    sets.append(f"{col}=?")
                    params.append(val)
            if verified is not None:
                sets.append("verified=?")
                params.append(int(verified))
            self._conn.execute(
                f"UPDATE facts SET {', '.join(sets)} WHERE id=?", params + [fid],
            )
            if tags is not None:
                self._conn.execute("DELETE FROM fact_tags WHERE fact_id=?", (fid,))
                self._link_tags("facts", fid, tags)
            else:
                if append_tags:
                    self._link_tags("facts", fid, append_tags)
                if remove_tags:
                    self._unlink_tags("facts", fid, remove_tags)
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM facts WHERE id=?", (fid,)).fetchone()
            return self._row_to_fact(row)

    def verify_facts(self, ids: Sequence[int]) -> int:
        """Mark facts verified. Returns rows changed."""
        if not ids:
            return 0
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE facts SET verified=1, updated_at=? WHERE id IN ({_placeholders(ids)})",
                [_now_iso()] + list(ids),
            )
            self._conn.commit()
            return cur.rowcount

    def verify_facts_by_tags(self, tags: Sequence[str], require_all: bool = False) -> List[int]:
        """Verify facts carrying any (or all) of the given tags. Returns their ids."""
        with self._lock:
            tag_ids = self._tag_ids(tags)
            if not tag_ids:
                return []
            if require_all:
                rows = self._conn.execute(
                    f"SELECT fact_id FROM fact_tags WHERE tag_id IN ({_placeholders(tag_ids)}) "
                    f"GROUP BY fact_id HAVING COUNT(DISTINCT tag_id)=?",
                    tag_ids + [len(tag_ids)],
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT DISTINCT fact_id FROM fact_tags "
                    f"WHERE tag_id IN ({_placeholders(tag_ids)})",
                    tag_ids,
                ).fetchall()
            fact_ids = sorted(r["fact_id"] for r in rows)
            if fact_ids:
                self._conn.execute(
                    f"UPDATE facts SET verified=1, updated_at=? "
                    f"WHERE id IN ({_placeholders(fact_ids)})",
                    [_now_iso()] + fact_ids,
                )
            self._conn.commit()
            return fact_ids

    def delete_facts(
        self,
        ids: Optional[Sequence[int]] = None,
        tags: Optional[Sequence[str]] = None,
        older_than: Optional[str] = None,
        unverified_only: bool = False,
        soft: bool = True,
    ) -> int:
        """Delete live facts matching every given filter.

        At least one filter is required; with none, nothing is deleted.
        """
        conditions = ["deleted_at IS NULL"]
        params: List[Any] = []
        with self._lock:
            if ids:
                conditions.append(f"id IN ({_placeholders(ids)})")
                params.extend(ids)
            if tags:
                tag_ids = self._tag_ids(tags)
                if not tag_ids:
                    return 0
                conditions.append(
                    f"id IN (SELECT fact_id FROM fact_tags "
                    f"WHERE tag_id IN ({_placeholders(tag_ids)}))"
                )
                params.extend(tag_ids)
            if older_than:
                conditions.append("created_at < ?")
                params.append(older_than)
            if unverified_only:
                conditions.append("verified=0")
            if len(conditions) == 1:
                return 0
            where = " AND ".join(conditions)
            if soft:
                cur = self._conn.execute(
                    f"UPDATE facts SET deleted_at=? WHERE {where}", [_now_iso()] + params,
                )
            else:
                cur = self._conn.execute(f"DELETE FROM facts WHERE {where}", params)
            self._conn.commit()
            return cur.rowcount

    def restore_facts(self, ids: Sequence[int]) -> int:
        """Clear deleted_at on soft-deleted facts."""
        if not ids:
            return 0
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE facts SET deleted_at=NULL "
                f"WHERE id IN ({_placeholders(ids)}) AND deleted_at IS NOT NULL",
                list(ids),
            )
            self._conn.commit()
            return cur.rowcount

    # -- Resources ---------------------------------------------------------

    def add_resources(self, resources: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Register resources. Existing URIs are reported, not changed.

        Each entry: uri, type, description, snapshot, retrieval_method, tags.
        A resource added with a snapshot counts as verified now.
        """
        if not resources:
            return {"created": 0, "resources": []}
        required = parse_json_config(self.get_config("required_tags"), {})
        for r in resources:
            if not (r.get("uri") or "").strip():
                raise ValueError("Resource uri must not be empty")
            valid, missing = validate_required_tags("resources", r.get("tags") or [], required)
            if not valid:
                raise ValueError(
                    f"Required tags missing for resource {r['uri']}: {', '.join(missing)}"
                )

        created = 0
        out: List[Dict[str, Any]] = []
        now = _now_iso()
        with self._lock:
            tag_map = self._get_or_create_tags(
                [t for r in resources for t in (r.get("tags") or [])]
            )
            for r in resources:
                row = self._conn.execute(
                    "SELECT id, snapshot FROM resources WHERE uri=?", (r["uri"],),
                ).fetchone()
                if row is not None:
                    out.append({"id": row["id"], "uri": r["uri"],
                                "has_snapshot": row["snapshot"] is not None})
                    continue
                snapshot = r.get("snapshot")
                method = r.get("retrieval_method")
                cur = self._conn.execute(
                    "INSERT INTO resources (uri, type, description, snapshot, snapshot_hash, "
                    "retrieval_method, last_verified_at, created_at, updated_at) "
                    "VALUES (?,?,?,?,?,?,?,?,?)",
                    (
                        r["uri"], r.get("type") or "file", r.get("description") or "",
                        snapshot, content_hash(snapshot) if snapshot else None,
                        json.dumps(method) if method else None,
                        now if snapshot else None, now, now,
                    ),
                )
                self._link_tags("resources", cur.lastrowid, r.get("tags") or [], tag_map)
                created += 1
                out.append({"id": cur.lastrowid, "uri": r["uri"], "has_snapshot": bool(snapshot)})
            self._conn.commit()
        return {"created": created, "resources": out}

    def get_resource(
        self, resource_id: Optional[int] = None, uri: Optional[str] = None,
    ) -> Optional[Resource]:
        """Fetch one resource by id or uri and bump its retrieval_count."""
        with self._lock:
            if resource_id is not None:
                row = self._conn.execute(
                    "SELECT * FROM resources WHERE id=?", (resource_id,),
                ).fetchone()
            elif uri is not None:
                row = self._conn.execute("SELECT * FROM resources WHERE uri=?", (uri,)).fetchone()
            else:
                return None
            if row is None:
                return None
            self._conn.execute(
                "UPDATE resources SET retrieval_count=retrieval_count+1 WHERE id=?", (row["id"],),
            )
            self._conn.commit()
            resource = self._row_to_resource(row)
            resource.retrieval_count += 1
            return resource

    def search_resources(
        self,
        tags: Optional[Sequence[str]] = None,
        uri_contains: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        """Search resources by (expanded) tags, uri substring and type."""
        limit = limit or self._search_limit("resources")
        include_deleted = self._include_deleted()
        expanded = self.expand_tags(tags or [])
        with self._lock:
            conditions: List[str] = []
            params: List[Any] = []
            join = ""
            tag_ids: List[int] = []
            if tags:
                tag_ids = self._tag_ids(expanded)
                if not tag_ids:
                    return SearchResult(
                        items=[], suggested_tags=self._suggested_tags(5),
                        expanded_tags=expanded,
                    )
                join = "JOIN resource_tags rt ON rt.resource_id = r.id"
                conditions.append(f"rt.tag_id IN ({_placeholders(tag_ids)})")
                params.extend(tag_ids)
            if not include_deleted:
                conditions.append("r.deleted_at IS NULL")
            if uri_contains:
                conditions.append("r.uri LIKE ?")
                params.append(f"%{uri_contains}%")
            if type:
                conditions.append("r.type=?")
                params.append(type)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT DISTINCT r.* FROM resources r {join} WHERE {where} "
                f"ORDER BY r.created_at DESC, r.id DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            self._increment_tag_usage(tag_ids)
            self._conn.commit()
            items = [self._row_to_resource(r) for r in rows]
            suggested = [] if items else self._suggested_tags(5)
        return SearchResult(items=items, suggested_tags=suggested, expanded_tags=expanded)

    def update_resource_snapshot(
        self,
        snapshot: str,
        resource_id: Optional[int] = None,
        uri: Optional[str] = None,
    ) -> bool:
        """Replace a resource snapshot, recompute its digest, mark verified now."""
        now = _now_iso()
        with self._lock:
            if resource_id is not None:
                where, key = "id=?", resource_id
            elif uri is not None:
                where, key = "uri=?", uri
            else:
                return False
            cur = self._conn.execute(
                f"UPDATE resources SET snapshot=?, snapshot_hash=?, last_verified_at=?, "
                f"updated_at=? WHERE {where}",
                (snapshot, content_hash(snapshot), now, now, key),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def mark_resources_refreshed(self, ids: Sequence[int]) -> Dict[str, Any]:
        """Set last_verified_at=now; report skills linked to those resources."""
        if not ids:
            return {"affected": 0, "skills_to_review": []}
        with self._lock:
            self._conn.execute(
                f"UPDATE resources SET last_verified_at=? WHERE id IN ({_placeholders(ids)})",
                [_now_iso()] + list(ids),
            )
            rows = self._conn.execute(
                f"SELECT DISTINCT s.id, s.name FROM skill_resources sr "
                f"JOIN skills s ON s.id = sr.skill_id "
                f"WHERE sr.resource_id IN ({_placeholders(ids)}) ORDER BY s.id",
                list(ids),
            ).fetchall()
            self._conn.commit()
        return {
            "affected": len(ids),
            "skills_to_review": [{"id": r["id"], "name": r["name"]} for r in rows],
        }

    def delete_resources(
        self,
        ids: Optional[Sequence[int]] = None,
        uris: Optional[Sequence[str]] = None,
        soft: bool = True,
    ) -> int:
        """Delete live resources by id or uri."""
        selectors: List[str] = []
        params: List[Any] = []
        if ids:
            selectors.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        if uris:
            selectors.append(f"uri IN ({_placeholders(uris)})")
            params.extend(uris)
        if not selectors:
            return 0
        where = f"deleted_at IS NULL AND ({' OR '.join(selectors)})"
        with self._lock:
            if soft:
                cur = self._conn.execute(
                    f"UPDATE resources SET deleted_at=? WHERE {where}", [_now_iso()] + params,
                )
            else:
                cur = self._conn.execute(f"DELETE FROM resources WHERE {where}", params)
            self._conn.commit()
            return cur.rowcount

    def restore_resources(self, ids: Sequence[int]) -> int:
        """Clear deleted_at on soft-deleted resources."""
        if not ids:
            return 0
        with self._lock:
            cur = self._conn.execute(
                f"UPDATE resources SET deleted_at=NULL "
                f"WHERE id IN ({_placeholders(ids)}) AND deleted_at IS NOT NULL",
                list(ids),
            )
            self._conn.commit()
            return cur.rowcount

    # -- Skills ------------------------------------------------------------

    def skill_path(self, name: str) -> Path:
        return self.skills_dir / f"{name}.md"

    def create_skill(
        self,
        name: str,
        title: str,
        content: str,
        description: str = "",
        tags: Optional[Sequence[str]] = None,
        references: Optional[Dict[str, Sequence[Any]]] = None,
    ) -> Skill:
        """Write the skill file and register it.

        ``references`` may hold ``skills`` (names), ``resources`` (ids) and
        ``facts`` (ids). Resource links capture the resource's current
        snapshot digest.

        Raises:
            ValueError: Empty name or a skill with this name already exists.
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("Skill name must not be empty")
        required = parse_json_config(self.get_config("required_tags"), {})
        valid, missing = validate_required_tags("skills", tags or [], required)
        if not valid:
            raise ValueError(f"Required tags missing for skill: {', '.join(missing)}")
        path = self.skill_path(name)
        with self._lock:
            if self._conn.execute("SELECT 1 FROM skills WHERE name=?", (name,)).fetchone():
                raise ValueError(f"Skill already exists: {name}")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            now = _now_iso()
            cur = self._conn.execute(
                "INSERT INTO skills (name, title, description, file_path, content_hash, "
                "created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
                (name, title or name, description or "", str(path),
                 content_hash(content), now, now),
            )
            skill_id = cur.lastrowid
            self._link_tags("skills", skill_id, tags or [])
            refs = references or {}
            self._link_skill_refs(
                skill_id,
                [(n, "related") for n in refs.get("skills") or []],
                refs.get("resources") or [],
                refs.get("facts") or [],
            )
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM skills WHERE id=?", (skill_id,)).fetchone()
            skill = self._row_to_skill(row)
        logger.info("Created skill %s at %s", name, path)
        return skill

    def get_skill(self, name: str) -> Optional[Skill]:
        """Fetch one skill by name and bump its retrieval_count."""
        with self._lock:
            row = self._conn.execute("SELECT * FROM skills WHERE name=?", (name,)).fetchone()
            if row is None:
                return None
            self._conn.execute(
                "UPDATE skills SET retrieval_count=retrieval_count+1, last_retrieved_at=? "
                "WHERE id=?",
                (_now_iso(), row["id"]),
            )
            self._conn.commit()
            skill = self._row_to_skill(row)
            skill.retrieval_count += 1
            return skill

    def read_skill_content(self, skill: Skill) -> Optional[str]:
        """Body of the skill file, or None when the file is missing."""
        path = Path(skill.file_path)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def update_skill(
        self,
        name: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        append_tags: Optional[Sequence[str]] = None,
        add_references: Optional[Dict[str, Sequence[Any]]] = None,
        remove_references: Optional[Dict[str, Sequence[Any]]] = None,
    ) -> Skill:
        """Patch skill metadata and references. Clears needs_review.

        Both reference dicts use the ``create_skill`` shape: ``skills``
        (names), ``resources`` (ids), ``facts`` (ids). Adding a resource that
        is already linked re-captures its current snapshot digest, which
        acknowledges a ``resource_changed`` report.

        Raises:
            NotFoundError: If the skill does not exist.
        """
        with self._lock:
            row = self._conn.execute("SELECT id FROM skills WHERE name=?", (name,)).fetchone()
            if row is None:
                raise NotFoundError(f"Skill not found: {name}")
            sid = row["id"]
            sets = ["updated_at=?", "needs_review=0"]
            params: List[Any] = [_now_iso()]
            if title:
                sets.append("title=?")
                params.append(title)
            if description is not None:
                sets.append("description=?")
                params.append(description)
            self._conn.execute(f"UPDATE skills SET {', '.join(sets)} WHERE id=?", params + [sid])
            if tags is not None:
                self._conn.execute("DELETE FROM skill_tags WHERE skill_id=?", (sid,))
                self._link_tags("skills", sid, tags)
            if append_tags:
                self._link_tags("skills", sid, append_tags)
            if remove_references:
                self._unlink_skill_refs(
                    sid,
                    remove_references.get("skills") or [],
                    remove_references.get("resources") or [],
                    remove_references.get("facts") or [],
                )
            if add_references:
                self._link_skill_refs(
                    sid,
                    [(n, "related") for n in add_references.get("skills") or []],
                    add_references.get("resources") or [],
                    add_references.get("facts") or [],
                )
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM skills WHERE id=?", (sid,)).fetchone()
            return self._row_to_skill(row)

    def sync_skill(self, name: str) -> Dict[str, Any]:
        """Re-hash the skill file and store the new digest if it changed.

        Raises:
            NotFoundError: If the skill does not exist.
            FileNotFoundError: If the skill file is missing.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT id, file_path, content_hash FROM skills WHERE name=?", (name,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Skill not found: {name}")
            path = Path(row["file_path"])
            if not path.is_file():
                raise FileNotFoundError(f"Skill file not found: {path}")
            new_hash = content_hash(path.read_text(encoding="utf-8"))
            if new_hash == row["content_hash"]:
                return {"name": name, "content_hash": new_hash, "updated": False}
            self._conn.execute(
                "UPDATE skills SET content_hash=?, updated_at=? WHERE id=?",
                (new_hash, _now_iso(), row["id"]),
            )
            self._conn.commit()
        logger.debug("Synced skill %s -> %s", name, new_hash)
        return {"name": name, "content_hash": new_hash, "updated": True}

    def link_skill(
        self,
        name: str,
        skills: Optional[Sequence[Tuple[str, str]]] = None,
        resources: Optional[Sequence[int]] = None,
        facts: Optional[Sequence[int]] = None,
    ) -> Dict[str, int]:
        """Link a skill to other skills (name, relation), resources and facts.

        Existing skill and fact links are left untouched; an existing
        resource link re-captures the resource's current snapshot digest.
        Unknown targets are ignored. Counts report new or re-captured links.

        Raises:
            NotFoundError: If the skill does not exist.
        """
        with self._lock:
            row = self._conn.execute("SELECT id FROM skills WHERE name=?", (name,)).fetchone()
            if row is None:
                raise NotFoundError(f"Skill not found: {name}")
            counts = self._link_skill_refs(row["id"], skills or [], resources or [], facts or [])
            self._conn.commit()
            return counts

    def search_skills(
        self,
        tags: Optional[Sequence[str]] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> SearchResult:
        """Search skills by (expanded) tags and name/title/description substring."""
        limit = limit or self._search_limit("skills")
        include_deleted = self._include_deleted()
        expanded = self.expand_tags(tags or [])
        with self._lock:
            conditions: List[str] = []
            params: List[Any] = []
            join = ""
            tag_ids: List[int] = []
            if tags:
                tag_ids = self._tag_ids(expanded)
                if not tag_ids:
                    return SearchResult(
                        items=[], suggested_tags=self._suggested_tags(5),
                        expanded_tags=expanded,
                    )
                join = "JOIN skill_tags st ON st.skill_id = s.id"
                conditions.append(f"st.tag_id IN ({_placeholders(tag_ids)})")
                params.extend(tag_ids)
            if not include_deleted:
                conditions.append("s.deleted_at IS NULL")
            if query:
                conditions.append("(s.name LIKE ? OR s.title LIKE ? OR s.description LIKE ?)")
                params.extend([f"%{query}%"] * 3)
            where = " AND ".join(conditions) if conditions else "1=1"
            rows = self._conn.execute(
                f"SELECT DISTINCT s.* FROM skills s {join} WHERE {where} "
                f"ORDER BY s.updated_at DESC, s.id DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            self._increment_tag_usage(tag_ids)
            self._conn.commit()
            items = [self._row_to_skill(r) for r in rows]
            suggested = [] if items else self._suggested_tags(5)
        return SearchResult(items=items, suggested_tags=suggested, expanded_tags=expanded)

    def register_skill_from_file(self, file_path: str) -> Optional[Dict[str, Any]]:
        """Register a markdown file found on disk as a skill needing review.

        The title is the first ``# `` heading (the file name otherwise).
        Returns None for non-markdown or missing files.
        """
        path = Path(file_path)
        if path.suffix != ".md":
            return None
        name = path.stem
        with self._lock:
            row = self._conn.execute("SELECT id FROM skills WHERE name=?", (name,)).fetchone()
            if row is not None:
                return {"id": row["id"], "name": name, "is_new": False}
            if not path.is_file():
                return None
            content = path.read_text(encoding="utf-8")
            match = _TITLE_RE.search(content)
            title = match.group(1).strip() if match else name
            now = _now_iso()
            cur = self._conn.execute(
                "INSERT INTO skills (name, title, file_path, content_hash, needs_review, "
                "created_at, updated_at) VALUES (?,?,?,?,1,?,?)",
                (name, title, str(path), content_hash(content), now, now),
            )
            self._conn.commit()
        logger.info("Registered skill %s from %s (needs review)", name, path)
        return {"id": cur.lastrowid, "name": name, "is_new": True}

    def mark_skill_reviewed(self, name: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "UPDATE skills SET needs_review=0, updated_at=? WHERE name=?",
                (_now_iso(), name),
            )
            self._conn.commit()
            return cur.rowcount > 0

    def skill_resource_links(self, skill_id: Optional[int] = None) -> List[SkillResourceLink]:
        """Skill -> resource links with captured and current digests."""
        with self._lock:
            return self._skill_resource_links(skill_id)

    def delete_skills(self, names: Sequence[str], delete_files: bool = False) -> Dict[str, int]:
        """Remove skills by name, optionally deleting their files."""
        if not names:
            return {"deleted": 0, "files_deleted": 0}
        files_deleted = 0
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id, file_path FROM skills WHERE name IN ({_placeholders(names)})",
                list(names),
            ).fetchall()
            if not rows:
                return {"deleted": 0, "files_deleted": 0}
            ids = [r["id"] for r in rows]
            self._conn.execute(f"DELETE FROM skills WHERE id IN ({_placeholders(ids)})", ids)
            self._conn.commit()
        if delete_files:
            for r in rows:
                path = Path(r["file_path"])
                if path.is_file():
                    path.unlink()
                    files_deleted += 1
        return {"deleted": len(rows), "files_deleted": files_deleted}

    # -- Execution logs ----------------------------------------------------

    def submit_execution_logs(self, logs: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Record command runs.

        Each entry: command, success, working_directory, context, output,
        exit_code, duration_ms, skill_name, tags. When ``success`` is absent
        it is derived from ``exit_code == 0``.

        Raises:
            ValueError: Empty command, or neither success nor exit_code given.
        """
        if not logs:
            return {"created": 0, "ids": []}
        for entry in logs:
            if not (entry.get("command") or "").strip():
                raise ValueError("Execution log command must not be empty")
            if entry.get("success") is None and entry.get("exit_code") is None:
                raise ValueError(f"Execution log needs success or exit_code: {entry['command']}")

        ids: List[int] = []
        now = _now_iso()
        with self._lock:
            tag_map = self._get_or_create_tags(
                [t for entry in logs for t in (entry.get("tags") or [])]
            )
            for entry in logs:
                success = entry.get("success")
                if success is None:
                    success = entry["exit_code"] == 0
                cur = self._conn.execute(
                    "INSERT INTO execution_logs (command, working_directory, context, output, "
                    "exit_code, success, duration_ms, skill_name, created_at) "
                    "VALUES (?,?,?,?,?,?,?,?,?)",
                    (
                        entry["command"], entry.get("working_directory"), entry.get("context"),
                        entry.get("output"), entry.get("exit_code"), int(bool(success)),
                        entry.get("duration_ms"), entry.get("skill_name"), now,
                    ),
                )
                self._link_tags("execution_logs", cur.lastrowid, entry.get("tags") or [], tag_map)
                ids.append(cur.lastrowid)
            self._conn.commit()
        logger.debug("submit_execution_logs: created=%d", len(ids))
        return {"created": len(ids), "ids": ids}

    def search_execution_logs(
        self,
        tags: Optional[Sequence[str]] = None,
        query: Optional[str] = None,
        success: Optional[bool] = None,
        skill_name: Optional[str] = None,
        order_by: str = "recent",
        limit: Optional[int] = None,
    ) -> SearchResult:
        """Search logs by (expanded) tags, outcome, skill and a substring of
        command, context or output. No match suggests the tags most used on
        logs."""
        limit = limit or self._search_limit("execution_logs")
        expanded = self.expand_tags(tags or [])
        with self._lock:
            conditions: List[str] = []
            params: List[Any] = []
            join = ""
            tag_ids: List[int] = []
            if tags:
                tag_ids = self._tag_ids(expanded)
                if not tag_ids:
                    return SearchResult(
                        items=[], suggested_tags=self._suggested_log_tags(5),
                        expanded_tags=expanded,
                    )
                join = "JOIN execution_log_tags lt ON lt.execution_log_id = l.id"
                conditions.append(f"lt.tag_id IN ({_placeholders(tag_ids)})")
                params.extend(tag_ids)
            if success is not None:
                conditions.append("l.success=?")
                params.append(int(success))
            if skill_name:
                conditions.append("l.skill_name=?")
                params.append(skill_name)
            if query:
                conditions.append("(l.command LIKE ? OR l.context LIKE ? OR l.output LIKE ?)")
                params.extend([f"%{query}%"] * 3)
            where = " AND ".join(conditions) if conditions else "1=1"
            order = _LOG_ORDER.get(order_by, _LOG_ORDER["recent"])
            rows = self._conn.execute(
                f"SELECT DISTINCT l.* FROM execution_logs l {join} WHERE {where} "
                f"ORDER BY {order} LIMIT ?",
                params + [limit],
            ).fetchall()
            self._increment_tag_usage(tag_ids)
            self._conn.commit()
            items = [self._row_to_log(r) for r in rows]
            suggested = [] if items else self._suggested_log_tags(5)
        return SearchResult(items=items, suggested_tags=suggested, expanded_tags=expanded)

    def get_execution_log(self, log_id: int) -> Optional[ExecutionLog]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM execution_logs WHERE id=?", (log_id,),
            ).fetchone()
            return self._row_to_log(row) if row else None

    # -- Context -----------------------------------------------------------

    def build_context(
        self,
        tags: Sequence[str],
        max_facts: int = 30,
        max_resources: int = 10,
        max_skills: int = 5,
        include_facts: bool = True,
        include_resources: bool = True,
        include_skills: bool = True,
    ) -> KnowledgeContext:
        """Gather live facts, resource previews and skill bodies for tags.

        Tags are expanded first. Matching tags get their usage_count bumped
        and every returned row its retrieval_count. Skill bodies are read
        from their files (empty when the file is missing).
        """
        expanded = self.expand_tags(tags)
        ctx = KnowledgeContext(tags=expanded)
        skill_rows: List[sqlite3.Row] = []
        skill_tags: Dict[int, List[str]] = {}
        with self._lock:
            tag_ids = self._tag_ids(expanded)
            if not tag_ids:
                return ctx
            self._increment_tag_usage(tag_ids)
            now = _now_iso()
            marks = _placeholders(tag_ids)
            if include_facts:
                rows = self._conn.execute(
                    f"SELECT DISTINCT f.* FROM facts f JOIN fact_tags ft ON ft.fact_id = f.id "
                    f"WHERE ft.tag_id IN ({marks}) AND f.deleted_at IS NULL "
                    f"ORDER BY f.id LIMIT ?",
                    tag_ids + [max_facts],
                ).fetchall()
                self._bump_retrieval("facts", [r["id"] for r in rows], now)
                ctx.facts = [
                    {"id": r["id"], "content": r["content"], "tags": self._tags_for("facts", r["id"])}
                    for r in rows
                ]
            if include_resources:
                rows = self._conn.execute(
                    f"SELECT DISTINCT r.* FROM resources r "
                    f"JOIN resource_tags rt ON rt.resource_id = r.id "
                    f"WHERE rt.tag_id IN ({marks}) AND r.deleted_at IS NULL "
                    f"ORDER BY r.id LIMIT ?",
                    tag_ids + [max_resources],
                ).fetchall()
                self._bump_retrieval("resources", [r["id"] for r in rows], None)
                ctx.resources = [
                    {
                        "id": r["id"], "uri": r["uri"], "type": r["type"],
                        "preview": (r["snapshot"] or "")[:CONTEXT_PREVIEW_CHARS],
                        "tags": self._tags_for("resources", r["id"]),
                    }
                    for r in rows
                ]
            if include_skills:
                skill_rows = self._conn.execute(
                    f"SELECT DISTINCT s.* FROM skills s JOIN skill_tags st ON st.skill_id = s.id "
                    f"WHERE st.tag_id IN ({marks}) AND s.deleted_at IS NULL "
                    f"ORDER BY s.id LIMIT ?",
                    tag_ids + [max_skills],
                ).fetchall()
                self._bump_retrieval("skills", [r["id"] for r in skill_rows], now)
                skill_tags = {r["id"]: self._tags_for("skills", r["id"]) for r in skill_rows}
            self._conn.commit()
        for r in skill_rows:
            path = Path(r["file_path"])
            ctx.skills.append({
                "name": r["name"],
                "title": r["title"],
                "content": path.read_text(encoding="utf-8") if path.is_file() else "",
                "tags": skill_tags[r["id"]],
            })
        return ctx

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the knowledge store."""
        with self._lock:
            def count(sql: str) -> int:
                return self._conn.execute(sql).fetchone()[0]

            return {
                "db_path": self._db_path,
                "tags": count("SELECT COUNT(*) FROM tags"),
                "facts": count("SELECT COUNT(*) FROM facts WHERE deleted_at IS NULL"),
                "facts_verified": count(
                    "SELECT COUNT(*) FROM facts WHERE deleted_at IS NULL AND verified=1"
                ),
                "facts_deleted": count("SELECT COUNT(*) FROM facts WHERE deleted_at IS NOT NULL"),
                "resources": count("SELECT COUNT(*) FROM resources WHERE deleted_at IS NULL"),
                "skills": count("SELECT COUNT(*) FROM skills WHERE deleted_at IS NULL"),
                "skills_needing_review": count(
                    "SELECT COUNT(*) FROM skills WHERE deleted_at IS NULL AND needs_review=1"
                ),
                "skill_resource_links": count("SELECT COUNT(*) FROM skill_resources"),
                "execution_logs": count("SELECT COUNT(*) FROM execution_logs"),
                "seed_version": int(parse_number_config(
                    self._get_config(SEED_VERSION_KEY), 0,
                )),
                "schema_version": SCHEMA_VERSION,
            }

    # -- Internal helpers (caller holds the lock) ----------------------------

    def _get_config(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_config(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT INTO config (key, value, updated_at) VALUES (?,?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
            (key, value, _now_iso()),
        )

    def _all_config(self) -> Dict[str, str]:
        rows = self._conn.execute("SELECT key, value FROM config").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def _search_limit(self, kind: str) -> int:
        default = getattr(SearchConfig(), f"limit_{kind}")
        value = parse_number_config(self.get_config(f"search_limit_{kind}"), default)
        return int(value) if value else default

    def _include_deleted(self) -> bool:
        return parse_bool_config(self.get_config("search_include_deleted"), False)

    def _get_or_create_tags(self, names: Sequence[str]) -> Dict[str, int]:
        unique = list(dict.fromkeys(n.strip() for n in names if n and n.strip()))
        if not unique:
            return {}
        now = _now_iso()
        self._conn.executemany(
            "INSERT OR IGNORE INTO tags (name, description, created_at, updated_at) "
            "VALUES (?,?,?,?)",
            [(n, f"Auto-created tag for {n}", now, now) for n in unique],
        )
        rows = self._conn.execute(
            f"SELECT id, name FROM tags WHERE name IN ({_placeholders(unique)})", unique,
        ).fetchall()
        return {r["name"]: r["id"] for r in rows}

    def _tag_ids(self, names: Sequence[str]) -> List[int]:
        names = list(names)
        if not names:
            return []
        rows = self._conn.execute(
            f"SELECT id FROM tags WHERE name IN ({_placeholders(names)}) ORDER BY id", names,
        ).fetchall()
        return [r["id"] for r in rows]

    def _increment_tag_usage(self, tag_ids: Sequence[int]) -> None:
        if not tag_ids:
            return
        self._conn.execute(
            f"UPDATE tags SET usage_count=usage_count+1 WHERE id IN ({_placeholders(tag_ids)})",
            list(tag_ids),
        )

    def _suggested_tags(self, limit: int) -> List[str]:
        rows = self._conn.execute(
            "SELECT name FROM tags ORDER BY usage_count DESC, name ASC LIMIT ?", (limit,),
        ).fetchall()
        return [r["name"] for r in rows]

    def _suggested_log_tags(self, limit: int) -> List[str]:
        rows = self._conn.execute(
            "SELECT t.name FROM tags t JOIN execution_log_tags lt ON lt.tag_id = t.id "
            "GROUP BY t.id ORDER BY COUNT(*) DESC, t.usage_count DESC, t.name ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return [r["name"] for r in rows]

    def _bump_retrieval(self, table: str, ids: Sequence[int], now: Optional[str]) -> None:
        if not ids:
            return
        if now is None:
            self._conn.execute(
                f"UPDATE {table} SET retrieval_count=retrieval_count+1 "
                f"WHERE id IN ({_placeholders(ids)})",
                list(ids),
            )
        else:
            self._conn.execute(
                f"UPDATE {table} SET retrieval_count=retrieval_count+1, last_retrieved_at=? "
                f"WHERE id IN ({_placeholders(ids)})",
                [now] + list(ids),
            )

    def _prune_orphan_tags(self, dry_run: bool) -> Dict[str, Any]:
        rows = self._conn.execute(
            "SELECT id, name FROM tags WHERE id NOT IN ("
            "SELECT tag_id FROM fact_tags UNION SELECT tag_id FROM resource_tags "
            "UNION SELECT tag_id FROM skill_tags UNION SELECT tag_id FROM execution_log_tags) "
            "ORDER BY name"
        ).fetchall()
        names = [r["name"] for r in rows]
        if rows and not dry_run:
            ids = [r["id"] for r in rows]
            self._conn.execute(f"DELETE FROM tags WHERE id IN ({_placeholders(ids)})", ids)
        return {"pruned": len(rows), "tags": names, "dry_run": dry_run}

    def _link_tags(
        self,
        entity: str,
        row_id: int,
        names: Sequence[str],
        tag_map: Optional[Dict[str, int]] = None,
    ) -> int:
        """Attach tags to a row. Unresolvable names are dropped."""
        if not names:
            return 0
        _, junction, col = _TAGGED[entity]
        if tag_map is None:
            tag_map = self._get_or_create_tags(names)
        pairs = [(row_id, tag_map[n]) for n in dict.fromkeys(names) if n in tag_map]
        self._conn.executemany(
            f"INSERT OR IGNORE INTO {junction} ({col}, tag_id) VALUES (?,?)", pairs,
        )
        return len(pairs)

    def _unlink_tags(self, entity: str, row_id: int, names: Sequence[str]) -> None:
        _, junction, col = _TAGGED[entity]
        tag_ids = self._tag_ids(names)
        if tag_ids:
            self._conn.execute(
                f"DELETE FROM {junction} WHERE {col}=? AND tag_id IN ({_placeholders(tag_ids)})",
                [row_id] + tag_ids,
            )

    def _tags_for(self, entity: str, row_id: int) -> List[str]:
        _, junction, col = _TAGGED[entity]
        rows = self._conn.execute(
            f"SELECT t.name FROM {junction} j JOIN tags t ON t.id = j.tag_id "
            f"WHERE j.{col}=? ORDER BY t.name",
            (row_id,),
        ).fetchall()
        return [r["name"] for r in rows]

    def _link_skill_refs(
        self,
        skill_id: int,
        skills: Sequence[Tuple[str, str]],
        resources: Sequence[int],
        facts: Sequence[int],
    ) -> Dict[str, int]:
        now = _now_iso()
        counts = {"skills": 0, "resources": 0, "facts": 0}
        for ref_name, relation in skills:
            ref = self._conn.execute("SELECT id FROM skills WHERE name=?", (ref_name,)).fetchone()
            if ref is None:
                continue
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO skill_skills "
                "(skill_id, referenced_skill_id, relation_type, created_at) VALUES (?,?,?,?)",
                (skill_id, ref["id"], relation or "related", now),
            )
            counts["skills"] += cur.rowcount
        if resources:
            rows = self._conn.execute(
                f"SELECT id, snapshot_hash FROM resources WHERE id IN ({_placeholders(resources)})",
                list(resources),
            ).fetchall()
            # re-linking re-captures the current digest
            for r in rows:
                cur = self._conn.execute(
                    "INSERT INTO skill_resources "
                    "(skill_id, resource_id, snapshot_hash_at_link, created_at) VALUES (?,?,?,?) "
                    "ON CONFLICT(skill_id, resource_id) DO UPDATE SET "
                    "snapshot_hash_at_link=excluded.snapshot_hash_at_link "
                    "WHERE skill_resources.snapshot_hash_at_link "
                    "IS NOT excluded.snapshot_hash_at_link",
                    (skill_id, r["id"], r["snapshot_hash"], now),
                )
                counts["resources"] += cur.rowcount
        if facts:
            rows = self._conn.execute(
                f"SELECT id FROM facts WHERE id IN ({_placeholders(facts)})", list(facts),
            ).fetchall()
            for r in rows:
                cur = self._conn.execute(
                    "INSERT OR IGNORE INTO skill_facts (skill_id, fact_id, created_at) "
                    "VALUES (?,?,?)",
                    (skill_id, r["id"], now),
                )
                counts["facts"] += cur.rowcount
        return counts

    def _unlink_skill_refs(
        self,
        skill_id: int,
        skills: Sequence[str],
        resources: Sequence[int],
        facts: Sequence[int],
    ) -> Dict[str, int]:
        counts = {"skills": 0, "resources": 0, "facts": 0}
        if skills:
            cur = self._conn.execute(
                f"DELETE FROM skill_skills WHERE skill_id=? AND referenced_skill_id IN "
                f"(SELECT id FROM skills WHERE name IN ({_placeholders(skills)}))",
                [skill_id] + list(skills),
            )
            counts["skills"] = cur.rowcount
        if resources:
            cur = self._conn.execute(
                f"DELETE FROM skill_resources WHERE skill_id=? "
                f"AND resource_id IN ({_placeholders(resources)})",
                [skill_id] + list(resources),
            )
            counts["resources"] = cur.rowcount
        if facts:
            cur = self._conn.execute(
                f"DELETE FROM skill_facts WHERE skill_id=? AND fact_id IN ({_placeholders(facts)})",
                [skill_id] + list(facts),
            )
            counts["facts"] = cur.rowcount
        return counts

    def _skill_resource_links(self, skill_id: Optional[int] = None) -> List[SkillResourceLink]:
        sql = (
            "SELECT sr.skill_id, sr.resource_id, sr.snapshot_hash_at_link, sr.created_at, "
            "r.snapshot_hash AS current_hash, r.uri FROM skill_resources sr "
            "JOIN resources r ON r.id = sr.resource_id"
        )
        params: List[Any] = []
        if skill_id is not None:
            sql += " WHERE sr.skill_id=?"
            params.append(skill_id)
        rows = self._conn.execute(sql + " ORDER BY sr.skill_id, sr.resource_id", params).fetchall()
        return [
            SkillResourceLink(
                skill_id=r["skill_id"],
                resource_id=r["resource_id"],
                snapshot_hash_at_link=r["snapshot_hash_at_link"],
                current_hash=r["current_hash"],
                uri=r["uri"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def _row_to_tag(self, row: sqlite3.Row) -> Tag:
        """Convert a SQLite Row to Tag."""
        return Tag(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            usage_count=row["usage_count"],
            system_id=row["system_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_fact(self, row: sqlite3.Row) -> Fact:
        """Convert a SQLite Row to Fact (with its tag names)."""
        return Fact(
            id=row["id"],
            content=row["content"],
            source=row["source"],
            source_type=row["source_type"],
            verified=bool(row["verified"]),
            retrieval_count=row["retrieval_count"],
            last_retrieved_at=row["last_retrieved_at"],
            tags=self._tags_for("facts", row["id"]),
            system_id=row["system_id"],
            system_hash=row["system_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def _row_to_resource(self, row: sqlite3.Row) -> Resource:
        """Convert a SQLite Row to Resource (with its tag names)."""
        method = row["retrieval_method"]
        return Resource(
            id=row["id"],
            uri=row["uri"],
            type=row["type"],
            description=row["description"],
            snapshot=row["snapshot"],
            snapshot_hash=row["snapshot_hash"],
            retrieval_method=json.loads(method) if method else None,
            last_verified_at=row["last_verified_at"],
            retrieval_count=row["retrieval_count"],
            tags=self._tags_for("resources", row["id"]),
            system_id=row["system_id"],
            system_hash=row["system_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def _row_to_skill(self, row: sqlite3.Row) -> Skill:
        """Convert a SQLite Row to Skill (with its tag names)."""
        return Skill(
            id=row["id"],
            name=row["name"],
            title=row["title"],
            description=row["description"],
            file_path=row["file_path"],
            content_hash=row["content_hash"],
            retrieval_count=row["retrieval_count"],
            needs_review=bool(row["needs_review"]),
            tags=self._tags_for("skills", row["id"]),
            system_id=row["system_id"],
            system_hash=row["system_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def _row_to_log(self, row: sqlite3.Row) -> ExecutionLog:
        """Convert a SQLite Row to ExecutionLog (with its tag names)."""
        return ExecutionLog(
            id=row["id"],
            command=row["command"],
            working_directory=row["working_directory"],
            context=row["context"],
            output=row["output"],
            exit_code=row["exit_code"],
            success=bool(row["success"]),
            duration_ms=row["duration_ms"],
            skill_name=row["skill_name"],
            tags=self._tags_for("execution_logs", row["id"]),
            created_at=row["created_at"],
        )
