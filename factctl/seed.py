"""
Seed Reconciler — versioned system content without clobbering user edits

A seed manifest carries system tags, facts and skills, each with a globally
stable ``system_id``. Applying a manifest upserts that content:

    match by system_id      -> reconcile (facts/skills) or refresh description (tags)
    else match by identity  -> claim the user's row (name for tags/skills,
                               exact content for facts)
    else                    -> insert, system_hash = digest(content)

A system-owned fact or skill is rewritten only when its live content still
has the digest the system last wrote (see types.reconcile). User-modified
rows are counted as skipped and never touched.

The persisted ``system_seed_version`` config key gates the whole pass:
a manifest whose version is not newer is a no-op.

Public API:
    SeedTag, SeedFact, SeedSkill, SeedManifest
    SeedCounts, SeedResult
    DEFAULT_MANIFEST
    load_manifest(path) -> SeedManifest
    apply_seed(store, manifest=DEFAULT_MANIFEST, skills_dir=None, force=False) -> SeedResult
    get_seed_version(store) -> int
    get_system_content(store) -> dict
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from factctl.config import parse_number_config
from factctl.store import SEED_VERSION_KEY, KnowledgeStore
from factctl.types import VALID_SOURCE_TYPES, _now_iso, content_hash, reconcile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def _pick(d: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    if snake in d:
        return d[snake]
    return d.get(camel, default)


@dataclass
class SeedTag:
    name: str
    system_id: str
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SeedTag:
        return cls(
            name=d["name"],
            system_id=_pick(d, "system_id", "systemId"),
            description=d.get("description"),
        )


@dataclass
class SeedFact:
    content: str
    system_id: str
    tags: List[str] = field(default_factory=list)
    source: Optional[str] = None
    source_type: Optional[str] = None
    verified: Optional[bool] = None

    def __post_init__(self):
        if self.source_type is not None and self.source_type not in VALID_SOURCE_TYPES:
            raise ValueError(f"Invalid source type: {self.source_type!r}")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SeedFact:
        return cls(
            content=d["content"],
            system_id=_pick(d, "system_id", "systemId"),
            tags=list(d.get("tags") or []),
            source=d.get("source"),
            source_type=_pick(d, "source_type", "sourceType"),
            verified=d.get("verified"),
        )


@dataclass
class SeedSkill:
    name: str
    title: str
    content: str
    system_id: str
    description: str = ""
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SeedSkill:
        return cls(
            name=d["name"],
            title=d.get("title") or d["name"],
            content=d["content"],
            system_id=_pick(d, "system_id", "systemId"),
            description=d.get("description") or "",
            tags=list(d.get("tags") or []),
        )


@dataclass
class SeedManifest:
    """Versioned system content."""
    version: int
    tags: List[SeedTag] = field(default_factory=list)
    facts: List[SeedFact] = field(default_factory=list)
    skills: List[SeedSkill] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SeedManifest:
        """Build a manifest from a dict (e.g. parsed JSON).

        Raises:
            ValueError: If version is missing or not a positive integer,
                or an entry lacks a system_id.
        """
        version = d.get("version")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValueError(f"Seed manifest version must be a positive integer, got {version!r}")
        manifest = cls(
            version=version,
            tags=[SeedTag.from_dict(t) for t in d.get("tags") or []],
            facts=[SeedFact.from_dict(f) for f in d.get("facts") or []],
            skills=[SeedSkill.from_dict(s) for s in d.get("skills") or []],
        )
        for entry in [*manifest.tags, *manifest.facts, *manifest.skills]:
            if not entry.system_id:
                raise ValueError(f"Seed entry without system_id: {entry!r}")
        return manifest

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_manifest(path: str) -> SeedManifest:
    """Read a JSON seed manifest.

    Raises:
        FileNotFoundError, json.JSONDecodeError, ValueError
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return SeedManifest.from_dict(data)


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class SeedCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0


@dataclass
class SeedResult:
    """Per-kind outcome of one seed pass."""
    version: int
    tags: SeedCounts = field(default_factory=SeedCounts)
    facts: SeedCounts = field(default_factory=SeedCounts)
    skills: SeedCounts = field(default_factory=SeedCounts)
    applied: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


def get_seed_version(store: KnowledgeStore) -> int:
    """Last applied manifest version (0 when never seeded)."""
    value = parse_number_config(store.get_config(SEED_VERSION_KEY), 0)
    return int(value or 0)


def apply_seed(
    store: KnowledgeStore,
    manifest: Optional[SeedManifest] = None,
    skills_dir: Optional[str] = None,
    force: bool = False,
) -> SeedResult:
    """Apply a seed manifest in one transaction.

    Args:
        store: Target knowledge store.
        manifest: Manifest to apply (defaults to the built-in one).
        skills_dir: Where seeded skill files go (defaults to the store's).
        force: Skip the version gate. Reconciliation still protects user
            edits, so re-applying a manifest only reports skips.

    Returns:
        SeedResult with created/updated/skipped per kind; ``applied`` is
        False when the version gate turned the call into a no-op.
    """
    manifest = manifest or DEFAULT_MANIFEST
    current = get_seed_version(store)
    if current >= manifest.version and not force:
        logger.debug("Seed v%d already applied (current v%d)", manifest.version, current)
        return SeedResult(version=manifest.version)

    target_dir = Path(skills_dir) if skills_dir else store.skills_dir
    result = SeedResult(version=manifest.version, applied=True)
    # skill files are written only once the rows are committed
    pending: List[Tuple[Path, str]] = []
    with store.transaction() as conn:
        _seed_tags(conn, manifest.tags, result.tags)
        _seed_facts(store, conn, manifest.facts, result.facts)
        _seed_skills(store, conn, manifest.skills, target_dir, result.skills, pending)
        if manifest.version > current:
            store._set_config(SEED_VERSION_KEY, str(manifest.version))
    for path, content in pending:
        _write_skill_file(path, content)

    logger.info(
        "Applied seed v%d: tags %s, facts %s, skills %s",
        manifest.version, asdict(result.tags), asdict(result.facts), asdict(result.skills),
    )
    return result


def _seed_tags(conn: sqlite3.Connection, tags: List[SeedTag], counts: SeedCounts) -> None:
    now = _now_iso()
    for tag in tags:
        row = conn.execute(
            "SELECT id, description FROM tags WHERE system_id=?", (tag.system_id,),
        ).fetchone()
        if row is not None:
            if tag.description and row["description"] != tag.description:
                conn.execute(
                    "UPDATE tags SET description=?, updated_at=? WHERE id=?",
                    (tag.description, now, row["id"]),
                )
                counts.updated += 1
            else:
                counts.skipped += 1
            continue

        row = conn.execute(
            "SELECT id, description FROM tags WHERE name=?", (tag.name,),
        ).fetchone()
        if row is not None:
            conn.execute(
                "UPDATE tags SET system_id=?, description=?, updated_at=? WHERE id=?",
                (tag.system_id, tag.description or row["description"], now, row["id"]),
            )
            logger.debug("Claimed tag %s as %s", tag.name, tag.system_id)
            counts.updated += 1
        else:
            conn.execute(
                "INSERT INTO tags (name, description, system_id, created_at, updated_at) "
                "VALUES (?,?,?,?,?)",
                (tag.name, tag.description or "", tag.system_id, now, now),
            )
            counts.created += 1


def _seed_facts(
    store: KnowledgeStore,
    conn: sqlite3.Connection,
    facts: List[SeedFact],
    counts: SeedCounts,
) -> None:
    for fact in facts:
        new_hash = content_hash(fact.content)
        now = _now_iso()
        row = conn.execute(
            "SELECT id, content, system_hash, verified FROM facts WHERE system_id=?",
            (fact.system_id,),
        ).fetchone()

        if row is not None:
            fact_id = row["id"]
            if row["system_hash"] == new_hash:
                counts.skipped += 1
            elif reconcile(row["system_hash"], content_hash(row["content"]), new_hash) == "unmodified":
                verified = row["verified"] if fact.verified is None else int(fact.verified)
                conn.execute(
                    "UPDATE facts SET content=?, system_hash=?, source=?, source_type=?, "
                    "verified=?, updated_at=? WHERE id=?",
                    (fact.content, new_hash, fact.source, fact.source_type,
                     verified, now, fact_id),
                )
                counts.updated += 1
            else:
                logger.debug("Fact %s modified by user, skipped", fact.system_id)
                counts.skipped += 1
        else:
            row = conn.execute(
                "SELECT id FROM facts WHERE content=? AND system_id IS NULL ORDER BY id LIMIT 1",
                (fact.content,),
            ).fetchone()
            if row is not None:
                fact_id = row["id"]
                conn.execute(
                    "UPDATE facts SET system_id=?, system_hash=?, source=?, source_type=?, "
                    "verified=?, updated_at=? WHERE id=?",
                    (fact.system_id, new_hash, fact.source, fact.source_type,
                     int(bool(fact.verified)), now, fact_id),
                )
                counts.updated += 1
            else:
                cur = conn.execute(
                    "INSERT INTO facts (content, source, source_type, verified, system_id, "
                    "system_hash, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?)",
                    (fact.content, fact.source, fact.source_type, int(bool(fact.verified)),
                     fact.system_id, new_hash, now, now),
                )
                fact_id = cur.lastrowid
                counts.created += 1

        store._link_tags("facts", fact_id, fact.tags)


def _seed_skills(
    store: KnowledgeStore,
    conn: sqlite3.Connection,
    skills: List[SeedSkill],
    skills_dir: Path,
    counts: SeedCounts,
    pending: List[Tuple[Path, str]],
) -> None:
    for skill in skills:
        new_hash = content_hash(skill.content)
        path = skills_dir / f"{skill.name}.md"
        now = _now_iso()
        row = conn.execute(
            "SELECT id, file_path, content_hash, system_hash FROM skills WHERE system_id=?",
            (skill.system_id,),
        ).fetchone()

        if row is not None:
            skill_id = row["id"]
            if row["system_hash"] == new_hash:
                counts.skipped += 1
            elif reconcile(row["system_hash"], _live_skill_hash(row), new_hash) == "unmodified":
                target = Path(row["file_path"]) if row["file_path"] else path
                pending.append((target, skill.content))
                conn.execute(
                    "UPDATE skills SET title=?, description=?, file_path=?, content_hash=?, "
                    "system_hash=?, updated_at=? WHERE id=?",
                    (skill.title, skill.description, str(target), new_hash, new_hash,
                     now, skill_id),
                )
                counts.updated += 1
            else:
                logger.debug("Skill %s modified by user, skipped", skill.name)
                counts.skipped += 1
        else:
            row = conn.execute(
                "SELECT id, system_id FROM skills WHERE name=?", (skill.name,),
            ).fetchone()
            if row is not None and row["system_id"] is not None:
                logger.warning(
                    "Skill name %s already owned by %s, skipped", skill.name, row["system_id"],
                )
                counts.skipped += 1
                continue
            if row is not None:
                skill_id = row["id"]
                conn.execute(
                    "UPDATE skills SET system_id=?, system_hash=?, title=?, description=?, "
                    "updated_at=? WHERE id=?",
                    (skill.system_id, new_hash, skill.title, skill.description, now, skill_id),
                )
                counts.updated += 1
            else:
                pending.append((path, skill.content))
                cur = conn.execute(
                    "INSERT INTO skills (name, title, description, file_path, content_hash, "
                    "system_id, system_hash, created_at, updated_at) "
                    "VALUES (?,?,?,?,?,?,?,?,?)",
                    (skill.name, skill.title, skill.description, str(path), new_hash,
                     skill.system_id, new_hash, now, now),
                )
                skill_id = cur.lastrowid
                counts.created += 1

        store._link_tags("skills", skill_id, skill.tags)


def _live_skill_hash(row: sqlite3.Row) -> Optional[str]:
    """Digest of the skill file on disk; stored digest when the file is gone."""
    path = Path(row["file_path"]) if row["file_path"] else None
    if path is not None and path.is_file():
        return content_hash(path.read_text(encoding="utf-8"))
    return row["content_hash"]


def _write_skill_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def get_system_content(store: KnowledgeStore) -> Dict[str, List[Dict[str, Any]]]:
    """All rows owned by the seeder (system_id set)."""
    with store.transaction() as conn:
        tags = conn.execute(
            "SELECT id, name, system_id FROM tags WHERE system_id IS NOT NULL ORDER BY id"
        ).fetchall()
        facts = conn.execute(
            "SELECT id, system_id, system_hash, content FROM facts "
            "WHERE system_id IS NOT NULL ORDER BY id"
        ).fetchall()
        skills = conn.execute(
            "SELECT id, name, system_id, system_hash FROM skills "
            "WHERE system_id IS NOT NULL ORDER BY id"
        ).fetchall()
    return {
        "tags": [dict(r) for r in tags],
        "facts": [
            {
                "id": r["id"],
                "system_id": r["system_id"],
                "user_modified": content_hash(r["content"]) != r["system_hash"],
            }
            for r in facts
        ],
        "skills": [dict(r) for r in skills],
    }


# ---------------------------------------------------------------------------
# Built-in manifest
# ---------------------------------------------------------------------------

_QUICKSTART = """\
# factctl Quickstart

factctl keeps what an assistant learns about a project: facts, tracked
resources and skills, all organized by tags.

## Building blocks

### Facts
Short statements that stand on their own. Submit them with `submit_facts`,
find them with `search_facts`, confirm them with `verify_facts`.

### Tags
Every fact, resource and skill carries tags. Synonyms (`db` -> `database`)
and hierarchies (`postgres` under `database`) are configured with
`set_config` on `tag_synonyms` and `tag_hierarchies`; searches expand
through both.

### Resources
Files, URLs, APIs or commands you depend on. `add_resources` stores a
snapshot and its digest; `get_resource` tells you whether the snapshot is
still fresh for the resource's category.

### Skills
Markdown procedures stored as files. `create_skill` writes the file and can
link the skill to resources; when a linked resource's snapshot changes,
`check_stale` reports the skill with reason `resource_changed`.

## Routine

1. Search before asking: `search_facts`, `list_tags`.
2. Record what you learn: `submit_facts`, `add_resources`, `create_skill`.
3. Keep it current: run `check_stale`, refresh snapshots with
   `update_resource_snapshot`, then `mark_resources_refreshed`.
4. After editing a skill file by hand, run `sync_skill`.
"""

DEFAULT_MANIFEST = SeedManifest.from_dict({
    "version": 1,
    "tags": [
        {
            "name": "factctl:system",
            "description": "Content shipped with factctl. Keep this tag.",
            "system_id": "factctl:tag:system",
        },
        {
            "name": "getting-started",
            "description": "Introductory material for new knowledge bases",
            "system_id": "factctl:tag:getting-started",
        },
        {
            "name": "best-practices",
            "description": "Recommended ways to structure and maintain knowledge",
            "system_id": "factctl:tag:best-practices",
        },
        {
            "name": "agent-workflow",
            "description": "How an assistant should use the knowledge store",
            "system_id": "factctl:tag:agent-workflow",
        },
    ],
    "facts": [
        {
            "content": "A fact should state one thing and be understandable on its own, "
                       "without the conversation it came from.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "best-practices"],
            "system_id": "factctl:fact:atomic-facts",
            "verified": True,
        },
        {
            "content": "Prefer a few descriptive tags such as 'build', 'api-auth' or "
                       "'deployment' over many one-off tags; tags are how knowledge is found again.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "best-practices"],
            "system_id": "factctl:fact:meaningful-tags",
            "verified": True,
        },
        {
            "content": "Skills are markdown files describing a procedure. They can link to "
                       "facts, resources and other skills.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "getting-started"],
            "system_id": "factctl:fact:skills-overview",
            "verified": True,
        },
        {
            "content": "Resources track external content (files, URLs, APIs, commands) with a "
                       "snapshot and the method used to retrieve it, so it can be refreshed.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "getting-started"],
            "system_id": "factctl:fact:resources-overview",
            "verified": True,
        },
        {
            "content": "Resource freshness depends on its category: generated files go stale "
                       "after 1 hour, source code after 12 hours, lock files after a week.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "agent-workflow"],
            "system_id": "factctl:fact:freshness-categories",
            "verified": True,
        },
        {
            "content": "Run check_stale at the start of a session to see stale resources, "
                       "skills whose linked resources changed, and old unverified facts.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "agent-workflow"],
            "system_id": "factctl:fact:check-stale-usage",
            "verified": True,
        },
        {
            "content": "Tags starting with 'factctl:' are managed by factctl and are updated "
                       "by new releases; do not delete them.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "getting-started"],
            "system_id": "factctl:fact:system-tag-prefix",
            "verified": True,
        },
        {
            "content": "Verify a fact once its accuracy is confirmed, with verify_facts for "
                       "specific ids; unverified facts are flagged as they age.",
            "source": "factctl documentation",
            "source_type": "documentation",
            "tags": ["factctl:system", "agent-workflow", "best-practices"],
            "system_id": "factctl:fact:verify-facts-usage",
            "verified": True,
        },
    ],
    "skills": [
        {
            "name": "factctl-quickstart",
            "title": "factctl Quickstart",
            "description": "A first tour of facts, tags, resources and skills",
            "tags": ["factctl:system", "getting-started"],
            "system_id": "factctl:skill:quickstart",
            "content": _QUICKSTART,
        },
    ],
})
