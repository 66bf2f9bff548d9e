"""
Knowledge Data Model — Tags, Facts, Resources, Skills, Execution Logs

Defines the row types held by the knowledge store and the content digest
used everywhere the engine has to answer "did the user change this since
the system last wrote it".

Digest format (persisted, stable across versions):
    sha256:<64 lowercase hex chars>   over the exact UTF-8 bytes, no normalization
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

SourceType = Literal["user", "documentation", "code", "inference"]
ReconcileState = Literal["unmodified", "modified"]
StaleReason = Literal["resource_changed", "not_updated"]

VALID_SOURCE_TYPES: set = {"user", "documentation", "code", "inference"}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime:
    """Parse a stored timestamp. Naive values are taken as UTC."""
    text = value.strip().replace("Z", "+00:00")
    if " " in text and "T" not in text:
        # SQLite CURRENT_TIMESTAMP form: "YYYY-MM-DD HH:MM:SS"
        text = text.replace(" ", "T", 1)
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Content hashing and reconciliation
# ---------------------------------------------------------------------------

def content_hash(text: str) -> str:
    """SHA-256 content hash with prefix."""
    h = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"sha256:{h}"


def reconcile(
    stored_system_hash: Optional[str],
    live_hash: Optional[str],
    new_hash: str,
) -> ReconcileState:
    """Three-way comparison deciding whether system content may be rewritten.

    Args:
        stored_system_hash: Digest the system last wrote for this row.
        live_hash: Digest of the row's current content.
        new_hash: Digest of the content the system wants to write now.

    Returns:
        "unmodified" when the live content is still exactly what the system
        wrote (safe to overwrite with new_hash), "modified" otherwise.

    new_hash never decides the outcome on its own: a live value that happens
    to equal new_hash but differs from stored_system_hash is still a user edit.
    """
    if stored_system_hash is not None and live_hash == stored_system_hash:
        return "unmodified"
    return "modified"


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

@dataclass
class Tag:
    """A taxonomy label shared by facts, resources and skills."""

    id: int = 0
    name: str = ""
    description: str = ""
    usage_count: int = 0
    system_id: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize tag to a plain dictionary."""
        return asdict(self)


@dataclass
class Fact:
    """
    An atomic, tagged statement of knowledge.

    Facts are deduplicated by exact content. System-seeded facts carry a
    system_id and the system_hash of the content the seeder last wrote.
    """

    id: int = 0
    content: str = ""
    source: Optional[str] = None
    source_type: Optional[SourceType] = None
    verified: bool = False
    retrieval_count: int = 0
    last_retrieved_at: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    system_id: Optional[str] = None
    system_hash: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    deleted_at: Optional[str] = None

    def __post_init__(self):
        """Validate source type."""
        if self.source_type is not None and self.source_type not in VALID_SOURCE_TYPES:
            raise ValueError(f"Invalid source type: {self.source_type!r}")

    @property
    def content_hash(self) -> str:
        """Hash of the live content."""
        return content_hash(self.content)

    @property
    def user_modified(self) -> bool:
        """True for seeded facts whose content no longer matches system_hash."""
        if self.system_hash is None:
            return False
        return reconcile(self.system_hash, self.content_hash, self.content_hash) == "modified"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)


@dataclass
class Resource:
    """A tracked external artifact (file, URL, API, command) with a cached snapshot."""

    id: int = 0
    uri: str = ""
    type: str = "file"
    description: str = ""
    snapshot: Optional[str] = None
    snapshot_hash: Optional[str] = None
    retrieval_method: Optional[Dict[str, Any]] = None
    last_verified_at: Optional[str] = None
    retrieval_count: int = 0
    tags: List[str] = field(default_factory=list)
    system_id: Optional[str] = None
    system_hash: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    deleted_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)


@dataclass
class Skill:
    """
    A procedural markdown document stored outside the database.

    content_hash is the last-known digest of the file body; needs_review marks
    skills discovered on disk rather than created through the store.
    """

    id: int = 0
    name: str = ""
    title: str = ""
    description: str = ""
    file_path: str = ""
    content_hash: Optional[str] = None
    retrieval_count: int = 0
    needs_review: bool = False
    tags: List[str] = field(default_factory=list)
    system_id: Optional[str] = None
    system_hash: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    deleted_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


@dataclass
class SearchResult:
    """Rows returned by a tag/text search, plus hints when nothing matched."""

    items: List[Any] = field(default_factory=list)
    suggested_tags: List[str] = field(default_factory=list)
    expanded_tags: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self, key: str = "items") -> Dict[str, Any]:
        d: Dict[str, Any] = {key: [i.to_dict() for i in self.items]}
        if self.expanded_tags:
            d["expanded_tags"] = self.expanded_tags
        if not self.items:
            d["suggested_tags"] = self.suggested_tags
        return d


@dataclass
class SkillResourceLink:
    """Skill -> resource dependency with the resource digest captured at link time."""

    skill_id: int = 0
    resource_id: int = 0
    snapshot_hash_at_link: Optional[str] = None
    current_hash: Optional[str] = None
    uri: str = ""
    created_at: str = field(default_factory=_now_iso)

    @property
    def stale(self) -> bool:
        """The resource snapshot drifted since the link was made."""
        return self.snapshot_hash_at_link != self.current_hash

    def to_dict(self) -> Dict[str, Any]:
        """Serialize link to a plain dictionary."""
        d = asdict(self)
        d["stale"] = self.stale
        return d


@dataclass
class ExecutionLog:
    """One recorded command run: what ran, where, and how it ended."""

    id: int = 0
    command: str = ""
    working_directory: Optional[str] = None
    context: Optional[str] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None
    success: bool = False
    duration_ms: Optional[int] = None
    skill_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe)."""
        return asdict(self)


# characters of a resource snapshot shown in a context bundle
CONTEXT_PREVIEW_CHARS = 200


@dataclass
class KnowledgeContext:
    """Facts, resource previews and skill bodies gathered for a set of tags."""

    tags: List[str] = field(default_factory=list)
    facts: List[Dict[str, Any]] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    skills: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.facts or self.resources or self.skills)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_markdown(self) -> str:
        """Render as markdown sections (Facts, Resources, Skills)."""
        if self.empty:
            return "No matching knowledge found."
        lines: List[str] = []
        if self.facts:
            lines.append("## Facts")
            for f in self.facts:
                lines.append(f"- [{','.join(f['tags'])}] {f['content']}")
            lines.append("")
        if self.resources:
            lines.append("## Resources")
            for r in self.resources:
                first = r["tags"][0] if r["tags"] else ""
                lines.append(f"- [{r['type']}:{first}] {r['uri']} ({r['preview']}...)")
            lines.append("")
        if self.skills:
            lines.append("## Skills")
            for s in self.skills:
                lines.append(f"### {s['title']}")
                lines.append(s["content"])
                lines.append("")
        return "\n".join(lines)
