"""
factctl MCP Tools — 36 knowledge tools for MCP integration.

Thin wrappers around KnowledgeStore and the engine modules. Each tool:

    1. executes the store/engine call
    2. converts exceptions into {"status": "error", "message": ...}
    3. writes one audit record (finally block, success or failure)

Tool groups:
    FACTS:      submit_facts, search_facts, verify_facts, update_fact,
                delete_facts, restore_facts
    RESOURCES:  add_resources, get_resource, update_resource_snapshot,
                mark_resources_refreshed, classify_resource, search_resources,
                delete_resources, restore_resources
    SKILLS:     create_skill, link_skill, sync_skill, get_skill, search_skills,
                update_skill, register_skill, mark_skill_reviewed, delete_skills
    CONTEXT:    get_knowledge_context
    LOGS:       submit_execution_logs, search_execution_logs, get_execution_log
    STALENESS:  check_stale, get_maintenance_report
    TAGS:       expand_tags, list_tags, create_tags
    ADMIN:      apply_seed, get_config, set_config, delete_config
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from factctl.categories import classify
from factctl.config import CONFIG_SCHEMA, FactctlConfig, parse_number_config
from factctl.freshness import check_resource_freshness, threshold_for_categories
from factctl.maintenance import maintenance_report
from factctl.seed import apply_seed as run_seed
from factctl.seed import load_manifest
from factctl.staleness import check_stale as run_check_stale
from factctl.store import KnowledgeStore, NotFoundError

logger = logging.getLogger(__name__)


def register_knowledge_tools(
    mcp,
    store: KnowledgeStore,
    config: FactctlConfig,
    *,
    audit=None,
) -> None:
    """
    Register all 36 knowledge MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        store: Initialized KnowledgeStore.
        config: FactctlConfig (maintenance defaults for check_stale).
        audit: AuditLogger for structured logging.
    """
    from factctl.mcp.audit import AuditLogger

    if audit is None:
        audit = AuditLogger(db_path=store.db_path)

    def _error(e: Exception) -> Dict[str, Any]:
        if isinstance(e, NotFoundError):
            # KeyError.__str__ quotes its argument
            return {"status": "error", "message": e.args[0]}
        return {"status": "error", "message": str(e)}

    # =====================================================================
    # FACTS
    # =====================================================================

    @mcp.tool()
    def submit_facts(facts: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Store one or more facts; identical content updates the existing fact.

        Args:
            facts: Items with content (required), tags, source,
                source_type (user|documentation|code|inference), verified.

        Returns:
            created, updated, facts: [{id, content}].
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            detail = audit.content_detail([f.get("content") or "" for f in facts])
            result = store.submit_facts(facts)
            detail.update(created=result["created"], updated=result["updated"])
            return {"status": "ok", **result}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("submit_facts", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def search_facts(
        tags: Optional[List[str]] = None,
        query: Optional[str] = None,
        verified_only: bool = False,
        source_type: Optional[str] = None,
        order_by: str = "recent",
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Search facts by tags (expanded through synonyms and hierarchy) and text.

        Args:
            tags: Tag names; a fact matches when it carries any expanded tag.
            query: Case-insensitive substring of the content.
            verified_only: Only verified facts.
            source_type: Filter by source type.
            order_by: recent | oldest | usage.
            limit: Max results (default: search_limit_facts config).

        Returns:
            facts, plus expanded_tags when tags were given and suggested_tags
            when nothing matched.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.search_facts(
                tags=tags, query=query, verified_only=verified_only,
                source_type=source_type, order_by=order_by, limit=limit,
            )
            detail = {"tags": len(tags or []), "results": len(result)}
            return {"status": "ok", "count": len(result), **result.to_dict("facts")}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("search_facts", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def verify_facts(
        ids: Optional[List[int]] = None,
        tags: Optional[List[str]] = None,
        require_all: bool = False,
    ) -> Dict[str, Any]:
        """Mark facts verified, by id or by tag.

        Args:
            ids: Fact ids.
            tags: Verify every fact carrying any (or all, with require_all) tag.
            require_all: With tags, require every tag to be present.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if not ids and not tags:
                outcome = "error"
                return {"status": "error", "message": "Provide ids or tags"}
            verified = store.verify_facts(ids) if ids else 0
            tagged: List[int] = []
            if tags:
                tagged = store.verify_facts_by_tags(tags, require_all=require_all)
            detail = {"ids": len(ids or []), "by_tags": len(tagged)}
            return {"status": "ok", "verified": verified + len(tagged), "tagged_ids": tagged}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("verify_facts", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def update_fact(
        id: Optional[int] = None,
        content_match: Optional[str] = None,
        content: Optional[str] = None,
        source: Optional[str] = None,
        source_type: Optional[str] = None,
        verified: Optional[bool] = None,
        tags: Optional[List[str]] = None,
        append_tags: Optional[List[str]] = None,
        remove_tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Patch one fact, found by id or by its exact current content.

        Args:
            id: Fact id.
            content_match: Exact content, when the id is unknown.
            content, source, source_type, verified: New values.
            tags: Replace the tag set.
            append_tags, remove_tags: Adjust the tag set (ignored with tags).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if id is None and content_match is None:
                outcome = "error"
                return {"status": "error", "message": "Provide id or content_match"}
            fact = store.update_fact(
                id, content_match,
                content=content, source=source, source_type=source_type,
                verified=verified, tags=tags, append_tags=append_tags,
                remove_tags=remove_tags,
            )
            detail = {"id": fact.id}
            return {"status": "ok", "fact": fact.to_dict()}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("update_fact", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def delete_facts(
        ids: Optional[List[int]] = None,
        tags: Optional[List[str]] = None,
        older_than: Optional[str] = None,
        unverified_only: bool = False,
        soft: bool = True,
    ) -> Dict[str, Any]:
        """Delete facts matching every given filter (soft by default).

        Args:
            ids: Fact ids.
            tags: Facts carrying any of these tags.
            older_than: ISO timestamp; facts created before it.
            unverified_only: Only unverified facts.
            soft: Keep the rows for restore_facts until hard_delete purges them.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if not (ids or tags or older_than):
                outcome = "error"
                return {"status": "error", "message": "Provide ids, tags or older_than"}
            deleted = store.delete_facts(
                ids=ids, tags=tags, older_than=older_than,
                unverified_only=unverified_only, soft=soft,
            )
            detail = {"deleted": deleted, "soft": soft}
            return {"status": "ok", "deleted": deleted, "soft": soft}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("delete_facts", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def restore_facts(ids: List[int]) -> Dict[str, Any]:
        """Undo a soft delete."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            restored = store.restore_facts(ids)
            detail = {"restored": restored}
            return {"status": "ok", "restored": restored}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("restore_facts", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # RESOURCES
    # =====================================================================

    @mcp.tool()
    def add_resources(resources: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Track resources (files, URLs, APIs, commands); existing URIs are left unchanged.

        Args:
            resources: Items with uri (required), type, description,
                snapshot, retrieval_method, tags.

        Returns:
            created, resources: [{id, uri, has_snapshot}].
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.add_resources(resources)
            detail = {"count": len(resources), "created": result["created"]}
            return {"status": "ok", **result}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("add_resources", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def get_resource(
        resource_id: Optional[int] = None,
        uri: Optional[str] = None,
        max_age_hours: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Fetch one resource with its snapshot and a freshness verdict.

        The threshold comes from the resource's categories (the strictest
        one wins) unless max_age_hours is given.

        Returns:
            resource, freshness: {categories, threshold_hours, is_fresh, ...}.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if resource_id is None and not uri:
                outcome = "error"
                return {"status": "error", "message": "Provide resource_id or uri"}
            resource = store.get_resource(resource_id=resource_id, uri=uri)
            if resource is None:
                outcome = "error"
                return {"status": "error", "message": f"Resource not found: {resource_id or uri}"}
            freshness = check_resource_freshness(
                resource, store.freshness_config(), max_age_hours=max_age_hours,
            )
            detail = {"id": resource.id, "fresh": freshness.is_fresh}
            result: Dict[str, Any] = {
                "status": "ok",
                "resource": resource.to_dict(),
                "freshness": freshness.to_dict(),
            }
            if not freshness.is_fresh:
                result["hint"] = (
                    "Snapshot is older than its freshness threshold. Re-read the "
                    "resource, then call update_resource_snapshot."
                )
            return result
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("get_resource", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def update_resource_snapshot(
        snapshot: str,
        resource_id: Optional[int] = None,
        uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Replace a resource's snapshot; skills linked to it will report drift."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            updated = store.update_resource_snapshot(snapshot, resource_id=resource_id, uri=uri)
            detail = {"bytes": len(snapshot.encode("utf-8")), "updated": updated}
            if not updated:
                outcome = "error"
                return {"status": "error", "message": f"Resource not found: {resource_id or uri}"}
            return {"status": "ok", "updated": True}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log(
                "update_resource_snapshot", rid, outcome, detail, (time.monotonic() - t0) * 1000,
            )

    @mcp.tool()
    def mark_resources_refreshed(ids: List[int]) -> Dict[str, Any]:
        """Stamp resources as verified now and list the skills that use them.

        Returns:
            affected, skills_to_review: [{id, name}].
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.mark_resources_refreshed(ids)
            detail = {"affected": result["affected"]}
            return {"status": "ok", **result}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log(
                "mark_resources_refreshed", rid, outcome, detail, (time.monotonic() - t0) * 1000,
            )

    @mcp.tool()
    def classify_resource(uri: str) -> Dict[str, Any]:
        """Categorize a URI and report its freshness threshold in hours."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            categories = sorted(classify(uri))
            threshold = threshold_for_categories(categories, store.freshness_config())
            detail = {"categories": categories}
            return {
                "status": "ok",
                "uri": uri,
                "categories": categories,
                "threshold_hours": threshold,
            }
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("classify_resource", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def search_resources(
        tags: Optional[List[str]] = None,
        uri_contains: Optional[str] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Search resources by tags (expanded), URI substring and type.

        Snapshots are left out; use get_resource to read one.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.search_resources(
                tags=tags, uri_contains=uri_contains, type=type, limit=limit,
            )
            detail = {"tags": len(tags or []), "results": len(result)}
            payload = result.to_dict("resources")
            for r in payload["resources"]:
                r.pop("snapshot", None)
            return {"status": "ok", "count": len(result), **payload}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("search_resources", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def delete_resources(
        ids: Optional[List[int]] = None,
        uris: Optional[List[str]] = None,
        soft: bool = True,
    ) -> Dict[str, Any]:
        """Delete resources by id or URI (soft by default)."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if not ids and not uris:
                outcome = "error"
                return {"status": "error", "message": "Provide ids or uris"}
            deleted = store.delete_resources(ids=ids, uris=uris, soft=soft)
            detail = {"deleted": deleted, "soft": soft}
            return {"status": "ok", "deleted": deleted, "soft": soft}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("delete_resources", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def restore_resources(ids: List[int]) -> Dict[str, Any]:
        """Undo a soft delete."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            restored = store.restore_resources(ids)
            detail = {"restored": restored}
            return {"status": "ok", "restored": restored}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("restore_resources", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # SKILLS
    # =====================================================================

    @mcp.tool()
    def create_skill(
        name: str,
        title: str,
        content: str,
        description: str = "",
        tags: Optional[List[str]] = None,
        skills: Optional[List[str]] = None,
        resources: Optional[List[int]] = None,
        facts: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Write a markdown skill file and register it.

        Args:
            name: Unique skill name (file is <skills_dir>/<name>.md).
            title: Human title.
            content: Markdown body.
            description: One-line summary.
            tags: Tag names.
            skills, resources, facts: References to link (names, ids, ids).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            detail = audit.content_detail([content])
            skill = store.create_skill(
                name, title, content, description=description, tags=tags,
                references={
                    "skills": skills or [],
                    "resources": resources or [],
                    "facts": facts or [],
                },
            )
            detail["id"] = skill.id
            return {
                "status": "ok",
                "id": skill.id,
                "name": skill.name,
                "file_path": skill.file_path,
                "content_hash": skill.content_hash,
            }
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("create_skill", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def link_skill(
        name: str,
        skills: Optional[List[Dict[str, str]]] = None,
        resources: Optional[List[int]] = None,
        facts: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Link a skill to skills, resources and facts.

        Args:
            name: Skill to link from.
            skills: [{name, relation}] (relation defaults to "related").
            resources: Resource ids; links capture the current snapshot digest.
            facts: Fact ids.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            pairs = [(s["name"], s.get("relation") or "related") for s in skills or []]
            counts = store.link_skill(name, skills=pairs, resources=resources, facts=facts)
            detail = dict(counts)
            return {"status": "ok", "name": name, **counts}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("link_skill", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def sync_skill(name: str) -> Dict[str, Any]:
        """Re-hash a skill file after editing it on disk."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.sync_skill(name)
            detail = {"updated": result["updated"]}
            return {"status": "ok", **result}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("sync_skill", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def get_skill(name: str) -> Dict[str, Any]:
        """Fetch a skill with its markdown body and resource links.

        Returns:
            skill, content (None when the file is missing), resource_links
            (each with a ``stale`` flag).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            skill = store.get_skill(name)
            if skill is None:
                outcome = "error"
                return {"status": "error", "message": f"Skill not found: {name}"}
            content = store.read_skill_content(skill)
            links = store.skill_resource_links(skill.id)
            detail = {"id": skill.id, "file_found": content is not None}
            return {
                "status": "ok",
                "skill": skill.to_dict(),
                "content": content,
                "resource_links": [link.to_dict() for link in links],
            }
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("get_skill", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def search_skills(
        tags: Optional[List[str]] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Search skills by tags (expanded) and name/title/description text."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.search_skills(tags=tags, query=query, limit=limit)
            detail = {"tags": len(tags or []), "results": len(result)}
            return {"status": "ok", "count": len(result), **result.to_dict("skills")}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("search_skills", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def update_skill(
        name: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        append_tags: Optional[List[str]] = None,
        add_skills: Optional[List[str]] = None,
        remove_skills: Optional[List[str]] = None,
        add_resources: Optional[List[int]] = None,
        remove_resources: Optional[List[int]] = None,
        add_facts: Optional[List[int]] = None,
        remove_facts: Optional[List[int]] = None,
    ) -> Dict[str, Any]:
        """Patch a skill's metadata and references; marks it reviewed.

        Re-adding a linked resource re-captures its snapshot digest, which
        clears a ``resource_changed`` report once the skill has been checked.

        Args:
            name: Skill to update.
            title, description: New values.
            tags: Replace the tag set. append_tags: Add to it.
            add_skills, remove_skills: Referenced skill names.
            add_resources, remove_resources: Linked resource ids.
            add_facts, remove_facts: Linked fact ids.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            skill = store.update_skill(
                name, title=title, description=description,
                tags=tags, append_tags=append_tags,
                add_references={
                    "skills": add_skills or [],
                    "resources": add_resources or [],
                    "facts": add_facts or [],
                },
                remove_references={
                    "skills": remove_skills or [],
                    "resources": remove_resources or [],
                    "facts": remove_facts or [],
                },
            )
            detail = {"id": skill.id}
            return {"status": "ok", "skill": skill.to_dict()}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("update_skill", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def register_skill(file_path: str) -> Dict[str, Any]:
        """Register a markdown file already on disk as a skill pending review.

        Returns:
            id, name, is_new (False when a skill with that name exists).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            info = store.register_skill_from_file(file_path)
            if info is None:
                outcome = "error"
                return {"status": "error", "message": f"Not a markdown file: {file_path}"}
            detail = {"is_new": info["is_new"]}
            return {"status": "ok", **info}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("register_skill", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def mark_skill_reviewed(name: str) -> Dict[str, Any]:
        """Clear a skill's pending-review flag without changing it."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"name": name}
        try:
            if not store.mark_skill_reviewed(name):
                outcome = "error"
                return {"status": "error", "message": f"Skill not found: {name}"}
            return {"status": "ok", "name": name, "needs_review": False}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("mark_skill_reviewed", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def delete_skills(names: List[str], delete_files: bool = False) -> Dict[str, Any]:
        """Remove skills by name; their links go with them.

        Args:
            names: Skill names.
            delete_files: Also delete the markdown files.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.delete_skills(names, delete_files=delete_files)
            detail = dict(result)
            return {"status": "ok", **result}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("delete_skills", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # CONTEXT
    # =====================================================================

    @mcp.tool()
    def get_knowledge_context(
        tags: List[str],
        max_facts: int = 30,
        max_resources: int = 10,
        max_skills: int = 5,
        include_facts: bool = True,
        include_resources: bool = True,
        include_skills: bool = True,
        format: str = "json",
    ) -> Dict[str, Any]:
        """Bundle the facts, resource previews and skills behind a set of tags.

        Args:
            tags: Tag names (expanded through synonyms and hierarchy).
            max_facts, max_resources, max_skills: Per-section caps.
            include_facts, include_resources, include_skills: Section switches.
            format: json | markdown.

        Returns:
            json: tags, facts, resources, skills. markdown: tags, markdown.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if format not in ("json", "markdown"):
                outcome = "error"
                return {"status": "error", "message": f"Unknown format: {format}"}
            ctx = store.build_context(
                tags, max_facts=max_facts, max_resources=max_resources,
                max_skills=max_skills, include_facts=include_facts,
                include_resources=include_resources, include_skills=include_skills,
            )
            detail = {
                "facts": len(ctx.facts),
                "resources": len(ctx.resources),
                "skills": len(ctx.skills),
            }
            if format == "markdown":
                return {"status": "ok", "tags": ctx.tags, "markdown": ctx.to_markdown()}
            return {"status": "ok", **ctx.to_dict()}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("get_knowledge_context", rid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # EXECUTION LOGS
    # =====================================================================

    @mcp.tool()
    def submit_execution_logs(logs: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Record command runs for later lookup.

        Args:
            logs: Items with command (required), success or exit_code,
                working_directory, context, output, duration_ms,
                skill_name, tags.

        Returns:
            created, ids.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.submit_execution_logs(logs)
            detail = {"created": result["created"]}
            return {"status": "ok", **result}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("submit_execution_logs", rid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def search_execution_logs(
        tags: Optional[List[str]] = None,
        query: Optional[str] = None,
        success: Optional[bool] = None,
        skill_name: Optional[str] = None,
        order_by: str = "recent",
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Search recorded runs.

        Args:
            tags: Tag names (expanded).
            query: Substring of command, context or output.
            success: Only successful (True) or failed (False) runs.
            skill_name: Runs recorded against this skill.
            order_by: recent | oldest.
            limit: Max results (default: search_limit_execution_logs config).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = store.search_execution_logs(
                tags=tags, query=query, success=success,
                skill_name=skill_name, order_by=order_by, limit=limit,
            )
            detail = {"tags": len(tags or []), "results": len(result)}
            return {"status": "ok", "count": len(result), **result.to_dict("logs")}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("search_execution_logs", rid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def get_execution_log(id: int) -> Dict[str, Any]:
        """Fetch one recorded run with its full output."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": id}
        try:
            log = store.get_execution_log(id)
            if log is None:
                outcome = "error"
                return {"status": "error", "message": f"Execution log not found: {id}"}
            return {"status": "ok", "log": log.to_dict()}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("get_execution_log", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # STALENESS
    # =====================================================================

    @mcp.tool()
    def check_stale(
        max_age_hours: Optional[float] = None,
        check_resources: bool = True,
        check_skills: bool = True,
        check_facts: bool = True,
    ) -> Dict[str, Any]:
        """Report stale resources, drifted or old skills, old unverified facts
        and skills pending review.

        Args:
            max_age_hours: Global cutoff (default: staleness_max_age_hours).
            check_resources, check_skills, check_facts: Section switches.

        Returns:
            stale_resources, stale_skills, unverified_facts,
            skills_needing_review, summary.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if max_age_hours is None:
                max_age_hours = parse_number_config(
                    store.get_config("staleness_max_age_hours"),
                    config.maintenance.staleness_max_age_hours,
                )
            report = run_check_stale(
                store, max_age_hours,
                check_resources=check_resources,
                check_skills=check_skills,
                check_facts=check_facts,
            )
            detail = report.summary
            return {"status": "ok", **report.to_dict()}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("check_stale", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def get_maintenance_report(max_age_hours: Optional[float] = None) -> Dict[str, Any]:
        """Markdown digest of stale knowledge and recent maintenance runs.

        Args:
            max_age_hours: Global cutoff (default: staleness_max_age_hours).

        Returns:
            markdown, summary, max_age_hours, tasks.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            report = maintenance_report(store, max_age_hours)
            detail = report["summary"]
            return {"status": "ok", **report}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("get_maintenance_report", rid, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # TAGS
    # =====================================================================

    @mcp.tool()
    def expand_tags(tags: List[str]) -> Dict[str, Any]:
        """Expand tags through configured synonyms and hierarchies."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            expanded = store.expand_tags(tags)
            detail = {"input": len(tags), "expanded": len(expanded)}
            return {"status": "ok", "tags": tags, "expanded": expanded}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("expand_tags", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def list_tags(
        filter: Optional[str] = None,
        order_by: str = "usage",
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """List tags, optionally filtered by name substring.

        Args:
            filter: Name substring.
            order_by: usage | name | recent.
            limit: Max results (default: search_limit_tags config).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            tags = store.list_tags(filter=filter, order_by=order_by, limit=limit)
            detail = {"results": len(tags)}
            return {"status": "ok", "count": len(tags), "tags": [t.to_dict() for t in tags]}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("list_tags", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def create_tags(
        tags: List[Dict[str, str]],
        update_descriptions: bool = False,
    ) -> Dict[str, Any]:
        """Create tags with descriptions.

        Args:
            tags: Items with name (required) and description.
            update_descriptions: Overwrite the description of tags that
                already exist; otherwise they are left as is.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            created = store.create_tags(tags)
            updated = 0
            if update_descriptions:
                updated = store.update_tag_descriptions({
                    t["name"].strip(): t["description"]
                    for t in tags if t.get("description")
                })
                created = [store.get_tag(t.name) or t for t in created]
            detail = {"tags": len(created), "updated": updated}
            return {
                "status": "ok",
                "count": len(created),
                "updated": updated,
                "tags": [t.to_dict() for t in created],
            }
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("create_tags", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # ADMIN
    # =====================================================================

    @mcp.tool()
    def apply_seed(manifest_path: Optional[str] = None, force: bool = False) -> Dict[str, Any]:
        """Install or upgrade system content without overwriting user edits.

        Args:
            manifest_path: JSON manifest (default: built-in manifest).
            force: Re-apply even when the stored version is current.

        Returns:
            version, applied, tags/facts/skills: {created, updated, skipped}.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            manifest = load_manifest(manifest_path) if manifest_path else None
            result = run_seed(store, manifest, force=force)
            detail = {"version": result.version, "applied": result.applied}
            return {"status": "ok", **result.to_dict()}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("apply_seed", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def get_config(key: Optional[str] = None) -> Dict[str, Any]:
        """Read one config key, or every key with its schema.

        Returns:
            For a key: key, value, schema. Otherwise: config, schema.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            if key:
                detail = {"key": key}
                return {
                    "status": "ok",
                    "key": key,
                    "value": store.get_config(key),
                    "schema": CONFIG_SCHEMA.get(key),
                }
            values = store.all_config()
            detail = {"keys": len(values)}
            return {"status": "ok", "config": values, "schema": CONFIG_SCHEMA}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("get_config", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def set_config(key: str, value: str) -> Dict[str, Any]:
        """Write one config key. Values are validated against the key's type."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"key": key}
        try:
            store.set_config(key, value)
            return {"status": "ok", "key": key, "value": store.get_config(key)}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("set_config", rid, outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def delete_config(key: str) -> Dict[str, Any]:
        """Remove one config key so its default applies again."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"key": key}
        try:
            deleted = store.delete_config(key)
            return {"status": "ok", "key": key, "deleted": deleted}
        except Exception as e:
            outcome = "error"
            return _error(e)
        finally:
            audit.log("delete_config", rid, outcome, detail, (time.monotonic() - t0) * 1000)
