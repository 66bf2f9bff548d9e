"""
factctl MCP Server — Tagged Knowledge Store for Agents

Standalone MCP server exposing the knowledge store (facts, resources,
skills) via the Model Context Protocol.

Thin MCP layer delegating to KnowledgeStore and the engine modules;
all logic lives in factctl/*.

Usage:
    python -m factctl.mcp.server --db /path/to/knowledge.db
    python -m factctl.mcp.server --skills-dir ./skills --audit-log audit.jsonl
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Tagged knowledge store for agents (36 tools).\n"
    "\n"
    "FACTS:     submit_facts to record findings, search_facts to recall them\n"
    "           (tags expand through synonyms and hierarchies).\n"
    "RESOURCES: add_resources with a snapshot, get_resource to read it back with\n"
    "           a freshness verdict, update_resource_snapshot after re-reading.\n"
    "SKILLS:    create_skill for reusable procedures, link_skill to the resources\n"
    "           and facts they rely on, sync_skill after editing the file,\n"
    "           update_skill once a changed resource has been checked.\n"
    "CONTEXT:   get_knowledge_context bundles facts, resources and skills by tag.\n"
    "LOGS:      submit_execution_logs after running commands worth remembering.\n"
    "UPKEEP:    check_stale lists what needs re-verification,\n"
    "           get_maintenance_report summarizes it as markdown.\n"
    "\n"
    "Rules:\n"
    "- One statement per fact, 2-5 lowercase hyphenated tags\n"
    "- Set source_type (user|documentation|code|inference)\n"
    "- Refresh stale snapshots before relying on them\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the knowledge MCP server."""
    p = argparse.ArgumentParser(
        prog="factctl-mcp",
        description="factctl MCP Server — tagged knowledge store for agents",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("FACTCTL_DB", ".factctl/knowledge.db"),
        help="SQLite database path (default: .factctl/knowledge.db or $FACTCTL_DB)",
    )
    p.add_argument(
        "--skills-dir",
        default=os.environ.get("FACTCTL_SKILLS_DIR"),
        help="Skills directory (default: skills_dir config key or $FACTCTL_SKILLS_DIR)",
    )
    p.add_argument(
        "--config",
        default=None,
        help="JSON config file (default: compiled defaults)",
    )
    p.add_argument(
        "--no-seed",
        action="store_true",
        help="Do not apply the built-in seed manifest on startup",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with knowledge tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from factctl.config import initialize_config_defaults, load_config
    from factctl.mcp.audit import AuditLogger
    from factctl.mcp.tools import register_knowledge_tools
    from factctl.seed import apply_seed
    from factctl.store import KnowledgeStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    config.store.db_path = args.db

    store = KnowledgeStore(
        db_path=config.store.db_path,
        wal_mode=config.store.wal_mode,
        skills_dir=args.skills_dir,
    )
    initialize_config_defaults(store)
    if not args.no_seed:
        apply_seed(store)

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output, db_path=config.store.db_path)

    mcp = FastMCP(
        name="factctl Knowledge",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_knowledge_tools(mcp, store, config, audit=audit)

    logger.info(
        "factctl MCP server ready: db=%s, skills_dir=%s",
        config.store.db_path, store.skills_dir,
    )
    return mcp, store


def main():
    """CLI entry point: parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
