"""
factctl CLI — Knowledge Store Commands

Commands:
    factctl init     [PATH]                       — create store, config defaults, seed
    factctl seed     [--manifest M] [--force]     — apply a seed manifest
    factctl stale    [--max-age-hours H]          — staleness report
    factctl report   [--max-age-hours H]          — markdown maintenance report
    factctl classify URI [URI ...]                — resource categories + threshold
    factctl expand   TAG [TAG ...]                — tag expansion
    factctl maintain [--task T ...] [--all]       — run maintenance tasks
    factctl stats                                 — store metrics
    factctl serve                                 — start MCP server (foreground)

Environment variables:
    FACTCTL_DB          Path to SQLite database (default: .factctl/knowledge.db)
    FACTCTL_SKILLS_DIR  Skills directory (default: skills_dir config key)

Precedence (invariant):
    CLI --flag  >  FACTCTL_* env var  >  store config  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, unknown task, unreadable manifest)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_DEFAULT_DB = ".factctl/knowledge.db"


# ---------------------------------------------------------------------------
# Env parsing and resolvers
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > FACTCTL_DB > .factctl/knowledge.db."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("FACTCTL_DB", _DEFAULT_DB)


def _resolve_skills_dir(args: Optional[argparse.Namespace] = None) -> Optional[str]:
    """Resolve skills dir: CLI --skills-dir > FACTCTL_SKILLS_DIR > store config."""
    if args and getattr(args, "skills_dir", None):
        return args.skills_dir
    return _env_str("FACTCTL_SKILLS_DIR", None)


def _open_store(args: argparse.Namespace, db_path: Optional[str] = None):
    """Open a KnowledgeStore. Creates the DB and parent dirs if needed."""
    from factctl.store import KnowledgeStore
    return KnowledgeStore(
        db_path=db_path or _resolve_db(args),
        skills_dir=_resolve_skills_dir(args),
    )


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create a knowledge workspace: database, config defaults, seed content."""
    from factctl.config import initialize_config_defaults
    from factctl.seed import apply_seed

    target = Path(args.path).resolve()
    db_path = target / "knowledge.db"
    existed = db_path.exists()

    target.mkdir(parents=True, exist_ok=True)
    store = _open_store(args, db_path=str(db_path))
    try:
        if store.get_config("skills_dir") is None and not _resolve_skills_dir(args):
            store.set_config("skills_dir", str(target / "skills"))
        written = initialize_config_defaults(store)
        seeded = None
        if not args.no_seed:
            seeded = apply_seed(store)
    finally:
        store.close()

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("*.db\n*.db-wal\n*.db-shm\n", encoding="utf-8")

    verb = "exists" if existed else "initialized"
    _info(f"Knowledge workspace {verb}: {target}")
    _info(f"  Database:        {db_path}")
    _info(f"  Config defaults: {len(written)} written")
    if seeded is not None:
        _info(f"  Seed v{seeded.version}: {'applied' if seeded.applied else 'already current'}")
    print(f'export FACTCTL_DB="{db_path}"')


# ===========================================================================
# Command: seed
# ===========================================================================


def cmd_seed(args: argparse.Namespace) -> None:
    """Apply the built-in (or a JSON) seed manifest."""
    from factctl.seed import apply_seed, load_manifest

    manifest = None
    if args.manifest:
        try:
            manifest = load_manifest(args.manifest)
        except (OSError, ValueError) as e:
            _warn(f"Error: cannot load manifest {args.manifest}: {e}")
            sys.exit(1)

    store = _open_store(args)
    try:
        result = apply_seed(store, manifest, force=args.force)
    finally:
        store.close()

    if getattr(args, "json", False):
        _print_json({"status": "ok", **result.to_dict()})
        return
    if not result.applied:
        print(f"Seed v{result.version} already applied (use --force to re-apply)")
        return
    print(f"Seed v{result.version} applied")
    for kind in ("tags", "facts", "skills"):
        c = getattr(result, kind)
        print(f"  {kind:7s} created={c.created} updated={c.updated} skipped={c.skipped}")


# ===========================================================================
# Command: stale
# ===========================================================================


def cmd_stale(args: argparse.Namespace) -> None:
    """Print the staleness report."""
    from factctl.config import maintenance_from_kv
    from factctl.staleness import check_stale

    store = _open_store(args)
    try:
        hours = args.max_age_hours
        if hours is None:
            hours = maintenance_from_kv(store.all_config()).staleness_max_age_hours
        report = check_stale(
            store, hours,
            check_resources=not args.no_resources,
            check_skills=not args.no_skills,
            check_facts=not args.no_facts,
        )
    finally:
        store.close()

    if getattr(args, "json", False):
        _print_json({"status": "ok", **report.to_dict()})
        return

    summary = report.summary
    print(f"Staleness report (max age {hours}h)")
    print("=" * 40)
    for r in report.stale_resources:
        when = r.last_verified_at or "never verified"
        print(f"  resource #{r.id} {r.uri} ({when}, {r.days_stale}d)")
    for s in report.stale_skills:
        deps = ", ".join(d.name for d in s.stale_dependencies)
        print(f"  skill    {s.name}: {s.reason}" + (f" [{deps}]" if deps else ""))
    for f in report.unverified_facts:
        print(f"  fact     #{f.id} unverified {f.days_old}d: {f.content[:60]}")
    for s in report.skills_needing_review:
        print(f"  review   {s.name} ({s.file_path})")
    print(
        f"Total: {summary['total_stale']} (resources={summary['resources']}, "
        f"skills={summary['skills']}, facts={summary['facts']}, "
        f"pending_review={summary['pending_review']})"
    )


def cmd_report(args: argparse.Namespace) -> None:
    """Print the markdown maintenance report."""
    from factctl.maintenance import maintenance_report

    store = _open_store(args)
    try:
        report = maintenance_report(store, args.max_age_hours)
    finally:
        store.close()

    if getattr(args, "json", False):
        _print_json({"status": "ok", **report})
        return
    print(report["markdown"])


# ===========================================================================
# Commands: classify, expand
# ===========================================================================


def cmd_classify(args: argparse.Namespace) -> None:
    """Classify URIs into freshness categories."""
    from factctl.categories import classify
    from factctl.freshness import threshold_for_categories

    store = _open_store(args)
    try:
        freshness = store.freshness_config()
    finally:
        store.close()

    rows = []
    for uri in args.uris:
        categories = sorted(classify(uri))
        rows.append({
            "uri": uri,
            "categories": categories,
            "threshold_hours": threshold_for_categories(categories, freshness),
        })

    if getattr(args, "json", False):
        _print_json({"status": "ok", "results": rows})
        return
    for row in rows:
        print(f"{row['uri']}\t{','.join(row['categories'])}\t{row['threshold_hours']}h")


def cmd_expand(args: argparse.Namespace) -> None:
    """Expand tags through configured synonyms and hierarchies."""
    store = _open_store(args)
    try:
        expanded = store.expand_tags(args.tags)
    finally:
        store.close()

    if getattr(args, "json", False):
        _print_json({"status": "ok", "tags": args.tags, "expanded": expanded})
        return
    print("\n".join(expanded))


# ===========================================================================
# Command: maintain
# ===========================================================================


def cmd_maintain(args: argparse.Namespace) -> None:
    """Run maintenance tasks (due ones by default)."""
    from factctl.maintenance import TASKS, run_tasks

    names = args.task or (list(TASKS) if args.all else None)
    unknown = [n for n in names or [] if n not in TASKS]
    if unknown:
        _warn(f"Error: unknown task(s): {', '.join(unknown)} (known: {', '.join(TASKS)})")
        sys.exit(1)

    store = _open_store(args)
    try:
        results = run_tasks(store, names)
    finally:
        store.close()

    if getattr(args, "json", False):
        _print_json({"status": "ok", "results": [r.to_dict() for r in results]})
    elif not results:
        print("No tasks due")
    else:
        for r in results:
            print(f"{r.task:16s} {r.status:8s} {r.message}")

    if any(r.status == "error" for r in results):
        sys.exit(1)


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show knowledge store statistics."""
    store = _open_store(args)
    try:
        stats = store.stats()
    finally:
        store.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _print_json(stats)
        return
    print("Knowledge Store Statistics")
    print("=" * 40)
    print(f"  Tags:       {stats['tags']}")
    print(f"  Facts:      {stats['facts']} ({stats['facts_verified']} verified, "
          f"{stats['facts_deleted']} deleted)")
    print(f"  Resources:  {stats['resources']}")
    print(f"  Skills:     {stats['skills']} ({stats['skills_needing_review']} need review)")
    print(f"  Skill links: {stats['skill_resource_links']}")
    print(f"  Exec logs:  {stats['execution_logs']}")
    print(f"  Seed:       v{stats['seed_version']}")


# ===========================================================================
# Command: serve
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the factctl MCP server in foreground."""
    from factctl.mcp.server import build_parser as mcp_parser
    from factctl.mcp.server import create_server

    server_argv = ["--db", _resolve_db(args)]
    skills_dir = _resolve_skills_dir(args)
    if skills_dir:
        server_argv.extend(["--skills-dir", skills_dir])
    if getattr(args, "audit_log", None):
        server_argv.extend(["--audit-log", args.audit_log])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)
    mcp, _ = create_server(server_args)

    _info(f"factctl MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the factctl argument parser."""
    # SUPPRESS keeps subparser defaults from overriding main-parser values.
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: $FACTCTL_DB or {_DEFAULT_DB})",
    )
    _common.add_argument(
        "--skills-dir", default=argparse.SUPPRESS,
        help="Skills directory (default: $FACTCTL_SKILLS_DIR or skills_dir config)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="factctl",
        description="factctl — tagged knowledge store for agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p_init = sub.add_parser("init", parents=[_common], help="Initialize a knowledge workspace")
    p_init.add_argument(
        "path", nargs="?", default=".factctl",
        help="Workspace directory (default: .factctl)",
    )
    p_init.add_argument("--no-seed", action="store_true", help="Skip the built-in seed")
    p_init.set_defaults(func=cmd_init)

    p_seed = sub.add_parser("seed", parents=[_common], help="Apply a seed manifest")
    p_seed.add_argument("--manifest", default=None, help="JSON manifest (default: built-in)")
    p_seed.add_argument("--force", action="store_true", help="Bypass the version gate")
    p_seed.set_defaults(func=cmd_seed)

    p_stale = sub.add_parser("stale", parents=[_common], help="Report stale knowledge")
    p_stale.add_argument(
        "--max-age-hours", type=float, default=None,
        help="Cutoff in hours (default: staleness_max_age_hours config or 168)",
    )
    p_stale.add_argument("--no-resources", action="store_true", help="Skip resources")
    p_stale.add_argument("--no-skills", action="store_true", help="Skip skills")
    p_stale.add_argument("--no-facts", action="store_true", help="Skip facts")
    p_stale.set_defaults(func=cmd_stale)

    p_report = sub.add_parser("report", parents=[_common], help="Markdown maintenance report")
    p_report.add_argument(
        "--max-age-hours", type=float, default=None,
        help="Cutoff in hours (default: staleness_max_age_hours config or 168)",
    )
    p_report.set_defaults(func=cmd_report)

    p_cls = sub.add_parser("classify", parents=[_common], help="Classify resource URIs")
    p_cls.add_argument("uris", nargs="+", help="Resource URIs or paths")
    p_cls.set_defaults(func=cmd_classify)

    p_exp = sub.add_parser("expand", parents=[_common], help="Expand tags")
    p_exp.add_argument("tags", nargs="+", help="Tag names")
    p_exp.set_defaults(func=cmd_expand)

    p_maint = sub.add_parser("maintain", parents=[_common], help="Run maintenance tasks")
    p_maint.add_argument(
        "--task", action="append", default=None,
        help="Task to run (repeatable; default: every due task)",
    )
    p_maint.add_argument("--all", action="store_true", help="Run every task now")
    p_maint.set_defaults(func=cmd_maintain)

    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument("--audit-log", default=None, help="Audit log file (default: stderr)")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> None:
    """CLI entry point: factctl <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except ValueError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
