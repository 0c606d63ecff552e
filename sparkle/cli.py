"""
sparkle CLI — Item commands over the local store

Commands:
    sparkle add    "title" [--kind K] [--body B] ...   — capture an item
    sparkle show   <id>                                 — display one item
    sparkle list   [--kind K] [--status S] [--tag T]   — filtered listing
    sparkle update <id> [--title T] [--kind K] ...      — patch an item
    sparkle delete <id>                                 — hard delete
    sparkle search "query" [-k N]                       — full-text search
    sparkle tags                                        — distinct tags
    sparkle advance <id> developing|permanent           — grow a note
    sparkle triage <action> <id>...                     — bulk status change
    sparkle share  <id> [--public]                      — create a share link
    sparkle stats                                       — counters + focus list
    sparkle serve                                       — start MCP server

Environment variables:
    SPARKLE_DB      Path to SQLite database (default: .sparkle/sparkle.db)
    SPARKLE_CONFIG  JSON config file

Precedence:
    CLI --flag  >  SPARKLE_* env var  >  config file  >  compiled default

Exit codes:
    0  Success
    1  Operational error (unknown id, invalid field or transition)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from sparkle.config import DEFAULT_DB_PATH, SparkleConfig, load_config
from sparkle.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env parsing
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback (empty counts as unset)."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _load(args: argparse.Namespace) -> SparkleConfig:
    return load_config(getattr(args, "config", None) or _env_str("SPARKLE_CONFIG", None))


def _resolve_db(args: argparse.Namespace, config: Optional[SparkleConfig] = None) -> str:
    """Resolve database path: CLI --db > SPARKLE_DB > config > default."""
    if getattr(args, "db", None):
        return args.db
    env = _env_str("SPARKLE_DB", None)
    if env:
        return env
    return config.store.db_path if config else DEFAULT_DB_PATH


def _open_store(args: argparse.Namespace, config: Optional[SparkleConfig] = None):
    """Open an ItemStore. Creates the DB and parent dirs if needed."""
    from sparkle.store import ItemStore
    if config is None:
        config = _load(args)
    return ItemStore(
        db_path=_resolve_db(args, config),
        wal_mode=config.store.wal_mode,
        rebuild_index=config.store.rebuild_index_on_open,
    )


def _split(value: Optional[str]) -> Optional[List[str]]:
    """Comma-separated list → list (None stays None, "" → [])."""
    if value is None:
        return None
    return [t.strip() for t in value.split(",") if t.strip()]


# ---------------------------------------------------------------------------
# Output helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _print_item_line(item) -> None:
    status = f"{item.kind}/{item.status}"
    print(f"  {item.id}  {status:20s}  {item.format_line()}")
    if item.tags:
        print(f"    tags: {', '.join(item.tags)}")


def _print_item(item) -> None:
    print(f"ID:        {item.id}")
    print(f"Kind:      {item.kind}")
    print(f"Status:    {item.status}")
    print(f"Title:     {item.title}")
    if item.priority:
        print(f"Priority:  {item.priority}")
    if item.due:
        print(f"Due:       {item.due}")
    print(f"Tags:      {', '.join(item.tags) if item.tags else '(none)'}")
    if item.aliases:
        print(f"Aliases:   {', '.join(item.aliases)}")
    if item.linked_ref:
        title = item.linked_note_title or "(deleted)"
        print(f"Linked:    {item.linked_ref} {title}")
    if item.kind == "note":
        print(f"Tasks:     {item.linked_task_count}")
    if item.share_visibility:
        print(f"Shared:    {item.share_visibility}")
    if item.origin:
        print(f"Origin:    {item.origin}")
    print(f"Created:   {item.created}")
    print(f"Modified:  {item.modified}")
    if item.body:
        print(f"\n--- Body ---\n{item.body}")


def _fields_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Collect item fields given on the command line (unset flags omitted)."""
    fields: Dict[str, Any] = {}
    for name in ("title", "body", "status", "priority", "due", "origin"):
        value = getattr(args, name, None)
        if value is not None:
            fields[name] = value
    if getattr(args, "kind", None) is not None:
        fields["kind"] = args.kind
    if getattr(args, "link", None) is not None:
        fields["linked_ref"] = args.link
    if getattr(args, "source", None) is not None:
        fields["external_source"] = args.source
    for name in ("tags", "aliases"):
        values = _split(getattr(args, name, None))
        if values is not None:
            fields[name] = values
    return fields


# ===========================================================================
# Commands
# ===========================================================================


def cmd_add(args: argparse.Namespace) -> None:
    """Create an item."""
    store = _open_store(args)
    try:
        fields = _fields_from_args(args)
        kind = fields.pop("kind", "note")
        fields.setdefault("origin", "cli")
        item = store.create(kind=kind, **fields)
        if getattr(args, "json", False):
            _print_json(item.to_dict())
        else:
            _info(f"Created {item.kind} ({item.status})")
            print(item.id)
    finally:
        store.close()


def cmd_show(args: argparse.Namespace) -> None:
    """Show an item by ID."""
    store = _open_store(args)
    try:
        item = store.get(args.id)
        if getattr(args, "json", False):
            _print_json(item.to_dict())
        else:
            _print_item(item)
    finally:
        store.close()


def cmd_list(args: argparse.Namespace) -> None:
    """List items with filters."""
    config = _load(args)
    store = _open_store(args, config)
    try:
        page = store.list(
            status=args.status,
            kind=args.kind,
            tag=args.tag,
            exclude_statuses=_split(args.exclude),
            sort=args.sort or config.list.default_sort,
            order=args.order or config.list.default_order,
            limit=args.limit if args.limit is not None else config.list.default_limit,
            offset=args.offset,
        )
        if getattr(args, "json", False):
            _print_json(page.to_dict())
            return
        if not page.items:
            _info("No items.")
            return
        print(f"{page.total} item(s), showing {len(page.items)}:\n")
        for item in page.items:
            _print_item_line(item)
    finally:
        store.close()


def cmd_update(args: argparse.Namespace) -> None:
    """Patch an item."""
    store = _open_store(args)
    try:
        fields = _fields_from_args(args)
        if not fields:
            _warn("Nothing to update.")
            sys.exit(1)
        item = store.update(args.id, fields)
        if getattr(args, "json", False):
            _print_json(item.to_dict())
        else:
            _info(f"Updated {item.id}")
            _print_item_line(item)
    finally:
        store.close()


def cmd_delete(args: argparse.Namespace) -> None:
    """Hard-delete an item."""
    store = _open_store(args)
    try:
        if not store.delete(args.id):
            raise NotFound(args.id)
        _info(f"Deleted {args.id}")
    finally:
        store.close()


def cmd_search(args: argparse.Namespace) -> None:
    """Full-text search."""
    config = _load(args)
    store = _open_store(args, config)
    try:
        items = store.search(args.query, args.k or config.search.default_limit)
        if getattr(args, "json", False):
            meta = store.last_search_meta
            _print_json({
                "items": [it.to_dict() for it in items],
                "strategy": meta.strategy if meta else None,
            })
            return
        if not items:
            _info("No results found.")
            return
        print(f"Found {len(items)} item(s):\n")
        for item in items:
            _print_item_line(item)
    finally:
        store.close()


def cmd_tags(args: argparse.Namespace) -> None:
    """Print distinct tags."""
    store = _open_store(args)
    try:
        tags = store.all_tags()
        if getattr(args, "json", False):
            _print_json(tags)
        else:
            for tag in tags:
                print(tag)
    finally:
        store.close()


def cmd_advance(args: argparse.Namespace) -> None:
    """Advance a note one maturity step."""
    store = _open_store(args)
    try:
        item = store.advance(args.id, args.target)
        if getattr(args, "json", False):
            _print_json(item.to_dict())
        else:
            _info(f"Advanced {item.id}")
            _print_item_line(item)
    finally:
        store.close()


def cmd_triage(args: argparse.Namespace) -> None:
    """Apply a bulk action."""
    store = _open_store(args)
    try:
        result = store.triage(args.ids, args.action)
        if getattr(args, "json", False):
            _print_json(result)
        else:
            print(f"{args.action}: {result['affected']} affected")
            for item_id in result["skipped"]:
                print(f"  skipped {item_id}")
    finally:
        store.close()


def cmd_share(args: argparse.Namespace) -> None:
    """Create a share link for a note."""
    from sparkle.shares import create_share
    store = _open_store(args)
    try:
        share = create_share(
            store, args.id, "public" if args.public else "unlisted",
        )
        if share is None:
            raise ValidationError(f"Only existing notes can be shared: {args.id}")
        if getattr(args, "json", False):
            _print_json(share.to_dict())
        else:
            print(share.token)
    finally:
        store.close()


def cmd_stats(args: argparse.Namespace) -> None:
    """Show counters and today's focus list."""
    from sparkle.stats import format_stats, get_focus_items, get_stats
    store = _open_store(args)
    try:
        stats = get_stats(store)
        focus = get_focus_items(store)
        if getattr(args, "json", False):
            _print_json({**stats, "focus": [it.to_dict() for it in focus]})
            return
        print(format_stats(stats))
        if focus:
            print("\nFocus:")
            for item in focus:
                _print_item_line(item)
    finally:
        store.close()


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the sparkle MCP server in foreground."""
    try:
        from sparkle.mcp.server import build_parser as mcp_parser
        from sparkle.mcp.server import create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    config = _load(args)
    server_argv = ["--db", _resolve_db(args, config)]
    if getattr(args, "config", None):
        server_argv.extend(["--config", args.config])
    if getattr(args, "audit_log", None):
        server_argv.extend(["--audit-log", args.audit_log])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")
    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install mcp")
        sys.exit(1)

    _info(f"sparkle MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Shared argument helper
# ===========================================================================


def _add_field_arguments(p: argparse.ArgumentParser, with_title: bool) -> None:
    """Register item field flags. Single source of truth for add/update."""
    if with_title:
        p.add_argument("--title", default=None, help="New title")
    p.add_argument("--kind", default=None, choices=["note", "task", "scratch"],
                   help="Item kind")
    p.add_argument("--body", default=None, help="Body text")
    p.add_argument("--status", default=None, help="Status (must be valid for the kind)")
    p.add_argument("--priority", default=None,
                   help="low|medium|high (empty string clears)")
    p.add_argument("--due", default=None, help="YYYY-MM-DD (empty string clears)")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--aliases", default=None, help="Comma-separated aliases")
    p.add_argument("--link", default=None, help="Linked note id (tasks only)")
    p.add_argument("--origin", default=None, help="Where the item came from")
    p.add_argument("--source", default=None, help="External source reference")


# ===========================================================================
# Entry point
# ===========================================================================


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: sparkle <command> [args]."""
    global _quiet

    # SUPPRESS defaults keep subparser defaults from overriding values
    # parsed at the main-parser level.
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: $SPARKLE_DB or {DEFAULT_DB_PATH})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $SPARKLE_CONFIG)",
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
        prog="sparkle",
        description="sparkle — notes, tasks and scratch items",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- add ---------------------------------------------------------------
    p_add = sub.add_parser("add", parents=[_common], help="Create an item")
    p_add.add_argument("title", help="Item title")
    _add_field_arguments(p_add, with_title=False)
    p_add.set_defaults(func=cmd_add)

    # -- show --------------------------------------------------------------
    p_show = sub.add_parser("show", parents=[_common], help="Show item details")
    p_show.add_argument("id", help="Item ID")
    p_show.set_defaults(func=cmd_show)

    # -- list --------------------------------------------------------------
    p_list = sub.add_parser("list", parents=[_common], help="List items")
    p_list.add_argument("--kind", default=None, help="note|task|scratch")
    p_list.add_argument("--status", default=None, help="Exact status")
    p_list.add_argument("--tag", default=None, help="Items carrying this tag")
    p_list.add_argument("--exclude", default=None, help="Comma-separated statuses to skip")
    p_list.add_argument("--sort", default=None, help="created|modified|priority|due")
    p_list.add_argument("--order", default=None, help="asc|desc")
    p_list.add_argument("--limit", type=int, default=None, help="1..100 (default: 50)")
    p_list.add_argument("--offset", type=int, default=0, help="Skip N items")
    p_list.set_defaults(func=cmd_list)

    # -- update ------------------------------------------------------------
    p_upd = sub.add_parser("update", parents=[_common], help="Update an item")
    p_upd.add_argument("id", help="Item ID")
    _add_field_arguments(p_upd, with_title=True)
    p_upd.set_defaults(func=cmd_update)

    # -- delete ------------------------------------------------------------
    p_del = sub.add_parser("delete", parents=[_common], help="Delete an item permanently")
    p_del.add_argument("id", help="Item ID")
    p_del.set_defaults(func=cmd_delete)

    # -- search ------------------------------------------------------------
    p_search = sub.add_parser("search", parents=[_common], help="Full-text search")
    p_search.add_argument("query", help="Search text")
    p_search.add_argument("-k", type=int, default=None, help="Max results (default: 20)")
    p_search.set_defaults(func=cmd_search)

    # -- tags --------------------------------------------------------------
    p_tags = sub.add_parser("tags", parents=[_common], help="List distinct tags")
    p_tags.set_defaults(func=cmd_tags)

    # -- advance -----------------------------------------------------------
    p_adv = sub.add_parser("advance", parents=[_common], help="Advance a note's maturity")
    p_adv.add_argument("id", help="Note ID")
    p_adv.add_argument("target", choices=["developing", "permanent"])
    p_adv.set_defaults(func=cmd_advance)

    # -- triage ------------------------------------------------------------
    p_tri = sub.add_parser("triage", parents=[_common], help="Bulk status change")
    p_tri.add_argument("action", choices=["archive", "done", "active", "develop", "delete"])
    p_tri.add_argument("ids", nargs="+", help="Item IDs")
    p_tri.set_defaults(func=cmd_triage)

    # -- share -------------------------------------------------------------
    p_share = sub.add_parser("share", parents=[_common], help="Create a share link for a note")
    p_share.add_argument("id", help="Note ID")
    p_share.add_argument("--public", action="store_true", help="Public instead of unlisted")
    p_share.set_defaults(func=cmd_share)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Counters and focus list")
    p_stats.set_defaults(func=cmd_stats)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument("--audit-log", default=None, help="Audit log file path")
    p_serve.set_defaults(func=cmd_serve)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except (NotFound, ValidationError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        # e.g. sparkle list | head
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
