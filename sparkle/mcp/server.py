"""
sparkle MCP Server — Notes, tasks and scratch items over MCP

Standalone MCP server exposing the item store via the Model Context
Protocol.  Thin layer: all rules live in sparkle.taxonomy and
sparkle.store; this module only wires them to FastMCP.

Usage:
    python -m sparkle.mcp.server --db /path/to/sparkle.db
    python -m sparkle.mcp.server --config sparkle.json --audit-log audit.jsonl
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP, visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Capture and grow notes, tasks and scratch items.\n"
    "\n"
    "CAPTURE: item_create (kind=note|task|scratch).\n"
    "FIND:    item_search (3+ chars ranked, shorter = substring), item_list, item_tags.\n"
    "GROW:    item_advance (fleeting → developing → permanent), item_update.\n"
    "         Tasks go active → done. Changing kind remaps status automatically.\n"
    "BULK:    item_triage (archive|done|active|develop|delete).\n"
    "CHAT:    item_command accepts the terse chat grammar ('?' for help).\n"
    "\n"
    "Rules:\n"
    "- Notes never carry due/linked_ref; scratch items carry no tags/priority/due\n"
    "- Editing an exported note's title or body moves it back to permanent\n"
    "- Delete is permanent and removes share links\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the sparkle MCP server."""
    p = argparse.ArgumentParser(
        prog="sparkle-mcp",
        description="sparkle MCP Server — notes, tasks and scratch items",
    )
    p.add_argument(
        "--db",
        default=None,
        help="SQLite database path (default: $SPARKLE_DB or config store.db_path)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("SPARKLE_CONFIG"),
        help="JSON config file (default: $SPARKLE_CONFIG)",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: config server.audit_log or stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with item tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from sparkle.config import load_config
    from sparkle.mcp.audit import AuditLogger
    from sparkle.mcp.tools import register_item_tools
    from sparkle.session import ReferenceSession
    from sparkle.store import ItemStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    # --db > SPARKLE_DB > config
    db_path = args.db or os.environ.get("SPARKLE_DB") or config.store.db_path

    store = ItemStore(
        db_path=db_path,
        wal_mode=config.store.wal_mode,
        rebuild_index=config.store.rebuild_index_on_open,
    )

    audit_path = args.audit_log or config.server.audit_log
    audit_output = open(audit_path, "a", encoding="utf-8") if audit_path else None
    audit = AuditLogger(output=audit_output, db_path=db_path)

    mcp = FastMCP(name=config.server.name, instructions=_MCP_INSTRUCTIONS)
    register_item_tools(
        mcp, store, ReferenceSession(),
        audit=audit,
        search_limit=config.search.default_limit,
        list_limit=config.list.default_limit,
    )

    logger.info(
        "sparkle MCP server ready: db=%s, fts5_trigram=%s, audit=%s",
        db_path, store.index.available, audit_path or "stderr",
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
