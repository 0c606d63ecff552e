"""
sparkle MCP Tools — item tools for MCP integration.

Thin wrappers around ItemStore and the sparkle modules.  Each tool follows
the same order:

    ① Request id + caller key
    ② Tool execution (taxonomy/store/search)
    ③ Error mapping — NotFound → "not_found", ValidationError → "invalid",
       anything else → "error"
    ④ Audit log — always, including on failure (finally block)

Tools:
    CRUD:      item_create, item_get, item_list, item_update, item_delete
    SEARCH:    item_search, item_tags
    WORKFLOW:  item_advance, item_triage, item_share, item_unshare
    CHAT:      item_command
    META:      item_stats
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from sparkle.commands import CommandHandler
from sparkle.errors import NotFound, ValidationError
from sparkle.session import ReferenceMap, ReferenceSession
from sparkle.shares import create_share, revoke_share, shares_for_item
from sparkle.stats import get_focus_items, get_stats
from sparkle.store import ItemStore

logger = logging.getLogger(__name__)

DEFAULT_USER_KEY = "default"


def _error_result(exc: Exception, action: str) -> Dict[str, Any]:
    """Map an exception to the status dict returned by a failed tool call."""
    if isinstance(exc, NotFound):
        return {"status": "not_found", "message": str(exc), "id": exc.item_id}
    if isinstance(exc, ValidationError):
        result = {"status": "invalid", "message": str(exc)}
        if exc.field:
            result["field"] = exc.field
        return result
    logger.exception("%s failed", action)
    return {"status": "error", "message": f"{action} failed: {exc}"}


def register_item_tools(
    mcp,
    store: ItemStore,
    sessions: Optional[ReferenceMap] = None,
    *,
    audit=None,
    search_limit: int = 20,
    list_limit: int = 50,
) -> None:
    """
    Register the item tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything with a ``tool()`` decorator).
        store: Fully initialized ItemStore.
        sessions: ReferenceMap backing ``item_command``; in-memory by default.
        audit: AuditLogger for structured logging.
        search_limit: Default limit of item_search.
        list_limit: Default limit of item_list.
    """
    from sparkle.mcp.audit import AuditLogger

    if sessions is None:
        sessions = ReferenceSession()
    if audit is None:
        audit = AuditLogger(db_path=store.db_path)
    handler = CommandHandler(store, sessions)

    # =====================================================================
    # CRUD
    # =====================================================================

    @mcp.tool()
    def item_create(
        title: str,
        kind: str = "note",
        body: str = "",
        status: Optional[str] = None,
        priority: Optional[str] = None,
        due: Optional[str] = None,
        tags: Optional[List[str]] = None,
        aliases: Optional[List[str]] = None,
        linked_ref: Optional[str] = None,
        origin: str = "mcp",
        external_source: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a note, task or scratch item.

        Notes ignore due/linked_ref; scratch items ignore tags, priority,
        due, aliases and linked_ref.  Status defaults per kind
        (note=fleeting, task=active, scratch=draft).

        Returns:
            item: The stored item with derived fields.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = AuditLogger.make_text_detail(title, body)
        try:
            fields: Dict[str, Any] = {
                "title": title, "body": body, "origin": origin,
                "priority": priority, "due": due,
                "tags": tags or [], "aliases": aliases or [],
                "linked_ref": linked_ref, "external_source": external_source,
            }
            if status:
                fields["status"] = status
            item = store.create(kind=kind, **fields)
            detail.update({"id": item.id, "kind": item.kind})
            return {"status": "ok", "item": item.to_dict()}
        except Exception as e:
            result = _error_result(e, "Create")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_create", rid, DEFAULT_USER_KEY, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_get(item_id: str) -> Dict[str, Any]:
        """Read one item by id, with linked_task_count, linked_note_title and
        share_visibility resolved."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            item = store.get(item_id)
            return {
                "status": "ok",
                "item": item.to_dict(),
                "shares": [s.to_dict() for s in shares_for_item(store, item_id)],
            }
        except Exception as e:
            result = _error_result(e, "Read")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_get", rid, DEFAULT_USER_KEY, outcome, {"id": item_id},
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_list(
        status: Optional[str] = None,
        kind: Optional[str] = None,
        tag: Optional[str] = None,
        exclude_statuses: Optional[List[str]] = None,
        sort: str = "created",
        order: str = "desc",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """List items with filters.

        Args:
            status, kind, tag: Exact-match filters.
            exclude_statuses: Statuses to leave out.
            sort: created | modified | priority | due.
            order: asc | desc.
            limit: 1..100 (default 50).
            offset: >= 0.

        Returns:
            items: The page; total: all matches ignoring limit/offset.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            page = store.list(
                status=status, kind=kind, tag=tag,
                exclude_statuses=exclude_statuses,
                sort=sort, order=order,
                limit=limit if limit is not None else list_limit,
                offset=offset,
            )
            detail = {"returned": len(page.items), "total": page.total}
            result = page.to_dict()
            result["status"] = "ok"
            return result
        except Exception as e:
            result = _error_result(e, "List")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_list", rid, DEFAULT_USER_KEY, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_update(item_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Update fields of an item.

        Changing ``kind`` maps the status through the conversion table and
        overrides any status sent in the same call.  Editing the title or
        body of an exported note moves it back to permanent.

        Returns:
            item: The item after the update.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"id": item_id, "keys": sorted(fields or {})}
        try:
            before = store.get(item_id)
            item = store.update(item_id, fields or {})
            if item.kind != before.kind:
                detail["converted"] = f"{before.kind}→{item.kind}"
            if item.status != before.status:
                detail["status"] = f"{before.status}→{item.status}"
            return {"status": "ok", "item": item.to_dict()}
        except Exception as e:
            result = _error_result(e, "Update")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_update", rid, DEFAULT_USER_KEY, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_delete(item_id: str) -> Dict[str, Any]:
        """Permanently delete an item and its share links."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            if not store.delete(item_id):
                outcome = "not_found"
                return {"status": "not_found", "message": f"Item not found: {item_id}", "id": item_id}
            return {"status": "ok", "deleted": item_id}
        except Exception as e:
            result = _error_result(e, "Delete")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_delete", rid, DEFAULT_USER_KEY, outcome, {"id": item_id},
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # SEARCH
    # =====================================================================

    @mcp.tool()
    def item_search(query: str, limit: Optional[int] = None) -> Dict[str, Any]:
        """Full-text search over titles and bodies.

        Queries of 3+ characters use the trigram index (ranked); shorter
        ones scan titles and bodies newest first.  Operators and quotes are
        matched literally.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"query_len": len(query or "")}
        try:
            items = store.search(query, limit if limit is not None else search_limit)
            meta = store.last_search_meta
            detail["hits"] = len(items)
            result: Dict[str, Any] = {
                "status": "ok",
                "items": [it.to_dict() for it in items],
                "matched": len(items),
            }
            if meta is not None:
                result["strategy"] = meta.strategy
                detail["strategy"] = meta.strategy
            return result
        except Exception as e:
            result = _error_result(e, "Search")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_search", rid, DEFAULT_USER_KEY, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_tags() -> Dict[str, Any]:
        """All distinct tags in use, sorted."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            return {"status": "ok", "tags": store.all_tags()}
        except Exception as e:
            result = _error_result(e, "Tags")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_tags", rid, DEFAULT_USER_KEY, outcome, {},
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # WORKFLOW
    # =====================================================================

    @mcp.tool()
    def item_triage(ids: List[str], action: str) -> Dict[str, Any]:
        """Apply archive | done | active | develop | delete to several items.

        Items that do not exist or whose kind cannot take the action are
        reported in ``skipped``.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail: Dict[str, Any] = {"action": action, "ids": len(ids or [])}
        try:
            result = store.triage(ids or [], action)
            detail["affected"] = result["affected"]
            return {"status": "ok", **result}
        except Exception as e:
            result = _error_result(e, "Triage")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_triage", rid, DEFAULT_USER_KEY, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_advance(item_id: str, target_status: str) -> Dict[str, Any]:
        """Advance a note one maturity step.

        Valid steps: fleeting → developing, developing → permanent.  Anything
        else (a task, a scratch item, a note in another status) is refused.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            item = store.advance(item_id, target_status)
            return {"status": "ok", "item": item.to_dict()}
        except Exception as e:
            result = _error_result(e, "Advance")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_advance", rid, DEFAULT_USER_KEY, outcome,
                      {"id": item_id, "target": target_status},
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_share(item_id: str, visibility: str = "unlisted") -> Dict[str, Any]:
        """Create a share link for a note (unlisted or public)."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            share = create_share(store, item_id, visibility)
            if share is None:
                outcome = "invalid"
                return {"status": "invalid", "message": "Only existing notes can be shared"}
            return {"status": "ok", "share": share.to_dict()}
        except Exception as e:
            result = _error_result(e, "Share")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_share", rid, DEFAULT_USER_KEY, outcome,
                      {"id": item_id, "visibility": visibility},
                      (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def item_unshare(share_id: str) -> Dict[str, Any]:
        """Revoke one share link by its id."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            if not revoke_share(store, share_id):
                outcome = "not_found"
                return {"status": "not_found", "message": f"Share not found: {share_id}"}
            return {"status": "ok", "revoked": share_id}
        except Exception as e:
            result = _error_result(e, "Unshare")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_unshare", rid, DEFAULT_USER_KEY, outcome, {"share": share_id},
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # CHAT
    # =====================================================================

    @mcp.tool()
    def item_command(text: str, user_key: str = DEFAULT_USER_KEY) -> Dict[str, Any]:
        """Run one chat command ("!todos", "!done 2", "Buy milk", "?").

        Listing commands number their entries; numbered commands refer to the
        last listing shown to the same ``user_key`` within 10 minutes.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            return {"status": "ok", "reply": handler.handle(user_key, text)}
        except Exception as e:
            result = _error_result(e, "Command")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_command", rid, user_key, outcome,
                      {"command": (text or "").split(" ", 1)[0][:20]},
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # META
    # =====================================================================

    @mcp.tool()
    def item_stats() -> Dict[str, Any]:
        """Counters per status, weekly/monthly activity, overdue tasks and
        today's focus list."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        try:
            stats: Dict[str, Any] = dict(get_stats(store))
            stats["focus"] = [it.to_dict() for it in get_focus_items(store)]
            stats["fts5_available"] = store.index.available
            stats["status"] = "ok"
            return stats
        except Exception as e:
            result = _error_result(e, "Stats")
            outcome = result["status"]
            return result
        finally:
            audit.log("item_stats", rid, DEFAULT_USER_KEY, outcome, {},
                      (time.monotonic() - t0) * 1000)
