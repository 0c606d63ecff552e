"""
MCP Audit Logger — One JSONL record per tool call.

Records are schema-versioned and carry the request id, tool name, caller
key, outcome and latency.  Item text is never logged verbatim: callers
pass ``make_text_detail`` output, which keeps a short preview and a
SHA-256 digest.

``log`` is fire-and-forget and never raises into the tool.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 80


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None, db_path: str = ""):
        """
        Args:
            output: File handle for audit output. None → stderr.
            db_path: Store path recorded on every line.
        """
        self._output = output if output is not None else sys.stderr
        self._db_path = db_path

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        user_key: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one audit line.

        Args:
            tool: MCP tool name (e.g. "item_update").
            rid: Request ID (from new_rid()).
            user_key: Caller key or "default".
            outcome: "ok", "not_found", "invalid" or "error".
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        try:
            now = datetime.now(timezone.utc)
            record: Dict[str, Any] = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "user": user_key,
                "db": self._db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)
            self._output.write(
                json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
            )
            self._output.flush()
        except Exception as exc:
            logger.debug("audit write failed: %s", exc)

    @staticmethod
    def make_text_detail(title: str, body: str = "") -> Dict[str, Any]:
        """
        Audit-safe summary of an item's text.

        - preview: first 80 chars of the title, newlines flattened, '…' if cut
        - hash: SHA-256 of title + body
        - bytes: UTF-8 size of title + body
        """
        text = f"{title}\n{body}"
        encoded = text.encode("utf-8")
        preview = title[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
        if len(title) > PREVIEW_MAX_CHARS:
            preview = preview.rstrip() + "…"
        return {
            "bytes": len(encoded),
            "hash": hashlib.sha256(encoded).hexdigest(),
            "preview": preview,
        }
