"""
MCP Audit Logger — one JSONL record per knowledge tool call.

Record layout (v1):
    v        schema version
    ts       UTC timestamp, millisecond precision
    rid      request id
    tool     tool name
    db       database path
    outcome  "ok" or "error"
    d        tool-specific detail (optional)
    ms       latency in milliseconds

Fact content never appears in full: content-carrying tools log a
truncated preview plus its sha256 digest.

log() never raises.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, TextIO

from factctl.types import content_hash

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 80


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None, db_path: str = ""):
        """
        Args:
            output: File handle for audit output. None → stderr.
            db_path: Database path stamped on every record.
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
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """Write one JSONL audit record."""
        try:
            now = datetime.now(timezone.utc)
            record: Dict[str, Any] = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "db": self._db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)
            self._output.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")
            self._output.flush()
        except Exception as e:
            logger.debug("Audit write failed: %s", e)

    @staticmethod
    def content_detail(contents: Sequence[str]) -> Dict[str, Any]:
        """Count, first preview and per-item digests for a batch of texts."""
        detail: Dict[str, Any] = {
            "count": len(contents),
            "hashes": [content_hash(c) for c in contents],
        }
        if contents:
            first = contents[0]
            preview = first[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
            if len(first) > PREVIEW_MAX_CHARS:
                preview = preview.rstrip() + "…"
            detail["preview"] = preview
        return detail
