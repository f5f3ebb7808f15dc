"""Audit trail for analytics tool calls.

Every recommendation run, feedback submission and bias scan leaves one
PHI-free row in ``audit_log``:

* ``tool_input_hash``: SHA-256 of the canonical JSON input, never the input.
* ``subject_hash``: SHA-256 of the subject id, so runs per subject can be
  correlated without storing the id itself.
* ``error_type``: the structured error kind on failure.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from tdi.core.storage.database import TherapyDatabase

logger = logging.getLogger(__name__)


def _hash_input(data: Any) -> str:
    """SHA-256 of canonical JSON, or "" when the input is not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return ""
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_subject(subject_id: str) -> str:
    return hashlib.sha256(subject_id.encode("utf-8")).hexdigest() if subject_id else ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'tool_invocation' | 'feedback' | 'bias_scan'
    tool_name: str = ""
    tool_input_hash: str = ""
    subject_hash: str = ""
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Writes audit events to the ``audit_log`` table, committing each one.

    Usage::

        audit = AuditLogger(database)
        audit.log_tool_call(
            "generate_recommendations",
            {"subject": {...}},
            subject_id="S-102",
            duration_ms=12.5,
        )
    """

    def __init__(self, database: TherapyDatabase) -> None:
        self._db = database

    def log_event(self, event: AuditEvent) -> str:
        """Insert an event and return its id ("" if the write failed).

        A failed audit write is logged but never fails the tool call it
        describes.
        """
        event_id = str(uuid.uuid4())
        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )
        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, tool_name, tool_input_hash, subject_hash,
                    duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    datetime.now(timezone.utc).isoformat(),
                    event.action,
                    event.tool_name or None,
                    event.tool_input_hash or None,
                    event.subject_hash or None,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except sqlite3.Error:
            logger.exception("Failed to write audit event for %s", event.tool_name or event.action)
            return ""
        return event_id

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        action: str = "tool_invocation",
        subject_id: str = "",
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Convenience wrapper for one tool invocation.

        Args:
            tool_name: Name of the MCP tool.
            tool_input: Tool input (hashed, never stored raw).
            action: Event category.
            subject_id: Subject the call concerned (hashed).
            duration_ms: Execution time in milliseconds.
            status: 'success' or 'failure'.
            error_type: Structured error kind on failure.
            metadata: Counts and other non-PHI context.
        """
        return self.log_event(AuditEvent(
            action=action,
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            subject_hash=hash_subject(subject_id),
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def get_events(
        self,
        *,
        action: str | None = None,
        tool_name: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Audit events matching the filters, newest first."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if tool_name:
            conditions.append("tool_name = ?")
            params.append(tool_name)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, status: str | None = None, since: str | None = None) -> int:
        conditions: list[str] = []
        params: list[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(status)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]
