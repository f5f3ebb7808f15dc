"""MCP tool for reviewing the audit trail.

The audit log holds hashes, counts and error kinds only; subject data and
therapist reasoning never appear in it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from tdi.core.audit.logger import AuditLogger

from tdi.domains.therapy.tools import responses

logger = logging.getLogger(__name__)


def register_audit_tools(mcp: FastMCP, audit_logger: AuditLogger) -> None:
    """Register audit trail tools on the MCP server."""

    @mcp.tool
    async def audit_summary(ctx: Context, days: int = 30) -> str:
        """View recent tool activity: counts, failures and the latest events.

        Args:
            days: Number of days to look back (default: 30).
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        events = audit_logger.get_events(since=since, limit=20)
        return responses.ok({
            "period_days": days,
            "total_events": audit_logger.count_events(since=since),
            "failures": audit_logger.count_events(status="failure", since=since),
            "recent_events": [
                {
                    "timestamp": e.get("timestamp"),
                    "action": e.get("action"),
                    "tool_name": e.get("tool_name"),
                    "status": e.get("status"),
                    "error_type": e.get("error_type"),
                    "duration_ms": e.get("duration_ms"),
                }
                for e in events
            ],
        })
