"""MCP tools for the adaptive learning loop.

Feedback and outcome learning write to the analytics store, so these tools
are registered only when storage is enabled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from tdi.core.audit.logger import AuditLogger
    from tdi.domains.therapy.domain_logic.adaptive_learning import AdaptiveLearningService

from tdi.domains.therapy.domain_logic.subject_models import (
    FeedbackEvent,
    Outcome,
    SubjectProfile,
)
from tdi.domains.therapy.tools import responses

logger = logging.getLogger(__name__)


def register_learning_tools(
    mcp: FastMCP,
    learning: AdaptiveLearningService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register feedback, outcome and retraining tools on the MCP server."""

    @mcp.tool
    async def submit_therapist_feedback(
        ctx: Context,
        recommendation_id: str,
        therapist_id: str,
        decision: str,
        reasoning: str = "",
        modifications: dict[str, Any] | None = None,
        timestamp: str = "",
        feedback_id: str = "",
    ) -> str:
        """Record a therapist's decision on a recommendation and learn from it.

        Args:
            recommendation_id: Id returned by generate_recommendations.
            therapist_id: The deciding therapist.
            decision: One of 'accept', 'modify', 'reject'.
            reasoning: Free-text reasoning (encrypted at rest).
            modifications: Structured changes made to the recommendation.
            timestamp: ISO 8601 decision time. Defaults to now.
            feedback_id: Client-chosen id for the decision. Reusing one is rejected.
        """
        start = time.monotonic()
        payload: dict[str, Any] = {
            "recommendation_id": recommendation_id,
            "therapist_id": therapist_id,
            "decision": decision,
            "reasoning": reasoning,
            "modifications": modifications,
        }
        if timestamp:
            payload["timestamp"] = timestamp
        if feedback_id:
            payload["feedback_id"] = feedback_id
        try:
            event = FeedbackEvent.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)

        result = learning.learn_from_feedback(event)
        if audit_logger is not None:
            audit_logger.log_tool_call(
                "submit_therapist_feedback",
                {"recommendation_id": recommendation_id, "decision": decision},
                action="feedback",
                duration_ms=(time.monotonic() - start) * 1000,
                status="success" if result.ok else "failure",
                error_type=result.error.kind if result.error else None,
                metadata={"decision": decision},
            )
        return responses.from_result(result, asdict)

    @mcp.tool
    async def ingest_outcomes(ctx: Context, subject: dict[str, Any]) -> str:
        """Learn from a batch of measured outcomes for one subject.

        Flags significant achievement shifts and anomalies such as sudden
        drops between consecutive sessions.

        Args:
            subject: Subject profile whose ``outcomes`` form the batch.
        """
        try:
            profile = SubjectProfile.from_dict(subject)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)

        result = learning.process_outcomes(profile.outcomes, profile.demographics)
        if audit_logger is not None:
            audit_logger.log_tool_call(
                "ingest_outcomes",
                {"outcome_count": len(profile.outcomes)},
                subject_id=profile.subject_id,
            )
        return responses.from_result(result, asdict)

    @mcp.tool
    async def adapt_to_progress(
        ctx: Context,
        subject_id: str,
        outcomes: list[dict[str, Any]],
        current_frequency: float = 2.0,
    ) -> str:
        """Suggest session adjustments from a subject's recent progress trend.

        Args:
            subject_id: Subject the outcomes belong to.
            outcomes: Outcome records (goal_id, achievement, measurement_date).
            current_frequency: Current weekly session frequency.
        """
        try:
            parsed = [Outcome.from_dict(o) for o in outcomes]
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)
        result = learning.adapt_to_progress(subject_id, parsed, current_frequency)
        return responses.from_result(result, asdict)

    @mcp.tool
    async def check_retraining_need(ctx: Context) -> str:
        """Check the rolling feedback window for a retraining signal."""
        return responses.ok(asdict(learning.assess_retraining_need()))
