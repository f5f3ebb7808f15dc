"""MCP tools for recommendation generation, confidence scoring and bias scans.

Subjects arrive as plain JSON objects (demographics, assessments, outcomes,
optional therapy plan). Generated recommendations are persisted when storage
is enabled so that therapist feedback can refer to them by id.
"""

from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from tdi.core.audit.logger import AuditLogger
    from tdi.core.storage.repository import AnalyticsRepository
    from tdi.domains.therapy.domain_logic.confidence_scoring import ConfidenceScorer
    from tdi.domains.therapy.domain_logic.recommendation_engine import RecommendationEngine

from tdi.core.storage.models import StoredRecommendation
from tdi.domains.therapy.domain_logic.bias_detection import apply_mitigation, scan
from tdi.domains.therapy.domain_logic.recommendation_models import (
    FusedRecommendation,
    payload_from_dict,
    payload_to_dict,
)
from tdi.domains.therapy.domain_logic.subject_models import SubjectProfile
from tdi.domains.therapy.tools import responses

logger = logging.getLogger(__name__)


def _to_stored(rec: FusedRecommendation) -> StoredRecommendation:
    return StoredRecommendation(
        id=rec.id,
        subject_id=rec.subject_id,
        recommendation_type=rec.recommendation_type,
        payload=payload_to_dict(rec.payload),
        confidence=rec.confidence,
        clinical_relevance=rec.clinical_relevance,
        explanation_factors=list(rec.explanation_factors),
        sources=list(rec.sources),
        status=rec.status,
        created_at=rec.created_at,
    )


def _profiles(items: list[dict[str, Any]] | None) -> list[SubjectProfile]:
    return [SubjectProfile.from_dict(item) for item in items or []]


def register_recommendation_tools(
    mcp: FastMCP,
    engine: RecommendationEngine,
    confidence_scorer: ConfidenceScorer,
    repository: AnalyticsRepository | None = None,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register recommendation and bias tools on the MCP server."""

    def _audit(tool_name: str, tool_input: Any, start: float, **kwargs: Any) -> None:
        if audit_logger is None:
            return
        audit_logger.log_tool_call(
            tool_name,
            tool_input,
            duration_ms=(time.monotonic() - start) * 1000,
            **kwargs,
        )

    @mcp.tool
    async def generate_recommendations(
        ctx: Context,
        subject: dict[str, Any],
        corpus: list[dict[str, Any]] | None = None,
        personalize: bool = False,
    ) -> str:
        """Generate ranked therapy recommendations for one subject.

        Args:
            subject: Subject profile (subject_id, demographics, assessments,
                outcomes, optional therapy_plan).
            corpus: Historical subject profiles used for similarity search.
            personalize: Adjust action thresholds by case complexity.
        """
        start = time.monotonic()
        tool_input = {"subject": subject, "corpus_size": len(corpus or [])}
        try:
            target = SubjectProfile.from_dict(subject)
            peers = _profiles(corpus)
        except (KeyError, TypeError, ValueError) as exc:
            _audit("generate_recommendations", tool_input, start,
                   status="failure", error_type="validation")
            return responses.invalid_input(exc)

        result = await engine.recommend(target, peers, personalize=personalize)
        if result.error is not None:
            _audit("generate_recommendations", tool_input, start, subject_id=target.subject_id,
                   status="failure", error_type=result.error.kind)
            return responses.error(result.error)

        recommendations = result.data or []
        if repository is not None:
            for rec in recommendations:
                repository.save_recommendation(_to_stored(rec))

        _audit(
            "generate_recommendations",
            tool_input,
            start,
            subject_id=target.subject_id,
            metadata={"recommendations": len(recommendations), "persisted": repository is not None},
        )
        return responses.ok({
            "subject_id": target.subject_id,
            "recommendations": [rec.to_dict() for rec in recommendations],
        })

    @mcp.tool
    async def assess_recommendation_confidence(
        ctx: Context,
        subject: dict[str, Any],
        recommendation: dict[str, Any] | None = None,
        corpus: list[dict[str, Any]] | None = None,
        personalize: bool = False,
    ) -> str:
        """Score a recommendation payload for confidence and clinical safety.

        Args:
            subject: Subject profile the recommendation is for.
            recommendation: Payload with a ``type`` tag (therapy_plan,
                session_adjustment, goal_modification, assessment_update).
                Omit to score the subject alone.
            corpus: Historical subject profiles for demographic support.
            personalize: Adjust action thresholds by case complexity.
        """
        start = time.monotonic()
        try:
            profile = SubjectProfile.from_dict(subject)
            payload = payload_from_dict(recommendation) if recommendation else None
            peers = _profiles(corpus)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)

        assessment = confidence_scorer.assess(payload, profile, peers, personalize=personalize)
        safety = confidence_scorer.validate_safety(
            payload, profile, assessment.overall_confidence
        )
        _audit(
            "assess_recommendation_confidence",
            {"subject": subject, "recommendation": recommendation},
            start,
            subject_id=profile.subject_id,
            metadata={"recommended_action": assessment.recommended_action},
        )
        return responses.ok({
            "subject_id": profile.subject_id,
            "assessment": assessment.to_dict(),
            "safety": safety.to_dict(),
        })

    @mcp.tool
    async def scan_bias(
        ctx: Context,
        subjects: list[dict[str, Any]],
        mitigate: bool = False,
        seed: int | None = None,
    ) -> str:
        """Scan a subject collection for representation and outcome bias.

        Args:
            subjects: Subject profiles forming the corpus to scan.
            mitigate: Also rebalance the corpus when bias is medium or high.
            seed: Random seed for oversampling, for reproducible mitigation.
        """
        start = time.monotonic()
        try:
            profiles = _profiles(subjects)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)

        report = scan(profiles)
        data: dict[str, Any] = {"corpus_size": len(profiles), "report": report.to_dict()}
        if mitigate:
            mitigation = apply_mitigation(profiles, report, rng=random.Random(seed))
            data["mitigation"] = {
                "checked": mitigation.checked,
                "modified": mitigation.modified,
                "actions": mitigation.actions,
                "corpus_size": len(mitigation.profiles),
            }

        _audit(
            "scan_bias",
            {"corpus_size": len(profiles), "mitigate": mitigate},
            start,
            action="bias_scan",
            metadata={"detected": report.detected, "severity": report.severity},
        )
        return responses.ok(data)
