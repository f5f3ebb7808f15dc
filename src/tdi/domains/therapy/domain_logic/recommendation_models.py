"""Recommendation payloads, candidates and fused results.

Payloads form a tagged union: one dataclass per recommendation type, each
carrying its type tag as a class constant. ``payload_from_dict`` restores
the right variant from its serialized form.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Literal, Union

RecommendationType = Literal[
    "therapy_plan",
    "session_adjustment",
    "goal_modification",
    "assessment_update",
]

# Higher wins when relevance and confidence are tied
TYPE_PRIORITY: dict[str, int] = {
    "therapy_plan": 4,
    "session_adjustment": 3,
    "goal_modification": 2,
    "assessment_update": 1,
}

Source = Literal["content", "collaborative", "model"]
SOURCES = ("content", "collaborative", "model")

RecommendationStatus = Literal["pending", "accepted", "modified", "rejected"]

# Feedback decision -> lifecycle status
STATUS_FOR_DECISION: dict[str, str] = {
    "accept": "accepted",
    "modify": "modified",
    "reject": "rejected",
}


# ---------------------------------------------------------------------------
# Payload building blocks
# ---------------------------------------------------------------------------

@dataclass
class SessionFrequency:
    current: float
    recommended: float
    unit: str = "weekly"


@dataclass
class SessionDuration:
    current: float
    recommended: float
    unit: str = "minutes"


@dataclass
class ApproachPriority:
    approach: str
    priority: int
    rationale: str = ""


@dataclass
class GoalAdjustment:
    goal_id: str
    action: Literal["increase", "decrease", "modify", "add"]
    target: str
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------

@dataclass
class TherapyPlanPayload:
    recommendation_type: ClassVar[str] = "therapy_plan"

    session_frequency: SessionFrequency
    approaches: list[ApproachPriority] = field(default_factory=list)
    session_duration: SessionDuration | None = None


@dataclass
class SessionAdjustmentPayload:
    recommendation_type: ClassVar[str] = "session_adjustment"

    session_duration: SessionDuration
    session_frequency: SessionFrequency


@dataclass
class GoalModificationPayload:
    recommendation_type: ClassVar[str] = "goal_modification"

    adjustments: list[GoalAdjustment] = field(default_factory=list)


@dataclass
class AssessmentUpdatePayload:
    recommendation_type: ClassVar[str] = "assessment_update"

    assessments: list[str] = field(default_factory=list)
    reasoning: str = ""


RecommendationPayload = Union[
    TherapyPlanPayload,
    SessionAdjustmentPayload,
    GoalModificationPayload,
    AssessmentUpdatePayload,
]


def proposed_parameters(payload: RecommendationPayload) -> tuple[float | None, float | None]:
    """Return the (duration_minutes, weekly_frequency) a payload proposes."""
    if isinstance(payload, SessionAdjustmentPayload):
        return payload.session_duration.recommended, payload.session_frequency.recommended
    if isinstance(payload, TherapyPlanPayload):
        duration = payload.session_duration.recommended if payload.session_duration else None
        return duration, payload.session_frequency.recommended
    return None, None


def payload_to_dict(payload: RecommendationPayload) -> dict[str, Any]:
    data = asdict(payload)
    data["type"] = payload.recommendation_type
    return data


def payload_from_dict(data: dict[str, Any]) -> RecommendationPayload:
    """Rebuild a payload variant from ``payload_to_dict`` output."""
    kind = data.get("type")
    if kind == "therapy_plan":
        duration = data.get("session_duration")
        return TherapyPlanPayload(
            session_frequency=SessionFrequency(**data["session_frequency"]),
            approaches=[ApproachPriority(**a) for a in data.get("approaches", [])],
            session_duration=SessionDuration(**duration) if duration else None,
        )
    if kind == "session_adjustment":
        return SessionAdjustmentPayload(
            session_duration=SessionDuration(**data["session_duration"]),
            session_frequency=SessionFrequency(**data["session_frequency"]),
        )
    if kind == "goal_modification":
        return GoalModificationPayload(
            adjustments=[GoalAdjustment(**g) for g in data.get("adjustments", [])],
        )
    if kind == "assessment_update":
        return AssessmentUpdatePayload(
            assessments=list(data.get("assessments", [])),
            reasoning=data.get("reasoning", ""),
        )
    raise ValueError(f"Unknown recommendation type: {kind!r}")


# ---------------------------------------------------------------------------
# Candidates and fused results
# ---------------------------------------------------------------------------

@dataclass
class RecommendationCandidate:
    """One unfused proposal from a single source."""

    payload: RecommendationPayload
    source: Source
    confidence: float
    primary_factors: list[str]
    clinical_evidence: str = ""

    def __post_init__(self) -> None:
        if not self.primary_factors:
            raise ValueError("A recommendation candidate needs at least one primary factor")
        if self.source not in SOURCES:
            raise ValueError(f"Unknown candidate source {self.source!r}")
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    @property
    def recommendation_type(self) -> str:
        return self.payload.recommendation_type


@dataclass
class FusedRecommendation:
    """The single ranked result for one recommendation type."""

    id: str
    subject_id: str
    payload: RecommendationPayload
    confidence: float
    clinical_relevance: float
    explanation_factors: list[str]
    sources: list[str] = field(default_factory=list)
    clinical_evidence: str = ""
    status: RecommendationStatus = "pending"
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    assessment: Any = None  # ConfidenceAssessment, attached after scoring

    @property
    def recommendation_type(self) -> str:
        return self.payload.recommendation_type

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "subject_id": self.subject_id,
            "recommendation_type": self.recommendation_type,
            "payload": payload_to_dict(self.payload),
            "confidence": round(self.confidence, 4),
            "clinical_relevance": round(self.clinical_relevance, 4),
            "explanation_factors": list(self.explanation_factors),
            "sources": list(self.sources),
            "clinical_evidence": self.clinical_evidence,
            "status": self.status,
            "created_at": self.created_at,
        }
        if self.assessment is not None:
            data["assessment"] = self.assessment.to_dict()
        return data
