"""Records persisted by the analytics repository."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class StoredRecommendation:
    """A fused recommendation as persisted for later feedback.

    The payload is stored as plain JSON: it carries session parameters and
    approach names, never free text about the subject.
    """

    id: str
    subject_id: str
    recommendation_type: str
    payload: dict[str, Any]
    confidence: float
    clinical_relevance: float
    explanation_factors: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    status: str = "pending"  # 'pending', 'accepted', 'modified', 'rejected'
    created_at: str = ""
    updated_at: str = ""


@dataclass
class StoredFeedback:
    """A therapist decision; reasoning and modifications are encrypted at rest."""

    id: str
    recommendation_id: str
    therapist_id: str
    decision: str  # 'accept', 'modify', 'reject'
    timestamp: str  # ISO 8601
    reasoning: str = ""
    modifications: dict[str, Any] | None = None


@dataclass
class TherapistPreference:
    therapist_id: str
    feedback_count: int = 0
    accept_count: int = 0
    modify_count: int = 0
    reject_count: int = 0
    last_feedback_at: str = ""
    updated_at: str = ""


@dataclass
class LearningUpdate:
    """One recorded weight adjustment for a demographic pattern."""

    pattern_key: str
    factor_name: str
    old_value: float
    new_value: float
    adjustment_factor: float
    confidence: float
    reason: str = ""
    id: str = ""
    created_at: str = ""


@dataclass
class RejectionPattern:
    recommendation_id: str
    recommendation_type: str
    therapist_id: str
    reason: str
    confidence_at_rejection: float
    id: str = ""
    created_at: str = ""


@dataclass
class ModificationPattern:
    recommendation_id: str
    recommendation_type: str
    therapist_id: str
    modifications: dict[str, Any] | None
    reasoning: str
    id: str = ""
    created_at: str = ""


@dataclass
class SuccessPattern:
    recommendation_id: str
    recommendation_type: str
    therapist_id: str
    confidence: float
    id: str = ""
    created_at: str = ""


@dataclass
class StoredValidation:
    """Outcome of checking one prediction against its observed value."""

    prediction_id: str
    prediction_type: str
    predicted_value: float
    actual_value: float
    accuracy: float
    absolute_error: float
    percentage_error: float
    calibration: float
    validator_id: str = ""
    validated_at: str = ""
    id: str = ""
