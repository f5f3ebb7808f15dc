"""Six-factor confidence scoring and clinical safety checks.

Weights and thresholds come from ``ConfidenceConfig``. Scoring never raises
for thin data: a subject with no history simply scores low on the factors
that depend on history.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Literal, Sequence

from tdi.domains.therapy.domain_logic.config import (
    DEFAULT_CONFIDENCE_CONFIG,
    ActionThresholds,
    ConfidenceConfig,
)
from tdi.domains.therapy.domain_logic.recommendation_models import (
    RecommendationPayload,
    proposed_parameters,
)
from tdi.domains.therapy.domain_logic.subject_models import SubjectProfile

logger = logging.getLogger(__name__)

RiskLevel = Literal["low", "medium", "high"]
Action = Literal["accept", "review", "reject"]

# Age-appropriate (duration minutes, weekly frequency) bands
CLINICAL_BANDS: dict[str, tuple[tuple[float, float], tuple[float, float]]] = {
    "early_intervention": ((20, 45), (1, 3)),
    "preschool": ((30, 60), (1, 4)),
    "elementary": ((30, 60), (1, 4)),
    "adolescent": ((45, 90), (1, 3)),
    "adult": ((45, 90), (1, 3)),
}

COMPLEX_DEVELOPMENTAL_PREFIXES = ("F84", "F88", "F89")


def _is_severe(code: str) -> bool:
    """Autism spectrum (F84.x) or intellectual disability (F70-F79)."""
    if code.startswith("F84"):
        return True
    if code.startswith("F7") and len(code) >= 3 and code[2].isdigit():
        return True
    return False


@dataclass
class ConfidenceAssessment:
    factors: dict[str, float]
    overall_confidence: float
    clinical_safety: float
    risk_level: RiskLevel
    recommended_action: Action
    confidence_level: RiskLevel
    thresholds: ActionThresholds = field(default_factory=ActionThresholds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "factors": {k: round(v, 4) for k, v in self.factors.items()},
            "overall_confidence": round(self.overall_confidence, 4),
            "clinical_safety": round(self.clinical_safety, 4),
            "risk_level": self.risk_level,
            "recommended_action": self.recommended_action,
            "confidence_level": self.confidence_level,
            "thresholds": {
                "accept": self.thresholds.accept,
                "review": self.thresholds.review,
                "reject": self.thresholds.reject,
            },
        }


@dataclass
class SafetyValidation:
    is_safe: bool
    adjusted_confidence: float
    issues: list[str] = field(default_factory=list)
    high_risk_factors: list[str] = field(default_factory=list)
    requires_justification: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_safe": self.is_safe,
            "adjusted_confidence": round(self.adjusted_confidence, 4),
            "issues": list(self.issues),
            "high_risk_factors": list(self.high_risk_factors),
            "requires_justification": self.requires_justification,
        }


class ConfidenceScorer:
    """Scores one recommendation payload against one subject profile.

    Args:
        config: Weights, thresholds and safety limits.
    """

    def __init__(self, config: ConfidenceConfig = DEFAULT_CONFIDENCE_CONFIG) -> None:
        self._config = config

    @property
    def config(self) -> ConfidenceConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def assess(
        self,
        payload: RecommendationPayload | None,
        profile: SubjectProfile,
        corpus: Sequence[SubjectProfile] | None = None,
        *,
        personalize: bool = False,
        as_of: date | None = None,
    ) -> ConfidenceAssessment:
        """Score the payload and recommend accept, review or reject.

        Args:
            payload: The recommendation being scored; ``None`` scores the
                subject alone with neutral clinical evidence.
            profile: The subject the recommendation is for.
            corpus: Historical subjects for demographic support and bias risk.
            personalize: Shift action thresholds by case complexity.
            as_of: Reference date for data recency; defaults to today (UTC).
        """
        cfg = self._config
        corpus = [p for p in (corpus or []) if p.subject_id != profile.subject_id]
        as_of = as_of or datetime.now(timezone.utc).date()
        duration, frequency = proposed_parameters(payload) if payload is not None else (None, None)

        factors = {
            "data_quality": self.data_quality(profile, as_of),
            "demographic_support": self.demographic_support(profile, corpus),
            "clinical_evidence": self.clinical_evidence(profile, duration, frequency),
            "model_performance": self.model_performance(corpus),
            "outcome_history": self.outcome_history(profile),
            "bias_risk": self.bias_risk(profile, corpus),
        }
        weights = cfg.weights
        raw = sum(factors[name] * weights[name] for name in factors)
        overall = max(cfg.confidence_floor, min(cfg.confidence_ceiling, raw))
        safety = self.clinical_safety(profile, duration, frequency)

        thresholds = self.personalized_thresholds(profile) if personalize else cfg.thresholds
        logger.debug(
            "Confidence factors for subject %s: %s -> %.3f (safety %.3f)",
            profile.subject_id,
            {k: round(v, 3) for k, v in factors.items()},
            overall,
            safety,
        )
        return ConfidenceAssessment(
            factors=factors,
            overall_confidence=overall,
            clinical_safety=safety,
            risk_level=self.risk_level(overall, safety),
            recommended_action=self.recommended_action(overall, safety, thresholds),
            confidence_level=self.confidence_level(overall),
            thresholds=thresholds,
        )

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def data_quality(self, profile: SubjectProfile, as_of: date) -> float:
        score = 0.0
        n_assessments = len(profile.assessments)
        if n_assessments >= 5:
            score += 0.35
        elif n_assessments >= 3:
            score += 0.25
        elif n_assessments >= 1:
            score += 0.15

        n_outcomes = len(profile.outcomes)
        if n_outcomes >= 10:
            score += 0.35
        elif n_outcomes >= 5:
            score += 0.25
        elif n_outcomes >= 1:
            score += 0.15

        latest = profile.latest_assessment()
        if latest is not None:
            age_days = (as_of - latest.assessment_date).days
            if age_days < 90:
                score += 0.3
            elif age_days < 180:
                score += 0.15
        return min(1.0, score)

    def demographic_support(
        self,
        profile: SubjectProfile,
        corpus: Sequence[SubjectProfile],
    ) -> float:
        if not corpus:
            return 0.3
        target = profile.demographics
        codes = set(target.diagnosis_codes)
        matching = sum(
            1
            for other in corpus
            if other.demographics.age_bracket == target.age_bracket
            and other.demographics.primary_language == target.primary_language
            and codes & set(other.demographics.diagnosis_codes)
        )
        share = matching / len(corpus)
        if share >= 0.2:
            return 0.9
        if share >= 0.1:
            return 0.7
        if share >= 0.05:
            return 0.5
        return 0.3

    def clinical_evidence(
        self,
        profile: SubjectProfile,
        duration: float | None,
        frequency: float | None,
    ) -> float:
        if duration is None and frequency is None:
            return 0.6
        (d_low, d_high), (f_low, f_high) = CLINICAL_BANDS[profile.demographics.age_bracket]
        score = 0.8
        if duration is not None:
            score += 0.1 if d_low <= duration <= d_high else -0.2
            if duration > 90:
                score -= 0.3
        if frequency is not None:
            score += 0.1 if f_low <= frequency <= f_high else -0.2
        return max(0.0, min(1.0, score))

    def model_performance(self, corpus: Sequence[SubjectProfile]) -> float:
        cfg = self._config
        if len(corpus) < cfg.min_corpus_for_performance:
            return cfg.low_model_performance
        return cfg.high_model_performance

    def outcome_history(self, profile: SubjectProfile) -> float:
        achievements = profile.achievements()
        if not achievements:
            return 0.3
        score = 0.3
        overall = statistics.fmean(achievements)
        if overall > 0.6:
            score += 0.3
        if len(achievements) >= 3:
            if 1 - statistics.pvariance(achievements) > 0.7:
                score += 0.2
            if statistics.fmean(achievements[-3:]) > overall:
                score += 0.2
        return min(1.0, score)

    def bias_risk(self, profile: SubjectProfile, corpus: Sequence[SubjectProfile]) -> float:
        cfg = self._config
        language = profile.demographics.primary_language
        score = 0.8
        if corpus:
            share = sum(1 for p in corpus if p.demographics.primary_language == language) / len(corpus)
            underrepresented = share < cfg.underrepresented_share
        else:
            underrepresented = language in cfg.underrepresented_languages
        if underrepresented:
            score -= 0.1
        if len(profile.demographics.diagnosis_codes) > 3:
            score -= 0.1
        return max(0.2, score)

    # ------------------------------------------------------------------
    # Safety and verdicts
    # ------------------------------------------------------------------

    def clinical_safety(
        self,
        profile: SubjectProfile,
        duration: float | None,
        frequency: float | None,
    ) -> float:
        bracket = profile.demographics.age_bracket
        safety = 0.8
        if bracket == "early_intervention":
            if duration is not None and duration > 45:
                safety -= 0.2
            if frequency is not None and frequency > 3:
                safety -= 0.1
        elif bracket == "preschool":
            if duration is not None and duration > 60:
                safety -= 0.2

        if frequency is not None:
            if frequency > self._config.max_safe_frequency:
                safety -= 0.2
            if frequency > 3 and any(_is_severe(c) for c in profile.demographics.diagnosis_codes):
                safety -= 0.2
        return max(0.1, safety)

    def risk_level(self, confidence: float, safety: float) -> RiskLevel:
        combined = (confidence + safety) / 2
        if combined >= self._config.low_risk_floor:
            return "low"
        if combined >= self._config.medium_risk_floor:
            return "medium"
        return "high"

    def recommended_action(
        self,
        confidence: float,
        safety: float,
        thresholds: ActionThresholds | None = None,
    ) -> Action:
        cfg = self._config
        thresholds = thresholds or cfg.thresholds
        if confidence >= thresholds.accept and safety >= cfg.accept_min_safety:
            return "accept"
        if confidence >= thresholds.reject and safety >= cfg.review_min_safety:
            return "review"
        return "reject"

    def confidence_level(self, confidence: float) -> RiskLevel:
        thresholds = self._config.thresholds
        if confidence >= thresholds.accept:
            return "high"
        if confidence >= thresholds.review:
            return "medium"
        return "low"

    def validate_safety(
        self,
        payload: RecommendationPayload | None,
        profile: SubjectProfile,
        confidence: float,
    ) -> SafetyValidation:
        """Flag low confidence, high-risk subjects and extreme parameters."""
        cfg = self._config
        issues: list[str] = []
        adjusted = confidence

        if confidence < cfg.thresholds.reject:
            issues.append(
                f"Confidence {confidence:.2f} is below the minimum of {cfg.thresholds.reject:.2f}"
            )

        demographics = profile.demographics
        risk_factors: list[str] = []
        if len(demographics.diagnosis_codes) > 3:
            risk_factors.append("multiple_diagnoses")
        if demographics.age_bracket == "early_intervention":
            risk_factors.append("early_intervention")
        if any(c.startswith(COMPLEX_DEVELOPMENTAL_PREFIXES) for c in demographics.diagnosis_codes):
            risk_factors.append("complex_developmental_diagnosis")
        if risk_factors:
            adjusted *= cfg.high_risk_confidence_penalty
            issues.append("High-risk factors present: " + ", ".join(risk_factors))

        duration, frequency = proposed_parameters(payload) if payload is not None else (None, None)
        requires_justification = False
        if duration is not None and not (cfg.min_safe_duration <= duration <= cfg.max_safe_duration):
            requires_justification = True
            issues.append(f"Session duration {duration:g} min is outside the safe range")
        if frequency is not None and frequency > cfg.max_safe_frequency:
            requires_justification = True
            issues.append(f"Session frequency {frequency:g}/week exceeds the safe maximum")

        return SafetyValidation(
            is_safe=adjusted >= cfg.thresholds.reject and not requires_justification,
            adjusted_confidence=adjusted,
            issues=issues,
            high_risk_factors=risk_factors,
            requires_justification=requires_justification,
        )

    # ------------------------------------------------------------------
    # Personalisation
    # ------------------------------------------------------------------

    def case_complexity(self, profile: SubjectProfile) -> float:
        codes = min(0.4, 0.1 * len(profile.demographics.diagnosis_codes))
        achievements = profile.achievements()
        variance = statistics.pvariance(achievements) if len(achievements) > 1 else 0.0
        spread = min(0.3, 3 * variance)
        if not profile.assessments:
            sparsity = 0.3
        elif len(profile.assessments) < 3:
            sparsity = 0.2
        else:
            sparsity = 0.0
        return codes + spread + sparsity

    def personalized_thresholds(self, profile: SubjectProfile) -> ActionThresholds:
        """Raise thresholds for complex cases, lower them for simple ones."""
        cfg = self._config
        base = cfg.thresholds
        complexity = self.case_complexity(profile)
        if complexity > cfg.high_complexity:
            shift = cfg.complexity_shift
        elif complexity < cfg.low_complexity:
            shift = -cfg.complexity_shift
        else:
            return base
        return replace(
            base,
            accept=max(0.0, min(cfg.confidence_ceiling, base.accept + shift)),
            review=max(0.0, min(cfg.confidence_ceiling, base.review + shift)),
            reject=max(0.0, min(cfg.confidence_ceiling, base.reject + shift)),
        )
