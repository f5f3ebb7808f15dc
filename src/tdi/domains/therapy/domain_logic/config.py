"""Immutable weights, thresholds and defaults for the analytics components.

Every component takes its config through the constructor (or as a keyword
argument for pure functions) and falls back to the module-level default
instance. Deployments tune behaviour by building a new instance with
``dataclasses.replace``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class FusionConfig:
    """Recommendation fusion: similarity search, source weights, ranking."""

    similarity_threshold: float = 0.7
    min_similar_subjects: int = 3

    # Content similarity blend
    age_weight: float = 0.3
    language_weight: float = 0.2
    diagnosis_weight: float = 0.5

    # A matched subject counts as successful above this mean achievement
    success_threshold: float = 0.6

    # Per-source weights for the fused confidence
    content_weight: float = 0.4
    collaborative_weight: float = 0.3
    model_weight: float = 0.3

    collaborative_min_confidence: float = 0.5

    relevance_bonus: float = 0.1
    relevance_cap: float = 0.95

    # High-severity bias adjustment
    bias_penalty: float = 0.7
    bias_floor: float = 0.3

    # Final clamp for confidence and relevance
    clamp_low: float = 0.1
    clamp_high: float = 0.99

    # Ranking tie windows
    relevance_tie: float = 0.1
    confidence_tie: float = 0.05

    # Drop recommendations whose confidence assessment says "reject"
    drop_rejected: bool = False

    def source_weight(self, source: str) -> float:
        return {
            "content": self.content_weight,
            "collaborative": self.collaborative_weight,
            "model": self.model_weight,
        }.get(source, 0.0)


@dataclass(frozen=True)
class ActionThresholds:
    """Confidence thresholds behind accept / review / reject."""

    accept: float = 0.8
    review: float = 0.6
    reject: float = 0.3

    def __post_init__(self) -> None:
        if not (self.accept >= self.review >= self.reject):
            raise ValueError(
                "Action thresholds must be monotonic: accept >= review >= reject"
            )


@dataclass(frozen=True)
class ConfidenceConfig:
    """Six-factor confidence model and clinical safety rules."""

    data_quality_weight: float = 0.25
    demographic_support_weight: float = 0.20
    clinical_evidence_weight: float = 0.20
    model_performance_weight: float = 0.15
    outcome_history_weight: float = 0.10
    bias_risk_weight: float = 0.10

    confidence_floor: float = 0.1
    confidence_ceiling: float = 0.99

    thresholds: ActionThresholds = ActionThresholds()
    accept_min_safety: float = 0.6
    review_min_safety: float = 0.5

    # Model performance placeholder
    min_corpus_for_performance: int = 50
    low_model_performance: float = 0.5
    high_model_performance: float = 0.75

    # Risk bucket on mean(confidence, safety)
    low_risk_floor: float = 0.8
    medium_risk_floor: float = 0.6

    # Safety validation
    high_risk_confidence_penalty: float = 0.8
    max_safe_duration: float = 120.0
    min_safe_duration: float = 20.0
    max_safe_frequency: float = 5.0

    # Case complexity -> personalised thresholds
    high_complexity: float = 0.7
    low_complexity: float = 0.3
    complexity_shift: float = 0.1

    # Language share in the corpus below which it counts as underrepresented
    underrepresented_share: float = 0.2
    # Used when there is no corpus to measure against
    underrepresented_languages: tuple[str, ...] = ("ar",)

    def __post_init__(self) -> None:
        if not math.isclose(sum(self.weights.values()), 1.0, abs_tol=1e-9):
            raise ValueError("Confidence factor weights must sum to 1.0")

    @property
    def weights(self) -> dict[str, float]:
        return {
            "data_quality": self.data_quality_weight,
            "demographic_support": self.demographic_support_weight,
            "clinical_evidence": self.clinical_evidence_weight,
            "model_performance": self.model_performance_weight,
            "outcome_history": self.outcome_history_weight,
            "bias_risk": self.bias_risk_weight,
        }


@dataclass(frozen=True)
class BiasConfig:
    """Fairness indicators, severity buckets and prediction-level checks."""

    detection_threshold: float = 0.3
    medium_severity: float = 0.4
    high_severity: float = 0.7

    arabic_confidence_floor: float = 0.6
    rare_diagnosis_confidence_floor: float = 0.7
    rare_diagnosis_codes: tuple[str, ...] = ("F80.0", "F80.2", "F84.2", "F84.3", "F98.5")

    default_cultural_background: str = "local"
    cultural_indicator_severity: float = 0.3

    # Outcome disparity needs at least this many language groups
    min_outcome_groups: int = 2


@dataclass(frozen=True)
class LearningConfig:
    """Adaptive learning from outcomes and therapist feedback."""

    pattern_window: int = 5
    min_pattern_samples: int = 3
    significant_change: float = 0.2
    max_pattern_confidence: float = 0.9

    min_anomaly_samples: int = 5
    outlier_sigma: float = 2.0
    outlier_share: float = 0.1
    sudden_drop: float = 0.4

    accept_multiplier: float = 1.05
    accept_cap: float = 0.95
    modify_multiplier: float = 0.9
    reject_multiplier: float = 0.7

    min_trend_samples: int = 3
    flat_slope: float = 0.05
    plateau_mean: float = 0.8
    plateau_floor: float = 0.7
    decline_significance: float = 0.7
    plateau_sessions: int = 4
    rapid_improvement: float = 0.15
    reduce_frequency_above: float = 2.0
    goal_mastery: float = 0.9
    goal_stagnation_mean: float = 0.3
    goal_stagnation_sessions: int = 6
    goal_recent_window: int = 5
    update_trigger_confidence: float = 0.8

    feedback_window_days: int = 30
    min_feedback_count: int = 10
    max_rejection_rate: float = 0.3
    max_modification_rate: float = 0.5


@dataclass(frozen=True)
class ForecastConfig:
    """Forecast confidence bands and the operational forecast assumptions."""

    band: float = 0.1
    confidence_level: float = 0.9
    default_alpha: float = 0.3

    seasonality_strength_floor: float = 0.1
    trend_change: float = 0.05

    min_capacity_points: int = 7
    capacity_scale: float = 100.0
    critical_utilization: float = 0.9
    warning_utilization: float = 0.8
    info_utilization: float = 0.7

    session_hours: float = 1.0
    high_hours: float = 200.0
    staff_ratio: float = 15.0

    min_reliable_points: int = 7
    outlier_sigma: float = 3.0
    outlier_share: float = 0.1


@dataclass(frozen=True)
class FeatureDefaults:
    """Defaults substituted when subject data is missing.

    Each value here replaces a silent inline constant, so every substitution
    the feature builder and generators make can be audited in one place.
    """

    feature_width: int = 32
    missing_assessment_score: float = 0.5
    missing_achievement: float = 0.5
    assessment_score_scale: float = 100.0
    max_assessment_features: int = 12
    missing_language: str = "en"

    current_session_frequency: float = 2.0
    current_session_duration: float = 60.0
    pattern_session_frequency: float = 2.5
    collaborative_session_duration: float = 50.0
    collaborative_session_frequency: float = 3.0
    fallback_approaches: tuple[str, ...] = (
        "Articulation Therapy",
        "Language Stimulation",
        "Social Communication",
    )


DEFAULT_FUSION_CONFIG = FusionConfig()
DEFAULT_CONFIDENCE_CONFIG = ConfidenceConfig()
DEFAULT_BIAS_CONFIG = BiasConfig()
DEFAULT_LEARNING_CONFIG = LearningConfig()
DEFAULT_FORECAST_CONFIG = ForecastConfig()
DEFAULT_FEATURE_DEFAULTS = FeatureDefaults()
