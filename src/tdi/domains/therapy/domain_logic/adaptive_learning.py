"""Adaptive learning from outcomes and therapist feedback.

Outcome batches are checked for significant shifts and anomalies, feedback
events update append-only learning statistics and per-therapist counters,
recent progress drives session adjustments, and the rolling feedback window
decides when the outcome model should be retrained.
"""

from __future__ import annotations

import json
import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Sequence

from tdi.core.errors import NotFoundError, ServiceResult
from tdi.core.storage.models import (
    LearningUpdate,
    ModificationPattern,
    RejectionPattern,
    StoredFeedback,
    SuccessPattern,
)
from tdi.core.storage.repository import AnalyticsRepository, RepositoryError
from tdi.domains.therapy.domain_logic.config import DEFAULT_LEARNING_CONFIG, LearningConfig
from tdi.domains.therapy.domain_logic.recommendation_models import STATUS_FOR_DECISION
from tdi.domains.therapy.domain_logic.subject_models import Demographics, FeedbackEvent, Outcome

logger = logging.getLogger(__name__)

TrendKind = Literal["improving", "declining", "stable", "plateau", "insufficient_data"]
AdjustmentKind = Literal["frequency", "duration", "approach", "goal"]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class SignificantChange:
    parameter: str
    old_value: float
    new_value: float
    confidence: float


@dataclass
class OutcomeLearningResult:
    adaptations_applied: int
    model_update_required: bool
    insights: list[str] = field(default_factory=list)
    anomalies: list[str] = field(default_factory=list)


@dataclass
class FeedbackLearningResult:
    feedback_id: str
    status: str
    adaptations_applied: list[str] = field(default_factory=list)
    confidence_adjustment: float | None = None


@dataclass
class ProgressTrend:
    trend: TrendKind
    significance: float
    rate: float
    duration: int


@dataclass
class GoalProgress:
    goal_id: str
    mastery: float
    stagnation: int
    improvement: float


@dataclass
class AdaptiveAdjustment:
    type: AdjustmentKind
    adjustment: str
    reasoning: str
    confidence: float


@dataclass
class ProgressAdaptation:
    trend: ProgressTrend
    adjustments: list[AdaptiveAdjustment] = field(default_factory=list)
    trigger_recommendation_update: bool = False


@dataclass
class RetrainingAssessment:
    retraining_recommended: bool
    sample_size: int
    rejection_rate: float
    modification_rate: float
    reason: str = ""


# ---------------------------------------------------------------------------
# Pure analysis
# ---------------------------------------------------------------------------

def serialize_demographics(demographics: Demographics) -> str:
    """Pattern key for learning updates; only the first two diagnosis codes."""
    return json.dumps(
        {
            "age_bracket": demographics.age_bracket,
            "primary_language": demographics.primary_language,
            "diagnosis_codes": demographics.diagnosis_codes[:2],
        },
        sort_keys=True,
    )


def least_squares_slope(values: Sequence[float]) -> float:
    """Slope over the 0-based index; 0 for fewer than two values."""
    n = len(values)
    if n < 2:
        return 0.0
    x_mean = (n - 1) / 2
    y_mean = statistics.fmean(values)
    numerator = sum((i - x_mean) * (y - y_mean) for i, y in enumerate(values))
    denominator = sum((i - x_mean) ** 2 for i in range(n))
    return numerator / denominator if denominator else 0.0


def analyze_outcome_patterns(
    outcomes: Sequence[Outcome],
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
) -> list[SignificantChange]:
    """Compare the newest and oldest windows of a batch."""
    ordered = sorted(outcomes, key=lambda o: o.measurement_date)
    window = config.pattern_window
    older = [o.achievement for o in ordered[:window]]
    recent = [o.achievement for o in ordered[-window:]]
    if len(older) < config.min_pattern_samples or len(recent) < config.min_pattern_samples:
        return []

    older_avg = statistics.fmean(older)
    recent_avg = statistics.fmean(recent)
    change = abs(recent_avg - older_avg)
    if change <= config.significant_change:
        return []
    return [SignificantChange(
        parameter="achievement_trend",
        old_value=older_avg,
        new_value=recent_avg,
        confidence=min(config.max_pattern_confidence, change * 2),
    )]


def detect_anomalies(
    outcomes: Sequence[Outcome],
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
) -> list[str]:
    """Outlier share beyond the sigma band, and adjacent-session drops."""
    if len(outcomes) < config.min_anomaly_samples:
        return []
    achievements = [o.achievement for o in sorted(outcomes, key=lambda o: o.measurement_date)]
    anomalies: list[str] = []

    mean = statistics.fmean(achievements)
    std = statistics.pstdev(achievements)
    outliers = [a for a in achievements if abs(a - mean) > config.outlier_sigma * std]
    if len(outliers) > len(achievements) * config.outlier_share:
        anomalies.append(f"{len(outliers)} outcome outliers detected")

    for i in range(1, len(achievements)):
        drop = achievements[i - 1] - achievements[i]
        if drop > config.sudden_drop:
            anomalies.append(f"Sudden performance drop detected in session {i + 1} ({drop:.2f})")
    return anomalies


def analyze_progress(
    outcomes: Sequence[Outcome],
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
) -> ProgressTrend:
    if len(outcomes) < config.min_trend_samples:
        return ProgressTrend("insufficient_data", 0.0, 0.0, len(outcomes))

    achievements = [o.achievement for o in sorted(outcomes, key=lambda o: o.measurement_date)]
    slope = least_squares_slope(achievements)
    trend: TrendKind
    if abs(slope) < config.flat_slope:
        high = statistics.fmean(achievements) > config.plateau_mean
        if high and all(a > config.plateau_floor for a in achievements):
            trend = "plateau"
        else:
            trend = "stable"
    else:
        trend = "improving" if slope > 0 else "declining"
    return ProgressTrend(trend, abs(slope), slope, len(achievements))


def analyze_goals(
    outcomes: Sequence[Outcome],
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
) -> list[GoalProgress]:
    by_goal: dict[str, list[float]] = {}
    for outcome in sorted(outcomes, key=lambda o: o.measurement_date):
        by_goal.setdefault(outcome.goal_id, []).append(outcome.achievement)

    progress = []
    for goal_id, values in by_goal.items():
        overall = statistics.fmean(values)
        recent = statistics.fmean(values[-config.goal_recent_window:])
        stagnant = (
            recent < config.goal_stagnation_mean
            and len(values) > config.goal_stagnation_sessions
        )
        progress.append(GoalProgress(
            goal_id=goal_id,
            mastery=recent,
            stagnation=len(values) if stagnant else 0,
            improvement=recent - overall,
        ))
    return progress


def evaluate_retraining(
    decisions: Sequence[str],
    config: LearningConfig = DEFAULT_LEARNING_CONFIG,
) -> RetrainingAssessment:
    n = len(decisions)
    if n < config.min_feedback_count:
        return RetrainingAssessment(
            retraining_recommended=False,
            sample_size=n,
            rejection_rate=0.0,
            modification_rate=0.0,
            reason=f"Only {n} feedback events; need {config.min_feedback_count}",
        )
    rejection_rate = decisions.count("reject") / n
    modification_rate = decisions.count("modify") / n
    reasons = []
    if rejection_rate > config.max_rejection_rate:
        reasons.append(f"rejection rate {rejection_rate:.1%} exceeds {config.max_rejection_rate:.0%}")
    if modification_rate > config.max_modification_rate:
        reasons.append(
            f"modification rate {modification_rate:.1%} exceeds {config.max_modification_rate:.0%}"
        )
    return RetrainingAssessment(
        retraining_recommended=bool(reasons),
        sample_size=n,
        rejection_rate=rejection_rate,
        modification_rate=modification_rate,
        reason="; ".join(reasons) or "Feedback rates within tolerance",
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AdaptiveLearningService:
    """Reads and writes learning statistics through the repository.

    Args:
        repository: Store for recommendations, feedback and learning records.
        config: Learning thresholds.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        config: LearningConfig = DEFAULT_LEARNING_CONFIG,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repo = repository
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def process_outcomes(
        self,
        outcomes: Sequence[Outcome],
        demographics: Demographics,
    ) -> ServiceResult[OutcomeLearningResult]:
        insights: list[str] = []
        changes = analyze_outcome_patterns(outcomes, self.config)
        if changes:
            pattern_key = serialize_demographics(demographics)
            self._repo.append_learning_updates([
                LearningUpdate(
                    pattern_key=pattern_key,
                    factor_name=change.parameter,
                    old_value=change.old_value,
                    new_value=change.new_value,
                    adjustment_factor=change.new_value / (change.old_value or 1),
                    confidence=change.confidence,
                    reason="significant outcome shift",
                )
                for change in changes
            ])
            insights.append(
                f"Updated {len(changes)} recommendation parameters based on outcome patterns"
            )

        anomalies = detect_anomalies(outcomes, self.config)
        if anomalies:
            insights.append(f"Detected {len(anomalies)} outcome anomalies requiring investigation")
            logger.warning("Outcome anomalies detected: %d", len(anomalies))

        retraining = self.assess_retraining_need()
        return ServiceResult.success(OutcomeLearningResult(
            adaptations_applied=len(changes),
            model_update_required=retraining.retraining_recommended,
            insights=insights,
            anomalies=anomalies,
        ))

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def learn_from_feedback(self, event: FeedbackEvent) -> ServiceResult[FeedbackLearningResult]:
        """Record one decision and run its learning branch.

        An unknown recommendation id is a structured ``not_found`` failure.
        The feedback row is written first; if it is rejected (a reused
        feedback id, for example) the call fails with ``validation`` before
        any pattern, preference or status write happens.
        """
        recommendation = self._repo.get_recommendation(event.recommendation_id)
        if recommendation is None:
            return ServiceResult.from_exception(NotFoundError(
                f"Could not find recommendation {event.recommendation_id} for feedback learning",
                "لا يمكن العثور على التوصية الأصلية لتعلم التقييم",
                recommendation_id=event.recommendation_id,
            ))

        timestamp = event.timestamp.isoformat()
        try:
            feedback_id = self._repo.save_feedback(StoredFeedback(
                id=event.feedback_id,
                recommendation_id=event.recommendation_id,
                therapist_id=event.therapist_id,
                decision=event.decision,
                timestamp=timestamp,
                reasoning=event.reasoning,
                modifications=event.modifications,
            ))
        except RepositoryError as exc:
            logger.warning("Feedback for recommendation %s not stored: %s", recommendation.id, exc)
            return ServiceResult.failure(
                "validation",
                f"Could not store feedback {event.feedback_id}: duplicate or invalid record",
                "تعذر حفظ التقييم: السجل مكرر أو غير صالح",
                feedback_id=event.feedback_id,
                recommendation_id=recommendation.id,
            )

        adaptations: list[str] = []
        if event.decision == "reject":
            self._repo.append_rejection_pattern(RejectionPattern(
                recommendation_id=recommendation.id,
                recommendation_type=recommendation.recommendation_type,
                therapist_id=event.therapist_id,
                reason=event.reasoning,
                confidence_at_rejection=recommendation.confidence,
            ))
            adaptations.append("Updated rejection pattern learning")
        elif event.decision == "modify":
            self._repo.append_modification_pattern(ModificationPattern(
                recommendation_id=recommendation.id,
                recommendation_type=recommendation.recommendation_type,
                therapist_id=event.therapist_id,
                modifications=event.modifications,
                reasoning=event.reasoning,
            ))
            adaptations.append("Incorporated modification preferences")
        else:
            self._repo.append_success_pattern(SuccessPattern(
                recommendation_id=recommendation.id,
                recommendation_type=recommendation.recommendation_type,
                therapist_id=event.therapist_id,
                confidence=recommendation.confidence,
            ))
            adaptations.append("Reinforced successful recommendation pattern")

        self._repo.upsert_therapist_preference(event.therapist_id, event.decision, timestamp)
        adaptations.append("Updated therapist preference model")

        status = STATUS_FOR_DECISION[event.decision]
        adjusted = self.confidence_adjustment(event.decision, recommendation.confidence)
        self._repo.update_recommendation_status(recommendation.id, status, confidence=adjusted)
        logger.info(
            "Feedback processed for recommendation %s: %s",
            recommendation.id,
            event.decision,
        )
        return ServiceResult.success(FeedbackLearningResult(
            feedback_id=feedback_id,
            status=status,
            adaptations_applied=adaptations,
            confidence_adjustment=adjusted,
        ))

    def confidence_adjustment(self, decision: str, confidence: float) -> float:
        cfg = self.config
        if decision == "accept":
            return min(cfg.accept_cap, confidence * cfg.accept_multiplier)
        if decision == "modify":
            return confidence * cfg.modify_multiplier
        return confidence * cfg.reject_multiplier

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def adapt_to_progress(
        self,
        subject_id: str,
        outcomes: Sequence[Outcome],
        current_frequency: float = 2.0,
    ) -> ServiceResult[ProgressAdaptation]:
        cfg = self.config
        trend = analyze_progress(outcomes, cfg)
        adjustments: list[AdaptiveAdjustment] = []

        if trend.trend == "declining" and trend.significance > cfg.decline_significance:
            adjustments.append(AdaptiveAdjustment(
                type="frequency",
                adjustment="Increase session frequency by 1 per week",
                reasoning="Declining progress detected - additional support may be needed",
                confidence=0.75,
            ))
        elif trend.trend == "plateau" and trend.duration > cfg.plateau_sessions:
            adjustments.append(AdaptiveAdjustment(
                type="approach",
                adjustment="Consider alternative therapeutic approaches",
                reasoning=f"Progress plateau detected for {trend.duration} sessions",
                confidence=0.8,
            ))

        if (
            trend.trend == "improving"
            and trend.rate > cfg.rapid_improvement
            and current_frequency > cfg.reduce_frequency_above
        ):
            adjustments.append(AdaptiveAdjustment(
                type="frequency",
                adjustment="Consider reducing session frequency while maintaining gains",
                reasoning="Rapid improvement suggests current intensity may be higher than needed",
                confidence=0.65,
            ))

        for goal in analyze_goals(outcomes, cfg):
            if goal.mastery > cfg.goal_mastery:
                adjustments.append(AdaptiveAdjustment(
                    type="goal",
                    adjustment=f"Advance goal: {goal.goal_id}",
                    reasoning="Goal mastery achieved - ready for advancement",
                    confidence=0.9,
                ))
            elif goal.stagnation:
                adjustments.append(AdaptiveAdjustment(
                    type="goal",
                    adjustment=f"Modify approach for goal: {goal.goal_id}",
                    reasoning=f"No progress on goal for {goal.stagnation} sessions",
                    confidence=0.8,
                ))

        trigger = any(a.confidence > cfg.update_trigger_confidence for a in adjustments)
        logger.info(
            "Progress adaptation for subject %s: trend=%s, %d adjustments",
            subject_id,
            trend.trend,
            len(adjustments),
        )
        return ServiceResult.success(ProgressAdaptation(
            trend=trend,
            adjustments=adjustments,
            trigger_recommendation_update=trigger,
        ))

    # ------------------------------------------------------------------
    # Retraining
    # ------------------------------------------------------------------

    def assess_retraining_need(self) -> RetrainingAssessment:
        now = self._clock()
        since = (now - timedelta(days=self.config.feedback_window_days)).isoformat()
        window = self._repo.get_feedback_since(since, until=now.isoformat())
        assessment = evaluate_retraining([f.decision for f in window], self.config)
        if assessment.retraining_recommended:
            logger.info("Model retraining recommended: %s", assessment.reason)
        return assessment

