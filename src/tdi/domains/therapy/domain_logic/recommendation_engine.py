"""Hybrid recommendation engine.

Three generators propose candidates for a subject: content-based (peers with
similar demographics), collaborative (peers with similar outcome levels) and
model-based (the injected outcome scorer). Candidates of the same type are
fused into one recommendation, checked for prediction bias, scored for
confidence and safety, and ranked.
"""

from __future__ import annotations

import logging
import math
import statistics
import uuid
from collections import Counter, defaultdict
from functools import cmp_to_key
from typing import Callable, Sequence

from tdi.core.errors import ServiceResult
from tdi.core.scorer.provider import FeatureWidthError, OutcomeScorer, ScorerNotLoadedError
from tdi.domains.therapy.domain_logic.bias_detection import detect_prediction_bias
from tdi.domains.therapy.domain_logic.confidence_scoring import ConfidenceScorer
from tdi.domains.therapy.domain_logic.config import (
    DEFAULT_BIAS_CONFIG,
    DEFAULT_FEATURE_DEFAULTS,
    DEFAULT_FUSION_CONFIG,
    BiasConfig,
    FeatureDefaults,
    FusionConfig,
)
from tdi.domains.therapy.domain_logic.feature_engineering import build_feature_vector
from tdi.domains.therapy.domain_logic.recommendation_models import (
    TYPE_PRIORITY,
    ApproachPriority,
    FusedRecommendation,
    GoalAdjustment,
    GoalModificationPayload,
    RecommendationCandidate,
    SessionAdjustmentPayload,
    SessionDuration,
    SessionFrequency,
    TherapyPlanPayload,
)
from tdi.domains.therapy.domain_logic.subject_models import Demographics, SubjectProfile

logger = logging.getLogger(__name__)

HYBRID_FACTOR = "Hybrid recommendation combining multiple approaches"
BIAS_FACTOR = "Bias detection applied - clinical review recommended"
APPROACH_PRIORITIES = (8, 7, 6)


def _round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def content_similarity(
    a: Demographics,
    b: Demographics,
    config: FusionConfig = DEFAULT_FUSION_CONFIG,
) -> float:
    """Weighted blend of age bracket match, language match and diagnosis Jaccard."""
    score = 0.0
    if a.age_bracket == b.age_bracket:
        score += config.age_weight
    if a.primary_language == b.primary_language:
        score += config.language_weight
    codes_a, codes_b = set(a.diagnosis_codes), set(b.diagnosis_codes)
    union = codes_a | codes_b
    if union:
        score += config.diagnosis_weight * len(codes_a & codes_b) / len(union)
    total = config.age_weight + config.language_weight + config.diagnosis_weight
    return score / total if total else 0.0


def outcome_similarity(a: SubjectProfile, b: SubjectProfile) -> float:
    """1 - 2 * |mean achievement gap|, clamped to [0, 1]; 0 without outcomes."""
    mean_a, mean_b = a.mean_achievement(), b.mean_achievement()
    if mean_a is None or mean_b is None:
        return 0.0
    return max(0.0, min(1.0, 1 - 2 * abs(mean_a - mean_b)))


def compare_recommendations(
    a: FusedRecommendation,
    b: FusedRecommendation,
    config: FusionConfig = DEFAULT_FUSION_CONFIG,
) -> int:
    """Relevance, then confidence, each with a tie window, then type priority."""
    relevance_gap = b.clinical_relevance - a.clinical_relevance
    if abs(relevance_gap) > config.relevance_tie:
        return 1 if relevance_gap > 0 else -1
    confidence_gap = b.confidence - a.confidence
    if abs(confidence_gap) > config.confidence_tie:
        return 1 if confidence_gap > 0 else -1
    return TYPE_PRIORITY.get(b.recommendation_type, 0) - TYPE_PRIORITY.get(a.recommendation_type, 0)


def rank(
    recommendations: Sequence[FusedRecommendation],
    config: FusionConfig = DEFAULT_FUSION_CONFIG,
) -> list[FusedRecommendation]:
    return sorted(
        recommendations,
        key=cmp_to_key(lambda a, b: compare_recommendations(a, b, config)),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RecommendationEngine:
    """Generates, fuses, scores and ranks recommendations for one subject.

    Args:
        scorer: Loaded outcome scorer used by the model-based generator.
        confidence_scorer: Scores each fused recommendation.
        config: Similarity, weighting and ranking parameters.
        bias_config: Parameters for the inline prediction bias check.
        defaults: Substitutions for missing subject data.
        id_factory: Produces recommendation ids.
    """

    def __init__(
        self,
        scorer: OutcomeScorer,
        confidence_scorer: ConfidenceScorer | None = None,
        *,
        config: FusionConfig = DEFAULT_FUSION_CONFIG,
        bias_config: BiasConfig = DEFAULT_BIAS_CONFIG,
        defaults: FeatureDefaults = DEFAULT_FEATURE_DEFAULTS,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.scorer = scorer
        self.confidence_scorer = confidence_scorer or ConfidenceScorer()
        self.config = config
        self.bias_config = bias_config
        self.defaults = defaults
        self._new_id = id_factory or (lambda: f"rec_{uuid.uuid4().hex}")

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    def similar_by_content(
        self, target: SubjectProfile, corpus: Sequence[SubjectProfile]
    ) -> list[SubjectProfile]:
        return [
            other for other in corpus
            if other.subject_id != target.subject_id
            and content_similarity(target.demographics, other.demographics, self.config)
            >= self.config.similarity_threshold
        ]

    def similar_by_outcomes(
        self, target: SubjectProfile, corpus: Sequence[SubjectProfile]
    ) -> list[SubjectProfile]:
        if not target.outcomes:
            return []
        return [
            other for other in corpus
            if other.subject_id != target.subject_id
            and other.outcomes
            and outcome_similarity(target, other) >= self.config.similarity_threshold
        ]

    def _is_successful(self, profile: SubjectProfile) -> bool:
        mean = profile.mean_achievement()
        return mean is not None and mean > self.config.success_threshold

    # ------------------------------------------------------------------
    # Generators
    # ------------------------------------------------------------------

    def content_candidates(
        self, target: SubjectProfile, corpus: Sequence[SubjectProfile]
    ) -> list[RecommendationCandidate]:
        similar = self.similar_by_content(target, corpus)
        if len(similar) < self.config.min_similar_subjects:
            logger.warning(
                "Only %d demographically similar subjects for %s; skipping content-based generation",
                len(similar),
                target.subject_id,
            )
            return []

        successful = [p for p in similar if self._is_successful(p)]
        success_rate = len(successful) / len(similar)
        confidence = min(
            0.95,
            0.3 + min(0.4, 0.1 * len(similar)) + 0.3 * success_rate,
        )
        candidates: list[RecommendationCandidate] = []

        if successful:
            frequencies = [p.therapy_plan.session_frequency for p in successful if p.therapy_plan]
            recommended = (
                statistics.fmean(frequencies) if frequencies
                else self.defaults.pattern_session_frequency
            )
            candidates.append(RecommendationCandidate(
                payload=TherapyPlanPayload(
                    session_frequency=SessionFrequency(
                        current=self._current_frequency(target),
                        recommended=_round_half_up(recommended),
                    ),
                    approaches=self._top_approaches(successful),
                ),
                source="content",
                confidence=confidence,
                primary_factors=[
                    f"Based on {len(similar)} similar subjects",
                    "Subject demographic and assessment profile match",
                    "Historical therapy outcome patterns",
                ],
                clinical_evidence=(
                    f"Similar subjects showed {success_rate * 100:.1f}% success rate "
                    "with this approach"
                ),
            ))

        adjustments = self._goal_adjustments(similar)
        if adjustments:
            candidates.append(RecommendationCandidate(
                payload=GoalModificationPayload(adjustments=adjustments),
                source="content",
                confidence=confidence,
                primary_factors=["Goal achievement patterns from similar subjects"],
                clinical_evidence="Similar demographic groups benefit from these goal adjustments",
            ))
        return candidates

    def collaborative_candidates(
        self, target: SubjectProfile, corpus: Sequence[SubjectProfile]
    ) -> list[RecommendationCandidate]:
        matches = self.similar_by_outcomes(target, corpus)
        if len(matches) < self.config.min_similar_subjects:
            return []

        responders = [p for p in matches if self._is_successful(p)]
        responder_fraction = len(responders) / len(matches)
        confidence = min(0.9, 0.5 + 0.05 * len(matches) + 0.2 * responder_fraction)
        if confidence <= self.config.collaborative_min_confidence:
            return []

        plans = [p.therapy_plan for p in responders if p.therapy_plan]
        if plans:
            duration = statistics.fmean(plan.session_duration for plan in plans)
            frequency = statistics.fmean(plan.session_frequency for plan in plans)
        else:
            duration = self.defaults.collaborative_session_duration
            frequency = self.defaults.collaborative_session_frequency

        return [RecommendationCandidate(
            payload=SessionAdjustmentPayload(
                session_duration=SessionDuration(
                    current=self._current_duration(target),
                    recommended=_round_half_up(duration),
                ),
                session_frequency=SessionFrequency(
                    current=self._current_frequency(target),
                    recommended=_round_half_up(frequency),
                ),
            ),
            source="collaborative",
            confidence=confidence,
            primary_factors=[
                "Subjects with similar therapy responses",
                "Outcome-based similarity matching",
                "Collaborative preference patterns",
            ],
            clinical_evidence=(
                f"{len(matches)} subjects with similar response patterns achieved "
                "better outcomes with these settings"
            ),
        )]

    async def model_candidates(self, target: SubjectProfile) -> list[RecommendationCandidate]:
        features = build_feature_vector(
            target,
            self.defaults,
            default_cultural_background=self.bias_config.default_cultural_background,
        )
        prediction = await self.scorer.predict(features)

        ranked = sorted(
            zip(self.defaults.fallback_approaches, prediction.approach_scores),
            key=lambda pair: pair[1],
            reverse=True,
        )
        approaches = [
            ApproachPriority(
                approach=name,
                priority=max(1, min(10, round(score * 10))),
                rationale="Predicted by the outcome model",
            )
            for name, score in ranked
        ]
        return [RecommendationCandidate(
            payload=TherapyPlanPayload(
                session_frequency=SessionFrequency(
                    current=self._current_frequency(target),
                    recommended=prediction.session_frequency,
                ),
                approaches=approaches,
                session_duration=SessionDuration(
                    current=self._current_duration(target),
                    recommended=prediction.session_duration,
                ),
            ),
            source="model",
            confidence=prediction.confidence,
            primary_factors=[
                f"Outcome model prediction ({prediction.model_version or 'unversioned'})",
                "Demographic and assessment feature profile",
            ],
            clinical_evidence="Model trained on historical therapy outcomes",
        )]

    # ------------------------------------------------------------------
    # Fusion, bias pass, ranking
    # ------------------------------------------------------------------

    def fuse(
        self,
        target: SubjectProfile,
        candidates: Sequence[RecommendationCandidate],
    ) -> list[FusedRecommendation]:
        """One recommendation per type, weighted by source."""
        groups: dict[str, list[RecommendationCandidate]] = defaultdict(list)
        for candidate in candidates:
            groups[candidate.recommendation_type].append(candidate)

        fused: list[FusedRecommendation] = []
        for group in groups.values():
            template = max(group, key=lambda c: c.confidence)
            total_weight = sum(self.config.source_weight(c.source) for c in group)
            if total_weight > 0:
                confidence = sum(
                    c.confidence * self.config.source_weight(c.source) for c in group
                ) / total_weight
            else:
                confidence = template.confidence

            sources = list(dict.fromkeys(c.source for c in group))
            if len(sources) > 1:
                factors = [HYBRID_FACTOR, *template.primary_factors[:2]]
            else:
                factors = list(template.primary_factors)

            fused.append(FusedRecommendation(
                id=self._new_id(),
                subject_id=target.subject_id,
                payload=template.payload,
                confidence=confidence,
                clinical_relevance=min(
                    self.config.relevance_cap,
                    template.confidence + self.config.relevance_bonus,
                ),
                explanation_factors=factors,
                sources=sources,
                clinical_evidence=template.clinical_evidence,
            ))
        return fused

    def apply_bias_pass(
        self,
        target: SubjectProfile,
        recommendations: Sequence[FusedRecommendation],
    ) -> list[FusedRecommendation]:
        """Penalise high-severity prediction bias, then clamp both scores."""
        cfg = self.config
        for rec in recommendations:
            report = detect_prediction_bias(
                target.demographics, [rec.confidence], config=self.bias_config
            )
            if report.detected and report.severity == "high":
                rec.confidence = max(cfg.bias_floor, rec.confidence * cfg.bias_penalty)
                rec.explanation_factors.append(BIAS_FACTOR)
                logger.warning(
                    "High prediction bias for subject %s on %s; confidence reduced",
                    target.subject_id,
                    rec.recommendation_type,
                )
            rec.confidence = max(cfg.clamp_low, min(cfg.clamp_high, rec.confidence))
            rec.clinical_relevance = max(cfg.clamp_low, min(cfg.clamp_high, rec.clinical_relevance))
        return list(recommendations)

    def rank(self, recommendations: Sequence[FusedRecommendation]) -> list[FusedRecommendation]:
        return rank(recommendations, self.config)

    async def generate(
        self,
        target: SubjectProfile,
        corpus: Sequence[SubjectProfile],
        *,
        personalize: bool = False,
    ) -> list[FusedRecommendation]:
        """Full pipeline; an empty list when no generator produced anything."""
        candidates = [
            *self.content_candidates(target, corpus),
            *self.collaborative_candidates(target, corpus),
            *await self.model_candidates(target),
        ]
        if not candidates:
            return []

        recommendations = self.apply_bias_pass(target, self.fuse(target, candidates))
        for rec in recommendations:
            rec.assessment = self.confidence_scorer.assess(
                rec.payload, target, corpus, personalize=personalize
            )
        if self.config.drop_rejected:
            recommendations = [
                r for r in recommendations if r.assessment.recommended_action != "reject"
            ]

        ranked = self.rank(recommendations)
        logger.info(
            "Generated %d recommendations for subject %s from %d candidates",
            len(ranked),
            target.subject_id,
            len(candidates),
        )
        return ranked

    async def recommend(
        self,
        target: SubjectProfile,
        corpus: Sequence[SubjectProfile],
        *,
        personalize: bool = False,
    ) -> ServiceResult[list[FusedRecommendation]]:
        """``generate`` wrapped in the structured caller contract."""
        try:
            return ServiceResult.success(
                await self.generate(target, corpus, personalize=personalize)
            )
        except (ScorerNotLoadedError, FeatureWidthError) as exc:
            logger.exception("Outcome scorer unavailable for subject %s", target.subject_id)
            return ServiceResult.failure(
                "scorer_unavailable",
                f"Outcome model is unavailable: {exc}",
                "نموذج التنبؤ بالنتائج غير متاح حاليا",
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _current_frequency(self, target: SubjectProfile) -> float:
        if target.therapy_plan:
            return target.therapy_plan.session_frequency
        return self.defaults.current_session_frequency

    def _current_duration(self, target: SubjectProfile) -> float:
        if target.therapy_plan:
            return target.therapy_plan.session_duration
        return self.defaults.current_session_duration

    def _top_approaches(self, successful: Sequence[SubjectProfile]) -> list[ApproachPriority]:
        counts = Counter(
            approach
            for profile in successful
            if profile.therapy_plan
            for approach in profile.therapy_plan.approaches
        )
        names = [name for name, _ in counts.most_common(len(APPROACH_PRIORITIES))]
        if not names:
            names = list(self.defaults.fallback_approaches[: len(APPROACH_PRIORITIES)])
        return [
            ApproachPriority(
                approach=name,
                priority=priority,
                rationale="Most common among successful similar subjects",
            )
            for name, priority in zip(names, APPROACH_PRIORITIES)
        ]

    def _goal_adjustments(self, similar: Sequence[SubjectProfile]) -> list[GoalAdjustment]:
        by_goal: dict[str, list[float]] = defaultdict(list)
        for profile in similar:
            for outcome in profile.outcomes:
                if outcome.goal_id:
                    by_goal[outcome.goal_id].append(outcome.achievement)

        adjustments: list[GoalAdjustment] = []
        for goal_id in sorted(by_goal):
            mean = statistics.fmean(by_goal[goal_id])
            if mean > self.config.success_threshold:
                adjustments.append(GoalAdjustment(
                    goal_id=goal_id,
                    action="increase",
                    target="Advanced",
                    reasoning=f"Similar subjects showed strong progress on {goal_id} goals",
                ))
            elif mean < 0.3:
                adjustments.append(GoalAdjustment(
                    goal_id=goal_id,
                    action="modify",
                    target="Foundational",
                    reasoning=f"Similar subjects struggled with {goal_id} goals",
                ))
        return adjustments
