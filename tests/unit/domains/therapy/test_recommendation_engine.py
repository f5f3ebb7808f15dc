"""Tests for the hybrid recommendation engine: generators, fusion, bias pass, ranking."""

from __future__ import annotations

import asyncio
import dataclasses
import itertools

import pytest

from tdi.core.scorer.provider import ScorerPrediction
from tdi.core.scorer.providers import MockScorer
from tdi.domains.therapy.domain_logic.config import FusionConfig
from tdi.domains.therapy.domain_logic.recommendation_engine import (
    BIAS_FACTOR,
    HYBRID_FACTOR,
    RecommendationEngine,
    content_similarity,
    outcome_similarity,
    rank,
)
from tdi.domains.therapy.domain_logic.recommendation_models import (
    AssessmentUpdatePayload,
    FusedRecommendation,
    GoalModificationPayload,
    RecommendationCandidate,
    SessionAdjustmentPayload,
    TherapyPlanPayload,
)
from tdi.domains.therapy.domain_logic.subject_models import Demographics


def _run(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _engine(scorer, **kwargs) -> RecommendationEngine:
    counter = itertools.count(1)
    return RecommendationEngine(scorer, id_factory=lambda: f"rec-{next(counter)}", **kwargs)


def _fused(rec_type_payload, relevance: float, confidence: float) -> FusedRecommendation:
    return FusedRecommendation(
        id="x",
        subject_id="S-1",
        payload=rec_type_payload,
        confidence=confidence,
        clinical_relevance=relevance,
        explanation_factors=["factor"],
    )


def _peers(make_subject, n: int = 3, **kwargs):
    return [make_subject(f"P-{i}", **kwargs) for i in range(n)]


class TestSimilarity:
    def test_identical_demographics(self):
        demo = Demographics("elementary", "en", ["F80.1"])
        assert content_similarity(demo, demo) == pytest.approx(1.0)

    def test_partial_match(self):
        a = Demographics("elementary", "en", ["F80.1", "F84.0"])
        b = Demographics("preschool", "en", ["F80.1"])
        # language 0.2 + diagnosis 0.5 * 1/2
        assert content_similarity(a, b) == pytest.approx(0.45)

    def test_outcome_similarity(self, make_subject):
        a = make_subject("A", achievements=[0.6, 0.8])
        b = make_subject("B", achievements=[0.5, 0.5])
        assert outcome_similarity(a, b) == pytest.approx(0.6)
        assert outcome_similarity(a, make_subject("C")) == 0.0


class TestRanking:
    def test_relevance_tie_falls_back_to_confidence(self):
        first = _fused(GoalModificationPayload(), relevance=0.9, confidence=0.5)
        second = _fused(AssessmentUpdatePayload(), relevance=0.85, confidence=0.9)
        assert rank([first, second]) == [second, first]

    def test_clear_relevance_gap_wins(self):
        high = _fused(AssessmentUpdatePayload(), relevance=0.9, confidence=0.2)
        low = _fused(GoalModificationPayload(), relevance=0.5, confidence=0.9)
        assert rank([low, high]) == [high, low]

    def test_full_tie_uses_type_priority(self):
        goal = _fused(GoalModificationPayload(), relevance=0.8, confidence=0.8)
        assessment = _fused(AssessmentUpdatePayload(), relevance=0.8, confidence=0.82)
        assert rank([assessment, goal]) == [goal, assessment]


class TestModelOnly:
    def test_empty_corpus_yields_model_plan(self, make_subject, mock_scorer):
        engine = _engine(mock_scorer)
        [rec] = _run(engine.generate(make_subject(), []))

        assert rec.id == "rec-1"
        assert rec.sources == ["model"]
        assert rec.confidence == pytest.approx(0.7)
        assert rec.clinical_relevance == pytest.approx(0.8)
        assert isinstance(rec.payload, TherapyPlanPayload)
        assert rec.payload.session_frequency.current == 2.0
        assert rec.payload.session_duration.recommended == 45.0
        assert [a.approach for a in rec.payload.approaches] == [
            "Articulation Therapy",
            "Language Stimulation",
            "Social Communication",
        ]
        assert [a.priority for a in rec.payload.approaches] == [8, 6, 4]
        assert rec.assessment is not None
        assert mock_scorer.call_count == 1
        assert len(mock_scorer.last_features) == 32

    def test_unloaded_scorer_is_reported(self, make_subject):
        result = _run(_engine(MockScorer()).recommend(make_subject(), []))
        assert not result.ok
        assert result.error.kind == "scorer_unavailable"
        assert result.error.message_ar


class TestContentAndFusion:
    def test_successful_peers_produce_hybrid_plan(self, make_subject, mock_scorer):
        corpus = _peers(
            make_subject,
            achievements=[0.7, 0.8, 0.9],
            plan=(3.0, 45.0, ["PROMPT", "Play-based"]),
        )
        engine = _engine(mock_scorer)
        recs = _run(engine.generate(make_subject(), corpus))

        by_type = {r.recommendation_type: r for r in recs}
        assert set(by_type) == {"therapy_plan", "goal_modification"}

        plan = by_type["therapy_plan"]
        assert plan.sources == ["content", "model"]
        # (0.9 * 0.4 + 0.7 * 0.3) / 0.7
        assert plan.confidence == pytest.approx(0.57 / 0.7)
        assert plan.clinical_relevance == pytest.approx(0.95)
        assert plan.explanation_factors[0] == HYBRID_FACTOR
        assert plan.explanation_factors[1] == "Based on 3 similar subjects"
        assert plan.payload.session_frequency.recommended == 3.0
        assert [a.approach for a in plan.payload.approaches] == ["PROMPT", "Play-based"]
        assert [a.priority for a in plan.payload.approaches] == [8, 7]

        goal = by_type["goal_modification"]
        assert goal.payload.adjustments[0].goal_id == "articulation"
        assert goal.payload.adjustments[0].action == "increase"

        # Equal relevance, goal_modification is clearly more confident
        assert recs[0].recommendation_type == "goal_modification"

    def test_relevance_follows_strongest_candidate(self, make_subject, mock_scorer):
        candidates = [
            RecommendationCandidate(GoalModificationPayload(), "content", 0.6, ["peer goals"]),
            RecommendationCandidate(GoalModificationPayload(), "model", 0.2, ["model goals"]),
        ]
        [fused] = _engine(mock_scorer).fuse(make_subject(), candidates)

        # (0.6 * 0.4 + 0.2 * 0.3) / 0.7
        assert fused.confidence == pytest.approx(0.3 / 0.7)
        assert fused.clinical_relevance == pytest.approx(0.7)
        assert fused.explanation_factors == [HYBRID_FACTOR, "peer goals"]

    def test_too_few_peers_skips_content(self, make_subject, mock_scorer):
        corpus = _peers(make_subject, n=2, achievements=[0.9])
        engine = _engine(mock_scorer)
        assert engine.content_candidates(make_subject(), corpus) == []

    def test_target_excluded_from_its_own_peers(self, make_subject, mock_scorer):
        target = make_subject("S-001")
        corpus = [target, *_peers(make_subject, n=2)]
        assert len(_engine(mock_scorer).similar_by_content(target, corpus)) == 2

    def test_struggling_peers_get_foundational_goals(self, make_subject, mock_scorer):
        corpus = _peers(make_subject, achievements=[0.1, 0.2])
        candidates = _engine(mock_scorer).content_candidates(make_subject(), corpus)
        assert [c.recommendation_type for c in candidates] == ["goal_modification"]
        assert candidates[0].payload.adjustments[0].target == "Foundational"


class TestCollaborative:
    def test_outcome_peers_produce_session_adjustment(self, make_subject, mock_scorer):
        target = make_subject(achievements=[0.7, 0.7, 0.7])
        corpus = _peers(
            make_subject,
            age_bracket="adult",
            language="ar",
            achievements=[0.7, 0.7],
            plan=(3.0, 40.0, []),
        )
        engine = _engine(mock_scorer)
        candidates = engine.collaborative_candidates(target, corpus)

        [candidate] = candidates
        assert candidate.source == "collaborative"
        assert candidate.confidence == pytest.approx(0.85)
        assert isinstance(candidate.payload, SessionAdjustmentPayload)
        assert candidate.payload.session_duration.current == 60.0
        assert candidate.payload.session_duration.recommended == 40.0
        assert candidate.payload.session_frequency.recommended == 3.0

        recs = _run(engine.generate(target, corpus))
        assert {r.recommendation_type for r in recs} == {"therapy_plan", "session_adjustment"}

    def test_target_without_outcomes(self, make_subject, mock_scorer):
        corpus = _peers(make_subject, achievements=[0.7])
        assert _engine(mock_scorer).collaborative_candidates(make_subject(), corpus) == []


class TestBiasPass:
    def test_high_bias_penalised_and_flagged(self, make_subject, mock_scorer):
        target = make_subject(language="ar", codes=["F80.2"])
        rec = _fused(GoalModificationPayload(), relevance=0.5, confidence=0.3)
        [adjusted] = _engine(mock_scorer).apply_bias_pass(target, [rec])
        assert adjusted.confidence == pytest.approx(0.3)
        assert adjusted.explanation_factors[-1] == BIAS_FACTOR

    def test_scores_clamped(self, make_subject, mock_scorer):
        rec = _fused(GoalModificationPayload(), relevance=1.0, confidence=0.01)
        [adjusted] = _engine(mock_scorer).apply_bias_pass(make_subject(), [rec])
        assert adjusted.confidence == pytest.approx(0.1)
        assert adjusted.clinical_relevance == pytest.approx(0.99)
        assert BIAS_FACTOR not in adjusted.explanation_factors


class TestDropRejected:
    def test_rejected_recommendations_removed(self, make_subject):
        scorer = MockScorer(ScorerPrediction(0.2, 6.0, 150.0, [0.5, 0.5, 0.5], "mock"))
        scorer.load()
        config = dataclasses.replace(FusionConfig(), drop_rejected=True)
        target = make_subject(age_bracket="early_intervention", codes=["F84.0"])

        kept = _run(_engine(scorer).generate(target, []))
        dropped = _run(_engine(scorer, config=config).generate(target, []))
        assert kept[0].assessment.recommended_action == "reject"
        assert dropped == []
