"""Tests for adaptive learning: outcome patterns, anomalies, feedback, progress, retraining."""

from __future__ import annotations

import dataclasses
import json
from datetime import datetime, timedelta, timezone

import pytest

from tdi.domains.therapy.domain_logic.adaptive_learning import (
    AdaptiveLearningService,
    analyze_goals,
    analyze_outcome_patterns,
    analyze_progress,
    detect_anomalies,
    evaluate_retraining,
    least_squares_slope,
    serialize_demographics,
)
from tdi.domains.therapy.domain_logic.config import LearningConfig
from tdi.domains.therapy.domain_logic.subject_models import Demographics, FeedbackEvent

NOW = datetime(2025, 6, 30, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(repository) -> AdaptiveLearningService:
    return AdaptiveLearningService(repository, clock=lambda: NOW)


def _event(rec_id: str, decision: str, *, days_ago: float = 1, **kwargs) -> FeedbackEvent:
    return FeedbackEvent(
        recommendation_id=rec_id,
        therapist_id=kwargs.pop("therapist_id", "T-1"),
        decision=decision,
        timestamp=NOW - timedelta(days=days_ago),
        **kwargs,
    )


class TestPureAnalysis:
    def test_serialize_demographics_keeps_two_codes(self):
        key = serialize_demographics(
            Demographics("preschool", "ar", ["F80.1", "F84.0", "F90.0"])
        )
        assert json.loads(key) == {
            "age_bracket": "preschool",
            "diagnosis_codes": ["F80.1", "F84.0"],
            "primary_language": "ar",
        }
        assert key.index("age_bracket") < key.index("primary_language")

    def test_slope(self):
        assert least_squares_slope([0.1, 0.3, 0.5, 0.7]) == pytest.approx(0.2)
        assert least_squares_slope([0.5]) == 0.0

    def test_linear_input_recovers_slope_exactly(self):
        values = [0.2 + 0.05 * i for i in range(8)]
        assert least_squares_slope(values) == pytest.approx(0.05)

    def test_significant_shift(self, make_subject):
        outcomes = make_subject(achievements=[0.2] * 5 + [0.8] * 5).outcomes
        [change] = analyze_outcome_patterns(outcomes)
        assert change.parameter == "achievement_trend"
        assert change.old_value == pytest.approx(0.2)
        assert change.new_value == pytest.approx(0.8)
        assert change.confidence == pytest.approx(0.9)

    def test_small_shift_ignored(self, make_subject):
        outcomes = make_subject(achievements=[0.5, 0.55, 0.6, 0.6, 0.65, 0.7]).outcomes
        assert analyze_outcome_patterns(outcomes) == []

    def test_too_few_outcomes(self, make_subject):
        assert analyze_outcome_patterns(make_subject(achievements=[0.1, 0.9]).outcomes) == []


class TestAnomalies:
    def test_sudden_drop_reported(self, make_subject):
        outcomes = make_subject(achievements=[0.9, 0.88, 0.91, 0.4, 0.35, 0.3]).outcomes
        anomalies = detect_anomalies(outcomes)
        assert len(anomalies) >= 1
        assert "Sudden performance drop detected in session 4 (0.51)" in anomalies

    def test_outlier_share(self, make_subject):
        outcomes = make_subject(achievements=[0.5] * 8 + [1.0]).outcomes
        assert detect_anomalies(outcomes) == ["1 outcome outliers detected"]

    def test_needs_five_outcomes(self, make_subject):
        assert detect_anomalies(make_subject(achievements=[0.9, 0.1, 0.9, 0.1]).outcomes) == []

    def test_uses_chronological_order(self, make_subject):
        outcomes = make_subject(achievements=[0.9, 0.9, 0.9, 0.2, 0.2]).outcomes
        outcomes.reverse()
        assert detect_anomalies(outcomes) == [
            "Sudden performance drop detected in session 4 (0.70)"
        ]


class TestProgressAnalysis:
    def test_plateau(self, make_subject):
        trend = analyze_progress(make_subject(achievements=[0.9] * 6).outcomes)
        assert trend.trend == "plateau"
        assert trend.duration == 6

    def test_stable_when_flat_but_low(self, make_subject):
        assert analyze_progress(make_subject(achievements=[0.5] * 4).outcomes).trend == "stable"

    def test_direction(self, make_subject):
        assert analyze_progress(make_subject(achievements=[0.1, 0.3, 0.5]).outcomes).trend == "improving"
        assert analyze_progress(make_subject(achievements=[0.5, 0.3, 0.1]).outcomes).trend == "declining"

    def test_insufficient(self, make_subject):
        trend = analyze_progress(make_subject(achievements=[0.5, 0.6]).outcomes)
        assert trend.trend == "insufficient_data"
        assert trend.duration == 2

    def test_goal_stagnation(self, make_subject):
        [goal] = analyze_goals(make_subject(achievements=[0.1] * 7).outcomes)
        assert goal.goal_id == "articulation"
        assert goal.stagnation == 7
        assert goal.mastery == pytest.approx(0.1)


class TestRetrainingRule:
    def test_below_minimum(self):
        result = evaluate_retraining(["reject"] * 9)
        assert not result.retraining_recommended
        assert result.reason == "Only 9 feedback events; need 10"

    def test_modification_rate(self):
        result = evaluate_retraining(["modify"] * 6 + ["accept"] * 4)
        assert result.retraining_recommended
        assert result.modification_rate == pytest.approx(0.6)

    def test_within_tolerance(self):
        result = evaluate_retraining(["accept"] * 8 + ["reject"] * 2)
        assert not result.retraining_recommended
        assert result.reason == "Feedback rates within tolerance"


class TestProcessOutcomes:
    def test_records_learning_update(self, make_subject, service, repository):
        subject = make_subject(age_bracket="preschool", achievements=[0.2] * 5 + [0.8] * 5)
        result = service.process_outcomes(subject.outcomes, subject.demographics)

        assert result.ok
        assert result.data.adaptations_applied == 1
        assert result.data.model_update_required is False
        assert result.data.insights == [
            "Updated 1 recommendation parameters based on outcome patterns"
        ]
        [update] = repository.get_learning_updates(
            pattern_key=serialize_demographics(subject.demographics)
        )
        assert update.factor_name == "achievement_trend"
        assert update.adjustment_factor == pytest.approx(4.0)

    def test_reports_anomalies(self, make_subject, service):
        subject = make_subject(achievements=[0.9, 0.88, 0.91, 0.4, 0.35, 0.3])
        result = service.process_outcomes(subject.outcomes, subject.demographics)
        assert result.data.adaptations_applied == 0
        assert result.data.anomalies
        assert result.data.insights[-1].startswith("Detected ")

    def test_sudden_drop_names_session(self, make_subject, service):
        subject = make_subject(achievements=[0.9, 0.88, 0.91, 0.4, 0.35, 0.3])
        result = service.process_outcomes(subject.outcomes, subject.demographics)

        assert result.ok
        assert any(
            "Sudden performance drop detected in session 4" in a for a in result.data.anomalies
        )
        assert (
            f"Detected {len(result.data.anomalies)} outcome anomalies requiring investigation"
            in result.data.insights
        )


class TestLearnFromFeedback:
    def test_reject_branch(self, service, repository, stored_recommendation):
        rid = stored_recommendation(repository, "rec-1", confidence=0.8)
        result = service.learn_from_feedback(_event(rid, "reject", reasoning="Too intensive"))

        assert result.ok
        assert result.data.status == "rejected"
        assert result.data.confidence_adjustment == pytest.approx(0.56)
        assert result.data.adaptations_applied == [
            "Updated rejection pattern learning",
            "Updated therapist preference model",
        ]
        stored = repository.get_recommendation(rid)
        assert stored.status == "rejected"
        assert stored.confidence == pytest.approx(0.56)
        assert repository.count_patterns("rejection_patterns") == 1
        assert repository.get_rejection_patterns()[0].reason == "Too intensive"
        assert repository.get_therapist_preference("T-1").reject_count == 1

    def test_modify_branch(self, service, repository, stored_recommendation):
        rid = stored_recommendation(repository)
        result = service.learn_from_feedback(
            _event(rid, "modify", modifications={"session_frequency": 2})
        )
        assert result.data.status == "modified"
        assert result.data.adaptations_applied[0] == "Incorporated modification preferences"
        assert repository.count_patterns("modification_patterns") == 1
        [feedback] = repository.get_feedback_since("2025-01-01T00:00:00+00:00")
        assert feedback.modifications == {"session_frequency": 2}

    def test_accept_branch_caps_confidence(self, service, repository, stored_recommendation):
        rid = stored_recommendation(repository, confidence=0.93)
        result = service.learn_from_feedback(_event(rid, "accept"))
        assert result.data.adaptations_applied[0] == "Reinforced successful recommendation pattern"
        assert result.data.confidence_adjustment == pytest.approx(0.95)
        assert repository.count_patterns("success_patterns") == 1

    def test_unknown_recommendation(self, service, repository):
        result = service.learn_from_feedback(_event("missing", "accept"))
        assert not result.ok
        assert result.error.kind == "not_found"
        assert result.error.message_ar == "لا يمكن العثور على التوصية الأصلية لتعلم التقييم"
        assert result.error.details == {"recommendation_id": "missing"}
        assert repository.get_feedback_since("2000-01-01T00:00:00+00:00") == []

    @pytest.mark.parametrize(
        "decision, confidence, expected",
        [("accept", 0.8, 0.84), ("accept", 0.93, 0.95), ("modify", 0.8, 0.72), ("reject", 0.8, 0.56)],
    )
    def test_confidence_adjustment(self, service, decision, confidence, expected):
        assert service.confidence_adjustment(decision, confidence) == pytest.approx(expected)

    def test_reused_feedback_id_leaves_state_untouched(
        self, service, repository, stored_recommendation
    ):
        rid = stored_recommendation(repository, confidence=0.8)
        first = service.learn_from_feedback(_event(rid, "reject", feedback_id="fb-1"))
        assert first.ok
        assert first.data.feedback_id == "fb-1"

        second = service.learn_from_feedback(_event(rid, "reject", feedback_id="fb-1"))
        assert not second.ok
        assert second.error.kind == "validation"
        assert second.error.message_ar
        assert second.error.details["feedback_id"] == "fb-1"

        assert repository.count_patterns("rejection_patterns") == 1
        assert repository.get_therapist_preference("T-1").reject_count == 1
        assert repository.get_recommendation(rid).confidence == pytest.approx(0.56)
        assert len(repository.get_feedback_since("2000-01-01T00:00:00+00:00")) == 1


class TestRetrainingWindow:
    def _submit(self, service, repository, stored_recommendation, decisions, *, start_day=1):
        for i, decision in enumerate(decisions):
            rid = stored_recommendation(repository, f"rec-{start_day + i}")
            service.learn_from_feedback(_event(rid, decision, days_ago=start_day + i))

    def test_high_rejection_rate_triggers_retraining(
        self, service, repository, stored_recommendation
    ):
        decisions = ["reject"] * 5 + ["accept"] * 7
        self._submit(service, repository, stored_recommendation, decisions)

        assessment = service.assess_retraining_need()
        assert assessment.retraining_recommended
        assert assessment.sample_size == 12
        assert assessment.rejection_rate == pytest.approx(5 / 12)
        assert "rejection rate" in assessment.reason

    def test_feedback_outside_window_ignored(self, service, repository, stored_recommendation):
        self._submit(service, repository, stored_recommendation, ["reject"] * 12, start_day=40)
        assessment = service.assess_retraining_need()
        assert assessment.sample_size == 0
        assert not assessment.retraining_recommended

    def test_outcome_batch_reports_model_update(
        self, make_subject, service, repository, stored_recommendation
    ):
        self._submit(
            service, repository, stored_recommendation, ["reject"] * 5 + ["accept"] * 7
        )
        subject = make_subject(achievements=[0.5, 0.5, 0.5])
        result = service.process_outcomes(subject.outcomes, subject.demographics)
        assert result.data.model_update_required is True

    def test_offset_timestamps_counted_in_window(
        self, service, repository, stored_recommendation
    ):
        riyadh = timezone(timedelta(hours=3))
        for hours in range(1, 13):
            rid = stored_recommendation(repository, f"rec-{hours}")
            service.learn_from_feedback(FeedbackEvent(
                recommendation_id=rid,
                therapist_id="T-1",
                decision="reject",
                timestamp=(NOW - timedelta(hours=hours)).astimezone(riyadh),
            ))

        assessment = service.assess_retraining_need()
        assert assessment.sample_size == 12
        assert assessment.retraining_recommended
        stored = repository.get_feedback_since("2000-01-01T00:00:00+00:00")
        assert all(f.timestamp.endswith("+00:00") for f in stored)


class TestAdaptToProgress:
    def test_plateau_suggests_alternative_approach(self, make_subject, service):
        outcomes = make_subject(achievements=[0.9] * 6).outcomes
        result = service.adapt_to_progress("S-1", outcomes)

        [adjustment] = result.data.adjustments
        assert adjustment.type == "approach"
        assert adjustment.reasoning == "Progress plateau detected for 6 sessions"
        assert result.data.trigger_recommendation_update is False

    def test_rapid_improvement_at_high_frequency(self, make_subject, service):
        outcomes = make_subject(achievements=[0.1, 0.3, 0.5, 0.7]).outcomes
        result = service.adapt_to_progress("S-1", outcomes, current_frequency=3.0)
        assert [a.adjustment for a in result.data.adjustments] == [
            "Consider reducing session frequency while maintaining gains"
        ]

    def test_rapid_improvement_at_low_frequency(self, make_subject, service):
        outcomes = make_subject(achievements=[0.1, 0.3, 0.5, 0.7]).outcomes
        assert service.adapt_to_progress("S-1", outcomes, current_frequency=2.0).data.adjustments == []

    def test_goal_mastery_triggers_update(self, make_subject, service):
        outcomes = make_subject(achievements=[0.95] * 3).outcomes
        result = service.adapt_to_progress("S-1", outcomes)
        assert [a.adjustment for a in result.data.adjustments] == ["Advance goal: articulation"]
        assert result.data.trigger_recommendation_update is True

    def test_goal_stagnation(self, make_subject, service):
        outcomes = make_subject(achievements=[0.1] * 7).outcomes
        [adjustment] = service.adapt_to_progress("S-1", outcomes).data.adjustments
        assert adjustment.adjustment == "Modify approach for goal: articulation"
        assert adjustment.reasoning == "No progress on goal for 7 sessions"

    def test_steep_decline_with_tuned_threshold(self, make_subject, repository):
        config = dataclasses.replace(LearningConfig(), decline_significance=0.1)
        tuned = AdaptiveLearningService(repository, config, clock=lambda: NOW)
        outcomes = make_subject(achievements=[0.9, 0.6, 0.3]).outcomes
        [adjustment] = tuned.adapt_to_progress("S-1", outcomes).data.adjustments
        assert adjustment.adjustment == "Increase session frequency by 1 per week"

    def test_insufficient_data(self, make_subject, service):
        result = service.adapt_to_progress("S-1", make_subject(achievements=[0.5]).outcomes)
        assert result.data.trend.trend == "insufficient_data"
        assert result.data.adjustments == []
