"""Tests for subject records, payload variants and fused recommendations."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from tdi.domains.therapy.domain_logic.config import FeatureDefaults
from tdi.domains.therapy.domain_logic.recommendation_models import (
    ApproachPriority,
    AssessmentUpdatePayload,
    FusedRecommendation,
    GoalAdjustment,
    GoalModificationPayload,
    RecommendationCandidate,
    SessionAdjustmentPayload,
    SessionDuration,
    SessionFrequency,
    TherapyPlanPayload,
    payload_from_dict,
    payload_to_dict,
    proposed_parameters,
)
from tdi.domains.therapy.domain_logic.subject_models import (
    Demographics,
    FeedbackEvent,
    Outcome,
    SubjectProfile,
    age_bracket_for,
)


class TestDemographics:
    def test_rejects_unknown_language(self):
        with pytest.raises(ValueError, match="Unsupported primary language"):
            Demographics(age_bracket="preschool", primary_language="fr")

    def test_rejects_unknown_bracket(self):
        with pytest.raises(ValueError, match="Unknown age bracket"):
            Demographics(age_bracket="toddler", primary_language="ar")

    def test_from_dict_derives_bracket_from_age(self):
        demo = Demographics.from_dict({"age": 4, "primary_language": "bilingual"})
        assert demo.age_bracket == "preschool"
        assert demo.diagnosis_codes == []

    def test_from_dict_needs_bracket_or_age(self):
        with pytest.raises(ValueError, match="age_bracket or an age"):
            Demographics.from_dict({"primary_language": "en"})

    def test_from_dict_missing_language_uses_feature_default(self):
        demo = Demographics.from_dict({"age_bracket": "elementary"})
        assert demo.primary_language == FeatureDefaults().missing_language

    @pytest.mark.parametrize(
        "age, bracket",
        [(1, "early_intervention"), (5.9, "preschool"), (6, "elementary"),
         (15, "adolescent"), (30, "adult")],
    )
    def test_age_brackets(self, age, bracket):
        assert age_bracket_for(age) == bracket


class TestSubjectProfile:
    def test_outcome_achievement_clamped(self):
        assert Outcome("g", 1.4, date(2025, 1, 1)).achievement == 1.0
        assert Outcome("g", -0.2, date(2025, 1, 1)).achievement == 0.0

    def test_assessments_sorted(self, make_subject):
        profile = make_subject(assessment_dates=[date(2025, 3, 1), date(2025, 1, 1)])
        assert profile.latest_assessment().assessment_date == date(2025, 3, 1)

    def test_achievements_chronological(self, make_subject):
        profile = make_subject(achievements=[0.2, 0.4])
        profile.outcomes.reverse()
        assert profile.achievements() == [0.2, 0.4]

    def test_mean_achievement_none_without_outcomes(self, make_subject):
        assert make_subject().mean_achievement() is None

    def test_from_dict(self, subject_dict):
        profile = SubjectProfile.from_dict(
            subject_dict(
                "S-9",
                language="ar",
                achievements=[0.5, 0.7],
                plan={"session_frequency": 2, "session_duration": 45, "approaches": ["PROMPT"]},
            )
        )
        assert profile.subject_id == "S-9"
        assert profile.demographics.primary_language == "ar"
        assert profile.mean_achievement() == pytest.approx(0.6)
        assert profile.latest_assessment().scores == {"expressive": 62.0}
        assert profile.therapy_plan.approaches == ["PROMPT"]

    def test_from_dict_requires_subject_id_and_demographics(self, subject_dict):
        with pytest.raises(KeyError):
            SubjectProfile.from_dict({"x": 1})
        payload = subject_dict()
        del payload["demographics"]
        with pytest.raises(KeyError):
            SubjectProfile.from_dict(payload)

    def test_from_dict_rejects_blank_subject_id(self, subject_dict):
        payload = subject_dict()
        payload["subject_id"] = "  "
        with pytest.raises(ValueError, match="subject_id"):
            SubjectProfile.from_dict(payload)


class TestFeedbackEvent:
    def test_invalid_decision(self):
        with pytest.raises(ValueError, match="Invalid feedback decision"):
            FeedbackEvent("r1", "T-1", "ignore")

    def test_from_dict_parses_zulu_timestamp(self):
        event = FeedbackEvent.from_dict({
            "recommendation_id": "r1",
            "therapist_id": "T-1",
            "decision": "modify",
            "timestamp": "2025-03-01T09:30:00Z",
        })
        assert event.timestamp == datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)

    def test_naive_timestamp_assumed_utc(self):
        event = FeedbackEvent.from_dict({
            "recommendation_id": "r1",
            "therapist_id": "T-1",
            "decision": "accept",
            "timestamp": "2025-03-01T09:30:00",
        })
        assert event.timestamp.tzinfo == timezone.utc

    def test_offset_timestamp_converted_to_utc(self):
        event = FeedbackEvent.from_dict({
            "recommendation_id": "r1",
            "therapist_id": "T-1",
            "decision": "reject",
            "timestamp": "2025-03-01T12:30:00+03:00",
        })
        assert event.timestamp == datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)
        assert event.timestamp.utcoffset() == timedelta(0)
        assert event.timestamp.isoformat() == "2025-03-01T09:30:00+00:00"


class TestPayloads:
    def test_every_variant_restores_from_dict(self):
        payloads = [
            TherapyPlanPayload(
                SessionFrequency(2.0, 3.0),
                [ApproachPriority("PROMPT", 1, "Scored 0.80")],
                SessionDuration(60.0, 45.0),
            ),
            SessionAdjustmentPayload(SessionDuration(60.0, 50.0), SessionFrequency(2.0, 3.0)),
            GoalModificationPayload([GoalAdjustment("g1", "increase", "Raise target")]),
            AssessmentUpdatePayload(["CELF-5"], "Annual review due"),
        ]
        for payload in payloads:
            data = payload_to_dict(payload)
            assert data["type"] == payload.recommendation_type
            assert payload_from_dict(data) == payload

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError, match="Unknown recommendation type"):
            payload_from_dict({"type": "diet_plan"})

    def test_proposed_parameters(self):
        assert proposed_parameters(
            SessionAdjustmentPayload(SessionDuration(60, 50), SessionFrequency(2, 3))
        ) == (50, 3)
        assert proposed_parameters(TherapyPlanPayload(SessionFrequency(2, 4))) == (None, 4)
        assert proposed_parameters(GoalModificationPayload()) == (None, None)


class TestCandidates:
    def test_requires_primary_factor(self):
        with pytest.raises(ValueError, match="primary factor"):
            RecommendationCandidate(GoalModificationPayload(), "content", 0.5, [])

    def test_rejects_unknown_source(self):
        with pytest.raises(ValueError, match="Unknown candidate source"):
            RecommendationCandidate(GoalModificationPayload(), "oracle", 0.5, ["x"])

    def test_confidence_clamped(self):
        candidate = RecommendationCandidate(GoalModificationPayload(), "model", 1.7, ["x"])
        assert candidate.confidence == 1.0
        assert candidate.recommendation_type == "goal_modification"

    def test_fused_to_dict(self):
        fused = FusedRecommendation(
            id="r1",
            subject_id="S-1",
            payload=AssessmentUpdatePayload(["CELF-5"]),
            confidence=0.123456,
            clinical_relevance=0.5,
            explanation_factors=["Assessment overdue"],
            sources=["content"],
        )
        data = fused.to_dict()
        assert data["recommendation_type"] == "assessment_update"
        assert data["confidence"] == 0.1235
        assert data["status"] == "pending"
        assert "assessment" not in data
