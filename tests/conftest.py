"""Shared test fixtures for TDI therapy analytics tests."""

from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCORER_PROVIDER", "mock")
    monkeypatch.setenv("SCORER_WEIGHTS_PATH", "")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("DB_PATH", ":memory:")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from tdi.domains.therapy.domain_logic.subject_models import (  # noqa: E402
    Assessment,
    Demographics,
    Outcome,
    SubjectProfile,
    TherapyPlan,
)


# ---------------------------------------------------------------------------
# Subject builders
# ---------------------------------------------------------------------------

def _outcomes(achievements: list[float], start: date, goal_id: str) -> list[Outcome]:
    return [
        Outcome(goal_id=goal_id, achievement=a, measurement_date=start + timedelta(days=7 * i))
        for i, a in enumerate(achievements)
    ]


@pytest.fixture
def make_subject() -> Callable[..., SubjectProfile]:
    """Factory for subject profiles with sensible defaults.

    ``achievements`` become weekly outcomes on one goal; ``assessment_dates``
    become assessments with a single score each.
    """

    def _make(
        subject_id: str = "S-001",
        *,
        age_bracket: str = "elementary",
        language: str = "en",
        codes: list[str] | None = None,
        cultural_background: str | None = None,
        socioeconomic_tag: str | None = None,
        achievements: list[float] | None = None,
        goal_id: str = "articulation",
        start: date = date(2025, 1, 6),
        assessment_dates: list[date] | None = None,
        plan: tuple[float, float, list[str]] | None = None,
    ) -> SubjectProfile:
        return SubjectProfile(
            subject_id=subject_id,
            demographics=Demographics(
                age_bracket=age_bracket,
                primary_language=language,
                diagnosis_codes=list(codes if codes is not None else ["F80.1"]),
                cultural_background=cultural_background,
                socioeconomic_tag=socioeconomic_tag,
            ),
            assessments=[
                Assessment(assessment_date=d, scores={"expressive": 62.0}, tool="CELF-5")
                for d in assessment_dates or []
            ],
            outcomes=_outcomes(achievements or [], start, goal_id),
            therapy_plan=TherapyPlan(*plan) if plan else None,
        )

    return _make


@pytest.fixture
def subject_dict() -> Callable[..., dict[str, Any]]:
    """Factory for subject payloads as the tool layer receives them."""

    def _make(
        subject_id: str = "S-001",
        *,
        language: str = "en",
        codes: list[str] | None = None,
        achievements: list[float] | None = None,
        plan: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "subject_id": subject_id,
            "demographics": {
                "age_bracket": "elementary",
                "primary_language": language,
                "diagnosis_codes": codes if codes is not None else ["F80.1"],
            },
            "assessments": [
                {"assessment_date": "2025-02-01", "scores": {"expressive": 62}, "tool": "CELF-5"}
            ],
            "outcomes": [
                {
                    "goal_id": "articulation",
                    "achievement": a,
                    "measurement_date": (date(2025, 1, 6) + timedelta(days=7 * i)).isoformat(),
                }
                for i, a in enumerate(achievements or [])
            ],
        }
        if plan:
            data["therapy_plan"] = plan
        return data

    return _make


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_scorer():
    """A loaded MockScorer with the default canned prediction."""
    from tdi.core.scorer.providers import MockScorer

    scorer = MockScorer()
    scorer.load()
    return scorer


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def analytics_db():
    """Create an in-memory TherapyDatabase for testing."""
    from tdi.core.storage.database import TherapyDatabase

    db = TherapyDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from tdi.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def repository(analytics_db, field_encryptor):
    """Create an AnalyticsRepository backed by in-memory SQLite."""
    from tdi.core.storage.repository import AnalyticsRepository

    return AnalyticsRepository(analytics_db, field_encryptor)


@pytest.fixture
def audit_logger(analytics_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from tdi.core.audit.logger import AuditLogger

    return AuditLogger(analytics_db)


@pytest.fixture
def stored_recommendation():
    """Factory that saves a pending recommendation and returns its id."""
    from tdi.core.storage.models import StoredRecommendation

    def _save(repo, rec_id: str = "rec-1", confidence: float = 0.8, **overrides: Any) -> str:
        record = StoredRecommendation(
            id=rec_id,
            subject_id=overrides.pop("subject_id", "S-001"),
            recommendation_type=overrides.pop("recommendation_type", "therapy_plan"),
            payload=overrides.pop("payload", {
                "type": "therapy_plan",
                "session_frequency": {"current": 2.0, "recommended": 3.0, "unit": "weekly"},
                "approaches": [],
                "session_duration": None,
            }),
            confidence=confidence,
            clinical_relevance=min(0.95, confidence + 0.1),
            explanation_factors=["Based on 4 similar subjects"],
            sources=["content"],
            **overrides,
        )
        return repo.save_recommendation(record)

    return _save
