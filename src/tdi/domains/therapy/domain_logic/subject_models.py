"""Subject, outcome and feedback records read by the analytics core.

These are created and maintained by the persistence layer; the analytics
components only read them. ``from_dict`` constructors accept the plain
structured payloads the tool layer receives from callers.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Literal

from tdi.domains.therapy.domain_logic.config import DEFAULT_FEATURE_DEFAULTS

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

LANGUAGES = ("ar", "en", "bilingual")

AGE_BRACKETS = (
    "early_intervention",
    "preschool",
    "elementary",
    "adolescent",
    "adult",
)

Decision = Literal["accept", "modify", "reject"]
DECISIONS = ("accept", "modify", "reject")


def age_bracket_for(age_years: float) -> str:
    """Map an age in years to its service bracket."""
    if age_years < 3:
        return "early_intervention"
    if age_years < 6:
        return "preschool"
    if age_years < 12:
        return "elementary"
    if age_years < 18:
        return "adolescent"
    return "adult"


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _as_utc(value: datetime) -> datetime:
    """Naive values are taken as UTC; aware values are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    return _as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Demographics:
    """Demographic attributes used for similarity and fairness analysis."""

    age_bracket: str
    primary_language: str
    diagnosis_codes: list[str] = field(default_factory=list)
    cultural_background: str | None = None
    socioeconomic_tag: str | None = None

    def __post_init__(self) -> None:
        if self.primary_language not in LANGUAGES:
            raise ValueError(
                f"Unsupported primary language {self.primary_language!r}; "
                f"expected one of {LANGUAGES}"
            )
        if self.age_bracket not in AGE_BRACKETS:
            raise ValueError(
                f"Unknown age bracket {self.age_bracket!r}; expected one of {AGE_BRACKETS}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Demographics:
        """Build from a payload; ``age`` stands in for a missing ``age_bracket``.

        Raises:
            ValueError: Neither ``age_bracket`` nor ``age`` is given.
        """
        bracket = data.get("age_bracket")
        if not bracket and data.get("age") is not None:
            bracket = age_bracket_for(float(data["age"]))
        if not bracket:
            raise ValueError("Demographics need an age_bracket or an age")
        return cls(
            age_bracket=bracket,
            primary_language=(
                data.get("primary_language") or DEFAULT_FEATURE_DEFAULTS.missing_language
            ),
            diagnosis_codes=list(data.get("diagnosis_codes", [])),
            cultural_background=data.get("cultural_background"),
            socioeconomic_tag=data.get("socioeconomic_tag"),
        )


@dataclass
class Assessment:
    """One standardized assessment administration."""

    assessment_date: date
    scores: dict[str, float] = field(default_factory=dict)
    tool: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assessment:
        return cls(
            assessment_date=_parse_date(data["assessment_date"]),
            scores={k: float(v) for k, v in data.get("scores", {}).items()},
            tool=data.get("tool", ""),
        )


@dataclass
class Outcome:
    """One measured result tied to a goal. Achievement is clamped to [0, 1]."""

    goal_id: str
    achievement: float
    measurement_date: date

    def __post_init__(self) -> None:
        self.achievement = max(0.0, min(1.0, float(self.achievement)))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Outcome:
        return cls(
            goal_id=str(data.get("goal_id", "")),
            achievement=data.get("achievement", 0.0),
            measurement_date=_parse_date(data["measurement_date"]),
        )


@dataclass
class TherapyPlan:
    """The subject's current therapy arrangement, when known."""

    session_frequency: float
    session_duration: float
    approaches: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TherapyPlan:
        return cls(
            session_frequency=float(data["session_frequency"]),
            session_duration=float(data["session_duration"]),
            approaches=list(data.get("approaches", [])),
        )


@dataclass
class SubjectProfile:
    """One person's clinical context.

    Assessments are kept ordered by date on construction; outcomes keep
    insertion order and are sorted on demand via ``outcomes_by_date``.
    """

    subject_id: str
    demographics: Demographics
    assessments: list[Assessment] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)
    therapy_plan: TherapyPlan | None = None

    def __post_init__(self) -> None:
        self.assessments = sorted(self.assessments, key=lambda a: a.assessment_date)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubjectProfile:
        """Build from a payload.

        Raises:
            KeyError: ``subject_id`` or ``demographics`` is missing.
            ValueError: ``subject_id`` is blank or demographics are invalid.
        """
        subject_id = str(data["subject_id"]).strip()
        if not subject_id:
            raise ValueError("subject_id must not be blank")
        plan = data.get("therapy_plan")
        return cls(
            subject_id=subject_id,
            demographics=Demographics.from_dict(data["demographics"]),
            assessments=[Assessment.from_dict(a) for a in data.get("assessments", [])],
            outcomes=[Outcome.from_dict(o) for o in data.get("outcomes", [])],
            therapy_plan=TherapyPlan.from_dict(plan) if plan else None,
        )

    def outcomes_by_date(self) -> list[Outcome]:
        return sorted(self.outcomes, key=lambda o: o.measurement_date)

    def achievements(self) -> list[float]:
        """Achievement values in chronological order."""
        return [o.achievement for o in self.outcomes_by_date()]

    def mean_achievement(self) -> float | None:
        if not self.outcomes:
            return None
        return statistics.fmean(o.achievement for o in self.outcomes)

    def latest_assessment(self) -> Assessment | None:
        return self.assessments[-1] if self.assessments else None


@dataclass
class FeedbackEvent:
    """A therapist's decision on a past recommendation."""

    recommendation_id: str
    therapist_id: str
    decision: Decision
    reasoning: str = ""
    modifications: dict[str, Any] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    feedback_id: str = ""

    def __post_init__(self) -> None:
        if self.decision not in DECISIONS:
            raise ValueError(
                f"Invalid feedback decision {self.decision!r}; expected one of {DECISIONS}"
            )
        self.timestamp = _as_utc(self.timestamp)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackEvent:
        ts = data.get("timestamp")
        return cls(
            recommendation_id=str(data["recommendation_id"]),
            therapist_id=str(data["therapist_id"]),
            decision=data["decision"],
            reasoning=data.get("reasoning", ""),
            modifications=data.get("modifications"),
            timestamp=_parse_datetime(ts) if ts else datetime.now(timezone.utc),
            feedback_id=data.get("feedback_id", ""),
        )
