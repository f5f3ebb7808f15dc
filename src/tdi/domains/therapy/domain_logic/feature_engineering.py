"""Fixed-width feature vectors for the outcome scorer.

Layout (before zero padding to ``FeatureDefaults.feature_width``):

    [0:5]    age bracket one-hot
    [5:8]    primary language one-hot
    [8]      diagnosis count, scaled to [0, 1] at 5 codes
    [9]      non-default cultural background flag
    [10]     recent achievement (mean of the last 3 outcomes)
    [11]     overall mean achievement
    [12]     outcome count, scaled to [0, 1] at 20 outcomes
    [13:25]  latest assessment scores, sorted by measure name, scaled to [0, 1]

Missing history is replaced with the documented ``FeatureDefaults`` values.
"""

from __future__ import annotations

import statistics

from tdi.domains.therapy.domain_logic.config import DEFAULT_FEATURE_DEFAULTS, FeatureDefaults
from tdi.domains.therapy.domain_logic.subject_models import AGE_BRACKETS, LANGUAGES, SubjectProfile


def _one_hot(value: str, vocabulary: tuple[str, ...]) -> list[float]:
    return [1.0 if value == item else 0.0 for item in vocabulary]


def assessment_features(
    profile: SubjectProfile,
    defaults: FeatureDefaults = DEFAULT_FEATURE_DEFAULTS,
) -> list[float]:
    latest = profile.latest_assessment()
    if latest is None or not latest.scores:
        return [defaults.missing_assessment_score]
    scaled = [
        max(0.0, min(1.0, latest.scores[name] / defaults.assessment_score_scale))
        for name in sorted(latest.scores)
    ]
    return scaled[: defaults.max_assessment_features]


def build_feature_vector(
    profile: SubjectProfile,
    defaults: FeatureDefaults = DEFAULT_FEATURE_DEFAULTS,
    *,
    default_cultural_background: str = "local",
) -> list[float]:
    demographics = profile.demographics
    achievements = profile.achievements()
    if achievements:
        recent = statistics.fmean(achievements[-3:])
        overall = statistics.fmean(achievements)
    else:
        recent = overall = defaults.missing_achievement

    cultural = demographics.cultural_background
    features = (
        _one_hot(demographics.age_bracket, AGE_BRACKETS)
        + _one_hot(demographics.primary_language, LANGUAGES)
        + [
            min(1.0, len(demographics.diagnosis_codes) / 5),
            1.0 if cultural and cultural != default_cultural_background else 0.0,
            recent,
            overall,
            min(1.0, len(achievements) / 20),
        ]
        + assessment_features(profile, defaults)
    )

    width = defaults.feature_width
    if len(features) >= width:
        return features[:width]
    return features + [0.0] * (width - len(features))
