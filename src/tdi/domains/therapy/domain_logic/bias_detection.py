"""Fairness scans over subject collections and individual predictions.

Indicators come from three analyses: representation imbalance per
demographic dimension (normalised Gini over group shares), outcome disparity
between language groups, and prediction-level checks for one subject. A
report's severity is the maximum indicator severity.
"""

from __future__ import annotations

import logging
import random
import statistics
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Sequence

from tdi.domains.therapy.domain_logic.config import DEFAULT_BIAS_CONFIG, BiasConfig
from tdi.domains.therapy.domain_logic.subject_models import Demographics, SubjectProfile

logger = logging.getLogger(__name__)

IndicatorType = Literal["demographic", "linguistic", "cultural", "socioeconomic"]
Severity = Literal["low", "medium", "high"]

MITIGATION_STRATEGIES: dict[str, list[str]] = {
    "demographic": [
        "Balance demographic representation in training data",
        "Apply stratified sampling across demographic groups",
    ],
    "linguistic": [
        "Equalize Arabic and English representation in training data",
    ],
    "cultural": [
        "Include cultural context features in the model",
        "Request cultural expert validation of recommendations",
    ],
    "socioeconomic": [
        "Control for income-related factors in analysis",
    ],
}

# Demographic dimension -> (indicator type, accessor)
REPRESENTATION_DIMENSIONS: dict[str, tuple[str, Callable[[Demographics], str | None]]] = {
    "primary_language": ("linguistic", lambda d: d.primary_language),
    "age_bracket": ("demographic", lambda d: d.age_bracket),
    "cultural_background": ("cultural", lambda d: d.cultural_background),
    "socioeconomic_tag": ("socioeconomic", lambda d: d.socioeconomic_tag),
}


@dataclass
class BiasIndicator:
    type: IndicatorType
    dimension: str
    severity: float
    affected_groups: list[str] = field(default_factory=list)
    description: str = ""
    confidence: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "dimension": self.dimension,
            "severity": round(self.severity, 4),
            "affected_groups": list(self.affected_groups),
            "description": self.description,
            "confidence": round(self.confidence, 4),
        }


@dataclass
class BiasReport:
    detected: bool
    severity: Severity
    severity_score: float
    affected_groups: list[str]
    mitigation_strategies: list[str]
    confidence: float
    indicators: list[BiasIndicator] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected": self.detected,
            "severity": self.severity,
            "severity_score": round(self.severity_score, 4),
            "affected_groups": list(self.affected_groups),
            "mitigation_strategies": list(self.mitigation_strategies),
            "confidence": round(self.confidence, 4),
            "indicators": [i.to_dict() for i in self.indicators],
        }


@dataclass
class MitigationResult:
    profiles: list[SubjectProfile]
    checked: bool = True
    modified: bool = False
    actions: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def gini(counts: Sequence[int]) -> float:
    """Normalised Gini coefficient over group shares, in [0, 1].

    0 when every group is the same size, 1 when one group holds every
    member. A single group (or none) scores 0.
    """
    groups = [c for c in counts if c > 0]
    k = len(groups)
    total = sum(groups)
    if k < 2 or total == 0:
        return 0.0
    shares = [c / total for c in groups]
    spread = sum(abs(a - b) for a in shares for b in shares)
    coefficient = spread / (2 * k)
    return min(1.0, coefficient / ((k - 1) / k))


def severity_bucket(score: float, config: BiasConfig = DEFAULT_BIAS_CONFIG) -> Severity:
    if score >= config.high_severity:
        return "high"
    if score >= config.medium_severity:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Analyses
# ---------------------------------------------------------------------------

def representation_bias(
    profiles: Sequence[SubjectProfile],
    *,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> list[BiasIndicator]:
    """One indicator per demographic dimension.

    Language, age bracket and cultural background are always scanned (a
    missing cultural background counts as the default one). Socioeconomic
    tags are scanned only when at least one subject carries one.
    """
    indicators: list[BiasIndicator] = []
    for dimension, (kind, accessor) in REPRESENTATION_DIMENSIONS.items():
        values = [accessor(p.demographics) for p in profiles]
        if dimension == "cultural_background":
            values = [v or config.default_cultural_background for v in values]
        elif dimension == "socioeconomic_tag":
            values = [v for v in values if v]
            if not values:
                continue
        counts = Counter(values)
        severity = gini(list(counts.values()))
        fair_share = 1 / len(counts) if counts else 0.0
        total = sum(counts.values())
        affected = sorted(
            f"{dimension}:{group}"
            for group, count in counts.items()
            if total and count / total < fair_share
        )
        indicators.append(BiasIndicator(
            type=kind,
            dimension=dimension,
            severity=severity,
            affected_groups=affected,
            description=f"Representation imbalance across {dimension} groups",
        ))
    return indicators


def outcome_bias(
    profiles: Sequence[SubjectProfile],
    *,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> BiasIndicator:
    """Gap in mean achievement between primary-language groups."""
    by_language: dict[str, list[float]] = defaultdict(list)
    for profile in profiles:
        mean = profile.mean_achievement()
        if mean is not None:
            by_language[profile.demographics.primary_language].append(mean)

    if len(by_language) < config.min_outcome_groups:
        return BiasIndicator(
            type="linguistic",
            dimension="outcome_by_language",
            severity=0.0,
            description="Too few language groups with outcomes to compare",
            confidence=0.3,
        )

    group_means = {lang: statistics.fmean(v) for lang, v in by_language.items()}
    highest = max(group_means.values())
    lowest = min(group_means.values())
    severity = min(1.0, 2 * (highest - lowest))
    affected = sorted(f"primary_language:{lang}" for lang, m in group_means.items() if m == lowest)
    return BiasIndicator(
        type="linguistic",
        dimension="outcome_by_language",
        severity=severity,
        affected_groups=affected if severity > 0 else [],
        description="Outcome disparity between language groups",
    )


def prediction_bias_indicators(
    demographics: Demographics,
    confidences: Sequence[float],
    *,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> list[BiasIndicator]:
    indicators: list[BiasIndicator] = []
    avg = statistics.fmean(confidences) if confidences else 0.0

    if demographics.primary_language == "ar" and avg < config.arabic_confidence_floor:
        indicators.append(BiasIndicator(
            type="linguistic",
            dimension="prediction_language",
            severity=min(1.0, 0.4 + (config.arabic_confidence_floor - avg) * 2),
            affected_groups=["primary_language:ar"],
            description="Lower prediction confidence for Arabic-speaking subjects",
        ))

    background = demographics.cultural_background
    if background and background != config.default_cultural_background:
        indicators.append(BiasIndicator(
            type="cultural",
            dimension="prediction_culture",
            severity=config.cultural_indicator_severity,
            affected_groups=[f"cultural_background:{background}"],
            description="Cultural context may not be represented in the model",
        ))

    rare = sorted(set(demographics.diagnosis_codes) & set(config.rare_diagnosis_codes))
    if rare and avg < config.rare_diagnosis_confidence_floor:
        indicators.append(BiasIndicator(
            type="demographic",
            dimension="prediction_diagnosis",
            severity=min(1.0, 0.5 + (config.rare_diagnosis_confidence_floor - avg) * 2),
            affected_groups=[f"diagnosis:{code}" for code in rare],
            description="Lower prediction confidence for rare diagnoses",
        ))
    return indicators


def aggregate(
    indicators: Sequence[BiasIndicator],
    *,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> BiasReport:
    """Fold indicators into a report keyed on the single worst indicator."""
    score = max((i.severity for i in indicators), default=0.0)
    significant = [i for i in indicators if i.severity > config.detection_threshold]

    affected: list[str] = []
    strategies: list[str] = []
    for indicator in significant:
        for group in indicator.affected_groups:
            if group not in affected:
                affected.append(group)
        for strategy in MITIGATION_STRATEGIES.get(indicator.type, []):
            if strategy not in strategies:
                strategies.append(strategy)

    confidence = statistics.fmean(i.confidence for i in indicators) if indicators else 1.0
    return BiasReport(
        detected=score > config.detection_threshold,
        severity=severity_bucket(score, config),
        severity_score=score,
        affected_groups=affected,
        mitigation_strategies=strategies,
        confidence=confidence,
        indicators=list(indicators),
    )


def scan(
    profiles: Sequence[SubjectProfile],
    *,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> BiasReport:
    """Representation and outcome scan over a subject collection."""
    indicators = representation_bias(profiles, config=config)
    indicators.append(outcome_bias(profiles, config=config))
    report = aggregate(indicators, config=config)
    if report.severity == "high":
        logger.warning(
            "High-severity bias in corpus of %d subjects (score %.2f)",
            len(profiles),
            report.severity_score,
        )
    return report


def detect_prediction_bias(
    demographics: Demographics,
    confidences: Sequence[float],
    *,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> BiasReport:
    """Prediction-level scan for one subject's recommendation confidences."""
    return aggregate(
        prediction_bias_indicators(demographics, confidences, config=config),
        config=config,
    )


# ---------------------------------------------------------------------------
# Mitigation
# ---------------------------------------------------------------------------

def _equalize_languages(profiles: list[SubjectProfile]) -> list[SubjectProfile]:
    """Truncate Arabic and English groups to the smaller count; bilingual stays."""
    arabic = [p for p in profiles if p.demographics.primary_language == "ar"]
    english = [p for p in profiles if p.demographics.primary_language == "en"]
    keep = min(len(arabic), len(english))
    kept_ids = {id(p) for p in arabic[:keep]} | {id(p) for p in english[:keep]}
    return [
        p for p in profiles
        if p.demographics.primary_language == "bilingual" or id(p) in kept_ids
    ]


def _oversample(
    profiles: list[SubjectProfile],
    dimension: str,
    rng: random.Random,
    config: BiasConfig,
) -> list[SubjectProfile]:
    """Resample every group of ``dimension`` with replacement up to the largest group."""
    _, accessor = REPRESENTATION_DIMENSIONS[dimension]
    groups: dict[str, list[SubjectProfile]] = defaultdict(list)
    for profile in profiles:
        key = accessor(profile.demographics)
        if dimension == "cultural_background":
            key = key or config.default_cultural_background
        groups[key or ""].append(profile)

    target = max((len(g) for g in groups.values()), default=0)
    balanced = list(profiles)
    for members in groups.values():
        shortfall = target - len(members)
        if shortfall > 0:
            balanced.extend(rng.choices(members, k=shortfall))
    return balanced


def apply_mitigation(
    profiles: Sequence[SubjectProfile],
    report: BiasReport,
    *,
    rng: random.Random | None = None,
    config: BiasConfig = DEFAULT_BIAS_CONFIG,
) -> MitigationResult:
    """Rebalance a training corpus according to a bias report.

    Low-severity (or undetected) bias is marked checked and left alone.
    Linguistic imbalance truncates Arabic/English to parity first; the
    strongest remaining representation imbalance is then oversampled.
    """
    current = list(profiles)
    if not report.detected or report.severity == "low":
        return MitigationResult(profiles=current)

    rng = rng or random.Random()
    actions: list[str] = []
    significant = [i for i in report.indicators if i.severity > config.detection_threshold]

    if any(i.type == "linguistic" for i in significant):
        before = len(current)
        current = _equalize_languages(current)
        actions.append(f"equalized_language_groups:{before}->{len(current)}")

    representation = [
        i for i in significant
        if i.dimension in REPRESENTATION_DIMENSIONS and i.dimension != "primary_language"
    ]
    if representation:
        worst = max(representation, key=lambda i: i.severity)
        before = len(current)
        current = _oversample(current, worst.dimension, rng, config)
        actions.append(f"oversampled_{worst.dimension}:{before}->{len(current)}")

    if actions:
        logger.info("Bias mitigation applied: %s", ", ".join(actions))
    return MitigationResult(profiles=current, modified=bool(actions), actions=actions)
