"""Deterministic feature-driven scorer, the default when no trained weights exist."""

from __future__ import annotations

from tdi.core.scorer.provider import ScorerNotLoadedError, ScorerPrediction, check_features

# Feature positions (see tdi.domains.therapy.domain_logic.feature_engineering)
_AGE_SLICE = slice(0, 5)
_DIAGNOSIS_COUNT = 8
_RECENT_ACHIEVEMENT = 10
_OVERALL_ACHIEVEMENT = 11
_OUTCOME_COUNT = 12
_FIRST_ASSESSMENT = 13

# Typical session length per age bracket, in one-hot order
_DURATION_BY_AGE = (30.0, 45.0, 45.0, 60.0, 60.0)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class HeuristicScorer:
    """Rule-of-thumb predictions from the standard feature layout."""

    model_version = "heuristic-1"

    def __init__(self, feature_width: int = 32) -> None:
        self._feature_width = feature_width
        self._loaded = False

    @property
    def feature_width(self) -> int:
        return self._feature_width

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        self._loaded = True

    def close(self) -> None:
        self._loaded = False

    async def predict(self, features: list[float]) -> ScorerPrediction:
        if not self._loaded:
            raise ScorerNotLoadedError("Heuristic scorer not loaded")
        check_features(features, self._feature_width)

        diagnosis = features[_DIAGNOSIS_COUNT]
        recent = features[_RECENT_ACHIEVEMENT]
        overall = features[_OVERALL_ACHIEVEMENT]
        history = features[_OUTCOME_COUNT]
        assessment = features[_FIRST_ASSESSMENT]

        confidence = _clamp(0.4 + 0.3 * overall + 0.2 * history - 0.1 * diagnosis, 0.1, 0.95)

        # Weaker progress earns more sessions, in half-session steps
        frequency = _clamp(2.0 + (0.6 - overall) * 2 + diagnosis, 1.0, 4.0)
        frequency = round(frequency * 2) / 2

        age = features[_AGE_SLICE]
        duration = 45.0
        for flag, minutes in zip(age, _DURATION_BY_AGE):
            if flag == 1.0:
                duration = minutes
                break

        approach_scores = [
            _clamp(0.5 + diagnosis / 2),
            _clamp(0.5 + 0.3 * (1 - recent)),
            _clamp(0.4 + 0.4 * assessment),
        ]
        return ScorerPrediction(
            confidence=confidence,
            session_frequency=frequency,
            session_duration=duration,
            approach_scores=approach_scores,
            model_version=self.model_version,
        )
