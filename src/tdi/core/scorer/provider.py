"""Outcome scorer protocol: the capability interface for the predictive model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

APPROACH_SLOTS = 3


class ScorerNotLoadedError(RuntimeError):
    """Raised when predict() is called before load() or after close()."""


class FeatureWidthError(ValueError):
    """Raised when a feature vector does not match the scorer's width."""


@dataclass
class ScorerPrediction:
    """Structured output of one scorer call."""

    confidence: float
    session_frequency: float
    session_duration: float
    approach_scores: list[float] = field(default_factory=list)
    model_version: str = ""


@runtime_checkable
class OutcomeScorer(Protocol):
    """Maps a fixed-width feature vector to a structured prediction."""

    @property
    def feature_width(self) -> int: ...

    @property
    def is_loaded(self) -> bool: ...

    def load(self) -> None: ...

    def close(self) -> None: ...

    async def predict(self, features: list[float]) -> ScorerPrediction: ...


def check_features(features: list[float], width: int) -> None:
    if len(features) != width:
        raise FeatureWidthError(f"Feature count mismatch: expected {width}, got {len(features)}")


def create_scorer(
    provider_name: str,
    weights_path: str = "",
    feature_width: int = 32,
) -> OutcomeScorer:
    """Factory function to create an outcome scorer by name.

    Args:
        provider_name: "heuristic", "linear", or "mock"
        weights_path: YAML weight file for the linear scorer.
        feature_width: Expected feature vector length.

    Returns:
        An OutcomeScorer instance (not yet loaded).
    """
    if provider_name == "heuristic":
        from tdi.core.scorer.providers.heuristic import HeuristicScorer

        return HeuristicScorer(feature_width=feature_width)
    elif provider_name == "linear":
        from tdi.core.scorer.providers.linear import LinearScorer

        if not weights_path:
            raise ValueError("The linear scorer requires a weights_path")
        return LinearScorer(weights_path=weights_path, feature_width=feature_width)
    elif provider_name == "mock":
        from tdi.core.scorer.providers.mock import MockScorer

        return MockScorer(feature_width=feature_width)
    else:
        raise ValueError(f"Unknown scorer provider: {provider_name}")
