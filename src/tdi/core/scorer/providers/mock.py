"""Mock outcome scorer for testing."""

from __future__ import annotations

from tdi.core.scorer.provider import ScorerNotLoadedError, ScorerPrediction, check_features


class MockScorer:
    """Mock scorer for testing. Returns a canned prediction and records calls."""

    def __init__(
        self,
        prediction: ScorerPrediction | None = None,
        feature_width: int = 32,
    ) -> None:
        self.prediction = prediction or ScorerPrediction(
            confidence=0.7,
            session_frequency=2.0,
            session_duration=45.0,
            approach_scores=[0.8, 0.6, 0.4],
            model_version="mock",
        )
        self._feature_width = feature_width
        self._loaded = False
        self.last_features: list[float] = []
        self.call_count: int = 0
        self.close_count: int = 0

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
        self.close_count += 1

    async def predict(self, features: list[float]) -> ScorerPrediction:
        if not self._loaded:
            raise ScorerNotLoadedError("Mock scorer not loaded")
        check_features(features, self._feature_width)
        self.last_features = list(features)
        self.call_count += 1
        return self.prediction
