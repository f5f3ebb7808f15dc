"""Linear scorer with per-output weights loaded from a YAML file.

Expected file shape::

    version: "2025.1"
    outputs:
      confidence:        {bias: -0.2, weights: [...], activation: sigmoid}
      session_frequency: {bias: 2.0,  weights: [...], min: 1, max: 5}
      session_duration:  {bias: 45.0, weights: [...], min: 20, max: 120}
    approaches:
      - {bias: 0.0, weights: [...], activation: sigmoid}

Weight lists shorter than the feature width are zero-extended.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tdi.core.scorer.provider import ScorerNotLoadedError, ScorerPrediction, check_features

logger = logging.getLogger(__name__)

REQUIRED_OUTPUTS = ("confidence", "session_frequency", "session_duration")


@dataclass
class LinearHead:
    bias: float
    weights: list[float] = field(default_factory=list)
    activation: str = "linear"
    minimum: float | None = None
    maximum: float | None = None

    def apply(self, features: list[float]) -> float:
        value = self.bias + sum(w * x for w, x in zip(self.weights, features))
        if self.activation == "sigmoid":
            value = 1 / (1 + math.exp(-value))
        if self.minimum is not None:
            value = max(self.minimum, value)
        if self.maximum is not None:
            value = min(self.maximum, value)
        return value


def _parse_head(data: dict[str, Any], width: int, name: str) -> LinearHead:
    weights = [float(w) for w in data.get("weights", [])]
    if len(weights) > width:
        raise ValueError(f"Output '{name}' has {len(weights)} weights for {width} features")
    activation = data.get("activation", "linear")
    if activation not in ("linear", "sigmoid"):
        raise ValueError(f"Output '{name}' has unknown activation '{activation}'")
    return LinearHead(
        bias=float(data.get("bias", 0.0)),
        weights=weights + [0.0] * (width - len(weights)),
        activation=activation,
        minimum=data.get("min"),
        maximum=data.get("max"),
    )


class LinearScorer:
    """Applies linear heads read from a YAML weight file."""

    def __init__(self, weights_path: str | Path, feature_width: int = 32) -> None:
        self.weights_path = Path(weights_path).expanduser()
        self._feature_width = feature_width
        self._heads: dict[str, LinearHead] = {}
        self._approaches: list[LinearHead] = []
        self.model_version = ""

    @property
    def feature_width(self) -> int:
        return self._feature_width

    @property
    def is_loaded(self) -> bool:
        return bool(self._heads)

    def load(self) -> None:
        with open(self.weights_path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        outputs = data.get("outputs", {})
        missing = [name for name in REQUIRED_OUTPUTS if name not in outputs]
        if missing:
            raise ValueError(f"Weight file {self.weights_path} is missing outputs: {missing}")

        self._heads = {
            name: _parse_head(outputs[name], self._feature_width, name)
            for name in REQUIRED_OUTPUTS
        }
        self._approaches = [
            _parse_head(head, self._feature_width, f"approaches[{i}]")
            for i, head in enumerate(data.get("approaches", []))
        ]
        self.model_version = str(data.get("version", "linear"))
        logger.info(
            "Linear scorer loaded from %s (version %s, %d approach heads)",
            self.weights_path,
            self.model_version,
            len(self._approaches),
        )

    def close(self) -> None:
        self._heads = {}
        self._approaches = []

    async def predict(self, features: list[float]) -> ScorerPrediction:
        if not self._heads:
            raise ScorerNotLoadedError("Linear scorer not loaded")
        check_features(features, self._feature_width)
        return ScorerPrediction(
            confidence=max(0.0, min(1.0, self._heads["confidence"].apply(features))),
            session_frequency=self._heads["session_frequency"].apply(features),
            session_duration=self._heads["session_duration"].apply(features),
            approach_scores=[head.apply(features) for head in self._approaches],
            model_version=self.model_version,
        )
