"""Outcome scorer implementations."""

from tdi.core.scorer.providers.heuristic import HeuristicScorer
from tdi.core.scorer.providers.linear import LinearScorer
from tdi.core.scorer.providers.mock import MockScorer

__all__ = ["HeuristicScorer", "LinearScorer", "MockScorer"]
