"""Stateless forecasting over chronologically ordered numeric samples.

Moving average, exponential smoothing, least-squares linear trend, and an
additive seasonal decomposition whose forecast scales the extrapolated trend
by a per-phase seasonal factor. All functions are pure; none of them touch
storage or the scorer.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Sequence

from tdi.core.errors import InsufficientDataError, ValidationError
from tdi.domains.therapy.domain_logic.config import DEFAULT_FORECAST_CONFIG, ForecastConfig

TrendDirection = Literal["increasing", "decreasing", "stable"]
Seasonality = Literal["weekly", "monthly", "quarterly", "none"]


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class TimeSeriesPoint:
    timestamp: datetime
    value: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimeSeriesPoint:
        ts = data["timestamp"]
        if not isinstance(ts, datetime):
            ts = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
        value = data.get("value")
        return cls(
            timestamp=ts,
            value=float("nan") if value is None else float(value),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class ForecastPoint:
    timestamp: datetime
    predicted_value: float
    confidence_lower: float
    confidence_upper: float


@dataclass
class ForecastAccuracy:
    mae: float
    rmse: float
    mape: float


@dataclass
class SeasonalPattern:
    trend: TrendDirection
    seasonality: Seasonality
    seasonal_strength: float


@dataclass
class Decomposition:
    trend: list[float]
    seasonal: list[float]
    residual: list[float]


@dataclass
class ForecastResult:
    forecasts: list[ForecastPoint]
    accuracy: ForecastAccuracy
    patterns: SeasonalPattern
    algorithm: str
    training_period: str
    forecast_horizon: int
    confidence_level: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "forecasts": [
                {
                    "timestamp": f.timestamp.isoformat(),
                    "predicted_value": round(f.predicted_value, 4),
                    "confidence_lower": round(f.confidence_lower, 4),
                    "confidence_upper": round(f.confidence_upper, 4),
                }
                for f in self.forecasts
            ],
            "accuracy_metrics": {
                "mae": round(self.accuracy.mae, 4),
                "rmse": round(self.accuracy.rmse, 4),
                "mape": round(self.accuracy.mape, 4),
            },
            "seasonal_patterns": {
                "trend": self.patterns.trend,
                "seasonality": self.patterns.seasonality,
                "seasonal_strength": round(self.patterns.seasonal_strength, 4),
            },
            "model_metadata": {
                "algorithm": self.algorithm,
                "training_period": self.training_period,
                "forecast_horizon": self.forecast_horizon,
                "confidence_level": self.confidence_level,
            },
        }


@dataclass
class SeriesValidation:
    is_valid: bool
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _values(data: Sequence[TimeSeriesPoint] | Sequence[float]) -> list[float]:
    return [p.value if isinstance(p, TimeSeriesPoint) else float(p) for p in data]


def _check_horizon(periods: int) -> None:
    if periods < 1:
        raise ValidationError(
            f"Forecast horizon must be at least 1, got {periods}",
            f"يجب أن يكون أفق التنبؤ 1 على الأقل، القيمة المعطاة {periods}",
        )


def is_chronological(points: Sequence[TimeSeriesPoint]) -> bool:
    return all(points[i].timestamp >= points[i - 1].timestamp for i in range(1, len(points)))


def fit_linear_trend(values: Sequence[float]) -> tuple[float, float]:
    """Least-squares (slope, intercept) over the 1-based sample index."""
    n = len(values)
    if n < 2:
        raise InsufficientDataError(
            "Need at least 2 data points for trend analysis",
            "يلزم وجود نقطتي بيانات على الأقل لتحليل الاتجاه",
            required=2,
            available=n,
        )
    xs = range(1, n + 1)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)
    denominator = n * sum_xx - sum_x * sum_x
    slope = (n * sum_xy - sum_x * sum_y) / denominator if denominator else 0.0
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


def _step(points: Sequence[TimeSeriesPoint]) -> timedelta:
    """Median spacing between samples, one day when it cannot be measured."""
    gaps = [
        points[i].timestamp - points[i - 1].timestamp
        for i in range(1, len(points))
        if points[i].timestamp > points[i - 1].timestamp
    ]
    if not gaps:
        return timedelta(days=1)
    gaps.sort()
    return gaps[len(gaps) // 2]


# ---------------------------------------------------------------------------
# Basic forecasters
# ---------------------------------------------------------------------------

def moving_average(
    data: Sequence[TimeSeriesPoint] | Sequence[float],
    window: int,
    periods: int,
) -> list[float]:
    """Mean of the last ``window`` samples, repeated for every future period."""
    _check_horizon(periods)
    values = _values(data)
    if window < 1 or len(values) < window:
        raise InsufficientDataError(
            f"Insufficient data points. Need at least {window}, got {len(values)}",
            f"نقاط البيانات غير كافية. يلزم {window} على الأقل، المتوفر {len(values)}",
            required=window,
            available=len(values),
        )
    last_mean = statistics.fmean(values[-window:])
    return [last_mean] * periods


def exponential_smoothing(
    data: Sequence[TimeSeriesPoint] | Sequence[float],
    alpha: float = DEFAULT_FORECAST_CONFIG.default_alpha,
    periods: int = 1,
) -> list[float]:
    """Single-parameter smoothing seeded with the first sample."""
    _check_horizon(periods)
    values = _values(data)
    if not values:
        raise ValidationError(
            "No data provided for forecasting",
            "لم يتم تقديم بيانات للتنبؤ",
        )
    smoothed = values[0]
    for value in values[1:]:
        smoothed = alpha * value + (1 - alpha) * smoothed
    return [smoothed] * periods


def linear_trend(
    data: Sequence[TimeSeriesPoint] | Sequence[float],
    periods: int,
) -> list[float]:
    """Extrapolate the least-squares line; forecasts are floored at 0."""
    _check_horizon(periods)
    values = _values(data)
    slope, intercept = fit_linear_trend(values)
    n = len(values)
    return [max(0.0, intercept + slope * (n + i)) for i in range(1, periods + 1)]


# ---------------------------------------------------------------------------
# Seasonal decomposition
# ---------------------------------------------------------------------------

def decompose(values: Sequence[float], season_length: int) -> Decomposition:
    """Split values into trend, seasonal and residual components.

    Trend is a centred moving average over ``2 * (season_length // 2) + 1``
    samples; the first and last ``season_length // 2`` samples keep their raw
    values. The seasonal component is the per-phase mean of ``value - trend``
    across all cycles.
    ``trend + seasonal + residual`` reproduces every input sample.
    """
    n = len(values)
    half = season_length // 2
    trend: list[float] = []
    for i in range(n):
        if i < half or i >= n - half:
            trend.append(float(values[i]))
        else:
            window = values[i - half:i + half + 1]
            trend.append(sum(window) / len(window))

    phase_sums = [0.0] * season_length
    phase_counts = [0] * season_length
    for i in range(n):
        phase = i % season_length
        phase_sums[phase] += values[i] - trend[i]
        phase_counts[phase] += 1
    phase_means = [
        phase_sums[p] / phase_counts[p] if phase_counts[p] else 0.0
        for p in range(season_length)
    ]

    seasonal = [phase_means[i % season_length] for i in range(n)]
    residual = [values[i] - trend[i] - seasonal[i] for i in range(n)]
    return Decomposition(trend=trend, seasonal=seasonal, residual=residual)


def accuracy_metrics(
    actual: Sequence[float],
    trend: Sequence[float],
    seasonal: Sequence[float],
) -> ForecastAccuracy:
    """MAE, RMSE and MAPE of ``trend + seasonal`` against the actual samples."""
    n = min(len(actual), len(trend), len(seasonal))
    if n == 0:
        return ForecastAccuracy(mae=0.0, rmse=0.0, mape=0.0)
    abs_sum = sq_sum = pct_sum = 0.0
    for i in range(n):
        error = actual[i] - (trend[i] + seasonal[i])
        abs_sum += abs(error)
        sq_sum += error * error
        pct_sum += abs(error / actual[i]) if actual[i] != 0 else 0.0
    return ForecastAccuracy(
        mae=abs_sum / n,
        rmse=math.sqrt(sq_sum / n),
        mape=pct_sum / n * 100,
    )


def analyze_seasonal_patterns(
    values: Sequence[float],
    seasonal: Sequence[float],
    trend: Sequence[float],
    *,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> SeasonalPattern:
    """Classify trend direction and seasonality strength."""
    mid = len(trend) // 2
    first_half = trend[:mid] or trend
    second_half = trend[mid:] or trend
    first_avg = statistics.fmean(first_half)
    second_avg = statistics.fmean(second_half)

    if first_avg != 0:
        change = (second_avg - first_avg) / abs(first_avg)
    elif second_avg != first_avg:
        change = math.copysign(math.inf, second_avg - first_avg)
    else:
        change = 0.0

    direction: TrendDirection
    if change > config.trend_change:
        direction = "increasing"
    elif change < -config.trend_change:
        direction = "decreasing"
    else:
        direction = "stable"

    total_variance = statistics.pvariance(values) if len(values) > 1 else 0.0
    seasonal_variance = statistics.pvariance(seasonal) if len(seasonal) > 1 else 0.0
    strength = seasonal_variance / total_variance if total_variance > 0 else 0.0

    seasonality: Seasonality
    if strength < config.seasonality_strength_floor:
        seasonality = "none"
    elif len(values) >= 28:
        seasonality = "monthly"
    elif len(values) >= 12:
        seasonality = "quarterly"
    else:
        seasonality = "weekly"

    return SeasonalPattern(trend=direction, seasonality=seasonality, seasonal_strength=strength)


def seasonal_factors(decomposition: Decomposition, season_length: int) -> list[float]:
    """Express each phase's additive component as a factor of the mean trend level."""
    level = statistics.fmean(decomposition.trend) if decomposition.trend else 0.0
    phases = decomposition.seasonal[:season_length]
    if level == 0:
        return [1.0] * season_length
    return [(level + s) / level for s in phases]


def seasonal_forecast(
    data: Sequence[TimeSeriesPoint],
    season_length: int,
    periods: int,
    *,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> ForecastResult:
    """Decompose, extrapolate the trend, and reapply the seasonal pattern.

    Raises:
        ValidationError: empty horizon or samples out of chronological order.
        InsufficientDataError: fewer than ``2 * season_length`` samples.
    """
    _check_horizon(periods)
    if len(data) < season_length * 2:
        raise InsufficientDataError(
            f"Need at least {season_length * 2} data points for seasonal analysis",
            f"يلزم {season_length * 2} نقطة بيانات على الأقل للتحليل الموسمي",
            required=season_length * 2,
            available=len(data),
        )
    if not is_chronological(data):
        raise ValidationError(
            "Data points are not in chronological order",
            "نقاط البيانات ليست بترتيب زمني",
        )

    values = _values(data)
    parts = decompose(values, season_length)
    trend_forecasts = linear_trend(parts.trend, periods)
    factors = seasonal_factors(parts, season_length)

    step = _step(data)
    last = data[-1].timestamp
    forecasts: list[ForecastPoint] = []
    for i, trend_value in enumerate(trend_forecasts):
        factor = factors[(len(values) + i) % season_length]
        predicted = max(0.0, trend_value * factor)
        forecasts.append(ForecastPoint(
            timestamp=last + step * (i + 1),
            predicted_value=predicted,
            confidence_lower=max(0.0, predicted * (1 - config.band)),
            confidence_upper=predicted * (1 + config.band),
        ))

    return ForecastResult(
        forecasts=forecasts,
        accuracy=accuracy_metrics(values, parts.trend, parts.seasonal),
        patterns=analyze_seasonal_patterns(values, parts.seasonal, parts.trend, config=config),
        algorithm="seasonal_decomposition",
        training_period=f"{len(values)} periods",
        forecast_horizon=periods,
        confidence_level=config.confidence_level,
    )


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def validate_series(
    data: Sequence[TimeSeriesPoint],
    *,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> SeriesValidation:
    """Check a series before forecasting.

    Only an empty series is rejected outright; every other problem is
    reported as an issue with remediation text so the caller can decide.
    """
    if not data:
        return SeriesValidation(is_valid=False, issues=["No data points provided"])

    issues: list[str] = []
    recommendations: list[str] = []

    if len(data) < config.min_reliable_points:
        issues.append("Insufficient data points for reliable forecasting")
        recommendations.append(
            f"Collect at least {config.min_reliable_points} data points for basic forecasting"
        )

    missing = sum(1 for p in data if p.value is None or math.isnan(p.value))
    if missing:
        issues.append(f"{missing} data points have missing or invalid values")
        recommendations.append("Clean or interpolate missing values before forecasting")

    if not is_chronological(data):
        issues.append("Data points are not in chronological order")
        recommendations.append("Sort data by timestamp before forecasting")

    values = [p.value for p in data if p.value is not None and not math.isnan(p.value)]
    if values:
        mean = statistics.fmean(values)
        std = statistics.pstdev(values) if len(values) > 1 else 0.0
        outliers = sum(1 for v in values if abs(v - mean) > config.outlier_sigma * std)
        if outliers > len(values) * config.outlier_share:
            issues.append(f"High number of outliers detected ({outliers} points)")
            recommendations.append("Review and potentially clean extreme outliers")

    return SeriesValidation(is_valid=not issues, issues=issues, recommendations=recommendations)
