"""Prediction validation and model drift monitoring.

Predictions are checked against observed values as they arrive. Regression
kinds score by relative error, classification kinds by agreement at the 0.5
threshold. Stored validations feed summaries and a recent-vs-baseline drift
check.
"""

from __future__ import annotations

import logging
import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal, Sequence

from tdi.core.errors import NEUTRAL_CALIBRATION, ServiceResult, ValidationError
from tdi.core.storage.models import StoredValidation
from tdi.core.storage.repository import AnalyticsRepository

logger = logging.getLogger(__name__)

PredictionKind = Literal["therapy_outcome", "risk_assessment", "operational_forecast"]

PREDICTION_KINDS: tuple[str, ...] = ("therapy_outcome", "risk_assessment", "operational_forecast")
REGRESSION_KINDS = frozenset({"operational_forecast"})

CLASSIFICATION_THRESHOLD = 0.5
DEFAULT_INTERVAL_HALF_WIDTH = 0.1
DEFAULT_CHUNK_SIZE = 10

DRIFT_THRESHOLD = 0.05
HIGH_DRIFT = 0.15
MEDIUM_DRIFT = 0.10
TREND_BAND = 0.02


@dataclass
class PredictionOutcome:
    """A prediction paired with the value that was later observed."""

    prediction_id: str
    kind: str
    predicted: float
    actual: float
    interval: tuple[float, float] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PredictionOutcome:
        interval = data.get("interval")
        return cls(
            prediction_id=str(data["prediction_id"]),
            kind=data["kind"],
            predicted=float(data["predicted"]),
            actual=float(data["actual"]),
            interval=(float(interval[0]), float(interval[1])) if interval else None,
        )


@dataclass
class PredictionValidation:
    prediction_id: str
    kind: str
    predicted: float
    actual: float
    accuracy: float
    absolute_error: float
    percentage_error: float
    calibration: float
    classification_error: bool | None = None


@dataclass
class ValidationSummary:
    prediction_type: str | None
    validated_predictions: int
    accuracy: float
    mae: float
    rmse: float
    precision: float
    recall: float
    f1_score: float
    calibration_error: float
    recommendations: list[str] = field(default_factory=list)


@dataclass
class DriftReport:
    is_drifting: bool
    severity: Literal["low", "medium", "high"]
    current_accuracy: float
    baseline_accuracy: float
    trend: Literal["improving", "stable", "declining"]
    recommendations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure scoring
# ---------------------------------------------------------------------------

def calibration_score(
    predicted: float,
    actual: float,
    interval: tuple[float, float] | None = None,
) -> float:
    """How well the stated interval reflected the observed error.

    Inside the interval scores at least 0.5, outside at most 0.5. A
    zero-width interval has no meaningful calibration and scores neutral.
    """
    if interval is None:
        lower = predicted - DEFAULT_INTERVAL_HALF_WIDTH
        upper = predicted + DEFAULT_INTERVAL_HALF_WIDTH
    else:
        lower, upper = interval
    width = upper - lower
    if width <= 0:
        return NEUTRAL_CALIBRATION
    error = abs(predicted - actual)
    if lower <= actual <= upper:
        return max(0.5, 1 - error / width)
    return max(0.0, 0.5 - error / width)


def validate_prediction(
    predicted: float,
    actual: float,
    interval: tuple[float, float] | None = None,
    kind: str = "therapy_outcome",
    *,
    prediction_id: str = "",
) -> PredictionValidation:
    """Score one prediction against its observed value.

    Raises:
        ValidationError: For an unknown prediction kind.
    """
    if kind not in PREDICTION_KINDS:
        raise ValidationError(
            f"Unknown prediction kind {kind!r}; expected one of {PREDICTION_KINDS}",
            f"نوع تنبؤ غير معروف: {kind}",
            kind=kind,
        )

    absolute_error = abs(predicted - actual)
    percentage_error = absolute_error / abs(actual) * 100 if actual != 0 else 0.0
    classification_error: bool | None = None
    if kind in REGRESSION_KINDS:
        accuracy = max(0.0, 1 - absolute_error / max(abs(actual), 1))
    else:
        classification_error = (
            (predicted > CLASSIFICATION_THRESHOLD) != (actual > CLASSIFICATION_THRESHOLD)
        )
        accuracy = 0.0 if classification_error else 1.0

    return PredictionValidation(
        prediction_id=prediction_id,
        kind=kind,
        predicted=predicted,
        actual=actual,
        accuracy=accuracy,
        absolute_error=absolute_error,
        percentage_error=percentage_error,
        calibration=calibration_score(predicted, actual, interval),
        classification_error=classification_error,
    )


def _classification_metrics(
    validations: Sequence[StoredValidation],
) -> tuple[float, float, float] | None:
    classified = [v for v in validations if v.prediction_type not in REGRESSION_KINDS]
    if not classified:
        return None
    tp = fp = fn = 0
    for v in classified:
        predicted_pos = v.predicted_value > CLASSIFICATION_THRESHOLD
        actual_pos = v.actual_value > CLASSIFICATION_THRESHOLD
        if predicted_pos and actual_pos:
            tp += 1
        elif predicted_pos:
            fp += 1
        elif actual_pos:
            fn += 1
    precision = tp / (tp + fp) if tp + fp else 0.0
    recall = tp / (tp + fn) if tp + fn else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
    return precision, recall, f1


def summarize(
    validations: Sequence[StoredValidation],
    *,
    prediction_type: str | None = None,
    total_predictions: int | None = None,
) -> ValidationSummary:
    """Aggregate metrics and plain-language recommendations."""
    if not validations:
        return ValidationSummary(
            prediction_type=prediction_type,
            validated_predictions=0,
            accuracy=0.0,
            mae=0.0,
            rmse=0.0,
            precision=0.0,
            recall=0.0,
            f1_score=0.0,
            calibration_error=0.0,
            recommendations=["No validated predictions in the selected window."],
        )

    accuracy = statistics.fmean(v.accuracy for v in validations)
    errors = [v.absolute_error for v in validations]
    mae = statistics.fmean(errors)
    rmse = math.sqrt(statistics.fmean(e * e for e in errors))
    calibration_error = 1 - statistics.fmean(v.calibration for v in validations)

    classification = _classification_metrics(validations)
    if classification is None:
        # Regression only: accuracy stands in for the classification metrics
        precision = recall = f1 = accuracy
    else:
        precision, recall, f1 = classification

    recommendations: list[str] = []
    if accuracy < 0.7:
        recommendations.append(
            "Low model accuracy detected. Consider retraining with more data or different features."
        )
    elif accuracy < 0.8:
        recommendations.append(
            "Model accuracy is moderate. Review feature engineering and model architecture."
        )
    if calibration_error > 0.3:
        recommendations.append(
            "Poor prediction calibration. Confidence intervals may be unreliable."
        )
    if total_predictions is not None:
        coverage = len(validations) / total_predictions if total_predictions > 0 else 0.0
        if coverage < 0.1:
            recommendations.append(
                "Low validation coverage. Increase the prediction validation rate."
            )
    if mae > 0.2:
        recommendations.append(
            "High mean absolute error. Consider regularization or data quality improvements."
        )
    if not recommendations:
        recommendations.append("Model performance meets quality standards.")

    return ValidationSummary(
        prediction_type=prediction_type,
        validated_predictions=len(validations),
        accuracy=accuracy,
        mae=mae,
        rmse=rmse,
        precision=precision,
        recall=recall,
        f1_score=f1,
        calibration_error=calibration_error,
        recommendations=recommendations,
    )


def _drift_recommendations(is_drifting: bool, severity: str, trend: str) -> list[str]:
    if not is_drifting:
        return ["No significant model drift detected."]
    recommendations = {
        "high": [
            "High model drift detected. Immediate model retraining required.",
            "Review recent data for distribution changes or quality issues.",
        ],
        "medium": [
            "Medium model drift detected. Schedule model retraining soon.",
            "Monitor performance closely and validate more predictions.",
        ],
        "low": [
            "Low model drift detected. Consider feature analysis.",
        ],
    }[severity]
    if trend == "declining":
        recommendations.append("Performance trend is declining. Prioritize model maintenance.")
    return recommendations


def monitor_drift(recent: Sequence[float], baseline: Sequence[float]) -> DriftReport:
    """Compare recent accuracy scores with a baseline window."""
    if not recent or not baseline:
        return DriftReport(
            is_drifting=False,
            severity="low",
            current_accuracy=0.0,
            baseline_accuracy=0.0,
            trend="stable",
            recommendations=["Insufficient data for drift analysis"],
        )

    current = statistics.fmean(recent)
    base = statistics.fmean(baseline)
    drop = base - current
    is_drifting = drop > DRIFT_THRESHOLD
    if drop > HIGH_DRIFT:
        severity = "high"
    elif drop > MEDIUM_DRIFT:
        severity = "medium"
    else:
        severity = "low"
    if drop > TREND_BAND:
        trend = "declining"
    elif drop < -TREND_BAND:
        trend = "improving"
    else:
        trend = "stable"

    return DriftReport(
        is_drifting=is_drifting,
        severity=severity,
        current_accuracy=current,
        baseline_accuracy=base,
        trend=trend,
        recommendations=_drift_recommendations(is_drifting, severity, trend),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class PredictionValidationService:
    """Validates predictions in chunks and reads back stored validations."""

    def __init__(
        self,
        repository: AnalyticsRepository,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._repo = repository
        self.chunk_size = chunk_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def batch_validate(
        self,
        items: Sequence[PredictionOutcome],
        validator_id: str = "",
    ) -> ServiceResult[list[PredictionValidation]]:
        """Validate every item, persisting one write per chunk.

        Items are all scored before anything is written, so an unknown kind
        anywhere in the batch fails it without partial persistence.
        """
        try:
            results = [
                validate_prediction(
                    item.predicted,
                    item.actual,
                    item.interval,
                    item.kind,
                    prediction_id=item.prediction_id,
                )
                for item in items
            ]
        except ValidationError as exc:
            return ServiceResult.from_exception(exc)

        validated_at = self._clock().isoformat()
        for start in range(0, len(results), self.chunk_size):
            chunk = results[start:start + self.chunk_size]
            self._repo.save_validations([
                StoredValidation(
                    prediction_id=r.prediction_id,
                    prediction_type=r.kind,
                    predicted_value=r.predicted,
                    actual_value=r.actual,
                    accuracy=r.accuracy,
                    absolute_error=r.absolute_error,
                    percentage_error=r.percentage_error,
                    calibration=r.calibration,
                    validator_id=validator_id,
                    validated_at=validated_at,
                )
                for r in chunk
            ])
        logger.info("Validated %d predictions", len(results))
        return ServiceResult.success(results)

    def summary(
        self,
        prediction_type: str | None = None,
        *,
        since: str | None = None,
        until: str | None = None,
        total_predictions: int | None = None,
    ) -> ServiceResult[ValidationSummary]:
        validations = self._repo.get_validations(
            since=since, until=until, prediction_type=prediction_type
        )
        return ServiceResult.success(summarize(
            validations,
            prediction_type=prediction_type,
            total_predictions=total_predictions,
        ))

    def drift(
        self,
        prediction_type: str | None = None,
        *,
        window_days: int = 30,
    ) -> ServiceResult[DriftReport]:
        """Recent window against the window of equal length before it."""
        now = self._clock()
        window_start = now - timedelta(days=window_days)
        baseline_start = now - timedelta(days=2 * window_days)

        recent = self._repo.get_validations(
            since=window_start.isoformat(),
            until=now.isoformat(),
            prediction_type=prediction_type,
        )
        baseline = [
            v
            for v in self._repo.get_validations(
                since=baseline_start.isoformat(),
                until=window_start.isoformat(),
                prediction_type=prediction_type,
            )
            if v.validated_at < window_start.isoformat()
        ]
        report = monitor_drift([v.accuracy for v in recent], [v.accuracy for v in baseline])
        if report.is_drifting:
            logger.warning(
                "Model drift detected (%s): %.3f -> %.3f",
                report.severity,
                report.baseline_accuracy,
                report.current_accuracy,
            )
        return ServiceResult.success(report)
