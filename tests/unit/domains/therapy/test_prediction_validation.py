"""Tests for prediction scoring, summaries and drift monitoring."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tdi.core.errors import ValidationError
from tdi.core.storage.models import StoredValidation
from tdi.domains.therapy.domain_logic.prediction_validation import (
    PredictionOutcome,
    PredictionValidationService,
    calibration_score,
    monitor_drift,
    summarize,
    validate_prediction,
)

NOW = datetime(2025, 6, 30, 12, tzinfo=timezone.utc)


def _stored(
    predicted: float,
    actual: float,
    *,
    kind: str = "therapy_outcome",
    accuracy: float | None = None,
    calibration: float = 0.8,
    validated_at: str = "",
) -> StoredValidation:
    if accuracy is None:
        accuracy = 1.0 if (predicted > 0.5) == (actual > 0.5) else 0.0
    return StoredValidation(
        prediction_id=f"p-{predicted}-{actual}",
        prediction_type=kind,
        predicted_value=predicted,
        actual_value=actual,
        accuracy=accuracy,
        absolute_error=abs(predicted - actual),
        percentage_error=0.0,
        calibration=calibration,
        validated_at=validated_at,
    )


class TestCalibration:
    def test_inside_default_interval(self):
        assert calibration_score(0.5, 0.55) == pytest.approx(0.75)

    def test_inside_never_below_half(self):
        assert calibration_score(0.5, 0.6, (0.0, 1.0)) >= 0.5

    def test_outside_interval(self):
        assert calibration_score(0.9, 1.1, (0.0, 1.0)) == pytest.approx(0.3)
        assert calibration_score(0.5, 0.8) == 0.0

    def test_zero_width_is_neutral(self):
        assert calibration_score(0.5, 0.7, (0.5, 0.5)) == 0.5


class TestValidatePrediction:
    def test_regression(self):
        result = validate_prediction(90.0, 100.0, kind="operational_forecast", prediction_id="f-1")
        assert result.prediction_id == "f-1"
        assert result.absolute_error == pytest.approx(10.0)
        assert result.percentage_error == pytest.approx(10.0)
        assert result.accuracy == pytest.approx(0.9)
        assert result.classification_error is None

    def test_regression_small_actual_uses_unit_floor(self):
        result = validate_prediction(0.3, 0.5, kind="operational_forecast")
        assert result.accuracy == pytest.approx(0.8)

    def test_classification_agreement(self):
        result = validate_prediction(0.7, 0.6)
        assert result.accuracy == 1.0
        assert result.classification_error is False

    def test_classification_disagreement(self):
        result = validate_prediction(0.7, 0.3, kind="risk_assessment")
        assert result.accuracy == 0.0
        assert result.classification_error is True

    def test_zero_actual_has_no_percentage(self):
        assert validate_prediction(0.2, 0.0).percentage_error == 0.0

    def test_unknown_kind(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_prediction(0.5, 0.5, kind="weather")
        assert exc_info.value.details["kind"] == "weather"


class TestSummarize:
    def test_empty(self):
        summary = summarize([], prediction_type="therapy_outcome")
        assert summary.validated_predictions == 0
        assert summary.accuracy == 0.0
        assert summary.recommendations == ["No validated predictions in the selected window."]

    def test_precision_and_recall(self):
        validations = [
            _stored(0.8, 0.9),  # true positive
            _stored(0.7, 0.2),  # false positive
            _stored(0.2, 0.8),  # false negative
            _stored(0.1, 0.2),  # true negative
        ]
        summary = summarize(validations)

        assert summary.validated_predictions == 4
        assert summary.accuracy == pytest.approx(0.5)
        assert summary.precision == pytest.approx(0.5)
        assert summary.recall == pytest.approx(0.5)
        assert summary.f1_score == pytest.approx(0.5)
        assert summary.mae == pytest.approx(0.325)
        assert summary.calibration_error == pytest.approx(0.2)
        assert summary.recommendations == [
            "Low model accuracy detected. Consider retraining with more data or different features.",
            "High mean absolute error. Consider regularization or data quality improvements.",
        ]

    def test_regression_only_uses_accuracy(self):
        validations = [
            _stored(90.0, 100.0, kind="operational_forecast", accuracy=0.9),
            _stored(95.0, 100.0, kind="operational_forecast", accuracy=0.95),
        ]
        summary = summarize(validations)
        assert summary.precision == summary.recall == summary.f1_score == pytest.approx(0.925)
        assert summary.rmse == pytest.approx((62.5) ** 0.5)

    def test_quality_standards_met(self):
        summary = summarize([_stored(0.8, 0.9, calibration=0.9), _stored(0.2, 0.1, calibration=0.9)])
        assert summary.precision == 1.0
        assert summary.recall == 1.0
        assert summary.recommendations == ["Model performance meets quality standards."]

    def test_poor_calibration_and_coverage(self):
        validations = [_stored(0.8, 0.9, calibration=0.5), _stored(0.2, 0.1, calibration=0.5)]
        summary = summarize(validations, total_predictions=100)
        assert summary.recommendations == [
            "Poor prediction calibration. Confidence intervals may be unreliable.",
            "Low validation coverage. Increase the prediction validation rate.",
        ]


class TestMonitorDrift:
    def test_insufficient(self):
        report = monitor_drift([], [0.9])
        assert not report.is_drifting
        assert report.recommendations == ["Insufficient data for drift analysis"]

    def test_no_drift(self):
        report = monitor_drift([0.9, 0.9], [0.9])
        assert not report.is_drifting
        assert report.trend == "stable"
        assert report.recommendations == ["No significant model drift detected."]

    @pytest.mark.parametrize(
        "recent, severity, count",
        [(0.6, "high", 3), (0.78, "medium", 3), (0.83, "low", 2)],
    )
    def test_drift_severity(self, recent, severity, count):
        report = monitor_drift([recent], [0.9])
        assert report.is_drifting
        assert report.severity == severity
        assert report.trend == "declining"
        assert len(report.recommendations) == count
        assert report.recommendations[-1] == (
            "Performance trend is declining. Prioritize model maintenance."
        )

    def test_improving(self):
        report = monitor_drift([0.95], [0.8])
        assert not report.is_drifting
        assert report.trend == "improving"


class TestValidationService:
    def _service(self, repository, **kwargs):
        return PredictionValidationService(repository, clock=lambda: NOW, **kwargs)

    def test_rejects_empty_chunks(self, repository):
        with pytest.raises(ValueError):
            PredictionValidationService(repository, chunk_size=0)

    def test_batch_written_in_chunks(self, repository, monkeypatch):
        sizes: list[int] = []
        original = repository.save_validations

        def _spy(validations):
            sizes.append(len(validations))
            return original(validations)

        monkeypatch.setattr(repository, "save_validations", _spy)
        items = [
            PredictionOutcome(prediction_id=f"p-{i}", kind="therapy_outcome", predicted=0.7, actual=0.8)
            for i in range(7)
        ]
        result = self._service(repository, chunk_size=3).batch_validate(items, validator_id="T-1")

        assert result.ok
        assert len(result.data) == 7
        assert sizes == [3, 3, 1]
        stored = repository.get_validations()
        assert len(stored) == 7
        assert {v.validated_at for v in stored} == {NOW.isoformat()}
        assert {v.validator_id for v in stored} == {"T-1"}

    def test_unknown_kind_fails_whole_batch(self, repository):
        items = [
            PredictionOutcome("p-1", "therapy_outcome", 0.7, 0.8),
            PredictionOutcome("p-2", "weather", 0.7, 0.8),
        ]
        result = self._service(repository).batch_validate(items)
        assert not result.ok
        assert result.error.kind == "validation"
        assert repository.get_validations() == []

    def test_outcome_from_dict(self):
        item = PredictionOutcome.from_dict({
            "prediction_id": 7,
            "kind": "operational_forecast",
            "predicted": "12",
            "actual": 10,
            "interval": [8, 14],
        })
        assert item.prediction_id == "7"
        assert item.interval == (8.0, 14.0)

    def test_summary_filters_by_type(self, repository):
        repository.save_validations([
            _stored(0.8, 0.9),
            _stored(90.0, 100.0, kind="operational_forecast", accuracy=0.9),
        ])
        result = self._service(repository).summary("operational_forecast")
        assert result.ok
        assert result.data.validated_predictions == 1
        assert result.data.prediction_type == "operational_forecast"

    def test_drift_compares_adjacent_windows(self, repository):
        def at(days_ago: int) -> str:
            return (NOW - timedelta(days=days_ago)).isoformat()

        repository.save_validations([
            _stored(0.8, 0.2, accuracy=0.6, validated_at=at(5)),
            _stored(0.8, 0.9, accuracy=0.9, validated_at=at(45)),
            _stored(0.8, 0.2, accuracy=0.0, validated_at=at(90)),
        ])
        report = self._service(repository).drift(window_days=30).data

        assert report.current_accuracy == pytest.approx(0.6)
        assert report.baseline_accuracy == pytest.approx(0.9)
        assert report.is_drifting
        assert report.severity == "high"

    def test_drift_without_history(self, repository):
        report = self._service(repository).drift().data
        assert not report.is_drifting
        assert report.recommendations == ["Insufficient data for drift analysis"]
