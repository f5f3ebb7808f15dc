"""Operational forecasts built on the seasonal forecaster.

Capacity utilisation per day, therapist workload per period, and the
enrollment / revenue / staffing outlook for the centre.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Sequence

from tdi.core.errors import InsufficientDataError
from tdi.domains.therapy.domain_logic.config import DEFAULT_FORECAST_CONFIG, ForecastConfig
from tdi.domains.therapy.domain_logic.forecasting import (
    ForecastResult,
    TimeSeriesPoint,
    seasonal_forecast,
)

WarningLevel = Literal["info", "warning", "critical"]
WorkloadPeriod = Literal["weekly", "monthly", "quarterly"]

WEEKLY_SEASON = 7
MONTHLY_SEASON = 12
QUARTERLY_SEASON = 4

PERIOD_DAYS: dict[str, int] = {"weekly": 7, "monthly": 30, "quarterly": 90}
STANDARD_HOURS: dict[str, float] = {"weekly": 40.0, "monthly": 160.0, "quarterly": 480.0}


@dataclass
class CapacityWarning:
    level: WarningLevel
    message: str


@dataclass
class CapacityForecast:
    forecast_date: datetime
    predicted_capacity: float
    predicted_utilization: float
    confidence_lower: float
    confidence_upper: float
    warnings: list[CapacityWarning] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "forecast_date": self.forecast_date.isoformat(),
            "predicted_capacity": round(self.predicted_capacity, 4),
            "predicted_utilization": round(self.predicted_utilization, 4),
            "confidence_interval": {
                "lower": round(self.confidence_lower, 4),
                "upper": round(self.confidence_upper, 4),
            },
            "capacity_warnings": [{"level": w.level, "message": w.message} for w in self.warnings],
        }


@dataclass
class WorkloadForecast:
    forecast_period: WorkloadPeriod
    predicted_session_count: int
    predicted_hours: int
    utilization_rate: float
    recommendations: list[str]
    therapist_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "therapist_id": self.therapist_id,
            "forecast_period": self.forecast_period,
            "predicted_session_count": self.predicted_session_count,
            "predicted_hours": self.predicted_hours,
            "utilization_rate": round(self.utilization_rate, 4),
            "recommendations": list(self.recommendations),
        }


@dataclass
class StaffingNeeds:
    current_ratio: float
    predicted_ratio: float
    additional_staff_needed: int


@dataclass
class OperationalForecast:
    enrollment: ForecastResult
    revenue: ForecastResult
    staffing: StaffingNeeds

    def to_dict(self) -> dict[str, Any]:
        return {
            "enrollment": self.enrollment.to_dict(),
            "revenue": self.revenue.to_dict(),
            "staffing_needs": {
                "current_ratio": self.staffing.current_ratio,
                "predicted_ratio": self.staffing.predicted_ratio,
                "additional_staff_needed": self.staffing.additional_staff_needed,
            },
        }


def capacity_warnings(
    utilization: float,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> list[CapacityWarning]:
    if utilization > config.critical_utilization:
        return [CapacityWarning(
            "critical",
            "Critical: Capacity utilization above 90%. Immediate capacity expansion needed.",
        )]
    if utilization > config.warning_utilization:
        return [CapacityWarning(
            "warning",
            "Warning: High capacity utilization. Consider scheduling optimization.",
        )]
    if utilization > config.info_utilization:
        return [CapacityWarning(
            "info",
            "Info: Moderate capacity utilization. Monitor trends closely.",
        )]
    return [CapacityWarning("info", "Info: Capacity utilization within normal range.")]


def workload_recommendations(
    utilization_rate: float,
    predicted_hours: float,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> list[str]:
    if utilization_rate > 0.9:
        recommendations = [
            "Consider redistributing sessions to balance workload",
            "Evaluate need for additional therapy staff",
            "Review session efficiency and duration",
        ]
    elif utilization_rate > 0.8:
        recommendations = [
            "Monitor workload closely for signs of overutilization",
            "Consider flexible scheduling options",
        ]
    elif utilization_rate < 0.5:
        recommendations = [
            "Low utilization detected - consider additional case assignments",
            "Evaluate scheduling optimization opportunities",
        ]
    else:
        recommendations = [
            "Workload within optimal range",
            "Continue current scheduling patterns",
        ]

    if predicted_hours > config.high_hours:
        recommendations.append("High predicted hours - ensure adequate breaks and recovery time")
    return recommendations


def forecast_capacity(
    history: Sequence[TimeSeriesPoint],
    days: int = 30,
    *,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> list[CapacityForecast]:
    """Daily capacity forecast on a weekly seasonal model.

    History values are occupancy on a 0-100 scale; utilisation is the
    predicted value over ``capacity_scale``, capped at 1.
    """
    if len(history) < config.min_capacity_points:
        raise InsufficientDataError(
            f"Need at least {config.min_capacity_points} days of historical data "
            "for capacity forecasting",
            f"يلزم {config.min_capacity_points} أيام على الأقل من البيانات التاريخية "
            "لتوقع السعة",
            required=config.min_capacity_points,
            available=len(history),
        )

    result = seasonal_forecast(history, WEEKLY_SEASON, days, config=config)
    forecasts = []
    for point in result.forecasts:
        utilization = min(point.predicted_value / config.capacity_scale, 1.0)
        forecasts.append(CapacityForecast(
            forecast_date=point.timestamp,
            predicted_capacity=point.predicted_value,
            predicted_utilization=utilization,
            confidence_lower=point.confidence_lower,
            confidence_upper=point.confidence_upper,
            warnings=capacity_warnings(utilization, config),
        ))
    return forecasts


def forecast_workload(
    session_history: Sequence[TimeSeriesPoint],
    therapist_id: str | None = None,
    period: WorkloadPeriod = "monthly",
    *,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> WorkloadForecast:
    """Sessions and hours expected over the next period for one therapist."""
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown workload period {period!r}")

    result = seasonal_forecast(session_history, WEEKLY_SEASON, PERIOD_DAYS[period], config=config)
    sessions = sum(f.predicted_value for f in result.forecasts)
    hours = sessions * config.session_hours
    utilization = min(hours / STANDARD_HOURS[period], 1.0)

    return WorkloadForecast(
        forecast_period=period,
        predicted_session_count=round(sessions),
        predicted_hours=round(hours),
        utilization_rate=utilization,
        recommendations=workload_recommendations(utilization, hours, config),
        therapist_id=therapist_id,
    )


def forecast_operational_metrics(
    enrollment: Sequence[TimeSeriesPoint],
    revenue: Sequence[TimeSeriesPoint],
    periods: int = 12,
    *,
    config: ForecastConfig = DEFAULT_FORECAST_CONFIG,
) -> OperationalForecast:
    """Monthly enrollment, quarterly revenue, and the staffing they imply."""
    enrollment_forecast = seasonal_forecast(enrollment, MONTHLY_SEASON, periods, config=config)
    revenue_forecast = seasonal_forecast(revenue, QUARTERLY_SEASON, periods, config=config)

    forecast_mean = statistics.fmean(f.predicted_value for f in enrollment_forecast.forecasts)
    recent_mean = statistics.fmean(p.value for p in enrollment[-MONTHLY_SEASON:])
    additional = max(0, math.ceil((forecast_mean - recent_mean) / config.staff_ratio))

    return OperationalForecast(
        enrollment=enrollment_forecast,
        revenue=revenue_forecast,
        staffing=StaffingNeeds(
            current_ratio=config.staff_ratio,
            predicted_ratio=config.staff_ratio,
            additional_staff_needed=additional,
        ),
    )
