"""MCP tools for capacity, workload and operational forecasting.

Series arrive as lists of ``{"timestamp": ISO 8601, "value": number}``
objects in chronological order. These tools are pure and need no storage.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastmcp import Context, FastMCP

from tdi.core.errors import AnalyticsError
from tdi.domains.therapy.domain_logic.capacity_planning import (
    forecast_capacity as build_capacity_forecast,
    forecast_operational_metrics,
    forecast_workload as build_workload_forecast,
)
from tdi.domains.therapy.domain_logic.forecasting import TimeSeriesPoint, validate_series
from tdi.domains.therapy.tools import responses

logger = logging.getLogger(__name__)


def _series(items: list[dict[str, Any]]) -> list[TimeSeriesPoint]:
    return [TimeSeriesPoint.from_dict(item) for item in items]


def register_forecasting_tools(mcp: FastMCP) -> None:
    """Register forecasting tools on the MCP server."""

    @mcp.tool
    async def forecast_capacity(
        ctx: Context,
        history: list[dict[str, Any]],
        days: int = 30,
    ) -> str:
        """Forecast daily capacity occupancy with utilization warnings.

        Args:
            history: Daily occupancy on a 0-100 scale; at least 7 points.
            days: Number of days to forecast.
        """
        try:
            forecasts = build_capacity_forecast(_series(history), days)
        except AnalyticsError as exc:
            return responses.from_exception(exc)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)
        critical = sum(1 for f in forecasts if any(w.level == "critical" for w in f.warnings))
        if critical:
            logger.warning("Capacity forecast has %d critical days", critical)
        return responses.ok({"forecasts": [f.to_dict() for f in forecasts]})

    @mcp.tool
    async def forecast_workload(
        ctx: Context,
        session_history: list[dict[str, Any]],
        therapist_id: str | None = None,
        period: str = "monthly",
    ) -> str:
        """Forecast session count, hours and utilization for the next period.

        Args:
            session_history: Daily session counts.
            therapist_id: Optional therapist the history belongs to.
            period: 'weekly', 'monthly' or 'quarterly'.
        """
        try:
            forecast = build_workload_forecast(
                _series(session_history), therapist_id, period  # type: ignore[arg-type]
            )
        except AnalyticsError as exc:
            return responses.from_exception(exc)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)
        return responses.ok(forecast.to_dict())

    @mcp.tool
    async def forecast_operations(
        ctx: Context,
        enrollment: list[dict[str, Any]],
        revenue: list[dict[str, Any]],
        periods: int = 12,
    ) -> str:
        """Forecast enrollment and revenue, and the staffing they imply.

        Args:
            enrollment: Monthly enrollment counts; at least 24 points.
            revenue: Quarterly revenue; at least 8 points.
            periods: Number of periods to forecast.
        """
        try:
            forecast = forecast_operational_metrics(_series(enrollment), _series(revenue), periods)
        except AnalyticsError as exc:
            return responses.from_exception(exc)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)
        return responses.ok(forecast.to_dict())

    @mcp.tool
    async def validate_time_series(ctx: Context, data: list[dict[str, Any]]) -> str:
        """Check a series for forecasting problems and suggest remediation.

        Args:
            data: The series to check.
        """
        try:
            series = _series(data)
        except (KeyError, TypeError, ValueError) as exc:
            return responses.invalid_input(exc)
        return responses.ok(asdict(validate_series(series)))
