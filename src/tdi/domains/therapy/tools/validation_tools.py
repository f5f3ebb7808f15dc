"""MCP tools for prediction validation and drift monitoring."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from tdi.domains.therapy.domain_logic.prediction_validation import (
        PredictionValidationService,
    )

from tdi.domains.therapy.domain_logic.prediction_validation import PredictionOutcome
from tdi.domains.therapy.tools import responses

logger = logging.getLogger(__name__)


def register_validation_tools(
    mcp: FastMCP,
    validation: PredictionValidationService,
) -> None:
    """Register prediction validation tools on the MCP server."""

    @mcp.tool
    async def validate_predictions(
        ctx: Context,
        items: list[dict[str, Any]],
        validator_id: str = "",
    ) -> str:
        """Check predictions against the values that were later observed.

        Args:
            items: Objects with prediction_id, kind ('therapy_outcome',
                'risk_assessment', 'operational_forecast'), predicted,
                actual and an optional [lower, upper] interval.
            validator_id: Who performed the validation.
        """
        try:
            outcomes = [PredictionOutcome.from_dict(item) for item in items]
        except (KeyError, TypeError, ValueError, IndexError) as exc:
            return responses.invalid_input(exc)
        result = validation.batch_validate(outcomes, validator_id)
        return responses.from_result(
            result, lambda validations: {"validations": [asdict(v) for v in validations]}
        )

    @mcp.tool
    async def validation_summary(
        ctx: Context,
        prediction_type: str | None = None,
        days: int = 30,
    ) -> str:
        """Accuracy, error and calibration metrics over recent validations.

        Args:
            prediction_type: Restrict to one prediction kind.
            days: Number of days to look back.
        """
        since = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
        result = validation.summary(prediction_type, since=since)
        return responses.from_result(result, asdict)

    @mcp.tool
    async def monitor_model_drift(
        ctx: Context,
        prediction_type: str | None = None,
        window_days: int = 30,
    ) -> str:
        """Compare recent validation accuracy with the preceding window.

        Args:
            prediction_type: Restrict to one prediction kind.
            window_days: Length of the recent and baseline windows.
        """
        result = validation.drift(prediction_type, window_days=window_days)
        return responses.from_result(result, asdict)
