"""TDI analytics MCP server application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from tdi.core.audit.logger import AuditLogger
from tdi.core.config.settings import get_settings
from tdi.core.scorer.provider import OutcomeScorer, create_scorer
from tdi.core.storage.database import TherapyDatabase
from tdi.core.storage.encryption import EncryptionError, FieldEncryptor
from tdi.core.storage.repository import AnalyticsRepository
from tdi.domains.therapy.domain_logic.confidence_scoring import ConfidenceScorer
from tdi.domains.therapy.domain_logic.recommendation_engine import RecommendationEngine
from tdi.domains.therapy.tools.forecasting_tools import register_forecasting_tools
from tdi.domains.therapy.tools.recommendation_tools import register_recommendation_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "TDI Therapy Analytics"
SERVER_VERSION = "0.1.0"


def _load_scorer(provider_name: str, weights_path: str) -> OutcomeScorer:
    """Create and load the configured scorer, falling back to the heuristic one."""
    try:
        scorer = create_scorer(provider_name, weights_path=weights_path)
        scorer.load()
    except (OSError, ValueError) as exc:
        if provider_name == "heuristic":
            raise
        logger.warning(
            "Could not load scorer '%s' (%s); falling back to heuristic scorer",
            provider_name,
            exc,
        )
        scorer = create_scorer("heuristic")
        scorer.load()
    return scorer


def create_app(
    *,
    scorer_override: OutcomeScorer | None = None,
    repository_override: AnalyticsRepository | None = None,
    audit_logger_override: AuditLogger | None = None,
) -> FastMCP:
    """Create and configure the TDI analytics MCP server.

    This is the main application factory. It:
    1. Creates the FastMCP server instance
    2. Loads the outcome scorer (heuristic unless configured otherwise)
    3. Builds the recommendation engine and confidence scorer
    4. Initializes the encrypted analytics store and audit trail
    5. Registers the recommendation, learning, validation and forecasting tools
    """
    settings = get_settings()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "Therapy decision intelligence server. Generates ranked therapy "
            "recommendations with confidence and safety scores, scans subject "
            "collections for bias, learns from therapist feedback and outcomes, "
            "and forecasts capacity, workload and operational metrics."
        ),
    )

    # --- Outcome scorer ---
    if scorer_override is not None:
        scorer = scorer_override
    else:
        scorer = _load_scorer(settings.scorer_provider, settings.scorer_weights_path)
    logger.info("Outcome scorer ready: %s", type(scorer).__name__)

    confidence_scorer = ConfidenceScorer()
    engine = RecommendationEngine(scorer, confidence_scorer)

    # --- Encrypted analytics store ---
    repository: AnalyticsRepository | None = None
    audit_logger: AuditLogger | None = audit_logger_override
    if repository_override is not None:
        repository = repository_override
    elif settings.encryption_key:
        try:
            encryptor = FieldEncryptor(settings.encryption_key)
            database = TherapyDatabase(settings.db_path)
            database.initialize()
            repository = AnalyticsRepository(database, encryptor)
            if audit_logger is None:
                audit_logger = AuditLogger(database)
            logger.info(
                "Analytics store initialized: %s (schema v%d)",
                settings.db_path,
                database.get_schema_version(),
            )
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
            logger.warning("Continuing without persistence; feedback will not be stored")
    else:
        logger.info(
            "No ENCRYPTION_KEY configured; running without persistence. "
            "Set ENCRYPTION_KEY to enable feedback learning."
        )

    # --- Register tools ---
    @server.tool
    async def health_check() -> dict:
        """Check server health and return basic status information."""
        status = {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "scorer": type(scorer).__name__,
            "scorer_loaded": scorer.is_loaded,
            "storage_enabled": repository is not None,
            "default_locale": settings.default_locale,
        }
        if repository is not None:
            status["recommendations_stored"] = repository.count_recommendations()
        return status

    register_recommendation_tools(server, engine, confidence_scorer, repository, audit_logger)
    logger.info("Recommendation and bias tools registered")

    register_forecasting_tools(server)
    logger.info("Forecasting tools registered")

    # --- Tools that require storage ---
    if repository is not None:
        from tdi.domains.therapy.domain_logic.adaptive_learning import AdaptiveLearningService
        from tdi.domains.therapy.domain_logic.prediction_validation import (
            PredictionValidationService,
        )
        from tdi.domains.therapy.tools.learning_tools import register_learning_tools
        from tdi.domains.therapy.tools.validation_tools import register_validation_tools

        register_learning_tools(server, AdaptiveLearningService(repository), audit_logger)
        logger.info("Adaptive learning tools registered")

        register_validation_tools(server, PredictionValidationService(repository))
        logger.info("Prediction validation tools registered")

    if audit_logger is not None:
        from tdi.domains.therapy.tools.audit_tools import register_audit_tools

        register_audit_tools(server, audit_logger)

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
