"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """TDI analytics server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: the analytics tools expose clinical records and
    # there is no auth layer in front of them.
    tdi_host: str = "127.0.0.1"
    tdi_port: int = 8011
    tdi_log_level: str = "info"
    tdi_allow_insecure_bind: bool = False

    # Opaque outcome scorer
    scorer_provider: Literal["heuristic", "linear", "mock"] = "heuristic"
    scorer_weights_path: str = ""

    # Storage (recommendations, feedback, learning statistics)
    db_path: str = "~/.tdi/analytics.db"

    # Encryption of therapist free text at rest
    encryption_key: str = ""

    # Locale used when a caller asks for a single message
    default_locale: Literal["en", "ar"] = "en"


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
