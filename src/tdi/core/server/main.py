"""TDI server entry point: ``python -m tdi.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from tdi.core.config.settings import get_settings
from tdi.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the TDI MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.tdi_log_level.upper(), logging.INFO))

    logger = logging.getLogger(__name__)
    if not settings.tdi_allow_insecure_bind and not _is_loopback_host(settings.tdi_host):
        raise RuntimeError(
            "Refusing to bind the TDI server to a non-loopback host without an auth layer. "
            "Set TDI_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info("Starting TDI therapy analytics server on %s:%d", settings.tdi_host, settings.tdi_port)

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.tdi_host,
        port=settings.tdi_port,
    )


if __name__ == "__main__":
    run()
