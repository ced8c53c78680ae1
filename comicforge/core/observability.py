"""
Logfire observability configuration for ComicForge.

Provides tracing for:
- Batch runs (one span per run_batch call, per backend)
- Reference generation for character-consistency runs
- Placement analysis per artifact

Usage:
    # At CLI startup
    from comicforge.core.observability import setup_logfire
    setup_logfire()

    # In services
    import logfire

    with logfire.span("run_batch {backend}", backend=backend.value, jobs=len(jobs)):
        ...

Environment Variables:
    LOGFIRE_TOKEN: Your Logfire write token (required to export spans)
    LOGFIRE_ENVIRONMENT: Environment name (development, staging, production)
"""

import os
import logging
from typing import Optional

import logfire

logger = logging.getLogger(__name__)

_logfire_configured = False
_logfire_exporting = False


def setup_logfire(
    environment: Optional[str] = None,
    service_name: str = "comicforge"
) -> bool:
    """
    Configure Logfire for observability. Safe to call more than once.

    Without a token, Logfire is configured to keep spans local.

    Args:
        environment: Environment name (or LOGFIRE_ENVIRONMENT env var)
        service_name: Service name for tracing

    Returns:
        True if spans are exported to Logfire, False if configured locally only
    """
    global _logfire_configured, _logfire_exporting

    if _logfire_configured:
        logger.debug("Logfire already configured")
        return _logfire_exporting

    token = os.environ.get("LOGFIRE_TOKEN")
    env = environment or os.environ.get("LOGFIRE_ENVIRONMENT", "development")

    if not token:
        logger.info("LOGFIRE_TOKEN not set, spans stay local")
        logfire.configure(
            send_to_logfire=False,
            console=False,
            service_name=service_name,
            environment=env,
        )
        _logfire_configured = True
        return False

    try:
        logfire.configure(
            token=token,
            service_name=service_name,
            environment=env,
            send_to_logfire=True,
        )

        _logfire_configured = True
        _logfire_exporting = True
        logger.info(f"Logfire configured: service={service_name}, environment={env}")
        return True

    except Exception as e:
        logger.error(f"Failed to configure Logfire: {e}")
        return False
