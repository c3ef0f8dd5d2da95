"""
Logging configuration for the Ember CLI.

By default structlog only prints warnings and errors as short
``[LEVEL] event`` lines; ``--verbose`` switches to the full console renderer
at DEBUG level.
"""

from __future__ import annotations

import logging
import sys

import structlog

_quiet_mode: bool = False

EMBER_LOGGERS = (
    "ember",
    "ember.audit",
    "ember.core",
    "ember.memory",
    "ember.tools",
)

NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "asyncio",
)


def configure_cli_logging(verbose: bool = False) -> None:
    """
    Configure logging for CLI usage.

    Args:
        verbose: If True, show all debug/info logs. If False, show only warnings/errors.
    """
    global _quiet_mode
    _quiet_mode = not verbose

    log_level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )
    for logger_name in EMBER_LOGGERS:
        logging.getLogger(logger_name).setLevel(log_level)
    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.ERROR)

    if verbose:
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.UnicodeDecoder(),
            _quiet_renderer,
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _quiet_renderer(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict,
) -> str:
    """Render warnings and errors as ``[LEVEL] event``; drop everything else."""
    level = event_dict.get("level", method_name)
    if level in ("debug", "info"):
        return ""
    return f"[{level.upper()}] {event_dict.get('event', '')}"


def is_quiet_mode() -> bool:
    """Check if quiet mode is enabled."""
    return _quiet_mode
