"""Structured logging helpers for navlearn.

All learning modules log through :func:`get_logger`, which returns a
``structlog`` bound logger.  Events are short snake_case names with the
interesting values passed as keyword context::

    logger = get_logger(__name__)
    logger.info("episode_complete", episode=4, total_reward=12.5, steps=9)

Importing navlearn never touches the root logger.  Applications call
:func:`configure_logging` once at startup; until then structlog's defaults
apply.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Unset arguments fall back to ``NAVLEARN_LOG_LEVEL`` and
    ``NAVLEARN_LOG_JSON``.  Safe to call more than once; later calls
    replace the processor chain.
    """
    from navlearn.config import settings

    level = level or settings.log_level
    if json_output is None:
        json_output = settings.log_json

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a lazily bound structlog logger for *name*."""
    return structlog.get_logger(name)
