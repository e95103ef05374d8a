"""Shared structlog/stdlib logging bootstrap for the research pipeline and CLI."""

import logging
import logging.config
import os
import sys

import structlog
from structlog.dev import ConsoleRenderer

_CONFIGURED = False

_SHARED_PROCESSORS: list = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _is_local_environment() -> bool:
    """Check if running in local development environment."""
    env = os.environ.get("ENVIRONMENT", "").lower()
    return env in ("", "local", "development", "dev")


def configure_logging(log_level: str) -> None:
    """Configure structured logging with environment-appropriate format.

    - Local/development: Human-readable console output with colors
    - Production: JSON output for log aggregation

    Library code never calls this; it only asks structlog for loggers. The host
    application (or the CLI) decides where log lines go.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    # Avoid Windows console encoding crashes when snippets contain non-ASCII text.
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="backslashreplace")

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        ConsoleRenderer(colors=True, pad_event=40)
        if _is_local_environment()
        else structlog.processors.JSONRenderer()
    )

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {
                    "()": structlog.stdlib.ProcessorFormatter,
                    "processors": [
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        renderer,
                    ],
                    "foreign_pre_chain": _SHARED_PROCESSORS,
                },
            },
            "handlers": {
                # stderr so the CLI can keep stdout for the result JSON
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "structured",
                    "stream": "ext://sys.stderr",
                },
            },
            "root": {
                "handlers": ["default"],
                "level": log_level,
            },
            "loggers": {
                "httpx": {"level": "WARNING"},
                "httpcore": {"level": "WARNING"},
                "openai": {"level": "WARNING"},
            },
        }
    )

    _CONFIGURED = True
