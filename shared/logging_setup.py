"""structlog setup shared by every entry point."""

from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "info") -> None:
    """Render structured logs as JSON with ISO timestamps."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )
