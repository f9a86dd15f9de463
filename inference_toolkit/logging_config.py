"""Structured logging configuration (Loguru)."""

from __future__ import annotations

import sys

from loguru import logger

from inference_toolkit.config import Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure Loguru sinks for the toolkit and the CLI."""
    settings = settings or get_settings()
    logger.remove()

    fmt = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        format=fmt,
        level=settings.log_level,
        colorize=True,
        backtrace=True,
        diagnose=settings.debug,
    )

    if settings.log_file:
        logger.add(
            settings.log_file,
            format=fmt,
            level="DEBUG",
            rotation="00:00",
            retention="30 days",
            compression="gz",
            enqueue=True,
        )

    logger.info(
        "Logging ready  |  level={}  backend={}  nchw={}",
        settings.log_level,
        settings.backend.value,
        settings.use_nchw,
    )
