"""Loguru logging configuration for the assistant.

``setup_logging()`` is called once when the app starts. It replaces the
default loguru sink and reroutes stdlib ``logging`` records (uvicorn, httpx,
openai, pydantic_ai) through loguru so every line shares one format.

Chat turns log through ``turn_logger()``, which binds the owner and
conversation IDs so a single turn can be followed across the router,
summarizer and orchestrator.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

_THIRD_PARTY_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "httpx",
    "openai",
    "pydantic_ai",
)

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>{extra[conversation]}</magenta> - "
    "<level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """Forward a stdlib logging record to loguru, keeping the caller's frame."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back  # type: ignore[assignment]
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(*, level: str = "INFO", json: bool = False) -> None:
    """Install the loguru sink and intercept third-party stdlib loggers.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ...).
        json: Emit serialized JSON records instead of coloured text.
    """
    logger.remove()
    logger.configure(extra={"conversation": "-"})

    if json:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT, colorize=True)

    intercept = InterceptHandler()
    for name in _THIRD_PARTY_LOGGERS:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [intercept]
        stdlib_logger.propagate = False

    logging.root.handlers = [intercept]
    logging.root.setLevel(logging.DEBUG)


def turn_logger(owner_id: str, conversation_id: str):
    """Return a logger bound to one conversation (``owner/conversation``)."""
    return logger.bind(conversation=f"{owner_id}/{conversation_id}")
