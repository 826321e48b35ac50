"""Shared utility functions for the statement import service."""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import colorlog

T = TypeVar("T")

LOGGER_ROOT = "statement-import"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the project root logger, which carries the colorized console handler."""
    root = logging.getLogger(LOGGER_ROOT)
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
        root.propagate = False
    # Children hold no handlers of their own; records reach the console and log file through the root.
    return logging.getLogger(name)


def ensure_dir(path: str | Path) -> None:
    """Ensure a directory exists (like mkdir -p)."""
    Path(path).mkdir(parents=True, exist_ok=True)


def utcnow_iso() -> str:
    """Get the current UTC time as an ISO8601 string."""
    return datetime.now(UTC).isoformat()


def retry_with_backoff(
    func: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...],
    attempts: int,
    backoff_seconds: float,
    logger: logging.Logger,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Callable[[], bool] | None = None,
) -> T:
    """Call ``func`` and retry it on ``retry_on`` errors with exponential backoff.

    The last error is re-raised once ``attempts`` calls have failed, or as soon as ``should_stop`` returns True
    after a failed attempt.
    """
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            if attempt == attempts:
                logger.warning(f"{label}: giving up after {attempts} attempts ({exc})")
                raise
            if should_stop is not None and should_stop():
                logger.warning(f"{label}: stopped after attempt {attempt}/{attempts} ({exc})")
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(f"{label}: attempt {attempt}/{attempts} failed ({exc}); retrying in {delay:.1f}s")
            sleep(delay)
    msg = "unreachable"
    raise RuntimeError(msg)
