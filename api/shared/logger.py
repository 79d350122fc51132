"""
Centralized logging for the audio diagnostics backend.

Every module logs through the standard ``logging`` package with a
module-scoped logger and lazy ``%`` formatting.

Usage:
    from api.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Recomputed %d cache diffs", len(diffs))
    logger.warning("Calculator %s is not registered", calculator_id)
    logger.error("Regeneration job %s failed: %s", job_id, err)
"""

import logging
import os
import sys

LOG_LEVEL_ENV = "AUDIOVIZ_LOG_LEVEL"

_configured = False


def resolve_log_level(level: str | None = None) -> int:
    """Translate a level name into a ``logging`` constant.

    The explicit argument wins, then ``AUDIOVIZ_LOG_LEVEL``, then INFO.
    Unknown names fall back to INFO.
    """
    name = level or os.environ.get(LOG_LEVEL_ENV) or "INFO"
    value = getattr(logging, str(name).upper(), None)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: str | None = None) -> None:
    """Configure root logging for the backend.

    Call once at startup (main.py). Subsequent calls are no-ops.
    """
    global _configured
    if _configured:
        return

    logging.basicConfig(
        level=resolve_log_level(level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
        force=True,
    )
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger scoped to the backend namespace.

    Args:
        name: Module name (typically ``__name__``).
    """
    return logging.getLogger(name)
