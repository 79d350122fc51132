"""
System API routes for the audio diagnostics backend.

Health, environment information and the in-memory error log filled by the
app-wide exception handlers.
"""

import platform
import sys
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from fastapi import APIRouter

from .app_config import app_config
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

ERROR_LOG_LIMIT = 200

_error_log: Deque[Dict[str, Any]] = deque(maxlen=ERROR_LOG_LIMIT)


def log_error(
    endpoint: str,
    message: str,
    level: str = "error",
    details: Optional[str] = None,
    traceback: Optional[str] = None,
) -> Dict[str, Any]:
    """Record an error for ``GET /api/system/errors`` and log it."""
    entry = {
        "timestamp": datetime.now().isoformat(),
        "endpoint": endpoint,
        "message": message,
        "level": level,
        "details": details,
        "traceback": traceback,
    }
    _error_log.append(entry)
    if level == "warning":
        logger.warning("%s: %s", endpoint, message)
    else:
        logger.error("%s: %s", endpoint, message)
    return entry


def get_errors(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Most recent errors first."""
    errors = list(reversed(_error_log))
    return errors[:limit] if limit is not None else errors


def clear_errors() -> int:
    count = len(_error_log)
    _error_log.clear()
    return count


def _get_package_versions() -> Dict[str, str]:
    """Get versions of key packages."""
    packages = {}

    for name in ("fastapi", "pydantic", "uvicorn", "orjson", "starlette"):
        try:
            module = __import__(name)
        except ImportError:
            continue
        packages[name] = getattr(module, "__version__", "unknown")

    return packages


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "message": "Audio diagnostics backend is running",
    }


@router.get("/system/info")
async def system_info():
    """Get system and environment information."""
    return {
        "python": {
            "version": sys.version,
            "platform": sys.platform,
            "executable": sys.executable,
        },
        "system": {
            "os": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "config_path": app_config.get_config_path(),
        "config_custom_path": app_config.is_using_custom_path(),
        "packages": _get_package_versions(),
    }


@router.get("/system/errors")
async def system_errors(limit: Optional[int] = None):
    """Errors recorded by the exception handlers, newest first."""
    errors = get_errors(limit)
    return {"errors": errors, "total": len(_error_log)}


@router.delete("/system/errors")
async def clear_system_errors():
    return {"cleared": clear_errors()}
