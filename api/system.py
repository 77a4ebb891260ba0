"""
System API routes for NeuroData Hub.

This module provides FastAPI routes for health, environment information,
service configuration status and the recent server error log.
"""

from __future__ import annotations

import platform
import sys
import threading
import traceback
from collections import deque
from datetime import datetime, timezone
from importlib import metadata
from typing import Any

from fastapi import APIRouter, Query

from api.jobs import get_cloud_worker, job_manager
from api.shared.logger import get_logger
from api.shared.settings import get_settings
from api.store_adapter import get_store

logger = get_logger(__name__)

router = APIRouter()

MAX_ERROR_ENTRIES = 100

_error_log: deque[dict[str, Any]] = deque(maxlen=MAX_ERROR_ENTRIES)
_error_lock = threading.Lock()

# Distribution names, as installed
PACKAGE_NAMES = [
    "fastapi",
    "uvicorn",
    "pydantic",
    "orjson",
    "httpx",
    "numpy",
    "supabase",
    "stripe",
    "google-generativeai",
]


def log_error(
    endpoint: str,
    message: str,
    level: str = "error",
    details: str | None = None,
    exc: BaseException | None = None,
) -> dict[str, Any]:
    """Record a server error and write it to the log.

    Args:
        endpoint: Request path the error occurred on
        message: Short error message
        level: "error" or "critical"
        details: Extra context, e.g. the status code
        exc: Exception whose traceback should be kept

    Returns:
        The stored entry
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoint": endpoint,
        "message": message,
        "level": level,
        "details": details,
        "traceback": (
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)) if exc is not None else None
        ),
    }
    with _error_lock:
        _error_log.append(entry)

    if level == "critical":
        logger.critical("%s: %s (%s)", endpoint, message, details, exc_info=exc)
    else:
        logger.error("%s: %s (%s)", endpoint, message, details)
    return entry


def get_recent_errors(limit: int = 50) -> list[dict[str, Any]]:
    """Most recent errors first."""
    with _error_lock:
        entries = list(_error_log)
    return list(reversed(entries))[:limit]


def clear_errors() -> None:
    with _error_lock:
        _error_log.clear()


def _get_package_versions() -> dict[str, str]:
    """Get versions of key packages."""
    packages = {}
    for name in PACKAGE_NAMES:
        try:
            packages[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            pass
    return packages


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "message": "NeuroData Hub API is running",
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
            "processor": platform.processor(),
        },
        "packages": _get_package_versions(),
    }


@router.get("/system/status")
async def system_status():
    """Get which external services are configured and the worker state."""
    settings = get_settings()
    worker = get_cloud_worker()

    status = {
        "environment": settings.environment,
        "dev_mode": settings.dev_mode,
        "services": {
            "supabase": settings.supabase_configured,
            "stripe": settings.stripe_configured,
            "gemini": settings.gemini_configured,
            "youtube": settings.youtube_configured,
        },
        "store": get_store().backend_name,
        "worker": worker.state() if worker is not None else {"running": False},
        "jobs": {
            "active": job_manager.active_count(),
            "tracked": len(job_manager.list_jobs()),
        },
    }
    return {"status": status}


@router.get("/system/errors")
async def system_errors(limit: int = Query(50, ge=1, le=MAX_ERROR_ENTRIES)):
    """Get recently logged server errors."""
    errors = get_recent_errors(limit)
    return {"errors": errors, "total": len(errors)}
