"""
Health Routes - System Health Check

Provides health check endpoint for monitoring server status.
Reports browser, cache and activity state.
"""

from fastapi import APIRouter
import logging
from routes import get_deps

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """
    Health check endpoint

    Returns server status, version, browser, cache and activity status.
    Supports both GET and HEAD methods for Docker health checks.
    """
    deps = get_deps()

    if deps.browser_session is None:
        browser_status = "not_initialized"
    else:
        browser_status = "running" if deps.browser_session.running else "idle"
    cache_status = "ready" if deps.preview_cache else "not_initialized"
    activity = deps.activity_tracker.get_status() if deps.activity_tracker else None

    return {
        "status": "ok",
        "version": deps.version,
        "message": "Page Preview is running",
        "browser_status": browser_status,
        "cache_status": cache_status,
        "activity": activity,
    }
