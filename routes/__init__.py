"""
Route modules share the service instances created by server.py through a
single dependency container set at startup.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class RouteDependencies:
    """Service instances used by the API routes"""
    activity_tracker: Optional[object] = None
    preview_cache: Optional[object] = None
    orchestrator: Optional[object] = None
    batch_loader: Optional[object] = None
    browser_session: Optional[object] = None
    version: str = "0.1.0"


_deps = RouteDependencies()


def set_dependencies(**services) -> RouteDependencies:
    """Replace the shared services (called from server startup and tests)"""
    global _deps
    _deps = RouteDependencies(**services)
    return _deps


def get_deps() -> RouteDependencies:
    return _deps
