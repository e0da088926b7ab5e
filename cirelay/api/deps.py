"""FastAPI dependency helpers."""

from __future__ import annotations

from fastapi import Request

from cirelay.ingest.monitor import BuildMonitor
from cirelay.providers.registry import ProviderRegistry


def get_registry(request: Request) -> ProviderRegistry:
    """Return the provider registry built during app startup.

    Raises
    ------
    RuntimeError
        If the app lifespan has not run yet.
    """
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise RuntimeError("Provider registry not initialised. Is the app lifespan running?")
    return registry


def get_monitor(request: Request) -> BuildMonitor:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise RuntimeError("Build monitor not initialised. Is the app lifespan running?")
    return monitor
