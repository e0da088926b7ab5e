"""Webhook receiver and service status endpoints."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from cirelay.api.deps import get_monitor, get_registry
from cirelay.ingest.monitor import BuildMonitor
from cirelay.models.schemas import HealthResponse, StatusResponse, WebhookAck
from cirelay.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post(
    "/webhook/{provider_name}",
    response_model=WebhookAck,
    summary="CI provider webhook receiver",
)
async def receive_webhook(
    provider_name: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    monitor: BuildMonitor = Depends(get_monitor),
) -> WebhookAck:
    """Acknowledge a provider webhook and follow the build in the background.

    The signature is checked against the raw body before anything is
    parsed.  Running builds get their logs streamed; finished builds get
    their complete log fetched once.
    """
    provider = registry.get(provider_name)
    if provider is None:
        raise HTTPException(status_code=404, detail=f"Provider {provider_name} not registered")

    body = await request.body()
    if not provider.validate_webhook(dict(request.headers), body):
        logger.warning("Invalid webhook signature for %s", provider_name)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload: Any = json.loads(body) if body else {}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be a JSON object")

    data = provider.normalize_build_data(provider.parse_webhook_payload(payload))
    monitor.watch(provider, data)
    return WebhookAck()


@router.get("/health", response_model=HealthResponse)
async def health(
    registry: ProviderRegistry = Depends(get_registry),
    monitor: BuildMonitor = Depends(get_monitor),
) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        active_monitors=len(monitor),
        active_tasks=monitor.active_keys(),
        registered_providers=registry.names(),
    )


@router.get("/status", response_model=StatusResponse)
async def service_status(
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    monitor: BuildMonitor = Depends(get_monitor),
) -> StatusResponse:
    started = getattr(request.app.state, "started_at", time.monotonic())
    keys = monitor.active_keys()
    return StatusResponse(
        active_tasks=keys,
        count=len(keys),
        providers=registry.names(),
        uptime=round(time.monotonic() - started, 3),
    )
