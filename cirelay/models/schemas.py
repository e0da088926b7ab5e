"""Pydantic schemas for inbound messages and API responses."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Actor(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str | None = None


class RunContext(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    by: Actor = Field(default_factory=Actor)


class ActionRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    identifier: str


class ActionMessage(BaseModel):
    """An action invocation as delivered by the event source.

    Unknown top-level keys and arbitrary ``properties`` are tolerated and
    passed through untouched.
    """

    model_config = ConfigDict(extra="allow")

    context: RunContext
    action: ActionRef
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.context.run_id


class WebhookAck(BaseModel):
    received: bool = True
    message: str = "Webhook received successfully"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    active_monitors: int = 0
    active_tasks: list[str] = Field(default_factory=list)
    registered_providers: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class StatusResponse(BaseModel):
    active_tasks: list[str] = Field(default_factory=list)
    count: int = 0
    providers: list[str] = Field(default_factory=list)
    uptime: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
