"""Port status sink over the Port REST API."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from cirelay.config import SinkConfig
from cirelay.errors import SinkReportError
from cirelay.sink.base import TerminationGuard
from cirelay.utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class PortSink:
    """Reports run progress to Port.

    The bearer token is fetched lazily and cached until shortly before it
    expires.  Concurrent runs may refresh it at the same time; both refreshes
    yield a valid token, so no lock is taken.
    """

    def __init__(
        self,
        config: SinkConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._retry = retry or RetryPolicy()
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.timeout,
            transport=transport,
        )
        self._token: str | None = None
        self._token_expiry: float = 0.0
        self._terminations = TerminationGuard()

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expiry:
            return self._token

        logger.info("Fetching new Port API access token...")
        try:
            response = await call_with_retry(
                self._retry,
                self._send,
                "POST",
                "/auth/access_token",
                json={
                    "clientId": self._config.client_id,
                    "clientSecret": self._config.client_secret,
                },
                description="POST access_token",
            )
            token = response.json()["accessToken"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.error("Failed to get access token: %s", exc)
            raise SinkReportError(f"Failed to get Port access token: {exc}") from exc

        self._token = token
        self._token_expiry = time.monotonic() + self._config.token_ttl_seconds
        logger.info("Access token obtained")
        return token

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _authed(self, method: str, url: str, description: str, **kwargs: Any) -> Any:
        token = await self.get_access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            response = await call_with_retry(
                self._retry, self._send, method, url, headers=headers, description=description, **kwargs
            )
        except httpx.HTTPError as exc:
            raise SinkReportError(f"{description} failed: {exc}") from exc
        return response.json() if response.content else None

    # ------------------------------------------------------------------
    # Sink API
    # ------------------------------------------------------------------

    async def update_run(
        self,
        run_id: str,
        *,
        status_label: str | None = None,
        links: list[str] | None = None,
        status: str | None = None,
    ) -> None:
        body: dict[str, Any] = {}
        if status_label is not None:
            body["statusLabel"] = status_label
        if links:
            body["link"] = list(links)
        if status is not None:
            body["status"] = status
        try:
            await self._authed("PATCH", f"/actions/runs/{run_id}", f"update run {run_id}", json=body)
        except SinkReportError as exc:
            logger.error("Failed to update action run %s: %s", run_id, exc)
            raise
        logger.info("Updated action run %s: %s", run_id, status or status_label or "IN_PROGRESS")

    async def add_run_log(
        self,
        run_id: str,
        message: str,
        *,
        termination_status: str | None = None,
        status_label: str | None = None,
    ) -> None:
        admitted = self._terminations.admit(run_id, termination_status)
        if termination_status is not None and admitted is None:
            logger.warning(
                "Run %s already terminated; dropping termination status %s",
                run_id,
                termination_status,
            )
        body: dict[str, Any] = {"message": message}
        if admitted:
            body["terminationStatus"] = admitted
        if status_label:
            body["statusLabel"] = status_label
        try:
            await self._authed("POST", f"/actions/runs/{run_id}/logs", f"log run {run_id}", json=body)
        except SinkReportError as exc:
            logger.error("Failed to add log to action run %s: %s", run_id, exc)
            raise
        if admitted:
            self._terminations.mark(run_id, admitted)
        logger.debug("Added log to action run %s", run_id)

    async def upsert_entity(
        self,
        blueprint_id: str,
        entity: dict[str, Any],
        *,
        run_id: str | None = None,
    ) -> None:
        params: dict[str, Any] = {"upsert": "true", "merge": "true"}
        if run_id:
            params["run_id"] = run_id
        logger.info("Creating entity: %s (blueprint: %s)", entity.get("identifier"), blueprint_id)
        await self._authed(
            "POST",
            f"/blueprints/{blueprint_id}/entities",
            f"upsert entity {entity.get('identifier')}",
            json=entity,
            params=params,
        )
        logger.info("Entity %s created successfully", entity.get("identifier"))
