"""Jenkins CI provider.

Builds are triggered through ``build`` / ``buildWithParameters``, logs are
followed through ``progressiveText`` byte offsets and pipeline stages are
read from the workflow API (``wfapi/describe``).
"""

from __future__ import annotations

import asyncio
import hmac
import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from cirelay.errors import PollError, StreamExhaustedError, TriggerError
from cirelay.models.build import (
    BuildInfo,
    BuildStatus,
    BuildStatusInfo,
    NormalizedBuildData,
    StageInfo,
)
from cirelay.providers.base import (
    LogChunkHandler,
    TerminalStatusCache,
    as_int,
    default_webhook_path,
    freeze_config,
    header_value,
    map_status,
    normalize_build_data,
    require_fields,
)
from cirelay.utils.retry import RetryPolicy, call_with_retry, is_connect_error

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 5

_RESULT_STATUS: dict[str, BuildStatus] = {
    "SUCCESS": BuildStatus.success,
    "FAILURE": BuildStatus.failure,
    "UNSTABLE": BuildStatus.failure,
    "ABORTED": BuildStatus.cancelled,
}

_WEBHOOK_STATUS: dict[str, BuildStatus] = {
    "STARTED": BuildStatus.running,
    "IN_PROGRESS": BuildStatus.running,
    **_RESULT_STATUS,
}


class JenkinsProvider:
    """Jenkins implementation of the CI provider contract.

    Config keys:

    - ``url`` -- Jenkins base URL (required)
    - ``username`` / ``api_token`` -- basic-auth credentials (required)
    - ``job_name`` -- job to trigger; ``folder/job`` for nested jobs (required)
    - ``timeout`` -- HTTP timeout in seconds (default ``30``)
    - ``queue_wait`` -- seconds to wait between build-number lookups after a
      trigger (default ``3``)
    - ``resolve_attempts`` -- lookups before giving up on a build number
      (default ``5``)
    - ``poll_interval`` -- delay between log polls (default ``2``)
    - ``uppercase_parameters`` -- send parameter names in UPPER_CASE
      (default ``true``)
    - ``webhook_token`` -- if set, inbound webhooks must carry it in
      ``X-Jenkins-Token``
    """

    name = "jenkins"

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.config = freeze_config(config)
        self._url: str = str(self.config.get("url") or "").rstrip("/")
        self._job_name: str = str(self.config.get("job_name") or "")
        self._queue_wait = float(self.config.get("queue_wait", 3.0))
        self._resolve_attempts = max(int(self.config.get("resolve_attempts", 5)), 1)
        self._poll_interval = float(self.config.get("poll_interval", 2.0))
        self._uppercase = bool(self.config.get("uppercase_parameters", True))
        self._retry = retry or RetryPolicy()
        self._statuses = TerminalStatusCache()
        self._client = httpx.AsyncClient(
            base_url=self._url,
            auth=(str(self.config.get("username") or ""), str(self.config.get("api_token") or "")),
            headers={"Content-Type": "application/json"},
            timeout=float(self.config.get("timeout", 30.0)),
            transport=transport,
        )

    @property
    def webhook_path(self) -> str:
        return default_webhook_path(self.name)

    @property
    def job_path(self) -> str:
        """``/job/a/job/b`` for a ``a/b`` job name."""
        return "".join(f"/job/{part}" for part in self._job_name.strip("/").split("/"))

    def build_url(self, build_number: int | str) -> str:
        return f"{self._url}{self.job_path}/{build_number}"

    def validate_config(self) -> None:
        require_fields(
            "Jenkins",
            self.config,
            {
                "url": "url is required",
                "username": "username is required",
                "api_token": "api_token is required",
                "job_name": "job_name is required",
            },
        )

    async def initialize(self) -> None:
        pass

    async def cleanup(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _get_json(self, url: str, description: str) -> Any:
        response = await call_with_retry(
            self._retry, self._request, "GET", url, description=description
        )
        return response.json()

    def _prepare_parameters(self, parameters: Mapping[str, Any]) -> dict[str, Any]:
        prepared: dict[str, Any] = {}
        for key, value in parameters.items():
            if value is None:
                continue
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            prepared[key.upper() if self._uppercase else key] = value
        return prepared

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger_build(self, parameters: dict[str, Any] | None = None) -> BuildInfo:
        params = self._prepare_parameters(parameters or {})
        endpoint = "buildWithParameters" if params else "build"
        logger.info("Triggering Jenkins build for job: %s", self._job_name)
        if params:
            logger.debug("Build parameters: %s", params)

        try:
            response = await call_with_retry(
                self._retry.with_retry_on(is_connect_error),
                self._request,
                "POST",
                f"{self.job_path}/{endpoint}",
                params=params or None,
                description=f"POST {endpoint}",
            )
        except httpx.HTTPError as exc:
            logger.error("Jenkins trigger error: %s", exc)
            raise TriggerError(f"Failed to trigger Jenkins build: {exc}") from exc

        build_number = await self._resolve_build_number(response.headers.get("Location"))
        logger.info("Build #%s triggered successfully", build_number)
        return BuildInfo(
            build_id=str(build_number),
            build_number=build_number,
            build_url=self.build_url(build_number),
        )

    async def _resolve_build_number(self, queue_location: str | None) -> int:
        """Wait for the queued build to get a number.

        The queue item from the trigger response is preferred; without one
        the job's ``lastBuild`` is used.  The item is always read relative to
        the configured Jenkins URL, whatever host the ``Location`` header names.
        """
        queue_url = None
        if queue_location and "/queue/item/" in queue_location:
            item = queue_location.split("/queue/item/", 1)[1].strip("/").split("/")[0]
            if item:
                queue_url = f"/queue/item/{item}/api/json"

        for attempt in range(1, self._resolve_attempts + 1):
            await asyncio.sleep(self._queue_wait)
            try:
                if queue_url:
                    data = await self._get_json(queue_url, "GET queue item")
                    number = (data.get("executable") or {}).get("number")
                else:
                    data = await self._get_json(f"{self.job_path}/api/json", "GET job info")
                    number = (data.get("lastBuild") or {}).get("number")
            except (httpx.HTTPError, ValueError) as exc:
                raise TriggerError(f"Failed to trigger Jenkins build: {exc}") from exc
            if number:
                return int(number)
            logger.info(
                "Build not yet assigned a number (attempt %d/%d)", attempt, self._resolve_attempts
            )
        raise TriggerError(
            "Failed to trigger Jenkins build: No build number returned from Jenkins"
        )

    # ------------------------------------------------------------------
    # Status / stages
    # ------------------------------------------------------------------

    async def get_build_status(self, build_id: str) -> BuildStatusInfo:
        settled = self._statuses.get(build_id)
        if settled is not None:
            return settled
        try:
            data = await self._get_json(
                f"{self.job_path}/{build_id}/api/json", f"GET build #{build_id}"
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to get build status for #%s: %s", build_id, exc)
            raise PollError(f"Failed to get build status: {exc}") from exc

        building = bool(data.get("building"))
        status = BuildStatus.running if building else map_status(data.get("result"), _RESULT_STATUS)
        return self._statuses.settle(
            BuildStatusInfo(
                build_id=str(build_id),
                build_number=as_int(data.get("number"), as_int(build_id)),
                status=status,
                result=data.get("result"),
                building=building,
                duration=data.get("duration"),
                timestamp=as_int(data.get("timestamp")),
            )
        )

    async def get_stages(self, build_id: str) -> list[StageInfo] | None:
        try:
            data = await self._get_json(
                f"{self.job_path}/{build_id}/wfapi/describe", f"GET stages #{build_id}"
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise PollError(f"Failed to get stages: {exc}") from exc
        return [
            StageInfo(
                name=str(stage.get("name", "")),
                status=str(stage.get("status", "")),
                duration_millis=stage.get("durationMillis"),
            )
            for stage in data.get("stages") or []
        ]

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def stream_logs(self, build_id: str, on_chunk: LogChunkHandler) -> None:
        offset = 0
        consecutive_errors = 0
        url = f"{self.job_path}/{build_id}/logText/progressiveText"
        logger.info("Starting log stream for build #%s...", build_id)

        while True:
            try:
                response = await self._request("GET", url, params={"start": offset})
            except httpx.HTTPError as exc:
                consecutive_errors += 1
                logger.error(
                    "Error streaming logs (attempt %d/%d): %s",
                    consecutive_errors,
                    MAX_CONSECUTIVE_ERRORS,
                    exc,
                )
                if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    raise StreamExhaustedError(MAX_CONSECUTIVE_ERRORS) from exc
                await asyncio.sleep(self._poll_interval)
                continue

            consecutive_errors = 0
            if response.text:
                await on_chunk(response.text)
            next_start = response.headers.get("X-Text-Size")
            if next_start:
                offset = as_int(next_start, offset)
            if response.headers.get("X-More-Data", "").lower() != "true":
                break
            await asyncio.sleep(self._poll_interval)

        logger.info("Log stream completed.")

    async def get_complete_logs(self, build_id: str) -> str:
        try:
            response = await call_with_retry(
                self._retry,
                self._request,
                "GET",
                f"{self.job_path}/{build_id}/consoleText",
                description=f"GET console #{build_id}",
            )
        except httpx.HTTPError as exc:
            logger.error("Failed to get console output for #%s: %s", build_id, exc)
            raise PollError(f"Failed to get console output: {exc}") from exc
        return response.text

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Accept both flat payloads and the Notification plugin's shape."""
        if not isinstance(payload, Mapping):
            return {}
        build = payload.get("build")
        if isinstance(build, Mapping):
            scm = build.get("scm") if isinstance(build.get("scm"), Mapping) else {}
            native = build.get("status") or build.get("phase")
            number = build.get("number")
            return {
                "build_id": str(number) if number is not None else None,
                "build_number": number,
                "build_url": build.get("full_url") or build.get("url"),
                "job_name": payload.get("name"),
                "status": map_status(native, _WEBHOOK_STATUS),
                "result": native,
                "duration": build.get("duration"),
                "timestamp": build.get("timestamp"),
                "branch": scm.get("branch"),
                "commit": scm.get("commit"),
                "parameters": build.get("parameters"),
            }

        number = payload.get("buildNumber")
        return {
            "build_id": str(number) if number is not None else None,
            "build_number": number,
            "build_url": payload.get("buildUrl"),
            "job_name": payload.get("jobName"),
            "status": map_status(payload.get("status"), _WEBHOOK_STATUS),
            "result": payload.get("status"),
            "duration": payload.get("duration"),
            "timestamp": payload.get("timestamp"),
        }

    def normalize_build_data(self, partial: Mapping[str, Any]) -> NormalizedBuildData:
        native = partial.get("result") or partial.get("status")
        if isinstance(native, BuildStatus):
            status = native
        else:
            status = map_status(native, _WEBHOOK_STATUS)
        data = dict(partial)
        if not data.get("build_id") and data.get("build_number"):
            data["build_id"] = str(data["build_number"])
        return normalize_build_data(self.name, data, status=status, job_name=self._job_name)

    def validate_webhook(self, headers: Mapping[str, str], body: bytes | Mapping[str, Any]) -> bool:
        token = self.config.get("webhook_token")
        if not token:
            return True
        supplied = header_value(headers, "x-jenkins-token")
        if not supplied:
            logger.warning("No Jenkins token in webhook headers")
            return False
        return hmac.compare_digest(str(token).encode(), supplied.encode())
