"""CircleCI provider.

CircleCI exposes no incremental log endpoint.  Streaming polls the job list
of a workflow while it runs and emits the output of each job once, as soon
as that job has finished.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx

from cirelay.errors import PollError, TriggerError
from cirelay.models.build import BuildInfo, BuildStatus, BuildStatusInfo, NormalizedBuildData, StageInfo
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

API_V2 = "https://circleci.com/api/v2"
API_V1 = "https://circleci.com/api/v1.1"
APP_URL = "https://app.circleci.com/pipelines"

_STATUS: dict[str, BuildStatus] = {
    "running": BuildStatus.running,
    "success": BuildStatus.success,
    "failed": BuildStatus.failure,
    "error": BuildStatus.failure,
    "failing": BuildStatus.failure,
    "unauthorized": BuildStatus.failure,
    "on_hold": BuildStatus.pending,
    "canceled": BuildStatus.cancelled,
}

# Workflow states in which jobs may still be running.
_ACTIVE_WORKFLOW = frozenset({"running", "on_hold", "failing"})

# Job states whose output is final.
_FINISHED_JOB = frozenset(
    {"success", "failed", "canceled", "infrastructure_fail", "timedout", "not_run", "unauthorized"}
)


class CircleCIProvider:
    """CircleCI implementation of the CI provider contract.

    Config keys:

    - ``api_token`` -- personal API token (required)
    - ``project_slug`` -- ``vcs/org/repo`` (required)
    - ``webhook_secret`` -- secret for ``circleci-signature`` verification
    - ``default_branch`` -- branch used when parameters carry none
      (default ``main``)
    - ``queue_wait`` / ``resolve_attempts`` -- wait between workflow lookups
      after a trigger (defaults ``3`` / ``5``)
    - ``poll_interval`` -- delay between job list polls while the workflow
      runs (default ``2``)
    """

    name = "circleci"

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.config = freeze_config(config)
        self._slug: str = str(self.config.get("project_slug") or "")
        self._webhook_secret: str | None = self.config.get("webhook_secret") or None
        self._default_branch: str = str(self.config.get("default_branch") or "main")
        self._queue_wait = float(self.config.get("queue_wait", 3.0))
        self._resolve_attempts = max(int(self.config.get("resolve_attempts", 5)), 1)
        self._poll_interval = float(self.config.get("poll_interval", 2.0))
        self._retry = retry or RetryPolicy()
        self._statuses = TerminalStatusCache()
        self._client = httpx.AsyncClient(
            headers={
                "Circle-Token": str(self.config.get("api_token") or ""),
                "Content-Type": "application/json",
            },
            timeout=float(self.config.get("timeout", 30.0)),
            transport=transport,
        )

    @property
    def webhook_path(self) -> str:
        return default_webhook_path(self.name)

    def validate_config(self) -> None:
        require_fields(
            "CircleCI",
            self.config,
            {
                "api_token": "api_token is required",
                "project_slug": "project_slug is required (format: vcs/org/repo)",
            },
        )

    async def initialize(self) -> None:
        pass

    async def cleanup(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    async def _get_json(self, url: str, description: str) -> Any:
        response = await call_with_retry(
            self._retry, self._request, "GET", url, description=description
        )
        return response.json()

    # ------------------------------------------------------------------
    # Trigger / status
    # ------------------------------------------------------------------

    async def trigger_build(self, parameters: dict[str, Any] | None = None) -> BuildInfo:
        parameters = dict(parameters or {})
        branch = parameters.get("branch") or parameters.get("BRANCH") or self._default_branch
        logger.info("Triggering CircleCI pipeline for: %s", self._slug)
        try:
            response = await call_with_retry(
                self._retry.with_retry_on(is_connect_error),
                self._request,
                "POST",
                f"{API_V2}/project/{self._slug}/pipeline",
                json={"parameters": parameters, "branch": branch},
                description="POST pipeline",
            )
            pipeline = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("CircleCI trigger error: %s", exc)
            raise TriggerError(f"Failed to trigger CircleCI pipeline: {exc}") from exc

        pipeline_id = pipeline.get("id")
        pipeline_number = as_int(pipeline.get("number"))
        if not pipeline_id:
            raise TriggerError("Failed to trigger CircleCI pipeline: no pipeline id returned")

        workflow_id = await self._resolve_workflow(pipeline_id)
        logger.info("Pipeline #%s triggered successfully", pipeline_number)
        return BuildInfo(
            build_id=workflow_id,
            build_number=pipeline_number,
            build_url=f"{APP_URL}/{self._slug}/{pipeline_number}/workflows/{workflow_id}",
            pipeline_id=pipeline_id,
        )

    async def _resolve_workflow(self, pipeline_id: str) -> str:
        for attempt in range(1, self._resolve_attempts + 1):
            await asyncio.sleep(self._queue_wait)
            try:
                data = await self._get_json(
                    f"{API_V2}/pipeline/{pipeline_id}/workflow", "GET pipeline workflows"
                )
            except (httpx.HTTPError, ValueError) as exc:
                raise TriggerError(f"Failed to trigger CircleCI pipeline: {exc}") from exc
            items = data.get("items") or []
            if items and items[0].get("id"):
                return str(items[0]["id"])
            logger.info(
                "Workflow not yet created for pipeline %s (attempt %d/%d)",
                pipeline_id,
                attempt,
                self._resolve_attempts,
            )
        raise TriggerError(
            f"Failed to trigger CircleCI pipeline: no workflow created for pipeline {pipeline_id}"
        )

    async def get_build_status(self, build_id: str) -> BuildStatusInfo:
        settled = self._statuses.get(build_id)
        if settled is not None:
            return settled
        try:
            data = await self._get_json(f"{API_V2}/workflow/{build_id}", f"GET workflow {build_id}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Failed to get workflow status for %s: %s", build_id, exc)
            raise PollError(f"Failed to get workflow status: {exc}") from exc

        native = data.get("status")
        created = _parse_time(data.get("created_at"))
        stopped = _parse_time(data.get("stopped_at"))
        duration = None
        if created and stopped:
            duration = int((stopped - created).total_seconds() * 1000)
        return self._statuses.settle(
            BuildStatusInfo(
                build_id=build_id,
                build_number=as_int(data.get("pipeline_number")),
                status=map_status(native, _STATUS),
                result=native,
                building=native in _ACTIVE_WORKFLOW and stopped is None,
                duration=duration,
                timestamp=int(created.timestamp() * 1000) if created else 0,
                branch=data.get("branch"),
            )
        )

    async def get_stages(self, build_id: str) -> list[StageInfo] | None:
        return None

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def _list_jobs(self, build_id: str) -> list[dict[str, Any]]:
        try:
            data = await self._get_json(f"{API_V2}/workflow/{build_id}/job", f"GET jobs {build_id}")
        except (httpx.HTTPError, ValueError) as exc:
            raise PollError(f"Failed to list workflow jobs: {exc}") from exc
        return list(data.get("items") or [])

    async def _emit_finished_jobs(self, build_id: str, emitted: set[Any], on_chunk: LogChunkHandler) -> None:
        for job in await self._list_jobs(build_id):
            job_number = job.get("job_number")
            if job_number is None or job_number in emitted:
                continue
            if job.get("status") not in _FINISHED_JOB:
                logger.debug("Job %s not finished yet (%s)", job.get("name"), job.get("status"))
                continue
            emitted.add(job_number)
            output = await self._job_output(job_number)
            await on_chunk(f"\n=== Job: {job.get('name', job_number)} ===\n")
            await on_chunk(output)

    async def stream_logs(self, build_id: str, on_chunk: LogChunkHandler) -> None:
        """Emit each job's output once it finishes, until the workflow stops."""
        logger.info("Starting log polling for workflow %s...", build_id)
        emitted: set[Any] = set()
        while True:
            await self._emit_finished_jobs(build_id, emitted, on_chunk)
            status = await self.get_build_status(build_id)
            if not status.building:
                break
            await asyncio.sleep(self._poll_interval)
        # Jobs that finished between the last pass and the workflow stopping.
        await self._emit_finished_jobs(build_id, emitted, on_chunk)
        logger.info("Log polling completed (%d job(s)).", len(emitted))

    async def _job_output(self, job_number: int) -> str:
        try:
            details = await self._get_json(
                f"{API_V1}/project/{self._slug}/{job_number}", f"GET job {job_number}"
            )
            parts: list[str] = []
            for step in details.get("steps") or []:
                for action in step.get("actions") or []:
                    output_url = action.get("output_url")
                    if not output_url:
                        continue
                    lines = await self._get_json(output_url, f"GET output {job_number}")
                    parts.extend(str(line.get("message", "")) for line in lines or [])
            return "".join(parts)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Could not fetch logs for job %s: %s", job_number, exc)
            return f"[Logs not available for job {job_number}]"

    async def get_complete_logs(self, build_id: str) -> str:
        chunks: list[str] = []

        async def _collect(chunk: str) -> None:
            chunks.append(chunk)

        await self._emit_finished_jobs(build_id, set(), _collect)
        return "".join(chunks)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            return {}
        workflow = payload.get("workflow") if isinstance(payload.get("workflow"), Mapping) else {}
        pipeline = payload.get("pipeline") if isinstance(payload.get("pipeline"), Mapping) else {}
        vcs = pipeline.get("vcs") if isinstance(pipeline.get("vcs"), Mapping) else {}
        trigger = pipeline.get("trigger") if isinstance(pipeline.get("trigger"), Mapping) else {}
        actor = trigger.get("actor") if isinstance(trigger.get("actor"), Mapping) else {}
        created = _parse_time(workflow.get("created_at"))
        return {
            "build_id": workflow.get("id"),
            "build_number": pipeline.get("number"),
            "build_url": workflow.get("url"),
            "status": map_status(workflow.get("status"), _STATUS),
            "result": workflow.get("status"),
            "timestamp": int(created.timestamp() * 1000) if created else None,
            "branch": vcs.get("branch"),
            "commit": vcs.get("revision"),
            "author": actor.get("login"),
            "job_name": workflow.get("name"),
        }

    def normalize_build_data(self, partial: Mapping[str, Any]) -> NormalizedBuildData:
        native = partial.get("result") or partial.get("status")
        status = native if isinstance(native, BuildStatus) else map_status(native, _STATUS)
        return normalize_build_data(self.name, partial, status=status)

    def validate_webhook(self, headers: Mapping[str, str], body: bytes | Mapping[str, Any]) -> bool:
        if not self._webhook_secret:
            logger.warning("CircleCI webhook secret not configured, skipping validation")
            return True

        signature = header_value(headers, "circleci-signature")
        if not signature:
            logger.warning("No CircleCI signature in webhook headers")
            return False

        if isinstance(body, (bytes, bytearray)):
            raw = bytes(body)
        else:
            raw = json.dumps(body, separators=(",", ":")).encode()
        expected = hmac.new(self._webhook_secret.encode(), raw, hashlib.sha256).hexdigest()

        # Header may carry several comma-separated "v1=<hex>" entries.
        for part in signature.split(","):
            candidate = part.strip()
            if candidate.startswith("v1="):
                candidate = candidate[3:]
            if hmac.compare_digest(expected.encode(), candidate.encode()):
                return True
        return False


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
