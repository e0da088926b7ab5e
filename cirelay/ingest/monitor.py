"""Background follow-up of builds reported by provider webhooks."""

from __future__ import annotations

import asyncio
import logging

from cirelay.errors import PollError, StreamExhaustedError
from cirelay.models.build import BuildStatus, NormalizedBuildData
from cirelay.providers.base import CIProvider
from cirelay.utils.retry import RetryPolicy, retrying
from cirelay.utils.text import error_message

logger = logging.getLogger(__name__)
build_log = logging.getLogger("cirelay.buildlog")


def is_transient_read_error(exc: BaseException) -> bool:
    return isinstance(exc, PollError) and not isinstance(exc, StreamExhaustedError)


class BuildMonitor:
    """Streams logs of running builds and fetches logs of finished ones.

    A running build is followed by at most one task at a time, keyed by
    ``<provider>-<build_id>``.
    """

    def __init__(self, retry: RetryPolicy | None = None) -> None:
        self._retry = (retry or RetryPolicy()).with_retry_on(is_transient_read_error)
        self._active: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    def active_keys(self) -> list[str]:
        return list(self._active)

    def __len__(self) -> int:
        return len(self._active)

    def watch(self, provider: CIProvider, data: NormalizedBuildData) -> asyncio.Task | None:
        """Start following *data*; returns the task, or None if already followed."""
        logger.info(
            "%s webhook received: build #%s status=%s url=%s",
            provider.name,
            data.build_number,
            data.status.value,
            data.build_url,
        )
        if data.status in (BuildStatus.running, BuildStatus.pending):
            key = f"{provider.name}-{data.build_id}"
            if key in self._active:
                logger.info("Build %s is already being monitored", key)
                return None
            task = asyncio.create_task(self._follow(provider, data))
            self._active[key] = task
            task.add_done_callback(lambda _t: self._active.pop(key, None))
            return task

        task = asyncio.create_task(self._fetch(provider, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _follow(self, provider: CIProvider, data: NormalizedBuildData) -> None:
        logger.info("Starting real-time log capture for build #%s...", data.build_number)

        async def on_chunk(chunk: str) -> None:
            build_log.info("%s", chunk.rstrip("\n"))

        try:
            await provider.stream_logs(data.build_id, on_chunk)
            status = await provider.get_build_status(data.build_id)
        except Exception as exc:
            logger.error("Error monitoring build #%s: %s", data.build_number, error_message(exc))
            return
        logger.info(
            "Build #%s completed: %s (duration %sms)",
            data.build_number,
            status.result or status.status.value,
            status.duration if status.duration is not None else "N/A",
        )

    async def _fetch(self, provider: CIProvider, data: NormalizedBuildData) -> None:
        logger.info("Fetching logs for completed build #%s...", data.build_number)
        try:
            fetch = retrying(self._retry, f"log fetch for build #{data.build_number}")(
                provider.get_complete_logs
            )
            logs = await fetch(data.build_id)
        except Exception as exc:
            logger.error("Error fetching logs: %s", error_message(exc))
            return
        logger.info(
            "Logs retrieved for build #%s (%s, %d chars)",
            data.build_number,
            data.status.value,
            len(logs),
        )

    async def shutdown(self) -> None:
        tasks = [*self._active.values(), *self._background]
        if tasks:
            logger.info("Stopping %d build monitor task(s)", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
