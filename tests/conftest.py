"""Shared test fixtures for cirelay."""

from __future__ import annotations

from typing import Any

import pytest

from cirelay.config import OrchestratorConfig
from cirelay.engine.orchestrator import BuildOrchestrator
from cirelay.errors import ConfigurationError, SinkReportError
from cirelay.models.build import BuildInfo, BuildStatus, BuildStatusInfo, StageInfo
from cirelay.models.schemas import ActionMessage
from cirelay.providers.base import default_webhook_path, normalize_build_data
from cirelay.providers.registry import ProviderRegistry
from cirelay.sink.memory import MemorySink
from cirelay.utils.retry import RetryPolicy

# --- Fake providers ---


class FakeProvider:
    """In-memory provider driven entirely by constructor arguments.

    The build stays ``building`` until every stage snapshot has been served
    and ``building_polls`` status reads have happened.
    """

    name = "fake"

    def __init__(
        self,
        config: dict | None = None,
        *,
        build_number: int = 7,
        chunks: list[str] | None = None,
        stages: list[list[StageInfo]] | None = None,
        building_polls: int = 0,
        result: str = "SUCCESS",
        final_status: BuildStatus = BuildStatus.success,
        duration: int | None = 12340,
        trigger_error: Exception | None = None,
        stream_error: Exception | None = None,
    ) -> None:
        self.config = dict(config or {})
        self.build_number = build_number
        self.chunks = list(chunks or [])
        self.stage_snapshots = stages
        self.building_polls = building_polls
        self.result = result
        self.final_status = final_status
        self.duration = duration
        self.trigger_error = trigger_error
        self.stream_error = stream_error
        self.triggered_with: dict[str, Any] | None = None
        self.status_calls = 0
        self.stage_calls = 0
        self.cleaned = False

    @property
    def webhook_path(self) -> str:
        return default_webhook_path(self.name)

    def validate_config(self) -> None:
        if self.config.get("invalid"):
            raise ConfigurationError("Fake configuration invalid: url is required")

    async def initialize(self) -> None:
        pass

    async def cleanup(self) -> None:
        self.cleaned = True

    async def trigger_build(self, parameters: dict[str, Any] | None = None) -> BuildInfo:
        if self.trigger_error is not None:
            raise self.trigger_error
        self.triggered_with = dict(parameters or {})
        n = self.build_number
        return BuildInfo(build_id=str(n), build_number=n, build_url=f"https://ci.example/job/app/{n}")

    def _stages_pending(self) -> bool:
        return self.stage_snapshots is not None and self.stage_calls < len(self.stage_snapshots)

    async def get_build_status(self, build_id: str) -> BuildStatusInfo:
        self.status_calls += 1
        building = self.status_calls <= self.building_polls or self._stages_pending()
        return BuildStatusInfo(
            build_id=build_id,
            build_number=self.build_number,
            status=BuildStatus.running if building else self.final_status,
            result=None if building else self.result,
            building=building,
            duration=None if building else self.duration,
        )

    async def stream_logs(self, build_id, on_chunk) -> None:
        for chunk in self.chunks:
            await on_chunk(chunk)
        if self.stream_error is not None:
            raise self.stream_error

    async def get_complete_logs(self, build_id: str) -> str:
        return "".join(self.chunks)

    async def get_stages(self, build_id: str) -> list[StageInfo] | None:
        if self.stage_snapshots is None:
            return None
        snapshot = self.stage_snapshots[min(self.stage_calls, len(self.stage_snapshots) - 1)]
        self.stage_calls += 1
        return list(snapshot)

    def parse_webhook_payload(self, payload):
        return dict(payload)

    def normalize_build_data(self, partial):
        return normalize_build_data(self.name, partial)

    def validate_webhook(self, headers, body) -> bool:
        token = self.config.get("token")
        if not token:
            return True
        return headers.get("x-fake-token") == token


class OtherProvider(FakeProvider):
    name = "other"


class NotAProvider:
    """Has a name and config check but none of the build operations."""

    name = "broken"

    def __init__(self, config: dict | None = None) -> None:
        self.config = config

    def validate_config(self) -> None:
        pass


# --- Sinks ---


class FlakySink(MemorySink):
    """MemorySink that fails the calls matching its predicates."""

    def __init__(self, *, fail_log=None, fail_update=None, fail_upsert: BaseException | None = None) -> None:
        super().__init__()
        self.fail_log = fail_log
        self.fail_update = fail_update
        self.fail_upsert = fail_upsert

    async def add_run_log(self, run_id, message, *, termination_status=None, status_label=None):
        if self.fail_log and self.fail_log(message):
            raise SinkReportError(f"log rejected: {message[:20]}")
        await super().add_run_log(
            run_id, message, termination_status=termination_status, status_label=status_label
        )

    async def update_run(self, run_id, *, status_label=None, links=None, status=None):
        if self.fail_update and self.fail_update(status_label):
            raise SinkReportError(f"update rejected: {status_label}")
        await super().update_run(run_id, status_label=status_label, links=links, status=status)

    async def upsert_entity(self, blueprint_id, entity, *, run_id=None):
        if self.fail_upsert is not None:
            raise self.fail_upsert
        await super().upsert_entity(blueprint_id, entity, run_id=run_id)


# --- Helpers ---


def make_message(identifier: str = "trigger_build", run_id: str = "r_abc123", **properties) -> ActionMessage:
    return ActionMessage.model_validate(
        {
            "context": {"runId": run_id, "by": {"email": "dev@example.com"}},
            "action": {"identifier": identifier},
            "properties": properties,
        }
    )


def stage(name: str, status: str, millis: int | None = 1000) -> StageInfo:
    return StageInfo(name=name, status=status, duration_millis=millis)


NO_WAIT = RetryPolicy(max_attempts=3, backoff=lambda attempt: 0)


# --- Fixtures ---


@pytest.fixture
def settings():
    return OrchestratorConfig(stage_poll_interval=0, completion_poll_interval=0)


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def registry():
    return ProviderRegistry()


@pytest.fixture
def fake_provider(registry):
    return registry.register(FakeProvider)


@pytest.fixture
def orchestrator(registry, sink, settings):
    return BuildOrchestrator(registry, sink, settings.model_copy(update={"default_provider": "fake"}))
