"""Build orchestration for a single action run.

The :class:`BuildOrchestrator` takes one :class:`ActionMessage`, triggers a
build on the provider it names and relays progress to the status sink until
the remote build has truly finished.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from cirelay.config import OrchestratorConfig
from cirelay.engine.stages import StageTransitions, format_stage_label
from cirelay.errors import BuildFailedError, ConfigurationError, PollError
from cirelay.models.build import BuildInfo, BuildStatus, BuildStatusInfo
from cirelay.models.schemas import ActionMessage
from cirelay.providers.base import CIProvider
from cirelay.providers.registry import ProviderRegistry
from cirelay.sink.base import StatusSink
from cirelay.utils.text import error_message, slugify

logger = logging.getLogger(__name__)

LOG_SEPARATOR = "─" * 80

# Action properties that steer the relay and are not copied onto entities.
_ENTITY_SKIP_KEYS = frozenset(
    {
        "provider",
        "ci_provider",
        "serviceName",
        "service_name",
        "blueprintId",
        "entityIdentifier",
        "entityTitle",
        "entityProperties",
        "relations",
    }
)


@dataclass
class RunOutcome:
    run_id: str
    provider: str
    build: BuildInfo
    status: BuildStatusInfo
    stages_reported: int = 0
    entity_identifier: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status.status == BuildStatus.success


def resolve_provider_name(properties: dict[str, Any], default: str) -> str:
    return properties.get("provider") or properties.get("ci_provider") or default


def service_fields(properties: dict[str, Any]) -> dict[str, str]:
    return {
        "service_name": properties.get("serviceName") or properties.get("service_name") or "service",
        "version": properties.get("version") or "1.0.0",
        "environment": properties.get("environment") or "dev",
        "branch": properties.get("branch") or "main",
    }


def build_entity(properties: dict[str, Any], build: BuildInfo, provider_name: str) -> dict[str, Any]:
    """Project a successful build onto an entity of the service catalog."""
    fields = service_fields(properties)
    identifier = properties.get("entityIdentifier") or slugify(
        f"{fields['service_name']}-{fields['environment']}"
    )
    entity_properties: dict[str, Any] = {
        "service_name": fields["service_name"],
        "version": fields["version"],
        "environment": fields["environment"],
        "last_deployed": datetime.now(timezone.utc).isoformat(),
        "build_number": build.build_number,
        "build_url": build.build_url,
        "ci_provider": provider_name,
        "branch": fields["branch"],
    }
    entity_properties.update(
        {k: v for k, v in properties.items() if k not in _ENTITY_SKIP_KEYS and v is not None}
    )
    entity_properties.update(properties.get("entityProperties") or {})
    return {
        "identifier": identifier,
        "title": properties.get("entityTitle") or f"{fields['service_name']} ({fields['environment']})",
        "properties": entity_properties,
        "relations": properties.get("relations") or {},
    }


class BuildOrchestrator:
    """Drives one action run from trigger to terminal result.

    Parameters
    ----------
    registry:
        Registry the provider named by the action is looked up in.
    sink:
        Where labels, links, log lines and entities are reported.
    settings:
        Chunk size, poll intervals and entity options.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        sink: StatusSink,
        settings: OrchestratorConfig | None = None,
    ) -> None:
        self.registry = registry
        self.sink = sink
        self.settings = settings or OrchestratorConfig()

    def build_parameters(self, run_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        fields = service_fields(properties)
        parameters: dict[str, Any] = {
            "SERVICE_NAME": fields["service_name"],
            "VERSION": fields["version"],
            "ENVIRONMENT": fields["environment"],
            "BRANCH": fields["branch"],
            self.settings.correlation_param: run_id,
        }
        parameters.update(properties)
        return parameters

    async def run(self, message: ActionMessage) -> RunOutcome:
        properties = dict(message.properties)
        provider_name = resolve_provider_name(properties, self.settings.default_provider)
        provider = self.registry.require(provider_name)
        run_id = message.run_id

        try:
            return await self._execute(run_id, provider_name, provider, properties)
        except Exception as exc:
            msg = error_message(exc)
            logger.error("Build for run %s failed: %s", run_id, msg)
            try:
                await self.sink.add_run_log(run_id, f"Build failed: {msg}")
            except Exception as report_exc:
                logger.error("Could not report failure of run %s: %s", run_id, report_exc)
            raise

    async def _execute(
        self,
        run_id: str,
        provider_name: str,
        provider: CIProvider,
        properties: dict[str, Any],
    ) -> RunOutcome:
        fields = service_fields(properties)
        await self._log(run_id, f"Starting build using {provider_name}...")
        await self._log(run_id, f"Service: {fields['service_name']}")
        await self._log(run_id, f"Version: {fields['version']}")
        await self._log(run_id, f"Environment: {fields['environment']}")
        await self._log(run_id, f"Branch: {fields['branch']}")

        await self._log(run_id, "Triggering build...")
        build = await provider.trigger_build(self.build_parameters(run_id, properties))
        logger.info("Build #%s started on %s for run %s", build.build_number, provider_name, run_id)
        await self._log(run_id, f"Build #{build.build_number} started")
        await self.sink.update_run(
            run_id,
            links=[build.build_url],
            status_label=f"Build #{build.build_number} in progress",
        )

        transitions = StageTransitions()
        status = await self._follow(run_id, provider, build, transitions)

        duration = status.duration_seconds
        result = status.result or status.status.value.upper()
        await self.sink.update_run(run_id, status_label=f"Build {result} ({duration}s)")
        if status.status != BuildStatus.success:
            raise BuildFailedError(result)

        await self._log(
            run_id, f"Successfully completed build #{build.build_number}!\nDuration: {duration}s"
        )
        outcome = RunOutcome(
            run_id=run_id,
            provider=provider_name,
            build=build,
            status=status,
            stages_reported=len(transitions),
        )
        if self.settings.auto_create_entities:
            outcome.entity_identifier = await self._upsert_entity(run_id, provider_name, build, properties)
        else:
            logger.info("Entity auto-creation is disabled")
        return outcome

    async def _log(self, run_id: str, message: str) -> None:
        await self.sink.add_run_log(run_id, message)

    # ------------------------------------------------------------------
    # Relays
    # ------------------------------------------------------------------

    async def _follow(
        self,
        run_id: str,
        provider: CIProvider,
        build: BuildInfo,
        transitions: StageTransitions,
    ) -> BuildStatusInfo:
        """Run the log relay and the stage relay until the build stops."""
        stop = asyncio.Event()
        main = asyncio.create_task(self._relay_logs(run_id, provider, build))
        stages = asyncio.create_task(self._relay_stages(run_id, provider, build, transitions, stop))
        pending: set[asyncio.Task] = {main, stages}
        try:
            while main in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if exc is not None:
                        raise exc
            stop.set()
            if stages in pending:
                await stages
                pending.discard(stages)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Catch transitions that happened between the last poll and completion.
        await self._sweep_stages(run_id, provider, build, transitions)
        return main.result()

    async def _relay_logs(self, run_id: str, provider: CIProvider, build: BuildInfo) -> BuildStatusInfo:
        chunk_size = self.settings.log_chunk_size
        buffer = ""

        async def on_chunk(chunk: str) -> None:
            nonlocal buffer
            buffer += chunk
            if len(buffer) >= chunk_size:
                text, buffer = buffer, ""
                await self.sink.add_run_log(run_id, text)

        await self._log(run_id, "Streaming build logs...")
        await self._log(run_id, LOG_SEPARATOR)
        await provider.stream_logs(build.build_id, on_chunk)
        if buffer:
            text, buffer = buffer, ""
            await self.sink.add_run_log(run_id, text)
        await self._log(run_id, LOG_SEPARATOR)

        status = await provider.get_build_status(build.build_id)
        while status.building:
            logger.debug("Build #%s still running, waiting...", build.build_number)
            await asyncio.sleep(self.settings.completion_poll_interval)
            status = await provider.get_build_status(build.build_id)
        logger.info("Build #%s finished: %s", build.build_number, status.result or status.status.value)
        return status

    async def _relay_stages(
        self,
        run_id: str,
        provider: CIProvider,
        build: BuildInfo,
        transitions: StageTransitions,
        stop: asyncio.Event,
    ) -> None:
        while not stop.is_set():
            if not await self._sweep_stages(run_id, provider, build, transitions):
                return
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.settings.stage_poll_interval)

    async def _sweep_stages(
        self,
        run_id: str,
        provider: CIProvider,
        build: BuildInfo,
        transitions: StageTransitions,
    ) -> bool:
        """Report new stage transitions; False when the provider has no stages."""
        try:
            snapshot = await provider.get_stages(build.build_id)
        except PollError as exc:
            logger.debug("Could not read stages for build #%s: %s", build.build_number, exc)
            return True
        if snapshot is None:
            return False
        for stage in transitions.observe(snapshot):
            logger.info("Build #%s stage %s: %s", build.build_number, stage.name, stage.status)
            await self.sink.update_run(run_id, status_label=format_stage_label(build.build_number, stage))
        return True

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def _upsert_entity(
        self,
        run_id: str,
        provider_name: str,
        build: BuildInfo,
        properties: dict[str, Any],
    ) -> str | None:
        await self._report_quietly(run_id, "Creating/updating entity in Port...")
        try:
            blueprint_id = properties.get("blueprintId") or self.settings.entity_blueprint_id
            if not blueprint_id:
                raise ConfigurationError("no entity blueprint configured")
            entity = build_entity(properties, build, provider_name)
            await self.sink.upsert_entity(blueprint_id, entity, run_id=run_id)
        except Exception as exc:
            msg = error_message(exc)
            logger.warning("Failed to create entity: %s", msg)
            await self._report_quietly(run_id, f"Warning: Failed to create entity: {msg}")
            return None
        await self._report_quietly(
            run_id, f"Entity '{entity['identifier']}' created/updated in blueprint '{blueprint_id}'"
        )
        return entity["identifier"]

    async def _report_quietly(self, run_id: str, message: str) -> None:
        # Entity reporting never changes the outcome of a successful build.
        try:
            await self._log(run_id, message)
        except Exception as exc:
            logger.warning("Could not report to run %s: %s", run_id, error_message(exc))
