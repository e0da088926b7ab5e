"""Routes inbound action messages and closes their runs."""

from __future__ import annotations

import logging

from cirelay.config import OrchestratorConfig
from cirelay.engine.orchestrator import BuildOrchestrator, RunOutcome
from cirelay.models.schemas import ActionMessage
from cirelay.sink.base import FAILURE, SUCCESS, StatusSink
from cirelay.utils.text import error_message

logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Handles one action message end to end.

    Build and deploy actions go through the :class:`BuildOrchestrator`;
    anything else is acknowledged only.  Every processed run ends with
    exactly one terminal status on the sink.
    """

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        sink: StatusSink,
        settings: OrchestratorConfig | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.sink = sink
        self.settings = settings or orchestrator.settings

    def wants_build(self, identifier: str) -> bool:
        return any(keyword in identifier for keyword in self.settings.action_keywords)

    async def process(self, message: ActionMessage) -> RunOutcome | None:
        run_id = message.run_id
        identifier = message.action.identifier
        logger.info(
            "Processing action %s (run %s, user %s)", identifier, run_id, message.context.by.email
        )
        logger.debug("Action properties: %s", message.properties)

        try:
            await self.sink.update_run(run_id, status_label="Processing action...")
            await self.sink.add_run_log(run_id, f"Started processing action: {identifier}")

            outcome = None
            if self.wants_build(identifier):
                outcome = await self.orchestrator.run(message)
            else:
                logger.warning("No specific handler for action: %s", identifier)
                await self.sink.add_run_log(run_id, f"Received action: {identifier}")

            await self.sink.add_run_log(
                run_id,
                "Action completed successfully",
                termination_status=SUCCESS,
                status_label="Completed",
            )
        except Exception as exc:
            msg = error_message(exc)
            logger.error("Error processing action %s: %s", identifier, msg)
            try:
                await self.sink.add_run_log(
                    run_id,
                    f"Action failed: {msg}",
                    termination_status=FAILURE,
                    status_label="Failed",
                )
            except Exception as report_exc:
                logger.error("Could not close run %s: %s", run_id, report_exc)
            raise
        return outcome
