"""In-memory status sink for development and tests."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from cirelay.sink.base import TerminationGuard

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    updates: list[dict[str, Any]] = field(default_factory=list)
    logs: list[dict[str, Any]] = field(default_factory=list)
    termination_status: str | None = None

    @property
    def status_labels(self) -> list[str]:
        return [u["status_label"] for u in self.updates if u.get("status_label")]

    @property
    def messages(self) -> list[str]:
        return [entry["message"] for entry in self.logs]


class MemorySink:
    """Records every sink call per run instead of sending it anywhere.

    Suitable for dry runs and single-process development; nothing is
    persisted.
    """

    def __init__(self) -> None:
        self.runs: dict[str, RunRecord] = {}
        self.entities: list[dict[str, Any]] = []
        self._terminations = TerminationGuard()

    def run(self, run_id: str) -> RunRecord:
        return self.runs.setdefault(run_id, RunRecord())

    async def update_run(
        self,
        run_id: str,
        *,
        status_label: str | None = None,
        links: list[str] | None = None,
        status: str | None = None,
    ) -> None:
        self.run(run_id).updates.append(
            {"status_label": status_label, "links": list(links or []), "status": status}
        )
        logger.debug("Run %s updated: %s", run_id, status_label or status)

    async def add_run_log(
        self,
        run_id: str,
        message: str,
        *,
        termination_status: str | None = None,
        status_label: str | None = None,
    ) -> None:
        record = self.run(run_id)
        admitted = self._terminations.admit(run_id, termination_status)
        if admitted:
            self._terminations.mark(run_id, admitted)
            record.termination_status = admitted
        record.logs.append(
            {
                "message": message,
                "termination_status": admitted,
                "status_label": status_label,
                "created_at": time.time(),
            }
        )

    async def upsert_entity(
        self,
        blueprint_id: str,
        entity: dict[str, Any],
        *,
        run_id: str | None = None,
    ) -> None:
        self.entities.append({"blueprint": blueprint_id, "entity": entity, "run_id": run_id})

    async def close(self) -> None:
        pass
