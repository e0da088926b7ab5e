"""Status sink interface.

A sink is the platform that displays run progress to the user.  Every call
is keyed by the run id of the action being processed.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Protocol, runtime_checkable

# Termination statuses accepted by ``add_run_log``.
SUCCESS = "SUCCESS"
FAILURE = "FAILURE"


@runtime_checkable
class StatusSink(Protocol):
    async def update_run(
        self,
        run_id: str,
        *,
        status_label: str | None = None,
        links: list[str] | None = None,
        status: str | None = None,
    ) -> None:
        """Update the label, links or status of a run."""

    async def add_run_log(
        self,
        run_id: str,
        message: str,
        *,
        termination_status: str | None = None,
        status_label: str | None = None,
    ) -> None:
        """Append a log line; a termination status closes the run, once."""

    async def upsert_entity(
        self,
        blueprint_id: str,
        entity: dict[str, Any],
        *,
        run_id: str | None = None,
    ) -> None:
        """Create or merge an entity in *blueprint_id*."""

    async def close(self) -> None: ...


class TerminationGuard:
    """Tracks which runs already received a termination status.

    A run only counts as closed once :meth:`mark` records that the sink
    accepted its termination; a rejected attempt leaves it open so a later
    status can still close it.  The most recent ``max_runs`` closed runs are
    remembered.
    """

    def __init__(self, max_runs: int = 10_000) -> None:
        self.max_runs = max_runs
        self._closed: OrderedDict[str, str] = OrderedDict()

    def admit(self, run_id: str, termination_status: str | None) -> str | None:
        """Return *termination_status* if it may be sent, else ``None``."""
        if termination_status is None or run_id in self._closed:
            return None
        return termination_status

    def mark(self, run_id: str, termination_status: str) -> None:
        self._closed[run_id] = termination_status
        self._closed.move_to_end(run_id)
        while len(self._closed) > self.max_runs:
            self._closed.popitem(last=False)

    def is_closed(self, run_id: str) -> bool:
        return run_id in self._closed

    def __len__(self) -> int:
        return len(self._closed)
