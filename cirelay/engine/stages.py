"""Stage transition tracking for a single run."""

from __future__ import annotations

from collections.abc import Iterable

from cirelay.models.build import StageInfo

STAGE_NOT_EXECUTED = "NOT_EXECUTED"
STAGE_IN_PROGRESS = "IN_PROGRESS"


class StageTransitions:
    """Remembers which ``(stage, status)`` pairs were already reported.

    Each poll hands over a full snapshot of the stage list; :meth:`observe`
    returns only the pairs not seen before, in snapshot order.  Stages that
    did not execute are never reported.
    """

    def __init__(self) -> None:
        self._seen: set[tuple[str, str]] = set()

    def observe(self, snapshot: Iterable[StageInfo]) -> list[StageInfo]:
        fresh: list[StageInfo] = []
        for stage in snapshot:
            if stage.status == STAGE_NOT_EXECUTED:
                continue
            key = (stage.name, stage.status)
            if key in self._seen:
                continue
            self._seen.add(key)
            fresh.append(stage)
        return fresh

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen


def format_stage_label(build_number: int, stage: StageInfo) -> str:
    """``Build #12 - Running: Test (3s)``."""
    state = "Running" if stage.status == STAGE_IN_PROGRESS else "Completed"
    seconds = round((stage.duration_millis or 0) / 1000)
    return f"Build #{build_number} - {state}: {stage.name} ({seconds}s)"
