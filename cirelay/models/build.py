"""Build data shared by every CI provider."""

from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field
from typing import Any


class BuildStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    success = "success"
    failure = "failure"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({BuildStatus.success, BuildStatus.failure, BuildStatus.cancelled})


@dataclass(frozen=True)
class BuildInfo:
    """Handle returned by a trigger.

    ``build_id`` is the only value used for subsequent polling calls.
    """

    build_id: str
    build_number: int
    build_url: str
    pipeline_id: str | None = None


@dataclass
class BuildStatusInfo:
    build_id: str
    build_number: int
    status: BuildStatus
    result: str | None = None
    building: bool = False
    duration: int | None = None
    timestamp: int = 0
    branch: str | None = None
    commit: str | None = None
    author: str | None = None

    @property
    def duration_seconds(self) -> str:
        """Duration formatted for status labels, ``N/A`` when unknown."""
        if not self.duration:
            return "N/A"
        return f"{self.duration / 1000:.2f}"


@dataclass(frozen=True)
class StageInfo:
    name: str
    status: str
    duration_millis: int | None = None


@dataclass
class NormalizedBuildData:
    provider: str
    build_id: str = ""
    build_number: int = 0
    build_url: str = ""
    status: BuildStatus = BuildStatus.pending
    result: str = ""
    duration: int | None = None
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    branch: str | None = None
    commit: str | None = None
    author: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    job_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data
