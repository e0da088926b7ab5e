"""CI provider contract.

A provider is any object satisfying :class:`CIProvider`.  Providers do not
share a base class; the defaults every provider needs (config freezing,
required-field checks, webhook paths, build-data normalization) are plain
functions in this module that each provider composes as it sees fit.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from cirelay.errors import ConfigurationError
from cirelay.models.build import (
    BuildInfo,
    BuildStatus,
    BuildStatusInfo,
    NormalizedBuildData,
    StageInfo,
)

LogChunkHandler = Callable[[str], Awaitable[None]]


@runtime_checkable
class CIProvider(Protocol):
    """Capabilities every CI backend implements."""

    name: str

    @property
    def webhook_path(self) -> str: ...

    def validate_config(self) -> None:
        """Raise :class:`ConfigurationError` if required fields are missing."""

    async def initialize(self) -> None: ...

    async def cleanup(self) -> None: ...

    async def trigger_build(self, parameters: dict[str, Any] | None = None) -> BuildInfo:
        """Start a build; the returned ``build_id`` handles all later polling."""

    async def get_build_status(self, build_id: str) -> BuildStatusInfo:
        """Side-effect-free status read."""

    async def stream_logs(self, build_id: str, on_chunk: LogChunkHandler) -> None:
        """Deliver log output to *on_chunk* until the provider has no more data."""

    async def get_complete_logs(self, build_id: str) -> str: ...

    async def get_stages(self, build_id: str) -> list[StageInfo] | None:
        """Return a stage-list snapshot, or ``None`` when stages are unsupported."""

    def parse_webhook_payload(self, payload: Mapping[str, Any]) -> dict[str, Any]: ...

    def normalize_build_data(self, partial: Mapping[str, Any]) -> NormalizedBuildData: ...

    def validate_webhook(self, headers: Mapping[str, str], body: bytes | Mapping[str, Any]) -> bool: ...


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------


def freeze_config(config: Mapping[str, Any] | None) -> Mapping[str, Any]:
    """Return a read-only copy of *config*."""
    return MappingProxyType(dict(config or {}))


def require_fields(provider_label: str, config: Mapping[str, Any], fields: dict[str, str]) -> None:
    """Raise :class:`ConfigurationError` listing every missing field.

    *fields* maps config keys to the message used when the key is absent.
    """
    errors = [msg for key, msg in fields.items() if not config.get(key)]
    if errors:
        raise ConfigurationError(f"{provider_label} configuration invalid: {', '.join(errors)}")


def default_webhook_path(name: str) -> str:
    return f"/webhook/{name}"


def map_status(native: Any, table: Mapping[str, BuildStatus]) -> BuildStatus:
    """Look up a native status code; unrecognized codes map to ``pending``."""
    if not isinstance(native, str):
        return BuildStatus.pending
    return table.get(native, BuildStatus.pending)


def as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_build_data(
    provider: str,
    partial: Mapping[str, Any],
    *,
    status: BuildStatus | None = None,
    job_name: str | None = None,
) -> NormalizedBuildData:
    """Project a partial build dict onto :class:`NormalizedBuildData`.

    Missing or malformed fields fall back to their defaults; this never
    raises for bad input.
    """
    raw_status = partial.get("status")
    if status is None:
        if isinstance(raw_status, BuildStatus):
            status = raw_status
        else:
            try:
                status = BuildStatus(raw_status)
            except ValueError:
                status = BuildStatus.pending
    build_number = as_int(partial.get("build_number"))
    duration = partial.get("duration")
    timestamp = partial.get("timestamp")
    parameters = partial.get("parameters")
    return NormalizedBuildData(
        provider=provider,
        build_id=str(partial.get("build_id") or ""),
        build_number=build_number,
        build_url=str(partial.get("build_url") or ""),
        status=status,
        result=str(partial.get("result") or ""),
        duration=as_int(duration) if duration else None,
        timestamp=as_int(timestamp) if timestamp else int(time.time() * 1000),
        branch=partial.get("branch"),
        commit=partial.get("commit"),
        author=partial.get("author"),
        parameters=dict(parameters) if isinstance(parameters, Mapping) else {},
        job_name=partial.get("job_name") or job_name,
    )


class TerminalStatusCache:
    """Keeps reported status monotonic per build.

    Once a terminal status has been seen for a build id, that snapshot is
    returned for every later read instead of whatever the remote reports.
    Only the most recently settled ``max_builds`` builds are kept.
    """

    def __init__(self, max_builds: int = 1024) -> None:
        self.max_builds = max_builds
        self._terminal: OrderedDict[str, BuildStatusInfo] = OrderedDict()

    def __len__(self) -> int:
        return len(self._terminal)

    def get(self, build_id: str) -> BuildStatusInfo | None:
        return self._terminal.get(build_id)

    def settle(self, info: BuildStatusInfo) -> BuildStatusInfo:
        previous = self._terminal.get(info.build_id)
        if previous is not None:
            self._terminal.move_to_end(info.build_id)
            return previous
        if info.status.is_terminal and not info.building:
            self._terminal[info.build_id] = info
            while len(self._terminal) > self.max_builds:
                self._terminal.popitem(last=False)
        return info


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup over any mapping."""
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
