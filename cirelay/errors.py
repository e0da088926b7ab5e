"""Error taxonomy shared across providers, sinks and the orchestrator."""

from __future__ import annotations


class CIRelayError(Exception):
    """Base exception for all cirelay errors."""


class ConfigurationError(CIRelayError):
    """Raised at registration time when a provider config is invalid."""


class TriggerError(CIRelayError):
    """Raised when a build cannot be triggered or resolved."""


class PollError(CIRelayError):
    """Raised when a status, stage or log read fails."""


class StreamExhaustedError(PollError):
    """Raised when log streaming hits its consecutive failure bound."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Failed to stream logs after {attempts} attempts")


class SinkReportError(CIRelayError):
    """Raised when the status sink rejects or fails a call."""


class UnknownProviderError(CIRelayError):
    """Raised when an action names a provider that is not registered."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = list(available)
        super().__init__(
            f"CI/CD provider '{name}' is not registered. "
            f"Available providers: {', '.join(self.available) or 'none'}"
        )


class BuildFailedError(CIRelayError):
    """Raised when the remote build finishes without success."""

    def __init__(self, result: str | None) -> None:
        self.result = result
        super().__init__(f"Build failed with status: {result}")


class ConsumerFatalError(CIRelayError):
    """Raised when the event consumer exhausts its reconnect attempts."""
