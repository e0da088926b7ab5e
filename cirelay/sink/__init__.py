"""Status sinks and the factory that picks one from config."""

from __future__ import annotations

from cirelay.config import AppConfig
from cirelay.errors import ConfigurationError
from cirelay.sink.base import FAILURE, SUCCESS, StatusSink
from cirelay.sink.memory import MemorySink
from cirelay.sink.port import PortSink
from cirelay.utils.retry import RetryPolicy

__all__ = ["FAILURE", "SUCCESS", "MemorySink", "PortSink", "StatusSink", "create_sink"]


def create_sink(config: AppConfig) -> StatusSink:
    sink_type = config.sink.type
    if sink_type == "memory":
        return MemorySink()
    if sink_type == "port":
        retry = RetryPolicy.from_config(config.http_retry)
        return PortSink(config.sink, retry=retry)
    raise ConfigurationError(f"Unknown sink type '{sink_type}'. Available: ['memory', 'port']")
