"""Configuration for cirelay, read from a YAML file.

Any string value may reference environment variables as ``${NAME}``.  Names
that are not set are left as written, so a provider whose credentials are
absent can be recognised and skipped instead of registering with an empty
token.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from cirelay.errors import ConfigurationError

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _expand(value: str) -> str:
    return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)


def _map_strings(obj: Any, fn: Callable[[str], str]) -> Any:
    """Apply *fn* to every string nested in dicts and lists."""
    if isinstance(obj, str):
        return fn(obj)
    if isinstance(obj, dict):
        return {key: _map_strings(value, fn) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_map_strings(value, fn) for value in obj]
    return obj


def _strings(obj: Any) -> Iterator[str]:
    if isinstance(obj, str):
        yield obj
    elif isinstance(obj, dict):
        for value in obj.values():
            yield from _strings(value)
    elif isinstance(obj, list):
        for value in obj:
            yield from _strings(value)


def has_unresolved_env(obj: Any) -> bool:
    """True if a ``${VAR}`` placeholder survived interpolation somewhere in *obj*."""
    return any(_ENV_PATTERN.search(text) for text in _strings(obj))


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    dir: str = "./logs"


class SinkConfig(BaseModel):
    type: str = "port"
    base_url: str = "https://api.getport.io/v1"
    client_id: str = ""
    client_secret: str = ""
    token_ttl_seconds: int = 55 * 60
    timeout: float = 30.0


class KafkaConfig(BaseModel):
    brokers: list[str] = Field(default_factory=list)
    username: str = ""
    password: str = ""
    group_id: str = ""
    org_id: str = ""
    ssl: bool = True
    reconnect_attempts: int = 5
    reconnect_delay: float = 5.0

    @property
    def actions_topic(self) -> str:
        return f"{self.org_id}.runs"


class HttpRetryConfig(BaseModel):
    max_attempts: int = 3
    base_delay: float = 1.0


class OrchestratorConfig(BaseModel):
    default_provider: str = "jenkins"
    correlation_param: str = "PORT_RUN_ID"
    log_chunk_size: int = 500
    stage_poll_interval: float = 1.0
    completion_poll_interval: float = 2.0
    auto_create_entities: bool = False
    entity_blueprint_id: str | None = None
    action_keywords: list[str] = Field(default_factory=lambda: ["build", "deploy"])


class ProviderEntry(BaseModel):
    type: str
    enabled: bool = True
    config: dict = Field(default_factory=dict)


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    http_retry: HttpRetryConfig = Field(default_factory=HttpRetryConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    providers: dict[str, ProviderEntry] = Field(default_factory=dict)


def load_config(path: str | Path = "cirelay.yaml") -> AppConfig:
    """Read *path* and validate it into an :class:`AppConfig`.

    A missing file yields the defaults.  A file that does not validate raises
    :class:`ConfigurationError`.
    """
    path = Path(path)
    if not path.is_file():
        logger.info("Config file %s not found, using defaults", path)
        return AppConfig()
    raw = yaml.safe_load(path.read_text()) or {}
    try:
        return AppConfig.model_validate(_map_strings(raw, _expand))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid config {path}: {exc}") from exc
