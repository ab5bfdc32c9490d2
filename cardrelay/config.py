from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger("cardrelay.config")

DEFAULT_SECRET = "default_secret"


class ConfigError(Exception):
    """Configuration file or environment is unusable."""


class QueueSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    backend: Literal["file", "sqlite"] = "file"
    path: str = "message_queue.json"
    max_items: int = Field(100, ge=1)


class RelayConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    listen: str = "0.0.0.0:8443"
    auth_secret: Optional[str] = None
    db_path: str = "cardrelay.db"
    queue: QueueSettings = Field(default_factory=QueueSettings)
    drain_interval_secs: float = Field(0.5, gt=0)
    lookup_timeout_secs: float = Field(2.0, gt=0)
    token_max_age_secs: int = Field(86400, gt=0)
    ping_interval_secs: Optional[float] = Field(20.0, gt=0)
    log_level: str = "INFO"

    @field_validator("listen")
    @classmethod
    def _listen_host_port(cls, value: str) -> str:
        _split_listen(value)
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def host(self) -> str:
        return _split_listen(self.listen)[0]

    @property
    def port(self) -> int:
        return _split_listen(self.listen)[1]

    @property
    def secret(self) -> str:
        return self.auth_secret or DEFAULT_SECRET


def _split_listen(value: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"listen must be host:port, got {value!r}")
    return host, int(port)


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> RelayConfig:
    """Read YAML at ``path`` (if any) and apply ``AUTH_SECRET`` / ``WEBSOCKET_PORT`` overrides."""

    env = os.environ if env is None else env
    data: dict = {}
    if path is not None:
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read config {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"config {path} must be a mapping")

    if env.get("AUTH_SECRET"):
        data["auth_secret"] = env["AUTH_SECRET"]
    port = env.get("WEBSOCKET_PORT")
    if port:
        listen = str(data.get("listen", RelayConfig.model_fields["listen"].default))
        host = listen.rpartition(":")[0] or "0.0.0.0"
        data["listen"] = f"{host}:{port}"

    try:
        return RelayConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc


__all__ = ["RelayConfig", "QueueSettings", "ConfigError", "load_config", "DEFAULT_SECRET"]
