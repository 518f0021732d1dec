"""Runtime settings for the dispatch client, read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from . import constants

ENV_PREFIX = "RIDESYNC_"

# Project-level .env first, then one next to the working directory.  Values
# already present in the environment always win.
_ENV_CANDIDATES = [
    Path(__file__).resolve().parents[2] / ".env",
    Path.cwd() / ".env",
]


class ConfigError(ValueError):
    """Raised when a configuration value cannot be parsed."""


@dataclass(frozen=True)
class Settings:
    base_url: str = constants.DEFAULT_BASE_URL
    socket_host: str = constants.DEFAULT_SOCKET_HOST
    socket_port: int = constants.DEFAULT_SOCKET_PORT
    connect_timeout: float = constants.CONNECT_TIMEOUT
    request_timeout: float = constants.REQUEST_TIMEOUT
    heartbeat_interval: float = constants.HEARTBEAT_INTERVAL
    rest_backup_interval: float = constants.REST_BACKUP_INTERVAL
    degraded_after: float = constants.DEGRADED_AFTER_HEARTBEATS
    push_timeout_factor: float = constants.PUSH_TIMEOUT_FACTOR
    offer_ttl: float = constants.OFFER_TTL
    search_probe_interval: float = constants.SEARCH_PROBE_INTERVAL
    terminal_countdown: float = constants.TERMINAL_COUNTDOWN
    typing_idle: float = constants.TYPING_IDLE
    unread_refresh_interval: float = constants.UNREAD_REFRESH_INTERVAL
    location_update_interval: float = constants.LOCATION_UPDATE_INTERVAL
    reconnect_initial: float = constants.RECONNECT_INITIAL
    reconnect_max: float = constants.RECONNECT_MAX

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        load_files: bool = True,
        **overrides: Any,
    ) -> "Settings":
        if environ is None:
            if load_files:
                load_env_files()
            environ = os.environ
        values: Dict[str, Any] = {}
        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None or not raw.strip():
                continue
            values[field.name] = _parse(field.name, field.type, raw.strip())
        values.update({k: v for k, v in overrides.items() if v is not None})
        settings = cls(**values)
        settings.validate()
        return settings

    def validate(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"base_url must be an http(s) URL, got {self.base_url!r}")
        if not (0 < self.socket_port < 65536):
            raise ConfigError(f"socket_port out of range: {self.socket_port}")
        for field in fields(self):
            value = getattr(self, field.name)
            if isinstance(value, float) and value <= 0:
                raise ConfigError(f"{field.name} must be positive, got {value}")
        if self.reconnect_max < self.reconnect_initial:
            raise ConfigError("reconnect_max must not be smaller than reconnect_initial")


def load_env_files() -> None:
    for env_path in _ENV_CANDIDATES:
        if env_path.exists():
            load_dotenv(env_path, override=False)


def _parse(name: str, annotation: Any, raw: str) -> Any:
    kind = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", "")
    try:
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PREFIX}{name.upper()}={raw!r} is not a valid {kind}") from exc
    return raw
