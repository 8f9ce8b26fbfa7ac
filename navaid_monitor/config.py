"""Configuration loading utilities."""
from __future__ import annotations

import json
import os
import pathlib
import tomllib
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional


class ConfigError(RuntimeError):
    """Raised when configuration loading fails."""


@dataclass(frozen=True)
class MonitorSettings:
    host: str = "0.0.0.0"
    ws_host: str = "0.0.0.0"
    ws_port: int = 3000
    equipment_path: str = "config/equipment.json"
    liveness_timeout_ms: int = 30_000
    sweep_interval_s: float = 10.0
    heartbeat_interval_s: float = 30.0
    history_capacity: int = 100
    allow_unknown_sources: bool = False


_ENV_OVERRIDES = {
    "NAVAID_HOST": "host",
    "NAVAID_WS_HOST": "ws_host",
    "NAVAID_WS_PORT": "ws_port",
    "NAVAID_EQUIPMENT_CONFIG": "equipment_path",
    "NAVAID_LIVENESS_TIMEOUT_MS": "liveness_timeout_ms",
    "NAVAID_ALLOW_UNKNOWN_SOURCES": "allow_unknown_sources",
}


def load_config(path: str | pathlib.Path) -> dict[str, Any]:
    """Load a configuration file (TOML or JSON)."""
    path_obj = pathlib.Path(path)
    if not path_obj.exists():
        raise ConfigError(f"Config path does not exist: {path_obj}")

    suffix = path_obj.suffix.lower()
    try:
        if suffix == ".toml":
            with path_obj.open("rb") as handle:
                return tomllib.load(handle)
        if suffix == ".json":
            with path_obj.open("r", encoding="utf-8") as handle:
                return json.load(handle)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not parse {path_obj}: {exc}") from exc

    raise ConfigError(f"Unsupported config format: {path_obj.suffix}")


def settings_from_mapping(
    data: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> MonitorSettings:
    """Build settings from a ``[monitor]`` table (or top level), then apply env overrides.

    Unknown keys are ignored so the same file can carry other sections.
    """
    source: Mapping[str, Any] = data or {}
    section = source.get("monitor", source)
    if not isinstance(section, Mapping):
        raise ConfigError("'monitor' section must be a table")

    known = {f.name: f for f in fields(MonitorSettings)}
    values: dict[str, Any] = {}
    for key, value in section.items():
        if key in known:
            values[key] = _coerce(key, value, known[key].type)

    env = os.environ if environ is None else environ
    for env_name, key in _ENV_OVERRIDES.items():
        raw = env.get(env_name)
        if raw is not None and raw.strip():
            values[key] = _coerce(key, raw, known[key].type)

    settings = MonitorSettings(**values)
    _validate(settings)
    return settings


def _coerce(key: str, value: Any, type_name: Any) -> Any:
    kind = type_name if isinstance(type_name, str) else getattr(type_name, "__name__", str(type_name))
    try:
        if kind == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
            raise ValueError(value)
        if kind == "int":
            if isinstance(value, bool):
                raise ValueError(value)
            return int(value)
        if kind == "float":
            return float(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from exc


def _validate(settings: MonitorSettings) -> None:
    if not 0 <= settings.ws_port <= 65535:
        raise ConfigError(f"ws_port out of range: {settings.ws_port}")
    if settings.liveness_timeout_ms <= 0:
        raise ConfigError("liveness_timeout_ms must be positive")
    if settings.sweep_interval_s <= 0 or settings.heartbeat_interval_s <= 0:
        raise ConfigError("sweep_interval_s and heartbeat_interval_s must be positive")
    if settings.history_capacity < 1:
        raise ConfigError("history_capacity must be >= 1")
