"""
Runtime settings for the batch process.

Responsibility
--------------
Builds one frozen ``BatchSettings`` from, in increasing precedence:
built-in defaults, an optional YAML file, and ``FORTUNE_BATCH_*``
environment variables.

The YAML file may be flat or grouped by section; ``calendar: {days: 10}``
and ``calendar_days: 10`` are the same setting.  The matching environment
variable is ``FORTUNE_BATCH_CALENDAR_DAYS``.

Failure modes
-------------
* Missing YAML file  -> ``ConfigurationError``.
* Malformed YAML or unknown key  -> ``ConfigurationError``.
* Value of the wrong type or out of range  -> ``ConfigurationError``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from fortune_kernel.exceptions import ConfigurationError, FortuneKernelError

from fortune_batch.domain.schedule import parse_cron

ENV_PREFIX = "FORTUNE_BATCH_"
CONFIG_PATH_ENV = "FORTUNE_BATCH_CONFIG"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class BatchSettings:
    database_url: str = "sqlite:///fortune_batch.db"
    timezone: str = "Asia/Tokyo"
    log_level: str = "INFO"

    calendar_enabled: bool = True
    calendar_cron: str = "0 0 * * *"
    calendar_days: int = 30
    calendar_retry_count: int = 3
    calendar_retry_delay: float = 300.0

    fortune_enabled: bool = True
    fortune_page_size: int = 100
    fortune_max_concurrent: int = 5
    fortune_retry_count: int = 3
    fortune_retry_delay: float = 600.0
    # "module:attribute" of the FortuneService implementation.
    fortune_service: str | None = None

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def validate(self, source: str = "settings") -> BatchSettings:
        """Return self, or raise ConfigurationError naming the bad field."""
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigurationError(source, f"unknown timezone {self.timezone!r}") from exc
        try:
            parse_cron(self.calendar_cron)
        except FortuneKernelError as exc:
            raise ConfigurationError(source, str(exc)) from exc

        for name in ("calendar_days", "fortune_page_size", "fortune_max_concurrent"):
            if getattr(self, name) < 1:
                raise ConfigurationError(source, f"{name} must be >= 1")
        for name in (
            "calendar_retry_count",
            "fortune_retry_count",
            "calendar_retry_delay",
            "fortune_retry_delay",
        ):
            if getattr(self, name) < 0:
                raise ConfigurationError(source, f"{name} must be >= 0")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(source, f"unknown log_level {self.log_level!r}")
        return self


_DEFAULTS = BatchSettings()
_FIELD_NAMES = tuple(f.name for f in fields(BatchSettings))


def _coerce(name: str, value: Any, source: str) -> Any:
    default = getattr(_DEFAULTS, name)
    if value is None:
        if name == "fortune_service":
            return None
        raise ConfigurationError(source, f"{name} cannot be empty")

    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(source, f"{name} must be a boolean, got {value!r}")
    if isinstance(default, int):
        if isinstance(value, bool):
            raise ConfigurationError(source, f"{name} must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(source, f"{name} must be an integer, got {value!r}") from None
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(source, f"{name} must be a number, got {value!r}") from None

    text = str(value).strip()
    if name == "fortune_service" and not text:
        return None
    return text


def _flatten(data: Mapping[str, Any], source: str) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        else:
            flat[str(key)] = value
    unknown = sorted(set(flat) - set(_FIELD_NAMES))
    if unknown:
        raise ConfigurationError(source, f"unknown settings: {', '.join(unknown)}")
    return flat


def load_yaml_settings(path: Path) -> dict[str, Any]:
    """Read a YAML settings file into a flat ``{field: value}`` mapping."""
    source = str(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(source, "file not found") from None
    except yaml.YAMLError as exc:
        raise ConfigurationError(source, f"invalid YAML: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError(source, "top level must be a mapping")
    return _flatten(data, source)


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BatchSettings:
    """Defaults, then YAML (``path`` or ``$FORTUNE_BATCH_CONFIG``), then env."""
    env = os.environ if environ is None else environ
    if path is None and env.get(CONFIG_PATH_ENV):
        path = env[CONFIG_PATH_ENV]

    settings = _DEFAULTS
    if path is not None:
        file_values = load_yaml_settings(Path(path))
        settings = replace(settings, **{
            name: _coerce(name, value, str(path)) for name, value in file_values.items()
        })

    overrides = {}
    for name in _FIELD_NAMES:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None:
            overrides[name] = _coerce(name, raw, ENV_PREFIX + name.upper())
    if overrides:
        settings = replace(settings, **overrides)

    return settings.validate(str(path) if path is not None else "environment")
