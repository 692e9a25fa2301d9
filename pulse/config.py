"""Configuration management for the pulse namespace service."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .permissions import (
    DEFAULT_CONFIGURE_TEMPLATE,
    DEFAULT_READ_TEMPLATE,
    DEFAULT_WRITE_TEMPLATE,
    PermissionTemplates,
)


class ConfigurationError(RuntimeError):
    """Raised when the service configuration is missing or malformed."""


_DURATION = re.compile(r"^\s*-?\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]+)?\s*$")
_UNITS = {
    "s": 1,
    "sec": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
}


def parse_duration(value: object) -> timedelta:
    """Parse ``15``, ``"1 hour"`` or ``"- 24 hours"`` into a positive timedelta.

    A leading minus only marks a look-back window, so it is ignored.
    """

    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=abs(value))
    match = _DURATION.match(str(value))
    if match is None:
        raise ConfigurationError(f"Invalid duration {value!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "seconds").lower()
    if unit not in _UNITS:
        raise ConfigurationError(f"Unknown duration unit {unit!r} in {value!r}")
    return timedelta(seconds=amount * _UNITS[unit])


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(value: Optional[str]) -> Optional[float | int]:
    if value is None or value.strip() == "":
        return None
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid numeric value {value!r} in environment") from exc
    return int(number) if number.is_integer() else number


class _ConfigLoader(yaml.SafeLoader):
    """YAML loader understanding the ``!env`` family of tags."""


def _env_constructor(convert):
    def construct(loader: yaml.SafeLoader, node: yaml.Node):
        name = loader.construct_scalar(node)  # type: ignore[arg-type]
        return convert(os.environ.get(str(name)))

    return construct


_ConfigLoader.add_constructor("!env", _env_constructor(lambda raw: raw))
_ConfigLoader.add_constructor("!env:number", _env_constructor(_env_number))
_ConfigLoader.add_constructor("!env:bool", _env_constructor(_env_bool))
_ConfigLoader.add_constructor(
    "!env:list",
    _env_constructor(lambda raw: [item for item in (raw or "").split(" ") if item]),
)


def _merge(base: Mapping[str, object], override: Mapping[str, object]) -> Dict[str, object]:
    merged: Dict[str, object] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def _section(raw: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping")
    return value


def _get(section: Mapping[str, object], key: str, default: object) -> object:
    value = section.get(key)
    return default if value is None else value


def _int(value: object, key: str) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration key '{key}' must be an integer, got {value!r}") from exc


def _optional_float(value: object, key: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration key '{key}' must be a number, got {value!r}") from exc


@dataclass(frozen=True)
class AppConfig:
    """Namespace lifecycle settings (the ``app`` section)."""

    namespace_prefix: str = ""
    virtualhost: str = "/"
    rotation_interval: timedelta = timedelta(hours=1)
    expiration_delay: timedelta = timedelta(hours=1)
    queue_expiration_delay: timedelta = timedelta(hours=24)
    permissions: PermissionTemplates = field(
        default_factory=lambda: PermissionTemplates.from_strings(
            DEFAULT_CONFIGURE_TEMPLATE, DEFAULT_WRITE_TEMPLATE, DEFAULT_READ_TEMPLATE
        )
    )
    user_tags: Tuple[str, ...] = ("taskcluster-pulse",)
    amqp_url: str = "amqp://localhost"

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "AppConfig":
        try:
            permissions = PermissionTemplates.from_strings(
                str(_get(data, "userConfigPermission", DEFAULT_CONFIGURE_TEMPLATE)),
                str(_get(data, "userWritePermission", DEFAULT_WRITE_TEMPLATE)),
                str(_get(data, "userReadPermission", DEFAULT_READ_TEMPLATE)),
            )
        except ValueError as exc:
            raise ConfigurationError(f"Malformed permission template: {exc}") from exc

        raw_tags = _get(data, "userTags", ["taskcluster-pulse"])
        if isinstance(raw_tags, str):
            raw_tags = [tag for tag in raw_tags.split(",")]
        tags = tuple(str(tag).strip() for tag in raw_tags if str(tag).strip())  # type: ignore[union-attr]
        if not tags:
            raise ConfigurationError("At least one user tag must be configured under app.userTags")

        return AppConfig(
            namespace_prefix=str(_get(data, "namespacePrefix", "")),
            virtualhost=str(_get(data, "virtualhost", "/")),
            rotation_interval=parse_duration(_get(data, "namespaceRotationInterval", "1 hour")),
            expiration_delay=parse_duration(_get(data, "namespacesExpirationDelay", "1 hour")),
            queue_expiration_delay=parse_duration(_get(data, "rabbitQueueExpirationDelay", "24 hours")),
            permissions=permissions,
            user_tags=tags,
            amqp_url=str(_get(data, "amqpUrl", "amqp://localhost")),
        )


@dataclass(frozen=True)
class RabbitConfig:
    """Administrative credentials for the RabbitMQ management API."""

    base_url: str
    username: str
    password: str
    timeout: float = 10.0

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "RabbitConfig":
        missing = [key for key in ("baseUrl", "username", "password") if not data.get(key)]
        if missing:
            raise ConfigurationError(
                f"Missing required rabbit configuration fields: {', '.join(missing)}"
            )
        timeout = _optional_float(data.get("timeout"), "rabbit.timeout")
        return RabbitConfig(
            base_url=str(data["baseUrl"]),
            username=str(data["username"]),
            password=str(data["password"]),
            timeout=timeout if timeout is not None else 10.0,
        )


@dataclass(frozen=True)
class MonitorConfig:
    """Queue supervision and iteration settings (the ``monitor`` section)."""

    alert_threshold: int = 4000
    delete_threshold: int = 8000
    queue_prefix: str = "queue/"
    exchange_prefix: str = "exchange/"
    connection_max_lifetime: timedelta = timedelta(hours=72)
    iteration_length: float = 15.0
    iteration_gap: float = 15.0
    iteration_failures: int = 5
    max_workers: int = 8

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "MonitorConfig":
        alert_threshold = _int(_get(data, "alertThreshold", 4000), "monitor.alertThreshold")
        delete_threshold = _int(_get(data, "deleteThreshold", 8000), "monitor.deleteThreshold")
        if alert_threshold <= 0 or delete_threshold <= 0:
            raise ConfigurationError("Monitor thresholds must be positive")
        if delete_threshold < alert_threshold:
            raise ConfigurationError("monitor.deleteThreshold must not be lower than monitor.alertThreshold")

        iteration_failures = _int(_get(data, "iterationFailes", 5), "monitor.iterationFailes")
        max_workers = _int(_get(data, "maxWorkers", 8), "monitor.maxWorkers")
        if iteration_failures < 1 or max_workers < 1:
            raise ConfigurationError("monitor.iterationFailes and monitor.maxWorkers must be at least 1")

        return MonitorConfig(
            alert_threshold=alert_threshold,
            delete_threshold=delete_threshold,
            queue_prefix=str(_get(data, "queuePrefix", "queue/")),
            exchange_prefix=str(_get(data, "exchangePrefix", "exchange/")),
            connection_max_lifetime=parse_duration(_get(data, "connectionMaxLifetime", "72 hours")),
            iteration_length=parse_duration(_get(data, "iterationLength", 15)).total_seconds(),
            iteration_gap=parse_duration(_get(data, "iterationGap", 15)).total_seconds(),
            iteration_failures=iteration_failures,
            max_workers=max_workers,
        )


@dataclass(frozen=True)
class AlerterConfig:
    """Tolerances that keep marginal, non-growing queues from alerting."""

    message_count_tolerance: Optional[int] = None
    message_publish_rate_tolerance: Optional[float] = None

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "AlerterConfig":
        count = _optional_float(data.get("messageCountTolerance"), "alerter.messageCountTolerance")
        rate = _optional_float(
            data.get("messagePublishRateTolerance"), "alerter.messagePublishRateTolerance"
        )
        return AlerterConfig(
            message_count_tolerance=int(count) if count is not None else None,
            message_publish_rate_tolerance=rate,
        )


def _tokens(raw: object) -> Tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, str):
        raw = raw.split(",")
    return tuple(str(token).strip() for token in raw if str(token).strip())  # type: ignore[union-attr]


@dataclass(frozen=True)
class ServerConfig:
    """Settings for the HTTP surface and the namespace table location."""

    host: str = "0.0.0.0"
    port: int = 60403
    database_path: Optional[Path] = None
    api_tokens: Tuple[str, ...] = ()
    read_tokens: Tuple[str, ...] = ()

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "ServerConfig":
        raw_path = data.get("databasePath")
        database_path: Optional[Path] = None
        if raw_path:
            candidate = Path(str(raw_path)).expanduser()
            if not candidate.is_absolute() and base_path is not None:
                candidate = base_path / candidate
            database_path = candidate.resolve(strict=False)

        return ServerConfig(
            host=str(_get(data, "host", "0.0.0.0")),
            port=_int(_get(data, "port", 60403), "server.port"),
            database_path=database_path,
            api_tokens=_tokens(data.get("apiTokens")),
            read_tokens=_tokens(data.get("readTokens")),
        )


@dataclass(frozen=True)
class PulseConfig:
    """Complete, validated service configuration."""

    app: AppConfig
    rabbit: RabbitConfig
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    alerter: AlerterConfig = field(default_factory=AlerterConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "PulseConfig":
        return PulseConfig(
            app=AppConfig.from_dict(_section(data, "app")),
            rabbit=RabbitConfig.from_dict(_section(data, "rabbit")),
            monitor=MonitorConfig.from_dict(_section(data, "monitor")),
            alerter=AlerterConfig.from_dict(_section(data, "alerter")),
            server=ServerConfig.from_dict(_section(data, "server"), base_path=base_path),
        )


def load_raw_config(config_path: Path, profile: Optional[str] = None) -> Dict[str, object]:
    """Load the YAML file and merge ``defaults`` with the selected profile."""

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.load(handle, Loader=_ConfigLoader) or {}
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {config_path} is not valid YAML: {exc}") from exc

    if not isinstance(raw, Mapping):
        raise ConfigurationError("Configuration file must contain a mapping at the top level")

    if "defaults" not in raw:
        return dict(raw)

    merged = dict(_section(raw, "defaults"))
    if profile and profile != "defaults":
        if profile not in raw:
            raise ConfigurationError(f"Unknown configuration profile '{profile}'")
        merged = _merge(merged, _section(raw, profile))
    return merged


def load_config(config_path: Path, profile: Optional[str] = None) -> PulseConfig:
    """Load and validate the service configuration from a YAML file."""

    raw = load_raw_config(config_path, profile)
    return PulseConfig.from_dict(raw, base_path=config_path.parent)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config.yml").resolve(strict=False)


__all__ = [
    "AlerterConfig",
    "AppConfig",
    "ConfigurationError",
    "MonitorConfig",
    "PulseConfig",
    "RabbitConfig",
    "ServerConfig",
    "load_config",
    "load_raw_config",
    "parse_duration",
    "resolve_config_path",
]
