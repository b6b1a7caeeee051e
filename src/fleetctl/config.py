"""Configuration loader for fleetctl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/fleetctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``FLEETCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export FLEETCTL_CONTROL_PLANE__TOKEN=...
    export FLEETCTL_STATUS__CACHE_TTL=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Credentials are the exception: they are always kept as raw
strings. The resulting configuration is exposed as immutable ``dataclasses``
and handed explicitly to every component that needs it.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load fleetctl configuration. Install with "
        "`pip install fleetctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "FLEETCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Dotted keys whose environment values must not be YAML-coerced.
RAW_STRING_KEYS = {
    "control_plane.token",
    "mesh.client_id",
    "mesh.client_secret",
}
REDACTED = "********"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ControlPlaneConfig:
    """Connection settings for the remote control-plane API."""

    api_url: str = "https://backboard.railway.com/graphql/v2"
    token: str = ""
    source_repo: str = "TukaTek/cortexai-assistant"
    project_prefix: str = "CortexAI"
    service_prefix: str = "cortexai"
    timeout: float = 30.0
    max_rate_limit_retries: int = 1
    default_retry_after: float = 5.0

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "api_url": self.api_url,
            "token": _redact(self.token) if redact else self.token,
            "source_repo": self.source_repo,
            "project_prefix": self.project_prefix,
            "service_prefix": self.service_prefix,
            "timeout": self.timeout,
            "max_rate_limit_retries": self.max_rate_limit_retries,
            "default_retry_after": self.default_retry_after,
        }


@dataclass(frozen=True)
class MeshConfig:
    """OAuth client credentials and key policy for the VPN mesh."""

    api_url: str = "https://api.tailscale.com/api/v2"
    client_id: str = ""
    client_secret: str = ""
    tailnet: str = "-"
    tag: str = "tag:cortexai"
    key_expiry_seconds: int = 7_776_000

    @property
    def configured(self) -> bool:
        """Return ``True`` when both OAuth credentials are present."""
        return bool(self.client_id and self.client_secret)

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "api_url": self.api_url,
            "client_id": self.client_id,
            "client_secret": _redact(self.client_secret) if redact else self.client_secret,
            "tailnet": self.tailnet,
            "tag": self.tag,
            "key_expiry_seconds": self.key_expiry_seconds,
        }


@dataclass(frozen=True)
class StatusConfig:
    """Status cache and health probe settings."""

    cache_ttl: float = 30.0
    health_timeout: float = 5.0
    health_path: str = "/healthz"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cache_ttl": self.cache_ttl,
            "health_timeout": self.health_timeout,
            "health_path": self.health_path,
        }


@dataclass(frozen=True)
class InstanceConfig:
    """Fixed layout injected into every provisioned instance."""

    mount_path: str = "/data"
    state_dir: str = "/data/.openclaw"
    workspace_dir: str = "/data/workspace"
    port: int = 8080

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mount_path": self.mount_path,
            "state_dir": self.state_dir,
            "workspace_dir": self.workspace_dir,
            "port": self.port,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for fleetctl."""

    config_file: Path
    state_dir: Path
    registry_file: Path
    logs_dir: Path
    backup_retention: int
    control_plane: ControlPlaneConfig
    mesh: MeshConfig
    status: StatusConfig
    instance: InstanceConfig

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_file": str(self.registry_file),
            "logs_dir": str(self.logs_dir),
            "backup_retention": self.backup_retention,
            "control_plane": self.control_plane.to_dict(redact=redact),
            "mesh": self.mesh.to_dict(redact=redact),
            "status": self.status.to_dict(),
            "instance": self.instance.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/fleetctl/config.yml",
    "state_dir": "/var/lib/fleetctl",
    "registry_file": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/fleetctl",
    "backup_retention": 20,
    "control_plane": ControlPlaneConfig().to_dict(redact=False),
    "mesh": MeshConfig().to_dict(redact=False),
    "status": StatusConfig().to_dict(),
    "instance": InstanceConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "control_plane": set(ControlPlaneConfig().to_dict(redact=False)),
    "mesh": set(MeshConfig().to_dict(redact=False)),
    "status": set(StatusConfig().to_dict()),
    "instance": set(InstanceConfig().to_dict()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    retention = raw.get("backup_retention")
    if retention is not None:
        if _expect_int(retention, "backup_retention", default=20) < 0:
            raise ConfigError("backup_retention must be zero or a positive integer.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))

    registry_value = raw.get("registry_file")
    registry_file = _to_path(registry_value) if registry_value else state_dir / "fleet.json"

    backup_retention = _expect_int(raw.get("backup_retention"), "backup_retention", default=20)

    cp_defaults = ControlPlaneConfig()
    cp_map = _as_dict(raw.get("control_plane"), "control_plane")
    max_retries = _expect_int(
        cp_map.get("max_rate_limit_retries"),
        "control_plane.max_rate_limit_retries",
        default=cp_defaults.max_rate_limit_retries,
    )
    if max_retries < 0:
        raise ConfigError("control_plane.max_rate_limit_retries must be non-negative.")
    control_plane = ControlPlaneConfig(
        api_url=_expect_non_empty(cp_map.get("api_url"), "control_plane.api_url"),
        token=_as_text(cp_map.get("token")),
        source_repo=_expect_non_empty(cp_map.get("source_repo"), "control_plane.source_repo"),
        project_prefix=_expect_non_empty(
            cp_map.get("project_prefix"), "control_plane.project_prefix"
        ),
        service_prefix=_expect_non_empty(
            cp_map.get("service_prefix"), "control_plane.service_prefix"
        ),
        timeout=_expect_positive_float(
            cp_map.get("timeout"), "control_plane.timeout", default=cp_defaults.timeout
        ),
        max_rate_limit_retries=max_retries,
        default_retry_after=_expect_positive_float(
            cp_map.get("default_retry_after"),
            "control_plane.default_retry_after",
            default=cp_defaults.default_retry_after,
        ),
    )

    mesh_defaults = MeshConfig()
    mesh_map = _as_dict(raw.get("mesh"), "mesh")
    mesh = MeshConfig(
        api_url=_expect_non_empty(mesh_map.get("api_url"), "mesh.api_url"),
        client_id=_as_text(mesh_map.get("client_id")),
        client_secret=_as_text(mesh_map.get("client_secret")),
        tailnet=_as_text(mesh_map.get("tailnet")) or mesh_defaults.tailnet,
        tag=_expect_non_empty(mesh_map.get("tag"), "mesh.tag"),
        key_expiry_seconds=_expect_int(
            mesh_map.get("key_expiry_seconds"),
            "mesh.key_expiry_seconds",
            default=mesh_defaults.key_expiry_seconds,
        ),
    )

    status_defaults = StatusConfig()
    status_map = _as_dict(raw.get("status"), "status")
    health_path = _expect_non_empty(status_map.get("health_path"), "status.health_path")
    if not health_path.startswith("/"):
        health_path = f"/{health_path}"
    status = StatusConfig(
        cache_ttl=_expect_positive_float(
            status_map.get("cache_ttl"), "status.cache_ttl", default=status_defaults.cache_ttl
        ),
        health_timeout=_expect_positive_float(
            status_map.get("health_timeout"),
            "status.health_timeout",
            default=status_defaults.health_timeout,
        ),
        health_path=health_path,
    )

    instance_defaults = InstanceConfig()
    instance_map = _as_dict(raw.get("instance"), "instance")
    port = _expect_int(instance_map.get("port"), "instance.port", default=instance_defaults.port)
    if not 0 < port < 65536:
        raise ConfigError(f"instance.port must be between 1 and 65535. Got {port}.")
    instance = InstanceConfig(
        mount_path=_expect_non_empty(instance_map.get("mount_path"), "instance.mount_path"),
        state_dir=_expect_non_empty(instance_map.get("state_dir"), "instance.state_dir"),
        workspace_dir=_expect_non_empty(
            instance_map.get("workspace_dir"), "instance.workspace_dir"
        ),
        port=port,
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_file=registry_file,
        logs_dir=logs_dir,
        backup_retention=backup_retention,
        control_plane=control_plane,
        mesh=mesh,
        status=status,
        instance=instance,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if ".".join(path_segments) in RAW_STRING_KEYS:
            coerced: object = value.strip()
        else:
            coerced = _coerce_value(value)
        _assign_nested(overrides, path_segments, coerced)
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _redact(value: str) -> str:
    return REDACTED if value else ""


def _as_text(value: object | None) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ConfigError(f"Expected a string value. Got {type(value).__name__}.")
    return str(value).strip()


def _expect_non_empty(value: object | None, label: str) -> str:
    text = _as_text(value)
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ControlPlaneConfig",
    "InstanceConfig",
    "MeshConfig",
    "StatusConfig",
    "load_config",
]
