"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from fleetctl.config import (
    ALLOWED_SECTION_KEYS,
    REDACTED,
    AppConfig,
    ConfigError,
    load_config,
)


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/fleetctl")
    assert config.registry_file == Path("/var/lib/fleetctl/fleet.json")
    assert config.logs_dir == Path("/var/log/fleetctl")
    assert config.backup_retention == 20
    assert config.control_plane.source_repo == "TukaTek/cortexai-assistant"
    assert config.control_plane.max_rate_limit_retries == 1
    assert config.control_plane.default_retry_after == 5.0
    assert config.mesh.configured is False
    assert config.mesh.key_expiry_seconds == 7_776_000
    assert config.status.cache_ttl == 30.0
    assert config.status.health_timeout == 5.0
    assert config.instance.mount_path == "/data"
    assert config.instance.port == 8080


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "fleetctl.yml"
    cfg.write_text(
        f"state_dir: {tmp_path / 'state'}\n"
        "backup_retention: 5\n"
        "control_plane:\n"
        "  project_prefix: Acme\n"
        "mesh:\n"
        "  client_id: cid\n"
        "  client_secret: secret\n"
        "status:\n"
        "  cache_ttl: 10\n"
        "  health_path: ready\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.registry_file == tmp_path / "state" / "fleet.json"
    assert config.backup_retention == 5
    assert config.control_plane.project_prefix == "Acme"
    assert config.mesh.configured is True
    assert config.status.cache_ttl == 10.0
    assert config.status.health_path == "/ready"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("status:\n  cache_ttl: 10\n")
    env = {
        "FLEETCTL_CONFIG_FILE": str(cfg),
        "FLEETCTL_STATUS__CACHE_TTL": "45",
        "FLEETCTL_REGISTRY_FILE": str(tmp_path / "custom.json"),
        "FLEETCTL_CONTROL_PLANE__MAX_RATE_LIMIT_RETRIES": "3",
        "FLEETCTL_INSTANCE__PORT": "9090",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.status.cache_ttl == 45.0
    assert config.registry_file == tmp_path / "custom.json"
    assert config.control_plane.max_rate_limit_retries == 3
    assert config.instance.port == 9090


def test_credentials_are_not_coerced(tmp_path: Path) -> None:
    """Credential values stay strings even when YAML would parse them."""
    env = {
        "FLEETCTL_CONTROL_PLANE__TOKEN": "0x1234",
        "FLEETCTL_MESH__CLIENT_ID": "12345",
        "FLEETCTL_MESH__CLIENT_SECRET": "true",
    }

    config = load_config(config_file=tmp_path / "none.yml", env=env)

    assert config.control_plane.token == "0x1234"
    assert config.mesh.client_id == "12345"
    assert config.mesh.client_secret == "true"


def test_to_dict_redacts_credentials(tmp_path: Path) -> None:
    """Secrets are masked unless explicitly requested."""
    env = {"FLEETCTL_CONTROL_PLANE__TOKEN": "tok", "FLEETCTL_MESH__CLIENT_SECRET": "sec"}
    config = load_config(config_file=tmp_path / "none.yml", env=env)

    redacted = config.to_dict()
    raw = config.to_dict(redact=False)

    assert redacted["control_plane"]["token"] == REDACTED  # type: ignore[index]
    assert redacted["mesh"]["client_secret"] == REDACTED  # type: ignore[index]
    assert raw["control_plane"]["token"] == "tok"  # type: ignore[index]


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_section_keys_include_credential_fields() -> None:
    """Credential fields are accepted section keys."""
    assert {"api_url", "token", "max_rate_limit_retries"} <= ALLOWED_SECTION_KEYS["control_plane"]
    assert {"client_id", "client_secret", "tailnet"} <= ALLOWED_SECTION_KEYS["mesh"]


def test_section_credentials_load_from_file(tmp_path: Path) -> None:
    """Credentials set in YAML sections pass key validation."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("control_plane:\n  token: abc\nmesh:\n  client_id: cid\n  client_secret: cs\n")

    config = load_config(config_file=cfg, env={})

    assert config.control_plane.token == "abc"
    assert config.mesh.configured is True


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section produce ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("mesh:\n  region: eu\n")

    with pytest.raises(ConfigError, match="Unknown mesh configuration keys"):
        load_config(config_file=cfg, env={})


def test_negative_backup_retention_raises(tmp_path: Path) -> None:
    """Backup retention must not be negative."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backup_retention: -1\n")

    with pytest.raises(ConfigError, match="backup_retention"):
        load_config(config_file=cfg, env={})


def test_invalid_port_raises(tmp_path: Path) -> None:
    """Ports outside the TCP range are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("instance:\n  port: 70000\n")

    with pytest.raises(ConfigError, match="instance.port"):
        load_config(config_file=cfg, env={})
