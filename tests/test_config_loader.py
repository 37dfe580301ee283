"""
Tests for configuration file loading.
"""
from pathlib import Path

import pytest

from fleet_remediate.config_loader import (
    deep_merge,
    find_config_file,
    flatten_config,
    get_env_config,
    load_config_file,
    load_config_with_overrides,
    merge_config,
)
from fleet_remediate.exceptions import ConfigurationError


def test_load_yaml(tmp_path: Path) -> None:
    """Test loading YAML configuration."""
    config_file = tmp_path / "config.yaml"
    config_file.write_text("queue:\n  max_attempts: 4\nlogging:\n  level: DEBUG\n")

    config = load_config_file(str(config_file))

    assert config == {"queue": {"max_attempts": 4}, "logging": {"level": "DEBUG"}}


def test_load_empty_yaml(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yml"
    config_file.write_text("")
    assert load_config_file(str(config_file)) == {}


def test_load_yaml_not_a_mapping(tmp_path: Path) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text("- one\n- two\n")
    with pytest.raises(ConfigurationError, match="mapping"):
        load_config_file(str(config_file))


def test_load_toml(tmp_path: Path) -> None:
    """Test loading TOML configuration."""
    config_file = tmp_path / "config.toml"
    config_file.write_text("[fleet]\nmax_hosts = 8\nrequire_selector = false\n")

    config = load_config_file(str(config_file))

    assert config == {"fleet": {"max_hosts": 8, "require_selector": False}}


def test_load_invalid_toml(tmp_path: Path) -> None:
    config_file = tmp_path / "config.toml"
    config_file.write_text("[fleet\nmax_hosts = \n")
    with pytest.raises(ConfigurationError, match="TOML"):
        load_config_file(str(config_file))


def test_unsupported_format(tmp_path: Path) -> None:
    """Test that unknown extensions are rejected."""
    config_file = tmp_path / "config.ini"
    config_file.write_text("[queue]\n")
    with pytest.raises(ConfigurationError, match="Unsupported config file format"):
        load_config_file(str(config_file))


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config_file(str(tmp_path / "nope.yaml"))


def test_get_env_config() -> None:
    """Test that environment variables become a nested config."""
    config = get_env_config({
        "FLEET_REMEDIATE_DB_PATH": "/data/runs.db",
        "FLEET_REMEDIATE_RETRY_BASE_SECONDS": "30",
        "FLEET_REMEDIATE_FLEET_REQUIRE_SELECTOR": "off",
        "FLEET_REMEDIATE_LOG_LEVEL": "debug",
        "UNRELATED": "x",
    })

    assert config == {
        "storage": {"db_path": "/data/runs.db"},
        "queue": {"retry_base_seconds": 30.0},
        "fleet": {"require_selector": False},
        "logging": {"level": "debug"},
    }


def test_get_env_config_skips_invalid_and_empty() -> None:
    """Test that bad or empty values are ignored."""
    config = get_env_config({
        "FLEET_REMEDIATE_MAX_ATTEMPTS": "three",
        "FLEET_REMEDIATE_LOG_JSON": "perhaps",
        "FLEET_REMEDIATE_SHELL": "",
    })
    assert config == {}


def test_get_env_config_guard_patterns() -> None:
    """Test that pattern lists split on newlines or ||."""
    config = get_env_config({
        "FLEET_REMEDIATE_GUARD_BLOCKLIST": "systemctl stop||  iptables -F \n\nuserdel",
        "FLEET_REMEDIATE_MAX_QUEUE_TOTAL": "250",
    })
    assert config == {
        "guard": {"blocklist": ["systemctl stop", "iptables -F", "userdel"]},
        "queue": {"max_queue_total": 250},
    }


def test_flatten_guard_section() -> None:
    flat = flatten_config({"guard": {"allowlist": ["^uptime$"], "max_command_length": 400}})
    assert flat == {"guard_allowlist": ["^uptime$"], "guard_max_command_length": 400}


def test_deep_merge() -> None:
    """Test that nested tables merge key by key."""
    base = {"queue": {"max_attempts": 3, "ttl_minutes": 60}, "fleet": {"max_hosts": 12}}
    override = {"queue": {"max_attempts": 5}, "logging": {"level": "ERROR"}}

    merged = deep_merge(base, override)

    assert merged == {
        "queue": {"max_attempts": 5, "ttl_minutes": 60},
        "fleet": {"max_hosts": 12},
        "logging": {"level": "ERROR"},
    }
    assert base["queue"]["max_attempts"] == 3


def test_flatten_config_drops_unknown() -> None:
    """Test that unknown sections and keys are dropped."""
    flat = flatten_config({
        "queue": {"max_attempts": 4, "bogus": 1},
        "fleet": {"max_percent_of_enabled_fleet": 20},
        "mystery": {"x": 1},
        "logging": "INFO",
    })
    assert flat == {"max_attempts": 4, "fleet_max_percent_of_enabled_fleet": 20}


def test_merge_config_env_wins() -> None:
    flat = merge_config(
        {"executor": {"timeout_seconds": 10, "shell": "/bin/sh"}},
        {"executor": {"timeout_seconds": 60.0}},
    )
    assert flat == {"command_timeout": 60.0, "shell": "/bin/sh"}


def test_find_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test the search order prefers the working directory."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    found = find_config_file()
    assert found is None or found.parent != tmp_path

    (tmp_path / "fleet-remediate.toml").write_text("[queue]\n")
    (tmp_path / "fleet-remediate.yaml").write_text("queue: {}\n")
    assert find_config_file() == tmp_path / "fleet-remediate.yaml"


def test_load_config_with_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that an explicit file and the environment combine into flat fields."""
    config_file = tmp_path / "fleet.yaml"
    config_file.write_text("audit:\n  file: /var/log/audit.jsonl\nexecutor:\n  dry_run: false\n")
    monkeypatch.setenv("FLEET_REMEDIATE_DRY_RUN", "true")

    flat = load_config_with_overrides(str(config_file))

    assert flat["audit_file"] == "/var/log/audit.jsonl"
    assert flat["dry_run"] is True
