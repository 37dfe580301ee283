"""
Tests for configuration module.
"""
import os
from pathlib import Path

import pytest

from fleet_remediate.config import RemediationConfig, config_from_environ_defaults
from fleet_remediate.config_loader import ENV_PREFIX
from fleet_remediate.exceptions import ConfigurationError
from fleet_remediate.models import AutoTier, RiskLevel


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Isolate from real FLEET_REMEDIATE_* variables and config files."""
    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))


def test_config_defaults() -> None:
    """Test default configuration values."""
    config = RemediationConfig()

    assert config.db_path == "fleet_remediate.db"
    assert config.retry_base_seconds == 15
    assert config.retry_max_seconds == 900
    assert config.max_attempts == 3
    assert config.max_auto_tier == "guarded_auto"
    assert config.fleet_max_hosts == 12
    assert config.fleet_require_selector is True
    assert config.actions_file is None
    config.validate()


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test configuration from environment variables."""
    monkeypatch.setenv("FLEET_REMEDIATE_DB_PATH", "/tmp/runs.db")
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("FLEET_REMEDIATE_DRY_RUN", "yes")
    monkeypatch.setenv("FLEET_REMEDIATE_FLEET_MAX_PERCENT", "25")
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_AUTO_TIER", "safe_auto")

    config = RemediationConfig.from_env()

    assert config.db_path == "/tmp/runs.db"
    assert config.max_attempts == 5
    assert config.dry_run is True
    assert config.fleet_max_percent_of_enabled_fleet == 25
    assert config.max_auto_tier == "safe_auto"


def test_config_invalid_env_value_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that unparseable environment values fall back to defaults."""
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_ATTEMPTS", "lots")
    monkeypatch.setenv("FLEET_REMEDIATE_DRY_RUN", "maybe")

    config = RemediationConfig.from_env()

    assert config.max_attempts == 3
    assert config.dry_run is False


@pytest.mark.parametrize("field,value,message", [
    ("max_attempts", 0, "max_attempts"),
    ("max_attempts", 21, "max_attempts"),
    ("retry_base_seconds", 0, "retry_base_seconds"),
    ("retry_max_seconds", 10 ** 6, "retry_max_seconds"),
    ("max_auto_tier", "yolo", "max_auto_tier"),
    ("approval_risk_threshold", "extreme", "approval_risk_threshold"),
    ("canary_rollout_percent", 101, "canary_rollout_percent"),
    ("fleet_max_hosts", 0, "fleet_max_hosts"),
    ("fleet_max_percent_of_enabled_fleet", 0, "fleet_max_percent_of_enabled_fleet"),
    ("fleet_default_stage_size", 101, "fleet_default_stage_size"),
    ("log_level", "LOUD", "log_level"),
    ("db_path", "", "db_path"),
    ("max_queue_per_host", 0, "max_queue_per_host"),
    ("max_queue_total", 100_001, "max_queue_total"),
    ("guard_max_commands", 201, "guard_max_commands"),
    ("guard_max_command_length", 5, "guard_max_command_length"),
    ("guard_allowlist", ["(unclosed"], "guard_allowlist has an invalid pattern"),
    ("guard_blocklist", "rm -rf", "guard_blocklist must be a list"),
])
def test_config_validate_rejects(field: str, value, message: str) -> None:
    """Test that validation names each bad field."""
    config = RemediationConfig(**{field: value})
    with pytest.raises(ValueError, match=message):
        config.validate()


def test_config_validate_collects_all_errors() -> None:
    config = RemediationConfig(max_attempts=0, command_timeout=0)
    with pytest.raises(ValueError) as excinfo:
        config.validate()
    assert "max_attempts" in str(excinfo.value)
    assert "command_timeout" in str(excinfo.value)


def test_config_from_yaml_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test loading from YAML with an environment override on top."""
    path = tmp_path / "custom.yaml"
    path.write_text(
        "storage:\n"
        "  db_path: /var/lib/fleet/runs.db\n"
        "queue:\n"
        "  max_attempts: 4\n"
        "fleet:\n"
        "  max_hosts: 50\n"
    )
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_ATTEMPTS", "6")

    config = RemediationConfig.from_file(str(path))

    assert config.db_path == "/var/lib/fleet/runs.db"
    assert config.max_attempts == 6
    assert config.fleet_max_hosts == 50


def test_config_from_toml_file(tmp_path: Path) -> None:
    path = tmp_path / "custom.toml"
    path.write_text(
        "[autonomous]\n"
        "max_auto_tier = \"safe_auto\"\n"
        "canary_rollout_percent = 10\n"
        "\n"
        "[inventory]\n"
        "actions_file = \"actions.yaml\"\n"
    )
    config = RemediationConfig.from_file(str(path))
    assert config.max_auto_tier == "safe_auto"
    assert config.canary_rollout_percent == 10
    assert config.actions_file == "actions.yaml"


def test_config_explicit_missing_file_raises(tmp_path: Path) -> None:
    """Test that an explicitly named file must exist."""
    with pytest.raises(FileNotFoundError):
        RemediationConfig.from_file(str(tmp_path / "missing.yaml"))


def test_config_explicit_broken_file_raises(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("storage: [unclosed\n")
    with pytest.raises(ConfigurationError):
        RemediationConfig.from_file(str(path))


def test_config_searched_broken_file_falls_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that a broken file found by the search falls back to the environment."""
    (tmp_path / "fleet-remediate.yaml").write_text("- not\n- a mapping\n")
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_ATTEMPTS", "7")

    config = RemediationConfig.load()

    assert config.max_attempts == 7


def test_config_search_finds_cwd_file(tmp_path: Path) -> None:
    (tmp_path / "fleet-remediate.yaml").write_text("queue:\n  ttl_minutes: 30\n")
    assert RemediationConfig.load().queue_ttl_minutes == 30
    assert RemediationConfig.load(use_file=False).queue_ttl_minutes == 24 * 60


def test_config_from_environ_defaults_uses_config_variable(tmp_path: Path,
                                                          monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "elsewhere.toml"
    path.write_text("[executor]\ndry_run = true\n")
    monkeypatch.setenv("FLEET_REMEDIATE_CONFIG", str(path))
    assert config_from_environ_defaults().dry_run is True


def test_config_builds_policies() -> None:
    """Test that policy objects reflect the configured values."""
    config = RemediationConfig(
        max_auto_tier="safe_auto",
        approval_risk_threshold="high",
        canary_rollout_percent=50,
        fleet_max_hosts=20,
        fleet_max_per_group=4,
        fleet_max_percent_of_enabled_fleet=30,
        fleet_default_stage_size=2,
        fleet_require_selector=False,
    )

    policy = config.autonomous_policy()
    assert policy.max_auto_tier == AutoTier.SAFE_AUTO
    assert policy.approval_risk_threshold == RiskLevel.HIGH
    assert policy.canary_rollout_percent == 50

    blast = config.blast_radius_policy()
    assert blast.max_hosts == 20
    assert blast.max_per_group == 4
    assert blast.max_percent_of_enabled_fleet == 30
    assert blast.default_stage_size == 2
    assert blast.require_selector is False


def test_config_to_dict() -> None:
    data = RemediationConfig(db_path="x.db").to_dict()
    assert data["db_path"] == "x.db"
    assert "fleet_max_hosts" in data


def test_config_guard_and_backlog_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test that guard patterns split on || and backlog caps parse as integers."""
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_QUEUE_PER_HOST", "3")
    monkeypatch.setenv("FLEET_REMEDIATE_MAX_QUEUE_TOTAL", "50")
    monkeypatch.setenv("FLEET_REMEDIATE_GUARD_ENFORCE_ALLOWLIST", "on")
    monkeypatch.setenv("FLEET_REMEDIATE_GUARD_ALLOWLIST", "^uptime$ || ^systemctl restart \\w+$")
    monkeypatch.setenv("FLEET_REMEDIATE_GUARD_MAX_COMMANDS", "5")

    config = RemediationConfig.from_env()

    assert config.max_queue_per_host == 3
    assert config.max_queue_total == 50
    assert config.guard_enforce_allowlist is True
    assert config.guard_allowlist == ["^uptime$", "^systemctl restart \\w+$"]
    assert config.guard_max_commands == 5
    config.validate()


def test_config_builds_command_guard() -> None:
    config = RemediationConfig(
        guard_enforce_allowlist=True,
        guard_allowlist=["^uptime$"],
        guard_blocklist=["systemctl stop"],
        guard_max_commands=4,
        guard_max_command_length=100,
    )

    guard = config.command_guard_policy()

    assert guard.enforce_allowlist is True
    assert guard.max_commands_per_action == 4
    assert guard.max_command_length == 100
    assert [issue.reason for issue in guard.validate(["uptime", "hostname"])] == ["not_allowlisted"]
    assert guard.validate(["systemctl stop sshd"])[0].reason == "blocked_pattern:systemctl stop"
