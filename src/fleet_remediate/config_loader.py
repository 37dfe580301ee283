"""
Configuration file loader for fleet-remediate.

Supports loading configuration from YAML and TOML files with environment variable
overrides and a standard search path.

File layout (YAML shown, TOML uses the same tables)::

    storage:
      db_path: /var/lib/fleet-remediate/runs.db
    queue:
      retry_base_seconds: 15
      max_attempts: 3
    autonomous:
      max_auto_tier: guarded_auto
    fleet:
      max_hosts: 12
    guard:
      blocklist: ["systemctl stop"]
    logging:
      level: INFO
"""

import os
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .exceptions import ConfigurationError
from .utils import parse_bool

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLEET_REMEDIATE_"
CONFIG_BASENAME = "fleet-remediate"


def _to_bool(value: str) -> bool:
    parsed = parse_bool(value)
    if parsed is None:
        raise ValueError(f"not a boolean: {value!r}")
    return parsed


def _to_patterns(value: str) -> List[str]:
    return [entry.strip() for entry in re.split(r"\n|\|\|", value) if entry.strip()]


# (environment suffix, section, key, parser)
_ENV_FIELDS: List[Tuple[str, str, str, Callable[[str], Any]]] = [
    ("DB_PATH", "storage", "db_path", str),
    ("DB_BUSY_TIMEOUT", "storage", "busy_timeout", float),
    ("ACTIONS_FILE", "inventory", "actions_file", str),
    ("HOSTS_FILE", "inventory", "hosts_file", str),
    ("RETRY_BASE_SECONDS", "queue", "retry_base_seconds", float),
    ("RETRY_MAX_SECONDS", "queue", "retry_max_seconds", float),
    ("MAX_ATTEMPTS", "queue", "max_attempts", int),
    ("QUEUE_TTL_MINUTES", "queue", "ttl_minutes", int),
    ("RUNNING_GRACE_SECONDS", "queue", "running_grace_seconds", int),
    ("RECOVER_ON_DRAIN", "queue", "recover_on_drain", _to_bool),
    ("COMMAND_TIMEOUT", "executor", "timeout_seconds", float),
    ("MAX_OUTPUT_BYTES", "executor", "max_output_bytes", int),
    ("SHELL", "executor", "shell", str),
    ("DRY_RUN", "executor", "dry_run", _to_bool),
    ("MAX_QUEUE_PER_HOST", "queue", "max_queue_per_host", int),
    ("MAX_QUEUE_TOTAL", "queue", "max_queue_total", int),
    ("GUARD_ENFORCE_ALLOWLIST", "guard", "enforce_allowlist", _to_bool),
    ("GUARD_ALLOWLIST", "guard", "allowlist", _to_patterns),
    ("GUARD_BLOCKLIST", "guard", "blocklist", _to_patterns),
    ("GUARD_MAX_COMMANDS", "guard", "max_commands_per_action", int),
    ("GUARD_MAX_COMMAND_LENGTH", "guard", "max_command_length", int),
    ("MAX_AUTO_TIER", "autonomous", "max_auto_tier", str),
    ("APPROVAL_RISK_THRESHOLD", "autonomous", "approval_risk_threshold", str),
    ("CANARY_ROLLOUT_PERCENT", "autonomous", "canary_rollout_percent", int),
    ("FLEET_MAX_HOSTS", "fleet", "max_hosts", int),
    ("FLEET_MAX_PER_GROUP", "fleet", "max_per_group", int),
    ("FLEET_MAX_PERCENT", "fleet", "max_percent_of_enabled_fleet", int),
    ("FLEET_STAGE_SIZE", "fleet", "default_stage_size", int),
    ("FLEET_REQUIRE_SELECTOR", "fleet", "require_selector", _to_bool),
    ("LOG_LEVEL", "logging", "level", str),
    ("LOG_FILE", "logging", "file", str),
    ("LOG_JSON", "logging", "json", _to_bool),
    ("AUDIT_FILE", "audit", "file", str),
]

# (section, key) -> RemediationConfig field
_FLAT_FIELDS: Dict[Tuple[str, str], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "busy_timeout"): "db_busy_timeout",
    ("inventory", "actions_file"): "actions_file",
    ("inventory", "hosts_file"): "hosts_file",
    ("queue", "retry_base_seconds"): "retry_base_seconds",
    ("queue", "retry_max_seconds"): "retry_max_seconds",
    ("queue", "max_attempts"): "max_attempts",
    ("queue", "ttl_minutes"): "queue_ttl_minutes",
    ("queue", "running_grace_seconds"): "running_grace_seconds",
    ("queue", "recover_on_drain"): "recover_on_drain",
    ("executor", "timeout_seconds"): "command_timeout",
    ("executor", "max_output_bytes"): "max_output_bytes",
    ("executor", "shell"): "shell",
    ("executor", "dry_run"): "dry_run",
    ("queue", "max_queue_per_host"): "max_queue_per_host",
    ("queue", "max_queue_total"): "max_queue_total",
    ("guard", "enforce_allowlist"): "guard_enforce_allowlist",
    ("guard", "allowlist"): "guard_allowlist",
    ("guard", "blocklist"): "guard_blocklist",
    ("guard", "max_commands_per_action"): "guard_max_commands",
    ("guard", "max_command_length"): "guard_max_command_length",
    ("autonomous", "max_auto_tier"): "max_auto_tier",
    ("autonomous", "approval_risk_threshold"): "approval_risk_threshold",
    ("autonomous", "canary_rollout_percent"): "canary_rollout_percent",
    ("fleet", "max_hosts"): "fleet_max_hosts",
    ("fleet", "max_per_group"): "fleet_max_per_group",
    ("fleet", "max_percent_of_enabled_fleet"): "fleet_max_percent_of_enabled_fleet",
    ("fleet", "default_stage_size"): "fleet_default_stage_size",
    ("fleet", "require_selector"): "fleet_require_selector",
    ("logging", "level"): "log_level",
    ("logging", "file"): "log_file",
    ("logging", "json"): "log_json",
    ("audit", "file"): "audit_file",
}


def load_yaml_file(path: Path) -> dict:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ConfigurationError: If YAML parsing fails or the document is not a mapping
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML config file {path}: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return config


def load_toml_file(path: Path) -> dict:
    """
    Load configuration from a TOML file.

    Raises:
        FileNotFoundError: If file doesn't exist
        ConfigurationError: If TOML parsing fails
    """
    try:
        # Python 3.11+ has tomllib built-in
        import tomllib
    except ImportError:
        import tomli as tomllib

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, 'rb') as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Failed to parse TOML config file {path}: {e}") from e


def load_config_file(path: str) -> dict:
    """
    Load configuration from a YAML or TOML file.

    The file format is determined by the file extension (.yaml, .yml, or .toml).

    Raises:
        ConfigurationError: If file extension is not supported or parsing fails
        FileNotFoundError: If file doesn't exist
    """
    file_path = Path(path)
    suffix = file_path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        return load_yaml_file(file_path)
    elif suffix == '.toml':
        return load_toml_file(file_path)
    else:
        raise ConfigurationError(
            f"Unsupported config file format: {suffix}. "
            "Supported formats: .yaml, .yml, .toml"
        )


def config_search_paths() -> List[Path]:
    """Candidate config files, in search order."""
    return [
        Path.cwd() / f"{CONFIG_BASENAME}.yaml",
        Path.cwd() / f"{CONFIG_BASENAME}.toml",
        Path.home() / f".{CONFIG_BASENAME}.yaml",
        Path.home() / f".{CONFIG_BASENAME}.toml",
        Path(f"/etc/{CONFIG_BASENAME}.yaml"),
        Path(f"/etc/{CONFIG_BASENAME}.toml"),
    ]


def find_config_file() -> Optional[Path]:
    """
    Search for a configuration file in standard locations.

    Returns:
        Path to the first configuration file found, or None if no file is found
    """
    for path in config_search_paths():
        if path.exists() and path.is_file():
            logger.info(f"Found configuration file: {path}")
            return path

    logger.debug("No configuration file found in standard locations")
    return None


def get_env_config(environ: Optional[Dict[str, str]] = None) -> dict:
    """
    Extract configuration from ``FLEET_REMEDIATE_*`` environment variables.

    Unparseable values are logged and ignored.

    Returns:
        Nested dictionary shaped like a config file
    """
    env = os.environ if environ is None else environ
    config: Dict[str, Dict[str, Any]] = {}

    for suffix, section, key, parser in _ENV_FIELDS:
        name = ENV_PREFIX + suffix
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = parser(raw)
        except ValueError:
            logger.warning(f"Invalid {name}={raw!r}, ignoring")
            continue
        config.setdefault(section, {})[key] = value

    return config


def deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries, with override values taking precedence.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def flatten_config(config: dict) -> dict:
    """
    Flatten nested configuration to ``RemediationConfig`` field names.

    Unknown sections and keys are logged and dropped.
    """
    flat = {}

    for section, values in config.items():
        if not isinstance(values, dict):
            logger.warning(f"Config section '{section}' is not a table, ignoring")
            continue
        for key, value in values.items():
            field_name = _FLAT_FIELDS.get((section, key))
            if field_name is None:
                logger.warning(f"Unknown config key '{section}.{key}', ignoring")
                continue
            flat[field_name] = value

    return flat


def merge_config(file_config: dict, env_config: dict) -> dict:
    """
    Merge file-based and environment-based configuration.

    Environment variables take precedence over file-based configuration.
    """
    return flatten_config(deep_merge(file_config, env_config))


def load_config_with_overrides(config_path: Optional[str] = None) -> dict:
    """
    Load configuration from file with environment variable overrides.

    Args:
        config_path: Optional explicit path to config file.
                    If None, searches standard locations.

    Returns:
        Flat dictionary of ``RemediationConfig`` keyword arguments

    Raises:
        FileNotFoundError: If explicit config_path is provided but doesn't exist
        ConfigurationError: If config parsing fails
    """
    file_config = {}

    if config_path:
        file_config = load_config_file(config_path)
        logger.info(f"Loaded configuration from: {config_path}")
    else:
        found_path = find_config_file()
        if found_path:
            file_config = load_config_file(str(found_path))
            logger.info(f"Loaded configuration from: {found_path}")

    env_config = get_env_config()
    if env_config:
        logger.info("Applying environment variable overrides")

    return merge_config(file_config, env_config)
