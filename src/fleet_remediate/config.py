"""Configuration management for fleet-remediate.

Configuration can be loaded from environment variables, YAML/TOML files, or direct
instantiation, and turned into the policy objects the queue and the fleet
planner consume.

Example:
    >>> from fleet_remediate.config import RemediationConfig
    >>>
    >>> # Load from environment variables
    >>> config = RemediationConfig.from_env()
    >>>
    >>> # Recommended: automatic loading with fallback
    >>> config = RemediationConfig.load()
    >>> config.validate()
    >>> policy = config.autonomous_policy()
"""
import os
import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_APPROVAL_RISK_THRESHOLD,
    DEFAULT_CANARY_ROLLOUT_PERCENT,
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_DB_BUSY_TIMEOUT_SECONDS,
    DEFAULT_DB_PATH,
    DEFAULT_FLEET_MAX_HOSTS,
    DEFAULT_FLEET_MAX_PER_GROUP,
    DEFAULT_FLEET_MAX_PERCENT_ENABLED,
    DEFAULT_FLEET_STAGE_SIZE,
    DEFAULT_MAX_AUTO_TIER,
    DEFAULT_MAX_COMMAND_LENGTH,
    DEFAULT_MAX_COMMANDS_PER_ACTION,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_MAX_QUEUE_PER_HOST,
    DEFAULT_MAX_QUEUE_TOTAL,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_QUEUE_TTL_MINUTES,
    DEFAULT_RETRY_BASE_SECONDS,
    DEFAULT_RETRY_MAX_SECONDS,
    DEFAULT_RUNNING_GRACE_SECONDS,
    DEFAULT_SHELL,
    FLEET_MAX_HOSTS_LIMIT,
    FLEET_MAX_PER_GROUP_LIMIT,
    FLEET_MAX_STAGE_SIZE,
    MAX_COMMAND_LENGTH_LIMIT,
    MAX_COMMANDS_PER_ACTION_LIMIT,
    MAX_MAX_ATTEMPTS,
    MAX_QUEUE_TOTAL_LIMIT,
    MAX_RETRY_DELAY_SECONDS,
    MIN_COMMAND_LENGTH_LIMIT,
    MIN_MAX_ATTEMPTS,
    VALID_AUTO_TIERS,
    VALID_LOG_LEVELS,
    VALID_RISK_LEVELS,
)
from .config_loader import ENV_PREFIX, get_env_config, load_config_with_overrides, merge_config
from .exceptions import ConfigurationError
from .remediation.autonomous import AutonomousPolicy
from .remediation.fleet import FleetBlastRadiusPolicy
from .remediation.guard import CommandGuardPolicy

logger = logging.getLogger(__name__)


@dataclass
class RemediationConfig:
    """
    Configuration for fleet-remediate.

    Configuration can be loaded from:
    1. Configuration files (YAML or TOML)
    2. Environment variables (override file settings)
    3. Direct instantiation with parameters

    Environment variables (all prefixed ``FLEET_REMEDIATE_``):
        DB_PATH, DB_BUSY_TIMEOUT: SQLite run store
        ACTIONS_FILE, HOSTS_FILE: Action catalog and host inventory files
        RETRY_BASE_SECONDS, RETRY_MAX_SECONDS, MAX_ATTEMPTS: Retry policy
        QUEUE_TTL_MINUTES, RUNNING_GRACE_SECONDS, RECOVER_ON_DRAIN: Queue hygiene
        MAX_QUEUE_PER_HOST, MAX_QUEUE_TOTAL: Active backlog caps checked at enqueue
        COMMAND_TIMEOUT, MAX_OUTPUT_BYTES, SHELL, DRY_RUN: Command executor
        GUARD_ENFORCE_ALLOWLIST, GUARD_ALLOWLIST, GUARD_BLOCKLIST,
        GUARD_MAX_COMMANDS, GUARD_MAX_COMMAND_LENGTH: Command guard (pattern
        lists are separated by newlines or ``||``)
        MAX_AUTO_TIER, APPROVAL_RISK_THRESHOLD, CANARY_ROLLOUT_PERCENT: Autonomous policy
        FLEET_MAX_HOSTS, FLEET_MAX_PER_GROUP, FLEET_MAX_PERCENT,
        FLEET_STAGE_SIZE, FLEET_REQUIRE_SELECTOR: Fleet blast-radius caps
        LOG_LEVEL, LOG_FILE, LOG_JSON: Logging
        AUDIT_FILE: JSONL audit trail (in-memory when unset)

    Config file locations (searched in order):
        ./fleet-remediate.yaml, ./fleet-remediate.toml
        ~/.fleet-remediate.yaml, ~/.fleet-remediate.toml
        /etc/fleet-remediate.yaml, /etc/fleet-remediate.toml
    """
    # Storage
    db_path: str = DEFAULT_DB_PATH
    db_busy_timeout: float = DEFAULT_DB_BUSY_TIMEOUT_SECONDS

    # Inventory
    actions_file: Optional[str] = None
    hosts_file: Optional[str] = None

    # Queue
    retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    retry_max_seconds: float = DEFAULT_RETRY_MAX_SECONDS
    max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    queue_ttl_minutes: int = DEFAULT_QUEUE_TTL_MINUTES
    running_grace_seconds: int = DEFAULT_RUNNING_GRACE_SECONDS
    recover_on_drain: bool = True
    max_queue_per_host: int = DEFAULT_MAX_QUEUE_PER_HOST
    max_queue_total: int = DEFAULT_MAX_QUEUE_TOTAL

    # Executor
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    shell: str = DEFAULT_SHELL
    dry_run: bool = False

    # Command guard
    guard_enforce_allowlist: bool = False
    guard_allowlist: List[str] = field(default_factory=list)
    guard_blocklist: List[str] = field(default_factory=list)
    guard_max_commands: int = DEFAULT_MAX_COMMANDS_PER_ACTION
    guard_max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH

    # Autonomous policy
    max_auto_tier: str = DEFAULT_MAX_AUTO_TIER
    approval_risk_threshold: str = DEFAULT_APPROVAL_RISK_THRESHOLD
    canary_rollout_percent: int = DEFAULT_CANARY_ROLLOUT_PERCENT

    # Fleet blast radius
    fleet_max_hosts: int = DEFAULT_FLEET_MAX_HOSTS
    fleet_max_per_group: int = DEFAULT_FLEET_MAX_PER_GROUP
    fleet_max_percent_of_enabled_fleet: int = DEFAULT_FLEET_MAX_PERCENT_ENABLED
    fleet_default_stage_size: int = DEFAULT_FLEET_STAGE_SIZE
    fleet_require_selector: bool = True

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False

    # Audit
    audit_file: Optional[str] = None

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If any configuration value is invalid
        """
        errors = []

        if not self.db_path:
            errors.append("db_path must not be empty")
        if self.db_busy_timeout <= 0:
            errors.append(f"db_busy_timeout must be positive, got {self.db_busy_timeout}")

        if self.retry_base_seconds <= 0:
            errors.append(f"retry_base_seconds must be positive, got {self.retry_base_seconds}")
        if not (0 < self.retry_max_seconds <= MAX_RETRY_DELAY_SECONDS):
            errors.append(
                f"retry_max_seconds must be in (0, {MAX_RETRY_DELAY_SECONDS}], got {self.retry_max_seconds}"
            )
        if not (MIN_MAX_ATTEMPTS <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"max_attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}, got {self.max_attempts}"
            )
        if self.queue_ttl_minutes <= 0:
            errors.append(f"queue_ttl_minutes must be positive, got {self.queue_ttl_minutes}")
        if self.running_grace_seconds <= 0:
            errors.append(f"running_grace_seconds must be positive, got {self.running_grace_seconds}")
        if not (1 <= self.max_queue_per_host <= MAX_QUEUE_TOTAL_LIMIT):
            errors.append(
                f"max_queue_per_host must be between 1 and {MAX_QUEUE_TOTAL_LIMIT}, got {self.max_queue_per_host}"
            )
        if not (1 <= self.max_queue_total <= MAX_QUEUE_TOTAL_LIMIT):
            errors.append(
                f"max_queue_total must be between 1 and {MAX_QUEUE_TOTAL_LIMIT}, got {self.max_queue_total}"
            )

        if self.command_timeout <= 0:
            errors.append(f"command_timeout must be positive, got {self.command_timeout}")
        if self.max_output_bytes <= 0:
            errors.append(f"max_output_bytes must be positive, got {self.max_output_bytes}")
        if not self.shell:
            errors.append("shell must not be empty")

        if not (1 <= self.guard_max_commands <= MAX_COMMANDS_PER_ACTION_LIMIT):
            errors.append(
                f"guard_max_commands must be between 1 and {MAX_COMMANDS_PER_ACTION_LIMIT}, "
                f"got {self.guard_max_commands}"
            )
        if not (MIN_COMMAND_LENGTH_LIMIT <= self.guard_max_command_length <= MAX_COMMAND_LENGTH_LIMIT):
            errors.append(
                f"guard_max_command_length must be between {MIN_COMMAND_LENGTH_LIMIT} and "
                f"{MAX_COMMAND_LENGTH_LIMIT}, got {self.guard_max_command_length}"
            )
        for name in ("guard_allowlist", "guard_blocklist"):
            patterns = getattr(self, name)
            if not isinstance(patterns, (list, tuple)):
                errors.append(f"{name} must be a list of patterns")
                continue
            for pattern in patterns:
                try:
                    re.compile(pattern)
                except (re.error, TypeError) as e:
                    errors.append(f"{name} has an invalid pattern {pattern!r}: {e}")

        if self.max_auto_tier not in VALID_AUTO_TIERS:
            errors.append(f"max_auto_tier must be one of {VALID_AUTO_TIERS}, got '{self.max_auto_tier}'")
        if self.approval_risk_threshold not in VALID_RISK_LEVELS:
            errors.append(
                f"approval_risk_threshold must be one of {VALID_RISK_LEVELS}, "
                f"got '{self.approval_risk_threshold}'"
            )
        if not (0 <= self.canary_rollout_percent <= 100):
            errors.append(
                f"canary_rollout_percent must be between 0 and 100, got {self.canary_rollout_percent}"
            )

        if not (1 <= self.fleet_max_hosts <= FLEET_MAX_HOSTS_LIMIT):
            errors.append(
                f"fleet_max_hosts must be between 1 and {FLEET_MAX_HOSTS_LIMIT}, got {self.fleet_max_hosts}"
            )
        if not (1 <= self.fleet_max_per_group <= FLEET_MAX_PER_GROUP_LIMIT):
            errors.append(
                f"fleet_max_per_group must be between 1 and {FLEET_MAX_PER_GROUP_LIMIT}, "
                f"got {self.fleet_max_per_group}"
            )
        if not (1 <= self.fleet_max_percent_of_enabled_fleet <= 100):
            errors.append(
                "fleet_max_percent_of_enabled_fleet must be between 1 and 100, "
                f"got {self.fleet_max_percent_of_enabled_fleet}"
            )
        if not (1 <= self.fleet_default_stage_size <= FLEET_MAX_STAGE_SIZE):
            errors.append(
                f"fleet_default_stage_size must be between 1 and {FLEET_MAX_STAGE_SIZE}, "
                f"got {self.fleet_default_stage_size}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"log_level must be one of {VALID_LOG_LEVELS}, got '{self.log_level}'")

        if errors:
            raise ValueError("Configuration validation failed:\n  - " + "\n  - ".join(errors))

    def autonomous_policy(self) -> AutonomousPolicy:
        return AutonomousPolicy.from_values(
            max_auto_tier=self.max_auto_tier,
            approval_risk_threshold=self.approval_risk_threshold,
            canary_rollout_percent=self.canary_rollout_percent,
        )

    def command_guard_policy(self) -> CommandGuardPolicy:
        return CommandGuardPolicy.from_values(
            enforce_allowlist=self.guard_enforce_allowlist,
            max_commands_per_action=self.guard_max_commands,
            max_command_length=self.guard_max_command_length,
            allowlist=self.guard_allowlist,
            blocklist=self.guard_blocklist,
        )

    def blast_radius_policy(self) -> FleetBlastRadiusPolicy:
        return FleetBlastRadiusPolicy.from_values(
            max_hosts=self.fleet_max_hosts,
            max_per_group=self.fleet_max_per_group,
            max_percent_of_enabled_fleet=self.fleet_max_percent_of_enabled_fleet,
            default_stage_size=self.fleet_default_stage_size,
            require_selector=self.fleet_require_selector,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def _from_flat(cls, values: Dict[str, Any]) -> 'RemediationConfig':
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in values.items() if key in known})

    @classmethod
    def from_env(cls) -> 'RemediationConfig':
        """
        Create configuration from ``FLEET_REMEDIATE_*`` environment variables only.

        Returns:
            RemediationConfig instance populated from environment variables
        """
        return cls._from_flat(merge_config({}, get_env_config()))

    @classmethod
    def from_file(cls, config_path: Optional[str] = None) -> 'RemediationConfig':
        """
        Create configuration from file with environment variable overrides.

        Loads configuration from YAML or TOML file and applies environment
        variable overrides. If no path is provided, searches standard locations.
        A broken file found by the search is logged and skipped; a broken file
        named explicitly is an error.

        Args:
            config_path: Optional explicit path to config file.

        Raises:
            FileNotFoundError: If explicit config_path doesn't exist
            ConfigurationError: If explicit config_path cannot be parsed

        Example:
            >>> config = RemediationConfig.from_file("fleet-remediate.yaml")
            >>> config = RemediationConfig.from_file()  # Auto-search
        """
        try:
            config_dict = load_config_with_overrides(config_path)
            return cls._from_flat(config_dict)
        except (ConfigurationError, OSError) as e:
            if config_path:
                raise
            logger.error(f"Failed to load configuration from file: {e}")
            logger.warning(f"Falling back to {ENV_PREFIX}* environment configuration")
            return cls.from_env()

    @classmethod
    def load(cls, config_path: Optional[str] = None, use_file: bool = True) -> 'RemediationConfig':
        """
        Load configuration with automatic fallback.

        This is the recommended method for loading configuration.

        Args:
            config_path: Optional explicit path to config file
            use_file: If True, attempts to load from file before env vars
        """
        if use_file:
            return cls.from_file(config_path)
        else:
            return cls.from_env()


def config_from_environ_defaults() -> RemediationConfig:
    """Configuration for the CLI when ``FLEET_REMEDIATE_CONFIG`` may name a file."""
    return RemediationConfig.load(os.getenv(f"{ENV_PREFIX}CONFIG"))
