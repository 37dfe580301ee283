"""
Shared defaults and limits for fleet-remediate.
"""

# Storage
DEFAULT_DB_PATH = "fleet_remediate.db"
DEFAULT_DB_BUSY_TIMEOUT_SECONDS = 5.0

# Retry / dead-letter
DEFAULT_RETRY_BASE_SECONDS = 15
DEFAULT_RETRY_MAX_SECONDS = 900
DEFAULT_MAX_RETRY_ATTEMPTS = 3
MAX_RETRY_DELAY_SECONDS = 24 * 60 * 60
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 20
MAX_ATTEMPTS_COUNTER = 20_000

# Queue
DEFAULT_DRAIN_LIMIT = 5
MAX_DRAIN_LIMIT = 50
DEFAULT_SNAPSHOT_LIMIT = 25
MAX_SNAPSHOT_LIMIT = 100
DEFAULT_REPLAY_LIMIT = 10
MAX_REPLAY_LIMIT = 100
DEFAULT_QUEUE_TTL_MINUTES = 24 * 60
DEFAULT_RUNNING_GRACE_SECONDS = 15 * 60
DEFAULT_MAX_QUEUE_PER_HOST = 10
DEFAULT_MAX_QUEUE_TOTAL = 1000
MAX_QUEUE_TOTAL_LIMIT = 100_000

# Text truncation
LAST_ERROR_MAX_LEN = 1200
DLQ_REASON_MAX_LEN = 600
APPROVAL_REASON_MAX_LEN = 280
RUN_REASON_MAX_LEN = 160
ID_MAX_LEN = 120
OUTPUT_MAX_LEN = 16_000

# Executor
DEFAULT_COMMAND_TIMEOUT_SECONDS = 20
DEFAULT_MAX_OUTPUT_BYTES = 512_000
DEFAULT_SHELL = "/bin/bash"

# Command guard
DEFAULT_MAX_COMMANDS_PER_ACTION = 20
MAX_COMMANDS_PER_ACTION_LIMIT = 200
DEFAULT_MAX_COMMAND_LENGTH = 800
MIN_COMMAND_LENGTH_LIMIT = 10
MAX_COMMAND_LENGTH_LIMIT = 8000
GUARD_ISSUE_SUMMARY_LIMIT = 8

# Autonomous policy
VALID_AUTO_TIERS = ("observe", "safe_auto", "guarded_auto", "risky_manual")
VALID_RISK_LEVELS = ("none", "low", "medium", "high")
DEFAULT_MAX_AUTO_TIER = "guarded_auto"
DEFAULT_APPROVAL_RISK_THRESHOLD = "medium"
DEFAULT_CANARY_ROLLOUT_PERCENT = 25

# Fleet blast radius (hard operator caps)
DEFAULT_FLEET_MAX_HOSTS = 12
DEFAULT_FLEET_MAX_PER_GROUP = 5
DEFAULT_FLEET_MAX_PERCENT_ENABLED = 40
DEFAULT_FLEET_STAGE_SIZE = 3
FLEET_MAX_HOSTS_LIMIT = 500
FLEET_MAX_PER_GROUP_LIMIT = 200
FLEET_MAX_STAGE_SIZE = 100
FLEET_MAX_SELECTOR_HOST_IDS = 500
FLEET_MAX_SELECTOR_TOKENS = 30
FLEET_TOKEN_MAX_LEN = 64
FLEET_PRIORITY_MIN = -100
FLEET_PRIORITY_MAX = 100
UNGROUPED_KEY = "__ungrouped"
FLEET_CONFIRM_PREFIX = "EXECUTE FLEET STAGE"
VALID_ROLLOUT_STRATEGIES = ("group_canary", "sequential")

# Logging
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

TRUTHY_STRINGS = ("1", "true", "yes", "on")
FALSY_STRINGS = ("0", "false", "no", "off")
