"""
fleet-remediate: durable remediation queue, autonomous policy and staged fleet rollouts.
"""
from .version import __version__, VERSION_INFO, get_version, get_version_info
from .exceptions import (
    RemediationError,
    InputError,
    PolicyViolationError,
    NotFoundError,
    ConflictError,
    PersistenceError,
)
from .logging_context import (
    get_logger,
    set_context,
    get_context,
    clear_context,
    LoggingContext,
)
from .metrics import MetricsCollector
from .models import RunRecord, RunState, RemediationAction, FleetHost

__all__ = [
    "__version__",
    "VERSION_INFO",
    "get_version",
    "get_version_info",
    "RemediationError",
    "InputError",
    "PolicyViolationError",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "get_logger",
    "set_context",
    "get_context",
    "clear_context",
    "LoggingContext",
    "MetricsCollector",
    "RunRecord",
    "RunState",
    "RemediationAction",
    "FleetHost",
]
