"""
Custom exception types for fleet-remediate.

Every error carries a ``status_code`` so callers at the HTTP edge can map it
without re-classifying. Transient command failures are not exceptions: they
are recorded on the run and drive the retry / dead-letter path.
"""


class RemediationError(Exception):
    """Base exception for all fleet-remediate errors."""
    status_code = 500


# Input errors: rejected synchronously, never enqueued, never retried
class InputError(RemediationError):
    """Base exception for malformed caller input."""
    status_code = 400


class InvalidPayloadError(InputError):
    """Run payload could not be parsed."""
    pass


class UnknownActionError(InputError):
    """Action id does not resolve in the action catalog."""
    pass


class UnknownHostError(InputError):
    """Host id does not resolve in the host directory."""
    pass


class InvalidSelectorError(InputError):
    """Fleet selector contains fields the planner does not understand."""
    pass


# Policy violations: the message names the safeguard that fired
class PolicyViolationError(RemediationError):
    """Base exception for rejected-by-policy requests."""
    status_code = 400

    def __init__(self, message: str, safeguard: str = "policy"):
        super().__init__(message)
        self.safeguard = safeguard


class SelectorRequiredError(PolicyViolationError):
    """Fleet rollout attempted without a narrowing selector."""

    def __init__(self, message: str):
        super().__init__(message, safeguard="require_selector")


class ConfirmationMismatchError(PolicyViolationError):
    """Confirmation phrase does not match the selected stage."""

    def __init__(self, message: str, expected: str):
        super().__init__(message, safeguard="confirm_phrase")
        self.expected = expected


class RolloutPolicyError(PolicyViolationError):
    """Stage or action cannot be rolled out under the current policy."""
    status_code = 409


class CommandBlockedError(PolicyViolationError):
    """Command list rejected by the command guard."""

    def __init__(self, message: str, issues=()):
        super().__init__(message, safeguard="command_guard")
        self.issues = list(issues)


class QueueBacklogError(PolicyViolationError):
    """Queue already holds as many active runs as the backlog cap allows."""
    status_code = 409

    def __init__(self, message: str, scope: str):
        super().__init__(message, safeguard=f"max_queue_{scope}")
        self.scope = scope


# Lookup / state errors
class NotFoundError(RemediationError):
    """Requested run does not exist or is not eligible for the operation."""
    status_code = 404


class ConflictError(RemediationError):
    """Run is in a state that does not allow the requested transition."""
    status_code = 409


# Infrastructure errors
class PersistenceError(RemediationError):
    """Run store is unavailable or a write failed."""
    status_code = 503


class ExecutorSetupError(RemediationError):
    """Command executor could not be started (missing shell, bad environment)."""
    status_code = 500


# Configuration errors
class ConfigurationError(RemediationError):
    """Invalid or missing configuration."""
    pass


__all__ = [
    "RemediationError",
    "InputError",
    "InvalidPayloadError",
    "UnknownActionError",
    "UnknownHostError",
    "InvalidSelectorError",
    "PolicyViolationError",
    "SelectorRequiredError",
    "ConfirmationMismatchError",
    "RolloutPolicyError",
    "CommandBlockedError",
    "QueueBacklogError",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "ExecutorSetupError",
    "ConfigurationError",
]
