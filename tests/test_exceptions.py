"""
Tests for exception handling and custom exception types.

Verifies status codes and the safeguard names carried by policy errors.
"""

import pytest

from fleet_remediate.exceptions import (
    CommandBlockedError,
    ConfigurationError,
    ConfirmationMismatchError,
    ConflictError,
    ExecutorSetupError,
    InputError,
    InvalidPayloadError,
    InvalidSelectorError,
    NotFoundError,
    PersistenceError,
    PolicyViolationError,
    QueueBacklogError,
    RemediationError,
    RolloutPolicyError,
    SelectorRequiredError,
    UnknownActionError,
    UnknownHostError,
)


@pytest.mark.parametrize("exc_type,status", [
    (RemediationError, 500),
    (InputError, 400),
    (InvalidPayloadError, 400),
    (UnknownActionError, 400),
    (UnknownHostError, 400),
    (InvalidSelectorError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PersistenceError, 503),
    (ExecutorSetupError, 500),
    (ConfigurationError, 500),
])
def test_status_codes(exc_type, status):
    """Test that each error class maps to its HTTP-style status."""
    assert exc_type("boom").status_code == status
    assert issubclass(exc_type, RemediationError)


def test_policy_violation_default_safeguard():
    error = PolicyViolationError("too wide")
    assert error.safeguard == "policy"
    assert error.status_code == 400
    assert str(error) == "too wide"


def test_selector_required_safeguard():
    """Test that the selector safeguard is named on the error."""
    error = SelectorRequiredError("Selector required")
    assert isinstance(error, PolicyViolationError)
    assert error.safeguard == "require_selector"


def test_confirmation_mismatch_carries_expected_phrase():
    """Test that the expected confirm phrase travels with the error."""
    error = ConfirmationMismatchError("Confirm phrase mismatch", expected="EXECUTE FLEET STAGE 1")
    assert error.safeguard == "confirm_phrase"
    assert error.expected == "EXECUTE FLEET STAGE 1"


def test_rollout_policy_error_is_conflict():
    error = RolloutPolicyError("stage out of range", safeguard="stage_index")
    assert error.status_code == 409
    assert error.safeguard == "stage_index"


def test_command_blocked_carries_issues():
    """Test that the guard's issue list travels with the error."""
    issues = [object()]
    error = CommandBlockedError("Action purge blocked by command guard: #0:not_allowlisted", issues)
    assert isinstance(error, PolicyViolationError)
    assert error.status_code == 400
    assert error.safeguard == "command_guard"
    assert error.issues == issues
    assert CommandBlockedError("blocked").issues == []


@pytest.mark.parametrize("scope", ["per_host", "total"])
def test_queue_backlog_names_its_cap(scope):
    error = QueueBacklogError("Queue full", scope=scope)
    assert error.status_code == 409
    assert error.scope == scope
    assert error.safeguard == f"max_queue_{scope}"


def test_input_errors_catchable_as_base():
    """Test that specific input errors can be caught as InputError."""
    with pytest.raises(InputError):
        raise UnknownHostError("Unknown host: ghost-01")
