"""
Data models for fleet-remediate using Pydantic for validation.

Field names are snake_case in Python and camelCase on the wire
(``model_dump(by_alias=True)``), which is the shape the payload codec
persists and the surrounding services exchange.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .constants import (
    APPROVAL_REASON_MAX_LEN,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DLQ_REASON_MAX_LEN,
    FLEET_PRIORITY_MAX,
    FLEET_PRIORITY_MIN,
    FLEET_TOKEN_MAX_LEN,
    ID_MAX_LEN,
    LAST_ERROR_MAX_LEN,
    MAX_ATTEMPTS_COUNTER,
    MAX_MAX_ATTEMPTS,
    MIN_MAX_ATTEMPTS,
    OUTPUT_MAX_LEN,
    RUN_REASON_MAX_LEN,
)
from .retry import ensure_utc
from .utils import normalize_token, normalize_token_list, parse_int, parse_timestamp, string_list, trim_text

CURRENT_SCHEMA_VERSION = 2
LEGACY_SCHEMA_VERSION = 1


class _LenientEnum(str, Enum):
    """String enum that accepts any casing and surrounding whitespace."""

    @classmethod
    def _missing_(cls, value: Any):
        if isinstance(value, str):
            wanted = value.strip().lower()
            for member in cls:
                if member.value == wanted:
                    return member
        return None


class RunState(_LenientEnum):
    """Lifecycle state of a queued remediation run."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DLQ = "dlq"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.SUCCEEDED, RunState.FAILED, RunState.DLQ, RunState.CANCELED)


# Older records used these spellings
LEGACY_STATE_ALIASES = {
    "done": RunState.SUCCEEDED,
    "processing": RunState.RUNNING,
    "cancelled": RunState.CANCELED,
    "dead_letter": RunState.DLQ,
}


class ApprovalStatus(_LenientEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AutoTier(_LenientEnum):
    """How much human gating an action needs, least to most."""
    OBSERVE = "observe"
    SAFE_AUTO = "safe_auto"
    GUARDED_AUTO = "guarded_auto"
    RISKY_MANUAL = "risky_manual"


class RiskLevel(_LenientEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RolloutStrategy(_LenientEnum):
    GROUP_CANARY = "group_canary"
    SEQUENTIAL = "sequential"


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class ApprovalMeta(_WireModel):
    """
    Human approval gate attached to a run.

    Attributes:
        required: Whether the gate is active
        status: pending until an operator approves or rejects
        reason: Why approval was requested, or the operator's note
        requested_at: When the gate was opened
        approved_by: Actor who decided (approve or reject)
        decided_at: When the decision was recorded
    """
    required: bool = True
    status: ApprovalStatus = ApprovalStatus.PENDING
    reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    decided_at: Optional[datetime] = None

    @field_validator('reason', mode='after')
    @classmethod
    def trim_reason(cls, v: Optional[str]) -> Optional[str]:
        return trim_text(v, APPROVAL_REASON_MAX_LEN)

    @field_validator('approved_by', mode='after')
    @classmethod
    def trim_actor(cls, v: Optional[str]) -> Optional[str]:
        return trim_text(v, ID_MAX_LEN)

    @field_validator('requested_at', 'decided_at', mode='after')
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    @property
    def blocks_execution(self) -> bool:
        return self.required and self.status != ApprovalStatus.APPROVED


class CanaryMeta(_WireModel):
    """Canary decision captured when a staged rollout queued the run."""
    rollout_percent: int = Field(100, ge=0, le=100)
    bucket: int = Field(0, ge=0, le=99)
    selected: bool = True


_QUEUE_TEXT_LIMITS = {
    'last_error': LAST_ERROR_MAX_LEN,
    'dlq_reason': DLQ_REASON_MAX_LEN,
    'replay_of_run_id': ID_MAX_LEN,
}


class QueueMeta(_WireModel):
    """
    Retry, dead-letter and gating metadata for a run.

    Values are normalized on construction (UTC timestamps, trimmed text,
    a positive ``fleet_stage`` or None, no inactive approval gate) so a
    stored payload decodes back to an equal object.
    """
    attempts: int = Field(0, ge=0, le=MAX_ATTEMPTS_COUNTER)
    max_attempts: int = Field(DEFAULT_MAX_RETRY_ATTEMPTS, ge=MIN_MAX_ATTEMPTS, le=MAX_MAX_ATTEMPTS)
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    dlq: bool = False
    dlq_reason: Optional[str] = None
    replay_of_run_id: Optional[str] = None
    approval: Optional[ApprovalMeta] = None
    canary: Optional[CanaryMeta] = None
    fleet_stage: Optional[int] = None

    @field_validator('next_attempt_at', 'last_attempt_at', mode='after')
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    @field_validator('last_error', 'dlq_reason', 'replay_of_run_id', mode='after')
    @classmethod
    def trim_fields(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        return trim_text(v, _QUEUE_TEXT_LIMITS[info.field_name])

    @field_validator('fleet_stage', mode='before')
    @classmethod
    def positive_stage(cls, v: Any) -> Optional[int]:
        stage = parse_int(v)
        return stage if stage is not None and stage >= 1 else None

    @model_validator(mode='after')
    def drop_inactive_approval(self) -> 'QueueMeta':
        if self.approval is not None and not self.approval.required:
            self.approval = None
        return self

    @property
    def approval_pending(self) -> bool:
        return (
            self.approval is not None
            and self.approval.required
            and self.approval.status == ApprovalStatus.PENDING
        )


_RUN_TEXT_LIMITS = {
    'reason': RUN_REASON_MAX_LEN,
    'requested_by_user_id': ID_MAX_LEN,
    'output': OUTPUT_MAX_LEN,
}


class RunRecord(_WireModel):
    """
    The unit of queued remediation work.

    The command list is a snapshot of the action taken at enqueue time, so a
    later catalog change never alters what an already-queued run executes.
    Construction applies the same trimming and caps as the payload codec;
    a record whose ids are blank or whose commands are all blank is invalid.
    """
    schema_version: int = CURRENT_SCHEMA_VERSION
    run_id: str
    host_id: str
    action_id: str
    state: RunState = RunState.QUEUED
    commands: List[str]
    source_codes: List[str] = Field(default_factory=list)
    rollback_notes: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    requested_by_user_id: Optional[str] = None
    requested_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    output: Optional[str] = None
    queue: QueueMeta = Field(default_factory=QueueMeta)

    @field_validator('schema_version', mode='after')
    @classmethod
    def current_schema(cls, v: int) -> int:
        # Legacy payloads are upgraded when decoded
        return CURRENT_SCHEMA_VERSION

    @field_validator('run_id', 'host_id', 'action_id', mode='after')
    @classmethod
    def require_id(cls, v: str) -> str:
        text = trim_text(v, ID_MAX_LEN)
        if text is None:
            raise ValueError("must not be blank")
        return text

    @field_validator('commands', mode='after')
    @classmethod
    def require_commands(cls, v: List[str]) -> List[str]:
        commands = string_list(v)
        if not commands:
            raise ValueError("at least one non-blank command is required")
        return commands

    @field_validator('source_codes', 'rollback_notes', mode='after')
    @classmethod
    def strip_items(cls, v: List[str]) -> List[str]:
        return string_list(v) or []

    @field_validator('reason', 'requested_by_user_id', 'output', mode='after')
    @classmethod
    def trim_fields(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        return trim_text(v, _RUN_TEXT_LIMITS[info.field_name])

    @field_validator('requested_at', 'started_at', 'finished_at', mode='after')
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(v)

    def summary(self) -> Dict[str, Any]:
        """Compact JSON-serializable view used by queue snapshots."""
        approval = self.queue.approval
        return {
            "runId": self.run_id,
            "hostId": self.host_id,
            "actionId": self.action_id,
            "state": self.state.value,
            "attempts": self.queue.attempts,
            "maxAttempts": self.queue.max_attempts,
            "nextAttemptAt": self.queue.next_attempt_at.isoformat() if self.queue.next_attempt_at else None,
            "lastError": self.queue.last_error,
            "dlq": self.queue.dlq,
            "replayOfRunId": self.queue.replay_of_run_id,
            "approvalStatus": approval.status.value if approval and approval.required else None,
            "requestedAt": self.requested_at.isoformat() if self.requested_at else None,
        }


class RemediationAction(_WireModel):
    """
    Remediation action produced upstream (read-only to this package).

    Attributes:
        id: Stable action identifier
        title: Human readable title
        commands: Ordered shell commands
        rollback_notes: Operator notes for undoing the action
        source_codes: Symptom identifiers the action addresses
        requires_confirm: Whether an operator must type ``confirm_phrase``
        confirm_phrase: Expected confirmation phrase
        risk: Risk level used for approval thresholds
        auto_tier: Autonomous execution tier
    """
    id: str
    title: str = ""
    commands: List[str]
    rollback_notes: List[str] = Field(default_factory=list)
    source_codes: List[str] = Field(default_factory=list)
    requires_confirm: bool = False
    confirm_phrase: str = ""
    risk: RiskLevel = RiskLevel.MEDIUM
    auto_tier: AutoTier = AutoTier.SAFE_AUTO

    @field_validator('risk', mode='before')
    @classmethod
    def coerce_risk(cls, v: Any) -> RiskLevel:
        try:
            return RiskLevel(v)
        except ValueError:
            return RiskLevel.MEDIUM

    @field_validator('auto_tier', mode='before')
    @classmethod
    def coerce_tier(cls, v: Any) -> AutoTier:
        # Never promote to a more permissive tier on bad input
        try:
            return AutoTier(v)
        except ValueError:
            return AutoTier.SAFE_AUTO


class FleetHost(_WireModel):
    """Host as seen by the fleet planner, with its rollout policy fields."""
    id: str
    name: str = ""
    enabled: bool = True
    last_seen_at: Optional[datetime] = None
    group: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    scopes: List[str] = Field(default_factory=list)
    rollout_paused: bool = False
    rollout_priority: int = 0

    @field_validator('last_seen_at', mode='before')
    @classmethod
    def parse_last_seen(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator('group', mode='before')
    @classmethod
    def normalize_group(cls, v: Any) -> Optional[str]:
        return normalize_token(v, FLEET_TOKEN_MAX_LEN)

    @field_validator('tags', 'scopes', mode='before')
    @classmethod
    def normalize_tokens(cls, v: Any) -> List[str]:
        if not isinstance(v, (list, tuple)):
            return []
        return normalize_token_list(v, max_items=40, max_len=FLEET_TOKEN_MAX_LEN)

    @field_validator('rollout_priority', mode='before')
    @classmethod
    def clamp_priority(cls, v: Any) -> int:
        if isinstance(v, bool) or not isinstance(v, (int, float, str)):
            return 0
        try:
            value = int(float(v))
        except (TypeError, ValueError, OverflowError):
            return 0
        return max(FLEET_PRIORITY_MIN, min(FLEET_PRIORITY_MAX, value))
