"""
Run payload codec.

Parses and serializes the durable record attached to a queued run. Two
on-disk shapes exist:

- schema 2 (current): run fields plus a ``queue`` object with retry,
  dead-letter, approval and canary metadata;
- schema 1 (legacy): a flat execute payload without ``queue``.

Both are normalized here into a :class:`RunRecord` carrying
``schema_version = 2``; nothing downstream looks at the legacy shape.
``parse`` never raises: malformed input yields ``None`` and the caller
treats it as an input error.
"""
import json
import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from .constants import (
    APPROVAL_REASON_MAX_LEN,
    DLQ_REASON_MAX_LEN,
    ID_MAX_LEN,
    LAST_ERROR_MAX_LEN,
    MAX_ATTEMPTS_COUNTER,
    MAX_MAX_ATTEMPTS,
    MIN_MAX_ATTEMPTS,
    OUTPUT_MAX_LEN,
    RUN_REASON_MAX_LEN,
)
from .models import (
    CURRENT_SCHEMA_VERSION,
    LEGACY_SCHEMA_VERSION,
    LEGACY_STATE_ALIASES,
    ApprovalMeta,
    ApprovalStatus,
    CanaryMeta,
    QueueMeta,
    RunRecord,
    RunState,
)
from .retry import clamp_int, ensure_utc, utc_now
from .utils import as_mapping, parse_bool, parse_int, parse_timestamp, pick, string_list, trim_text

logger = logging.getLogger(__name__)

RawPayload = Union[str, bytes, Mapping[str, Any], None]


def _decode(raw: RawPayload) -> Optional[Mapping[str, Any]]:
    if raw is None:
        return None
    if isinstance(raw, (str, bytes)):
        try:
            decoded = json.loads(raw)
        except (ValueError, TypeError):
            return None
        return as_mapping(decoded)
    return as_mapping(raw)


def _parse_state(value: Any) -> Optional[RunState]:
    if value is None:
        return RunState.QUEUED
    if not isinstance(value, str):
        return None
    text = value.strip().lower()
    if text in LEGACY_STATE_ALIASES:
        return LEGACY_STATE_ALIASES[text]
    try:
        return RunState(text)
    except ValueError:
        return None


def _parse_approval(raw: Any) -> Optional[ApprovalMeta]:
    rec = as_mapping(raw)
    if rec is None:
        return None
    if not parse_bool(rec.get("required")):
        return None

    status_raw = rec.get("status")
    status = ApprovalStatus.PENDING
    if isinstance(status_raw, str):
        try:
            status = ApprovalStatus(status_raw)
        except ValueError:
            status = ApprovalStatus.PENDING

    return ApprovalMeta(
        required=True,
        status=status,
        reason=trim_text(rec.get("reason"), APPROVAL_REASON_MAX_LEN),
        requested_at=parse_timestamp(pick(rec, "requestedAt", "requested_at")),
        approved_by=trim_text(pick(rec, "approvedBy", "approved_by"), ID_MAX_LEN),
        decided_at=parse_timestamp(pick(rec, "decidedAt", "decided_at")),
    )


def _parse_canary(raw: Any) -> Optional[CanaryMeta]:
    rec = as_mapping(raw)
    if rec is None:
        return None
    percent = parse_int(pick(rec, "rolloutPercent", "rollout_percent"))
    bucket = parse_int(rec.get("bucket"))
    selected = parse_bool(rec.get("selected"))
    return CanaryMeta(
        rollout_percent=clamp_int(percent if percent is not None else 100, 0, 100),
        bucket=clamp_int(bucket if bucket is not None else 0, 0, 99),
        selected=True if selected is None else selected,
    )


def default_queue_meta(default_max_attempts: int) -> QueueMeta:
    """Queue metadata synthesized for legacy records and fresh runs."""
    return QueueMeta(
        attempts=0,
        max_attempts=clamp_int(default_max_attempts, MIN_MAX_ATTEMPTS, MAX_MAX_ATTEMPTS),
        dlq=False,
        next_attempt_at=None,
    )


def normalize_queue_meta(raw: Any, default_max_attempts: int) -> QueueMeta:
    """
    Normalize a ``queue`` object, applying defaults and clamps.

    Args:
        raw: Raw queue mapping (anything else yields the defaults)
        default_max_attempts: Retry budget used when the record has none

    Returns:
        QueueMeta
    """
    rec = as_mapping(raw)
    if rec is None:
        return default_queue_meta(default_max_attempts)

    default_max = clamp_int(default_max_attempts, MIN_MAX_ATTEMPTS, MAX_MAX_ATTEMPTS)
    attempts = parse_int(rec.get("attempts"))
    max_attempts = parse_int(pick(rec, "maxAttempts", "max_attempts"))
    fleet_stage = parse_int(pick(rec, "fleetStage", "fleet_stage"))

    return QueueMeta(
        attempts=clamp_int(attempts if attempts is not None else 0, 0, MAX_ATTEMPTS_COUNTER),
        max_attempts=clamp_int(
            max_attempts if max_attempts is not None else default_max,
            MIN_MAX_ATTEMPTS,
            MAX_MAX_ATTEMPTS,
        ),
        next_attempt_at=parse_timestamp(pick(rec, "nextAttemptAt", "next_attempt_at")),
        last_attempt_at=parse_timestamp(pick(rec, "lastAttemptAt", "last_attempt_at")),
        last_error=trim_text(pick(rec, "lastError", "last_error"), LAST_ERROR_MAX_LEN),
        dlq=bool(parse_bool(rec.get("dlq"))),
        dlq_reason=trim_text(pick(rec, "dlqReason", "dlq_reason"), DLQ_REASON_MAX_LEN),
        replay_of_run_id=trim_text(pick(rec, "replayOfRunId", "replay_of_run_id"), ID_MAX_LEN),
        approval=_parse_approval(rec.get("approval")),
        canary=_parse_canary(rec.get("canary")),
        fleet_stage=fleet_stage if fleet_stage is not None and fleet_stage >= 1 else None,
    )


def parse(raw: RawPayload, default_max_attempts: int) -> Optional[RunRecord]:
    """
    Parse a stored run payload.

    Args:
        raw: JSON text or an already-decoded mapping
        default_max_attempts: Retry budget for legacy records lacking ``queue``

    Returns:
        RunRecord, or None when the payload is malformed (missing ids,
        non-list or empty ``commands``, unknown state, invalid JSON)
    """
    rec = _decode(raw)
    if rec is None:
        return None

    run_id = trim_text(pick(rec, "runId", "run_id"), ID_MAX_LEN)
    host_id = trim_text(pick(rec, "hostId", "host_id"), ID_MAX_LEN)
    action_id = trim_text(pick(rec, "actionId", "action_id"), ID_MAX_LEN)
    commands = string_list(rec.get("commands"))
    state = _parse_state(rec.get("state"))

    if not run_id or not host_id or not action_id:
        return None
    if not commands or state is None:
        return None

    queue_raw = rec.get("queue")
    if as_mapping(queue_raw) is None:
        queue = default_queue_meta(default_max_attempts)
        schema_version = LEGACY_SCHEMA_VERSION
    else:
        queue = normalize_queue_meta(queue_raw, default_max_attempts)
        schema_version = CURRENT_SCHEMA_VERSION

    if schema_version == LEGACY_SCHEMA_VERSION:
        logger.debug(f"Upgrading legacy payload for run {run_id}")

    try:
        return RunRecord(
            schema_version=CURRENT_SCHEMA_VERSION,
            run_id=run_id,
            host_id=host_id,
            action_id=action_id,
            state=state,
            commands=commands,
            source_codes=string_list(pick(rec, "sourceCodes", "source_codes")) or [],
            rollback_notes=string_list(pick(rec, "rollbackNotes", "rollback_notes")) or [],
            reason=trim_text(rec.get("reason"), RUN_REASON_MAX_LEN),
            requested_by_user_id=trim_text(
                pick(rec, "requestedByUserId", "requested_by_user_id"), ID_MAX_LEN
            ),
            requested_at=parse_timestamp(pick(rec, "requestedAt", "requested_at")),
            started_at=parse_timestamp(pick(rec, "startedAt", "started_at")),
            finished_at=parse_timestamp(pick(rec, "finishedAt", "finished_at")),
            output=trim_text(rec.get("output"), OUTPUT_MAX_LEN),
            queue=queue,
        )
    except ValidationError as e:
        logger.warning(f"Rejected run payload {run_id}: {e}")
        return None


def serialize(record: RunRecord) -> str:
    """Serialize a run record to JSON text (camelCase keys)."""
    return json.dumps(record.model_dump(mode="json", by_alias=True), sort_keys=True)


def queue_meta_is_ready(queue: QueueMeta, now: Optional[datetime] = None) -> bool:
    """
    Decide whether a queued run may be claimed.

    Args:
        queue: Queue metadata of the run
        now: Reference time (defaults to the current UTC time)

    Returns:
        False for dead-lettered runs and runs behind an undecided or rejected
        approval gate; otherwise True iff ``next_attempt_at`` is unset or due.
    """
    if queue.dlq:
        return False
    if queue.approval is not None and queue.approval.blocks_execution:
        return False
    if queue.next_attempt_at is None:
        return True
    reference = ensure_utc(now) if now is not None else utc_now()
    return ensure_utc(queue.next_attempt_at) <= reference
