"""
Remediation run queue.

:class:`RemediationQueue` owns the lifecycle of a run:

    queued -> running -> succeeded
                      -> queued (retry with backoff)
                      -> dlq    (retry budget exhausted)
    queued -> canceled (approval rejected, host disabled, queue TTL expired)
    queued -> failed   (stored payload unusable, commands blocked by the guard)

Dead-lettered runs are never touched again by drain; replay creates a new
run pointing back at the source. A recovery sweep moves runs that were left
in ``running`` by a crashed worker back onto the retry path.

Example:
    >>> queue = RemediationQueue(store, catalog, hosts, SubprocessCommandExecutor())
    >>> queue.enqueue("web-01", "restart-sshd", reason="sshd down")
    >>> queue.drain(limit=5).to_dict()
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .. import codec
from ..audit import AuditTrail, EventType
from ..constants import (
    APPROVAL_REASON_MAX_LEN,
    DEFAULT_DRAIN_LIMIT,
    DEFAULT_MAX_QUEUE_PER_HOST,
    DEFAULT_MAX_QUEUE_TOTAL,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_QUEUE_TTL_MINUTES,
    DEFAULT_REPLAY_LIMIT,
    DEFAULT_RETRY_BASE_SECONDS,
    DEFAULT_RETRY_MAX_SECONDS,
    DEFAULT_RUNNING_GRACE_SECONDS,
    DEFAULT_SNAPSHOT_LIMIT,
    DLQ_REASON_MAX_LEN,
    ID_MAX_LEN,
    LAST_ERROR_MAX_LEN,
    MAX_DRAIN_LIMIT,
    MAX_MAX_ATTEMPTS,
    MAX_REPLAY_LIMIT,
    MAX_SNAPSHOT_LIMIT,
    MIN_MAX_ATTEMPTS,
    OUTPUT_MAX_LEN,
    RUN_REASON_MAX_LEN,
)
from ..exceptions import (
    ConfirmationMismatchError,
    ConflictError,
    InputError,
    InvalidPayloadError,
    NotFoundError,
    QueueBacklogError,
    UnknownActionError,
    UnknownHostError,
)
from ..logging_context import LoggingContext, get_logger
from ..metrics import (
    APPROVAL_DECISIONS,
    DRAIN_PASSES,
    QUEUE_DEPTH,
    RUN_DURATION,
    RUN_OUTCOMES,
    RUNS_ENQUEUED,
    RUNS_RECOVERED,
    RUNS_REPLAYED,
    MetricsCollector,
)
from ..models import (
    ApprovalMeta,
    ApprovalStatus,
    CanaryMeta,
    QueueMeta,
    RemediationAction,
    RunRecord,
    RunState,
)
from ..retry import (
    clamp_int,
    compute_next_retry_at,
    compute_retry_delay_seconds,
    ensure_utc,
    should_retry_attempt,
    utc_now,
)
from ..storage.run_store import RunStore, StoredRun
from ..utils import parse_int, string_list, trim_text
from .autonomous import AutonomousPolicy
from .catalog import ActionCatalog, HostDirectory
from .executor import CommandExecutor, format_execution_for_log
from .guard import CommandGuardPolicy, summarize_issues

logger = get_logger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRY = "retry_scheduled"
OUTCOME_DLQ = "dead_lettered"
OUTCOME_CANCELED = "canceled"
OUTCOME_FAILED = "failed"
OUTCOME_DRY_RUN = "dry_run"
OUTCOME_SUPERSEDED = "superseded"

FAILURE_OUTCOMES = (OUTCOME_RETRY, OUTCOME_DLQ, OUTCOME_FAILED)
REPLAYABLE_STATES = (RunState.DLQ.value, RunState.FAILED.value)

APPROVE = "approve"
REJECT = "reject"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class EnqueueResult:
    """Result of enqueueing one run."""
    run: RunRecord

    @property
    def approval_required(self) -> bool:
        return self.run.queue.approval_pending

    def to_dict(self) -> Dict[str, Any]:
        approval = self.run.queue.approval
        return {
            "ok": True,
            "runId": self.run.run_id,
            "hostId": self.run.host_id,
            "actionId": self.run.action_id,
            "state": self.run.state.value,
            "approvalRequired": self.approval_required,
            "approvalReason": approval.reason if approval else None,
        }


@dataclass
class QueueSnapshot:
    items: List[Dict[str, Any]] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"items": self.items, "counts": self.counts}


@dataclass
class DrainItem:
    """What happened to one run during a drain pass."""
    run_id: str
    host_id: str
    action_id: str
    outcome: str
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "hostId": self.host_id,
            "actionId": self.action_id,
            "outcome": self.outcome,
            "attempts": self.attempts,
            "nextAttemptAt": _iso(self.next_attempt_at),
            "error": self.error,
        }


@dataclass
class RecoveryResult:
    """Result of a stale-run recovery sweep."""
    requeued: int = 0
    dead_lettered: int = 0
    failed: int = 0
    items: List[DrainItem] = field(default_factory=list)

    @property
    def recovered(self) -> int:
        return self.requeued + self.dead_lettered + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recovered": self.recovered,
            "requeued": self.requeued,
            "deadLettered": self.dead_lettered,
            "failed": self.failed,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class DrainResult:
    """
    Result of a drain pass.

    ``ok`` is False when any processed run failed (retry scheduled, dead
    lettered or unusable payload).
    """
    requested_limit: int
    items: List[DrainItem] = field(default_factory=list)
    recovery: Optional[RecoveryResult] = None

    @property
    def processed(self) -> int:
        return len(self.items)

    @property
    def ok(self) -> bool:
        return not any(item.outcome in FAILURE_OUTCOMES for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "processed": self.processed,
            "requestedLimit": self.requested_limit,
            "items": [item.to_dict() for item in self.items],
            "recovered": self.recovery.recovered if self.recovery else 0,
        }


@dataclass
class ReplayItem:
    source_run_id: str
    replay_run_id: Optional[str] = None
    created: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceRunId": self.source_run_id,
            "replayRunId": self.replay_run_id,
            "created": self.created,
            "error": self.error,
        }


@dataclass
class ReplayResult:
    """Result of a bulk dead-letter replay."""
    requested_limit: int
    items: List[ReplayItem] = field(default_factory=list)

    @property
    def replayed(self) -> int:
        return sum(1 for item in self.items if item.replay_run_id)

    @property
    def skipped(self) -> int:
        return len(self.items) - self.replayed

    @property
    def ok(self) -> bool:
        return self.skipped == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "replayed": self.replayed,
            "skipped": self.skipped,
            "requestedLimit": self.requested_limit,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class RunReplayResult:
    source_run_id: str
    replay_run_id: str
    created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "runId": self.source_run_id,
            "replayRunId": self.replay_run_id,
            "created": self.created,
        }


@dataclass
class ApprovalResult:
    run_id: str
    status: ApprovalStatus
    state: RunState
    changed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "runId": self.run_id,
            "approvalStatus": self.status.value,
            "state": self.state.value,
            "changed": self.changed,
        }


class RemediationQueue:
    """
    Durable remediation queue with retry, dead-letter, approval and replay.

    All collaborators are injected. ``clock`` returns the current aware UTC
    time and ``id_factory`` mints run ids; both exist so tests can pin them.
    ``max_queue_per_host`` and ``max_queue_total`` cap the active (queued or
    running) backlog at enqueue time; None disables a cap.
    """

    def __init__(
        self,
        store: RunStore,
        catalog: ActionCatalog,
        hosts: HostDirectory,
        executor: CommandExecutor,
        policy: Optional[AutonomousPolicy] = None,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: float = DEFAULT_RETRY_MAX_SECONDS,
        default_max_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        queue_ttl_minutes: int = DEFAULT_QUEUE_TTL_MINUTES,
        running_grace_seconds: int = DEFAULT_RUNNING_GRACE_SECONDS,
        recover_on_drain: bool = True,
        guard: Optional[CommandGuardPolicy] = None,
        max_queue_per_host: Optional[int] = DEFAULT_MAX_QUEUE_PER_HOST,
        max_queue_total: Optional[int] = DEFAULT_MAX_QUEUE_TOTAL,
        metrics: Optional[MetricsCollector] = None,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.hosts = hosts
        self.executor = executor
        self.policy = policy or AutonomousPolicy()
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.default_max_attempts = clamp_int(default_max_attempts, MIN_MAX_ATTEMPTS, MAX_MAX_ATTEMPTS)
        self.queue_ttl_minutes = queue_ttl_minutes
        self.running_grace_seconds = running_grace_seconds
        self.recover_on_drain = recover_on_drain
        self.guard = guard or CommandGuardPolicy()
        self.max_queue_per_host = max_queue_per_host
        self.max_queue_total = max_queue_total
        self.metrics = metrics or MetricsCollector()
        self.audit = audit or AuditTrail()
        self._clock = clock
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # -- enqueue -------------------------------------------------------------

    def _approval_gate(
        self,
        action: Optional[RemediationAction],
        require_approval: Optional[bool],
        reason: Optional[str],
        now: datetime,
    ) -> Optional[ApprovalMeta]:
        if require_approval is None:
            required = True if action is None else self.policy.approval_required_for(action)
        else:
            required = bool(require_approval)
        if not required:
            return None
        if reason is None:
            reason = (
                self.policy.approval_reason_for(action)
                if action is not None
                else "Action is no longer in the catalog."
            ) or "Manual approval requested."
        return ApprovalMeta(
            required=True,
            status=ApprovalStatus.PENDING,
            reason=trim_text(reason, APPROVAL_REASON_MAX_LEN),
            requested_at=now,
        )

    def enqueue(
        self,
        host_id: str,
        action_id: str,
        reason: Optional[str] = None,
        requested_by_user_id: Optional[str] = None,
        require_approval: Optional[bool] = None,
        approval_reason: Optional[str] = None,
        confirm_phrase: Optional[str] = None,
        confirmed: bool = False,
        max_attempts: Optional[int] = None,
        canary: Optional[CanaryMeta] = None,
        fleet_stage: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Create a ``queued`` run for one host.

        Args:
            host_id: Target host
            action_id: Action to run
            reason: Free-text reason recorded on the run
            requested_by_user_id: Already-authorized actor
            require_approval: Force (True) or skip (False) the approval gate;
                None lets the autonomous policy decide
            approval_reason: Reason shown to the approver
            confirm_phrase: Operator confirmation for actions that need one
            confirmed: Caller already verified a confirmation of its own
            max_attempts: Retry budget (defaults to the queue's)
            canary: Canary decision, when queued by a staged rollout
            fleet_stage: Stage index, when queued by a staged rollout

        Raises:
            UnknownActionError, UnknownHostError, InputError,
            ConfirmationMismatchError, CommandBlockedError,
            QueueBacklogError, PersistenceError
        """
        action = self.catalog.get(action_id)
        if action is None:
            raise UnknownActionError(f"Unknown action: {action_id}")
        host = self.hosts.get_host(host_id)
        if host is None:
            raise UnknownHostError(f"Unknown host: {host_id}")
        if not host.enabled:
            raise InputError(f"Host {host_id} is disabled")
        if action.requires_confirm and not confirmed:
            expected = action.confirm_phrase.strip()
            if (confirm_phrase or "").strip() != expected:
                raise ConfirmationMismatchError(
                    f"Action {action_id} requires the confirmation phrase '{expected}'",
                    expected=expected,
                )

        commands = string_list(action.commands)
        if not commands:
            raise InvalidPayloadError(f"Action {action_id} has no commands")
        self.guard.check(commands, context=f"Action {action_id}")
        self._check_backlog(host.id)

        now = self._now()
        budget = self.default_max_attempts if max_attempts is None else max_attempts
        record = RunRecord(
            run_id=self._id_factory(),
            host_id=host.id,
            action_id=action.id,
            state=RunState.QUEUED,
            commands=commands,
            source_codes=string_list(action.source_codes) or [],
            rollback_notes=string_list(action.rollback_notes) or [],
            reason=trim_text(reason, RUN_REASON_MAX_LEN),
            requested_by_user_id=trim_text(requested_by_user_id, ID_MAX_LEN),
            requested_at=now,
            queue=QueueMeta(
                attempts=0,
                max_attempts=clamp_int(budget, MIN_MAX_ATTEMPTS, MAX_MAX_ATTEMPTS),
                approval=self._approval_gate(action, require_approval, approval_reason, now),
                canary=canary,
                fleet_stage=fleet_stage,
            ),
        )
        self.store.insert_run(record, now=now)

        result = EnqueueResult(run=record)
        self.metrics.increment_counter(
            RUNS_ENQUEUED, labels={"approval": "pending" if result.approval_required else "none"}
        )
        self.audit.record(
            EventType.RUN_ENQUEUED,
            actor_id=requested_by_user_id,
            run_id=record.run_id,
            host_id=record.host_id,
            action_id=record.action_id,
            details={
                "approvalRequired": result.approval_required,
                "maxAttempts": record.queue.max_attempts,
                "fleetStage": fleet_stage,
            },
            timestamp=now,
        )
        logger.info(
            f"Enqueued run {record.run_id} ({action.id} on {host.id})"
            + (" awaiting approval" if result.approval_required else "")
        )
        return result

    def _check_backlog(self, host_id: str) -> None:
        if self.max_queue_per_host is not None:
            active = self.store.count_active(host_id)
            if active >= self.max_queue_per_host:
                raise QueueBacklogError(
                    f"Host {host_id} already has {active} active run(s) "
                    f"(limit {self.max_queue_per_host})",
                    scope="per_host",
                )
        if self.max_queue_total is not None:
            active = self.store.count_active()
            if active >= self.max_queue_total:
                raise QueueBacklogError(
                    f"Queue already holds {active} active run(s) (limit {self.max_queue_total})",
                    scope="total",
                )

    def has_active_run(self, host_id: str, action_id: str) -> bool:
        return self.store.has_active_run(host_id, action_id)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Parsed record for ``run_id`` (None if missing or unparseable)."""
        stored = self.store.get_run(run_id)
        if stored is None or stored.record is None:
            return None
        return self._with_column_state(stored)

    @staticmethod
    def _with_column_state(stored: StoredRun) -> RunRecord:
        # The state column is authoritative; legacy payloads may lack one
        record = stored.record
        if record.state.value != stored.state:
            record = record.model_copy(update={"state": RunState(stored.state)})
        return record

    # -- snapshot ------------------------------------------------------------

    def snapshot(self, limit: Any = DEFAULT_SNAPSHOT_LIMIT, dlq_only: bool = False) -> QueueSnapshot:
        """Most recent runs and counts by state."""
        parsed = parse_int(limit)
        bounded = clamp_int(DEFAULT_SNAPSHOT_LIMIT if parsed is None else parsed, 1, MAX_SNAPSHOT_LIMIT)

        items = []
        for stored in self.store.list_runs(bounded, dlq_only=dlq_only):
            if stored.record is None:
                items.append({
                    "runId": stored.run_id,
                    "hostId": stored.host_id,
                    "actionId": stored.action_id,
                    "state": stored.state,
                    "invalidPayload": True,
                })
            else:
                items.append(self._with_column_state(stored).summary())

        counts = self.store.counts()
        for state, count in counts.items():
            self.metrics.set_gauge(QUEUE_DEPTH, count, {"state": state})
        return QueueSnapshot(items=items, counts=counts)

    # -- drain ---------------------------------------------------------------

    def _finish(self, stored: StoredRun, record: RunRecord, new_state: RunState,
                outcome: str, error: Optional[str], event: EventType,
                expected_state: RunState = RunState.QUEUED) -> Optional[DrainItem]:
        now = self._now()
        final = record.model_copy(update={
            "state": new_state,
            "finished_at": now,
            "queue": record.queue.model_copy(update={
                "last_error": trim_text(error, LAST_ERROR_MAX_LEN) or record.queue.last_error,
            }),
        })
        if not self.store.update_run(final, expected_state, expected_payload=stored.payload, now=now):
            logger.warning(f"Run {record.run_id} changed concurrently; {outcome} not applied")
            return None
        self.metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": outcome})
        self.audit.record(event, run_id=record.run_id, host_id=record.host_id,
                          action_id=record.action_id, result=outcome,
                          details={"error": error}, timestamp=now)
        logger.info(f"Run {record.run_id} {outcome}: {error}")
        return DrainItem(record.run_id, record.host_id, record.action_id, outcome,
                         attempts=record.queue.attempts, error=error)

    def _expired(self, record: RunRecord, now: datetime) -> bool:
        if record.requested_at is None or self.queue_ttl_minutes <= 0:
            return False
        return now - ensure_utc(record.requested_at) > timedelta(minutes=self.queue_ttl_minutes)

    def _apply_failure(self, running: RunRecord, error: str, output: Optional[str],
                       now: datetime) -> RunRecord:
        """Next record after a failed attempt: back to queued with backoff, or dlq."""
        attempts = running.queue.attempts + 1
        last_error = trim_text(error, LAST_ERROR_MAX_LEN) or "Remediation failed"
        if should_retry_attempt(attempts, running.queue.max_attempts):
            delay = compute_retry_delay_seconds(attempts, self.retry_base_seconds, self.retry_max_seconds)
            return running.model_copy(update={
                "state": RunState.QUEUED,
                "output": output,
                "queue": running.queue.model_copy(update={
                    "attempts": attempts,
                    "last_error": last_error,
                    "next_attempt_at": compute_next_retry_at(now, delay),
                }),
            })
        return running.model_copy(update={
            "state": RunState.DLQ,
            "finished_at": now,
            "output": output,
            "queue": running.queue.model_copy(update={
                "attempts": attempts,
                "last_error": last_error,
                "next_attempt_at": None,
                "dlq": True,
                "dlq_reason": trim_text(
                    f"Retry budget exhausted after {attempts} attempt(s): {last_error}",
                    DLQ_REASON_MAX_LEN,
                ),
            }),
        })

    def _cancel_reason(self, record: RunRecord, now: datetime) -> Optional[str]:
        host = self.hosts.get_host(record.host_id)
        if host is None or not host.enabled:
            return "Host is disabled or no longer registered"
        if self._expired(record, now):
            return f"Queue TTL of {self.queue_ttl_minutes} minutes expired"
        return None

    def _preview(self, record: RunRecord, blocked: Optional[str]) -> DrainItem:
        """Report what a drain would do with ``record`` without claiming it."""
        if blocked is None:
            execution = self.executor.execute(record.commands)
            logger.info(f"Dry run of {record.run_id}:\n{format_execution_for_log(execution)}")
        else:
            logger.info(f"Dry run of {record.run_id} would not execute: {blocked}")
        return DrainItem(record.run_id, record.host_id, record.action_id, OUTCOME_DRY_RUN,
                         attempts=record.queue.attempts, error=blocked)

    def _process(self, stored: StoredRun, now: datetime) -> Optional[DrainItem]:
        """Claim and run one queued run. Returns None when it was not claimed."""
        record = self._with_column_state(stored)

        cancel_reason = self._cancel_reason(record, now)
        issues = self.guard.validate(record.commands) if cancel_reason is None else []
        blocked = (
            f"Execution blocked by command guard at dequeue time: {summarize_issues(issues)}"
            if issues else None
        )
        if self.executor.dry_run:
            return self._preview(record, cancel_reason or blocked)
        if cancel_reason is not None:
            return self._finish(stored, record, RunState.CANCELED, OUTCOME_CANCELED,
                                cancel_reason, EventType.RUN_CANCELED)
        if blocked is not None:
            return self._finish(stored, record, RunState.FAILED, OUTCOME_FAILED,
                                blocked, EventType.RUN_FAILED)

        running = record.model_copy(update={
            "state": RunState.RUNNING,
            "started_at": now,
            "finished_at": None,
            "queue": record.queue.model_copy(update={"last_attempt_at": now}),
        })
        if not self.store.claim_run(running, stored.payload, now=now):
            logger.debug(f"Run {record.run_id} was claimed elsewhere")
            return None
        claimed_payload = codec.serialize(running)
        self.audit.record(EventType.RUN_CLAIMED, run_id=record.run_id, host_id=record.host_id,
                          action_id=record.action_id,
                          details={"attempt": record.queue.attempts + 1}, timestamp=now)

        try:
            execution = self.executor.execute(running.commands)
        except Exception as e:
            logger.exception(f"Executor raised for run {record.run_id}")
            ok, error, output = False, f"Executor error: {e}", None
        else:
            ok = execution.ok
            error = execution.error
            output = trim_text(format_execution_for_log(execution), OUTPUT_MAX_LEN)
            self.metrics.record_histogram(
                RUN_DURATION,
                (execution.finished_at - execution.started_at).total_seconds(),
                {"ok": str(ok).lower()},
            )

        finished_at = self._now()
        if ok:
            final = running.model_copy(update={
                "state": RunState.SUCCEEDED,
                "finished_at": finished_at,
                "output": output,
                "queue": running.queue.model_copy(update={"next_attempt_at": None}),
            })
            outcome, event = OUTCOME_SUCCEEDED, EventType.RUN_SUCCEEDED
        else:
            final = self._apply_failure(running, error or "Remediation failed", output, finished_at)
            if final.state == RunState.DLQ:
                outcome, event = OUTCOME_DLQ, EventType.RUN_DEAD_LETTERED
            else:
                outcome, event = OUTCOME_RETRY, EventType.RUN_RETRY_SCHEDULED

        if not self.store.update_run(final, RunState.RUNNING, expected_payload=claimed_payload,
                                     now=finished_at):
            # Recovery or another worker owns the run now; its decision stands
            logger.warning(f"Run {record.run_id} changed while executing; {outcome} not recorded")
            return DrainItem(record.run_id, record.host_id, record.action_id, OUTCOME_SUPERSEDED,
                             attempts=running.queue.attempts, error=error)
        self.metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": outcome})
        self.audit.record(event, run_id=final.run_id, host_id=final.host_id,
                          action_id=final.action_id, result=outcome,
                          details={"attempts": final.queue.attempts,
                                   "error": None if ok else final.queue.last_error},
                          timestamp=finished_at)
        logger.info(f"Run {final.run_id} {outcome} (attempts={final.queue.attempts})")
        return DrainItem(
            final.run_id, final.host_id, final.action_id, outcome,
            attempts=final.queue.attempts,
            next_attempt_at=final.queue.next_attempt_at if outcome == OUTCOME_RETRY else None,
            error=None if ok else final.queue.last_error,
        )

    def drain(self, limit: Any = DEFAULT_DRAIN_LIMIT) -> DrainResult:
        """
        Execute up to ``limit`` ready runs, oldest first.

        Runs are claimed one at a time with an atomic ``queued -> running``
        update, so concurrent drains never execute the same run. Runs behind
        a pending approval gate or a future ``next_attempt_at`` are left
        alone and do not count as processed. Through a dry-run executor the
        pass only reports what it would do: nothing is claimed, recovered
        or finished.

        Raises:
            PersistenceError: The store failed; the pass stops immediately
        """
        parsed = parse_int(limit)
        requested = clamp_int(DEFAULT_DRAIN_LIMIT if parsed is None else parsed, 1, MAX_DRAIN_LIMIT)
        result = DrainResult(requested_limit=requested)
        if self.recover_on_drain and not self.executor.dry_run:
            result.recovery = self.recover_stale_runs()

        skip: List[str] = []
        while result.processed < requested:
            now = self._now()
            stored = self.store.next_ready_run(now, skip_run_ids=skip)
            if stored is None:
                break

            with LoggingContext(run_id=stored.run_id, host_id=stored.host_id,
                                action_id=stored.action_id):
                if stored.record is None and self.executor.dry_run:
                    skip.append(stored.run_id)
                    result.items.append(DrainItem(stored.run_id, stored.host_id, stored.action_id,
                                                  OUTCOME_DRY_RUN, error="Invalid run payload"))
                    continue
                if stored.record is None:
                    logger.error(f"Run {stored.run_id} has an unusable payload; marking failed")
                    if self.store.set_state(stored.run_id, stored.state, RunState.FAILED, now=now):
                        self.metrics.increment_counter(RUN_OUTCOMES, labels={"outcome": OUTCOME_FAILED})
                        self.audit.record(EventType.RUN_FAILED, run_id=stored.run_id,
                                          host_id=stored.host_id, action_id=stored.action_id,
                                          result=OUTCOME_FAILED,
                                          details={"error": "invalid payload"}, timestamp=now)
                        result.items.append(DrainItem(stored.run_id, stored.host_id, stored.action_id,
                                                      OUTCOME_FAILED, error="Invalid run payload"))
                    else:
                        skip.append(stored.run_id)
                    continue

                if not codec.queue_meta_is_ready(stored.record.queue, now):
                    skip.append(stored.run_id)
                    continue

                item = self._process(stored, now)
                skip.append(stored.run_id)
                if item is not None:
                    result.items.append(item)

        self.metrics.increment_counter(DRAIN_PASSES, labels={"ok": str(result.ok).lower()})
        logger.info(f"Drain processed {result.processed}/{requested} run(s), ok={result.ok}")
        return result

    # -- recovery ------------------------------------------------------------

    def recover_stale_runs(self, grace_seconds: Optional[int] = None) -> RecoveryResult:
        """
        Return runs stuck in ``running`` to the retry path.

        A run is stale once its ``started_at`` is older than the grace period.
        The interrupted attempt counts against the retry budget; a stale run
        whose budget is spent goes to the dead-letter lane.
        """
        grace = self.running_grace_seconds if grace_seconds is None else grace_seconds
        now = self._now()
        cutoff = now - timedelta(seconds=max(0, grace))
        result = RecoveryResult()

        for stored in self.store.list_stale_running(cutoff):
            with LoggingContext(run_id=stored.run_id, host_id=stored.host_id):
                if stored.record is None:
                    if self.store.set_state(stored.run_id, stored.state, RunState.FAILED, now=now):
                        result.failed += 1
                        result.items.append(DrainItem(stored.run_id, stored.host_id, stored.action_id,
                                                      OUTCOME_FAILED, error="Invalid run payload"))
                    continue

                record = self._with_column_state(stored)
                final = self._apply_failure(
                    record,
                    f"Run interrupted: still running after {grace}s",
                    record.output,
                    now,
                )
                if final.state == RunState.QUEUED:
                    # Eligible on the next pass rather than after a backoff delay
                    final = final.model_copy(update={
                        "queue": final.queue.model_copy(update={"next_attempt_at": now})
                    })
                if not self.store.update_run(final, RunState.RUNNING,
                                             expected_payload=stored.payload, now=now):
                    continue

                outcome = OUTCOME_RETRY if final.state == RunState.QUEUED else OUTCOME_DLQ
                if outcome == OUTCOME_RETRY:
                    result.requeued += 1
                else:
                    result.dead_lettered += 1
                result.items.append(DrainItem(final.run_id, final.host_id, final.action_id, outcome,
                                              attempts=final.queue.attempts,
                                              next_attempt_at=final.queue.next_attempt_at,
                                              error=final.queue.last_error))
                self.metrics.increment_counter(RUNS_RECOVERED, labels={"outcome": outcome})
                self.audit.record(EventType.RUN_RECOVERED, run_id=final.run_id,
                                  host_id=final.host_id, action_id=final.action_id,
                                  result=outcome, details={"attempts": final.queue.attempts},
                                  timestamp=now)
                logger.warning(f"Recovered stale run {final.run_id}: {outcome}")

        return result

    # -- replay --------------------------------------------------------------

    def _create_replay(self, stored: StoredRun, replayed_by_user_id: Optional[str]) -> RunReplayResult:
        source = self._with_column_state(stored)
        action = self.catalog.get(source.action_id)
        now = self._now()

        replay = RunRecord(
            run_id=self._id_factory(),
            host_id=source.host_id,
            action_id=source.action_id,
            state=RunState.QUEUED,
            commands=list(source.commands),
            source_codes=list(source.source_codes),
            rollback_notes=list(source.rollback_notes),
            reason=source.reason,
            requested_by_user_id=trim_text(replayed_by_user_id, ID_MAX_LEN) or source.requested_by_user_id,
            requested_at=now,
            queue=QueueMeta(
                attempts=0,
                max_attempts=source.queue.max_attempts,
                replay_of_run_id=source.run_id,
                approval=self._approval_gate(action, None, None, now),
                canary=source.queue.canary,
                fleet_stage=source.queue.fleet_stage,
            ),
        )
        try:
            self.store.insert_run(replay, now=now)
        except ConflictError:
            existing = self.store.find_replay_of(source.run_id)
            if existing is None:
                raise
            return RunReplayResult(source.run_id, existing.run_id, created=False)

        self.metrics.increment_counter(RUNS_REPLAYED)
        self.audit.record(EventType.RUN_REPLAYED, actor_id=replayed_by_user_id,
                          run_id=replay.run_id, host_id=replay.host_id,
                          action_id=replay.action_id,
                          details={"replayOfRunId": source.run_id,
                                   "approvalRequired": replay.queue.approval_pending},
                          timestamp=now)
        logger.info(f"Replayed run {source.run_id} as {replay.run_id}")
        return RunReplayResult(source.run_id, replay.run_id, created=True)

    def replay_dead_letter_runs(self, limit: Any = DEFAULT_REPLAY_LIMIT,
                                replayed_by_user_id: Optional[str] = None) -> ReplayResult:
        """
        Replay up to ``limit`` dead-lettered runs that have not been replayed.

        Each replay is a new run with a fresh retry budget; the source run
        stays in ``dlq``. Sources with unusable payloads are skipped.
        """
        parsed = parse_int(limit)
        bounded = clamp_int(DEFAULT_REPLAY_LIMIT if parsed is None else parsed, 1, MAX_REPLAY_LIMIT)
        result = ReplayResult(requested_limit=bounded)

        for stored in self.store.list_unreplayed_dead_letters(bounded):
            if stored.record is None:
                result.items.append(ReplayItem(stored.run_id, error="Invalid run payload"))
                continue
            outcome = self._create_replay(stored, replayed_by_user_id)
            result.items.append(ReplayItem(stored.run_id, outcome.replay_run_id, outcome.created))

        logger.info(f"Replayed {result.replayed} dead-lettered run(s), skipped {result.skipped}")
        return result

    def replay_run(self, run_id: str, replayed_by_user_id: Optional[str] = None) -> RunReplayResult:
        """
        Replay a single dead-lettered or failed run.

        Replaying the same source twice returns the first replay.

        Raises:
            NotFoundError: Run missing or not in a replayable state
            InvalidPayloadError: Source payload cannot be parsed
        """
        stored = self.store.get_run(run_id)
        if stored is None:
            raise NotFoundError(f"Run {run_id} not found")
        if stored.state not in REPLAYABLE_STATES:
            raise NotFoundError(f"Run {run_id} is {stored.state}; only dlq or failed runs can be replayed")
        existing = self.store.find_replay_of(run_id)
        if existing is not None:
            return RunReplayResult(run_id, existing.run_id, created=False)
        if stored.record is None:
            raise InvalidPayloadError(f"Run {run_id} has an unusable payload")
        return self._create_replay(stored, replayed_by_user_id)

    # -- approval ------------------------------------------------------------

    def set_run_approval(self, run_id: str, actor_user_id: str, mode: str,
                         reason: Optional[str] = None) -> ApprovalResult:
        """
        Approve or reject a run waiting behind an approval gate.

        Approving makes the run eligible on the next drain; rejecting cancels
        it. Repeating the decision already recorded is a no-op success.

        Raises:
            InputError: ``mode`` is not approve/reject
            NotFoundError: Run does not exist
            ConflictError: No approval gate, run no longer queued, or the
                opposite decision was already recorded
        """
        decision = (mode or "").strip().lower()
        if decision not in (APPROVE, REJECT):
            raise InputError(f"Unknown approval mode: {mode!r}")
        target = ApprovalStatus.APPROVED if decision == APPROVE else ApprovalStatus.REJECTED

        stored = self.store.get_run(run_id)
        if stored is None:
            raise NotFoundError(f"Run {run_id} not found")
        if stored.record is None:
            raise InvalidPayloadError(f"Run {run_id} has an unusable payload")
        record = self._with_column_state(stored)
        approval = record.queue.approval
        if approval is None or not approval.required:
            raise ConflictError(f"Run {run_id} has no approval gate")
        if approval.status == target:
            return ApprovalResult(run_id, target, record.state, changed=False)
        if approval.status != ApprovalStatus.PENDING:
            raise ConflictError(f"Run {run_id} approval was already {approval.status.value}")
        if record.state != RunState.QUEUED:
            raise ConflictError(f"Run {run_id} is {record.state.value}, not queued")

        now = self._now()
        decided = approval.model_copy(update={
            "status": target,
            "approved_by": trim_text(actor_user_id, ID_MAX_LEN),
            "decided_at": now,
            "reason": trim_text(reason, APPROVAL_REASON_MAX_LEN) or approval.reason,
        })
        update: Dict[str, Any] = {"queue": record.queue.model_copy(update={"approval": decided})}
        if target == ApprovalStatus.REJECTED:
            update["state"] = RunState.CANCELED
            update["finished_at"] = now
        final = record.model_copy(update=update)

        if not self.store.update_run(final, RunState.QUEUED, expected_payload=stored.payload, now=now):
            raise ConflictError(f"Run {run_id} changed while recording the decision")

        self.metrics.increment_counter(APPROVAL_DECISIONS, labels={"decision": decision})
        self.audit.record(
            EventType.APPROVAL_GRANTED if target == ApprovalStatus.APPROVED else EventType.APPROVAL_REJECTED,
            actor_id=actor_user_id, run_id=run_id, host_id=final.host_id,
            action_id=final.action_id, details={"reason": decided.reason}, timestamp=now,
        )
        logger.info(f"Run {run_id} {target.value} by {actor_user_id}")
        return ApprovalResult(run_id, target, final.state, changed=True)
