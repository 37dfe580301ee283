"""
Fleet rollout planner.

``preview`` computes which hosts a fleet rollout would touch, stage by
stage, without changing anything. ``execute`` recomputes the same plan and
enqueues runs for exactly one stage, guarded by a confirmation phrase that
names the stage index, so a stale preview cannot trigger the wrong stage.

Example:
    >>> planner = FleetRolloutPlanner(queue, hosts, catalog)
    >>> request = FleetRolloutRequest.from_dict({
    ...     "actionId": "patch-openssh",
    ...     "selector": {"groups": ["edge"]},
    ...     "rollout": {"stageSize": 2},
    ... })
    >>> plan = planner.preview(request)
    >>> plan.expected_confirm
    'EXECUTE FLEET STAGE 1'
    >>> planner.execute(request, confirm_phrase=plan.expected_confirm, actor_user_id="ops-1")
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

from ..audit import AuditTrail, EventType
from ..constants import FLEET_CONFIRM_PREFIX, FLEET_MAX_STAGE_SIZE, ID_MAX_LEN, RUN_REASON_MAX_LEN
from ..exceptions import (
    ConfirmationMismatchError,
    ConflictError,
    InputError,
    InvalidSelectorError,
    QueueBacklogError,
    RolloutPolicyError,
    SelectorRequiredError,
    UnknownActionError,
)
from ..logging_context import LoggingContext, get_logger
from ..metrics import FLEET_HOSTS_REJECTED, FLEET_STAGES_EXECUTED, MetricsCollector
from ..models import AutoTier, CanaryMeta, FleetHost, RemediationAction, RolloutStrategy
from ..retry import clamp_int
from ..utils import as_mapping, parse_bool, parse_int, pick, trim_text
from .autonomous import AutonomousPolicy, canary_percent_for_tier, is_auto_executable_tier
from .catalog import ActionCatalog, HostDirectory
from .fleet import (
    FleetBlastRadiusPolicy,
    FleetSafeguardResult,
    FleetSelector,
    apply_fleet_blast_radius_safeguards,
    build_fleet_rollout_stages,
    count_enabled,
    has_fleet_selector_filter,
    normalize_fleet_selector,
    select_fleet_hosts,
)
from .queue import RemediationQueue

logger = get_logger(__name__)

DEFAULT_FLEET_REASON = "fleet_rollout"
MAX_REJECTED_IN_PLAN = 100

_REQUEST_FIELDS = {
    "actionId", "action_id", "selector", "allowWideSelector", "allow_wide_selector",
    "reason", "rollout", "mode", "confirmPhrase", "confirm_phrase",
}


def expected_confirm_phrase(stage_index: int) -> str:
    return f"{FLEET_CONFIRM_PREFIX} {stage_index}"


@dataclass
class FleetRolloutRequest:
    """
    A fleet rollout request.

    Cap fields left as None fall back to the operator's hard caps; values
    above the hard caps are lowered to them.
    """
    action_id: str
    selector: FleetSelector = field(default_factory=FleetSelector)
    strategy: RolloutStrategy = RolloutStrategy.GROUP_CANARY
    stage_size: Optional[int] = None
    stage_index: int = 1
    max_hosts: Optional[int] = None
    max_per_group: Optional[int] = None
    max_percent_of_enabled_fleet: Optional[int] = None
    allow_wide_selector: bool = False
    reason: str = DEFAULT_FLEET_REASON

    @classmethod
    def from_dict(cls, body: Mapping[str, Any]) -> 'FleetRolloutRequest':
        """
        Parse a request body.

        Expected shape::

            {"actionId": "...", "selector": {...}, "allowWideSelector": false,
             "reason": "...", "rollout": {"strategy": "group_canary",
             "stageSize": 3, "stageIndex": 1, "maxHosts": 12, "maxPerGroup": 5,
             "maxPercentOfEnabledFleet": 40}}

        Raises:
            InputError: Body is not a mapping or lacks an action id
            InvalidSelectorError: Selector names unknown fields
        """
        rec = as_mapping(body)
        if rec is None:
            raise InputError("Fleet rollout request must be an object")
        unknown = sorted(str(key) for key in rec if key not in _REQUEST_FIELDS)
        if unknown:
            raise InputError(f"Unknown request field(s): {', '.join(unknown)}")

        action_id = trim_text(pick(rec, "actionId", "action_id"), ID_MAX_LEN)
        if not action_id:
            raise InputError("actionId is required")

        rollout = as_mapping(rec.get("rollout")) or {}
        strategy_raw = rollout.get("strategy")
        try:
            strategy = RolloutStrategy(strategy_raw) if strategy_raw is not None else RolloutStrategy.GROUP_CANARY
        except ValueError:
            strategy = RolloutStrategy.GROUP_CANARY

        stage_index = parse_int(pick(rollout, "stageIndex", "stage_index"))
        allow_wide = parse_bool(pick(rec, "allowWideSelector", "allow_wide_selector"))

        return cls(
            action_id=action_id,
            selector=normalize_fleet_selector(rec.get("selector")),
            strategy=strategy,
            stage_size=parse_int(pick(rollout, "stageSize", "stage_size")),
            stage_index=clamp_int(stage_index if stage_index is not None else 1, 1, 10_000),
            max_hosts=parse_int(pick(rollout, "maxHosts", "max_hosts")),
            max_per_group=parse_int(pick(rollout, "maxPerGroup", "max_per_group")),
            max_percent_of_enabled_fleet=parse_int(
                pick(rollout, "maxPercentOfEnabledFleet", "max_percent_of_enabled_fleet")
            ),
            allow_wide_selector=bool(allow_wide),
            reason=trim_text(rec.get("reason"), RUN_REASON_MAX_LEN) or DEFAULT_FLEET_REASON,
        )


def _host_view(host: FleetHost) -> Dict[str, Any]:
    return {
        "id": host.id,
        "name": host.name,
        "enabled": host.enabled,
        "group": host.group,
        "lastSeenAt": host.last_seen_at.isoformat() if host.last_seen_at else None,
        "rolloutPriority": host.rollout_priority,
    }


@dataclass
class FleetRolloutPlan:
    """Result of ``preview``: the full stage plan and the selected stage."""
    action: RemediationAction
    request: FleetRolloutRequest
    total_hosts_in_fleet: int
    total_enabled_fleet: int
    matched_hosts: int
    safeguards: FleetSafeguardResult
    stage_size: int
    stages: List[List[FleetHost]]
    stage_index: int

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def selected_stage(self) -> List[FleetHost]:
        if self.stage_index < 1 or self.stage_index > len(self.stages):
            return []
        return self.stages[self.stage_index - 1]

    @property
    def expected_confirm(self) -> str:
        return expected_confirm_phrase(self.stage_index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actionId": self.action.id,
            "selector": self.request.selector.to_dict(),
            "strategy": self.request.strategy.value,
            "totalHostsInFleet": self.total_hosts_in_fleet,
            "totalEnabledFleet": self.total_enabled_fleet,
            "matchedHosts": self.matched_hosts,
            "safeguardedHosts": len(self.safeguards.accepted),
            "rejectedBySafeguards": len(self.safeguards.rejected),
            "safeguards": {
                "maxHostsEffective": self.safeguards.max_hosts_effective,
                "maxPerGroupEffective": self.safeguards.max_per_group_effective,
                "maxPercentOfEnabledFleetEffective":
                    self.safeguards.max_percent_of_enabled_fleet_effective,
                "allowedByPercent": self.safeguards.allowed_by_percent,
            },
            "stage": {
                "stageSize": self.stage_size,
                "stageIndex": self.stage_index,
                "totalStages": self.total_stages,
                "hostsInStage": len(self.selected_stage),
            },
            "stages": [[host.id for host in stage] for stage in self.stages],
            "stageHosts": [_host_view(host) for host in self.selected_stage],
            "rejectedHosts": [r.to_dict() for r in self.safeguards.rejected[:MAX_REJECTED_IN_PLAN]],
            "expectedConfirm": self.expected_confirm if self.stage_index else None,
        }


@dataclass
class FleetExecutionItem:
    host_id: str
    status: str
    run_id: Optional[str] = None
    approval_pending: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostId": self.host_id,
            "status": self.status,
            "runId": self.run_id,
            "approvalPending": self.approval_pending,
            "ok": self.ok,
            "error": self.error,
        }


@dataclass
class FleetExecutionResult:
    plan: FleetRolloutPlan
    items: List[FleetExecutionItem] = field(default_factory=list)

    @property
    def queued(self) -> int:
        return sum(1 for item in self.items if item.run_id)

    @property
    def approval_pending(self) -> int:
        return sum(1 for item in self.items if item.approval_pending)

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.items if item.status.startswith("skipped"))

    @property
    def failed_hosts(self) -> int:
        return sum(1 for item in self.items if not item.ok)

    @property
    def ok(self) -> bool:
        return self.failed_hosts == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "preview": self.plan.to_dict(),
            "execution": {
                "stageIndex": self.plan.stage_index,
                "totalStages": self.plan.total_stages,
                "requestedHosts": len(self.plan.selected_stage),
                "queued": self.queued,
                "approvalPending": self.approval_pending,
                "skipped": self.skipped,
                "failedHosts": self.failed_hosts,
                "items": [item.to_dict() for item in self.items],
            },
        }


class FleetRolloutPlanner:
    """
    Plans and executes staged fleet rollouts of one remediation action.

    Args:
        queue: Queue that receives one run per host of the executed stage
        hosts: Host directory (the whole fleet)
        catalog: Action catalog
        blast_radius: Hard operator caps
        policy: Autonomous policy for canary and approval decisions
    """

    def __init__(
        self,
        queue: RemediationQueue,
        hosts: HostDirectory,
        catalog: ActionCatalog,
        blast_radius: Optional[FleetBlastRadiusPolicy] = None,
        policy: Optional[AutonomousPolicy] = None,
        metrics: Optional[MetricsCollector] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.queue = queue
        self.hosts = hosts
        self.catalog = catalog
        self.blast_radius = blast_radius or FleetBlastRadiusPolicy()
        self.policy = policy or queue.policy
        self.metrics = metrics or queue.metrics
        self.audit = audit or queue.audit

    def _plan(self, request: FleetRolloutRequest) -> FleetRolloutPlan:
        if not isinstance(request.selector, FleetSelector):
            raise InvalidSelectorError("Selector must be normalized before planning")
        if (
            self.blast_radius.require_selector
            and not request.allow_wide_selector
            and not has_fleet_selector_filter(request.selector)
        ):
            raise SelectorRequiredError(
                "Selector is required for fleet remediation (set allowWideSelector=true to override)."
            )
        action = self.catalog.get(request.action_id)
        if action is None:
            raise UnknownActionError(f"Unknown action: {request.action_id}")

        fleet = self.hosts.list_hosts()
        total_enabled = count_enabled(fleet)
        candidates = select_fleet_hosts(fleet, request.selector)
        safeguards = apply_fleet_blast_radius_safeguards(
            candidates,
            total_enabled_fleet=total_enabled,
            max_hosts=request.max_hosts,
            max_per_group=request.max_per_group,
            max_percent_of_enabled_fleet=request.max_percent_of_enabled_fleet,
            policy=self.blast_radius,
        )
        stage_size = clamp_int(
            request.stage_size if request.stage_size is not None else self.blast_radius.default_stage_size,
            1,
            FLEET_MAX_STAGE_SIZE,
        )
        stages = build_fleet_rollout_stages(safeguards.accepted, stage_size, request.strategy)
        stage_index = max(1, request.stage_index) if stages else 0
        if stage_index > len(stages):
            raise RolloutPolicyError(
                f"Stage {request.stage_index} does not exist; the rollout has {len(stages)} stage(s).",
                safeguard="stage_index",
            )

        return FleetRolloutPlan(
            action=action,
            request=request,
            total_hosts_in_fleet=len(fleet),
            total_enabled_fleet=total_enabled,
            matched_hosts=len(candidates),
            safeguards=safeguards,
            stage_size=stage_size,
            stages=stages,
            stage_index=stage_index,
        )

    def preview(self, request: FleetRolloutRequest, actor_user_id: Optional[str] = None) -> FleetRolloutPlan:
        """
        Compute the rollout plan without touching the queue.

        Raises:
            SelectorRequiredError: Policy requires a selector and none was given
            UnknownActionError: Action id not in the catalog
            RolloutPolicyError: Requested stage is past the last stage
        """
        plan = self._plan(request)
        self.audit.record(
            EventType.FLEET_PREVIEWED,
            actor_id=actor_user_id,
            action_id=plan.action.id,
            details={
                "matched": plan.matched_hosts,
                "safeguarded": len(plan.safeguards.accepted),
                "stage": plan.stage_index,
                "totalStages": plan.total_stages,
            },
        )
        logger.info(
            f"Fleet preview for {plan.action.id}: matched={plan.matched_hosts} "
            f"safeguarded={len(plan.safeguards.accepted)} stage={plan.stage_index}/{plan.total_stages}"
        )
        return plan

    def _queue_host(self, plan: FleetRolloutPlan, host: FleetHost, actor_user_id: str) -> FleetExecutionItem:
        action = plan.action
        request = plan.request

        if not host.enabled:
            return FleetExecutionItem(host.id, "skipped_disabled")
        if self.queue.has_active_run(host.id, action.id):
            return FleetExecutionItem(host.id, "skipped_active_run")

        canary = None
        if is_auto_executable_tier(action.auto_tier, self.policy.max_auto_tier):
            decision = self.policy.canary_for(host.id, action)
            percent = canary_percent_for_tier(action.auto_tier, self.policy.canary_rollout_percent)
            canary = CanaryMeta(rollout_percent=percent,
                                bucket=decision.bucket, selected=decision.selected)
            if request.strategy == RolloutStrategy.GROUP_CANARY and not decision.selected:
                return FleetExecutionItem(host.id, "skipped_canary")

        try:
            queued = self.queue.enqueue(
                host.id,
                action.id,
                reason=f"fleet_stage_{plan.stage_index}:{request.reason}",
                requested_by_user_id=actor_user_id,
                confirmed=True,
                canary=canary,
                fleet_stage=plan.stage_index,
            )
        except (InputError, ConflictError, QueueBacklogError) as e:
            logger.warning(f"Could not queue {action.id} on {host.id}: {e}")
            return FleetExecutionItem(host.id, "error", error=str(e))

        return FleetExecutionItem(
            host.id,
            "approval_pending" if queued.approval_required else "queued",
            run_id=queued.run.run_id,
            approval_pending=queued.approval_required,
        )

    def execute(
        self,
        request: FleetRolloutRequest,
        confirm_phrase: Optional[str],
        actor_user_id: str,
        stage_index: Optional[int] = None,
    ) -> FleetExecutionResult:
        """
        Enqueue one run per host of a single stage.

        Args:
            request: The same request that was previewed
            confirm_phrase: Must equal ``EXECUTE FLEET STAGE <n>``
            actor_user_id: Already-authorized operator
            stage_index: 1-based stage to execute (defaults to ``request.stage_index``)

        Raises:
            SelectorRequiredError, UnknownActionError,
            RolloutPolicyError: Empty or missing stage, or observe-only action
            ConfirmationMismatchError: Phrase does not name the stage
            CommandBlockedError: The action's commands fail the command guard
        """
        if stage_index is not None:
            request = replace(request, stage_index=clamp_int(stage_index, 1, 10_000))
        plan = self._plan(request)

        if plan.action.auto_tier == AutoTier.OBSERVE:
            raise RolloutPolicyError(
                f"Action {plan.action.id} is observe-only and cannot be rolled out",
                safeguard="observe_tier",
            )
        if not plan.selected_stage:
            raise RolloutPolicyError(
                "No hosts available in selected stage after safeguards.",
                safeguard="empty_stage",
            )
        expected = plan.expected_confirm
        if (confirm_phrase or "").strip() != expected:
            raise ConfirmationMismatchError("Confirmation phrase mismatch.", expected=expected)
        self.queue.guard.check(plan.action.commands, context=f"Action {plan.action.id}")

        result = FleetExecutionResult(plan=plan)
        with LoggingContext(action_id=plan.action.id, actor_id=actor_user_id, stage=plan.stage_index):
            for host in plan.selected_stage:
                result.items.append(self._queue_host(plan, host, actor_user_id))

        if plan.safeguards.rejected:
            self.metrics.increment_counter(FLEET_HOSTS_REJECTED, len(plan.safeguards.rejected))
        self.metrics.increment_counter(FLEET_STAGES_EXECUTED, labels={"ok": str(result.ok).lower()})
        self.audit.record(
            EventType.FLEET_STAGE_EXECUTED,
            actor_id=actor_user_id,
            action_id=plan.action.id,
            result="success" if result.ok else "partial",
            details={
                "stage": plan.stage_index,
                "totalStages": plan.total_stages,
                "hosts": len(plan.selected_stage),
                "queued": result.queued,
                "approvalPending": result.approval_pending,
                "skipped": result.skipped,
                "failedHosts": result.failed_hosts,
            },
        )
        logger.info(
            f"Fleet stage {plan.stage_index}/{plan.total_stages} of {plan.action.id}: "
            f"queued={result.queued} skipped={result.skipped} failed={result.failed_hosts}"
        )
        return result
