"""
Remediation engine for fleet-remediate.

This package provides:
- Autonomous policy (auto tiers, approval thresholds, canary buckets)
- Fleet selection, blast-radius safeguards and staged rollouts
- The durable remediation queue (enqueue, drain, retry, dead-letter, replay)
- Command executor, action catalog and host directory collaborators
- Command guard (blocklist, allowlist and size limits on command lists)

Classes:
    RemediationQueue: Queue orchestration over a RunStore
    FleetRolloutPlanner: Fleet preview and single-stage execution
    AutonomousPolicy: Tier, risk and canary decisions
    SubprocessCommandExecutor: Local shell executor
    CommandGuardPolicy: Command screening at enqueue and dequeue
"""

from .autonomous import AutonomousPolicy, CanaryDecision
from .catalog import ActionCatalog, HostDirectory, InMemoryActionCatalog, InMemoryHostDirectory
from .executor import (
    CommandExecutor,
    CommandResult,
    CommandStatus,
    ExecutionResult,
    SubprocessCommandExecutor,
)
from .guard import CommandGuardPolicy, CommandIssue
from .fleet import FleetBlastRadiusPolicy, FleetSelector, normalize_fleet_selector
from .planner import FleetRolloutPlan, FleetRolloutPlanner, FleetRolloutRequest
from .queue import RemediationQueue

__all__ = [
    "AutonomousPolicy",
    "CanaryDecision",
    "ActionCatalog",
    "HostDirectory",
    "InMemoryActionCatalog",
    "InMemoryHostDirectory",
    "CommandExecutor",
    "CommandResult",
    "CommandStatus",
    "ExecutionResult",
    "SubprocessCommandExecutor",
    "CommandGuardPolicy",
    "CommandIssue",
    "FleetBlastRadiusPolicy",
    "FleetSelector",
    "normalize_fleet_selector",
    "FleetRolloutPlan",
    "FleetRolloutPlanner",
    "FleetRolloutRequest",
    "RemediationQueue",
]
