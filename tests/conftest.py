"""
Shared fixtures for fleet-remediate tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

import pytest

from fleet_remediate.audit import AuditTrail, MemoryAuditBackend
from fleet_remediate.metrics import MetricsCollector
from fleet_remediate.models import FleetHost, RemediationAction
from fleet_remediate.remediation.autonomous import AutonomousPolicy
from fleet_remediate.remediation.catalog import InMemoryActionCatalog, InMemoryHostDirectory
from fleet_remediate.remediation.executor import (
    CommandExecutor,
    CommandResult,
    CommandStatus,
    ExecutionResult,
)
from fleet_remediate.remediation.queue import RemediationQueue
from fleet_remediate.storage.run_store import RunStore

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedExecutor(CommandExecutor):
    """
    Executor that returns scripted outcomes (True/False or an exception to raise).

    ``on_execute`` runs before each outcome is produced, standing in for
    whatever else happens while a real command is in flight.
    """

    def __init__(self, outcomes: Sequence = (), on_execute: Optional[Callable[[], None]] = None):
        self.outcomes = list(outcomes)
        self.calls: List[List[str]] = []
        self.on_execute = on_execute

    def execute(self, commands: Sequence[str]) -> ExecutionResult:
        self.calls.append(list(commands))
        if self.on_execute is not None:
            self.on_execute()
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        now = datetime.now(timezone.utc)
        status = CommandStatus.SUCCESS if outcome else CommandStatus.FAILED
        results = [CommandResult(cmd, cmd, status, exit_code=0 if outcome else 1) for cmd in commands[:1]]
        return ExecutionResult(
            ok=bool(outcome),
            started_at=now,
            finished_at=now,
            results=results,
            error=None if outcome else "Command #1 failed (exit 1): boom",
        )


class DryRunExecutor(ScriptedExecutor):
    """Scripted executor that reports itself as a dry run."""
    dry_run = True


def make_action(action_id: str = "restart-sshd", **overrides) -> RemediationAction:
    data = {
        "id": action_id,
        "title": f"Action {action_id}",
        "commands": ["systemctl restart sshd"],
        "risk": "low",
        "auto_tier": "safe_auto",
    }
    data.update(overrides)
    return RemediationAction(**data)


def make_host(host_id: str, **overrides) -> FleetHost:
    data = {"id": host_id, "name": host_id}
    data.update(overrides)
    return FleetHost(**data)


class IdSequence:
    def __init__(self, prefix: str = "run"):
        self.prefix = prefix
        self.count = 0

    def __call__(self) -> str:
        self.count += 1
        return f"{self.prefix}-{self.count:03d}"


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store(tmp_path) -> RunStore:
    return RunStore(tmp_path / "runs.db")


@pytest.fixture
def catalog() -> InMemoryActionCatalog:
    return InMemoryActionCatalog([
        make_action("restart-sshd"),
        make_action("rotate-keys", risk="high", auto_tier="guarded_auto"),
        make_action("wipe-cache", auto_tier="risky_manual", risk="low"),
        make_action("reboot", requires_confirm=True, confirm_phrase="REBOOT NOW"),
    ])


@pytest.fixture
def hosts() -> InMemoryHostDirectory:
    return InMemoryHostDirectory([
        make_host("web-01", group="web"),
        make_host("web-02", group="web"),
        make_host("db-01", group="db"),
        make_host("old-01", enabled=False),
    ])


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def audit_backend() -> MemoryAuditBackend:
    return MemoryAuditBackend()


@pytest.fixture
def queue(store, catalog, hosts, executor, clock, metrics, audit_backend) -> RemediationQueue:
    return RemediationQueue(
        store,
        catalog,
        hosts,
        executor,
        policy=AutonomousPolicy(),
        retry_base_seconds=15,
        retry_max_seconds=900,
        default_max_attempts=3,
        metrics=metrics,
        audit=AuditTrail(audit_backend),
        clock=clock,
        id_factory=IdSequence(),
    )


def sibling_queue(queue: RemediationQueue, executor: CommandExecutor, **overrides) -> RemediationQueue:
    """Another queue over the same store and inventory, like a second worker process."""
    options = dict(
        policy=queue.policy,
        retry_base_seconds=queue.retry_base_seconds,
        retry_max_seconds=queue.retry_max_seconds,
        default_max_attempts=queue.default_max_attempts,
        metrics=queue.metrics,
        audit=queue.audit,
        clock=queue._clock,
        id_factory=IdSequence("other"),
    )
    options.update(overrides)
    return RemediationQueue(queue.store, queue.catalog, queue.hosts, executor, **options)
