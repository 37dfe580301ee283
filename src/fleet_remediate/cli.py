"""
Command-line interface for fleet-remediate.

Every subcommand prints one JSON document on stdout. Exit codes:
0 success, 1 operational failure (a run failed, storage unavailable),
2 rejected input or policy violation.
"""
import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .version import get_version_info
from .audit import AuditTrail, FileAuditBackend, MemoryAuditBackend
from .config import RemediationConfig
from .exceptions import (
    CommandBlockedError,
    ConfirmationMismatchError,
    InputError,
    PolicyViolationError,
    RemediationError,
)
from .logging_config import configure_cli_logging
from .metrics import MetricsCollector
from .remediation.catalog import InMemoryActionCatalog, InMemoryHostDirectory
from .remediation.executor import SubprocessCommandExecutor
from .remediation.planner import FleetRolloutPlanner, FleetRolloutRequest
from .remediation.queue import APPROVE, REJECT, RemediationQueue
from .storage.run_store import RunStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_REJECTED = 2

DEFAULT_ACTOR = "cli"


@dataclass
class Runtime:
    """Collaborators wired from configuration for one CLI invocation."""
    config: RemediationConfig
    queue: RemediationQueue
    planner: FleetRolloutPlanner
    metrics: MetricsCollector


def build_runtime(config: RemediationConfig) -> Runtime:
    """Wire store, catalog, hosts, executor, audit and metrics from configuration."""
    catalog = (
        InMemoryActionCatalog.from_file(config.actions_file)
        if config.actions_file else InMemoryActionCatalog()
    )
    hosts = (
        InMemoryHostDirectory.from_file(config.hosts_file)
        if config.hosts_file else InMemoryHostDirectory()
    )
    audit = AuditTrail(FileAuditBackend(config.audit_file) if config.audit_file else MemoryAuditBackend())
    metrics = MetricsCollector()
    store = RunStore(
        config.db_path,
        default_max_attempts=config.max_attempts,
        busy_timeout=config.db_busy_timeout,
    )
    executor = SubprocessCommandExecutor(
        timeout=config.command_timeout,
        max_output_bytes=config.max_output_bytes,
        shell=config.shell,
        dry_run=config.dry_run,
    )
    policy = config.autonomous_policy()
    queue = RemediationQueue(
        store,
        catalog,
        hosts,
        executor,
        policy=policy,
        retry_base_seconds=config.retry_base_seconds,
        retry_max_seconds=config.retry_max_seconds,
        default_max_attempts=config.max_attempts,
        queue_ttl_minutes=config.queue_ttl_minutes,
        running_grace_seconds=config.running_grace_seconds,
        recover_on_drain=config.recover_on_drain,
        guard=config.command_guard_policy(),
        max_queue_per_host=config.max_queue_per_host,
        max_queue_total=config.max_queue_total,
        metrics=metrics,
        audit=audit,
    )
    planner = FleetRolloutPlanner(
        queue,
        hosts,
        catalog,
        blast_radius=config.blast_radius_policy(),
        policy=policy,
        metrics=metrics,
        audit=audit,
    )
    return Runtime(config=config, queue=queue, planner=planner, metrics=metrics)


def load_config(args: argparse.Namespace) -> RemediationConfig:
    config = RemediationConfig.load(getattr(args, 'config_file', None))
    if getattr(args, 'db', None):
        config.db_path = args.db
    if getattr(args, 'actions_file', None):
        config.actions_file = args.actions_file
    if getattr(args, 'hosts_file', None):
        config.hosts_file = args.hosts_file
    if getattr(args, 'dry_run', False):
        config.dry_run = True
    return config


def emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


def error_payload(error: RemediationError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "ok": False,
        "error": str(error),
        "errorType": type(error).__name__,
        "statusCode": error.status_code,
    }
    if isinstance(error, PolicyViolationError):
        payload["safeguard"] = error.safeguard
    if isinstance(error, ConfirmationMismatchError):
        payload["expectedConfirm"] = error.expected
    if isinstance(error, CommandBlockedError):
        payload["issues"] = [issue.to_dict() for issue in error.issues]
    return payload


def exit_code_for_error(error: RemediationError) -> int:
    return EXIT_REJECTED if error.status_code < 500 else EXIT_FAILURE


# ========================================
# Queue subcommands
# ========================================

def handle_enqueue(args: argparse.Namespace, runtime: Runtime) -> int:
    result = runtime.queue.enqueue(
        args.host,
        args.action,
        reason=args.reason,
        requested_by_user_id=args.actor,
        require_approval=args.require_approval,
        approval_reason=args.approval_reason,
        confirm_phrase=args.confirm,
        max_attempts=args.max_attempts,
    )
    emit(result.to_dict())
    return EXIT_OK


def handle_snapshot(args: argparse.Namespace, runtime: Runtime) -> int:
    snapshot = runtime.queue.snapshot(limit=args.limit, dlq_only=args.dlq_only)
    emit({"ok": True, **snapshot.to_dict()})
    return EXIT_OK


def handle_drain(args: argparse.Namespace, runtime: Runtime) -> int:
    result = runtime.queue.drain(limit=args.limit)
    emit(result.to_dict())
    return EXIT_OK if result.ok else EXIT_FAILURE


def handle_recover(args: argparse.Namespace, runtime: Runtime) -> int:
    result = runtime.queue.recover_stale_runs(grace_seconds=args.grace_seconds)
    emit({"ok": True, **result.to_dict()})
    return EXIT_OK


def handle_replay(args: argparse.Namespace, runtime: Runtime) -> int:
    if args.run_id:
        single = runtime.queue.replay_run(args.run_id, replayed_by_user_id=args.actor)
        emit(single.to_dict())
        return EXIT_OK
    result = runtime.queue.replay_dead_letter_runs(limit=args.limit, replayed_by_user_id=args.actor)
    emit(result.to_dict())
    return EXIT_OK if result.ok else EXIT_FAILURE


def _handle_approval(args: argparse.Namespace, runtime: Runtime, mode: str) -> int:
    result = runtime.queue.set_run_approval(args.run_id, args.actor, mode, reason=args.reason)
    emit(result.to_dict())
    return EXIT_OK


def handle_approve(args: argparse.Namespace, runtime: Runtime) -> int:
    return _handle_approval(args, runtime, APPROVE)


def handle_reject(args: argparse.Namespace, runtime: Runtime) -> int:
    return _handle_approval(args, runtime, REJECT)


# ========================================
# Fleet subcommands
# ========================================

def _parse_json_arg(raw: str, what: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InputError(f"{what} is not valid JSON: {e}") from e


def build_fleet_request_body(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Build a fleet request body from ``--request`` and the individual flags.

    Flags override values from the request file.
    """
    body: Dict[str, Any] = {}
    if args.request:
        text = sys.stdin.read() if args.request == "-" else Path(args.request).read_text(encoding="utf-8")
        loaded = _parse_json_arg(text, "Fleet request")
        if not isinstance(loaded, dict):
            raise InputError("Fleet request must be a JSON object")
        body.update(loaded)

    if args.action:
        body["actionId"] = args.action
    if args.selector:
        body["selector"] = _parse_json_arg(args.selector, "--selector")
    if args.allow_wide_selector:
        body["allowWideSelector"] = True
    if args.reason:
        body["reason"] = args.reason

    rollout = dict(body.get("rollout") or {})
    for flag, key in (
        ("strategy", "strategy"),
        ("stage_size", "stageSize"),
        ("stage_index", "stageIndex"),
        ("max_hosts", "maxHosts"),
        ("max_per_group", "maxPerGroup"),
        ("max_percent", "maxPercentOfEnabledFleet"),
    ):
        value = getattr(args, flag)
        if value is not None:
            rollout[key] = value
    if rollout:
        body["rollout"] = rollout
    return body


def handle_fleet_preview(args: argparse.Namespace, runtime: Runtime) -> int:
    request = FleetRolloutRequest.from_dict(build_fleet_request_body(args))
    plan = runtime.planner.preview(request, actor_user_id=args.actor)
    emit({"ok": True, "preview": plan.to_dict()})
    return EXIT_OK


def handle_fleet_execute(args: argparse.Namespace, runtime: Runtime) -> int:
    request = FleetRolloutRequest.from_dict(build_fleet_request_body(args))
    result = runtime.planner.execute(request, confirm_phrase=args.confirm, actor_user_id=args.actor)
    emit(result.to_dict())
    return EXIT_OK if result.ok else EXIT_FAILURE


# ========================================
# Informational subcommands
# ========================================

def handle_version(args: argparse.Namespace) -> int:
    info = get_version_info()
    emit({
        "ok": True,
        "name": info["name"],
        "version": info["version"],
        "fullName": info["full_name"],
        "payloadSchemaVersion": info["payload_schema_version"],
    })
    return EXIT_OK


def handle_config(args: argparse.Namespace) -> int:
    config = load_config(args)
    if args.config_action == "validate":
        try:
            config.validate()
        except ValueError as e:
            emit({"ok": False, "error": str(e)})
            return EXIT_REJECTED
        emit({"ok": True, "valid": True})
        return EXIT_OK
    emit({"ok": True, "config": config.to_dict()})
    return EXIT_OK


def _add_actor(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--actor", default=DEFAULT_ACTOR, help="Operator id recorded on runs and audit events")


def _add_fleet_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--request", metavar="PATH", help="JSON request body file ('-' for stdin)")
    parser.add_argument("--action", help="Action id")
    parser.add_argument("--selector", metavar="JSON", help='Host selector, e.g. \'{"groups": ["edge"]}\'')
    parser.add_argument("--allow-wide-selector", action="store_true", help="Allow an empty selector")
    parser.add_argument("--strategy", choices=["group_canary", "sequential"])
    parser.add_argument("--stage-size", type=int)
    parser.add_argument("--stage-index", type=int)
    parser.add_argument("--max-hosts", type=int)
    parser.add_argument("--max-per-group", type=int)
    parser.add_argument("--max-percent", type=int, help="Max percent of the enabled fleet")
    parser.add_argument("--reason")
    _add_actor(parser)


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser with subcommands.
    """
    parser = argparse.ArgumentParser(
        prog="fleet-remediate",
        description="Durable remediation queue and staged fleet rollouts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s enqueue --host web-01 --action restart-nginx
  %(prog)s drain --limit 10
  %(prog)s snapshot --dlq-only
  %(prog)s replay --limit 5
  %(prog)s approve RUN_ID --actor ops-1
  %(prog)s fleet-preview --action patch-openssh --selector '{"groups": ["edge"]}'
  %(prog)s fleet-execute --action patch-openssh --selector '{"groups": ["edge"]}' \\
      --confirm "EXECUTE FLEET STAGE 1"

Environment Variables:
  FLEET_REMEDIATE_CONFIG        Config file (YAML or TOML)
  FLEET_REMEDIATE_DB_PATH       SQLite run store
  FLEET_REMEDIATE_ACTIONS_FILE  Action catalog (JSON or YAML)
  FLEET_REMEDIATE_HOSTS_FILE    Host inventory (JSON or YAML)
        """
    )

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log warnings and errors")
    parser.add_argument("--config-file", metavar="PATH", help="Path to configuration file")
    parser.add_argument("--db", metavar="PATH", help="Override the SQLite run store path")
    parser.add_argument("--actions-file", metavar="PATH", help="Override the action catalog file")
    parser.add_argument("--hosts-file", metavar="PATH", help="Override the host inventory file")
    parser.add_argument("--dry-run", action="store_true", help="Log commands instead of running them")

    subparsers = parser.add_subparsers(dest="subcommand", help="Available subcommands")

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue one action on one host")
    enqueue_parser.add_argument("--host", required=True)
    enqueue_parser.add_argument("--action", required=True)
    enqueue_parser.add_argument("--reason")
    enqueue_parser.add_argument("--confirm", help="Confirmation phrase for actions that require one")
    enqueue_parser.add_argument("--max-attempts", type=int)
    enqueue_parser.add_argument("--approval-reason")
    approval_group = enqueue_parser.add_mutually_exclusive_group()
    approval_group.add_argument(
        "--require-approval", dest="require_approval", action="store_const", const=True, default=None,
        help="Hold the run until approved"
    )
    approval_group.add_argument(
        "--no-approval", dest="require_approval", action="store_const", const=False,
        help="Skip the approval gate"
    )
    _add_actor(enqueue_parser)
    enqueue_parser.set_defaults(func=handle_enqueue)

    snapshot_parser = subparsers.add_parser("snapshot", help="Show queue counts and recent runs")
    snapshot_parser.add_argument("--limit", type=int, default=25)
    snapshot_parser.add_argument("--dlq-only", action="store_true")
    snapshot_parser.set_defaults(func=handle_snapshot)

    drain_parser = subparsers.add_parser("drain", help="Execute ready runs")
    drain_parser.add_argument("--limit", type=int, default=5)
    drain_parser.set_defaults(func=handle_drain)

    recover_parser = subparsers.add_parser("recover", help="Recover runs stuck in running")
    recover_parser.add_argument("--grace-seconds", type=int)
    recover_parser.set_defaults(func=handle_recover)

    replay_parser = subparsers.add_parser("replay", help="Replay dead-lettered runs")
    replay_parser.add_argument("run_id", nargs="?", help="Replay one run instead of a batch")
    replay_parser.add_argument("--limit", type=int, default=10)
    _add_actor(replay_parser)
    replay_parser.set_defaults(func=handle_replay)

    for name, handler, help_text in (
        ("approve", handle_approve, "Approve a run waiting for approval"),
        ("reject", handle_reject, "Reject a run waiting for approval"),
    ):
        approval_parser = subparsers.add_parser(name, help=help_text)
        approval_parser.add_argument("run_id")
        approval_parser.add_argument("--reason")
        _add_actor(approval_parser)
        approval_parser.set_defaults(func=handler)

    preview_parser = subparsers.add_parser("fleet-preview", help="Preview a staged fleet rollout")
    _add_fleet_arguments(preview_parser)
    preview_parser.set_defaults(func=handle_fleet_preview)

    execute_parser = subparsers.add_parser("fleet-execute", help="Queue one stage of a fleet rollout")
    _add_fleet_arguments(execute_parser)
    execute_parser.add_argument("--confirm", required=True, help='Must be "EXECUTE FLEET STAGE <n>"')
    execute_parser.set_defaults(func=handle_fleet_execute)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=handle_version, standalone=True)

    config_parser = subparsers.add_parser("config", help="Show or validate configuration")
    config_parser.add_argument(
        "config_action", nargs="?", choices=["show", "validate"], default="show",
        help="Config action (default: show)"
    )
    config_parser.set_defaults(func=handle_config, standalone=True)

    return parser


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run one subcommand and return its exit code."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, 'func'):
        parser.print_help()
        return EXIT_FAILURE

    if getattr(args, 'standalone', False):
        configure_cli_logging(verbose=args.verbose, quiet=args.quiet)
        return args.func(args)

    try:
        config = load_config(args)
        config.validate()
    except (ValueError, RemediationError, OSError) as e:
        configure_cli_logging(verbose=args.verbose, quiet=args.quiet)
        emit({"ok": False, "error": str(e)})
        return EXIT_REJECTED

    configure_cli_logging(
        verbose=args.verbose,
        quiet=args.quiet,
        level=config.log_level,
        log_file=config.log_file,
        json_format=config.log_json,
    )

    try:
        runtime = build_runtime(config)
        return args.func(args, runtime)
    except RemediationError as e:
        level = logging.WARNING if exit_code_for_error(e) == EXIT_REJECTED else logging.ERROR
        logger.log(level, f"{args.subcommand} failed: {e}")
        emit(error_payload(e))
        return exit_code_for_error(e)


def main() -> None:
    """Main entry point for the CLI."""
    sys.exit(run())


if __name__ == "__main__":
    main()
