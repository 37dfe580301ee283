"""
Command execution for remediation runs.

The queue hands a run's command list to a :class:`CommandExecutor`. A failing
or timed-out command is a normal result (``ok=False``), never an exception:
it feeds the retry / dead-letter path. Only problems with the execution
environment itself (missing shell, unusable working directory) raise
:class:`ExecutorSetupError`.

Example:
    >>> from fleet_remediate.remediation.executor import SubprocessCommandExecutor
    >>> executor = SubprocessCommandExecutor(timeout=10)
    >>> result = executor.execute(["systemctl restart fail2ban"])
    >>> result.ok
"""

import logging
import os
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..constants import DEFAULT_COMMAND_TIMEOUT_SECONDS, DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_SHELL
from ..exceptions import ExecutorSetupError
from ..retry import utc_now

logger = logging.getLogger(__name__)

# Per-stream cap on what is kept in results and logs
STREAM_PREVIEW_CHARS = 8000

READ_CHUNK_BYTES = 65536
POLL_INTERVAL_SECONDS = 0.05
READER_JOIN_SECONDS = 2.0
TIMEOUT_EXIT_CODE = 124
KILLED_EXIT_CODE = 128 + signal.SIGKILL


class CommandStatus(Enum):
    """Status of a single command."""
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT = "output_limit"
    SKIPPED = "skipped"


@dataclass
class CommandResult:
    """Result of one command."""

    command: str
    normalized_command: Optional[str]
    status: CommandStatus
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (CommandStatus.SUCCESS, CommandStatus.SKIPPED)

    @property
    def skipped(self) -> bool:
        return self.status == CommandStatus.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "command": self.command,
            "normalizedCommand": self.normalized_command,
            "status": self.status.value,
            "ok": self.ok,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass
class ExecutionResult:
    """Result of running a command list."""

    ok: bool
    started_at: datetime
    finished_at: datetime
    results: List[CommandResult] = field(default_factory=list)
    error: Optional[str] = None
    dry_run: bool = False

    @property
    def per_command_output(self) -> List[str]:
        return [f"{r.stdout}{r.stderr}" for r in self.results]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "ok": self.ok,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "error": self.error,
            "dryRun": self.dry_run,
            "results": [r.to_dict() for r in self.results],
        }


class CommandExecutor(ABC):
    """
    Base class for command executors.

    Implementations must run the commands in order, stop at the first
    failure and enforce their own timeout and output limits. An executor
    with ``dry_run`` set runs nothing, and the queue leaves runs untouched
    when draining through it.
    """

    dry_run = False

    @abstractmethod
    def execute(self, commands: Sequence[str]) -> ExecutionResult:
        """
        Run ``commands`` and report the outcome.

        Raises:
            ExecutorSetupError: The environment cannot run commands at all
        """
        pass


def normalize_command(raw: str) -> Optional[str]:
    """
    Prepare a command for non-interactive execution.

    Blank lines and ``#`` comments yield None (skipped). ``sudo`` is forced
    into non-interactive mode so a password prompt fails instead of hanging.
    """
    text = raw.strip()
    if not text or text.startswith("#"):
        return None
    if text.startswith("sudo ") and not text.startswith("sudo -n "):
        return f"sudo -n {text[5:]}"
    return text


def _cap_output(data: Any, max_bytes: int) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        raw = data.encode("utf-8", errors="replace")
    else:
        raw = bytes(data)
    text = raw[:max_bytes].decode("utf-8", errors="replace")
    if len(text) > STREAM_PREVIEW_CHARS:
        text = f"{text[:STREAM_PREVIEW_CHARS]}\n...[truncated {len(text) - STREAM_PREVIEW_CHARS} chars]"
    return text


class _StreamReader(threading.Thread):
    """Drain one pipe, keeping at most ``max_bytes`` and flagging overflow."""

    def __init__(self, stream, max_bytes: int, overflow: threading.Event):
        super().__init__(daemon=True)
        self.stream = stream
        self.max_bytes = max_bytes
        self.overflow = overflow
        self.overflowed = False
        self.size = 0
        self._chunks: List[bytes] = []

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(READ_CHUNK_BYTES)
                if not chunk:
                    break
                room = self.max_bytes - self.size
                if room > 0:
                    self._chunks.append(chunk[:room])
                self.size += len(chunk)
                if self.size > self.max_bytes:
                    self.overflowed = True
                    self.overflow.set()
                    break
        finally:
            self.stream.close()

    @property
    def data(self) -> bytes:
        return b"".join(self._chunks)


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Already exited
        return


class SubprocessCommandExecutor(CommandExecutor):
    """
    Run commands locally through a shell.

    Each command gets its own timeout. Output is read as it is produced and
    a command whose stdout or stderr grows past ``max_output_bytes`` is
    killed (with its whole process group) and reported as ``output_limit``.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        shell: str = DEFAULT_SHELL,
        dry_run: bool = False,
    ):
        """
        Initialize executor.

        Args:
            timeout: Seconds allowed per command
            max_output_bytes: Byte cap per output stream
            shell: Shell binary used to interpret each command
            dry_run: Log commands instead of running them
        """
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes
        self.shell = shell
        self.dry_run = dry_run

    def _wait(self, proc: subprocess.Popen, overflow: threading.Event, deadline: float) -> bool:
        """Wait for exit; kill the group on overflow or deadline. Returns True on timeout."""
        while True:
            if overflow.is_set():
                _kill_process_group(proc)
                proc.wait()
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _kill_process_group(proc)
                proc.wait()
                return True
            try:
                proc.wait(timeout=min(POLL_INTERVAL_SECONDS, remaining))
                return False
            except subprocess.TimeoutExpired:
                continue

    def _run_one(self, raw: str, normalized: str) -> CommandResult:
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                normalized,
                shell=True,
                executable=self.shell,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise ExecutorSetupError(f"Cannot start shell {self.shell}: {e}") from e

        overflow = threading.Event()
        readers = [
            _StreamReader(proc.stdout, self.max_output_bytes, overflow),
            _StreamReader(proc.stderr, self.max_output_bytes, overflow),
        ]
        for reader in readers:
            reader.start()

        timed_out = self._wait(proc, overflow, start + self.timeout)
        for reader in readers:
            reader.join(READER_JOIN_SECONDS)
        if any(reader.is_alive() for reader in readers):
            # Background children still hold the pipes open
            _kill_process_group(proc)
            for reader in readers:
                reader.join(READER_JOIN_SECONDS)

        stdout_reader, stderr_reader = readers
        stdout = _cap_output(stdout_reader.data, self.max_output_bytes)
        stderr = _cap_output(stderr_reader.data, self.max_output_bytes)
        duration = time.monotonic() - start

        if timed_out:
            return CommandResult(
                command=raw,
                normalized_command=normalized,
                status=CommandStatus.TIMEOUT,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=stdout,
                stderr=f"Command timed out after {self.timeout}s",
                duration_seconds=duration,
            )
        if stdout_reader.overflowed or stderr_reader.overflowed:
            stream = "stdout" if stdout_reader.overflowed else "stderr"
            return CommandResult(
                command=raw,
                normalized_command=normalized,
                status=CommandStatus.OUTPUT_LIMIT,
                exit_code=KILLED_EXIT_CODE,
                stdout=stdout,
                stderr=f"Command killed: {stream} exceeded {self.max_output_bytes} bytes",
                duration_seconds=duration,
            )

        return CommandResult(
            command=raw,
            normalized_command=normalized,
            status=CommandStatus.SUCCESS if proc.returncode == 0 else CommandStatus.FAILED,
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )

    def execute(self, commands: Sequence[str]) -> ExecutionResult:
        """Run commands in order, stopping at the first failure."""
        started_at = utc_now()
        results: List[CommandResult] = []
        error = None

        for raw in commands:
            normalized = normalize_command(raw)
            if normalized is None:
                results.append(CommandResult(raw, None, CommandStatus.SKIPPED))
                continue

            if self.dry_run:
                logger.info(f"[DRY RUN] Would run: {normalized}")
                results.append(CommandResult(raw, normalized, CommandStatus.SKIPPED))
                continue

            logger.info(f"Executing command: {normalized}")
            result = self._run_one(raw, normalized)
            results.append(result)
            if not result.ok:
                error = (
                    f"Command #{len(results)} {result.status.value} "
                    f"(exit {result.exit_code}): {result.stderr.strip() or normalized}"
                )
                logger.warning(error)
                break

        return ExecutionResult(
            ok=error is None,
            started_at=started_at,
            finished_at=utc_now(),
            results=results,
            error=error,
            dry_run=self.dry_run,
        )


def format_execution_for_log(execution: ExecutionResult) -> str:
    """Render an execution as plain text for the run's ``output`` field."""
    lines = [
        f"ok={str(execution.ok).lower()} startedAt={execution.started_at.isoformat()} "
        f"finishedAt={execution.finished_at.isoformat()} commands={len(execution.results)}"
    ]
    for index, result in enumerate(execution.results, start=1):
        lines.append(
            f"\n#{index} {'ok' if result.ok else 'failed'} exit={result.exit_code} "
            f"durationMs={int(result.duration_seconds * 1000)}"
        )
        lines.append(f"command: {result.command}")
        if result.skipped:
            lines.append("skipped: true")
            continue
        if result.stdout:
            lines.append(f"stdout:\n{result.stdout}")
        if result.stderr:
            lines.append(f"stderr:\n{result.stderr}")
    return "\n".join(lines)
