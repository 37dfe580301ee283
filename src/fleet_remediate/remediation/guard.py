"""
Command guard for remediation runs.

Screens a command list before it is queued and again before it is executed:
too many commands, over-long commands, blocklisted patterns and (when
enforced) commands missing from the allowlist all produce issues. Blank
lines and ``#`` comments are never checked because they never run.

Example:
    >>> guard = CommandGuardPolicy.from_values(enforce_allowlist=False)
    >>> [issue.index for issue in guard.validate(["uptime", "rm -rf /var/cache"])]
    [1]
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Pattern, Sequence, Tuple

from ..constants import (
    DEFAULT_MAX_COMMAND_LENGTH,
    DEFAULT_MAX_COMMANDS_PER_ACTION,
    GUARD_ISSUE_SUMMARY_LIMIT,
    MAX_COMMAND_LENGTH_LIMIT,
    MAX_COMMANDS_PER_ACTION_LIMIT,
    MIN_COMMAND_LENGTH_LIMIT,
)
from ..exceptions import CommandBlockedError
from ..logging_context import get_logger
from ..retry import clamp_int
from ..utils import parse_bool
from .executor import normalize_command

logger = get_logger(__name__)

DEFAULT_BLOCKLIST_PATTERNS = (
    r"(^|[\s;|&])(rm\s+-rf)\b",
    r"(^|[\s;|&])(mkfs|fdisk|parted)\b",
    r"(^|[\s;|&])(shutdown|reboot|halt|poweroff)\b",
    r"(^|[\s;|&])(dd\s+if=)",
    r"(:\(\)\s*\{)",
    r"(curl|wget).*\|\s*(sh|bash)",
)


@dataclass(frozen=True)
class CommandIssue:
    """One reason a command list was rejected. ``index`` is -1 for list-wide issues."""
    index: int
    command: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "command": self.command, "reason": self.reason}


def compile_patterns(patterns: Iterable[Any]) -> Tuple[Pattern, ...]:
    """Compile case-insensitive patterns, skipping blanks and invalid entries."""
    compiled = []
    for raw in patterns or ():
        if not isinstance(raw, str) or not raw.strip():
            continue
        try:
            compiled.append(re.compile(raw.strip(), re.IGNORECASE))
        except re.error as e:
            logger.warning(f"Ignoring invalid command guard pattern {raw!r}: {e}")
    return tuple(compiled)


def summarize_issues(issues: Sequence[CommandIssue], limit: int = GUARD_ISSUE_SUMMARY_LIMIT) -> str:
    return "; ".join(f"#{issue.index}:{issue.reason}" for issue in issues[:limit])


@dataclass(frozen=True)
class CommandGuardPolicy:
    """
    Limits on what a run may execute.

    Attributes:
        enforce_allowlist: Reject commands that match no allowlist pattern
        max_commands_per_action: Longest accepted command list
        max_command_length: Longest accepted single command
        allowlist: Patterns a command must match when the allowlist is enforced
        blocklist: Patterns that reject a command outright
    """
    enforce_allowlist: bool = False
    max_commands_per_action: int = DEFAULT_MAX_COMMANDS_PER_ACTION
    max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH
    allowlist: Tuple[Pattern, ...] = ()
    blocklist: Tuple[Pattern, ...] = compile_patterns(DEFAULT_BLOCKLIST_PATTERNS)

    @classmethod
    def from_values(
        cls,
        enforce_allowlist: Any = False,
        max_commands_per_action: Any = DEFAULT_MAX_COMMANDS_PER_ACTION,
        max_command_length: Any = DEFAULT_MAX_COMMAND_LENGTH,
        allowlist: Iterable[Any] = (),
        blocklist: Iterable[Any] = (),
    ) -> 'CommandGuardPolicy':
        """Build a guard from configuration; extra blocklist entries add to the defaults."""
        return cls(
            enforce_allowlist=bool(parse_bool(enforce_allowlist)),
            max_commands_per_action=clamp_int(max_commands_per_action, 1, MAX_COMMANDS_PER_ACTION_LIMIT),
            max_command_length=clamp_int(max_command_length, MIN_COMMAND_LENGTH_LIMIT, MAX_COMMAND_LENGTH_LIMIT),
            allowlist=compile_patterns(allowlist),
            blocklist=compile_patterns(DEFAULT_BLOCKLIST_PATTERNS) + compile_patterns(blocklist),
        )

    def validate(self, commands: Sequence[str]) -> List[CommandIssue]:
        """Issues found in ``commands``; an empty list means the list may run."""
        if len(commands) > self.max_commands_per_action:
            return [CommandIssue(
                -1, "", f"too_many_commands:{len(commands)}>{self.max_commands_per_action}"
            )]

        issues = []
        for index, raw in enumerate(commands):
            if normalize_command(raw) is None:
                continue
            if len(raw) > self.max_command_length:
                issues.append(CommandIssue(
                    index, raw, f"command_too_long:{len(raw)}>{self.max_command_length}"
                ))
                continue
            denied = next((p for p in self.blocklist if p.search(raw)), None)
            if denied is not None:
                issues.append(CommandIssue(index, raw, f"blocked_pattern:{denied.pattern}"))
                continue
            if self.enforce_allowlist and not any(p.search(raw) for p in self.allowlist):
                issues.append(CommandIssue(index, raw, "not_allowlisted"))
        return issues

    def check(self, commands: Sequence[str], context: str = "Commands") -> None:
        """
        Raise if ``commands`` has any issue.

        Raises:
            CommandBlockedError: With the issue list attached
        """
        issues = self.validate(commands)
        if issues:
            raise CommandBlockedError(
                f"{context} blocked by command guard: {summarize_issues(issues)}",
                issues=issues,
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enforceAllowlist": self.enforce_allowlist,
            "maxCommandsPerAction": self.max_commands_per_action,
            "maxCommandLength": self.max_command_length,
            "allowlist": [p.pattern for p in self.allowlist],
            "blocklist": [p.pattern for p in self.blocklist],
        }
