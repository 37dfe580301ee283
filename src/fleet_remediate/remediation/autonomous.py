"""
Autonomous execution policy.

Decides which action tiers may run without a human, which risk levels need
approval, and which hosts fall into a canary cohort for a given action.
Canary buckets come from a deterministic hash so a host never flaps in or
out of a cohort between calls.

Example:
    >>> from fleet_remediate.remediation.autonomous import should_select_canary
    >>> should_select_canary("host-1", "rotate-keys", 100)
    CanaryDecision(bucket=0, selected=True)
"""

import logging
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional

from ..constants import (
    DEFAULT_APPROVAL_RISK_THRESHOLD,
    DEFAULT_CANARY_ROLLOUT_PERCENT,
    DEFAULT_MAX_AUTO_TIER,
)
from ..models import AutoTier, RemediationAction, RiskLevel
from ..retry import clamp_int

logger = logging.getLogger(__name__)

AUTO_TIER_ORDER = (
    AutoTier.OBSERVE,
    AutoTier.SAFE_AUTO,
    AutoTier.GUARDED_AUTO,
    AutoTier.RISKY_MANUAL,
)

RISK_ORDER = (
    RiskLevel.NONE,
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
)

_FNV_OFFSET_BASIS = 0x811C9DC5
_FNV_PRIME = 0x01000193


class CanaryDecision(NamedTuple):
    bucket: int
    selected: bool


def _coerce(value: Any, enum_cls):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value)
        except ValueError:
            return None
    return None


def normalize_auto_tier(raw: Any) -> AutoTier:
    """
    Normalize a tier name.

    Matching ignores case and surrounding whitespace. Anything unrecognized
    maps to ``safe_auto`` so bad input never lands on a more permissive tier.
    """
    tier = _coerce(raw, AutoTier)
    return tier if tier is not None else AutoTier.SAFE_AUTO


def normalize_approval_threshold(raw: Any, fallback: RiskLevel) -> RiskLevel:
    """Normalize an approval threshold; unrecognized input returns ``fallback``."""
    level = _coerce(raw, RiskLevel)
    return level if level is not None else fallback


def tier_rank(tier: AutoTier) -> int:
    return AUTO_TIER_ORDER.index(tier)


def risk_rank(risk: RiskLevel) -> int:
    return RISK_ORDER.index(risk)


def is_auto_executable_tier(tier: Any, max_auto_tier: Any) -> bool:
    """
    Check whether an action tier may execute without a human.

    ``observe`` and ``risky_manual`` never auto-execute; ``safe_auto`` always
    does; ``guarded_auto`` does only when the ceiling is ``guarded_auto`` or
    higher.
    """
    action_tier = normalize_auto_tier(tier)
    if action_tier in (AutoTier.OBSERVE, AutoTier.RISKY_MANUAL):
        return False
    if action_tier == AutoTier.SAFE_AUTO:
        return True
    ceiling = normalize_auto_tier(max_auto_tier)
    return tier_rank(ceiling) >= tier_rank(AutoTier.GUARDED_AUTO)


def risk_requires_approval(risk: Any, threshold: Any) -> bool:
    """
    Check whether a risk level crosses the approval threshold.

    A threshold of ``none`` is an explicit opt-out and never requires approval.
    """
    limit = normalize_approval_threshold(threshold, RiskLevel.NONE)
    if limit == RiskLevel.NONE:
        return False
    level = normalize_approval_threshold(risk, RiskLevel.HIGH)
    return risk_rank(level) >= risk_rank(limit)


def canary_percent_for_tier(tier: Any, base_percent: Any) -> int:
    """
    Rollout percentage for an action tier.

    ``safe_auto`` actions skip staging (100), ``guarded_auto`` uses the base
    percentage and the manual/observe tiers are never rolled out (0).
    """
    action_tier = normalize_auto_tier(tier)
    if action_tier == AutoTier.SAFE_AUTO:
        return 100
    if action_tier == AutoTier.GUARDED_AUTO:
        return clamp_int(base_percent, 0, 100)
    return 0


def stable_canary_bucket(key: str) -> int:
    """
    Map a key to a stable bucket in ``[0, 99]``.

    Uses 32-bit FNV-1a over the UTF-8 bytes of ``key``; the same key always
    yields the same bucket.
    """
    value = _FNV_OFFSET_BASIS
    for byte in key.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value % 100


def should_select_canary(host_id: str, action_id: str, percent: Any) -> CanaryDecision:
    """
    Decide whether a host is in the canary cohort for an action.

    Boundary percentages skip hashing: ``<= 0`` is "never" (bucket 99) and
    ``>= 100`` is "always" (bucket 0).
    """
    bounded = clamp_int(percent, 0, 100)
    if bounded <= 0:
        return CanaryDecision(bucket=99, selected=False)
    if bounded >= 100:
        return CanaryDecision(bucket=0, selected=True)
    bucket = stable_canary_bucket(f"{host_id}::{action_id}")
    return CanaryDecision(bucket=bucket, selected=bucket < bounded)


@dataclass(frozen=True)
class AutonomousPolicy:
    """
    Operator policy for autonomous execution.

    Attributes:
        max_auto_tier: Highest tier allowed to run unattended
        approval_risk_threshold: Lowest risk level that needs approval
        canary_rollout_percent: Base canary percentage for guarded actions
    """
    max_auto_tier: AutoTier = AutoTier(DEFAULT_MAX_AUTO_TIER)
    approval_risk_threshold: RiskLevel = RiskLevel(DEFAULT_APPROVAL_RISK_THRESHOLD)
    canary_rollout_percent: int = DEFAULT_CANARY_ROLLOUT_PERCENT

    @classmethod
    def from_values(
        cls,
        max_auto_tier: Any = None,
        approval_risk_threshold: Any = None,
        canary_rollout_percent: Any = None,
    ) -> 'AutonomousPolicy':
        """Build a policy from loosely-typed configuration values."""
        return cls(
            max_auto_tier=normalize_auto_tier(
                max_auto_tier if max_auto_tier is not None else DEFAULT_MAX_AUTO_TIER
            ),
            approval_risk_threshold=normalize_approval_threshold(
                approval_risk_threshold, RiskLevel(DEFAULT_APPROVAL_RISK_THRESHOLD)
            ),
            canary_rollout_percent=clamp_int(
                canary_rollout_percent
                if canary_rollout_percent is not None
                else DEFAULT_CANARY_ROLLOUT_PERCENT,
                0,
                100,
            ),
        )

    def approval_required_for(self, action: RemediationAction) -> bool:
        """An action needs approval unless it may run unattended and its risk is under threshold."""
        if not is_auto_executable_tier(action.auto_tier, self.max_auto_tier):
            return True
        return risk_requires_approval(action.risk, self.approval_risk_threshold)

    def approval_reason_for(self, action: RemediationAction) -> Optional[str]:
        if not self.approval_required_for(action):
            return None
        if action.auto_tier == AutoTier.RISKY_MANUAL:
            return "Risky tier action requires manual approval before execute."
        if not is_auto_executable_tier(action.auto_tier, self.max_auto_tier):
            return (
                f"Action tier '{action.auto_tier.value}' is above max "
                f"'{self.max_auto_tier.value}'."
            )
        return (
            f"Action risk '{action.risk.value}' crossed approval threshold "
            f"'{self.approval_risk_threshold.value}'."
        )

    def canary_for(self, host_id: str, action: RemediationAction) -> CanaryDecision:
        percent = canary_percent_for_tier(action.auto_tier, self.canary_rollout_percent)
        return should_select_canary(host_id, action.id, percent)
