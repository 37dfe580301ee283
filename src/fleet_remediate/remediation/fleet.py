"""
Fleet targeting and blast-radius safeguards.

Selector parsing is fail-closed: anything that cannot be understood turns
into a selector that matches no host. Sorting, safeguards and stage building
are deterministic so the same inputs always produce the same stages.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..constants import (
    DEFAULT_FLEET_MAX_HOSTS,
    DEFAULT_FLEET_MAX_PER_GROUP,
    DEFAULT_FLEET_MAX_PERCENT_ENABLED,
    DEFAULT_FLEET_STAGE_SIZE,
    FLEET_MAX_HOSTS_LIMIT,
    FLEET_MAX_PER_GROUP_LIMIT,
    FLEET_MAX_SELECTOR_HOST_IDS,
    FLEET_MAX_SELECTOR_TOKENS,
    FLEET_MAX_STAGE_SIZE,
    FLEET_TOKEN_MAX_LEN,
    UNGROUPED_KEY,
)
from ..exceptions import InvalidSelectorError
from ..models import FleetHost, RolloutStrategy
from ..retry import clamp_int
from ..utils import as_mapping, normalize_token_list, parse_bool

logger = logging.getLogger(__name__)

REJECT_MAX_HOSTS = "max_hosts"
REJECT_MAX_PERCENT = "max_percent_of_fleet"
REJECT_MAX_PER_GROUP = "max_per_group"

# camelCase wire name -> attribute name
_SELECTOR_FIELDS = {
    "hostIds": "host_ids",
    "groups": "groups",
    "tagsAll": "tags_all",
    "tagsAny": "tags_any",
    "scopesAll": "scopes_all",
    "scopesAny": "scopes_any",
    "enabledOnly": "enabled_only",
    "includePaused": "include_paused",
}
_TOKEN_FIELDS = ("groups", "tags_all", "tags_any", "scopes_all", "scopes_any")


@dataclass(frozen=True)
class FleetSelector:
    """
    Normalized host filter.

    ``None`` list fields impose no constraint. ``match_none`` is set when the
    raw selector could not be parsed; such a selector matches no host.
    """
    host_ids: Optional[Tuple[str, ...]] = None
    groups: Optional[Tuple[str, ...]] = None
    tags_all: Optional[Tuple[str, ...]] = None
    tags_any: Optional[Tuple[str, ...]] = None
    scopes_all: Optional[Tuple[str, ...]] = None
    scopes_any: Optional[Tuple[str, ...]] = None
    enabled_only: bool = False
    include_paused: bool = False
    match_none: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for wire, attr in _SELECTOR_FIELDS.items():
            value = getattr(self, attr)
            if isinstance(value, tuple):
                value = list(value)
            out[wire] = value
        out["matchNone"] = self.match_none
        return out


def _normalize_host_ids(value: Any) -> Optional[Tuple[str, ...]]:
    if not isinstance(value, (list, tuple)):
        return None
    out: List[str] = []
    seen = set()
    for raw in value:
        if not isinstance(raw, str):
            continue
        host_id = raw.strip()
        if not host_id or host_id in seen:
            continue
        seen.add(host_id)
        out.append(host_id)
        if len(out) >= FLEET_MAX_SELECTOR_HOST_IDS:
            break
    return tuple(out)


def normalize_fleet_selector(raw: Any) -> FleetSelector:
    """
    Parse a raw selector mapping.

    Keys may be camelCase or snake_case. Unknown keys raise
    :class:`InvalidSelectorError`. Values of the wrong shape (a string where a
    list belongs, an unparseable flag) produce a ``match_none`` selector.

    Args:
        raw: Selector mapping, or None for "no selector"

    Returns:
        FleetSelector
    """
    if raw is None:
        return FleetSelector()
    rec = as_mapping(raw)
    if rec is None:
        logger.warning("Fleet selector is not a mapping; matching no hosts")
        return FleetSelector(match_none=True)

    by_attr = {attr: attr for attr in _SELECTOR_FIELDS.values()}
    by_attr.update(_SELECTOR_FIELDS)
    unknown = sorted(str(key) for key in rec if key not in by_attr)
    if unknown:
        raise InvalidSelectorError(f"Unknown selector field(s): {', '.join(unknown)}")

    values: Dict[str, Any] = {}
    match_none = False
    for key, value in rec.items():
        attr = by_attr[key]
        if value is None:
            continue
        if attr == "host_ids":
            if not isinstance(value, (list, tuple)):
                match_none = True
                continue
            values[attr] = _normalize_host_ids(value)
        elif attr in _TOKEN_FIELDS:
            if not isinstance(value, (list, tuple)):
                match_none = True
                continue
            values[attr] = tuple(
                normalize_token_list(value, FLEET_MAX_SELECTOR_TOKENS, FLEET_TOKEN_MAX_LEN)
            )
        else:
            flag = parse_bool(value)
            if flag is None:
                match_none = True
                continue
            values[attr] = flag

    if match_none:
        logger.warning("Fleet selector has malformed values; matching no hosts")
    return FleetSelector(match_none=match_none, **values)


def has_fleet_selector_filter(selector: FleetSelector) -> bool:
    """True iff the selector narrows the candidate set beyond "all hosts"."""
    if selector.match_none or selector.enabled_only:
        return True
    return any(
        getattr(selector, attr)
        for attr in ("host_ids",) + _TOKEN_FIELDS
    )


def host_matches_fleet_selector(host: FleetHost, selector: FleetSelector) -> bool:
    """Conjunction of every present predicate; paused hosts need ``include_paused``."""
    if selector.match_none:
        return False
    if selector.enabled_only and not host.enabled:
        return False
    if host.rollout_paused and not selector.include_paused:
        return False
    if selector.host_ids and host.id not in selector.host_ids:
        return False
    if selector.groups and (not host.group or host.group not in selector.groups):
        return False
    tags = set(host.tags)
    if selector.tags_all and not all(tag in tags for tag in selector.tags_all):
        return False
    if selector.tags_any and not any(tag in tags for tag in selector.tags_any):
        return False
    scopes = set(host.scopes)
    if selector.scopes_all and not all(scope in scopes for scope in selector.scopes_all):
        return False
    if selector.scopes_any and not any(scope in scopes for scope in selector.scopes_any):
        return False
    return True


def _rollout_sort_key(host: FleetHost):
    if host.last_seen_at is None:
        recency = (1, 0.0)
    else:
        recency = (0, -host.last_seen_at.timestamp())
    return (-host.rollout_priority, recency, host.name, host.id)


def sort_fleet_hosts_for_rollout(hosts: Iterable[FleetHost]) -> List[FleetHost]:
    """
    Order hosts for rollout.

    Highest ``rollout_priority`` first, then most recently seen (never-seen
    hosts last), then name, then id.
    """
    return sorted(hosts, key=_rollout_sort_key)


def group_key(host: FleetHost) -> str:
    return host.group or UNGROUPED_KEY


@dataclass(frozen=True)
class FleetBlastRadiusPolicy:
    """
    Hard operator caps for fleet rollouts.

    Requested caps on a rollout can only tighten these, never loosen them.
    """
    max_hosts: int = DEFAULT_FLEET_MAX_HOSTS
    max_per_group: int = DEFAULT_FLEET_MAX_PER_GROUP
    max_percent_of_enabled_fleet: int = DEFAULT_FLEET_MAX_PERCENT_ENABLED
    default_stage_size: int = DEFAULT_FLEET_STAGE_SIZE
    require_selector: bool = True

    @classmethod
    def from_values(
        cls,
        max_hosts: Any = DEFAULT_FLEET_MAX_HOSTS,
        max_per_group: Any = DEFAULT_FLEET_MAX_PER_GROUP,
        max_percent_of_enabled_fleet: Any = DEFAULT_FLEET_MAX_PERCENT_ENABLED,
        default_stage_size: Any = DEFAULT_FLEET_STAGE_SIZE,
        require_selector: Any = True,
    ) -> 'FleetBlastRadiusPolicy':
        flag = parse_bool(require_selector)
        return cls(
            max_hosts=clamp_int(max_hosts, 1, FLEET_MAX_HOSTS_LIMIT),
            max_per_group=clamp_int(max_per_group, 1, FLEET_MAX_PER_GROUP_LIMIT),
            max_percent_of_enabled_fleet=clamp_int(max_percent_of_enabled_fleet, 1, 100),
            default_stage_size=clamp_int(default_stage_size, 1, FLEET_MAX_STAGE_SIZE),
            require_selector=True if flag is None else flag,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxHosts": self.max_hosts,
            "maxPerGroup": self.max_per_group,
            "maxPercentOfEnabledFleet": self.max_percent_of_enabled_fleet,
            "defaultStageSize": self.default_stage_size,
            "requireSelector": self.require_selector,
        }


@dataclass(frozen=True)
class FleetRejection:
    host_id: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"hostId": self.host_id, "reason": self.reason}


@dataclass
class FleetSafeguardResult:
    """Outcome of applying blast-radius caps to a sorted candidate list."""
    accepted: List[FleetHost] = field(default_factory=list)
    rejected: List[FleetRejection] = field(default_factory=list)
    max_hosts_effective: int = 1
    max_per_group_effective: int = 1
    max_percent_of_enabled_fleet_effective: int = 1
    allowed_by_percent: int = 0

    @property
    def allowed_total(self) -> int:
        return min(self.max_hosts_effective, self.allowed_by_percent)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": [host.id for host in self.accepted],
            "rejected": [item.to_dict() for item in self.rejected],
            "maxHostsEffective": self.max_hosts_effective,
            "maxPerGroupEffective": self.max_per_group_effective,
            "maxPercentOfEnabledFleetEffective": self.max_percent_of_enabled_fleet_effective,
            "allowedByPercent": self.allowed_by_percent,
        }


def _effective_cap(requested: Any, hard_cap: int, upper: int) -> int:
    if requested is None:
        return clamp_int(hard_cap, 1, upper)
    return clamp_int(min(clamp_int(requested, 1, upper), hard_cap), 1, upper)


def apply_fleet_blast_radius_safeguards(
    hosts: Sequence[FleetHost],
    total_enabled_fleet: int,
    max_hosts: Any = None,
    max_per_group: Any = None,
    max_percent_of_enabled_fleet: Any = None,
    policy: Optional[FleetBlastRadiusPolicy] = None,
) -> FleetSafeguardResult:
    """
    Accept the longest admissible prefix of ``hosts`` under every cap.

    Effective caps are ``min(requested, hard cap)``, with ``None`` meaning
    "use the hard cap". Hosts are visited in order; a host is rejected with
    the name of the first cap it would breach: the percent-of-fleet cap,
    the host count cap or the per-group cap.

    Args:
        hosts: Candidates, already sorted for rollout
        total_enabled_fleet: Number of enabled hosts in the whole fleet
        max_hosts: Requested host count cap
        max_per_group: Requested per-group cap
        max_percent_of_enabled_fleet: Requested percent-of-fleet cap
        policy: Hard operator caps (defaults apply when omitted)

    Returns:
        FleetSafeguardResult
    """
    policy = policy or FleetBlastRadiusPolicy()
    max_hosts_effective = _effective_cap(max_hosts, policy.max_hosts, FLEET_MAX_HOSTS_LIMIT)
    max_per_group_effective = _effective_cap(
        max_per_group, policy.max_per_group, FLEET_MAX_PER_GROUP_LIMIT
    )
    percent_effective = _effective_cap(
        max_percent_of_enabled_fleet, policy.max_percent_of_enabled_fleet, 100
    )
    fleet_size = clamp_int(total_enabled_fleet, 0, 10 ** 9)
    allowed_by_percent = (fleet_size * percent_effective) // 100

    result = FleetSafeguardResult(
        max_hosts_effective=max_hosts_effective,
        max_per_group_effective=max_per_group_effective,
        max_percent_of_enabled_fleet_effective=percent_effective,
        allowed_by_percent=allowed_by_percent,
    )
    per_group: Dict[str, int] = {}

    for host in hosts:
        if len(result.accepted) >= allowed_by_percent:
            result.rejected.append(FleetRejection(host.id, REJECT_MAX_PERCENT))
            continue
        if len(result.accepted) >= max_hosts_effective:
            result.rejected.append(FleetRejection(host.id, REJECT_MAX_HOSTS))
            continue
        key = group_key(host)
        if per_group.get(key, 0) >= max_per_group_effective:
            result.rejected.append(FleetRejection(host.id, REJECT_MAX_PER_GROUP))
            continue
        result.accepted.append(host)
        per_group[key] = per_group.get(key, 0) + 1

    logger.debug(
        f"Blast radius: {len(result.accepted)} accepted, {len(result.rejected)} rejected "
        f"(hosts<={max_hosts_effective}, group<={max_per_group_effective}, "
        f"percent<={percent_effective} -> {allowed_by_percent})"
    )
    return result


def _chunk(items: Sequence[FleetHost], size: int) -> List[List[FleetHost]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def build_fleet_rollout_stages(
    hosts: Sequence[FleetHost],
    stage_size: Any,
    strategy: Any = RolloutStrategy.GROUP_CANARY,
) -> List[List[FleetHost]]:
    """
    Partition accepted hosts into ordered stages.

    ``sequential`` chunks the list as given. ``group_canary`` first forms a
    canary wave holding the leading host of every group (groups in sorted
    order), then interleaves the remaining hosts round-robin across groups,
    so no stage is filled by a single group while others still have hosts.
    Every host lands in exactly one stage.
    """
    size = clamp_int(stage_size, 1, FLEET_MAX_STAGE_SIZE)
    if not hosts:
        return []
    try:
        mode = RolloutStrategy(strategy)
    except ValueError:
        mode = RolloutStrategy.GROUP_CANARY

    if mode == RolloutStrategy.SEQUENTIAL:
        return _chunk(hosts, size)

    grouped: Dict[str, List[FleetHost]] = {}
    for host in hosts:
        grouped.setdefault(group_key(host), []).append(host)
    keys = sorted(grouped)

    canary_wave = [grouped[key][0] for key in keys]
    rest_by_group = [grouped[key][1:] for key in keys]
    remaining: List[FleetHost] = []
    depth = max((len(rest) for rest in rest_by_group), default=0)
    for index in range(depth):
        for rest in rest_by_group:
            if index < len(rest):
                remaining.append(rest[index])

    return _chunk(canary_wave, size) + _chunk(remaining, size)


def select_fleet_hosts(hosts: Iterable[FleetHost], selector: FleetSelector) -> List[FleetHost]:
    """Matching hosts in rollout order."""
    return sort_fleet_hosts_for_rollout(
        host for host in hosts if host_matches_fleet_selector(host, selector)
    )


def count_enabled(hosts: Iterable[FleetHost]) -> int:
    return sum(1 for host in hosts if host.enabled)


def stage_host_ids(stages: Sequence[Sequence[FleetHost]]) -> List[List[str]]:
    return [[host.id for host in stage] for stage in stages]

