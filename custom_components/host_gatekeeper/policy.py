from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from .const import STATUS_ALLOWED, STATUS_BLOCKED, STATUS_PENDING, STATUSES
from .hosts import ensure_site_rule_id, is_same_site, is_valid_host, normalize_host

_LOGGER = logging.getLogger(__name__)


def _host_set(values: Any) -> set[str]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        return set()
    out = {normalize_host(v) for v in values}
    out.discard("")
    return out


@dataclass
class GlobalPolicy:
    """Integration-wide default classification of hosts."""

    allowed: set[str] = field(default_factory=set)
    blocked: set[str] = field(default_factory=set)
    pending: set[str] = field(default_factory=set)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "GlobalPolicy":
        data = data or {}
        return cls(
            allowed=_host_set(data.get("allowed_hosts")),
            blocked=_host_set(data.get("blocked_hosts")),
            pending=_host_set(data.get("pending_hosts")),
        ).cleaned()

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "allowed_hosts": sorted(self.allowed),
            "blocked_hosts": sorted(self.blocked),
            "pending_hosts": sorted(self.pending),
        }

    def cleaned(self) -> "GlobalPolicy":
        """
        Normalise and make the three sets disjoint.
        On conflict: blocked > allowed > pending.
        """
        blocked = _host_set(self.blocked)
        allowed = _host_set(self.allowed) - blocked
        pending = _host_set(self.pending) - blocked - allowed
        return GlobalPolicy(allowed=allowed, blocked=blocked, pending=pending)

    def status_of(self, host: str) -> str | None:
        h = normalize_host(host)
        if h in self.blocked:
            return STATUS_BLOCKED
        if h in self.allowed:
            return STATUS_ALLOWED
        if h in self.pending:
            return STATUS_PENDING
        return None


@dataclass
class SitePolicy:
    allowed_hosts: set[str] = field(default_factory=set)
    blocked_hosts: Dict[str, int] = field(default_factory=dict)
    pending_hosts: set[str] = field(default_factory=set)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "SitePolicy":
        data = data or {}
        raw_blocked = data.get("blocked_hosts")
        return cls(
            allowed_hosts=_host_set(data.get("allowed_hosts")),
            blocked_hosts=dict(raw_blocked) if isinstance(raw_blocked, Mapping) else {},
            pending_hosts=_host_set(data.get("pending_hosts")),
        ).cleaned()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed_hosts": sorted(self.allowed_hosts),
            "blocked_hosts": {h: self.blocked_hosts[h] for h in sorted(self.blocked_hosts)},
            "pending_hosts": sorted(self.pending_hosts),
        }

    def cleaned(self) -> "SitePolicy":
        blocked: Dict[str, int] = {}
        for host, rule_id in self.blocked_hosts.items():
            h = normalize_host(host)
            if not h or not isinstance(rule_id, int) or isinstance(rule_id, bool):
                continue
            blocked[h] = rule_id
        allowed = _host_set(self.allowed_hosts) - blocked.keys()
        pending = _host_set(self.pending_hosts) - blocked.keys() - allowed
        return SitePolicy(allowed_hosts=allowed, blocked_hosts=blocked, pending_hosts=pending)

    @property
    def is_empty(self) -> bool:
        return not (self.allowed_hosts or self.blocked_hosts or self.pending_hosts)

    def hosts(self) -> set[str]:
        return set(self.allowed_hosts) | set(self.blocked_hosts) | set(self.pending_hosts)


def parse_decisions(raw: Iterable[Any] | None) -> List[Tuple[str, str]]:
    """
    Collect (host, status) pairs from user input.
    Entries without a host or with an unknown status are dropped.
    A later decision for the same host replaces an earlier one.
    """
    out: Dict[str, str] = {}
    for item in raw or []:
        if not isinstance(item, Mapping):
            _LOGGER.debug("Dropping malformed decision %r", item)
            continue
        host = normalize_host(item.get("host"))
        status = str(item.get("status") or "").strip().lower()
        if not host or status not in STATUSES:
            _LOGGER.debug("Dropping decision host=%r status=%r", item.get("host"), item.get("status"))
            continue
        out.pop(host, None)
        out[host] = status
    return list(out.items())


def apply_site_decisions(
    site_host: str, policy: SitePolicy, decisions: Iterable[Tuple[str, str]]
) -> SitePolicy:
    site = normalize_host(site_host)
    allowed = set(policy.allowed_hosts)
    blocked = dict(policy.blocked_hosts)
    pending = set(policy.pending_hosts)

    for host, status in decisions:
        if status == STATUS_BLOCKED:
            blocked[host] = ensure_site_rule_id(site, host, blocked.get(host))
            allowed.discard(host)
            pending.discard(host)
        elif status == STATUS_ALLOWED:
            allowed.add(host)
            blocked.pop(host, None)
            pending.discard(host)
        else:
            allowed.discard(host)
            blocked.pop(host, None)
            pending.add(host)

    return SitePolicy(allowed_hosts=allowed, blocked_hosts=blocked, pending_hosts=pending).cleaned()


def apply_global_decisions(
    policy: GlobalPolicy, decisions: Iterable[Tuple[str, str]], replace: bool = False
) -> GlobalPolicy:
    """
    Move every decided host into the matching set.
    With ``replace`` the decisions are the whole configuration: hosts they
    do not mention are dropped.
    """
    if replace:
        sets = {STATUS_ALLOWED: set(), STATUS_BLOCKED: set(), STATUS_PENDING: set()}
    else:
        sets = {
            STATUS_ALLOWED: set(policy.allowed),
            STATUS_BLOCKED: set(policy.blocked),
            STATUS_PENDING: set(policy.pending),
        }

    for host, status in decisions:
        if not is_valid_host(host):
            _LOGGER.debug("Dropping invalid global host %r", host)
            continue
        for s in sets.values():
            s.discard(host)
        sets[status].add(host)

    return GlobalPolicy(
        allowed=sets[STATUS_ALLOWED],
        blocked=sets[STATUS_BLOCKED],
        pending=sets[STATUS_PENDING],
    ).cleaned()


def build_status_index(policy: GlobalPolicy) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for host in policy.pending:
        index[host] = STATUS_PENDING
    for host in policy.allowed:
        index[host] = STATUS_ALLOWED
    for host in policy.blocked:
        index[host] = STATUS_BLOCKED
    return index


def resolve_host_status(
    host: str, site_host: str, site_policy: SitePolicy, global_status: Mapping[str, str]
) -> str:
    """
    Effective status of ``host`` when requested from ``site_host``.

    Order: site block, site allow, same-site host, global classification.
    Site-level pending entries are not consulted; they only record that an
    earlier override was cleared.
    """
    h = normalize_host(host)
    if h in site_policy.blocked_hosts:
        return STATUS_BLOCKED
    if h in site_policy.allowed_hosts:
        return STATUS_ALLOWED
    if is_same_site(h, site_host):
        return STATUS_ALLOWED
    status = global_status.get(h)
    if status in (STATUS_BLOCKED, STATUS_ALLOWED):
        return status
    return STATUS_PENDING
