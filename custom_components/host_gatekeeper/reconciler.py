"""Rule reconciliation.

Pure functions from (desired policy, current engine rules) to the RuleDelta
that makes the engine match the policy. Nothing in here does I/O.

Site rules are recognised by their initiator domain, global rules by their id
range. Site rules use priority 2 so a site decision beats a priority 1 global
block on the same request.
"""
from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Mapping

from .const import GLOBAL_RULE_OFFSET, SCOPE_GLOBAL, SCOPE_SITE
from .hosts import ensure_site_rule_id, host_rule_id, normalize_host
from .policy import GlobalPolicy, SitePolicy
from .rules import (
    Rule,
    RuleDelta,
    build_global_block_rule,
    build_site_allow_rule,
    build_site_block_rule,
)


class RuleIdCollisionError(ValueError):
    """Two logical rules resolved to the same engine rule id."""

    def __init__(self, scope: str, rule_id: int, owners: List[str]) -> None:
        self.scope = scope
        self.rule_id = rule_id
        self.owners = owners
        super().__init__(f"{scope} rule id {rule_id} is shared by {', '.join(owners)}")


def _owner(rule: Rule) -> str:
    init = ",".join(rule.initiator_domains) or "*"
    req = ",".join(rule.request_domains)
    return f"{init}->{req}"


def assert_unique_ids(rules: Iterable[Rule], scope: str) -> None:
    rules = list(rules)
    counts = Counter(r.id for r in rules)
    for rule_id, n in counts.items():
        if n > 1:
            owners = sorted(_owner(r) for r in rules if r.id == rule_id)
            raise RuleIdCollisionError(scope, rule_id, owners)


# --------------------------
# Site scope
# --------------------------

def select_site_rules(site_host: str, current_rules: Iterable[Rule]) -> List[Rule]:
    site = normalize_host(site_host)
    return [r for r in current_rules if site in r.initiator_domains]


def desired_site_rules(site_host: str, site_policy: SitePolicy, global_policy: GlobalPolicy) -> List[Rule]:
    site = normalize_host(site_host)
    out: List[Rule] = []
    for host in sorted(site_policy.blocked_hosts):
        out.append(build_site_block_rule(site, host, site_policy.blocked_hosts[host]))
    # Allowed hosts only need a rule when something global would block them.
    for host in sorted(site_policy.allowed_hosts):
        if host in global_policy.blocked:
            out.append(build_site_allow_rule(site, host, ensure_site_rule_id(site, host)))
    return out


def reconcile_site(
    site_host: str,
    site_policy: SitePolicy,
    global_policy: GlobalPolicy,
    current_rules: Iterable[Rule],
) -> RuleDelta:
    site = normalize_host(site_host)
    if not site:
        raise ValueError("site host is empty")
    current_rules = list(current_rules)
    existing = {r.id: r for r in select_site_rules(site, current_rules)}
    desired = desired_site_rules(site, site_policy, global_policy)

    assert_unique_ids(desired, SCOPE_SITE)
    foreign = {r.id: r for r in current_rules if r.id not in existing}
    for rule in desired:
        other = foreign.get(rule.id)
        if other is not None:
            raise RuleIdCollisionError(SCOPE_SITE, rule.id, sorted([_owner(rule), _owner(other)]))

    delta = RuleDelta()
    desired_ids = {r.id for r in desired}
    for rule in desired:
        have = existing.get(rule.id)
        if have == rule:
            continue
        if have is not None:
            delta.remove_ids.append(rule.id)
        delta.add_rules.append(rule)
    delta.remove_ids.extend(rid for rid in existing if rid not in desired_ids)
    delta.remove_ids.sort()
    return delta


def remove_site_rules(site_host: str, current_rules: Iterable[Rule]) -> RuleDelta:
    ids = sorted(r.id for r in select_site_rules(site_host, current_rules))
    return RuleDelta(remove_ids=ids)


# --------------------------
# Global scope
# --------------------------

def select_global_rules(current_rules: Iterable[Rule], offset: int = GLOBAL_RULE_OFFSET) -> List[Rule]:
    return [r for r in current_rules if r.id >= offset]


def allow_override_index(site_policies: Mapping[str, SitePolicy]) -> Dict[str, set[str]]:
    """host -> sites that allow it explicitly."""
    index: Dict[str, set[str]] = {}
    for site_host, policy in site_policies.items():
        site = normalize_host(site_host)
        if not site:
            continue
        for host in policy.allowed_hosts:
            index.setdefault(host, set()).add(site)
    return index


def desired_global_rules(
    global_policy: GlobalPolicy,
    site_policies: Mapping[str, SitePolicy],
    disabled_sites: Iterable[str],
) -> List[Rule]:
    overrides = allow_override_index(site_policies)
    disabled = {normalize_host(s) for s in disabled_sites}
    disabled.discard("")
    out: List[Rule] = []
    for host in sorted(global_policy.blocked):
        exclusions = sorted(overrides.get(host, set()) | disabled)
        out.append(build_global_block_rule(host, host_rule_id(SCOPE_GLOBAL, host), exclusions))
    return out


def _same_global_content(have: Rule, want: Rule) -> bool:
    request = [normalize_host(d) for d in have.request_domains]
    return (
        request == list(want.request_domains)
        and set(have.excluded_initiator_domains) == set(want.excluded_initiator_domains)
    )


def reconcile_global(
    global_policy: GlobalPolicy,
    site_policies: Mapping[str, SitePolicy],
    disabled_sites: Iterable[str],
    current_rules: Iterable[Rule],
) -> RuleDelta:
    existing = {r.id: r for r in select_global_rules(current_rules)}
    desired = desired_global_rules(global_policy, site_policies, disabled_sites)
    assert_unique_ids(desired, SCOPE_GLOBAL)

    delta = RuleDelta()
    desired_ids = {r.id for r in desired}
    for rule in desired:
        have = existing.get(rule.id)
        if have is not None:
            if _same_global_content(have, rule):
                continue
            delta.remove_ids.append(rule.id)
        delta.add_rules.append(rule)
    delta.remove_ids.extend(rid for rid in existing if rid not in desired_ids)
    delta.remove_ids.sort()
    return delta
