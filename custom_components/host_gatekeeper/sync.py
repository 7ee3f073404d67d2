from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .const import SCOPE_DISABLED, SCOPE_GLOBAL
from .hosts import is_global_rule_id, normalize_host
from .policy import (
    GlobalPolicy,
    SitePolicy,
    apply_global_decisions,
    apply_site_decisions,
    build_status_index,
    parse_decisions,
    resolve_host_status,
)
from .reconciler import reconcile_global, reconcile_site, remove_site_rules
from .rules import Rule, RuleDelta
from .store import PolicyStore

_LOGGER = logging.getLogger(__name__)


class RuleStore(Protocol):
    async def list_rules(self) -> List[Rule]: ...

    async def update_rules(self, remove_ids: Iterable[int], add_rules: Iterable[Rule]) -> Any: ...


class GatekeeperSync:
    """
    Drives reconciliation: load policy, diff against a fresh rule snapshot,
    apply the delta.

    Every read-diff-apply pass runs under the lock of its scope ("global",
    "disabled_sites" or the site host). Locks are taken one at a time and never
    nested; multi-pass operations release one scope before taking the next.
    """

    def __init__(self, policy_store: PolicyStore, rule_store: RuleStore) -> None:
        self._policy = policy_store
        self._rules = rule_store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._status_index: Optional[Dict[str, str]] = None

    def _lock(self, scope: str) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        return lock

    # --------------------------
    # Caches
    # --------------------------

    def invalidate_caches(self) -> None:
        self._status_index = None

    async def _global_status(self) -> Dict[str, str]:
        if self._status_index is None:
            self._status_index = build_status_index(await self._policy.async_get_global_policy())
        return self._status_index

    # --------------------------
    # Reconciliation passes
    # --------------------------

    async def _apply(self, scope: str, delta: RuleDelta) -> RuleDelta:
        if not delta:
            _LOGGER.debug("%s: rules already in sync", scope)
            return delta
        _LOGGER.info(
            "%s: applying rule delta (remove=%s, add=%s)",
            scope,
            delta.remove_ids,
            [r.id for r in delta.add_rules],
        )
        await self._rules.update_rules(delta.remove_ids, delta.add_rules)
        return delta

    async def _sync_site_locked(self, site: str) -> RuleDelta:
        current = await self._rules.list_rules()
        if site in await self._policy.async_get_disabled_sites():
            return await self._apply(site, remove_site_rules(site, current))
        site_policy = await self._policy.async_get_site_policy(site)
        global_policy = await self._policy.async_get_global_policy()
        return await self._apply(site, reconcile_site(site, site_policy, global_policy, current))

    async def async_sync_site(self, site_host: str) -> RuleDelta:
        site = _require_site(site_host)
        async with self._lock(site):
            return await self._sync_site_locked(site)

    async def async_remove_site_rules(self, site_host: str) -> RuleDelta:
        site = _require_site(site_host)
        async with self._lock(site):
            current = await self._rules.list_rules()
            return await self._apply(site, remove_site_rules(site, current))

    async def async_sync_global(self) -> RuleDelta:
        async with self._lock(SCOPE_GLOBAL):
            global_policy = await self._policy.async_get_global_policy()
            sites = await self._policy.async_get_all_site_policies()
            disabled = await self._policy.async_get_disabled_sites()
            current = await self._rules.list_rules()
            return await self._apply(SCOPE_GLOBAL, reconcile_global(global_policy, sites, disabled, current))

    async def async_initialize(self) -> None:
        """Full resync, used at startup and by the resync service."""
        self.invalidate_caches()
        sites = set(await self._policy.async_get_all_site_policies())
        sites.update(await self._policy.async_get_disabled_sites())
        for site in sorted(sites):
            await self.async_sync_site(site)
        await self.async_sync_global()

    # --------------------------
    # Policy mutations
    # --------------------------

    async def async_save_site_decisions(self, site_host: str, decisions: Iterable[Any]) -> SitePolicy:
        site = _require_site(site_host)
        parsed = parse_decisions(decisions)
        async with self._lock(site):
            current = await self._policy.async_get_site_policy(site)
            updated = apply_site_decisions(site, current, parsed)
            saved = await self._policy.async_save_site_policy(site, updated)
            await self._sync_site_locked(site)
        # allow overrides feed the global exclusion lists
        await self.async_sync_global()
        return saved

    async def async_save_global_decisions(self, decisions: Iterable[Any], replace: bool = False) -> GlobalPolicy:
        parsed = parse_decisions(decisions)
        async with self._lock(SCOPE_GLOBAL):
            current = await self._policy.async_get_global_policy()
            saved = await self._policy.async_save_global_policy(apply_global_decisions(current, parsed, replace))
            self.invalidate_caches()
        await self.async_sync_global()
        # site allow rules exist only for globally blocked hosts
        sites = await self._policy.async_get_all_site_policies()
        for site in sorted(s for s, p in sites.items() if p.allowed_hosts):
            await self.async_sync_site(site)
        return saved

    async def _set_disabled(self, site: str, disabled: bool) -> List[str]:
        async with self._lock(SCOPE_DISABLED):
            current = set(await self._policy.async_get_disabled_sites())
            if disabled:
                current.add(site)
            else:
                current.discard(site)
            return await self._policy.async_save_disabled_sites(current)

    async def async_disable_site(self, site_host: str) -> List[str]:
        site = _require_site(site_host)
        result = await self._set_disabled(site, True)
        await self.async_remove_site_rules(site)
        await self.async_sync_global()
        _LOGGER.info("Disabled enforcement on %s", site)
        return result

    async def async_enable_site(self, site_host: str) -> List[str]:
        site = _require_site(site_host)
        result = await self._set_disabled(site, False)
        await self.async_sync_site(site)
        await self.async_sync_global()
        _LOGGER.info("Enabled enforcement on %s", site)
        return result

    async def async_reset_site(self, site_host: str) -> None:
        site = _require_site(site_host)
        async with self._lock(site):
            await self._policy.async_delete_site_policy(site)
            current = await self._rules.list_rules()
            await self._apply(site, remove_site_rules(site, current))
        await self.async_sync_global()

    # --------------------------
    # Read path
    # --------------------------

    async def async_get_site_state(self, site_host: str, observed_hosts: Iterable[str] = ()) -> Dict[str, Any]:
        site = _require_site(site_host)
        site_policy = await self._policy.async_get_site_policy(site)
        global_status = await self._global_status()
        hosts = {normalize_host(h) for h in observed_hosts} | site_policy.hosts()
        hosts.discard("")
        hosts.discard(site)
        return {
            "site": site,
            "disabled": site in await self._policy.async_get_disabled_sites(),
            "hosts": [
                {"host": h, "status": resolve_host_status(h, site, site_policy, global_status)}
                for h in sorted(hosts)
            ],
        }

    async def async_get_global_config(self) -> Dict[str, Any]:
        policy = await self._policy.async_get_global_policy()
        return {
            **policy.to_dict(),
            "disabled_sites": await self._policy.async_get_disabled_sites(),
        }

    async def async_inspect_rules(self, host: Optional[str] = None) -> Dict[str, Any]:
        rules = await self._rules.list_rules()
        h = normalize_host(host)
        if h:
            rules = [r for r in rules if r.targets(h)]
        site_rules = [r.to_dict() for r in sorted(rules, key=lambda r: r.id) if not is_global_rule_id(r.id)]
        global_rules = [r.to_dict() for r in sorted(rules, key=lambda r: r.id) if is_global_rule_id(r.id)]
        return {
            "total": len(rules),
            "site_rules": site_rules,
            "global_rules": global_rules,
        }


def _require_site(site_host: str) -> str:
    site = normalize_host(site_host)
    if not site:
        raise ValueError("site host is empty")
    return site
