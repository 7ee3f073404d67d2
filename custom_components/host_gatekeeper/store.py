from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, Iterable, List

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from .const import DEFAULT_GLOBAL_BLOCKED, STORAGE_KEY_FMT, STORAGE_VERSION
from .hosts import normalize_host
from .policy import GlobalPolicy, SitePolicy

_LOGGER = logging.getLogger(__name__)

KEY_GLOBAL = "global"
KEY_SITES = "sites"
KEY_DISABLED = "disabled_sites"


def create_store(hass: HomeAssistant, entry_id: str) -> Store:
    return Store(hass, STORAGE_VERSION, STORAGE_KEY_FMT.format(entry_id=entry_id))


class PolicyStore:
    """
    Durable policy state: global policy, per-site policies, disabled sites.

    Wraps a Home Assistant ``Store`` (anything with async_load/async_save).
    The document is loaded once and kept in memory; every save mutates the
    in-memory copy before awaiting the write, so read-modify-write of one key
    never interleaves with another coroutine. Getters hand out copies.
    """

    def __init__(self, store: Store, default_blocked: Iterable[str] | None = None) -> None:
        self._store = store
        self._default_blocked = [h for h in (normalize_host(x) for x in (default_blocked or DEFAULT_GLOBAL_BLOCKED)) if h]
        self._data: Dict[str, Any] | None = None
        self._load_lock = asyncio.Lock()

    async def async_load(self) -> None:
        raw = await self._store.async_load()
        data = raw if isinstance(raw, dict) else {}
        sites = data.get(KEY_SITES)
        disabled = data.get(KEY_DISABLED)
        self._data = {
            KEY_GLOBAL: data.get(KEY_GLOBAL),
            KEY_SITES: dict(sites) if isinstance(sites, dict) else {},
            KEY_DISABLED: list(disabled) if isinstance(disabled, list) else [],
        }
        _LOGGER.debug(
            "Loaded policy: %d site(s), %d disabled", len(self._data[KEY_SITES]), len(self._data[KEY_DISABLED])
        )

    async def _doc(self) -> Dict[str, Any]:
        if self._data is None:
            async with self._load_lock:
                if self._data is None:
                    await self.async_load()
        return self._data

    async def _save(self) -> None:
        await self._store.async_save(copy.deepcopy(self._data))

    # Global policy

    async def async_get_global_policy(self) -> GlobalPolicy:
        doc = await self._doc()
        if doc[KEY_GLOBAL] is None:
            _LOGGER.info("No global policy yet; seeding defaults (blocked=%s)", self._default_blocked)
            return await self.async_save_global_policy(GlobalPolicy(blocked=set(self._default_blocked)))
        return GlobalPolicy.from_dict(doc[KEY_GLOBAL])

    async def async_save_global_policy(self, policy: GlobalPolicy) -> GlobalPolicy:
        doc = await self._doc()
        cleaned = policy.cleaned()
        doc[KEY_GLOBAL] = cleaned.to_dict()
        await self._save()
        return cleaned

    # Site policies

    async def async_get_site_policy(self, site_host: str) -> SitePolicy:
        doc = await self._doc()
        return SitePolicy.from_dict(doc[KEY_SITES].get(normalize_host(site_host)))

    async def async_get_all_site_policies(self) -> Dict[str, SitePolicy]:
        doc = await self._doc()
        return {site: SitePolicy.from_dict(cfg) for site, cfg in doc[KEY_SITES].items()}

    async def async_save_site_policy(self, site_host: str, policy: SitePolicy) -> SitePolicy:
        """Store the cleaned policy; an empty policy deletes the site's record."""
        site = normalize_host(site_host)
        if not site:
            raise ValueError("site host is empty")
        doc = await self._doc()
        cleaned = policy.cleaned()
        if cleaned.is_empty:
            doc[KEY_SITES].pop(site, None)
        else:
            doc[KEY_SITES][site] = cleaned.to_dict()
        await self._save()
        return cleaned

    async def async_delete_site_policy(self, site_host: str) -> bool:
        doc = await self._doc()
        if doc[KEY_SITES].pop(normalize_host(site_host), None) is None:
            return False
        await self._save()
        return True

    # Disabled sites

    async def async_get_disabled_sites(self) -> List[str]:
        doc = await self._doc()
        return sorted(set(doc[KEY_DISABLED]))

    async def async_save_disabled_sites(self, sites: Iterable[str]) -> List[str]:
        doc = await self._doc()
        normalized = sorted({h for h in (normalize_host(s) for s in sites) if h})
        doc[KEY_DISABLED] = normalized
        await self._save()
        return list(normalized)
