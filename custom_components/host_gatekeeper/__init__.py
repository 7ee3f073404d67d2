from __future__ import annotations

import contextlib
import logging
from typing import Any

import voluptuous as vol
from aiohttp import ClientError
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, ServiceCall, ServiceResponse, SupportsResponse
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers import aiohttp_client
from homeassistant.helpers import config_validation as cv

from .api import RuleEngineAPI
from .const import (
    DOMAIN,
    CONF_BASE_URL,
    CONF_USERNAME,
    CONF_PASSWORD,
    CONF_VERIFY_SSL,
    CONF_DEFAULT_BLOCKED,
    CONF_SYNC_ON_START,
    DEFAULT_GLOBAL_BLOCKED,
    DEFAULT_SYNC_ON_START,
    EVENT_GLOBAL_CONFIG_UPDATED,
    EVENT_SITE_CONFIG_UPDATED,
    EVENT_SITE_TOGGLED,
    SERVICE_SAVE_SITE_DECISIONS,
    SERVICE_SAVE_GLOBAL_DECISIONS,
    SERVICE_DISABLE_SITE,
    SERVICE_ENABLE_SITE,
    SERVICE_RESET_SITE,
    SERVICE_RESYNC,
    SERVICE_GET_SITE_STATE,
    SERVICE_GET_GLOBAL_CONFIG,
    SERVICE_INSPECT_RULES,
)
from .hosts import normalize_host
from .reconciler import RuleIdCollisionError
from .store import PolicyStore, create_store
from .sync import GatekeeperSync

_LOGGER = logging.getLogger(__name__)
PLATFORMS: list[str] = []

SERVICES = (
    SERVICE_SAVE_SITE_DECISIONS,
    SERVICE_SAVE_GLOBAL_DECISIONS,
    SERVICE_DISABLE_SITE,
    SERVICE_ENABLE_SITE,
    SERVICE_RESET_SITE,
    SERVICE_RESYNC,
    SERVICE_GET_SITE_STATE,
    SERVICE_GET_GLOBAL_CONFIG,
    SERVICE_INSPECT_RULES,
)

# Decisions stay loosely typed: bad entries are dropped later, not rejected here.
SITE_SCHEMA = vol.Schema({vol.Required("site"): cv.string})
SAVE_SITE_DECISIONS_SCHEMA = vol.Schema({
    vol.Required("site"): cv.string,
    vol.Required("decisions"): vol.All(cv.ensure_list, [dict]),
})
SAVE_GLOBAL_DECISIONS_SCHEMA = vol.Schema({
    vol.Required("decisions"): vol.All(cv.ensure_list, [dict]),
    vol.Optional("replace", default=False): cv.boolean,
})
GET_SITE_STATE_SCHEMA = vol.Schema({
    vol.Required("site"): cv.string,
    vol.Optional("hosts", default=[]): vol.All(cv.ensure_list, [cv.string]),
})
INSPECT_RULES_SCHEMA = vol.Schema({vol.Optional("host"): cv.string})


def _parse_hosts(raw: str | None) -> list[str]:
    if not raw:
        return list(DEFAULT_GLOBAL_BLOCKED)
    parts = [p.strip().lower() for p in raw.split(",")]
    return [p for p in parts if p]


async def async_setup(hass: HomeAssistant, config) -> bool:
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    hass.data.setdefault(DOMAIN, {})

    opts = {**entry.data, **(entry.options or {})}
    session = aiohttp_client.async_get_clientsession(hass)
    base_url = entry.data[CONF_BASE_URL]
    username = (entry.data.get(CONF_USERNAME) or "").strip()
    password = (entry.data.get(CONF_PASSWORD) or "").strip()
    verify_ssl = entry.data.get(CONF_VERIFY_SSL, True)
    default_blocked = _parse_hosts(opts.get(CONF_DEFAULT_BLOCKED))
    sync_on_start = bool(opts.get(CONF_SYNC_ON_START, DEFAULT_SYNC_ON_START))

    api = RuleEngineAPI(
        session,
        base_url,
        username=username or None,
        password=password or None,
        verify_ssl=verify_ssl,
    )
    policy = PolicyStore(create_store(hass, entry.entry_id), default_blocked=default_blocked)
    await policy.async_load()
    sync = GatekeeperSync(policy, api)

    reachable = True
    try:
        await api.get_version()
        _LOGGER.info("Connected to rule engine at %s", base_url)
    except Exception as e:
        reachable = False
        _LOGGER.warning("Cannot reach %s yet: %s (services still registered)", base_url, e)

    hass.data[DOMAIN][entry.entry_id] = {
        "api": api,
        "policy": policy,
        "sync": sync,
    }

    def _sync() -> GatekeeperSync:
        return hass.data[DOMAIN][entry.entry_id]["sync"]

    async def _guarded(what: str, coro) -> Any:
        """Run one orchestrator call; failures surface as a generic HomeAssistantError."""
        try:
            return await coro
        except RuleIdCollisionError as e:
            _LOGGER.error("%s: rule id collision, batch not applied: %s", what, e)
            raise HomeAssistantError(f"Failed to sync {what}: {e}") from e
        except (ClientError, OSError) as e:
            _LOGGER.error("%s: rule engine or storage failure: %s", what, e)
            raise HomeAssistantError(f"Failed to sync {what}") from e
        except ValueError as e:
            raise HomeAssistantError(f"Failed to save {what}: {e}") from e

    # --------------------------
    # Services
    # --------------------------

    async def _service_save_site_decisions(call: ServiceCall) -> None:
        site = call.data["site"]
        saved = await _guarded(site, _sync().async_save_site_decisions(site, call.data["decisions"]))
        hass.bus.async_fire(EVENT_SITE_CONFIG_UPDATED, {"site": normalize_host(site), "config": saved.to_dict()})

    async def _service_save_global_decisions(call: ServiceCall) -> None:
        saved = await _guarded(
            "global configuration",
            _sync().async_save_global_decisions(call.data["decisions"], replace=call.data["replace"]),
        )
        hass.bus.async_fire(EVENT_GLOBAL_CONFIG_UPDATED, {"config": saved.to_dict()})

    async def _service_disable_site(call: ServiceCall) -> None:
        site = call.data["site"]
        await _guarded(site, _sync().async_disable_site(site))
        hass.bus.async_fire(EVENT_SITE_TOGGLED, {"site": normalize_host(site), "disabled": True})

    async def _service_enable_site(call: ServiceCall) -> None:
        site = call.data["site"]
        await _guarded(site, _sync().async_enable_site(site))
        hass.bus.async_fire(EVENT_SITE_TOGGLED, {"site": normalize_host(site), "disabled": False})

    async def _service_reset_site(call: ServiceCall) -> None:
        site = call.data["site"]
        await _guarded(site, _sync().async_reset_site(site))
        hass.bus.async_fire(EVENT_SITE_CONFIG_UPDATED, {"site": normalize_host(site), "config": None})

    async def _service_resync(call: ServiceCall) -> None:
        await _guarded("all rules", _sync().async_initialize())

    async def _service_get_site_state(call: ServiceCall) -> ServiceResponse:
        return await _guarded(call.data["site"], _sync().async_get_site_state(call.data["site"], call.data["hosts"]))

    async def _service_get_global_config(call: ServiceCall) -> ServiceResponse:
        return await _sync().async_get_global_config()

    async def _service_inspect_rules(call: ServiceCall) -> ServiceResponse:
        return await _guarded("rule inspection", _sync().async_inspect_rules(call.data.get("host")))

    hass.services.async_register(
        DOMAIN, SERVICE_SAVE_SITE_DECISIONS, _service_save_site_decisions, schema=SAVE_SITE_DECISIONS_SCHEMA
    )
    hass.services.async_register(
        DOMAIN, SERVICE_SAVE_GLOBAL_DECISIONS, _service_save_global_decisions, schema=SAVE_GLOBAL_DECISIONS_SCHEMA
    )
    hass.services.async_register(DOMAIN, SERVICE_DISABLE_SITE, _service_disable_site, schema=SITE_SCHEMA)
    hass.services.async_register(DOMAIN, SERVICE_ENABLE_SITE, _service_enable_site, schema=SITE_SCHEMA)
    hass.services.async_register(DOMAIN, SERVICE_RESET_SITE, _service_reset_site, schema=SITE_SCHEMA)
    hass.services.async_register(DOMAIN, SERVICE_RESYNC, _service_resync)
    hass.services.async_register(
        DOMAIN, SERVICE_GET_SITE_STATE, _service_get_site_state,
        schema=GET_SITE_STATE_SCHEMA, supports_response=SupportsResponse.ONLY,
    )
    hass.services.async_register(
        DOMAIN, SERVICE_GET_GLOBAL_CONFIG, _service_get_global_config, supports_response=SupportsResponse.ONLY
    )
    hass.services.async_register(
        DOMAIN, SERVICE_INSPECT_RULES, _service_inspect_rules,
        schema=INSPECT_RULES_SCHEMA, supports_response=SupportsResponse.ONLY,
    )

    if sync_on_start and reachable:
        try:
            await sync.async_initialize()
        except Exception as e:
            _LOGGER.error("Startup rule sync failed: %s", e)

    entry.async_on_unload(entry.add_update_listener(_async_update_listener))
    return True


async def _async_update_listener(hass: HomeAssistant, entry: ConfigEntry) -> None:
    await hass.config_entries.async_reload(entry.entry_id)


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    for name in SERVICES:
        with contextlib.suppress(Exception):
            hass.services.async_remove(DOMAIN, name)
    hass.data[DOMAIN].pop(entry.entry_id, None)
    return True
