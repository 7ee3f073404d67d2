from __future__ import annotations

import logging
from urllib.parse import urlparse, urlunparse
import voluptuous as vol

from homeassistant import config_entries
from homeassistant.core import callback
from homeassistant.helpers.aiohttp_client import async_get_clientsession

from .const import (
    DOMAIN,
    CONF_BASE_URL, CONF_USERNAME, CONF_PASSWORD, CONF_VERIFY_SSL,
    CONF_DEFAULT_BLOCKED, CONF_SYNC_ON_START,
    DEFAULT_GLOBAL_BLOCKED, DEFAULT_PORT, DEFAULT_SYNC_ON_START,
)
from .api import RuleEngineAPI
from .hosts import is_valid_host

_LOGGER = logging.getLogger(__name__)

_DEFAULT_BLOCKED_TEXT = ",".join(DEFAULT_GLOBAL_BLOCKED)


def _normalise_base(s: str) -> str:
    s = (s or "").strip().rstrip("/")
    if not s:
        return s
    if not s.startswith(("http://", "https://")):
        s = "http://" + s  # default to http if user omitted scheme
    return s


def _ensure_port(base: str, default_port: int = DEFAULT_PORT) -> str:
    """If user omitted a port, append the engine's default one."""
    try:
        p = urlparse(base)
        if p.port is not None:
            return base
        netloc = p.hostname if p.hostname else p.netloc
        if not netloc:
            return base
        netloc = f"{netloc}:{default_port}"
        return urlunparse((p.scheme, netloc, p.path or "", p.params, p.query, p.fragment))
    except ValueError:
        return base


def _hosts_ok(raw: str) -> bool:
    parts = [p.strip() for p in (raw or "").split(",") if p.strip()]
    return all(is_valid_host(p) for p in parts)


USER_SCHEMA = vol.Schema({
    vol.Required(CONF_BASE_URL): str,   # e.g. http://10.2.0.3:8080  (port optional)
    vol.Optional(CONF_USERNAME, default=""): str,
    vol.Optional(CONF_PASSWORD, default=""): str,
    vol.Optional(CONF_VERIFY_SSL, default=False): bool,
    vol.Optional(CONF_DEFAULT_BLOCKED, default=_DEFAULT_BLOCKED_TEXT): str,
    vol.Optional(CONF_SYNC_ON_START, default=DEFAULT_SYNC_ON_START): bool,
})


class ConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    VERSION = 1

    async def async_step_user(self, user_input=None):
        errors = {}
        if user_input is not None:
            base = _ensure_port(_normalise_base(user_input.get(CONF_BASE_URL, "")))
            user = (user_input.get(CONF_USERNAME) or "").strip()
            pwd = (user_input.get(CONF_PASSWORD) or "").strip()
            verify = bool(user_input.get(CONF_VERIFY_SSL, False))
            blocked = user_input.get(CONF_DEFAULT_BLOCKED, _DEFAULT_BLOCKED_TEXT)

            if not base:
                errors["base"] = "invalid_url"
            elif not _hosts_ok(blocked):
                errors[CONF_DEFAULT_BLOCKED] = "invalid_host"
            if errors:
                return self.async_show_form(step_id="user", data_schema=USER_SCHEMA, errors=errors)

            _LOGGER.info("Config flow: connectivity test to %s (verify_ssl=%s)", base, verify)
            try:
                session = async_get_clientsession(self.hass)
                api = RuleEngineAPI(session, base, username=user or None, password=pwd or None, verify_ssl=verify)
                await api.get_version()
            except Exception as e:
                _LOGGER.exception("Connectivity test failed during config flow to %s", base)
                msg = str(e).lower()
                if any(tok in msg for tok in ("401", "unauthorized", "forbidden")):
                    errors["base"] = "invalid_auth"
                else:
                    errors["base"] = "cannot_connect"
                return self.async_show_form(step_id="user", data_schema=USER_SCHEMA, errors=errors)

            # Use netloc as unique id to prevent dupes
            netloc = urlparse(base).netloc or base
            await self.async_set_unique_id(netloc)
            self._abort_if_unique_id_configured()

            data = {
                CONF_BASE_URL: base,
                CONF_USERNAME: user,
                CONF_PASSWORD: pwd,
                CONF_VERIFY_SSL: verify,
                CONF_DEFAULT_BLOCKED: blocked.strip().lower(),
                CONF_SYNC_ON_START: bool(user_input.get(CONF_SYNC_ON_START, DEFAULT_SYNC_ON_START)),
            }
            return self.async_create_entry(title="Host Gatekeeper", data=data)

        return self.async_show_form(step_id="user", data_schema=USER_SCHEMA, errors=errors)

    @staticmethod
    @callback
    def async_get_options_flow(config_entry):
        return OptionsFlow(config_entry)


class OptionsFlow(config_entries.OptionsFlow):
    def __init__(self, entry):
        self.entry = entry

    async def async_step_init(self, user_input=None):
        errors = {}
        if user_input is not None:
            if _hosts_ok(user_input.get(CONF_DEFAULT_BLOCKED, "")):
                return self.async_create_entry(title="", data=user_input)
            errors[CONF_DEFAULT_BLOCKED] = "invalid_host"

        data = {**self.entry.data, **(self.entry.options or {})}
        schema = vol.Schema({
            vol.Optional(CONF_DEFAULT_BLOCKED, default=data.get(CONF_DEFAULT_BLOCKED, _DEFAULT_BLOCKED_TEXT)): str,
            vol.Optional(CONF_SYNC_ON_START, default=data.get(CONF_SYNC_ON_START, DEFAULT_SYNC_ON_START)): bool,
        })
        return self.async_show_form(step_id="init", data_schema=schema, errors=errors)
