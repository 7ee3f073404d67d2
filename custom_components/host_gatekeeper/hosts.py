from __future__ import annotations

import re
from typing import Any

from .const import GLOBAL_RULE_OFFSET, RULE_ID_SPACE, SCOPE_GLOBAL, SCOPE_SITE

HOST_RE = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+$")

_FNV_OFFSET_BASIS = 2166136261
_FNV_PRIME = 16777619

_SCOPE_OFFSETS = {
    SCOPE_SITE: 0,
    SCOPE_GLOBAL: GLOBAL_RULE_OFFSET,
}


def normalize_host(host: Any) -> str:
    """Trim + lower-case. Anything that is not a non-empty string becomes ""."""
    if not host or not isinstance(host, str):
        return ""
    return host.strip().lower()


def is_valid_host(host: Any) -> bool:
    h = normalize_host(host)
    return bool(h) and HOST_RE.match(h) is not None


def is_same_site(host: str, site_host: str) -> bool:
    h = normalize_host(host)
    s = normalize_host(site_host)
    if not h or not s:
        return False
    return h == s or h.endswith("." + s)


def _fnv1a_32(key: str) -> int:
    """
    32-bit FNV-1a over the UTF-16 code units of ``key``.
    Ids must stay stable for rules already installed in the engine.
    """
    h = _FNV_OFFSET_BASIS
    raw = key.encode("utf-16-le")
    for i in range(0, len(raw), 2):
        h ^= raw[i] | (raw[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def _rule_key(scope: str, host: str, site_host: str | None) -> str:
    if scope == SCOPE_GLOBAL:
        return f"global::{host}"
    if not site_host:
        raise ValueError("site scoped rule ids need a site host")
    return f"{site_host}->{host}"


def host_rule_id(scope: str, host: str, site_host: str | None = None) -> int:
    if scope not in _SCOPE_OFFSETS:
        raise ValueError(f"unknown rule scope {scope!r}")
    h = normalize_host(host)
    if not h:
        raise ValueError("cannot derive a rule id for an empty host")
    key = _rule_key(scope, h, normalize_host(site_host) or None)
    return _SCOPE_OFFSETS[scope] + _fnv1a_32(key) % RULE_ID_SPACE + 1


def ensure_site_rule_id(site_host: str, host: str, existing_id: Any = None) -> int:
    # bool is an int subclass; a stored True must not pass as rule id 1
    if isinstance(existing_id, int) and not isinstance(existing_id, bool):
        return existing_id
    return host_rule_id(SCOPE_SITE, host, site_host)


def is_site_rule_id(rule_id: int) -> bool:
    return 1 <= rule_id <= RULE_ID_SPACE


def is_global_rule_id(rule_id: int) -> bool:
    return rule_id >= GLOBAL_RULE_OFFSET
