from __future__ import annotations

import json
import logging
from typing import Any, Iterable, List, Optional, Tuple

from aiohttp import BasicAuth, ClientResponseError, ClientSession

from .rules import Rule, RuleDelta

_LOGGER = logging.getLogger(__name__)


def _join(base: str, path: str) -> str:
    if base.endswith('/'):
        base = base[:-1]
    if not path.startswith('/'):
        path = '/' + path
    return base + path


class RuleEngineAPI:
    """Client for the external rule engine: one rule list, one atomic update verb."""

    def __init__(
        self,
        session: ClientSession,
        base_url: str,
        auth: Optional[BasicAuth | Tuple[str, str]] = None,
        verify_ssl: bool = True,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        self._session = session
        self._base = base_url
        if username and password:
            self._auth = BasicAuth(username, password)
        elif isinstance(auth, tuple) and len(auth) == 2:
            self._auth = BasicAuth(auth[0], auth[1])
        elif isinstance(auth, BasicAuth):
            self._auth = auth
        else:
            self._auth = None
        self._ssl = verify_ssl

    async def _req(self, method: str, path: str, json_body: Any = None) -> Any:
        url = _join(self._base, path)
        async with self._session.request(
            method, url, json=json_body, auth=self._auth, ssl=self._ssl, timeout=30
        ) as resp:
            detail = None
            try:
                detail = await resp.text()
            except Exception:
                pass
            if resp.status >= 400:
                raise ClientResponseError(
                    request_info=resp.request_info,
                    history=resp.history,
                    status=resp.status,
                    message=f"{resp.reason}; body={detail!r}",
                    headers=resp.headers,
                )
            ctype = resp.headers.get("content-type", "")
            if "application/json" in ctype:
                return await resp.json()
            # some engines answer JSON as text/plain
            if detail and detail.lstrip()[:1] in ("{", "["):
                try:
                    return json.loads(detail)
                except ValueError:
                    return detail
            return detail

    async def get_version(self) -> Any:
        return await self._req("GET", "/api/status")

    async def list_rules(self) -> List[Rule]:
        data = await self._req("GET", "/api/rules")
        if isinstance(data, dict):
            data = data.get("rules")
        if not isinstance(data, list):
            return []
        rules: List[Rule] = []
        for item in data:
            rule = Rule.from_dict(item) if isinstance(item, dict) else None
            if rule is None:
                _LOGGER.debug("Ignoring unparseable engine rule %r", item)
                continue
            rules.append(rule)
        return rules

    async def update_rules(self, remove_ids: Iterable[int], add_rules: Iterable[Rule]) -> Any:
        """Remove and add in one request; the engine applies it as a unit or not at all."""
        delta = RuleDelta(remove_ids=list(remove_ids), add_rules=list(add_rules))
        return await self._req("POST", "/api/rules/update", delta.to_payload())
