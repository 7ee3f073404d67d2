from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from .const import (
    ACTION_ALLOW,
    ACTION_BLOCK,
    GLOBAL_RULE_PRIORITY,
    SITE_RULE_PRIORITY,
)
from .hosts import normalize_host


def _domains(values: Any) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    return tuple(str(v) for v in values if isinstance(v, str))


@dataclass(frozen=True)
class Rule:
    """One filtering rule as the rule engine stores it."""

    id: int
    priority: int
    action: str
    request_domains: Tuple[str, ...]
    initiator_domains: Tuple[str, ...] = ()
    excluded_initiator_domains: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Rule | None":
        """Parse the engine's JSON shape. Returns None for entries without an integer id."""
        rule_id = data.get("id")
        if not isinstance(rule_id, int) or isinstance(rule_id, bool):
            return None
        action = data.get("action")
        action_type = action.get("type") if isinstance(action, Mapping) else action
        cond = data.get("condition")
        if not isinstance(cond, Mapping):
            cond = {}
        return cls(
            id=rule_id,
            priority=int(data.get("priority") or 1),
            action=str(action_type or ""),
            request_domains=_domains(cond.get("requestDomains")),
            initiator_domains=_domains(cond.get("initiatorDomains")),
            excluded_initiator_domains=_domains(cond.get("excludedInitiatorDomains")),
        )

    def to_dict(self) -> Dict[str, Any]:
        condition: Dict[str, Any] = {}
        if self.initiator_domains:
            condition["initiatorDomains"] = list(self.initiator_domains)
        condition["requestDomains"] = list(self.request_domains)
        if self.excluded_initiator_domains:
            condition["excludedInitiatorDomains"] = list(self.excluded_initiator_domains)
        return {
            "id": self.id,
            "priority": self.priority,
            "action": {"type": self.action},
            "condition": condition,
        }

    def targets(self, host: str) -> bool:
        """True if a request to ``host`` falls under this rule's request domains."""
        h = normalize_host(host)
        for d in self.request_domains:
            d = normalize_host(d)
            if d and (h == d or h.endswith("." + d)):
                return True
        return False


@dataclass
class RuleDelta:
    remove_ids: List[int] = field(default_factory=list)
    add_rules: List[Rule] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.remove_ids or self.add_rules)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "removeRuleIds": list(self.remove_ids),
            "addRules": [r.to_dict() for r in self.add_rules],
        }


def build_site_block_rule(site_host: str, host: str, rule_id: int) -> Rule:
    return Rule(
        id=rule_id,
        priority=SITE_RULE_PRIORITY,
        action=ACTION_BLOCK,
        initiator_domains=(site_host,),
        request_domains=(host,),
    )


def build_site_allow_rule(site_host: str, host: str, rule_id: int) -> Rule:
    return Rule(
        id=rule_id,
        priority=SITE_RULE_PRIORITY,
        action=ACTION_ALLOW,
        initiator_domains=(site_host,),
        request_domains=(host,),
    )


def build_global_block_rule(host: str, rule_id: int, excluded: List[str] | None = None) -> Rule:
    return Rule(
        id=rule_id,
        priority=GLOBAL_RULE_PRIORITY,
        action=ACTION_BLOCK,
        request_domains=(host,),
        excluded_initiator_domains=tuple(excluded or ()),
    )
