"""Shared fixtures and in-memory doubles for the rule engine and storage."""
from __future__ import annotations

import copy
from typing import Any, Iterable

import pytest

from custom_components.host_gatekeeper.rules import Rule
from custom_components.host_gatekeeper.store import PolicyStore
from custom_components.host_gatekeeper.sync import GatekeeperSync


class FakeRuleEngine:
    """Rule store double: atomic update, rejects duplicate ids like the real engine."""

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        self.rules = {r.id: r for r in rules}
        self.updates: list[tuple[list[int], list[Rule]]] = []
        self.fail_with: Exception | None = None

    async def list_rules(self) -> list[Rule]:
        return list(self.rules.values())

    async def update_rules(self, remove_ids: Iterable[int], add_rules: Iterable[Rule]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        remove_ids = list(remove_ids)
        add_rules = list(add_rules)
        staged = dict(self.rules)
        for rule_id in remove_ids:
            staged.pop(rule_id, None)
        for rule in add_rules:
            if rule.id in staged:
                raise ValueError(f"duplicate rule id {rule.id}")
            staged[rule.id] = rule
        self.rules = staged
        self.updates.append((remove_ids, add_rules))

    def by_initiator(self, site: str) -> list[Rule]:
        return sorted((r for r in self.rules.values() if site in r.initiator_domains), key=lambda r: r.id)

    def global_rules(self) -> list[Rule]:
        return sorted((r for r in self.rules.values() if r.id >= 2_000_000), key=lambda r: r.id)


class MemoryBackend:
    """Stands in for homeassistant.helpers.storage.Store."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data = data
        self.saves = 0

    async def async_load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.data)

    async def async_save(self, data: dict[str, Any]) -> None:
        self.data = copy.deepcopy(data)
        self.saves += 1


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def policy_store(backend: MemoryBackend) -> PolicyStore:
    return PolicyStore(backend)


@pytest.fixture
def engine() -> FakeRuleEngine:
    return FakeRuleEngine()


@pytest.fixture
def gatekeeper(policy_store: PolicyStore, engine: FakeRuleEngine) -> GatekeeperSync:
    return GatekeeperSync(policy_store, engine)
