"""Sync orchestrator against the in-memory rule engine and storage."""
import asyncio

import pytest
from aiohttp import ClientConnectionError

from custom_components.host_gatekeeper.const import DEFAULT_GLOBAL_BLOCKED
from custom_components.host_gatekeeper.hosts import host_rule_id
from custom_components.host_gatekeeper.reconciler import RuleIdCollisionError
from custom_components.host_gatekeeper.rules import (
    build_global_block_rule,
    build_site_allow_rule,
    build_site_block_rule,
)
from custom_components.host_gatekeeper.store import PolicyStore
from custom_components.host_gatekeeper.sync import GatekeeperSync

from .conftest import FakeRuleEngine, MemoryBackend

SHOP = "shop.example"
NEWS = "news.example"
ADS = "ads.example.com"


def gid(host):
    return host_rule_id("global", host)


def sid(host, site=SHOP):
    return host_rule_id("site", host, site)


@pytest.fixture
async def ads_blocked(gatekeeper):
    await gatekeeper.async_save_global_decisions([{"host": ADS, "status": "blocked"}], replace=True)
    return gatekeeper


async def test_first_run_seeds_default_global_policy(gatekeeper, engine, backend):
    await gatekeeper.async_initialize()
    assert [r.request_domains[0] for r in engine.global_rules()] == sorted(
        DEFAULT_GLOBAL_BLOCKED, key=lambda h: gid(h)
    )
    assert backend.data["global"]["blocked_hosts"] == sorted(DEFAULT_GLOBAL_BLOCKED)


async def test_initialize_twice_is_a_noop(gatekeeper, engine):
    await gatekeeper.async_save_site_decisions(SHOP, [{"host": "track.example.com", "status": "blocked"}])
    await gatekeeper.async_initialize()
    before = len(engine.updates)
    await gatekeeper.async_initialize()
    assert len(engine.updates) == before


async def test_allow_override_scenario(ads_blocked, engine):
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "allowed"}])

    assert engine.global_rules() == [build_global_block_rule(ADS, gid(ADS), [SHOP])]
    assert engine.by_initiator(SHOP) == [build_site_allow_rule(SHOP, ADS, sid(ADS))]
    state = await ads_blocked.async_get_site_state(SHOP, [ADS])
    assert state["hosts"] == [{"host": ADS, "status": "allowed"}]


async def test_site_block_rule_and_reset(gatekeeper, engine, backend):
    await gatekeeper.async_save_site_decisions(SHOP, [{"host": "track.example.com", "status": "blocked"}])
    assert engine.by_initiator(SHOP) == [build_site_block_rule(SHOP, "track.example.com", sid("track.example.com"))]

    await gatekeeper.async_reset_site(SHOP)
    assert engine.by_initiator(SHOP) == []
    assert SHOP not in backend.data["sites"]


async def test_pending_decision_clears_override_but_keeps_record(ads_blocked, engine, backend):
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "allowed"}])
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "pending"}])

    assert engine.by_initiator(SHOP) == []
    assert engine.global_rules() == [build_global_block_rule(ADS, gid(ADS))]
    assert backend.data["sites"][SHOP]["pending_hosts"] == [ADS]
    state = await ads_blocked.async_get_site_state(SHOP)
    assert state["hosts"] == [{"host": ADS, "status": "blocked"}]


async def test_disable_and_enable_are_exact_inverses(ads_blocked, engine):
    await ads_blocked.async_save_site_decisions(
        SHOP, [{"host": "track.example.com", "status": "blocked"}, {"host": ADS, "status": "allowed"}]
    )
    await ads_blocked.async_save_site_decisions(NEWS, [{"host": "cdn.example.net", "status": "blocked"}])
    before = dict(engine.rules)

    await ads_blocked.async_disable_site(NEWS)
    assert engine.by_initiator(NEWS) == []
    assert engine.global_rules() == [build_global_block_rule(ADS, gid(ADS), [NEWS, SHOP])]
    assert len(engine.by_initiator(SHOP)) == 2
    assert (await ads_blocked.async_get_site_state(NEWS))["disabled"] is True

    await ads_blocked.async_enable_site(NEWS)
    assert engine.rules == before


async def test_disabling_an_override_site_keeps_single_exclusion(ads_blocked, engine):
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "allowed"}])
    await ads_blocked.async_disable_site(SHOP)
    assert engine.by_initiator(SHOP) == []
    assert engine.global_rules() == [build_global_block_rule(ADS, gid(ADS), [SHOP])]

    # override cleared while disabled: exclusion stays only because of the disable
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "pending"}])
    assert engine.global_rules() == [build_global_block_rule(ADS, gid(ADS), [SHOP])]
    await ads_blocked.async_enable_site(SHOP)
    assert engine.global_rules() == [build_global_block_rule(ADS, gid(ADS))]


async def test_saving_decisions_on_disabled_site_does_not_restore_rules(gatekeeper, engine):
    await gatekeeper.async_disable_site(SHOP)
    await gatekeeper.async_save_site_decisions(SHOP, [{"host": "track.example.com", "status": "blocked"}])
    assert engine.by_initiator(SHOP) == []
    await gatekeeper.async_enable_site(SHOP)
    assert len(engine.by_initiator(SHOP)) == 1


async def test_global_save_resyncs_override_sites(ads_blocked, engine):
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "allowed"}])
    assert engine.by_initiator(SHOP)

    saved = await ads_blocked.async_save_global_decisions([{"host": ADS, "status": "allowed"}])
    assert saved.allowed == {ADS}
    assert engine.by_initiator(SHOP) == []
    assert engine.global_rules() == []

    await ads_blocked.async_save_global_decisions([{"host": ADS, "status": "blocked"}])
    assert engine.by_initiator(SHOP) == [build_site_allow_rule(SHOP, ADS, sid(ADS))]


async def test_global_save_partition_invariant(gatekeeper):
    saved = await gatekeeper.async_save_global_decisions(
        [
            {"host": "a.com", "status": "allowed"},
            {"host": "a.com", "status": "blocked"},
            {"host": "b.com", "status": "pending"},
            {"host": "c.com", "status": "bogus"},
        ]
    )
    assert "a.com" in saved.blocked and "a.com" not in saved.allowed
    assert not (saved.allowed & saved.blocked or saved.allowed & saved.pending or saved.blocked & saved.pending)
    config = await gatekeeper.async_get_global_config()
    assert "c.com" not in config["blocked_hosts"] + config["allowed_hosts"] + config["pending_hosts"]


async def test_site_state_lists_configured_hosts_and_uses_fresh_index(ads_blocked):
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": "later.example.com", "status": "pending"}])
    state = await ads_blocked.async_get_site_state(SHOP, [ADS, "img.shop.example", SHOP, ""])
    assert state == {
        "site": SHOP,
        "disabled": False,
        "hosts": [
            {"host": ADS, "status": "blocked"},
            {"host": "img.shop.example", "status": "allowed"},
            {"host": "later.example.com", "status": "pending"},
        ],
    }

    await ads_blocked.async_save_global_decisions([{"host": ADS, "status": "allowed"}])
    state = await ads_blocked.async_get_site_state(SHOP, [ADS])
    assert {"host": ADS, "status": "allowed"} in state["hosts"]


async def test_inspect_rules(ads_blocked):
    await ads_blocked.async_save_site_decisions(SHOP, [{"host": "track.example.com", "status": "blocked"}])
    everything = await ads_blocked.async_inspect_rules()
    assert everything["total"] == 2
    assert [r["id"] for r in everything["site_rules"]] == [sid("track.example.com")]
    assert [r["id"] for r in everything["global_rules"]] == [gid(ADS)]

    matching = await ads_blocked.async_inspect_rules("cdn.ads.example.com")
    assert matching["total"] == 1
    assert matching["global_rules"][0]["condition"]["requestDomains"] == [ADS]


async def test_engine_failure_propagates_without_partial_apply(ads_blocked, engine):
    engine.fail_with = ClientConnectionError("engine down")
    with pytest.raises(ClientConnectionError):
        await ads_blocked.async_save_site_decisions(SHOP, [{"host": ADS, "status": "allowed"}])
    assert engine.by_initiator(SHOP) == []

    # the next trigger reconciles from fresh reads
    engine.fail_with = None
    await ads_blocked.async_sync_site(SHOP)
    await ads_blocked.async_sync_global()
    assert engine.by_initiator(SHOP) == [build_site_allow_rule(SHOP, ADS, sid(ADS))]


async def test_collision_with_foreign_rule_is_not_applied(gatekeeper, engine):
    engine.rules[sid("track.example.com")] = build_site_block_rule(NEWS, "x.com", sid("track.example.com"))
    with pytest.raises(RuleIdCollisionError):
        await gatekeeper.async_save_site_decisions(SHOP, [{"host": "track.example.com", "status": "blocked"}])
    assert engine.by_initiator(SHOP) == []


async def test_empty_site_is_rejected(gatekeeper):
    with pytest.raises(ValueError):
        await gatekeeper.async_save_site_decisions("  ", [])
    with pytest.raises(ValueError):
        await gatekeeper.async_disable_site("")


class SlowEngine(FakeRuleEngine):
    """Yields between snapshot and apply so overlapping passes would interleave."""

    async def list_rules(self):
        rules = await super().list_rules()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return rules


async def test_overlapping_saves_on_one_site_are_serialised():
    engine = SlowEngine()
    gatekeeper = GatekeeperSync(PolicyStore(MemoryBackend()), engine)
    hosts = [f"t{i}.example.com" for i in range(6)]
    await asyncio.gather(
        *(gatekeeper.async_save_site_decisions(SHOP, [{"host": h, "status": "blocked"}]) for h in hosts)
    )
    assert sorted(r.request_domains[0] for r in engine.by_initiator(SHOP)) == hosts
    assert not await gatekeeper.async_sync_site(SHOP)


async def test_overlapping_disable_and_global_save():
    engine = SlowEngine()
    gatekeeper = GatekeeperSync(PolicyStore(MemoryBackend()), engine)
    await gatekeeper.async_save_global_decisions([{"host": ADS, "status": "blocked"}], replace=True)
    await asyncio.gather(
        gatekeeper.async_disable_site(SHOP),
        gatekeeper.async_disable_site(NEWS),
        gatekeeper.async_save_global_decisions([{"host": "connect.facebook.net", "status": "blocked"}]),
    )
    await gatekeeper.async_sync_global()
    assert {r.request_domains[0]: r.excluded_initiator_domains for r in engine.global_rules()} == {
        ADS: (NEWS, SHOP),
        "connect.facebook.net": (NEWS, SHOP),
    }
