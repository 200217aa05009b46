from dataclasses import replace

import pytest

from neftit.errors import MutationInFlight
from neftit.models import Asset, PendingOp, StakingSource, Store as AssetStore
from neftit.rarity import Rarity
from neftit.view_cache import (
    APPLIED,
    COMMITTED,
    REFRESHED,
    REVERTED,
    EventBus,
    Mutation,
    MutationKind,
    OptimisticViewCache,
)

from conftest import OTHER, WALLET


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _asset(asset_id, store=AssetStore.OFFCHAIN, token_id=None, wallet=WALLET):
    return Asset(asset_id=asset_id, wallet_address=wallet, rarity=Rarity.RARE,
                 store=store, token_id=token_id)


@pytest.fixture
def events():
    return []


@pytest.fixture
def cache(events):
    bus = EventBus()
    bus.subscribe("*", events.append)
    c = OptimisticViewCache(ttl=30, bus=bus, clock=Clock())
    c.refresh(WALLET, [_asset("a"), _asset("b"), _asset("onchain_7", AssetStore.ONCHAIN, 7)])
    events.clear()
    return c


def test_stake_is_visible_before_confirmation(cache):
    cache.apply_optimistic(Mutation(MutationKind.STAKE, WALLET, ("onchain_7",)))

    asset = cache.get(WALLET, "onchain_7")
    assert asset.is_staked
    assert asset.staking_source is StakingSource.ONCHAIN
    assert cache.is_dirty("onchain_7")


def test_commit_matching_optimistic_value_replaces_nothing(cache):
    mid = cache.apply_optimistic(Mutation(MutationKind.CLAIM_START, WALLET, ("a",)))
    optimistic = cache.get(WALLET, "a")
    assert optimistic.pending_op is PendingOp.CLAIMING

    assert cache.commit(mid, confirmed=[optimistic]) == []
    assert not cache.is_dirty("a")


def test_confirmed_values_win_over_optimistic(cache):
    mid = cache.apply_optimistic(Mutation(MutationKind.STAKE, WALLET, ("a",)))
    confirmed = _asset("a").staked(StakingSource.OFFCHAIN, at="2026-01-01T00:00:00+00:00")

    assert cache.commit(mid, confirmed=[confirmed]) == ["a"]
    assert cache.get(WALLET, "a") == confirmed


def test_commit_can_remove_and_add(cache):
    mid = cache.apply_optimistic(Mutation(MutationKind.CLAIM_START, WALLET, ("a",)))
    minted = _asset("onchain_9", AssetStore.ONCHAIN, 9)

    replaced = cache.commit(mid, confirmed=[minted], removed=["a"])

    assert replaced == ["a", "onchain_9"]
    ids = sorted(x.asset_id for x in cache.view(WALLET))
    assert ids == ["b", "onchain_7", "onchain_9"]


def test_revert_restores_snapshot(cache):
    before = cache.view(WALLET)
    mid = cache.apply_optimistic(Mutation(MutationKind.BURN, WALLET, ("a", "b")))
    assert [x.asset_id for x in cache.view(WALLET)] == ["onchain_7"]

    cache.revert(mid)

    assert sorted(cache.view(WALLET), key=lambda x: x.asset_id) == \
        sorted(before, key=lambda x: x.asset_id)
    assert not cache.is_dirty("a")


def test_second_mutation_on_busy_asset_is_rejected(cache):
    cache.apply_optimistic(Mutation(MutationKind.STAKE, WALLET, ("a",)))

    with pytest.raises(MutationInFlight) as ei:
        cache.apply_optimistic(Mutation(MutationKind.BURN, WALLET, ("a", "b")))
    assert ei.value.context["asset_ids"] == ["a"]
    # the rejected mutation left "b" alone
    assert not cache.is_dirty("b")
    assert cache.get(WALLET, "b") is not None


def test_refresh_keeps_in_flight_assets(cache):
    cache.apply_optimistic(Mutation(MutationKind.STAKE, WALLET, ("a",)))

    cache.refresh(WALLET, [_asset("a"), _asset("c")])

    assert cache.get(WALLET, "a").is_staked
    assert cache.get(WALLET, "c") is not None
    assert cache.get(WALLET, "b") is None


def test_staleness_follows_ttl():
    clock = Clock()
    cache = OptimisticViewCache(ttl=30, clock=clock)
    assert cache.is_stale(WALLET)

    cache.refresh(WALLET, [])
    assert not cache.is_stale(WALLET)
    clock.now += 29
    assert not cache.is_stale(WALLET)
    clock.now += 1
    assert cache.is_stale(WALLET)


def test_confirmed_asset_for_other_wallet_leaves_the_view(cache):
    mid = cache.apply_optimistic(Mutation(MutationKind.STAKE, WALLET, ("b",)))
    cache.commit(mid, confirmed=[replace(_asset("b"), wallet_address=OTHER)])
    assert cache.get(WALLET, "b") is None


def test_events_are_published(cache, events):
    mid = cache.apply_optimistic(Mutation(MutationKind.UNSTAKE, WALLET, ("a",)))
    cache.commit(mid)
    mid = cache.apply_optimistic(Mutation(MutationKind.STAKE, WALLET, ("b",)))
    cache.revert(mid)
    cache.refresh(WALLET, [])

    assert [e["event"] for e in events] == [APPLIED, COMMITTED, APPLIED, REVERTED, REFRESHED]
    assert events[0]["kind"] == "unstake"
    assert events[0]["assetIds"] == ["a"]


def test_failing_subscriber_does_not_break_others():
    bus = EventBus()
    seen = []

    def broken(_event):
        raise RuntimeError("boom")

    bus.subscribe(COMMITTED, broken)
    unsubscribe = bus.subscribe(COMMITTED, seen.append)
    bus.publish(COMMITTED, {"mutationId": "m"})
    assert len(seen) == 1

    unsubscribe()
    bus.publish(COMMITTED, {"mutationId": "m"})
    assert len(seen) == 1


def test_unknown_mutation_id(cache):
    with pytest.raises(KeyError):
        cache.revert("nope")
