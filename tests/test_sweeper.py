import asyncio

import pytest

from neftit import sweeper
from neftit.errors import ChainUnavailable
from neftit.rarity import Rarity

from conftest import OTHER, STAKING, WALLET, add_offchain, add_onchain


@pytest.mark.asyncio
async def test_sweep_once_repairs_every_wallet(store, chain, resolver, reconciler):
    add_onchain(store, chain, resolver, 1, Rarity.COMMON)
    add_onchain(store, chain, resolver, 2, Rarity.RARE, wallet=OTHER)
    add_offchain(store, Rarity.GOLD, wallet="0x" + "ef" * 20)
    chain.owners[1] = STAKING
    chain.staked[WALLET] = [1]

    stats = await sweeper.sweep_once(reconciler)

    assert stats == {"swept": 2, "failed": 0}
    assert [r.asset_id for r in store.stake_records(WALLET)] == ["onchain_1"]


@pytest.mark.asyncio
async def test_sweep_once_counts_failures(store, chain, resolver, reconciler):
    add_onchain(store, chain, resolver, 1, Rarity.COMMON)
    chain.fail["get_stake_info"] = ChainUnavailable("rpc down")

    assert await sweeper.sweep_once(reconciler) == {"swept": 0, "failed": 1}


@pytest.mark.asyncio
async def test_run_sweeper_survives_errors(monkeypatch, reconciler):
    calls = []

    async def flaky(_reconciler):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("db gone")
        if len(calls) == 3:
            raise asyncio.CancelledError
        return {"swept": 0, "failed": 0}

    async def no_wait(_seconds):
        return None

    monkeypatch.setattr(sweeper, "sweep_once", flaky)
    monkeypatch.setattr(sweeper.asyncio, "sleep", no_wait)

    with pytest.raises(asyncio.CancelledError):
        await sweeper.run_sweeper(reconciler, interval=5)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_run_sweeper_disabled(reconciler):
    assert await sweeper.run_sweeper(reconciler, interval=0) is None
