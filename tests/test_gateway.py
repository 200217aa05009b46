from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, MismatchedABI, TimeExhausted, TransactionNotFound

from neftit.chain import gateway as gateway_mod
from neftit.chain.gateway import GAS_CEILING, ChainGateway, StakeInfo, _Endpoint
from neftit.errors import UNCERTAIN, ChainReverted, ChainTimeout, DecodeRecoveryFailed
from neftit.models import Session

from conftest import WALLET

BURN = "0x000000000000000000000000000000000000dead"

STAKING_ADDR = "0x1F2Dbf590b1c4C96c1ddb4FF55002Dbb33DA294e"


def _receipt(status=1, block=7):
    return {
        "status": status,
        "transactionHash": b"\x01" * 32,
        "blockNumber": block,
        "gasUsed": 21_000,
        "logs": [],
    }


@pytest.fixture
def gw(monkeypatch):
    gw = ChainGateway(rpc_urls=["http://127.0.0.1:8545"])

    fn = MagicMock()
    fn.estimate_gas = AsyncMock(return_value=100_000)
    fn.build_transaction = AsyncMock(return_value={"to": STAKING_ADDR, "data": "0x01", "gas": 120_000})
    fn.call = AsyncMock(return_value=None)

    staking = MagicMock()
    staking.address = STAKING_ADDR
    staking.functions.stake.return_value = fn
    staking.functions.withdraw.return_value = fn

    w3 = MagicMock()
    w3.eth.wait_for_transaction_receipt = AsyncMock(return_value=_receipt())
    w3.eth.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("missing"))

    gw._primary = _Endpoint(w3=w3, nft=MagicMock(), staking=staking)
    gw.fn = fn

    sent = AsyncMock(return_value="0x" + "ab" * 32)
    monkeypatch.setattr(gateway_mod, "send_transaction", sent)
    gw.sent = sent
    return gw


@pytest.fixture
def session():
    return Session(wallet_address=WALLET)


@pytest.mark.asyncio
async def test_stake_success(gw, session):
    res = await gw.stake(session, [42])
    assert res.tx_hash == Web3.to_hex(b"\x01" * 32)
    assert res.block_number == 7
    assert not res.recovered
    # estimate 100k x 1.2
    assert gw.fn.build_transaction.await_args.args[0]["gas"] == 120_000


@pytest.mark.asyncio
async def test_decode_error_but_staked_is_success(gw, session):
    gw._primary.w3.eth.wait_for_transaction_receipt = AsyncMock(
        side_effect=BadFunctionCallOutput("Could not decode contract function call")
    )
    gw.get_stake_info = AsyncMock(return_value=StakeInfo(token_ids=[42], rewards=0))

    res = await gw.stake(session, [42])

    assert res.recovered
    assert res.recovered_via == "effect"
    assert gw.sent.await_count == 1


@pytest.mark.asyncio
async def test_decode_error_recovered_from_block_scan(gw, session):
    gw._primary.w3.eth.wait_for_transaction_receipt = AsyncMock(
        side_effect=BadFunctionCallOutput("Could not decode")
    )
    gw._primary.w3.eth.get_transaction_receipt = AsyncMock(return_value=_receipt(block=9))
    # stake info lags behind the mined tx
    gw.get_stake_info = AsyncMock(return_value=StakeInfo(token_ids=[], rewards=0))

    res = await gw.stake(session, [42])

    assert res.recovered_via == "block_scan"
    assert res.block_number == 9


@pytest.mark.asyncio
async def test_decode_error_without_effect_raises(gw, session):
    gw._primary.w3.eth.wait_for_transaction_receipt = AsyncMock(
        side_effect=BadFunctionCallOutput("Could not decode")
    )
    gw._primary.w3.eth.get_transaction_receipt = AsyncMock(return_value=_receipt(status=0))
    gw.get_stake_info = AsyncMock(return_value=StakeInfo(token_ids=[], rewards=0))

    with pytest.raises(DecodeRecoveryFailed) as ei:
        await gw.stake(session, [42])
    assert ei.value.outcome == UNCERTAIN
    assert ei.value.tx_hash == "0x" + "ab" * 32


@pytest.mark.asyncio
async def test_receipt_timeout_surfaces_hash_without_resubmitting(gw, session):
    gw._primary.w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("60s"))

    with pytest.raises(ChainTimeout) as ei:
        await gw.stake(session, [42])
    assert ei.value.tx_hash == "0x" + "ab" * 32
    assert ei.value.outcome == UNCERTAIN
    assert gw.sent.await_count == 1


@pytest.mark.asyncio
async def test_reverted_receipt(gw, session):
    gw._primary.w3.eth.wait_for_transaction_receipt = AsyncMock(return_value=_receipt(status=0))
    with pytest.raises(ChainReverted):
        await gw.withdraw(session, [42])


@pytest.mark.asyncio
async def test_typed_call_failure_falls_back_to_raw_encoding(gw, session):
    gw.fn.build_transaction = AsyncMock(side_effect=MismatchedABI("no match"))
    gw._primary.staking.encode_abi.return_value = "0xdeadbeef"

    await gw.stake(session, [42])

    tx = gw.sent.await_args.args[2]
    assert tx["data"] == "0xdeadbeef"
    assert tx["to"] == STAKING_ADDR
    gw._primary.staking.encode_abi.assert_called_once_with("stake", args=[[42]])


@pytest.mark.asyncio
async def test_gas_tiers_probed_when_estimate_fails(gw):
    fn = MagicMock()
    fn.estimate_gas = AsyncMock(side_effect=ValueError("cannot estimate"))
    fn.call = AsyncMock(side_effect=[ValueError("out of gas"), None])
    assert await gw._estimate_gas(fn, WALLET, "x") == 300_000


@pytest.mark.asyncio
async def test_gas_ceiling_when_every_tier_fails(gw):
    fn = MagicMock()
    fn.estimate_gas = AsyncMock(side_effect=ValueError("cannot estimate"))
    fn.call = AsyncMock(side_effect=ValueError("out of gas"))
    assert await gw._estimate_gas(fn, WALLET, "x") == GAS_CEILING


@pytest.mark.asyncio
async def test_reads_are_lowercased(gw):
    gw.executor.read = AsyncMock(return_value="0xABCDEF")
    assert await gw.owner_of(1) == "0xabcdef"


# ────────────────────────────────────────────────────────────
# Block scan without a tx hash
# ────────────────────────────────────────────────────────────

NFT_ADDR = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class _Latest:
    """Stands in for ``w3.eth.block_number``, which is awaited as a property."""

    def __init__(self, number):
        self.number = number

    def __await__(self):
        yield from ()
        return self.number


def _transfer_calldata(token_id):
    return "0x23b872dd" + f"{token_id:064x}"


@pytest.fixture
def nft_gw(gw):
    def transfer_from(sender, to, token_id):
        fn = MagicMock()
        fn.estimate_gas = AsyncMock(return_value=100_000)
        fn.build_transaction = AsyncMock(return_value={
            "to": NFT_ADDR, "data": _transfer_calldata(token_id), "gas": 120_000,
        })
        return fn

    nft = MagicMock()
    nft.address = NFT_ADDR
    nft.functions.transferFrom.side_effect = transfer_from
    gw._primary.nft = nft

    # the undecodable response arrives before any hash is known
    gw.sent.side_effect = BadFunctionCallOutput("Could not decode")

    eth = gw._primary.w3.eth
    eth.block_number = _Latest(10)
    blocks = {
        10: {"transactions": []},
        # the previous token of the same burn, one block back
        9: {"transactions": [{
            "hash": b"\x07" * 32,
            "from": WALLET,
            "to": NFT_ADDR,
            "input": bytes.fromhex(_transfer_calldata(7)[2:]),
        }]},
        8: {"transactions": []},
    }
    eth.get_block = AsyncMock(side_effect=lambda n, full_transactions: blocks.get(n, {"transactions": []}))
    eth.get_transaction_receipt = AsyncMock(return_value=_receipt(block=9))
    gw.blocks = blocks
    return gw


@pytest.mark.asyncio
async def test_block_scan_ignores_earlier_tx_for_another_token(nft_gw, session):
    nft_gw.owner_of = AsyncMock(return_value=WALLET)

    with pytest.raises(DecodeRecoveryFailed):
        await nft_gw.transfer_from(session, BURN, 8)

    nft_gw._primary.w3.eth.get_transaction_receipt.assert_not_awaited()


@pytest.mark.asyncio
async def test_block_scan_matches_own_calldata(nft_gw, session):
    nft_gw.owner_of = AsyncMock(return_value=WALLET)
    nft_gw.blocks[10]["transactions"].append({
        "hash": b"\x08" * 32,
        "from": WALLET,
        "to": NFT_ADDR,
        "input": _transfer_calldata(8),
    })

    res = await nft_gw.transfer_from(session, BURN, 8)

    assert res.recovered_via == "block_scan"
    nft_gw._primary.w3.eth.get_transaction_receipt.assert_awaited_once_with(b"\x08" * 32)


@pytest.mark.asyncio
async def test_effect_check_runs_before_block_scan(nft_gw, session):
    nft_gw.owner_of = AsyncMock(return_value=BURN)

    res = await nft_gw.transfer_from(session, BURN, 8)

    assert res.recovered_via == "effect"
    nft_gw._primary.w3.eth.get_block.assert_not_awaited()
