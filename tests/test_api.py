import pytest
from fastapi.testclient import TestClient

from neftit.errors import ChainReverted
from neftit.main import app
from neftit.rarity import Rarity
from neftit.service import get_service

from conftest import WALLET, add_offchain, add_onchain


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] == "true"


def test_stake_and_state(client, store, chain, resolver):
    add_onchain(store, chain, resolver, 42, Rarity.RARE)

    r = client.post("/api/nfts/stake", json={"wallet_address": WALLET, "asset_id": 42})
    assert r.status_code == 200
    assert r.json()["data"]["stakingSource"] == "onchain"

    r = client.get(f"/api/nfts/{WALLET.upper().replace('0X', '0x')}")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["counts"]["staked"] == 1
    assert data["dailyReward"] == 0.4


def test_error_kinds_map_to_status(client, store, chain, resolver):
    [asset] = add_offchain(store, Rarity.RARE)

    r = client.post("/api/nfts/unstake", json={"wallet_address": WALLET, "asset_id": asset.asset_id})
    assert r.status_code == 409
    assert r.json()["error"]["kind"] == "ErrNotStaked"

    r = client.post("/api/nfts/claim", json={"wallet_address": WALLET, "asset_id": "missing"})
    assert r.status_code == 404

    add_onchain(store, chain, resolver, 7, Rarity.COMMON)
    chain.fail["stake"] = ChainReverted("paused")
    r = client.post("/api/nfts/stake", json={"wallet_address": WALLET, "asset_id": "onchain_7"})
    assert r.status_code == 502
    assert r.json()["success"] is False


def test_burn_and_recover(client, store):
    commons = add_offchain(store, Rarity.COMMON, 5)

    r = client.post("/api/nfts/burn", json={
        "wallet_address": WALLET,
        "asset_ids": [a.asset_id for a in commons],
    })
    # nothing seeded in the platinum pool
    assert r.status_code == 409
    assert r.json()["error"]["kind"] == "ErrPoolExhausted"

    r = client.post("/api/nfts/recover", json={"wallet_address": WALLET})
    assert r.status_code == 200
    assert r.json()["data"]["walletAddress"] == WALLET


def test_bad_bodies_are_rejected(client):
    assert client.post("/api/nfts/stake", json={"wallet_address": WALLET}).status_code == 422
    assert client.post("/api/nfts/burn", json={"wallet_address": WALLET, "asset_ids": []}).status_code == 422
    assert client.post("/api/nfts/stake", json={"wallet_address": "  ", "asset_id": 1}).status_code == 400
