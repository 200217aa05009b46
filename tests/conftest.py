import asyncio
import uuid
from collections import defaultdict

import pytest

from neftit.approval import ApprovalOrchestrator
from neftit.burn import BurnRuleEngine
from neftit.chain.gateway import StakeInfo, TxResult
from neftit.db import make_engine, make_session_factory
from neftit.errors import ChainReverted
from neftit.lifecycle import LifecycleStateMachine
from neftit.migrate import init_schema
from neftit.models import Asset, Resolved, Session, Store as AssetStore, Unresolved, onchain_asset_id
from neftit.rarity import Rarity
from neftit.reconciler import Reconciler
from neftit.service import NFTLifecycleService
from neftit.store import Store
from neftit.view_cache import OptimisticViewCache

WALLET = "0x" + "ab" * 20
OTHER = "0x" + "cd" * 20
STAKING = "0x1f2dbf590b1c4c96c1ddb4ff55002dbb33da294e"
BURN = "0x000000000000000000000000000000000000dead"
ZERO = "0x" + "00" * 20


async def no_sleep(_seconds):
    return None


class FakeChain:
    """
    In-memory ERC-721 + staking contract with the ChainGateway surface.

    ``fail[name]`` is an exception (raised every call) or a list of
    exceptions (raised one per call until empty). Names in ``recovered`` apply
    their effect and then report an undecodable-but-recovered result.
    """

    def __init__(self):
        self.staking_address = STAKING
        self.owners = {}
        self.uris = {}
        self.approved_for_all = set()
        self.token_approvals = {}
        self.staked = defaultdict(list)
        self.next_token_id = 1000
        self.calls = []
        self.fail = {}
        self.recovered = set()
        self._tx = 0

    def _maybe_fail(self, name):
        exc = self.fail.get(name)
        if isinstance(exc, list):
            item = exc.pop(0) if exc else None
            if item is not None:
                raise item
            return
        if exc is not None:
            raise exc

    def _result(self, name, **kw):
        if name in self.recovered:
            return TxResult(tx_hash=None, recovered=True, recovered_via="effect", **kw)
        self._tx += 1
        return TxResult(tx_hash="0x%064x" % self._tx, block_number=self._tx, gas_used=50_000, **kw)

    def mint(self, owner, token_id=None, uri=""):
        if token_id is None:
            token_id = self.next_token_id
            self.next_token_id += 1
        self.owners[token_id] = owner.lower()
        self.uris[token_id] = uri
        return token_id

    # reads

    async def owner_of(self, token_id):
        await asyncio.sleep(0)
        self._maybe_fail("owner_of")
        if token_id not in self.owners:
            raise ChainReverted("ERC721: invalid token ID")
        return self.owners[token_id]

    async def token_uri(self, token_id):
        self._maybe_fail("token_uri")
        if token_id not in self.uris:
            raise ChainReverted("ERC721: invalid token ID")
        return self.uris[token_id]

    async def is_approved_for_all(self, owner, operator):
        self._maybe_fail("is_approved_for_all")
        return (owner.lower(), operator.lower()) in self.approved_for_all

    async def get_approved(self, token_id):
        self._maybe_fail("get_approved")
        return self.token_approvals.get(token_id, ZERO)

    async def get_stake_info(self, owner):
        await asyncio.sleep(0)
        self._maybe_fail("get_stake_info")
        return StakeInfo(token_ids=list(self.staked[owner.lower()]), rewards=0)

    # writes

    async def set_approval_for_all(self, session, operator, approved=True, precondition=None):
        self.calls.append(("setApprovalForAll", session.wallet_address, operator))
        if precondition:
            await precondition()
        self._maybe_fail("set_approval_for_all")
        pair = (session.wallet_address, operator.lower())
        if approved:
            self.approved_for_all.add(pair)
        else:
            self.approved_for_all.discard(pair)
        return self._result("set_approval_for_all")

    async def stake(self, session, token_ids, precondition=None):
        self.calls.append(("stake", list(token_ids)))
        if precondition:
            await precondition()
        self._maybe_fail("stake")
        wallet = session.wallet_address
        if (wallet, STAKING) not in self.approved_for_all:
            raise ChainReverted("ERC721: caller is not token owner or approved")
        for t in token_ids:
            if self.owners.get(t) != wallet:
                raise ChainReverted("not owner")
        for t in token_ids:
            self.owners[t] = STAKING
            self.staked[wallet].append(t)
        return self._result("stake")

    async def withdraw(self, session, token_ids, precondition=None):
        self.calls.append(("withdraw", list(token_ids)))
        if precondition:
            await precondition()
        self._maybe_fail("withdraw")
        wallet = session.wallet_address
        for t in token_ids:
            if t not in self.staked[wallet]:
                raise ChainReverted("not staked")
        for t in token_ids:
            self.staked[wallet].remove(t)
            self.owners[t] = wallet
        return self._result("withdraw")

    async def transfer_from(self, session, to, token_id, precondition=None):
        self.calls.append(("transferFrom", token_id, to))
        await asyncio.sleep(0)
        if precondition:
            await precondition()
        self._maybe_fail("transfer_from")
        if self.owners.get(token_id) != session.wallet_address:
            raise ChainReverted("ERC721: transfer from incorrect owner")
        self.owners[token_id] = to.lower()
        return self._result("transfer_from")

    async def mint_to(self, session, to, uri, precondition=None):
        self.calls.append(("mintTo", to, uri))
        if precondition:
            await precondition()
        self._maybe_fail("mint_to")
        token_id = self.mint(to, uri=uri)
        return self._result("mint_to", token_id=token_id)


class FakeResolver:
    def __init__(self):
        self.docs = {}
        self.calls = []

    async def resolve(self, uri):
        self.calls.append(uri)
        return self.docs.get(uri, Unresolved("not found"))


@pytest.fixture
def store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'neftit.db'}")
    init_schema(engine)
    return Store(make_session_factory(engine))


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def session():
    return Session(wallet_address=WALLET)


@pytest.fixture
def reconciler(store, chain, resolver):
    return Reconciler(store, chain, resolver)


@pytest.fixture
def approval(chain):
    return ApprovalOrchestrator(chain, operator=STAKING, strict=False, sleep=no_sleep)


@pytest.fixture
def burn_engine(store, chain):
    return BurnRuleEngine(store, chain, burn_address=BURN, sleep=no_sleep)


@pytest.fixture
def lifecycle(store, chain, approval, reconciler, burn_engine):
    return LifecycleStateMachine(store, chain, approval, reconciler, burn_engine)


@pytest.fixture
def service(store, lifecycle, reconciler):
    return NFTLifecycleService(store, lifecycle, reconciler, OptimisticViewCache())


def add_offchain(store, rarity=Rarity.COMMON, n=1, wallet=WALLET):
    out = []
    for _ in range(n):
        asset = Asset(
            asset_id=uuid.uuid4().hex,
            wallet_address=wallet,
            rarity=rarity,
            store=AssetStore.OFFCHAIN,
            name=f"{rarity.value} card",
            metadata_uri=f"ipfs://meta-{uuid.uuid4().hex[:8]}",
        )
        store.upsert_asset(asset)
        out.append(asset)
    return out


def add_onchain(store, chain, resolver, token_id, rarity=Rarity.COMMON, wallet=WALLET):
    uri = f"ipfs://token-{token_id}"
    chain.mint(wallet, token_id=token_id, uri=uri)
    resolver.docs[uri] = Resolved(name=f"Token {token_id}", image="", rarity=rarity)
    asset = Asset(
        asset_id=onchain_asset_id(token_id),
        wallet_address=wallet,
        rarity=rarity,
        store=AssetStore.ONCHAIN,
        token_id=token_id,
        metadata_uri=uri,
    )
    store.upsert_asset(asset)
    return asset


def seed_pool(store, rarity, n=1):
    return [store.add_pool_entry(rarity, cid=f"cid-{rarity.value}-{i}") for i in range(n)]
