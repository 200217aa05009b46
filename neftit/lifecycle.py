# neftit/lifecycle.py
"""
Asset lifecycle: which moves are legal from which state, and the driver that
carries a legal move through the chain and the database.

    offchain ──claim──▶ claiming ──confirm──▶ onchain
        ▲                   │
        └──────fail─────────┘
    offchain ◀──stake/unstake──▶ staked_offchain
    onchain  ◀──stake/unstake──▶ staked_onchain
    offchain | onchain ──burn──▶ burning ──confirm──▶ burned

Aborting a burn only clears the pending marker: store and stake columns are
untouched until the burn commits, so the asset falls back to where it was.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .approval import ApprovalOrchestrator
from .burn import BurnOutcome, BurnRuleEngine
from .errors import (
    AlreadyStaked,
    AssetNotFound,
    BurnPartial,
    DecodeRecoveryFailed,
    InvalidBurnSet,
    InvalidTransition,
    LifecycleError,
    NotOwner,
    NotStaked,
)
from .models import (
    Asset,
    PendingOp,
    Session,
    StakeRecord,
    StakingSource,
    Store as AssetStore,
    normalize_asset_id,
    token_id_of,
)
from .reconciler import Reconciler
from .store import Store

logger = logging.getLogger(__name__)


class AssetState(str, Enum):
    OFFCHAIN = "offchain"
    ONCHAIN = "onchain"
    STAKED_OFFCHAIN = "staked_offchain"
    STAKED_ONCHAIN = "staked_onchain"
    CLAIMING = "claiming"
    BURNING = "burning"
    BURNED = "burned"


class Event(str, Enum):
    STAKE = "stake"
    UNSTAKE = "unstake"
    CLAIM = "claim"
    CONFIRM_CLAIM = "confirm_claim"
    FAIL_CLAIM = "fail_claim"
    BURN = "burn"
    CONFIRM_BURN = "confirm_burn"


TRANSITIONS: Dict[Tuple[AssetState, Event], AssetState] = {
    (AssetState.OFFCHAIN, Event.STAKE): AssetState.STAKED_OFFCHAIN,
    (AssetState.STAKED_OFFCHAIN, Event.UNSTAKE): AssetState.OFFCHAIN,
    (AssetState.ONCHAIN, Event.STAKE): AssetState.STAKED_ONCHAIN,
    (AssetState.STAKED_ONCHAIN, Event.UNSTAKE): AssetState.ONCHAIN,
    (AssetState.OFFCHAIN, Event.CLAIM): AssetState.CLAIMING,
    (AssetState.CLAIMING, Event.CONFIRM_CLAIM): AssetState.ONCHAIN,
    (AssetState.CLAIMING, Event.FAIL_CLAIM): AssetState.OFFCHAIN,
    (AssetState.OFFCHAIN, Event.BURN): AssetState.BURNING,
    (AssetState.ONCHAIN, Event.BURN): AssetState.BURNING,
    (AssetState.BURNING, Event.CONFIRM_BURN): AssetState.BURNED,
}

_STAKED = (AssetState.STAKED_OFFCHAIN, AssetState.STAKED_ONCHAIN)
_PENDING = (AssetState.CLAIMING, AssetState.BURNING)
_USER_EVENTS = (Event.STAKE, Event.UNSTAKE, Event.CLAIM, Event.BURN)


def state_of(asset: Asset) -> AssetState:
    if asset.pending_op is PendingOp.CLAIMING:
        return AssetState.CLAIMING
    if asset.pending_op is PendingOp.BURNING:
        return AssetState.BURNING
    if asset.store is AssetStore.ONCHAIN:
        return AssetState.STAKED_ONCHAIN if asset.is_staked else AssetState.ONCHAIN
    return AssetState.STAKED_OFFCHAIN if asset.is_staked else AssetState.OFFCHAIN


def next_state(state: AssetState, event: Event, asset_id: str = "") -> AssetState:
    """Apply the guards, then the table. Anything not listed is illegal."""
    if state in _PENDING and event in _USER_EVENTS:
        raise InvalidTransition(
            f"{asset_id or 'asset'} is {state.value}; wait for it to finish",
            asset_id=asset_id, state=state.value, event=event.value,
        )
    if state in _STAKED and event in (Event.STAKE, Event.CLAIM, Event.BURN):
        raise AlreadyStaked(f"{asset_id or 'asset'} is staked", asset_id=asset_id)
    if state in (AssetState.OFFCHAIN, AssetState.ONCHAIN) and event is Event.UNSTAKE:
        raise NotStaked(f"{asset_id or 'asset'} is not staked", asset_id=asset_id)

    nxt = TRANSITIONS.get((state, event))
    if nxt is None:
        raise InvalidTransition(
            f"can't {event.value} from {state.value}",
            asset_id=asset_id, state=state.value, event=event.value,
        )
    return nxt


class LifecycleStateMachine:
    def __init__(
        self,
        store: Store,
        gateway,
        approval: ApprovalOrchestrator,
        reconciler: Reconciler,
        burn_engine: BurnRuleEngine,
    ):
        self.store = store
        self.gateway = gateway
        self.approval = approval
        self.reconciler = reconciler
        self.burn_engine = burn_engine

    async def load(self, session: Session, asset_id) -> Asset:
        """Fetch an asset the session owns, importing unseen on-chain tokens."""
        asset_id = normalize_asset_id(asset_id)
        asset = self.store.get_asset(asset_id)
        if asset is None:
            token_id = token_id_of(asset_id)
            if token_id is None:
                raise AssetNotFound(f"unknown asset {asset_id}", asset_id=asset_id)
            asset = await self.reconciler.import_onchain_asset(session.wallet_address, token_id)
        if asset.wallet_address != session.wallet_address:
            raise NotOwner(f"{asset_id} belongs to another wallet", asset_id=asset_id)
        return asset

    def get_state(self, wallet: str) -> List[Tuple[Asset, AssetState]]:
        return [(a, state_of(a)) for a in self.store.list_assets(wallet)]

    # ────────────────────────────────────────────────────────
    # Stake / unstake
    # ────────────────────────────────────────────────────────

    async def stake(self, session: Session, asset_id) -> Tuple[Asset, StakeRecord, Optional[str]]:
        asset = await self.load(session, asset_id)
        next_state(state_of(asset), Event.STAKE, asset.asset_id)

        if asset.store is AssetStore.OFFCHAIN:
            rec = self.reconciler.record_offchain_stake(asset)
            return self.store.get_asset(asset.asset_id), rec, None

        wallet = session.wallet_address
        token_id = asset.token_id
        await self.approval.ensure_approved(session, token_id)

        async def precondition():
            owner = await self.gateway.owner_of(token_id)
            if owner == wallet:
                return
            if owner == self.gateway.staking_address:
                raise AlreadyStaked(f"token {token_id} is already in the staking contract",
                                    asset_id=asset.asset_id)
            raise NotOwner(f"token {token_id} is owned by {owner}", asset_id=asset.asset_id)

        tx_hash = None
        try:
            result = await self.gateway.stake(session, [token_id], precondition=precondition)
            tx_hash = result.tx_hash
        except AlreadyStaked:
            # Landed earlier without being recorded; catch the database up
            info = await self.gateway.get_stake_info(wallet)
            if token_id not in info.token_ids:
                raise
            logger.info("token %s already staked on chain, recording it", token_id)
        except DecodeRecoveryFailed as e:
            await self._on_decode_failure(wallet, e)
            raise

        rec = await self.reconciler.record_onchain_stake(wallet, token_id, tx_hash)
        return self.store.get_asset(asset.asset_id), rec, tx_hash

    async def unstake(self, session: Session, asset_id) -> Tuple[Asset, Optional[str]]:
        asset = await self.load(session, asset_id)
        next_state(state_of(asset), Event.UNSTAKE, asset.asset_id)
        wallet = session.wallet_address

        if asset.staking_source is StakingSource.OFFCHAIN:
            self.reconciler.reconcile_unstake(wallet, asset)
            return self.store.get_asset(asset.asset_id), None

        token_id = asset.token_id

        async def precondition():
            info = await self.gateway.get_stake_info(wallet)
            if token_id not in info.token_ids:
                raise NotStaked(f"token {token_id} is not staked on chain", asset_id=asset.asset_id)

        tx_hash = None
        try:
            result = await self.gateway.withdraw(session, [token_id], precondition=precondition)
            tx_hash = result.tx_hash
        except NotStaked:
            logger.info("token %s already withdrawn on chain, recording it", token_id)
        except DecodeRecoveryFailed as e:
            await self._on_decode_failure(wallet, e)
            raise

        self.reconciler.reconcile_unstake(wallet, asset, StakingSource.ONCHAIN)
        return self.store.get_asset(asset.asset_id), tx_hash

    # ────────────────────────────────────────────────────────
    # Claim
    # ────────────────────────────────────────────────────────

    async def claim(self, session: Session, asset_id) -> Tuple[Asset, Optional[str]]:
        asset = await self.load(session, asset_id)
        claiming = next_state(state_of(asset), Event.CLAIM, asset.asset_id)
        self.store.set_pending([asset.asset_id], PendingOp.CLAIMING)

        async def precondition():
            row = self.store.get_asset(asset.asset_id)
            if row is None or row.pending_op is not PendingOp.CLAIMING:
                raise InvalidTransition(f"{asset.asset_id} is no longer claimable",
                                        asset_id=asset.asset_id)

        try:
            result = await self.gateway.mint_to(
                session, session.wallet_address, asset.metadata_uri, precondition=precondition,
            )
            if result.token_id is None:
                raise DecodeRecoveryFailed(
                    "mint confirmed but the token id could not be read",
                    tx_hash=result.tx_hash, asset_id=asset.asset_id,
                )
        except LifecycleError as e:
            next_state(claiming, Event.FAIL_CLAIM, asset.asset_id)
            self.store.set_pending([asset.asset_id], None)
            if e.tx_hash:
                logger.warning("claim of %s failed with tx %s outstanding (%s)",
                               asset.asset_id, e.tx_hash, e.kind)
            if isinstance(e, DecodeRecoveryFailed):
                await self._on_decode_failure(session.wallet_address, e)
            raise
        except BaseException:
            # Cancelled or crashed before confirmation
            self.store.set_pending([asset.asset_id], None)
            logger.warning("claim of %s interrupted before confirmation", asset.asset_id)
            raise

        next_state(claiming, Event.CONFIRM_CLAIM, asset.asset_id)
        onchain = self.reconciler.record_claim(asset, result.token_id, asset.metadata_uri)
        return onchain, result.tx_hash

    # ────────────────────────────────────────────────────────
    # Burn
    # ────────────────────────────────────────────────────────

    async def burn(self, session: Session, asset_ids: Sequence) -> BurnOutcome:
        ids = [normalize_asset_id(a) for a in asset_ids]
        if len(set(ids)) != len(ids):
            raise InvalidBurnSet("the same asset was selected twice", asset_ids=ids)

        assets = [await self.load(session, a) for a in ids]
        states = [next_state(state_of(a), Event.BURN, a.asset_id) for a in assets]
        plan = self.burn_engine.classify(assets)

        self.store.set_pending(ids, PendingOp.BURNING)
        try:
            outcome = await self.burn_engine.execute(session, plan)
        except LifecycleError as e:
            # Rows that were consumed are gone; the rest fall back
            self.store.set_pending(ids, None)
            cause = e.cause if isinstance(e, BurnPartial) else e
            if isinstance(cause, DecodeRecoveryFailed):
                await self._on_decode_failure(session.wallet_address, cause)
            raise
        except BaseException:
            self.store.set_pending(ids, None)
            logger.warning("burn of %s interrupted before confirmation", ids)
            raise

        for s in states:
            next_state(s, Event.CONFIRM_BURN)
        return outcome

    async def _on_decode_failure(self, wallet: str, err: DecodeRecoveryFailed):
        logger.critical("undecodable chain response with no recoverable effect for %s: %s (tx=%s)",
                        wallet, err.message, err.tx_hash)
        try:
            await self.reconciler.recover_orphans(wallet)
        except LifecycleError as e:
            logger.warning("orphan sweep after decode failure aborted: %s", e.message)
