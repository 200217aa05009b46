# neftit/service.py
"""
UI-facing operations. Every call returns
``{"success": True, "data": ...}`` or ``{"success": False, "error": {...}}``;
lifecycle errors never escape as exceptions.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import sessionmaker

from .approval import ApprovalOrchestrator
from .burn import BurnRuleEngine
from .errors import NOTHING_HAPPENED, LifecycleError
from .lifecycle import LifecycleStateMachine, state_of
from .metadata import MetadataResolver
from .models import Asset, Session, StakeRecord, StakingSource, normalize_asset_id, normalize_wallet
from .reconciler import Reconciler
from .store import Store
from .view_cache import Mutation, MutationKind, OptimisticViewCache

logger = logging.getLogger(__name__)

Result = Dict[str, Any]

_service = None


def _ok(data) -> Result:
    return {"success": True, "data": data}


def _fail(err: LifecycleError) -> Result:
    return {"success": False, "error": err.to_dict()}


def _record_view(rec: StakeRecord) -> Dict[str, Any]:
    return {
        "assetId": rec.asset_id,
        "rarity": rec.rarity.value,
        "dailyReward": rec.daily_reward,
        "source": rec.source.value,
        "stakedAt": rec.staked_at,
        "unstakedAt": rec.unstaked_at,
        "txHash": rec.tx_hash,
    }


def _asset_view(asset: Asset) -> Dict[str, Any]:
    return {**asset.as_view(), "state": state_of(asset).value}


class NFTLifecycleService:
    def __init__(
        self,
        store: Store,
        lifecycle: LifecycleStateMachine,
        reconciler: Reconciler,
        cache: OptimisticViewCache,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.reconciler = reconciler
        self.cache = cache

    def _refresh(self, wallet: str):
        self.cache.refresh(wallet, self.store.list_assets(wallet))

    async def _mutate(
        self,
        session: Session,
        kind: MutationKind,
        asset_ids: Iterable,
        op: Callable[[], Awaitable[Tuple[Any, Sequence[Asset], Sequence[str]]]],
    ) -> Result:
        wallet = session.wallet_address
        try:
            ids = tuple(normalize_asset_id(a) for a in asset_ids)
            if self.cache.is_stale(wallet):
                self._refresh(wallet)
            mutation_id = self.cache.apply_optimistic(Mutation(kind, wallet, ids))
        except LifecycleError as e:
            return _fail(e)

        try:
            data, confirmed, removed = await op()
        except LifecycleError as e:
            self.cache.revert(mutation_id)
            if e.outcome != NOTHING_HAPPENED:
                # Something may have changed underneath; show stored truth
                self._refresh(wallet)
            logger.info("%s failed for %s: %s (%s)", kind.value, wallet, e.kind, e.message)
            return _fail(e)
        except BaseException:
            # Cancellation included; the optimistic view must not outlive the call
            self.cache.revert(mutation_id)
            raise

        self.cache.commit(mutation_id, confirmed, removed)
        return _ok(data)

    # ────────────────────────────────────────────────────────
    # Operations
    # ────────────────────────────────────────────────────────

    async def stake(self, session: Session, asset_id) -> Result:
        async def op():
            asset, rec, tx_hash = await self.lifecycle.stake(session, asset_id)
            data = {
                "asset": _asset_view(asset),
                "stakingSource": rec.source.value,
                "stakeRecord": _record_view(rec),
                "txHash": tx_hash,
            }
            return data, [asset], []
        return await self._mutate(session, MutationKind.STAKE, [asset_id], op)

    async def unstake(self, session: Session, asset_id) -> Result:
        async def op():
            asset, tx_hash = await self.lifecycle.unstake(session, asset_id)
            data = {"asset": _asset_view(asset), "txHash": tx_hash}
            return data, [asset], []
        return await self._mutate(session, MutationKind.UNSTAKE, [asset_id], op)

    async def claim(self, session: Session, asset_id) -> Result:
        original = normalize_asset_id(asset_id)

        async def op():
            onchain, tx_hash = await self.lifecycle.claim(session, original)
            data = {
                "asset": _asset_view(onchain),
                "claimedFrom": original,
                "tokenId": onchain.token_id,
                "txHash": tx_hash,
            }
            return data, [onchain], [original]
        return await self._mutate(session, MutationKind.CLAIM_START, [original], op)

    async def burn(self, session: Session, asset_ids: List) -> Result:
        async def op():
            outcome = await self.lifecycle.burn(session, asset_ids)
            confirmed = [outcome.result_asset] if outcome.result_asset else []
            return outcome.as_dict(), confirmed, outcome.transaction.burned_asset_ids
        return await self._mutate(session, MutationKind.BURN, asset_ids, op)

    async def recover(self, wallet: str) -> Result:
        try:
            wallet = normalize_wallet(wallet)
            report = await self.reconciler.recover_orphans(wallet)
        except LifecycleError as e:
            return _fail(e)
        self._refresh(wallet)
        return _ok(report.as_dict())

    def get_state(self, wallet: str, refresh: bool = False) -> Result:
        wallet = normalize_wallet(wallet)
        if refresh or self.cache.is_stale(wallet):
            self._refresh(wallet)

        assets = self.cache.view(wallet)
        stakes = self.store.stake_records(wallet)
        return _ok({
            "walletAddress": wallet,
            "assets": [_asset_view(a) for a in assets],
            "stakes": [_record_view(r) for r in stakes],
            "dailyReward": round(sum(r.daily_reward for r in stakes), 6),
            "counts": {
                "offchain": sum(1 for a in assets if a.store.value == "offchain"),
                "onchain": sum(1 for a in assets if a.store.value == "onchain"),
                "staked": sum(1 for a in assets if a.staking_source is not StakingSource.NONE),
            },
        })


def build_service(
    session_factory: Optional[sessionmaker] = None,
    gateway=None,
    resolver: Optional[MetadataResolver] = None,
    **engine_kwargs,
) -> NFTLifecycleService:
    """Wire the components together. Defaults come from config."""
    if session_factory is None:
        from .db import get_session_factory
        session_factory = get_session_factory()
    if gateway is None:
        from .chain.gateway import ChainGateway
        gateway = ChainGateway()

    store = Store(session_factory)
    resolver = resolver or MetadataResolver()
    reconciler = Reconciler(store, gateway, resolver)
    lifecycle = LifecycleStateMachine(
        store=store,
        gateway=gateway,
        approval=ApprovalOrchestrator(gateway),
        reconciler=reconciler,
        burn_engine=BurnRuleEngine(store, gateway, **engine_kwargs),
    )
    return NFTLifecycleService(store, lifecycle, reconciler, OptimisticViewCache())


def get_service() -> NFTLifecycleService:
    global _service
    if _service is None:
        _service = build_service()
    return _service
