# neftit/view_cache.py
"""
Client-facing view of each wallet's assets, updated optimistically.

A mutation is applied to the view before the chain or database has
confirmed it, with a snapshot of the assets it touched. When the operation
finishes it is either committed (confirmed values win over optimistic ones)
or reverted (the snapshot comes back). Only one mutation may be in flight
per asset.

Subscribers get "applied", "committed", "reverted" and "refreshed" events.
"""
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .config import VIEW_CACHE_TTL
from .errors import MutationInFlight
from .models import Asset, PendingOp, StakingSource, Store as AssetStore, normalize_wallet

logger = logging.getLogger(__name__)

APPLIED = "applied"
COMMITTED = "committed"
REVERTED = "reverted"
REFRESHED = "refreshed"


class EventBus:
    def __init__(self):
        self._subs: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)

    def subscribe(self, event: str, fn: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Register ``fn`` for ``event`` ("*" for all). Returns an unsubscribe callable."""
        self._subs[event].append(fn)

        def unsubscribe():
            if fn in self._subs[event]:
                self._subs[event].remove(fn)
        return unsubscribe

    def publish(self, event: str, payload: Dict[str, Any]):
        for fn in list(self._subs[event]) + list(self._subs["*"]):
            try:
                fn({"event": event, **payload})
            except Exception:
                logger.exception("view cache subscriber failed on %s", event)


class MutationKind(str, Enum):
    STAKE = "stake"
    UNSTAKE = "unstake"
    CLAIM_START = "claim_start"
    BURN = "burn"


@dataclass(frozen=True)
class Mutation:
    kind: MutationKind
    wallet_address: str
    asset_ids: Tuple[str, ...]


@dataclass
class _Pending:
    mutation: Mutation
    snapshot: Dict[str, Optional[Asset]]
    started_at: float = field(default_factory=time.monotonic)


def _apply(kind: MutationKind, asset: Asset) -> Optional[Asset]:
    if kind is MutationKind.STAKE:
        source = StakingSource.ONCHAIN if asset.store is AssetStore.ONCHAIN else StakingSource.OFFCHAIN
        return asset.staked(source)
    if kind is MutationKind.UNSTAKE:
        return asset.unstaked()
    if kind is MutationKind.CLAIM_START:
        return replace(asset, pending_op=PendingOp.CLAIMING)
    # burned assets disappear from the view
    return None


class OptimisticViewCache:
    def __init__(self, ttl: float = VIEW_CACHE_TTL, bus: Optional[EventBus] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.bus = bus or EventBus()
        self._clock = clock
        self._views: Dict[str, Dict[str, Asset]] = defaultdict(dict)
        self._refreshed_at: Dict[str, float] = {}
        self._pending: Dict[str, _Pending] = {}
        self._in_flight: Dict[str, str] = {}

    def view(self, wallet: str) -> List[Asset]:
        return list(self._views[normalize_wallet(wallet)].values())

    def get(self, wallet: str, asset_id: str) -> Optional[Asset]:
        return self._views[normalize_wallet(wallet)].get(asset_id)

    def is_dirty(self, asset_id: str) -> bool:
        return asset_id in self._in_flight

    def is_stale(self, wallet: str) -> bool:
        t = self._refreshed_at.get(normalize_wallet(wallet))
        return t is None or self._clock() - t >= self.ttl

    def refresh(self, wallet: str, assets: Iterable[Asset]):
        """Replace the wallet's view with stored state, leaving in-flight assets alone."""
        wallet = normalize_wallet(wallet)
        current = self._views[wallet]
        fresh = {a.asset_id: a for a in assets}
        for asset_id in list(fresh):
            if asset_id in self._in_flight:
                fresh.pop(asset_id)
        for asset_id, asset in current.items():
            if asset_id in self._in_flight:
                fresh[asset_id] = asset
        self._views[wallet] = fresh
        self._refreshed_at[wallet] = self._clock()
        self.bus.publish(REFRESHED, {"walletAddress": wallet, "count": len(fresh)})

    def apply_optimistic(self, mutation: Mutation) -> str:
        busy = [a for a in mutation.asset_ids if a in self._in_flight]
        if busy:
            raise MutationInFlight("another change to these assets is still pending", asset_ids=busy)

        view = self._views[mutation.wallet_address]
        snapshot = {a: view.get(a) for a in mutation.asset_ids}
        for asset_id, before in snapshot.items():
            if before is None:
                continue
            after = _apply(mutation.kind, before)
            if after is None:
                view.pop(asset_id, None)
            else:
                view[asset_id] = after

        mutation_id = uuid.uuid4().hex
        self._pending[mutation_id] = _Pending(mutation, snapshot)
        for asset_id in mutation.asset_ids:
            self._in_flight[asset_id] = mutation_id
        self.bus.publish(APPLIED, {
            "mutationId": mutation_id,
            "kind": mutation.kind.value,
            "walletAddress": mutation.wallet_address,
            "assetIds": list(mutation.asset_ids),
        })
        return mutation_id

    def _release(self, mutation_id: str) -> _Pending:
        pending = self._pending.pop(mutation_id, None)
        if pending is None:
            raise KeyError(f"unknown mutation {mutation_id}")
        for asset_id in pending.mutation.asset_ids:
            if self._in_flight.get(asset_id) == mutation_id:
                del self._in_flight[asset_id]
        return pending

    def commit(self, mutation_id: str, confirmed: Iterable[Asset] = (),
               removed: Iterable[str] = ()) -> List[str]:
        """Settle a mutation. Returns the ids whose optimistic value was replaced."""
        pending = self._release(mutation_id)
        view = self._views[pending.mutation.wallet_address]
        replaced = []
        for asset_id in removed:
            if view.pop(asset_id, None) is not None:
                replaced.append(asset_id)
        for asset in confirmed:
            if asset.wallet_address != pending.mutation.wallet_address:
                view.pop(asset.asset_id, None)
                continue
            if view.get(asset.asset_id) != asset:
                replaced.append(asset.asset_id)
            view[asset.asset_id] = asset
        self.bus.publish(COMMITTED, {
            "mutationId": mutation_id,
            "walletAddress": pending.mutation.wallet_address,
            "replaced": replaced,
        })
        return replaced

    def revert(self, mutation_id: str):
        pending = self._release(mutation_id)
        view = self._views[pending.mutation.wallet_address]
        for asset_id, before in pending.snapshot.items():
            if before is None:
                view.pop(asset_id, None)
            else:
                view[asset_id] = before
        self.bus.publish(REVERTED, {
            "mutationId": mutation_id,
            "walletAddress": pending.mutation.wallet_address,
            "assetIds": list(pending.mutation.asset_ids),
        })
