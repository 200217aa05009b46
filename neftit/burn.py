# neftit/burn.py
"""
Burn rules and burn execution.

A selection of N assets of one rarity is consumed and exactly one pooled
asset of the resulting rarity is granted. On-chain assets are burned first,
by transferring them to the burn address one at a time; database rows are
only removed once every chain burn went through.
"""
import asyncio
import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import BURN_ADDRESS, BURN_RULES, POOL_ALLOCATION_ATTEMPTS, POOL_ALLOCATION_BACKOFF
from .errors import (
    NOTHING_HAPPENED,
    AlreadyStaked,
    BurnPartial,
    DecodeRecoveryFailed,
    InvalidBurnSet,
    LifecycleError,
    NotOwner,
    PoolExhausted,
)
from .metadata import gateway_url
from .models import (
    Asset,
    BurnRule,
    BurnTransaction,
    BurnType,
    Session,
    Store as AssetStore,
    utcnow,
)
from .rarity import Rarity
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_RULES = [
    BurnRule(Rarity.COMMON, 5, Rarity.PLATINUM),
    BurnRule(Rarity.RARE, 3, Rarity.PLATINUM),
    BurnRule(Rarity.LEGENDARY, 2, Rarity.PLATINUM),
    BurnRule(Rarity.PLATINUM, 5, Rarity.SILVER),
    BurnRule(Rarity.SILVER, 5, Rarity.GOLD),
]


class Strategy(str, Enum):
    PURE_OFFCHAIN = "pure_offchain"
    PURE_ONCHAIN = "pure_onchain"
    MIXED = "mixed"


_BURN_TYPES = {
    Strategy.PURE_OFFCHAIN: BurnType.OFFCHAIN,
    Strategy.PURE_ONCHAIN: BurnType.ONCHAIN,
    Strategy.MIXED: BurnType.HYBRID,
}


def validate_rules(rules: Iterable[BurnRule]) -> List[BurnRule]:
    rules = list(rules)
    seen = Counter((r.min_rarity, r.required_amount) for r in rules)
    dupes = [k for k, n in seen.items() if n > 1]
    if dupes:
        raise ValueError(
            "burn rules overlap on " + ", ".join(f"{r.value} x{n}" for r, n in dupes)
        )
    return rules


def load_rules(raw=BURN_RULES) -> List[BurnRule]:
    if not raw:
        return list(DEFAULT_RULES)
    return validate_rules(BurnRule.from_dict(d) for d in raw)


@dataclass(frozen=True)
class BurnPlan:
    wallet_address: str
    assets: Tuple[Asset, ...]
    groups: Dict[Tuple[Rarity, AssetStore], List[str]]
    strategy: Strategy
    rule: BurnRule

    @property
    def burn_type(self) -> BurnType:
        return _BURN_TYPES[self.strategy]

    @property
    def asset_ids(self) -> List[str]:
        return [a.asset_id for a in self.assets]

    @property
    def onchain(self) -> List[Asset]:
        return [a for a in self.assets if a.store is AssetStore.ONCHAIN]

    @property
    def offchain(self) -> List[Asset]:
        return [a for a in self.assets if a.store is AssetStore.OFFCHAIN]


@dataclass(frozen=True)
class BurnOutcome:
    transaction: BurnTransaction
    result_asset: Optional[Asset]
    tx_hashes: List[str] = field(default_factory=list)

    def as_dict(self):
        t = self.transaction
        return {
            "burnType": t.burn_type.value,
            "burnedAssetIds": t.burned_asset_ids,
            "resultRarity": t.result_rarity.value,
            "resultAsset": self.result_asset.as_view() if self.result_asset else None,
            "chainTxHash": t.chain_tx_hash,
            "txHashes": self.tx_hashes,
            "timestamp": t.timestamp,
        }


class BurnRuleEngine:
    def __init__(
        self,
        store: Store,
        gateway,
        rules: Optional[Sequence[BurnRule]] = None,
        burn_address: str = BURN_ADDRESS,
        allocation_attempts: int = POOL_ALLOCATION_ATTEMPTS,
        allocation_backoff: float = POOL_ALLOCATION_BACKOFF,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.rules = validate_rules(rules) if rules is not None else load_rules()
        self.burn_address = burn_address.lower()
        self.allocation_attempts = allocation_attempts
        self.allocation_backoff = allocation_backoff
        self._sleep = sleep

    def match_rule(self, rarity: Rarity, count: int) -> Optional[BurnRule]:
        for rule in self.rules:
            if rule.min_rarity is rarity and rule.required_amount == count:
                return rule
        return None

    def classify(self, assets: Sequence[Asset]) -> BurnPlan:
        if not assets:
            raise InvalidBurnSet("nothing selected to burn")

        ids = [a.asset_id for a in assets]
        if len(set(ids)) != len(ids):
            raise InvalidBurnSet("the same asset was selected twice", asset_ids=ids)

        wallets = {a.wallet_address for a in assets}
        if len(wallets) != 1:
            raise NotOwner("burn selection spans more than one wallet")

        staked = [a.asset_id for a in assets if a.is_staked]
        if staked:
            raise AlreadyStaked("staked assets can't be burned", asset_ids=staked)

        rarities = {a.rarity for a in assets}
        if len(rarities) != 1:
            raise InvalidBurnSet(
                "all burned assets must share one rarity",
                rarities=sorted(r.value for r in rarities),
            )
        rarity = rarities.pop()
        rule = self.match_rule(rarity, len(assets))
        if rule is None:
            raise InvalidBurnSet(
                f"no rule burns {len(assets)} {rarity.value}",
                rarity=rarity.value,
                count=len(assets),
            )

        groups: Dict[Tuple[Rarity, AssetStore], List[str]] = defaultdict(list)
        for a in assets:
            groups[(a.rarity, a.store)].append(a.asset_id)
        stores = {a.store for a in assets}
        if stores == {AssetStore.OFFCHAIN}:
            strategy = Strategy.PURE_OFFCHAIN
        elif stores == {AssetStore.ONCHAIN}:
            strategy = Strategy.PURE_ONCHAIN
        else:
            strategy = Strategy.MIXED

        return BurnPlan(
            wallet_address=wallets.pop(),
            assets=tuple(assets),
            groups=dict(groups),
            strategy=strategy,
            rule=rule,
        )

    async def execute(self, session: Session, plan: BurnPlan) -> BurnOutcome:
        wallet = session.wallet_address
        if plan.wallet_address != wallet:
            raise NotOwner("burn plan belongs to another wallet")
        result_rarity = plan.rule.resulting_rarity

        if self.store.pool_available(result_rarity) == 0:
            raise PoolExhausted(
                f"no {result_rarity.value} assets left to grant",
                outcome=NOTHING_HAPPENED,
                rarity=result_rarity.value,
            )

        # 1. chain burns, one token at a time
        tx_hashes: List[str] = []
        burned: List[Asset] = []
        for asset in plan.onchain:
            try:
                res = await self.gateway.transfer_from(
                    session, self.burn_address, asset.token_id,
                    precondition=self._owned_by(wallet, asset.token_id),
                )
            except LifecycleError as e:
                if not burned:
                    raise
                # Already-burned tokens are gone for good; drop their rows
                self.store.delete_assets(a.asset_id for a in burned)
                # An undecodable transfer may have landed; its row is kept
                uncertain = [asset.token_id] if isinstance(e, DecodeRecoveryFailed) else []
                failed = [a.token_id for a in plan.onchain
                          if a not in burned and a.token_id not in uncertain]
                logger.error("partial burn for %s: burned=%s failed=%s uncertain=%s (%s)",
                             wallet, [a.token_id for a in burned], failed, uncertain, e.kind)
                raise BurnPartial(
                    f"{len(burned)} of {len(plan.onchain)} tokens burned before failure",
                    succeeded=[a.token_id for a in burned],
                    failed=failed,
                    uncertain=uncertain,
                    tx_hashes=tx_hashes,
                    cause=e,
                ) from e
            if res.tx_hash:
                tx_hashes.append(res.tx_hash)
            burned.append(asset)

        # 2. database rows
        self.store.delete_assets(plan.asset_ids)

        # 3. grant, 4. audit
        meta = {
            "strategy": plan.strategy.value,
            "offchain_count": len(plan.offchain),
            "onchain_count": len(plan.onchain),
            "burn_address": self.burn_address,
            "tx_hashes": tx_hashes,
        }
        try:
            entry = await self._allocate(result_rarity, wallet)
        except PoolExhausted as e:
            meta["grant_error"] = e.kind
            self._audit(wallet, plan, None, tx_hashes, meta)
            raise

        meta["pool_id"] = entry["pool_id"]
        result = self._granted_asset(wallet, result_rarity, entry)
        self.store.upsert_asset(result)
        tx = self._audit(wallet, plan, result.asset_id, tx_hashes, meta)
        logger.info("burned %d %s for %s -> %s (%s)",
                    len(plan.assets), plan.rule.min_rarity.value, wallet,
                    result_rarity.value, plan.burn_type.value)
        return BurnOutcome(transaction=tx, result_asset=result, tx_hashes=tx_hashes)

    def _owned_by(self, wallet: str, token_id: int):
        async def check():
            owner = await self.gateway.owner_of(token_id)
            if owner != wallet:
                raise NotOwner(f"token {token_id} is owned by {owner}", token_id=token_id)
        return check

    async def _allocate(self, rarity: Rarity, wallet: str) -> dict:
        for attempt in range(self.allocation_attempts):
            entry = self.store.allocate_pool_entry(rarity, wallet)
            if entry is not None:
                return entry
            if self.store.pool_available(rarity) == 0:
                break
            await self._sleep(self.allocation_backoff * 2 ** attempt)
        raise PoolExhausted(
            f"could not allocate a {rarity.value} asset",
            rarity=rarity.value,
        )

    def _granted_asset(self, wallet: str, rarity: Rarity, entry: dict) -> Asset:
        metadata_cid = entry.get("metadata_cid") or entry["cid"]
        return Asset(
            asset_id=uuid.uuid4().hex,
            wallet_address=wallet,
            rarity=rarity,
            store=AssetStore.OFFCHAIN,
            name=f"{rarity.value.title()} NFT",
            image=entry.get("image_url") or gateway_url(entry["cid"]) or "",
            metadata_uri=f"ipfs://{metadata_cid}",
            last_reconciled_at=utcnow(),
        )

    def _audit(self, wallet, plan, result_asset_id, tx_hashes, meta) -> BurnTransaction:
        tx = BurnTransaction(
            wallet_address=wallet,
            burned_asset_ids=plan.asset_ids,
            result_rarity=plan.rule.resulting_rarity,
            burn_type=plan.burn_type,
            chain_tx_hash=tx_hashes[-1] if tx_hashes else None,
            timestamp=utcnow(),
            result_asset_id=result_asset_id,
            metadata=meta,
        )
        self.store.insert_burn_transaction(tx)
        return tx
