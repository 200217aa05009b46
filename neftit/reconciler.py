# neftit/reconciler.py
"""
Dual-store writer. The only place StakeRecords are written, and the place
where on-chain truth is folded back into the relational store.

Every method is safe to replay: records are upserted on
(wallet, asset, source), closing an already-closed record is a no-op, and the
orphan sweep converges on whatever getStakeInfo reports.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional, Tuple

from .errors import ChainReverted, LifecycleError, NotOwner
from .metadata import MetadataResolver, effective_rarity
from .models import (
    Asset,
    Metadata,
    StakeRecord,
    StakingSource,
    Store as AssetStore,
    Unresolved,
    normalize_wallet,
    onchain_asset_id,
    utcnow,
)
from .rarity import daily_reward
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class OrphanReport:
    wallet_address: str
    checked: int = 0
    inserted: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)

    def as_dict(self):
        return {
            "walletAddress": self.wallet_address,
            "checked": self.checked,
            "inserted": self.inserted,
            "closed": self.closed,
        }


class Reconciler:
    def __init__(self, store: Store, gateway, resolver: MetadataResolver):
        self.store = store
        self.gateway = gateway
        self.resolver = resolver

    async def token_metadata(self, token_id: int) -> Tuple[str, Metadata]:
        try:
            uri = await self.gateway.token_uri(token_id)
        except LifecycleError as e:
            logger.warning("tokenURI(%s) unreadable: %s", token_id, e.message)
            return "", Unresolved(f"tokenURI unreadable: {e.kind}")
        return uri, await self.resolver.resolve(uri)

    # ────────────────────────────────────────────────────────
    # Staking
    # ────────────────────────────────────────────────────────

    async def record_onchain_stake(
        self, wallet: str, token_id: int, tx_hash: Optional[str] = None
    ) -> StakeRecord:
        wallet = normalize_wallet(wallet)
        asset_id = onchain_asset_id(token_id)
        existing = self.store.get_asset(asset_id)

        uri, meta = await self.token_metadata(token_id)
        rarity = effective_rarity(meta, existing.rarity if existing else None)
        now = utcnow()

        self.store.upsert_stake_record(StakeRecord(
            asset_id=asset_id,
            wallet_address=wallet,
            rarity=rarity,
            daily_reward=daily_reward(rarity),
            staked_at=now,
            source=StakingSource.ONCHAIN,
            tx_hash=tx_hash,
        ))

        base = existing or _asset_from_metadata(wallet, token_id, uri, meta, rarity)
        if base.is_staked and base.staking_source is StakingSource.ONCHAIN:
            staked = base
        else:
            staked = base.unstaked().staked(StakingSource.ONCHAIN, at=now)
        self.store.upsert_asset(replace(
            staked,
            wallet_address=wallet,
            last_reconciled_at=now,
            pending_op=None,
        ))
        logger.info("recorded on-chain stake %s for %s (%s)", asset_id, wallet, rarity.value)
        return self.store.get_stake_record(wallet, asset_id, StakingSource.ONCHAIN)

    def record_offchain_stake(self, asset: Asset) -> StakeRecord:
        now = utcnow()
        self.store.upsert_stake_record(StakeRecord(
            asset_id=asset.asset_id,
            wallet_address=asset.wallet_address,
            rarity=asset.rarity,
            daily_reward=daily_reward(asset.rarity),
            staked_at=now,
            source=StakingSource.OFFCHAIN,
        ))
        self.store.upsert_asset(replace(
            asset.staked(StakingSource.OFFCHAIN, at=now),
            last_reconciled_at=now,
        ))
        return self.store.get_stake_record(asset.wallet_address, asset.asset_id, StakingSource.OFFCHAIN)

    def reconcile_unstake(self, wallet: str, asset: Asset, source: Optional[StakingSource] = None) -> bool:
        """Close the active record (never delete it) and mark the row unstaked."""
        wallet = normalize_wallet(wallet)
        source = source or asset.staking_source
        closed = False
        if source is not StakingSource.NONE:
            closed = self.store.close_stake_record(wallet, asset.asset_id, source)
        current = self.store.get_asset(asset.asset_id)
        if current is not None and current.wallet_address == wallet:
            self.store.upsert_asset(replace(
                current.unstaked(),
                last_reconciled_at=utcnow(),
                pending_op=None,
            ))
        return closed

    # ────────────────────────────────────────────────────────
    # Claims and burns
    # ────────────────────────────────────────────────────────

    def record_claim(
        self, offchain: Asset, token_id: int, metadata_uri: str = ""
    ) -> Asset:
        onchain = Asset(
            asset_id=onchain_asset_id(token_id),
            wallet_address=offchain.wallet_address,
            rarity=offchain.rarity,
            store=AssetStore.ONCHAIN,
            token_id=int(token_id),
            last_reconciled_at=utcnow(),
            name=offchain.name,
            image=offchain.image,
            metadata_uri=metadata_uri or offchain.metadata_uri,
        )
        self.store.swap_claimed(offchain.asset_id, onchain)
        logger.info("claimed %s as %s", offchain.asset_id, onchain.asset_id)
        return onchain

    # ────────────────────────────────────────────────────────
    # Sweeps
    # ────────────────────────────────────────────────────────

    async def recover_orphans(self, wallet: str) -> OrphanReport:
        """
        Bring on-chain StakeRecords in line with getStakeInfo. If the chain
        can't be read nothing is touched and the error propagates.
        """
        wallet = normalize_wallet(wallet)
        info = await self.gateway.get_stake_info(wallet)
        report = OrphanReport(wallet_address=wallet, checked=len(info.token_ids))

        on_chain = {onchain_asset_id(t): t for t in info.token_ids}
        active = {r.asset_id: r for r in self.store.stake_records(wallet, StakingSource.ONCHAIN)}

        for asset_id, token_id in on_chain.items():
            row = self.store.get_asset(asset_id)
            in_sync = (
                asset_id in active
                and row is not None
                and row.staking_source is StakingSource.ONCHAIN
                and row.wallet_address == wallet
            )
            if in_sync:
                continue
            await self.record_onchain_stake(wallet, token_id)
            report.inserted.append(asset_id)

        for asset_id, rec in active.items():
            if asset_id in on_chain:
                continue
            self.store.close_stake_record(wallet, asset_id, StakingSource.ONCHAIN)
            row = self.store.get_asset(asset_id)
            if row is not None and row.wallet_address == wallet and row.is_staked:
                self.store.upsert_asset(replace(row.unstaked(), last_reconciled_at=utcnow()))
            report.closed.append(asset_id)

        if report.inserted or report.closed:
            logger.info("orphan sweep for %s: inserted=%s closed=%s",
                        wallet, report.inserted, report.closed)
        return report

    async def import_onchain_asset(self, wallet: str, token_id: int) -> Asset:
        """Materialize a row for a token the database has never seen."""
        wallet = normalize_wallet(wallet)
        try:
            owner = await self.gateway.owner_of(token_id)
        except ChainReverted as e:
            raise NotOwner(f"token {token_id} does not exist", token_id=token_id) from e

        staked = False
        if owner != wallet:
            if owner != self.gateway.staking_address:
                raise NotOwner(f"token {token_id} is owned by {owner}", token_id=token_id)
            info = await self.gateway.get_stake_info(wallet)
            if int(token_id) not in info.token_ids:
                raise NotOwner(f"token {token_id} is staked by another wallet", token_id=token_id)
            staked = True

        if staked:
            await self.record_onchain_stake(wallet, token_id)
            return self.store.get_asset(onchain_asset_id(token_id))

        uri, meta = await self.token_metadata(token_id)
        asset = _asset_from_metadata(wallet, token_id, uri, meta, effective_rarity(meta))
        self.store.upsert_asset(asset)
        logger.info("imported %s for %s", asset.asset_id, wallet)
        return asset


def _asset_from_metadata(wallet, token_id, uri, meta, rarity) -> Asset:
    name = getattr(meta, "name", "") or f"NEFTIT #{token_id}"
    return Asset(
        asset_id=onchain_asset_id(token_id),
        wallet_address=wallet,
        rarity=rarity,
        store=AssetStore.ONCHAIN,
        token_id=int(token_id),
        last_reconciled_at=utcnow(),
        name=name,
        image=getattr(meta, "image", ""),
        metadata_uri=uri,
    )
