# neftit/store.py
"""
Relational side of the dual store.

All SQL lives here. Wallets are lower-cased and asset ids normalized before
they reach a query; writes are upserts so replays land on the same row.
"""
import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .models import (
    Asset,
    BurnTransaction,
    BurnType,
    PendingOp,
    StakeRecord,
    StakeStatus,
    StakingSource,
    Store as AssetStore,
    normalize_asset_id,
    normalize_wallet,
    utcnow,
)
from .rarity import DEFAULT_RARITY, normalize_rarity

logger = logging.getLogger(__name__)

_ASSET_COLUMNS = (
    "asset_id, token_id, wallet_address, rarity, store, stake_status, "
    "staking_source, staked_at, last_reconciled_at, pending_op, name, image, "
    "metadata_uri"
)


def _asset_from_row(r) -> Asset:
    return Asset(
        asset_id=r["asset_id"],
        wallet_address=r["wallet_address"],
        rarity=normalize_rarity(r["rarity"]) or DEFAULT_RARITY,
        store=AssetStore(r["store"]),
        stake_status=StakeStatus(r["stake_status"]),
        staking_source=StakingSource(r["staking_source"]),
        token_id=int(r["token_id"]) if r["token_id"] is not None else None,
        staked_at=r["staked_at"],
        last_reconciled_at=r["last_reconciled_at"],
        pending_op=PendingOp(r["pending_op"]) if r["pending_op"] else None,
        name=r["name"] or "",
        image=r["image"] or "",
        metadata_uri=r["metadata_uri"] or "",
    )


def _asset_params(a: Asset) -> Dict[str, Any]:
    return {
        "asset_id": normalize_asset_id(a.asset_id),
        "token_id": a.token_id,
        "wallet_address": normalize_wallet(a.wallet_address),
        "rarity": a.rarity.value,
        "store": a.store.value,
        "stake_status": a.stake_status.value,
        "staking_source": a.staking_source.value,
        "staked_at": a.staked_at,
        "last_reconciled_at": a.last_reconciled_at,
        "pending_op": a.pending_op.value if a.pending_op else None,
        "name": a.name,
        "image": a.image,
        "metadata_uri": a.metadata_uri,
        "created_at": utcnow(),
    }


def _record_from_row(r) -> StakeRecord:
    return StakeRecord(
        asset_id=r["asset_id"],
        wallet_address=r["wallet_address"],
        rarity=normalize_rarity(r["rarity"]) or DEFAULT_RARITY,
        daily_reward=float(r["daily_reward"]),
        staked_at=r["staked_at"],
        source=StakingSource(r["source"]),
        unstaked_at=r["unstaked_at"],
        tx_hash=r["tx_hash"],
    )


_UPSERT_ASSET = f"""
    INSERT INTO assets ({_ASSET_COLUMNS}, created_at)
    VALUES (:asset_id, :token_id, :wallet_address, :rarity, :store,
            :stake_status, :staking_source, :staked_at, :last_reconciled_at,
            :pending_op, :name, :image, :metadata_uri, :created_at)
    ON CONFLICT (asset_id) DO UPDATE SET
        token_id = excluded.token_id,
        wallet_address = excluded.wallet_address,
        rarity = excluded.rarity,
        store = excluded.store,
        stake_status = excluded.stake_status,
        staking_source = excluded.staking_source,
        staked_at = excluded.staked_at,
        last_reconciled_at = excluded.last_reconciled_at,
        pending_op = excluded.pending_op,
        name = excluded.name,
        image = excluded.image,
        metadata_uri = excluded.metadata_uri
"""


class Store:
    def __init__(self, session_factory: sessionmaker):
        self._sf = session_factory

    # ────────────────────────────────────────────────────────
    # Assets
    # ────────────────────────────────────────────────────────

    def get_asset(self, asset_id) -> Optional[Asset]:
        with self._sf() as db:
            row = db.execute(
                text(f"SELECT {_ASSET_COLUMNS} FROM assets WHERE asset_id = :id"),
                {"id": normalize_asset_id(asset_id)},
            ).mappings().first()
        return _asset_from_row(row) if row else None

    def list_assets(self, wallet: str) -> List[Asset]:
        with self._sf() as db:
            rows = db.execute(
                text(
                    f"SELECT {_ASSET_COLUMNS} FROM assets "
                    "WHERE wallet_address = :w ORDER BY created_at, asset_id"
                ),
                {"w": normalize_wallet(wallet)},
            ).mappings().all()
        return [_asset_from_row(r) for r in rows]

    def wallets(self) -> List[str]:
        """Wallets with at least one on-chain asset or stake record."""
        with self._sf() as db:
            rows = db.execute(text(
                "SELECT wallet_address FROM assets WHERE store = 'onchain' "
                "UNION SELECT wallet_address FROM stake_records"
            )).all()
        return sorted({r[0] for r in rows})

    def upsert_asset(self, asset: Asset) -> Asset:
        with self._sf() as db:
            db.execute(text(_UPSERT_ASSET), _asset_params(asset))
            db.commit()
        return asset

    def delete_assets(self, asset_ids: Iterable[str]) -> int:
        ids = [normalize_asset_id(a) for a in asset_ids]
        deleted = 0
        with self._sf() as db:
            for asset_id in ids:
                deleted += db.execute(
                    text("DELETE FROM assets WHERE asset_id = :id"),
                    {"id": asset_id},
                ).rowcount
            db.commit()
        return deleted

    def set_pending(self, asset_ids: Iterable[str], op: Optional[PendingOp]) -> None:
        with self._sf() as db:
            for asset_id in asset_ids:
                db.execute(
                    text("UPDATE assets SET pending_op = :op WHERE asset_id = :id"),
                    {"op": op.value if op else None, "id": normalize_asset_id(asset_id)},
                )
            db.commit()

    def swap_claimed(self, offchain_id: str, onchain: Asset) -> None:
        """Replace an off-chain row by its minted on-chain row in one transaction."""
        with self._sf() as db:
            db.execute(
                text("DELETE FROM assets WHERE asset_id = :id"),
                {"id": normalize_asset_id(offchain_id)},
            )
            db.execute(text(_UPSERT_ASSET), _asset_params(onchain))
            db.commit()

    # ────────────────────────────────────────────────────────
    # Stake records
    # ────────────────────────────────────────────────────────

    def upsert_stake_record(self, rec: StakeRecord) -> None:
        # Re-staking reopens the same (wallet, asset, source) row; an active
        # row keeps the rarity and reward it was staked with
        with self._sf() as db:
            db.execute(
                text("""
                    INSERT INTO stake_records
                        (wallet_address, asset_id, source, rarity, daily_reward,
                         staked_at, unstaked_at, tx_hash)
                    VALUES (:w, :a, :s, :r, :reward, :staked_at, NULL, :tx)
                    ON CONFLICT (wallet_address, asset_id, source) DO UPDATE SET
                        rarity = CASE
                            WHEN stake_records.unstaked_at IS NULL
                            THEN stake_records.rarity
                            ELSE excluded.rarity
                        END,
                        daily_reward = CASE
                            WHEN stake_records.unstaked_at IS NULL
                            THEN stake_records.daily_reward
                            ELSE excluded.daily_reward
                        END,
                        staked_at = CASE
                            WHEN stake_records.unstaked_at IS NULL
                            THEN stake_records.staked_at
                            ELSE excluded.staked_at
                        END,
                        unstaked_at = NULL,
                        tx_hash = COALESCE(excluded.tx_hash, stake_records.tx_hash)
                """),
                {
                    "w": normalize_wallet(rec.wallet_address),
                    "a": normalize_asset_id(rec.asset_id),
                    "s": rec.source.value,
                    "r": rec.rarity.value,
                    "reward": rec.daily_reward,
                    "staked_at": rec.staked_at,
                    "tx": rec.tx_hash,
                },
            )
            db.commit()

    def close_stake_record(
        self, wallet: str, asset_id: str, source: StakingSource, at: Optional[str] = None
    ) -> bool:
        with self._sf() as db:
            n = db.execute(
                text("""
                    UPDATE stake_records SET unstaked_at = :at
                    WHERE wallet_address = :w AND asset_id = :a AND source = :s
                      AND unstaked_at IS NULL
                """),
                {
                    "at": at or utcnow(),
                    "w": normalize_wallet(wallet),
                    "a": normalize_asset_id(asset_id),
                    "s": source.value,
                },
            ).rowcount
            db.commit()
        return n > 0

    def get_stake_record(self, wallet: str, asset_id: str, source: StakingSource) -> Optional[StakeRecord]:
        with self._sf() as db:
            row = db.execute(
                text("""
                    SELECT wallet_address, asset_id, source, rarity, daily_reward,
                           staked_at, unstaked_at, tx_hash
                    FROM stake_records
                    WHERE wallet_address = :w AND asset_id = :a AND source = :s
                """),
                {"w": normalize_wallet(wallet), "a": normalize_asset_id(asset_id), "s": source.value},
            ).mappings().first()
        return _record_from_row(row) if row else None

    def stake_records(
        self,
        wallet: str,
        source: Optional[StakingSource] = None,
        active_only: bool = True,
    ) -> List[StakeRecord]:
        sql = (
            "SELECT wallet_address, asset_id, source, rarity, daily_reward, "
            "staked_at, unstaked_at, tx_hash FROM stake_records WHERE wallet_address = :w"
        )
        params: Dict[str, Any] = {"w": normalize_wallet(wallet)}
        if source is not None:
            sql += " AND source = :s"
            params["s"] = source.value
        if active_only:
            sql += " AND unstaked_at IS NULL"
        with self._sf() as db:
            rows = db.execute(text(sql + " ORDER BY asset_id"), params).mappings().all()
        return [_record_from_row(r) for r in rows]

    # ────────────────────────────────────────────────────────
    # Burn pool
    # ────────────────────────────────────────────────────────

    def add_pool_entry(
        self, rarity, cid: str, metadata_cid: str = "", image_url: str = ""
    ) -> str:
        pool_id = uuid.uuid4().hex
        with self._sf() as db:
            db.execute(
                text("""
                    INSERT INTO burn_pool
                        (pool_id, rarity, cid, metadata_cid, image_url, is_distributed)
                    VALUES (:id, :r, :cid, :mcid, :img, :no)
                """),
                {
                    "id": pool_id,
                    "r": normalize_rarity(rarity).value,
                    "cid": cid,
                    "mcid": metadata_cid,
                    "img": image_url,
                    "no": False,
                },
            )
            db.commit()
        return pool_id

    def pool_available(self, rarity) -> int:
        with self._sf() as db:
            return int(db.execute(
                text("SELECT COUNT(*) FROM burn_pool WHERE rarity = :r AND is_distributed = :no"),
                {"r": normalize_rarity(rarity).value, "no": False},
            ).scalar() or 0)

    def claim_pool_entry(self, pool_id: str, wallet: str) -> bool:
        """Compare-and-swap on is_distributed. True only for the single winner."""
        with self._sf() as db:
            n = db.execute(
                text("""
                    UPDATE burn_pool
                    SET is_distributed = :yes, distributed_to = :w, distributed_at = :at
                    WHERE pool_id = :id AND is_distributed = :no
                """),
                {
                    "yes": True,
                    "no": False,
                    "w": normalize_wallet(wallet),
                    "at": utcnow(),
                    "id": pool_id,
                },
            ).rowcount
            db.commit()
        return n == 1

    def allocate_pool_entry(self, rarity, wallet: str) -> Optional[Dict[str, Any]]:
        """
        Take one undistributed pool entry of exactly ``rarity``.
        Returns None when every candidate was taken by someone else first.
        """
        with self._sf() as db:
            rows = db.execute(
                text("""
                    SELECT pool_id, rarity, cid, metadata_cid, image_url
                    FROM burn_pool
                    WHERE rarity = :r AND is_distributed = :no
                    ORDER BY pool_id
                    LIMIT 5
                """),
                {"r": normalize_rarity(rarity).value, "no": False},
            ).mappings().all()
        for row in rows:
            if self.claim_pool_entry(row["pool_id"], wallet):
                return dict(row)
            logger.debug("pool entry %s taken concurrently", row["pool_id"])
        return None

    # ────────────────────────────────────────────────────────
    # Burn transactions
    # ────────────────────────────────────────────────────────

    def insert_burn_transaction(self, tx: BurnTransaction) -> str:
        burn_id = uuid.uuid4().hex
        with self._sf() as db:
            db.execute(
                text("""
                    INSERT INTO burn_transactions
                        (burn_id, wallet_address, burned_asset_ids, result_rarity,
                         result_asset_id, burn_type, chain_tx_hash, metadata, created_at)
                    VALUES (:id, :w, :burned, :rr, :ra, :bt, :tx, :meta, :at)
                """),
                {
                    "id": burn_id,
                    "w": normalize_wallet(tx.wallet_address),
                    "burned": json.dumps(list(tx.burned_asset_ids)),
                    "rr": tx.result_rarity.value,
                    "ra": tx.result_asset_id,
                    "bt": tx.burn_type.value,
                    "tx": tx.chain_tx_hash,
                    "meta": json.dumps(tx.metadata, default=str),
                    "at": tx.timestamp,
                },
            )
            db.commit()
        return burn_id

    def burn_transactions(self, wallet: str) -> List[BurnTransaction]:
        with self._sf() as db:
            rows = db.execute(
                text("""
                    SELECT wallet_address, burned_asset_ids, result_rarity,
                           result_asset_id, burn_type, chain_tx_hash, metadata, created_at
                    FROM burn_transactions
                    WHERE wallet_address = :w
                    ORDER BY created_at
                """),
                {"w": normalize_wallet(wallet)},
            ).mappings().all()
        return [
            BurnTransaction(
                wallet_address=r["wallet_address"],
                burned_asset_ids=json.loads(r["burned_asset_ids"]),
                result_rarity=normalize_rarity(r["result_rarity"]) or DEFAULT_RARITY,
                burn_type=BurnType(r["burn_type"]),
                chain_tx_hash=r["chain_tx_hash"],
                timestamp=r["created_at"],
                result_asset_id=r["result_asset_id"],
                metadata=json.loads(r["metadata"] or "{}"),
            )
            for r in rows
        ]
