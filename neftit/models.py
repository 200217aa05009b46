# neftit/models.py
"""
Domain records shared by the state machine, reconciler, burn engine and view
cache. Rows come back from `store.py` as these dataclasses; the UI sees them
through `as_view()`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from eth_account.signers.local import LocalAccount

from .rarity import Rarity, normalize_rarity

ONCHAIN_PREFIX = "onchain_"

# Id spellings used by older clients for on-chain assets
_LEGACY_PREFIXES = ("onchain_", "blockchain_", "staked_onchain_")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_wallet(address: str) -> str:
    address = (address or "").strip().lower()
    if not address:
        raise ValueError("wallet address is required")
    return address


def onchain_asset_id(token_id: int) -> str:
    return f"{ONCHAIN_PREFIX}{int(token_id)}"


def normalize_asset_id(asset_id) -> str:
    """
    Canonical asset id. On-chain ids collapse to ``onchain_<tokenId>`` whether
    they arrive as ``42``, ``"42"``, ``"onchain_42"`` or ``"blockchain_42"``.
    Off-chain ids (uuids) are returned trimmed.
    """
    if isinstance(asset_id, int):
        return onchain_asset_id(asset_id)
    t = str(asset_id).strip()
    if t.isdigit():
        return onchain_asset_id(int(t))
    for prefix in _LEGACY_PREFIXES:
        if t.startswith(prefix) and t[len(prefix):].isdigit():
            return onchain_asset_id(int(t[len(prefix):]))
    return t


def token_id_of(asset_id: str) -> Optional[int]:
    m = re.fullmatch(ONCHAIN_PREFIX + r"(\d+)", normalize_asset_id(asset_id))
    return int(m.group(1)) if m else None


class Store(str, Enum):
    OFFCHAIN = "offchain"
    ONCHAIN = "onchain"


class StakeStatus(str, Enum):
    UNSTAKED = "unstaked"
    STAKED = "staked"


class StakingSource(str, Enum):
    NONE = "none"
    OFFCHAIN = "offchain"
    ONCHAIN = "onchain"


class PendingOp(str, Enum):
    CLAIMING = "claiming"
    BURNING = "burning"


class BurnType(str, Enum):
    OFFCHAIN = "offchain"
    ONCHAIN = "onchain"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class Asset:
    asset_id: str
    wallet_address: str
    rarity: Rarity
    store: Store
    stake_status: StakeStatus = StakeStatus.UNSTAKED
    staking_source: StakingSource = StakingSource.NONE
    token_id: Optional[int] = None
    staked_at: Optional[str] = None
    last_reconciled_at: Optional[str] = None
    pending_op: Optional[PendingOp] = None
    name: str = ""
    image: str = ""
    metadata_uri: str = ""

    def __post_init__(self):
        staked = self.stake_status is StakeStatus.STAKED
        if staked == (self.staking_source is StakingSource.NONE):
            raise ValueError(
                f"{self.asset_id}: stake_status={self.stake_status.value} "
                f"with staking_source={self.staking_source.value}"
            )
        if self.store is Store.ONCHAIN and self.staking_source is StakingSource.OFFCHAIN:
            raise ValueError(f"{self.asset_id}: on-chain asset can't be staked off-chain")
        if self.store is Store.ONCHAIN and self.token_id is None:
            raise ValueError(f"{self.asset_id}: on-chain asset without token_id")

    @property
    def is_staked(self) -> bool:
        return self.stake_status is StakeStatus.STAKED

    def staked(self, source: StakingSource, at: Optional[str] = None) -> "Asset":
        return replace(
            self,
            stake_status=StakeStatus.STAKED,
            staking_source=source,
            staked_at=at or utcnow(),
        )

    def unstaked(self) -> "Asset":
        return replace(
            self,
            stake_status=StakeStatus.UNSTAKED,
            staking_source=StakingSource.NONE,
            staked_at=None,
        )

    def as_view(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "tokenId": self.token_id,
            "walletAddress": self.wallet_address,
            "rarity": self.rarity.value,
            "store": self.store.value,
            "stakeStatus": self.stake_status.value,
            "stakingSource": self.staking_source.value,
            "isStaked": self.is_staked,
            "stakedAt": self.staked_at,
            "lastReconciledAt": self.last_reconciled_at,
            "pendingOp": self.pending_op.value if self.pending_op else None,
            "name": self.name,
            "image": self.image,
        }


@dataclass(frozen=True)
class StakeRecord:
    asset_id: str
    wallet_address: str
    rarity: Rarity
    daily_reward: float
    staked_at: str
    source: StakingSource
    unstaked_at: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.unstaked_at is None


@dataclass(frozen=True)
class BurnRule:
    min_rarity: Rarity
    required_amount: int
    resulting_rarity: Rarity

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BurnRule":
        lo = normalize_rarity(d["min_rarity"])
        hi = normalize_rarity(d["resulting_rarity"])
        if lo is None or hi is None:
            raise ValueError(f"unknown rarity in burn rule {d!r}")
        amount = int(d["required_amount"])
        if amount < 1:
            raise ValueError(f"required_amount must be positive: {d!r}")
        return cls(lo, amount, hi)


@dataclass(frozen=True)
class BurnTransaction:
    wallet_address: str
    burned_asset_ids: List[str]
    result_rarity: Rarity
    burn_type: BurnType
    chain_tx_hash: Optional[str]
    timestamp: str
    result_asset_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Session:
    """
    Who is acting. ``account`` signs locally when present; without it writes
    go through the node's ``eth_sendTransaction`` for ``wallet_address``.
    """
    wallet_address: str
    account: Optional[LocalAccount] = None

    def __post_init__(self):
        object.__setattr__(self, "wallet_address", normalize_wallet(self.wallet_address))
        if self.account is not None and self.account.address.lower() != self.wallet_address:
            raise ValueError("session account does not match wallet_address")


# ────────────────────────────────────────────────────────────
# Token metadata
# ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Resolved:
    name: str
    image: str
    rarity: Optional[Rarity]
    attributes: List[Dict[str, Any]] = field(default_factory=list)
    description: str = ""


@dataclass(frozen=True)
class Unresolved:
    reason: str


Metadata = Union[Resolved, Unresolved]
