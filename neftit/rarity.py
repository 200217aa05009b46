# neftit/rarity.py
import re
from enum import Enum
from typing import Optional


class Rarity(str, Enum):
    COMMON = "common"
    RARE = "rare"
    LEGENDARY = "legendary"
    PLATINUM = "platinum"
    SILVER = "silver"
    GOLD = "gold"


DEFAULT_RARITY = Rarity.COMMON

# Daily reward per staked asset, shared by on-chain and off-chain staking
DAILY_REWARDS = {
    Rarity.COMMON: 0.1,
    Rarity.RARE: 0.4,
    Rarity.LEGENDARY: 1.0,
    Rarity.PLATINUM: 2.5,
    Rarity.SILVER: 8.0,
    Rarity.GOLD: 30.0,
}

# Labels seen in third-party metadata
_ALIASES = {
    "epic": Rarity.LEGENDARY,
    "ultra rare": Rarity.LEGENDARY,
    "super rare": Rarity.RARE,
}

# Longest first so "ultra rare" wins over "rare"
_KEYWORDS = sorted(
    [r.value for r in Rarity] + list(_ALIASES),
    key=len,
    reverse=True,
)
_KEYWORD_RE = re.compile(r"\b(" + "|".join(re.escape(k) for k in _KEYWORDS) + r")\b")


def normalize_rarity(value) -> Optional[Rarity]:
    """Map a metadata rarity label onto the known set. Unknown labels give None."""
    if value is None:
        return None
    if isinstance(value, Rarity):
        return value
    t = re.sub(r"\s+", " ", str(value).strip().lower())
    if not t:
        return None
    if t in _ALIASES:
        return _ALIASES[t]
    try:
        return Rarity(t)
    except ValueError:
        return None


def rarity_from_text(text) -> Optional[Rarity]:
    """Find a rarity keyword inside a name or description."""
    if not text:
        return None
    m = _KEYWORD_RE.search(str(text).lower())
    return normalize_rarity(m.group(1)) if m else None


def daily_reward(rarity) -> float:
    r = normalize_rarity(rarity) or DEFAULT_RARITY
    return DAILY_REWARDS[r]
