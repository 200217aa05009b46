# neftit/config.py
from dotenv import load_dotenv
import json
import logging
import os

load_dotenv()

logger = logging.getLogger(__name__)


def _csv(value):
    return [v.strip() for v in value.split(",") if v.strip()]


# ============================================================
# Chain / contracts
# ============================================================
CHAIN_ID = int(os.getenv("CHAIN_ID", "80002"))  # Polygon Amoy default

RPC_URL = os.getenv("RPC_URL", "https://rpc-amoy.polygon.technology/")

# Extra read endpoints, tried in order after RPC_URL
FALLBACK_RPC_URLS = _csv(os.getenv("FALLBACK_RPC_URLS", ""))

NFT_CONTRACT_ADDRESS = os.getenv(
    "NFT_CONTRACT_ADDRESS",
    "0x5Bb23220cC12585264fCd144C448eF222c8572A2",
)

STAKING_CONTRACT_ADDRESS = os.getenv(
    "STAKING_CONTRACT_ADDRESS",
    "0x1F2Dbf590b1c4C96c1ddb4FF55002Dbb33DA294e",
)

BURN_ADDRESS = os.getenv("BURN_ADDRESS", "0x000000000000000000000000000000000000dEaD")

BLOCK_EXPLORER = os.getenv("BLOCK_EXPLORER", "https://amoy.polygonscan.com/")

# Optional Foundry/Hardhat artifact directory; inline ABIs are used otherwise
ABI_DIR = os.getenv("ABI_DIR", "")

# ============================================================
# Timeouts / retry bounds (seconds)
# ============================================================
READ_TIMEOUT = float(os.getenv("READ_TIMEOUT", "15"))
READ_ATTEMPTS = int(os.getenv("READ_ATTEMPTS", "3"))
RECEIPT_TIMEOUT = float(os.getenv("RECEIPT_TIMEOUT", "60"))
WRITE_ATTEMPTS = int(os.getenv("WRITE_ATTEMPTS", "2"))
WRITE_RETRY_DELAY = float(os.getenv("WRITE_RETRY_DELAY", "3"))
RECOVERY_BLOCK_DEPTH = int(os.getenv("RECOVERY_BLOCK_DEPTH", "3"))
BREAKER_THRESHOLD = int(os.getenv("BREAKER_THRESHOLD", "3"))
BREAKER_COOLDOWN = float(os.getenv("BREAKER_COOLDOWN", "30"))

# ============================================================
# Approval
# ============================================================
# Strict mode refuses to assume approval when the chain can't be read
APPROVAL_STRICT = os.getenv("APPROVAL_STRICT", "false").lower() in ("1", "true", "yes")

# ============================================================
# Metadata
# ============================================================
IPFS_GATEWAY = os.getenv("IPFS_GATEWAY", "https://gateway.pinata.cloud/ipfs/")
METADATA_TIMEOUT = float(os.getenv("METADATA_TIMEOUT", "6"))
METADATA_CACHE_TTL = int(os.getenv("METADATA_CACHE_TTL", "3600"))

# ============================================================
# Burning
# ============================================================
# JSON list of {"min_rarity", "required_amount", "resulting_rarity"}
BURN_RULES = json.loads(os.getenv("BURN_RULES", "null") or "null")

POOL_ALLOCATION_ATTEMPTS = int(os.getenv("POOL_ALLOCATION_ATTEMPTS", "5"))
POOL_ALLOCATION_BACKOFF = float(os.getenv("POOL_ALLOCATION_BACKOFF", "1"))

# ============================================================
# App / DB
# ============================================================
DATABASE_URL = os.getenv("DATABASE_URL", "")

SWEEP_INTERVAL = int(os.getenv("SWEEP_INTERVAL", "300"))

VIEW_CACHE_TTL = int(os.getenv("VIEW_CACHE_TTL", "600"))

logger.info("Config loaded:")
logger.info("  CHAIN_ID: %s", CHAIN_ID)
logger.info("  NFT_CONTRACT: %s", NFT_CONTRACT_ADDRESS)
logger.info("  STAKING_CONTRACT: %s", STAKING_CONTRACT_ADDRESS)
logger.info("  RPC_URL: %s%s", RPC_URL[:48], "..." if len(RPC_URL) > 48 else "")
logger.info("  FALLBACK_RPC_URLS: %d", len(FALLBACK_RPC_URLS))
logger.info("  APPROVAL_STRICT: %s", APPROVAL_STRICT)
