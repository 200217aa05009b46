# neftit/chain/abi.py
"""
Contract ABIs. Compiled artifacts under ABI_DIR win when present; otherwise
the minimal inline fragments below cover every call the gateway makes.
"""
import json
import logging
from pathlib import Path

from ..config import ABI_DIR

logger = logging.getLogger(__name__)


def load_abi(name):
    if not ABI_DIR:
        return None
    path = Path(ABI_DIR) / f"{name}.sol" / f"{name}.json"
    if not path.exists():
        return None
    with open(path) as f:
        data = json.load(f)
    logger.info("Loaded %s ABI from %s", name, path)
    return data["abi"] if isinstance(data, dict) else data


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


NFT_ABI = load_abi("NeftitNFT") or [
    _fn("ownerOf", [("tokenId", "uint256")], [("", "address")], "view"),
    _fn("tokenURI", [("tokenId", "uint256")], [("", "string")], "view"),
    _fn(
        "isApprovedForAll",
        [("owner", "address"), ("operator", "address")],
        [("", "bool")],
        "view",
    ),
    _fn("getApproved", [("tokenId", "uint256")], [("", "address")], "view"),
    _fn("setApprovalForAll", [("operator", "address"), ("approved", "bool")]),
    _fn(
        "transferFrom",
        [("from", "address"), ("to", "address"), ("tokenId", "uint256")],
    ),
    _fn("mintTo", [("to", "address"), ("uri", "string")], [("", "uint256")]),
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "tokenId", "type": "uint256", "indexed": True},
        ],
    },
]

STAKING_ABI = load_abi("NeftitStaking") or [
    _fn("stake", [("tokenIds", "uint256[]")]),
    _fn("withdraw", [("tokenIds", "uint256[]")]),
    _fn(
        "getStakeInfo",
        [("staker", "address")],
        [("tokensStaked", "uint256[]"), ("rewards", "uint256")],
        "view",
    ),
]
