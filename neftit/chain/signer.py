# neftit/chain/signer.py
import logging

from web3 import AsyncWeb3, Web3

from ..models import Session

logger = logging.getLogger(__name__)

# Used when the node can't quote a fee at all
DEFAULT_GAS_PRICE_GWEI = {
    137: 30,    # Polygon
    80002: 2,   # Amoy
}
FALLBACK_GAS_PRICE_GWEI = 20


async def _fee_fields(w3: AsyncWeb3, chain_id: int) -> dict:
    try:
        block = await w3.eth.get_block("latest")
        base_fee = block["baseFeePerGas"]
        priority = (await w3.eth.max_priority_fee) * 150 // 100
        return {
            "type": 2,
            "maxFeePerGas": base_fee * 2 + priority,
            "maxPriorityFeePerGas": priority,
        }
    except Exception as e:
        logger.debug("EIP-1559 fees unavailable (%s), using legacy gasPrice", e)

    try:
        return {"gasPrice": (await w3.eth.gas_price) * 120 // 100}
    except Exception as e:
        gwei = DEFAULT_GAS_PRICE_GWEI.get(chain_id, FALLBACK_GAS_PRICE_GWEI)
        logger.warning("gas price unavailable (%s), defaulting to %s gwei", e, gwei)
        return {"gasPrice": Web3.to_wei(gwei, "gwei")}


async def send_transaction(w3: AsyncWeb3, session: Session, tx: dict, chain_id: int) -> str:
    """
    Price, sign and broadcast ``tx`` for the session wallet. Returns the hex
    hash as soon as the node accepts it; the receipt is the caller's business.
    """
    tx = dict(tx)
    for k in ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "type"):
        tx.pop(k, None)
    tx.update(await _fee_fields(w3, chain_id))
    tx["chainId"] = chain_id

    if session.account is None:
        # Node-managed account (dev chains, wallet bridges)
        return Web3.to_hex(await w3.eth.send_transaction(tx))

    tx["nonce"] = await w3.eth.get_transaction_count(session.account.address, "pending")
    signed = session.account.sign_transaction(tx)
    return Web3.to_hex(await w3.eth.send_raw_transaction(signed.raw_transaction))
