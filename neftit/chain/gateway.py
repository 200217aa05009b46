# neftit/chain/gateway.py
"""
Async chain access for the NFT and staking contracts.

Reads go through the RetryExecutor over every configured endpoint. Writes are
sent from the primary endpoint: gas is estimated (or probed), the typed call
is built (or raw-encoded when the ABI can't encode it), the receipt is awaited,
and an undecodable response is recovered by re-reading the intended effect and
then looking for the same calldata in recent blocks.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.logs import DISCARD
from web3.middleware import ExtraDataToPOAMiddleware

from ..config import (
    CHAIN_ID,
    FALLBACK_RPC_URLS,
    NFT_CONTRACT_ADDRESS,
    READ_TIMEOUT,
    RECEIPT_TIMEOUT,
    RECOVERY_BLOCK_DEPTH,
    RPC_URL,
    STAKING_CONTRACT_ADDRESS,
)
from ..errors import ChainReverted, ChainTimeout
from ..models import Session
from .abi import NFT_ABI, STAKING_ABI
from .retry import DECODE_ERRORS, RetryExecutor, classify_exception, recover_undecodable
from .signer import send_transaction

logger = logging.getLogger(__name__)

GAS_BUFFER_PCT = 120
GAS_TIERS = (150_000, 300_000, 500_000)
GAS_CEILING = 800_000


@dataclass(frozen=True)
class TxResult:
    tx_hash: Optional[str]
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    recovered: bool = False
    recovered_via: Optional[str] = None  # "block_scan" | "effect"
    token_id: Optional[int] = None


@dataclass(frozen=True)
class StakeInfo:
    token_ids: List[int] = field(default_factory=list)
    rewards: int = 0


@dataclass
class _Endpoint:
    w3: AsyncWeb3
    nft: Any
    staking: Any


def _hex(value) -> str:
    if isinstance(value, str):
        return value.lower()
    return Web3.to_hex(value or b"").lower()


def _connect(url: str, nft_address: str, staking_address: str) -> _Endpoint:
    w3 = AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": READ_TIMEOUT}))
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return _Endpoint(
        w3=w3,
        nft=w3.eth.contract(address=Web3.to_checksum_address(nft_address), abi=NFT_ABI),
        staking=w3.eth.contract(address=Web3.to_checksum_address(staking_address), abi=STAKING_ABI),
    )


class ChainGateway:
    def __init__(
        self,
        rpc_urls: Optional[Sequence[str]] = None,
        nft_address: str = NFT_CONTRACT_ADDRESS,
        staking_address: str = STAKING_CONTRACT_ADDRESS,
        chain_id: int = CHAIN_ID,
        executor: Optional[RetryExecutor] = None,
        receipt_timeout: float = RECEIPT_TIMEOUT,
        recovery_depth: int = RECOVERY_BLOCK_DEPTH,
    ):
        urls = list(rpc_urls or [RPC_URL, *FALLBACK_RPC_URLS])
        self._endpoints: Dict[str, _Endpoint] = {
            url: _connect(url, nft_address, staking_address) for url in urls
        }
        self._primary = self._endpoints[urls[0]]
        self.executor = executor or RetryExecutor(urls)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.recovery_depth = recovery_depth
        self.staking_address = Web3.to_checksum_address(staking_address).lower()

    # ────────────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────────────

    async def owner_of(self, token_id: int) -> str:
        owner = await self.executor.read(
            lambda ep: self._endpoints[ep].nft.functions.ownerOf(int(token_id)).call(),
            f"ownerOf({token_id})",
        )
        return owner.lower()

    async def token_uri(self, token_id: int) -> str:
        return await self.executor.read(
            lambda ep: self._endpoints[ep].nft.functions.tokenURI(int(token_id)).call(),
            f"tokenURI({token_id})",
        )

    async def is_approved_for_all(self, owner: str, operator: str) -> bool:
        owner_cs = Web3.to_checksum_address(owner)
        operator_cs = Web3.to_checksum_address(operator)
        return bool(await self.executor.read(
            lambda ep: self._endpoints[ep].nft.functions.isApprovedForAll(owner_cs, operator_cs).call(),
            "isApprovedForAll",
        ))

    async def get_approved(self, token_id: int) -> str:
        approved = await self.executor.read(
            lambda ep: self._endpoints[ep].nft.functions.getApproved(int(token_id)).call(),
            f"getApproved({token_id})",
        )
        return approved.lower()

    async def get_stake_info(self, owner: str) -> StakeInfo:
        owner_cs = Web3.to_checksum_address(owner)
        token_ids, rewards = await self.executor.read(
            lambda ep: self._endpoints[ep].staking.functions.getStakeInfo(owner_cs).call(),
            "getStakeInfo",
        )
        return StakeInfo(token_ids=[int(t) for t in token_ids], rewards=int(rewards))

    async def find_recent_tx(self, sender: str, to: str, data: str) -> Optional[TxResult]:
        """
        Most recent successful tx from ``sender`` to ``to`` carrying exactly
        ``data`` as its input, within the last few blocks.
        """
        w3 = self._primary.w3
        sender, to, data = sender.lower(), to.lower(), _hex(data)
        latest = await w3.eth.block_number
        for number in range(latest, max(latest - self.recovery_depth, -1), -1):
            block = await w3.eth.get_block(number, full_transactions=True)
            for tx in reversed(block["transactions"]):
                if (tx.get("from") or "").lower() != sender or (tx.get("to") or "").lower() != to:
                    continue
                if _hex(tx.get("input")) != data:
                    continue
                receipt = await w3.eth.get_transaction_receipt(tx["hash"])
                if receipt["status"] == 1:
                    return self._result(receipt, recovered_via="block_scan")
        return None

    # ────────────────────────────────────────────────────────
    # Writes
    # ────────────────────────────────────────────────────────

    async def set_approval_for_all(
        self, session: Session, operator: str, approved: bool = True,
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> TxResult:
        async def effect():
            return await self.is_approved_for_all(session.wallet_address, operator) == approved

        return await self._write(
            session, self._primary.nft, "setApprovalForAll",
            [Web3.to_checksum_address(operator), approved],
            label="setApprovalForAll", effect=effect, precondition=precondition,
        )

    async def stake(
        self, session: Session, token_ids: Sequence[int],
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> TxResult:
        ids = [int(t) for t in token_ids]

        async def effect():
            staked = set((await self.get_stake_info(session.wallet_address)).token_ids)
            return all(t in staked for t in ids)

        return await self._write(
            session, self._primary.staking, "stake", [ids],
            label=f"stake({ids})", effect=effect, precondition=precondition,
        )

    async def withdraw(
        self, session: Session, token_ids: Sequence[int],
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> TxResult:
        ids = [int(t) for t in token_ids]

        async def effect():
            staked = set((await self.get_stake_info(session.wallet_address)).token_ids)
            return not any(t in staked for t in ids)

        return await self._write(
            session, self._primary.staking, "withdraw", [ids],
            label=f"withdraw({ids})", effect=effect, precondition=precondition,
        )

    async def transfer_from(
        self, session: Session, to: str, token_id: int,
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> TxResult:
        async def effect():
            return await self.owner_of(token_id) == to.lower()

        return await self._write(
            session, self._primary.nft, "transferFrom",
            [
                Web3.to_checksum_address(session.wallet_address),
                Web3.to_checksum_address(to),
                int(token_id),
            ],
            label=f"transferFrom({token_id})", effect=effect, precondition=precondition,
        )

    async def mint_to(
        self, session: Session, to: str, uri: str,
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> TxResult:
        """The new token id comes from the Transfer event, so there's no effect to re-read."""
        return await self._write(
            session, self._primary.nft, "mintTo",
            [Web3.to_checksum_address(to), uri],
            label="mintTo", effect=None, precondition=precondition,
        )

    # ────────────────────────────────────────────────────────
    # Internals
    # ────────────────────────────────────────────────────────

    async def _write(self, session, contract, fn_name, args, *, label, effect, precondition):
        confirm = None
        if effect is not None:
            async def confirm():
                if await effect():
                    return TxResult(tx_hash=None, recovered=True, recovered_via="effect")
                return None

        async def submit():
            return await self._submit(session, contract, fn_name, args, label, confirm)

        return await self.executor.write(
            submit, label=label, confirm=confirm, precondition=precondition,
        )

    async def _submit(self, session, contract, fn_name, args, label, confirm) -> TxResult:
        w3 = self._primary.w3
        sender = Web3.to_checksum_address(session.wallet_address)
        fn = getattr(contract.functions, fn_name)(*args)
        gas = await self._estimate_gas(fn, sender, label)

        try:
            tx = await fn.build_transaction({"from": sender, "gas": gas})
        except DECODE_ERRORS as e:
            logger.warning("%s: typed call unusable (%s), sending raw-encoded", label, e)
            tx = {
                "from": sender,
                "to": contract.address,
                "data": contract.encode_abi(fn_name, args=list(args)),
                "gas": gas,
                "value": 0,
            }

        tx_hash = None
        try:
            tx_hash = await send_transaction(w3, session, tx, self.chain_id)
            logger.info("%s sent: %s", label, tx_hash)
            receipt = await w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout, poll_latency=2
            )
        except TimeExhausted as e:
            raise ChainTimeout(
                f"{label}: no receipt after {self.receipt_timeout:g}s", tx_hash=tx_hash
            ) from e
        except DECODE_ERRORS as e:
            logger.warning("%s: undecodable response (%s), recovering", label, e)
            return await recover_undecodable(
                scan=lambda: self._find_own_tx(tx_hash, sender, contract.address, tx["data"]),
                confirm=confirm,
                label=label,
                tx_hash=tx_hash,
            )
        except Exception as e:
            raise classify_exception(e, tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            raise ChainReverted(f"{label}: transaction reverted", tx_hash=tx_hash)
        result = self._result(receipt)
        logger.info("%s confirmed in block %s", label, result.block_number)
        return result

    async def _find_own_tx(self, tx_hash, sender, to, data) -> Optional[TxResult]:
        if tx_hash:
            receipt = await self._primary.w3.eth.get_transaction_receipt(tx_hash)
            if receipt and receipt["status"] == 1:
                return self._result(receipt, recovered_via="block_scan")
            return None
        return await self.find_recent_tx(sender, to, data)

    async def _estimate_gas(self, fn, sender, label) -> int:
        try:
            estimate = await fn.estimate_gas({"from": sender})
            return min(estimate * GAS_BUFFER_PCT // 100, GAS_CEILING)
        except ContractLogicError as e:
            raise ChainReverted(f"{label}: {e}") from e
        except Exception as e:
            logger.warning("%s: gas estimation failed (%s), probing tiers", label, e)

        for tier in GAS_TIERS:
            try:
                await fn.call({"from": sender, "gas": tier})
                return tier
            except ContractLogicError as e:
                raise ChainReverted(f"{label}: {e}") from e
            except Exception:
                continue
        return GAS_CEILING

    def _result(self, receipt, recovered_via: Optional[str] = None) -> TxResult:
        token_id = None
        events = self._primary.nft.events.Transfer().process_receipt(receipt, errors=DISCARD)
        minted = [ev for ev in events if int(ev["args"]["from"], 16) == 0]
        if minted:
            token_id = int(minted[-1]["args"]["tokenId"])
        return TxResult(
            tx_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            recovered=recovered_via is not None,
            recovered_via=recovered_via,
            token_id=token_id,
        )
