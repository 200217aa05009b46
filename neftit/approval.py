# neftit/approval.py
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Sequence

from .config import APPROVAL_STRICT, STAKING_CONTRACT_ADDRESS
from .errors import (
    ApprovalFailed,
    ApprovalUnknown,
    ChainReverted,
    ChainTimeout,
    ChainUnavailable,
    LifecycleError,
    UserRejected,
)
from .models import Session, normalize_wallet

logger = logging.getLogger(__name__)

APPROVAL_ATTEMPTS = 3
APPROVAL_BACKOFFS = (2, 3)


class ApprovalOrchestrator:
    """
    Makes sure the staking contract may move a wallet's NFTs before a stake.

    Confirmed approvals are remembered per wallet for the life of the process;
    nothing here is persisted, the chain is always the source of truth.
    """

    def __init__(
        self,
        gateway,
        operator: str = STAKING_CONTRACT_ADDRESS,
        strict: bool = APPROVAL_STRICT,
        attempts: int = APPROVAL_ATTEMPTS,
        backoffs: Sequence[float] = APPROVAL_BACKOFFS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.operator = operator.lower()
        self.strict = strict
        self.attempts = attempts
        self.backoffs = tuple(backoffs) or (0,)
        self._sleep = sleep
        self._approved: Dict[str, bool] = {}

    def is_cached(self, wallet: str) -> bool:
        return self._approved.get(normalize_wallet(wallet), False)

    def forget(self, wallet: str):
        self._approved.pop(normalize_wallet(wallet), None)

    async def check_approval_status(self, wallet: str, token_id: Optional[int] = None) -> Optional[bool]:
        """
        True if either blanket or per-token approval is confirmed, False if the
        chain said no to every check it was asked, None if it couldn't say.
        """
        blanket: Optional[bool] = None
        try:
            blanket = await self.gateway.is_approved_for_all(wallet, self.operator)
        except (ChainUnavailable, ChainTimeout) as e:
            logger.warning("isApprovedForAll unreadable for %s: %s", wallet, e.message)
        if blanket:
            return True
        if token_id is None:
            return blanket

        single: Optional[bool] = None
        try:
            single = (await self.gateway.get_approved(token_id)) == self.operator
        except ChainReverted:
            single = False
        except (ChainUnavailable, ChainTimeout) as e:
            logger.warning("getApproved(%s) unreadable: %s", token_id, e.message)
        if single:
            return True
        if blanket is False and single is False:
            return False
        return None

    async def ensure_approved(self, session: Session, token_id: Optional[int] = None) -> bool:
        wallet = session.wallet_address
        if self._approved.get(wallet):
            return True

        status = await self.check_approval_status(wallet, token_id)
        if status:
            self._approved[wallet] = True
            return True

        if status is None:
            if self.strict:
                raise ApprovalUnknown(
                    "could not read approval state from chain",
                    wallet=wallet,
                    token_id=token_id,
                )
            # Not cached, so the next call checks again
            logger.warning(
                "approval state for %s unreadable; assuming it was granted out of band", wallet
            )
            return True

        await self.approve(session)
        return True

    async def approve(self, session: Session):
        wallet = session.wallet_address
        last: Optional[LifecycleError] = None

        for attempt in range(self.attempts):
            try:
                await self.gateway.set_approval_for_all(session, self.operator, True)
            except UserRejected:
                raise
            except LifecycleError as e:
                last = e
                logger.warning("approval attempt %d/%d for %s failed: %s",
                               attempt + 1, self.attempts, wallet, e.message)
            else:
                verified = await self.check_approval_status(wallet)
                if verified is not False:
                    self._approved[wallet] = True
                    logger.info("approval granted for %s", wallet)
                    return
                last = ApprovalFailed("approval transaction mined but not visible on chain")

            if attempt + 1 < self.attempts:
                await self._sleep(self.backoffs[min(attempt, len(self.backoffs) - 1)])

        raise ApprovalFailed(
            f"could not approve operator after {self.attempts} attempts",
            tx_hash=last.tx_hash if last else None,
            wallet=wallet,
            cause=last.kind if last else None,
        )
