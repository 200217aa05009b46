# neftit/chain/retry.py
"""
Bounded retries around chain calls.

Reads fan out over every configured RPC endpoint, each behind its own circuit
breaker, inside one aggregate timeout. Writes are retried only while nothing
has been submitted; once a transaction hash exists the error is surfaced with
it and the orphan sweep takes over.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Sequence, TypeVar

from eth_abi.exceptions import DecodingError
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    MismatchedABI,
    TimeExhausted,
)

from ..config import (
    BREAKER_COOLDOWN,
    BREAKER_THRESHOLD,
    READ_ATTEMPTS,
    READ_TIMEOUT,
    WRITE_ATTEMPTS,
    WRITE_RETRY_DELAY,
)
from ..errors import (
    UNCERTAIN,
    ChainReverted,
    ChainTimeout,
    ChainUnavailable,
    DecodeRecoveryFailed,
    LifecycleError,
    UserRejected,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DECODE_ERRORS = (DecodingError, BadFunctionCallOutput, MismatchedABI)

_REJECTION_MARKERS = ("user denied", "user rejected", "rejected by user", "request rejected")
_REVERT_MARKERS = ("execution reverted", "revert", "insufficient funds")
_TIMEOUT_MARKERS = ("timeout", "timed out")


def _error_code(exc: Exception) -> Optional[int]:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    for arg in getattr(exc, "args", ()):
        if isinstance(arg, dict) and isinstance(arg.get("code"), int):
            return arg["code"]
    return None


def is_decode_error(exc: Exception) -> bool:
    if isinstance(exc, DECODE_ERRORS):
        return True
    msg = str(exc).lower()
    return "could not decode" in msg


def classify_exception(exc: Exception, tx_hash: Optional[str] = None) -> LifecycleError:
    """Map a raw web3/RPC exception onto the lifecycle error kinds."""
    if isinstance(exc, LifecycleError):
        return exc

    msg = str(exc) or exc.__class__.__name__
    low = msg.lower()
    # A hash means something reached the mempool; we can't say it failed
    outcome = UNCERTAIN if tx_hash else None

    if _error_code(exc) == 4001 or any(m in low for m in _REJECTION_MARKERS):
        return UserRejected(msg)
    if isinstance(exc, ContractLogicError) or any(m in low for m in _REVERT_MARKERS):
        return ChainReverted(msg, tx_hash=tx_hash)
    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted)) or any(m in low for m in _TIMEOUT_MARKERS):
        return ChainTimeout(msg, tx_hash=tx_hash)
    return ChainUnavailable(msg, tx_hash=tx_hash, outcome=outcome)


class CircuitBreaker:
    """Opens after `threshold` consecutive failures; lets one call through after `cooldown`."""

    def __init__(self, threshold: int = BREAKER_THRESHOLD, cooldown: float = BREAKER_COOLDOWN,
                 clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None and self._clock() - self.opened_at < self.cooldown

    def allow(self) -> bool:
        return not self.is_open

    def record_success(self):
        self.failures = 0
        self.opened_at = None

    def record_failure(self):
        self.failures += 1
        if self.failures >= self.threshold:
            self.opened_at = self._clock()


class RetryExecutor:
    def __init__(
        self,
        endpoints: Sequence[str],
        attempts: int = READ_ATTEMPTS,
        timeout: float = READ_TIMEOUT,
        write_attempts: int = WRITE_ATTEMPTS,
        write_delay: float = WRITE_RETRY_DELAY,
        breaker_threshold: int = BREAKER_THRESHOLD,
        breaker_cooldown: float = BREAKER_COOLDOWN,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not endpoints:
            raise ValueError("at least one endpoint is required")
        self.endpoints = list(endpoints)
        self.attempts = attempts
        self.timeout = timeout
        self.write_attempts = write_attempts
        self.write_delay = write_delay
        self._sleep = sleep
        self.breakers: Dict[str, CircuitBreaker] = {
            ep: CircuitBreaker(breaker_threshold, breaker_cooldown, clock) for ep in self.endpoints
        }

    # ────────────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────────────

    async def read(self, op: Callable[[str], Awaitable[T]], label: str,
                   timeout: Optional[float] = None) -> T:
        """
        Run ``op(endpoint)`` until one endpoint answers. Never returns a
        guessed value: exhaustion raises ChainUnavailable, the deadline
        raises ChainTimeout. Reverts are answers and are raised as-is.
        """
        timeout = timeout or self.timeout
        try:
            return await asyncio.wait_for(self._read(op, label), timeout)
        except asyncio.TimeoutError as e:
            raise ChainTimeout(f"{label}: no answer within {timeout:g}s", op=label) from e

    async def _read(self, op, label):
        last: Optional[LifecycleError] = None
        for attempt in range(self.attempts):
            tried = False
            for ep in self.endpoints:
                breaker = self.breakers[ep]
                if not breaker.allow():
                    continue
                tried = True
                try:
                    result = await op(ep)
                except Exception as e:
                    err = classify_exception(e)
                    if isinstance(err, ChainReverted):
                        breaker.record_success()
                        raise err from e
                    breaker.record_failure()
                    last = err
                    logger.warning("%s failed on %s (attempt %d): %s", label, ep, attempt + 1, e)
                    continue
                breaker.record_success()
                return result

            if not tried:
                raise ChainUnavailable(f"{label}: circuit breaker open on every endpoint", op=label)
            if attempt + 1 < self.attempts:
                await self._sleep(min(2 ** attempt, 4))

        raise ChainUnavailable(
            f"{label}: all endpoints failed",
            op=label,
            cause=last.message if last else None,
        )

    # ────────────────────────────────────────────────────────
    # Writes
    # ────────────────────────────────────────────────────────

    async def write(
        self,
        submit: Callable[[], Awaitable[T]],
        *,
        label: str,
        confirm: Optional[Callable[[], Awaitable[Optional[T]]]] = None,
        precondition: Optional[Callable[[], Awaitable[None]]] = None,
        attempts: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> T:
        """
        ``precondition`` runs right before every submission and raises to
        abort. Before a retry, ``confirm`` is asked whether the effect already
        happened; a non-None answer is returned instead of resubmitting.
        """
        attempts = attempts or self.write_attempts
        delay = self.write_delay if delay is None else delay
        last: Optional[LifecycleError] = None

        for attempt in range(1, attempts + 1):
            if attempt > 1 and confirm is not None:
                try:
                    done = await confirm()
                except LifecycleError as e:
                    logger.warning("%s: effect check before retry failed: %s", label, e.message)
                    done = None
                if done is not None:
                    logger.info("%s: effect already on chain, not resubmitting", label)
                    return done

            if precondition is not None:
                await precondition()

            try:
                return await submit()
            except Exception as e:
                err = classify_exception(e)
                if err is not e:
                    err.__cause__ = e
                if err.tx_hash or not err.retryable:
                    raise err
                last = err
                logger.warning("%s: attempt %d/%d failed before submission: %s",
                               label, attempt, attempts, err.message)
            if attempt < attempts:
                await self._sleep(delay)

        raise last


async def recover_undecodable(
    scan: Callable[[], Awaitable[Optional[T]]],
    confirm: Optional[Callable[[], Awaitable[Optional[T]]]],
    label: str,
    tx_hash: Optional[str] = None,
) -> T:
    """
    A write came back with a response we couldn't decode. Re-read the intended
    effect when there is one, then look for the mined transaction. Raise only
    if both come up empty.
    """
    for step, check in (("effect check", confirm), ("block scan", scan)):
        if check is None:
            continue
        try:
            found = await check()
        except Exception as e:
            logger.warning("%s: %s during decode recovery failed: %s", label, step, e)
            continue
        if found is not None:
            logger.info("%s: recovered undecodable success via %s", label, step)
            return found

    raise DecodeRecoveryFailed(
        f"{label}: response undecodable and no trace of the effect on chain",
        tx_hash=tx_hash,
        op=label,
    )
