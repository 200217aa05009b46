"""
Error taxonomy for lifecycle operations.

Every error carries a machine-readable ``kind`` and an ``outcome`` telling the
caller what state the world is in after the failure:

    nothing_happened  safe to retry
    uncertain         a transaction may have landed, check the wallet
    irreversible      assets were already burned on chain
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

NOTHING_HAPPENED = "nothing_happened"
UNCERTAIN = "uncertain"
IRREVERSIBLE = "irreversible"


class LifecycleError(Exception):
    kind = "ErrLifecycle"
    outcome = NOTHING_HAPPENED
    retryable = False

    def __init__(
        self,
        message: str = "",
        *,
        tx_hash: Optional[str] = None,
        outcome: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.tx_hash = tx_hash
        if outcome:
            self.outcome = outcome
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "kind": self.kind,
            "message": self.message,
            "outcome": self.outcome,
            "retryable": self.retryable,
            "tx_hash": self.tx_hash,
        }
        if self.context:
            out["context"] = self.context
        return out


# ────────────────────────────────────────────────────────────
# Validation (surfaced immediately, never retried)
# ────────────────────────────────────────────────────────────

class NotOwner(LifecycleError):
    kind = "ErrNotOwner"


class AlreadyStaked(LifecycleError):
    kind = "ErrAlreadyStaked"


class NotStaked(LifecycleError):
    kind = "ErrNotStaked"


class InvalidBurnSet(LifecycleError):
    kind = "ErrInvalidBurnSet"


class InvalidTransition(LifecycleError):
    kind = "ErrInvalidTransition"


class AssetNotFound(LifecycleError):
    kind = "ErrAssetNotFound"


class MutationInFlight(LifecycleError):
    kind = "ErrMutationInFlight"


# ────────────────────────────────────────────────────────────
# Approval
# ────────────────────────────────────────────────────────────

class ApprovalFailed(LifecycleError):
    kind = "ErrApprovalFailed"


class ApprovalUnknown(LifecycleError):
    kind = "ErrApprovalUnknown"
    retryable = True


class UserRejected(LifecycleError):
    kind = "ErrUserRejected"


# ────────────────────────────────────────────────────────────
# Chain
# ────────────────────────────────────────────────────────────

class ChainUnavailable(LifecycleError):
    """Every endpoint failed or is circuit-broken. The answer is unknown."""
    kind = "ErrChainUnavailable"
    retryable = True


class ChainTimeout(LifecycleError):
    kind = "ErrChainTimeout"
    retryable = True

    def __init__(self, message: str = "", *, tx_hash: Optional[str] = None, **context: Any):
        # A submitted transaction that timed out may still be mined
        super().__init__(
            message,
            tx_hash=tx_hash,
            outcome=UNCERTAIN if tx_hash else None,
            **context,
        )


class ChainReverted(LifecycleError):
    kind = "ErrChainReverted"


class DecodeRecoveryFailed(LifecycleError):
    kind = "ErrDecodeRecoveryFailed"
    outcome = UNCERTAIN


# ────────────────────────────────────────────────────────────
# Burning
# ────────────────────────────────────────────────────────────

class BurnPartial(LifecycleError):
    kind = "ErrBurnPartial"
    outcome = IRREVERSIBLE

    def __init__(
        self,
        message: str = "",
        *,
        succeeded: List[int],
        failed: List[int],
        tx_hashes: List[str],
        uncertain: Optional[List[int]] = None,
        cause: Optional[LifecycleError] = None,
    ):
        uncertain = uncertain or []
        super().__init__(
            message,
            tx_hash=tx_hashes[-1] if tx_hashes else None,
            succeeded=succeeded,
            failed=failed,
            uncertain=uncertain,
            tx_hashes=tx_hashes,
            cause=cause.kind if cause else None,
        )
        self.succeeded = succeeded
        self.failed = failed
        # tokens whose burn may or may not have landed
        self.uncertain = uncertain
        self.tx_hashes = tx_hashes
        self.cause = cause


class PoolExhausted(LifecycleError):
    kind = "ErrPoolExhausted"
    outcome = IRREVERSIBLE
