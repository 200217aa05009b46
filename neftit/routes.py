# neftit/routes.py
from __future__ import annotations

from typing import List, Union

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .models import Session, normalize_wallet
from .service import NFTLifecycleService, get_service

router = APIRouter(prefix="/api/nfts", tags=["nfts"])

_STATUS_BY_KIND = {
    "ErrInvalidBurnSet": 400,
    "ErrUserRejected": 400,
    "ErrNotOwner": 403,
    "ErrAssetNotFound": 404,
    "ErrAlreadyStaked": 409,
    "ErrNotStaked": 409,
    "ErrInvalidTransition": 409,
    "ErrMutationInFlight": 409,
    "ErrPoolExhausted": 409,
    "ErrChainReverted": 502,
    "ErrApprovalFailed": 502,
    "ErrBurnPartial": 502,
    "ErrDecodeRecoveryFailed": 502,
    "ErrChainUnavailable": 503,
    "ErrApprovalUnknown": 503,
    "ErrChainTimeout": 504,
}


def _respond(result: dict) -> JSONResponse:
    if result["success"]:
        return JSONResponse(result)
    status = _STATUS_BY_KIND.get(result["error"]["kind"], 500)
    return JSONResponse(result, status_code=status)


def _session(wallet_address: str) -> Session:
    try:
        return Session(wallet_address=wallet_address)
    except ValueError as e:
        raise HTTPException(400, str(e))


# ────────────────────────────────────────────────────────────
# Request models
# ────────────────────────────────────────────────────────────

class AssetRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)
    asset_id: Union[int, str]


class BurnRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)
    asset_ids: List[Union[int, str]] = Field(..., min_length=1)


class RecoverRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1)


# ────────────────────────────────────────────────────────────
# Routes
# ────────────────────────────────────────────────────────────

@router.get("/{wallet_address}")
def get_state(wallet_address: str, refresh: bool = False,
              svc: NFTLifecycleService = Depends(get_service)):
    try:
        wallet = normalize_wallet(wallet_address)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return _respond(svc.get_state(wallet, refresh=refresh))


@router.post("/stake")
async def stake(req: AssetRequest, svc: NFTLifecycleService = Depends(get_service)):
    return _respond(await svc.stake(_session(req.wallet_address), req.asset_id))


@router.post("/unstake")
async def unstake(req: AssetRequest, svc: NFTLifecycleService = Depends(get_service)):
    return _respond(await svc.unstake(_session(req.wallet_address), req.asset_id))


@router.post("/claim")
async def claim(req: AssetRequest, svc: NFTLifecycleService = Depends(get_service)):
    return _respond(await svc.claim(_session(req.wallet_address), req.asset_id))


@router.post("/burn")
async def burn(req: BurnRequest, svc: NFTLifecycleService = Depends(get_service)):
    return _respond(await svc.burn(_session(req.wallet_address), req.asset_ids))


@router.post("/recover")
async def recover(req: RecoverRequest, svc: NFTLifecycleService = Depends(get_service)):
    return _respond(await svc.recover(req.wallet_address))
