"""Monerium passthrough endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from fidg.api.deps import get_monerium, get_principal
from fidg.monerium import MoneriumClient
from fidg.services.funds import Principal

router = APIRouter(prefix="/monerium", tags=["Monerium"])


class SafeBalanceRequest(BaseModel):
    """Monerium balance lookup."""
    safe_address: Optional[str] = None


class SafeBalanceResponse(BaseModel):
    """EURe balance as reported by Monerium."""
    eure_balance: str
    eure_decimals: int
    linked: bool
    message: Optional[str] = None


@router.get("/tokens")
async def get_tokens(
    principal: Principal = Depends(get_principal),
    monerium: MoneriumClient = Depends(get_monerium),
):
    """Tokens issued by Monerium."""
    return await monerium.get_tokens()


@router.post("/balance", response_model=SafeBalanceResponse)
async def get_safe_balance(
    request: SafeBalanceRequest,
    principal: Principal = Depends(get_principal),
    monerium: MoneriumClient = Depends(get_monerium),
) -> SafeBalanceResponse:
    """EURe balance of a Safe."""
    balance = await monerium.get_wallet_balance(request.safe_address)
    return SafeBalanceResponse(
        eure_balance=balance.amount,
        eure_decimals=balance.decimals,
        linked=balance.linked,
        message=None if balance.linked else "Safe not linked to Monerium.",
    )
