"""Sign-up and profile endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fidg.api.deps import get_account_service, get_principal, get_provisioning_saga
from fidg.ledger.models import Account
from fidg.services.accounts import AccountService
from fidg.services.funds import Principal
from fidg.services.provisioning import ProvisioningSaga

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response models
class SignUpRequest(BaseModel):
    """Sign-up request. Field checks happen in the provisioning saga."""
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class UserInfo(BaseModel):
    """Public account fields."""
    id: str
    name: str
    email: str
    owner_address: str
    wallet_address: str
    provisioning_state: str
    gas_funded: bool
    savings_balance: str
    total_deposited: str
    total_withdrawn: str
    savings_start_date: Optional[str] = None


class SignUpResponse(BaseModel):
    """Sign-up response."""
    status: int
    message: str
    state: str
    user: UserInfo
    tx_hash: Optional[str] = None
    gas_funded: bool
    error: Optional[str] = None


class UpdateProfileRequest(BaseModel):
    """Profile update request."""
    name: Optional[str] = None


def user_info(account: Account) -> UserInfo:
    return UserInfo(
        id=account.id,
        name=account.name,
        email=account.email,
        owner_address=account.owner_address,
        wallet_address=account.wallet_address or "",
        provisioning_state=account.provisioning_state,
        gas_funded=bool(account.gas_funded),
        savings_balance=str(account.savings_balance or 0),
        total_deposited=str(account.total_deposited or 0),
        total_withdrawn=str(account.total_withdrawn or 0),
        savings_start_date=(
            account.savings_start_date.isoformat() if account.savings_start_date else None
        ),
    )


@router.post("/auth/signup", response_model=SignUpResponse)
async def sign_up(
    request: SignUpRequest,
    saga: ProvisioningSaga = Depends(get_provisioning_saga),
):
    """Create an account, its owner key and its Safe."""
    result = await saga.sign_up(request.name, request.email, request.password)
    account = await saga.store.get(result.account_id)

    body = SignUpResponse(
        status=result.status,
        message=result.message,
        state=result.state.value,
        user=user_info(account),
        tx_hash=result.tx_hash,
        gas_funded=result.gas_funded,
        error=result.error,
    )
    return JSONResponse(status_code=result.status, content=body.model_dump())


@router.get("/me", response_model=UserInfo)
async def get_me(
    principal: Principal = Depends(get_principal),
    accounts: AccountService = Depends(get_account_service),
) -> UserInfo:
    """Profile of the authenticated account."""
    return user_info(await accounts.get_profile(principal))


@router.patch("/me")
async def update_me(
    request: UpdateProfileRequest,
    principal: Principal = Depends(get_principal),
    accounts: AccountService = Depends(get_account_service),
) -> dict:
    """Update the display name."""
    account = await accounts.update_name(principal, request.name)
    return {
        "message": "Profile updated successfully.",
        "user": {"name": account.name, "email": account.email},
    }
