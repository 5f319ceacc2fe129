"""Wallet endpoints: balances, fund movement and history.

Balance-changing calls run under the per-account lock so two requests for
the same account never interleave their check-then-write.
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fidg.api.deps import (
    get_orchestrator,
    get_principal,
    get_provisioning_saga,
    require_admin_token,
)
from fidg.ledger.models import TransactionKind
from fidg.services.funds import FundMovementOrchestrator, OperationResult, Principal
from fidg.services.provisioning import ProvisioningResult, ProvisioningSaga
from fidg.utils.locks import account_lock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["Wallet"])

Amount = Optional[Union[int, str, float]]


# Request/Response models
class AmountRequest(BaseModel):
    """Invest or withdraw request."""
    amount: Amount = None


class SendRequest(BaseModel):
    """External transfer request."""
    recipient_address: Optional[str] = None
    amount: Amount = None


class BalanceRequest(BaseModel):
    """Balance lookup. Defaults to the caller's own Safe."""
    address: Optional[str] = None


class OperationResponse(BaseModel):
    """Outcome of a wallet operation."""
    status: int
    message: str = ""
    balance: Optional[str] = None
    tx_hash: Optional[str] = None
    explorer_url: Optional[str] = None
    error: Optional[str] = None


class TransactionResponse(BaseModel):
    """Ledger history entry."""
    id: int
    kind: str
    amount: Optional[str] = None
    currency: Optional[str] = None
    from_address: str
    to_address: str
    status: str
    tx_hash: Optional[str] = None
    timestamp: str
    description: str
    explorer_url: Optional[str] = None


class ReserveResponse(BaseModel):
    """Operating reserve against total savings."""
    operator_address: str
    reserve_balance: str
    total_savings: str
    shortfall: str
    solvent: bool


class ProvisioningResponse(BaseModel):
    """Outcome of a provisioning retry."""
    status: int
    state: str
    message: str
    wallet_address: str
    tx_hash: Optional[str] = None
    gas_funded: bool
    error: Optional[str] = None


def operation_response(result: OperationResult) -> JSONResponse:
    body = OperationResponse(
        status=result.status,
        message=result.message,
        balance=str(result.balance) if result.balance is not None else None,
        tx_hash=result.tx_hash,
        explorer_url=result.explorer_url,
        error=result.error,
    )
    return JSONResponse(status_code=result.status, content=body.model_dump())


def provisioning_response(result: ProvisioningResult) -> JSONResponse:
    body = ProvisioningResponse(
        status=result.status,
        state=result.state.value,
        message=result.message,
        wallet_address=result.wallet_address,
        tx_hash=result.tx_hash,
        gas_funded=result.gas_funded,
        error=result.error,
    )
    return JSONResponse(status_code=result.status, content=body.model_dump())


@router.post("/balance", response_model=OperationResponse)
async def get_balance(
    request: BalanceRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: FundMovementOrchestrator = Depends(get_orchestrator),
):
    """Settlement token balance of the caller's Safe or of a given address."""
    if request.address:
        result = await orchestrator.token_balance(request.address)
    else:
        result = await orchestrator.balance(principal)
    return operation_response(result)


@router.post("/send", response_model=OperationResponse)
async def send_funds(
    request: SendRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: FundMovementOrchestrator = Depends(get_orchestrator),
):
    """Send tokens from the caller's Safe to an external address."""
    async with account_lock(principal.account_id, operation="send"):
        result = await orchestrator.send(principal, request.recipient_address, request.amount)
    return operation_response(result)


@router.post("/invest", response_model=OperationResponse)
async def invest_in_savings(
    request: AmountRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: FundMovementOrchestrator = Depends(get_orchestrator),
):
    """Move tokens from the caller's Safe into savings."""
    async with account_lock(principal.account_id, operation="invest"):
        result = await orchestrator.invest(principal, request.amount)
    return operation_response(result)


@router.post("/withdraw", response_model=OperationResponse)
async def withdraw_from_savings(
    request: AmountRequest,
    principal: Principal = Depends(get_principal),
    orchestrator: FundMovementOrchestrator = Depends(get_orchestrator),
):
    """Pay savings back to the caller's Safe."""
    async with account_lock(principal.account_id, operation="withdraw"):
        result = await orchestrator.withdraw(principal, request.amount)
    return operation_response(result)


@router.get("/transactions", response_model=list[TransactionResponse])
async def get_transactions(
    kind: Optional[TransactionKind] = None,
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    principal: Principal = Depends(get_principal),
    orchestrator: FundMovementOrchestrator = Depends(get_orchestrator),
) -> list[TransactionResponse]:
    """Transaction history, newest first."""
    records = await orchestrator.history(principal, kind=kind, limit=limit)
    return [
        TransactionResponse(
            id=record.id,
            kind=record.kind,
            amount=str(record.amount) if record.amount is not None else None,
            currency=record.currency,
            from_address=record.from_address,
            to_address=record.to_address,
            status=record.status,
            tx_hash=record.tx_hash,
            timestamp=record.timestamp.isoformat(),
            description=record.description,
            explorer_url=record.explorer_url,
        )
        for record in records
    ]


@router.get("/reserve", response_model=ReserveResponse)
async def get_reserve(
    _: bool = Depends(require_admin_token),
    orchestrator: FundMovementOrchestrator = Depends(get_orchestrator),
) -> ReserveResponse:
    """Operating reserve solvency (admin only)."""
    status = await orchestrator.reserve_status()
    return ReserveResponse(
        operator_address=status.operator_address,
        reserve_balance=str(status.reserve_balance),
        total_savings=str(status.total_savings),
        shortfall=str(status.shortfall),
        solvent=status.solvent,
    )


@router.post("/retry-deployment", response_model=ProvisioningResponse)
async def retry_deployment(
    principal: Principal = Depends(get_principal),
    saga: ProvisioningSaga = Depends(get_provisioning_saga),
):
    """Re-run Safe deployment for a degraded account."""
    async with account_lock(principal.account_id, operation="retry_deployment"):
        result = await saga.retry_wallet_deployment(principal.account_id)
    return provisioning_response(result)


@router.post("/retry-gas", response_model=ProvisioningResponse)
async def retry_gas(
    principal: Principal = Depends(get_principal),
    saga: ProvisioningSaga = Depends(get_provisioning_saga),
):
    """Re-send the owner key's gas top-up."""
    async with account_lock(principal.account_id, operation="retry_gas"):
        result = await saga.retry_gas_funding(principal.account_id)
    return provisioning_response(result)
