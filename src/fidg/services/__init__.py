"""Provisioning, fund movement and account services."""

from fidg.services.accounts import AccountService
from fidg.services.funds import (
    FundMovementOrchestrator,
    OperationResult,
    Principal,
    ReserveStatus,
    parse_amount,
)
from fidg.services.provisioning import ProvisioningResult, ProvisioningSaga

__all__ = [
    "AccountService",
    "FundMovementOrchestrator",
    "OperationResult",
    "Principal",
    "ProvisioningResult",
    "ProvisioningSaga",
    "ReserveStatus",
    "parse_amount",
]
