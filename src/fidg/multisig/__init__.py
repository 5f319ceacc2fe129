"""Safe multisig wallets: deterministic deployment and transaction execution."""

from fidg.multisig.factory import SafeWalletFactory, WalletDeployment
from fidg.multisig.wallet import SafeTransaction, SafeWallet

__all__ = [
    "SafeTransaction",
    "SafeWallet",
    "SafeWalletFactory",
    "WalletDeployment",
]
