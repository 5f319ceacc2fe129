"""Chain access: signing, submission and settlement token reads."""

from fidg.chain.base import ChainClient, TxReceipt
from fidg.chain.web3_client import Web3ChainClient, get_chain_client

__all__ = [
    "ChainClient",
    "TxReceipt",
    "Web3ChainClient",
    "get_chain_client",
]
