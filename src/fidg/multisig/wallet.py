"""Single-owner Safe transaction execution: create, sign, execute."""

import logging
from dataclasses import dataclass

from eth_account import Account
from eth_account.messages import encode_typed_data

from fidg.chain.abi import decode_result, encode_call, to_checksum
from fidg.chain.base import ChainClient, TxReceipt
from fidg.multisig.factory import ZERO_ADDRESS

logger = logging.getLogger(__name__)

SAFE_NONCE = "nonce()"
EXEC_TRANSACTION = (
    "execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,address,address,bytes)"
)

SAFE_TX_TYPES = {
    "EIP712Domain": [
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "SafeTx": [
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "operation", "type": "uint8"},
        {"name": "safeTxGas", "type": "uint256"},
        {"name": "baseGas", "type": "uint256"},
        {"name": "gasPrice", "type": "uint256"},
        {"name": "gasToken", "type": "address"},
        {"name": "refundReceiver", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}


@dataclass
class SafeTransaction:
    """A Safe call. Gas refund fields stay zero: the executor pays gas."""
    to: str
    value: int
    data: bytes
    nonce: int
    operation: int = 0  # CALL

    def typed_data(self, chain_id: int, safe_address: str) -> dict:
        return {
            "types": SAFE_TX_TYPES,
            "primaryType": "SafeTx",
            "domain": {"chainId": chain_id, "verifyingContract": safe_address},
            "message": {
                "to": self.to,
                "value": self.value,
                "data": "0x" + self.data.hex(),
                "operation": self.operation,
                "safeTxGas": 0,
                "baseGas": 0,
                "gasPrice": 0,
                "gasToken": ZERO_ADDRESS,
                "refundReceiver": ZERO_ADDRESS,
                "nonce": self.nonce,
            },
        }


class SafeWallet:
    """A deployed Safe with one owner and threshold one.

    With safeTxGas and gasPrice at zero, a failing inner call reverts the
    whole execTransaction, so a successful receipt means the call succeeded.
    """

    def __init__(self, chain: ChainClient, address: str):
        self.chain = chain
        self.address = to_checksum(address)

    async def nonce(self) -> int:
        data = await self.chain.call(self.address, encode_call(SAFE_NONCE, [], []))
        (value,) = decode_result(["uint256"], data)
        return value

    async def build_transaction(self, to: str, value: int = 0, data: bytes = b"") -> SafeTransaction:
        return SafeTransaction(to=to_checksum(to), value=value, data=data, nonce=await self.nonce())

    async def sign(self, tx: SafeTransaction, owner_key: str) -> bytes:
        """EIP-712 owner signature over the SafeTx."""
        message = encode_typed_data(
            full_message=tx.typed_data(await self.chain.chain_id(), self.address)
        )
        return bytes(Account.sign_message(message, owner_key).signature)

    async def execute(self, owner_key: str, to: str, value: int = 0, data: bytes = b"") -> TxReceipt:
        """Create, sign and execute a Safe transaction from the owner key."""
        tx = await self.build_transaction(to, value, data)
        signature = await self.sign(tx, owner_key)

        calldata = encode_call(
            EXEC_TRANSACTION,
            [
                "address", "uint256", "bytes", "uint8", "uint256",
                "uint256", "uint256", "address", "address", "bytes",
            ],
            [tx.to, tx.value, tx.data, tx.operation, 0, 0, 0, ZERO_ADDRESS, ZERO_ADDRESS, signature],
        )

        logger.info(f"Executing Safe tx #{tx.nonce} on {self.address} -> {tx.to}")
        return await self.chain.submit(owner_key, self.address, value=0, data=calldata)
