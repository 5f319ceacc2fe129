"""Base interface for chain access.

Submission flow:
1. Build the transaction (to, value, data)
2. Sign locally with the given key
3. Broadcast
4. Wait for the receipt, bounded by a timeout
5. Surface the outcome: success, revert, timeout, or RPC failure
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from fidg.chain.abi import BALANCE_OF, DECIMALS, SYMBOL, decode_result, encode_call, to_checksum


@dataclass
class TxReceipt:
    """Mined transaction outcome.

    Attributes:
        tx_hash: 0x-prefixed transaction hash
        status: 1 for success, 0 for revert
        block_number: Block the transaction was mined in
        gas_used: Gas consumed
    """
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(ABC):
    """Abstract chain access for one settlement token contract.

    Implementations must raise:
    - RpcUnavailable on node/transport failures
    - ConfirmationTimeout when the receipt does not arrive in time
    - OnChainRevert when the receipt reports failure
    """

    def __init__(self, token_address: str):
        self.token_address = to_checksum(token_address) if token_address else ""
        self._decimals: Optional[int] = None
        self._symbol: Optional[str] = None

    @abstractmethod
    async def submit(
        self,
        raw_key: str,
        to: str,
        value: int = 0,
        data: bytes = b"",
        gas_limit: Optional[int] = None,
    ) -> TxReceipt:
        """Sign, broadcast and wait for confirmation.

        Args:
            raw_key: Private key of the sender
            to: Destination address
            value: Native value in wei
            data: Calldata
            gas_limit: Fixed gas limit (estimated when None)

        Returns:
            Receipt of a successful transaction
        """
        pass

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Receipt of a mined transaction, or None while it is still pending.

        Unlike ``submit`` a reverted receipt is returned, not raised.
        """
        pass

    @abstractmethod
    async def call(self, to: str, data: bytes) -> bytes:
        """Read-only contract call (eth_call)."""
        pass

    @abstractmethod
    async def get_code(self, address: str) -> bytes:
        """Deployed bytecode at an address (empty for EOAs)."""
        pass

    @abstractmethod
    async def native_balance(self, address: str) -> int:
        """Native balance in wei."""
        pass

    @abstractmethod
    async def chain_id(self) -> int:
        pass

    async def decimals(self) -> int:
        """Settlement token decimals (cached)."""
        if self._decimals is None:
            data = await self.call(self.token_address, encode_call(DECIMALS, [], []))
            (self._decimals,) = decode_result(["uint8"], data)
        return self._decimals

    async def symbol(self) -> str:
        """Settlement token symbol (cached)."""
        if self._symbol is None:
            data = await self.call(self.token_address, encode_call(SYMBOL, [], []))
            (self._symbol,) = decode_result(["string"], data)
        return self._symbol

    async def balance_of(self, address: str) -> Decimal:
        """Settlement token balance in whole units."""
        data = await self.call(
            self.token_address,
            encode_call(BALANCE_OF, ["address"], [to_checksum(address)]),
        )
        (raw,) = decode_result(["uint256"], data)
        return await self.from_token_units(raw)

    async def to_token_units(self, amount: Decimal) -> int:
        """Convert a whole-unit amount to the token's smallest unit."""
        scale = Decimal(10) ** await self.decimals()
        return int((amount * scale).to_integral_value(rounding=ROUND_DOWN))

    async def from_token_units(self, raw: int) -> Decimal:
        scale = Decimal(10) ** await self.decimals()
        return Decimal(raw) / scale

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(token={self.token_address})"
