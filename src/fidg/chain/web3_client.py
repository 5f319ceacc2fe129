"""Chain client backed by web3.py.

Signs locally with eth-account and talks to one JSON-RPC endpoint.
"""

import asyncio
import logging
from typing import Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from fidg.chain.base import ChainClient, TxReceipt
from fidg.chain.abi import to_checksum
from fidg.exceptions import ConfirmationTimeout, OnChainRevert, RpcUnavailable

logger = logging.getLogger(__name__)

# Priority tip used when the node reports a base fee (EIP-1559)
PRIORITY_FEE_GWEI = 1.5


def _hex(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else f"0x{text}"


class Web3ChainClient(ChainClient):
    """ChainClient over AsyncWeb3.

    Broadcasts from the same sender are serialized around nonce selection
    only; receipt waits run without any lock held.
    """

    def __init__(
        self,
        rpc_url: str,
        token_address: str,
        confirmation_timeout: float = 120.0,
        poll_interval: float = 2.0,
        chain_id: Optional[int] = None,
    ):
        super().__init__(token_address)
        self.rpc_url = rpc_url
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._chain_id = chain_id
        self._sender_locks: dict[str, asyncio.Lock] = {}

    def _sender_lock(self, address: str) -> asyncio.Lock:
        if address not in self._sender_locks:
            self._sender_locks[address] = asyncio.Lock()
        return self._sender_locks[address]

    async def chain_id(self) -> int:
        if self._chain_id is None:
            try:
                self._chain_id = await self.w3.eth.chain_id
            except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                raise RpcUnavailable(f"Failed to read chain id: {e}")
        return self._chain_id

    async def call(self, to: str, data: bytes) -> bytes:
        try:
            result = await self.w3.eth.call({"to": to_checksum(to), "data": _hex(data)})
            return bytes(result)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RpcUnavailable(f"eth_call to {to} failed: {e}")

    async def get_code(self, address: str) -> bytes:
        try:
            return bytes(await self.w3.eth.get_code(to_checksum(address)))
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RpcUnavailable(f"Failed to read code at {address}: {e}")

    async def native_balance(self, address: str) -> int:
        try:
            return await self.w3.eth.get_balance(to_checksum(address))
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RpcUnavailable(f"Failed to read balance of {address}: {e}")

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise RpcUnavailable(f"Failed to fetch receipt for {tx_hash}: {e}")
        return self._to_receipt(tx_hash, receipt)

    @staticmethod
    def _to_receipt(tx_hash: str, receipt) -> TxReceipt:
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )

    async def _fee_fields(self) -> dict:
        """EIP-1559 fee fields, falling back to a legacy gas price."""
        latest = await self.w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is not None:
            max_priority = AsyncWeb3.to_wei(PRIORITY_FEE_GWEI, "gwei")
            return {
                "maxFeePerGas": base_fee * 2 + max_priority,
                "maxPriorityFeePerGas": max_priority,
            }
        return {"gasPrice": await self.w3.eth.gas_price}

    async def submit(
        self,
        raw_key: str,
        to: str,
        value: int = 0,
        data: bytes = b"",
        gas_limit: Optional[int] = None,
    ) -> TxReceipt:
        """Sign, broadcast and wait for the receipt."""
        account = Account.from_key(raw_key)
        chain_id = await self.chain_id()

        async with self._sender_lock(account.address):
            try:
                tx: dict = {
                    "from": account.address,
                    "to": to_checksum(to),
                    "value": value,
                    "data": _hex(data),
                    "chainId": chain_id,
                    "nonce": await self.w3.eth.get_transaction_count(account.address, "pending"),
                }
                tx.update(await self._fee_fields())
                tx["gas"] = gas_limit or await self.w3.eth.estimate_gas(tx)

                signed = account.sign_transaction(tx)
                tx_hash = _hex(await self.w3.eth.send_raw_transaction(signed.raw_transaction))
            except ContractLogicError as e:
                # Gas estimation hit a revert: nothing was broadcast
                raise OnChainRevert(f"Transaction to {to} would revert: {e}")
            except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                raise RpcUnavailable(f"Failed to broadcast transaction to {to}: {e}")

        logger.info(f"Broadcast {tx_hash} from {account.address} to {to}")
        return await self._wait_for_receipt(tx_hash)

    async def _wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self.confirmation_timeout,
                poll_latency=self.poll_interval,
            )
        except TimeExhausted:
            logger.warning(
                f"No receipt for {tx_hash} after {self.confirmation_timeout}s, outcome unknown"
            )
            raise ConfirmationTimeout(
                f"Transaction {tx_hash} not confirmed within {self.confirmation_timeout}s",
                tx_hash=tx_hash,
            )
        except asyncio.CancelledError:
            logger.warning(f"Stopped waiting for {tx_hash}; it may still confirm")
            raise
        except (Web3Exception, OSError) as e:
            raise RpcUnavailable(f"Failed to fetch receipt for {tx_hash}: {e}")

        result = self._to_receipt(tx_hash, receipt)
        if not result.succeeded:
            logger.error(f"Transaction {tx_hash} reverted in block {result.block_number}")
            raise OnChainRevert(f"Transaction {tx_hash} reverted", tx_hash=tx_hash)
        return result


def get_chain_client() -> Web3ChainClient:
    """Build a chain client from settings."""
    from fidg.config import get_settings

    settings = get_settings()
    return Web3ChainClient(
        rpc_url=settings.rpc_url,
        token_address=settings.token_address,
        confirmation_timeout=settings.confirmation_timeout,
        poll_interval=settings.confirmation_poll_interval,
        chain_id=settings.chain_id,
    )
