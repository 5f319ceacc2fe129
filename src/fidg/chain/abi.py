"""Calldata helpers for the settlement token and Safe contracts."""

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector
from eth_utils import is_address as _is_address
from eth_utils import to_checksum_address

# ERC-20
TRANSFER = "transfer(address,uint256)"
BALANCE_OF = "balanceOf(address)"
DECIMALS = "decimals()"
SYMBOL = "symbol()"


def selector(signature: str) -> bytes:
    """4-byte function selector for a canonical signature."""
    return function_signature_to_4byte_selector(signature)


def encode_call(signature: str, types: list[str], args: list) -> bytes:
    """Build calldata: selector followed by ABI-encoded arguments."""
    return selector(signature) + encode(types, args)


def encode_transfer(to: str, amount: int) -> bytes:
    """ERC-20 ``transfer(to, amount)`` calldata."""
    return encode_call(TRANSFER, ["address", "uint256"], [to_checksum(to), amount])


def decode_result(types: list[str], data: bytes) -> tuple:
    """Decode an eth_call return value."""
    return decode(types, bytes(data))


def is_address(value) -> bool:
    """Validate a 0x-prefixed EVM address (checksum enforced when mixed-case)."""
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        return False
    return _is_address(value)


def to_checksum(address: str) -> str:
    return to_checksum_address(address)
