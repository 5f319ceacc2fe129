"""Safe wallet factory.

Predicts the CREATE2 address of a single-owner, threshold-one Safe proxy
and deploys it from the operating signer. The address depends only on the
owner and the salt nonce, so a redeploy with a persisted salt always
targets the same address.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from eth_utils import keccak

from fidg.chain.abi import decode_result, encode_call, to_checksum
from fidg.chain.base import ChainClient
from fidg.exceptions import DeploymentFailed, FidgError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SAFE_SETUP = "setup(address[],uint256,address,bytes,address,address,uint256,address)"
CREATE_PROXY_WITH_NONCE = "createProxyWithNonce(address,bytes,uint256)"
PROXY_CREATION_CODE = "proxyCreationCode()"


@dataclass
class WalletDeployment:
    """Result of a deploy call.

    Attributes:
        address: Safe address (equals the prediction)
        tx_hash: Deployment transaction hash, None if the Safe already existed
        already_deployed: True when no transaction was sent
    """
    address: str
    tx_hash: Optional[str]
    already_deployed: bool = False


class SafeWalletFactory:
    """Deterministic Safe deployment through the Safe proxy factory."""

    def __init__(
        self,
        chain: ChainClient,
        operator_key: str,
        proxy_factory: str,
        singleton: str,
        fallback_handler: str,
        gas_limit: int = 2_000_000,
    ):
        self.chain = chain
        self._operator_key = operator_key
        self.proxy_factory = to_checksum(proxy_factory)
        self.singleton = to_checksum(singleton)
        self.fallback_handler = to_checksum(fallback_handler)
        self.gas_limit = gas_limit
        self._creation_code: Optional[bytes] = None

    @staticmethod
    def new_salt() -> int:
        """Random salt nonce for a new wallet."""
        return secrets.randbits(64)

    async def proxy_creation_code(self) -> bytes:
        """Proxy init code, read once from the factory."""
        if self._creation_code is None:
            data = await self.chain.call(
                self.proxy_factory, encode_call(PROXY_CREATION_CODE, [], [])
            )
            (self._creation_code,) = decode_result(["bytes"], data)
        return self._creation_code

    def initializer(self, owner: str) -> bytes:
        """Safe.setup calldata: one owner, threshold one, no payment."""
        return encode_call(
            SAFE_SETUP,
            ["address[]", "uint256", "address", "bytes", "address", "address", "uint256", "address"],
            [
                [to_checksum(owner)],
                1,
                ZERO_ADDRESS,
                b"",
                self.fallback_handler,
                ZERO_ADDRESS,
                0,
                ZERO_ADDRESS,
            ],
        )

    async def predict_address(self, owner: str, salt: int) -> str:
        """CREATE2 address the factory will deploy for owner + salt."""
        create2_salt = keccak(keccak(self.initializer(owner)) + salt.to_bytes(32, "big"))
        init_code = await self.proxy_creation_code() + int(self.singleton, 16).to_bytes(32, "big")
        digest = keccak(
            b"\xff"
            + bytes.fromhex(self.proxy_factory[2:])
            + create2_salt
            + keccak(init_code)
        )
        return to_checksum("0x" + digest[12:].hex())

    async def deploy(self, owner: str, salt: int) -> WalletDeployment:
        """Deploy the Safe for owner + salt, paid by the operating signer.

        Raises:
            DeploymentFailed: On any failure. Not retried here: a retry with the
                same salt targets the same address.
        """
        try:
            address = await self.predict_address(owner, salt)

            if await self.chain.get_code(address):
                logger.info(f"Safe {address} for owner {owner} already deployed")
                return WalletDeployment(address=address, tx_hash=None, already_deployed=True)

            logger.info(f"Deploying Safe {address} for owner {owner} (salt {salt})")
            receipt = await self.chain.submit(
                self._operator_key,
                self.proxy_factory,
                value=0,
                data=encode_call(
                    CREATE_PROXY_WITH_NONCE,
                    ["address", "bytes", "uint256"],
                    [self.singleton, self.initializer(owner), salt],
                ),
                gas_limit=self.gas_limit,
            )

            if not await self.chain.get_code(address):
                raise DeploymentFailed(
                    f"No contract at predicted address {address} after deployment",
                    tx_hash=receipt.tx_hash,
                )

        except DeploymentFailed:
            raise
        except FidgError as e:
            logger.error(f"Safe deployment for owner {owner} failed: {e}")
            raise DeploymentFailed(f"Safe deployment failed: {e.message}", tx_hash=e.tx_hash)

        logger.info(f"Safe deployed at {address}, tx {receipt.tx_hash}")
        return WalletDeployment(address=address, tx_hash=receipt.tx_hash)
