"""Tests for Safe address prediction, deployment and execution."""

from decimal import Decimal

import pytest

from fidg.chain.abi import encode_transfer, to_checksum
from fidg.custody import generate_owner_key
from fidg.exceptions import DeploymentFailed, OnChainRevert, RpcUnavailable
from fidg.multisig.factory import SafeWalletFactory
from fidg.multisig.wallet import SafeWallet

from tests.fakes import PROXY_FACTORY, SINGLETON, TOKEN_ADDRESS, create2_address


class TestAddressPrediction:
    """Tests for CREATE2 prediction."""

    @pytest.mark.asyncio
    async def test_prediction_is_deterministic(self, factory: SafeWalletFactory):
        """Same owner and salt always predict the same address."""
        owner, _ = generate_owner_key()

        first = await factory.predict_address(owner, 42)
        second = await factory.predict_address(owner, 42)

        assert first == second

    @pytest.mark.asyncio
    async def test_prediction_depends_on_salt_and_owner(self, factory: SafeWalletFactory):
        owner, _ = generate_owner_key()
        other, _ = generate_owner_key()

        base = await factory.predict_address(owner, 1)
        assert await factory.predict_address(owner, 2) != base
        assert await factory.predict_address(other, 1) != base

    @pytest.mark.asyncio
    async def test_prediction_matches_create2(self, factory: SafeWalletFactory):
        """Prediction follows the proxy factory's CREATE2 derivation."""
        owner, _ = generate_owner_key()

        predicted = await factory.predict_address(owner, 7)

        assert predicted == create2_address(PROXY_FACTORY, factory.initializer(owner), 7, SINGLETON)

    @pytest.mark.asyncio
    async def test_creation_code_read_once(self, factory: SafeWalletFactory, chain):
        owner, _ = generate_owner_key()

        await factory.predict_address(owner, 1)
        calls = chain.calls
        await factory.predict_address(owner, 2)

        assert chain.calls == calls

    def test_new_salt_is_random(self):
        assert SafeWalletFactory.new_salt() != SafeWalletFactory.new_salt()


class TestDeployment:
    """Tests for Safe deployment."""

    @pytest.mark.asyncio
    async def test_deploy_matches_prediction(self, factory: SafeWalletFactory, chain):
        """Deployment lands at the predicted address, paid by the operator."""
        owner, _ = generate_owner_key()
        salt = factory.new_salt()
        predicted = await factory.predict_address(owner, salt)

        deployment = await factory.deploy(owner, salt)

        assert deployment.address == predicted
        assert deployment.tx_hash is not None
        assert not deployment.already_deployed
        assert await chain.get_code(predicted)
        assert chain.safe_owners[predicted] == owner
        assert chain.submits[-1]["to"] == to_checksum(PROXY_FACTORY)

    @pytest.mark.asyncio
    async def test_redeploy_is_idempotent(self, factory: SafeWalletFactory, chain):
        """A second deploy with the same salt sends nothing."""
        owner, _ = generate_owner_key()
        first = await factory.deploy(owner, 5)
        submits = len(chain.submits)

        second = await factory.deploy(owner, 5)

        assert second.address == first.address
        assert second.already_deployed
        assert second.tx_hash is None
        assert len(chain.submits) == submits

    @pytest.mark.asyncio
    async def test_revert_raises_deployment_failed(self, factory: SafeWalletFactory, chain):
        owner, _ = generate_owner_key()
        chain.fail_when(
            lambda tx: tx["to"] == to_checksum(PROXY_FACTORY),
            OnChainRevert("reverted", tx_hash="0xabc"),
        )

        with pytest.raises(DeploymentFailed) as exc_info:
            await factory.deploy(owner, 9)

        assert exc_info.value.tx_hash == "0xabc"
        assert not await chain.get_code(await factory.predict_address(owner, 9))

    @pytest.mark.asyncio
    async def test_rpc_failure_raises_deployment_failed(self, factory: SafeWalletFactory, chain):
        owner, _ = generate_owner_key()
        chain.fail_when(lambda tx: True, RpcUnavailable("node down"))

        with pytest.raises(DeploymentFailed):
            await factory.deploy(owner, 10)


class TestSafeExecution:
    """Tests for create -> sign -> execute."""

    @pytest.mark.asyncio
    async def test_execute_token_transfer(self, factory: SafeWalletFactory, chain):
        """Owner-signed transfer moves tokens out of the Safe."""
        owner, owner_key = generate_owner_key()
        recipient, _ = generate_owner_key()
        deployment = await factory.deploy(owner, 11)
        chain.mint(deployment.address, 10)

        wallet = SafeWallet(chain, deployment.address)
        units = await chain.to_token_units(Decimal("4"))
        receipt = await wallet.execute(owner_key, TOKEN_ADDRESS, data=encode_transfer(recipient, units))

        assert receipt.succeeded
        assert chain.token_balance(deployment.address) == Decimal("6")
        assert chain.token_balance(recipient) == Decimal("4")
        assert await wallet.nonce() == 1

    @pytest.mark.asyncio
    async def test_execute_requires_owner_signature(self, factory: SafeWalletFactory, chain):
        """A key that does not own the Safe cannot move its funds."""
        owner, _ = generate_owner_key()
        _, stranger_key = generate_owner_key()
        recipient, _ = generate_owner_key()
        deployment = await factory.deploy(owner, 12)
        chain.mint(deployment.address, 10)

        wallet = SafeWallet(chain, deployment.address)
        units = await chain.to_token_units(Decimal("1"))
        with pytest.raises(OnChainRevert):
            await wallet.execute(stranger_key, TOKEN_ADDRESS, data=encode_transfer(recipient, units))

        assert chain.token_balance(deployment.address) == Decimal("10")

    @pytest.mark.asyncio
    async def test_signature_tracks_nonce(self, factory: SafeWalletFactory, chain):
        """Consecutive executions sign over increasing nonces."""
        owner, owner_key = generate_owner_key()
        recipient, _ = generate_owner_key()
        deployment = await factory.deploy(owner, 13)
        chain.mint(deployment.address, 10)
        wallet = SafeWallet(chain, deployment.address)
        units = await chain.to_token_units(Decimal("1"))

        for _ in range(3):
            await wallet.execute(owner_key, TOKEN_ADDRESS, data=encode_transfer(recipient, units))

        assert await wallet.nonce() == 3
        assert chain.token_balance(recipient) == Decimal("3")
