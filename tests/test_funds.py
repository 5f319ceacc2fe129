"""Tests for the fund-movement orchestrator."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from fidg.chain.abi import to_checksum
from fidg.custody import address_of
from fidg.exceptions import (
    ConfirmationTimeout,
    LedgerWriteFailed,
    OnChainRevert,
    ReserveInsufficient,
    RpcUnavailable,
    ValidationError,
)
from fidg.ledger.models import TransactionKind, TransactionStatus, utcnow
from fidg.services.funds import FundMovementOrchestrator, Principal, parse_amount
from fidg.utils.locks import account_lock

from tests.fakes import OPERATOR_KEY

RECIPIENT = "0x" + "5a" * 20


@pytest.fixture
def principal(account) -> Principal:
    return Principal(account_id=account.id)


@pytest.fixture
def funded(account, chain):
    """Account whose Safe holds 500 tokens, with a 1000 token reserve."""
    chain.mint(account.wallet_address, 500)
    chain.mint(address_of(OPERATOR_KEY), 1000)
    return account


class TestParseAmount:
    """Tests for amount validation."""

    @pytest.mark.parametrize(
        "value,expected",
        [("100", Decimal("100")), (50, Decimal("50")), (0.1, Decimal("0.1")), (" 2.5 ", Decimal("2.5"))],
    )
    def test_valid(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", "0", "-1", 0, "NaN", "Infinity", "-Infinity", True])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            parse_amount(value)


class TestInvest:
    """Tests for deposits into savings."""

    @pytest.mark.asyncio
    async def test_invest_twice_from_zero(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain):
        """Two deposits of 50: balance 100, two records, start date from the first only."""
        first = await orchestrator.invest(principal, "50")
        after_first = await store.get(funded.id)
        second = await orchestrator.invest(principal, "50")

        assert first.success and second.success
        account = await store.get(funded.id)
        assert account.savings_balance == Decimal("100")
        assert account.total_deposited == Decimal("100")
        assert second.balance == Decimal("100")

        invested = await store.query_transactions(funded.id, kind=TransactionKind.INVESTED)
        assert len(invested) == 2
        first_record = min(invested, key=lambda r: r.id)
        assert account.savings_start_date == after_first.savings_start_date
        assert account.savings_start_date == first_record.timestamp

        assert chain.token_balance(orchestrator.savings_vehicle) == Decimal("100")
        assert chain.token_balance(funded.wallet_address) == Decimal("400")

    @pytest.mark.asyncio
    async def test_invest_record(self, orchestrator: FundMovementOrchestrator, funded, principal, store):
        result = await orchestrator.invest(principal, "25.5")

        (record,) = await store.query_transactions(funded.id, kind=TransactionKind.INVESTED)
        assert record.tx_hash == result.tx_hash
        assert record.amount == Decimal("25.5")
        assert record.currency == "EURe"
        assert record.from_address == funded.wallet_address
        assert record.to_address == orchestrator.savings_vehicle
        assert record.status == TransactionStatus.SUCCESS.value
        assert record.description == "Deposited 25.5 EURe to Fidg Savings."

    @pytest.mark.asyncio
    async def test_invest_more_than_wallet_holds(self, orchestrator: FundMovementOrchestrator, funded, principal, store):
        """A reverted transfer leaves a failed record and no balance change."""
        with pytest.raises(OnChainRevert) as exc_info:
            await orchestrator.invest(principal, "501")

        account = await store.get(funded.id)
        assert account.savings_balance == Decimal("0")
        (record,) = await store.query_transactions(funded.id, kind=TransactionKind.INVESTED)
        assert record.status == TransactionStatus.FAILED.value
        assert record.tx_hash == exc_info.value.tx_hash

    @pytest.mark.asyncio
    async def test_confirmation_timeout_records_nothing(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain):
        """Unknown outcome: no balance change and no record."""
        chain.fail_when(lambda tx: True, ConfirmationTimeout("no receipt", tx_hash="0x" + "ee" * 32))

        with pytest.raises(ConfirmationTimeout):
            await orchestrator.invest(principal, "10")

        assert (await store.get(funded.id)).savings_balance == Decimal("0")
        assert await store.query_transactions(funded.id, kind=TransactionKind.INVESTED) == []

    @pytest.mark.asyncio
    async def test_ledger_failure_after_confirmation(self, orchestrator: FundMovementOrchestrator, funded, principal, store, monkeypatch):
        """Confirmed on chain but not recorded: LedgerWriteFailed with the details."""

        async def broken(*args, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(store, "commit_movement", broken)

        with pytest.raises(LedgerWriteFailed) as exc_info:
            await orchestrator.invest(principal, "10")

        assert exc_info.value.tx_hash is not None
        assert exc_info.value.account_id == funded.id
        assert exc_info.value.amount == Decimal("10")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [None, "abc", "0", "-5", "NaN"])
    async def test_invalid_amount(self, orchestrator: FundMovementOrchestrator, funded, principal, chain, amount):
        submits = len(chain.submits)

        result = await orchestrator.invest(principal, amount)

        assert result.status == 400
        assert result.error == "validation_error"
        assert len(chain.submits) == submits

    @pytest.mark.asyncio
    async def test_amount_below_smallest_unit(self, orchestrator: FundMovementOrchestrator, funded, principal):
        result = await orchestrator.invest(principal, "0.0000000000000000001")

        assert result.status == 400

    @pytest.mark.asyncio
    async def test_amount_finer_than_token_decimals(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain):
        """Nothing moves when the amount cannot be represented exactly in token units."""
        submits = len(chain.submits)

        result = await orchestrator.invest(principal, "1.0000000000000000009")

        assert result.status == 400
        assert result.error == "validation_error"
        assert len(chain.submits) == submits
        assert chain.token_balance(funded.wallet_address) == Decimal("500")
        assert (await store.get(funded.id)).savings_balance == 0

    @pytest.mark.asyncio
    async def test_small_deposits_withdraw_in_full(self, orchestrator: FundMovementOrchestrator, funded, principal, store):
        for _ in range(3):
            result = await orchestrator.invest(principal, "0.1")
            assert result.status == 200

        account = await store.get(funded.id)
        assert account.savings_balance == Decimal("0.3")
        invested = await store.query_transactions(funded.id, kind=TransactionKind.INVESTED)
        assert [r.amount for r in invested] == [Decimal("0.1")] * 3

        result = await orchestrator.withdraw(principal, "0.3")

        assert result.status == 200
        assert result.balance == 0
        assert (await store.get(funded.id)).savings_balance == 0


class TestWithdraw:
    """Tests for withdrawals from savings."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["1", "30", "99.99", "100"])
    async def test_withdraw_within_balance(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain, amount):
        """Withdrawal reduces savings and raises total withdrawn by the amount."""
        await orchestrator.invest(principal, "100")
        before = await store.get(funded.id)
        wallet_before = chain.token_balance(funded.wallet_address)

        result = await orchestrator.withdraw(principal, amount)

        assert result.success
        after = await store.get(funded.id)
        assert after.savings_balance == before.savings_balance - Decimal(amount)
        assert after.total_withdrawn == before.total_withdrawn + Decimal(amount)
        assert after.savings_balance == after.total_deposited - after.total_withdrawn
        assert chain.token_balance(funded.wallet_address) == wallet_before + Decimal(amount)

        (record,) = await store.query_transactions(funded.id, kind=TransactionKind.WITHDRAWN)
        assert record.from_address == "Fidg Savings"
        assert record.to_address == funded.wallet_address
        assert record.amount == Decimal(amount)
        assert record.tx_hash == result.tx_hash

    @pytest.mark.asyncio
    async def test_withdraw_paid_by_operator(self, orchestrator: FundMovementOrchestrator, funded, principal, chain):
        await orchestrator.invest(principal, "100")

        await orchestrator.withdraw(principal, "10")

        assert chain.submits[-1]["sender"] == address_of(OPERATOR_KEY)
        assert chain.token_balance(address_of(OPERATOR_KEY)) == Decimal("990")

    @pytest.mark.asyncio
    async def test_invest_100_withdraw_150(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain):
        """Over-withdrawal is rejected before any chain call."""
        await orchestrator.invest(principal, "100")
        submits = len(chain.submits)

        result = await orchestrator.withdraw(principal, "150")

        assert result.status == 400
        assert result.error == "validation_error"
        assert len(chain.submits) == submits
        assert (await store.get(funded.id)).savings_balance == Decimal("100")
        records = await store.query_transactions(funded.id)
        assert [r.kind for r in records if r.kind != TransactionKind.WALLET_CREATED.value] == [
            TransactionKind.INVESTED.value
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0.01", "1", "1000"])
    async def test_withdraw_from_empty_savings(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain, amount):
        submits = len(chain.submits)

        result = await orchestrator.withdraw(principal, amount)

        assert result.status == 400
        assert len(chain.submits) == submits
        assert await store.query_transactions(funded.id, kind=TransactionKind.WITHDRAWN) == []

    @pytest.mark.asyncio
    async def test_reserve_insufficient(self, orchestrator: FundMovementOrchestrator, account, principal, store, chain):
        """A reserve that cannot cover the withdrawal stops it before broadcast."""
        chain.mint(account.wallet_address, 100)
        await orchestrator.invest(principal, "100")
        submits = len(chain.submits)

        with pytest.raises(ReserveInsufficient):
            await orchestrator.withdraw(principal, "50")

        assert len(chain.submits) == submits
        assert (await store.get(account.id)).savings_balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_under_lock(self, orchestrator: FundMovementOrchestrator, funded, principal, store):
        """Serialized by the account lock, only one of two 60 withdrawals from 100 succeeds."""
        await orchestrator.invest(principal, "100")

        async def withdraw():
            async with account_lock(principal.account_id, operation="withdraw"):
                return await orchestrator.withdraw(principal, "60")

        results = await asyncio.gather(withdraw(), withdraw())

        assert sorted(r.status for r in results) == [200, 400]
        account = await store.get(funded.id)
        assert account.savings_balance == Decimal("40")
        assert len(await store.query_transactions(funded.id, kind=TransactionKind.WITHDRAWN)) == 1

    @pytest.mark.asyncio
    async def test_interleaved_withdrawal_is_caught_by_ledger(
        self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain, monkeypatch
    ):
        """A balance change landing between check and settle cannot overdraw savings."""
        await orchestrator.invest(principal, "100")
        submit = chain.submit

        async def submit_after_competing_write(*args, **kwargs):
            await store.commit_movement(
                funded.id,
                {
                    "kind": TransactionKind.WITHDRAWN.value,
                    "amount": Decimal("80"),
                    "currency": "EURe",
                    "from_address": "Fidg Savings",
                    "to_address": funded.wallet_address,
                    "status": TransactionStatus.SUCCESS.value,
                    "tx_hash": "0x" + "aa" * 32,
                    "timestamp": utcnow(),
                    "description": "competing withdrawal",
                },
                savings_delta=Decimal("-80"),
                withdrawn_delta=Decimal("80"),
            )
            return await submit(*args, **kwargs)

        monkeypatch.setattr(chain, "submit", submit_after_competing_write)

        with pytest.raises(LedgerWriteFailed) as exc_info:
            await orchestrator.withdraw(principal, "60")

        assert exc_info.value.tx_hash is not None
        assert exc_info.value.amount == Decimal("60")
        account = await store.get(funded.id)
        assert account.savings_balance == Decimal("20")


class TestSend:
    """Tests for external transfers."""

    @pytest.mark.asyncio
    async def test_send(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain):
        result = await orchestrator.send(principal, RECIPIENT, "12")

        assert result.success
        assert chain.token_balance(RECIPIENT) == Decimal("12")
        assert chain.token_balance(funded.wallet_address) == Decimal("488")

        (record,) = await store.query_transactions(funded.id, kind=TransactionKind.SENT_FUNDS)
        assert record.tx_hash == result.tx_hash
        assert record.from_address == funded.wallet_address
        assert record.description == f"Sent 12 EURe to {to_checksum(RECIPIENT)[:6]}..."

        account = await store.get(funded.id)
        assert account.savings_balance == Decimal("0")
        assert account.last_activity is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("recipient", [None, "", "0x1234", "not-an-address"])
    async def test_invalid_recipient(self, orchestrator: FundMovementOrchestrator, funded, principal, chain, recipient):
        submits = len(chain.submits)

        result = await orchestrator.send(principal, recipient, "1")

        assert result.status == 400
        assert len(chain.submits) == submits

    @pytest.mark.asyncio
    async def test_rpc_failure_propagates(self, orchestrator: FundMovementOrchestrator, funded, principal, store, chain):
        chain.fail_when(lambda tx: True, RpcUnavailable("node down"))

        with pytest.raises(RpcUnavailable):
            await orchestrator.send(principal, RECIPIENT, "1")

        assert await store.query_transactions(funded.id, kind=TransactionKind.SENT_FUNDS) == []


class TestAccountChecks:
    """Tests for missing or unprovisioned accounts."""

    @pytest.mark.asyncio
    async def test_unknown_account(self, orchestrator: FundMovementOrchestrator):
        result = await orchestrator.invest(Principal(account_id="missing"), "1")

        assert result.status == 404
        assert result.error == "account_not_found"

    @pytest.mark.asyncio
    async def test_unprovisioned_account(self, orchestrator: FundMovementOrchestrator, store):
        account = await store.create_account(
            name="Ada",
            email="ada@example.com",
            password_hash="x",
            owner_address="0x" + "33" * 20,
            custody="00:00",
        )
        principal = Principal(account_id=account.id)

        for result in (
            await orchestrator.invest(principal, "1"),
            await orchestrator.withdraw(principal, "1"),
            await orchestrator.send(principal, RECIPIENT, "1"),
            await orchestrator.balance(principal),
        ):
            assert result.status == 409
            assert result.error == "wallet_not_provisioned"


class TestQueries:
    """Tests for balances, history and reserve status."""

    @pytest.mark.asyncio
    async def test_balance(self, orchestrator: FundMovementOrchestrator, funded, principal):
        result = await orchestrator.balance(principal)

        assert result.status == 200
        assert result.balance == Decimal("500")

    @pytest.mark.asyncio
    async def test_token_balance_invalid_address(self, orchestrator: FundMovementOrchestrator):
        result = await orchestrator.token_balance("nope")

        assert result.status == 400

    @pytest.mark.asyncio
    async def test_history_newest_first(self, orchestrator: FundMovementOrchestrator, funded, principal):
        await orchestrator.invest(principal, "10")
        await orchestrator.send(principal, RECIPIENT, "5")

        records = await orchestrator.history(principal)

        assert [r.kind for r in records] == [
            TransactionKind.SENT_FUNDS.value,
            TransactionKind.INVESTED.value,
            TransactionKind.WALLET_CREATED.value,
        ]

    @pytest.mark.asyncio
    async def test_reserve_status(self, orchestrator: FundMovementOrchestrator, funded, principal):
        await orchestrator.invest(principal, "100")

        status = await orchestrator.reserve_status()

        assert status.operator_address == address_of(OPERATOR_KEY)
        assert status.reserve_balance == Decimal("1000")
        assert status.total_savings == Decimal("100")
        assert status.solvent
        assert status.shortfall == Decimal("0")

    @pytest.mark.asyncio
    async def test_reserve_shortfall(self, orchestrator: FundMovementOrchestrator, account, principal, chain):
        chain.mint(account.wallet_address, 100)
        chain.mint(address_of(OPERATOR_KEY), 30)
        await orchestrator.invest(principal, "100")

        status = await orchestrator.reserve_status()

        assert not status.solvent
        assert status.shortfall == Decimal("70")
