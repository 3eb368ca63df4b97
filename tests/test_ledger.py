"""
Tests for CreditLedger.

Usage posting, deposit crediting, token conversion and balance replay.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.exc import IntegrityError, OperationalError

from chainchat.db.models import CreditTransaction
from chainchat.exceptions import (
    DataIntegrityError,
    DuplicateTransactionError,
    InvalidAmountError,
    StorageError,
)
from chainchat.models.api import BillingMode, CreditTransactionType
from chainchat.models.domain import AccountKey, TransactionData, UsageRecord
from chainchat.services.ledger import (
    FREE_REQUESTS_PER_DAY,
    TOKENS_PER_TLOS,
    CreditLedger,
    replay_balance,
    tlos_to_token_units,
)
from tests.conftest import (
    create_balance,
    create_daily_usage,
    create_transaction,
    make_result,
    session_get_returning_added,
)


def added_transactions(session: AsyncMock) -> list[CreditTransaction]:
    return [
        call.args[0]
        for call in session.add.call_args_list
        if isinstance(call.args[0], CreditTransaction)
    ]


# ============================================================================
# Conversion
# ============================================================================


class TestTlosToTokenUnits:
    """Tests for TLOS -> token unit conversion."""

    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            ("1.0", 250_000),
            ("0.004", 1_000),
            ("0.0000041", 1),
            ("2.5000", 625_000),
            ("0.0000039", 0),
        ],
    )
    def test_conversion_rounds_down(self, amount: str, expected: int) -> None:
        assert tlos_to_token_units(Decimal(amount)) == expected

    @given(st.decimals(min_value=0, max_value=10_000_000, places=4, allow_nan=False))
    def test_never_exceeds_exact_value(self, amount: Decimal) -> None:
        units = tlos_to_token_units(amount)
        assert units <= amount * TOKENS_PER_TLOS < units + 1


# ============================================================================
# Usage Recording
# ============================================================================


class TestRecordUsage:
    """Tests for CreditLedger.record_usage."""

    async def test_byok_never_touches_the_ledger(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        ledger = CreditLedger(db_session, clock=clock)
        record = UsageRecord(account_key, BillingMode.BYOK, 100, 200, "gpt-4o")

        assert await ledger.record_usage(record) is None
        db_session.execute.assert_not_called()
        db_session.commit.assert_not_called()

    async def test_free_request_increments_counters_only(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        usage = create_daily_usage(account_key, request_count=2, total_input_tokens=10)
        db_session.execute = AsyncMock(return_value=make_result(usage))
        session_get_returning_added(db_session, usage)

        ledger = CreditLedger(db_session, clock=clock)
        result = await ledger.record_usage(
            UsageRecord(account_key, BillingMode.FREE, 100, 50, "qwen")
        )

        assert result.request_count == 3
        assert result.balance_after is None
        assert usage.request_count == 3
        assert usage.total_input_tokens == 110
        assert usage.total_output_tokens == 50
        assert added_transactions(db_session) == []
        db_session.commit.assert_awaited_once()

    async def test_first_request_of_day_creates_usage_row(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        db_session.execute = AsyncMock(return_value=make_result(None))
        session_get_returning_added(db_session)

        ledger = CreditLedger(db_session, clock=clock)
        result = await ledger.record_usage(
            UsageRecord(account_key, BillingMode.FREE, 1, 1, "qwen")
        )

        assert result.request_count == 1
        created = list(db_session._added.values())[0]
        assert created.usage_date.isoformat() == "2024-01-15"

    async def test_paid_request_debits_balance_and_logs_usage(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        usage = create_daily_usage(account_key, request_count=FREE_REQUESTS_PER_DAY)
        balance = create_balance(account_key, balance_tokens=300_000)
        db_session.execute = AsyncMock(side_effect=[make_result(usage), make_result(balance)])
        session_get_returning_added(db_session, usage, balance)

        ledger = CreditLedger(db_session, clock=clock)
        result = await ledger.record_usage(
            UsageRecord(account_key, BillingMode.PAID, 1000, 2000, "qwen")
        )

        assert result.balance_after == 297_000
        assert result.request_count == 6
        assert balance.balance_tokens == 297_000

        (tx,) = added_transactions(db_session)
        assert tx.type == CreditTransactionType.USAGE.value
        assert tx.token_units_delta == -3000
        assert tx.balance_after == 297_000
        assert tx.total_tokens == 3000
        assert tx.model == "qwen"

    async def test_paid_debit_larger_than_balance_clamps_to_zero(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        usage = create_daily_usage(account_key, request_count=7)
        balance = create_balance(account_key, balance_tokens=1000)
        db_session.execute = AsyncMock(side_effect=[make_result(usage), make_result(balance)])
        session_get_returning_added(db_session, usage, balance)

        ledger = CreditLedger(db_session, clock=clock)
        result = await ledger.record_usage(
            UsageRecord(account_key, BillingMode.PAID, 2000, 3000, "qwen")
        )

        assert result.balance_after == 0
        assert balance.balance_tokens == 0
        (tx,) = added_transactions(db_session)
        assert tx.token_units_delta == -5000
        assert tx.balance_after == 0

    async def test_database_failure_rolls_back_and_raises_storage_error(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        db_session.execute = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("connection reset"))
        )

        ledger = CreditLedger(db_session, clock=clock)
        with pytest.raises(StorageError):
            await ledger.record_usage(UsageRecord(account_key, BillingMode.FREE, 1, 1, "m"))

        db_session.rollback.assert_awaited()
        db_session.commit.assert_not_called()

    async def test_count_mismatch_on_read_back_raises(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        usage = create_daily_usage(account_key, request_count=1)
        stale = create_daily_usage(account_key, request_count=1)
        db_session.execute = AsyncMock(return_value=make_result(usage))
        db_session.get = AsyncMock(return_value=stale)

        ledger = CreditLedger(db_session, clock=clock)
        with pytest.raises(DataIntegrityError):
            await ledger.record_usage(UsageRecord(account_key, BillingMode.FREE, 1, 1, "m"))

        db_session.rollback.assert_awaited()


# ============================================================================
# Deposits
# ============================================================================


class TestCreditDeposit:
    """Tests for CreditLedger.credit_deposit."""

    async def test_credits_new_deposit(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        db_session.execute = AsyncMock(
            side_effect=[make_result(None), make_result(None), make_result(None)]
        )
        session_get_returning_added(db_session)

        ledger = CreditLedger(db_session, clock=clock)
        deposit = await ledger.credit_deposit(account_key, Decimal("2.5000"), "cd" * 32)

        assert deposit.tokens_credited == 625_000
        assert deposit.new_balance == 625_000
        assert deposit.tlos_amount == Decimal("2.5000")

        (tx,) = added_transactions(db_session)
        assert tx.type == CreditTransactionType.DEPOSIT.value
        assert tx.tx_hash == "cd" * 32
        assert tx.token_units_delta == 625_000
        assert tx.balance_after == 625_000
        db_session.commit.assert_awaited_once()

    async def test_adds_to_existing_balance(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        balance = create_balance(
            account_key, balance_tokens=1000, total_deposited_tlos=Decimal("1.0")
        )
        db_session.execute = AsyncMock(
            side_effect=[make_result(None), make_result(balance), make_result(None)]
        )
        session_get_returning_added(db_session, balance)

        ledger = CreditLedger(db_session, clock=clock)
        deposit = await ledger.credit_deposit(account_key, Decimal("1.0"), "ef" * 32)

        assert deposit.new_balance == 251_000
        assert balance.total_deposited_tlos == Decimal("2.0")

    async def test_known_hash_is_rejected_before_locking(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        existing = create_transaction(account_key, tx_hash="ab" * 32)
        db_session.execute = AsyncMock(return_value=make_result(existing))

        ledger = CreditLedger(db_session, clock=clock)
        with pytest.raises(DuplicateTransactionError):
            await ledger.credit_deposit(account_key, Decimal("1.0"), "ab" * 32)

        assert db_session.execute.await_count == 1
        db_session.add.assert_not_called()

    async def test_hash_credited_while_waiting_on_lock_is_rejected(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        balance = create_balance(account_key, balance_tokens=10)
        existing = create_transaction(account_key, tx_hash="ab" * 32)
        db_session.execute = AsyncMock(
            side_effect=[make_result(None), make_result(balance), make_result(existing)]
        )

        ledger = CreditLedger(db_session, clock=clock)
        with pytest.raises(DuplicateTransactionError):
            await ledger.credit_deposit(account_key, Decimal("1.0"), "ab" * 32)

        assert balance.balance_tokens == 10
        db_session.commit.assert_not_called()

    async def test_unique_index_violation_maps_to_duplicate(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        balance = create_balance(account_key)
        db_session.execute = AsyncMock(
            side_effect=[make_result(None), make_result(balance), make_result(None)]
        )
        db_session.flush = AsyncMock(
            side_effect=IntegrityError(
                "INSERT",
                {},
                Exception(
                    'duplicate key value violates unique constraint "uq_credit_transactions_tx_hash"'
                ),
            )
        )

        ledger = CreditLedger(db_session, clock=clock)
        with pytest.raises(DuplicateTransactionError):
            await ledger.credit_deposit(account_key, Decimal("1.0"), "ab" * 32)

        db_session.rollback.assert_awaited()

    async def test_other_constraint_violation_is_integrity_error(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        balance = create_balance(account_key)
        db_session.execute = AsyncMock(
            side_effect=[make_result(None), make_result(balance), make_result(None)]
        )
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("ck_credit_balance_non_negative"))
        )

        ledger = CreditLedger(db_session, clock=clock)
        with pytest.raises(DataIntegrityError):
            await ledger.credit_deposit(account_key, Decimal("1.0"), "ab" * 32)

    @pytest.mark.parametrize("amount", ["0", "-1.5"])
    async def test_non_positive_amount_rejected(
        self, db_session: AsyncMock, account_key: AccountKey, amount: str
    ) -> None:
        ledger = CreditLedger(db_session)
        with pytest.raises(InvalidAmountError):
            await ledger.credit_deposit(account_key, Decimal(amount), "ab" * 32)

        db_session.execute.assert_not_called()


# ============================================================================
# Reads
# ============================================================================


class TestGetSummary:
    """Tests for CreditLedger.get_summary."""

    async def test_summary_for_unknown_account_is_empty(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        summary = await CreditLedger(db_session, clock=clock).get_summary(account_key)

        assert summary.balance_tokens == 0
        assert summary.total_deposited_tlos == 0.0
        assert summary.today.request_count == 0
        assert summary.today.free_remaining == FREE_REQUESTS_PER_DAY
        assert summary.recent_transactions == []

    async def test_summary_reports_balance_usage_and_transactions(
        self, db_session: AsyncMock, account_key: AccountKey, clock
    ) -> None:
        balance = create_balance(
            account_key, balance_tokens=247_000, total_deposited_tlos=Decimal("1.0")
        )
        usage = create_daily_usage(
            account_key, request_count=6, total_input_tokens=1000, total_output_tokens=2000
        )
        txs = [
            create_transaction(
                account_key,
                type=CreditTransactionType.USAGE,
                token_units_delta=-3000,
                balance_after=247_000,
                tx_hash=None,
                tlos_amount=None,
            ),
            create_transaction(account_key),
        ]
        db_session.execute = AsyncMock(
            side_effect=[make_result(balance), make_result(usage), make_result(values=txs)]
        )

        summary = await CreditLedger(db_session, clock=clock).get_summary(account_key)

        assert summary.balance_tokens == 247_000
        assert summary.total_deposited_tlos == 1.0
        assert summary.today.request_count == 6
        assert summary.today.free_remaining == 0
        assert [t.type for t in summary.recent_transactions] == [
            CreditTransactionType.USAGE,
            CreditTransactionType.DEPOSIT,
        ]
        assert summary.recent_transactions[0].tlos_amount is None


# ============================================================================
# Replay
# ============================================================================


def _tx(delta: int, after: int) -> TransactionData:
    return TransactionData(
        type=CreditTransactionType.DEPOSIT if delta > 0 else CreditTransactionType.USAGE,
        token_units_delta=delta,
        balance_after=after,
        tlos_amount=None,
        tx_hash=None,
        input_tokens=None,
        output_tokens=None,
        total_tokens=None,
        model=None,
        created_at=None,
    )


class TestReplayBalance:
    """Balance replay from the credit log."""

    def test_replay_matches_stored_balance(self) -> None:
        log = [_tx(250_000, 250_000), _tx(-3000, 247_000), _tx(-300_000, 0), _tx(1000, 1000)]
        assert replay_balance(log) == 1000

    def test_empty_log_is_zero(self) -> None:
        assert replay_balance([]) == 0

    @given(st.lists(st.integers(min_value=-1_000_000, max_value=1_000_000), max_size=50))
    def test_replay_never_negative_and_matches_each_prefix(self, deltas: list[int]) -> None:
        balance = 0
        log = []
        for delta in deltas:
            balance = max(0, balance + delta)
            log.append(_tx(delta, balance))
            assert replay_balance(log) == log[-1].balance_after
        assert replay_balance(log) >= 0
