"""
Credit Ledger - Daily usage counters, token balances and the credit log.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutation for an account key serializes on PostgreSQL row locks
(the DailyUsage row for the day, the CreditBalance row). The partial unique
index on credit_transactions.tx_hash guarantees a deposit is applied at most
once.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime
from decimal import ROUND_FLOOR, Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.db.models import CreditBalance, CreditTransaction, DailyUsage
from chainchat.exceptions import (
    DataIntegrityError,
    DuplicateTransactionError,
    InvalidAmountError,
    StorageError,
    WriteVerificationError,
)
from chainchat.models.api import (
    BillingMode,
    CreditSummaryResponse,
    CreditTransactionType,
    TodayUsage,
    TransactionItem,
)
from chainchat.models.domain import (
    AccountKey,
    DepositData,
    TransactionData,
    UsageRecord,
    UsageRecordData,
)
from chainchat.observability.logging import get_logger
from chainchat.observability.metrics import metrics

logger = get_logger(__name__)

FREE_REQUESTS_PER_DAY = 5
TOKENS_PER_TLOS = 250_000

_TX_HASH_INDEX = "uq_credit_transactions_tx_hash"


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def tlos_to_token_units(tlos_amount: Decimal) -> int:
    """
    Convert a TLOS amount to token units, rounding down.

    1.0 -> 250000, 0.004 -> 1000, 0.0000041 -> 1
    """
    units = (tlos_amount * TOKENS_PER_TLOS).to_integral_value(rounding=ROUND_FLOOR)
    return int(units)


def replay_balance(transactions: Iterable[TransactionData]) -> int:
    """
    Rebuild a balance from the credit log, oldest first.

    Usage debits clamp at zero exactly as record_usage does, so every
    intermediate value equals the stored balance_after.
    """
    balance = 0
    for tx in transactions:
        balance = max(0, balance + tx.token_units_delta)
    return balance


class CreditLedger:
    """
    Credit ledger with write verification.

    All write operations follow the pattern:
    1. Lock (or create) the affected rows
    2. Execute write and flush
    3. Read back and verify
    4. Commit
    """

    def __init__(
        self, session: AsyncSession, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.session = session
        self.clock = clock

    def today(self) -> date:
        """Current UTC calendar day."""
        return self.clock().astimezone(UTC).date()

    # ========================================================================
    # Writes
    # ========================================================================

    async def record_usage(self, record: UsageRecord) -> UsageRecordData | None:
        """
        Post one completed request to the ledger.

        Free and paid requests bump today's counters; paid requests also debit
        the balance (clamped at zero) and append a usage transaction.
        Bring-your-own-key requests never touch the ledger and return None.

        Raises:
            StorageError: The write failed; the whole unit was rolled back
        """
        if record.mode == BillingMode.BYOK:
            return None

        try:
            result = await self._apply_usage(record)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            metrics.record_usage(record.mode.value, False, record.total_tokens)
            logger.error(
                "usage_write_failed",
                chain_id=record.key.chain_id,
                account_name=record.key.account_name,
                error=str(e),
            )
            raise StorageError(f"Recording usage for {record.key} failed") from e
        except (WriteVerificationError, DataIntegrityError):
            await self.session.rollback()
            metrics.record_usage(record.mode.value, False, record.total_tokens)
            raise

        metrics.record_usage(record.mode.value, True, record.total_tokens)
        logger.info(
            "usage_recorded",
            chain_id=record.key.chain_id,
            account_name=record.key.account_name,
            mode=record.mode.value,
            total_tokens=record.total_tokens,
            request_count=result.request_count,
            balance_after=result.balance_after,
        )
        return result

    async def credit_deposit(
        self, key: AccountKey, tlos_amount: Decimal, tx_hash: str
    ) -> DepositData:
        """
        Credit a verified on-chain deposit exactly once.

        Raises:
            InvalidAmountError: Amount is not positive
            DuplicateTransactionError: tx_hash was already credited
            StorageError: The write failed; nothing was credited
        """
        if tlos_amount <= 0:
            raise InvalidAmountError(str(tlos_amount))

        # Fast path; the unique index is the real guard
        if await self._find_transaction_by_hash(tx_hash) is not None:
            raise DuplicateTransactionError(tx_hash)

        token_units = tlos_to_token_units(tlos_amount)

        try:
            balance = await self._lock_or_create_balance(key)

            # Another request may have credited this hash while we waited on the lock
            if await self._find_transaction_by_hash(tx_hash) is not None:
                await self.session.rollback()
                raise DuplicateTransactionError(tx_hash)

            new_balance = balance.balance_tokens + token_units
            new_total = balance.total_deposited_tlos + tlos_amount
            balance.balance_tokens = new_balance
            balance.total_deposited_tlos = new_total

            deposit = CreditTransaction(
                chain_id=key.chain_id,
                account_name=key.account_name,
                type=CreditTransactionType.DEPOSIT.value,
                tlos_amount=tlos_amount,
                tx_hash=tx_hash,
                token_units_delta=token_units,
                balance_after=new_balance,
            )
            self.session.add(deposit)
            await self.session.flush()

            verified_deposit = await self.session.get(CreditTransaction, deposit.id)
            if verified_deposit is None:
                raise WriteVerificationError(f"Deposit {tx_hash} not found after insert")
            await self._verify_balance(balance, new_balance)

            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            if _TX_HASH_INDEX in str(e.orig):
                logger.warning(
                    "deposit_duplicate_rejected",
                    chain_id=key.chain_id,
                    account_name=key.account_name,
                    tx_hash=tx_hash,
                )
                raise DuplicateTransactionError(tx_hash) from e
            raise DataIntegrityError(f"Deposit {tx_hash} violated a constraint") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("deposit_write_failed", tx_hash=tx_hash, error=str(e))
            raise StorageError(f"Crediting deposit {tx_hash} failed") from e
        except (WriteVerificationError, DataIntegrityError):
            await self.session.rollback()
            raise

        logger.info(
            "deposit_credited",
            chain_id=key.chain_id,
            account_name=key.account_name,
            tx_hash=tx_hash,
            tlos_amount=str(tlos_amount),
            tokens_credited=token_units,
            new_balance=new_balance,
        )
        return DepositData(
            tlos_amount=tlos_amount,
            tokens_credited=token_units,
            new_balance=new_balance,
        )

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_daily_usage(self, key: AccountKey, day: date | None = None) -> DailyUsage | None:
        """Get the usage row of a day (today by default)."""
        stmt = select(DailyUsage).where(
            DailyUsage.chain_id == key.chain_id,
            DailyUsage.account_name == key.account_name,
            DailyUsage.usage_date == (day or self.today()),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_balance(self, key: AccountKey) -> CreditBalance | None:
        stmt = select(CreditBalance).where(
            CreditBalance.chain_id == key.chain_id,
            CreditBalance.account_name == key.account_name,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transactions(
        self, key: AccountKey, limit: int | None = 20, newest_first: bool = True
    ) -> list[TransactionData]:
        """Get credit transactions of an account key."""
        order = CreditTransaction.created_at.desc() if newest_first else CreditTransaction.created_at
        stmt = (
            select(CreditTransaction)
            .where(
                CreditTransaction.chain_id == key.chain_id,
                CreditTransaction.account_name == key.account_name,
            )
            .order_by(order)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [self._transaction_to_domain(tx) for tx in result.scalars().all()]

    async def get_summary(self, key: AccountKey, limit: int = 20) -> CreditSummaryResponse:
        """Balance, cumulative deposits, today's usage and recent transactions."""
        balance = await self.get_balance(key)
        usage = await self.get_daily_usage(key)
        transactions = await self.get_transactions(key, limit=limit)

        request_count = usage.request_count if usage else 0
        today = TodayUsage(
            request_count=request_count,
            free_remaining=max(0, FREE_REQUESTS_PER_DAY - request_count),
            total_input_tokens=usage.total_input_tokens if usage else 0,
            total_output_tokens=usage.total_output_tokens if usage else 0,
        )

        return CreditSummaryResponse(
            balance_tokens=balance.balance_tokens if balance else 0,
            total_deposited_tlos=float(balance.total_deposited_tlos) if balance else 0.0,
            today=today,
            recent_transactions=[
                TransactionItem(
                    type=tx.type,
                    tlos_amount=float(tx.tlos_amount) if tx.tlos_amount is not None else None,
                    tx_hash=tx.tx_hash,
                    input_tokens=tx.input_tokens,
                    output_tokens=tx.output_tokens,
                    total_tokens=tx.total_tokens,
                    model=tx.model,
                    token_units_delta=tx.token_units_delta,
                    balance_after=tx.balance_after,
                    created_at=tx.created_at.isoformat(),
                )
                for tx in transactions
            ],
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply_usage(self, record: UsageRecord) -> UsageRecordData:
        usage = await self._lock_or_create_daily_usage(record.key, self.today())
        expected_count = usage.request_count + 1
        usage.request_count = expected_count
        usage.total_input_tokens = usage.total_input_tokens + record.input_tokens
        usage.total_output_tokens = usage.total_output_tokens + record.output_tokens

        balance_after: int | None = None
        if record.mode == BillingMode.PAID:
            balance_after = await self._debit_balance(record)

        await self.session.flush()

        verified_usage = await self.session.get(DailyUsage, usage.id)
        if verified_usage is None:
            raise WriteVerificationError(f"Daily usage {usage.id} disappeared after update")
        if verified_usage.request_count != expected_count:
            raise DataIntegrityError(
                f"Request count mismatch: expected {expected_count}, "
                f"got {verified_usage.request_count}"
            )
        metrics.db_write_verifications_total.labels(success="True").inc()

        return UsageRecordData(request_count=expected_count, balance_after=balance_after)

    async def _debit_balance(self, record: UsageRecord) -> int:
        """Debit a paid request, clamping at zero. Returns the new balance."""
        total = record.total_tokens
        balance = await self._lock_balance_for_update(record.key)

        if balance is None:
            # Admission saw a positive balance; the row cannot vanish, but never go negative
            logger.warning(
                "paid_usage_without_balance",
                chain_id=record.key.chain_id,
                account_name=record.key.account_name,
                total_tokens=total,
            )
            new_balance = 0
        else:
            new_balance = max(0, balance.balance_tokens - total)
            if balance.balance_tokens < total:
                logger.info(
                    "usage_debit_clamped",
                    chain_id=record.key.chain_id,
                    account_name=record.key.account_name,
                    balance_before=balance.balance_tokens,
                    total_tokens=total,
                )
            balance.balance_tokens = new_balance

        self.session.add(
            CreditTransaction(
                chain_id=record.key.chain_id,
                account_name=record.key.account_name,
                type=CreditTransactionType.USAGE.value,
                input_tokens=record.input_tokens,
                output_tokens=record.output_tokens,
                total_tokens=total,
                model=record.model,
                token_units_delta=-total,
                balance_after=new_balance,
            )
        )

        if balance is not None:
            await self.session.flush()
            await self._verify_balance(balance, new_balance)

        return new_balance

    async def _verify_balance(self, balance: CreditBalance, expected: int) -> None:
        verified = await self.session.get(CreditBalance, balance.id)
        if verified is None:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise WriteVerificationError(f"Balance {balance.id} disappeared after update")
        if verified.balance_tokens != expected:
            metrics.db_write_verifications_total.labels(success="False").inc()
            raise DataIntegrityError(
                f"Balance mismatch: expected {expected}, got {verified.balance_tokens}"
            )
        metrics.db_write_verifications_total.labels(success="True").inc()

    async def _lock_daily_usage(self, key: AccountKey, day: date) -> DailyUsage | None:
        """Lock the usage row of a day (SELECT FOR UPDATE)."""
        stmt = (
            select(DailyUsage)
            .where(
                DailyUsage.chain_id == key.chain_id,
                DailyUsage.account_name == key.account_name,
                DailyUsage.usage_date == day,
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_or_create_daily_usage(self, key: AccountKey, day: date) -> DailyUsage:
        usage = await self._lock_daily_usage(key, day)
        if usage is not None:
            return usage

        usage = DailyUsage(
            chain_id=key.chain_id,
            account_name=key.account_name,
            usage_date=day,
            request_count=0,
            total_input_tokens=0,
            total_output_tokens=0,
        )
        self.session.add(usage)
        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - row created by a concurrent request for the same key
            await self.session.rollback()
            usage = await self._lock_daily_usage(key, day)
            if usage is None:
                raise WriteVerificationError("Daily usage creation failed due to race condition")
        return usage

    async def _lock_balance_for_update(self, key: AccountKey) -> CreditBalance | None:
        """Lock the balance row (SELECT FOR UPDATE)."""
        stmt = (
            select(CreditBalance)
            .where(
                CreditBalance.chain_id == key.chain_id,
                CreditBalance.account_name == key.account_name,
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_or_create_balance(self, key: AccountKey) -> CreditBalance:
        balance = await self._lock_balance_for_update(key)
        if balance is not None:
            return balance

        balance = CreditBalance(
            chain_id=key.chain_id,
            account_name=key.account_name,
            balance_tokens=0,
            total_deposited_tlos=Decimal("0"),
        )
        self.session.add(balance)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            balance = await self._lock_balance_for_update(key)
            if balance is None:
                raise WriteVerificationError("Balance creation failed due to race condition")
        return balance

    async def _find_transaction_by_hash(self, tx_hash: str) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(CreditTransaction.tx_hash == tx_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _transaction_to_domain(self, tx: CreditTransaction) -> TransactionData:
        """Convert ORM transaction to domain model."""
        return TransactionData(
            type=CreditTransactionType(tx.type),
            token_units_delta=tx.token_units_delta,
            balance_after=tx.balance_after,
            tlos_amount=tx.tlos_amount,
            tx_hash=tx.tx_hash,
            input_tokens=tx.input_tokens,
            output_tokens=tx.output_tokens,
            total_tokens=tx.total_tokens,
            model=tx.model,
            created_at=tx.created_at,
        )
