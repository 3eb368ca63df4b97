"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# TLOS has 4 decimals on chain; keep headroom for fractional test amounts.
TLOS_NUMERIC = Numeric(precision=30, scale=10)


class DailyUsage(Base):
    """
    ORM model for daily_usage table.

    One row per account key per UTC calendar day. Never deleted.
    """

    __tablename__ = "daily_usage"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    chain_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_name: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)

    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_input_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_output_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("request_count >= 0", name="ck_daily_usage_request_count_non_negative"),
        UniqueConstraint("chain_id", "account_name", "usage_date", name="uq_daily_usage_key_date"),
        Index("idx_daily_usage_date", "usage_date"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<DailyUsage(chain_id={self.chain_id[:12]}, account={self.account_name}, "
            f"date={self.usage_date}, requests={self.request_count})>"
        )


class CreditBalance(Base):
    """
    ORM model for credit_balances table.

    Materialized balance per account key; derivable from credit_transactions.
    """

    __tablename__ = "credit_balances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    chain_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_name: Mapped[str] = mapped_column(String(64), nullable=False)

    balance_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_deposited_tlos: Mapped[Decimal] = mapped_column(
        TLOS_NUMERIC, nullable=False, default=Decimal("0")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_tokens >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint("total_deposited_tlos >= 0", name="ck_total_deposited_non_negative"),
        UniqueConstraint("chain_id", "account_name", name="uq_credit_balance_key"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditBalance(chain_id={self.chain_id[:12]}, account={self.account_name}, "
            f"balance={self.balance_tokens})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger of deposits and usage debits. Rows are never updated.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    chain_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_name: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Deposit fields
    tlos_amount: Mapped[Decimal | None] = mapped_column(TLOS_NUMERIC, nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Usage fields
    input_tokens: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    output_tokens: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    model: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Audit replay
    token_units_delta: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("type IN ('deposit', 'usage')", name="ck_credit_transaction_type"),
        CheckConstraint("balance_after >= 0", name="ck_credit_transaction_balance_non_negative"),
        CheckConstraint(
            "type <> 'deposit' OR tx_hash IS NOT NULL", name="ck_deposit_has_tx_hash"
        ),
        # Sole idempotency guard for deposits
        Index(
            "uq_credit_transactions_tx_hash",
            "tx_hash",
            unique=True,
            postgresql_where=(tx_hash.isnot(None)),
        ),
        Index("idx_credit_transactions_key_created", "chain_id", "account_name", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, type={self.type}, "
            f"delta={self.token_units_delta}, balance_after={self.balance_after})>"
        )


class AppConfig(Base):
    """
    ORM model for app_config table.

    App-wide key/value settings editable without a deploy.
    """

    __tablename__ = "app_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class UserSettings(Base):
    """ORM model for user_settings table (per authenticated user)."""

    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    llm_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="builtin")
    llm_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    llm_model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    llm_api_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("llm_mode IN ('builtin', 'byok')", name="ck_user_settings_llm_mode"),
    )

    def __repr__(self) -> str:
        """String representation for debugging - never includes the API key."""
        return f"<UserSettings(user_id={self.user_id}, mode={self.llm_mode})>"


class Profile(Base):
    """
    ORM model for profiles table.

    One row per wallet login (account on a chain); its id is the user token subject.
    """

    __tablename__ = "profiles"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    chain_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_name: Mapped[str] = mapped_column(String(64), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_login_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("account_name", "chain_id", name="uq_profiles_account_chain"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Profile(id={self.id}, account={self.account_name})>"
