"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from chainchat.models.api import BillingMode, CreditTransactionType


@dataclass(frozen=True)
class AccountKey:
    """
    Ledger principal: one wallet account on one chain.

    The same account name on two chains is two different principals.
    """

    chain_id: str
    account_name: str

    def __post_init__(self) -> None:
        """Validate key fields."""
        if not self.chain_id:
            raise ValueError("chain_id cannot be empty")
        if not self.account_name:
            raise ValueError("account_name cannot be empty")

    def __str__(self) -> str:
        return f"{self.chain_id[:12]}/{self.account_name}"


@dataclass(frozen=True)
class UsageRecord:
    """Token usage of one completed chat request, ready to be posted to the ledger."""

    key: AccountKey
    mode: BillingMode
    input_tokens: int
    output_tokens: int
    model: str

    def __post_init__(self) -> None:
        """Validate token counts."""
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError(
                f"Token counts cannot be negative: {self.input_tokens}/{self.output_tokens}"
            )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageRecordData:
    """Ledger state after recording usage."""

    request_count: int
    balance_after: int | None


@dataclass(frozen=True)
class DepositData:
    """Immutable result of a credited deposit."""

    tlos_amount: Decimal
    tokens_credited: int
    new_balance: int


@dataclass(frozen=True)
class TransactionData:
    """Immutable credit transaction snapshot (for summaries and replay)."""

    type: CreditTransactionType
    token_units_delta: int
    balance_after: int
    tlos_amount: Decimal | None
    tx_hash: str | None
    input_tokens: int | None
    output_tokens: int | None
    total_tokens: int | None
    model: str | None
    created_at: datetime


@dataclass(frozen=True)
class TokenTransfer:
    """A token transfer action found inside an on-chain transaction."""

    contract: str
    sender: str
    recipient: str
    quantity: str
    memo: str


@dataclass(frozen=True)
class ResolvedProvider:
    """Which model to call, with whose key, and how the request is billed."""

    provider: str
    model: str
    api_key: str
    builtin: bool

    def __repr__(self) -> str:
        """Never print the key."""
        return (
            f"ResolvedProvider(provider={self.provider!r}, model={self.model!r}, "
            f"builtin={self.builtin})"
        )


@dataclass(frozen=True)
class UserLLMSettings:
    """Stored LLM preferences of an authenticated user."""

    user_id: str
    llm_mode: str
    llm_provider: str | None
    llm_model: str | None
    llm_api_key: str | None

    @property
    def has_own_config(self) -> bool:
        return bool(self.llm_provider and self.llm_model and self.llm_api_key)


@dataclass(frozen=True)
class UserProfile:
    """A wallet login: one account on one chain, with a stable user id."""

    user_id: str
    chain_id: str
    account_name: str

    @property
    def account_key(self) -> AccountKey:
        return AccountKey(chain_id=self.chain_id, account_name=self.account_name)


@dataclass(frozen=True)
class UserIdentity:
    """
    Authenticated caller from a bearer token.

    Tokens issued by /v1/auth/login carry the logged-in wallet account;
    built-in requests are billed to that account and no other.
    """

    user_id: str  # JWT sub claim
    email: str | None = None
    chain_id: str | None = None
    account_name: str | None = None

    @property
    def account_key(self) -> AccountKey | None:
        if not self.chain_id or not self.account_name:
            return None
        return AccountKey(chain_id=self.chain_id, account_name=self.account_name)
