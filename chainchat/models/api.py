"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire names follow the web client (camelCase) where the client already
depends on them; aliases keep Python attribute names snake_case.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingMode(str, Enum):
    """How a chat request is paid for."""

    FREE = "free"
    PAID = "paid"
    BYOK = "byok"


class CreditTransactionType(str, Enum):
    """Credit ledger entry type."""

    DEPOSIT = "deposit"
    USAGE = "usage"


class LLMMode(str, Enum):
    """User preference: the app's metered model or the user's own key."""

    BUILTIN = "builtin"
    BYOK = "byok"


class CamelModel(BaseModel):
    """Base for models exchanged with the web client."""

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Allowance Models
# ============================================================================


class AllowanceResponse(CamelModel):
    """GET /v1/credits/allowance response."""

    allowed: bool
    mode: Literal["free", "paid"]
    reason: str | None = None
    free_remaining: int | None = Field(None, alias="freeRemaining")
    balance_tokens: int | None = Field(None, alias="balanceTokens")


# ============================================================================
# Credit Summary Models
# ============================================================================


class TodayUsage(BaseModel):
    """Usage counters for the current UTC day."""

    request_count: int = 0
    free_remaining: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0


class TransactionItem(BaseModel):
    """A credit ledger entry as shown in the usage summary."""

    type: CreditTransactionType
    tlos_amount: float | None = None
    tx_hash: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    model: str | None = None
    token_units_delta: int
    balance_after: int
    created_at: str


class CreditSummaryResponse(BaseModel):
    """GET /v1/credits response."""

    balance_tokens: int = 0
    total_deposited_tlos: float = 0.0
    today: TodayUsage
    recent_transactions: list[TransactionItem] = Field(default_factory=list)
    app_wallet_account: str | None = None


# ============================================================================
# Deposit Verification Models
# ============================================================================


class DepositVerifyRequest(CamelModel):
    """POST /v1/credits/verify request body."""

    transaction_id: str = Field(..., alias="transactionId", min_length=1, max_length=128)
    chain_id: str = Field(..., alias="chainId", min_length=1, max_length=128)
    account_name: str = Field(..., alias="accountName", min_length=1, max_length=64)

    @field_validator("transaction_id")
    @classmethod
    def validate_transaction_id(cls, v: str) -> str:
        """Antelope transaction ids are hex digests."""
        v = v.strip().lower()
        if not all(c in "0123456789abcdef" for c in v):
            raise ValueError("transactionId must be a hex transaction hash")
        return v


class DepositVerifyResponse(BaseModel):
    """POST /v1/credits/verify success response."""

    success: bool = True
    tlos_amount: float
    tokens_credited: int
    new_balance: int


class ErrorResponse(BaseModel):
    """Machine-readable error body."""

    error: str
    message: str


# ============================================================================
# Chat Models
# ============================================================================


class MessagePart(CamelModel):
    """
    One part of a UI chat message.

    Text parts carry `text`; tool parts (`tool-invocation`) carry the call
    and, once `state == "result"`, the structured tool output.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    text: str | None = None
    tool_call_id: str | None = Field(None, alias="toolCallId")
    tool_name: str | None = Field(None, alias="toolName")
    state: str | None = None
    input: Any = None
    output: Any = None


class ChatMessage(CamelModel):
    """A message of the conversation as kept by the client."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    role: Literal["user", "assistant", "system"]
    content: str | None = None
    parts: list[MessagePart] = Field(default_factory=list)


class LLMConfig(CamelModel):
    """Client-supplied provider credentials (bring your own key)."""

    provider: str | None = None
    model: str | None = None
    api_key: str | None = Field(None, alias="apiKey")

    @property
    def is_complete(self) -> bool:
        return bool(self.provider and self.model and self.api_key)


class ChatRequest(CamelModel):
    """POST /v1/chat request body."""

    messages: list[ChatMessage] = Field(..., min_length=1)
    chain_endpoint: str | None = Field(None, alias="chainEndpoint")
    hyperion_endpoint: str | None = Field(None, alias="hyperionEndpoint")
    wallet_account: str | None = Field(None, alias="walletAccount")
    chain_id: str | None = Field(None, alias="chainId")
    chain_name: str | None = Field(None, alias="chainName")
    llm_config: LLMConfig | None = Field(None, alias="llmConfig")


# ============================================================================
# User Settings Models
# ============================================================================


class SettingsResponse(BaseModel):
    """GET /v1/settings response - the API key itself is never returned."""

    llm_provider: str | None = None
    llm_model: str | None = None
    llm_mode: LLMMode = LLMMode.BUILTIN
    has_api_key: bool = False


class SettingsUpdateRequest(BaseModel):
    """PUT /v1/settings request body - omitted fields are left unchanged."""

    llm_provider: str | None = Field(None, max_length=50)
    llm_model: str | None = Field(None, max_length=200)
    llm_api_key: str | None = Field(None, max_length=500)
    llm_mode: LLMMode | None = None


class SettingsUpdateResponse(BaseModel):
    """PUT /v1/settings response."""

    success: bool = True


# ============================================================================
# Auth Models
# ============================================================================


class LoginRequest(CamelModel):
    """POST /v1/auth/login request body - the connected wallet account."""

    account_name: str = Field(..., alias="accountName", min_length=1, max_length=64)
    chain_id: str = Field(..., alias="chainId", min_length=1, max_length=128)


class LoginUser(CamelModel):
    """The logged-in user as returned to the client."""

    id: str
    account_name: str = Field(..., alias="accountName")
    chain_id: str = Field(..., alias="chainId")


class LoginResponse(BaseModel):
    """POST /v1/auth/login response."""

    token: str
    user: LoginUser


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
