"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
Every exception exposes a machine-readable `kind` used in API error bodies.
"""

from datetime import datetime


class ChainChatError(Exception):
    """Base exception for all ChainChat errors."""

    kind = "internal_error"


# ============================================================================
# Chat pipeline
# ============================================================================


class NotConfiguredError(ChainChatError):
    """Raised when no usable model provider/key/model can be resolved."""

    kind = "not_configured"

    def __init__(self, message: str = "LLM not configured") -> None:
        self.message = message
        super().__init__(message)


class QuotaExceededError(ChainChatError):
    """Raised when the allowance check rejects a built-in request."""

    kind = "quota_exceeded"

    def __init__(self, reason: str, resets_at: datetime) -> None:
        self.reason = reason
        self.resets_at = resets_at
        super().__init__(f"{reason} Free requests reset at {resets_at.isoformat()}")


class ModelProviderError(ChainChatError):
    """Raised when a model provider call fails."""

    kind = "model_provider_error"

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"Model provider {provider} failed: {message}")


# ============================================================================
# Chain access
# ============================================================================


class ChainClientError(ChainChatError):
    """Base for chain RPC / history service failures."""

    kind = "chain_error"


class ChainRequestError(ChainClientError):
    """Raised when a chain endpoint answers with a non-OK status."""

    kind = "chain_request_error"

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class ChainUnreachableError(ChainClientError):
    """Raised when a chain endpoint cannot be reached or returns garbage."""

    kind = "chain_unreachable"

    def __init__(self, endpoint: str, message: str) -> None:
        self.endpoint = endpoint
        self.message = message
        super().__init__(f"Chain endpoint {endpoint} unreachable: {message}")


# ============================================================================
# Payment verification
# ============================================================================


class PaymentVerificationError(ChainChatError):
    """Base for deposits that cannot be credited."""

    kind = "payment_invalid"


class TransactionNotFoundError(PaymentVerificationError):
    """Raised when the history service has no such transaction."""

    kind = "transaction_not_found"

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__("Transaction not found on chain")


class NoQualifyingTransferError(PaymentVerificationError):
    """Raised when the transaction contains no transfer to the app wallet."""

    kind = "no_qualifying_transfer"

    def __init__(self, receiving_account: str) -> None:
        self.receiving_account = receiving_account
        super().__init__("No transfer to app wallet found in transaction")


class UnsupportedTokenError(PaymentVerificationError):
    """Raised when the transfer is not in the settlement token."""

    kind = "unsupported_token"

    def __init__(self, quantity: str, expected_symbol: str) -> None:
        self.quantity = quantity
        self.expected_symbol = expected_symbol
        super().__init__(f"Invalid token - expected {expected_symbol}")


class InvalidAmountError(PaymentVerificationError):
    """Raised when the transferred amount is not a positive number."""

    kind = "invalid_amount"

    def __init__(self, amount: str) -> None:
        self.amount = amount
        super().__init__("Invalid transfer amount")


class AppMisconfiguredError(ChainChatError):
    """Raised when the app has no receiving wallet configured."""

    kind = "app_misconfigured"

    def __init__(self, message: str = "App wallet not configured") -> None:
        self.message = message
        super().__init__(message)


# ============================================================================
# Ledger
# ============================================================================


class DuplicateTransactionError(ChainChatError):
    """Raised when a deposit tx_hash has already been credited."""

    kind = "duplicate_transaction"

    def __init__(self, tx_hash: str) -> None:
        self.tx_hash = tx_hash
        super().__init__("Transaction already processed")


class StorageError(ChainChatError):
    """Raised when a ledger read or write fails unexpectedly."""

    kind = "storage_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Storage error: {message}")


class WriteVerificationError(StorageError):
    """Raised when database write verification fails."""

    kind = "write_verification_failed"

    def __init__(self, message: str) -> None:
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(StorageError):
    """Raised when data integrity constraint violated."""

    kind = "data_integrity_error"

    def __init__(self, message: str) -> None:
        super().__init__(f"Data integrity error: {message}")


# ============================================================================
# Auth
# ============================================================================


class AuthenticationError(ChainChatError):
    """Raised when a bearer token is missing or invalid."""

    kind = "unauthorized"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AccountMismatchError(ChainChatError):
    """Raised when a request names a wallet account other than the logged-in one."""

    kind = "account_mismatch"

    def __init__(self, requested: str, logged_in: str) -> None:
        self.requested = requested
        self.logged_in = logged_in
        super().__init__(f"Request is for {requested} but you are logged in as {logged_in}")
