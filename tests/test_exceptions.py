"""
Tests for exception classes.

Covers the hierarchy, machine-readable kinds and messages shown to clients.
"""

from datetime import UTC, datetime

import pytest

from chainchat.exceptions import (
    AccountMismatchError,
    AppMisconfiguredError,
    AuthenticationError,
    ChainChatError,
    ChainClientError,
    ChainRequestError,
    ChainUnreachableError,
    DataIntegrityError,
    DuplicateTransactionError,
    InvalidAmountError,
    ModelProviderError,
    NoQualifyingTransferError,
    NotConfiguredError,
    PaymentVerificationError,
    QuotaExceededError,
    StorageError,
    TransactionNotFoundError,
    UnsupportedTokenError,
    WriteVerificationError,
)


class TestHierarchy:
    """Every error is a ChainChatError with a kind."""

    @pytest.mark.parametrize(
        "exc",
        [
            NotConfiguredError(),
            QuotaExceededError("Quota exceeded.", datetime(2024, 1, 16, tzinfo=UTC)),
            ModelProviderError("openai", "overloaded", 503),
            ChainRequestError(500, "bad block"),
            ChainUnreachableError("https://node.test", "timed out"),
            TransactionNotFoundError("ab" * 32),
            NoQualifyingTransferError("chainchatapp"),
            UnsupportedTokenError("1.0000 EOS", "TLOS"),
            InvalidAmountError("0.0000 TLOS"),
            AppMisconfiguredError(),
            DuplicateTransactionError("ab" * 32),
            StorageError("disk full"),
            WriteVerificationError("row missing"),
            DataIntegrityError("count mismatch"),
            AuthenticationError("expired"),
            AccountMismatchError("victim.tlos", "alice.tlos"),
        ],
    )
    def test_kind_is_set(self, exc: ChainChatError) -> None:
        assert isinstance(exc, ChainChatError)
        assert exc.kind != ChainChatError.kind

    def test_chain_errors_share_a_base(self) -> None:
        assert issubclass(ChainRequestError, ChainClientError)
        assert issubclass(ChainUnreachableError, ChainClientError)

    def test_payment_errors_share_a_base(self) -> None:
        for cls in (
            TransactionNotFoundError,
            NoQualifyingTransferError,
            UnsupportedTokenError,
            InvalidAmountError,
        ):
            assert issubclass(cls, PaymentVerificationError)

    def test_verification_errors_are_storage_errors(self) -> None:
        assert issubclass(WriteVerificationError, StorageError)
        assert issubclass(DataIntegrityError, StorageError)


class TestMessages:
    """Client-facing messages."""

    def test_not_configured_default(self) -> None:
        assert str(NotConfiguredError()) == "LLM not configured"

    def test_quota_exceeded_mentions_reset(self) -> None:
        exc = QuotaExceededError("Quota exceeded.", datetime(2024, 1, 16, tzinfo=UTC))

        assert exc.reason == "Quota exceeded."
        assert "2024-01-16T00:00:00+00:00" in str(exc)

    def test_model_provider_error(self) -> None:
        exc = ModelProviderError("openai", "rate limited", 429)

        assert exc.status_code == 429
        assert str(exc) == "Model provider openai failed: rate limited"

    def test_deposit_messages(self) -> None:
        assert str(TransactionNotFoundError("x")) == "Transaction not found on chain"
        assert str(NoQualifyingTransferError("app")) == (
            "No transfer to app wallet found in transaction"
        )
        assert str(UnsupportedTokenError("1.0000 EOS", "TLOS")) == "Invalid token - expected TLOS"
        assert str(DuplicateTransactionError("x")) == "Transaction already processed"

    def test_account_mismatch_names_both_accounts(self) -> None:
        assert str(AccountMismatchError("victim.tlos", "alice.tlos")) == (
            "Request is for victim.tlos but you are logged in as alice.tlos"
        )

    def test_nested_storage_message(self) -> None:
        assert str(WriteVerificationError("row missing")) == (
            "Storage error: Write verification failed: row missing"
        )
