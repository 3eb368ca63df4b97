"""
Tests for API Routes.

Route handler functions are called directly with mocked services; a few
HTTP-level checks go through the TestClient with dependency overrides.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.api.dependencies import get_app_config_cache, get_settlement_history
from chainchat.api.routes import (
    get_allowance,
    get_credit_summary,
    require_account_key,
    verify_deposit,
)
from chainchat.db.session import get_read_db
from chainchat.exceptions import (
    AppMisconfiguredError,
    ChainUnreachableError,
    DuplicateTransactionError,
    InvalidAmountError,
    NoQualifyingTransferError,
    StorageError,
    TransactionNotFoundError,
)
from chainchat.models.api import (
    AllowanceResponse,
    CreditSummaryResponse,
    DepositVerifyRequest,
    TodayUsage,
)
from chainchat.models.domain import AccountKey, DepositData
from tests.conftest import TELOS_MAINNET


@pytest.fixture
def config_cache() -> MagicMock:
    cache = MagicMock()
    cache.get = AsyncMock(return_value="chainchatapp")
    return cache


def verify_request(tx: str = "ab" * 32) -> DepositVerifyRequest:
    return DepositVerifyRequest.model_validate(
        {"transactionId": tx, "chainId": TELOS_MAINNET, "accountName": "alice.tlos"}
    )


# ============================================================================
# Helper Tests
# ============================================================================


class TestRequireAccountKey:
    """Tests for require_account_key."""

    def test_builds_key(self) -> None:
        assert require_account_key(TELOS_MAINNET, "alice") == AccountKey(TELOS_MAINNET, "alice")

    @pytest.mark.parametrize(
        "chain_id,account_name", [(None, "alice"), (TELOS_MAINNET, ""), (None, None)]
    )
    def test_missing_parts_are_400(self, chain_id, account_name) -> None:
        with pytest.raises(HTTPException) as exc_info:
            require_account_key(chain_id, account_name)

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail["error"] == "invalid_request"


# ============================================================================
# Allowance Route Tests
# ============================================================================


class TestGetAllowanceRoute:
    """Tests for get_allowance."""

    async def test_returns_service_result(self, db_session) -> None:
        expected = AllowanceResponse(allowed=True, mode="free", free_remaining=4)

        with patch("chainchat.api.routes.AllowanceService") as MockService:
            MockService.return_value.check_allowance = AsyncMock(return_value=expected)
            result = await get_allowance(TELOS_MAINNET, "alice.tlos", db_session)

        assert result is expected
        MockService.return_value.check_allowance.assert_awaited_once_with(
            AccountKey(TELOS_MAINNET, "alice.tlos")
        )

    async def test_storage_error_is_500(self, db_session) -> None:
        with patch("chainchat.api.routes.AllowanceService") as MockService:
            MockService.return_value.check_allowance = AsyncMock(
                side_effect=StorageError("connection reset")
            )
            with pytest.raises(HTTPException) as exc_info:
                await get_allowance(TELOS_MAINNET, "alice.tlos", db_session)

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == {
            "error": "storage_error",
            "message": "Allowance check failed",
        }

    def test_http_body_uses_camel_case(self, client, db_session) -> None:
        response = client.get(
            "/v1/credits/allowance", params={"chainId": TELOS_MAINNET, "accountName": "alice.tlos"}
        )

        assert response.status_code == 200
        assert response.json() == {"allowed": True, "mode": "free", "freeRemaining": 5}

    def test_http_reads_primary_not_replica(self, app, client, db_session) -> None:
        replica = AsyncMock(spec=AsyncSession)

        async def override_replica():
            yield replica

        app.dependency_overrides[get_read_db] = override_replica

        response = client.get(
            "/v1/credits/allowance", params={"chainId": TELOS_MAINNET, "accountName": "alice.tlos"}
        )

        assert response.status_code == 200
        replica.execute.assert_not_called()
        db_session.execute.assert_awaited()

    def test_http_missing_params(self, client) -> None:
        response = client.get("/v1/credits/allowance", params={"chainId": TELOS_MAINNET})

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "chainId and accountName are required"


# ============================================================================
# Credit Summary Route Tests
# ============================================================================


class TestGetCreditSummaryRoute:
    """Tests for get_credit_summary."""

    async def test_adds_app_wallet(self, db_session, config_cache) -> None:
        summary = CreditSummaryResponse(balance_tokens=1000, today=TodayUsage(request_count=2))

        with patch("chainchat.api.routes.CreditLedger") as MockLedger:
            MockLedger.return_value.get_summary = AsyncMock(return_value=summary)
            result = await get_credit_summary(TELOS_MAINNET, "alice.tlos", db_session, config_cache)

        assert result.balance_tokens == 1000
        assert result.app_wallet_account == "chainchatapp"

    def test_http_summary_for_new_account(self, app, client, config_cache) -> None:
        app.dependency_overrides[get_app_config_cache] = lambda: config_cache

        response = client.get(
            "/v1/credits", params={"chainId": TELOS_MAINNET, "accountName": "alice.tlos"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["balance_tokens"] == 0
        assert body["today"]["free_remaining"] == 5
        assert body["recent_transactions"] == []
        assert body["app_wallet_account"] == "chainchatapp"


# ============================================================================
# Deposit Verification Route Tests
# ============================================================================


class TestVerifyDepositRoute:
    """Tests for verify_deposit error mapping."""

    async def _verify(self, db_session, config_cache, outcome):
        history = MagicMock()
        with patch("chainchat.api.routes.PaymentVerifier") as MockVerifier:
            if isinstance(outcome, Exception):
                MockVerifier.return_value.verify_and_credit = AsyncMock(side_effect=outcome)
            else:
                MockVerifier.return_value.verify_and_credit = AsyncMock(return_value=outcome)
            result = await verify_deposit(verify_request(), db_session, config_cache, history)
        return result, MockVerifier

    async def test_success(self, db_session, config_cache) -> None:
        deposit = DepositData(Decimal("2.5"), 625_000, 625_000)

        result, MockVerifier = await self._verify(db_session, config_cache, deposit)

        assert result.success is True
        assert result.tlos_amount == 2.5
        assert result.tokens_credited == 625_000
        MockVerifier.return_value.verify_and_credit.assert_awaited_once_with(
            "ab" * 32, AccountKey(TELOS_MAINNET, "alice.tlos")
        )

    async def test_receiving_account_comes_from_config(self, db_session, config_cache) -> None:
        _, MockVerifier = await self._verify(
            db_session, config_cache, DepositData(Decimal("1"), 250_000, 250_000)
        )

        resolver = MockVerifier.call_args.kwargs["receiving_account"]
        assert await resolver() == "chainchatapp"

    @pytest.mark.parametrize(
        "error,status_code,kind",
        [
            (TransactionNotFoundError("ab" * 32), 404, "transaction_not_found"),
            (ChainUnreachableError("https://hyperion.test", "timed out"), 502, "chain_unreachable"),
            (NoQualifyingTransferError("chainchatapp"), 400, "no_qualifying_transfer"),
            (InvalidAmountError("0.0000 TLOS"), 400, "invalid_amount"),
            (DuplicateTransactionError("ab" * 32), 409, "duplicate_transaction"),
            (AppMisconfiguredError(), 500, "app_misconfigured"),
            (StorageError("disk full"), 500, "storage_error"),
        ],
    )
    async def test_error_mapping(
        self, db_session, config_cache, error, status_code, kind
    ) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await self._verify(db_session, config_cache, error)

        assert exc_info.value.status_code == status_code
        assert exc_info.value.detail["error"] == kind

    async def test_unreachable_message(self, db_session, config_cache) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await self._verify(
                db_session, config_cache, ChainUnreachableError("https://h.test", "boom")
            )

        assert exc_info.value.detail["message"] == "Failed to verify transaction on chain"

    def test_http_duplicate_is_409(self, app, client, config_cache) -> None:
        history = MagicMock()
        app.dependency_overrides[get_app_config_cache] = lambda: config_cache
        app.dependency_overrides[get_settlement_history] = lambda: history

        with patch("chainchat.api.routes.PaymentVerifier") as MockVerifier:
            MockVerifier.return_value.verify_and_credit = AsyncMock(
                side_effect=DuplicateTransactionError("ab" * 32)
            )
            response = client.post(
                "/v1/credits/verify",
                json={
                    "transactionId": "ab" * 32,
                    "chainId": TELOS_MAINNET,
                    "accountName": "alice.tlos",
                },
            )

        assert response.status_code == 409
        assert response.json()["detail"] == {
            "error": "duplicate_transaction",
            "message": "Transaction already processed",
        }

    def test_http_missing_fields_is_422(self, client) -> None:
        response = client.post("/v1/credits/verify", json={"chainId": TELOS_MAINNET})

        assert response.status_code == 422
