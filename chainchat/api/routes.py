"""
API Routes - Allowance, credit summary and deposit verification.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.api.dependencies import get_app_config_cache, get_settlement_history
from chainchat.config import settings
from chainchat.db.session import get_read_db, get_write_db
from chainchat.exceptions import (
    AppMisconfiguredError,
    ChainChatError,
    ChainUnreachableError,
    DuplicateTransactionError,
    NoQualifyingTransferError,
    PaymentVerificationError,
    StorageError,
    TransactionNotFoundError,
)
from chainchat.models.api import (
    AllowanceResponse,
    CreditSummaryResponse,
    DepositVerifyRequest,
    DepositVerifyResponse,
)
from chainchat.models.domain import AccountKey
from chainchat.observability.logging import get_logger
from chainchat.observability.metrics import metrics
from chainchat.services.allowance import AllowanceService
from chainchat.services.app_config import APP_WALLET_ACCOUNT_KEY, AppConfigCache
from chainchat.services.chain_client import HyperionClient
from chainchat.services.ledger import CreditLedger
from chainchat.services.payment_verifier import PaymentVerifier

logger = get_logger(__name__)

router = APIRouter()


def error_detail(exc: ChainChatError, message: str | None = None) -> dict[str, str]:
    """Machine-readable HTTPException detail."""
    return {"error": exc.kind, "message": message or str(exc)}


def require_account_key(chain_id: str | None, account_name: str | None) -> AccountKey:
    if not chain_id or not account_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_request",
                "message": "chainId and accountName are required",
            },
        )
    return AccountKey(chain_id=chain_id, account_name=account_name)


async def resolve_app_wallet(cache: AppConfigCache) -> str | None:
    return await cache.get(APP_WALLET_ACCOUNT_KEY, settings.app_wallet_account or None)


@router.get(
    "/v1/credits/allowance",
    response_model=AllowanceResponse,
    response_model_exclude_none=True,
)
async def get_allowance(
    chain_id: str | None = Query(None, alias="chainId"),
    account_name: str | None = Query(None, alias="accountName"),
    db: AsyncSession = Depends(get_write_db),
) -> AllowanceResponse:
    """
    Check whether the account may make one more built-in request today.

    Read-only; no reservation is taken. Reads the primary so admission
    never sees a lagging replica.
    """
    key = require_account_key(chain_id, account_name)
    try:
        return await AllowanceService(db).check_allowance(key)
    except StorageError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_detail(exc, "Allowance check failed"),
        ) from exc


@router.get("/v1/credits", response_model=CreditSummaryResponse)
async def get_credit_summary(
    chain_id: str | None = Query(None, alias="chainId"),
    account_name: str | None = Query(None, alias="accountName"),
    db: AsyncSession = Depends(get_read_db),
    config_cache: AppConfigCache = Depends(get_app_config_cache),
) -> CreditSummaryResponse:
    """Balance, deposits, today's usage, recent transactions and the deposit wallet."""
    key = require_account_key(chain_id, account_name)
    summary = await CreditLedger(db).get_summary(key)
    summary.app_wallet_account = await resolve_app_wallet(config_cache)
    return summary


@router.post("/v1/credits/verify", response_model=DepositVerifyResponse)
async def verify_deposit(
    request: DepositVerifyRequest,
    db: AsyncSession = Depends(get_write_db),
    config_cache: AppConfigCache = Depends(get_app_config_cache),
    history: HyperionClient = Depends(get_settlement_history),
) -> DepositVerifyResponse:
    """
    Verify a TLOS transfer to the app wallet and credit it to the account.

    Idempotent per transaction: a second request for the same transaction
    gets 409 and credits nothing.
    """
    key = AccountKey(chain_id=request.chain_id, account_name=request.account_name)

    async def receiving_account() -> str | None:
        return await resolve_app_wallet(config_cache)

    verifier = PaymentVerifier(
        ledger=CreditLedger(db),
        history=history,
        receiving_account=receiving_account,
        contract=settings.payment_settlement_contract,
        symbol=settings.payment_settlement_symbol,
    )

    try:
        deposit = await verifier.verify_and_credit(request.transaction_id, key)

    except TransactionNotFoundError as exc:
        metrics.record_deposit(exc.kind)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_detail(exc),
        ) from exc

    except ChainUnreachableError as exc:
        metrics.record_deposit(exc.kind)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=error_detail(exc, "Failed to verify transaction on chain"),
        ) from exc

    except (NoQualifyingTransferError, PaymentVerificationError) as exc:
        metrics.record_deposit(exc.kind)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_detail(exc),
        ) from exc

    except DuplicateTransactionError as exc:
        metrics.record_deposit(exc.kind)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_detail(exc),
        ) from exc

    except (AppMisconfiguredError, StorageError) as exc:
        metrics.record_deposit(exc.kind)
        logger.error("deposit_verification_failed", error=str(exc), kind=exc.kind)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_detail(exc),
        ) from exc

    return DepositVerifyResponse(
        tlos_amount=float(deposit.tlos_amount),
        tokens_credited=deposit.tokens_credited,
        new_balance=deposit.new_balance,
    )
