"""
Auth Routes - Wallet login.

The client connects a wallet and posts its account; the returned bearer token
identifies the user for settings and binds built-in metering to that account.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.config import settings
from chainchat.db.session import get_write_db
from chainchat.exceptions import AppMisconfiguredError, StorageError
from chainchat.models.api import LoginRequest, LoginResponse, LoginUser
from chainchat.observability.logging import get_logger, log_context
from chainchat.services.auth import LoginService

logger = get_logger(__name__)

router = APIRouter(tags=["auth"])


@router.post("/v1/auth/login", response_model=LoginResponse)
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_write_db),
) -> LoginResponse:
    """Create or refresh the wallet's profile and issue a user token."""
    service = LoginService(
        db,
        jwt_secret=settings.auth_jwt_secret,
        token_ttl_hours=settings.auth_token_ttl_hours,
    )

    with log_context(chain_id=request.chain_id, account_name=request.account_name):
        try:
            result = await service.login(request.chain_id, request.account_name)

        except AppMisconfiguredError as exc:
            logger.error("login_unavailable", error=exc.message)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error": exc.kind, "message": exc.message},
            ) from exc

        except StorageError as exc:
            logger.error("login_failed", error=str(exc))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"error": exc.kind, "message": "Failed to create profile"},
            ) from exc

    return LoginResponse(
        token=result.token,
        user=LoginUser(
            id=result.profile.user_id,
            account_name=result.profile.account_name,
            chain_id=result.profile.chain_id,
        ),
    )
