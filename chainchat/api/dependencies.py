"""
FastAPI Dependencies - Authentication and process-wide services.

NO DICTIONARIES - All dependencies return typed objects.
"""

from collections.abc import AsyncGenerator

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from chainchat.config import settings
from chainchat.db.session import get_read_session_factory, get_write_session_factory
from chainchat.exceptions import AuthenticationError
from chainchat.llm.pipeline import UsageRecorder
from chainchat.models.domain import UserIdentity
from chainchat.services.app_config import AppConfigCache, database_loader
from chainchat.services.chain_client import HyperionClient

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_token(token: str) -> UserIdentity:
    """
    Verify an HS256 user token and extract its subject and wallet account.

    Raises:
        AuthenticationError: Token missing, unsigned with our secret, expired or without sub
    """
    if not settings.auth_jwt_secret:
        raise AuthenticationError("AUTH_JWT_SECRET is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(str(e)) from e

    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationError("Token has no subject")

    return UserIdentity(
        user_id=str(user_id),
        email=claims.get("email"),
        chain_id=claims.get("chain_id"),
        account_name=claims.get("account_name"),
    )


async def require_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency requiring a valid bearer token.

    Usage:
        @router.get("/v1/settings")
        async def get_settings(user: UserIdentity = Depends(require_user)):
            ...
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_user_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.info("user_token_rejected", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity | None:
    """
    Optional authentication - returns None if no token or an invalid token.

    Chat works anonymously with a request-supplied model config.
    """
    if credentials is None:
        return None

    try:
        return decode_user_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.info("optional_user_token_ignored", error=exc.message)
        return None


# ============================================================================
# Process-wide Services
# ============================================================================

_app_config_cache: AppConfigCache | None = None
_usage_recorder: UsageRecorder | None = None


def get_app_config_cache() -> AppConfigCache:
    """App config cache shared by all requests."""
    global _app_config_cache
    if _app_config_cache is None:
        _app_config_cache = AppConfigCache(
            database_loader(get_read_session_factory()),
            ttl_seconds=settings.app_config_ttl_seconds,
        )
    return _app_config_cache


def get_usage_recorder() -> UsageRecorder:
    """Background usage recorder shared by all chat requests."""
    global _usage_recorder
    if _usage_recorder is None:
        _usage_recorder = UsageRecorder(get_write_session_factory())
    return _usage_recorder


async def get_settlement_history() -> AsyncGenerator[HyperionClient, None]:
    """History client for the chain deposits settle on."""
    client = HyperionClient(settings.payment_hyperion_url, timeout=settings.chain_request_timeout)
    try:
        yield client
    finally:
        await client.aclose()
