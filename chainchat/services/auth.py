"""
Wallet Login Service - Profiles keyed by wallet account and the user tokens issued for them.

A login upserts the (chain_id, account_name) profile, makes sure a settings
row exists, and signs an HS256 token whose subject is the profile id. The
token also carries the wallet account so metered requests can be billed to
it without trusting the request body.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

import jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.db.models import Profile, UserSettings
from chainchat.exceptions import AppMisconfiguredError, StorageError, WriteVerificationError
from chainchat.models.api import LLMMode
from chainchat.models.domain import UserProfile
from chainchat.observability.logging import get_logger
from chainchat.services.ledger import utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    token: str
    profile: UserProfile


def issue_user_token(profile: UserProfile, secret: str, now: datetime, ttl: timedelta) -> str:
    """Sign a user token for a profile."""
    payload = {
        "sub": profile.user_id,
        "chain_id": profile.chain_id,
        "account_name": profile.account_name,
        "role": "authenticated",
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class LoginService:
    """Upserts wallet profiles and issues user tokens."""

    def __init__(
        self,
        session: AsyncSession,
        jwt_secret: str,
        token_ttl_hours: int = 24 * 7,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session = session
        self.jwt_secret = jwt_secret
        self.token_ttl = timedelta(hours=token_ttl_hours)
        self.clock = clock

    async def login(self, chain_id: str, account_name: str) -> LoginResult:
        """
        Log a wallet account in.

        Raises:
            AppMisconfiguredError: No signing secret configured
            StorageError: Profile upsert failed
        """
        if not self.jwt_secret:
            raise AppMisconfiguredError("Authentication unavailable")

        now = self.clock()
        try:
            profile = await self._upsert_profile(chain_id, account_name, now)
            await self._ensure_settings(str(profile.id))
            await self.session.flush()

            verified = await self.session.get(Profile, profile.id)
            if verified is None:
                raise WriteVerificationError(f"Profile {profile.id} not found after write")

            await self.session.commit()
        except IntegrityError as e:
            # A concurrent first login for the same account won the insert
            await self.session.rollback()
            profile = await self._find_profile(chain_id, account_name)
            if profile is None:
                raise StorageError(f"Creating profile for {account_name} failed") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError(f"Creating profile for {account_name} failed") from e

        user = UserProfile(
            user_id=str(profile.id), chain_id=profile.chain_id, account_name=profile.account_name
        )
        token = issue_user_token(user, self.jwt_secret, now, self.token_ttl)

        logger.info(
            "user_logged_in",
            user_id=user.user_id,
            chain_id=chain_id,
            account_name=account_name,
        )
        return LoginResult(token=token, profile=user)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _upsert_profile(self, chain_id: str, account_name: str, now: datetime) -> Profile:
        profile = await self._find_profile(chain_id, account_name)
        if profile is not None:
            profile.last_login_at = now
            return profile

        profile = Profile(
            id=uuid4(),
            chain_id=chain_id,
            account_name=account_name,
            display_name=account_name,
            created_at=now,
            last_login_at=now,
        )
        self.session.add(profile)
        await self.session.flush()
        logger.info("profile_created", chain_id=chain_id, account_name=account_name)
        return profile

    async def _ensure_settings(self, user_id: str) -> None:
        result = await self.session.execute(
            select(UserSettings).where(UserSettings.user_id == user_id)
        )
        if result.scalar_one_or_none() is None:
            self.session.add(UserSettings(user_id=user_id, llm_mode=LLMMode.BUILTIN.value))

    async def _find_profile(self, chain_id: str, account_name: str) -> Profile | None:
        result = await self.session.execute(
            select(Profile).where(
                Profile.chain_id == chain_id,
                Profile.account_name == account_name,
            )
        )
        return result.scalar_one_or_none()
