"""
User Settings Service - Stored LLM preferences per authenticated user.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.db.models import UserSettings
from chainchat.exceptions import StorageError, WriteVerificationError
from chainchat.models.api import LLMMode, SettingsResponse, SettingsUpdateRequest
from chainchat.models.domain import UserLLMSettings
from chainchat.observability.logging import get_logger

logger = get_logger(__name__)


class UserSettingsService:
    """Read and partially update a user's LLM settings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> UserLLMSettings | None:
        row = await self._find(user_id)
        if row is None:
            return None
        return UserLLMSettings(
            user_id=row.user_id,
            llm_mode=row.llm_mode,
            llm_provider=row.llm_provider,
            llm_model=row.llm_model,
            llm_api_key=row.llm_api_key,
        )

    async def get_public(self, user_id: str) -> SettingsResponse:
        """Settings as shown to the client; the API key itself is never returned."""
        row = await self._find(user_id)
        if row is None:
            return SettingsResponse()
        return SettingsResponse(
            llm_provider=row.llm_provider,
            llm_model=row.llm_model,
            llm_mode=LLMMode(row.llm_mode or LLMMode.BUILTIN.value),
            has_api_key=bool(row.llm_api_key),
        )

    async def update(self, user_id: str, request: SettingsUpdateRequest) -> None:
        """
        Apply the fields present in the request; omitted fields are unchanged.

        Creates the row on first save.
        """
        changes = request.model_dump(exclude_unset=True)
        if "llm_mode" in changes and changes["llm_mode"] is not None:
            changes["llm_mode"] = LLMMode(changes["llm_mode"]).value
        elif "llm_mode" in changes:
            del changes["llm_mode"]

        try:
            row = await self._find(user_id, for_update=True)
            if row is None:
                row = UserSettings(user_id=user_id, llm_mode=LLMMode.BUILTIN.value)
                self.session.add(row)
            for field, value in changes.items():
                setattr(row, field, value)
            await self.session.flush()

            verified = await self.session.get(UserSettings, user_id)
            if verified is None:
                raise WriteVerificationError(f"Settings for {user_id} not found after write")

            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise StorageError(f"Concurrent settings write for {user_id}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError(f"Updating settings for {user_id} failed") from e

        logger.info("user_settings_updated", user_id=user_id, fields=sorted(changes))

    async def _find(self, user_id: str, for_update: bool = False) -> UserSettings | None:
        stmt = select(UserSettings).where(UserSettings.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
