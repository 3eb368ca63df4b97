"""
Tests for UserSettingsService.
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from chainchat.db.models import UserSettings
from chainchat.exceptions import StorageError
from chainchat.models.api import LLMMode, SettingsUpdateRequest
from chainchat.services.user_settings import UserSettingsService
from tests.conftest import make_result, session_get_returning_added


def stored_row(**overrides) -> UserSettings:
    values = {
        "user_id": "user-123",
        "llm_mode": "byok",
        "llm_provider": "openai",
        "llm_model": "gpt-4o",
        "llm_api_key": "sk-secret",
    }
    values.update(overrides)
    return UserSettings(**values)


class TestGet:
    """Reading settings."""

    async def test_missing_row(self, db_session) -> None:
        assert await UserSettingsService(db_session).get("user-123") is None

    async def test_stored_row(self, db_session) -> None:
        db_session.execute = AsyncMock(return_value=make_result(stored_row()))

        stored = await UserSettingsService(db_session).get("user-123")

        assert stored.llm_mode == "byok"
        assert stored.has_own_config is True

    async def test_public_view_hides_key(self, db_session) -> None:
        db_session.execute = AsyncMock(return_value=make_result(stored_row()))

        public = await UserSettingsService(db_session).get_public("user-123")

        assert public.has_api_key is True
        assert public.llm_mode == LLMMode.BYOK
        assert "sk-secret" not in public.model_dump_json()

    async def test_public_view_defaults(self, db_session) -> None:
        public = await UserSettingsService(db_session).get_public("user-123")

        assert public.llm_mode == LLMMode.BUILTIN
        assert public.has_api_key is False


class TestUpdate:
    """Partial updates."""

    async def test_first_save_creates_row(self, db_session) -> None:
        session_get_returning_added(db_session)

        await UserSettingsService(db_session).update(
            "user-123", SettingsUpdateRequest(llm_provider="google")
        )

        row = db_session._added["user-123"]
        assert row.llm_provider == "google"
        assert row.llm_mode == "builtin"
        db_session.commit.assert_awaited_once()

    async def test_omitted_fields_are_unchanged(self, db_session) -> None:
        row = stored_row()
        session_get_returning_added(db_session, row)
        db_session.execute = AsyncMock(return_value=make_result(row))

        await UserSettingsService(db_session).update(
            "user-123", SettingsUpdateRequest(llm_mode=LLMMode.BUILTIN)
        )

        assert row.llm_mode == "builtin"
        assert row.llm_provider == "openai"
        assert row.llm_api_key == "sk-secret"

    async def test_explicit_null_clears_key(self, db_session) -> None:
        row = stored_row()
        session_get_returning_added(db_session, row)
        db_session.execute = AsyncMock(return_value=make_result(row))

        await UserSettingsService(db_session).update(
            "user-123", SettingsUpdateRequest.model_validate({"llm_api_key": None})
        )

        assert row.llm_api_key is None

    async def test_concurrent_first_save(self, db_session) -> None:
        db_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))

        with pytest.raises(StorageError):
            await UserSettingsService(db_session).update(
                "user-123", SettingsUpdateRequest(llm_model="gpt-4o")
            )

        db_session.rollback.assert_awaited_once()

    async def test_database_failure(self, db_session) -> None:
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("x")))

        with pytest.raises(StorageError):
            await UserSettingsService(db_session).update(
                "user-123", SettingsUpdateRequest(llm_model="gpt-4o")
            )
