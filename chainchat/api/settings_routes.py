"""
Settings Routes - Per-user model preferences.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.api.dependencies import require_user
from chainchat.db.session import get_read_db, get_write_db
from chainchat.exceptions import StorageError
from chainchat.models.api import SettingsResponse, SettingsUpdateRequest, SettingsUpdateResponse
from chainchat.models.domain import UserIdentity
from chainchat.observability.logging import get_logger
from chainchat.services.user_settings import UserSettingsService

logger = get_logger(__name__)

router = APIRouter(tags=["settings"])


@router.get("/v1/settings", response_model=SettingsResponse)
async def get_user_settings(
    user: UserIdentity = Depends(require_user),
    db: AsyncSession = Depends(get_read_db),
) -> SettingsResponse:
    """Current settings; only whether an API key is stored, never the key."""
    return await UserSettingsService(db).get_public(user.user_id)


@router.put("/v1/settings", response_model=SettingsUpdateResponse)
async def update_user_settings(
    request: SettingsUpdateRequest,
    user: UserIdentity = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
) -> SettingsUpdateResponse:
    try:
        await UserSettingsService(db).update(user.user_id, request)
    except StorageError as exc:
        logger.error("settings_update_failed", user_id=user.user_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": exc.kind, "message": "Failed to save settings"},
        ) from exc

    logger.info(
        "settings_updated",
        user_id=user.user_id,
        fields=sorted(request.model_fields_set),
    )
    return SettingsUpdateResponse()
