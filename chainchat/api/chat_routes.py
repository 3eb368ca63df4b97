"""
Chat Routes - Streamed, tool-using chat against the selected model.

The response is Server-Sent Events: one JSON object per `data:` line.
Errors before the first byte are plain HTTP errors; errors after it arrive
as an `error` event because the status line has already been sent.
"""

import json
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from chainchat.api.dependencies import get_optional_user, get_usage_recorder
from chainchat.db.session import get_write_db
from chainchat.exceptions import (
    AccountMismatchError,
    ChainChatError,
    NotConfiguredError,
    QuotaExceededError,
    StorageError,
)
from chainchat.llm.pipeline import ChatPipeline, PreparedChat, UsageRecorder
from chainchat.models.api import ChatRequest
from chainchat.models.domain import UserIdentity
from chainchat.observability.logging import get_logger, log_context
from chainchat.observability.metrics import metrics

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def event_stream(pipeline: ChatPipeline, prepared: PreparedChat) -> AsyncIterator[str]:
    """Encode pipeline events as SSE; a failure mid-stream becomes an error event."""
    try:
        async for event in pipeline.stream(prepared):
            yield encode_event(event)
    except ChainChatError as exc:
        metrics.record_error(type(exc).__name__, "chat_stream")
        logger.error("chat_stream_failed", error=str(exc), kind=exc.kind)
        yield encode_event({"type": "error", "error": exc.kind, "message": str(exc)})


@router.post("/v1/chat")
async def chat(
    request: ChatRequest,
    user: UserIdentity | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_write_db),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> StreamingResponse:
    """
    Stream one chat turn.

    Built-in model requests are admitted against the daily free tier and
    credit balance before any model call, and metered when the stream ends.
    Admission reads the primary database so the request count is never stale.
    """
    user_id = user.user_id if user else None
    pipeline = ChatPipeline(db, recorder)

    with log_context(
        user_id=user_id, chain_id=request.chain_id, account_name=request.wallet_account
    ):
        try:
            prepared = await pipeline.prepare(request, user)

        except NotConfiguredError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": exc.kind, "message": exc.message},
            ) from exc

        except AccountMismatchError as exc:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": exc.kind, "message": str(exc)},
            ) from exc

        except QuotaExceededError as exc:
            logger.info("chat_quota_exceeded", resets_at=exc.resets_at.isoformat())
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail={
                    "error": exc.kind,
                    "message": exc.reason,
                    "resets_at": exc.resets_at.isoformat(),
                },
            ) from exc

        except StorageError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"error": exc.kind, "message": "Allowance check failed"},
            ) from exc

        logger.info(
            "chat_started",
            provider=prepared.provider.provider,
            model=prepared.provider.model,
            billing_mode=prepared.billing_mode.value,
            messages=len(prepared.messages),
            tools=len(prepared.tools),
        )

    return StreamingResponse(
        event_stream(pipeline, prepared),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
