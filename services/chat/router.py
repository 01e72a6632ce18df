"""
services/chat/router.py
Chat endpoints nested under a service request.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.chat.overlay import ChatOverlay, get_chat_overlay
from shared.middleware.auth import Principal, get_principal
from shared.schemas.schemas import (
    ChatHistoryResponse,
    ChatMessageCreate,
    ChatMessageResponse,
)

router = APIRouter(prefix="/requests", tags=["Chat"])


@router.post(
    "/{request_id}/chat",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_message(
    request_id: UUID,
    body: ChatMessageCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    overlay: ChatOverlay = Depends(get_chat_overlay),
):
    message = await overlay.post_message(db, principal, request_id, body.text)
    return ChatMessageResponse.model_validate(message)


@router.get("/{request_id}/chat", response_model=ChatHistoryResponse)
async def get_history(
    request_id: UUID,
    after_seq: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    overlay: ChatOverlay = Depends(get_chat_overlay),
):
    """Pass next_cursor back as after_seq to read the following page."""
    messages, next_cursor = await overlay.get_history(
        db, principal, request_id, after_seq=after_seq, limit=limit
    )
    return ChatHistoryResponse(
        items=[ChatMessageResponse.model_validate(m) for m in messages],
        next_cursor=next_cursor,
    )
