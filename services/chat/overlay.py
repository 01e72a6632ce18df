"""
services/chat/overlay.py
Per-request chat between the requester and the assigned provider.

Messages are an append-only log ordered by a per-request sequence number
taken from service_requests.chat_seq with one atomic UPDATE ... RETURNING.
Cancelled requests keep their history readable but accept no new posts.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.fanout.publisher import (
    Fanout,
    FanoutEvent,
    fan_out,
    get_fanout,
    request_channel,
)
from services.request.coordinator import get_request_or_404
from shared.middleware.auth import Principal, ProviderPrincipal, RequesterPrincipal
from shared.models.models import (
    ChatMessage,
    Provider,
    RequestStatus,
    Requester,
    SenderRole,
    ServiceRequest,
)
from shared.schemas.schemas import ChatMessageResponse
from shared.utils.clock import utcnow
from shared.utils.errors import Forbidden, ValidationError

logger = logging.getLogger(__name__)


class ChatOverlay:

    def __init__(self, fanout: Fanout):
        self.fanout = fanout

    async def _authorize(
        self, db: AsyncSession, principal: Principal, request_id: uuid.UUID
    ) -> Tuple[ServiceRequest, SenderRole]:
        # A notified provider only gets in once it is the assigned one.
        request = await get_request_or_404(db, request_id)
        if isinstance(principal, RequesterPrincipal) and request.requester_id == principal.id:
            return request, SenderRole.REQUESTER
        if (
            isinstance(principal, ProviderPrincipal)
            and request.assigned_provider_id is not None
            and request.assigned_provider_id == principal.id
        ):
            return request, SenderRole.PROVIDER
        raise Forbidden("Not a participant in this chat")

    async def _sender_name(self, db: AsyncSession, principal: Principal) -> Optional[str]:
        model = Requester if isinstance(principal, RequesterPrincipal) else Provider
        sender = await db.get(model, principal.id)
        return sender.name if sender else None

    async def post_message(
        self,
        db: AsyncSession,
        principal: Principal,
        request_id: uuid.UUID,
        text: str,
    ) -> ChatMessage:
        request, role = await self._authorize(db, principal, request_id)
        if request.status == RequestStatus.CANCELLED:
            raise ValidationError("Chat is closed for cancelled requests")
        if len(text) > settings.CHAT_MESSAGE_MAX_LENGTH:
            raise ValidationError(
                f"Message exceeds {settings.CHAT_MESSAGE_MAX_LENGTH} characters"
            )

        result = await db.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == request_id,
                ServiceRequest.status != RequestStatus.CANCELLED,
            )
            .values(chat_seq=ServiceRequest.chat_seq + 1)
            .returning(ServiceRequest.chat_seq)
            .execution_options(synchronize_session=False)
        )
        seq = result.scalar_one_or_none()
        if seq is None:
            raise ValidationError("Chat is closed for cancelled requests")

        message = ChatMessage(
            request_id=request_id,
            seq=seq,
            sender_id=principal.id,
            sender_role=role,
            sender_name=await self._sender_name(db, principal),
            text=text,
            created_at=utcnow(),
        )
        db.add(message)
        await db.commit()

        logger.debug(f"Chat message {seq} on request {request_id} from {role.value}")
        await fan_out(
            self.fanout,
            request_channel(request_id),
            FanoutEvent.RECEIVE_MESSAGE,
            {
                "request_id": request_id,
                "message": ChatMessageResponse.model_validate(message).model_dump(mode="json"),
            },
        )
        return message

    async def get_history(
        self,
        db: AsyncSession,
        principal: Principal,
        request_id: uuid.UUID,
        after_seq: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[ChatMessage], Optional[int]]:
        """
        Messages with seq > after_seq in append order.
        Returns (messages, next_cursor); next_cursor is None on the last page.
        """
        await self._authorize(db, principal, request_id)
        limit = limit or settings.CHAT_HISTORY_PAGE_SIZE

        result = await db.execute(
            select(ChatMessage)
            .where(ChatMessage.request_id == request_id, ChatMessage.seq > after_seq)
            .order_by(ChatMessage.seq.asc())
            .limit(limit + 1)
        )
        messages = list(result.scalars().all())
        has_more = len(messages) > limit
        messages = messages[:limit]
        next_cursor = messages[-1].seq if has_more else None
        return messages, next_cursor


def get_chat_overlay(fanout: Fanout = Depends(get_fanout)) -> ChatOverlay:
    return ChatOverlay(fanout)
