"""
PayVAT - Support Chat Router

POST /chat handles both session creation and messages, selected by the
"action" field. Guests and signed-in users are both served; only signed-in
users get AI replies.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.database import get_db
from payvat.dependencies import get_chat_assistant, get_optional_user, get_rate_limiter
from payvat.models.user import User
from payvat.schemas.chat import (
    ChatMessageResponse,
    ChatRequest,
    ChatSessionEnvelope,
    ChatSessionResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    SendMessageResponse,
)
from payvat.services.ai_assistant import AIAssistant
from payvat.services.chat_service import ChatAttachment, ChatService
from payvat.services.rate_limiter import ChatRateLimiter


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/chat", tags=["Support Chat"])


@router.post(
    "",
    summary="Create a chat session or send a message",
)
async def post_chat(
    request: ChatRequest = Body(...),
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    rate_limiter: ChatRateLimiter = Depends(get_rate_limiter),
    assistant: AIAssistant = Depends(get_chat_assistant),
):
    service = ChatService(db, rate_limiter, assistant)

    if isinstance(request, CreateSessionRequest):
        session, welcome = await service.create_session(
            user=current_user,
            contact_name=request.contact_name,
            contact_email=request.contact_email,
        )
        return CreateSessionResponse(
            session_id=session.session_id,
            session=ChatSessionResponse.model_validate(session),
            welcome_message=ChatMessageResponse.model_validate(welcome),
        )

    attachment = None
    if request.attachment is not None:
        attachment = ChatAttachment(
            file_name=request.attachment.file_name,
            file_url=request.attachment.file_url,
            file_size=request.attachment.file_size,
        )

    posted = await service.post_message(
        request.session_id,
        request.message,
        message_type=request.message_type,
        user=current_user,
        attachment=attachment,
    )

    ai_response = posted.ai_response
    return SendMessageResponse(
        message=ChatMessageResponse.model_validate(posted.message),
        ai_response=ChatMessageResponse.model_validate(posted.ai_message) if posted.ai_message else None,
        escalation_message=(
            ChatMessageResponse.model_validate(posted.escalation_message) if posted.escalation_message else None
        ),
        requires_human_support=posted.escalated,
        escalation_reason=ai_response.escalation_reason if posted.escalated and ai_response else None,
        suggested_actions=posted.suggested_actions,
    )


@router.get(
    "",
    response_model=ChatSessionEnvelope,
    summary="Get a chat session with its messages",
)
async def get_chat(
    session_id: str = Query(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
    rate_limiter: ChatRateLimiter = Depends(get_rate_limiter),
    assistant: AIAssistant = Depends(get_chat_assistant),
):
    service = ChatService(db, rate_limiter, assistant)
    session, messages = await service.get_session(session_id)
    return ChatSessionEnvelope(
        session=ChatSessionResponse.model_validate(session),
        messages=[ChatMessageResponse.model_validate(m) for m in messages],
    )
