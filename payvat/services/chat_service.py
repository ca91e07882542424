"""
PayVAT - Support Chat Service

Chat sessions, message posting and AI replies.

post_message() order of operations:
1. The session must exist
2. The rate limiter must allow the message
3. The text is sanitized and must not be empty
4. The message is committed
5. The AI assistant replies (authenticated users only, failures are logged
   and never fail the request)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.config import settings
from payvat.models.audit import AuditAction
from payvat.models.base import utcnow
from payvat.models.chat import ChatMessage, ChatSession, MessageType, SenderType
from payvat.models.user import User
from payvat.services.ai_assistant import AIAssistant, ChatAIResponse, build_user_context
from payvat.services.audit_service import AuditService
from payvat.services.rate_limiter import ChatRateLimiter
from payvat.utils.error_handling import InvalidInputException, NotFoundException, RateLimitException
from payvat.utils.sanitizer import strip_markup
from payvat.utils.security import generate_session_id

logger = logging.getLogger(__name__)


DEFAULT_WELCOME_MESSAGE = "Hi! How can we help you with your VAT submission today?"
SUPPORT_SENDER_NAME = "Support Team"
AI_SENDER_NAME = "PayVAT Assistant"
ESCALATION_NOTICE = "This conversation has been flagged for our support team: {reason}"

MAX_MESSAGE_LENGTH = 5000


@dataclass
class ChatAttachment:
    """Metadata of a file already uploaded to storage."""
    file_name: str
    file_url: str
    file_size: Optional[int] = None


@dataclass
class PostedMessage:
    """Result of post_message."""
    message: ChatMessage
    ai_message: Optional[ChatMessage] = None
    escalation_message: Optional[ChatMessage] = None
    ai_response: Optional[ChatAIResponse] = None
    escalated: bool = False
    suggested_actions: List[str] = field(default_factory=list)


class ChatService:
    """Service for support chat."""

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: ChatRateLimiter,
        assistant: Optional[AIAssistant] = None,
    ):
        self.db = db
        self.rate_limiter = rate_limiter
        self.assistant = assistant or AIAssistant()
        self.audit = AuditService(db)

    async def _get_session(self, session_id: str) -> ChatSession:
        result = await self.db.execute(
            select(ChatSession).where(ChatSession.session_id == session_id)
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundException("Chat session", session_id)
        return session

    # ===========================================
    # SESSIONS
    # ===========================================

    async def create_session(
        self,
        user: Optional[User] = None,
        contact_name: Optional[str] = None,
        contact_email: Optional[str] = None,
    ) -> Tuple[ChatSession, ChatMessage]:
        """Start a conversation and post the welcome message."""
        session = ChatSession(
            session_id=generate_session_id(),
            user_id=user.id if user else None,
            contact_name=strip_markup(contact_name) if contact_name else (user.full_name if user else None),
            contact_email=contact_email or (user.email if user else None),
            is_active=True,
            is_resolved=False,
            last_message_at=utcnow(),
        )
        self.db.add(session)
        await self.db.flush()

        welcome_text = None
        if user is not None and self.assistant.is_enabled():
            try:
                context = await build_user_context(self.db, user)
                welcome_text = await self.assistant.generate_welcome_message(context)
            except Exception as e:
                logger.warning(f"AI welcome message failed for session {session.session_id[:8]}...: {e}")

        welcome = ChatMessage(
            session_id=session.id,
            sender_type=SenderType.SYSTEM,
            sender_name=SUPPORT_SENDER_NAME,
            message=welcome_text or DEFAULT_WELCOME_MESSAGE,
            message_type=MessageType.TEXT,
        )
        self.db.add(welcome)
        await self.db.commit()

        logger.info(f"Chat session {session.session_id[:8]}... created (user={user.id if user else 'guest'})")
        return session, welcome

    async def get_session(self, session_id: str) -> Tuple[ChatSession, List[ChatMessage]]:
        """Session and its messages, oldest first."""
        session = await self._get_session(session_id)
        result = await self.db.execute(
            select(ChatMessage)
            .where(ChatMessage.session_id == session.id)
            .order_by(ChatMessage.id.asc())
        )
        return session, list(result.scalars().all())

    # ===========================================
    # MESSAGES
    # ===========================================

    async def post_message(
        self,
        session_id: str,
        raw_text: str,
        message_type: MessageType = MessageType.TEXT,
        user: Optional[User] = None,
        attachment: Optional[ChatAttachment] = None,
    ) -> PostedMessage:
        session = await self._get_session(session_id)

        limit = self.rate_limiter.check_limit(session_id)
        if not limit.allowed:
            raise RateLimitException(reset_in=limit.reset_in_seconds, message=limit.message)

        if message_type == MessageType.FILE and attachment is None:
            raise InvalidInputException("File messages require an attachment", field="file")

        text = strip_markup(raw_text or "")
        if not text and attachment is not None:
            text = strip_markup(attachment.file_name)
        if not text:
            raise InvalidInputException("Message cannot be empty", field="message")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise InvalidInputException(
                f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters",
                field="message",
            )

        if user is not None:
            sender_name = user.full_name
        else:
            sender_name = session.contact_name or "Guest"

        message = ChatMessage(
            session_id=session.id,
            sender_type=SenderType.USER,
            sender_name=sender_name,
            message=text,
            message_type=message_type,
            file_name=attachment.file_name if attachment else None,
            file_url=attachment.file_url if attachment else None,
            file_size=attachment.file_size if attachment else None,
        )
        self.db.add(message)
        session.last_message_at = utcnow()
        session.is_active = True
        await self.db.commit()

        posted = PostedMessage(message=message)
        if user is None or not self.assistant.is_enabled():
            return posted

        try:
            await self._reply_with_ai(session, message, user, posted)
        except Exception as e:
            logger.error(f"AI reply failed for chat session {session_id[:8]}...: {e}")
            await self.db.rollback()
            await self.db.refresh(message)

        return posted

    async def _history(self, session: ChatSession, before_id: int) -> List[dict]:
        result = await self.db.execute(
            select(ChatMessage)
            .where(ChatMessage.session_id == session.id, ChatMessage.id < before_id)
            .order_by(ChatMessage.id.desc())
            .limit(settings.chat_ai_history_limit)
        )
        history = []
        for item in reversed(result.scalars().all()):
            role = "user" if item.sender_type == SenderType.USER else "assistant"
            history.append({"role": role, "content": item.message})
        return history

    async def _reply_with_ai(
        self,
        session: ChatSession,
        message: ChatMessage,
        user: User,
        posted: PostedMessage,
    ) -> None:
        context = await build_user_context(self.db, user)
        history = await self._history(session, message.id)

        ai_response = await self.assistant.generate_chat_response(message.message, context, history)
        posted.ai_response = ai_response
        if not ai_response.success or not ai_response.response:
            logger.info(f"No AI reply for session {session.session_id[:8]}...: {ai_response.error}")
            return

        ai_message = ChatMessage(
            session_id=session.id,
            sender_type=SenderType.SYSTEM,
            sender_name=AI_SENDER_NAME,
            message=ai_response.response,
            message_type=MessageType.TEXT,
        )
        self.db.add(ai_message)
        session.last_message_at = utcnow()

        escalation_message = None
        if ai_response.requires_human_support:
            reason = ai_response.escalation_reason or "Human support requested"
            session.is_resolved = False
            posted.escalated = True
            escalation_message = ChatMessage(
                session_id=session.id,
                sender_type=SenderType.SYSTEM,
                sender_name=SUPPORT_SENDER_NAME,
                message=ESCALATION_NOTICE.format(reason=reason),
                message_type=MessageType.TEXT,
            )
            self.db.add(escalation_message)
            await self.audit.log_action(
                entity_type="chat_session",
                entity_id=str(session.id),
                action=AuditAction.CHAT_ESCALATED,
                user_id=user.id,
                metadata={
                    "session_id": session.session_id,
                    "message_id": message.id,
                    "reason": ai_response.escalation_reason,
                },
                description="Chat escalated to human support",
            )
            logger.info(f"Chat session {session.session_id[:8]}... escalated: {ai_response.escalation_reason}")

        await self.db.commit()
        posted.ai_message = ai_message
        posted.escalation_message = escalation_message
        posted.suggested_actions = ai_response.suggested_actions
