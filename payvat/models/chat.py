"""
PayVAT - Support Chat Models

Chat sessions and their append-only message history. Sessions are never
deleted; they form the support audit trail.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payvat.database import Base
from payvat.models.base import BaseModel, TimestampMixin, utcnow

if TYPE_CHECKING:
    from payvat.models.user import User


class SenderType(str, Enum):
    """Who authored a chat message."""
    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"


class MessageType(str, Enum):
    """Chat message payload kind."""
    TEXT = "text"
    FILE = "file"


class ChatSession(BaseModel):
    """Support conversation, identified publicly by session_id."""

    __tablename__ = "chat_sessions"

    session_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Guest contact details
    contact_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    user: Mapped[Optional["User"]] = relationship("User", lazy="raise")
    messages: Mapped[List["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="session",
        order_by="ChatMessage.id",
        lazy="raise",
    )


class ChatMessage(Base, TimestampMixin):
    """
    Single chat message.

    The integer primary key is assigned by the database in insert order and
    is used as the ordering key, so messages created within the same clock
    tick still come back in the order they were stored.
    """

    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    sender_type: Mapped[SenderType] = mapped_column(SQLEnum(SenderType), nullable=False)
    sender_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[MessageType] = mapped_column(
        SQLEnum(MessageType),
        default=MessageType.TEXT,
        nullable=False,
    )

    # Attachment metadata (file bytes are stored elsewhere)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    session: Mapped["ChatSession"] = relationship("ChatSession", back_populates="messages", lazy="raise")

    def __repr__(self) -> str:
        return f"<ChatMessage(id={self.id}, sender={self.sender_type.value})>"
