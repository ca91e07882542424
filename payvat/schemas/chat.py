"""
PayVAT - Chat Schemas

POST /chat takes a request discriminated on "action".
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

from payvat.models.chat import MessageType, SenderType


class CreateSessionRequest(BaseModel):
    action: Literal["create_session"]
    contact_name: Optional[str] = Field(None, max_length=200)
    contact_email: Optional[EmailStr] = None


class ChatAttachmentRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_url: str = Field(..., min_length=1, max_length=500)
    file_size: Optional[int] = Field(None, ge=0)


class SendMessageRequest(BaseModel):
    action: Literal["send_message"]
    session_id: str = Field(..., min_length=1, max_length=64)
    message: str = Field("", max_length=10000)
    message_type: MessageType = MessageType.TEXT
    attachment: Optional[ChatAttachmentRequest] = None


ChatRequest = Annotated[
    Union[CreateSessionRequest, SendMessageRequest],
    Field(discriminator="action"),
]


class ChatMessageResponse(BaseModel):
    id: int
    sender_type: SenderType
    sender_name: Optional[str] = None
    message: str
    message_type: MessageType
    file_name: Optional[str] = None
    file_url: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ChatSessionResponse(BaseModel):
    session_id: str
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    is_active: bool
    is_resolved: bool
    last_message_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True


class CreateSessionResponse(BaseModel):
    success: bool = True
    session_id: str
    session: ChatSessionResponse
    welcome_message: ChatMessageResponse


class SendMessageResponse(BaseModel):
    success: bool = True
    message: ChatMessageResponse
    ai_response: Optional[ChatMessageResponse] = None
    escalation_message: Optional[ChatMessageResponse] = None
    requires_human_support: bool = False
    escalation_reason: Optional[str] = None
    suggested_actions: List[str] = []


class ChatSessionEnvelope(BaseModel):
    success: bool = True
    session: ChatSessionResponse
    messages: List[ChatMessageResponse]
