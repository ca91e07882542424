"""
PayVAT - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from payvat.models.base import BaseModel, TimestampMixin, utcnow
from payvat.models.user import User
from payvat.models.vat_return import VATReturn, VATReturnStatus
from payvat.models.payment import Payment, PaymentStatus, receipt_number_for
from payvat.models.document import Document, DocumentCategory, DocumentType
from payvat.models.chat import ChatSession, ChatMessage, SenderType, MessageType
from payvat.models.audit import AuditLog, AuditAction

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "utcnow",
    "User",
    "VATReturn",
    "VATReturnStatus",
    "Payment",
    "PaymentStatus",
    "receipt_number_for",
    "Document",
    "DocumentCategory",
    "DocumentType",
    "ChatSession",
    "ChatMessage",
    "SenderType",
    "MessageType",
    "AuditLog",
    "AuditAction",
]
