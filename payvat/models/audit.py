"""
PayVAT - Audit Log Model

Immutable audit log for financial traceability.

Every payment that is created, completed or failed, and every VAT return
that is calculated, submitted or paid, leaves one row here. The table is
insert-only.
"""

import uuid
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, JSON, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from payvat.database import Base
from payvat.models.base import utcnow


class AuditAction(str, enum.Enum):
    """Audit action types."""
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_CANCELLED = "PAYMENT_CANCELLED"
    VAT_CALCULATED = "VAT_CALCULATED"
    VAT_SUBMITTED = "VAT_SUBMITTED"
    VAT_RETURN_PAID = "VAT_RETURN_PAID"
    DOCUMENT_UPLOADED = "DOCUMENT_UPLOADED"
    DOCUMENT_PROCESSED = "DOCUMENT_PROCESSED"
    DOCUMENT_DELETED = "DOCUMENT_DELETED"
    CHAT_ESCALATED = "CHAT_ESCALATED"


class AuditLog(Base):
    """
    Immutable audit log entry.

    This table should have no UPDATE or DELETE permissions.
    """

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Actor (NULL for processor-driven actions such as webhooks)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        nullable=True,
        index=True,
    )

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction),
        nullable=False,
        index=True,
    )

    # Target Entity
    target_entity_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Type of entity (payment, vat_return, ...)",
    )
    target_entity_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="ID of the affected entity",
    )

    old_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        comment="Amount, currency, processor reference and source of the action",
    )

    # Request context
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action={self.action.value}, target={self.target_entity_type}:{self.target_entity_id})>"
