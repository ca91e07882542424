"""
PayVAT - Payment Model

Payment of a submitted VAT return through the payment processor.

Status changes are applied with conditional UPDATE statements keyed on the
current status (see PaymentService), so a payment can be confirmed by the
user and by a processor webhook at the same time without double-applying
side effects.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payvat.models.base import BaseModel

if TYPE_CHECKING:
    from payvat.models.user import User
    from payvat.models.vat_return import VATReturn


class PaymentStatus(str, Enum):
    """Local payment status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED)


class Payment(BaseModel):
    """Payment for a VAT return. One row per return, reused after failure."""

    __tablename__ = "payments"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vat_return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vat_returns.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Processor (Stripe PaymentIntent)
    processor_payment_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
    )
    processor_client_secret: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attempt_count: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="Incremented each time a failed or cancelled payment is retried",
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, unique=True)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="payments", lazy="raise")
    vat_return: Mapped["VATReturn"] = relationship("VATReturn", back_populates="payments", lazy="raise")


def receipt_number_for(payment_id: uuid.UUID) -> str:
    """Receipt numbers are derived from the payment id so they never change."""
    return f"RCP-{payment_id.hex.upper()}"
