"""
PayVAT - VAT Return Model

One VAT return per user and taxable period. Returns move forward only:
DRAFT -> SUBMITTED -> PAID. Rows are never deleted.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Date, DateTime, ForeignKey, Numeric, String, UniqueConstraint, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payvat.models.base import BaseModel

if TYPE_CHECKING:
    from payvat.models.user import User
    from payvat.models.payment import Payment
    from payvat.models.document import Document


class VATReturnStatus(str, Enum):
    """VAT return lifecycle status."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PAID = "PAID"


class VATReturn(BaseModel):
    """VAT return for a single taxable period."""

    __tablename__ = "vat_returns"
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", "period_end", name="uq_vat_returns_user_period"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Period
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Amounts (EUR)
    sales_vat: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False,
        comment="Output VAT charged on sales",
    )
    purchase_vat: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False,
        comment="Input VAT paid on purchases",
    )
    net_vat: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False,
        comment="sales_vat - purchase_vat; negative means a refund",
    )

    status: Mapped[VATReturnStatus] = mapped_column(
        SQLEnum(VATReturnStatus),
        default=VATReturnStatus.DRAFT,
        nullable=False,
        index=True,
    )

    revenue_ref_number: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        unique=True,
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="vat_returns", lazy="raise")
    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="vat_return",
        lazy="raise",
    )
    documents: Mapped[List["Document"]] = relationship(
        "Document",
        back_populates="vat_return",
        lazy="raise",
    )

    @property
    def period_label(self) -> str:
        return f"{self.period_start.strftime('%d/%m/%Y')} - {self.period_end.strftime('%d/%m/%Y')}"

