"""
PayVAT - User Model

A business account (tenant). Every VAT return, payment and document belongs
to exactly one user.
"""

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payvat.models.base import BaseModel

if TYPE_CHECKING:
    from payvat.models.vat_return import VATReturn
    from payvat.models.payment import Payment
    from payvat.models.document import Document


class User(BaseModel):
    """Business user account."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Irish business details shown on receipts
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    vat_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Irish VAT registration number, e.g. IE1234567T",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    vat_returns: Mapped[List["VATReturn"]] = relationship(
        "VATReturn",
        back_populates="user",
        lazy="raise",
    )
    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="user",
        lazy="raise",
    )
    documents: Mapped[List["Document"]] = relationship(
        "Document",
        back_populates="user",
        lazy="raise",
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name or "", self.last_name or ""]
        name = " ".join(p for p in parts if p)
        return name or self.business_name
