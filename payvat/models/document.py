"""
PayVAT - Document Model

Uploaded VAT documents and the amounts extracted from them.
File bytes live in external storage; only metadata and extraction
results are stored here.
"""

import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, JSON, String, Text, Uuid, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payvat.models.base import BaseModel, utcnow

if TYPE_CHECKING:
    from payvat.models.user import User
    from payvat.models.vat_return import VATReturn


class DocumentCategory(str, Enum):
    """Which side of the return a document belongs to."""
    SALES = "SALES"
    PURCHASES = "PURCHASES"
    OTHER = "OTHER"


class DocumentType(str, Enum):
    """Kind of document that was uploaded."""
    SALES_INVOICE = "SALES_INVOICE"
    SALES_RECEIPT = "SALES_RECEIPT"
    SALES_REPORT = "SALES_REPORT"
    PURCHASE_INVOICE = "PURCHASE_INVOICE"
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    PURCHASE_REPORT = "PURCHASE_REPORT"
    BANK_STATEMENT = "BANK_STATEMENT"
    OTHER = "OTHER"

    @property
    def default_category(self) -> "DocumentCategory":
        if self.value.startswith("SALES_"):
            return DocumentCategory.SALES
        if self.value.startswith("PURCHASE_"):
            return DocumentCategory.PURCHASES
        return DocumentCategory.OTHER


class Document(BaseModel):
    """Uploaded document with AI-extracted VAT amounts."""

    __tablename__ = "documents"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    vat_return_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("vat_returns.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # File metadata
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    file_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), default="application/pdf", nullable=False)

    category: Mapped[DocumentCategory] = mapped_column(
        SQLEnum(DocumentCategory),
        nullable=False,
        index=True,
    )
    document_type: Mapped[DocumentType] = mapped_column(
        SQLEnum(DocumentType),
        default=DocumentType.OTHER,
        nullable=False,
    )

    # Extraction results
    is_scanned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    scan_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_text: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="OCR text handed to the VAT extractor",
    )
    extracted_amounts: Mapped[Optional[list]] = mapped_column(
        JSON,
        nullable=True,
        comment="VAT amounts found in the document, as decimal strings",
    )
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="documents", lazy="raise")
    vat_return: Mapped[Optional["VATReturn"]] = relationship(
        "VATReturn",
        back_populates="documents",
        lazy="raise",
    )

    @property
    def amounts(self) -> List[Decimal]:
        """Extracted amounts as Decimals; unparseable entries are skipped."""
        values = []
        for raw in self.extracted_amounts or []:
            try:
                values.append(Decimal(str(raw)))
            except (InvalidOperation, ValueError):
                continue
        return values
