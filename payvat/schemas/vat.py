"""
PayVAT - VAT Return Schemas

Pydantic schemas for VAT calculation and submission.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from payvat.models.vat_return import VATReturnStatus


# Amounts are euro with at most two decimal places
VATAmount = Annotated[Decimal, Field(ge=0, le=Decimal("10000000.00"), max_digits=12, decimal_places=2)]


class VATCalculateRequest(BaseModel):
    """Schema for calculating a VAT return."""
    sales_vat: VATAmount
    purchase_vat: VATAmount
    period_start: date
    period_end: date

    @model_validator(mode="after")
    def check_period_order(self):
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class VATSubmitRequest(BaseModel):
    """Schema for submitting a VAT return."""
    document_ids: Optional[List[UUID]] = None


class VATCalculationResponse(BaseModel):
    """Schema for calculation result."""
    sales_vat: Decimal
    purchase_vat: Decimal
    net_vat: Decimal
    is_refund: bool
    warnings: List[str] = []
    source: str = "local"

    class Config:
        from_attributes = True


class VATReturnResponse(BaseModel):
    """Schema for VAT return response."""
    id: UUID
    period_start: date
    period_end: date
    due_date: Optional[date] = None
    sales_vat: Decimal
    purchase_vat: Decimal
    net_vat: Decimal
    status: VATReturnStatus
    revenue_ref_number: Optional[str] = None
    submitted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class VATCalculateEnvelope(BaseModel):
    success: bool = True
    vat_return: VATReturnResponse
    calculation: VATCalculationResponse


class VATReturnEnvelope(BaseModel):
    success: bool = True
    vat_return: VATReturnResponse
    payment_required: bool = False


class VATReturnListEnvelope(BaseModel):
    success: bool = True
    vat_returns: List[VATReturnResponse]
