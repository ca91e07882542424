"""
PayVAT - Payment Schemas

Pydantic schemas for VAT payments and receipts.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel

from payvat.models.payment import PaymentStatus
from payvat.schemas.vat import VATReturnResponse


class PaymentCreate(BaseModel):
    """Schema for starting payment of a VAT return."""
    vat_return_id: UUID


class PaymentResponse(BaseModel):
    """Schema for payment response."""
    id: UUID
    vat_return_id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: Optional[str] = None
    processor_payment_id: Optional[str] = None
    processor_client_secret: Optional[str] = None
    attempt_count: int
    receipt_number: Optional[str] = None
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BusinessDetails(BaseModel):
    name: str
    vat_number: str
    email: str


class ReceiptVATDetails(BaseModel):
    period: str
    period_start: str
    period_end: str
    revenue_reference: Optional[str] = None
    net_vat: str


class ReceiptResponse(BaseModel):
    """Schema for a payment receipt."""
    receipt_number: str
    payment_date: Optional[str] = None
    amount: str
    currency: str
    payment_method: str
    description: str
    business_details: BusinessDetails
    vat_details: ReceiptVATDetails


class PaymentEnvelope(BaseModel):
    success: bool = True
    payment: PaymentResponse


class PaymentListEnvelope(BaseModel):
    success: bool = True
    payments: List[PaymentResponse]


class ReceiptEnvelope(BaseModel):
    success: bool = True
    receipt: ReceiptResponse


class PaymentConfirmResponse(BaseModel):
    """Schema for confirm_payment result."""
    success: bool = True
    payment: PaymentResponse
    vat_return: VATReturnResponse
    requires_action: bool = False
    changed: bool = False
    receipt: Optional[ReceiptResponse] = None


class WebhookAck(BaseModel):
    received: bool = True
