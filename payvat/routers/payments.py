"""
PayVAT - Payments Router

API endpoints for paying submitted VAT returns through Stripe.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.database import get_db
from payvat.dependencies import get_current_user, get_payment_processor
from payvat.models.user import User
from payvat.schemas.payment import (
    PaymentConfirmResponse,
    PaymentCreate,
    PaymentEnvelope,
    PaymentListEnvelope,
    PaymentResponse,
    ReceiptEnvelope,
    ReceiptResponse,
    WebhookAck,
)
from payvat.schemas.vat import VATReturnResponse
from payvat.services.payment_provider import PaymentProcessor, UnhandledEvent
from payvat.services.payment_service import PaymentService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["Payments"])


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Stripe webhook handler",
    include_in_schema=False,
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Handle Stripe payment intent events.

    Security:
    - Verifies the Stripe-Signature header (HMAC-SHA256 over "t.body")
    - Rejects missing or invalid signatures with 400 before touching the database

    Once verified, the event is always acknowledged. Reconciliation errors
    are logged with the event id so the event can be replayed.
    """
    body = await request.body()
    event = processor.verify_webhook_signature(body, request.headers.get("Stripe-Signature"))

    reference = getattr(getattr(event, "intent", None), "id", None)
    logger.info(f"Stripe webhook received: event={event.type}, id={event.event_id}, reference={reference or 'N/A'}")

    if isinstance(event, UnhandledEvent):
        return WebhookAck()

    try:
        service = PaymentService(db, processor)
        result = await service.handle_webhook_event(event)
        await db.commit()
        if result.get("changed"):
            logger.info(f"Stripe webhook {event.event_id} applied: payment={result['payment_id']} status={result['status']}")
    except Exception as e:
        await db.rollback()
        logger.error(
            f"Stripe webhook reconciliation failed: event={event.type}, id={event.event_id}, "
            f"reference={reference}: {e}",
            exc_info=True,
        )

    return WebhookAck()


@router.post(
    "",
    response_model=PaymentEnvelope,
    summary="Create payment for a VAT return",
)
async def create_payment(
    request: PaymentCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Start (or resume) payment of a submitted VAT return.

    Returns the existing payment while one is in progress; a completed
    payment returns 409.
    """
    service = PaymentService(db, processor)
    payment = await service.create_payment(request.vat_return_id, current_user)
    await db.commit()
    await db.refresh(payment)
    return PaymentEnvelope(payment=PaymentResponse.model_validate(payment))


@router.get(
    "",
    response_model=PaymentListEnvelope,
    summary="List payments",
)
async def list_payments(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    service = PaymentService(db, processor)
    payments = await service.list_payments(current_user)
    return PaymentListEnvelope(payments=[PaymentResponse.model_validate(p) for p in payments])


@router.get(
    "/{payment_id}",
    response_model=PaymentEnvelope,
    summary="Get payment",
)
async def get_payment(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    service = PaymentService(db, processor)
    payment = await service.get_payment(payment_id, current_user)
    return PaymentEnvelope(payment=PaymentResponse.model_validate(payment))


@router.get(
    "/{payment_id}/receipt",
    response_model=ReceiptEnvelope,
    summary="Get payment receipt",
)
async def get_receipt(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    service = PaymentService(db, processor)
    receipt = await service.generate_receipt(payment_id, current_user)
    return ReceiptEnvelope(receipt=ReceiptResponse.model_validate(receipt.to_dict()))


@router.post(
    "/{payment_id}/confirm",
    response_model=PaymentConfirmResponse,
    summary="Confirm payment status with the processor",
)
async def confirm_payment(
    payment_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """
    Reconcile the payment with Stripe after checkout.

    Safe to call repeatedly and concurrently with webhooks; a completed
    payment is reported with its receipt.
    """
    service = PaymentService(db, processor)
    result = await service.confirm_payment(payment_id, current_user)
    await db.commit()
    await db.refresh(result.payment)
    await db.refresh(result.vat_return)

    return PaymentConfirmResponse(
        payment=PaymentResponse.model_validate(result.payment),
        vat_return=VATReturnResponse.model_validate(result.vat_return),
        requires_action=result.requires_action,
        changed=result.changed,
        receipt=ReceiptResponse.model_validate(result.receipt.to_dict()) if result.receipt else None,
    )
