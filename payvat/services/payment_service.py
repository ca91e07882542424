"""
PayVAT - Payment Service

Payment lifecycle for submitted VAT returns.

Status changes arrive from two directions:
- the user polling confirm_payment after checkout
- processor webhooks, possibly duplicated or out of order

Both paths go through _apply_status(), which updates the row with
UPDATE ... WHERE id = :id AND status = :current. Only the caller whose
update affected the row runs the side effects (receipt number, VAT return
PAID transition, audit entries), so concurrent confirm + webhook calls
apply them exactly once. A COMPLETED payment is never changed again.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.config import settings
from payvat.models.audit import AuditAction
from payvat.models.base import utcnow
from payvat.models.payment import Payment, PaymentStatus, receipt_number_for
from payvat.models.user import User
from payvat.models.vat_return import VATReturn, VATReturnStatus
from payvat.services.audit_service import AuditService
from payvat.services.payment_provider import (
    EVENT_STATUS,
    PaymentIntentResult,
    PaymentProcessor,
    StripeProvider,
    UnhandledEvent,
    WebhookEvent,
    map_processor_status,
)
from payvat.utils.error_handling import (
    AlreadyPaidException,
    InvalidInputException,
    NotFoundException,
    NotPayableException,
)

logger = logging.getLogger(__name__)


# Transitions reconciliation may apply. Resetting FAILED/CANCELLED to
# PENDING is done only by create_payment with a fresh processor intent.
ALLOWED_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.PENDING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    # A declined intent can still be retried and succeed
    PaymentStatus.FAILED: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.COMPLETED: frozenset(),
}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class PaymentReceipt:
    """Receipt for a completed VAT payment."""
    receipt_number: str
    payment_date: Optional[datetime]
    amount: Decimal
    currency: str
    payment_method: str
    description: str
    business_name: str
    vat_number: str
    email: str
    period_start: date
    period_end: date
    revenue_reference: Optional[str]
    net_vat: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_number": self.receipt_number,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "amount": str(self.amount),
            "currency": self.currency,
            "payment_method": self.payment_method,
            "description": self.description,
            "business_details": {
                "name": self.business_name,
                "vat_number": self.vat_number,
                "email": self.email,
            },
            "vat_details": {
                "period": f"{self.period_start.strftime('%d/%m/%Y')} - {self.period_end.strftime('%d/%m/%Y')}",
                "period_start": self.period_start.isoformat(),
                "period_end": self.period_end.isoformat(),
                "revenue_reference": self.revenue_reference,
                "net_vat": str(self.net_vat),
            },
        }


@dataclass
class PaymentConfirmation:
    """Outcome of confirm_payment."""
    payment: Payment
    vat_return: VATReturn
    changed: bool
    requires_action: bool
    receipt: Optional[PaymentReceipt] = None


# =============================================================================
# PAYMENT SERVICE
# =============================================================================

class PaymentService:
    """
    Service for VAT payments.

    Usage:
        service = PaymentService(db, processor)

        payment = await service.create_payment(vat_return_id, user)
        result = await service.confirm_payment(payment.id, user)
        await service.handle_webhook_event(event)

    Callers own the transaction: the service flushes, routers commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        processor: Optional[PaymentProcessor] = None,
    ):
        self.db = db
        self.processor = processor or StripeProvider()
        self.audit = AuditService(db)

    # ===========================================
    # LOOKUPS
    # ===========================================

    async def _get_owned_return(self, vat_return_id: uuid.UUID, user: User) -> VATReturn:
        result = await self.db.execute(
            select(VATReturn).where(
                VATReturn.id == vat_return_id,
                VATReturn.user_id == user.id,
            )
        )
        vat_return = result.scalar_one_or_none()
        if vat_return is None:
            raise NotFoundException("VAT return", vat_return_id)
        return vat_return

    async def _get_return(self, vat_return_id: uuid.UUID) -> VATReturn:
        vat_return = await self.db.get(VATReturn, vat_return_id, populate_existing=True)
        if vat_return is None:
            raise NotFoundException("VAT return", vat_return_id)
        return vat_return

    async def _get_payment_for_return(self, vat_return_id: uuid.UUID) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.vat_return_id == vat_return_id)
        )
        return result.scalar_one_or_none()

    async def _get_payment_by_reference(self, reference: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.processor_payment_id == reference)
        )
        return result.scalar_one_or_none()

    async def get_payment(self, payment_id: uuid.UUID, user: User) -> Payment:
        """Get a payment owned by user."""
        result = await self.db.execute(
            select(Payment).where(
                Payment.id == payment_id,
                Payment.user_id == user.id,
            )
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundException("Payment", payment_id)
        return payment

    async def list_payments(self, user: User) -> List[Payment]:
        """All payments for user, newest first."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.user_id == user.id)
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())

    # ===========================================
    # CREATE
    # ===========================================

    async def create_payment(self, vat_return_id: uuid.UUID, user: User) -> Payment:
        """
        Create (or return the existing) payment for a submitted VAT return.

        - An active PENDING/PROCESSING payment is returned unchanged
        - A COMPLETED payment raises AlreadyPaidException
        - A FAILED/CANCELLED payment is reused with a fresh processor intent

        The processor intent is requested before any row is written, so a
        processor failure leaves no payment without a processor reference.
        """
        vat_return = await self._get_owned_return(vat_return_id, user)
        existing = await self._get_payment_for_return(vat_return.id)

        if existing is not None:
            if existing.status == PaymentStatus.COMPLETED:
                raise AlreadyPaidException(vat_return.id, existing.id)
            if not existing.status.is_terminal:
                logger.info(f"Returning active payment {existing.id} for VAT return {vat_return.id}")
                return existing

        if vat_return.status != VATReturnStatus.SUBMITTED:
            if vat_return.status == VATReturnStatus.PAID:
                raise NotPayableException("This VAT return has already been paid")
            raise NotPayableException(
                "VAT return must be submitted before payment",
                details={"status": vat_return.status.value},
            )

        amount = vat_return.net_vat
        if amount <= 0:
            raise InvalidInputException(
                "This VAT return does not require payment",
                field="net_vat",
                details={"net_vat": str(amount)},
            )
        if amount < settings.payment_min_amount:
            raise InvalidInputException(
                f"Payment amount must be at least €{settings.payment_min_amount:,.2f}",
                field="amount",
            )
        if amount > settings.payment_max_amount:
            raise InvalidInputException(
                f"Payment amount cannot exceed €{settings.payment_max_amount:,.2f}",
                field="amount",
            )

        attempt = existing.attempt_count + 1 if existing is not None else 1
        intent = await self.processor.create_intent(
            amount=amount,
            currency=settings.payment_currency,
            metadata={
                "vat_return_id": str(vat_return.id),
                "user_id": str(user.id),
                "period": vat_return.period_label,
            },
            description=f"VAT payment for period {vat_return.period_label}",
            idempotency_key=f"payvat-{vat_return.id}-{attempt}",
        )

        if existing is not None:
            payment = await self._reset_payment(existing, intent, amount, attempt)
        else:
            payment = await self._insert_payment(vat_return.id, user.id, intent, amount)
            if payment is None:
                # Lost an insert race; the other request's row is the payment
                concurrent = await self._get_payment_for_return(vat_return_id)
                if concurrent is None:
                    raise NotFoundException("Payment for VAT return", vat_return_id)
                return concurrent

        await self.audit.log_action(
            entity_type="payment",
            entity_id=str(payment.id),
            action=AuditAction.PAYMENT_CREATED,
            user_id=user.id,
            new_values={"status": payment.status.value, "amount": payment.amount},
            metadata={
                "vat_return_id": vat_return.id,
                "amount": amount,
                "currency": payment.currency,
                "processor_reference": intent.id,
                "attempt": attempt,
                "source": "api",
            },
            description=f"Payment of €{amount:,.2f} created for VAT return {vat_return.id}",
        )

        logger.info(f"Payment {payment.id} created for VAT return {vat_return.id}: intent={intent.id}")
        return payment

    async def _insert_payment(
        self,
        vat_return_id: uuid.UUID,
        user_id: uuid.UUID,
        intent: PaymentIntentResult,
        amount: Decimal,
    ) -> Optional[Payment]:
        payment = Payment(
            user_id=user_id,
            vat_return_id=vat_return_id,
            amount=amount,
            currency=settings.payment_currency,
            status=PaymentStatus.PENDING,
            processor_payment_id=intent.id,
            processor_client_secret=intent.client_secret,
            attempt_count=1,
        )
        self.db.add(payment)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Concurrent payment creation for VAT return {vat_return_id}; using existing row")
            return None
        return payment

    async def _reset_payment(
        self,
        payment: Payment,
        intent: PaymentIntentResult,
        amount: Decimal,
        attempt: int,
    ) -> Payment:
        previous_status = payment.status
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == previous_status)
            .values(
                status=PaymentStatus.PENDING,
                amount=amount,
                processor_payment_id=intent.id,
                processor_client_secret=intent.client_secret,
                payment_method=None,
                failed_at=None,
                failure_reason=None,
                attempt_count=attempt,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(payment)
        if result.rowcount != 1:
            logger.info(f"Payment {payment.id} was reset concurrently; returning current state")
        else:
            logger.info(f"Payment {payment.id} reset from {previous_status.value} to PENDING (attempt {attempt})")
        return payment

    # ===========================================
    # CONFIRM (client poll)
    # ===========================================

    async def confirm_payment(self, payment_id: uuid.UUID, user: User) -> PaymentConfirmation:
        """
        Reconcile a payment with the processor's current view of it.

        Processor errors propagate as ProcessorException and leave the
        payment untouched.
        """
        payment = await self.get_payment(payment_id, user)
        if not payment.processor_payment_id:
            raise NotPayableException("Payment not properly initialized")

        intent = await self.processor.retrieve_intent(payment.processor_payment_id)
        new_status = map_processor_status(intent)

        changed = await self._apply_status(
            payment,
            new_status,
            intent,
            source="confirm",
            actor_id=user.id,
        )

        vat_return = await self._get_return(payment.vat_return_id)
        receipt = None
        if payment.status == PaymentStatus.COMPLETED:
            receipt = self._build_receipt(payment, vat_return, user)

        return PaymentConfirmation(
            payment=payment,
            vat_return=vat_return,
            changed=changed,
            requires_action=intent.status == "requires_action",
            receipt=receipt,
        )

    # ===========================================
    # WEBHOOK HANDLING
    # ===========================================

    async def handle_webhook_event(self, event: WebhookEvent) -> Dict[str, Any]:
        """
        Apply a verified processor event.

        Events for unknown payment intents are logged and ignored. Replaying
        an event that was already applied is a no-op.
        """
        if isinstance(event, UnhandledEvent):
            logger.debug(f"Unhandled webhook event: {event.type} ({event.event_id})")
            return {"handled": False, "event": event.type}

        reference = event.intent.id
        payment = await self._get_payment_by_reference(reference)
        if payment is None:
            logger.info(f"Webhook {event.type} ({event.event_id}) for unknown payment intent {reference} - ignored")
            return {"handled": False, "event": event.type, "reference": reference}

        changed = await self._apply_status(
            payment,
            EVENT_STATUS[type(event)],
            event.intent,
            source="webhook",
            actor_id=None,
            event_id=event.event_id,
        )

        return {
            "handled": True,
            "event": event.type,
            "payment_id": str(payment.id),
            "status": payment.status.value,
            "changed": changed,
        }

    # ===========================================
    # STATE TRANSITIONS
    # ===========================================

    async def _apply_status(
        self,
        payment: Payment,
        new_status: PaymentStatus,
        intent: PaymentIntentResult,
        source: str,
        actor_id: Optional[uuid.UUID] = None,
        event_id: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set the payment status. Returns True only for the caller
        whose update took effect; side effects run only in that case.
        """
        current = payment.status
        if new_status == current:
            return False
        if new_status not in ALLOWED_TRANSITIONS[current]:
            logger.info(
                f"Ignoring {current.value} -> {new_status.value} for payment {payment.id} "
                f"(source={source}, reference={intent.id})"
            )
            return False

        now = utcnow()
        values: Dict[str, Any] = {"status": new_status, "updated_at": now}
        if intent.payment_method:
            values["payment_method"] = intent.payment_method
        if new_status == PaymentStatus.COMPLETED:
            values["processed_at"] = now
            values["receipt_number"] = receipt_number_for(payment.id)
            values["failure_reason"] = None
        elif new_status == PaymentStatus.FAILED:
            values["failed_at"] = now
            values["failure_reason"] = intent.last_error or "Payment failed"
        elif new_status == PaymentStatus.CANCELLED:
            values["failure_reason"] = "Payment was cancelled"

        result = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == current,
                Payment.processor_payment_id == intent.id,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(payment)

        if result.rowcount != 1:
            logger.info(
                f"Payment {payment.id} changed concurrently (expected {current.value}, "
                f"now {payment.status.value}); skipping {source} update"
            )
            return False

        logger.info(
            f"Payment {payment.id}: {current.value} -> {new_status.value} "
            f"(source={source}, reference={intent.id})"
        )

        metadata = {
            "amount": payment.amount,
            "currency": payment.currency,
            "processor_reference": intent.id,
            "processor_status": intent.status,
            "source": source,
        }
        if event_id:
            metadata["event_id"] = event_id

        if new_status == PaymentStatus.COMPLETED:
            await self._mark_return_paid(payment, now, actor_id, metadata)
            await self.audit.log_action(
                entity_type="payment",
                entity_id=str(payment.id),
                action=AuditAction.PAYMENT_COMPLETED,
                user_id=actor_id,
                old_values={"status": current.value},
                new_values={"status": new_status.value, "receipt_number": payment.receipt_number},
                metadata=metadata,
                description=f"Payment of €{payment.amount:,.2f} completed",
            )
        elif new_status == PaymentStatus.FAILED:
            metadata["failure_reason"] = payment.failure_reason
            metadata["failure_code"] = intent.last_error_code
            await self.audit.log_action(
                entity_type="payment",
                entity_id=str(payment.id),
                action=AuditAction.PAYMENT_FAILED,
                user_id=actor_id,
                old_values={"status": current.value},
                new_values={"status": new_status.value},
                metadata=metadata,
                description=f"Payment failed: {payment.failure_reason}",
            )
        elif new_status == PaymentStatus.CANCELLED:
            await self.audit.log_action(
                entity_type="payment",
                entity_id=str(payment.id),
                action=AuditAction.PAYMENT_CANCELLED,
                user_id=actor_id,
                old_values={"status": current.value},
                new_values={"status": new_status.value},
                metadata=metadata,
            )

        return True

    async def _mark_return_paid(
        self,
        payment: Payment,
        paid_at: datetime,
        actor_id: Optional[uuid.UUID],
        metadata: Dict[str, Any],
    ) -> bool:
        """SUBMITTED -> PAID, applied at most once."""
        result = await self.db.execute(
            update(VATReturn)
            .where(
                VATReturn.id == payment.vat_return_id,
                VATReturn.status == VATReturnStatus.SUBMITTED,
            )
            .values(status=VATReturnStatus.PAID, paid_at=paid_at, updated_at=paid_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"VAT return {payment.vat_return_id} already marked paid")
            return False

        await self.audit.log_action(
            entity_type="vat_return",
            entity_id=str(payment.vat_return_id),
            action=AuditAction.VAT_RETURN_PAID,
            user_id=actor_id,
            old_values={"status": VATReturnStatus.SUBMITTED.value},
            new_values={"status": VATReturnStatus.PAID.value},
            metadata={**metadata, "payment_id": payment.id},
        )
        logger.info(f"VAT return {payment.vat_return_id} marked PAID by payment {payment.id}")
        return True

    # ===========================================
    # RECEIPTS
    # ===========================================

    def _build_receipt(self, payment: Payment, vat_return: VATReturn, user: User) -> PaymentReceipt:
        return PaymentReceipt(
            receipt_number=payment.receipt_number or receipt_number_for(payment.id),
            payment_date=payment.processed_at,
            amount=payment.amount,
            currency=payment.currency,
            payment_method=payment.payment_method or "card",
            description=f"VAT Payment - {vat_return.period_label}",
            business_name=user.business_name,
            vat_number=user.vat_number,
            email=user.email,
            period_start=vat_return.period_start,
            period_end=vat_return.period_end,
            revenue_reference=vat_return.revenue_ref_number,
            net_vat=vat_return.net_vat,
        )

    async def generate_receipt(self, payment_id: uuid.UUID, user: User) -> PaymentReceipt:
        """Receipt for a COMPLETED payment; NotPayableException otherwise."""
        payment = await self.get_payment(payment_id, user)
        if payment.status != PaymentStatus.COMPLETED:
            raise NotPayableException(
                "Receipt is only available for completed payments",
                details={"status": payment.status.value},
            )
        vat_return = await self._get_return(payment.vat_return_id)
        return self._build_receipt(payment, vat_return, user)
