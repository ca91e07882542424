"""
PayVAT - VAT Return Service

Calculation and submission of VAT returns.

Lifecycle: DRAFT -> SUBMITTED -> PAID. Figures can only be recalculated
while a return is DRAFT; PAID is set by the payment lifecycle.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.models.audit import AuditAction
from payvat.models.base import utcnow
from payvat.models.document import Document
from payvat.models.user import User
from payvat.models.vat_return import VATReturn, VATReturnStatus
from payvat.services.audit_service import AuditService
from payvat.services.vat_aggregator import extracted_vat_cache
from payvat.services.vat_calculator import (
    AmountInput,
    VATCalculation,
    VATCalculationService,
    calculate_due_date,
    generate_vat_reference,
    is_overdue,
    validate_vat_period,
)
from payvat.utils.error_handling import (
    ConflictException,
    InvalidInputException,
    NotFoundException,
)

logger = logging.getLogger(__name__)


class VATReturnService:
    """Service for VAT return calculation and submission."""

    def __init__(self, db: AsyncSession, calculator: Optional[VATCalculationService] = None):
        self.db = db
        self.calculator = calculator or VATCalculationService()
        self.audit = AuditService(db)

    async def get_return(self, vat_return_id: uuid.UUID, user: User) -> VATReturn:
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

    async def list_returns(self, user: User, status: Optional[VATReturnStatus] = None) -> List[VATReturn]:
        """User's returns, most recent period first."""
        query = select(VATReturn).where(VATReturn.user_id == user.id)
        if status is not None:
            query = query.where(VATReturn.status == status)
        result = await self.db.execute(query.order_by(VATReturn.period_end.desc()))
        return list(result.scalars().all())

    async def calculate_return(
        self,
        user: User,
        sales_vat: AmountInput,
        purchase_vat: AmountInput,
        period_start: date,
        period_end: date,
        today: Optional[date] = None,
    ) -> Tuple[VATReturn, VATCalculation]:
        """
        Calculate net VAT for a period and store it on the period's DRAFT
        return, creating the return if needed.
        """
        validate_vat_period(period_start, period_end, today)
        user_id = user.id

        # Serializes calculations per user so the overlap check below holds
        await self.db.execute(select(User.id).where(User.id == user_id).with_for_update())

        result = await self.db.execute(
            select(VATReturn).where(
                VATReturn.user_id == user.id,
                VATReturn.period_start <= period_end,
                VATReturn.period_end >= period_start,
            )
        )
        vat_return = None
        for candidate in result.scalars().all():
            if candidate.period_start == period_start and candidate.period_end == period_end:
                vat_return = candidate
                continue
            raise ConflictException(
                "VAT period overlaps an existing return",
                details={
                    "vat_return_id": str(candidate.id),
                    "period_start": candidate.period_start.isoformat(),
                    "period_end": candidate.period_end.isoformat(),
                },
            )

        if vat_return is not None and vat_return.status != VATReturnStatus.DRAFT:
            raise InvalidInputException(
                f"VAT return for this period is already {vat_return.status.value.lower()}",
                field="period",
                details={"vat_return_id": str(vat_return.id), "status": vat_return.status.value},
            )

        calculation = await self.calculator.calculate(sales_vat, purchase_vat)
        due_date = calculate_due_date(period_end)

        warnings = list(calculation.warnings)
        if is_overdue(due_date, today):
            warnings.append(f"Payment for this period was due on {due_date.strftime('%d/%m/%Y')}")
        if warnings != calculation.warnings:
            calculation = VATCalculation(
                sales_vat=calculation.sales_vat,
                purchase_vat=calculation.purchase_vat,
                net_vat=calculation.net_vat,
                warnings=warnings,
                source=calculation.source,
            )

        old_values = None
        if vat_return is None:
            vat_return = VATReturn(
                user_id=user.id,
                period_start=period_start,
                period_end=period_end,
                status=VATReturnStatus.DRAFT,
            )
            self.db.add(vat_return)
        else:
            old_values = {
                "sales_vat": vat_return.sales_vat,
                "purchase_vat": vat_return.purchase_vat,
                "net_vat": vat_return.net_vat,
            }

        vat_return.sales_vat = calculation.sales_vat
        vat_return.purchase_vat = calculation.purchase_vat
        vat_return.net_vat = calculation.net_vat
        vat_return.due_date = due_date
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Concurrent calculation for user {user_id} period {period_start} - {period_end}")
            raise ConflictException(
                "VAT return for this period is being calculated by another request",
                details={
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                },
            )

        await self.audit.log_action(
            entity_type="vat_return",
            entity_id=str(vat_return.id),
            action=AuditAction.VAT_CALCULATED,
            user_id=user.id,
            old_values=old_values,
            new_values={
                "sales_vat": calculation.sales_vat,
                "purchase_vat": calculation.purchase_vat,
                "net_vat": calculation.net_vat,
            },
            metadata={"source": calculation.source, "warnings": calculation.warnings},
            description=f"VAT calculated for {vat_return.period_label}: net €{calculation.net_vat:,.2f}",
        )

        logger.info(f"VAT return {vat_return.id} calculated: net={calculation.net_vat} ({calculation.source})")
        return vat_return, calculation

    async def submit_return(
        self,
        vat_return_id: uuid.UUID,
        user: User,
        document_ids: Optional[Sequence[uuid.UUID]] = None,
    ) -> VATReturn:
        """DRAFT -> SUBMITTED, linking the supporting documents."""
        vat_return = await self.get_return(vat_return_id, user)
        if vat_return.status != VATReturnStatus.DRAFT:
            raise InvalidInputException(
                f"VAT return is already {vat_return.status.value.lower()}",
                details={"status": vat_return.status.value},
            )

        documents: List[Document] = []
        if document_ids:
            result = await self.db.execute(
                select(Document).where(
                    Document.id.in_(list(document_ids)),
                    Document.user_id == user.id,
                )
            )
            documents = list(result.scalars().all())
            missing = set(document_ids) - {d.id for d in documents}
            if missing:
                raise NotFoundException("Document", ", ".join(sorted(str(m) for m in missing)))

        now = utcnow()
        reference = generate_vat_reference(vat_return.period_end)
        result = await self.db.execute(
            update(VATReturn)
            .where(VATReturn.id == vat_return.id, VATReturn.status == VATReturnStatus.DRAFT)
            .values(
                status=VATReturnStatus.SUBMITTED,
                submitted_at=now,
                revenue_ref_number=reference,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.refresh(vat_return)
            raise InvalidInputException(
                f"VAT return is already {vat_return.status.value.lower()}",
                details={"status": vat_return.status.value},
            )

        for document in documents:
            document.vat_return_id = vat_return.id
        await self.db.flush()
        await self.db.refresh(vat_return)
        if documents:
            extracted_vat_cache.invalidate(user.id)

        await self.audit.log_action(
            entity_type="vat_return",
            entity_id=str(vat_return.id),
            action=AuditAction.VAT_SUBMITTED,
            user_id=user.id,
            old_values={"status": VATReturnStatus.DRAFT.value},
            new_values={"status": VATReturnStatus.SUBMITTED.value, "revenue_ref_number": reference},
            metadata={
                "net_vat": vat_return.net_vat,
                "document_count": len(documents),
                "source": "api",
            },
            description=f"VAT return for {vat_return.period_label} submitted",
        )

        logger.info(f"VAT return {vat_return.id} submitted: ref={reference}, net={vat_return.net_vat}")
        return vat_return

    @staticmethod
    def payment_required(vat_return: VATReturn) -> bool:
        return vat_return.status == VATReturnStatus.SUBMITTED and vat_return.net_vat > Decimal("0")
