"""
PayVAT - VAT Returns Router

API endpoints for calculating and submitting VAT returns.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.database import get_db
from payvat.dependencies import get_current_user
from payvat.models.user import User
from payvat.models.vat_return import VATReturnStatus
from payvat.schemas.vat import (
    VATCalculateEnvelope,
    VATCalculateRequest,
    VATCalculationResponse,
    VATReturnEnvelope,
    VATReturnListEnvelope,
    VATReturnResponse,
    VATSubmitRequest,
)
from payvat.services.vat_return_service import VATReturnService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/vat", tags=["VAT Returns"])


def _envelope(vat_return) -> VATReturnEnvelope:
    return VATReturnEnvelope(
        vat_return=VATReturnResponse.model_validate(vat_return),
        payment_required=VATReturnService.payment_required(vat_return),
    )


@router.post(
    "/calculate",
    response_model=VATCalculateEnvelope,
    summary="Calculate VAT for a period",
)
async def calculate_vat(
    request: VATCalculateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Calculate net VAT (sales VAT - purchase VAT) and save it on the
    period's draft return. A negative result is a refund.
    """
    service = VATReturnService(db)
    vat_return, calculation = await service.calculate_return(
        current_user,
        sales_vat=request.sales_vat,
        purchase_vat=request.purchase_vat,
        period_start=request.period_start,
        period_end=request.period_end,
    )
    await db.commit()
    await db.refresh(vat_return)

    return VATCalculateEnvelope(
        vat_return=VATReturnResponse.model_validate(vat_return),
        calculation=VATCalculationResponse.model_validate(calculation),
    )


@router.post(
    "/{vat_return_id}/submit",
    response_model=VATReturnEnvelope,
    summary="Submit a VAT return",
)
async def submit_vat_return(
    vat_return_id: UUID,
    request: Optional[VATSubmitRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = VATReturnService(db)
    vat_return = await service.submit_return(
        vat_return_id,
        current_user,
        document_ids=request.document_ids if request else None,
    )
    await db.commit()
    return _envelope(vat_return)


@router.get(
    "",
    response_model=VATReturnListEnvelope,
    summary="List VAT returns",
)
async def list_vat_returns(
    status: Optional[VATReturnStatus] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = VATReturnService(db)
    returns = await service.list_returns(current_user, status)
    return VATReturnListEnvelope(vat_returns=[VATReturnResponse.model_validate(r) for r in returns])


@router.get(
    "/{vat_return_id}",
    response_model=VATReturnEnvelope,
    summary="Get VAT return",
)
async def get_vat_return(
    vat_return_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = VATReturnService(db)
    vat_return = await service.get_return(vat_return_id, current_user)
    return _envelope(vat_return)
