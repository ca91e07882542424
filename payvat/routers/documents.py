"""
PayVAT - Documents Router

API endpoints for document upload, VAT extraction and the extracted-VAT summary.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.database import get_db
from payvat.dependencies import get_current_user, get_vat_extractor
from payvat.models.document import DocumentCategory
from payvat.models.user import User
from payvat.schemas.document import (
    DocumentCreateRequest,
    DocumentEnvelope,
    DocumentListEnvelope,
    DocumentResponse,
    ExtractedVATEnvelope,
    ExtractedVATResponse,
)
from payvat.services.document_service import DocumentService
from payvat.services.vat_extraction import VATExtractor


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/documents", tags=["Documents"])


@router.get(
    "",
    response_model=DocumentListEnvelope,
    summary="List documents",
)
async def list_documents(
    vat_return_id: Optional[UUID] = Query(None),
    category: Optional[DocumentCategory] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = DocumentService(db)
    documents = await service.list_documents(current_user, vat_return_id, category)
    return DocumentListEnvelope(documents=[DocumentResponse.model_validate(d) for d in documents])


@router.post(
    "",
    response_model=DocumentEnvelope,
    status_code=status.HTTP_201_CREATED,
    summary="Register an uploaded document",
)
async def upload_document(
    request: DocumentCreateRequest,
    process: bool = Query(False, description="Run VAT extraction straight away"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    extractor: VATExtractor = Depends(get_vat_extractor),
):
    """
    Record document metadata and optionally extract its VAT.

    The file is stored by the client; raw_text carries the OCR output the
    extractor reads. Cached extracted-VAT summaries for the user are dropped.
    """
    service = DocumentService(db, extractor)
    document = await service.register_document(
        current_user,
        original_name=request.original_name,
        document_type=request.document_type,
        category=request.category,
        vat_return_id=request.vat_return_id,
        file_path=request.file_path,
        file_size=request.file_size,
        mime_type=request.mime_type,
        raw_text=request.raw_text,
    )
    await db.commit()

    if process:
        # The upload stands even when extraction fails; it can be retried via /process
        try:
            document = await service.process_document(document.id, current_user)
            await db.commit()
        except Exception as e:
            logger.error(f"Extraction failed for uploaded document {document.id}: {e}", exc_info=True)

    return DocumentEnvelope(document=DocumentResponse.model_validate(document))


@router.get(
    "/extracted-vat",
    response_model=ExtractedVATEnvelope,
    summary="Extracted VAT summary",
)
async def get_extracted_vat(
    vat_return_id: Optional[UUID] = Query(None),
    category: Optional[DocumentCategory] = Query(None),
    skip_cache: bool = Query(False),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Sum the VAT amounts extracted from the user's documents.

    Only processed documents count toward the totals; documents still being
    processed are listed and counted separately.
    """
    service = DocumentService(db)
    summary, from_cache = await service.get_extracted_vat(
        current_user,
        vat_return_id=vat_return_id,
        category=category,
        skip_cache=skip_cache,
    )
    return ExtractedVATEnvelope(
        extracted_vat=ExtractedVATResponse.model_validate(summary),
        from_cache=from_cache,
    )


@router.post(
    "/{document_id}/process",
    response_model=DocumentEnvelope,
    summary="Extract VAT from a document",
)
async def process_document(
    document_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    extractor: VATExtractor = Depends(get_vat_extractor),
):
    service = DocumentService(db, extractor)
    document = await service.process_document(document_id, current_user)
    await db.commit()
    return DocumentEnvelope(document=DocumentResponse.model_validate(document))


@router.delete(
    "/{document_id}",
    summary="Delete a document",
)
async def delete_document(
    document_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = DocumentService(db)
    await service.delete_document(document_id, current_user)
    await db.commit()
    return {"success": True, "message": "Document deleted"}
