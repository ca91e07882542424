"""
PayVAT - Document Service

Registers and lists a user's documents, builds their extracted-VAT
summary, runs VAT extraction and deletes documents.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.models.audit import AuditAction
from payvat.models.document import Document, DocumentCategory, DocumentType
from payvat.models.user import User
from payvat.models.vat_return import VATReturn, VATReturnStatus
from payvat.services.audit_service import AuditService
from payvat.services.vat_aggregator import (
    ExtractedVATCache,
    ExtractedVATSummary,
    aggregate,
    document_set_fingerprint,
    extracted_vat_cache,
)
from payvat.services.vat_extraction import VATExtractor
from payvat.utils.error_handling import InvalidInputException, NotFoundException
from payvat.utils.sanitizer import strip_markup

logger = logging.getLogger(__name__)


class DocumentService:
    """Service for uploaded VAT documents."""

    def __init__(
        self,
        db: AsyncSession,
        extractor: Optional[VATExtractor] = None,
        cache: Optional[ExtractedVATCache] = None,
    ):
        self.db = db
        self.extractor = extractor
        self.cache = cache if cache is not None else extracted_vat_cache
        self.audit = AuditService(db)

    async def get_document(self, document_id: uuid.UUID, user: User) -> Document:
        result = await self.db.execute(
            select(Document).where(
                Document.id == document_id,
                Document.user_id == user.id,
            )
        )
        document = result.scalar_one_or_none()
        if document is None:
            raise NotFoundException("Document", document_id)
        return document

    async def list_documents(
        self,
        user: User,
        vat_return_id: Optional[uuid.UUID] = None,
        category: Optional[DocumentCategory] = None,
    ) -> List[Document]:
        query = select(Document).where(Document.user_id == user.id)
        if vat_return_id is not None:
            query = query.where(Document.vat_return_id == vat_return_id)
        if category is not None:
            query = query.where(Document.category == category)
        result = await self.db.execute(query.order_by(Document.uploaded_at.asc()))
        return list(result.scalars().all())

    async def register_document(
        self,
        user: User,
        original_name: str,
        document_type: DocumentType = DocumentType.OTHER,
        category: Optional[DocumentCategory] = None,
        vat_return_id: Optional[uuid.UUID] = None,
        file_path: Optional[str] = None,
        file_size: int = 0,
        mime_type: str = "application/pdf",
        raw_text: Optional[str] = None,
    ) -> Document:
        """
        Record an uploaded document. The category defaults to the side of
        the return implied by the document type.
        """
        name = strip_markup(original_name)
        if not name:
            raise InvalidInputException("Document name cannot be empty", field="original_name")

        if vat_return_id is not None:
            result = await self.db.execute(
                select(VATReturn).where(
                    VATReturn.id == vat_return_id,
                    VATReturn.user_id == user.id,
                )
            )
            vat_return = result.scalar_one_or_none()
            if vat_return is None:
                raise NotFoundException("VAT return", vat_return_id)
            if vat_return.status != VATReturnStatus.DRAFT:
                raise InvalidInputException(
                    "Documents cannot be added to a submitted VAT return",
                    field="vat_return_id",
                    details={"vat_return_id": str(vat_return.id), "status": vat_return.status.value},
                )

        document = Document(
            user_id=user.id,
            vat_return_id=vat_return_id,
            original_name=name,
            file_path=file_path,
            file_size=file_size,
            mime_type=mime_type,
            category=category or document_type.default_category,
            document_type=document_type,
            is_scanned=False,
            raw_text=raw_text,
        )
        self.db.add(document)
        await self.db.flush()
        await self.db.refresh(document)
        self.cache.invalidate(user.id)

        await self.audit.log_action(
            entity_type="document",
            entity_id=str(document.id),
            action=AuditAction.DOCUMENT_UPLOADED,
            user_id=user.id,
            new_values={
                "original_name": document.original_name,
                "category": document.category.value,
                "document_type": document.document_type.value,
                "vat_return_id": vat_return_id,
            },
            description=f"Document {document.original_name} uploaded",
        )

        logger.info(f"Document {document.id} uploaded by user {user.id} ({document.category.value})")
        return document

    async def get_extracted_vat(
        self,
        user: User,
        vat_return_id: Optional[uuid.UUID] = None,
        category: Optional[DocumentCategory] = None,
        skip_cache: bool = False,
    ) -> Tuple[ExtractedVATSummary, bool]:
        """
        Extracted-VAT summary for the user's documents.

        Returns (summary, from_cache). The cache is only consulted with the
        fingerprint of the documents just read, so it never hides a change.
        """
        documents = await self.list_documents(user, vat_return_id, category)
        key = self.cache.make_key(user.id, vat_return_id, category.value if category else None)
        fingerprint = document_set_fingerprint(documents)

        if not skip_cache:
            cached = self.cache.get(key, fingerprint)
            if cached is not None:
                return cached, True

        summary = aggregate(documents)
        self.cache.set(key, fingerprint, summary)
        return summary, False

    async def process_document(self, document_id: uuid.UUID, user: User) -> Document:
        """Run VAT extraction on a document and store the result."""
        if self.extractor is None:
            raise InvalidInputException("Document processing is not available")

        document = await self.get_document(document_id, user)
        result = await self.extractor.extract_vat(document)

        document.extracted_amounts = [str(amount) for amount in result.amounts]
        document.extraction_confidence = result.confidence
        document.scan_result = result.summary
        document.is_scanned = True
        await self.db.flush()
        await self.db.refresh(document)
        self.cache.invalidate(user.id)

        await self.audit.log_action(
            entity_type="document",
            entity_id=str(document.id),
            action=AuditAction.DOCUMENT_PROCESSED,
            user_id=user.id,
            new_values={
                "extracted_amounts": document.extracted_amounts,
                "extraction_confidence": document.extraction_confidence,
            },
            metadata={"category": document.category.value, "total": result.total},
            description=f"Extracted {len(result.amounts)} VAT amount(s) from {document.original_name}",
        )

        logger.info(f"Document {document.id} processed: total={result.total}, confidence={result.confidence:.2f}")
        return document

    async def delete_document(self, document_id: uuid.UUID, user: User) -> None:
        """Delete a document that is not part of a submitted return."""
        document = await self.get_document(document_id, user)

        if document.vat_return_id is not None:
            vat_return = await self.db.get(VATReturn, document.vat_return_id)
            if vat_return is not None and vat_return.status != VATReturnStatus.DRAFT:
                raise InvalidInputException(
                    "Documents attached to a submitted VAT return cannot be deleted",
                    details={"vat_return_id": str(vat_return.id)},
                )

        document_name = document.original_name
        await self.audit.log_action(
            entity_type="document",
            entity_id=str(document.id),
            action=AuditAction.DOCUMENT_DELETED,
            user_id=user.id,
            old_values={
                "original_name": document_name,
                "category": document.category.value,
                "extracted_amounts": document.extracted_amounts,
            },
            description=f"Document {document_name} deleted",
        )

        await self.db.delete(document)
        await self.db.flush()
        self.cache.invalidate(user.id)
        logger.info(f"Document {document_id} deleted by user {user.id}")
