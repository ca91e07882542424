"""
PayVAT - Document Schemas
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from payvat.models.document import DocumentCategory, DocumentType


class DocumentVATEntryResponse(BaseModel):
    id: UUID
    file_name: str
    category: DocumentCategory
    extracted_amounts: List[Decimal]
    document_total: Decimal
    confidence: float
    is_scanned: bool
    scan_result: Optional[str] = None

    class Config:
        from_attributes = True


class ExtractedVATResponse(BaseModel):
    """Schema for the extracted-VAT summary."""
    total_sales_vat: Decimal
    total_purchase_vat: Decimal
    total_net_vat: Decimal
    document_count: int
    processed_documents: int
    processing_documents: int
    processing_in_progress: bool
    average_confidence: float
    sales_documents: List[DocumentVATEntryResponse]
    purchase_documents: List[DocumentVATEntryResponse]
    other_documents: List[DocumentVATEntryResponse]

    class Config:
        from_attributes = True


class ExtractedVATEnvelope(BaseModel):
    success: bool = True
    extracted_vat: ExtractedVATResponse
    from_cache: bool = False


class DocumentResponse(BaseModel):
    """Schema for document response."""
    id: UUID
    vat_return_id: Optional[UUID] = None
    original_name: str
    file_size: int
    mime_type: str
    category: DocumentCategory
    document_type: DocumentType
    is_scanned: bool
    scan_result: Optional[str] = None
    extracted_amounts: Optional[List[Decimal]] = None
    extraction_confidence: Optional[float] = None
    uploaded_at: datetime

    class Config:
        from_attributes = True


class DocumentEnvelope(BaseModel):
    success: bool = True
    document: DocumentResponse


class DocumentListEnvelope(BaseModel):
    success: bool = True
    documents: List[DocumentResponse]


class DocumentCreateRequest(BaseModel):
    """
    Metadata for an uploaded document. The file itself is stored
    elsewhere; raw_text is what the VAT extractor reads.
    """
    original_name: str = Field(..., min_length=1, max_length=255)
    document_type: DocumentType = DocumentType.OTHER
    category: Optional[DocumentCategory] = None
    vat_return_id: Optional[UUID] = None
    file_path: Optional[str] = Field(None, max_length=500)
    file_size: int = Field(0, ge=0, le=10 * 1024 * 1024)
    mime_type: str = Field("application/pdf", min_length=1, max_length=100)
    raw_text: Optional[str] = Field(None, max_length=200000)
