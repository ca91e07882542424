"""
PayVAT - Extracted VAT Aggregator

Builds the ExtractedVATSummary shown on the VAT return wizard from the
amounts the AI extractor found in a user's documents.

Rules:
- Documents are grouped into sales, purchases and other
- A document's extracted amounts are summed first, then added to its group
- Only processed (is_scanned) documents count toward totals and the
  average confidence; unprocessed documents are listed and counted as
  "processing"
- An empty document set gives zero totals and zero confidence
"""

import hashlib
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from payvat.models.document import Document, DocumentCategory
from payvat.services.vat_calculator import round_currency

logger = logging.getLogger(__name__)


ZERO = Decimal("0.00")


@dataclass(frozen=True)
class DocumentVATEntry:
    """Per-document view inside a summary."""
    id: uuid.UUID
    file_name: str
    category: DocumentCategory
    extracted_amounts: Tuple[Decimal, ...]
    document_total: Decimal
    confidence: float
    is_scanned: bool
    scan_result: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "file_name": self.file_name,
            "category": self.category.value,
            "extracted_amounts": [str(a) for a in self.extracted_amounts],
            "document_total": str(self.document_total),
            "confidence": self.confidence,
            "is_scanned": self.is_scanned,
            "scan_result": self.scan_result,
        }


@dataclass(frozen=True)
class ExtractedVATSummary:
    """Aggregated VAT figures for a set of documents. Never persisted."""
    total_sales_vat: Decimal = ZERO
    total_purchase_vat: Decimal = ZERO
    total_net_vat: Decimal = ZERO
    document_count: int = 0
    processed_documents: int = 0
    processing_documents: int = 0
    average_confidence: float = 0.0
    sales_documents: Tuple[DocumentVATEntry, ...] = field(default_factory=tuple)
    purchase_documents: Tuple[DocumentVATEntry, ...] = field(default_factory=tuple)
    other_documents: Tuple[DocumentVATEntry, ...] = field(default_factory=tuple)

    @property
    def processing_in_progress(self) -> bool:
        return self.processing_documents > 0

    def to_dict(self) -> dict:
        return {
            "total_sales_vat": str(self.total_sales_vat),
            "total_purchase_vat": str(self.total_purchase_vat),
            "total_net_vat": str(self.total_net_vat),
            "document_count": self.document_count,
            "processed_documents": self.processed_documents,
            "processing_documents": self.processing_documents,
            "processing_in_progress": self.processing_in_progress,
            "average_confidence": self.average_confidence,
            "sales_documents": [d.to_dict() for d in self.sales_documents],
            "purchase_documents": [d.to_dict() for d in self.purchase_documents],
            "other_documents": [d.to_dict() for d in self.other_documents],
        }


def _entry_for(document: Document) -> DocumentVATEntry:
    amounts = tuple(document.amounts) if document.is_scanned else ()
    total = round_currency(sum(amounts, Decimal("0")))
    return DocumentVATEntry(
        id=document.id,
        file_name=document.original_name,
        category=document.category,
        extracted_amounts=amounts,
        document_total=total,
        confidence=float(document.extraction_confidence or 0.0) if document.is_scanned else 0.0,
        is_scanned=document.is_scanned,
        scan_result=document.scan_result,
    )


def aggregate(documents: Iterable[Document]) -> ExtractedVATSummary:
    """
    Aggregate extracted VAT across documents.

    Has no hidden state: aggregating the same documents twice gives the
    same summary.
    """
    sales: List[DocumentVATEntry] = []
    purchases: List[DocumentVATEntry] = []
    other: List[DocumentVATEntry] = []

    total_sales = Decimal("0")
    total_purchases = Decimal("0")
    confidence_sum = 0.0
    processed = 0
    processing = 0

    for document in documents:
        entry = _entry_for(document)

        if document.category == DocumentCategory.SALES:
            sales.append(entry)
        elif document.category == DocumentCategory.PURCHASES:
            purchases.append(entry)
        else:
            other.append(entry)

        if not document.is_scanned:
            processing += 1
            continue

        processed += 1
        confidence_sum += entry.confidence
        if document.category == DocumentCategory.SALES:
            total_sales += entry.document_total
        elif document.category == DocumentCategory.PURCHASES:
            total_purchases += entry.document_total

    average_confidence = round(confidence_sum / processed, 4) if processed else 0.0
    total_sales = round_currency(total_sales)
    total_purchases = round_currency(total_purchases)

    return ExtractedVATSummary(
        total_sales_vat=total_sales,
        total_purchase_vat=total_purchases,
        total_net_vat=round_currency(total_sales - total_purchases),
        document_count=len(sales) + len(purchases) + len(other),
        processed_documents=processed,
        processing_documents=processing,
        average_confidence=average_confidence,
        sales_documents=tuple(sales),
        purchase_documents=tuple(purchases),
        other_documents=tuple(other),
    )


# ===========================================
# OPTIONAL SUMMARY CACHE
# ===========================================

def document_set_fingerprint(documents: Sequence[Document]) -> str:
    """
    Stable hash of everything that affects a summary. Any upload, deletion
    or extraction result changes the fingerprint.
    """
    digest = hashlib.sha256()
    for document in sorted(documents, key=lambda d: str(d.id)):
        updated = document.updated_at.isoformat() if isinstance(document.updated_at, datetime) else ""
        digest.update(
            "|".join([
                str(document.id),
                document.category.value,
                "1" if document.is_scanned else "0",
                ",".join(str(a) for a in (document.extracted_amounts or [])),
                str(document.extraction_confidence),
                updated,
            ]).encode("utf-8")
        )
        digest.update(b"\n")
    return digest.hexdigest()


class ExtractedVATCache:
    """
    Best-effort, per-process summary cache.

    An entry is only returned when the fingerprint of the current document
    set matches the one it was computed from, so a stale total can never be
    served after an upload or deletion. invalidate() drops a user's entries
    explicitly.
    """

    def __init__(self, max_entries: int = 500):
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[str, ExtractedVATSummary]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(user_id: uuid.UUID, vat_return_id: Optional[uuid.UUID], category: Optional[str]) -> str:
        return f"{user_id}:{vat_return_id or 'all'}:{category or 'all'}"

    def get(self, key: str, fingerprint: str) -> Optional[ExtractedVATSummary]:
        with self._lock:
            cached = self._entries.get(key)
        if cached is None or cached[0] != fingerprint:
            return None
        return cached[1]

    def set(self, key: str, fingerprint: str, summary: ExtractedVATSummary) -> None:
        with self._lock:
            if len(self._entries) >= self.max_entries and key not in self._entries:
                self._entries.pop(next(iter(self._entries)))
            self._entries[key] = (fingerprint, summary)

    def invalidate(self, user_id: uuid.UUID) -> None:
        prefix = f"{user_id}:"
        with self._lock:
            for key in [k for k in self._entries if k.startswith(prefix)]:
                del self._entries[key]
        logger.debug(f"Extracted VAT cache invalidated for user {user_id}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


extracted_vat_cache = ExtractedVATCache()
