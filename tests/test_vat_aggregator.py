"""
PayVAT - Extracted VAT Aggregator Tests
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from payvat.models.document import Document, DocumentCategory
from payvat.services.vat_aggregator import (
    ExtractedVATCache,
    ExtractedVATSummary,
    aggregate,
    document_set_fingerprint,
)


def make_document(category=DocumentCategory.SALES, amounts=None, confidence=0.9, is_scanned=True, name="invoice.pdf"):
    """Transient document; aggregation never touches the database."""
    return Document(
        id=uuid4(),
        user_id=uuid4(),
        original_name=name,
        category=category,
        is_scanned=is_scanned,
        extracted_amounts=amounts,
        extraction_confidence=confidence if is_scanned else None,
    )


class TestAggregate:
    """Tests for aggregate()."""

    def test_empty_document_set(self):
        summary = aggregate([])

        assert summary.total_sales_vat == Decimal("0.00")
        assert summary.total_purchase_vat == Decimal("0.00")
        assert summary.total_net_vat == Decimal("0.00")
        assert summary.average_confidence == 0.0
        assert summary.processed_documents == 0
        assert summary.document_count == 0
        assert summary.processing_in_progress is False

    def test_sums_per_document_then_per_category(self):
        documents = [
            make_document(DocumentCategory.SALES, ["23.00", "11.50"], 0.9),
            make_document(DocumentCategory.SALES, ["4.60"], 0.8),
            make_document(DocumentCategory.PURCHASES, ["2.30"], 0.75),
        ]

        summary = aggregate(documents)

        assert summary.total_sales_vat == Decimal("39.10")
        assert summary.total_purchase_vat == Decimal("2.30")
        assert summary.total_net_vat == Decimal("36.80")
        assert summary.sales_documents[0].document_total == Decimal("34.50")
        assert summary.processed_documents == 3
        assert summary.average_confidence == pytest.approx(0.8167)

    def test_unscanned_documents_are_visible_but_not_counted(self):
        documents = [
            make_document(DocumentCategory.SALES, ["100.00"], 0.6),
            make_document(DocumentCategory.SALES, ["999.00"], is_scanned=False, name="pending.pdf"),
        ]

        summary = aggregate(documents)

        assert summary.total_sales_vat == Decimal("100.00")
        assert summary.average_confidence == pytest.approx(0.6)
        assert summary.document_count == 2
        assert summary.processed_documents == 1
        assert summary.processing_documents == 1
        assert summary.processing_in_progress is True

        pending = summary.sales_documents[1]
        assert pending.file_name == "pending.pdf"
        assert pending.extracted_amounts == ()
        assert pending.document_total == Decimal("0.00")
        assert pending.confidence == 0.0

    def test_scanned_document_without_amounts_contributes_zero(self):
        documents = [
            make_document(DocumentCategory.PURCHASES, None, 0.4),
            make_document(DocumentCategory.PURCHASES, [], 0.2),
        ]

        summary = aggregate(documents)

        assert summary.total_purchase_vat == Decimal("0.00")
        assert summary.processed_documents == 2
        assert summary.average_confidence == pytest.approx(0.3)

    def test_other_category_counts_toward_confidence_only(self):
        documents = [
            make_document(DocumentCategory.SALES, ["10.00"], 1.0),
            make_document(DocumentCategory.OTHER, ["50.00"], 0.5, name="bank.pdf"),
        ]

        summary = aggregate(documents)

        assert summary.total_sales_vat == Decimal("10.00")
        assert summary.total_purchase_vat == Decimal("0.00")
        assert len(summary.other_documents) == 1
        assert summary.average_confidence == pytest.approx(0.75)

    def test_purchases_exceeding_sales_give_negative_net(self):
        documents = [
            make_document(DocumentCategory.SALES, ["10.00"]),
            make_document(DocumentCategory.PURCHASES, ["45.55"]),
        ]

        assert aggregate(documents).total_net_vat == Decimal("-35.55")

    def test_unparseable_amounts_are_skipped(self):
        summary = aggregate([make_document(DocumentCategory.SALES, ["12.00", "n/a", "0.34"])])

        assert summary.total_sales_vat == Decimal("12.34")

    def test_missing_confidence_counts_as_zero(self):
        summary = aggregate([
            make_document(DocumentCategory.SALES, ["1.00"], None),
            make_document(DocumentCategory.SALES, ["1.00"], 0.8),
        ])

        assert summary.average_confidence == pytest.approx(0.4)

    def test_aggregation_is_idempotent(self):
        documents = [
            make_document(DocumentCategory.SALES, ["23.00"]),
            make_document(DocumentCategory.PURCHASES, ["11.50"], 0.7),
        ]

        assert aggregate(documents) == aggregate(documents)

    def test_to_dict(self):
        summary = aggregate([make_document(DocumentCategory.SALES, ["23.00"], 0.9)])

        data = summary.to_dict()

        assert data["total_sales_vat"] == "23.00"
        assert data["processing_in_progress"] is False
        assert data["sales_documents"][0]["extracted_amounts"] == ["23.00"]
        assert data["sales_documents"][0]["category"] == "SALES"


class TestDocumentSetFingerprint:
    """The fingerprint changes whenever a summary would."""

    def test_order_does_not_matter(self):
        a = make_document(DocumentCategory.SALES, ["1.00"])
        b = make_document(DocumentCategory.PURCHASES, ["2.00"])

        assert document_set_fingerprint([a, b]) == document_set_fingerprint([b, a])

    def test_changes_on_upload_and_deletion(self):
        a = make_document(DocumentCategory.SALES, ["1.00"])
        b = make_document(DocumentCategory.PURCHASES, ["2.00"])

        assert document_set_fingerprint([a]) != document_set_fingerprint([a, b])
        assert document_set_fingerprint([]) != document_set_fingerprint([a])

    def test_changes_when_extraction_completes(self):
        document = make_document(DocumentCategory.SALES, None, is_scanned=False)
        before = document_set_fingerprint([document])

        document.is_scanned = True
        document.extracted_amounts = ["5.00"]
        document.extraction_confidence = 0.9

        assert document_set_fingerprint([document]) != before


class TestExtractedVATCache:
    """Tests for ExtractedVATCache."""

    def test_hit_requires_matching_fingerprint(self):
        cache = ExtractedVATCache()
        summary = ExtractedVATSummary(total_sales_vat=Decimal("1.00"))
        key = cache.make_key(uuid4(), None, None)

        cache.set(key, "fp-1", summary)

        assert cache.get(key, "fp-1") is summary
        assert cache.get(key, "fp-2") is None

    def test_invalidate_drops_only_that_user(self):
        cache = ExtractedVATCache()
        user_a, user_b = uuid4(), uuid4()
        key_a = cache.make_key(user_a, None, "SALES")
        key_b = cache.make_key(user_b, None, None)
        cache.set(key_a, "fp", ExtractedVATSummary())
        cache.set(key_b, "fp", ExtractedVATSummary())

        cache.invalidate(user_a)

        assert cache.get(key_a, "fp") is None
        assert cache.get(key_b, "fp") is not None

    def test_bounded_size(self):
        cache = ExtractedVATCache(max_entries=2)
        user = uuid4()
        for index in range(3):
            cache.set(cache.make_key(user, None, str(index)), "fp", ExtractedVATSummary())

        assert cache.get(cache.make_key(user, None, "0"), "fp") is None
        assert cache.get(cache.make_key(user, None, "2"), "fp") is not None
