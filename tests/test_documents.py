"""
PayVAT - Document Tests

Upload, extracted-VAT summary, VAT extraction and deletion through the API.
"""

from unittest.mock import AsyncMock
from uuid import UUID

import pytest
from sqlalchemy import func, select

from payvat.models import AuditAction, AuditLog, Document, DocumentCategory, VATReturnStatus

from conftest import create_document, create_vat_return


DOCUMENTS_URL = "/api/v1/documents"
EXTRACTED_URL = "/api/v1/documents/extracted-vat"


async def audit_count(db, action: AuditAction) -> int:
    result = await db.execute(select(func.count()).select_from(AuditLog).where(AuditLog.action == action))
    return result.scalar_one()


class TestExtractedVAT:
    """GET /api/v1/documents/extracted-vat"""

    @pytest.mark.asyncio
    async def test_no_documents(self, client, auth_headers):
        response = await client.get(EXTRACTED_URL, headers=auth_headers)

        assert response.status_code == 200
        summary = response.json()["extracted_vat"]
        assert summary["total_sales_vat"] == "0.00"
        assert summary["total_purchase_vat"] == "0.00"
        assert summary["total_net_vat"] == "0.00"
        assert summary["document_count"] == 0
        assert summary["average_confidence"] == 0.0
        assert summary["processing_in_progress"] is False

    @pytest.mark.asyncio
    async def test_totals_by_category(self, client, auth_headers, db_session, test_user):
        await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00", "11.50"], 0.9)
        await create_document(db_session, test_user, DocumentCategory.PURCHASES, ["4.60"], 0.7, name="supplier.pdf")
        await create_document(db_session, test_user, DocumentCategory.SALES, is_scanned=False, name="new.pdf")

        response = await client.get(EXTRACTED_URL, headers=auth_headers)

        summary = response.json()["extracted_vat"]
        assert summary["total_sales_vat"] == "34.50"
        assert summary["total_purchase_vat"] == "4.60"
        assert summary["total_net_vat"] == "29.90"
        assert summary["processed_documents"] == 2
        assert summary["processing_documents"] == 1
        assert summary["processing_in_progress"] is True
        assert summary["average_confidence"] == pytest.approx(0.8)
        assert {d["file_name"] for d in summary["sales_documents"]} == {"invoice.pdf", "new.pdf"}

    @pytest.mark.asyncio
    async def test_category_filter(self, client, auth_headers, db_session, test_user):
        await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"])
        await create_document(db_session, test_user, DocumentCategory.PURCHASES, ["4.60"])

        response = await client.get(EXTRACTED_URL, params={"category": "PURCHASES"}, headers=auth_headers)

        summary = response.json()["extracted_vat"]
        assert summary["total_sales_vat"] == "0.00"
        assert summary["total_purchase_vat"] == "4.60"

    @pytest.mark.asyncio
    async def test_vat_return_filter(self, client, auth_headers, db_session, test_user, submitted_return):
        await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"], vat_return=submitted_return)
        await create_document(db_session, test_user, DocumentCategory.SALES, ["99.00"])

        response = await client.get(
            EXTRACTED_URL,
            params={"vat_return_id": str(submitted_return.id)},
            headers=auth_headers,
        )

        assert response.json()["extracted_vat"]["total_sales_vat"] == "23.00"

    @pytest.mark.asyncio
    async def test_other_users_documents_are_excluded(self, client, auth_headers, db_session, other_user):
        await create_document(db_session, other_user, DocumentCategory.SALES, ["500.00"])

        response = await client.get(EXTRACTED_URL, headers=auth_headers)

        assert response.json()["extracted_vat"]["document_count"] == 0

    @pytest.mark.asyncio
    async def test_cache_hit_and_invalidation_on_upload(self, client, auth_headers, db_session, test_user):
        await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"])

        first = await client.get(EXTRACTED_URL, headers=auth_headers)
        second = await client.get(EXTRACTED_URL, headers=auth_headers)

        assert first.json()["from_cache"] is False
        assert second.json()["from_cache"] is True
        assert second.json()["extracted_vat"] == first.json()["extracted_vat"]

        await create_document(db_session, test_user, DocumentCategory.SALES, ["10.00"], name="second.pdf")
        third = await client.get(EXTRACTED_URL, headers=auth_headers)

        assert third.json()["from_cache"] is False
        assert third.json()["extracted_vat"]["total_sales_vat"] == "33.00"

    @pytest.mark.asyncio
    async def test_skip_cache(self, client, auth_headers, db_session, test_user):
        await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"])
        await client.get(EXTRACTED_URL, headers=auth_headers)

        response = await client.get(EXTRACTED_URL, params={"skip_cache": "true"}, headers=auth_headers)

        assert response.json()["from_cache"] is False

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client):
        response = await client.get(EXTRACTED_URL)

        assert response.status_code == 401


class TestUploadDocument:
    """POST /api/v1/documents"""

    @pytest.mark.asyncio
    async def test_register_document(self, client, auth_headers, db_session, extractor):
        response = await client.post(
            DOCUMENTS_URL,
            json={
                "original_name": "supplier-receipt.pdf",
                "document_type": "PURCHASE_RECEIPT",
                "file_path": "uploads/supplier-receipt.pdf",
                "file_size": 4096,
                "raw_text": "Receipt\nVAT 13.5%: 6.75",
            },
            headers=auth_headers,
        )

        assert response.status_code == 201
        document = response.json()["document"]
        assert document["original_name"] == "supplier-receipt.pdf"
        assert document["category"] == "PURCHASES"
        assert document["document_type"] == "PURCHASE_RECEIPT"
        assert document["file_size"] == 4096
        assert document["is_scanned"] is False
        assert document["extracted_amounts"] is None
        assert extractor.calls == 0
        assert await audit_count(db_session, AuditAction.DOCUMENT_UPLOADED) == 1

        stored = await db_session.get(Document, UUID(document["id"]))
        assert stored.raw_text == "Receipt\nVAT 13.5%: 6.75"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("document_type,category", [
        ("SALES_INVOICE", "SALES"),
        ("PURCHASE_INVOICE", "PURCHASES"),
        ("BANK_STATEMENT", "OTHER"),
    ])
    async def test_category_follows_document_type(self, client, auth_headers, document_type, category):
        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "doc.pdf", "document_type": document_type},
            headers=auth_headers,
        )

        assert response.json()["document"]["category"] == category

    @pytest.mark.asyncio
    async def test_explicit_category_wins(self, client, auth_headers):
        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "report.pdf", "document_type": "OTHER", "category": "SALES"},
            headers=auth_headers,
        )

        assert response.json()["document"]["category"] == "SALES"

    @pytest.mark.asyncio
    async def test_upload_invalidates_the_summary(self, client, auth_headers, db_session, test_user):
        await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"])
        await client.get(EXTRACTED_URL, headers=auth_headers)
        cached = await client.get(EXTRACTED_URL, headers=auth_headers)
        assert cached.json()["from_cache"] is True

        await client.post(
            DOCUMENTS_URL,
            json={"original_name": "new-invoice.pdf", "document_type": "SALES_INVOICE"},
            headers=auth_headers,
        )
        response = await client.get(EXTRACTED_URL, headers=auth_headers)

        summary = response.json()["extracted_vat"]
        assert response.json()["from_cache"] is False
        assert summary["document_count"] == 2
        assert summary["processing_documents"] == 1
        assert summary["processing_in_progress"] is True

    @pytest.mark.asyncio
    async def test_upload_and_process(self, client, auth_headers, db_session, extractor):
        response = await client.post(
            DOCUMENTS_URL,
            params={"process": "true"},
            json={"original_name": "invoice-7.pdf", "document_type": "SALES_INVOICE", "raw_text": "VAT 23.00"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        document = response.json()["document"]
        assert document["is_scanned"] is True
        assert document["extracted_amounts"] == ["23.00", "11.50"]
        assert extractor.calls == 1
        assert await audit_count(db_session, AuditAction.DOCUMENT_UPLOADED) == 1
        assert await audit_count(db_session, AuditAction.DOCUMENT_PROCESSED) == 1

        summary = (await client.get(EXTRACTED_URL, headers=auth_headers)).json()["extracted_vat"]
        assert summary["total_sales_vat"] == "34.50"

    @pytest.mark.asyncio
    async def test_extraction_failure_keeps_the_upload(self, client, auth_headers, db_session, extractor):
        extractor.extract_vat = AsyncMock(side_effect=RuntimeError("OCR engine unavailable"))

        response = await client.post(
            DOCUMENTS_URL,
            params={"process": "true"},
            json={"original_name": "blurry.pdf", "document_type": "SALES_RECEIPT"},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["document"]["is_scanned"] is False
        stored = await db_session.get(Document, UUID(response.json()["document"]["id"]))
        assert stored is not None
        assert await audit_count(db_session, AuditAction.DOCUMENT_PROCESSED) == 0

    @pytest.mark.asyncio
    async def test_name_markup_is_stripped(self, client, auth_headers):
        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "<b>invoice</b>.pdf"},
            headers=auth_headers,
        )

        assert response.json()["document"]["original_name"] == "invoice.pdf"

    @pytest.mark.asyncio
    async def test_name_of_only_markup_is_rejected(self, client, auth_headers):
        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "<script>alert(1)</script>"},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Document name cannot be empty"

    @pytest.mark.asyncio
    async def test_link_to_draft_return(self, client, auth_headers, db_session, test_user):
        draft = await create_vat_return(db_session, test_user, status=VATReturnStatus.DRAFT)

        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "invoice.pdf", "document_type": "SALES_INVOICE", "vat_return_id": str(draft.id)},
            headers=auth_headers,
        )

        assert response.status_code == 201
        assert response.json()["document"]["vat_return_id"] == str(draft.id)

    @pytest.mark.asyncio
    async def test_submitted_return_is_rejected(self, client, auth_headers, db_session, submitted_return):
        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "late.pdf", "vat_return_id": str(submitted_return.id)},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["field"] == "vat_return_id"
        result = await db_session.execute(select(func.count()).select_from(Document))
        assert result.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_other_users_return(self, client, auth_headers, db_session, other_user):
        foreign = await create_vat_return(db_session, other_user, status=VATReturnStatus.DRAFT)

        response = await client.post(
            DOCUMENTS_URL,
            json={"original_name": "invoice.pdf", "vat_return_id": str(foreign.id)},
            headers=auth_headers,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"original_name": ""},
        {"original_name": "doc.pdf", "document_type": "SELFIE"},
        {"original_name": "doc.pdf", "file_size": -1},
        {"original_name": "doc.pdf", "file_size": 50 * 1024 * 1024},
        {"document_type": "SALES_INVOICE"},
    ])
    async def test_invalid_body(self, client, auth_headers, body):
        response = await client.post(DOCUMENTS_URL, json=body, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client):
        response = await client.post(DOCUMENTS_URL, json={"original_name": "doc.pdf"})

        assert response.status_code == 401


class TestProcessDocument:
    """POST /api/v1/documents/{id}/process"""

    @pytest.mark.asyncio
    async def test_process_stores_extraction(self, client, auth_headers, db_session, test_user, extractor):
        document = await create_document(db_session, test_user, DocumentCategory.SALES, is_scanned=False)

        response = await client.post(f"/api/v1/documents/{document.id}/process", headers=auth_headers)

        assert response.status_code == 200
        stored = response.json()["document"]
        assert stored["is_scanned"] is True
        assert stored["extracted_amounts"] == ["23.00", "11.50"]
        assert stored["extraction_confidence"] == 0.9
        assert stored["scan_result"] == "VAT lines found"
        assert extractor.calls == 1
        assert await audit_count(db_session, AuditAction.DOCUMENT_PROCESSED) == 1

    @pytest.mark.asyncio
    async def test_processing_refreshes_the_summary(self, client, auth_headers, db_session, test_user):
        document = await create_document(db_session, test_user, DocumentCategory.SALES, is_scanned=False)
        before = await client.get(EXTRACTED_URL, headers=auth_headers)

        await client.post(f"/api/v1/documents/{document.id}/process", headers=auth_headers)
        after = await client.get(EXTRACTED_URL, headers=auth_headers)

        assert before.json()["extracted_vat"]["processing_in_progress"] is True
        assert after.json()["from_cache"] is False
        assert after.json()["extracted_vat"]["total_sales_vat"] == "34.50"
        assert after.json()["extracted_vat"]["processing_in_progress"] is False

    @pytest.mark.asyncio
    async def test_other_users_document(self, client, auth_headers, db_session, other_user, extractor):
        document = await create_document(db_session, other_user, DocumentCategory.SALES, is_scanned=False)

        response = await client.post(f"/api/v1/documents/{document.id}/process", headers=auth_headers)

        assert response.status_code == 404
        assert extractor.calls == 0


class TestDeleteDocument:
    """DELETE /api/v1/documents/{id}"""

    @pytest.mark.asyncio
    async def test_delete(self, client, auth_headers, db_session, test_user):
        document = await create_document(db_session, test_user, DocumentCategory.PURCHASES, ["4.60"])
        document_id = document.id

        response = await client.delete(f"/api/v1/documents/{document_id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Document deleted"}
        result = await db_session.execute(select(func.count()).select_from(Document).where(Document.id == document_id))
        assert result.scalar_one() == 0
        assert await audit_count(db_session, AuditAction.DOCUMENT_DELETED) == 1

    @pytest.mark.asyncio
    async def test_delete_document_on_draft_return(self, client, auth_headers, db_session, test_user):
        draft = await create_vat_return(db_session, test_user, status=VATReturnStatus.DRAFT)
        document = await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"], vat_return=draft)

        response = await client.delete(f"/api/v1/documents/{document.id}", headers=auth_headers)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_delete_document_on_submitted_return(self, client, auth_headers, db_session, test_user, submitted_return):
        document = await create_document(
            db_session, test_user, DocumentCategory.SALES, ["23.00"], vat_return=submitted_return
        )

        response = await client.delete(f"/api/v1/documents/{document.id}", headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Documents attached to a submitted VAT return cannot be deleted"

    @pytest.mark.asyncio
    async def test_delete_other_users_document(self, client, auth_headers, db_session, other_user):
        document = await create_document(db_session, other_user, DocumentCategory.SALES, ["23.00"])

        response = await client.delete(f"/api/v1/documents/{document.id}", headers=auth_headers)

        assert response.status_code == 404


class TestListDocuments:
    """GET /api/v1/documents"""

    @pytest.mark.asyncio
    async def test_list(self, client, auth_headers, db_session, test_user, other_user):
        mine = await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"])
        await create_document(db_session, other_user, DocumentCategory.SALES, ["23.00"])

        response = await client.get("/api/v1/documents", headers=auth_headers)

        assert [d["id"] for d in response.json()["documents"]] == [str(mine.id)]
