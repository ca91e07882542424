"""
PayVAT - VAT Return Tests

Calculation and submission of VAT returns through the API and the service.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from payvat.models import AuditAction, AuditLog, DocumentCategory, VATReturn, VATReturnStatus
from payvat.services.vat_return_service import VATReturnService

from conftest import create_document, create_vat_return


PERIOD = {"period_start": "2025-01-01", "period_end": "2025-02-28"}


async def calculate(client, headers, sales_vat, purchase_vat, **period):
    body = {"sales_vat": sales_vat, "purchase_vat": purchase_vat, **(period or PERIOD)}
    return await client.post("/api/v1/vat/calculate", json=body, headers=headers)


class TestCalculateEndpoint:
    """POST /api/v1/vat/calculate"""

    @pytest.mark.asyncio
    async def test_liability(self, client, auth_headers):
        response = await calculate(client, auth_headers, "1000.00", "500.00")

        assert response.status_code == 200
        data = response.json()
        assert data["calculation"]["net_vat"] == "500.00"
        assert data["calculation"]["is_refund"] is False
        assert data["calculation"]["source"] == "local"
        assert data["vat_return"]["status"] == "DRAFT"
        assert data["vat_return"]["net_vat"] == "500.00"
        assert data["vat_return"]["due_date"] == "2025-03-24"
        assert "Payment for this period was due on 24/03/2025" in data["calculation"]["warnings"]

    @pytest.mark.asyncio
    async def test_refund(self, client, auth_headers):
        response = await calculate(client, auth_headers, "200.00", "450.50")

        calculation = response.json()["calculation"]
        assert calculation["net_vat"] == "-250.50"
        assert calculation["is_refund"] is True

    @pytest.mark.asyncio
    async def test_recalculation_updates_the_draft(self, client, auth_headers, db_session):
        first = await calculate(client, auth_headers, "1000.00", "500.00")
        second = await calculate(client, auth_headers, "1200.00", "300.00")

        assert first.json()["vat_return"]["id"] == second.json()["vat_return"]["id"]
        assert second.json()["vat_return"]["net_vat"] == "900.00"

        result = await db_session.execute(
            select(AuditLog).where(AuditLog.action == AuditAction.VAT_CALCULATED).order_by(AuditLog.created_at)
        )
        entries = list(result.scalars().all())
        assert len(entries) == 2
        assert entries[0].old_values is None
        assert entries[1].old_values["net_vat"] == "500.00"
        assert entries[1].new_values["net_vat"] == "900.00"

    @pytest.mark.asyncio
    async def test_negative_amount_is_rejected(self, client, auth_headers):
        response = await calculate(client, auth_headers, "-1.00", "0")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_non_numeric_amount_is_rejected(self, client, auth_headers):
        response = await calculate(client, auth_headers, "lots", "0")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_end_before_start_is_rejected(self, client, auth_headers):
        response = await calculate(
            client, auth_headers, "10.00", "5.00", period_start="2025-02-28", period_end="2025-01-01"
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_future_period_is_rejected(self, client, auth_headers):
        start = date.today() + timedelta(days=10)
        end = start + timedelta(days=30)

        response = await calculate(
            client, auth_headers, "10.00", "5.00", period_start=start.isoformat(), period_end=end.isoformat()
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "INVALID_TAX_PERIOD"
        assert error["message"] == "Period cannot start in the future"

    @pytest.mark.asyncio
    async def test_overlapping_period_conflicts(self, client, auth_headers):
        await calculate(client, auth_headers, "1000.00", "500.00")

        response = await calculate(
            client, auth_headers, "10.00", "5.00", period_start="2025-02-01", period_end="2025-03-31"
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "RESOURCE_CONFLICT"

    @pytest.mark.asyncio
    async def test_submitted_return_cannot_be_recalculated(self, client, auth_headers, submitted_return):
        response = await calculate(client, auth_headers, "10.00", "5.00")

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "VAT return for this period is already submitted"

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client):
        response = await calculate(client, {}, "10.00", "5.00")

        assert response.status_code == 401


class TestSubmitEndpoint:
    """POST /api/v1/vat/{id}/submit"""

    @pytest.mark.asyncio
    async def test_submit(self, client, auth_headers, db_session):
        draft = (await calculate(client, auth_headers, "1000.00", "500.00")).json()["vat_return"]

        response = await client.post(f"/api/v1/vat/{draft['id']}/submit", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["vat_return"]["status"] == "SUBMITTED"
        assert data["vat_return"]["revenue_ref_number"].startswith("VAT-2025-02-")
        assert data["vat_return"]["submitted_at"] is not None
        assert data["payment_required"] is True

        result = await db_session.execute(select(AuditLog).where(AuditLog.action == AuditAction.VAT_SUBMITTED))
        entry = result.scalar_one()
        assert entry.audit_metadata["net_vat"] == "500.00"

    @pytest.mark.asyncio
    async def test_refund_return_needs_no_payment(self, client, auth_headers):
        draft = (await calculate(client, auth_headers, "100.00", "500.00")).json()["vat_return"]

        response = await client.post(f"/api/v1/vat/{draft['id']}/submit", headers=auth_headers)

        assert response.json()["payment_required"] is False

    @pytest.mark.asyncio
    async def test_double_submit_is_rejected(self, client, auth_headers):
        draft = (await calculate(client, auth_headers, "1000.00", "500.00")).json()["vat_return"]
        await client.post(f"/api/v1/vat/{draft['id']}/submit", headers=auth_headers)

        response = await client.post(f"/api/v1/vat/{draft['id']}/submit", headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "VAT return is already submitted"

    @pytest.mark.asyncio
    async def test_submit_links_documents(self, client, auth_headers, db_session, test_user):
        document = await create_document(db_session, test_user, DocumentCategory.SALES, ["23.00"])
        draft = (await calculate(client, auth_headers, "1000.00", "500.00")).json()["vat_return"]

        response = await client.post(
            f"/api/v1/vat/{draft['id']}/submit",
            json={"document_ids": [str(document.id)]},
            headers=auth_headers,
        )

        assert response.status_code == 200
        await db_session.refresh(document)
        assert str(document.vat_return_id) == draft["id"]

    @pytest.mark.asyncio
    async def test_submit_with_foreign_document(self, client, auth_headers, db_session, other_user):
        document = await create_document(db_session, other_user, DocumentCategory.SALES, ["23.00"])
        draft = (await calculate(client, auth_headers, "1000.00", "500.00")).json()["vat_return"]

        response = await client.post(
            f"/api/v1/vat/{draft['id']}/submit",
            json={"document_ids": [str(document.id)]},
            headers=auth_headers,
        )

        assert response.status_code == 404

        status = await client.get(f"/api/v1/vat/{draft['id']}", headers=auth_headers)
        assert status.json()["vat_return"]["status"] == "DRAFT"

    @pytest.mark.asyncio
    async def test_other_users_return(self, client, auth_headers, db_session, other_user):
        foreign = await create_vat_return(db_session, other_user, status=VATReturnStatus.DRAFT)

        response = await client.post(f"/api/v1/vat/{foreign.id}/submit", headers=auth_headers)

        assert response.status_code == 404


class TestQueryEndpoints:
    """GET /api/v1/vat"""

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, client, auth_headers, db_session, test_user):
        await create_vat_return(db_session, test_user)
        await create_vat_return(
            db_session,
            test_user,
            status=VATReturnStatus.DRAFT,
            period_start=date(2025, 3, 1),
            period_end=date(2025, 4, 30),
        )

        all_returns = await client.get("/api/v1/vat", headers=auth_headers)
        drafts = await client.get("/api/v1/vat", params={"status": "DRAFT"}, headers=auth_headers)

        assert len(all_returns.json()["vat_returns"]) == 2
        assert [r["period_start"] for r in all_returns.json()["vat_returns"]] == ["2025-03-01", "2025-01-01"]
        assert [r["status"] for r in drafts.json()["vat_returns"]] == ["DRAFT"]

    @pytest.mark.asyncio
    async def test_get_return(self, client, auth_headers, submitted_return):
        response = await client.get(f"/api/v1/vat/{submitted_return.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["vat_return"]["net_vat"] == "1250.00"
        assert response.json()["payment_required"] is True

    @pytest.mark.asyncio
    async def test_get_other_users_return(self, client, auth_headers, db_session, other_user):
        foreign = await create_vat_return(db_session, other_user)

        response = await client.get(f"/api/v1/vat/{foreign.id}", headers=auth_headers)

        assert response.status_code == 404


class TestVATReturnService:
    """Service-level behaviour."""

    @pytest.mark.asyncio
    async def test_no_warnings_before_due_date(self, db_session, test_user):
        service = VATReturnService(db_session)

        vat_return, calculation = await service.calculate_return(
            test_user,
            sales_vat=Decimal("1000.00"),
            purchase_vat=Decimal("500.00"),
            period_start=date(2025, 1, 1),
            period_end=date(2025, 2, 28),
            today=date(2025, 3, 1),
        )

        assert calculation.net_vat == Decimal("500.00")
        assert calculation.warnings == []
        assert vat_return.due_date == date(2025, 3, 24)
        assert vat_return.status == VATReturnStatus.DRAFT

    @pytest.mark.asyncio
    async def test_large_refund_warning_is_kept(self, db_session, test_user):
        service = VATReturnService(db_session)

        _, calculation = await service.calculate_return(
            test_user,
            sales_vat="100.00",
            purchase_vat="20100.00",
            period_start=date(2025, 1, 1),
            period_end=date(2025, 2, 28),
            today=date(2025, 3, 1),
        )

        assert calculation.is_refund is True
        assert len(calculation.warnings) == 1
        assert calculation.warnings[0].startswith("Purchase VAT exceeds Sales VAT")

    def test_payment_required(self):
        assert VATReturnService.payment_required(
            VATReturn(status=VATReturnStatus.SUBMITTED, net_vat=Decimal("0.01"))
        ) is True
        assert VATReturnService.payment_required(
            VATReturn(status=VATReturnStatus.SUBMITTED, net_vat=Decimal("0.00"))
        ) is False
        assert VATReturnService.payment_required(
            VATReturn(status=VATReturnStatus.DRAFT, net_vat=Decimal("100.00"))
        ) is False
