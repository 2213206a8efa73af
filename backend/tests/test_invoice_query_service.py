"""Tests for invoice read models: details, history, lists and analytics."""

from datetime import timedelta
from decimal import Decimal

import pytest

from factoring.core.auth import Actor
from factoring.core.exceptions import NotAuthorized, NotFound, ValidationFailed
from factoring.models.invoice import InvoiceStatus
from factoring.models.shared import utc_now
from factoring.models.user import UserRole
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.services.invoice_cache import InvoiceCache, detail_key
from factoring.services.invoice_query_service import (
    INTERNAL_NOTE_PLACEHOLDER,
    InvoiceFilters,
    InvoiceQueryService,
    can_view,
)
from tests.conftest import PDF_BYTES, create_invoice_row


@pytest.fixture
def service(db_session, cache, storage):
    return InvoiceQueryService(db_session, cache, storage=storage)


def _actor(user) -> Actor:  # type: ignore[no-untyped-def]
    return Actor(user_id=str(user.id), role=UserRole(user.role))


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------


class TestCanView:
    def test_parties_and_admin(self, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        assert can_view(invoice, _actor(users.seller))
        assert can_view(invoice, _actor(users.anchor))
        assert can_view(invoice, _actor(users.admin))
        assert not can_view(invoice, _actor(users.other_anchor))
        assert not can_view(invoice, _actor(users.lender))

    def test_lenders_see_listed_and_funded_by_them(self, users, db_session):
        listed = create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.LISTED)
        funded = create_invoice_row(
            db_session,
            users.seller,
            users.anchor,
            InvoiceStatus.FUNDED,
            funded_by=str(users.lender.id),
        )
        assert can_view(listed, _actor(users.lender))
        assert can_view(funded, _actor(users.lender))
        assert not can_view(funded, _actor(users.other_lender))

    def test_cached_form(self, users):
        data = {"seller_id": str(users.seller.id), "anchor_id": "x", "status": "draft", "funded_by": None}
        assert can_view(data, _actor(users.seller))
        assert not can_view(data, _actor(users.lender))


# ---------------------------------------------------------------------------
# Details and history
# ---------------------------------------------------------------------------


class TestInvoiceDetails:
    @pytest.mark.asyncio
    async def test_read_through_cache(self, service, users, db_session, cache):
        invoice = create_invoice_row(db_session, users.seller, users.anchor, description="Pallets")

        data = await service.get_invoice_details(str(invoice.id), _actor(users.seller))

        assert data["id"] == invoice.id
        assert data["description"] == "Pallets"
        assert data["days_until_due"] in (59, 60)
        assert data["is_overdue"] is False
        assert await cache.get_json(detail_key(str(invoice.id))) == data

    @pytest.mark.asyncio
    async def test_served_from_cache_until_invalidated(self, service, users, db_session, cache):
        invoice = create_invoice_row(db_session, users.seller, users.anchor, description="Before")
        await service.get_invoice_details(str(invoice.id), _actor(users.seller))

        invoice.description = "After"
        db_session.commit()
        cached = await service.get_invoice_details(str(invoice.id), _actor(users.seller))
        assert cached["description"] == "Before"

        await InvoiceCache(cache).invalidate(str(invoice.id))
        fresh = await service.get_invoice_details(str(invoice.id), _actor(users.seller))
        assert fresh["description"] == "After"

    @pytest.mark.asyncio
    async def test_access_checked_on_cache_hit(self, service, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        await service.get_invoice_details(str(invoice.id), _actor(users.seller))
        with pytest.raises(NotAuthorized):
            await service.get_invoice_details(str(invoice.id), _actor(users.other_anchor))

    @pytest.mark.asyncio
    async def test_missing(self, service, users):
        with pytest.raises(NotFound):
            await service.get_invoice_details("INV-missing", _actor(users.admin))


class TestStatusHistory:
    def _seed(self, db_session, users):  # type: ignore[no-untyped-def]
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.REJECTED
        )
        repo = InvoiceRepository(db_session)
        repo.add_history(str(invoice.id), InvoiceStatus.SUBMITTED, str(users.seller.id))
        repo.add_history(str(invoice.id), InvoiceStatus.ANCHOR_APPROVED, str(users.anchor.id))
        repo.add_history(
            str(invoice.id),
            InvoiceStatus.REJECTED,
            str(users.admin.id),
            "INTERNAL: duplicate of an invoice funded elsewhere",
        )
        db_session.commit()
        return invoice

    def test_history_newest_first_with_metadata(self, service, users, db_session):
        invoice = self._seed(db_session, users)

        result = service.get_status_history(str(invoice.id), _actor(users.admin))

        assert result["current_status"] == "rejected"
        statuses = [h["status"] for h in result["history"]]
        assert statuses == ["rejected", "anchor_approved", "submitted"]
        assert result["history"][-1]["changed_by_name"] == "Obi Supplies"
        assert result["history"][-1]["metadata"]["label"] == "Submitted"
        assert result["history"][0]["notes"].startswith("INTERNAL:")
        timeline = result["timeline"]
        assert timeline["total_changes"] == 3
        assert timeline["status_breakdown"] == {
            "submitted": 1,
            "anchor_approved": 1,
            "rejected": 1,
        }
        assert timeline["first_submitted"] is not None
        assert timeline["processing_days"] >= 0

    def test_internal_notes_hidden_from_non_admins(self, service, users, db_session):
        invoice = self._seed(db_session, users)
        result = service.get_status_history(str(invoice.id), _actor(users.seller))
        assert result["history"][0]["notes"] == INTERNAL_NOTE_PLACEHOLDER

    def test_empty_history(self, service, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        result = service.get_status_history(str(invoice.id), _actor(users.seller))
        assert result["history"] == []
        assert result["timeline"]["processing_days"] is None

    def test_outsider(self, service, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        with pytest.raises(NotAuthorized):
            service.get_status_history(str(invoice.id), _actor(users.lender))


class TestSecureDocumentUrl:
    def test_signed_url_for_primary_document(self, service, users, db_session, storage):
        stored = storage.upload(PDF_BYTES, "inv.pdf", "application/pdf", {})
        invoice = create_invoice_row(
            db_session,
            users.seller,
            users.anchor,
            invoice_document={"url": stored.url, "storage_id": stored.storage_id},
        )

        result = service.get_secure_document_url(str(invoice.id), _actor(users.anchor), expires_in=600)

        assert result["expires_in"] == 600
        assert result["url"].startswith(f"/v1/documents/{stored.storage_id}?expires=")

    def test_supporting_document_by_id(self, service, users, db_session, storage):
        stored = storage.upload(PDF_BYTES, "po.pdf", "application/pdf", {})
        invoice = create_invoice_row(
            db_session,
            users.seller,
            users.anchor,
            supporting_documents=[
                {"id": "doc-1", "url": stored.url, "storage_id": stored.storage_id}
            ],
        )
        result = service.get_secure_document_url(str(invoice.id), _actor(users.seller), kind="doc-1")
        assert stored.storage_id in result["url"]

    def test_missing_document(self, service, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        with pytest.raises(NotFound):
            service.get_secure_document_url(str(invoice.id), _actor(users.seller))


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


class TestLists:
    @pytest.mark.asyncio
    async def test_seller_sees_own_invoices(self, service, users, db_session):
        mine = create_invoice_row(db_session, users.seller, users.anchor)
        create_invoice_row(db_session, users.admin, users.anchor)

        page = await service.get_user_invoices(_actor(users.seller))

        assert page["total"] == 1
        assert [i["id"] for i in page["items"]] == [mine.id]
        assert page["page"] == 1
        assert page["limit"] == 20

    @pytest.mark.asyncio
    async def test_anchor_and_lender_scopes(self, service, users, db_session):
        create_invoice_row(db_session, users.seller, users.anchor)
        create_invoice_row(db_session, users.seller, users.other_anchor)
        funded = create_invoice_row(
            db_session,
            users.seller,
            users.anchor,
            InvoiceStatus.FUNDED,
            funded_by=str(users.lender.id),
        )

        anchor_page = await service.get_user_invoices(_actor(users.anchor))
        lender_page = await service.get_user_invoices(_actor(users.lender))
        admin_page = await service.get_user_invoices(_actor(users.admin))

        assert anchor_page["total"] == 2
        assert [i["id"] for i in lender_page["items"]] == [funded.id]
        assert admin_page["total"] == 3

    @pytest.mark.asyncio
    async def test_filters_and_sorting(self, service, users, db_session):
        small = create_invoice_row(db_session, users.seller, users.anchor, amount=Decimal("5000"))
        create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED)

        page = await service.get_user_invoices(
            _actor(users.seller),
            InvoiceFilters(statuses=[InvoiceStatus.DRAFT], max_amount=Decimal("10000")),
            sort_by="amount",
            sort_order="asc",
        )

        assert [i["id"] for i in page["items"]] == [small.id]

    @pytest.mark.asyncio
    async def test_pagination(self, service, users, db_session):
        for _ in range(3):
            create_invoice_row(db_session, users.seller, users.anchor)
        page = await service.get_user_invoices(_actor(users.seller), page=2, limit=2)
        assert page["total"] == 3
        assert len(page["items"]) == 1

    @pytest.mark.asyncio
    async def test_list_cached_until_invalidated(self, service, users, db_session, cache):
        create_invoice_row(db_session, users.seller, users.anchor)
        assert (await service.get_user_invoices(_actor(users.seller)))["total"] == 1

        second = create_invoice_row(db_session, users.seller, users.anchor)
        assert (await service.get_user_invoices(_actor(users.seller)))["total"] == 1

        await InvoiceCache(cache).invalidate(str(second.id), seller_id=str(users.seller.id))
        assert (await service.get_user_invoices(_actor(users.seller)))["total"] == 2

    @pytest.mark.asyncio
    async def test_review_queues(self, service, users, db_session):
        now = utc_now()
        submitted = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED, submitted_at=now
        )
        approved = create_invoice_row(
            db_session,
            users.seller,
            users.anchor,
            InvoiceStatus.ANCHOR_APPROVED,
            anchor_approval_date=now,
        )

        pending = await service.get_anchor_pending(str(users.anchor.id))
        reviewed = await service.get_anchor_history(str(users.anchor.id))
        admin_queue = await service.get_admin_pending()

        assert [i["id"] for i in pending["items"]] == [submitted.id]
        assert [i["id"] for i in reviewed["items"]] == [approved.id]
        assert [i["id"] for i in admin_queue["items"]] == [approved.id]

    @pytest.mark.asyncio
    async def test_admin_all_requires_admin(self, service, users):
        with pytest.raises(NotAuthorized):
            await service.get_admin_all(_actor(users.seller))


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


class TestAnalytics:
    @pytest.mark.asyncio
    async def test_totals_and_breakdown(self, service, users, db_session):
        now = utc_now()
        create_invoice_row(db_session, users.seller, users.anchor, amount=Decimal("1000"))
        create_invoice_row(
            db_session,
            users.seller,
            users.anchor,
            InvoiceStatus.FUNDED,
            amount=Decimal("3000"),
            submitted_at=now - timedelta(hours=10),
            anchor_approval_date=now - timedelta(hours=6),
            funded_at=now,
        )

        result = await service.get_invoice_analytics(_actor(users.seller), period="30d")

        assert result["period"] == "30d"
        assert result["totals"] == {
            "total_invoices": 2,
            "total_value": 4000.0,
            "average_amount": 2000.0,
        }
        breakdown = {b["status"]: b["count"] for b in result["status_breakdown"]}
        assert breakdown == {"draft": 1, "funded": 1}
        performance = result["performance"]
        assert performance["average_approval_hours"] == pytest.approx(4.0, abs=0.01)
        assert performance["average_hours_to_funding"] == pytest.approx(10.0, abs=0.01)
        assert performance["overdue_count"] == 0

    @pytest.mark.asyncio
    async def test_scoped_to_caller(self, service, users, db_session):
        create_invoice_row(db_session, users.seller, users.anchor)
        result = await service.get_invoice_analytics(_actor(users.other_anchor))
        assert result["totals"]["total_invoices"] == 0

    @pytest.mark.asyncio
    async def test_unknown_period(self, service, users):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.get_invoice_analytics(_actor(users.admin), period="2w")
        assert exc_info.value.details["allowed"] == ["30d", "365d", "7d", "90d"]

    @pytest.mark.asyncio
    async def test_custom_window_must_be_ordered(self, service, users):
        now = utc_now()
        with pytest.raises(ValidationFailed):
            await service.get_invoice_analytics(
                _actor(users.admin), start_date=now, end_date=now - timedelta(days=1)
            )

    @pytest.mark.asyncio
    async def test_custom_window(self, service, users, db_session):
        create_invoice_row(db_session, users.seller, users.anchor)
        now = utc_now()
        result = await service.get_invoice_analytics(
            _actor(users.admin),
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(minutes=1),
        )
        assert result["period"] == "custom"
        assert result["totals"]["total_invoices"] == 1
