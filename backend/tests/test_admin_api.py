"""Tests for the anchor and admin review endpoints and the full invoice lifecycle."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from factoring.core.cache import CacheUnavailable
from factoring.main import app
from factoring.models.invoice import InvoiceStatus
from factoring.models.shared import utc_now
from factoring.services.document_storage import LocalDocumentStorage
from tests.conftest import PDF_BYTES, auth_headers, create_invoice_row, create_offer_row

TERMS = {"max_funding_amount": "90000", "recommended_interest_rate": "15", "max_tenure": 30}


@pytest.fixture
def client(cache):
    """Create test client."""
    return TestClient(app)


# ---------------------------------------------------------------------------
# Anchor review
# ---------------------------------------------------------------------------


class TestAnchorReview:
    def test_pending_queue(self, client, users, db_session):
        mine = create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED)
        create_invoice_row(db_session, users.seller, users.other_anchor, InvoiceStatus.SUBMITTED)
        create_invoice_row(db_session, users.seller, users.anchor)

        resp = client.get("/v1/anchor/invoices/pending", headers=auth_headers(users.anchor))

        assert resp.status_code == 200
        assert [i["id"] for i in resp.json()["items"]] == [mine.id]

    def test_queue_for_anchors_only(self, client, users):
        resp = client.get("/v1/anchor/invoices/pending", headers=auth_headers(users.lender))
        assert resp.status_code == 403

    def test_approve_with_terms(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED
        )

        resp = client.post(
            f"/v1/anchor/invoices/{invoice.id}/review",
            json={"action": "approve", "notes": "Goods received", "funding_terms": TERMS},
            headers=auth_headers(users.anchor),
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "anchor_approved"
        assert data["anchor_approval_notes"] == "Goods received"
        assert Decimal(data["max_funding_amount"]) == Decimal("90000")
        assert data["max_tenure"] == 30

        history = client.get("/v1/anchor/invoices/history", headers=auth_headers(users.anchor))
        assert [i["id"] for i in history.json()["items"]] == [invoice.id]

    def test_reject(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED
        )
        resp = client.post(
            f"/v1/anchor/invoices/{invoice.id}/review",
            json={"action": "reject", "notes": "Never delivered"},
            headers=auth_headers(users.anchor),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert resp.json()["anchor_rejection_reason"] == "Never delivered"

    def test_terms_above_invoice_amount(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED
        )
        resp = client.post(
            f"/v1/anchor/invoices/{invoice.id}/review",
            json={"action": "approve", "funding_terms": {**TERMS, "max_funding_amount": "200000"}},
            headers=auth_headers(users.anchor),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["message"] == "Invalid funding terms"

    def test_wrong_anchor(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED
        )
        resp = client.post(
            f"/v1/anchor/invoices/{invoice.id}/review",
            json={"action": "approve"},
            headers=auth_headers(users.other_anchor),
        )
        assert resp.status_code == 403

    def test_review_draft_conflicts(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.post(
            f"/v1/anchor/invoices/{invoice.id}/review",
            json={"action": "approve"},
            headers=auth_headers(users.anchor),
        )
        assert resp.status_code == 409

    def test_unknown_action(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED
        )
        resp = client.post(
            f"/v1/anchor/invoices/{invoice.id}/review",
            json={"action": "maybe"},
            headers=auth_headers(users.anchor),
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Admin verification, listing and settlement
# ---------------------------------------------------------------------------


class TestAdminReview:
    def test_pending_queue(self, client, users, db_session):
        approved = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.ANCHOR_APPROVED
        )
        create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED)

        resp = client.get("/v1/admin/invoices/pending", headers=auth_headers(users.admin))

        assert resp.status_code == 200
        assert [i["id"] for i in resp.json()["items"]] == [approved.id]

    def test_admins_only(self, client, users):
        resp = client.get("/v1/admin/invoices", headers=auth_headers(users.anchor))
        assert resp.status_code == 403

    def test_all_invoices(self, client, users, db_session):
        create_invoice_row(db_session, users.seller, users.anchor)
        create_invoice_row(db_session, users.seller, users.other_anchor, InvoiceStatus.LISTED)

        resp = client.get("/v1/admin/invoices?status=listed", headers=auth_headers(users.admin))

        assert resp.status_code == 200
        assert resp.json()["total"] == 1

    def test_verify_sets_terms(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.ANCHOR_APPROVED
        )
        resp = client.post(
            f"/v1/admin/invoices/{invoice.id}/verify",
            json={"action": "verify", "funding_terms": TERMS},
            headers=auth_headers(users.admin),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "admin_verified"
        assert resp.json()["verified_by"] == str(users.admin.id)
        assert Decimal(resp.json()["recommended_interest_rate"]) == Decimal("15")

    def test_reject(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.ANCHOR_APPROVED
        )
        resp = client.post(
            f"/v1/admin/invoices/{invoice.id}/verify",
            json={"action": "reject", "notes": "Duplicate invoice"},
            headers=auth_headers(users.admin),
        )
        assert resp.json()["status"] == "rejected"
        assert resp.json()["admin_rejection_reason"] == "Duplicate invoice"

    def test_list(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.ADMIN_VERIFIED
        )
        resp = client.post(
            f"/v1/admin/invoices/{invoice.id}/list", headers=auth_headers(users.admin)
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "listed"
        assert resp.json()["listed_at"] is not None

    def test_list_unverified_conflicts(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.ANCHOR_APPROVED
        )
        resp = client.post(
            f"/v1/admin/invoices/{invoice.id}/list", headers=auth_headers(users.admin)
        )
        assert resp.status_code == 409

    def test_settle_requires_repaid(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.FUNDED)
        resp = client.post(
            f"/v1/admin/invoices/{invoice.id}/settle", headers=auth_headers(users.admin)
        )
        assert resp.status_code == 409

    def test_unknown_invoice(self, client, users):
        resp = client.post(
            "/v1/admin/invoices/INV-missing/verify",
            json={"action": "verify"},
            headers=auth_headers(users.admin),
        )
        assert resp.status_code == 404


class TestMaintenance:
    def test_expire_offers(self, client, users, db_session):
        listed = create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.LISTED)
        create_offer_row(db_session, listed, users.lender, expires_in=timedelta(minutes=-1))

        resp = client.post("/v1/admin/offers/expire", headers=auth_headers(users.admin))

        assert resp.status_code == 200
        assert resp.json() == {"expired_count": 1}

    def test_process_outbox(self, client, users):
        resp = client.post("/v1/admin/outbox/process", headers=auth_headers(users.admin))
        assert resp.status_code == 200
        assert resp.json() == {"attempted_count": 0}

    @pytest.mark.asyncio
    async def test_cache_cleanup(self, client, users, cache):
        await cache.set("marketplace:overview", "{}")
        resp = client.post("/v1/admin/cache/cleanup", headers=auth_headers(users.admin))
        assert resp.status_code == 200
        assert resp.json() == {"keys_fixed": 1}

    def test_cache_cleanup_unavailable(self, client, users, monkeypatch):
        async def broken(self):  # type: ignore[no-untyped-def]
            raise CacheUnavailable("redis down")

        monkeypatch.setattr(
            "factoring.services.invoice_cache.InvoiceCache.cleanup_expired_caches", broken
        )
        resp = client.post("/v1/admin/cache/cleanup", headers=auth_headers(users.admin))
        assert resp.status_code == 503

    def test_overview(self, client, users):
        resp = client.get("/v1/admin/marketplace/overview", headers=auth_headers(users.admin))
        assert resp.status_code == 200
        assert resp.json()["active_listings"] == 0

    def test_maintenance_is_admin_only(self, client, users):
        resp = client.post("/v1/admin/offers/expire", headers=auth_headers(users.lender))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Full lifecycle
# ---------------------------------------------------------------------------


class TestInvoiceLifecycle:
    def test_from_draft_to_settled(self, client, users, storage: LocalDocumentStorage):
        seller, anchor, admin = users.seller, users.anchor, users.admin
        now = utc_now()

        created = client.post(
            "/v1/invoices/",
            json={
                "anchor_id": str(anchor.id),
                "amount": "100000",
                "currency": "NGN",
                "issue_date": (now - timedelta(days=3)).isoformat(),
                "due_date": (now + timedelta(days=60)).isoformat(),
            },
            headers=auth_headers(seller),
        )
        assert created.status_code == 201
        invoice_id = created.json()["id"]

        uploaded = client.post(
            f"/v1/invoices/{invoice_id}/document",
            files={"file": ("invoice.pdf", PDF_BYTES, "application/pdf")},
            headers=auth_headers(seller),
        )
        storage_id = uploaded.json()["invoice_document"]["storage_id"]

        steps = [
            (f"/v1/invoices/{invoice_id}/submit", seller, None, "submitted"),
            (
                f"/v1/anchor/invoices/{invoice_id}/review",
                anchor,
                {"action": "approve", "funding_terms": TERMS},
                "anchor_approved",
            ),
            (f"/v1/admin/invoices/{invoice_id}/verify", admin, {"action": "verify"}, "admin_verified"),
            (f"/v1/admin/invoices/{invoice_id}/list", admin, None, "listed"),
        ]
        for url, user, body, expected in steps:
            resp = client.post(url, json=body, headers=auth_headers(user))
            assert resp.status_code == 200, resp.json()
            assert resp.json()["status"] == expected

        assert storage.visibility(storage_id) == "listed"

        bid = {"interest_rate": "15", "tenure": 30}
        first = client.post(
            f"/v1/marketplace/invoices/{invoice_id}/offers",
            json={**bid, "funding_percentage": "80"},
            headers=auth_headers(users.lender),
        )
        second = client.post(
            f"/v1/marketplace/invoices/{invoice_id}/offers",
            json={**bid, "funding_percentage": "85"},
            headers=auth_headers(users.other_lender),
        )
        assert first.status_code == second.status_code == 201

        offers = client.get(
            f"/v1/marketplace/invoices/{invoice_id}/offers", headers=auth_headers(seller)
        ).json()
        # Same rate, so the larger amount ranks first
        assert offers["best_offer"]["id"] == second.json()["id"]

        accepted = client.post(
            f"/v1/marketplace/offers/{first.json()['id']}/accept", headers=auth_headers(seller)
        )
        assert accepted.status_code == 200
        funded = accepted.json()["invoice"]
        assert funded["status"] == "funded"
        assert accepted.json()["rejected_offer_ids"] == [second.json()["id"]]
        due = Decimal(funded["total_repayment_amount"])
        assert due > Decimal("80000")

        partial = client.post(
            f"/v1/invoices/{invoice_id}/repayments",
            json={"amount": "50000"},
            headers=auth_headers(users.lender),
        )
        assert partial.json()["status"] == "funded"
        assert Decimal(partial.json()["repaid_amount"]) == Decimal("50000")

        outsider = client.post(
            f"/v1/invoices/{invoice_id}/repayments",
            json={"amount": "1"},
            headers=auth_headers(users.other_lender),
        )
        assert outsider.status_code == 403

        final = client.post(
            f"/v1/invoices/{invoice_id}/repayments",
            json={"amount": str(due - Decimal("50000"))},
            headers=auth_headers(admin),
        )
        assert final.json()["status"] == "repaid"

        settled = client.post(
            f"/v1/admin/invoices/{invoice_id}/settle",
            json={"notes": "Closed"},
            headers=auth_headers(admin),
        )
        assert settled.json()["status"] == "settled"

        history = client.get(
            f"/v1/invoices/{invoice_id}/status-history", headers=auth_headers(seller)
        ).json()
        statuses = [entry["status"] for entry in history["history"]]
        for status in ("submitted", "anchor_approved", "admin_verified", "listed", "funded", "repaid", "settled"):
            assert status in statuses

        inbox = client.get("/v1/notifications/", headers=auth_headers(seller)).json()
        assert len(inbox) > 0
