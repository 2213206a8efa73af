"""Tests for the seller-facing invoice endpoints."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from factoring.main import app
from factoring.models.invoice import InvoiceStatus
from factoring.models.shared import utc_now
from factoring.models.user import UserRole
from factoring.repositories.user_repository import UserRepository
from tests.conftest import PDF_BYTES, auth_headers, create_invoice_row


@pytest.fixture
def client(cache):
    """Create test client."""
    return TestClient(app)


def _invoice_payload(anchor_id: str, **overrides) -> dict:
    now = utc_now()
    payload = {
        "anchor_id": anchor_id,
        "amount": "250000.00",
        "currency": "NGN",
        "issue_date": (now - timedelta(days=5)).isoformat(),
        "due_date": (now + timedelta(days=75)).isoformat(),
        "description": "Flour delivery",
    }
    payload.update(overrides)
    return payload


def _upload(client, invoice_id, user):
    return client.post(
        f"/v1/invoices/{invoice_id}/document",
        files={"file": ("invoice.pdf", PDF_BYTES, "application/pdf")},
        headers=auth_headers(user),
    )


class TestCreateInvoice:
    def test_create(self, client, users):
        resp = client.post(
            "/v1/invoices/",
            json=_invoice_payload(str(users.anchor.id)),
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "draft"
        assert data["seller_id"] == str(users.seller.id)
        assert Decimal(data["amount"]) == Decimal("250000")
        assert data["invoice_document"] is None
        assert data["is_overdue"] is False
        assert data["days_until_due"] >= 74

    def test_requires_seller_role(self, client, users):
        resp = client.post(
            "/v1/invoices/",
            json=_invoice_payload(str(users.anchor.id)),
            headers=auth_headers(users.lender),
        )
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "not_authorized"

    def test_unknown_anchor(self, client, users):
        resp = client.post(
            "/v1/invoices/",
            json=_invoice_payload(str(users.lender.id)),
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["details"]["field"] == "anchor_id"

    def test_due_before_issue(self, client, users):
        now = utc_now()
        resp = client.post(
            "/v1/invoices/",
            json=_invoice_payload(
                str(users.anchor.id),
                issue_date=(now - timedelta(days=5)).isoformat(),
                due_date=(now - timedelta(days=6)).isoformat(),
            ),
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 422

    def test_non_positive_amount_rejected_by_schema(self, client, users):
        resp = client.post(
            "/v1/invoices/",
            json=_invoice_payload(str(users.anchor.id), amount="0"),
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 422


class TestEditAndDelete:
    def test_update_draft(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.put(
            f"/v1/invoices/{invoice.id}",
            json={"description": "Corrected", "amount": "120000"},
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 200
        assert resp.json()["description"] == "Corrected"
        assert Decimal(resp.json()["amount"]) == Decimal("120000")

    def test_update_someone_elses_invoice(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        other_seller = UserRepository(db_session).create(
            email="other@example.com", role=UserRole.SELLER, business_name="Other"
        )
        resp = client.put(
            f"/v1/invoices/{invoice.id}",
            json={"description": "Mine now"},
            headers=auth_headers(other_seller),
        )
        assert resp.status_code == 403

    def test_update_listed_invoice_conflicts(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.LISTED)
        resp = client.put(
            f"/v1/invoices/{invoice.id}",
            json={"description": "Too late"},
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "invalid_state_transition"

    def test_delete_draft(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.delete(f"/v1/invoices/{invoice.id}", headers=auth_headers(users.seller))
        assert resp.status_code == 204
        resp = client.get(f"/v1/invoices/{invoice.id}", headers=auth_headers(users.seller))
        assert resp.status_code == 404

    def test_delete_submitted_conflicts(self, client, users, db_session):
        invoice = create_invoice_row(
            db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED
        )
        resp = client.delete(f"/v1/invoices/{invoice.id}", headers=auth_headers(users.seller))
        assert resp.status_code == 409


class TestDocuments:
    def test_upload_invoice_document(self, client, users, db_session, storage):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)

        resp = _upload(client, invoice.id, users.seller)

        assert resp.status_code == 200
        document = resp.json()["invoice_document"]
        assert document["original_name"] == "invoice.pdf"
        assert document["mime_type"] == "application/pdf"
        assert storage.visibility(document["storage_id"]) == "draft"

    def test_replacing_document_removes_previous_file(self, client, users, db_session, storage):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        first = _upload(client, invoice.id, users.seller).json()["invoice_document"]

        _upload(client, invoice.id, users.seller)

        assert storage.open_path(first["storage_id"]) is None

    def test_unsupported_file_type(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.post(
            f"/v1/invoices/{invoice.id}/document",
            files={"file": ("notes.txt", b"plain text", "text/plain")},
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "validation_failed"

    def test_supporting_documents(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)

        resp = client.post(
            f"/v1/invoices/{invoice.id}/supporting-documents",
            files=[
                ("files", ("po.pdf", PDF_BYTES, "application/pdf")),
                ("files", ("delivery.png", b"\x89PNG....", "image/png")),
            ],
            data={"document_type": "purchase_order"},
            headers=auth_headers(users.seller),
        )

        assert resp.status_code == 200
        documents = resp.json()["supporting_documents"]
        assert len(documents) == 2
        assert {d["document_type"] for d in documents} == {"purchase_order"}

        resp = client.delete(
            f"/v1/invoices/{invoice.id}/supporting-documents/{documents[0]['id']}",
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 200
        assert [d["id"] for d in resp.json()["supporting_documents"]] == [documents[1]["id"]]

    def test_remove_unknown_supporting_document(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.delete(
            f"/v1/invoices/{invoice.id}/supporting-documents/nope",
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 404

    def test_signed_document_url(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        _upload(client, invoice.id, users.seller)

        resp = client.get(
            f"/v1/invoices/{invoice.id}/document-url?expires_in=120",
            headers=auth_headers(users.seller),
        )

        assert resp.status_code == 200
        assert resp.json()["expires_in"] == 120
        download = client.get(resp.json()["url"])
        assert download.status_code == 200
        assert download.content == PDF_BYTES

    def test_document_url_expiry_bounds(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.get(
            f"/v1/invoices/{invoice.id}/document-url?expires_in=5",
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 422


class TestSubmit:
    def test_submit_requires_document(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.post(f"/v1/invoices/{invoice.id}/submit", headers=auth_headers(users.seller))
        assert resp.status_code == 409
        assert resp.json()["detail"]["message"] == (
            "Invoice document must be uploaded before submission"
        )

    def test_submit(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        _upload(client, invoice.id, users.seller)

        resp = client.post(
            f"/v1/invoices/{invoice.id}/submit",
            json={"final_notes": "Ready for review"},
            headers=auth_headers(users.seller),
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "submitted"
        assert resp.json()["submitted_at"] is not None

        history = client.get(
            f"/v1/invoices/{invoice.id}/status-history", headers=auth_headers(users.anchor)
        )
        assert history.status_code == 200
        statuses = [entry["status"] for entry in history.json()["history"]]
        assert "submitted" in statuses


class TestReadAccess:
    def test_get_invoice_as_party(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        for user in (users.seller, users.anchor, users.admin):
            resp = client.get(f"/v1/invoices/{invoice.id}", headers=auth_headers(user))
            assert resp.status_code == 200

    def test_get_invoice_as_outsider(self, client, users, db_session):
        invoice = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.get(f"/v1/invoices/{invoice.id}", headers=auth_headers(users.other_anchor))
        assert resp.status_code == 403

    def test_list_scoped_to_seller(self, client, users, db_session):
        create_invoice_row(db_session, users.seller, users.anchor)
        create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.SUBMITTED)

        resp = client.get(
            "/v1/invoices/?status=submitted", headers=auth_headers(users.seller)
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["status"] == "submitted"

    def test_analytics(self, client, users, db_session):
        create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.get("/v1/invoices/analytics?period=7d", headers=auth_headers(users.seller))
        assert resp.status_code == 200

    def test_analytics_unknown_period(self, client, users):
        resp = client.get("/v1/invoices/analytics?period=2y", headers=auth_headers(users.seller))
        assert resp.status_code == 422
