"""Tests for marketplace browsing, bidding and acceptance endpoints."""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from factoring.main import app
from factoring.models.invoice import InvoiceStatus
from factoring.models.offer import OfferStatus
from factoring.models.user import UserRole
from factoring.repositories.user_repository import UserRepository
from tests.conftest import auth_headers, create_invoice_row, create_offer_row


@pytest.fixture
def client(cache):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def listed(db_session, users):
    return create_invoice_row(db_session, users.seller, users.anchor, InvoiceStatus.LISTED)


def _bid(client, invoice_id, lender, **overrides):
    body = {"interest_rate": "15", "funding_percentage": "80", "tenure": 30}
    body.update(overrides)
    return client.post(
        f"/v1/marketplace/invoices/{invoice_id}/offers", json=body, headers=auth_headers(lender)
    )


class TestBrowse:
    def test_lenders_only(self, client, users, listed):
        resp = client.get("/v1/marketplace/invoices", headers=auth_headers(users.seller))
        assert resp.status_code == 403

    def test_browse(self, client, users, listed):
        resp = client.get("/v1/marketplace/invoices", headers=auth_headers(users.lender))
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == listed.id
        assert data["items"][0]["funding_terms"]["recommended_interest_rate"] == 15.0

    def test_listing_detail(self, client, users, listed):
        resp = client.get(
            f"/v1/marketplace/invoices/{listed.id}", headers=auth_headers(users.lender)
        )
        assert resp.status_code == 200
        assert resp.json()["listing"]["id"] == listed.id
        assert resp.json()["my_offer"] is None

    def test_listing_detail_not_listed(self, client, users, db_session):
        draft = create_invoice_row(db_session, users.seller, users.anchor)
        resp = client.get(f"/v1/marketplace/invoices/{draft.id}", headers=auth_headers(users.lender))
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "invoice_not_available"

    def test_trending_and_overview(self, client, users, listed):
        client.get(f"/v1/marketplace/invoices/{listed.id}", headers=auth_headers(users.lender))

        trending = client.get(
            "/v1/marketplace/invoices/trending", headers=auth_headers(users.seller)
        )
        overview = client.get("/v1/marketplace/overview", headers=auth_headers(users.anchor))

        assert trending.status_code == 200
        assert trending.json()[0]["invoice_id"] == listed.id
        assert overview.status_code == 200
        assert overview.json()["active_listings"] == 1


class TestPlaceOffer:
    def test_place_offer(self, client, users, listed):
        resp = _bid(client, listed.id, users.lender)

        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert Decimal(data["amount"]) == Decimal("80000")
        assert Decimal(data["total_repayment_amount"]) == Decimal("80986.30")
        assert data["is_expired"] is False

    def test_rate_must_match(self, client, users, listed):
        resp = _bid(client, listed.id, users.lender, interest_rate="14")
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["code"] == "interest_rate_mismatch"
        assert detail["details"] == {"required_rate": 15.0, "provided_rate": 14.0}

    def test_tenure_limit(self, client, users, listed):
        resp = _bid(client, listed.id, users.lender, tenure=31)
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "tenure_exceeds_limit"
        assert resp.json()["detail"]["details"]["max_tenure"] == 30

    def test_funding_limit(self, client, users, listed):
        resp = _bid(client, listed.id, users.lender, funding_percentage="95")
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "funding_amount_exceeds_limit"

    def test_duplicate_pending_offer(self, client, users, listed):
        _bid(client, listed.id, users.lender)
        resp = _bid(client, listed.id, users.lender)
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "duplicate_active_offer"

    def test_not_listed(self, client, users, db_session):
        draft = create_invoice_row(db_session, users.seller, users.anchor)
        resp = _bid(client, draft.id, users.lender)
        assert resp.status_code == 404

    def test_sellers_cannot_bid(self, client, users, listed):
        assert _bid(client, listed.id, users.seller).status_code == 403


class TestOfferActions:
    def test_withdraw_own_offer(self, client, users, listed, db_session):
        offer = create_offer_row(db_session, listed, users.lender)

        resp = client.post(
            f"/v1/marketplace/offers/{offer.id}/withdraw",
            json={"reason": "Changed my mind"},
            headers=auth_headers(users.lender),
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "withdrawn"
        assert resp.json()["withdrawal_reason"] == "Changed my mind"

    def test_withdraw_someone_elses_offer(self, client, users, listed, db_session):
        offer = create_offer_row(db_session, listed, users.lender)
        resp = client.post(
            f"/v1/marketplace/offers/{offer.id}/withdraw", headers=auth_headers(users.other_lender)
        )
        assert resp.status_code == 403

    def test_withdraw_twice(self, client, users, listed, db_session):
        offer = create_offer_row(db_session, listed, users.lender, status=OfferStatus.WITHDRAWN)
        resp = client.post(
            f"/v1/marketplace/offers/{offer.id}/withdraw", headers=auth_headers(users.lender)
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "offer_not_actionable"

    def test_seller_rejects_offer(self, client, users, listed, db_session):
        offer = create_offer_row(db_session, listed, users.lender)
        resp = client.post(
            f"/v1/marketplace/offers/{offer.id}/reject",
            json={"reason": "Rate too high"},
            headers=auth_headers(users.seller),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert resp.json()["rejection_reason"] == "Rate too high"

    def test_accept_offer(self, client, users, listed, db_session):
        chosen = create_offer_row(db_session, listed, users.lender)
        sibling = create_offer_row(db_session, listed, users.other_lender)

        resp = client.post(
            f"/v1/marketplace/offers/{chosen.id}/accept",
            json={"acceptance_notes": "Thanks"},
            headers=auth_headers(users.seller),
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["offer"]["status"] == "accepted"
        assert data["invoice"]["status"] == "funded"
        assert data["invoice"]["funded_by"] == str(users.lender.id)
        assert data["rejected_offer_ids"] == [sibling.id]

        sibling_resp = client.get(
            f"/v1/marketplace/offers/{sibling.id}", headers=auth_headers(users.other_lender)
        )
        assert sibling_resp.json()["status"] == "rejected"

    def test_accept_expired_offer(self, client, users, listed, db_session):
        offer = create_offer_row(
            db_session, listed, users.lender, expires_in=timedelta(minutes=-1)
        )
        resp = client.post(
            f"/v1/marketplace/offers/{offer.id}/accept", headers=auth_headers(users.seller)
        )
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "offer_not_actionable"

    def test_accept_requires_invoice_owner(self, client, users, listed, db_session):
        offer = create_offer_row(db_session, listed, users.lender)
        other_seller = UserRepository(db_session).create(
            email="seller2@example.com", role=UserRole.SELLER, business_name="Other Seller"
        )
        resp = client.post(
            f"/v1/marketplace/offers/{offer.id}/accept", headers=auth_headers(other_seller)
        )
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "not_authorized"

    def test_accept_unknown_offer(self, client, users):
        resp = client.post(
            "/v1/marketplace/offers/missing/accept", headers=auth_headers(users.seller)
        )
        assert resp.status_code == 404


class TestOfferViews:
    def test_invoice_offers_for_seller(self, client, users, listed, db_session):
        create_offer_row(db_session, listed, users.lender)
        resp = client.get(
            f"/v1/marketplace/invoices/{listed.id}/offers", headers=auth_headers(users.seller)
        )
        assert resp.status_code == 200
        assert resp.json()["pending_count"] == 1

    def test_analysis(self, client, users, listed, db_session):
        create_offer_row(db_session, listed, users.lender)
        resp = client.get(
            f"/v1/marketplace/invoices/{listed.id}/analysis", headers=auth_headers(users.lender)
        )
        assert resp.status_code == 200
        assert resp.json()["market_position"]["rank"] == 1
        assert resp.json()["market_position"]["is_best"] is True

    def test_my_offers(self, client, users, listed, db_session):
        create_offer_row(db_session, listed, users.lender)
        resp = client.get(
            "/v1/marketplace/offers/mine?status=pending", headers=auth_headers(users.lender)
        )
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["status_counts"] == {"pending": 1}
