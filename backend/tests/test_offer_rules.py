"""Tests for bidding bounds, offer financials, expiry and ranking."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from factoring.core.exceptions import (
    FundingAmountExceedsLimit,
    FundingTermsNotSet,
    InterestRateMismatch,
    InvoiceNotAvailable,
    OfferNotActionable,
    TenureExceedsLimit,
    ValidationFailed,
)
from factoring.services import offer_rules

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _invoice(**overrides):  # type: ignore[no-untyped-def]
    defaults = {
        "id": "INV-1",
        "status": "listed",
        "amount": Decimal("100000.00"),
        "due_date": NOW + timedelta(days=60),
        "max_funding_amount": Decimal("90000.00"),
        "recommended_interest_rate": Decimal("15.00"),
        "max_tenure": 30,
    }
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def _offer(offer_id, rate, amount, created_minutes=0, **overrides):  # type: ignore[no-untyped-def]
    defaults = {
        "id": offer_id,
        "status": "pending",
        "interest_rate": Decimal(str(rate)),
        "amount": Decimal(str(amount)),
        "created_at": NOW + timedelta(minutes=created_minutes),
        "expires_at": NOW + timedelta(hours=48),
    }
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


class TestValidateOfferTerms:
    def test_valid_offer_returns_funding_amount(self):
        amount = offer_rules.validate_offer_terms(_invoice(), Decimal("15"), Decimal("80"), 30, NOW)
        assert amount == Decimal("80000.00")

    def test_invoice_not_listed(self):
        with pytest.raises(InvoiceNotAvailable):
            offer_rules.validate_offer_terms(
                _invoice(status="funded"), Decimal("15"), Decimal("80"), 30, NOW
            )

    def test_terms_not_set(self):
        with pytest.raises(FundingTermsNotSet):
            offer_rules.validate_offer_terms(
                _invoice(recommended_interest_rate=None), Decimal("15"), Decimal("80"), 30, NOW
            )

    def test_percentage_out_of_range(self):
        with pytest.raises(ValidationFailed) as exc_info:
            offer_rules.validate_offer_terms(_invoice(), Decimal("15"), Decimal("0.5"), 30, NOW)
        assert exc_info.value.details["field"] == "funding_percentage"

    def test_rate_must_match_recommended(self):
        with pytest.raises(InterestRateMismatch) as exc_info:
            offer_rules.validate_offer_terms(_invoice(), Decimal("14"), Decimal("80"), 30, NOW)
        assert exc_info.value.details == {"required_rate": 15.0, "provided_rate": 14.0}

    def test_rate_checked_before_tenure(self):
        with pytest.raises(InterestRateMismatch):
            offer_rules.validate_offer_terms(_invoice(), Decimal("20"), Decimal("80"), 400, NOW)

    def test_tenure_bounded_by_admin_max(self):
        with pytest.raises(TenureExceedsLimit) as exc_info:
            offer_rules.validate_offer_terms(_invoice(), Decimal("15"), Decimal("80"), 31, NOW)
        assert exc_info.value.details["max_tenure"] == 30
        assert exc_info.value.details["provided_tenure"] == 31

    def test_tenure_bounded_by_due_date_buffer(self):
        invoice = _invoice(due_date=NOW + timedelta(days=20), max_tenure=90)
        assert offer_rules.max_allowed_tenure(invoice, NOW) == 6
        with pytest.raises(TenureExceedsLimit) as exc_info:
            offer_rules.validate_offer_terms(invoice, Decimal("15"), Decimal("50"), 7, NOW)
        assert exc_info.value.details["collection_buffer_days"] == 14

    def test_no_admin_tenure_uses_due_date_only(self):
        invoice = _invoice(max_tenure=None)
        assert offer_rules.max_allowed_tenure(invoice, NOW) == 46

    def test_funding_amount_over_limit(self):
        with pytest.raises(FundingAmountExceedsLimit) as exc_info:
            offer_rules.validate_offer_terms(_invoice(), Decimal("15"), Decimal("95"), 30, NOW)
        assert exc_info.value.details["max_funding_amount"] == 90000.0
        assert exc_info.value.details["requested_funding_amount"] == 95000.0
        assert exc_info.value.details["max_funding_percentage"] == 90.0

    def test_funding_amount_at_limit_is_accepted(self):
        amount = offer_rules.validate_offer_terms(_invoice(), Decimal("15"), Decimal("90"), 1, NOW)
        assert amount == Decimal("90000.00")


class TestFinancials:
    def test_calculate_financials(self):
        financials = offer_rules.calculate_financials(Decimal("80000"), Decimal("15"), 30)
        assert financials.total_interest_amount == Decimal("986.30")
        assert financials.total_repayment_amount == Decimal("80986.30")
        assert financials.daily_interest_rate == Decimal("0.00041096")

    def test_effective_annual_rate(self):
        assert offer_rules.effective_annual_rate(Decimal("15"), 30) == pytest.approx(182.5)
        assert offer_rules.effective_annual_rate(Decimal("15"), 0) == 0.0


class TestExpiry:
    def test_default_expiry_is_48_hours(self):
        assert offer_rules.resolve_expiry(None, NOW) == NOW + timedelta(hours=48)

    def test_past_expiry_rejected(self):
        with pytest.raises(ValidationFailed):
            offer_rules.resolve_expiry(NOW - timedelta(minutes=1), NOW)

    def test_explicit_expiry_kept(self):
        expiry = NOW + timedelta(hours=3)
        assert offer_rules.resolve_expiry(expiry, NOW) == expiry

    def test_pending_but_lapsed_is_not_active(self):
        offer = _offer("OFF-1", 15, 1000, expires_at=NOW - timedelta(seconds=1))
        assert offer_rules.is_expired(offer, NOW)
        assert not offer_rules.is_active(offer, NOW)

    def test_time_until_expiry_in_minutes(self):
        offer = _offer("OFF-1", 15, 1000, expires_at=NOW + timedelta(minutes=90, seconds=10))
        assert offer_rules.time_until_expiry(offer, NOW) == 91
        assert offer_rules.format_time_until_expiry(91) == "1h 31m"
        assert offer_rules.format_time_until_expiry(3000) == "2d 2h"
        assert offer_rules.format_time_until_expiry(0) == "Expired"

    def test_ensure_actionable_on_expired_pending(self):
        offer = _offer("OFF-1", 15, 1000, expires_at=NOW - timedelta(seconds=1))
        with pytest.raises(OfferNotActionable) as exc_info:
            offer_rules.ensure_actionable(offer, "accepted", NOW)
        assert exc_info.value.details["expired"] is True

    def test_ensure_actionable_on_terminal_status(self):
        offer = _offer("OFF-1", 15, 1000, status="withdrawn")
        with pytest.raises(OfferNotActionable) as exc_info:
            offer_rules.ensure_actionable(offer, "accepted", NOW)
        assert "already withdrawn" in exc_info.value.message


class TestRanking:
    def test_lower_rate_wins(self):
        offers = [_offer("B", 16, 9000), _offer("A", 15, 1000)]
        assert [o.id for o in offer_rules.rank_offers(offers)] == ["A", "B"]

    def test_larger_amount_breaks_rate_tie(self):
        offers = [_offer("small", 15, 1000), _offer("large", 15, 5000)]
        assert [o.id for o in offer_rules.rank_offers(offers)] == ["large", "small"]

    def test_earlier_submission_breaks_full_tie(self):
        offers = [_offer("late", 15, 1000, created_minutes=5), _offer("early", 15, 1000)]
        assert [o.id for o in offer_rules.rank_offers(offers)] == ["early", "late"]

    def test_market_position(self):
        best = _offer("A", 15, 5000)
        middle = _offer("B", 15, 3000)
        worst = _offer("C", 15, 1000)
        position = offer_rules.market_position(middle, [worst, best, middle])
        assert position == {
            "rank": 2,
            "total_offers": 3,
            "better_than_percent": 33.3,
            "is_best": False,
            "outbid_by": 1,
        }

    def test_market_position_single_offer(self):
        only = _offer("A", 15, 5000)
        position = offer_rules.market_position(only, [only])
        assert position["is_best"] is True
        assert position["better_than_percent"] == 100.0

    def test_market_position_for_missing_offer(self):
        position = offer_rules.market_position(_offer("X", 15, 1), [_offer("A", 15, 5)])
        assert position["rank"] is None


class TestMarketplaceTerms:
    def test_uses_admin_terms(self):
        terms = offer_rules.default_marketplace_terms(_invoice(), NOW)
        assert terms == {
            "max_funding_amount": 90000.0,
            "recommended_interest_rate": 15.0,
            "max_tenure": 30,
            "terms_set": True,
        }

    def test_falls_back_to_defaults(self):
        invoice = _invoice(max_funding_amount=None, recommended_interest_rate=None, max_tenure=None)
        terms = offer_rules.default_marketplace_terms(invoice, NOW)
        assert terms == {
            "max_funding_amount": 90000.0,
            "recommended_interest_rate": 15.0,
            "max_tenure": 46,
            "terms_set": False,
        }
