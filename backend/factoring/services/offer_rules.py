"""Offer bidding rules, expiry guards and competitive ranking."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from factoring.core.exceptions import (
    FundingAmountExceedsLimit,
    FundingTermsNotSet,
    InterestRateMismatch,
    InvoiceNotAvailable,
    OfferNotActionable,
    TenureExceedsLimit,
    ValidationFailed,
)
from factoring.models.invoice import InvoiceStatus
from factoring.models.offer import OfferStatus
from factoring.models.shared import as_utc, utc_now
from factoring.services.invoice_rules import days_until_due

# Lending period must end this many days before the invoice falls due
COLLECTION_BUFFER_DAYS = 14
DEFAULT_OFFER_EXPIRY = timedelta(hours=48)

# Marketplace fallbacks shown for listings without admin terms
DEFAULT_FUNDING_RATIO = Decimal("0.9")
DEFAULT_INTEREST_RATE = Decimal("15")

TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class OfferFinancials:
    funding_amount: Decimal
    daily_interest_rate: Decimal
    total_interest_amount: Decimal
    total_repayment_amount: Decimal
    effective_annual_rate: float


def _dec(value: Any) -> Decimal:
    return Decimal(str(value))


def max_allowed_tenure(invoice: Any, now: datetime | None = None) -> int:
    """min(admin max tenure, days until due - collection buffer), floored at 0."""
    by_due_date = max(0, days_until_due(invoice, now) - COLLECTION_BUFFER_DAYS)
    if invoice.max_tenure is None:
        return by_due_date
    return min(int(invoice.max_tenure), by_due_date)


def requested_funding_amount(invoice_amount: Any, funding_percentage: Any) -> Decimal:
    amount = _dec(invoice_amount) * _dec(funding_percentage) / Decimal(100)
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def validate_offer_terms(
    invoice: Any,
    interest_rate: Any,
    funding_percentage: Any,
    tenure: int,
    now: datetime | None = None,
) -> Decimal:
    """Check a bid against the invoice's marketplace terms.

    Checks run in a fixed order and the first violation is raised with the
    limit and the submitted value in ``details``. Returns the funding amount
    the bid asks for.
    """
    now = now or utc_now()
    if str(invoice.status) != InvoiceStatus.LISTED.value:
        raise InvoiceNotAvailable(
            "Invoice is not available for offers",
            invoice_id=str(invoice.id),
            status=str(invoice.status),
        )
    if invoice.recommended_interest_rate is None or invoice.max_funding_amount is None:
        raise FundingTermsNotSet(
            "Admin funding terms have not been set for this invoice",
            invoice_id=str(invoice.id),
        )

    percentage = _dec(funding_percentage)
    if not (Decimal(1) <= percentage <= Decimal(100)):
        raise ValidationFailed(
            "Funding percentage must be between 1 and 100",
            field="funding_percentage",
            value=float(percentage),
        )
    if tenure < 1:
        raise ValidationFailed("Tenure must be at least 1 day", field="tenure", value=tenure)

    rate = _dec(interest_rate)
    recommended = _dec(invoice.recommended_interest_rate)
    if rate != recommended:
        raise InterestRateMismatch(
            f"Interest rate must be exactly {recommended}% as set by the admin",
            required_rate=float(recommended),
            provided_rate=float(rate),
        )

    max_tenure = max_allowed_tenure(invoice, now)
    if tenure > max_tenure:
        raise TenureExceedsLimit(
            f"Tenure cannot exceed {max_tenure} days",
            max_tenure=max_tenure,
            provided_tenure=tenure,
            days_until_due=days_until_due(invoice, now),
            collection_buffer_days=COLLECTION_BUFFER_DAYS,
        )

    funding_amount = requested_funding_amount(invoice.amount, percentage)
    max_funding = _dec(invoice.max_funding_amount)
    if funding_amount > max_funding:
        raise FundingAmountExceedsLimit(
            f"Funding amount cannot exceed {max_funding}",
            max_funding_amount=float(max_funding),
            requested_funding_amount=float(funding_amount),
            max_funding_percentage=float(max_funding / _dec(invoice.amount) * 100),
        )
    return funding_amount


def calculate_financials(funding_amount: Any, interest_rate: Any, tenure: int) -> OfferFinancials:
    """Simple daily-rate interest over the tenure."""
    principal = _dec(funding_amount)
    daily_rate = _dec(interest_rate) / Decimal(365) / Decimal(100)
    interest = (principal * daily_rate * Decimal(tenure)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    return OfferFinancials(
        funding_amount=principal,
        daily_interest_rate=daily_rate.quantize(Decimal("0.00000001"), rounding=ROUND_HALF_UP),
        total_interest_amount=interest,
        total_repayment_amount=principal + interest,
        effective_annual_rate=effective_annual_rate(interest_rate, tenure),
    )


def effective_annual_rate(interest_rate: Any, tenure: int | None) -> float:
    if not interest_rate or not tenure:
        return 0.0
    return float(_dec(interest_rate) * 365 / Decimal(tenure))


def resolve_expiry(expires_at: datetime | None, now: datetime | None = None) -> datetime:
    now = now or utc_now()
    if expires_at is None:
        return now + DEFAULT_OFFER_EXPIRY
    resolved = as_utc(expires_at)
    assert resolved is not None
    if resolved <= now:
        raise ValidationFailed("Offer expiry must be in the future", field="expires_at")
    return resolved


# --- Expiry and actionability ---


def is_expired(offer: Any, now: datetime | None = None) -> bool:
    now = now or utc_now()
    expires_at = as_utc(offer.expires_at)
    return expires_at is not None and now > expires_at


def is_active(offer: Any, now: datetime | None = None) -> bool:
    return str(offer.status) == OfferStatus.PENDING.value and not is_expired(offer, now)


def time_until_expiry(offer: Any, now: datetime | None = None) -> int:
    """Whole minutes until expiry, rounded up, never negative."""
    now = now or utc_now()
    expires_at = as_utc(offer.expires_at)
    if expires_at is None:
        return 0
    return max(0, math.ceil((expires_at - now) / timedelta(minutes=1)))


def format_time_until_expiry(minutes: int) -> str:
    if minutes <= 0:
        return "Expired"
    hours, mins = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {mins}m"
    return f"{mins}m"


can_be_withdrawn = is_active
can_be_accepted = is_active
can_be_rejected = is_active


def ensure_actionable(offer: Any, action: str, now: datetime | None = None) -> None:
    if is_active(offer, now):
        return
    expired = str(offer.status) == OfferStatus.PENDING.value
    raise OfferNotActionable(
        f"Offer cannot be {action} (it has expired)"
        if expired
        else f"Offer cannot be {action} (it is already {offer.status})",
        offer_id=str(offer.id),
        status=str(offer.status),
        expired=expired,
    )


# --- Ranking ---


def ranking_key(offer: Any) -> tuple[Decimal, Decimal, datetime]:
    """Lowest rate first, then larger amount, then earliest submission."""
    created = as_utc(offer.created_at)
    assert created is not None
    return (_dec(offer.interest_rate), -_dec(offer.amount), created)


def rank_offers(offers: list[Any]) -> list[Any]:
    return sorted(offers, key=ranking_key)


def market_position(offer: Any, live_offers: list[Any]) -> dict[str, Any]:
    """Where ``offer`` stands among the live offers on its invoice."""
    ranked = rank_offers(live_offers)
    ids = [str(o.id) for o in ranked]
    total = len(ranked)
    if str(offer.id) not in ids:
        return {"rank": None, "total_offers": total, "better_than_percent": 0.0, "is_best": False}
    rank = ids.index(str(offer.id)) + 1
    better_than = ((total - rank) / total * 100) if total > 1 else 100.0
    return {
        "rank": rank,
        "total_offers": total,
        "better_than_percent": round(better_than, 1),
        "is_best": rank == 1,
        "outbid_by": rank - 1,
    }


def default_marketplace_terms(invoice: Any, now: datetime | None = None) -> dict[str, Any]:
    """Funding terms shown on a listing, falling back to defaults when unset."""
    amount = _dec(invoice.amount)
    max_funding = (
        _dec(invoice.max_funding_amount)
        if invoice.max_funding_amount is not None
        else (amount * DEFAULT_FUNDING_RATIO).quantize(TWO_PLACES)
    )
    rate = (
        _dec(invoice.recommended_interest_rate)
        if invoice.recommended_interest_rate is not None
        else DEFAULT_INTEREST_RATE
    )
    tenure = (
        int(invoice.max_tenure)
        if invoice.max_tenure is not None
        else max(0, days_until_due(invoice, now) - COLLECTION_BUFFER_DAYS)
    )
    return {
        "max_funding_amount": float(max_funding),
        "recommended_interest_rate": float(rate),
        "max_tenure": tenure,
        "terms_set": (
            invoice.recommended_interest_rate is not None
            and invoice.max_funding_amount is not None
        ),
    }
