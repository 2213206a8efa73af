from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, computed_field

from factoring.schemas.invoice import InvoiceResponse
from factoring.services import offer_rules


class OfferCreate(BaseModel):
    interest_rate: Decimal = Field(ge=0, le=100)
    funding_percentage: Decimal = Field(ge=1, le=100)
    tenure: int = Field(ge=1)
    terms: str | None = Field(default=None, max_length=2000)
    lender_notes: str | None = Field(default=None, max_length=1000)
    expires_at: datetime | None = None


class OfferWithdraw(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class OfferReject(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class OfferAccept(BaseModel):
    acceptance_notes: str | None = Field(default=None, max_length=500)


class OfferResponse(BaseModel):
    id: str
    invoice_id: str
    lender_id: str
    amount: Decimal
    interest_rate: Decimal
    funding_percentage: Decimal
    tenure: int
    terms: str | None = None
    lender_notes: str | None = None
    status: str
    expires_at: datetime
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    withdrawn_at: datetime | None = None
    expired_at: datetime | None = None
    acceptance_notes: str | None = None
    rejection_reason: str | None = None
    withdrawal_reason: str | None = None
    daily_interest_rate: Decimal | None = None
    total_interest_amount: Decimal | None = None
    total_repayment_amount: Decimal | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_expired(self) -> bool:
        return offer_rules.is_expired(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def time_until_expiry(self) -> int:
        """Minutes until expiry; 0 once expired."""
        return offer_rules.time_until_expiry(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def effective_annual_rate(self) -> float:
        return offer_rules.effective_annual_rate(self.interest_rate, self.tenure)


class MarketPosition(BaseModel):
    rank: int | None = None
    total_offers: int
    better_than_percent: float
    is_best: bool = False
    outbid_by: int | None = None


class AcceptanceResponse(BaseModel):
    offer: OfferResponse
    invoice: InvoiceResponse
    rejected_offer_ids: list[str]


class InvoiceOffersResponse(BaseModel):
    invoice_id: str
    offers: list[OfferResponse]
    pending_count: int
    best_offer: OfferResponse | None = None


class LenderOfferItem(OfferResponse):
    invoice_status: str | None = None
    invoice_amount: Decimal | None = None
    invoice_due_date: datetime | None = None
    market_position: MarketPosition | None = None


class LenderPortfolioResponse(BaseModel):
    items: list[LenderOfferItem]
    total: int
    page: int
    limit: int
    status_counts: dict[str, int]
