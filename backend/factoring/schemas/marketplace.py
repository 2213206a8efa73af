from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from factoring.schemas.offer import MarketPosition, OfferResponse


class FundingTermsView(BaseModel):
    max_funding_amount: float
    recommended_interest_rate: float
    max_tenure: int
    terms_set: bool


class MarketplaceListing(BaseModel):
    id: str
    anchor_id: str
    anchor_name: str | None = None
    amount: Decimal
    currency: str
    issue_date: datetime
    due_date: datetime
    description: str | None = None
    listed_at: datetime | None = None
    days_until_due: int
    funding_terms: FundingTermsView
    offer_count: int
    best_rate: float | None = None
    has_my_offer: bool = False


class MarketplaceListingPage(BaseModel):
    items: list[MarketplaceListing]
    total: int
    page: int
    limit: int


class RangeStats(BaseModel):
    min: float
    max: float
    average: float


class RankedOffer(BaseModel):
    rank: int
    offer_id: str
    amount: float
    interest_rate: float
    funding_percentage: float
    tenure: int
    created_at: datetime


class CompetitiveAnalysis(BaseModel):
    invoice_id: str
    total_offers: int
    interest_rate: RangeStats | None = None
    amount: RangeStats | None = None
    funding_percentage: RangeStats | None = None
    top_offers: list[RankedOffer]
    market_position: MarketPosition | None = None


class MarketplaceInvoiceDetail(BaseModel):
    listing: MarketplaceListing
    analysis: CompetitiveAnalysis
    my_offer: OfferResponse | None = None


class TrendingInvoice(BaseModel):
    invoice_id: str
    views: int
    amount: Decimal | None = None
    currency: str | None = None
    due_date: datetime | None = None
    status: str | None = None


class LenderActivityItem(BaseModel):
    lender_id: str
    lender_name: str | None = None
    offer_count: int
    total_amount: float


class MarketplaceOverview(BaseModel):
    active_listings: int
    volume_available: float
    active_offers: int
    offer_volume: float
    average_interest_rate: float
    average_funding_percentage: float
    average_tenure: float
    daily_new_offers: int
    daily_accepted_offers: int
    average_hours_to_first_offer: float | None = None
    average_hours_to_acceptance: float | None = None
    top_lenders: list[LenderActivityItem]
    trending: list[TrendingInvoice]
    generated_at: datetime
