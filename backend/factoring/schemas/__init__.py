from factoring.schemas.common import Page
from factoring.schemas.invoice import (
    AdminVerifyRequest,
    AnchorReviewRequest,
    FundingTermsInput,
    InvoiceAnalyticsResponse,
    InvoiceCreate,
    InvoiceResponse,
    InvoiceSubmit,
    InvoiceUpdate,
    RepaymentCreate,
    SecureDocumentUrl,
    SettleRequest,
    StatusHistoryResponse,
)
from factoring.schemas.marketplace import (
    CompetitiveAnalysis,
    MarketplaceInvoiceDetail,
    MarketplaceListing,
    MarketplaceListingPage,
    MarketplaceOverview,
    TrendingInvoice,
)
from factoring.schemas.notification import NotificationCountResponse, NotificationResponse
from factoring.schemas.offer import (
    AcceptanceResponse,
    InvoiceOffersResponse,
    LenderPortfolioResponse,
    MarketPosition,
    OfferAccept,
    OfferCreate,
    OfferReject,
    OfferResponse,
    OfferWithdraw,
)

__all__ = [
    "AcceptanceResponse",
    "AdminVerifyRequest",
    "AnchorReviewRequest",
    "CompetitiveAnalysis",
    "FundingTermsInput",
    "InvoiceAnalyticsResponse",
    "InvoiceCreate",
    "InvoiceOffersResponse",
    "InvoiceResponse",
    "InvoiceSubmit",
    "InvoiceUpdate",
    "LenderPortfolioResponse",
    "MarketPosition",
    "MarketplaceInvoiceDetail",
    "MarketplaceListing",
    "MarketplaceListingPage",
    "MarketplaceOverview",
    "NotificationCountResponse",
    "NotificationResponse",
    "OfferAccept",
    "OfferCreate",
    "OfferReject",
    "OfferResponse",
    "OfferWithdraw",
    "Page",
    "RepaymentCreate",
    "SecureDocumentUrl",
    "SettleRequest",
    "StatusHistoryResponse",
    "TrendingInvoice",
]
