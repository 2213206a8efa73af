"""Marketplace browsing, offers and acceptance."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from factoring.core.auth import Actor, get_current_actor, require_roles
from factoring.core.cache import CacheBackend, get_cache
from factoring.core.database import get_db
from factoring.core.exceptions import MarketplaceError, to_http_exception
from factoring.models.offer import Offer, OfferStatus
from factoring.models.user import UserRole
from factoring.schemas.invoice import InvoiceResponse
from factoring.schemas.marketplace import (
    CompetitiveAnalysis,
    MarketplaceInvoiceDetail,
    MarketplaceListingPage,
    MarketplaceOverview,
    TrendingInvoice,
)
from factoring.schemas.offer import (
    AcceptanceResponse,
    InvoiceOffersResponse,
    LenderPortfolioResponse,
    OfferAccept,
    OfferCreate,
    OfferReject,
    OfferResponse,
    OfferWithdraw,
)
from factoring.services.acceptance_service import AcceptanceService
from factoring.services.marketplace_query_service import (
    LenderOfferFilters,
    MarketplaceFilters,
    MarketplaceQueryService,
)
from factoring.services.offer_service import OfferService

router = APIRouter()

lender_only = require_roles(UserRole.LENDER)
seller_only = require_roles(UserRole.SELLER)


@router.get(
    "/invoices",
    response_model=MarketplaceListingPage,
    summary="Browse listed invoices",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Lenders only"}},
)
async def browse_invoices(
    min_amount: Decimal | None = Query(default=None, ge=0),
    max_amount: Decimal | None = Query(default=None, ge=0),
    min_days_until_due: int | None = Query(default=None, ge=0),
    max_days_until_due: int | None = Query(default=None, ge=0),
    anchor_id: str | None = None,
    currency: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: str | None = None,
    sort_order: str | None = Query(default=None, pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(lender_only),
) -> dict[str, Any]:
    filters = MarketplaceFilters(
        min_amount=min_amount,
        max_amount=max_amount,
        min_days_until_due=min_days_until_due,
        max_days_until_due=max_days_until_due,
        anchor_id=anchor_id,
        currency=currency,
    )
    return await MarketplaceQueryService(db, cache).browse_marketplace(
        actor.user_id, filters, page, limit, sort_by, sort_order
    )


@router.get(
    "/invoices/trending",
    response_model=list[TrendingInvoice],
    summary="Most viewed invoices",
    responses={401: {"description": "Unauthorized"}},
)
async def trending_invoices(
    limit: int = Query(default=10, ge=1, le=50),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> list[dict[str, Any]]:
    return await MarketplaceQueryService(db, cache).get_trending_invoices(limit)


@router.get(
    "/invoices/{invoice_id}",
    response_model=MarketplaceInvoiceDetail,
    summary="Listed invoice with competition",
    responses={
        403: {"description": "Lenders only"},
        409: {"description": "Invoice is not on the marketplace"},
    },
)
async def marketplace_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(lender_only),
) -> dict[str, Any]:
    try:
        return await MarketplaceQueryService(db, cache).get_marketplace_invoice_details(
            invoice_id, actor.user_id
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/invoices/{invoice_id}/offers",
    response_model=OfferResponse,
    status_code=201,
    summary="Place an offer",
    responses={
        403: {"description": "Lenders only"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice not listed or offer already pending"},
        422: {"description": "Offer terms outside the invoice's funding terms"},
    },
)
async def create_offer(
    invoice_id: str,
    data: OfferCreate,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(lender_only),
) -> Offer:
    service = OfferService(db, cache)
    try:
        return await service.create_offer(
            actor.user_id,
            invoice_id,
            interest_rate=data.interest_rate,
            funding_percentage=data.funding_percentage,
            tenure=data.tenure,
            terms=data.terms,
            lender_notes=data.lender_notes,
            expires_at=data.expires_at,
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/invoices/{invoice_id}/offers",
    response_model=InvoiceOffersResponse,
    summary="Offers on my invoice",
    responses={
        403: {"description": "Not the invoice's seller"},
        404: {"description": "Invoice not found"},
    },
)
async def invoice_offers(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    try:
        return await MarketplaceQueryService(db, cache).get_invoice_offers(invoice_id, actor)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/invoices/{invoice_id}/analysis",
    response_model=CompetitiveAnalysis,
    summary="Competitive analysis of live offers",
    responses={
        403: {"description": "No access to this invoice"},
        404: {"description": "Invoice not found"},
    },
)
async def competitive_analysis(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    try:
        return await MarketplaceQueryService(db, cache).get_competitive_analysis(invoice_id, actor)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/offers/mine",
    response_model=LenderPortfolioResponse,
    summary="My offers",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Lenders only"}},
)
async def my_offers(
    status: list[OfferStatus] | None = Query(default=None),
    min_amount: Decimal | None = Query(default=None, ge=0),
    max_amount: Decimal | None = Query(default=None, ge=0),
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: str | None = None,
    sort_order: str | None = Query(default=None, pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(lender_only),
) -> dict[str, Any]:
    filters = LenderOfferFilters(
        statuses=status,
        min_amount=min_amount,
        max_amount=max_amount,
        created_from=created_from,
        created_to=created_to,
    )
    return await MarketplaceQueryService(db, cache).get_lender_offers(
        actor.user_id, filters, page, limit, sort_by, sort_order
    )


@router.get(
    "/offers/{offer_id}",
    response_model=OfferResponse,
    summary="Get offer",
    responses={403: {"description": "No access to this offer"}, 404: {"description": "Offer not found"}},
)
async def get_offer(
    offer_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    try:
        return await MarketplaceQueryService(db, cache).get_offer_details(offer_id, actor)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/offers/{offer_id}/withdraw",
    response_model=OfferResponse,
    summary="Withdraw my pending offer",
    responses={
        403: {"description": "Not the offer's lender"},
        404: {"description": "Offer not found"},
        409: {"description": "Offer is no longer pending"},
    },
)
async def withdraw_offer(
    offer_id: str,
    data: OfferWithdraw | None = None,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(lender_only),
) -> Offer:
    try:
        return await OfferService(db, cache).withdraw_offer(
            offer_id, actor.user_id, data.reason if data else None
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/offers/{offer_id}/reject",
    response_model=OfferResponse,
    summary="Reject an offer on my invoice",
    responses={
        403: {"description": "Not the invoice's seller"},
        404: {"description": "Offer not found"},
        409: {"description": "Offer is no longer pending"},
    },
)
async def reject_offer(
    offer_id: str,
    data: OfferReject | None = None,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(seller_only),
) -> Offer:
    try:
        return await OfferService(db, cache).reject_offer(
            offer_id, actor.user_id, data.reason if data else None
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/offers/{offer_id}/accept",
    response_model=AcceptanceResponse,
    summary="Accept an offer and fund the invoice",
    responses={
        403: {"description": "Not the invoice's seller"},
        404: {"description": "Offer not found"},
        409: {"description": "Offer or invoice no longer actionable, or acceptance in progress"},
    },
)
async def accept_offer(
    offer_id: str,
    data: OfferAccept | None = None,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(seller_only),
) -> AcceptanceResponse:
    service = AcceptanceService(db, cache)
    try:
        result = await service.accept_offer(
            offer_id, actor.user_id, data.acceptance_notes if data else None
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None
    return AcceptanceResponse(
        offer=OfferResponse.model_validate(result.offer),
        invoice=InvoiceResponse.model_validate(result.invoice),
        rejected_offer_ids=result.rejected_offer_ids,
    )


@router.get(
    "/overview",
    response_model=MarketplaceOverview,
    summary="Marketplace overview",
    responses={401: {"description": "Unauthorized"}},
)
async def overview(
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    return await MarketplaceQueryService(db, cache).get_marketplace_overview()
