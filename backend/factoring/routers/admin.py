"""Admin verification, listing, settlement and maintenance endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from factoring.core.auth import Actor, require_roles
from factoring.core.cache import CacheBackend, CacheUnavailable, get_cache
from factoring.core.database import get_db
from factoring.core.exceptions import MarketplaceError, to_http_exception
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.user import UserRole
from factoring.schemas.common import Page
from factoring.schemas.invoice import AdminVerifyRequest, InvoiceResponse, SettleRequest
from factoring.schemas.marketplace import MarketplaceOverview
from factoring.services.document_storage import DocumentStorage, get_document_storage
from factoring.services.invoice_cache import InvoiceCache
from factoring.services.invoice_query_service import InvoiceFilters, InvoiceQueryService
from factoring.services.invoice_service import FundingTerms, InvoiceService
from factoring.services.marketplace_query_service import MarketplaceQueryService
from factoring.services.offer_service import OfferService
from factoring.services.outbox_service import OutboxService

router = APIRouter()

admin_only = require_roles(UserRole.ADMIN)


@router.get(
    "/invoices/pending",
    response_model=Page[InvoiceResponse],
    summary="Invoices awaiting verification",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Admins only"}},
)
async def pending_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(admin_only),
) -> dict[str, Any]:
    return await InvoiceQueryService(db, cache).get_admin_pending(page, limit)


@router.get(
    "/invoices",
    response_model=Page[InvoiceResponse],
    summary="All invoices",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Admins only"}},
)
async def all_invoices(
    status: list[InvoiceStatus] | None = Query(default=None),
    min_amount: Decimal | None = Query(default=None, ge=0),
    max_amount: Decimal | None = Query(default=None, ge=0),
    currency: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    due_from: datetime | None = None,
    due_to: datetime | None = None,
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: str | None = None,
    sort_order: str | None = Query(default=None, pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(admin_only),
) -> dict[str, Any]:
    filters = InvoiceFilters(
        statuses=status,
        min_amount=min_amount,
        max_amount=max_amount,
        currency=currency,
        created_from=created_from,
        created_to=created_to,
        due_from=due_from,
        due_to=due_to,
        search=search,
    )
    try:
        return await InvoiceQueryService(db, cache).get_admin_all(
            actor, filters, page, limit, sort_by, sort_order
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/invoices/{invoice_id}/verify",
    response_model=InvoiceResponse,
    summary="Verify or reject an anchor-approved invoice",
    responses={
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not awaiting verification"},
        422: {"description": "Invalid funding terms"},
    },
)
async def verify_invoice(
    invoice_id: str,
    data: AdminVerifyRequest,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(admin_only),
) -> Invoice:
    terms = FundingTerms(**data.funding_terms.model_dump()) if data.funding_terms else None
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.admin_verify(invoice_id, actor.user_id, data.action, data.notes, terms)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/invoices/{invoice_id}/list",
    response_model=InvoiceResponse,
    summary="List a verified invoice on the marketplace",
    responses={
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not verified"},
    },
)
async def list_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(admin_only),
) -> Invoice:
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.list_to_marketplace(invoice_id, actor.user_id)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/invoices/{invoice_id}/settle",
    response_model=InvoiceResponse,
    summary="Settle a repaid invoice",
    responses={
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not repaid"},
    },
)
async def settle_invoice(
    invoice_id: str,
    data: SettleRequest | None = None,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(admin_only),
) -> Invoice:
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.settle_invoice(invoice_id, actor.user_id, data.notes if data else None)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/offers/expire",
    summary="Expire lapsed pending offers now",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Admins only"}},
)
async def expire_offers(
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(admin_only),
) -> dict[str, int]:
    expired = await OfferService(db, cache).expire_offers()
    return {"expired_count": expired}


@router.post(
    "/outbox/process",
    summary="Deliver pending and retry failed outbox events",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Admins only"}},
)
async def process_outbox(
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(admin_only),
) -> dict[str, int]:
    attempted = await OutboxService(db, cache, storage=storage).process_pending_and_failed()
    return {"attempted_count": attempted}


@router.post(
    "/cache/cleanup",
    summary="Give orphaned cache keys a TTL",
    responses={503: {"description": "Cache unavailable"}},
)
async def cleanup_cache(
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(admin_only),
) -> dict[str, int]:
    try:
        fixed = await InvoiceCache(cache).cleanup_expired_caches()
    except CacheUnavailable:
        raise HTTPException(status_code=503, detail="Cache unavailable") from None
    return {"keys_fixed": fixed}


@router.get(
    "/marketplace/overview",
    response_model=MarketplaceOverview,
    summary="Marketplace overview",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Admins only"}},
)
async def marketplace_overview(
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(admin_only),
) -> dict[str, Any]:
    return await MarketplaceQueryService(db, cache).get_marketplace_overview()
