"""Anchor review queue and decisions."""

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from factoring.core.auth import Actor, require_roles
from factoring.core.cache import CacheBackend, get_cache
from factoring.core.database import get_db
from factoring.core.exceptions import MarketplaceError, to_http_exception
from factoring.models.invoice import Invoice
from factoring.models.user import UserRole
from factoring.schemas.common import Page
from factoring.schemas.invoice import AnchorReviewRequest, InvoiceResponse
from factoring.services.document_storage import DocumentStorage, get_document_storage
from factoring.services.invoice_query_service import InvoiceQueryService
from factoring.services.invoice_service import FundingTerms, InvoiceService

router = APIRouter()

anchor_only = require_roles(UserRole.ANCHOR)


@router.get(
    "/invoices/pending",
    response_model=Page[InvoiceResponse],
    summary="Invoices awaiting my approval",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Anchors only"}},
)
async def pending_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(anchor_only),
) -> dict[str, Any]:
    return await InvoiceQueryService(db, cache).get_anchor_pending(actor.user_id, page, limit)


@router.get(
    "/invoices/history",
    response_model=Page[InvoiceResponse],
    summary="Invoices I have reviewed",
    responses={401: {"description": "Unauthorized"}, 403: {"description": "Anchors only"}},
)
async def reviewed_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(anchor_only),
) -> dict[str, Any]:
    return await InvoiceQueryService(db, cache).get_anchor_history(actor.user_id, page, limit)


@router.post(
    "/invoices/{invoice_id}/review",
    response_model=InvoiceResponse,
    summary="Approve or reject a submitted invoice",
    responses={
        403: {"description": "Not the invoice's anchor"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not awaiting anchor review"},
        422: {"description": "Invalid funding terms"},
    },
)
async def review_invoice(
    invoice_id: str,
    data: AnchorReviewRequest,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(anchor_only),
) -> Invoice:
    terms = FundingTerms(**data.funding_terms.model_dump()) if data.funding_terms else None
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.anchor_review(invoice_id, actor.user_id, data.action, data.notes, terms)
    except MarketplaceError as e:
        raise to_http_exception(e) from None
