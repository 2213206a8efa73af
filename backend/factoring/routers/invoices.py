from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.orm import Session

from factoring.core.auth import Actor, get_current_actor, require_roles
from factoring.core.cache import CacheBackend, get_cache
from factoring.core.database import get_db
from factoring.core.exceptions import MarketplaceError, to_http_exception
from factoring.models.invoice import Invoice, InvoiceStatus, SupportingDocumentType
from factoring.models.user import UserRole
from factoring.schemas.common import Page
from factoring.schemas.invoice import (
    InvoiceAnalyticsResponse,
    InvoiceCreate,
    InvoiceResponse,
    InvoiceSubmit,
    InvoiceUpdate,
    RepaymentCreate,
    SecureDocumentUrl,
    StatusHistoryResponse,
)
from factoring.services.document_storage import DocumentStorage, get_document_storage
from factoring.services.invoice_query_service import InvoiceFilters, InvoiceQueryService
from factoring.services.invoice_service import InvoiceService, SupportingUpload

router = APIRouter()

seller_only = require_roles(UserRole.SELLER)


@router.post(
    "/",
    response_model=InvoiceResponse,
    status_code=201,
    summary="Create invoice",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Only sellers can create invoices"},
        422: {"description": "Validation error"},
    },
)
async def create_invoice(
    data: InvoiceCreate,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> Invoice:
    """Create a DRAFT invoice owned by the calling seller."""
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.create_invoice(
            actor.user_id,
            anchor_id=data.anchor_id,
            amount=data.amount,
            currency=data.currency,
            issue_date=data.issue_date,
            due_date=data.due_date,
            description=data.description,
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/",
    response_model=Page[InvoiceResponse],
    summary="List my invoices",
    responses={401: {"description": "Unauthorized"}},
)
async def list_invoices(
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
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    """Invoices visible to the caller's role, filtered, sorted and paginated."""
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
    return await InvoiceQueryService(db, cache).get_user_invoices(
        actor, filters, page, limit, sort_by, sort_order
    )


@router.get(
    "/analytics",
    response_model=InvoiceAnalyticsResponse,
    summary="Invoice analytics",
    responses={401: {"description": "Unauthorized"}, 422: {"description": "Invalid period"}},
)
async def invoice_analytics(
    period: str = Query(default="30d"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    try:
        return await InvoiceQueryService(db, cache).get_invoice_analytics(
            actor, period, start_date, end_date
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Not a party to this invoice"},
        404: {"description": "Invoice not found"},
    },
)
async def get_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    try:
        return await InvoiceQueryService(db, cache).get_invoice_details(invoice_id, actor)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.put(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Update invoice",
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not editable"},
    },
)
async def update_invoice(
    invoice_id: str,
    data: InvoiceUpdate,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> Invoice:
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.update_invoice(
            invoice_id, actor.user_id, data.model_dump(exclude_unset=True)
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.delete(
    "/{invoice_id}",
    status_code=204,
    summary="Delete draft invoice",
    responses={404: {"description": "Invoice not found"}, 409: {"description": "Not a draft"}},
)
async def delete_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> None:
    service = InvoiceService(db, cache, storage=storage)
    try:
        await service.delete_invoice(invoice_id, actor.user_id)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/{invoice_id}/document",
    response_model=InvoiceResponse,
    summary="Upload the invoice document",
    responses={
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice is not editable"},
        422: {"description": "Unsupported or oversized file"},
    },
)
async def upload_document(
    invoice_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> Invoice:
    content = await file.read()
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.upload_invoice_document(
            invoice_id,
            actor.user_id,
            content,
            file.filename or "invoice",
            file.content_type or "application/octet-stream",
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/{invoice_id}/supporting-documents",
    response_model=InvoiceResponse,
    summary="Upload supporting documents",
    responses={
        404: {"description": "Invoice not found"},
        409: {"description": "Documents can no longer be added"},
        422: {"description": "Too many, unsupported or oversized files"},
    },
)
async def upload_supporting_documents(
    invoice_id: str,
    files: list[UploadFile] = File(...),
    document_type: SupportingDocumentType = Form(default=SupportingDocumentType.OTHER),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> Invoice:
    uploads = [
        SupportingUpload(
            content=await f.read(),
            filename=f.filename or "document",
            mime_type=f.content_type or "application/octet-stream",
            document_type=document_type,
        )
        for f in files
    ]
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.upload_supporting_documents(invoice_id, actor.user_id, uploads)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.delete(
    "/{invoice_id}/supporting-documents/{document_id}",
    response_model=InvoiceResponse,
    summary="Remove a supporting document",
    responses={404: {"description": "Invoice or document not found"}},
)
async def delete_supporting_document(
    invoice_id: str,
    document_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> Invoice:
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.delete_supporting_document(invoice_id, actor.user_id, document_id)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/{invoice_id}/submit",
    response_model=InvoiceResponse,
    summary="Submit invoice for anchor approval",
    responses={
        404: {"description": "Invoice not found"},
        409: {"description": "Invoice cannot be submitted"},
    },
)
async def submit_invoice(
    invoice_id: str,
    data: InvoiceSubmit | None = None,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(seller_only),
) -> Invoice:
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.submit_invoice(
            invoice_id, actor.user_id, data.final_notes if data else None
        )
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/{invoice_id}/status-history",
    response_model=StatusHistoryResponse,
    summary="Invoice status history",
    responses={403: {"description": "Not a party"}, 404: {"description": "Invoice not found"}},
)
async def status_history(
    invoice_id: str,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    try:
        return InvoiceQueryService(db, cache).get_status_history(invoice_id, actor)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.get(
    "/{invoice_id}/document-url",
    response_model=SecureDocumentUrl,
    summary="Signed document URL",
    responses={404: {"description": "Invoice or document not found"}},
)
async def document_url(
    invoice_id: str,
    kind: str = Query(default="invoice", description="'invoice' or a supporting document id"),
    expires_in: int = Query(default=3600, ge=60, le=86400),
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(get_current_actor),
) -> dict[str, Any]:
    service = InvoiceQueryService(db, cache, storage=storage)
    try:
        return service.get_secure_document_url(invoice_id, actor, kind, expires_in)
    except MarketplaceError as e:
        raise to_http_exception(e) from None


@router.post(
    "/{invoice_id}/repayments",
    response_model=InvoiceResponse,
    summary="Record a repayment",
    responses={
        403: {"description": "Only the funding lender or an admin"},
        409: {"description": "Invoice is not funded"},
    },
)
async def record_repayment(
    invoice_id: str,
    data: RepaymentCreate,
    db: Session = Depends(get_db),
    cache: CacheBackend = Depends(get_cache),
    storage: DocumentStorage = Depends(get_document_storage),
    actor: Actor = Depends(require_roles(UserRole.LENDER, UserRole.ADMIN)),
) -> Invoice:
    service = InvoiceService(db, cache, storage=storage)
    try:
        return await service.record_repayment(invoice_id, actor.user_id, actor.role, data.amount)
    except MarketplaceError as e:
        raise to_http_exception(e) from None
