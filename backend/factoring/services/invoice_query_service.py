"""Read side of the invoice lifecycle: details, history, role-scoped lists and analytics.

Every projection here is rebuilt from the authoritative tables on a cache
miss, so the cache can be flushed or disabled at any time.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from factoring.core.auth import Actor
from factoring.core.cache import CacheBackend, best_effort
from factoring.core.exceptions import NotAuthorized, NotFound, ValidationFailed
from factoring.core.locks import read_through
from factoring.core.sorting import parse_sort
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.shared import as_utc, utc_now
from factoring.models.user import UserRole
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.user_repository import UserRepository
from factoring.schemas.invoice import InvoiceResponse
from factoring.services import invoice_rules
from factoring.services.document_storage import DocumentStorage, get_document_storage
from factoring.services.invoice_cache import (
    ANALYTICS_TTL,
    INVOICE_DETAIL_TTL,
    INVOICE_LIST_TTL,
    INVOICE_SEARCH_TTL,
    InvoiceCache,
    admin_list_key,
    analytics_key,
    anchor_list_key,
    detail_key,
    filters_digest,
    search_key,
    seller_list_key,
)

logger = logging.getLogger(__name__)

INTERNAL_NOTE_MARKER = "INTERNAL:"
INTERNAL_NOTE_PLACEHOLDER = "Rejected - please check with support for details"
ANALYTICS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "365d": 365}
DEFAULT_SECURE_URL_TTL = 3600


@dataclass
class InvoiceFilters:
    statuses: list[InvoiceStatus] | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    currency: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    due_from: datetime | None = None
    due_to: datetime | None = None
    search: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def serialize_invoice(invoice: Invoice) -> dict[str, Any]:
    return InvoiceResponse.model_validate(invoice).model_dump(mode="json")


def _page(items: list[Invoice], total: int, page: int, limit: int) -> dict[str, Any]:
    return {
        "items": [serialize_invoice(i) for i in items],
        "total": total,
        "page": page,
        "limit": limit,
    }


def can_view(invoice: Any, actor: Actor) -> bool:
    """Admins see everything; other roles only see invoices they are party to.

    ``invoice`` is either an ORM row or its cached JSON form.
    """
    get = invoice.get if isinstance(invoice, dict) else lambda k: getattr(invoice, k)
    if actor.is_admin:
        return True
    if actor.role == UserRole.SELLER:
        return str(get("seller_id")) == actor.user_id
    if actor.role == UserRole.ANCHOR:
        return str(get("anchor_id")) == actor.user_id
    if actor.role == UserRole.LENDER:
        return str(get("status")) == InvoiceStatus.LISTED.value or (
            get("funded_by") is not None and str(get("funded_by")) == actor.user_id
        )
    return False


def _hours(start: datetime | None, end: datetime | None) -> float | None:
    start, end = as_utc(start), as_utc(end)
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 3600


def _mean(values: list[float]) -> float | None:
    return round(sum(values) / len(values), 2) if values else None


class InvoiceQueryService:
    def __init__(
        self,
        db: Session,
        cache: CacheBackend,
        storage: DocumentStorage | None = None,
    ):
        self.db = db
        self.cache = cache
        self.repo = InvoiceRepository(db)
        self.user_repo = UserRepository(db)
        self.invoice_cache = InvoiceCache(cache)
        self.storage = storage or get_document_storage()

    def _load_details(self, invoice_id: str) -> dict[str, Any] | None:
        invoice = self.repo.get_by_id(invoice_id)
        return serialize_invoice(invoice) if invoice is not None else None

    async def get_invoice_details(self, invoice_id: str, actor: Actor) -> dict[str, Any]:
        """Invoice detail, served through ``invoice:details:{id}``.

        The access check runs on every request, hit or miss; the cached
        payload itself is the same for every viewer.
        """
        data = await read_through(
            self.cache,
            detail_key(invoice_id),
            INVOICE_DETAIL_TTL,
            lambda: self._load_details(invoice_id),
        )
        if data is None:
            raise NotFound("Invoice not found", invoice_id=invoice_id)
        if not can_view(data, actor):
            raise NotAuthorized("You do not have access to this invoice", invoice_id=invoice_id)
        await best_effort(self.invoice_cache.track_view(invoice_id), "tracking an invoice view")
        return data

    def _get_visible(self, invoice_id: str, actor: Actor) -> Invoice:
        invoice = self.repo.get_by_id(invoice_id)
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=invoice_id)
        if not can_view(invoice, actor):
            raise NotAuthorized("You do not have access to this invoice", invoice_id=invoice_id)
        return invoice

    def get_status_history(self, invoice_id: str, actor: Actor) -> dict[str, Any]:
        """Audit trail, newest first, with display metadata and timeline metrics."""
        invoice = self._get_visible(invoice_id, actor)
        entries = self.repo.get_history(invoice_id)
        users = self.user_repo.get_many({str(e.changed_by) for e in entries})

        history = []
        for entry in entries:
            notes = entry.notes
            if notes and not actor.is_admin and INTERNAL_NOTE_MARKER in str(notes):
                notes = INTERNAL_NOTE_PLACEHOLDER
            user = users.get(str(entry.changed_by))
            history.append(
                {
                    "status": entry.status,
                    "timestamp": as_utc(entry.timestamp),  # type: ignore[arg-type]
                    "changed_by": entry.changed_by,
                    "changed_by_name": user.display_name if user else None,
                    "notes": notes,
                    "metadata": invoice_rules.status_metadata(str(entry.status), invoice),
                }
            )

        timestamps = [as_utc(e.timestamp) for e in entries]  # type: ignore[arg-type]
        submitted = [
            as_utc(e.timestamp)  # type: ignore[arg-type]
            for e in entries
            if e.status == InvoiceStatus.SUBMITTED.value
        ]
        first, last = (min(timestamps), max(timestamps)) if timestamps else (None, None)  # type: ignore[type-var]
        timeline = {
            "total_changes": len(entries),
            "status_breakdown": dict(Counter(str(e.status) for e in entries)),
            "first_submitted": min(submitted) if submitted else None,  # type: ignore[type-var]
            "last_modified": last,
            "processing_days": (
                math.ceil((last - first) / timedelta(days=1))  # type: ignore[operator]
                if first is not None
                else None
            ),
        }
        return {
            "invoice_id": invoice_id,
            "current_status": invoice.status,
            "history": history,
            "timeline": timeline,
        }

    def get_secure_document_url(
        self,
        invoice_id: str,
        actor: Actor,
        kind: str = "invoice",
        expires_in: int = DEFAULT_SECURE_URL_TTL,
    ) -> dict[str, Any]:
        """Signed, expiring URL for the primary document or a supporting document id."""
        invoice = self._get_visible(invoice_id, actor)
        if kind == "invoice":
            document = invoice.invoice_document
        else:
            document = next(
                (d for d in invoice.supporting_documents or [] if d.get("id") == kind), None
            )
        if not document or not document.get("storage_id"):
            raise NotFound("Document not found", invoice_id=invoice_id, document=kind)
        url = self.storage.generate_secure_url(document["storage_id"], expires_in)
        return {"url": url, "expires_in": expires_in}

    # --- Lists ---

    def _scope(self, actor: Actor) -> dict[str, str]:
        if actor.role == UserRole.SELLER:
            return {"seller_id": actor.user_id}
        if actor.role == UserRole.ANCHOR:
            return {"anchor_id": actor.user_id}
        if actor.role == UserRole.LENDER:
            return {"funded_by": actor.user_id}
        return {}

    def _list_key(self, actor: Actor, digest: str) -> tuple[str, int]:
        if actor.role == UserRole.SELLER:
            return seller_list_key(actor.user_id, digest), INVOICE_LIST_TTL
        if actor.role == UserRole.ANCHOR:
            return anchor_list_key(actor.user_id, digest), INVOICE_LIST_TTL
        if actor.role == UserRole.ADMIN:
            return admin_list_key(digest), INVOICE_LIST_TTL
        return search_key(filters_digest({"lender": actor.user_id, "digest": digest})), INVOICE_SEARCH_TTL

    async def get_user_invoices(
        self,
        actor: Actor,
        filters: InvoiceFilters | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> dict[str, Any]:
        """The caller's invoices: sellers see their own, anchors their assigned,
        lenders those they funded and admins everything."""
        filters = filters or InvoiceFilters()
        order_by = parse_sort(sort_by, sort_order)
        scope = self._scope(actor)
        digest = filters_digest(
            {**filters.as_dict(), **scope, "page": page, "limit": limit, "order_by": order_by}
        )
        key, ttl = self._list_key(actor, digest)

        def load() -> dict[str, Any]:
            items, total = self.repo.search(
                skip=(page - 1) * limit,
                limit=limit,
                order_by=order_by,
                **scope,
                **filters.as_dict(),
            )
            return _page(items, total, page, limit)

        return await read_through(self.cache, key, ttl, load)  # type: ignore[no-any-return]

    async def get_anchor_pending(self, anchor_id: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
        """SUBMITTED invoices awaiting this anchor, oldest submission first."""
        key = anchor_list_key(anchor_id, filters_digest({"queue": "pending", "page": page, "limit": limit}))

        def load() -> dict[str, Any]:
            items, total = self.repo.get_pending_for_anchor(anchor_id, (page - 1) * limit, limit)
            return _page(items, total, page, limit)

        return await read_through(self.cache, key, INVOICE_LIST_TTL, load)  # type: ignore[no-any-return]

    async def get_anchor_history(self, anchor_id: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
        key = anchor_list_key(anchor_id, filters_digest({"queue": "history", "page": page, "limit": limit}))

        def load() -> dict[str, Any]:
            items, total = self.repo.get_reviewed_by_anchor(anchor_id, (page - 1) * limit, limit)
            return _page(items, total, page, limit)

        return await read_through(self.cache, key, INVOICE_LIST_TTL, load)  # type: ignore[no-any-return]

    async def get_admin_pending(self, page: int = 1, limit: int = 20) -> dict[str, Any]:
        """ANCHOR_APPROVED invoices awaiting verification, oldest approval first."""
        key = admin_list_key(filters_digest({"queue": "pending", "page": page, "limit": limit}))

        def load() -> dict[str, Any]:
            items, total = self.repo.get_pending_for_admin((page - 1) * limit, limit)
            return _page(items, total, page, limit)

        return await read_through(self.cache, key, INVOICE_LIST_TTL, load)  # type: ignore[no-any-return]

    async def get_admin_all(
        self,
        admin: Actor,
        filters: InvoiceFilters | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str | None = None,
        sort_order: str | None = None,
    ) -> dict[str, Any]:
        if not admin.is_admin:
            raise NotAuthorized("Only admins can list every invoice")
        return await self.get_user_invoices(admin, filters, page, limit, sort_by, sort_order)

    # --- Analytics ---

    def _analytics_window(
        self, period: str, start_date: datetime | None, end_date: datetime | None, now: datetime
    ) -> tuple[str, datetime, datetime]:
        if start_date or end_date:
            start = as_utc(start_date) or (now - timedelta(days=ANALYTICS_PERIODS["30d"]))
            end = as_utc(end_date) or now
            if start >= end:
                raise ValidationFailed("start_date must be before end_date", field="start_date")
            return "custom", start, end
        if period not in ANALYTICS_PERIODS:
            raise ValidationFailed(
                f"Unknown period '{period}'",
                field="period",
                allowed=sorted(ANALYTICS_PERIODS),
            )
        return period, now - timedelta(days=ANALYTICS_PERIODS[period]), now

    def _performance(self, rows: list[Any], now: datetime) -> dict[str, Any]:
        approval_hours = [
            h for h in (_hours(r.submitted_at, r.anchor_approval_date) for r in rows) if h is not None
        ]
        funding_hours = [
            h for h in (_hours(r.submitted_at, r.funded_at) for r in rows) if h is not None
        ]
        submitted = len(rows)
        overdue = sum(
            1
            for r in rows
            if r.status == InvoiceStatus.FUNDED.value and as_utc(r.due_date) < now  # type: ignore[operator]
        )
        return {
            "average_approval_hours": _mean(approval_hours),
            "average_hours_to_funding": _mean(funding_hours),
            "approval_rate": round(len(approval_hours) / submitted * 100, 2) if submitted else 0.0,
            "funding_rate": round(len(funding_hours) / submitted * 100, 2) if submitted else 0.0,
            "overdue_count": overdue,
        }

    async def get_invoice_analytics(
        self,
        actor: Actor,
        period: str = "30d",
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, Any]:
        """Totals, status breakdown, monthly trend and review/funding performance.

        Scoped like ``get_user_invoices``. Relative periods are cached under
        the period name so the entry is shared across the hour.
        """
        now = utc_now()
        label, start, end = self._analytics_window(period, start_date, end_date, now)
        scope = self._scope(actor)
        digest = filters_digest(
            {"period": label}
            if label != "custom"
            else {"period": label, "start": start, "end": end}
        )
        key = analytics_key(actor.role.value, actor.user_id, digest)

        def load() -> dict[str, Any]:
            window = {"created_from": start, "created_to": end, **scope}
            count, total_value, average = self.repo.summary(**window)
            breakdown = self.repo.status_breakdown(**window)
            trend = self.repo.monthly_trend(start, created_to=end, **scope)
            rows = self.repo.timing_rows(**window)
            return {
                "period": label,
                "start_date": start,
                "end_date": end,
                "totals": {
                    "total_invoices": count,
                    "total_value": round(total_value, 2),
                    "average_amount": round(average, 2),
                },
                "status_breakdown": [asdict(b) for b in breakdown],
                "monthly_trend": [asdict(t) for t in trend],
                "performance": self._performance(rows, now),
            }

        return await read_through(self.cache, key, ANALYTICS_TTL, load)  # type: ignore[no-any-return]
