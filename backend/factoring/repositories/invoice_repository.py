from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func as sa_func
from sqlalchemy import case, or_
from sqlalchemy.orm import Query, Session

from factoring.core.sorting import apply_order_by
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.invoice_status_history import InvoiceStatusHistory

INVOICE_SORT_FIELDS = (
    "created_at",
    "updated_at",
    "amount",
    "due_date",
    "issue_date",
    "status",
    "submitted_at",
    "listed_at",
    "funded_at",
)


@dataclass
class StatusBreakdown:
    status: str
    count: int
    total_value: float


@dataclass
class MonthlyInvoiceTrend:
    month: str
    invoices_created: int
    invoices_completed: int
    total_value: float


class InvoiceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, invoice_id: str) -> Invoice | None:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def reload(self, invoice: Invoice) -> Invoice:
        """Re-read the row so guards see the committed state, not the session copy."""
        self.db.refresh(invoice)
        return invoice

    def create(
        self,
        *,
        seller_id: str,
        anchor_id: str,
        amount: Decimal,
        currency: str,
        issue_date: datetime,
        due_date: datetime,
        description: str | None = None,
    ) -> Invoice:
        invoice = Invoice(
            seller_id=seller_id,
            anchor_id=anchor_id,
            amount=amount,
            currency=currency,
            issue_date=issue_date,
            due_date=due_date,
            description=description,
            status=InvoiceStatus.DRAFT.value,
            supporting_documents=[],
        )
        self.db.add(invoice)
        self.db.flush()
        return invoice

    def apply(self, invoice: Invoice, changes: dict[str, Any]) -> Invoice:
        for key, value in changes.items():
            setattr(invoice, key, value)
        self.db.flush()
        return invoice

    def transition(
        self,
        invoice: Invoice,
        expected_status: InvoiceStatus,
        new_status: InvoiceStatus,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """Conditionally move an invoice to ``new_status``.

        The UPDATE only matches while the row still holds ``expected_status``;
        returns False when another writer got there first.
        """
        values: dict[str, Any] = dict(changes or {})
        values["status"] = new_status.value
        count = (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice.id, Invoice.status == expected_status.value)
            .update(values, synchronize_session=False)
        )
        if count:
            self.db.refresh(invoice)
        return bool(count)

    def touch_if_status(self, invoice_id: str, status: InvoiceStatus, now: datetime) -> bool:
        """Bump ``updated_at`` only while the invoice still holds ``status``.

        Writes made in the same transaction afterwards depend on the row
        still being in that status when it commits.
        """
        count = (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id, Invoice.status == status.value)
            .update({"updated_at": now}, synchronize_session=False)
        )
        return bool(count)

    def delete(self, invoice: Invoice) -> None:
        self.db.delete(invoice)
        self.db.flush()

    # --- Status history ---

    def add_history(
        self,
        invoice_id: str,
        status: InvoiceStatus,
        changed_by: str,
        notes: str | None = None,
    ) -> InvoiceStatusHistory:
        entry = InvoiceStatusHistory(
            invoice_id=invoice_id,
            status=status.value,
            changed_by=changed_by,
            notes=notes,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_history(self, invoice_id: str) -> list[InvoiceStatusHistory]:
        """History entries, newest first."""
        return (
            self.db.query(InvoiceStatusHistory)
            .filter(InvoiceStatusHistory.invoice_id == invoice_id)
            .order_by(InvoiceStatusHistory.timestamp.desc(), InvoiceStatusHistory.id.desc())
            .all()
        )

    # --- Queries ---

    def _filtered(
        self,
        *,
        seller_id: str | None = None,
        anchor_id: str | None = None,
        funded_by: str | None = None,
        statuses: list[InvoiceStatus] | None = None,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
        currency: str | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        due_from: datetime | None = None,
        due_to: datetime | None = None,
        search: str | None = None,
    ) -> Query:  # type: ignore[type-arg]
        query = self.db.query(Invoice)
        if seller_id:
            query = query.filter(Invoice.seller_id == seller_id)
        if anchor_id:
            query = query.filter(Invoice.anchor_id == anchor_id)
        if funded_by:
            query = query.filter(Invoice.funded_by == funded_by)
        if statuses:
            query = query.filter(Invoice.status.in_([s.value for s in statuses]))
        if min_amount is not None:
            query = query.filter(Invoice.amount >= min_amount)
        if max_amount is not None:
            query = query.filter(Invoice.amount <= max_amount)
        if currency:
            query = query.filter(Invoice.currency == currency.upper())
        if created_from:
            query = query.filter(Invoice.created_at >= created_from)
        if created_to:
            query = query.filter(Invoice.created_at <= created_to)
        if due_from:
            query = query.filter(Invoice.due_date >= due_from)
        if due_to:
            query = query.filter(Invoice.due_date <= due_to)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(Invoice.description.ilike(pattern), Invoice.id.ilike(pattern)))
        return query

    def search(
        self,
        *,
        skip: int = 0,
        limit: int = 20,
        order_by: str | None = None,
        **filters: Any,
    ) -> tuple[list[Invoice], int]:
        query = self._filtered(**filters)
        total = query.count()
        query = apply_order_by(query, Invoice, order_by, allowed_fields=INVOICE_SORT_FIELDS)
        return query.offset(skip).limit(limit).all(), total

    def get_pending_for_anchor(
        self, anchor_id: str, skip: int = 0, limit: int = 20
    ) -> tuple[list[Invoice], int]:
        query = self.db.query(Invoice).filter(
            Invoice.anchor_id == anchor_id,
            Invoice.status == InvoiceStatus.SUBMITTED.value,
        )
        total = query.count()
        items = query.order_by(Invoice.submitted_at.asc()).offset(skip).limit(limit).all()
        return items, total

    def get_reviewed_by_anchor(
        self, anchor_id: str, skip: int = 0, limit: int = 20
    ) -> tuple[list[Invoice], int]:
        """Invoices the anchor has already approved or rejected."""
        query = self.db.query(Invoice).filter(
            Invoice.anchor_id == anchor_id,
            or_(
                Invoice.anchor_approval_date.isnot(None),
                Invoice.anchor_rejection_date.isnot(None),
            ),
        )
        total = query.count()
        items = query.order_by(Invoice.updated_at.desc()).offset(skip).limit(limit).all()
        return items, total

    def get_pending_for_admin(self, skip: int = 0, limit: int = 20) -> tuple[list[Invoice], int]:
        query = self.db.query(Invoice).filter(
            Invoice.status == InvoiceStatus.ANCHOR_APPROVED.value
        )
        total = query.count()
        items = query.order_by(Invoice.anchor_approval_date.asc()).offset(skip).limit(limit).all()
        return items, total

    def get_listed(
        self,
        *,
        now: datetime,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
        due_from: datetime | None = None,
        due_to: datetime | None = None,
        anchor_id: str | None = None,
        currency: str | None = None,
        skip: int = 0,
        limit: int = 20,
        order_by: str | None = None,
    ) -> tuple[list[Invoice], int]:
        """LISTED invoices that are not yet overdue."""
        query = self._filtered(
            statuses=[InvoiceStatus.LISTED],
            min_amount=min_amount,
            max_amount=max_amount,
            anchor_id=anchor_id,
            currency=currency,
            due_from=due_from,
            due_to=due_to,
        ).filter(Invoice.due_date > now)
        total = query.count()
        query = apply_order_by(
            query,
            Invoice,
            order_by,
            default_field="listed_at",
            allowed_fields=INVOICE_SORT_FIELDS,
        )
        return query.offset(skip).limit(limit).all(), total

    def get_many(self, invoice_ids: list[str]) -> dict[str, Invoice]:
        if not invoice_ids:
            return {}
        rows = self.db.query(Invoice).filter(Invoice.id.in_(invoice_ids)).all()
        return {str(i.id): i for i in rows}

    # --- Aggregates ---

    def summary(self, **filters: Any) -> tuple[int, float, float]:
        """(count, total value, average amount) over the filtered invoices."""
        query = self._filtered(**filters)
        row = query.with_entities(
            sa_func.count(Invoice.id),
            sa_func.coalesce(sa_func.sum(Invoice.amount), 0),
            sa_func.coalesce(sa_func.avg(Invoice.amount), 0),
        ).one()
        return int(row[0]), float(row[1]), float(row[2])

    def status_breakdown(self, **filters: Any) -> list[StatusBreakdown]:
        rows = (
            self._filtered(**filters)
            .with_entities(
                Invoice.status,
                sa_func.count(Invoice.id),
                sa_func.coalesce(sa_func.sum(Invoice.amount), 0),
            )
            .group_by(Invoice.status)
            .all()
        )
        return [
            StatusBreakdown(status=str(r[0]), count=int(r[1]), total_value=float(r[2]))
            for r in rows
        ]

    def monthly_trend(self, since: datetime, **filters: Any) -> list[MonthlyInvoiceTrend]:
        """Created vs completed invoices per month, oldest first."""
        dialect = self.db.bind.dialect.name if self.db.bind else ""
        if dialect == "postgresql":
            month_expr = sa_func.to_char(Invoice.created_at, "YYYY-MM")
        else:
            month_expr = sa_func.strftime("%Y-%m", Invoice.created_at)

        completed = [
            InvoiceStatus.FUNDED.value,
            InvoiceStatus.REPAID.value,
            InvoiceStatus.SETTLED.value,
        ]
        rows = (
            self._filtered(created_from=since, **filters)
            .with_entities(
                month_expr.label("month"),
                sa_func.count(Invoice.id),
                sa_func.sum(case((Invoice.status.in_(completed), 1), else_=0)),
                sa_func.coalesce(sa_func.sum(Invoice.amount), 0),
            )
            .group_by(month_expr)
            .order_by(month_expr)
            .all()
        )
        return [
            MonthlyInvoiceTrend(
                month=str(r[0]),
                invoices_created=int(r[1]),
                invoices_completed=int(r[2] or 0),
                total_value=float(r[3]),
            )
            for r in rows
        ]

    def timing_rows(self, **filters: Any) -> list[Any]:
        """Lifecycle timestamps of submitted invoices, for performance metrics."""
        return (
            self._filtered(**filters)
            .filter(Invoice.submitted_at.isnot(None))
            .with_entities(
                Invoice.status,
                Invoice.submitted_at,
                Invoice.anchor_approval_date,
                Invoice.funded_at,
                Invoice.due_date,
            )
            .all()
        )

    def listed_totals(self, now: datetime) -> tuple[int, float]:
        """(active listings, total face value) for LISTED, non-overdue invoices."""
        row = (
            self.db.query(
                sa_func.count(Invoice.id),
                sa_func.coalesce(sa_func.sum(Invoice.amount), 0),
            )
            .filter(Invoice.status == InvoiceStatus.LISTED.value, Invoice.due_date > now)
            .one()
        )
        return int(row[0]), float(row[1])
