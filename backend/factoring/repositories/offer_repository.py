"""Offer repository for data access."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func as sa_func
from sqlalchemy.orm import Session

from factoring.core.sorting import apply_order_by
from factoring.models.invoice import Invoice
from factoring.models.offer import Offer, OfferStatus

OFFER_SORT_FIELDS = (
    "created_at",
    "amount",
    "interest_rate",
    "funding_percentage",
    "tenure",
    "expires_at",
    "status",
)


@dataclass
class LenderActivity:
    lender_id: str
    offer_count: int
    total_amount: float


@dataclass
class RejectedSibling:
    offer_id: str
    lender_id: str


def ranking_order() -> tuple[Any, ...]:
    """Best offer first: lowest rate, then larger amount, then earliest submission."""
    return (Offer.interest_rate.asc(), Offer.amount.desc(), Offer.created_at.asc(), Offer.id.asc())


class OfferRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, offer_id: str) -> Offer | None:
        return self.db.query(Offer).filter(Offer.id == offer_id).first()

    def reload(self, offer: Offer) -> Offer:
        self.db.refresh(offer)
        return offer

    def create(self, **fields: Any) -> Offer:
        """Insert a pending offer. Flushes so unique-index violations surface here."""
        offer = Offer(status=OfferStatus.PENDING.value, **fields)
        self.db.add(offer)
        self.db.flush()
        return offer

    def get_active_for_lender(self, invoice_id: str, lender_id: str, now: datetime) -> Offer | None:
        return (
            self.db.query(Offer)
            .filter(
                Offer.invoice_id == invoice_id,
                Offer.lender_id == lender_id,
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at > now,
            )
            .first()
        )

    def expire_stale_for_lender(self, invoice_id: str, lender_id: str, now: datetime) -> list[str]:
        """Mark the lender's lapsed-but-pending offers on an invoice as expired."""
        ids = [
            row[0]
            for row in self.db.query(Offer.id)
            .filter(
                Offer.invoice_id == invoice_id,
                Offer.lender_id == lender_id,
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at <= now,
            )
            .all()
        ]
        expired = [oid for oid in ids if self.mark_expired(oid, now)]
        return expired

    def conditional_transition(
        self,
        offer_id: str,
        new_status: OfferStatus,
        now: datetime,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """Move a live pending offer to a terminal status.

        Matches only while the offer is still PENDING and unexpired at ``now``;
        the affected row count tells the caller whether it won the race.
        """
        values: dict[str, Any] = dict(changes or {})
        values["status"] = new_status.value
        count = (
            self.db.query(Offer)
            .filter(
                Offer.id == offer_id,
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at > now,
            )
            .update(values, synchronize_session=False)
        )
        return bool(count)

    def mark_expired(self, offer_id: str, now: datetime) -> bool:
        count = (
            self.db.query(Offer)
            .filter(
                Offer.id == offer_id,
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at <= now,
            )
            .update(
                {"status": OfferStatus.EXPIRED.value, "expired_at": now},
                synchronize_session=False,
            )
        )
        return bool(count)

    def reject_siblings(
        self, invoice_id: str, accepted_offer_id: str, reason: str, now: datetime
    ) -> list[RejectedSibling]:
        """Reject every other PENDING offer on the invoice, expired or not."""
        candidates = (
            self.db.query(Offer.id, Offer.lender_id)
            .filter(
                Offer.invoice_id == invoice_id,
                Offer.id != accepted_offer_id,
                Offer.status == OfferStatus.PENDING.value,
            )
            .all()
        )
        if not candidates:
            return []
        ids = [row[0] for row in candidates]
        (
            self.db.query(Offer)
            .filter(Offer.id.in_(ids), Offer.status == OfferStatus.PENDING.value)
            .update(
                {
                    "status": OfferStatus.REJECTED.value,
                    "rejected_at": now,
                    "rejection_reason": reason,
                },
                synchronize_session=False,
            )
        )
        return [RejectedSibling(offer_id=str(r[0]), lender_id=str(r[1])) for r in candidates]

    def count_pending(self, invoice_id: str) -> int:
        return (
            self.db.query(sa_func.count(Offer.id))
            .filter(Offer.invoice_id == invoice_id, Offer.status == OfferStatus.PENDING.value)
            .scalar()
            or 0
        )

    def get_for_invoice(
        self, invoice_id: str, statuses: list[OfferStatus] | None = None
    ) -> list[Offer]:
        """Offers on an invoice in ranking order."""
        query = self.db.query(Offer).filter(Offer.invoice_id == invoice_id)
        if statuses:
            query = query.filter(Offer.status.in_([s.value for s in statuses]))
        return query.order_by(*ranking_order()).all()

    def get_live_for_invoice(self, invoice_id: str, now: datetime) -> list[Offer]:
        """Pending, unexpired offers on an invoice in ranking order."""
        return (
            self.db.query(Offer)
            .filter(
                Offer.invoice_id == invoice_id,
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at > now,
            )
            .order_by(*ranking_order())
            .all()
        )

    def live_stats_by_invoice(
        self, invoice_ids: list[str], now: datetime
    ) -> dict[str, tuple[int, float | None]]:
        """Per invoice: (live offer count, best rate)."""
        if not invoice_ids:
            return {}
        rows = (
            self.db.query(
                Offer.invoice_id,
                sa_func.count(Offer.id),
                sa_func.min(Offer.interest_rate),
            )
            .filter(
                Offer.invoice_id.in_(invoice_ids),
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at > now,
            )
            .group_by(Offer.invoice_id)
            .all()
        )
        return {
            str(r[0]): (int(r[1]), float(r[2]) if r[2] is not None else None) for r in rows
        }

    def invoices_with_live_offer_from(
        self, lender_id: str, invoice_ids: list[str], now: datetime
    ) -> set[str]:
        if not invoice_ids:
            return set()
        rows = (
            self.db.query(Offer.invoice_id)
            .filter(
                Offer.lender_id == lender_id,
                Offer.invoice_id.in_(invoice_ids),
                Offer.status == OfferStatus.PENDING.value,
                Offer.expires_at > now,
            )
            .all()
        )
        return {str(r[0]) for r in rows}

    def get_lender_offer_for_invoice(self, invoice_id: str, lender_id: str) -> Offer | None:
        """The lender's most recent offer on an invoice, whatever its status."""
        return (
            self.db.query(Offer)
            .filter(Offer.invoice_id == invoice_id, Offer.lender_id == lender_id)
            .order_by(Offer.created_at.desc())
            .first()
        )

    def search_for_lender(
        self,
        lender_id: str,
        *,
        statuses: list[OfferStatus] | None = None,
        min_amount: Decimal | None = None,
        max_amount: Decimal | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        order_by: str | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> tuple[list[Offer], int]:
        query = self.db.query(Offer).filter(Offer.lender_id == lender_id)
        if statuses:
            query = query.filter(Offer.status.in_([s.value for s in statuses]))
        if min_amount is not None:
            query = query.filter(Offer.amount >= min_amount)
        if max_amount is not None:
            query = query.filter(Offer.amount <= max_amount)
        if created_from:
            query = query.filter(Offer.created_at >= created_from)
        if created_to:
            query = query.filter(Offer.created_at <= created_to)
        total = query.count()
        query = apply_order_by(query, Offer, order_by, allowed_fields=OFFER_SORT_FIELDS)
        return query.offset(skip).limit(limit).all(), total

    def lender_status_counts(self, lender_id: str) -> dict[str, int]:
        rows = (
            self.db.query(Offer.status, sa_func.count(Offer.id))
            .filter(Offer.lender_id == lender_id)
            .group_by(Offer.status)
            .all()
        )
        return {str(r[0]): int(r[1]) for r in rows}

    def get_expired_pending(self, now: datetime, limit: int = 500) -> list[Offer]:
        return (
            self.db.query(Offer)
            .filter(Offer.status == OfferStatus.PENDING.value, Offer.expires_at <= now)
            .order_by(Offer.expires_at.asc())
            .limit(limit)
            .all()
        )

    def get_many(self, offer_ids: list[str]) -> list[Offer]:
        if not offer_ids:
            return []
        return self.db.query(Offer).filter(Offer.id.in_(offer_ids)).all()

    # --- Marketplace aggregates ---

    def live_totals(self, now: datetime) -> dict[str, float]:
        row = (
            self.db.query(
                sa_func.count(Offer.id),
                sa_func.coalesce(sa_func.sum(Offer.amount), 0),
                sa_func.avg(Offer.interest_rate),
                sa_func.avg(Offer.funding_percentage),
                sa_func.avg(Offer.tenure),
            )
            .filter(Offer.status == OfferStatus.PENDING.value, Offer.expires_at > now)
            .one()
        )
        return {
            "active_offers": int(row[0]),
            "offer_volume": float(row[1]),
            "average_interest_rate": float(row[2] or 0),
            "average_funding_percentage": float(row[3] or 0),
            "average_tenure": float(row[4] or 0),
        }

    def count_created_since(self, since: datetime) -> int:
        return (
            self.db.query(sa_func.count(Offer.id)).filter(Offer.created_at >= since).scalar() or 0
        )

    def count_accepted_since(self, since: datetime) -> int:
        return (
            self.db.query(sa_func.count(Offer.id))
            .filter(Offer.status == OfferStatus.ACCEPTED.value, Offer.accepted_at >= since)
            .scalar()
            or 0
        )

    def first_offer_times(self, since: datetime) -> list[tuple[datetime, datetime]]:
        """(listed_at, first offer created_at) for invoices listed since ``since``."""
        rows = (
            self.db.query(Invoice.listed_at, sa_func.min(Offer.created_at))
            .join(Offer, Offer.invoice_id == Invoice.id)
            .filter(Invoice.listed_at.isnot(None), Invoice.listed_at >= since)
            .group_by(Invoice.id, Invoice.listed_at)
            .all()
        )
        return [(r[0], r[1]) for r in rows if r[1] is not None]

    def acceptance_times(self, since: datetime) -> list[tuple[datetime, datetime]]:
        """(created_at, accepted_at) for offers accepted since ``since``."""
        rows = (
            self.db.query(Offer.created_at, Offer.accepted_at)
            .filter(Offer.status == OfferStatus.ACCEPTED.value, Offer.accepted_at >= since)
            .all()
        )
        return [(r[0], r[1]) for r in rows]

    def top_lenders(self, since: datetime, limit: int = 5) -> list[LenderActivity]:
        rows = (
            self.db.query(
                Offer.lender_id,
                sa_func.count(Offer.id).label("offer_count"),
                sa_func.coalesce(sa_func.sum(Offer.amount), 0),
            )
            .filter(Offer.created_at >= since)
            .group_by(Offer.lender_id)
            .order_by(sa_func.count(Offer.id).desc())
            .limit(limit)
            .all()
        )
        return [
            LenderActivity(lender_id=str(r[0]), offer_count=int(r[1]), total_amount=float(r[2]))
            for r in rows
        ]
