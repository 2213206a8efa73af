"""Offer engine: lenders bid on listed invoices, sellers reject, the sweep expires."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factoring.core.cache import CacheBackend, best_effort
from factoring.core.database import transaction
from factoring.core.exceptions import (
    DuplicateActiveOffer,
    InvoiceNotAvailable,
    NotAuthorized,
    NotFound,
    OfferNotActionable,
)
from factoring.core.locks import ACCEPT_OPERATION, invoice_lock
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.offer import Offer, OfferStatus
from factoring.models.outbox_event import OutboxEvent
from factoring.models.shared import as_utc, utc_now
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.offer_repository import OfferRepository
from factoring.services import offer_rules
from factoring.services.email_service import EmailService
from factoring.services.marketplace_cache import MarketplaceCache
from factoring.services.outbox_service import (
    OFFER_CREATED,
    OFFER_EXPIRED,
    OFFER_REJECTED,
    OFFER_WITHDRAWN,
    OutboxService,
)

logger = logging.getLogger(__name__)


def offer_event_payload(offer: Offer, invoice: Invoice, **extra: Any) -> dict[str, Any]:
    return {
        "offer_id": str(offer.id),
        "invoice_id": str(invoice.id),
        "lender_id": str(offer.lender_id),
        "seller_id": str(invoice.seller_id),
        "anchor_id": str(invoice.anchor_id),
        **extra,
    }


class OfferService:
    """Create, withdraw, reject and expire offers."""

    def __init__(
        self,
        db: Session,
        cache: CacheBackend,
        email_service: EmailService | None = None,
    ):
        self.db = db
        self.cache = cache
        self.offers = OfferRepository(db)
        self.invoices = InvoiceRepository(db)
        self.marketplace_cache = MarketplaceCache(cache)
        self.outbox = OutboxService(db, cache, email_service=email_service)

    def get_offer(self, offer_id: str) -> Offer:
        offer = self.offers.get_by_id(offer_id)
        if offer is None:
            raise NotFound("Offer not found", offer_id=offer_id)
        return offer

    def _invoice_of(self, offer: Offer) -> Invoice:
        invoice = self.invoices.get_by_id(str(offer.invoice_id))
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=str(offer.invoice_id))
        return invoice

    def _not_actionable(self, offer: Offer, action: str, now: datetime) -> OfferNotActionable:
        latest = self.offers.reload(offer)
        expired = offer_rules.is_expired(latest, now)
        return OfferNotActionable(
            f"Offer cannot be {action}; it changed while the request was processed",
            offer_id=str(offer.id),
            status=str(latest.status),
            expired=expired,
        )

    async def create_offer(
        self,
        lender_id: str,
        invoice_id: str,
        *,
        interest_rate: Decimal,
        funding_percentage: Decimal,
        tenure: int,
        terms: str | None = None,
        lender_notes: str | None = None,
        expires_at: datetime | None = None,
    ) -> Offer:
        """Place a bid on a listed invoice.

        Bidding bounds are checked in order (availability, funding terms, rate,
        tenure, amount) and nothing is written when any of them fails. The
        duplicate check reads the store, and the partial unique index on
        pending offers backs it up against concurrent submissions. The
        invoice lock shared with acceptance is held throughout, and the insert
        commits only while the invoice row is still LISTED.
        """
        invoice = self.invoices.get_by_id(invoice_id)
        if invoice is None:
            raise InvoiceNotAvailable("Invoice is not available for offers", invoice_id=invoice_id)

        async with invoice_lock(self.cache, invoice_id, ACCEPT_OPERATION):
            invoice = self.invoices.reload(invoice)
            now = utc_now()
            funding_amount = offer_rules.validate_offer_terms(
                invoice, interest_rate, funding_percentage, tenure, now
            )
            expiry = offer_rules.resolve_expiry(expires_at, now)

            existing = self.offers.get_active_for_lender(invoice_id, lender_id, now)
            if existing is not None:
                raise DuplicateActiveOffer(
                    "You already have an active offer on this invoice",
                    existing_offer_id=str(existing.id),
                )

            financials = offer_rules.calculate_financials(funding_amount, interest_rate, tenure)
            live = self.offers.get_live_for_invoice(invoice_id, now)

            try:
                with transaction(self.db):
                    if not self.invoices.touch_if_status(invoice_id, InvoiceStatus.LISTED, now):
                        raise InvoiceNotAvailable(
                            "Invoice is no longer available for offers", invoice_id=invoice_id
                        )
                    events: list[OutboxEvent] = []
                    for stale_id in self.offers.expire_stale_for_lender(invoice_id, lender_id, now):
                        events.append(
                            self.outbox.record(
                                OFFER_EXPIRED,
                                {
                                    "offer_id": stale_id,
                                    "invoice_id": invoice_id,
                                    "lender_id": lender_id,
                                },
                                aggregate_id=stale_id,
                            )
                        )
                    offer = self.offers.create(
                        invoice_id=invoice_id,
                        lender_id=lender_id,
                        amount=funding_amount,
                        interest_rate=Decimal(str(interest_rate)),
                        funding_percentage=Decimal(str(funding_percentage)),
                        tenure=tenure,
                        terms=terms,
                        lender_notes=lender_notes,
                        expires_at=expiry,
                        created_at=now,
                        daily_interest_rate=financials.daily_interest_rate,
                        total_interest_amount=financials.total_interest_amount,
                        total_repayment_amount=financials.total_repayment_amount,
                    )
                    new_key = offer_rules.ranking_key(offer)
                    outbid = [
                        {"offer_id": str(o.id), "lender_id": str(o.lender_id)}
                        for o in live
                        if str(o.lender_id) != lender_id and offer_rules.ranking_key(o) > new_key
                    ]
                    events.append(
                        self.outbox.record(
                            OFFER_CREATED,
                            offer_event_payload(
                                offer,
                                invoice,
                                amount=float(funding_amount),
                                interest_rate=float(interest_rate),
                                tenure=tenure,
                                currency=str(invoice.currency),
                                expires_at=expiry.isoformat(),
                                live_offer_count=len(live) + 1,
                                outbid=outbid,
                            ),
                            aggregate_id=str(offer.id),
                        )
                    )
            except IntegrityError:
                raise DuplicateActiveOffer(
                    "You already have an active offer on this invoice", invoice_id=invoice_id
                ) from None

        logger.info(
            "Offer %s created by lender %s on invoice %s at %s%%",
            offer.id,
            lender_id,
            invoice_id,
            interest_rate,
        )
        await self.outbox.dispatch_all(events)
        return offer

    async def withdraw_offer(self, offer_id: str, lender_id: str, reason: str | None = None) -> Offer:
        offer = self.get_offer(offer_id)
        if str(offer.lender_id) != lender_id:
            raise NotAuthorized("You can only withdraw your own offers", offer_id=offer_id)
        now = utc_now()
        offer_rules.ensure_actionable(offer, "withdrawn", now)
        invoice = self._invoice_of(offer)

        with transaction(self.db):
            changed = self.offers.conditional_transition(
                offer_id,
                OfferStatus.WITHDRAWN,
                now,
                {"withdrawn_at": now, "withdrawal_reason": reason},
            )
            if not changed:
                raise self._not_actionable(offer, "withdrawn", now)
            event = self.outbox.record(
                OFFER_WITHDRAWN, offer_event_payload(offer, invoice, reason=reason), offer_id
            )

        logger.info("Offer %s moved from pending to withdrawn", offer_id)
        self.offers.reload(offer)
        await self.outbox.dispatch(event)
        return offer

    async def reject_offer(self, offer_id: str, seller_id: str, reason: str | None = None) -> Offer:
        """Seller rejects a single offer; other offers are untouched."""
        offer = self.get_offer(offer_id)
        invoice = self._invoice_of(offer)
        if str(invoice.seller_id) != seller_id:
            raise NotAuthorized("You can only reject offers on your own invoices", offer_id=offer_id)
        now = utc_now()
        offer_rules.ensure_actionable(offer, "rejected", now)

        with transaction(self.db):
            changed = self.offers.conditional_transition(
                offer_id,
                OfferStatus.REJECTED,
                now,
                {"rejected_at": now, "rejection_reason": reason},
            )
            if not changed:
                raise self._not_actionable(offer, "rejected", now)
            event = self.outbox.record(
                OFFER_REJECTED, offer_event_payload(offer, invoice, reason=reason), offer_id
            )

        logger.info("Offer %s moved from pending to rejected", offer_id)
        self.offers.reload(offer)
        await self.outbox.dispatch(event)
        return offer

    async def expire_offers(self, now: datetime | None = None, limit: int = 500) -> int:
        """Mark lapsed pending offers EXPIRED.

        Candidates come from the ``offers:expiring`` index when the cache is
        up, plus a scan of the store so nothing is missed when it is not.
        Every flip is a conditional update, so running the sweep twice is
        harmless.

        Returns:
            Number of offers expired.
        """
        now = now or utc_now()
        indexed = await best_effort(
            self.marketplace_cache.due_for_expiry(now), "reading the offer expiry index"
        )
        candidates: dict[str, Offer] = {
            str(o.id): o for o in self.offers.get_expired_pending(now, limit=limit)
        }
        missing = [oid for oid in indexed or [] if oid not in candidates]
        for offer in self.offers.get_many(missing):
            candidates[str(offer.id)] = offer

        stale_index = [oid for oid in indexed or [] if oid not in candidates]
        events: list[OutboxEvent] = []
        with transaction(self.db):
            for offer_id, offer in candidates.items():
                expires_at = as_utc(offer.expires_at)  # type: ignore[arg-type]
                if expires_at is None or expires_at > now:
                    continue
                if not self.offers.mark_expired(offer_id, now):
                    stale_index.append(offer_id)
                    continue
                events.append(
                    self.outbox.record(
                        OFFER_EXPIRED,
                        {
                            "offer_id": offer_id,
                            "invoice_id": str(offer.invoice_id),
                            "lender_id": str(offer.lender_id),
                        },
                        aggregate_id=offer_id,
                    )
                )

        if stale_index:
            await best_effort(
                self.marketplace_cache.remove_expiration(*stale_index),
                "pruning the offer expiry index",
            )
        if events:
            logger.info("Expired %d offers", len(events))
        await self.outbox.dispatch_all(events)
        return len(events)
