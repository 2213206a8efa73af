"""Offer acceptance: fund the invoice and reject every competing offer in one unit of work."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factoring.core.cache import CacheBackend
from factoring.core.database import transaction
from factoring.core.exceptions import InvalidStateTransition, NotAuthorized, NotFound
from factoring.core.locks import ACCEPT_OPERATION, invoice_lock
from factoring.models.invoice import Invoice, InvoiceStatus
from factoring.models.offer import AUTO_REJECTION_REASON, Offer, OfferStatus
from factoring.models.shared import utc_now
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.offer_repository import OfferRepository
from factoring.services import invoice_rules, offer_rules
from factoring.services.document_storage import DocumentStage
from factoring.services.email_service import EmailService
from factoring.services.offer_service import offer_event_payload
from factoring.services.outbox_service import (
    INVOICE_STATUS_CHANGED,
    OFFER_ACCEPTED,
    OFFER_AUTO_REJECTED,
    OutboxService,
)

logger = logging.getLogger(__name__)


@dataclass
class AcceptanceResult:
    offer: Offer
    invoice: Invoice
    rejected_offer_ids: list[str] = field(default_factory=list)


class AcceptanceService:
    """Coordinates ``accept_offer`` across the offer, the invoice and its siblings."""

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
        self.outbox = OutboxService(db, cache, email_service=email_service)

    async def accept_offer(
        self, offer_id: str, seller_id: str, acceptance_notes: str | None = None
    ) -> AcceptanceResult:
        """Accept one offer on the seller's listed invoice.

        Under the invoice's ``accept_offer`` lock, and within one transaction:
        the offer moves PENDING -> ACCEPTED, the invoice LISTED -> FUNDED with
        the offer's terms, and every other pending offer is rejected. Both
        status writes are conditional on the state just read, so a concurrent
        withdrawal or acceptance makes the whole operation fail with nothing
        written. Notifications are outbox events dispatched after the commit;
        their failure never undoes the funding.
        """
        offer = self.offers.get_by_id(offer_id)
        if offer is None:
            raise NotFound("Offer not found", offer_id=offer_id)
        invoice = self.invoices.get_by_id(str(offer.invoice_id))
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=str(offer.invoice_id))
        if str(invoice.seller_id) != seller_id:
            raise NotAuthorized("You can only accept offers on your own invoices", offer_id=offer_id)

        invoice_id = str(invoice.id)
        async with invoice_lock(self.cache, invoice_id, ACCEPT_OPERATION):
            offer = self.offers.reload(offer)
            invoice = self.invoices.reload(invoice)
            now = utc_now()
            offer_rules.ensure_actionable(offer, "accepted", now)
            invoice_rules.ensure_transition(invoice, "fund")

            days = invoice_rules.days_held(invoice.due_date, now)  # type: ignore[arg-type]
            total_repayment = invoice_rules.calculate_total_repayment(
                offer.amount,  # type: ignore[arg-type]
                offer.interest_rate,  # type: ignore[arg-type]
                days,
            )

            try:
                with transaction(self.db):
                    accepted = self.offers.conditional_transition(
                        offer_id,
                        OfferStatus.ACCEPTED,
                        now,
                        {"accepted_at": now, "acceptance_notes": acceptance_notes},
                    )
                    if not accepted:
                        latest = self.offers.reload(offer)
                        offer_rules.ensure_actionable(latest, "accepted", now)
                        raise InvalidStateTransition(
                            "offer", offer_id, str(latest.status), "accept"
                        )
                    funded = self.invoices.transition(
                        invoice,
                        InvoiceStatus.LISTED,
                        InvoiceStatus.FUNDED,
                        {
                            **invoice_rules.entry_changes(InvoiceStatus.FUNDED, now),
                            "funded_by": str(offer.lender_id),
                            "funding_amount": offer.amount,
                            "interest_rate": offer.interest_rate,
                            "total_repayment_amount": total_repayment,
                        },
                    )
                    if not funded:
                        raise InvalidStateTransition(
                            "invoice",
                            invoice_id,
                            str(self.invoices.reload(invoice).status),
                            "fund",
                            "Invoice is no longer listed",
                        )
                    self.invoices.add_history(
                        invoice_id,
                        InvoiceStatus.FUNDED,
                        seller_id,
                        f"Funded by offer {offer_id}",
                    )
                    rejected = self.offers.reject_siblings(
                        invoice_id, offer_id, AUTO_REJECTION_REASON, now
                    )

                    events = [
                        self.outbox.record(
                            OFFER_ACCEPTED,
                            offer_event_payload(
                                offer,
                                invoice,
                                funding_amount=float(offer.amount),
                                interest_rate=float(offer.interest_rate),
                                total_repayment_amount=float(total_repayment),
                            ),
                            aggregate_id=offer_id,
                        ),
                        self.outbox.record(
                            INVOICE_STATUS_CHANGED,
                            {
                                "invoice_id": invoice_id,
                                "seller_id": str(invoice.seller_id),
                                "anchor_id": str(invoice.anchor_id),
                                "amount": float(invoice.amount),
                                "from_status": InvoiceStatus.LISTED.value,
                                "to_status": InvoiceStatus.FUNDED.value,
                                "changed_by": seller_id,
                                "notify": [str(invoice.anchor_id)],
                                "message": "The invoice has been funded.",
                                "document_stage": DocumentStage.FUNDED.value,
                            },
                            aggregate_id=invoice_id,
                        ),
                    ]
                    for sibling in rejected:
                        events.append(
                            self.outbox.record(
                                OFFER_AUTO_REJECTED,
                                {
                                    "offer_id": sibling.offer_id,
                                    "invoice_id": invoice_id,
                                    "lender_id": sibling.lender_id,
                                    "seller_id": str(invoice.seller_id),
                                    "reason": AUTO_REJECTION_REASON,
                                },
                                aggregate_id=sibling.offer_id,
                            )
                        )
            except IntegrityError:
                raise InvalidStateTransition(
                    "invoice", invoice_id, InvoiceStatus.FUNDED.value, "fund",
                    "Another offer has already been accepted for this invoice",
                ) from None

        logger.info(
            "Offer %s accepted; invoice %s moved from listed to funded, %d competing offers rejected",
            offer_id,
            invoice_id,
            len(rejected),
        )
        self.offers.reload(offer)
        await self.outbox.dispatch_all(events)
        return AcceptanceResult(
            offer=offer,
            invoice=invoice,
            rejected_offer_ids=[s.offer_id for s in rejected],
        )
