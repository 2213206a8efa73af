"""Outbox: side effects recorded with the state change and delivered after commit.

Lifecycle and offer services call ``record`` inside their unit of work, so
the event row commits or rolls back together with the state change. Once the
transaction has committed they hand the new events to ``dispatch``; whatever
fails there is marked failed and picked up again by
``process_pending_and_failed`` (run from the worker) with a 2^attempts
minute backoff. Delivery is at-least-once: a retried event may repeat the
side effects that succeeded before the failure.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from factoring.core.cache import CacheBackend
from factoring.core.config import settings
from factoring.models.outbox_event import OutboxEvent, OutboxStatus
from factoring.models.shared import as_utc, utc_now
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.offer_repository import OfferRepository
from factoring.repositories.outbox_repository import OutboxRepository
from factoring.repositories.user_repository import UserRepository
from factoring.services.document_storage import (
    DocumentStage,
    DocumentStorage,
    get_document_storage,
)
from factoring.services.email_service import EmailService
from factoring.services.invoice_cache import InvoiceCache
from factoring.services.marketplace_cache import MarketplaceCache
from factoring.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

INVOICE_STATUS_CHANGED = "invoice.status_changed"
INVOICE_LISTED = "invoice.listed"
INVOICE_UPDATED = "invoice.updated"
OFFER_CREATED = "offer.created"
OFFER_WITHDRAWN = "offer.withdrawn"
OFFER_REJECTED = "offer.rejected"
OFFER_ACCEPTED = "offer.accepted"
OFFER_AUTO_REJECTED = "offer.auto_rejected"
OFFER_EXPIRED = "offer.expired"

EVENT_TYPES = (
    INVOICE_STATUS_CHANGED,
    INVOICE_LISTED,
    INVOICE_UPDATED,
    OFFER_CREATED,
    OFFER_WITHDRAWN,
    OFFER_REJECTED,
    OFFER_ACCEPTED,
    OFFER_AUTO_REJECTED,
    OFFER_EXPIRED,
)

# Pending rows younger than this are left to the inline dispatch
PENDING_GRACE = timedelta(minutes=1)


def document_storage_ids(invoice: Any) -> list[str]:
    docs = [invoice.invoice_document, *(invoice.supporting_documents or [])]
    return [doc["storage_id"] for doc in docs if doc and doc.get("storage_id")]


class OutboxService:
    """Records outbox events and delivers them to the cache, inbox and mailer."""

    def __init__(
        self,
        db: Session,
        cache: CacheBackend,
        email_service: EmailService | None = None,
        storage: DocumentStorage | None = None,
    ):
        self.db = db
        self.cache = cache
        self.repo = OutboxRepository(db)
        self.email = email_service or EmailService()
        self.storage = storage or get_document_storage()
        self.invoice_cache = InvoiceCache(cache)
        self.marketplace_cache = MarketplaceCache(cache)
        self.handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            INVOICE_STATUS_CHANGED: self._on_invoice_status_changed,
            INVOICE_LISTED: self._on_invoice_listed,
            INVOICE_UPDATED: self._on_invoice_updated,
            OFFER_CREATED: self._on_offer_created,
            OFFER_WITHDRAWN: self._on_offer_withdrawn,
            OFFER_REJECTED: self._on_offer_rejected,
            OFFER_ACCEPTED: self._on_offer_accepted,
            OFFER_AUTO_REJECTED: self._on_offer_auto_rejected,
            OFFER_EXPIRED: self._on_offer_expired,
        }

    def record(
        self, event_type: str, payload: dict[str, Any], aggregate_id: str | None = None
    ) -> OutboxEvent:
        """Stage an event in the caller's transaction."""
        if event_type not in self.handlers:
            raise ValueError(f"Unknown outbox event type: {event_type}")
        return self.repo.add(
            event_type,
            payload,
            aggregate_id=aggregate_id,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        )

    async def dispatch(self, event: OutboxEvent) -> bool:
        """Run the event's handler once; never raises.

        Returns True when the event was delivered.
        """
        if event.status == OutboxStatus.DELIVERED.value:
            return True
        self.repo.record_attempt(event)
        handler = self.handlers.get(str(event.event_type))
        if handler is None:
            self.repo.mark_failed(event, f"No handler for {event.event_type}")
            return False
        try:
            await handler(dict(event.payload or {}))
        except Exception as e:
            logger.exception("Outbox event %s (%s) failed", event.id, event.event_type)
            self.db.rollback()
            self.repo.mark_failed(event, f"{type(e).__name__}: {e}")
            return False
        self.repo.mark_delivered(event)
        return True

    async def dispatch_all(self, events: Iterable[OutboxEvent]) -> int:
        delivered = 0
        for event in events:
            if await self.dispatch(event):
                delivered += 1
        return delivered

    async def dispatch_by_id(self, event_id: str) -> bool:
        event = self.repo.get_by_id(event_id)
        if event is None:
            logger.error("Outbox event %s not found", event_id)
            return False
        return await self.dispatch(event)

    async def process_pending_and_failed(self, now: datetime | None = None) -> int:
        """Deliver stale pending events and retry failed ones whose backoff elapsed.

        Backoff: 2^attempts minutes after the last attempt.

        Returns:
            Number of events attempted.
        """
        now = now or utc_now()
        attempted = 0

        for event in self.repo.get_pending(created_before=now - PENDING_GRACE):
            await self.dispatch(event)
            attempted += 1

        for event in self.repo.get_failed_for_retry():
            last_attempt = as_utc(event.last_attempt_at)  # type: ignore[arg-type]
            if last_attempt is not None:
                next_retry_at = last_attempt + timedelta(minutes=2 ** int(event.attempts))
                if now < next_retry_at:
                    continue
            await self.dispatch(event)
            attempted += 1

        if attempted:
            logger.info("Processed %d outbox events", attempted)
        return attempted

    # --- Shared side effects ---

    def _users(self, *user_ids: str | None) -> dict[str, Any]:
        return UserRepository(self.db).get_many(uid for uid in user_ids if uid)

    async def _offer_side_effects(self, payload: dict[str, Any]) -> None:
        """Cache and channel work shared by every terminal offer transition."""
        offer_id = payload["offer_id"]
        invoice_id = payload["invoice_id"]
        await self.marketplace_cache.invalidate_offer(offer_id, invoice_id, payload["lender_id"])
        await self.marketplace_cache.remove_from_competition(invoice_id, offer_id)
        await self.marketplace_cache.remove_expiration(offer_id)
        await self.marketplace_cache.publish_offer_update(
            {
                "type": payload.get("type", "offer_updated"),
                "offer_id": offer_id,
                "invoice_id": invoice_id,
                "lender_id": payload["lender_id"],
                "status": payload.get("status"),
                "timestamp": utc_now(),
            }
        )

    async def _notify_lender_outcome(
        self, payload: dict[str, Any], outcome: str, reason: str | None
    ) -> None:
        lender_id = payload["lender_id"]
        NotificationService(self.db).notify_offer_outcome(
            lender_id=lender_id,
            invoice_id=payload["invoice_id"],
            offer_id=payload["offer_id"],
            outcome=outcome,
            reason=reason,
        )
        await self.marketplace_cache.publish_notification(
            lender_id,
            {
                "type": f"offer_{outcome}",
                "offer_id": payload["offer_id"],
                "invoice_id": payload["invoice_id"],
                "reason": reason,
                "timestamp": utc_now(),
            },
        )

    # --- Handlers ---

    async def _on_invoice_status_changed(self, payload: dict[str, Any]) -> None:
        invoice_id = payload["invoice_id"]
        new_status = payload["to_status"]
        await self.invoice_cache.invalidate(
            invoice_id, payload.get("seller_id"), payload.get("anchor_id")
        )
        if payload.get("from_status"):
            await self.invoice_cache.track_status_change(payload["from_status"], new_status)
        if new_status == "submitted":
            await self.invoice_cache.track_submission(
                payload["seller_id"], payload["anchor_id"], float(payload.get("amount") or 0)
            )

        update = {
            "type": "status_update",
            "invoice_id": invoice_id,
            "from_status": payload.get("from_status"),
            "status": new_status,
            "changed_by": payload.get("changed_by"),
            "timestamp": utc_now(),
        }
        await self.invoice_cache.publish_status_update(invoice_id, update)
        if payload.get("seller_id"):
            await self.invoice_cache.publish_seller_notification(payload["seller_id"], update)
        if payload.get("anchor_id"):
            await self.invoice_cache.publish_anchor_notification(payload["anchor_id"], update)

        stage = payload.get("document_stage")
        invoice = InvoiceRepository(self.db).get_by_id(invoice_id)
        if stage and invoice is not None:
            for storage_id in document_storage_ids(invoice):
                self.storage.update_visibility(storage_id, DocumentStage(stage))

        recipients = payload.get("notify") or []
        if not recipients or invoice is None:
            return
        message = payload.get("message")
        notifications = NotificationService(self.db)
        users = self._users(*recipients)
        for user_id in recipients:
            notifications.notify_invoice_status(
                user_id=user_id, invoice_id=invoice_id, new_status=new_status, message=message
            )
            user = users.get(user_id)
            if user is not None:
                await self.email.send_invoice_status_changed(user, invoice, new_status, message)

    async def _on_invoice_listed(self, payload: dict[str, Any]) -> None:
        invoice_id = payload["invoice_id"]
        await self.invoice_cache.invalidate_marketplace()
        listing = {key: value for key, value in payload.items() if key != "invoice_id"}
        await self.invoice_cache.publish_marketplace_update(
            {
                "type": "new_listing",
                "invoice_id": invoice_id,
                "data": listing,
                "timestamp": utc_now(),
            }
        )
        await self.marketplace_cache.publish_new_listing(invoice_id, listing)

    async def _on_invoice_updated(self, payload: dict[str, Any]) -> None:
        """Field or document edits and deletions: no status change, no inbox entry."""
        invoice_id = payload["invoice_id"]
        await self.invoice_cache.invalidate(
            invoice_id, payload.get("seller_id"), payload.get("anchor_id")
        )
        await self.invoice_cache.publish_status_update(
            invoice_id,
            {
                "type": payload.get("change", "updated"),
                "invoice_id": invoice_id,
                "fields": payload.get("fields") or [],
                "timestamp": utc_now(),
            },
        )
        if payload.get("previous_anchor_id"):
            await self.invoice_cache.invalidate(invoice_id, anchor_id=payload["previous_anchor_id"])

    async def _on_offer_created(self, payload: dict[str, Any]) -> None:
        offer_id = payload["offer_id"]
        invoice_id = payload["invoice_id"]
        lender_id = payload["lender_id"]
        seller_id = payload["seller_id"]
        rate = float(payload["interest_rate"])

        await self.marketplace_cache.invalidate_offer(offer_id, invoice_id, lender_id)
        await self.invoice_cache.invalidate(invoice_id, seller_id, payload.get("anchor_id"))
        await self.marketplace_cache.track_competition(invoice_id, offer_id, rate)
        await self.marketplace_cache.track_expiration(
            offer_id, datetime.fromisoformat(payload["expires_at"])
        )
        await self.marketplace_cache.track_offer_metrics(lender_id, float(payload["amount"]))
        await self.marketplace_cache.publish_offer_update(
            {
                "type": "new_offer",
                "offer_id": offer_id,
                "invoice_id": invoice_id,
                "lender_id": lender_id,
                "interest_rate": rate,
                "amount": float(payload["amount"]),
                "timestamp": utc_now(),
            }
        )
        await self.marketplace_cache.publish_notification(
            seller_id,
            {
                "type": "new_offer",
                "offer_id": offer_id,
                "invoice_id": invoice_id,
                "interest_rate": rate,
                "amount": float(payload["amount"]),
                "timestamp": utc_now(),
            },
        )

        notifications = NotificationService(self.db)
        notifications.notify_new_offer(
            seller_id=seller_id,
            invoice_id=invoice_id,
            offer_id=offer_id,
            amount=float(payload["amount"]),
            interest_rate=rate,
            currency=str(payload.get("currency") or "NGN"),
        )

        outbid = payload.get("outbid") or []
        for entry in outbid:
            notifications.notify_outbid(
                lender_id=entry["lender_id"],
                invoice_id=invoice_id,
                offer_id=entry["offer_id"],
                competing_rate=rate,
            )

        invoice = InvoiceRepository(self.db).get_by_id(invoice_id)
        offer_repo = OfferRepository(self.db)
        offer = offer_repo.get_by_id(offer_id)
        if invoice is None or offer is None:
            return
        users = self._users(seller_id, lender_id, *(e["lender_id"] for e in outbid))
        seller = users.get(seller_id)
        lender = users.get(lender_id)
        if seller is not None and lender is not None:
            await self.email.send_new_offer_notification(seller, invoice, offer, lender)
            live_count = int(payload.get("live_offer_count") or 0)
            if live_count > 1:
                await self.email.send_multiple_offers_alert(seller, invoice, live_count)
        for entry in outbid:
            other_lender = users.get(entry["lender_id"])
            their_offer = offer_repo.get_by_id(entry["offer_id"])
            if other_lender is not None and their_offer is not None:
                await self.email.send_competitive_offer_alert(
                    other_lender, invoice, their_offer, offer
                )

    async def _on_offer_withdrawn(self, payload: dict[str, Any]) -> None:
        await self._offer_side_effects({**payload, "type": "offer_withdrawn", "status": "withdrawn"})
        seller_id = payload["seller_id"]
        reason = payload.get("reason")
        NotificationService(self.db).notify_offer_withdrawn(
            seller_id=seller_id,
            invoice_id=payload["invoice_id"],
            offer_id=payload["offer_id"],
            reason=reason,
        )
        await self.marketplace_cache.publish_notification(
            seller_id,
            {
                "type": "offer_withdrawn",
                "offer_id": payload["offer_id"],
                "invoice_id": payload["invoice_id"],
                "reason": reason,
                "timestamp": utc_now(),
            },
        )
        invoice = InvoiceRepository(self.db).get_by_id(payload["invoice_id"])
        offer = OfferRepository(self.db).get_by_id(payload["offer_id"])
        users = self._users(seller_id, payload["lender_id"])
        seller = users.get(seller_id)
        lender = users.get(payload["lender_id"])
        if invoice is not None and offer is not None and seller is not None and lender is not None:
            await self.email.send_offer_withdrawn_notification(seller, invoice, offer, lender, reason)

    async def _send_rejection_email(self, payload: dict[str, Any], reason: str | None) -> None:
        invoice = InvoiceRepository(self.db).get_by_id(payload["invoice_id"])
        offer = OfferRepository(self.db).get_by_id(payload["offer_id"])
        lender = self._users(payload["lender_id"]).get(payload["lender_id"])
        if invoice is not None and offer is not None and lender is not None:
            await self.email.send_offer_rejected_notification(lender, invoice, offer, reason)

    async def _on_offer_rejected(self, payload: dict[str, Any]) -> None:
        reason = payload.get("reason")
        await self._offer_side_effects({**payload, "type": "offer_rejected", "status": "rejected"})
        await self._notify_lender_outcome(payload, "rejected", reason)
        await self._send_rejection_email(payload, reason)

    async def _on_offer_auto_rejected(self, payload: dict[str, Any]) -> None:
        reason = payload.get("reason")
        await self._offer_side_effects(
            {**payload, "type": "offer_auto_rejected", "status": "rejected"}
        )
        await self._notify_lender_outcome(payload, "rejected", reason)
        await self._send_rejection_email(payload, reason)

    async def _on_offer_accepted(self, payload: dict[str, Any]) -> None:
        """Lender-side effects; the invoice side travels in its own status event."""
        await self._offer_side_effects({**payload, "type": "offer_accepted", "status": "accepted"})
        await self._notify_lender_outcome(payload, "accepted", None)

        invoice = InvoiceRepository(self.db).get_by_id(payload["invoice_id"])
        offer = OfferRepository(self.db).get_by_id(payload["offer_id"])
        users = self._users(payload["lender_id"], payload.get("seller_id"))
        lender = users.get(payload["lender_id"])
        seller = users.get(payload.get("seller_id") or "")
        if invoice is not None and offer is not None and lender is not None:
            await self.email.send_offer_accepted_notification(lender, invoice, offer, seller)

    async def _on_offer_expired(self, payload: dict[str, Any]) -> None:
        await self._offer_side_effects({**payload, "type": "offer_expired", "status": "expired"})
        await self._notify_lender_outcome(payload, "expired", None)
