"""Service for creating and managing in-app notifications."""

from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from factoring.core.exceptions import NotFound
from factoring.models.notification import Notification
from factoring.repositories.notification_repository import NotificationRepository

# Notification categories
CATEGORY_INVOICE = "invoice"
CATEGORY_OFFER = "offer"
CATEGORY_MARKETPLACE = "marketplace"


class NotificationService:
    """Service for creating in-app notifications from marketplace events."""

    def __init__(self, db: Session):
        self.db = db
        self.repo = NotificationRepository(db)

    def notify(
        self,
        *,
        user_id: str,
        category: str,
        title: str,
        message: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        """Create a notification."""
        return self.repo.create(
            user_id=user_id,
            category=category,
            title=title,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
            data=data,
        )

    def notify_invoice_status(
        self,
        *,
        user_id: str,
        invoice_id: str,
        new_status: str,
        message: str | None = None,
    ) -> Notification:
        label = new_status.replace("_", " ")
        return self.notify(
            user_id=user_id,
            category=CATEGORY_INVOICE,
            title=f"Invoice {label}",
            message=message or f"Invoice {invoice_id} is now {label}.",
            resource_type="invoice",
            resource_id=invoice_id,
            data={"status": new_status},
        )

    def notify_new_offer(
        self,
        *,
        seller_id: str,
        invoice_id: str,
        offer_id: str,
        amount: float,
        interest_rate: float,
        currency: str,
    ) -> Notification:
        return self.notify(
            user_id=seller_id,
            category=CATEGORY_OFFER,
            title="New funding offer",
            message=(
                f"A lender offered {amount:.2f} {currency.upper()} at {interest_rate}% "
                f"on invoice {invoice_id}."
            ),
            resource_type="offer",
            resource_id=offer_id,
            data={"invoice_id": invoice_id},
        )

    def notify_offer_outcome(
        self,
        *,
        lender_id: str,
        invoice_id: str,
        offer_id: str,
        outcome: str,
        reason: str | None = None,
    ) -> Notification:
        """Tell a lender their offer was accepted, rejected or expired."""
        msg = f"Your offer on invoice {invoice_id} was {outcome}."
        if reason:
            msg += f" Reason: {reason}"
        return self.notify(
            user_id=lender_id,
            category=CATEGORY_OFFER,
            title=f"Offer {outcome}",
            message=msg,
            resource_type="offer",
            resource_id=offer_id,
            data={"invoice_id": invoice_id, "outcome": outcome},
        )

    def notify_offer_withdrawn(
        self,
        *,
        seller_id: str,
        invoice_id: str,
        offer_id: str,
        reason: str | None = None,
    ) -> Notification:
        msg = f"A lender withdrew their offer on invoice {invoice_id}."
        if reason:
            msg += f" Reason: {reason}"
        return self.notify(
            user_id=seller_id,
            category=CATEGORY_OFFER,
            title="Offer withdrawn",
            message=msg,
            resource_type="offer",
            resource_id=offer_id,
            data={"invoice_id": invoice_id},
        )

    def notify_outbid(
        self,
        *,
        lender_id: str,
        invoice_id: str,
        offer_id: str,
        competing_rate: float,
    ) -> Notification:
        return self.notify(
            user_id=lender_id,
            category=CATEGORY_MARKETPLACE,
            title="You have been outbid",
            message=(
                f"A competing offer at {competing_rate}% now ranks ahead of yours "
                f"on invoice {invoice_id}."
            ),
            resource_type="offer",
            resource_id=offer_id,
            data={"invoice_id": invoice_id},
        )

    # --- Inbox ---

    def list_for_user(
        self,
        user_id: str,
        skip: int = 0,
        limit: int = 50,
        category: str | None = None,
        is_read: bool | None = None,
        order_by: str | None = None,
    ) -> list[Notification]:
        return self.repo.get_all(
            user_id, skip=skip, limit=limit, category=category, is_read=is_read, order_by=order_by
        )

    def unread_count(self, user_id: str) -> int:
        return self.repo.count_unread(user_id)

    def mark_as_read(self, user_id: str, notification_id: str) -> Notification:
        notification = self.repo.get_by_id(notification_id)
        if notification is None or str(notification.user_id) != user_id:
            raise NotFound("Notification not found", notification_id=notification_id)
        result = self.repo.mark_as_read(notification_id)
        assert result is not None
        return result

    def mark_all_as_read(self, user_id: str) -> int:
        return self.repo.mark_all_as_read(user_id)
