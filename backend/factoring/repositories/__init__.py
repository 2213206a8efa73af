from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.notification_repository import NotificationRepository
from factoring.repositories.offer_repository import OfferRepository
from factoring.repositories.outbox_repository import OutboxRepository
from factoring.repositories.user_repository import UserRepository

__all__ = [
    "InvoiceRepository",
    "NotificationRepository",
    "OfferRepository",
    "OutboxRepository",
    "UserRepository",
]
