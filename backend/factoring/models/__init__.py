from factoring.models.invoice import Invoice, InvoiceStatus, SupportingDocumentType
from factoring.models.invoice_status_history import InvoiceStatusHistory
from factoring.models.notification import Notification
from factoring.models.offer import AUTO_REJECTION_REASON, Offer, OfferStatus
from factoring.models.outbox_event import OutboxEvent, OutboxStatus
from factoring.models.user import User, UserRole

__all__ = [
    "AUTO_REJECTION_REASON",
    "Invoice",
    "InvoiceStatus",
    "InvoiceStatusHistory",
    "Notification",
    "Offer",
    "OfferStatus",
    "OutboxEvent",
    "OutboxStatus",
    "SupportingDocumentType",
    "User",
    "UserRole",
]
