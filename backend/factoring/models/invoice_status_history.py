"""Append-only audit trail of invoice status changes."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, event

from factoring.core.database import Base
from factoring.models.shared import utc_now


class InvoiceStatusHistory(Base):
    __tablename__ = "invoice_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(
        String(64), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(String(20), nullable=False)
    changed_by = Column(String(64), nullable=False)
    notes = Column(String(1000), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)


@event.listens_for(InvoiceStatusHistory, "before_update")
def _reject_history_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise ValueError("Invoice status history entries are immutable")
