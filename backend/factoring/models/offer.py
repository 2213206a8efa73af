from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, func, text

from factoring.core.database import Base
from factoring.models.shared import generate_offer_id, utc_now


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


AUTO_REJECTION_REASON = "Another offer was accepted"


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (
        Index("ix_offers_invoice_status", "invoice_id", "status"),
        Index("ix_offers_lender_status", "lender_id", "status"),
        Index("ix_offers_status_expires_at", "status", "expires_at"),
        # At most one accepted offer per invoice
        Index(
            "uq_offers_accepted_per_invoice",
            "invoice_id",
            unique=True,
            sqlite_where=text("status = 'accepted'"),
            postgresql_where=text("status = 'accepted'"),
        ),
        # At most one pending offer per lender per invoice
        Index(
            "uq_offers_pending_per_lender",
            "invoice_id",
            "lender_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(String(64), primary_key=True, default=generate_offer_id)
    invoice_id = Column(String(64), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    lender_id = Column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    amount = Column(Numeric(14, 2), nullable=False)
    interest_rate = Column(Numeric(5, 2), nullable=False)
    funding_percentage = Column(Numeric(5, 2), nullable=False)
    tenure = Column(Integer, nullable=False)
    terms = Column(String(2000), nullable=True)
    lender_notes = Column(String(1000), nullable=True)

    status = Column(String(20), nullable=False, default=OfferStatus.PENDING.value)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    accepted_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    withdrawn_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    acceptance_notes = Column(String(500), nullable=True)
    rejection_reason = Column(String(500), nullable=True)
    withdrawal_reason = Column(String(500), nullable=True)

    # Simple daily-rate interest, fixed at creation
    daily_interest_rate = Column(Numeric(12, 8), nullable=True)
    total_interest_amount = Column(Numeric(14, 2), nullable=True)
    total_repayment_amount = Column(Numeric(14, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
