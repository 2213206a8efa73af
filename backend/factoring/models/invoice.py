from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.types import JSON

from factoring.core.database import Base
from factoring.models.shared import generate_invoice_id, utc_now


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    ANCHOR_APPROVED = "anchor_approved"
    ADMIN_VERIFIED = "admin_verified"
    LISTED = "listed"
    FUNDED = "funded"
    REPAID = "repaid"
    SETTLED = "settled"
    REJECTED = "rejected"


class SupportingDocumentType(str, Enum):
    PURCHASE_ORDER = "purchase_order"
    DELIVERY_NOTE = "delivery_note"
    CONTRACT = "contract"
    OTHER = "other"


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_seller_status", "seller_id", "status"),
        Index("ix_invoices_anchor_status", "anchor_id", "status"),
        Index("ix_invoices_status_listed_at", "status", "listed_at"),
    )

    id = Column(String(64), primary_key=True, default=generate_invoice_id)
    seller_id = Column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    anchor_id = Column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    funded_by = Column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)

    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="NGN")
    issue_date = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False, index=True)
    description = Column(String(1000), nullable=True)

    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value, index=True)

    # Documents: {filename, original_name, url, storage_id, size, mime_type, uploaded_at}
    invoice_document = Column(JSON, nullable=True)
    supporting_documents = Column(JSON, nullable=False, default=list)

    # Lifecycle timestamps
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    anchor_approval_date = Column(DateTime(timezone=True), nullable=True)
    anchor_rejection_date = Column(DateTime(timezone=True), nullable=True)
    admin_verification_date = Column(DateTime(timezone=True), nullable=True)
    admin_rejection_date = Column(DateTime(timezone=True), nullable=True)
    listed_at = Column(DateTime(timezone=True), nullable=True)
    funded_at = Column(DateTime(timezone=True), nullable=True)
    repayment_date = Column(DateTime(timezone=True), nullable=True)
    settlement_date = Column(DateTime(timezone=True), nullable=True)

    # Review notes; a rejection reason and approval notes never coexist
    anchor_approval_notes = Column(String(1000), nullable=True)
    anchor_rejection_reason = Column(String(1000), nullable=True)
    admin_verification_notes = Column(String(1000), nullable=True)
    admin_rejection_reason = Column(String(1000), nullable=True)
    verified_by = Column(String(64), ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)

    # Admin-controlled marketplace terms
    max_funding_amount = Column(Numeric(14, 2), nullable=True)
    recommended_interest_rate = Column(Numeric(5, 2), nullable=True)
    max_tenure = Column(Integer, nullable=True)

    # Funding
    funding_amount = Column(Numeric(14, 2), nullable=True)
    interest_rate = Column(Numeric(5, 2), nullable=True)
    total_repayment_amount = Column(Numeric(14, 2), nullable=True)
    repaid_amount = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def has_funding_terms(self) -> bool:
        return self.recommended_interest_rate is not None and self.max_funding_amount is not None
