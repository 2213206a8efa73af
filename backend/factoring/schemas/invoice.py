from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field

from factoring.models.invoice import SupportingDocumentType
from factoring.services import invoice_rules


class FundingTermsInput(BaseModel):
    max_funding_amount: Decimal | None = Field(default=None, gt=0)
    recommended_interest_rate: Decimal | None = Field(default=None, ge=0, le=50)
    max_tenure: int | None = Field(default=None, ge=1, le=365)


class InvoiceCreate(BaseModel):
    anchor_id: str
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    issue_date: datetime
    due_date: datetime
    description: str | None = Field(default=None, max_length=1000)


class InvoiceUpdate(BaseModel):
    anchor_id: str | None = None
    amount: Decimal | None = Field(default=None, gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    issue_date: datetime | None = None
    due_date: datetime | None = None
    description: str | None = Field(default=None, max_length=1000)


class InvoiceSubmit(BaseModel):
    final_notes: str | None = Field(default=None, max_length=1000)


class AnchorReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    notes: str | None = Field(default=None, max_length=1000)
    funding_terms: FundingTermsInput | None = None


class AdminVerifyRequest(BaseModel):
    action: Literal["verify", "reject"]
    notes: str | None = Field(default=None, max_length=1000)
    funding_terms: FundingTermsInput | None = None


class RepaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0)


class SettleRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class DocumentResponse(BaseModel):
    id: str | None = None
    document_type: SupportingDocumentType | None = None
    filename: str
    original_name: str
    url: str
    storage_id: str
    size: int
    mime_type: str
    uploaded_at: datetime | None = None


class InvoiceResponse(BaseModel):
    id: str
    seller_id: str
    anchor_id: str
    funded_by: str | None = None
    amount: Decimal
    currency: str
    issue_date: datetime
    due_date: datetime
    description: str | None = None
    status: str
    invoice_document: DocumentResponse | None = None
    supporting_documents: list[DocumentResponse] = []
    submitted_at: datetime | None = None
    anchor_approval_date: datetime | None = None
    anchor_rejection_date: datetime | None = None
    admin_verification_date: datetime | None = None
    admin_rejection_date: datetime | None = None
    listed_at: datetime | None = None
    funded_at: datetime | None = None
    repayment_date: datetime | None = None
    settlement_date: datetime | None = None
    anchor_approval_notes: str | None = None
    anchor_rejection_reason: str | None = None
    admin_verification_notes: str | None = None
    admin_rejection_reason: str | None = None
    verified_by: str | None = None
    max_funding_amount: Decimal | None = None
    recommended_interest_rate: Decimal | None = None
    max_tenure: int | None = None
    funding_amount: Decimal | None = None
    interest_rate: Decimal | None = None
    total_repayment_amount: Decimal | None = None
    repaid_amount: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}

    # Derived values are recomputed on every response, cached or not

    @computed_field  # type: ignore[prop-decorator]
    @property
    def days_until_due(self) -> int:
        return invoice_rules.days_until_due(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_overdue(self) -> bool:
        return invoice_rules.is_overdue(self)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def funding_percentage(self) -> float:
        return round(invoice_rules.funding_percentage(self), 2)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def repayment_progress(self) -> float:
        return round(invoice_rules.repayment_progress(self), 2)


class SecureDocumentUrl(BaseModel):
    url: str
    expires_in: int


class StatusHistoryEntry(BaseModel):
    status: str
    timestamp: datetime
    changed_by: str
    changed_by_name: str | None = None
    notes: str | None = None
    metadata: dict[str, Any] = {}


class TimelineMetrics(BaseModel):
    total_changes: int
    status_breakdown: dict[str, int]
    first_submitted: datetime | None = None
    last_modified: datetime | None = None
    processing_days: int | None = None


class StatusHistoryResponse(BaseModel):
    invoice_id: str
    current_status: str
    history: list[StatusHistoryEntry]
    timeline: TimelineMetrics


class AnalyticsTotals(BaseModel):
    total_invoices: int
    total_value: float
    average_amount: float


class StatusBreakdownItem(BaseModel):
    status: str
    count: int
    total_value: float


class MonthlyTrendItem(BaseModel):
    month: str
    invoices_created: int
    invoices_completed: int
    total_value: float


class PerformanceMetrics(BaseModel):
    average_approval_hours: float | None = None
    average_hours_to_funding: float | None = None
    approval_rate: float
    funding_rate: float
    overdue_count: int


class InvoiceAnalyticsResponse(BaseModel):
    period: str
    start_date: datetime
    end_date: datetime
    totals: AnalyticsTotals
    status_breakdown: list[StatusBreakdownItem]
    monthly_trend: list[MonthlyTrendItem]
    performance: PerformanceMetrics
