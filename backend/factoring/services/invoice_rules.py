"""Invoice lifecycle rules: the transition table, guards and derived values.

Everything here works on plain attribute access, so an ORM ``Invoice``, a
cached dict turned into a ``SimpleNamespace`` or a test double all behave the
same. The transition table is the only place legality is defined; every
mutation path in ``InvoiceService`` and ``AcceptanceService`` goes through
``ensure_transition``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from factoring.core.exceptions import InvalidStateTransition
from factoring.models.invoice import InvoiceStatus
from factoring.models.shared import as_utc, utc_now

TWO_PLACES = Decimal("0.01")

EDITABLE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.REJECTED})
TERMINAL_STATUSES = frozenset({InvoiceStatus.SETTLED, InvoiceStatus.REJECTED})

TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SUBMITTED}),
    InvoiceStatus.REJECTED: frozenset({InvoiceStatus.SUBMITTED}),
    InvoiceStatus.SUBMITTED: frozenset({InvoiceStatus.ANCHOR_APPROVED, InvoiceStatus.REJECTED}),
    InvoiceStatus.ANCHOR_APPROVED: frozenset(
        {InvoiceStatus.ADMIN_VERIFIED, InvoiceStatus.REJECTED}
    ),
    InvoiceStatus.ADMIN_VERIFIED: frozenset({InvoiceStatus.LISTED}),
    InvoiceStatus.LISTED: frozenset({InvoiceStatus.FUNDED}),
    InvoiceStatus.FUNDED: frozenset({InvoiceStatus.REPAID}),
    InvoiceStatus.REPAID: frozenset({InvoiceStatus.SETTLED}),
    InvoiceStatus.SETTLED: frozenset(),
}

# Timestamp column stamped when an invoice enters a status
STATUS_TIMESTAMPS: dict[InvoiceStatus, str] = {
    InvoiceStatus.SUBMITTED: "submitted_at",
    InvoiceStatus.ANCHOR_APPROVED: "anchor_approval_date",
    InvoiceStatus.ADMIN_VERIFIED: "admin_verification_date",
    InvoiceStatus.LISTED: "listed_at",
    InvoiceStatus.FUNDED: "funded_at",
    InvoiceStatus.REPAID: "repayment_date",
    InvoiceStatus.SETTLED: "settlement_date",
}


@dataclass(frozen=True)
class StatusInfo:
    label: str
    description: str
    color: str
    is_terminal: bool


STATUS_INFO: dict[InvoiceStatus, StatusInfo] = {
    InvoiceStatus.DRAFT: StatusInfo("Draft", "Invoice is being prepared by the seller", "gray", False),
    InvoiceStatus.SUBMITTED: StatusInfo(
        "Submitted", "Awaiting review by the anchor", "blue", False
    ),
    InvoiceStatus.ANCHOR_APPROVED: StatusInfo(
        "Anchor approved", "Approved by the anchor, awaiting admin verification", "indigo", False
    ),
    InvoiceStatus.ADMIN_VERIFIED: StatusInfo(
        "Verified", "Verified by an admin, ready to be listed", "purple", False
    ),
    InvoiceStatus.LISTED: StatusInfo(
        "Listed", "Open to offers on the marketplace", "yellow", False
    ),
    InvoiceStatus.FUNDED: StatusInfo("Funded", "An offer was accepted and funded", "green", False),
    InvoiceStatus.REPAID: StatusInfo("Repaid", "The funding has been repaid in full", "teal", False),
    InvoiceStatus.SETTLED: StatusInfo("Settled", "The financing is closed", "emerald", True),
    InvoiceStatus.REJECTED: StatusInfo(
        "Rejected", "Rejected during review; may be edited and resubmitted", "red", True
    ),
}


def status_of(invoice: Any) -> InvoiceStatus:
    return InvoiceStatus(str(invoice.status))


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


# --- Guards ---


def can_be_edited(invoice: Any) -> bool:
    return status_of(invoice) in EDITABLE_STATUSES


def can_be_submitted(invoice: Any) -> bool:
    document = invoice.invoice_document or {}
    return can_be_edited(invoice) and bool(document.get("url"))


def can_be_approved_by_anchor(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.SUBMITTED


def can_be_verified_by_admin(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.ANCHOR_APPROVED


def can_be_listed(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.ADMIN_VERIFIED


def can_be_funded(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.LISTED


def can_be_repaid(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.FUNDED


def can_be_settled(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.REPAID


def can_be_deleted(invoice: Any) -> bool:
    return status_of(invoice) == InvoiceStatus.DRAFT


def can_add_supporting_documents(invoice: Any) -> bool:
    return can_be_edited(invoice) or status_of(invoice) == InvoiceStatus.SUBMITTED


# action -> (target status, guard)
ACTIONS = {
    "submit": (InvoiceStatus.SUBMITTED, can_be_submitted),
    "anchor_approve": (InvoiceStatus.ANCHOR_APPROVED, can_be_approved_by_anchor),
    "anchor_reject": (InvoiceStatus.REJECTED, can_be_approved_by_anchor),
    "admin_verify": (InvoiceStatus.ADMIN_VERIFIED, can_be_verified_by_admin),
    "admin_reject": (InvoiceStatus.REJECTED, can_be_verified_by_admin),
    "list": (InvoiceStatus.LISTED, can_be_listed),
    "fund": (InvoiceStatus.FUNDED, can_be_funded),
    "repay": (InvoiceStatus.REPAID, can_be_repaid),
    "settle": (InvoiceStatus.SETTLED, can_be_settled),
}


def ensure_transition(invoice: Any, action: str) -> InvoiceStatus:
    """Check an action against the guard and the transition table.

    Returns the target status, or raises ``InvalidStateTransition`` without
    touching the invoice.
    """
    target, guard = ACTIONS[action]
    current = status_of(invoice)
    if not guard(invoice) or not can_transition(current, target):
        message = None
        if action == "submit" and can_be_edited(invoice):
            message = "Invoice document must be uploaded before submission"
        raise InvalidStateTransition(
            "invoice", str(invoice.id), current.value, action.replace("_", " "), message
        )
    return target


def ensure_editable(invoice: Any, action: str = "edit") -> None:
    if not can_be_edited(invoice):
        raise InvalidStateTransition("invoice", str(invoice.id), status_of(invoice).value, action)


def entry_changes(target: InvoiceStatus, now: datetime) -> dict[str, Any]:
    """Timestamp column stamped on entering ``target``."""
    column = STATUS_TIMESTAMPS.get(target)
    return {column: now} if column else {}


# --- Derived values ---


def days_until_due(invoice: Any, now: datetime | None = None) -> int:
    """Whole days until the due date, rounded up; negative once overdue."""
    now = now or utc_now()
    due = as_utc(invoice.due_date)
    assert due is not None
    return math.ceil((due - now) / timedelta(days=1))


def is_overdue(invoice: Any, now: datetime | None = None) -> bool:
    now = now or utc_now()
    due = as_utc(invoice.due_date)
    assert due is not None
    return now > due


def funding_percentage(invoice: Any) -> float:
    if not invoice.funding_amount or not invoice.amount:
        return 0.0
    return float(Decimal(str(invoice.funding_amount)) / Decimal(str(invoice.amount)) * 100)


def repayment_progress(invoice: Any) -> float:
    if not invoice.total_repayment_amount or not invoice.repaid_amount:
        return 0.0
    return float(
        Decimal(str(invoice.repaid_amount)) / Decimal(str(invoice.total_repayment_amount)) * 100
    )


def days_held(due_date: datetime, funded_at: datetime) -> int:
    """Days from funding to the due date, rounded up and never negative."""
    due = as_utc(due_date)
    funded = as_utc(funded_at)
    assert due is not None and funded is not None
    return max(0, math.ceil((due - funded) / timedelta(days=1)))


def calculate_total_repayment(
    funding_amount: Decimal, interest_rate: Decimal, days: int
) -> Decimal:
    """fundingAmount + fundingAmount x (rate / 365 / 100) x days, to the cent."""
    principal = Decimal(str(funding_amount))
    daily_rate = Decimal(str(interest_rate)) / Decimal(365) / Decimal(100)
    total = principal + principal * daily_rate * Decimal(days)
    return total.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def validate_funding_terms(
    amount: Decimal,
    max_funding_amount: Decimal | None,
    recommended_interest_rate: Decimal | None,
    max_tenure: int | None,
) -> list[str]:
    """Problems with admin/anchor supplied funding terms; empty when valid."""
    errors: list[str] = []
    if max_funding_amount is not None:
        if max_funding_amount <= 0:
            errors.append("Max funding amount must be positive")
        elif max_funding_amount > amount:
            errors.append("Max funding amount cannot exceed the invoice amount")
    if recommended_interest_rate is not None and not (0 <= recommended_interest_rate <= 50):
        errors.append("Recommended interest rate must be between 0 and 50")
    if max_tenure is not None and not (1 <= max_tenure <= 365):
        errors.append("Max tenure must be between 1 and 365 days")
    return errors


def status_metadata(status: str, invoice: Any) -> dict[str, Any]:
    """Display metadata for a history entry, plus status specific details."""
    try:
        info = STATUS_INFO[InvoiceStatus(status)]
    except ValueError:
        return {"label": status, "description": "", "color": "gray", "is_terminal": False}
    metadata: dict[str, Any] = {
        "label": info.label,
        "description": info.description,
        "color": info.color,
        "is_terminal": info.is_terminal,
    }
    if status == InvoiceStatus.SUBMITTED.value:
        metadata["documents_included"] = {
            "main_document": bool(invoice.invoice_document),
            "supporting_documents": len(invoice.supporting_documents or []),
        }
    elif status == InvoiceStatus.ANCHOR_APPROVED.value and invoice.max_funding_amount is not None:
        metadata["approved_funding_amount"] = float(invoice.max_funding_amount)
    elif status == InvoiceStatus.FUNDED.value and invoice.funding_amount is not None:
        metadata["funding_amount"] = float(invoice.funding_amount)
        metadata["interest_rate"] = float(invoice.interest_rate or 0)
    return metadata
