"""Domain error taxonomy for the invoice lifecycle and the offer engine.

Every error is a ``ValueError`` so existing ``except ValueError`` call sites
keep working, but each one also carries a stable ``code``, an HTTP status and
a ``details`` mapping with the structured data the caller needs to explain
the rejection (limits, offending values, current state).
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class MarketplaceError(ValueError):
    """Base class for recoverable domain-rule violations."""

    code = "marketplace_error"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidStateTransition(MarketplaceError):
    code = "invalid_state_transition"
    status_code = 409

    def __init__(
        self,
        entity: str,
        entity_id: str,
        current_status: str,
        requested: str,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Cannot {requested} {entity} {entity_id} while it is {current_status}",
            entity=entity,
            entity_id=entity_id,
            current_status=current_status,
            requested=requested,
        )


class InvoiceNotAvailable(MarketplaceError):
    code = "invoice_not_available"
    status_code = 404


class FundingTermsNotSet(MarketplaceError):
    code = "funding_terms_not_set"
    status_code = 400


class InterestRateMismatch(MarketplaceError):
    code = "interest_rate_mismatch"
    status_code = 400


class TenureExceedsLimit(MarketplaceError):
    code = "tenure_exceeds_limit"
    status_code = 400


class FundingAmountExceedsLimit(MarketplaceError):
    code = "funding_amount_exceeds_limit"
    status_code = 400


class DuplicateActiveOffer(MarketplaceError):
    code = "duplicate_active_offer"
    status_code = 409


class OfferNotActionable(MarketplaceError):
    code = "offer_not_actionable"
    status_code = 409


class OperationInProgress(MarketplaceError):
    code = "operation_in_progress"
    status_code = 409


class NotAuthorized(MarketplaceError):
    code = "not_authorized"
    status_code = 403


class NotFound(MarketplaceError):
    code = "not_found"
    status_code = 404


class ValidationFailed(MarketplaceError):
    code = "validation_failed"
    status_code = 422


def to_http_exception(exc: MarketplaceError) -> HTTPException:
    """Translate a domain error into the HTTPException raised by routers."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())
