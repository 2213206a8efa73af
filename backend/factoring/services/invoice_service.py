"""Invoice lifecycle service: every mutation of an invoice goes through here.

Each operation checks ownership, asks ``invoice_rules`` whether the action is
legal, applies the change with a conditional status update, appends to the
status history and stages its side effects in the outbox, all in one
transaction. Side effects are dispatched only after the commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from factoring.core.cache import CacheBackend
from factoring.core.database import transaction
from factoring.core.exceptions import (
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
    ValidationFailed,
)
from factoring.core.locks import invoice_lock
from factoring.models.invoice import Invoice, InvoiceStatus, SupportingDocumentType
from factoring.models.outbox_event import OutboxEvent
from factoring.models.shared import as_utc, utc_now
from factoring.models.user import UserRole
from factoring.repositories.invoice_repository import InvoiceRepository
from factoring.repositories.user_repository import UserRepository
from factoring.services import invoice_rules
from factoring.services.document_storage import (
    DocumentStage,
    DocumentStorage,
    StoredDocument,
    get_document_storage,
)
from factoring.services.email_service import EmailService
from factoring.services.outbox_service import (
    INVOICE_LISTED,
    INVOICE_STATUS_CHANGED,
    INVOICE_UPDATED,
    OutboxService,
    document_storage_ids,
)

logger = logging.getLogger(__name__)

MAX_SUPPORTING_DOCUMENTS_PER_UPLOAD = 5
DEFAULT_ANCHOR_REJECTION_REASON = "Rejected by anchor"
DEFAULT_ADMIN_REJECTION_REASON = "Rejected by admin"
LISTED_NOTE = "Listed to marketplace"
EDITABLE_FIELDS = ("amount", "currency", "issue_date", "due_date", "description", "anchor_id")


@dataclass
class FundingTerms:
    """Admin/anchor supplied marketplace terms; ``None`` leaves a term unchanged."""

    max_funding_amount: Decimal | None = None
    recommended_interest_rate: Decimal | None = None
    max_tenure: int | None = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class SupportingUpload:
    content: bytes
    filename: str
    mime_type: str
    document_type: SupportingDocumentType = SupportingDocumentType.OTHER


def _document_record(stored: StoredDocument, filename: str, now: datetime) -> dict[str, Any]:
    return {
        "filename": stored.storage_id,
        "original_name": filename,
        "url": stored.url,
        "storage_id": stored.storage_id,
        "size": stored.size,
        "mime_type": stored.mime_type,
        "uploaded_at": now.isoformat(),
    }


def _validate_dates(issue_date: datetime, due_date: datetime, now: datetime) -> None:
    issue = as_utc(issue_date)
    due = as_utc(due_date)
    assert issue is not None and due is not None
    if issue > now:
        raise ValidationFailed("Issue date cannot be in the future", field="issue_date")
    if due <= issue:
        raise ValidationFailed("Due date must be after the issue date", field="due_date")


class InvoiceService:
    """Seller, anchor and admin operations on the invoice lifecycle."""

    def __init__(
        self,
        db: Session,
        cache: CacheBackend,
        storage: DocumentStorage | None = None,
        email_service: EmailService | None = None,
    ):
        self.db = db
        self.cache = cache
        self.repo = InvoiceRepository(db)
        self.user_repo = UserRepository(db)
        self.storage = storage or get_document_storage()
        self.outbox = OutboxService(db, cache, email_service=email_service, storage=self.storage)

    # --- Lookups and ownership ---

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.repo.get_by_id(invoice_id)
        if invoice is None:
            raise NotFound("Invoice not found", invoice_id=invoice_id)
        return invoice

    def _get_for_seller(self, invoice_id: str, seller_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if str(invoice.seller_id) != seller_id:
            raise NotAuthorized("You can only manage your own invoices", invoice_id=invoice_id)
        return invoice

    def _get_for_anchor(self, invoice_id: str, anchor_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if str(invoice.anchor_id) != anchor_id:
            raise NotAuthorized("This invoice is not assigned to you", invoice_id=invoice_id)
        return invoice

    def _require_anchor(self, anchor_id: str) -> None:
        if self.user_repo.get_active_anchor(anchor_id) is None:
            raise ValidationFailed(
                "Anchor not found or does not have the anchor role",
                field="anchor_id",
                anchor_id=anchor_id,
            )

    # --- Transition plumbing ---

    def _status_payload(
        self,
        invoice: Invoice,
        from_status: InvoiceStatus | None,
        to_status: InvoiceStatus,
        changed_by: str,
        notify: list[str] | None = None,
        message: str | None = None,
        document_stage: DocumentStage | None = None,
    ) -> dict[str, Any]:
        return {
            "invoice_id": str(invoice.id),
            "seller_id": str(invoice.seller_id),
            "anchor_id": str(invoice.anchor_id),
            "amount": float(invoice.amount),
            "from_status": from_status.value if from_status else None,
            "to_status": to_status.value,
            "changed_by": changed_by,
            "notify": notify or [],
            "message": message,
            "document_stage": document_stage.value if document_stage else None,
        }

    async def _transition(
        self,
        invoice: Invoice,
        action: str,
        actor_id: str,
        *,
        notes: str | None = None,
        changes: dict[str, Any] | None = None,
        notify: list[str] | None = None,
        message: str | None = None,
        document_stage: DocumentStage | None = None,
        extra_events: list[tuple[str, dict[str, Any]]] | None = None,
    ) -> Invoice:
        """Apply one guarded lifecycle action.

        The guard runs before anything is written; the UPDATE is conditioned
        on the status the guard saw, so a concurrent writer turns into
        ``InvalidStateTransition`` rather than a lost update.
        """
        current = invoice_rules.status_of(invoice)
        target = invoice_rules.ensure_transition(invoice, action)
        now = utc_now()
        values = {**invoice_rules.entry_changes(target, now), **(changes or {})}

        with transaction(self.db):
            if not self.repo.transition(invoice, current, target, values):
                latest = self.repo.reload(invoice)
                raise InvalidStateTransition(
                    "invoice",
                    str(invoice.id),
                    str(latest.status),
                    action.replace("_", " "),
                    "Invoice status changed while the request was processed",
                )
            self.repo.add_history(str(invoice.id), target, actor_id, notes)
            events = [
                self.outbox.record(
                    INVOICE_STATUS_CHANGED,
                    self._status_payload(
                        invoice, current, target, actor_id, notify, message, document_stage
                    ),
                    aggregate_id=str(invoice.id),
                )
            ]
            for event_type, payload in extra_events or []:
                events.append(self.outbox.record(event_type, payload, aggregate_id=str(invoice.id)))

        logger.info("Invoice %s moved from %s to %s", invoice.id, current.value, target.value)
        await self.outbox.dispatch_all(events)
        return invoice

    def _record_update(
        self, invoice: Invoice, fields: list[str], change: str = "updated", **extra: Any
    ) -> OutboxEvent:
        return self.outbox.record(
            INVOICE_UPDATED,
            {
                "invoice_id": str(invoice.id),
                "seller_id": str(invoice.seller_id),
                "anchor_id": str(invoice.anchor_id),
                "change": change,
                "fields": fields,
                **extra,
            },
            aggregate_id=str(invoice.id),
        )

    def _delete_stored(self, storage_ids: list[str]) -> None:
        for storage_id in storage_ids:
            try:
                self.storage.delete(storage_id)
            except OSError:
                logger.warning("Failed to delete stored document %s", storage_id, exc_info=True)

    # --- Seller operations ---

    async def create_invoice(
        self,
        seller_id: str,
        *,
        anchor_id: str,
        amount: Decimal,
        issue_date: datetime,
        due_date: datetime,
        currency: str = "NGN",
        description: str | None = None,
    ) -> Invoice:
        if amount <= 0:
            raise ValidationFailed("Amount must be positive", field="amount", value=float(amount))
        now = utc_now()
        _validate_dates(issue_date, due_date, now)
        self._require_anchor(anchor_id)

        with transaction(self.db):
            invoice = self.repo.create(
                seller_id=seller_id,
                anchor_id=anchor_id,
                amount=amount,
                currency=currency.upper(),
                issue_date=issue_date,
                due_date=due_date,
                description=description,
            )
            self.repo.add_history(str(invoice.id), InvoiceStatus.DRAFT, seller_id, "Invoice created")
            event = self.outbox.record(
                INVOICE_STATUS_CHANGED,
                self._status_payload(invoice, None, InvoiceStatus.DRAFT, seller_id),
                aggregate_id=str(invoice.id),
            )

        logger.info("Invoice %s created by seller %s", invoice.id, seller_id)
        await self.outbox.dispatch(event)
        return invoice

    async def update_invoice(
        self, invoice_id: str, seller_id: str, changes: dict[str, Any]
    ) -> Invoice:
        """Edit the seller-editable fields of a draft or rejected invoice."""
        invoice = self._get_for_seller(invoice_id, seller_id)
        invoice_rules.ensure_editable(invoice)

        updates = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS and v is not None}
        if not updates:
            return invoice
        if "amount" in updates and updates["amount"] <= 0:
            raise ValidationFailed("Amount must be positive", field="amount")
        if "currency" in updates:
            updates["currency"] = str(updates["currency"]).upper()
        if "issue_date" in updates or "due_date" in updates:
            _validate_dates(
                updates.get("issue_date", invoice.issue_date),
                updates.get("due_date", invoice.due_date),
                utc_now(),
            )
        previous_anchor = str(invoice.anchor_id)
        if "anchor_id" in updates and updates["anchor_id"] != previous_anchor:
            self._require_anchor(updates["anchor_id"])
        else:
            updates.pop("anchor_id", None)

        with transaction(self.db):
            self.repo.apply(invoice, updates)
            extra = {}
            if "anchor_id" in updates:
                extra["previous_anchor_id"] = previous_anchor
            event = self._record_update(invoice, sorted(updates), **extra)

        await self.outbox.dispatch(event)
        return invoice

    async def upload_invoice_document(
        self,
        invoice_id: str,
        seller_id: str,
        content: bytes,
        filename: str,
        mime_type: str,
    ) -> Invoice:
        """Attach or replace the primary document of an editable invoice."""
        invoice = self._get_for_seller(invoice_id, seller_id)
        invoice_rules.ensure_editable(invoice, "upload a document to")

        stored = self.storage.upload(
            content,
            filename,
            mime_type,
            {"invoice_id": invoice_id, "seller_id": seller_id, "kind": "invoice"},
        )
        previous = dict(invoice.invoice_document or {})
        try:
            with transaction(self.db):
                self.repo.apply(
                    invoice, {"invoice_document": _document_record(stored, filename, utc_now())}
                )
                event = self._record_update(invoice, ["invoice_document"], "document_uploaded")
        except Exception:
            self._delete_stored([stored.storage_id])
            raise

        self.storage.update_visibility(stored.storage_id, DocumentStage.DRAFT)
        if previous.get("storage_id"):
            self._delete_stored([previous["storage_id"]])
        await self.outbox.dispatch(event)
        return invoice

    async def submit_invoice(
        self, invoice_id: str, seller_id: str, final_notes: str | None = None
    ) -> Invoice:
        invoice = self._get_for_seller(invoice_id, seller_id)
        return await self._transition(
            invoice,
            "submit",
            seller_id,
            notes=final_notes or "Submitted for anchor approval",
            notify=[str(invoice.anchor_id)],
            message="A new invoice is waiting for your review.",
            document_stage=DocumentStage.SUBMITTED,
        )

    async def delete_invoice(self, invoice_id: str, seller_id: str) -> None:
        invoice = self._get_for_seller(invoice_id, seller_id)
        if not invoice_rules.can_be_deleted(invoice):
            raise InvalidStateTransition(
                "invoice", invoice_id, str(invoice.status), "delete", "Only draft invoices can be deleted"
            )
        storage_ids = document_storage_ids(invoice)
        with transaction(self.db):
            event = self._record_update(invoice, [], "deleted")
            self.repo.delete(invoice)

        logger.info("Invoice %s deleted by seller %s", invoice_id, seller_id)
        self._delete_stored(storage_ids)
        await self.outbox.dispatch(event)

    async def upload_supporting_documents(
        self, invoice_id: str, seller_id: str, uploads: list[SupportingUpload]
    ) -> Invoice:
        invoice = self._get_for_seller(invoice_id, seller_id)
        if not invoice_rules.can_add_supporting_documents(invoice):
            raise InvalidStateTransition(
                "invoice", invoice_id, str(invoice.status), "add supporting documents to"
            )
        if not uploads:
            raise ValidationFailed("No files provided", field="files")
        if len(uploads) > MAX_SUPPORTING_DOCUMENTS_PER_UPLOAD:
            raise ValidationFailed(
                f"At most {MAX_SUPPORTING_DOCUMENTS_PER_UPLOAD} files can be uploaded at once",
                field="files",
                max_files=MAX_SUPPORTING_DOCUMENTS_PER_UPLOAD,
                provided=len(uploads),
            )
        for upload in uploads:
            self.storage.validate(upload.content, upload.mime_type)

        now = utc_now()
        stage = (
            DocumentStage.SUBMITTED
            if invoice_rules.status_of(invoice) == InvoiceStatus.SUBMITTED
            else DocumentStage.DRAFT
        )
        records: list[dict[str, Any]] = []
        for upload in uploads:
            stored = self.storage.upload(
                upload.content,
                upload.filename,
                upload.mime_type,
                {"invoice_id": invoice_id, "seller_id": seller_id, "kind": "supporting"},
            )
            self.storage.update_visibility(stored.storage_id, stage)
            record = _document_record(stored, upload.filename, now)
            record["id"] = uuid.uuid4().hex
            record["document_type"] = SupportingDocumentType(upload.document_type).value
            records.append(record)

        try:
            with transaction(self.db):
                documents = [*(invoice.supporting_documents or []), *records]
                self.repo.apply(invoice, {"supporting_documents": documents})
                event = self._record_update(
                    invoice, ["supporting_documents"], "supporting_documents_uploaded"
                )
        except Exception:
            self._delete_stored([r["storage_id"] for r in records])
            raise

        await self.outbox.dispatch(event)
        return invoice

    async def delete_supporting_document(
        self, invoice_id: str, seller_id: str, document_id: str
    ) -> Invoice:
        invoice = self._get_for_seller(invoice_id, seller_id)
        invoice_rules.ensure_editable(invoice, "remove documents from")
        documents = list(invoice.supporting_documents or [])
        match = next((d for d in documents if d.get("id") == document_id), None)
        if match is None:
            raise NotFound("Supporting document not found", document_id=document_id)

        with transaction(self.db):
            remaining = [d for d in documents if d.get("id") != document_id]
            self.repo.apply(invoice, {"supporting_documents": remaining})
            event = self._record_update(
                invoice, ["supporting_documents"], "supporting_document_deleted"
            )

        if match.get("storage_id"):
            self._delete_stored([match["storage_id"]])
        await self.outbox.dispatch(event)
        return invoice

    # --- Anchor and admin review ---

    def _validated_terms(self, invoice: Invoice, terms: FundingTerms | None) -> dict[str, Any]:
        if terms is None:
            return {}
        errors = invoice_rules.validate_funding_terms(
            Decimal(str(invoice.amount)),
            terms.max_funding_amount,
            terms.recommended_interest_rate,
            terms.max_tenure,
        )
        if errors:
            raise ValidationFailed("Invalid funding terms", errors=errors)
        return terms.changes()

    async def anchor_review(
        self,
        invoice_id: str,
        anchor_id: str,
        action: str,
        notes: str | None = None,
        funding_terms: FundingTerms | None = None,
    ) -> Invoice:
        """Approve (optionally with funding terms) or reject a submitted invoice."""
        invoice = self._get_for_anchor(invoice_id, anchor_id)
        seller = [str(invoice.seller_id)]
        now = utc_now()

        if action == "approve":
            changes = self._validated_terms(invoice, funding_terms)
            changes.update({"anchor_approval_notes": notes, "anchor_rejection_reason": None})
            return await self._transition(
                invoice,
                "anchor_approve",
                anchor_id,
                notes=notes or "Approved by anchor",
                changes=changes,
                notify=seller,
                message="Your invoice was approved by the anchor and is awaiting verification.",
                document_stage=DocumentStage.APPROVED,
            )
        if action == "reject":
            reason = notes or DEFAULT_ANCHOR_REJECTION_REASON
            return await self._transition(
                invoice,
                "anchor_reject",
                anchor_id,
                notes=reason,
                changes={
                    "anchor_rejection_reason": reason,
                    "anchor_rejection_date": now,
                    "anchor_approval_notes": None,
                },
                notify=seller,
                message=f"Your invoice was rejected by the anchor: {reason}",
            )
        raise ValidationFailed("Action must be 'approve' or 'reject'", field="action", value=action)

    async def admin_verify(
        self,
        invoice_id: str,
        admin_id: str,
        action: str,
        notes: str | None = None,
        funding_terms: FundingTerms | None = None,
    ) -> Invoice:
        """Verify (optionally setting or overriding funding terms) or reject an invoice."""
        invoice = self.get_invoice(invoice_id)
        seller = [str(invoice.seller_id)]
        now = utc_now()

        if action == "verify":
            changes = self._validated_terms(invoice, funding_terms)
            changes.update(
                {
                    "admin_verification_notes": notes,
                    "admin_rejection_reason": None,
                    "verified_by": admin_id,
                }
            )
            return await self._transition(
                invoice,
                "admin_verify",
                admin_id,
                notes=notes or "Verified by admin",
                changes=changes,
                notify=seller,
                message="Your invoice was verified and can now be listed on the marketplace.",
                document_stage=DocumentStage.VERIFIED,
            )
        if action == "reject":
            reason = notes or DEFAULT_ADMIN_REJECTION_REASON
            return await self._transition(
                invoice,
                "admin_reject",
                admin_id,
                notes=reason,
                changes={
                    "admin_rejection_reason": reason,
                    "admin_rejection_date": now,
                    "admin_verification_notes": None,
                },
                notify=seller,
                message=f"Your invoice was rejected during verification: {reason}",
            )
        raise ValidationFailed("Action must be 'verify' or 'reject'", field="action", value=action)

    async def list_to_marketplace(self, invoice_id: str, admin_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        listing = {
            "invoice_id": str(invoice.id),
            "seller_id": str(invoice.seller_id),
            "anchor_id": str(invoice.anchor_id),
            "amount": float(invoice.amount),
            "currency": str(invoice.currency),
            "due_date": as_utc(invoice.due_date).isoformat(),  # type: ignore[union-attr]
            "max_funding_amount": (
                float(invoice.max_funding_amount) if invoice.max_funding_amount is not None else None
            ),
            "recommended_interest_rate": (
                float(invoice.recommended_interest_rate)
                if invoice.recommended_interest_rate is not None
                else None
            ),
            "max_tenure": invoice.max_tenure,
        }
        return await self._transition(
            invoice,
            "list",
            admin_id,
            notes=LISTED_NOTE,
            notify=[str(invoice.seller_id)],
            message="Your invoice is now live on the marketplace.",
            document_stage=DocumentStage.LISTED,
            extra_events=[(INVOICE_LISTED, listing)],
        )

    # --- Repayment and settlement ---

    async def record_repayment(
        self, invoice_id: str, actor_id: str, actor_role: UserRole, amount: Decimal
    ) -> Invoice:
        """Accumulate a repayment; the invoice moves to REPAID once fully repaid."""
        invoice = self.get_invoice(invoice_id)
        if actor_role != UserRole.ADMIN and str(invoice.funded_by) != actor_id:
            raise NotAuthorized(
                "Only the funding lender or an admin can record repayments", invoice_id=invoice_id
            )
        if amount <= 0:
            raise ValidationFailed("Repayment amount must be positive", field="amount")

        async with invoice_lock(self.cache, invoice_id, "repayment"):
            invoice = self.repo.reload(invoice)
            if not invoice_rules.can_be_repaid(invoice):
                raise InvalidStateTransition("invoice", invoice_id, str(invoice.status), "repay")
            repaid = Decimal(str(invoice.repaid_amount or 0)) + amount
            due = Decimal(str(invoice.total_repayment_amount or 0))
            parties = [str(invoice.seller_id), str(invoice.funded_by)]

            if repaid >= due:
                return await self._transition(
                    invoice,
                    "repay",
                    actor_id,
                    notes=f"Repayment of {amount:.2f} recorded; invoice fully repaid",
                    changes={"repaid_amount": repaid},
                    notify=parties,
                    message="The funding on this invoice has been repaid in full.",
                )

            with transaction(self.db):
                self.repo.apply(invoice, {"repaid_amount": repaid})
                event = self._record_update(invoice, ["repaid_amount"], "repayment_recorded")
            logger.info("Partial repayment of %s recorded on invoice %s", amount, invoice_id)

        await self.outbox.dispatch(event)
        return invoice

    async def settle_invoice(self, invoice_id: str, admin_id: str, notes: str | None = None) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        parties = [str(invoice.seller_id)]
        if invoice.funded_by:
            parties.append(str(invoice.funded_by))
        return await self._transition(
            invoice,
            "settle",
            admin_id,
            notes=notes or "Invoice settled",
            notify=parties,
            message="This invoice financing has been settled.",
        )
