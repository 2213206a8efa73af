"""Email service for sending marketplace emails via SMTP."""

from __future__ import annotations

import logging
from decimal import Decimal
from email.message import EmailMessage
from typing import Any

from factoring.core.config import settings

logger = logging.getLogger(__name__)


def _format_amount(value: object) -> str:
    """Format a monetary amount to two decimal places."""
    if value is None:
        return "0.00"
    return f"{Decimal(str(value)):.2f}"


def _format_date(dt: object) -> str:
    """Format a datetime to YYYY-MM-DD, or return empty string if None."""
    if dt is None:
        return ""
    if hasattr(dt, "isoformat"):
        return dt.isoformat()[:10]
    return str(dt)[:10]


def _status_label(status: object) -> str:
    return str(status).replace("_", " ").title()


def _invoice_link(invoice: Any) -> str:
    return f"{settings.FRONTEND_URL}/invoices/{invoice.id}"


def _name(user: Any) -> str:
    name = getattr(user, "display_name", None)
    return str(name) if name else str(getattr(user, "email", "there"))


class EmailService:
    """Service for sending transactional emails via SMTP."""

    async def send_email(self, to: str, subject: str, html_body: str) -> bool:
        """Send an email via SMTP.

        Args:
            to: Recipient email address.
            subject: Email subject line.
            html_body: HTML content of the email.

        Returns:
            True if sent successfully (or no-op when SMTP unconfigured).
        """
        if not settings.SMTP_HOST:
            logger.info("SMTP not configured, skipping email to %s: %s", to, subject)
            return True

        import aiosmtplib

        msg = EmailMessage()
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("Please view this email in an HTML-capable client.")
        msg.add_alternative(html_body, subtype="html")

        await aiosmtplib.send(
            msg,
            hostname=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USERNAME or None,
            password=settings.SMTP_PASSWORD or None,
            start_tls=settings.SMTP_USE_TLS,
        )
        logger.info("Email sent to %s: %s", to, subject)
        return True

    async def _send_to(self, user: Any, subject: str, html_body: str) -> bool:
        if not getattr(user, "email", None):
            logger.warning("User %s has no email, skipping '%s'", getattr(user, "id", None), subject)
            return False
        return await self.send_email(to=str(user.email), subject=subject, html_body=html_body)

    async def send_invoice_status_changed(
        self, user: Any, invoice: Any, new_status: str, message: str | None = None
    ) -> bool:
        """Tell a party that an invoice moved to ``new_status``."""
        label = _status_label(new_status)
        subject = f"Invoice {invoice.id} is now {label}"
        html_body = (
            f"<h2>Invoice status update</h2>"
            f"<p>Hello {_name(user)},</p>"
            f"<p>Invoice <strong>{invoice.id}</strong> is now <strong>{label}</strong>.</p>"
            f"<table>"
            f"<tr><td><strong>Amount:</strong></td>"
            f"<td>{_format_amount(invoice.amount)} {invoice.currency}</td></tr>"
            f"<tr><td><strong>Due Date:</strong></td>"
            f"<td>{_format_date(invoice.due_date)}</td></tr>"
            f"</table>"
        )
        if message:
            html_body += f"<p>{message}</p>"
        html_body += f'<p><a href="{_invoice_link(invoice)}">View invoice</a></p>'
        return await self._send_to(user, subject, html_body)

    async def send_new_offer_notification(
        self, seller: Any, invoice: Any, offer: Any, lender: Any
    ) -> bool:
        subject = f"New funding offer on invoice {invoice.id}"
        html_body = (
            f"<h2>You have a new offer</h2>"
            f"<p>Hello {_name(seller)},</p>"
            f"<p>{_name(lender)} has offered to fund invoice <strong>{invoice.id}</strong>.</p>"
            f"<table>"
            f"<tr><td><strong>Funding amount:</strong></td>"
            f"<td>{_format_amount(offer.amount)} {invoice.currency}</td></tr>"
            f"<tr><td><strong>Interest rate:</strong></td><td>{offer.interest_rate}%</td></tr>"
            f"<tr><td><strong>Tenure:</strong></td><td>{offer.tenure} days</td></tr>"
            f"<tr><td><strong>Expires:</strong></td><td>{_format_date(offer.expires_at)}</td></tr>"
            f"</table>"
            f'<p><a href="{_invoice_link(invoice)}/offers">Review offers</a></p>'
        )
        return await self._send_to(seller, subject, html_body)

    async def send_multiple_offers_alert(self, seller: Any, invoice: Any, total_offers: int) -> bool:
        subject = f"{total_offers} lenders are competing for invoice {invoice.id}"
        html_body = (
            f"<h2>Your invoice is attracting interest</h2>"
            f"<p>Hello {_name(seller)},</p>"
            f"<p>Invoice <strong>{invoice.id}</strong> now has "
            f"<strong>{total_offers}</strong> active offers.</p>"
            f'<p><a href="{_invoice_link(invoice)}/offers">Compare offers</a></p>'
        )
        return await self._send_to(seller, subject, html_body)

    async def send_competitive_offer_alert(
        self, lender: Any, invoice: Any, their_offer: Any, new_offer: Any
    ) -> bool:
        subject = f"You have been outbid on invoice {invoice.id}"
        html_body = (
            f"<h2>A competing offer was placed</h2>"
            f"<p>Hello {_name(lender)},</p>"
            f"<p>A new offer at <strong>{new_offer.interest_rate}%</strong> for "
            f"{_format_amount(new_offer.amount)} {invoice.currency} now ranks ahead of your "
            f"offer at {their_offer.interest_rate}% for "
            f"{_format_amount(their_offer.amount)} {invoice.currency}.</p>"
            f'<p><a href="{settings.FRONTEND_URL}/marketplace/{invoice.id}">View listing</a></p>'
        )
        return await self._send_to(lender, subject, html_body)

    async def send_offer_accepted_notification(
        self, lender: Any, invoice: Any, offer: Any, seller: Any
    ) -> bool:
        subject = f"Your offer on invoice {invoice.id} was accepted"
        html_body = (
            f"<h2>Offer accepted</h2>"
            f"<p>Hello {_name(lender)},</p>"
            f"<p>{_name(seller)} accepted your offer to fund invoice "
            f"<strong>{invoice.id}</strong>.</p>"
            f"<table>"
            f"<tr><td><strong>Funding amount:</strong></td>"
            f"<td>{_format_amount(offer.amount)} {invoice.currency}</td></tr>"
            f"<tr><td><strong>Interest rate:</strong></td><td>{offer.interest_rate}%</td></tr>"
            f"<tr><td><strong>Expected repayment:</strong></td>"
            f"<td>{_format_amount(invoice.total_repayment_amount)} {invoice.currency}</td></tr>"
            f"<tr><td><strong>Invoice due:</strong></td>"
            f"<td>{_format_date(invoice.due_date)}</td></tr>"
            f"</table>"
        )
        return await self._send_to(lender, subject, html_body)

    async def send_offer_rejected_notification(
        self, lender: Any, invoice: Any, offer: Any, reason: str | None = None
    ) -> bool:
        subject = f"Your offer on invoice {invoice.id} was not accepted"
        html_body = (
            f"<h2>Offer not accepted</h2>"
            f"<p>Hello {_name(lender)},</p>"
            f"<p>Your offer of {_format_amount(offer.amount)} {invoice.currency} at "
            f"{offer.interest_rate}% on invoice <strong>{invoice.id}</strong> was not accepted.</p>"
        )
        if reason:
            html_body += f"<p><strong>Reason:</strong> {reason}</p>"
        html_body += (
            f'<p><a href="{settings.FRONTEND_URL}/marketplace">Browse other invoices</a></p>'
        )
        return await self._send_to(lender, subject, html_body)

    async def send_offer_withdrawn_notification(
        self, seller: Any, invoice: Any, offer: Any, lender: Any, reason: str | None = None
    ) -> bool:
        subject = f"An offer on invoice {invoice.id} was withdrawn"
        html_body = (
            f"<h2>Offer withdrawn</h2>"
            f"<p>Hello {_name(seller)},</p>"
            f"<p>{_name(lender)} withdrew their offer of {_format_amount(offer.amount)} "
            f"{invoice.currency} on invoice <strong>{invoice.id}</strong>.</p>"
        )
        if reason:
            html_body += f"<p><strong>Reason:</strong> {reason}</p>"
        return await self._send_to(seller, subject, html_body)
