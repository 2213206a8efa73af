"""Shared model utilities used across all models."""

import uuid
from datetime import UTC, datetime


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def generate_invoice_id() -> str:
    return f"INV-{uuid.uuid4()}"


def generate_offer_id() -> str:
    return f"OFF-{uuid.uuid4()}"


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes even for timezone-aware columns; every
    value written by this package is UTC, so a naive value is read as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
