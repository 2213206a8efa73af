"""Outbox event repository for data access."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from factoring.models.outbox_event import OutboxEvent, OutboxStatus
from factoring.models.shared import utc_now


class OutboxRepository:
    """Repository for OutboxEvent model."""

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        event_type: str,
        payload: dict[str, Any],
        aggregate_id: str | None = None,
        max_attempts: int = 5,
    ) -> OutboxEvent:
        """Stage an event in the caller's transaction; nothing is committed here."""
        event = OutboxEvent(
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=payload,
            status=OutboxStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def get_by_id(self, event_id: str) -> OutboxEvent | None:
        return self.db.query(OutboxEvent).filter(OutboxEvent.id == event_id).first()

    def get_pending(self, created_before: datetime | None = None, limit: int = 100) -> list[OutboxEvent]:
        """Pending events, oldest first."""
        query = self.db.query(OutboxEvent).filter(OutboxEvent.status == OutboxStatus.PENDING.value)
        if created_before is not None:
            query = query.filter(OutboxEvent.created_at <= created_before)
        return query.order_by(OutboxEvent.created_at.asc()).limit(limit).all()

    def get_failed_for_retry(self, limit: int = 100) -> list[OutboxEvent]:
        """Failed events eligible for retry (attempts < max_attempts)."""
        return (
            self.db.query(OutboxEvent)
            .filter(
                OutboxEvent.status == OutboxStatus.FAILED.value,
                OutboxEvent.attempts < OutboxEvent.max_attempts,
            )
            .order_by(OutboxEvent.created_at.asc())
            .limit(limit)
            .all()
        )

    def record_attempt(self, event: OutboxEvent) -> OutboxEvent:
        event.attempts = event.attempts + 1  # type: ignore[assignment]
        event.last_attempt_at = utc_now()  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(event)
        return event

    def mark_delivered(self, event: OutboxEvent) -> OutboxEvent:
        event.status = OutboxStatus.DELIVERED.value  # type: ignore[assignment]
        event.delivered_at = utc_now()  # type: ignore[assignment]
        event.last_error = None  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(event)
        return event

    def mark_failed(self, event: OutboxEvent, error: str) -> OutboxEvent:
        event.status = OutboxStatus.FAILED.value  # type: ignore[assignment]
        event.last_error = error[:2000]  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(event)
        return event

    def count_by_status(self, status: OutboxStatus) -> int:
        return self.db.query(OutboxEvent).filter(OutboxEvent.status == status.value).count()
