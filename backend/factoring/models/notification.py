"""Notification model for the per-user in-app inbox."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func
from sqlalchemy.types import JSON

from factoring.core.database import Base
from factoring.models.shared import generate_uuid


class Notification(Base):
    """Notification model - stores in-app notifications for marketplace users."""

    __tablename__ = "notifications"

    id = Column(String(64), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(String(1000), nullable=False)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(64), nullable=True)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
