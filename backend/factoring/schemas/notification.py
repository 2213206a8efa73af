"""Pydantic schemas for Notification."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    category: str
    title: str
    message: str
    resource_type: str | None
    resource_id: str | None
    data: dict[str, Any] | None = None
    is_read: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class NotificationCountResponse(BaseModel):
    unread_count: int


class MarkAllReadResponse(BaseModel):
    marked_count: int
