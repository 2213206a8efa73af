"""User directory: the parties that own, approve, verify and fund invoices."""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, String, func

from factoring.core.database import Base
from factoring.models.shared import generate_uuid


class UserRole(str, Enum):
    SELLER = "seller"
    ANCHOR = "anchor"
    LENDER = "lender"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    business_name = Column(String(255), nullable=True)
    business_type = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def display_name(self) -> str:
        if self.business_name:
            return str(self.business_name)
        return f"{self.first_name} {self.last_name}".strip()
