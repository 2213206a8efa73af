"""User repository for data access."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.orm import Session

from factoring.models.user import User, UserRole


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: str) -> User | None:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_email(self, email: str) -> User | None:
        return self.db.query(User).filter(User.email == email).first()

    def get_many(self, user_ids: Iterable[str]) -> dict[str, User]:
        """Load several users at once, keyed by id."""
        ids = {uid for uid in user_ids if uid}
        if not ids:
            return {}
        users = self.db.query(User).filter(User.id.in_(ids)).all()
        return {str(u.id): u for u in users}

    def get_active_anchor(self, anchor_id: str) -> User | None:
        return (
            self.db.query(User)
            .filter(
                User.id == anchor_id,
                User.role == UserRole.ANCHOR.value,
                User.is_active == True,  # noqa: E712
            )
            .first()
        )

    def create(
        self,
        *,
        email: str,
        role: UserRole,
        first_name: str = "",
        last_name: str = "",
        business_name: str | None = None,
        business_type: str | None = None,
    ) -> User:
        user = User(
            email=email,
            role=role.value,
            first_name=first_name,
            last_name=last_name,
            business_name=business_name,
            business_type=business_type,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user
