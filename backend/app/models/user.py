"""Directory user model (read-only for the access-control editor)."""
from __future__ import annotations

import datetime
import uuid

from sqlalchemy import Boolean, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.rbac import Role, UserId, UserRecord


class User(Base):
    """An organization member holding exactly one base role."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    # Badge / registration number, used for search in the UI
    registration: Mapped[str | None] = mapped_column(String(50))
    avatar_url: Mapped[str | None] = mapped_column(String(500))
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("true")
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False,
        server_default=text("NOW()"),
    )

    def to_record(self) -> UserRecord:
        """Raises ``ValueError`` when the stored role is not a known ``Role``."""
        return UserRecord(
            id=UserId(str(self.id)),
            name=self.name,
            role=Role(self.role),
            secondary_id=self.registration,
            avatar_ref=self.avatar_url,
        )

    def __repr__(self) -> str:
        return f"<User {self.name!r} role={self.role!r}>"
