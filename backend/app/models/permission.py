"""SQLAlchemy models for the access policy: key/value documents and audit trail."""
from __future__ import annotations

import datetime
import uuid
from typing import Any

from sqlalchemy import ForeignKey, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

MATRIX_KEY = "system_permissions"
OVERRIDES_KEY = "user_permission_overrides"


class AppConfig(Base):
    """One JSON document per configuration key.

    ``system_permissions`` holds ``{permission: [role, ...]}`` and
    ``user_permission_overrides`` holds ``{user_id: {permission: bool}}``.
    """
    __tablename__ = "app_config"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False,
        server_default=text("NOW()"),
        onupdate=text("NOW()"),
    )

    def __repr__(self) -> str:
        return f"<AppConfig {self.key!r}>"


class AuditLog(Base):
    """Append-only record of committed access-policy changes."""
    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    username: Mapped[str | None] = mapped_column(String(200))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(100))
    resource_id: Mapped[str | None] = mapped_column(String(200))
    details: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime.datetime] = mapped_column(
        nullable=False, server_default=text("NOW()")
    )

    def __repr__(self) -> str:
        return f"<AuditLog {self.action!r} by {self.username!r}>"
