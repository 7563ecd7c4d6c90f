"""Key-value settings store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from helpdesk.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Setting(Base):
    """Operator-editable setting (e.g. ``ticket_prefix``)."""

    __tablename__ = "settings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    group: Mapped[str] = mapped_column(String(50), default="general", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, onupdate=_utcnow, nullable=False)
