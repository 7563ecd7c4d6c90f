"""Key-value settings store used by the ticketing core."""

from __future__ import annotations

from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.db.models import Setting

TICKET_PREFIX_KEY = "ticket_prefix"


def get_setting(db: Session, key: str, default: str | None = None) -> str | None:
    """Return the stored value for ``key`` or ``default`` when unset."""
    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None or row.value is None:
        return default
    return row.value


def set_setting(db: Session, key: str, value: str | None, *, group: str = "general") -> Setting:
    """Create or update a setting."""
    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None:
        row = Setting(key=key, value=value, group=group)
        db.add(row)
    else:
        row.value = value
    db.commit()
    db.refresh(row)
    return row


def get_ticket_prefix(db: Session) -> str:
    """Operator-configured ticket number prefix, falling back to app config."""
    value = (get_setting(db, TICKET_PREFIX_KEY) or "").strip()
    return value or settings.TICKET_PREFIX
