"""Gapless, strictly increasing ticket numbers.

Numbers look like ``{prefix}-{n}``. ``n`` comes from a single persisted counter
row that is incremented under a row lock in its own short transaction, so a
ticket insert that later fails never hands its number to another ticket. Gaps
are possible in that case; duplicates are not.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.db.models import Ticket, TicketCounter
from helpdesk.services import settings_service

logger = logging.getLogger(__name__)

TICKET_COUNTER_NAME = "ticket_number"


class CounterStore(Protocol):
    def increment_and_get(self) -> int:
        """Atomically bump the counter and return the new value."""


def format_ticket_number(prefix: str, value: int) -> str:
    return f"{prefix}-{value}"


def parse_ticket_number(prefix: str, ticket_number: str) -> int | None:
    """Numeric suffix of ``ticket_number`` when it carries ``prefix``."""
    match = re.fullmatch(rf"{re.escape(prefix)}-(\d+)", ticket_number or "")
    return int(match.group(1)) if match else None


def highest_ticket_number(db: Session, prefix: str) -> int:
    """Largest numeric suffix among existing tickets with ``prefix`` (0 when none)."""
    numbers = db.scalars(
        select(Ticket.ticket_number).where(Ticket.ticket_number.like(f"{prefix}-%"))
    ).all()
    suffixes = [parse_ticket_number(prefix, number) for number in numbers]
    return max((value for value in suffixes if value is not None), default=0)


class DatabaseCounterStore:
    """Counter backed by the ``ticket_counters`` row.

    Each call runs in a fresh session from ``session_factory`` and commits
    immediately, independent of the caller's transaction.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        prefix: str,
        counter_name: str = TICKET_COUNTER_NAME,
    ) -> None:
        self._session_factory = session_factory
        self.prefix = prefix
        self.counter_name = counter_name

    def _increment(self, session: Session) -> int | None:
        # UPDATE ... RETURNING takes the row lock for the read-modify-write;
        # concurrent callers queue on it.
        stmt = (
            update(TicketCounter)
            .where(TicketCounter.name == self.counter_name)
            .values(
                current_value=TicketCounter.current_value + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(TicketCounter.current_value)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).scalar_one_or_none()

    def increment_and_get(self) -> int:
        # Second pass only happens when another process seeded the row between
        # our failed UPDATE and our INSERT.
        for _ in range(2):
            with self._session_factory() as session:
                value = self._increment(session)
                if value is None:
                    value = highest_ticket_number(session, self.prefix) + 1
                    session.add(TicketCounter(name=self.counter_name, current_value=value))
                    logger.info(
                        "Seeding ticket counter %s at %s from existing tickets",
                        self.counter_name,
                        value,
                    )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                return value
        raise RuntimeError("Failed to generate ticket number")


@dataclass
class TicketNumberGenerator:
    """Produces ``{prefix}-{n}`` from an injected counter store."""

    counter: CounterStore
    prefix: str

    def next(self) -> str:
        return format_ticket_number(self.prefix, self.counter.increment_and_get())


def default_generator(db: Session, *, prefix: str | None = None) -> TicketNumberGenerator:
    """Generator bound to the same database as ``db`` but its own sessions."""
    resolved_prefix = prefix or settings_service.get_ticket_prefix(db)
    store = DatabaseCounterStore(
        sessionmaker(bind=db.get_bind(), autoflush=False),
        prefix=resolved_prefix,
    )
    return TicketNumberGenerator(counter=store, prefix=resolved_prefix)
