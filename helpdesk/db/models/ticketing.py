"""Ticketing, email threading and SLA ORM models."""

from __future__ import annotations

from typing import TYPE_CHECKING

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from helpdesk.db.base import Base
from helpdesk.db.enums import (
    MailboxType,
    MessageType,
    SenderType,
    TicketPriority,
    TicketStatus,
)
from helpdesk.types import AgentSender, CustomerSender, Sender

if TYPE_CHECKING:
    from helpdesk.db.models.auth import User


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_type(enum_cls, *, name: str) -> Enum:
    """Store Python str-enums by value as portable VARCHAR columns."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


class Customer(Base):
    """Person who emails in. Identity is the lowercased address."""

    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class Mailbox(Base):
    """Inbound mailbox polled by the ingest job."""

    __tablename__ = "mailboxes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    type: Mapped[MailboxType] = mapped_column(
        _enum_type(MailboxType, name="mailbox_type"), nullable=False
    )
    polling_interval: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_checked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


ticket_tags = Table(
    "ticket_tags",
    Base.metadata,
    Column("ticket_id", Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Uuid, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)


class Ticket(Base):
    """Customer support request tracked through the status lifecycle."""

    __tablename__ = "tickets"
    __table_args__ = (
        Index("idx_tickets_status", "status"),
        Index("idx_tickets_customer", "customer_id"),
        Index("idx_tickets_last_activity", "last_activity_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[TicketStatus] = mapped_column(
        _enum_type(TicketStatus, name="ticket_status"),
        default=TicketStatus.OPEN,
        nullable=False,
    )
    priority: Mapped[TicketPriority] = mapped_column(
        _enum_type(TicketPriority, name="ticket_priority"),
        default=TicketPriority.NORMAL,
        nullable=False,
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    mailbox_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("mailboxes.id", ondelete="SET NULL"), nullable=True
    )
    last_activity_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, onupdate=_utcnow, nullable=False)

    customer: Mapped["Customer"] = relationship()
    assignee: Mapped["User | None"] = relationship()
    mailbox: Mapped["Mailbox | None"] = relationship()
    messages: Mapped[list["Message"]] = relationship(
        back_populates="ticket",
        order_by="Message.created_at",
    )
    tags: Mapped[list["Tag"]] = relationship(secondary=ticket_tags, order_by="Tag.name")
    sla_timer: Mapped["SlaTimer | None"] = relationship(back_populates="ticket", uselist=False)


class Message(Base):
    """Reply or internal note on a ticket, with optional email threading ids."""

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "(sender_type = 'agent' AND sender_user_id IS NOT NULL AND sender_customer_id IS NULL)"
            " OR (sender_type = 'customer' AND sender_customer_id IS NOT NULL"
            " AND sender_user_id IS NULL)",
            name="ck_messages_single_sender",
        ),
        Index("idx_messages_ticket_created", "ticket_id", "created_at"),
        Index("idx_messages_message_id", "message_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[MessageType] = mapped_column(
        _enum_type(MessageType, name="message_type"),
        default=MessageType.REPLY,
        nullable=False,
    )
    sender_type: Mapped[SenderType] = mapped_column(
        _enum_type(SenderType, name="sender_type"), nullable=False
    )
    sender_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    sender_customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    body_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    # RFC 2822 identifiers, compared byte-for-byte
    message_id: Mapped[str | None] = mapped_column(String(998), nullable=True)
    in_reply_to: Mapped[str | None] = mapped_column(String(998), nullable=True)
    references: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    ticket: Mapped["Ticket"] = relationship(back_populates="messages")
    sender_user: Mapped["User | None"] = relationship()
    sender_customer: Mapped["Customer | None"] = relationship()
    attachments: Mapped[list["Attachment"]] = relationship(
        back_populates="message", order_by="Attachment.created_at"
    )

    @property
    def sender(self) -> Sender:
        if self.sender_type == SenderType.AGENT:
            return AgentSender(user_id=self.sender_user_id)
        return CustomerSender(customer_id=self.sender_customer_id)

    @sender.setter
    def sender(self, value: Sender) -> None:
        if isinstance(value, AgentSender):
            self.sender_type = SenderType.AGENT
            self.sender_user_id = value.user_id
            self.sender_customer_id = None
        elif isinstance(value, CustomerSender):
            self.sender_type = SenderType.CUSTOMER
            self.sender_customer_id = value.customer_id
            self.sender_user_id = None
        else:
            raise TypeError(f"Unsupported sender: {value!r}")

    @property
    def sender_name(self) -> str | None:
        if self.sender_type == SenderType.AGENT:
            return self.sender_user.name if self.sender_user else None
        return self.sender_customer.name if self.sender_customer else None

    @property
    def is_internal(self) -> bool:
        return self.type == MessageType.INTERNAL_NOTE


class Attachment(Base):
    """Stored file received with a message."""

    __tablename__ = "attachments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    message: Mapped["Message"] = relationship(back_populates="attachments")


class SlaPolicy(Base):
    """Response/resolution targets for one priority."""

    __tablename__ = "sla_policies"
    __table_args__ = (
        # At most one active policy per priority.
        Index(
            "uq_sla_policies_active_priority",
            "priority",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        CheckConstraint("first_response_hours > 0", name="ck_sla_first_response_positive"),
        CheckConstraint("resolution_hours > 0", name="ck_sla_resolution_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[TicketPriority] = mapped_column(
        _enum_type(TicketPriority, name="ticket_priority"), nullable=False
    )
    first_response_hours: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    resolution_hours: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class SlaTimer(Base):
    """Per-ticket SLA clock, snapshotted from the policy at ticket creation."""

    __tablename__ = "sla_timers"
    __table_args__ = (
        Index("idx_sla_timers_first_response_due", "first_response_due_at"),
        Index("idx_sla_timers_resolution_due", "resolution_due_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tickets.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    sla_policy_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sla_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    first_response_due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    first_responded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    total_paused_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_response_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolution_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    ticket: Mapped["Ticket"] = relationship(back_populates="sla_timer")
    policy: Mapped["SlaPolicy"] = relationship()


class TicketCounter(Base):
    """Persisted counter row backing gapless ticket numbering."""

    __tablename__ = "ticket_counters"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, onupdate=_utcnow, nullable=False)
