"""Ticketing, SLA and mailbox enums."""

from enum import Enum


class TicketStatus(str, Enum):
    """Ticket lifecycle status."""

    OPEN = "open"
    PENDING = "pending"
    ON_HOLD = "on_hold"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @classmethod
    def paused_statuses(cls) -> frozenset["TicketStatus"]:
        """Statuses during which the SLA clock is stopped."""
        return frozenset({cls.PENDING, cls.ON_HOLD})

    @classmethod
    def terminal_statuses(cls) -> frozenset["TicketStatus"]:
        return frozenset({cls.RESOLVED, cls.CLOSED})


class TicketPriority(str, Enum):
    """Ticket priority level."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class MessageType(str, Enum):
    """Customer-visible reply or agent-only note."""

    REPLY = "reply"
    INTERNAL_NOTE = "internal_note"


class SenderType(str, Enum):
    """Which side of the conversation wrote a message."""

    AGENT = "agent"
    CUSTOMER = "customer"


class MailboxType(str, Enum):
    """Mailbox connector kind."""

    IMAP = "imap"
    GMAIL = "gmail"
    MICROSOFT = "microsoft"


class SlaState(str, Enum):
    """Display state of a single SLA target."""

    NONE = "none"
    MET = "met"
    BREACHED = "breached"
    PAUSED = "paused"
    APPROACHING = "approaching"
    ON_TRACK = "on_track"

    @property
    def color(self) -> str:
        return _SLA_STATE_COLORS[self]


_SLA_STATE_COLORS = {
    SlaState.NONE: "gray",
    SlaState.MET: "green",
    SlaState.BREACHED: "red",
    SlaState.PAUSED: "gray",
    SlaState.APPROACHING: "yellow",
    SlaState.ON_TRACK: "green",
}
