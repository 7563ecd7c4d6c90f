"""Pydantic schemas for the ticketing core: inbound mail, creation input, SLA status."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from helpdesk.db.enums import MessageType, SlaState, TicketPriority
from helpdesk.types import Sender


class EmailAttachment(BaseModel):
    """Raw attachment as handed over by a mail connector."""

    filename: str | None = None
    content: bytes
    mime_type: str | None = None


class EmailRecord(BaseModel):
    """One fetched email. Threading ids are kept verbatim."""

    from_email: str = Field(min_length=1)
    from_name: str | None = None
    subject: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: str | list[str] | None = None
    attachments: list[EmailAttachment] = Field(default_factory=list)

    @field_validator("from_email")
    @classmethod
    def _strip_sender(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("from_email is required")
        return value

    def reference_ids(self) -> list[str]:
        """References as a token list, whether it arrived split or not."""
        if not self.references:
            return []
        if isinstance(self.references, str):
            return self.references.split()
        return [ref for ref in self.references if ref]

    def references_header(self) -> str | None:
        """References as stored: a raw string verbatim, a list space-joined."""
        if isinstance(self.references, str):
            return self.references or None
        tokens = self.reference_ids()
        return " ".join(tokens) if tokens else None


class TicketCreate(BaseModel):
    """Input for creating a ticket."""

    subject: str
    priority: TicketPriority = TicketPriority.NORMAL
    body_text: str | None = None
    body_html: str | None = None


class MessageCreate(BaseModel):
    """Input for appending a message to a ticket."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    sender: Sender
    type: MessageType = MessageType.REPLY
    body_text: str = ""
    body_html: str | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: str | None = None


class SlaTargetStatus(BaseModel):
    """Display status for one SLA target."""

    state: SlaState
    color: str
    due_at: datetime | None = None

    @classmethod
    def of(cls, state: SlaState, due_at: datetime | None = None) -> "SlaTargetStatus":
        return cls(state=state, color=state.color, due_at=due_at)


class SlaStatus(BaseModel):
    first_response: SlaTargetStatus
    resolution: SlaTargetStatus


class BreachSweepResponse(BaseModel):
    first_response_breached: int
    resolution_breached: int


class MailPollResponse(BaseModel):
    mailboxes_checked: int
    jobs_created: int
    duplicates_skipped: int
