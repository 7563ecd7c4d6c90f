"""Shared value types for the ticketing core."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias
from uuid import UUID

from helpdesk.db.enums import SenderType


@dataclass(frozen=True)
class AgentSender:
    """Message written by a helpdesk user."""

    user_id: UUID

    @property
    def sender_type(self) -> SenderType:
        return SenderType.AGENT


@dataclass(frozen=True)
class CustomerSender:
    """Message written by the customer who owns the ticket."""

    customer_id: UUID

    @property
    def sender_type(self) -> SenderType:
        return SenderType.CUSTOMER


Sender: TypeAlias = AgentSender | CustomerSender
