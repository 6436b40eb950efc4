from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from helpdesk.security.roles import Role

from .state import ConditionCheck, TicketStatus


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True, slots=True)
class Actor:
    """The user on whose behalf a command runs."""

    id: str
    role: Role


@dataclass(slots=True)
class Ticket:
    """Aggregate representing a support ticket entry."""

    id: str
    status: TicketStatus
    priority: TicketPriority
    assignee_id: str | None
    customer_id: str
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None


@dataclass(slots=True)
class SLAState:
    """Compliance clock of a single ticket."""

    ticket_id: str
    started_at: datetime
    paused_at: datetime | None = None
    total_paused_minutes: int = 0
    breached_at: datetime | None = None
    response_breached: bool = False
    resolution_breached: bool = False
    last_escalation_at: datetime | None = None
    last_escalation_threshold: int | None = None

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None


@dataclass(slots=True)
class StatusHistoryEntry:
    id: str
    ticket_id: str
    from_status: TicketStatus
    to_status: TicketStatus
    actor: str
    reason: str | None
    created_at: datetime


@dataclass(slots=True)
class TicketMessage:
    """Individual message belonging to a ticket."""

    id: str
    ticket_id: str
    author: str
    content: str
    is_internal: bool
    created_at: datetime


@dataclass(slots=True)
class AuditLogEntry:
    """Append-only record describing a single mutation of a ticket or its SLA."""

    id: str
    ticket_id: str
    action: str
    actor: str
    from_status: TicketStatus | None
    to_status: TicketStatus | None
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AvailableTransition:
    to_status: TicketStatus
    conditions: list[ConditionCheck]

    @property
    def allowed(self) -> bool:
        return all(check.satisfied for check in self.conditions)
