from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from helpdesk.tickets.models import TicketPriority


@dataclass(frozen=True, slots=True)
class SLATarget:
    """Response and resolution budgets, in minutes, for one priority."""

    response_minutes: int
    resolution_minutes: int
    escalation_thresholds: tuple[int, ...] = ()

    @classmethod
    def from_hours(cls, response: int, resolution: int, escalations: tuple[int, ...] = ()) -> "SLATarget":
        return cls(
            response_minutes=response * 60,
            resolution_minutes=resolution * 60,
            escalation_thresholds=tuple(sorted(escalations)),
        )


SLA_TARGETS: Mapping[TicketPriority, SLATarget] = MappingProxyType(
    {
        TicketPriority.URGENT: SLATarget.from_hours(1, 8, (50, 75, 90)),
        TicketPriority.HIGH: SLATarget.from_hours(4, 24, (75, 90)),
        TicketPriority.MEDIUM: SLATarget.from_hours(8, 48, (75, 90)),
        TicketPriority.LOW: SLATarget.from_hours(24, 72, (90,)),
    }
)


def target_for(priority: TicketPriority) -> SLATarget:
    return SLA_TARGETS[priority]
