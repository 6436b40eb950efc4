"""Canonical SLA time arithmetic.

On-demand reads (``build_snapshot``) and the periodic breach evaluator both
measure time with :func:`elapsed_minutes`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from helpdesk.tickets.models import SLAState, Ticket, TicketPriority

from .targets import SLA_TARGETS, SLATarget


@dataclass(frozen=True, slots=True)
class SLAProgress:
    target: int
    progress: float
    remaining: float
    breached: bool


@dataclass(frozen=True, slots=True)
class SLAMetrics:
    elapsed_minutes: float
    total_paused_minutes: int
    started_at: datetime
    paused_at: datetime | None
    breached_at: datetime | None
    last_escalation: datetime | None
    last_escalation_threshold: int | None


@dataclass(frozen=True, slots=True)
class SLASnapshot:
    ticket_id: str
    is_breached: bool
    is_paused: bool
    is_completed: bool
    response: SLAProgress
    resolution: SLAProgress
    metrics: SLAMetrics


def elapsed_minutes(ticket: Ticket, state: SLAState, now: datetime) -> float:
    """Working minutes consumed by the ticket, never negative."""

    endpoint = ticket.resolved_at or state.paused_at or now
    gross = (endpoint - state.started_at).total_seconds() / 60.0
    return max(0.0, gross - state.total_paused_minutes)


def progress_percent(elapsed: float, target: int) -> float:
    if target <= 0:
        return 100.0
    return min(100.0, elapsed / target * 100.0)


def remaining_minutes(elapsed: float, target: int) -> float:
    return max(0.0, target - elapsed)


def threshold_reached(elapsed: float, target: int) -> int:
    """Whole percent of ``target`` consumed, uncapped; used for escalation checkpoints."""

    if target <= 0:
        return 0
    return math.floor(elapsed / target * 100)


def paused_minutes_between(paused_at: datetime, now: datetime) -> int:
    return max(0, math.floor((now - paused_at).total_seconds() / 60))


def build_snapshot(
    ticket: Ticket,
    state: SLAState,
    now: datetime,
    *,
    targets: Mapping[TicketPriority, SLATarget] | None = None,
) -> SLASnapshot:
    table = targets if targets is not None else SLA_TARGETS
    target: SLATarget = table[ticket.priority]
    elapsed = elapsed_minutes(ticket, state, now)

    return SLASnapshot(
        ticket_id=ticket.id,
        is_breached=state.response_breached or state.resolution_breached,
        is_paused=state.is_paused,
        is_completed=ticket.resolved_at is not None,
        response=SLAProgress(
            target=target.response_minutes,
            progress=progress_percent(elapsed, target.response_minutes),
            remaining=remaining_minutes(elapsed, target.response_minutes),
            breached=state.response_breached,
        ),
        resolution=SLAProgress(
            target=target.resolution_minutes,
            progress=progress_percent(elapsed, target.resolution_minutes),
            remaining=remaining_minutes(elapsed, target.resolution_minutes),
            breached=state.resolution_breached,
        ),
        metrics=SLAMetrics(
            elapsed_minutes=elapsed,
            total_paused_minutes=state.total_paused_minutes,
            started_at=state.started_at,
            paused_at=state.paused_at,
            breached_at=state.breached_at,
            last_escalation=state.last_escalation_at,
            last_escalation_threshold=state.last_escalation_threshold,
        ),
    )
