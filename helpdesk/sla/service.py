from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

from opentelemetry import trace

from helpdesk.core.clock import Clock, SystemClock
from helpdesk.tickets.errors import AlreadyPausedError, NotPausedError, TicketNotFoundError
from helpdesk.tickets.models import AuditLogEntry, SLAState, Ticket, TicketPriority
from helpdesk.tickets.repository import TicketRepository

from .targets import SLA_TARGETS, SLATarget
from .timer import SLASnapshot, build_snapshot, elapsed_minutes, paused_minutes_between, threshold_reached

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYSTEM_ACTOR = "system:sla-evaluator"


@dataclass(slots=True)
class SLAEvaluation:
    """Outcome of one breach/escalation pass over a ticket."""

    state: SLAState
    elapsed_minutes: float
    skipped: bool = False
    newly_breached: list[str] = field(default_factory=list)
    escalations_fired: list[int] = field(default_factory=list)


class SLAService:
    """Read the SLA clock of a ticket and pause, resume or re-evaluate it."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        clock: Clock | None = None,
        targets: Mapping[TicketPriority, SLATarget] | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or SystemClock()
        self._targets = targets if targets is not None else SLA_TARGETS

    async def get_status(self, ticket_id: str) -> SLASnapshot:
        with tracer.start_as_current_span("sla.get_status"):
            ticket, state = await self._repository.get_ticket_with_sla(ticket_id)
            if ticket is None:
                raise TicketNotFoundError(ticket_id)
            if state is None:
                raise TicketNotFoundError(ticket_id, what="SLA state for ticket")
            return build_snapshot(ticket, state, self._clock.now(), targets=self._targets)

    async def pause(
        self,
        ticket_id: str,
        actor_id: str,
        reason: str,
        *,
        resume_at: datetime | None = None,
    ) -> SLAState:
        with tracer.start_as_current_span("sla.pause") as span:
            span.set_attribute("ticket.id", ticket_id)
            async with self._repository.unit_of_work() as uow:
                state = await uow.lock_sla_state(ticket_id)
                if state is None:
                    raise TicketNotFoundError(ticket_id, what="SLA state for ticket")
                if state.is_paused:
                    raise AlreadyPausedError(f"SLA for ticket {ticket_id} is already paused")

                now = self._clock.now()
                updated = replace(state, paused_at=now)
                metadata: dict[str, Any] = {"reason": reason}
                if resume_at is not None:
                    metadata["resume_at"] = resume_at
                await uow.update_sla_state(updated)
                await uow.add_audit_log(self._audit(ticket_id, "sla_paused", actor_id, now, metadata))

        logger.info("SLA paused for ticket %s by %s", ticket_id, actor_id)
        return updated

    async def resume(self, ticket_id: str, actor_id: str) -> SLAState:
        with tracer.start_as_current_span("sla.resume") as span:
            span.set_attribute("ticket.id", ticket_id)
            async with self._repository.unit_of_work() as uow:
                state = await uow.lock_sla_state(ticket_id)
                if state is None:
                    raise TicketNotFoundError(ticket_id, what="SLA state for ticket")
                if not state.is_paused:
                    raise NotPausedError(f"SLA for ticket {ticket_id} is not paused")

                now = self._clock.now()
                added = paused_minutes_between(state.paused_at, now)
                updated = replace(
                    state,
                    paused_at=None,
                    total_paused_minutes=state.total_paused_minutes + added,
                )
                await uow.update_sla_state(updated)
                await uow.add_audit_log(
                    self._audit(
                        ticket_id,
                        "sla_resumed",
                        actor_id,
                        now,
                        {
                            "additional_paused_minutes": added,
                            "total_paused_minutes": updated.total_paused_minutes,
                        },
                    )
                )

        logger.info("SLA resumed for ticket %s after %d paused minutes", ticket_id, added)
        return updated

    async def evaluate(self, ticket_id: str) -> SLAEvaluation:
        """Persist breach flags and escalation checkpoints reached by the ticket.

        Meant to be driven by an external scheduler. Paused clocks are left
        untouched; delivering notifications for the returned events is up to
        the caller.
        """

        with tracer.start_as_current_span("sla.evaluate") as span:
            span.set_attribute("ticket.id", ticket_id)
            async with self._repository.unit_of_work() as uow:
                ticket = await uow.lock_ticket(ticket_id)
                if ticket is None:
                    raise TicketNotFoundError(ticket_id)
                state = await uow.lock_sla_state(ticket_id)
                if state is None:
                    raise TicketNotFoundError(ticket_id, what="SLA state for ticket")

                now = self._clock.now()
                elapsed = elapsed_minutes(ticket, state, now)
                if state.is_paused:
                    return SLAEvaluation(state=state, elapsed_minutes=elapsed, skipped=True)

                result = self._apply_evaluation(ticket, state, elapsed, now)
                if not result.newly_breached and not result.escalations_fired:
                    return result

                await uow.update_sla_state(result.state)
                for kind in result.newly_breached:
                    await uow.add_audit_log(
                        self._audit(
                            ticket_id,
                            "sla_breached",
                            SYSTEM_ACTOR,
                            now,
                            {"type": kind, "elapsed_minutes": round(elapsed, 2)},
                        )
                    )
                for threshold in result.escalations_fired:
                    await uow.add_audit_log(
                        self._audit(
                            ticket_id,
                            "sla_escalated",
                            SYSTEM_ACTOR,
                            now,
                            {"threshold": threshold, "elapsed_minutes": round(elapsed, 2)},
                        )
                    )

        if result.newly_breached:
            logger.warning("SLA breached for ticket %s: %s", ticket_id, ", ".join(result.newly_breached))
        if result.escalations_fired:
            logger.info("SLA escalation thresholds %s reached for ticket %s", result.escalations_fired, ticket_id)
        return result

    def _apply_evaluation(self, ticket: Ticket, state: SLAState, elapsed: float, now: datetime) -> SLAEvaluation:
        target = self._targets[ticket.priority]
        updated = state
        breached: list[str] = []

        if elapsed > target.response_minutes and not updated.response_breached:
            updated = replace(updated, response_breached=True)
            breached.append("response")
        if elapsed > target.resolution_minutes and not updated.resolution_breached:
            updated = replace(updated, resolution_breached=True)
            breached.append("resolution")
        if breached and updated.breached_at is None:
            updated = replace(updated, breached_at=now)

        reached = threshold_reached(elapsed, target.resolution_minutes)
        last = updated.last_escalation_threshold or 0
        fired = [threshold for threshold in target.escalation_thresholds if last < threshold <= reached]
        if fired:
            updated = replace(updated, last_escalation_at=now, last_escalation_threshold=fired[-1])

        return SLAEvaluation(state=updated, elapsed_minutes=elapsed, newly_breached=breached, escalations_fired=fired)

    @staticmethod
    def _audit(
        ticket_id: str,
        action: str,
        actor: str,
        now: datetime,
        metadata: dict[str, Any],
    ) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            action=action,
            actor=actor,
            from_status=None,
            to_status=None,
            created_at=now,
            metadata=metadata,
        )
