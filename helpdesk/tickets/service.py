from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from opentelemetry import trace

from helpdesk.core.clock import Clock, SystemClock
from helpdesk.security.roles import Role

from .errors import (
    ConditionUnsatisfiedError,
    InvalidTransitionError,
    PermissionDeniedError,
    TicketNotFoundError,
)
from .models import Actor, AuditLogEntry, AvailableTransition, StatusHistoryEntry, Ticket, TicketMessage
from .repository import TicketRepository
from .state import GuardContext, TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_REOPENED_STATUSES = frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS})


class TicketLifecycleService:
    """The only path through which a ticket's status changes."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        state_machine: TicketStateMachine | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine or TicketStateMachine()
        self._clock = clock or SystemClock()

    async def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_id)
        if ticket is None:
            raise TicketNotFoundError(ticket_id)
        return ticket

    async def list_available_transitions(self, ticket_id: str, actor_role: Role) -> list[AvailableTransition]:
        """Outgoing transitions visible to ``actor_role`` and whether each guard currently holds.

        Nothing is supplied with a listing request, so conditions on request
        values such as the resolution comment are reported as unsatisfied.
        """

        with tracer.start_as_current_span("tickets.list_transitions"):
            ticket = await self.get_ticket(ticket_id)
            context = self._guard_context(ticket, actor_role)
            return [
                AvailableTransition(
                    to_status=rule.to_status,
                    conditions=self._state_machine.evaluate(rule, context),
                )
                for rule in self._state_machine.rules_from(ticket.status)
                if self._state_machine.role_allowed(rule, actor_role)
            ]

    async def apply_transition(
        self,
        ticket_id: str,
        to_status: TicketStatus,
        actor: Actor,
        *,
        reason: str | None = None,
        comment: str | None = None,
    ) -> Ticket:
        with tracer.start_as_current_span("tickets.apply_transition") as span:
            span.set_attribute("ticket.id", ticket_id)
            span.set_attribute("ticket.to_status", to_status.value)

            async with self._repository.unit_of_work() as uow:
                ticket = await uow.lock_ticket(ticket_id)
                if ticket is None:
                    raise TicketNotFoundError(ticket_id)

                current = ticket.status
                rule = self._state_machine.find_rule(current, to_status)
                if rule is None:
                    raise InvalidTransitionError(f"Cannot transition {current.value} -> {to_status.value}")
                if not self._state_machine.role_allowed(rule, actor.role):
                    raise PermissionDeniedError(
                        f"Role {actor.role.value} may not transition {current.value} -> {to_status.value}"
                    )

                context = self._guard_context(ticket, actor.role, comment=comment)
                failed = [check.message for check in self._state_machine.evaluate(rule, context) if not check.satisfied]
                if failed:
                    raise ConditionUnsatisfiedError(failed)

                now = context.now
                resolved_at = ticket.resolved_at
                if to_status == TicketStatus.RESOLVED:
                    resolved_at = now
                elif to_status in _REOPENED_STATUSES:
                    resolved_at = None
                updated = replace(ticket, status=to_status, updated_at=now, resolved_at=resolved_at)

                await uow.update_ticket(updated, expected_status=current)
                await uow.add_status_history(
                    StatusHistoryEntry(
                        id=str(uuid.uuid4()),
                        ticket_id=ticket_id,
                        from_status=current,
                        to_status=to_status,
                        actor=actor.id,
                        reason=reason,
                        created_at=now,
                    )
                )
                if comment:
                    await uow.add_message(
                        TicketMessage(
                            id=str(uuid.uuid4()),
                            ticket_id=ticket_id,
                            author=actor.id,
                            content=comment,
                            is_internal=False,
                            created_at=now,
                        )
                    )
                await uow.add_audit_log(
                    AuditLogEntry(
                        id=str(uuid.uuid4()),
                        ticket_id=ticket_id,
                        action="status_changed",
                        actor=actor.id,
                        from_status=current,
                        to_status=to_status,
                        created_at=now,
                        metadata={"reason": reason, "comment": comment},
                    )
                )

        logger.info("Ticket %s moved %s -> %s by %s", ticket_id, current.value, to_status.value, actor.id)
        return updated

    def _guard_context(
        self,
        ticket: Ticket,
        actor_role: Role,
        *,
        comment: str | None = None,
    ) -> GuardContext:
        return GuardContext(
            assignee_id=ticket.assignee_id,
            resolved_at=ticket.resolved_at,
            actor_role=actor_role,
            now=self._clock.now(),
            comment=comment,
        )
