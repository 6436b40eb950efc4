from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from helpdesk.security.roles import Role
from helpdesk.sla.service import SLAEvaluation, SLAService
from helpdesk.sla.timer import SLASnapshot

from .errors import CommandValidationError
from .models import Actor, AvailableTransition, SLAState, Ticket
from .service import TicketLifecycleService
from .state import TicketStatus


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    ticket_id: str = Field(..., min_length=1)


class ChangeStatus(_Command):
    to_status: TicketStatus
    actor_id: str = Field(..., min_length=1)
    actor_role: Role
    reason: str | None = Field(default=None, max_length=500)
    comment: str | None = Field(default=None)


class PauseSLA(_Command):
    actor_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)
    resume_at: datetime | None = None


class ResumeSLA(_Command):
    actor_id: str = Field(..., min_length=1)


class ListTransitions(_Command):
    actor_role: Role


class GetSLAStatus(_Command):
    pass


class EvaluateSLA(_Command):
    pass


Command = Union[ChangeStatus, PauseSLA, ResumeSLA, ListTransitions, GetSLAStatus, EvaluateSLA]

COMMAND_TYPES: dict[str, type[_Command]] = {
    "change_status": ChangeStatus,
    "pause_sla": PauseSLA,
    "resume_sla": ResumeSLA,
    "list_transitions": ListTransitions,
    "get_sla_status": GetSLAStatus,
    "evaluate_sla": EvaluateSLA,
}


def parse_command(kind: str, payload: Mapping[str, Any]) -> Command:
    """Build a command from untrusted input, raising :class:`CommandValidationError` on bad shape."""

    command_type = COMMAND_TYPES.get(kind)
    if command_type is None:
        raise CommandValidationError(f"Unknown command: {kind}")
    try:
        return command_type.model_validate(dict(payload))
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise CommandValidationError(f"Invalid {kind} command", errors) from exc


class LifecycleController:
    """Dispatch lifecycle commands to the transition engine or the SLA service."""

    def __init__(self, tickets: TicketLifecycleService, sla: SLAService) -> None:
        self.tickets = tickets
        self.sla = sla

    async def handle(
        self, command: Command
    ) -> Ticket | SLAState | SLASnapshot | SLAEvaluation | list[AvailableTransition]:
        if isinstance(command, ChangeStatus):
            return await self.tickets.apply_transition(
                command.ticket_id,
                command.to_status,
                Actor(id=command.actor_id, role=command.actor_role),
                reason=command.reason,
                comment=command.comment,
            )
        if isinstance(command, PauseSLA):
            return await self.sla.pause(
                command.ticket_id,
                command.actor_id,
                command.reason,
                resume_at=command.resume_at,
            )
        if isinstance(command, ResumeSLA):
            return await self.sla.resume(command.ticket_id, command.actor_id)
        if isinstance(command, ListTransitions):
            return await self.tickets.list_available_transitions(command.ticket_id, command.actor_role)
        if isinstance(command, GetSLAStatus):
            return await self.sla.get_status(command.ticket_id)
        if isinstance(command, EvaluateSLA):
            return await self.sla.evaluate(command.ticket_id)
        raise CommandValidationError(f"Unsupported command: {type(command).__name__}")
