from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from helpdesk.dependencies.auth import AdminActor, CurrentActor
from helpdesk.dependencies.tickets import get_lifecycle_controller
from helpdesk.sla.service import SLAEvaluation
from helpdesk.tickets.commands import LifecycleController, parse_command
from helpdesk.tickets.errors import (
    AlreadyPausedError,
    CommandValidationError,
    ConditionUnsatisfiedError,
    ConflictError,
    InvalidTransitionError,
    LifecycleError,
    NotPausedError,
    PermissionDeniedError,
    TicketNotFoundError,
)
from helpdesk.tickets.models import TicketPriority
from helpdesk.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class StatusChangeRequest(BaseModel):
    status: TicketStatus
    reason: str | None = Field(default=None, max_length=500)
    comment: str | None = Field(default=None)


class PauseRequest(BaseModel):
    reason: str
    resume_at: datetime | None = None


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: TicketStatus
    priority: TicketPriority
    assignee_id: str | None
    customer_id: str
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None


class ConditionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message: str
    satisfied: bool


class TransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    to_status: TicketStatus
    conditions: list[ConditionResponse]


class SLAProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target: int
    progress: float
    remaining: float
    breached: bool


class SLAMetricsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    elapsed_minutes: float
    total_paused_minutes: int
    started_at: datetime
    paused_at: datetime | None
    breached_at: datetime | None
    last_escalation: datetime | None
    last_escalation_threshold: int | None


class SLAStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    is_breached: bool
    is_paused: bool
    is_completed: bool
    response: SLAProgressResponse
    resolution: SLAProgressResponse
    metrics: SLAMetricsResponse


class SLAStateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    started_at: datetime
    paused_at: datetime | None
    total_paused_minutes: int
    breached_at: datetime | None
    response_breached: bool
    resolution_breached: bool
    last_escalation_at: datetime | None
    last_escalation_threshold: int | None


class SLAEvaluationResponse(BaseModel):
    skipped: bool
    elapsed_minutes: float
    newly_breached: list[str]
    escalations_fired: list[int]
    state: SLAStateResponse


LifecycleDep = Annotated[LifecycleController, Depends(get_lifecycle_controller)]


def _raise_http(exc: LifecycleError) -> NoReturn:
    if isinstance(exc, TicketNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, PermissionDeniedError):
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    if isinstance(exc, ConditionUnsatisfiedError):
        raise HTTPException(
            status_code=422,
            detail={"message": "Transition conditions not met", "failed_conditions": exc.failed_conditions},
        ) from exc
    if isinstance(exc, CommandValidationError):
        raise HTTPException(status_code=422, detail={"message": str(exc), "errors": exc.errors}) from exc
    if isinstance(exc, (AlreadyPausedError, NotPausedError, ConflictError)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    raise exc


async def _run(controller: LifecycleController, kind: str, payload: dict[str, Any]) -> Any:
    try:
        command = parse_command(kind, payload)
        return await controller.handle(command)
    except LifecycleError as exc:
        _raise_http(exc)


@router.get("/{ticket_id}/transitions", response_model=list[TransitionResponse])
async def list_transitions(ticket_id: str, controller: LifecycleDep, actor: CurrentActor) -> list[TransitionResponse]:
    transitions = await _run(controller, "list_transitions", {"ticket_id": ticket_id, "actor_role": actor.role})
    return [TransitionResponse.model_validate(transition) for transition in transitions]


@router.post("/{ticket_id}/status", response_model=TicketResponse)
async def change_status(
    ticket_id: str,
    payload: StatusChangeRequest,
    controller: LifecycleDep,
    actor: CurrentActor,
) -> TicketResponse:
    ticket = await _run(
        controller,
        "change_status",
        {
            "ticket_id": ticket_id,
            "to_status": payload.status,
            "actor_id": actor.id,
            "actor_role": actor.role,
            "reason": payload.reason,
            "comment": payload.comment,
        },
    )
    return TicketResponse.model_validate(ticket)


@router.get("/{ticket_id}/sla", response_model=SLAStatusResponse)
async def get_sla_status(ticket_id: str, controller: LifecycleDep, _: CurrentActor) -> SLAStatusResponse:
    snapshot = await _run(controller, "get_sla_status", {"ticket_id": ticket_id})
    return SLAStatusResponse.model_validate(snapshot)


@router.post("/{ticket_id}/sla/pause", response_model=SLAStateResponse)
async def pause_sla(
    ticket_id: str,
    payload: PauseRequest,
    controller: LifecycleDep,
    actor: CurrentActor,
) -> SLAStateResponse:
    state = await _run(
        controller,
        "pause_sla",
        {"ticket_id": ticket_id, "actor_id": actor.id, "reason": payload.reason, "resume_at": payload.resume_at},
    )
    return SLAStateResponse.model_validate(state)


@router.post("/{ticket_id}/sla/resume", response_model=SLAStateResponse)
async def resume_sla(ticket_id: str, controller: LifecycleDep, actor: CurrentActor) -> SLAStateResponse:
    state = await _run(controller, "resume_sla", {"ticket_id": ticket_id, "actor_id": actor.id})
    return SLAStateResponse.model_validate(state)


@router.post("/{ticket_id}/sla/evaluate", response_model=SLAEvaluationResponse)
async def evaluate_sla(ticket_id: str, controller: LifecycleDep, _: AdminActor) -> SLAEvaluationResponse:
    evaluation: SLAEvaluation = await _run(controller, "evaluate_sla", {"ticket_id": ticket_id})
    return SLAEvaluationResponse(
        skipped=evaluation.skipped,
        elapsed_minutes=evaluation.elapsed_minutes,
        newly_breached=evaluation.newly_breached,
        escalations_fired=evaluation.escalations_fired,
        state=SLAStateResponse.model_validate(evaluation.state),
    )

