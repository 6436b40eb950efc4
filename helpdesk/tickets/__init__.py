"""Ticket lifecycle: status rules, persistence and the transition engine."""

from .errors import (
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
from .models import Actor, AuditLogEntry, AvailableTransition, SLAState, Ticket, TicketPriority
from .repository import TicketRepository
from .service import TicketLifecycleService
from .state import TRANSITION_RULES, TicketStateMachine, TicketStatus

__all__ = [
    "Actor",
    "AlreadyPausedError",
    "AuditLogEntry",
    "AvailableTransition",
    "CommandValidationError",
    "ConditionUnsatisfiedError",
    "ConflictError",
    "InvalidTransitionError",
    "LifecycleError",
    "NotPausedError",
    "PermissionDeniedError",
    "SLAState",
    "TRANSITION_RULES",
    "Ticket",
    "TicketLifecycleService",
    "TicketNotFoundError",
    "TicketPriority",
    "TicketRepository",
    "TicketStateMachine",
    "TicketStatus",
]
