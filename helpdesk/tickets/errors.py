from __future__ import annotations

from typing import Any, Sequence


class LifecycleError(RuntimeError):
    """Base error for ticket lifecycle operations."""


class TicketNotFoundError(LifecycleError):
    """Raised when a ticket or its SLA state could not be located."""

    def __init__(self, ticket_id: str, what: str = "Ticket") -> None:
        super().__init__(f"{what} {ticket_id} not found")
        self.ticket_id = ticket_id


class InvalidTransitionError(LifecycleError):
    """Raised when no rule leads from the current status to the requested one."""


class PermissionDeniedError(LifecycleError):
    """Raised when a rule requires a role the actor does not hold."""


class ConditionUnsatisfiedError(LifecycleError):
    """Raised when one or more guard conditions of a matched rule failed."""

    def __init__(self, failed_conditions: Sequence[str]) -> None:
        self.failed_conditions = list(failed_conditions)
        super().__init__("; ".join(self.failed_conditions))


class AlreadyPausedError(LifecycleError):
    """Raised when pausing an SLA clock that is already paused."""


class NotPausedError(LifecycleError):
    """Raised when resuming an SLA clock that is not paused."""


class CommandValidationError(LifecycleError):
    """Raised for malformed commands, as opposed to failed guard conditions."""

    def __init__(self, message: str, errors: Sequence[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class ConflictError(LifecycleError):
    """Raised when a concurrent writer changed the ticket first. Safe to retry."""
