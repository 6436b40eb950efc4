from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union

from helpdesk.security.roles import Role


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class RequiredField:
    """A ticket field, or a value supplied with the request, that must be present."""

    field: str
    message: str


@dataclass(frozen=True, slots=True)
class TimeRestriction:
    """Minimum number of hours that must have passed since the ticket was resolved."""

    hours: int
    message: str


@dataclass(frozen=True, slots=True)
class Permission:
    """The acting role must match the rule's required role."""

    message: str


Condition = Union[RequiredField, TimeRestriction, Permission]


@dataclass(frozen=True, slots=True)
class TransitionRule:
    from_status: TicketStatus
    to_status: TicketStatus
    required_role: Role | None = None
    conditions: tuple[Condition, ...] = ()


@dataclass(frozen=True, slots=True)
class GuardContext:
    """Everything a guard condition may look at."""

    assignee_id: str | None
    resolved_at: datetime | None
    actor_role: Role
    now: datetime
    comment: str | None = None


@dataclass(frozen=True, slots=True)
class ConditionCheck:
    message: str
    satisfied: bool


def _build_rules(rules: tuple[TransitionRule, ...]) -> Mapping[TicketStatus, tuple[TransitionRule, ...]]:
    table: dict[TicketStatus, tuple[TransitionRule, ...]] = {status: () for status in TicketStatus}
    for rule in rules:
        table[rule.from_status] = (*table[rule.from_status], rule)
    return MappingProxyType(table)


TRANSITION_RULES: Mapping[TicketStatus, tuple[TransitionRule, ...]] = _build_rules(
    (
        TransitionRule(
            TicketStatus.OPEN,
            TicketStatus.IN_PROGRESS,
            conditions=(RequiredField("assignee_id", "Ticket must be assigned to an agent"),),
        ),
        TransitionRule(
            TicketStatus.IN_PROGRESS,
            TicketStatus.RESOLVED,
            conditions=(RequiredField("resolution_comment", "Resolution comment is required"),),
        ),
        TransitionRule(TicketStatus.IN_PROGRESS, TicketStatus.OPEN),
        TransitionRule(
            TicketStatus.RESOLVED,
            TicketStatus.CLOSED,
            conditions=(TimeRestriction(24, "Must be resolved for at least 24 hours"),),
        ),
        TransitionRule(TicketStatus.RESOLVED, TicketStatus.IN_PROGRESS),
        TransitionRule(
            TicketStatus.CLOSED,
            TicketStatus.IN_PROGRESS,
            required_role=Role.ADMIN,
            conditions=(Permission("Only admins can reopen closed tickets"),),
        ),
    )
)


class TicketStateMachine:
    """Validate ticket lifecycle transitions against the rule table."""

    def __init__(self, rules: Mapping[TicketStatus, tuple[TransitionRule, ...]] | None = None) -> None:
        self._rules = rules if rules is not None else TRANSITION_RULES

    @staticmethod
    def initial_state() -> TicketStatus:
        return TicketStatus.OPEN

    def rules_from(self, status: TicketStatus) -> tuple[TransitionRule, ...]:
        return self._rules.get(status, ())

    def find_rule(self, current: TicketStatus, target: TicketStatus) -> TransitionRule | None:
        for rule in self.rules_from(current):
            if rule.to_status == target:
                return rule
        return None

    def can_transition(self, current: TicketStatus, target: TicketStatus) -> bool:
        return self.find_rule(current, target) is not None

    @staticmethod
    def role_allowed(rule: TransitionRule, role: Role) -> bool:
        return rule.required_role is None or rule.required_role == role

    def evaluate(self, rule: TransitionRule, context: GuardContext) -> list[ConditionCheck]:
        """Check every condition of ``rule``; never stops at the first failure."""

        return [
            ConditionCheck(message=condition.message, satisfied=self._check(rule, condition, context))
            for condition in rule.conditions
        ]

    def _check(self, rule: TransitionRule, condition: Condition, context: GuardContext) -> bool:
        if isinstance(condition, RequiredField):
            return _field_present(condition.field, context)
        if isinstance(condition, TimeRestriction):
            if context.resolved_at is None:
                return False
            return context.now - context.resolved_at >= timedelta(hours=condition.hours)
        if isinstance(condition, Permission):
            return self.role_allowed(rule, context.actor_role)
        raise TypeError(f"Unsupported condition: {condition!r}")


def _field_present(field: str, context: GuardContext) -> bool:
    if field == "assignee_id":
        return bool(context.assignee_id)
    if field == "resolution_comment":
        return bool(context.comment and context.comment.strip())
    raise ValueError(f"Unknown required field: {field}")
