from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from helpdesk.tickets.errors import ConflictError
from helpdesk.tickets.models import SLAState, Ticket, TicketPriority
from helpdesk.tickets.state import TicketStatus

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class StoreFailure(RuntimeError):
    pass


class InMemoryUnitOfWork:
    def __init__(self, store: "InMemoryRepository") -> None:
        self._store = store
        self._held: list[asyncio.Lock] = []
        self._tickets: dict[str, Ticket] = {}
        self._sla_states: dict[str, SLAState] = {}
        self._history: list = []
        self._messages: list = []
        self._audit_logs: list = []

    async def _lock(self, key: str) -> None:
        lock = self._store.locks[key]
        if lock in self._held:
            return
        await lock.acquire()
        self._held.append(lock)
        # let other tasks run while the row lock is held
        await asyncio.sleep(0)

    def _maybe_fail(self, name: str) -> None:
        if self._store.fail_on == name:
            raise StoreFailure(f"{name} failed")

    async def lock_ticket(self, ticket_id: str) -> Ticket | None:
        await self._lock(f"ticket:{ticket_id}")
        ticket = self._store.tickets.get(ticket_id)
        return None if ticket is None else replace(ticket)

    async def lock_sla_state(self, ticket_id: str) -> SLAState | None:
        await self._lock(f"sla:{ticket_id}")
        state = self._store.sla_states.get(ticket_id)
        return None if state is None else replace(state)

    async def update_ticket(self, ticket: Ticket, *, expected_status: TicketStatus) -> None:
        self._maybe_fail("update_ticket")
        current = self._store.tickets.get(ticket.id)
        if current is None or current.status != expected_status:
            raise ConflictError(f"Ticket {ticket.id} is no longer {expected_status.value}")
        self._tickets[ticket.id] = replace(ticket)

    async def update_sla_state(self, state: SLAState) -> None:
        self._maybe_fail("update_sla_state")
        self._sla_states[state.ticket_id] = replace(state)

    async def add_status_history(self, entry) -> None:
        self._maybe_fail("add_status_history")
        self._history.append(entry)

    async def add_message(self, message) -> None:
        self._maybe_fail("add_message")
        self._messages.append(message)

    async def add_audit_log(self, entry) -> None:
        self._maybe_fail("add_audit_log")
        self._audit_logs.append(entry)

    def commit(self) -> None:
        self._store.tickets.update(self._tickets)
        self._store.sla_states.update(self._sla_states)
        self._store.history.extend(self._history)
        self._store.messages.extend(self._messages)
        self._store.audit_logs.extend(self._audit_logs)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()


class InMemoryRepository:
    """Transactional stand-in for ``TicketRepository``: writes become visible only on commit."""

    def __init__(self) -> None:
        self.tickets: dict[str, Ticket] = {}
        self.sla_states: dict[str, SLAState] = {}
        self.history: list = []
        self.messages: list = []
        self.audit_logs: list = []
        self.locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.fail_on: str | None = None
        self.snapshot_reads = 0

    def add(self, ticket: Ticket, state: SLAState | None = None) -> None:
        self.tickets[ticket.id] = ticket
        self.sla_states[ticket.id] = state or SLAState(ticket_id=ticket.id, started_at=ticket.created_at)

    def snapshot(self):
        return copy.deepcopy(
            (self.tickets, self.sla_states, self.history, self.messages, self.audit_logs)
        )

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ticket = self.tickets.get(ticket_id)
        return None if ticket is None else replace(ticket)

    async def get_ticket_with_sla(self, ticket_id: str) -> tuple[Ticket | None, SLAState | None]:
        self.snapshot_reads += 1
        ticket = self.tickets.get(ticket_id)
        state = self.sla_states.get(ticket_id)
        return (
            None if ticket is None else replace(ticket),
            None if state is None else replace(state),
        )

    @asynccontextmanager
    async def unit_of_work(self):
        uow = InMemoryUnitOfWork(self)
        try:
            yield uow
        except BaseException:
            raise
        else:
            uow.commit()
        finally:
            uow.release()


def make_ticket(
    ticket_id: str = "t-1",
    *,
    status: TicketStatus = TicketStatus.OPEN,
    priority: TicketPriority = TicketPriority.MEDIUM,
    assignee_id: str | None = "agent-1",
    resolved_at: datetime | None = None,
    created_at: datetime = NOW - timedelta(hours=2),
) -> Ticket:
    return Ticket(
        id=ticket_id,
        status=status,
        priority=priority,
        assignee_id=assignee_id,
        customer_id="customer-1",
        created_at=created_at,
        updated_at=created_at,
        resolved_at=resolved_at,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()
