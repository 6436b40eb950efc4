from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from helpdesk.tickets.errors import ConflictError
from helpdesk.tickets.models import AuditLogEntry, TicketPriority
from helpdesk.tickets.repository import TicketRepository
from helpdesk.tickets.state import TicketStatus


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyTransaction:
    def __init__(self):
        self.entered = False
        self.exc_type = None

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.exc_type = exc_type
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)


def _connection() -> tuple[AsyncMock, DummyTransaction]:
    connection = AsyncMock()
    transaction = DummyTransaction()
    connection.transaction = MagicMock(return_value=transaction)
    return connection, transaction


def _ticket_row(**overrides):
    now = datetime(2024, 5, 1, 12, 0)
    row = {
        "id": "t-1",
        "status": "in_progress",
        "priority": "urgent",
        "assignee_id": "agent-1",
        "customer_id": "customer-1",
        "created_at": now,
        "updated_at": now,
        "resolved_at": None,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_ensure_schema_creates_tables():
    connection, _ = _connection()
    repository = TicketRepository(DummyPool(connection))

    await repository.ensure_schema()

    executed = [call.args[0] for call in connection.execute.await_args_list]
    assert len(executed) == 5
    for table in ("tickets", "sla_states", "ticket_status_history", "ticket_messages", "ticket_audit_logs"):
        assert any(f"CREATE TABLE IF NOT EXISTS {table}" in stmt for stmt in executed)


@pytest.mark.asyncio
async def test_get_ticket_maps_row_and_assumes_utc():
    connection, _ = _connection()
    connection.fetchrow = AsyncMock(return_value=_ticket_row())
    repository = TicketRepository(DummyPool(connection))

    ticket = await repository.get_ticket("t-1")

    assert ticket.status == TicketStatus.IN_PROGRESS
    assert ticket.priority == TicketPriority.URGENT
    assert ticket.created_at.tzinfo == timezone.utc
    assert ticket.resolved_at is None


@pytest.mark.asyncio
async def test_get_ticket_returns_none_when_missing():
    connection, _ = _connection()
    connection.fetchrow = AsyncMock(return_value=None)
    repository = TicketRepository(DummyPool(connection))

    assert await repository.get_ticket("missing") is None


@pytest.mark.asyncio
async def test_unit_of_work_locks_rows_inside_transaction():
    connection, transaction = _connection()
    connection.fetchrow = AsyncMock(return_value=_ticket_row())
    repository = TicketRepository(DummyPool(connection), isolation="serializable")

    async with repository.unit_of_work() as uow:
        ticket = await uow.lock_ticket("t-1")

    assert ticket.id == "t-1"
    assert transaction.entered
    connection.transaction.assert_called_once_with(isolation="serializable")
    assert "FOR UPDATE" in connection.fetchrow.await_args.args[0]


@pytest.mark.asyncio
async def test_update_ticket_guards_on_previous_status():
    connection, _ = _connection()
    connection.fetchrow = AsyncMock(side_effect=[_ticket_row(), None])
    repository = TicketRepository(DummyPool(connection))

    with pytest.raises(ConflictError):
        async with repository.unit_of_work() as uow:
            ticket = await uow.lock_ticket("t-1")
            ticket.status = TicketStatus.RESOLVED
            await uow.update_ticket(ticket, expected_status=TicketStatus.IN_PROGRESS)

    update_args = connection.fetchrow.await_args.args
    assert "WHERE id = $1 AND status = $5" in update_args[0]
    assert update_args[2] == "resolved"
    assert update_args[5] == "in_progress"


@pytest.mark.asyncio
async def test_serialization_failure_becomes_conflict():
    connection, transaction = _connection()
    connection.fetchrow = AsyncMock(side_effect=asyncpg.exceptions.SerializationError("could not serialize"))
    repository = TicketRepository(DummyPool(connection))

    with pytest.raises(ConflictError):
        async with repository.unit_of_work() as uow:
            await uow.lock_sla_state("t-1")

    assert transaction.exc_type is asyncpg.exceptions.SerializationError


@pytest.mark.asyncio
async def test_audit_metadata_is_encoded_as_json():
    connection, _ = _connection()
    repository = TicketRepository(DummyPool(connection))
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    entry = AuditLogEntry(
        id="a-1",
        ticket_id="t-1",
        action="sla_paused",
        actor="agent-1",
        from_status=None,
        to_status=None,
        created_at=now,
        metadata={"reason": "waiting", "resume_at": now},
    )

    async with repository.unit_of_work() as uow:
        await uow.add_audit_log(entry)

    args = connection.execute.await_args.args
    assert "ticket_audit_logs" in args[0]
    assert args[5] is None and args[6] is None
    assert json.loads(args[7]) == {"reason": "waiting", "resume_at": now.isoformat()}


@pytest.mark.asyncio
async def test_get_audit_log_decodes_metadata():
    connection, _ = _connection()
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    connection.fetch = AsyncMock(
        return_value=[
            {
                "id": "a-1",
                "ticket_id": "t-1",
                "action": "status_changed",
                "actor": "agent-1",
                "from_status": "open",
                "to_status": "in_progress",
                "metadata": '{"reason": "picked up"}',
                "created_at": now,
            }
        ]
    )
    repository = TicketRepository(DummyPool(connection))

    [entry] = await repository.get_audit_log("t-1")

    assert entry.from_status == TicketStatus.OPEN
    assert entry.to_status == TicketStatus.IN_PROGRESS
    assert entry.metadata == {"reason": "picked up"}


@pytest.mark.asyncio
async def test_get_status_history_maps_rows_in_order():
    connection, _ = _connection()
    now = datetime(2024, 5, 1, 12, 0)
    connection.fetch = AsyncMock(
        return_value=[
            {
                "id": "h-1",
                "ticket_id": "t-1",
                "from_status": "open",
                "to_status": "in_progress",
                "actor": "agent-1",
                "reason": None,
                "created_at": now,
            },
            {
                "id": "h-2",
                "ticket_id": "t-1",
                "from_status": "in_progress",
                "to_status": "resolved",
                "actor": "agent-1",
                "reason": "router restarted",
                "created_at": now,
            },
        ]
    )
    repository = TicketRepository(DummyPool(connection))

    history = await repository.get_status_history("t-1")

    assert [(entry.from_status, entry.to_status) for entry in history] == [
        (TicketStatus.OPEN, TicketStatus.IN_PROGRESS),
        (TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED),
    ]
    assert history[1].reason == "router restarted"
    assert history[0].created_at.tzinfo == timezone.utc
    assert "ORDER BY created_at ASC" in connection.fetch.await_args.args[0]
    assert connection.fetch.await_args.args[1] == "t-1"


def _sla_row(**overrides):
    row = {
        "ticket_id": "t-1",
        "started_at": datetime(2024, 5, 1, 10, 0),
        "paused_at": None,
        "total_paused_minutes": 15,
        "breached_at": None,
        "response_breached": False,
        "resolution_breached": False,
        "last_escalation_at": None,
        "last_escalation_threshold": None,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_ticket_and_sla_are_read_from_one_snapshot():
    connection, transaction = _connection()
    connection.fetchrow = AsyncMock(side_effect=[_ticket_row(), _sla_row()])
    repository = TicketRepository(DummyPool(connection))

    ticket, state = await repository.get_ticket_with_sla("t-1")

    assert ticket.id == "t-1"
    assert state.total_paused_minutes == 15
    assert transaction.entered
    connection.transaction.assert_called_once_with(isolation="repeatable_read", readonly=True)
    queries = [call.args[0] for call in connection.fetchrow.await_args_list]
    assert "FROM tickets" in queries[0]
    assert "FROM sla_states" in queries[1]


@pytest.mark.asyncio
async def test_missing_ticket_skips_sla_read():
    connection, _ = _connection()
    connection.fetchrow = AsyncMock(return_value=None)
    repository = TicketRepository(DummyPool(connection))

    assert await repository.get_ticket_with_sla("missing") == (None, None)
    assert connection.fetchrow.await_count == 1
