from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Mapping

import asyncpg

from helpdesk.core.clock import ensure_utc

from .errors import ConflictError
from .models import AuditLogEntry, SLAState, StatusHistoryEntry, Ticket, TicketMessage, TicketPriority
from .state import TicketStatus

_TICKET_COLUMNS = "id, status, priority, assignee_id, customer_id, created_at, updated_at, resolved_at"
_SLA_COLUMNS = (
    "ticket_id, started_at, paused_at, total_paused_minutes, breached_at, response_breached, "
    "resolution_breached, last_escalation_at, last_escalation_threshold"
)


class TicketRepository:
    """Data access layer for tickets, their SLA clocks and append-only history."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        assignee_id TEXT NULL,
        customer_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        resolved_at TIMESTAMPTZ NULL
    )
    """

    _CREATE_SLA_STATES_SQL = """
    CREATE TABLE IF NOT EXISTS sla_states (
        ticket_id TEXT PRIMARY KEY REFERENCES tickets(id),
        started_at TIMESTAMPTZ NOT NULL,
        paused_at TIMESTAMPTZ NULL,
        total_paused_minutes INTEGER NOT NULL DEFAULT 0 CHECK (total_paused_minutes >= 0),
        breached_at TIMESTAMPTZ NULL,
        response_breached BOOLEAN NOT NULL DEFAULT FALSE,
        resolution_breached BOOLEAN NOT NULL DEFAULT FALSE,
        last_escalation_at TIMESTAMPTZ NULL,
        last_escalation_threshold INTEGER NULL
    )
    """

    _CREATE_STATUS_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_status_history (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id),
        from_status TEXT NOT NULL,
        to_status TEXT NOT NULL,
        actor TEXT NOT NULL,
        reason TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_MESSAGES_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_messages (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id),
        author TEXT NOT NULL,
        content TEXT NOT NULL,
        is_internal BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_AUDIT_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_audit_logs (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL REFERENCES tickets(id),
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        from_status TEXT NULL,
        to_status TEXT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _SELECT_TICKET_SQL = f"SELECT {_TICKET_COLUMNS} FROM tickets WHERE id = $1"
    _SELECT_SLA_SQL = f"SELECT {_SLA_COLUMNS} FROM sla_states WHERE ticket_id = $1"

    _SELECT_AUDIT_SQL = """
    SELECT id, ticket_id, action, actor, from_status, to_status, metadata, created_at
    FROM ticket_audit_logs
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    _SELECT_HISTORY_SQL = """
    SELECT id, ticket_id, from_status, to_status, actor, reason, created_at
    FROM ticket_status_history
    WHERE ticket_id = $1
    ORDER BY created_at ASC
    """

    def __init__(self, pool: asyncpg.Pool, *, isolation: str = "read_committed") -> None:
        self._pool = pool
        self._isolation = isolation

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_SLA_STATES_SQL)
            await connection.execute(self._CREATE_STATUS_HISTORY_SQL)
            await connection.execute(self._CREATE_MESSAGES_SQL)
            await connection.execute(self._CREATE_AUDIT_SQL)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        return None if row is None else row_to_ticket(row)

    async def get_ticket_with_sla(self, ticket_id: str) -> tuple[Ticket | None, SLAState | None]:
        """Read a ticket and its SLA clock from a single repeatable-read snapshot."""

        async with self._pool.acquire() as connection:
            async with connection.transaction(isolation="repeatable_read", readonly=True):
                ticket_row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
                if ticket_row is None:
                    return None, None
                sla_row = await connection.fetchrow(self._SELECT_SLA_SQL, ticket_id)
        return row_to_ticket(ticket_row), None if sla_row is None else row_to_sla_state(sla_row)

    async def get_audit_log(self, ticket_id: str) -> list[AuditLogEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_AUDIT_SQL, ticket_id)
        return [row_to_audit(row) for row in rows]

    async def get_status_history(self, ticket_id: str) -> list[StatusHistoryEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_HISTORY_SQL, ticket_id)
        return [row_to_history(row) for row in rows]

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["TicketUnitOfWork"]:
        """Open a transaction; every write made through the yielded unit commits together."""

        try:
            async with self._pool.acquire() as connection:
                async with connection.transaction(isolation=self._isolation):
                    yield TicketUnitOfWork(connection)
        except (asyncpg.exceptions.SerializationError, asyncpg.exceptions.DeadlockDetectedError) as exc:
            raise ConflictError("Ticket was modified concurrently, retry the request") from exc


class TicketUnitOfWork:
    """Row-locking reads and writes bound to a single open transaction."""

    _LOCK_TICKET_SQL = f"SELECT {_TICKET_COLUMNS} FROM tickets WHERE id = $1 FOR UPDATE"
    _LOCK_SLA_SQL = f"SELECT {_SLA_COLUMNS} FROM sla_states WHERE ticket_id = $1 FOR UPDATE"

    _UPDATE_TICKET_SQL = """
    UPDATE tickets
    SET status = $2,
        updated_at = $3,
        resolved_at = $4
    WHERE id = $1 AND status = $5
    RETURNING id
    """

    _UPDATE_SLA_SQL = """
    UPDATE sla_states
    SET paused_at = $2,
        total_paused_minutes = $3,
        breached_at = $4,
        response_breached = $5,
        resolution_breached = $6,
        last_escalation_at = $7,
        last_escalation_threshold = $8
    WHERE ticket_id = $1
    RETURNING ticket_id
    """

    _INSERT_HISTORY_SQL = """
    INSERT INTO ticket_status_history (id, ticket_id, from_status, to_status, actor, reason, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    """

    _INSERT_MESSAGE_SQL = """
    INSERT INTO ticket_messages (id, ticket_id, author, content, is_internal, created_at)
    VALUES ($1, $2, $3, $4, $5, $6)
    """

    _INSERT_AUDIT_SQL = """
    INSERT INTO ticket_audit_logs (id, ticket_id, action, actor, from_status, to_status, metadata, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
    """

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    async def lock_ticket(self, ticket_id: str) -> Ticket | None:
        row = await self._connection.fetchrow(self._LOCK_TICKET_SQL, ticket_id)
        return None if row is None else row_to_ticket(row)

    async def lock_sla_state(self, ticket_id: str) -> SLAState | None:
        row = await self._connection.fetchrow(self._LOCK_SLA_SQL, ticket_id)
        return None if row is None else row_to_sla_state(row)

    async def update_ticket(self, ticket: Ticket, *, expected_status: TicketStatus) -> None:
        row = await self._connection.fetchrow(
            self._UPDATE_TICKET_SQL,
            ticket.id,
            ticket.status.value,
            ticket.updated_at,
            ticket.resolved_at,
            expected_status.value,
        )
        if row is None:
            raise ConflictError(f"Ticket {ticket.id} is no longer {expected_status.value}")

    async def update_sla_state(self, state: SLAState) -> None:
        row = await self._connection.fetchrow(
            self._UPDATE_SLA_SQL,
            state.ticket_id,
            state.paused_at,
            state.total_paused_minutes,
            state.breached_at,
            state.response_breached,
            state.resolution_breached,
            state.last_escalation_at,
            state.last_escalation_threshold,
        )
        if row is None:
            raise ConflictError(f"SLA state of ticket {state.ticket_id} disappeared")

    async def add_status_history(self, entry: StatusHistoryEntry) -> None:
        await self._connection.execute(
            self._INSERT_HISTORY_SQL,
            entry.id,
            entry.ticket_id,
            entry.from_status.value,
            entry.to_status.value,
            entry.actor,
            entry.reason,
            entry.created_at,
        )

    async def add_message(self, message: TicketMessage) -> None:
        await self._connection.execute(
            self._INSERT_MESSAGE_SQL,
            message.id,
            message.ticket_id,
            message.author,
            message.content,
            message.is_internal,
            message.created_at,
        )

    async def add_audit_log(self, entry: AuditLogEntry) -> None:
        await self._connection.execute(
            self._INSERT_AUDIT_SQL,
            entry.id,
            entry.ticket_id,
            entry.action,
            entry.actor,
            None if entry.from_status is None else entry.from_status.value,
            None if entry.to_status is None else entry.to_status.value,
            _encode_metadata(entry.metadata),
            entry.created_at,
        )


def row_to_ticket(row: Mapping[str, Any]) -> Ticket:
    return Ticket(
        id=str(row["id"]),
        status=TicketStatus(str(row["status"])),
        priority=TicketPriority(str(row["priority"])),
        assignee_id=None if row["assignee_id"] is None else str(row["assignee_id"]),
        customer_id=str(row["customer_id"]),
        created_at=ensure_utc(row["created_at"]),
        updated_at=ensure_utc(row["updated_at"]),
        resolved_at=_optional_datetime(row["resolved_at"]),
    )


def row_to_sla_state(row: Mapping[str, Any]) -> SLAState:
    threshold = row["last_escalation_threshold"]
    return SLAState(
        ticket_id=str(row["ticket_id"]),
        started_at=ensure_utc(row["started_at"]),
        paused_at=_optional_datetime(row["paused_at"]),
        total_paused_minutes=int(row["total_paused_minutes"] or 0),
        breached_at=_optional_datetime(row["breached_at"]),
        response_breached=bool(row["response_breached"]),
        resolution_breached=bool(row["resolution_breached"]),
        last_escalation_at=_optional_datetime(row["last_escalation_at"]),
        last_escalation_threshold=None if threshold is None else int(threshold),
    )


def row_to_history(row: Mapping[str, Any]) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        id=str(row["id"]),
        ticket_id=str(row["ticket_id"]),
        from_status=TicketStatus(str(row["from_status"])),
        to_status=TicketStatus(str(row["to_status"])),
        actor=str(row["actor"]),
        reason=row["reason"],
        created_at=ensure_utc(row["created_at"]),
    )


def row_to_audit(row: Mapping[str, Any]) -> AuditLogEntry:
    from_status = row["from_status"]
    to_status = row["to_status"]
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AuditLogEntry(
        id=str(row["id"]),
        ticket_id=str(row["ticket_id"]),
        action=str(row["action"]),
        actor=str(row["actor"]),
        from_status=TicketStatus(str(from_status)) if from_status else None,
        to_status=TicketStatus(str(to_status)) if to_status else None,
        metadata=dict(metadata or {}),
        created_at=ensure_utc(row["created_at"]),
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else ensure_utc(value)


def _encode_metadata(metadata: Mapping[str, Any]) -> str:
    return json.dumps(dict(metadata), default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
