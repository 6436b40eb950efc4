from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from helpdesk.core.clock import Clock, SystemClock


class Role(str, Enum):
    """Roles an acting user may hold."""

    ADMIN = "admin"
    AGENT = "agent"


class RoleResolver(Protocol):
    async def resolve(self, actor_id: str) -> Role | None:
        ...


class AgentRoleRepository:
    """Read the current role of an agent from the ``agents`` table."""

    _SELECT_ROLE_SQL = """
    SELECT role FROM agents WHERE id = $1
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def resolve(self, actor_id: str) -> Role | None:
        async with self._pool.acquire() as connection:
            value = await connection.fetchval(self._SELECT_ROLE_SQL, actor_id)
        if value is None:
            return None
        try:
            return Role(str(value))
        except ValueError:
            return None


@dataclass(slots=True)
class _CachedRole:
    role: Role | None
    expires_at: datetime


class CachedRoleResolver:
    """TTL cache in front of another resolver, keyed by actor id."""

    def __init__(
        self,
        resolver: RoleResolver,
        *,
        ttl_seconds: float = 300.0,
        clock: Clock | None = None,
    ) -> None:
        self._resolver = resolver
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: dict[str, _CachedRole] = {}

    async def resolve(self, actor_id: str) -> Role | None:
        now = self._clock.now()
        cached = self._entries.get(actor_id)
        if cached is not None:
            if now < cached.expires_at:
                return cached.role
            del self._entries[actor_id]

        role = await self._resolver.resolve(actor_id)
        # unknown actors are not cached so a newly created agent is picked up
        if role is not None:
            self._entries[actor_id] = _CachedRole(role=role, expires_at=now + self._ttl)
        return role

    def invalidate(self, actor_id: str) -> None:
        self._entries.pop(actor_id, None)

    def invalidate_all(self) -> None:
        self._entries.clear()
