from __future__ import annotations

import asyncio
from dataclasses import dataclass

import asyncpg

from helpdesk.core.config import Settings


@dataclass(slots=True)
class PostgresPool:
    """Lazily created asyncpg pool shared by the repositories."""

    dsn: str
    min_size: int = 1
    max_size: int = 10
    command_timeout: float | None = None
    _pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresPool":
        return cls(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_min_pool_size,
            max_size=settings.postgres_max_pool_size,
            command_timeout=settings.postgres_command_timeout,
        )

    async def get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
        return self._pool

    async def test_connection(self) -> bool:
        pool = await self.get_pool()
        async with pool.acquire() as connection:
            await connection.execute("SELECT 1")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def test_connection_sync(self, timeout: float = 5.0) -> bool:
        """Blocking helper that can be used from synchronous contexts."""

        return asyncio.run(asyncio.wait_for(self.test_connection(), timeout=timeout))
