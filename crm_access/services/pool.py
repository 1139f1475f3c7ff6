from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from crm_access.services.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

PoolFactory = Callable[..., Awaitable[Any]]


@dataclass(slots=True)
class PoolStats:
    initialized: bool
    generation: int
    size: int
    idle: int
    leased: int
    min_size: int
    max_size: int


class ConnectionPoolManager:
    """Owns the asyncpg pool and hands out one connection per operation.

    The pool is created on first use. ``reset`` throws the whole pool away
    after a connection-level failure; the next ``acquire`` builds a new one.
    Each pool instance carries a generation number so that late releases and
    duplicate reset requests from an older pool are recognised.
    """

    def __init__(
        self,
        database_url: str | None,
        *,
        min_size: int = 50,
        max_size: int = 100,
        acquire_timeout_seconds: float | None = None,
        command_timeout_seconds: float | None = 15.0,
        pool_factory: PoolFactory | None = None,
    ) -> None:
        self.database_url = database_url
        self.max_size = max(1, max_size)
        self.min_size = min(max(0, min_size), self.max_size)
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self.command_timeout_seconds = command_timeout_seconds
        self._pool_factory = pool_factory or asyncpg.create_pool
        self._pool: Any | None = None
        self._generation = 0
        self._leases: dict[int, int] = {}
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    async def acquire(self) -> Any:
        pool = await self._get_pool()
        generation = self._generation
        conn = await pool.acquire(timeout=self.acquire_timeout_seconds)
        if generation != self._generation:
            # reset ran while we were waiting; this connection belongs to a discarded pool
            await self._discard(pool, conn)
            return await self.acquire()
        self._leases[id(conn)] = generation
        logger.debug(
            "pool connection acquired generation=%s leased=%s",
            generation,
            len(self._leases),
        )
        return conn

    async def release(self, conn: Any) -> None:
        generation = self._leases.pop(id(conn), None)
        if generation is None:
            logger.warning("pool release ignored for connection that is not leased")
            return
        if generation != self._generation or self._pool is None:
            logger.info("pool connection dropped from superseded generation=%s", generation)
            return
        await self._pool.release(conn)
        logger.debug("pool connection released generation=%s leased=%s", generation, len(self._leases))

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        conn = await self.acquire()
        try:
            yield conn
        finally:
            await self.release(conn)

    async def reset(self, *, stale_generation: int | None = None) -> None:
        async with self._lock:
            if stale_generation is not None and stale_generation != self._generation:
                return
            pool = self._pool
            self._pool = None
            self._generation += 1
            if pool is not None:
                pool.terminate()
            logger.warning(
                "pool reset generation=%s abandoned_leases=%s",
                self._generation,
                len(self._leases),
            )

    async def close(self) -> None:
        async with self._lock:
            pool = self._pool
            self._pool = None
            self._generation += 1
            if pool is not None:
                await pool.close()
                logger.info("pool closed")

    async def ping(self) -> bool:
        try:
            async with self.connection() as conn:
                return await conn.fetchval("select 1") == 1
        except (StoreUnavailableError, asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError):
            logger.exception("pool ping failed")
            return False

    def stats(self) -> PoolStats:
        pool = self._pool
        if pool is None:
            return PoolStats(
                initialized=False,
                generation=self._generation,
                size=0,
                idle=0,
                leased=len(self._leases),
                min_size=self.min_size,
                max_size=self.max_size,
            )
        return PoolStats(
            initialized=True,
            generation=self._generation,
            size=pool.get_size(),
            idle=pool.get_idle_size(),
            leased=len(self._leases),
            min_size=pool.get_min_size(),
            max_size=pool.get_max_size(),
        )

    async def _get_pool(self) -> Any:
        if not self.database_url:
            raise StoreUnavailableError("CRM_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._lock:
            if self._pool is None:
                logger.info(
                    "pool creating generation=%s min_size=%s max_size=%s",
                    self._generation,
                    self.min_size,
                    self.max_size,
                )
                self._pool = await self._pool_factory(
                    dsn=self.database_url,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout_seconds,
                    init=self._on_connection_created,
                )
            return self._pool

    async def _on_connection_created(self, conn: Any) -> None:
        logger.info("pool connection created generation=%s", self._generation)

    async def _discard(self, pool: Any, conn: Any) -> None:
        try:
            await pool.release(conn)
        except (asyncpg.InterfaceError, OSError):
            logger.debug("release into discarded pool failed", exc_info=True)
