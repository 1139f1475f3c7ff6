from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextvars import ContextVar
import logging
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]

from crm_access.services.errors import (
    DataAccessError,
    NestedTransactionError,
    StoreUnavailableError,
    TransactionClosedError,
    TransientReason,
    TransientStoreError,
)
from crm_access.services.executor import QueryExecutor, QueryResult, translate_store_error
from crm_access.services.pool import ConnectionPoolManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ACTIVE_TRANSACTION: ContextVar[Transaction | None] = ContextVar("crm_access_active_transaction", default=None)


class Transaction:
    """Statement handle bound to the single connection of one transaction."""

    def __init__(self, executor: QueryExecutor, conn: Any) -> None:
        self._executor = executor
        self._conn = conn
        self.finished = False

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        if self.finished:
            raise TransactionClosedError("transaction handle used after the transaction finished")
        return await self._executor.run_on(self._conn, sql, params)

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return (await self.execute(sql, params)).rows

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        return (await self.execute(sql, params)).first()


class TransactionCoordinator:
    """Runs a body inside one store transaction on one dedicated connection.

    With ``retry_transient=True`` a transient failure raised before commit rolls
    the attempt back and reruns the whole body after the executor's backoff, so
    the body must only touch the store through its ``Transaction`` handle. A
    failure during commit is never retried because its outcome is unknown.
    """

    def __init__(self, pool: ConnectionPoolManager, executor: QueryExecutor) -> None:
        self.pool = pool
        self.executor = executor

    async def run(self, body: Callable[[Transaction], Awaitable[T]], *, retry_transient: bool = False) -> T:
        if _ACTIVE_TRANSACTION.get() is not None:
            raise NestedTransactionError("nested transactions are not supported")

        attempt = 0
        while True:
            try:
                return await self._run_once(body)
            except TransientStoreError as exc:
                if not retry_transient or attempt >= self.executor.max_retries:
                    raise StoreUnavailableError(f"transaction aborted after {attempt + 1} attempts: {exc}") from exc
                delay = self.executor.backoff_seconds(attempt)
                logger.warning(
                    "transaction retry reason=%s attempt=%s retry_in=%.1fs error=%s",
                    exc.reason.value,
                    attempt + 1,
                    delay,
                    exc,
                )
                await self.executor.pause(attempt)
                attempt += 1

    async def _run_once(self, body: Callable[[Transaction], Awaitable[T]]) -> T:
        generation = self.pool.generation
        try:
            conn = await self.pool.acquire()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            translated = translate_store_error(exc)
            if isinstance(translated, TransientStoreError):
                if translated.reason is TransientReason.CONNECTION_LOST:
                    await self.pool.reset(stale_generation=generation)
                raise translated from exc
            raise StoreUnavailableError(f"could not acquire a connection for the transaction: {exc}") from exc
        generation = self.pool.generation

        tx = Transaction(self.executor, conn)
        token = _ACTIVE_TRANSACTION.set(tx)
        try:
            store_transaction = conn.transaction()
            await self._guarded(store_transaction.start())
            try:
                result = await body(tx)
            except BaseException as exc:
                await self._rollback(store_transaction, exc)
                raise
            try:
                await self._guarded(store_transaction.commit())
            except TransientStoreError as exc:
                await self._rollback(store_transaction, exc)
                if exc.reason is TransientReason.CONNECTION_LOST:
                    await self.pool.reset(stale_generation=generation)
                raise StoreUnavailableError(f"transaction outcome unknown, commit failed: {exc}") from exc
            except BaseException as exc:
                await self._rollback(store_transaction, exc)
                raise
            logger.debug("transaction committed generation=%s", generation)
            return result
        except TransientStoreError as exc:
            if exc.reason is TransientReason.CONNECTION_LOST:
                await self.pool.reset(stale_generation=generation)
            raise
        finally:
            tx.finished = True
            _ACTIVE_TRANSACTION.reset(token)
            await self.pool.release(conn)

    async def _rollback(self, store_transaction: Any, cause: BaseException) -> None:
        try:
            await store_transaction.rollback()
        except Exception:
            # the body's error propagates, not the rollback failure
            logger.exception("transaction rollback failed after error=%r", cause)
        else:
            logger.info("transaction rolled back error=%s", type(cause).__name__)

    @staticmethod
    async def _guarded(operation: Awaitable[Any]) -> Any:
        try:
            return await operation
        except DataAccessError:
            raise
        except Exception as exc:
            translated = translate_store_error(exc)
            if translated is exc:
                raise
            raise translated from exc
