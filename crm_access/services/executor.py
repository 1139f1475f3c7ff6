from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
import logging
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]

from crm_access.core.telemetry import store_span
from crm_access.services.errors import (
    QueryValidationError,
    StatementError,
    StoreUnavailableError,
    TransientReason,
    TransientStoreError,
)
from crm_access.services.pool import ConnectionPoolManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECTION_LOST_SQLSTATES = {"57P01", "57P02", "57P03"}
TOO_MANY_CONNECTIONS_SQLSTATES = {"53300"}
TIMED_OUT_SQLSTATES = {"57014"}


@dataclass(slots=True)
class FieldDescriptor:
    name: str
    type_name: str | None = None


@dataclass(slots=True)
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    fields: list[FieldDescriptor] = field(default_factory=list)
    status: str = ""
    affected: int = 0

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


def classify_store_error(exc: BaseException) -> TransientReason | None:
    """Return the transient class of a store failure, or None if it must not be retried."""
    sqlstate = getattr(exc, "sqlstate", None)
    if isinstance(sqlstate, str):
        if sqlstate.startswith("08") or sqlstate in CONNECTION_LOST_SQLSTATES:
            return TransientReason.CONNECTION_LOST
        if sqlstate in TOO_MANY_CONNECTIONS_SQLSTATES:
            return TransientReason.TOO_MANY_CONNECTIONS
        if sqlstate in TIMED_OUT_SQLSTATES:
            return TransientReason.TIMED_OUT
        return None
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransientReason.TIMED_OUT
    if isinstance(exc, (ConnectionError, OSError)):
        return TransientReason.CONNECTION_LOST
    return None


def translate_store_error(exc: Exception) -> Exception:
    if isinstance(exc, (TransientStoreError, StatementError, StoreUnavailableError, QueryValidationError)):
        return exc
    reason = classify_store_error(exc)
    if reason is not None:
        return TransientStoreError(reason, str(exc) or type(exc).__name__)
    if isinstance(exc, (asyncpg.PostgresError, asyncpg.InterfaceError)):
        return StatementError(str(exc), getattr(exc, "sqlstate", None))
    return exc


def to_positional(sql: str, param_count: int) -> str:
    """Rewrite ``?`` placeholders into asyncpg ``$n`` form.

    Question marks inside quoted literals or identifiers are left alone.
    """
    parts: list[str] = []
    index = 0
    quote: str | None = None
    for char in sql:
        if quote is not None:
            if char == quote:
                quote = None
            parts.append(char)
        elif char in ("'", '"'):
            quote = char
            parts.append(char)
        elif char == "?":
            index += 1
            parts.append(f"${index}")
        else:
            parts.append(char)
    if index != param_count:
        raise QueryValidationError(f"statement has {index} placeholders but {param_count} params")
    return "".join(parts)


def affected_from_status(status: str | None) -> int:
    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


async def run_statement(conn: Any, sql: str, params: Sequence[Any]) -> QueryResult:
    """Run one statement on a held connection; store errors are translated, not retried."""
    positional_sql = to_positional(sql, len(params))
    try:
        result = await _complete_in_flight(_prepare_and_fetch(conn, positional_sql, params))
    except Exception as exc:
        translated = translate_store_error(exc)
        if translated is exc:
            raise
        raise translated from exc
    return result


async def _prepare_and_fetch(conn: Any, sql: str, params: Sequence[Any]) -> QueryResult:
    statement = await conn.prepare(sql)
    records = await statement.fetch(*params)
    attributes = statement.get_attributes()
    status = statement.get_statusmsg()
    return QueryResult(
        rows=[dict(record) for record in records],
        fields=[FieldDescriptor(name=attr.name, type_name=getattr(attr.type, "name", None)) for attr in attributes],
        status=status or "",
        affected=affected_from_status(status) if status and not status.startswith("SELECT") else 0,
    )


async def _complete_in_flight(operation: Awaitable[T]) -> T:
    # a statement already sent to the store finishes before cancellation is honoured
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.warning("statement failed after caller cancelled: %s", task.exception())
        raise


class QueryExecutor:
    def __init__(
        self,
        pool: ConnectionPoolManager,
        *,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.max_retries = max(0, max_retries)
        self.retry_base_seconds = max(0.0, retry_base_seconds)
        self._sleep = sleep

    async def execute(self, sql: str, params: Sequence[Any] = (), attempt: int = 0) -> QueryResult:
        params = tuple(params)
        generation = self.pool.generation
        try:
            with store_span("store.execute", statement=sql, attempt=attempt):
                conn = await self.pool.acquire()
                generation = self.pool.generation
                try:
                    return await run_statement(conn, sql, params)
                finally:
                    await self.pool.release(conn)
        except TransientStoreError as exc:
            return await self._retry(sql, params, attempt, exc, generation)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            # failures while acquiring, before a statement ran
            translated = translate_store_error(exc)
            if isinstance(translated, TransientStoreError):
                return await self._retry(sql, params, attempt, translated, generation, cause=exc)
            raise translated from exc

    async def fetch(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return (await self.execute(sql, params)).rows

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        return (await self.execute(sql, params)).first()

    async def run_on(self, conn: Any, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        with store_span("store.execute_in_transaction", statement=sql):
            return await run_statement(conn, sql, tuple(params))

    def backoff_seconds(self, attempt: int) -> float:
        return self.retry_base_seconds * (2**attempt)

    async def pause(self, attempt: int) -> float:
        delay = self.backoff_seconds(attempt)
        await self._sleep(delay)
        return delay

    async def _retry(
        self,
        sql: str,
        params: tuple[Any, ...],
        attempt: int,
        exc: TransientStoreError,
        generation: int,
        *,
        cause: BaseException | None = None,
    ) -> QueryResult:
        if attempt >= self.max_retries:
            logger.error(
                "store unavailable after attempts=%s reason=%s error=%s",
                attempt + 1,
                exc.reason.value,
                exc,
            )
            raise StoreUnavailableError(f"store unavailable after {attempt + 1} attempts: {exc}") from (cause or exc)

        if exc.reason is TransientReason.CONNECTION_LOST:
            await self.pool.reset(stale_generation=generation)

        delay = self.backoff_seconds(attempt)
        logger.warning(
            "transient store error reason=%s attempt=%s retry_in=%.1fs error=%s",
            exc.reason.value,
            attempt + 1,
            delay,
            exc,
        )
        await self._sleep(delay)
        return await self.execute(sql, params, attempt + 1)