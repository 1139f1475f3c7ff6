from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from crm_access.core.auth import Actor, Role
from crm_access.core.config import Settings
from crm_access.schemas.listing import ListFilters, Page, Pagination
from crm_access.services.errors import (
    Affected,
    NotFoundOrForbidden,
    PermissionDeniedError,
    QueryValidationError,
)
from crm_access.services.executor import QueryExecutor
from crm_access.services.permissions import (
    Action,
    EntityColumns,
    EntityKind,
    columns_for,
    owns_record,
    quote_identifier,
    require_action,
    scope_for,
)
from crm_access.services.pool import ConnectionPoolManager
from crm_access.services.transactions import Transaction, TransactionCoordinator

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMITS: dict[Role, int] = {
    Role.MANAGER: 5000,
    Role.TEAM_LEADER: 1000,
    Role.SALESMAN: 200,
}

MutationOutcome = Affected | NotFoundOrForbidden


class ScopedRepository:
    """Role-scoped reads and writes over the CRM tables.

    Every statement built here combines the actor's mandatory predicate with
    the caller's optional filters. Values travel as bound parameters; the only
    text spliced into SQL is identifiers from the compiled-in column map and the
    validated ``LIMIT``/``OFFSET`` integers.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        transactions: TransactionCoordinator,
        *,
        page_limits: Mapping[Role, int] | None = None,
        max_page_offset: int = 1_000_000,
        export_max_rows: int = 5000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.executor = executor
        self.transactions = transactions
        self.page_limits = dict(DEFAULT_PAGE_LIMITS)
        if page_limits:
            self.page_limits.update(page_limits)
        self.max_page_offset = max_page_offset
        self.export_max_rows = export_max_rows
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def close(self) -> None:
        await self.executor.pool.close()

    async def list(
        self,
        actor: Actor,
        entity: EntityKind | str,
        filters: ListFilters | None = None,
        pagination: Pagination | None = None,
    ) -> Page:
        kind = EntityKind(entity)
        columns = columns_for(kind)
        pagination = pagination or Pagination()
        limit = self._window_limit(actor, pagination.limit)
        offset = self._window_offset(pagination.page, limit)
        where_sql, params = self._where(actor, kind, filters or ListFilters())

        rows = await self.executor.fetch(
            f"select * from {columns.table}{where_sql} order by {self._order_by(kind)} limit {limit} offset {offset}",
            params,
        )
        count_row = await self.executor.fetch_one(
            f"select count(*) as total from {columns.table}{where_sql}",
            params,
        )
        total = int(count_row["total"]) if count_row else 0
        logger.info(
            "scoped list entity=%s actor=%s role=%s rows=%s total=%s",
            kind.value,
            actor.id,
            actor.role.value,
            len(rows),
            total,
        )
        return Page(rows=rows, total=total, page=pagination.page, limit=limit)

    async def get(self, actor: Actor, entity: EntityKind | str, record_id: str) -> dict[str, Any] | None:
        kind = EntityKind(entity)
        columns = columns_for(kind)
        where_sql, params = self._record_where(actor, kind, record_id)
        row = await self.executor.fetch_one(f"select * from {columns.table} where {where_sql} limit 1", params)
        if row is None or not owns_record(actor, kind, row):
            return None
        return row

    async def export(
        self,
        actor: Actor,
        entity: EntityKind | str,
        filters: ListFilters | None = None,
    ) -> list[dict[str, Any]]:
        require_action(actor, Action.EXPORT)
        kind = EntityKind(entity)
        columns = columns_for(kind)
        limit = _validated_int(self.export_max_rows, "export row limit", minimum=1)
        where_sql, params = self._where(actor, kind, filters or ListFilters())
        rows = await self.executor.fetch(
            f"select * from {columns.table}{where_sql} order by {self._order_by(kind)} limit {limit}",
            params,
        )
        logger.info("scoped export entity=%s actor=%s rows=%s", kind.value, actor.id, len(rows))
        return rows

    async def create(self, actor: Actor, entity: EntityKind | str, values: Mapping[str, Any]) -> dict[str, Any]:
        kind = EntityKind(entity)
        columns = columns_for(kind)
        if columns.create_action is not None:
            require_action(actor, columns.create_action)

        unknown = set(values) - columns.mutable_columns - {columns.id_column}
        if unknown:
            raise QueryValidationError(f"unsupported columns for {kind.value}: {', '.join(sorted(unknown))}")

        record = dict(values)
        record.setdefault(columns.agent_column, actor.id)
        if columns.team_column and actor.team_scope is not None:
            record.setdefault(columns.team_column, actor.team_scope)
        if columns.creator_column:
            record[columns.creator_column] = actor.id
        if actor.role is not Role.MANAGER and not owns_record(actor, kind, record, for_write=True):
            raise PermissionDeniedError(Action.REASSIGN_OWNERSHIP.value, actor.role.value)
        if not record.get(columns.id_column):
            record[columns.id_column] = f"{columns.id_prefix}_{uuid4().hex}"
        now = self._clock()
        record[columns.created_column] = now
        if columns.updated_column:
            record[columns.updated_column] = now

        names = sorted(record)
        placeholders = ", ".join("?" for _ in names)
        row = await self.executor.fetch_one(
            f"insert into {columns.table} ({', '.join(quote_identifier(kind, name) for name in names)}) "
            f"values ({placeholders}) returning *",
            [record[name] for name in names],
        )
        logger.info("scoped create entity=%s actor=%s id=%s", kind.value, actor.id, record[columns.id_column])
        return row or record

    async def mutate(
        self,
        actor: Actor,
        entity: EntityKind | str,
        record_id: str,
        changes: Mapping[str, Any],
        *,
        action: Action | str | None = None,
    ) -> MutationOutcome:
        kind = EntityKind(entity)
        columns = columns_for(kind)
        if action is not None:
            require_action(actor, action)
        if not changes:
            raise QueryValidationError("changes must not be empty")

        unknown = set(changes) - columns.mutable_columns
        if unknown:
            raise QueryValidationError(f"unsupported columns for {kind.value}: {', '.join(sorted(unknown))}")
        if set(changes) & columns.ownership_columns:
            require_action(actor, Action.REASSIGN_OWNERSHIP)

        names = sorted(changes)
        assignments = [f"{quote_identifier(kind, name)} = ?" for name in names]
        values: list[Any] = [changes[name] for name in names]
        if columns.updated_column:
            assignments.append(f"{quote_identifier(kind, columns.updated_column)} = ?")
            values.append(self._clock())

        sql = (
            f"update {columns.table} set {', '.join(assignments)} "
            f"where {quote_identifier(kind, columns.id_column)} = ?"
        )
        return await self._apply_owned(actor, kind, record_id, sql, values, operation="update")

    async def delete(
        self,
        actor: Actor,
        entity: EntityKind | str,
        record_id: str,
        *,
        action: Action | str | None = None,
    ) -> MutationOutcome:
        kind = EntityKind(entity)
        columns = columns_for(kind)
        if action is not None:
            require_action(actor, action)
        sql = f"delete from {columns.table} where {quote_identifier(kind, columns.id_column)} = ?"
        return await self._apply_owned(actor, kind, record_id, sql, [], operation="delete")

    async def _apply_owned(
        self,
        actor: Actor,
        kind: EntityKind,
        record_id: str,
        sql: str,
        values: list[Any],
        *,
        operation: str,
    ) -> MutationOutcome:
        columns = columns_for(kind)
        where_sql, params = self._record_where(actor, kind, record_id)
        selected = ", ".join(quote_identifier(kind, name) for name in _ownership_select(columns))

        async def body(tx: Transaction) -> MutationOutcome:
            row = await tx.fetch_one(
                f"select {selected} from {columns.table} where {where_sql} for update",
                params,
            )
            if row is None or not owns_record(actor, kind, row, for_write=True):
                return NotFoundOrForbidden(entity=kind.value, record_id=str(record_id))
            result = await tx.execute(sql, [*values, str(record_id)])
            return Affected(count=result.affected)

        outcome = await self.transactions.run(body, retry_transient=True)
        if isinstance(outcome, NotFoundOrForbidden):
            logger.info(
                "scoped %s refused entity=%s id=%s actor=%s role=%s",
                operation,
                kind.value,
                record_id,
                actor.id,
                actor.role.value,
            )
        else:
            logger.info(
                "scoped %s applied entity=%s id=%s actor=%s affected=%s",
                operation,
                kind.value,
                record_id,
                actor.id,
                outcome.count,
            )
        return outcome

    def _where(self, actor: Actor, kind: EntityKind, filters: ListFilters) -> tuple[str, list[Any]]:
        columns = columns_for(kind)
        conditions: list[str] = []
        params: list[Any] = []

        predicate = scope_for(actor, kind)
        if not predicate.is_unrestricted:
            conditions.append(predicate.where_fragment)
            params.extend(predicate.params)

        if filters.status is not None:
            if columns.status_column is None:
                raise QueryValidationError(f"{kind.value} records have no status")
            conditions.append(f"{quote_identifier(kind, columns.status_column)} = ?")
            params.append(filters.status)
        if filters.created_from is not None:
            conditions.append(f"{quote_identifier(kind, columns.created_column)} >= ?")
            params.append(filters.created_from)
        if filters.created_to is not None:
            conditions.append(f"{quote_identifier(kind, columns.created_column)} <= ?")
            params.append(filters.created_to)
        if filters.agent_id is not None:
            conditions.append(f"{quote_identifier(kind, columns.agent_column)} = ?")
            params.append(filters.agent_id)
        if filters.team is not None:
            if columns.team_column is None:
                raise QueryValidationError(f"{kind.value} records have no team")
            conditions.append(f"{quote_identifier(kind, columns.team_column)} = ?")
            params.append(filters.team)
        if filters.search is not None and columns.search_columns:
            term = f"%{_escape_like(filters.search.lower())}%"
            matches = [
                f"lower({quote_identifier(kind, name)}) like ? escape '\\'" for name in columns.search_columns
            ]
            conditions.append(f"({' or '.join(matches)})")
            params.extend(term for _ in columns.search_columns)

        where_sql = f" where {' and '.join(conditions)}" if conditions else ""
        return where_sql, params

    def _record_where(self, actor: Actor, kind: EntityKind, record_id: str) -> tuple[str, list[Any]]:
        if record_id is None or not str(record_id).strip():
            raise QueryValidationError("record id must be a non-empty string")
        columns = columns_for(kind)
        conditions = [f"{quote_identifier(kind, columns.id_column)} = ?"]
        params: list[Any] = [str(record_id)]
        predicate = scope_for(actor, kind)
        if not predicate.is_unrestricted:
            conditions.append(predicate.where_fragment)
            params.extend(predicate.params)
        return " and ".join(conditions), params

    @staticmethod
    def _order_by(kind: EntityKind) -> str:
        columns = columns_for(kind)
        created = quote_identifier(kind, columns.created_column)
        identity = quote_identifier(kind, columns.id_column)
        if columns.updated_column:
            recency = f"coalesce({quote_identifier(kind, columns.updated_column)}, {created})"
        else:
            recency = created
        return f"{recency} desc, {identity} asc"

    def _window_limit(self, actor: Actor, requested: int) -> int:
        ceiling = self.page_limits.get(actor.role, DEFAULT_PAGE_LIMITS[Role.SALESMAN])
        limit = _validated_int(requested, "limit", minimum=1)
        return min(limit, _validated_int(ceiling, "page ceiling", minimum=1))

    def _window_offset(self, page: int, limit: int) -> int:
        page = _validated_int(page, "page", minimum=1)
        return _validated_int((page - 1) * limit, "offset", minimum=0, maximum=self.max_page_offset)


def _validated_int(value: Any, name: str, *, minimum: int, maximum: int | None = None) -> int:
    if type(value) is not int:
        raise QueryValidationError(f"{name} must be an integer")
    if value < minimum or (maximum is not None and value > maximum):
        raise QueryValidationError(f"{name} is out of range")
    return value


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _ownership_select(columns: EntityColumns) -> list[str]:
    selected = [columns.id_column, columns.agent_column]
    for optional in (columns.team_column, columns.creator_column):
        if optional and optional not in selected:
            selected.append(optional)
    return selected


def build_scoped_repository(settings: Settings) -> ScopedRepository:
    pool = ConnectionPoolManager(
        settings.database_url,
        min_size=settings.database_pool_min_size,
        max_size=settings.database_pool_max_size,
        acquire_timeout_seconds=settings.database_acquire_timeout_seconds,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
    executor = QueryExecutor(
        pool,
        max_retries=settings.query_max_retries,
        retry_base_seconds=settings.query_retry_base_seconds,
    )
    return ScopedRepository(
        executor,
        TransactionCoordinator(pool, executor),
        page_limits={
            Role.MANAGER: settings.page_limit_manager,
            Role.TEAM_LEADER: settings.page_limit_team_leader,
            Role.SALESMAN: settings.page_limit_salesman,
        },
        max_page_offset=settings.max_page_offset,
        export_max_rows=settings.export_max_rows,
    )
