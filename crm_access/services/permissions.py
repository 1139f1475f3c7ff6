"""Role-based scoping for CRM entities.

Every function here is pure: the predicate for an actor is rebuilt on each
call from the actor and the compiled-in column map, so team membership changes
are picked up immediately and nothing needs invalidating.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from crm_access.core.auth import Actor, Role
from crm_access.services.errors import PermissionDeniedError


class EntityKind(str, Enum):
    DEAL = "deal"
    CALLBACK = "callback"
    TARGET = "target"
    NOTIFICATION = "notification"
    FEEDBACK = "feedback"
    DATA_CENTER_ENTRY = "data_center_entry"


class Action(str, Enum):
    EXPORT = "export"
    CREATE_NOTIFICATION = "create_notification"
    MANAGE_USERS = "manage_users"
    VIEW_ALL_PERFORMANCE = "view_all_performance"
    ASSIGN_TARGET = "assign_target"
    RESPOND_TO_FEEDBACK = "respond_to_feedback"
    SUBMIT_FEEDBACK = "submit_feedback"
    REASSIGN_OWNERSHIP = "reassign_ownership"


@dataclass(frozen=True, slots=True)
class EntityColumns:
    table: str
    agent_column: str
    team_column: str | None = None
    creator_column: str | None = None
    creator_owns: bool = False
    id_column: str = "id"
    id_prefix: str = "rec"
    status_column: str | None = "status"
    created_column: str = "created_at"
    updated_column: str | None = "updated_at"
    search_columns: tuple[str, ...] = ()
    mutable_columns: frozenset[str] = frozenset()
    create_action: Action | None = None

    @property
    def ownership_columns(self) -> frozenset[str]:
        return frozenset(column for column in (self.agent_column, self.team_column) if column)

    @property
    def known_columns(self) -> frozenset[str]:
        fixed = {
            self.id_column,
            self.agent_column,
            self.created_column,
        }
        optional = {self.team_column, self.creator_column, self.status_column, self.updated_column}
        return frozenset(fixed | {column for column in optional if column} | set(self.search_columns) | self.mutable_columns)


ENTITY_COLUMNS: dict[EntityKind, EntityColumns] = {
    EntityKind.DEAL: EntityColumns(
        table="deals",
        agent_column="SalesAgentID",
        team_column="sales_team",
        creator_column="created_by_id",
        id_prefix="deal",
        search_columns=("customer_name", "phone_number", "email", "sales_agent"),
        mutable_columns=frozenset(
            {
                "customer_name",
                "email",
                "phone_number",
                "amount_paid",
                "sales_agent",
                "SalesAgentID",
                "sales_team",
                "closing_agent",
                "ClosingAgentID",
                "stage",
                "status",
                "priority",
                "signup_date",
                "notes",
            }
        ),
    ),
    EntityKind.CALLBACK: EntityColumns(
        table="callbacks",
        agent_column="SalesAgentID",
        team_column="sales_team",
        creator_column="created_by_id",
        id_prefix="callback",
        search_columns=("customer_name", "phone_number", "email", "callback_notes"),
        mutable_columns=frozenset(
            {
                "customer_name",
                "email",
                "phone_number",
                "sales_agent",
                "SalesAgentID",
                "sales_team",
                "scheduled_date",
                "callback_notes",
                "status",
                "priority",
            }
        ),
    ),
    EntityKind.TARGET: EntityColumns(
        table="targets",
        agent_column="agentId",
        team_column="sales_team",
        creator_column="managerId",
        id_prefix="target",
        status_column=None,
        search_columns=("agentName", "description", "period"),
        mutable_columns=frozenset(
            {"agentId", "agentName", "sales_team", "monthlyTarget", "dealsTarget", "period", "description", "type"}
        ),
        create_action=Action.ASSIGN_TARGET,
    ),
    EntityKind.NOTIFICATION: EntityColumns(
        table="notifications",
        agent_column="user_id",
        creator_column="created_by",
        id_prefix="notification",
        status_column=None,
        updated_column=None,
        search_columns=("title", "message"),
        mutable_columns=frozenset({"user_id", "title", "message", "type", "priority", "is_read"}),
        create_action=Action.CREATE_NOTIFICATION,
    ),
    EntityKind.FEEDBACK: EntityColumns(
        table="feedback",
        agent_column="user_id",
        id_prefix="feedback",
        search_columns=("subject", "message"),
        mutable_columns=frozenset({"user_id", "subject", "message", "feedback_type", "priority", "status", "response"}),
        create_action=Action.SUBMIT_FEEDBACK,
    ),
    EntityKind.DATA_CENTER_ENTRY: EntityColumns(
        table="data_center",
        agent_column="sent_to_id",
        team_column="sent_to_team",
        creator_column="sent_by_id",
        creator_owns=True,
        id_prefix="data",
        search_columns=("title", "description"),
        mutable_columns=frozenset(
            {"title", "description", "content", "data_type", "priority", "status", "sent_to_id", "sent_to_team"}
        ),
    ),
}

ACTION_MATRIX: dict[Role, frozenset[Action]] = {
    Role.MANAGER: frozenset(Action),
    Role.TEAM_LEADER: frozenset({Action.SUBMIT_FEEDBACK}),
    Role.SALESMAN: frozenset({Action.SUBMIT_FEEDBACK}),
}


@dataclass(frozen=True, slots=True)
class ScopingPredicate:
    where_fragment: str
    params: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        placeholders = self.where_fragment.count("?")
        if placeholders != len(self.params):
            raise ValueError(
                f"predicate has {placeholders} placeholders but {len(self.params)} params",
            )

    @property
    def is_unrestricted(self) -> bool:
        return not self.where_fragment


UNRESTRICTED = ScopingPredicate(where_fragment="")


def columns_for(entity: EntityKind | str) -> EntityColumns:
    return ENTITY_COLUMNS[EntityKind(entity)]


def quote_identifier(entity: EntityKind | str, column: str) -> str:
    columns = columns_for(entity)
    if column not in columns.known_columns:
        raise ValueError(f"column {column!r} is not declared for {columns.table}")
    return f'"{column}"'


def scope_for(actor: Actor, entity: EntityKind | str) -> ScopingPredicate:
    if actor.role is Role.MANAGER:
        return UNRESTRICTED

    kind = EntityKind(entity)
    columns = ENTITY_COLUMNS[kind]
    clauses = [f"{quote_identifier(kind, columns.agent_column)} = ?"]
    params: list[Any] = [actor.id]
    if columns.creator_owns and columns.creator_column:
        clauses.append(f"{quote_identifier(kind, columns.creator_column)} = ?")
        params.append(actor.id)

    team = actor.team_scope
    if team is not None and columns.team_column:
        clauses.append(f"{quote_identifier(kind, columns.team_column)} = ?")
        params.append(team)

    if len(clauses) == 1:
        return ScopingPredicate(where_fragment=clauses[0], params=tuple(params))
    return ScopingPredicate(where_fragment=f"({' OR '.join(clauses)})", params=tuple(params))


def owns_record(
    actor: Actor,
    entity: EntityKind | str,
    record: Mapping[str, Any],
    *,
    for_write: bool = False,
) -> bool:
    """Re-check ownership against the stored columns of one fetched record.

    For kinds whose creator counts as owner, only the creator may write; the
    recipient and the recipient's team leader can read but not change it.
    """
    if actor.role is Role.MANAGER:
        return True

    columns = columns_for(entity)
    if for_write and columns.creator_owns and columns.creator_column:
        return _same(record.get(columns.creator_column), actor.id)
    if _same(record.get(columns.agent_column), actor.id):
        return True
    if columns.creator_owns and columns.creator_column and _same(record.get(columns.creator_column), actor.id):
        return True

    team = actor.team_scope
    if team is not None and columns.team_column:
        return _same(record.get(columns.team_column), team)
    return False


def is_allowed(actor: Actor, action: Action | str) -> bool:
    return Action(action) in ACTION_MATRIX.get(actor.role, frozenset())


def require_action(actor: Actor, action: Action | str) -> None:
    if not is_allowed(actor, action):
        raise PermissionDeniedError(Action(action).value, actor.role.value)


def _same(stored: Any, expected: str) -> bool:
    # ids are stored as text in some tables and integers in others
    return stored is not None and str(stored) == expected
