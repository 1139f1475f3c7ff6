from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    MANAGER = "manager"
    TEAM_LEADER = "team_leader"
    SALESMAN = "salesman"


@dataclass(frozen=True, slots=True)
class Actor:
    id: str
    role: Role
    managed_team: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("actor id must be a non-empty string")
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", parse_role(self.role))
        team = self.managed_team.strip() if isinstance(self.managed_team, str) else None
        object.__setattr__(self, "managed_team", team or None)

    @classmethod
    def from_identifiers(cls, user_id: str, role: str, managed_team: str | None = None) -> Actor:
        normalized_id = user_id.strip() if isinstance(user_id, str) else user_id
        return cls(id=normalized_id, role=parse_role(role), managed_team=managed_team)

    @property
    def team_scope(self) -> str | None:
        """Team this actor sees beyond its own records, if any."""
        if self.role is Role.TEAM_LEADER:
            return self.managed_team
        return None


def parse_role(value: str | Role) -> Role:
    if isinstance(value, Role):
        return value
    normalized = value.strip().lower() if isinstance(value, str) else ""
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"unknown role: {value!r}") from exc
