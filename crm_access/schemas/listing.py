from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ListFilters(BaseModel):
    status: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    agent_id: str | None = None
    team: str | None = None
    search: str | None = None

    @field_validator("status", "agent_id", "team", "search")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class Pagination(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=25, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class Page(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 25

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1
