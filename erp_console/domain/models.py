from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField

FieldValue = str | int | float | bool | None


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    email: str | None = None
    name: str | None = None
    role: str = "user"
    tenant_id: str | int | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    token: str = PydanticField(min_length=1)
    user: UserProfile


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_name: str = PydanticField(serialization_alias="tenantName")
    email: str
    password: str


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class ListQuery(BaseModel):
    page: int = PydanticField(default=1, ge=1)
    limit: int = PydanticField(default=10, ge=1, le=100)
    q: str = ""
    sort_by: str = "name"
    order: SortOrder = SortOrder.ASC

    def to_params(self) -> dict[str, str | int]:
        params: dict[str, str | int] = {
            "page": self.page,
            "limit": self.limit,
            "sortBy": self.sort_by,
            "order": self.order.value,
        }
        if self.q:
            params["q"] = self.q
        return params


class ListPage(BaseModel):
    data: list[dict[str, Any]] = PydanticField(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total // self.limit))

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages
