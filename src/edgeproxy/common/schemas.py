"""Shared data models persisted by the edge proxy."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


REDIRECT_STATUS_CODES = frozenset({301, 302, 303, 307, 308})


class RedirectRecord(BaseModel):
    """Known redirect for a cache key, stored as ``{"target": ..., "type": ...}``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    target: str = Field(min_length=1)
    status_code: int = Field(alias="type")

    @field_validator("status_code")
    @classmethod
    def _require_redirect_status(cls, value: int) -> int:
        if value not in REDIRECT_STATUS_CODES:
            raise ValueError(f"{value} is not a redirect status")
        return value

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
