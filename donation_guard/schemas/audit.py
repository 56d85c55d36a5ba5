"""Pydantic schemas for audit trail queries and reports."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, model_validator


def format_timestamp(value: datetime) -> str:
    """Render a datetime the way audit timestamps are stored.

    Naive datetimes are taken as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class AuditQuery(BaseModel):
    """Filters shared by audit queries and statistics.

    ``start`` and ``end`` are inclusive. Pagination only applies to queries.
    """

    model_config = ConfigDict(extra="forbid")

    category: str | None = None
    action: str | None = None
    severity: str | None = None
    user_id: str | None = None
    request_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_range(self) -> AuditQuery:
        if self.start and self.end and format_timestamp(self.start) > format_timestamp(self.end):
            raise ValueError("start must not be after end")
        return self

    @property
    def start_timestamp(self) -> str | None:
        return format_timestamp(self.start) if self.start else None

    @property
    def end_timestamp(self) -> str | None:
        return format_timestamp(self.end) if self.end else None


class IntegrityReport(BaseModel):
    """Outcome of re-verifying a page of the audit trail."""

    checked: int = Field(..., description="Number of entries re-hashed")
    tampered_ids: list[int] = Field(default_factory=list, description="Entries whose hash diverges")

    @property
    def ok(self) -> bool:
        return not self.tampered_ids
