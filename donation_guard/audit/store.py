"""Storage contract for audit records and its SQLAlchemy implementation.

The audit trail only needs append, point lookup, filtered listing and grouped
counts. Keeping the contract this small lets the trail run on any backend
that can execute parameterized statements.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.sql import Select

from donation_guard.audit.models import AuditLogModel, Base
from donation_guard.schemas.audit import AuditQuery

logger = logging.getLogger(__name__)

AuditRow = dict[str, Any]

ROW_COLUMNS: tuple[str, ...] = (
    "id",
    "timestamp",
    "category",
    "action",
    "severity",
    "result",
    "user_id",
    "request_id",
    "ip_address",
    "resource",
    "reason",
    "details",
    "integrity_hash",
)

_INSERT_COLUMNS = tuple(column for column in ROW_COLUMNS if column != "id")


class AbstractAuditStore(ABC):
    """Interface for append-only audit storage."""

    async def initialize(self) -> None:
        """Prepare the backend (e.g. create tables). Optional."""

    async def close(self) -> None:
        """Release backend resources. Optional."""

    @abstractmethod
    async def insert(self, row: Mapping[str, Any]) -> int:
        """Append one record and return its assigned id."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, entry_id: int) -> AuditRow | None:
        raise NotImplementedError

    @abstractmethod
    async def select(self, filters: AuditQuery) -> list[AuditRow]:
        """Return matching rows, newest first, honoring limit/offset."""
        raise NotImplementedError

    @abstractmethod
    async def count_grouped(self, filters: AuditQuery) -> list[AuditRow]:
        """Return ``{category, action, severity, result, count}`` groups."""
        raise NotImplementedError


def _model_to_row(model: AuditLogModel) -> AuditRow:
    return {column: getattr(model, column) for column in ROW_COLUMNS}


def _apply_filters(stmt: Select[Any], filters: AuditQuery) -> Select[Any]:
    if filters.category:
        stmt = stmt.where(AuditLogModel.category == filters.category)
    if filters.action:
        stmt = stmt.where(AuditLogModel.action == filters.action)
    if filters.severity:
        stmt = stmt.where(AuditLogModel.severity == filters.severity)
    if filters.user_id:
        stmt = stmt.where(AuditLogModel.user_id == filters.user_id)
    if filters.request_id:
        stmt = stmt.where(AuditLogModel.request_id == filters.request_id)
    if filters.start is not None:
        stmt = stmt.where(AuditLogModel.timestamp >= filters.start_timestamp)
    if filters.end is not None:
        stmt = stmt.where(AuditLogModel.timestamp <= filters.end_timestamp)
    return stmt


class SqlAlchemyAuditStore(AbstractAuditStore):
    """Audit store backed by an async SQLAlchemy engine.

    Rows are only ever inserted; this class exposes no update or delete.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        create_schema: bool = True,
    ) -> None:
        self._engine = engine
        self._session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=engine, expire_on_commit=False
        )
        self._create_schema = create_schema

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False, create_schema: bool = True) -> SqlAlchemyAuditStore:
        engine = create_async_engine(database_url, echo=echo)
        return cls(engine, create_schema=create_schema)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def initialize(self) -> None:
        if not self._create_schema:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("audit_store.schema_ready", extra={"table": AuditLogModel.__tablename__})

    async def close(self) -> None:
        await self._engine.dispose()

    async def insert(self, row: Mapping[str, Any]) -> int:
        values = {column: row.get(column) for column in _INSERT_COLUMNS}
        model = AuditLogModel(**values)
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
        return int(model.id)

    async def get(self, entry_id: int) -> AuditRow | None:
        async with self._session_factory() as session:
            model = await session.get(AuditLogModel, entry_id)
            return _model_to_row(model) if model is not None else None

    async def select(self, filters: AuditQuery) -> list[AuditRow]:
        stmt = _apply_filters(select(AuditLogModel), filters)
        stmt = (
            stmt.order_by(AuditLogModel.timestamp.desc(), AuditLogModel.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_model_to_row(model) for model in result.scalars().all()]

    async def count_grouped(self, filters: AuditQuery) -> list[AuditRow]:
        group_columns = (
            AuditLogModel.category,
            AuditLogModel.action,
            AuditLogModel.severity,
            AuditLogModel.result,
        )
        stmt = _apply_filters(
            select(*group_columns, func.count(AuditLogModel.id).label("count")), filters
        ).group_by(*group_columns)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [dict(row._mapping) for row in result.all()]
