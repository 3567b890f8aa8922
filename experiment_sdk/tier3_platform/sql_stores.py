"""
experiment_sdk.tier3_platform.sql_stores
─────────────────────────────────────────
SQLAlchemy implementations of DefinitionStore and EventStore.

Definitions are stored as a JSON document plus the few columns we filter
on. Events go to two append-only tables; aggregation happens in SQL with
COUNT(DISTINCT subject_id) for unique subjects.

Transient OperationalErrors are retried here (this is the collaborator
boundary); whatever still fails is raised as CollaboratorUnavailable.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    func,
    literal,
    or_,
    select,
)
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from experiment_sdk.tier0_core.data import Base, session_scope
from experiment_sdk.tier0_core.errors import CollaboratorUnavailable, ConflictError
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier1_runtime.retry import retry_policy
from experiment_sdk.tier3_platform.experiments import ExperimentDefinition
from experiment_sdk.tier3_platform.stores import (
    ConversionEvent,
    Event,
    EventKind,
    VariantAggregate,
)

logger = get_logger(__name__)


# ── Tables ────────────────────────────────────────────────────────────────────

class ExperimentRow(Base):
    __tablename__ = "experiments"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256))
    is_active: Mapped[bool] = mapped_column(Boolean, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    document: Mapped[dict[str, Any]] = mapped_column(JSON)


class _EventColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    experiment_key: Mapped[str] = mapped_column(String(128), index=True)
    variant_key: Mapped[str] = mapped_column(String(128))
    subject_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class ExposureRow(_EventColumns, Base):
    __tablename__ = "experiment_exposures"


class ConversionRow(_EventColumns, Base):
    __tablename__ = "experiment_conversions"

    conversion_type: Mapped[str] = mapped_column(String(128))
    value: Mapped[float | None] = mapped_column(Float, nullable=True)


# ── Shared plumbing ───────────────────────────────────────────────────────────

class _SqlStore:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = 3,
    ) -> None:
        self._sessions = sessions
        self._retry = retry_policy(max_attempts=retry_attempts, on=[OperationalError])

    async def _run(self, op: Callable[[AsyncSession], Any], action: str) -> Any:
        async def attempt() -> Any:
            async with session_scope(self._sessions) as session:
                return await op(session)

        try:
            return await self._retry(attempt)()
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("store_unavailable", store=type(self).__name__, action=action, error=str(exc))
            raise CollaboratorUnavailable(
                user_message="Experiment storage is unavailable.",
                detail=f"{type(self).__name__}.{action} failed: {exc}",
            ) from exc


# ── Definition store ──────────────────────────────────────────────────────────

def _to_definition(row: ExperimentRow) -> ExperimentDefinition:
    return ExperimentDefinition.model_validate(row.document)


class SqlDefinitionStore(_SqlStore):
    async def get(self, key: str) -> ExperimentDefinition | None:
        async def op(session: AsyncSession) -> ExperimentDefinition | None:
            row = await session.get(ExperimentRow, key)
            return _to_definition(row) if row is not None else None

        return await self._run(op, "get")

    async def insert(self, definition: ExperimentDefinition) -> None:
        async def op(session: AsyncSession) -> None:
            session.add(ExperimentRow(
                key=definition.key,
                name=definition.name,
                is_active=definition.is_active,
                created_at=definition.created_at,
                deleted_at=definition.deleted_at,
                document=definition.model_dump(mode="json", by_alias=True),
            ))

        try:
            await self._run(op, "insert")
        except IntegrityError as exc:
            raise ConflictError(
                user_message=f"Experiment key {definition.key!r} already exists.",
                fields={"key": "already exists"},
            ) from exc

    async def replace(self, definition: ExperimentDefinition) -> None:
        async def op(session: AsyncSession) -> None:
            row = await session.get(ExperimentRow, definition.key)
            if row is None:
                row = ExperimentRow(key=definition.key, created_at=definition.created_at)
                session.add(row)
            row.name = definition.name
            row.is_active = definition.is_active
            row.deleted_at = definition.deleted_at
            row.document = definition.model_dump(mode="json", by_alias=True)

        await self._run(op, "replace")

    async def list(
        self,
        *,
        is_active: bool | None = None,
        search: str | None = None,
        limit: int = 50,
        skip: int = 0,
        include_deleted: bool = False,
    ) -> tuple[list[ExperimentDefinition], int]:
        conditions = []
        if not include_deleted:
            conditions.append(ExperimentRow.deleted_at.is_(None))
        if is_active is not None:
            conditions.append(ExperimentRow.is_active.is_(is_active))
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(
                func.lower(ExperimentRow.key).like(pattern),
                func.lower(ExperimentRow.name).like(pattern),
            ))

        async def op(session: AsyncSession) -> tuple[list[ExperimentDefinition], int]:
            page = await session.scalars(
                select(ExperimentRow)
                .where(*conditions)
                .order_by(ExperimentRow.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
            total = await session.scalar(
                select(func.count()).select_from(ExperimentRow).where(*conditions)
            )
            return [_to_definition(row) for row in page], int(total or 0)

        return await self._run(op, "list")


# ── Event store ───────────────────────────────────────────────────────────────

class SqlEventStore(_SqlStore):
    async def append(self, event: Event) -> None:
        if isinstance(event, ConversionEvent):
            row: Any = ConversionRow(
                conversion_type=event.conversion_type,
                value=event.value,
            )
        else:
            row = ExposureRow()
        row.experiment_key = event.experiment_key
        row.variant_key = event.variant_key
        row.subject_id = event.subject_id
        row.metadata_ = dict(event.metadata)
        row.timestamp = event.timestamp

        async def op(session: AsyncSession) -> None:
            session.add(row)

        await self._run(op, "append")

    async def aggregate(
        self,
        experiment_key: str,
        kind: EventKind,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, VariantAggregate]:
        table: Any = ExposureRow if kind == "exposure" else ConversionRow
        total_value = (
            func.coalesce(func.sum(table.value), 0.0)
            if kind == "conversion"
            else literal(0.0)
        )
        query = (
            select(
                table.variant_key,
                func.count(),
                func.count(func.distinct(table.subject_id)),
                total_value,
            )
            .where(table.experiment_key == experiment_key)
            .group_by(table.variant_key)
        )
        if start is not None:
            query = query.where(table.timestamp >= start)
        if end is not None:
            query = query.where(table.timestamp <= end)

        async def op(session: AsyncSession) -> dict[str, VariantAggregate]:
            result = await session.execute(query)
            return {
                variant: VariantAggregate(
                    count=int(count),
                    unique_subjects=int(unique),
                    total_value=float(value or 0.0),
                )
                for variant, count, unique, value in result.all()
            }

        return await self._run(op, "aggregate")


__all__ = [
    "ExperimentRow",
    "ExposureRow",
    "ConversionRow",
    "SqlDefinitionStore",
    "SqlEventStore",
]
