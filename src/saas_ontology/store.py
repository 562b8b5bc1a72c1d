"""
Organization-scoped data access for the analytics engine.

Every query and write issued through ``AnalyticsStore`` is filtered by the
organization id the store was created with, so services never build
unscoped statements. Store failures are SQLAlchemy exceptions and propagate to
the caller unchanged.
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import ColumnElement, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from saas_ontology.models.base import Base

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


def chunked(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    """Yield consecutive slices of at most ``size`` rows."""
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


class AnalyticsStore:
    """Read/filter/upsert operations keyed by an organization identifier."""

    def __init__(self, db: AsyncSession, organization_id: UUID):
        """
        Initialize the store.

        Args:
            db: Async database session
            organization_id: Organization every operation is scoped to
        """
        self.db = db
        self.organization_id = organization_id

    async def select(
        self,
        model: Type[ModelT],
        *criteria: ColumnElement[bool],
        order_by: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        """
        Select rows of ``model`` belonging to the organization.

        Args:
            model: ORM model class
            *criteria: Additional filter expressions
            order_by: Optional ordering expression (or list of them)
            limit: Optional maximum row count

        Returns:
            List of matching model instances
        """
        query = (
            select(model)
            .where(model.organization_id == self.organization_id, *criteria)
            .execution_options(populate_existing=True)
        )
        if order_by is not None:
            query = query.order_by(*order_by) if isinstance(order_by, (list, tuple)) else query.order_by(order_by)
        if limit is not None:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def insert(self, model: Type[ModelT], rows: Sequence[Dict[str, Any]], batch_size: int = 500) -> List[ModelT]:
        """Insert new rows, flushing every ``batch_size`` rows."""
        created: List[ModelT] = []
        for batch in chunked(rows, batch_size):
            instances = [model(organization_id=self.organization_id, **row) for row in batch]
            self.db.add_all(instances)
            await self.db.flush()
            created.extend(instances)
        return created

    async def upsert(
        self,
        model: Type[ModelT],
        rows: Sequence[Dict[str, Any]],
        conflict_keys: Sequence[str],
        batch_size: int = 500,
    ) -> List[ModelT]:
        """
        Insert rows or update the existing row with the same conflict key.

        Existing rows of a batch are loaded with one query on the first
        conflict column and matched on the full key in Python.

        Args:
            model: ORM model class
            rows: Column values per row (without organization_id)
            conflict_keys: Columns forming the natural key within the organization
            batch_size: Rows per round trip

        Returns:
            The inserted or updated instances, in input order
        """
        written: List[ModelT] = []
        lead_key = conflict_keys[0]
        lead_column = getattr(model, lead_key)

        for batch in chunked(rows, batch_size):
            lead_values = {row[lead_key] for row in batch}
            existing_rows = await self.select(model, lead_column.in_(lead_values))
            existing = {tuple(getattr(row, key) for key in conflict_keys): row for row in existing_rows}

            for row in batch:
                key = tuple(row[k] for k in conflict_keys)
                instance = existing.get(key)
                if instance is None:
                    instance = model(organization_id=self.organization_id, **row)
                    self.db.add(instance)
                    existing[key] = instance
                else:
                    for field, value in row.items():
                        setattr(instance, field, value)
                written.append(instance)

            await self.db.flush()

        logger.debug("rows_upserted", table=model.__tablename__, count=len(written))
        return written

    async def update(self, model: Type[ModelT], values: Dict[str, Any], *criteria: ColumnElement[bool]) -> int:
        """Update matching rows and return the affected row count."""
        result = await self.db.execute(
            update(model)
            .where(model.organization_id == self.organization_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def delete(self, model: Type[ModelT], *criteria: ColumnElement[bool]) -> int:
        """Delete matching rows and return the affected row count."""
        result = await self.db.execute(
            delete(model)
            .where(model.organization_id == self.organization_id, *criteria)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
