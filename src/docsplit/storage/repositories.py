"""Repository layer and batch stores.

`BatchStore` is what the controller talks to. `SqlBatchStore` persists
through `BatchRepository` and the async session factory; `InMemoryBatchStore`
keeps batches in a dict for single-process CLI runs and tests.
"""

import copy
from typing import Any, Optional, Protocol, Sequence, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsplit.errors import BatchNotFound
from docsplit.models import DocumentBatch, utcnow

from .database import get_session
from .orm_models import DocumentBatchORM

BatchId = Union[UUID, str]

# Columns the pipeline may replace after creation
UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "total_pages",
        "proposed_splits",
        "validated_splits",
        "extracted_data",
        "confidence_scores",
        "error_message",
    }
)


def as_uuid(batch_id: BatchId) -> UUID:
    """Parse a batch id.

    Raises:
        BatchNotFound: If the id is not a UUID
    """
    if isinstance(batch_id, UUID):
        return batch_id
    try:
        return UUID(str(batch_id))
    except ValueError as e:
        raise BatchNotFound(f"Batch not found: {batch_id}") from e


def _check_columns(columns: dict[str, Any]) -> None:
    unknown = set(columns) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update columns: {', '.join(sorted(unknown))}")


class BatchStore(Protocol):
    """Persistence for document batches."""

    async def create(self, batch: DocumentBatch) -> DocumentBatch: ...

    async def get(self, batch_id: BatchId) -> DocumentBatch: ...

    async def update(self, batch_id: BatchId, **columns: Any) -> DocumentBatch: ...

    async def list_batches(self, limit: int = 100) -> list[DocumentBatch]: ...


class BatchRepository:
    """Repository for DocumentBatch operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, batch: DocumentBatch) -> DocumentBatchORM:
        """Create a new batch record."""
        orm_batch = DocumentBatchORM(
            id=batch.id,
            original_filename=batch.original_filename,
            file_path=batch.file_path,
            total_pages=batch.total_pages,
            status=batch.status,
            error_message=batch.error_message,
            proposed_splits=batch.proposed_splits,
            validated_splits=batch.validated_splits,
            extracted_data=batch.extracted_data,
            confidence_scores=batch.confidence_scores,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
        )
        self.session.add(orm_batch)
        await self.session.flush()
        return orm_batch

    async def get_by_id(self, batch_id: UUID) -> Optional[DocumentBatchORM]:
        """Get batch by ID."""
        result = await self.session.execute(
            select(DocumentBatchORM).where(DocumentBatchORM.id == batch_id)
        )
        return result.scalar_one_or_none()

    async def update_columns(self, batch_id: UUID, **columns: Any) -> Optional[DocumentBatchORM]:
        """Replace whole columns of one batch."""
        orm_batch = await self.get_by_id(batch_id)
        if orm_batch is None:
            return None
        for name, value in columns.items():
            setattr(orm_batch, name, copy.deepcopy(value))
        orm_batch.updated_at = utcnow()
        await self.session.flush()
        return orm_batch

    async def list_recent(self, limit: int = 100) -> Sequence[DocumentBatchORM]:
        """Most recently created batches first."""
        result = await self.session.execute(
            select(DocumentBatchORM).order_by(DocumentBatchORM.created_at.desc()).limit(limit)
        )
        return result.scalars().all()


class SqlBatchStore:
    """BatchStore backed by the database, one session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, batch: DocumentBatch) -> DocumentBatch:
        async with get_session(self.session_factory) as session:
            orm_batch = await BatchRepository(session).create(batch)
            return DocumentBatch.model_validate(orm_batch)

    async def get(self, batch_id: BatchId) -> DocumentBatch:
        async with get_session(self.session_factory) as session:
            orm_batch = await BatchRepository(session).get_by_id(as_uuid(batch_id))
            if orm_batch is None:
                raise BatchNotFound(f"Batch not found: {batch_id}")
            return DocumentBatch.model_validate(orm_batch)

    async def update(self, batch_id: BatchId, **columns: Any) -> DocumentBatch:
        _check_columns(columns)
        async with get_session(self.session_factory) as session:
            orm_batch = await BatchRepository(session).update_columns(as_uuid(batch_id), **columns)
            if orm_batch is None:
                raise BatchNotFound(f"Batch not found: {batch_id}")
            return DocumentBatch.model_validate(orm_batch)

    async def list_batches(self, limit: int = 100) -> list[DocumentBatch]:
        async with get_session(self.session_factory) as session:
            rows = await BatchRepository(session).list_recent(limit)
            return [DocumentBatch.model_validate(row) for row in rows]


class InMemoryBatchStore:
    """BatchStore kept in process memory."""

    def __init__(self):
        self._batches: dict[UUID, DocumentBatch] = {}

    async def create(self, batch: DocumentBatch) -> DocumentBatch:
        self._batches[batch.id] = batch.model_copy(deep=True)
        return batch.model_copy(deep=True)

    async def get(self, batch_id: BatchId) -> DocumentBatch:
        batch = self._batches.get(as_uuid(batch_id))
        if batch is None:
            raise BatchNotFound(f"Batch not found: {batch_id}")
        return batch.model_copy(deep=True)

    async def update(self, batch_id: BatchId, **columns: Any) -> DocumentBatch:
        _check_columns(columns)
        key = as_uuid(batch_id)
        batch = self._batches.get(key)
        if batch is None:
            raise BatchNotFound(f"Batch not found: {batch_id}")
        changes = {name: copy.deepcopy(value) for name, value in columns.items()}
        changes["updated_at"] = utcnow()
        self._batches[key] = batch.model_copy(update=changes)
        return self._batches[key].model_copy(deep=True)

    async def list_batches(self, limit: int = 100) -> list[DocumentBatch]:
        ordered = sorted(self._batches.values(), key=lambda b: b.created_at, reverse=True)
        return [b.model_copy(deep=True) for b in ordered[:limit]]
