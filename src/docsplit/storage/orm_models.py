"""SQLAlchemy ORM models for the invoice bundle pipeline.

A batch is one row; spans, extracted records and confidence scores live in
JSON columns that are always replaced as a whole.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text, Uuid, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from docsplit.models import BatchStatus

from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONColumn = JSON().with_variant(JSONB(), "postgresql")


class DocumentBatchORM(Base):
    """Document batch table - one uploaded bundle."""

    __tablename__ = "document_batches"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Source file info
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Lifecycle
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, name="batch_status"),
        default=BatchStatus.UPLOADED,
        index=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pipeline results
    proposed_splits: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONColumn, nullable=True)
    validated_splits: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONColumn, nullable=True)
    extracted_data: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONColumn, nullable=True)
    confidence_scores: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONColumn, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
