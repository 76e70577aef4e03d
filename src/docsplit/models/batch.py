"""Batch lifecycle models and the state transition table."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from docsplit.errors import InvalidTransition

from .base import BaseIRModel
from .span import ValidatedSpan


class BatchStatus(str, Enum):
    """Lifecycle states of an uploaded bundle."""

    UPLOADED = "UPLOADED"
    PROCESSING_SPLIT = "PROCESSING_SPLIT"
    SPLIT_PROPOSED = "SPLIT_PROPOSED"
    SPLIT_VALIDATED = "SPLIT_VALIDATED"
    EXTRACTING_DATA = "EXTRACTING_DATA"
    DATA_VALIDATION_PENDING = "DATA_VALIDATION_PENDING"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    ERROR = "ERROR"


# Allowed moves; terminal states map to an empty set
TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.UPLOADED: frozenset({BatchStatus.PROCESSING_SPLIT, BatchStatus.ERROR}),
    BatchStatus.PROCESSING_SPLIT: frozenset(
        {BatchStatus.SPLIT_PROPOSED, BatchStatus.PROCESSING_FAILED, BatchStatus.ERROR}
    ),
    BatchStatus.SPLIT_PROPOSED: frozenset(
        {BatchStatus.PROCESSING_SPLIT, BatchStatus.SPLIT_VALIDATED, BatchStatus.ERROR}
    ),
    BatchStatus.PROCESSING_FAILED: frozenset({BatchStatus.PROCESSING_SPLIT, BatchStatus.ERROR}),
    BatchStatus.SPLIT_VALIDATED: frozenset({BatchStatus.EXTRACTING_DATA, BatchStatus.ERROR}),
    BatchStatus.EXTRACTING_DATA: frozenset(
        {BatchStatus.DATA_VALIDATION_PENDING, BatchStatus.ERROR}
    ),
    BatchStatus.DATA_VALIDATION_PENDING: frozenset(),
    BatchStatus.ERROR: frozenset(),
}

# Operation guards: states each controller operation may start from
OPERATION_SOURCES: dict[str, frozenset[BatchStatus]] = {
    "process": frozenset(
        {BatchStatus.UPLOADED, BatchStatus.SPLIT_PROPOSED, BatchStatus.PROCESSING_FAILED}
    ),
    "validate splits for": frozenset({BatchStatus.SPLIT_PROPOSED}),
    "extract data from": frozenset({BatchStatus.SPLIT_VALIDATED}),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def check_transition(current: BatchStatus, target: BatchStatus) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"move to {target.value}", current.value)


def check_operation(operation: str, current: BatchStatus) -> None:
    """Raise InvalidTransition unless the operation may start from current."""
    if current not in OPERATION_SOURCES[operation]:
        raise InvalidTransition(operation, current.value)


class SplitDocument(BaseModel):
    """One materialized sub-document."""

    span: ValidatedSpan
    file_path: Optional[str] = None
    page_count: int = Field(default=0, ge=0)
    file_size: int = Field(default=0, ge=0)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.file_path is not None


class DocumentBatch(BaseIRModel):
    """Persisted state of one uploaded bundle."""

    original_filename: str
    file_path: str
    status: BatchStatus = BatchStatus.UPLOADED
    total_pages: Optional[int] = None

    # JSON columns, replaced wholesale on update
    proposed_splits: Optional[list[dict[str, Any]]] = None
    validated_splits: Optional[list[dict[str, Any]]] = None
    extracted_data: Optional[list[dict[str, Any]]] = None
    confidence_scores: Optional[dict[str, Any]] = None

    error_message: Optional[str] = None

    def proposed_spans(self) -> list[ValidatedSpan]:
        return [ValidatedSpan.model_validate(s) for s in self.proposed_splits or []]

    def split_documents(self) -> list[SplitDocument]:
        return [SplitDocument.model_validate(s) for s in self.validated_splits or []]

    @property
    def invoice_count(self) -> int:
        if self.validated_splits:
            return len(self.validated_splits)
        return len(self.proposed_splits or [])
