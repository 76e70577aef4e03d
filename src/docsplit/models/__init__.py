"""IR models for the invoice bundle pipeline.

These pydantic models carry data between stages: the page corpus used for
boundary detection, candidate and validated spans, layout analysis results,
extracted invoice records and the persisted batch.

Model Hierarchy:
- DocumentBatch → ValidatedSpans → SplitDocuments
- SplitDocument → LayoutResult → InvoiceRecord → ExtractedFields / LineItems
"""

from .base import (
    TIER_ORDER,
    BaseIRModel,
    ConfidenceLevel,
    ExtractionTier,
    FieldKind,
    utcnow,
)
from .batch import (
    OPERATION_SOURCES,
    TERMINAL_STATES,
    TRANSITIONS,
    BatchStatus,
    DocumentBatch,
    SplitDocument,
    check_operation,
    check_transition,
)
from .page import (
    KeyValuePair,
    LayoutCell,
    LayoutPage,
    LayoutResult,
    LayoutTable,
    LayoutWord,
    PageRecord,
)
from .record import (
    ExtractedField,
    InvoiceRecord,
    LineItem,
    LineItemType,
    ValidationReport,
    is_empty_value,
)
from .span import CandidateSpan, ValidatedSpan

__all__ = [
    # Base types
    "BaseIRModel",
    "ConfidenceLevel",
    "ExtractionTier",
    "FieldKind",
    "TIER_ORDER",
    "utcnow",
    # Pages / layout
    "PageRecord",
    "LayoutResult",
    "LayoutPage",
    "LayoutWord",
    "LayoutTable",
    "LayoutCell",
    "KeyValuePair",
    # Spans
    "CandidateSpan",
    "ValidatedSpan",
    # Records
    "ExtractedField",
    "InvoiceRecord",
    "LineItem",
    "LineItemType",
    "ValidationReport",
    "is_empty_value",
    # Batch
    "BatchStatus",
    "DocumentBatch",
    "SplitDocument",
    "TRANSITIONS",
    "OPERATION_SOURCES",
    "TERMINAL_STATES",
    "check_operation",
    "check_transition",
]
