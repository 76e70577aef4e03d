"""Pipeline stages for invoice bundle processing.

Stages:
1. stage_boundary - Invoice boundary detection over the page corpus
2. stage_reconcile - Tiling reconciliation of candidate spans
3. stage_split - Writing one PDF per validated span (PyMuPDF)
4. stage_extract - Tiered field extraction (deterministic, targeted lookup,
   inference fallback)
5. stage_normalize - Locale-aware normalization, guardrails and validation
6. stage_confidence - Per-record confidence scoring

The batch controller runs the stages under the batch state machine.
"""

from .controller import BatchController
from .locale import (
    normalize_country,
    normalize_currency_code,
    parse_ambiguous_number,
    to_iso_date,
)
from .stage_boundary import BoundaryDetectionResult, BoundaryDetector
from .stage_confidence import aggregate_confidence, score_record, tier_breakdown
from .stage_extract import (
    ChunkedItemsTier,
    DeterministicTier,
    ExtractionOutcome,
    FieldExtractor,
    InferenceFallbackTier,
    TargetedLookupTier,
)
from .stage_normalize import RecordNormalizer, apply_unit_price_guardrail
from .stage_reconcile import reconcile_spans, validate_tiling
from .stage_split import PDFSplitter, SplitResult, get_pdf_info

__all__ = [
    # Controller
    "BatchController",
    # Boundary Detection
    "BoundaryDetector",
    "BoundaryDetectionResult",
    "reconcile_spans",
    "validate_tiling",
    # Splitting
    "PDFSplitter",
    "SplitResult",
    "get_pdf_info",
    # Field Extraction
    "FieldExtractor",
    "ExtractionOutcome",
    "DeterministicTier",
    "TargetedLookupTier",
    "InferenceFallbackTier",
    "ChunkedItemsTier",
    # Normalization
    "RecordNormalizer",
    "apply_unit_price_guardrail",
    "parse_ambiguous_number",
    "to_iso_date",
    "normalize_currency_code",
    "normalize_country",
    # Confidence
    "aggregate_confidence",
    "score_record",
    "tier_breakdown",
]
