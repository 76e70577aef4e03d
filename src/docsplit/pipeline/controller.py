"""Batch controller - drives a bundle through the pipeline lifecycle.

UPLOADED → PROCESSING_SPLIT → SPLIT_PROPOSED → SPLIT_VALIDATED →
EXTRACTING_DATA → DATA_VALIDATION_PENDING, with ERROR reachable from any
non-terminal state. Processing may also be re-entered from PROCESSING_FAILED.
Moves are checked against the transition table in `docsplit.models.batch`.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from docsplit.clients.layout import LayoutClient
from docsplit.errors import DocsplitError, ExternalServiceFailure
from docsplit.models import (
    BatchStatus,
    CandidateSpan,
    DocumentBatch,
    InvoiceRecord,
    SplitDocument,
    check_operation,
    check_transition,
)
from docsplit.storage.repositories import BatchId, BatchStore

from .stage_boundary import BoundaryDetector
from .stage_confidence import score_record
from .stage_extract import FieldExtractor
from .stage_normalize import RecordNormalizer
from .stage_reconcile import reconcile_spans, validate_tiling
from .stage_split import PDFSplitter, get_pdf_info

logger = logging.getLogger(__name__)


class BatchController:
    """Runs the lifecycle operations of document batches."""

    def __init__(
        self,
        store: BatchStore,
        layout_client: LayoutClient,
        detector: BoundaryDetector,
        splitter: PDFSplitter,
        extractor: FieldExtractor,
        normalizer: RecordNormalizer,
    ):
        self.store = store
        self.layout_client = layout_client
        self.detector = detector
        self.splitter = splitter
        self.extractor = extractor
        self.normalizer = normalizer

    async def _move(
        self, batch: DocumentBatch, target: BatchStatus, **columns: Any
    ) -> DocumentBatch:
        check_transition(batch.status, target)
        logger.debug("Batch %s: %s -> %s", batch.id, batch.status.value, target.value)
        return await self.store.update(batch.id, status=target, **columns)

    async def _fail(self, batch: DocumentBatch, error: Exception) -> DocumentBatch:
        logger.error("Batch %s failed in %s: %s", batch.id, batch.status.value, error)
        return await self._move(batch, BatchStatus.ERROR, error_message=str(error))

    async def submit(
        self, file_path: Path, original_filename: Optional[str] = None
    ) -> DocumentBatch:
        """Register an uploaded bundle.

        Raises:
            DocsplitError: If the file is not a readable PDF
        """
        file_path = Path(file_path)
        try:
            info = get_pdf_info(file_path)
        except (OSError, RuntimeError) as e:
            raise DocsplitError(f"Cannot read PDF {file_path}: {e}") from e

        batch = DocumentBatch(
            original_filename=original_filename or file_path.name,
            file_path=str(file_path),
            total_pages=info.page_count,
        )
        batch = await self.store.create(batch)
        logger.info("Created batch %s for %s (%d pages)", batch.id, batch.original_filename, info.page_count)
        return batch

    async def start_processing(self, batch_id: BatchId) -> DocumentBatch:
        """Extract page text and propose invoice boundaries.

        Raises:
            InvalidTransition: If the batch cannot be processed in its state
        """
        batch = await self.store.get(batch_id)
        check_operation("process", batch.status)
        batch = await self._move(batch, BatchStatus.PROCESSING_SPLIT, error_message=None)

        try:
            document = Path(batch.file_path).read_bytes()
            pages = await self.layout_client.extract_pages(document)
            if not pages.success:
                error = ExternalServiceFailure("layout", pages.error or "page extraction failed")
                return await self._fail(batch, error)

            detection = await self.detector.detect(pages.pages)
            scores = dict(batch.confidence_scores or {})
            scores["boundary"] = detection.confidence
            scores["boundary_fallback"] = detection.used_fallback
            return await self._move(
                batch,
                BatchStatus.SPLIT_PROPOSED,
                total_pages=detection.total_pages,
                proposed_splits=[s.model_dump(mode="json") for s in detection.spans],
                confidence_scores=scores,
            )
        except Exception as e:
            logger.exception("Batch %s: boundary detection failed", batch.id)
            return await self._fail(batch, e)

    async def validate_splits(
        self, batch_id: BatchId, spans: Optional[Sequence[CandidateSpan]] = None
    ) -> DocumentBatch:
        """Accept the proposed (or caller-supplied) spans and write split files.

        Raises:
            InvalidTransition: If the batch has no split proposal to validate
        """
        batch = await self.store.get(batch_id)
        check_operation("validate splits for", batch.status)

        try:
            total_pages = batch.total_pages or 0
            chosen = (
                reconcile_spans(spans, total_pages) if spans is not None else batch.proposed_spans()
            )
            validate_tiling(chosen, total_pages)

            result = await asyncio.to_thread(
                self.splitter.split, Path(batch.file_path), chosen, str(batch.id)
            )
            if not result.success:
                return await self._fail(batch, DocsplitError(f"PDF split failed: {result.error}"))

            return await self._move(
                batch,
                BatchStatus.SPLIT_VALIDATED,
                validated_splits=[s.model_dump(mode="json") for s in result.splits],
            )
        except Exception as e:
            logger.exception("Batch %s: split validation failed", batch.id)
            return await self._fail(batch, e)

    async def extract(self, batch_id: BatchId) -> DocumentBatch:
        """Extract one invoice record per validated split.

        Raises:
            InvalidTransition: If the splits have not been validated
        """
        batch = await self.store.get(batch_id)
        check_operation("extract data from", batch.status)
        batch = await self._move(batch, BatchStatus.EXTRACTING_DATA)

        try:
            records = []
            for split in batch.split_documents():
                records.append(await self.extract_one(split, batch_id=str(batch.id)))

            scores = dict(batch.confidence_scores or {})
            scores["invoices"] = {r.span_id: r.confidence for r in records}
            scores["average"] = (
                sum(r.confidence for r in records) / len(records) if records else 0.0
            )
            failed = sum(1 for r in records if r.error)
            logger.info(
                "Batch %s: extracted %d invoices (%d failed)", batch.id, len(records), failed
            )
            return await self._move(
                batch,
                BatchStatus.DATA_VALIDATION_PENDING,
                extracted_data=[r.model_dump(mode="json") for r in records],
                confidence_scores=scores,
            )
        except Exception as e:
            logger.exception("Batch %s: extraction failed", batch.id)
            return await self._fail(batch, e)

    async def extract_one(self, split: SplitDocument, batch_id: str = "") -> InvoiceRecord:
        """Run layout, extraction, normalization and scoring for one split.

        Any failure is recorded on the returned record with confidence 0.
        """
        span = split.span
        if not split.success:
            return self._failed_record(split, split.error or "Split file was not created")

        try:
            document = Path(split.file_path).read_bytes()
            analysis = await self.layout_client.analyze(document)
            if not analysis.success or analysis.layout is None:
                raise ExternalServiceFailure("layout", analysis.error or "analysis failed")

            outcome = await self.extractor.extract(document, analysis.layout)
            record = self.normalizer.normalize(outcome, span)
            record.confidence = score_record(record)
            return record
        except Exception as e:
            logger.warning("Batch %s, %s: extraction failed: %s", batch_id, span.id, e)
            return self._failed_record(split, str(e))

    @staticmethod
    def _failed_record(split: SplitDocument, error: str) -> InvoiceRecord:
        return InvoiceRecord(
            span_id=split.span.id,
            label=split.span.label,
            page_range=split.span.page_range,
            confidence=0.0,
            error=error,
        )

    async def run(self, batch_id: BatchId) -> DocumentBatch:
        """Process, accept the proposal as-is and extract."""
        batch = await self.start_processing(batch_id)
        if batch.status != BatchStatus.SPLIT_PROPOSED:
            return batch
        batch = await self.validate_splits(batch_id)
        if batch.status != BatchStatus.SPLIT_VALIDATED:
            return batch
        return await self.extract(batch_id)

    async def process_file(
        self, file_path: Path, original_filename: Optional[str] = None
    ) -> DocumentBatch:
        """Submit a bundle and run it through the whole pipeline."""
        batch = await self.submit(file_path, original_filename)
        return await self.run(batch.id)

    async def get_status(self, batch_id: BatchId) -> dict[str, Any]:
        """Summary of a batch for display."""
        batch = await self.store.get(batch_id)
        scores = batch.confidence_scores or {}
        return {
            "id": str(batch.id),
            "original_filename": batch.original_filename,
            "status": batch.status.value,
            "total_pages": batch.total_pages,
            "invoice_count": batch.invoice_count,
            "boundary_confidence": scores.get("boundary"),
            "average_confidence": scores.get("average"),
            "error_message": batch.error_message,
            "updated_at": batch.updated_at.isoformat(),
        }
