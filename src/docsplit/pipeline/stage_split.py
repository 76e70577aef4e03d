"""PDF Splitting Stage - Materialize validated spans as separate PDF files.

Uses PyMuPDF (fitz) to copy each span's inclusive page range into a new
document. Each span is written independently: one failing span is recorded
on its SplitDocument and does not stop the others.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Optional, Sequence

import fitz  # PyMuPDF

from docsplit.models import SplitDocument, ValidatedSpan

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class SplitResult:
    """Outcome of splitting one bundle."""

    success: bool
    splits: list[SplitDocument] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> list[SplitDocument]:
        return [s for s in self.splits if not s.success]


@dataclass
class PDFInfo:
    """Basic facts about a PDF file."""

    file_path: Path
    page_count: int
    file_size: int


def split_filename(span: ValidatedSpan, on: Optional[date] = None) -> str:
    """File name for a span: `{label}_pages_{s}-{e}_{YYYY-MM-DD}.pdf`."""
    label = span.label.strip() or f"Invoice_{span.id}"
    clean = _UNSAFE_FILENAME_RE.sub("_", label)[:50]
    stamp = (on or date.today()).isoformat()
    return f"{clean}_pages_{span.page_range}_{stamp}.pdf"


def get_pdf_info(file_path: Path) -> PDFInfo:
    """Page count and size of a PDF.

    Raises:
        RuntimeError: If PyMuPDF cannot open the file
    """
    file_path = Path(file_path)
    with fitz.open(file_path) as pdf_doc:
        page_count = len(pdf_doc)
    return PDFInfo(file_path=file_path, page_count=page_count, file_size=file_path.stat().st_size)


class PDFSplitter:
    """Split a bundle PDF into one file per span."""

    def __init__(self, output_dir: Path):
        """Initialize splitter.

        Args:
            output_dir: Base directory; each batch gets its own subdirectory
        """
        self.output_dir = Path(output_dir)

    def batch_dir(self, batch_id: str) -> Path:
        return self.output_dir / str(batch_id)

    def split(
        self,
        source: Path,
        spans: Sequence[ValidatedSpan],
        batch_id: str,
    ) -> SplitResult:
        """Write one PDF per span.

        Args:
            source: Path to the bundle PDF
            spans: Validated spans tiling the bundle
            batch_id: Batch the files belong to

        Returns:
            SplitResult; success is False only if the bundle cannot be
            opened or the output directory cannot be created
        """
        if not spans:
            return SplitResult(success=False, error="No splits provided")

        out_dir = self.batch_dir(batch_id)
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            src = fitz.open(source)
        except (OSError, RuntimeError) as e:
            logger.error("Cannot split %s: %s", source, e)
            return SplitResult(success=False, error=str(e))

        splits = []
        with src:
            total_pages = len(src)
            logger.info("Splitting %s (%d pages) into %d files", source, total_pages, len(spans))
            for span in spans:
                splits.append(self._write_span(src, span, total_pages, out_dir))

        failed = sum(1 for s in splits if not s.success)
        if failed:
            logger.warning("%d of %d splits failed for batch %s", failed, len(splits), batch_id)
        return SplitResult(success=True, splits=splits)

    def _write_span(
        self, src: fitz.Document, span: ValidatedSpan, total_pages: int, out_dir: Path
    ) -> SplitDocument:
        if span.start_page < 1 or span.end_page > total_pages or span.start_page > span.end_page:
            return SplitDocument(
                span=span,
                error=f"Page range {span.page_range} outside document of {total_pages} pages",
            )

        file_path = out_dir / split_filename(span)
        try:
            with fitz.open() as new_doc:
                new_doc.insert_pdf(src, from_page=span.start_page - 1, to_page=span.end_page - 1)
                page_count = len(new_doc)
                new_doc.save(file_path, garbage=3, deflate=True)
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning("Failed to write split %s: %s", span.id, e)
            return SplitDocument(span=span, error=str(e))

        file_size = file_path.stat().st_size
        logger.debug(
            "Created split %s: %s (%d pages, %d bytes)",
            span.id,
            file_path.name,
            page_count,
            file_size,
        )
        return SplitDocument(
            span=span,
            file_path=str(file_path),
            page_count=page_count,
            file_size=file_size,
        )

    def cleanup_batch(self, batch_id: str) -> None:
        """Remove all split files of a batch."""
        shutil.rmtree(self.batch_dir(batch_id), ignore_errors=True)
