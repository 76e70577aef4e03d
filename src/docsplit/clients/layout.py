"""Layout analysis client backed by Azure Document Intelligence.

Two calls are used:
- prebuilt-layout for page-level text (boundary detection corpus)
- prebuilt-invoice for typed invoice fields, tables, key-value pairs and,
  when requested, query fields

Failures are reported as `success=False` results rather than raised, so the
caller decides whether a failure is fatal for the batch or for one document.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from azure.ai.documentintelligence.aio import DocumentIntelligenceClient
from azure.ai.documentintelligence.models import AnalyzeDocumentRequest, DocumentAnalysisFeature
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError

from docsplit.config import Settings
from docsplit.errors import ConfigurationError
from docsplit.models import (
    KeyValuePair,
    LayoutCell,
    LayoutPage,
    LayoutResult,
    LayoutTable,
    LayoutWord,
    PageRecord,
)

logger = logging.getLogger(__name__)

LAYOUT_MODEL_ID = "prebuilt-layout"
INVOICE_MODEL_ID = "prebuilt-invoice"


@dataclass
class PageExtractionResult:
    """Page text of a whole bundle."""

    success: bool
    pages: list[PageRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def total_words(self) -> int:
        return sum(p.word_count for p in self.pages)


@dataclass
class LayoutAnalysis:
    """Layout and typed fields of one document."""

    success: bool
    layout: Optional[LayoutResult] = None
    error: Optional[str] = None


class LayoutClient(Protocol):
    """Layout analysis service."""

    async def extract_pages(self, document: bytes) -> PageExtractionResult: ...

    async def analyze(
        self, document: bytes, query_fields: Optional[Sequence[str]] = None
    ) -> LayoutAnalysis: ...


def _page_text(page: dict[str, Any], paragraphs: list[dict[str, Any]]) -> str:
    """Paragraphs anchored on the page, else the page's lines."""
    number = page.get("pageNumber")
    on_page = [
        p.get("content", "")
        for p in paragraphs
        if any(r.get("pageNumber") == number for r in p.get("boundingRegions") or [])
    ]
    text = "\n".join(on_page)
    if not text and page.get("lines"):
        text = "\n".join(line.get("content", "") for line in page["lines"])
    return text.strip()


def layout_from_analyze_result(result: dict[str, Any]) -> LayoutResult:
    """Build a LayoutResult from an AnalyzeResult payload (`as_dict()` form)."""
    paragraphs = result.get("paragraphs") or []

    pages = [
        LayoutPage(
            page_number=page.get("pageNumber", i + 1),
            text=_page_text(page, paragraphs),
            words=[
                LayoutWord(content=w.get("content", ""), confidence=w.get("confidence", 0.0))
                for w in page.get("words") or []
            ],
        )
        for i, page in enumerate(result.get("pages") or [])
    ]

    tables = [
        LayoutTable(
            row_count=table.get("rowCount", 0),
            column_count=table.get("columnCount", 0),
            cells=[
                LayoutCell(
                    row_index=cell.get("rowIndex", 0),
                    column_index=cell.get("columnIndex", 0),
                    content=cell.get("content", ""),
                    confidence=cell.get("confidence", 0.0),
                )
                for cell in table.get("cells") or []
            ],
        )
        for table in result.get("tables") or []
    ]

    key_value_pairs = []
    for kv in result.get("keyValuePairs") or []:
        key = (kv.get("key") or {}).get("content", "")
        if not key:
            continue
        key_value_pairs.append(
            KeyValuePair(
                key=key,
                value=(kv.get("value") or {}).get("content", ""),
                confidence=kv.get("confidence", 0.0),
            )
        )

    documents = result.get("documents") or []
    fields = dict(documents[0].get("fields") or {}) if documents else {}

    return LayoutResult(
        content=result.get("content", ""),
        pages=pages,
        tables=tables,
        key_value_pairs=key_value_pairs,
        fields=fields,
    )


class AzureLayoutClient:
    """LayoutClient over the async Document Intelligence SDK."""

    def __init__(self, endpoint: str, key: str, timeout: int = 300):
        self.endpoint = endpoint
        self.key = key
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "AzureLayoutClient":
        """Create from settings.

        Raises:
            ConfigurationError: If endpoint or key is missing
        """
        if not settings.azure_di_endpoint or not settings.azure_di_key:
            raise ConfigurationError(
                "AZURE_DI_ENDPOINT and AZURE_DI_KEY must be set for layout analysis"
            )
        return cls(
            settings.azure_di_endpoint,
            settings.azure_di_key,
            timeout=settings.layout_timeout_seconds,
        )

    async def _analyze_raw(
        self,
        model_id: str,
        document: bytes,
        query_fields: Optional[Sequence[str]] = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if query_fields:
            kwargs["features"] = [DocumentAnalysisFeature.QUERY_FIELDS]
            kwargs["query_fields"] = list(query_fields)

        async with DocumentIntelligenceClient(
            endpoint=self.endpoint, credential=AzureKeyCredential(self.key)
        ) as client:
            poller = await client.begin_analyze_document(
                model_id,
                AnalyzeDocumentRequest(bytes_source=document),
                **kwargs,
            )
            result = await asyncio.wait_for(poller.result(), timeout=self.timeout)
        return result.as_dict()

    async def extract_pages(self, document: bytes) -> PageExtractionResult:
        """Extract page-level text with the prebuilt-layout model."""
        try:
            raw = await self._analyze_raw(LAYOUT_MODEL_ID, document)
        except (AzureError, asyncio.TimeoutError) as e:
            logger.warning("Layout page extraction failed: %s", e)
            return PageExtractionResult(success=False, error=str(e) or "Layout analysis timed out")

        layout = layout_from_analyze_result(raw)
        if not layout.pages:
            return PageExtractionResult(success=False, error="No pages found")

        pages = layout.to_page_records()
        logger.info(
            "Extracted text from %d pages (%d words)",
            len(pages),
            sum(p.word_count for p in pages),
        )
        return PageExtractionResult(success=True, pages=pages)

    async def analyze(
        self, document: bytes, query_fields: Optional[Sequence[str]] = None
    ) -> LayoutAnalysis:
        """Analyze one invoice with the prebuilt-invoice model."""
        try:
            raw = await self._analyze_raw(INVOICE_MODEL_ID, document, query_fields)
        except (AzureError, asyncio.TimeoutError) as e:
            logger.warning("Invoice analysis failed: %s", e)
            return LayoutAnalysis(success=False, error=str(e) or "Layout analysis timed out")

        layout = layout_from_analyze_result(raw)
        logger.debug(
            "Analyzed invoice: %d pages, %d tables, %d fields",
            layout.page_count,
            len(layout.tables),
            len(layout.fields),
        )
        return LayoutAnalysis(success=True, layout=layout)
