"""Boundary Detection Stage - Find where each invoice in a bundle starts and ends.

One oracle call per bundle. The oracle sees each page's text (truncated to a
byte budget) and answers with a JSON array of page ranges. The answer is
parsed defensively and always reconciled into a tiling of the bundle.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Sequence

from pydantic import ValidationError

from docsplit.clients.oracle import InferenceOracle
from docsplit.errors import ParseFailure
from docsplit.models import CandidateSpan, PageRecord, ValidatedSpan

from .stage_reconcile import FALLBACK_CONFIDENCE, reconcile_spans

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

TRUNCATION_MARKER = "\n[... text truncated ...]"
UNPARSEABLE_RATIONALE = "Could not parse boundary response, treating bundle as a single invoice"

BOUNDARY_SYSTEM_PROMPT = """You are an expert assistant specialized in analyzing multi-page PDF documents containing multiple invoices. Your task is to identify where each individual invoice begins and ends.

IMPORTANT GUIDELINES:
1. Be CONSERVATIVE - prefer suggesting a split that might be wrong over missing a split
2. Look for clear invoice indicators: headers, invoice numbers, dates, vendor information, totals
3. Consider page breaks, formatting changes, and content transitions
4. Each invoice typically contains: header, line items, subtotals, taxes, and total amounts
5. Invoices from the same vendor may have similar formatting
6. Some invoices may span multiple pages

RESPONSE FORMAT:
Respond with a JSON array of invoice objects. Each object must have:
- "invoiceNumber": invoice number or identifier (if found)
- "startPage": first page number of the invoice
- "endPage": last page number of the invoice
- "confidence": your confidence level (0.0 to 1.0)
- "reasoning": brief explanation of why you identified this as an invoice

Example response:
[
  {"invoiceNumber": "INV-2024-001", "startPage": 1, "endPage": 2, "confidence": 0.95,
   "reasoning": "Clear invoice header with number, vendor info, and itemized billing"},
  {"invoiceNumber": "INV-2024-002", "startPage": 3, "endPage": 3, "confidence": 0.87,
   "reasoning": "Single page invoice with complete billing information"}
]"""


@dataclass
class BoundaryDetectionResult:
    """Reconciled spans for a bundle."""

    spans: list[ValidatedSpan]
    confidence: float
    raw_response: str
    total_pages: int
    used_fallback: bool = False

    @property
    def invoice_count(self) -> int:
        return len(self.spans)


def truncate_utf8(text: str, budget: int) -> tuple[str, bool]:
    """Cut text to at most `budget` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= budget:
        return text, False
    return encoded[:budget].decode("utf-8", errors="ignore"), True


def build_boundary_prompt(pages: Sequence[PageRecord], page_text_budget: int = 2000) -> str:
    """User prompt listing every page with its word count and text."""
    parts = [
        f"Please analyze the following {len(pages)} pages of text and identify "
        "individual invoice boundaries:\n\n"
    ]
    for page in pages:
        text, truncated = truncate_utf8(page.text, page_text_budget)
        parts.append(f"--- PAGE {page.page_number} ({page.word_count} words) ---\n")
        parts.append(text)
        if truncated:
            parts.append(TRUNCATION_MARKER)
        parts.append("\n\n")
    parts.append(
        "\nBased on the above content, identify each individual invoice and provide "
        "the page ranges. Remember to be conservative and prefer suggesting splits "
        "that might be wrong rather than missing actual invoice boundaries."
    )
    return "".join(parts)


def parse_boundary_response(response: str) -> list[CandidateSpan]:
    """Parse the oracle's JSON array into candidate spans.

    Raises:
        ParseFailure: If no JSON array can be read from the response
    """
    match = _JSON_ARRAY_RE.search(response or "")
    if not match:
        raise ParseFailure("No JSON array found in boundary response")
    try:
        entries = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Boundary response is not valid JSON: {e}") from e
    if not isinstance(entries, list):
        raise ParseFailure("Boundary response is not an array")

    candidates = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ParseFailure(f"Boundary entry {index} is not an object")
        try:
            candidates.append(_candidate_from_entry(entry, index))
        except ValidationError as e:
            raise ParseFailure(f"Boundary entry {index} is invalid: {e}") from e
    return candidates


def _candidate_from_entry(entry: dict[str, Any], index: int) -> CandidateSpan:
    # Falsy values (0, "", None) fall back to defaults
    return CandidateSpan(
        label=entry.get("invoiceNumber") or f"Invoice {index + 1}",
        start_page=entry.get("startPage") or 1,
        end_page=entry.get("endPage") or 1,
        confidence=entry.get("confidence") or 0.5,
        rationale=entry.get("reasoning") or "Detected invoice pattern",
    )


def mean_confidence(spans: Sequence[ValidatedSpan]) -> float:
    """Batch confidence: arithmetic mean of span confidences."""
    if not spans:
        return 0.0
    return sum(s.confidence for s in spans) / len(spans)


class BoundaryDetector:
    """Detects sub-document boundaries with the inference oracle."""

    def __init__(
        self,
        oracle: InferenceOracle,
        page_text_budget: int = 2000,
        fallback_confidence: float = FALLBACK_CONFIDENCE,
        max_tokens: int = 2000,
    ):
        """Initialize detector.

        Args:
            oracle: Completion service
            page_text_budget: Max UTF-8 bytes of text sent per page
            fallback_confidence: Confidence of the single-span fallback
            max_tokens: Reply token limit for the oracle call
        """
        self.oracle = oracle
        self.page_text_budget = page_text_budget
        self.fallback_confidence = fallback_confidence
        self.max_tokens = max_tokens

    async def detect(self, pages: Sequence[PageRecord]) -> BoundaryDetectionResult:
        """Detect invoice boundaries in a page corpus.

        Args:
            pages: Ordered PageRecords of the bundle

        Returns:
            BoundaryDetectionResult with reconciled spans

        Raises:
            ValueError: If the corpus is empty
            ExternalServiceFailure: If the oracle call fails
        """
        if not pages:
            raise ValueError("Cannot detect boundaries in an empty page corpus")

        total_pages = len(pages)
        logger.info("Analyzing %d pages for invoice boundaries", total_pages)

        prompt = build_boundary_prompt(pages, self.page_text_budget)
        response = await self.oracle.complete(
            BOUNDARY_SYSTEM_PROMPT,
            prompt,
            max_tokens=self.max_tokens,
            temperature=0.1,
        )

        used_fallback = False
        try:
            candidates = parse_boundary_response(response)
        except ParseFailure as e:
            logger.warning("Boundary response unusable (%s), using single-span fallback", e)
            candidates = [self._fallback_candidate(total_pages)]
            used_fallback = True

        spans = reconcile_spans(candidates, total_pages, self.fallback_confidence)
        confidence = mean_confidence(spans)
        logger.info(
            "Boundary detection completed: %d invoices (confidence %.2f)",
            len(spans),
            confidence,
        )
        return BoundaryDetectionResult(
            spans=spans,
            confidence=confidence,
            raw_response=response,
            total_pages=total_pages,
            used_fallback=used_fallback,
        )

    def _fallback_candidate(self, total_pages: int) -> CandidateSpan:
        return CandidateSpan(
            label="Invoice 1",
            start_page=1,
            end_page=total_pages,
            confidence=self.fallback_confidence,
            rationale=UNPARSEABLE_RATIONALE,
        )
