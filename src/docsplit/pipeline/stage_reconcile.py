"""Span Reconciliation Stage - Turn candidate spans into a page tiling.

The inference oracle proposes sub-document ranges that may overlap, leave
gaps, run past the last page or be missing entirely. Reconciliation walks
the candidates in start-page order with a cursor and always produces an
ordered, gap-free, non-overlapping partition of [1, N]. Pages no candidate
covers are attached to the preceding span (the first span for leading pages).
"""

import logging
from typing import Sequence

from docsplit.errors import TilingError
from docsplit.models import CandidateSpan, ValidatedSpan

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
NO_BOUNDARIES_RATIONALE = "No boundaries detected, treating bundle as a single invoice"
TRAILING_PAGES_RATIONALE = "Remaining pages not covered by any detected invoice"


def span_id(position: int) -> str:
    """Positional id for the span at 0-indexed position."""
    return f"invoice_{position + 1}"


def reconcile_spans(
    candidates: Sequence[CandidateSpan],
    total_pages: int,
    fallback_confidence: float = FALLBACK_CONFIDENCE,
) -> list[ValidatedSpan]:
    """Reconcile candidate spans into a tiling of [1, total_pages].

    Args:
        candidates: Oracle proposals in any order
        total_pages: Number of pages N in the bundle
        fallback_confidence: Confidence of synthesized spans

    Returns:
        Spans ordered by start page, exactly covering pages 1..N

    Raises:
        ValueError: If total_pages < 1
    """
    if total_pages < 1:
        raise ValueError(f"total_pages must be >= 1, got {total_pages}")

    if not candidates:
        logger.info("No candidate spans, using one span over %d pages", total_pages)
        return [
            ValidatedSpan(
                id=span_id(0),
                label="Invoice 1",
                start_page=1,
                end_page=total_pages,
                confidence=fallback_confidence,
                rationale=NO_BOUNDARIES_RATIONALE,
            )
        ]

    # sorted() is stable, so equal start pages keep proposal order
    ordered = sorted(candidates, key=lambda c: c.start_page)

    emitted: list[dict] = []
    cursor = 1
    for candidate in ordered:
        start = max(candidate.start_page, cursor)
        end = min(candidate.end_page, total_pages)
        end = max(end, start)
        if start > total_pages:
            logger.debug(
                "Discarding span %r (%d-%d): past end of bundle",
                candidate.label,
                candidate.start_page,
                candidate.end_page,
            )
            continue
        # Uncovered pages before this span belong to the previous invoice,
        # or to this one when it is the first
        if start > cursor:
            if emitted:
                emitted[-1]["end_page"] = start - 1
            else:
                start = cursor
        emitted.append(
            {
                "label": candidate.label,
                "start_page": start,
                "end_page": end,
                "confidence": candidate.confidence,
                "rationale": candidate.rationale,
            }
        )
        cursor = end + 1

    if cursor <= total_pages:
        if emitted:
            emitted[-1]["end_page"] = total_pages
        else:
            emitted.append(
                {
                    "label": "Invoice 1",
                    "start_page": cursor,
                    "end_page": total_pages,
                    "confidence": fallback_confidence,
                    "rationale": TRAILING_PAGES_RATIONALE,
                }
            )

    spans = [ValidatedSpan(id=span_id(i), **data) for i, data in enumerate(emitted)]
    logger.debug("Reconciled %d candidates into %d spans", len(candidates), len(spans))
    return spans


def validate_tiling(spans: Sequence[ValidatedSpan], total_pages: int) -> None:
    """Check that spans exactly tile [1, total_pages].

    Raises:
        TilingError: On a gap, overlap, inverted span or wrong bounds
    """
    if not spans:
        raise TilingError("No spans")

    ordered = sorted(spans, key=lambda s: s.start_page)
    if ordered[0].start_page != 1:
        raise TilingError(f"First span starts at page {ordered[0].start_page}, expected 1")
    if ordered[-1].end_page != total_pages:
        raise TilingError(
            f"Last span ends at page {ordered[-1].end_page}, expected {total_pages}"
        )

    for i, span in enumerate(ordered):
        if span.start_page > span.end_page:
            raise TilingError(f"Span {span.id} is inverted ({span.page_range})")
        if i and ordered[i - 1].end_page + 1 != span.start_page:
            raise TilingError(
                f"Spans {ordered[i - 1].id} and {span.id} do not meet "
                f"({ordered[i - 1].page_range}, {span.page_range})"
            )
