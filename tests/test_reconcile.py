"""Tests for span reconciliation."""

import random

import pytest

from docsplit.errors import TilingError
from docsplit.models import CandidateSpan, ValidatedSpan
from docsplit.pipeline.stage_reconcile import (
    NO_BOUNDARIES_RATIONALE,
    reconcile_spans,
    validate_tiling,
)


def span(start, end, label="", confidence=0.9):
    return CandidateSpan(label=label, start_page=start, end_page=end, confidence=confidence)


def bounds(spans):
    return [(s.start_page, s.end_page) for s in spans]


def assert_tiles(spans, total_pages):
    assert spans[0].start_page == 1
    assert spans[-1].end_page == total_pages
    for prev, nxt in zip(spans, spans[1:]):
        assert prev.end_page + 1 == nxt.start_page
    assert all(s.start_page <= s.end_page for s in spans)


class TestReconcileSpans:
    """Tests for reconcile_spans."""

    def test_overlap_scenario(self):
        """Overlapping start is clamped, trailing page joins the last span."""
        result = reconcile_spans([span(1, 2), span(2, 4)], total_pages=5)

        assert bounds(result) == [(1, 2), (3, 5)]
        assert [s.id for s in result] == ["invoice_1", "invoice_2"]

    def test_empty_input(self):
        result = reconcile_spans([], total_pages=7)

        assert bounds(result) == [(1, 7)]
        assert result[0].confidence == 0.3
        assert result[0].rationale == NO_BOUNDARIES_RATIONALE
        assert result[0].label == "Invoice 1"

    def test_unsorted_input_is_sorted(self):
        result = reconcile_spans([span(4, 6, "B"), span(1, 3, "A")], total_pages=6)

        assert bounds(result) == [(1, 3), (4, 6)]
        assert [s.label for s in result] == ["A", "B"]

    def test_equal_starts_keep_proposal_order(self):
        """The first of two spans with the same start wins."""
        result = reconcile_spans([span(1, 2, "first"), span(1, 4, "second")], total_pages=4)

        assert bounds(result) == [(1, 2), (3, 4)]
        assert [s.label for s in result] == ["first", "second"]

    def test_span_past_end_is_discarded(self):
        result = reconcile_spans([span(1, 3), span(9, 12)], total_pages=3)

        assert bounds(result) == [(1, 3)]

    def test_end_is_clamped_to_total(self):
        result = reconcile_spans([span(1, 40)], total_pages=3)

        assert bounds(result) == [(1, 3)]

    def test_fully_consumed_span_keeps_one_page(self):
        """A span inside the previous one is pushed past the cursor."""
        result = reconcile_spans([span(1, 3), span(2, 3)], total_pages=5)

        assert bounds(result) == [(1, 3), (4, 5)]

    def test_inverted_span_is_one_page(self):
        result = reconcile_spans([span(3, 1)], total_pages=3)

        assert_tiles(result, 3)

    def test_leading_gap_joins_first_span(self):
        result = reconcile_spans([span(3, 5)], total_pages=5)

        assert bounds(result) == [(1, 5)]

    def test_inner_gap_joins_previous_span(self):
        result = reconcile_spans([span(1, 2), span(5, 6)], total_pages=6)

        assert bounds(result) == [(1, 4), (5, 6)]

    def test_all_candidates_discarded(self):
        result = reconcile_spans([span(8, 9)], total_pages=3)

        assert bounds(result) == [(1, 3)]
        assert result[0].confidence == 0.3

    def test_invalid_total_pages(self):
        with pytest.raises(ValueError):
            reconcile_spans([span(1, 1)], total_pages=0)

    def test_confidence_and_rationale_survive(self):
        candidate = CandidateSpan(
            label="INV-7", start_page=1, end_page=2, confidence=0.82, rationale="header on page 1"
        )
        result = reconcile_spans([candidate], total_pages=2)

        assert result[0].confidence == 0.82
        assert result[0].rationale == "header on page 1"
        assert result[0].label == "INV-7"

    @pytest.mark.parametrize("seed", range(25))
    def test_tiling_holds_for_arbitrary_candidates(self, seed):
        rng = random.Random(seed)
        total_pages = rng.randint(1, 30)
        candidates = [
            span(rng.randint(-2, total_pages + 3), rng.randint(-2, total_pages + 3))
            for _ in range(rng.randint(0, 8))
        ]

        result = reconcile_spans(candidates, total_pages)

        assert_tiles(result, total_pages)
        validate_tiling(result, total_pages)

    @pytest.mark.parametrize("seed", range(10))
    def test_reconciling_a_tiling_is_idempotent(self, seed):
        rng = random.Random(seed)
        total_pages = rng.randint(1, 20)
        candidates = [span(rng.randint(1, total_pages), rng.randint(1, total_pages)) for _ in range(5)]
        first = reconcile_spans(candidates, total_pages)

        second = reconcile_spans(first, total_pages)

        assert [s.model_dump() for s in second] == [s.model_dump() for s in first]


class TestValidateTiling:
    """Tests for validate_tiling."""

    def _spans(self, *ranges):
        return [
            ValidatedSpan(id=f"invoice_{i + 1}", start_page=s, end_page=e)
            for i, (s, e) in enumerate(ranges)
        ]

    def test_valid(self):
        validate_tiling(self._spans((1, 2), (3, 5)), 5)

    @pytest.mark.parametrize(
        "ranges,total",
        [
            (((1, 2), (4, 5)), 5),  # gap
            (((1, 3), (3, 5)), 5),  # overlap
            (((2, 5),), 5),  # late start
            (((1, 4),), 5),  # short end
        ],
    )
    def test_invalid(self, ranges, total):
        with pytest.raises(TilingError):
            validate_tiling(self._spans(*ranges), total)

    def test_empty(self):
        with pytest.raises(TilingError):
            validate_tiling([], 3)
