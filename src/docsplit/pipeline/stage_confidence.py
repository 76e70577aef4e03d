"""Confidence aggregation for extracted invoice records."""

from typing import Mapping

from docsplit.models import ExtractionTier, InvoiceRecord

from .field_map import header_field_names

MISSING = "missing"

TIER_WEIGHTS: dict[str, float] = {
    ExtractionTier.DETERMINISTIC.value: 1.0,
    ExtractionTier.INFERENCE_FALLBACK.value: 0.8,
    ExtractionTier.TARGETED_LOOKUP.value: 0.6,
    MISSING: 0.0,
}

DEFAULT_CONFIDENCE = 0.5
CONFIDENCE_CAP = 0.95


def tier_breakdown(record: InvoiceRecord) -> dict[str, int]:
    """Count canonical fields per supplying tier, plus missing ones.

    Line items count as one field. Computed fields are not sourced from any
    tier and count as missing.
    """
    counts: dict[str, int] = {}
    populated = 0
    for f in record.fields.values():
        if f.computed or f.tier is None or f.is_empty:
            continue
        counts[f.tier.value] = counts.get(f.tier.value, 0) + 1
        populated += 1
    if record.items and record.item_tier is not None:
        counts[record.item_tier.value] = counts.get(record.item_tier.value, 0) + 1
        populated += 1

    total = canonical_field_count()
    counts[MISSING] = max(0, total - populated)
    return counts


def canonical_field_count() -> int:
    """Header fields plus the line item list."""
    return len(header_field_names()) + 1


def success_rate(breakdown: Mapping[str, int]) -> float:
    """Share of canonical fields that were populated, 0-1."""
    total = sum(breakdown.values())
    if total == 0:
        return 0.0
    return (total - breakdown.get(MISSING, 0)) / total


def aggregate_confidence(breakdown: Mapping[str, int]) -> float:
    """Scalar confidence from extraction success rate and tier mix.

    `min(0.95, success_rate * 0.7 + tier_confidence * 0.3)`, where
    tier_confidence is the tier-weighted mean over all counted fields.
    """
    total = sum(breakdown.values())
    if total == 0:
        return DEFAULT_CONFIDENCE
    weighted = sum(TIER_WEIGHTS.get(tier, 0.0) * count for tier, count in breakdown.items())
    tier_confidence = weighted / total
    return min(CONFIDENCE_CAP, success_rate(breakdown) * 0.7 + tier_confidence * 0.3)


def score_record(record: InvoiceRecord) -> float:
    """Confidence of one extracted record."""
    return aggregate_confidence(tier_breakdown(record))
