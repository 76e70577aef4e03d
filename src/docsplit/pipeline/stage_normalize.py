"""Record Normalization Stage - Canonical values, guardrails and validation.

Runs after the tier merge:
1. Dates, currencies, countries and numbers are normalized; the tier's
   original value stays in `raw_value`
2. The unit-price guardrail corrects line items whose unit price is
   implausible against quantity and total
3. `amount_due` is derived from line items when no tier supplied it
4. A validation report lists missing required fields and warnings
"""

import logging
from typing import Any, Optional

from docsplit.models import (
    ExtractedField,
    ExtractionTier,
    FieldKind,
    InvoiceRecord,
    LineItem,
    ValidatedSpan,
    ValidationReport,
)

from .field_map import REQUIRED_FIELDS, field_kind
from .locale import (
    normalize_country,
    normalize_currency_code,
    parse_ambiguous_number,
    to_iso_date,
)
from .stage_confidence import success_rate, tier_breakdown
from .stage_extract import NUMERIC_ITEM_ATTRS, ExtractionOutcome

logger = logging.getLogger(__name__)

AMOUNT_DUE = "amount_due"
LOW_SUCCESS_RATE = 0.30
MAX_TARGETED_FIELDS = 10

_NORMALIZERS = {
    FieldKind.DATE: to_iso_date,
    FieldKind.CURRENCY: normalize_currency_code,
    FieldKind.COUNTRY: normalize_country,
}


def apply_unit_price_guardrail(item: LineItem, high: float = 50.0, low: float = 0.02) -> bool:
    """Correct an implausible unit price in place.

    For positive quantity, total and unit price, when
    `unit_price * quantity / total_amount` is above `high` or below `low`
    the unit price becomes `round(total_amount / quantity, 2)`.

    Returns:
        True if the unit price was rewritten
    """
    q, total, unit = item.quantity, item.total_amount, item.unit_price
    if not (q and total and unit) or q <= 0 or total <= 0 or unit <= 0:
        return False
    ratio = unit * q / total
    if low <= ratio <= high:
        return False
    corrected = round(total / q, 2)
    logger.debug(
        "Unit price guardrail: %s x %s vs total %s (ratio %.3f), unit price -> %s",
        unit,
        q,
        total,
        ratio,
        corrected,
    )
    item.unit_price = corrected
    return True


def derive_amount_due(items: list[LineItem]) -> Optional[float]:
    """Sum of item totals, rounded to cents; None unless positive."""
    total = sum(item.total_amount or 0.0 for item in items)
    if total <= 0:
        return None
    return round(total, 2)


class RecordNormalizer:
    """Turns a merged extraction outcome into a validated InvoiceRecord."""

    def __init__(self, guardrail_high: float = 50.0, guardrail_low: float = 0.02):
        self.guardrail_high = guardrail_high
        self.guardrail_low = guardrail_low

    def normalize_value(self, name: str, value: Any) -> Any:
        """Canonical value for a header field, None if it cannot be normalized."""
        kind = field_kind(name)
        if kind == FieldKind.NUMBER:
            return parse_ambiguous_number(value)
        normalizer = _NORMALIZERS.get(kind)
        if normalizer is not None:
            return normalizer(value)
        if isinstance(value, str):
            return value.strip()
        return value

    def normalize_item(self, item: LineItem) -> tuple[LineItem, bool]:
        """Normalized copy of a line item and whether the guardrail fired."""
        normalized = item.model_copy()
        for attr in NUMERIC_ITEM_ATTRS:
            value = getattr(normalized, attr)
            if value is not None:
                setattr(normalized, attr, parse_ambiguous_number(value))
        if normalized.currency is not None:
            normalized.currency = normalize_currency_code(normalized.currency)
        if normalized.origin_country is not None:
            normalized.origin_country = normalize_country(normalized.origin_country)
        corrected = apply_unit_price_guardrail(
            normalized, self.guardrail_high, self.guardrail_low
        )
        return normalized, corrected

    def normalize(self, outcome: ExtractionOutcome, span: ValidatedSpan) -> InvoiceRecord:
        """Normalize and validate one sub-document's extraction.

        Args:
            outcome: Merged tier output
            span: Span the sub-document was cut from

        Returns:
            InvoiceRecord with its validation report (confidence not yet set)
        """
        warnings: list[str] = []
        fields: dict[str, ExtractedField] = {}

        for name, extracted in outcome.fields.items():
            normalized = self.normalize_value(name, extracted.value)
            if normalized is None:
                warnings.append(f"Could not normalize {name}: {extracted.value!r}")
            fields[name] = extracted.model_copy(
                update={"value": normalized, "raw_value": extracted.raw_value}
            )

        items = []
        corrected = 0
        for item in outcome.items:
            normalized_item, fired = self.normalize_item(item)
            items.append(normalized_item)
            corrected += fired
        if corrected:
            logger.info("Corrected unit price on %d of %d items", corrected, len(items))

        amount_due = fields.get(AMOUNT_DUE)
        if (amount_due is None or amount_due.is_empty) and items:
            derived = derive_amount_due(items)
            if derived is not None:
                fields[AMOUNT_DUE] = ExtractedField(
                    name=AMOUNT_DUE,
                    value=derived,
                    raw_value=None,
                    tier=None,
                    confidence=0.0,
                    evidence=f"Sum of total_amount over {len(items)} line items",
                    computed=True,
                )

        record = InvoiceRecord(
            span_id=span.id,
            label=span.label,
            page_range=span.page_range,
            fields=fields,
            items=items,
            item_tier=outcome.item_tier,
            item_evidence=outcome.item_evidence,
        )
        record.validation = self.validate(record, warnings)
        return record

    def validate(self, record: InvoiceRecord, warnings: Optional[list[str]] = None) -> ValidationReport:
        """Check required fields and extraction quality."""
        errors = [
            f"Missing required field: {name}"
            for name in REQUIRED_FIELDS
            if record.fields.get(name) is None or record.fields[name].is_empty
        ]
        warnings = list(warnings or [])

        breakdown = tier_breakdown(record)
        rate = success_rate(breakdown)
        if rate < LOW_SUCCESS_RATE:
            warnings.append(f"Low extraction success rate: {rate * 100:.1f}%")

        targeted = breakdown.get(ExtractionTier.TARGETED_LOOKUP.value, 0)
        if targeted > MAX_TARGETED_FIELDS:
            warnings.append(f"Many fields required targeted lookups: {targeted}")

        if errors:
            logger.warning("Record %s failed validation: %s", record.span_id, "; ".join(errors))
        return ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)
