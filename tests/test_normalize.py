"""Tests for record normalization and validation."""

import pytest

from docsplit.models import ExtractedField, ExtractionTier, LineItem, ValidatedSpan
from docsplit.pipeline.stage_extract import ExtractionOutcome
from docsplit.pipeline.stage_normalize import (
    RecordNormalizer,
    apply_unit_price_guardrail,
    derive_amount_due,
)

DET = ExtractionTier.DETERMINISTIC
TGT = ExtractionTier.TARGETED_LOOKUP


def extracted(name, value, tier=DET):
    return ExtractedField(name=name, value=value, raw_value=value, tier=tier, confidence=0.9)


@pytest.fixture
def span():
    return ValidatedSpan(id="invoice_2", label="FA-0042", start_page=3, end_page=5)


@pytest.fixture
def normalizer():
    return RecordNormalizer()


class TestUnitPriceGuardrail:
    """Tests for the unit-price plausibility check."""

    def test_implausible_unit_price_is_corrected(self):
        item = LineItem(quantity=10, total_amount=100, unit_price=5000)

        assert apply_unit_price_guardrail(item)
        assert item.unit_price == 10.0

    def test_plausible_unit_price_is_kept(self):
        item = LineItem(quantity=2, total_amount=50, unit_price=25)

        assert not apply_unit_price_guardrail(item)
        assert item.unit_price == 25

    def test_too_small_unit_price_is_corrected(self):
        item = LineItem(quantity=3, total_amount=1000, unit_price=1)

        assert apply_unit_price_guardrail(item)
        assert item.unit_price == 333.33

    @pytest.mark.parametrize(
        "quantity,total,unit",
        [(0, 100, 5000), (10, 0, 5000), (10, 100, 0), (None, 100, 5000), (-1, 100, 5000)],
    )
    def test_non_positive_values_are_skipped(self, quantity, total, unit):
        item = LineItem(quantity=quantity, total_amount=total, unit_price=unit)

        assert not apply_unit_price_guardrail(item)
        assert item.unit_price == unit

    def test_thresholds_are_configurable(self):
        item = LineItem(quantity=1, total_amount=100, unit_price=300)

        assert not apply_unit_price_guardrail(item)
        assert apply_unit_price_guardrail(item, high=2.0)
        assert item.unit_price == 100.0


class TestDeriveAmountDue:
    """Tests for amount_due derivation."""

    def test_sum_of_totals(self):
        items = [LineItem(total_amount=10.25), LineItem(total_amount=5.1), LineItem()]
        assert derive_amount_due(items) == pytest.approx(15.35)

    def test_non_positive_sum(self):
        assert derive_amount_due([LineItem(total_amount=0)]) is None
        assert derive_amount_due([]) is None


class TestRecordNormalizer:
    """Tests for RecordNormalizer."""

    def test_values_are_normalized(self, normalizer, span):
        outcome = ExtractionOutcome(
            fields={
                "invoice_id": extracted("invoice_id", " FA-0042 "),
                "issue_date": extracted("issue_date", "21.09.2025"),
                "total_ttc": extracted("total_ttc", "6 834,99"),
                "currency": extracted("currency", "€"),
                "exporter_country": extracted("exporter_country", "Italie", TGT),
            }
        )

        record = normalizer.normalize(outcome, span)

        assert record.value("invoice_id") == "FA-0042"
        assert record.value("issue_date") == "2025-09-21"
        assert record.value("total_ttc") == 6834.99
        assert record.value("currency") == "EUR"
        assert record.value("exporter_country") == "IT"
        assert record.fields["total_ttc"].raw_value == "6 834,99"
        assert record.fields["exporter_country"].tier == TGT
        assert record.span_id == "invoice_2"
        assert record.page_range == "3-5"
        assert record.label == "FA-0042"

    def test_unnormalizable_values_warn(self, normalizer, span):
        outcome = ExtractionOutcome(
            fields={
                "issue_date": extracted("issue_date", "sometime soon"),
                "currency": extracted("currency", "doubloons"),
            }
        )

        record = normalizer.normalize(outcome, span)

        assert record.value("issue_date") is None
        assert record.value("currency") is None
        assert "Could not normalize issue_date: 'sometime soon'" in record.validation.warnings
        assert "Could not normalize currency: 'doubloons'" in record.validation.warnings

    def test_items_are_normalized_and_guarded(self, normalizer, span):
        outcome = ExtractionOutcome(
            items=[
                LineItem(
                    quantity=10,
                    total_amount=100,
                    unit_price=5000,
                    currency="chf",
                    origin_country="Schweiz",
                ),
                LineItem(quantity=2, total_amount=50, unit_price=25, currency="¥"),
            ],
            item_tier=DET,
        )

        record = normalizer.normalize(outcome, span)

        first, second = record.items
        assert first.unit_price == 10.0
        assert first.currency == "CHF"
        assert first.origin_country == "CH"
        assert second.unit_price == 25
        assert second.currency is None
        assert outcome.items[0].unit_price == 5000

    def test_amount_due_is_derived(self, normalizer, span):
        outcome = ExtractionOutcome(
            items=[LineItem(total_amount=1000.0), LineItem(total_amount=1378.02)],
            item_tier=DET,
        )

        record = normalizer.normalize(outcome, span)

        amount_due = record.fields["amount_due"]
        assert record.amount_due == pytest.approx(2378.02)
        assert amount_due.computed
        assert amount_due.tier is None
        assert amount_due.evidence == "Sum of total_amount over 2 line items"

    def test_sourced_amount_due_is_kept(self, normalizer, span):
        outcome = ExtractionOutcome(
            fields={"amount_due": extracted("amount_due", "12,00")},
            items=[LineItem(total_amount=1000.0)],
            item_tier=DET,
        )

        record = normalizer.normalize(outcome, span)

        assert record.amount_due == 12.0
        assert not record.fields["amount_due"].computed

    def test_missing_required_fields(self, normalizer, span):
        outcome = ExtractionOutcome(fields={"invoice_id": extracted("invoice_id", "A-1")})

        record = normalizer.normalize(outcome, span)

        assert not record.validation.is_valid
        assert record.validation.errors == [
            "Missing required field: issue_date",
            "Missing required field: total_ttc",
        ]

    def test_low_success_rate_warning(self, normalizer, span):
        outcome = ExtractionOutcome(fields={"invoice_id": extracted("invoice_id", "A-1")})

        record = normalizer.normalize(outcome, span)

        assert any(w.startswith("Low extraction success rate:") for w in record.validation.warnings)

    def test_many_targeted_fields_warning(self, normalizer, span):
        names = [
            "exporter_street", "exporter_city", "exporter_email", "importer_street",
            "importer_city", "importer_email", "payment_method", "package_number",
            "vat_exemption", "late_payment_penalty", "diamond_statement",
        ]
        outcome = ExtractionOutcome(fields={n: extracted(n, "x", TGT) for n in names})

        record = normalizer.normalize(outcome, span)

        assert "Many fields required targeted lookups: 11" in record.validation.warnings

    def test_valid_record(self, normalizer, span):
        outcome = ExtractionOutcome(
            fields={
                "invoice_id": extracted("invoice_id", "A-1"),
                "issue_date": extracted("issue_date", "2025-01-02"),
                "total_ttc": extracted("total_ttc", 10),
            }
        )

        record = normalizer.normalize(outcome, span)

        assert record.validation.is_valid
        assert record.validation.errors == []
