"""Tests for locale-aware value normalization."""

from datetime import date, datetime

import pytest

from docsplit.pipeline.countries import lookup_country
from docsplit.pipeline.locale import (
    normalize_country,
    normalize_currency_code,
    parse_ambiguous_number,
    to_iso_date,
)


class TestParseAmbiguousNumber:
    """Tests for numbers written in unknown locale conventions."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("6 834,99", 6834.99),
            ("2,378.02", 2378.02),
            ("1'250.00 CHF", 1250.0),
            ("€ 1.234.567,89", 1234567.89),
            ("12,5", 12.5),
            ("-42.10", -42.10),
            ("USD 99", 99.0),
            ("24.06 GR", 24.06),
        ],
    )
    def test_locale_formats(self, raw, expected):
        """Last separator is the decimal one, the rest are thousands marks."""
        assert parse_ambiguous_number(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", ["", None, "   ", "n/a", "--"])
    def test_unparseable_is_zero(self, raw):
        """Empty or non-numeric input gives 0 and never raises."""
        assert parse_ambiguous_number(raw) == 0.0

    def test_numbers_pass_through(self):
        assert parse_ambiguous_number(17) == 17.0
        assert parse_ambiguous_number(3.25) == 3.25

    def test_non_finite_is_zero(self):
        assert parse_ambiguous_number(float("nan")) == 0.0
        assert parse_ambiguous_number(float("inf")) == 0.0

    def test_bool_is_not_a_number(self):
        assert parse_ambiguous_number(True) == 0.0


class TestToIsoDate:
    """Tests for date normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("21.09.2025", "2025-09-21"),
            ("30/05/2025", "2025-05-30"),
            ("2025-01-31", "2025-01-31"),
            ("05-03-2024", "2024-03-05"),
            ("2024/12/01", "2024-12-01"),
        ],
    )
    def test_strict_layouts(self, raw, expected):
        assert to_iso_date(raw) == expected

    def test_day_first_wins_for_ambiguous_slash_dates(self):
        """DD/MM/YYYY is tried before MM/DD/YYYY."""
        assert to_iso_date("04/05/2025") == "2025-05-04"

    def test_month_first_when_day_first_is_impossible(self):
        assert to_iso_date("12/31/2024") == "2024-12-31"

    def test_permissive_fallback(self):
        """Free-text dates go through dateutil."""
        assert to_iso_date("March 5, 2024") == "2024-03-05"

    @pytest.mark.parametrize("raw", ["not a date", "", None, "99.99.9999x"])
    def test_unparseable_is_none(self, raw):
        assert to_iso_date(raw) is None

    def test_date_objects(self):
        assert to_iso_date(date(2025, 2, 1)) == "2025-02-01"
        assert to_iso_date(datetime(2025, 2, 1, 13, 30)) == "2025-02-01"


class TestNormalizeCurrencyCode:
    """Tests for currency normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("eur", "EUR"), (" CHF ", "CHF"), ("€", "EUR"), ("$", "USD"), ("£", "GBP")],
    )
    def test_known(self, raw, expected):
        assert normalize_currency_code(raw) == expected

    @pytest.mark.parametrize("raw", ["XYZ", "euros", "", None, "¥"])
    def test_unknown_is_none(self, raw):
        """Unrecognized codes are never guessed."""
        assert normalize_currency_code(raw) is None


class TestNormalizeCountry:
    """Tests for country normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Italy", "IT"),
            ("Italie", "IT"),
            ("Italien", "IT"),
            ("Suisse", "CH"),
            ("Schweiz", "CH"),
            ("ALLEMAGNE", "DE"),
            ("  France ", "FR"),
        ],
    )
    def test_names_in_several_languages(self, raw, expected):
        assert normalize_country(raw) == expected

    def test_alpha2_passthrough(self):
        assert normalize_country("FR") == "FR"
        assert normalize_country("ZZ") == "ZZ"

    @pytest.mark.parametrize("raw", ["Atlantis", "fr", "", None, "Country of origin"])
    def test_unknown_is_none(self, raw):
        assert normalize_country(raw) is None

    def test_lookup_ignores_accents(self):
        assert lookup_country("Etats-Unis") == "US"
        assert lookup_country("Österreich") == lookup_country("osterreich") == "AT"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Pakistan", "PK"),
            ("Peru", "PE"),
            ("Pérou", "PE"),
            ("Qatar", "QA"),
            ("Katar", "QA"),
            ("Kenya", "KE"),
            ("Bangladesh", "BD"),
            ("Andorra", "AD"),
            ("Andorre", "AD"),
            ("Sri Lanka", "LK"),
            ("Liban", "LB"),
            ("Libanon", "LB"),
        ],
    )
    def test_any_iso_country(self, raw, expected):
        assert normalize_country(raw) == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [("UK", "GB"), ("USA", "US"), ("Türkiye", "TR"), ("Holland", "NL")],
    )
    def test_colloquial_aliases(self, raw, expected):
        assert lookup_country(raw) == expected
