"""Locale-aware normalization of numbers, dates, currencies and countries.

Invoices in a bundle mix European and Anglo-Saxon conventions ("6 834,99",
"2,378.02", "1'250.00 CHF"), several date layouts and free-text country
names in English, French or German. All functions here are pure and total:
malformed input yields 0.0 or None, never an exception.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as date_parser

from .countries import lookup_country

_CURRENCY_TOKEN_RE = re.compile(r"(CHF|EUR|USD|GBP|JPY|CNY|€|\$|£)\s*", re.IGNORECASE)
_NON_NUMERIC_RE = re.compile(r"[^0-9,.'\-\s]")
_THOUSANDS_MARK_RE = re.compile(r"[\s']")
_SEPARATOR_RE = re.compile(r"[.,]")
_NUMERIC_PREFIX_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")

# Strict layouts tried in order; first match wins
_DATE_LAYOUTS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\d{4}-\d{2}-\d{2}"), "%Y-%m-%d"),
    (re.compile(r"\d{2}/\d{2}/\d{4}"), "%d/%m/%Y"),
    (re.compile(r"\d{2}\.\d{2}\.\d{4}"), "%d.%m.%Y"),
    (re.compile(r"\d{2}/\d{2}/\d{4}"), "%m/%d/%Y"),
    (re.compile(r"\d{2}-\d{2}-\d{4}"), "%d-%m-%Y"),
    (re.compile(r"\d{4}/\d{2}/\d{2}"), "%Y/%m/%d"),
)

CURRENCY_CODES = frozenset({"EUR", "USD", "GBP", "CHF", "JPY", "CAD", "AUD", "SEK", "NOK", "DKK"})
CURRENCY_SYMBOLS = {"€": "EUR", "$": "USD", "£": "GBP"}

_ALPHA2_RE = re.compile(r"[A-Z]{2}")


def parse_ambiguous_number(raw: Any) -> float:
    """Parse a number written with unknown locale conventions.

    The last ',' or '.' is taken as the decimal separator; every separator
    before it, spaces and apostrophes are thousands marks.

    Args:
        raw: Number, string or None

    Returns:
        Parsed value, 0.0 when nothing numeric can be read
    """
    if raw is None or isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        value = float(raw)
        return value if math.isfinite(value) else 0.0

    s = str(raw).strip()
    if not s:
        return 0.0
    s = _CURRENCY_TOKEN_RE.sub("", s)
    s = _NON_NUMERIC_RE.sub("", s)
    s = _THOUSANDS_MARK_RE.sub("", s)

    last_sep = max(s.rfind(","), s.rfind("."))
    if last_sep != -1:
        int_part = _SEPARATOR_RE.sub("", s[:last_sep])
        s = f"{int_part}.{s[last_sep + 1:]}"
    else:
        s = re.sub(r"[^0-9\-]", "", s)

    match = _NUMERIC_PREFIX_RE.match(s)
    if not match:
        return 0.0
    value = float(match.group(0))
    return value if math.isfinite(value) else 0.0


def to_iso_date(raw: Any) -> Optional[str]:
    """Normalize a date to YYYY-MM-DD, or None if it cannot be read."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()

    text = str(raw).strip()
    if not text:
        return None

    for shape, layout in _DATE_LAYOUTS:
        if not shape.fullmatch(text):
            continue
        try:
            return datetime.strptime(text, layout).date().isoformat()
        except ValueError:
            continue

    try:
        return date_parser.parse(text, dayfirst=False).date().isoformat()
    except (ValueError, OverflowError):
        return None


def normalize_currency_code(raw: Any) -> Optional[str]:
    """Map a currency code or symbol to an ISO 4217 code from the allow-list."""
    if raw is None:
        return None
    code = str(raw).strip().upper()
    if not code:
        return None
    if code in CURRENCY_CODES:
        return code
    return CURRENCY_SYMBOLS.get(code)


def normalize_country(raw: Any) -> Optional[str]:
    """Map a country name (en/fr/de) or alpha-2 code to ISO 3166 alpha-2."""
    if raw is None:
        return None
    name = str(raw).strip()
    if not name:
        return None
    code = lookup_country(name)
    if code:
        return code
    if _ALPHA2_RE.fullmatch(name):
        return name
    return None
