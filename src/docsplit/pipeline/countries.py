"""Country name lookup (English, French, German) keyed to ISO alpha-2.

Names come from pycountry's ISO 3166-1 data; French and German names come
from the `iso3166-1` gettext catalogs bundled with it. A short alias list
covers colloquial names that are not in the standard.
"""

import gettext
import unicodedata
from functools import lru_cache
from typing import Optional

import pycountry

LANGUAGES = ("fr", "de")

# Colloquial names -> alpha-2
ALIASES: dict[str, str] = {
    "UK": "GB",
    "Great Britain": "GB",
    "England": "GB",
    "Scotland": "GB",
    "Wales": "GB",
    "USA": "US",
    "U.S.A.": "US",
    "United States of America": "US",
    "America": "US",
    "UAE": "AE",
    "Holland": "NL",
    "Korea": "KR",
    "Czech Republic": "CZ",
    "République tchèque": "CZ",
    "Tschechische Republik": "CZ",
    "Turkey": "TR",
    "Türkiye": "TR",
    "Turquie": "TR",
    "Türkei": "TR",
    "Russia": "RU",
    "Russie": "RU",
    "Russland": "RU",
    "Vietnam": "VN",
    "Hong Kong": "HK",
    "Hongkong": "HK",
    "Taiwan": "TW",
}


def _fold(name: str) -> str:
    """Case- and accent-insensitive key."""
    decomposed = unicodedata.normalize("NFKD", name.strip().casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _country_names(country) -> list[str]:
    names = [country.name]
    for attr in ("official_name", "common_name"):
        value = getattr(country, attr, None)
        if value:
            names.append(value)
    return names


@lru_cache(maxsize=1)
def _name_index() -> dict[str, str]:
    """Folded name -> alpha-2, English names taking precedence."""
    index: dict[str, str] = {}
    translations = [
        gettext.translation("iso3166-1", pycountry.LOCALES_DIR, languages=[lang], fallback=True)
        for lang in LANGUAGES
    ]
    countries = list(pycountry.countries)

    for country in countries:
        for name in _country_names(country):
            index.setdefault(_fold(name), country.alpha_2)
    for translation in translations:
        for country in countries:
            for name in _country_names(country):
                index.setdefault(_fold(translation.gettext(name)), country.alpha_2)
    for alias, code in ALIASES.items():
        index.setdefault(_fold(alias), code)
    return index


def lookup_country(name: str) -> Optional[str]:
    """Alpha-2 code for a country name in English, French or German."""
    return _name_index().get(_fold(name))
