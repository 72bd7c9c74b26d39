"""
normalize.py - Locale-aware normalization shared by every pipeline stage.

Number and date normalizers (German conventions):
    parse_german_number(text)     -> float   ("1.234,56" -> 1234.56)
    format_german_number(value)   -> str     (1234.56 -> "1.234,56")
    normalize_date(text)          -> ISO YYYY-MM-DD or ""
    format_german_date(iso)       -> DD.MM.YYYY or ""

Identity normalizers (used on BOTH sides of every comparison):
    normalize_company_name(name)  -> lower-case name without legal form
    normalize_address(address)    -> lower-case address, street suffixes unified
    extract_postal_city(address)  -> ("10115", "Berlin")
    normalize_tax_id(value)       -> "DE123456789"
    normalize_learning_text(text) -> lower-case, trimmed, single-spaced

Design principles:
    - SAME normalization on BOTH sides
    - Pure transformations, no I/O
    - Invalid input degrades to neutral defaults ("" / 0.0), never raises
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import date
from typing import Any, Optional

from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

# Trailing words removed from company names before comparison.
# Longest forms first is not needed: removal is word-by-word from the end.
LEGAL_FORMS: frozenset[str] = frozenset(
    {
        "gmbh",
        "ggmbh",
        "mbh",
        "ag",
        "kg",
        "kgaa",
        "ohg",
        "ug",
        "ek",
        "eg",
        "se",
        "co",
        "ltd",
        "inc",
        "corp",
        "llc",
    }
)

# Street-type suffixes that OCR and humans write in many ways.
_STREET_SUFFIX = re.compile(
    r"(?:straße|strasse|str\.?|weg|platz|allee|damm|ring)(?=[\s,.\d]|$)"
)

POSTAL_CITY_PATTERN = re.compile(
    r"(?<!\d)(\d{5})[ \t]+([A-ZÄÖÜ][A-Za-zÄÖÜäöüß.\- ]*[A-Za-zäöüß])"
)

TAX_ID_PATTERN = re.compile(r"^[A-Z]{2}\d{9}$")

GERMAN_MONTHS: dict[str, str] = {
    "januar": "January",
    "jänner": "January",
    "februar": "February",
    "märz": "March",
    "maerz": "March",
    "april": "April",
    "mai": "May",
    "juni": "June",
    "juli": "July",
    "august": "August",
    "september": "September",
    "oktober": "October",
    "november": "November",
    "dezember": "December",
}

_NUMERIC_DATE = re.compile(r"^(\d{1,2})[.\-/](\d{1,2})[.\-/](\d{2}|\d{4})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_EMPTY_MARKERS = {"n/a", "na", "none", "null", "unknown", "-"}


def parse_german_number(value: Any) -> float:
    """Parse an amount written in German or English notation.

    The decimal separator is whichever of ',' and '.' occurs LAST:
        "1.234,56" -> 1234.56
        "1,234.56" -> 1234.56
        "119,00 €" -> 119.0
    Unparseable input returns 0.0.
    """
    if value is None:
        return 0.0

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    cleaned = re.sub(r"[^\d,.\-]", "", str(value))
    if not cleaned or not any(char.isdigit() for char in cleaned):
        return 0.0

    if "," in cleaned and cleaned.rfind(",") > cleaned.rfind("."):
        cleaned = cleaned.replace(".", "").replace(",", ".")
    else:
        cleaned = cleaned.replace(",", "")

    negative = cleaned.startswith("-")
    cleaned = cleaned.replace("-", "")
    if cleaned.count(".") > 1:
        # "1.234.567" - several periods can only be thousands separators.
        cleaned = cleaned.replace(".", "")

    try:
        number = float(cleaned)
    except ValueError:
        logger.warning("parse_german_number | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0

    if not math.isfinite(number):
        return 0.0
    return -number if negative else number


def format_german_number(value: float) -> str:
    """Format an amount as German text with two decimals: 1234.5 -> '1.234,50'."""
    text = f"{value:,.2f}"
    return text.replace(",", "\x00").replace(".", ",").replace("\x00", ".")


def expand_two_digit_year(year: int, today: Optional[date] = None) -> int:
    """Place a 2-digit year in the current century, or the previous one when
    that would put it more than 50 years in the future."""
    current_year = (today or date.today()).year
    expanded = (current_year // 100) * 100 + year
    if expanded > current_year + 50:
        expanded -= 100
    return expanded


def normalize_date(value: Any, today: Optional[date] = None) -> str:
    """Normalize date text to ISO YYYY-MM-DD.

    Accepts DD.MM.YYYY / DD.MM.YY (also with '-' or '/'), ISO dates and
    written dates such as '1. März 2024'. Impossible calendar dates
    (31.02.2024) and anything unparseable return "".
    """
    if value is None:
        return ""
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if not text or text.lower() in _EMPTY_MARKERS:
        return ""
    if not any(char.isdigit() for char in text):
        logger.debug("normalize_date | rejected_no_digits | raw=%r", text)
        return ""

    iso = _ISO_DATE.match(text)
    if iso:
        return _calendar_date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)), text)

    numeric = _NUMERIC_DATE.match(text)
    if numeric:
        day, month, year_text = numeric.groups()
        year = int(year_text)
        if len(year_text) == 2:
            year = expand_two_digit_year(year, today)
        return _calendar_date(year, int(month), int(day), text)

    if re.fullmatch(r"[\d\s]+", text):
        # A bare number is not a date; dateutil would fill in today's month.
        return ""

    translated = text
    for german, english in GERMAN_MONTHS.items():
        translated = re.sub(rf"\b{german}\b", english, translated, flags=re.IGNORECASE)

    try:
        parsed = dateparser.parse(translated, dayfirst=True)
    except (ValueError, OverflowError) as exc:
        logger.debug(
            "normalize_date | parse_error=%s | raw=%r | fallback=''",
            type(exc).__name__,
            text,
        )
        return ""
    if parsed is None:
        return ""
    return parsed.date().isoformat()


def _calendar_date(year: int, month: int, day: int, raw: str) -> str:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        logger.debug("normalize_date | invalid_calendar_date | raw=%r | fallback=''", raw)
        return ""


def format_german_date(value: str) -> str:
    """ISO date -> DD.MM.YYYY. Returns "" when `value` is not a valid date."""
    iso = normalize_date(value)
    if not iso:
        return ""
    year, month, day = iso.split("-")
    return f"{day}.{month}.{year}"


def _fold(text: str) -> str:
    """Lower-case and strip diacritics ('Müller' -> 'muller')."""
    lowered = unicodedata.normalize("NFD", text.lower().replace("ß", "ss"))
    return "".join(char for char in lowered if unicodedata.category(char) != "Mn")


def normalize_company_name(name: Optional[str]) -> str:
    """Normalize a company name for comparison.

    'Acme GmbH & Co. KG' -> 'acme', 'Müller-Bau AG' -> 'muller bau'.
    """
    if not name:
        return ""
    text = _fold(str(name))
    text = re.sub(r"\be\.\s?k\.?", " ek ", text)
    text = re.sub(r"[^\w\s]", " ", text)
    text = text.replace("_", " ")

    words = text.split()
    while words and words[-1] in LEGAL_FORMS:
        words.pop()
    normalized = " ".join(words)
    logger.debug("normalize_company_name | raw=%r | normalized=%r", name, normalized)
    return normalized


def normalize_address(address: Optional[str]) -> str:
    """Normalize an address: lower-case, punctuation collapsed, every
    street-type suffix ('straße', 'str.', 'weg', ...) replaced by 'str'."""
    if not address:
        return ""
    text = str(address).lower()
    text = _STREET_SUFFIX.sub("str", text)
    text = _fold(text)
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def extract_postal_city(address: Optional[str]) -> tuple[str, str]:
    """Find the first '12345 City' pair in an address. ("", "") if absent."""
    if not address:
        return "", ""
    match = POSTAL_CITY_PATTERN.search(str(address))
    if not match:
        return "", ""
    return match.group(1), match.group(2).strip()


def normalize_tax_id(value: Optional[str]) -> str:
    """Upper-case and remove whitespace: 'de 123 456 789' -> 'DE123456789'."""
    if not value:
        return ""
    return re.sub(r"\s+", "", str(value)).upper()


def is_valid_tax_id(value: Optional[str]) -> bool:
    return bool(value) and TAX_ID_PATTERN.match(value) is not None


def normalize_learning_text(text: Optional[str]) -> str:
    """Key form of raw text for the correction engine."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", str(text).lower()).strip()
