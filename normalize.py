"""
normalize.py - Field normalization shared by scoring, duplicate checks and loading.

Core normalizers:
    normalize_name(name)        -> cleaned party name for similarity scoring
    normalize_reference(text)   -> case-folded, whitespace-collapsed reference
    parse_date(value)           -> datetime.date or None
    parse_amount(value)         -> float (NaN when unparseable)

Design principles:
    - SAME normalization on BOTH sides of every comparison
    - Pure transformations, no I/O
    - Invalid input degrades to neutral values; the resolver decides what a
      missing date or amount means for the record
"""

from __future__ import annotations

import functools
import math
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

# Legal-form words dropped from the end of a name: "Beta Inc" == "Beta".
STRIP_SUFFIXES: list[str] = [
    "inc",
    "incorporated",
    "llc",
    "llp",
    "corp",
    "corporation",
    "co",
    "company",
    "ltd",
    "limited",
    "plc",
    "gmbh",
    "sa",
]

NULL_TOKENS = {"n/a", "na", "none", "null", "unknown", "nan", "nat"}


def normalize_name(name: Any) -> str:
    """Normalize a payer or customer name for comparison."""
    if name is None:
        return ""

    if not isinstance(name, str):
        name = str(name)

    if not name.strip():
        return ""

    text = name.lower().strip()
    text = unicodedata.normalize("NFD", text)
    text = "".join(char for char in text if unicodedata.category(char) != "Mn")

    text = text.replace("&", " and ")
    # Keep Unicode letters (for international names) while stripping punctuation.
    text = re.sub(r"[^\w\s]", " ", text, flags=re.UNICODE)
    text = text.replace("_", " ")

    words = text.split()
    while len(words) > 1 and words[-1] in STRIP_SUFFIXES:
        words.pop()
    normalized = " ".join(words)

    logger.debug("normalize_name | raw=%r | normalized=%r", name, normalized)
    return normalized


def normalize_reference(text: Any) -> str:
    """Case-insensitive, whitespace-normalized reference text."""
    if text is None:
        return ""
    if isinstance(text, float) and math.isnan(text):
        return ""
    return " ".join(str(text).split()).casefold()


@functools.lru_cache(maxsize=4096)
def _parse_date_text(text: str) -> Optional[date]:
    if not any(char.isdigit() for char in text):
        logger.debug("parse_date | rejected_no_digits | raw=%r", text)
        return None

    if text.lower() in NULL_TOKENS:
        return None

    # Bare years, bare numbers and month/year fragments are not dates.
    if re.fullmatch(r"\d+", text):
        return None
    if re.fullmatch(r"\d{1,2}[/-]\d{2,4}", text):
        return None
    if re.fullmatch(r"[A-Za-z]{3,9}\s+\d{4}", text):
        return None

    try:
        parsed = dateparser.parse(text, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "parse_date | parse_error=%s | raw=%r | fallback=None",
            type(exc).__name__,
            text,
        )
        return None

    if parsed is None:
        logger.warning("parse_date | parse_failed | raw=%r | fallback=None", text)
        return None

    return parsed.date()


def parse_date(value: Any) -> Optional[date]:
    """Parse a date value into `datetime.date`; None when missing or invalid."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, float) and math.isnan(value):
        return None

    text = str(value).strip()
    if not text:
        return None
    return _parse_date_text(text)


def days_between(first: Any, second: Any) -> Optional[int]:
    """Absolute calendar days between two date values, None if either is invalid."""
    a = parse_date(first)
    b = parse_date(second)
    if a is None or b is None:
        return None
    return abs((a - b).days)


def parse_amount(value: Any) -> float:
    """Parse an amount cell into a float rounded to 2 decimals.

    Negative amounts keep their sign (`-50`, `(50.00)`, `-$50`) so the
    resolver can report them. Unparseable input becomes NaN.
    """
    if value is None:
        return math.nan

    if isinstance(value, bool):
        return math.nan

    if isinstance(value, (int, float)):
        number = float(value)
        return round(number, 2) if math.isfinite(number) else math.nan

    cleaned = str(value).strip()
    if not cleaned or cleaned.lower() in NULL_TOKENS:
        return math.nan

    is_negative = (
        cleaned.startswith("-")
        or (cleaned.startswith("(") and cleaned.endswith(")"))
        or "-$" in cleaned
        or "$-" in cleaned
    )

    cleaned = (
        cleaned.replace("$", "")
        .replace("€", "")
        .replace("£", "")
        .replace("(", "")
        .replace(")", "")
        .replace(",", "")
        .replace("-", "")
        .strip()
    )

    try:
        number = float(cleaned)
    except (ValueError, TypeError):
        logger.warning("parse_amount | parse_failed | raw=%r | fallback=nan", value)
        return math.nan

    if not math.isfinite(number):
        logger.warning("parse_amount | non_finite=%r | fallback=nan", value)
        return math.nan

    number = -abs(number) if is_negative else number
    normalized = round(number, 2)
    logger.debug("parse_amount | raw=%r | normalized=%s", value, normalized)
    return normalized
