"""
normalize.py - Data normalization module.

Core normalizers:
    normalize_text(value)         -> trimmed string ('' for None)
    normalize_cost(value)         -> non-negative float rounded to 2 decimals
    normalize_sheet_date(value)   -> ISO YYYY-MM-DD ('' when unrecognized)

Write/compare helpers:
    to_sheet_date(iso_date)       -> M/D/YYYY text the store parses as a date
    duplicate_key(merchant, date) -> (lowercased merchant, ISO date)
    parse_date_loose(value)       -> datetime | None, for display ordering only

Design principles:
    - SAME normalization on the write side and the read side
    - Pure transformations, no store or model calls
    - Invalid input degrades to neutral defaults
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

NULL_TOKENS = {"n/a", "na", "none", "null", "unknown", "nan"}
CURRENCY_SYMBOLS = ("$", "€", "£", "¥")

# Stored date representations recognized for duplicate detection:
# ISO (what extraction produces), M/D/YYYY (what the append path writes) and
# the Date column's display pattern "mmmm d, yyyy" (what formatted reads return).
SHEET_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%B %d, %Y")

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_text(value: Any) -> str:
    """Return a trimmed string; None and non-text degrade to ''."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, float) and not math.isfinite(value):
        return ""
    try:
        return str(value).strip()
    except Exception:
        return ""


def is_negative_cost(value: Any) -> bool:
    """True for negative numbers and "-5", "-$5", "$-5" or "(5.00)" style strings."""
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value < 0
    text = normalize_text(value)
    if not any(ch.isdigit() for ch in text):
        return False
    return text.startswith("-") or (text.startswith("(") and text.endswith(")")) or "-$" in text or "$-" in text


def normalize_cost(value: Any) -> float:
    """Normalize a cost cell or model value into a non-negative 2-decimal float.

    Strings may carry currency symbols and thousands separators
    ("$1,234.56" -> 1234.56). Anything unparseable becomes 0.0.
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number):
            logger.warning("normalize_cost | non_finite=%r | fallback=0.0", value)
            return 0.0
        if number < 0:
            logger.warning("normalize_cost | negative=%r | fallback=0.0", value)
            return 0.0
        return round(number, 2)

    cleaned = normalize_text(value)
    if not cleaned or cleaned.lower() in NULL_TOKENS:
        return 0.0

    is_negative = is_negative_cost(cleaned)

    for symbol in CURRENCY_SYMBOLS:
        cleaned = cleaned.replace(symbol, "")
    cleaned = cleaned.replace(",", "").replace("(", "").replace(")", "").strip()
    if not cleaned:
        return 0.0

    try:
        number = float(cleaned)
    except (TypeError, ValueError):
        logger.warning("normalize_cost | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0

    if not math.isfinite(number):
        return 0.0
    if is_negative or number < 0:
        logger.warning("normalize_cost | negative=%r | fallback=0.0", value)
        return 0.0
    return round(number, 2)


def normalize_sheet_date(value: Any) -> str:
    """Normalize a stored or extracted date to ISO YYYY-MM-DD.

    Only the representations in SHEET_DATE_FORMATS are recognized; anything
    else returns ''.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = normalize_text(value)
    if not text:
        return ""

    for fmt in SHEET_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue

    logger.debug("normalize_sheet_date | unrecognized | raw=%r", text)
    return ""


def is_iso_date(value: Any) -> bool:
    """True for a real calendar date written as YYYY-MM-DD."""
    text = normalize_text(value)
    if not ISO_DATE_RE.match(text):
        return False
    try:
        datetime.strptime(text, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def to_sheet_date(iso_date: str) -> str:
    """Render an ISO date as M/D/YYYY so a USER_ENTERED write stores a real date.

    Non-ISO input is passed through unchanged.
    """
    text = normalize_text(iso_date)
    if not is_iso_date(text):
        logger.warning("to_sheet_date | non_iso=%r | fallback='write as given'", text)
        return text
    parsed = datetime.strptime(text, "%Y-%m-%d")
    return f"{parsed.month}/{parsed.day}/{parsed.year}"


def duplicate_key(merchant: Any, date_value: Any) -> tuple[str, str]:
    """Key used to compare new and existing transactions.

    Unrecognized dates fall back to their lowercased text so they still only
    match themselves.
    """
    merchant_key = normalize_text(merchant).lower()
    date_key = normalize_sheet_date(date_value) or normalize_text(date_value).lower()
    return merchant_key, date_key


def parse_date_loose(value: Any) -> Optional[datetime]:
    """Best-effort date parse used only to order transactions for display."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = normalize_text(value)
    if not text or not any(char.isdigit() for char in text):
        return None
    if text.lower() in NULL_TOKENS:
        return None

    try:
        return dateparser.parse(text, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.debug(
            "parse_date_loose | parse_error=%s | raw=%r | fallback=None",
            type(exc).__name__,
            text,
        )
        return None
