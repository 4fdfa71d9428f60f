# =============================================================================
# Answer Normalization & Agreement Scoring
# =============================================================================
#
# Providers phrase the same answer differently ("Yes.", "YES - see page 4",
# "2024-03-05" vs "03/05/2024"). Before answers can be compared they are
# reduced to a canonical form per expected type:
#
#   boolean → "YES" / "NO"           (keyword containment, first wins)
#   date    → "MM-DD-YY"             (numeric forms by regex, written forms
#                                     via python-dateutil)
#   number  → canonical decimal      (price-parser extracts the amount)
#   json    → sorted, compact dump
#   text    → lower-cased, whitespace-collapsed
#
# Agreement is continuous in [0, 1] rather than boolean, so the consensus
# engine can apply thresholds:
#   boolean 0.9 same / 0.1 different, date 0.4 year + 0.3 month + 0.3 day,
#   number 1 - relative difference, text Jaccard word overlap.
# =============================================================================

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from dateutil import parser as date_parser
from price_parser import Price


class AnswerType(StrEnum):
    BOOLEAN = "boolean"
    DATE = "date"
    NUMBER = "number"
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class DateParts:
    year: int
    month: int
    day: int

    def canonical(self) -> str:
        return f"{self.month:02d}-{self.day:02d}-{self.year % 100:02d}"


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_CONFIDENCE_MARKER = re.compile(r"\[CONFIDENCE:\s*([0-9]*\.?[0-9]+)\s*\]", re.IGNORECASE)
_CONFIDENCE_JSON = re.compile(r'"confidence"\s*:\s*"?([0-9]*\.?[0-9]+)', re.IGNORECASE)

_YES = re.compile(r"\b(?:yes|true|s[ií])\b", re.IGNORECASE)
_NO = re.compile(r"\b(?:no|false)\b", re.IGNORECASE)

_ISO_DATE = re.compile(r"\b(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})\b")
_US_DATE = re.compile(r"\b(\d{1,2})[-/.](\d{1,2})[-/.](\d{4}|\d{2})\b")
_MONTH_NAME = re.compile(
    r"\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\b",
    re.IGNORECASE,
)

# Fills components missing from written dates ("March 2024" → day 1)
_DATE_DEFAULT = datetime(2000, 1, 1)


# ---------------------------------------------------------------------------
# Confidence Markers
# ---------------------------------------------------------------------------


def extract_confidence(text: str, default: float = 0.5) -> float:
    """Read "[CONFIDENCE: 0.87]" or a JSON "confidence" field, clamped to [0, 1]."""
    match = _CONFIDENCE_MARKER.search(text) or _CONFIDENCE_JSON.search(text)
    if not match:
        return default
    value = float(match.group(1))
    if 1.0 < value <= 100.0:
        value /= 100.0
    return min(max(value, 0.0), 1.0)


def strip_confidence_markers(text: str) -> str:
    return _CONFIDENCE_MARKER.sub("", text).strip()


# ---------------------------------------------------------------------------
# Per-Type Parsing
# ---------------------------------------------------------------------------


def parse_boolean(text: str) -> str | None:
    """'YES' or 'NO' by the first yes/no keyword, else None."""
    yes = _YES.search(text)
    no = _NO.search(text)
    if yes and (no is None or yes.start() < no.start()):
        return "YES"
    if no:
        return "NO"
    return None


def parse_date(text: str) -> DateParts | None:
    """
    Find the first date in `text`.

    Numeric dates are read as YYYY-MM-DD or MM-DD-YY(YY); a first component
    above 12 is taken as a day (DD-MM). Written dates ("March 5, 2024",
    "5 Mar 2024") go through dateutil.
    """
    match = _ISO_DATE.search(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        parts = _valid_date(year, month, day)
        if parts:
            return parts

    match = _US_DATE.search(text)
    if match:
        month, day, year = (int(g) for g in match.groups())
        if month > 12 and day <= 12:
            month, day = day, month
        parts = _valid_date(_expand_year(year), month, day)
        if parts:
            return parts

    if _MONTH_NAME.search(text) and any(ch.isdigit() for ch in text):
        try:
            parsed = date_parser.parse(text, fuzzy=True, default=_DATE_DEFAULT)
        except (ValueError, OverflowError):
            return None
        return DateParts(parsed.year, parsed.month, parsed.day)

    return None


def parse_number(text: str) -> float | None:
    """First monetary or plain amount in `text` ("$1,250,000.00" → 1250000.0)."""
    return Price.fromstring(text).amount_float


def format_number(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return f"{value:.6f}".rstrip("0").rstrip(".")


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 2000 + year if year < 70 else 1900 + year


def _valid_date(year: int, month: int, day: int) -> DateParts | None:
    try:
        datetime(year, month, day)
    except ValueError:
        return None
    return DateParts(year, month, day)


def _collapse(text: str) -> str:
    return " ".join(text.lower().split())


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize_answer(text: str, expected_type: AnswerType | str) -> str:
    """Canonical form of an answer for comparison and output."""
    expected_type = AnswerType(expected_type)
    cleaned = strip_confidence_markers(text)

    if expected_type is AnswerType.BOOLEAN:
        return parse_boolean(cleaned) or cleaned.upper()

    if expected_type is AnswerType.DATE:
        parts = parse_date(cleaned)
        return parts.canonical() if parts else _collapse(cleaned)

    if expected_type is AnswerType.NUMBER:
        value = parse_number(cleaned)
        return format_number(value) if value is not None else _collapse(cleaned)

    if expected_type is AnswerType.JSON:
        try:
            return json.dumps(json.loads(cleaned), sort_keys=True, separators=(",", ":"))
        except ValueError:
            return _collapse(cleaned)

    return _collapse(cleaned)


def answers_match(
    first: str,
    second: str,
    expected_type: AnswerType | str,
    number_tolerance: float = 0.01,
) -> bool:
    """
    Whether two raw answers say the same thing.

    Numbers match within a relative tolerance; dates match on parsed
    year/month/day; everything else on the normalized form.
    """
    expected_type = AnswerType(expected_type)
    first, second = strip_confidence_markers(first), strip_confidence_markers(second)

    if expected_type is AnswerType.NUMBER:
        a, b = parse_number(first), parse_number(second)
        if a is not None and b is not None:
            return relative_difference(a, b) <= number_tolerance

    if expected_type is AnswerType.DATE:
        a_parts, b_parts = parse_date(first), parse_date(second)
        if a_parts and b_parts:
            return (
                a_parts.year % 100 == b_parts.year % 100
                and a_parts.month == b_parts.month
                and a_parts.day == b_parts.day
            )

    return normalize_answer(first, expected_type) == normalize_answer(second, expected_type)


def relative_difference(a: float, b: float) -> float:
    """|a - b| relative to the larger magnitude; 0.0 when both are zero."""
    scale = max(abs(a), abs(b))
    if scale == 0:
        return 0.0
    return abs(a - b) / scale


def agreement_score(first: str, second: str, expected_type: AnswerType | str) -> float:
    """Continuous agreement in [0, 1] between two raw answers."""
    expected_type = AnswerType(expected_type)
    a = _collapse(strip_confidence_markers(first))
    b = _collapse(strip_confidence_markers(second))
    if a == b:
        return 1.0

    if expected_type is AnswerType.BOOLEAN:
        a_bool, b_bool = parse_boolean(a), parse_boolean(b)
        if a_bool and b_bool:
            return 0.9 if a_bool == b_bool else 0.1

    elif expected_type is AnswerType.DATE:
        a_parts, b_parts = parse_date(a), parse_date(b)
        if a_parts and b_parts:
            score = 0.0
            if a_parts.year % 100 == b_parts.year % 100:
                score += 0.4
            if a_parts.month == b_parts.month:
                score += 0.3
            if a_parts.day == b_parts.day:
                score += 0.3
            return round(score, 4)

    elif expected_type is AnswerType.NUMBER:
        a_num, b_num = parse_number(a), parse_number(b)
        if a_num is not None and b_num is not None:
            mean = (abs(a_num) + abs(b_num)) / 2
            if mean == 0:
                return 1.0 if a_num == b_num else 0.0
            return max(0.0, 1.0 - abs(a_num - b_num) / mean)

    elif expected_type is AnswerType.JSON:
        if normalize_answer(a, AnswerType.JSON) == normalize_answer(b, AnswerType.JSON):
            return 1.0

    a_words, b_words = set(a.split()), set(b.split())
    union = a_words | b_words
    if not union:
        return 1.0
    return len(a_words & b_words) / len(union)
