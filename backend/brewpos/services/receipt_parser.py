# Overview: Pure text heuristics for wallet-transfer receipts; no database or OCR access.

"""
Receipt Text Parsing

Everything here operates on OCR output text and is side-effect free, so each
rule can be tested on its own.

Timestamp extraction is an ordered list of parser strategies, most specific
first. Each strategy is a function (text, now_local) -> iterator of naive
wall-clock datetimes in match order. The first candidate that falls inside
the plausibility range wins.

Time semantics:
- Receipts print local wall-clock time without an offset. Strategies work in
  that local time; extract_transaction_timestamp() converts the winner to
  UTC-naive using the configured receipt timezone.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import Callable, Iterator, Optional

from brewpos.time_utils import local_to_utc_naive, utc_naive_to_local, utcnow


DEFAULT_PROVIDER_KEYWORD = "gcash"
FRESHNESS_WINDOW = timedelta(minutes=10)

REFERENCE_MIN_LENGTH = 7
REFERENCE_MAX_LENGTH = 20


# =============================================================================
# DOMAIN CHECK
# =============================================================================

_REFERENCE_LABEL = (
    r"(?:reference\s*(?:no|number|\#)?"
    r"|ref\b\.?\s*(?:no|number|\#)?"
    r"|txn\s*id"
    r"|transaction\s*id)"
)

_REFERENCE_LABEL_RE = re.compile(r"\b" + _REFERENCE_LABEL, re.IGNORECASE)

_RECEIPT_PHRASE_RE = re.compile(
    r"\b(?:you\s+have\s+received|you\s+have\s+sent|sent\s+money|received\s+money"
    r"|paid\s+to|transaction\s+successful|sent\s+via)\b",
    re.IGNORECASE,
)


def is_wallet_transfer_like(text: str, provider_keyword: str = DEFAULT_PROVIDER_KEYWORD) -> bool:
    """
    True when the text shows at least 2 of: the provider keyword, a
    reference-number label, a typical receipt phrase.
    """
    if not text:
        return False
    indicators = [
        bool(provider_keyword) and provider_keyword.lower() in text.lower(),
        _REFERENCE_LABEL_RE.search(text) is not None,
        _RECEIPT_PHRASE_RE.search(text) is not None,
    ]
    return sum(indicators) >= 2


# =============================================================================
# REFERENCE CODE
# =============================================================================

# Label, optional punctuation, then either space-grouped digits
# ("1234 567 891234") or one alphanumeric token
_LABELLED_REFERENCE_RE = re.compile(
    r"\b" + _REFERENCE_LABEL + r"\s*[.:#]*\s*(\d[\d ]{5,24}\d|[a-z0-9]{7,20})\b",
    re.IGNORECASE,
)

# Bare token; must contain a digit so ordinary words never qualify
_BARE_REFERENCE_RE = re.compile(r"\b(?=[a-z]*\d)([a-z0-9]{7,20})\b", re.IGNORECASE)


def _valid_reference(candidate: str) -> Optional[str]:
    code = candidate.replace(" ", "").strip().upper()
    if REFERENCE_MIN_LENGTH <= len(code) <= REFERENCE_MAX_LENGTH:
        return code
    return None


def extract_reference_code(text: str) -> Optional[str]:
    """Labelled reference first, then any bare 7-20 char token. Uppercased."""
    if not text:
        return None

    for match in _LABELLED_REFERENCE_RE.finditer(text):
        code = _valid_reference(match.group(1))
        if code:
            return code

    for match in _BARE_REFERENCE_RE.finditer(text):
        code = _valid_reference(match.group(1))
        if code:
            return code

    return None


def mask_reference_code(code: str) -> str:
    """
    Mask a reference code for logs and messages: first 4 + stars + last 2.

    Length is preserved; codes too short to mask safely become '******'.
    """
    if code is None or len(code) <= 6:
        return "******"
    return f"{code[:4]}{'*' * (len(code) - 6)}{code[-2:]}"


# =============================================================================
# TIMESTAMP
# =============================================================================

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

# hour, minute, optional second, optional meridiem
_TIME = r"(\d{1,2})[:.](\d{2})(?:[:.](\d{2}))?\s*([AaPp][Mm])?\b"
_TIME_RE = re.compile(_TIME)

_TEXTUAL_MONTH_RE = re.compile(
    r"\b([A-Za-z]{3,9})\.?\s+(\d{1,2}),?\s+(\d{4}),?\s+" + _TIME
)
_ISO_LIKE_RE = re.compile(
    r"\b(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:T|\s+)" + _TIME
)
_US_STYLE_RE = re.compile(
    r"\b(\d{1,2})[-/](\d{1,2})[-/](\d{4}),?\s+" + _TIME
)
_DAY_MONTH_NAME_RE = re.compile(
    r"\b(\d{1,2})[\s-]([A-Za-z]{3,9})\.?[\s-](\d{4}),?\s+" + _TIME
)
_RELATIVE_DAY_RE = re.compile(r"\b(?:today|now)\s+" + _TIME, re.IGNORECASE)
_DATE_ONLY_RE = re.compile(r"\b(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})\b")
_LABELLED_TIME_RE = re.compile(r"\b(?:date|time|on|at)[\s:]*" + _TIME, re.IGNORECASE)
_BARE_TIME_RE = re.compile(r"\b" + _TIME)

# How far after a bare date to look for its time
NEARBY_TIME_WINDOW = 50


def normalize_ocr_text(text: str) -> str:
    """
    Undo common OCR confusions around numbers.

    - O/o touching a digit -> 0
    - I, l or | between digits -> 1
    - runs of spaces/tabs -> one space

    '.' vs ':' time separators are accepted by the patterns themselves.
    """
    text = re.sub(r"(?<=\d)[Oo]|[Oo](?=\d)", "0", text)
    text = re.sub(r"(?<=\d)[Il|](?=\d)", "1", text)
    return re.sub(r"[ \t]+", " ", text)


def _month_number(name: str) -> Optional[int]:
    return _MONTHS.get(name[:3].lower()) if name else None


def _to_hour(hour: str, meridiem: Optional[str]) -> Optional[int]:
    h = int(hour)
    if meridiem:
        if not 1 <= h <= 12:
            return None
        is_pm = meridiem.lower() == "pm"
        if h == 12:
            return 12 if is_pm else 0
        return h + 12 if is_pm else h
    return h if 0 <= h <= 23 else None


def _build(year, month, day, hour, minute, second, meridiem) -> Optional[datetime]:
    if month is None:
        return None
    h = _to_hour(hour, meridiem)
    if h is None:
        return None
    try:
        return datetime(int(year), int(month), int(day), h, int(minute), int(second or 0))
    except ValueError:
        return None


def _on_day(day: date, time_groups) -> Optional[datetime]:
    hour, minute, second, meridiem = time_groups
    return _build(day.year, day.month, day.day, hour, minute, second, meridiem)


def textual_month_datetime(text: str, now: datetime) -> Iterator[datetime]:
    """'Nov 19, 2025 3:55PM', 'January 15 2024 14:30'"""
    for m in _TEXTUAL_MONTH_RE.finditer(text):
        month_name, day, year, hour, minute, second, meridiem = m.groups()
        dt = _build(year, _month_number(month_name), day, hour, minute, second, meridiem)
        if dt:
            yield dt


def iso_like_datetime(text: str, now: datetime) -> Iterator[datetime]:
    """'2024-01-15 14:30', '2024/01/15T14:30:05'"""
    for m in _ISO_LIKE_RE.finditer(text):
        year, month, day, hour, minute, second, meridiem = m.groups()
        dt = _build(year, month, day, hour, minute, second, meridiem)
        if dt:
            yield dt


def us_style_datetime(text: str, now: datetime) -> Iterator[datetime]:
    """'01/15/2024 2:30 PM', '1-15-2024 14:30' (month first)"""
    for m in _US_STYLE_RE.finditer(text):
        month, day, year, hour, minute, second, meridiem = m.groups()
        dt = _build(year, month, day, hour, minute, second, meridiem)
        if dt:
            yield dt


def day_month_name_datetime(text: str, now: datetime) -> Iterator[datetime]:
    """'15 Jan 2024 14:30', '15-Jan-2024 2:30 PM'"""
    for m in _DAY_MONTH_NAME_RE.finditer(text):
        day, month_name, year, hour, minute, second, meridiem = m.groups()
        dt = _build(year, _month_number(month_name), day, hour, minute, second, meridiem)
        if dt:
            yield dt


def relative_day_time(text: str, now: datetime) -> Iterator[datetime]:
    """'Today 2:30 PM' -> today's date"""
    for m in _RELATIVE_DAY_RE.finditer(text):
        dt = _on_day(now.date(), m.groups())
        if dt:
            yield dt


def date_then_nearby_time(text: str, now: datetime) -> Iterator[datetime]:
    """'2024-01-15' followed within a short window by a time."""
    for m in _DATE_ONLY_RE.finditer(text):
        year, month, day = m.groups()
        tail = text[m.end():m.end() + NEARBY_TIME_WINDOW]
        tm = _TIME_RE.search(tail)
        if tm is None:
            continue
        hour, minute, second, meridiem = tm.groups()
        dt = _build(year, month, day, hour, minute, second, meridiem)
        if dt:
            yield dt


def labelled_time_today(text: str, now: datetime) -> Iterator[datetime]:
    """'Time: 14:30', 'at 2:30 PM' -> today's date"""
    for m in _LABELLED_TIME_RE.finditer(text):
        dt = _on_day(now.date(), m.groups())
        if dt:
            yield dt


def bare_time_today(text: str, now: datetime) -> Iterator[datetime]:
    """Any 'H:MM' -> today's date. Last resort."""
    for m in _BARE_TIME_RE.finditer(text):
        dt = _on_day(now.date(), m.groups())
        if dt:
            yield dt


TimestampStrategy = Callable[[str, datetime], Iterator[datetime]]

TIMESTAMP_STRATEGIES: tuple[TimestampStrategy, ...] = (
    textual_month_datetime,
    iso_like_datetime,
    us_style_datetime,
    day_month_name_datetime,
    relative_day_time,
    date_then_nearby_time,
    labelled_time_today,
    bare_time_today,
)


def plausible_range(now: datetime) -> tuple[datetime, datetime]:
    """Jan 1 ten years back through Dec 31 next year."""
    return datetime(now.year - 10, 1, 1), datetime(now.year + 1, 12, 31, 23, 59, 59)


def extract_transaction_timestamp(
    text: str,
    *,
    now: datetime | None = None,
    tz_name: str = "UTC",
    strategies: tuple[TimestampStrategy, ...] = TIMESTAMP_STRATEGIES,
) -> Optional[datetime]:
    """
    Find the transaction time printed on a receipt.

    Args:
        text: OCR output
        now: server time, UTC-naive (defaults to utcnow())
        tz_name: timezone the receipt's wall-clock time is printed in

    Returns:
        UTC-naive datetime, or None when no strategy yields a plausible date
    """
    if not text:
        return None

    now_local = utc_naive_to_local(now or utcnow(), tz_name)
    earliest, latest = plausible_range(now_local)
    normalized = normalize_ocr_text(text)

    for strategy in strategies:
        for candidate in strategy(normalized, now_local):
            if earliest <= candidate <= latest:
                return local_to_utc_naive(candidate, tz_name)
    return None


def is_transaction_recent(
    transaction_time: datetime,
    server_time: datetime | None = None,
    window: timedelta = FRESHNESS_WINDOW,
) -> bool:
    """
    Inclusive freshness window: 0 <= server_time - transaction_time <= window.

    Future timestamps (negative difference) are never recent.
    """
    server_time = server_time or utcnow()
    age = server_time - transaction_time
    return timedelta(0) <= age <= window
