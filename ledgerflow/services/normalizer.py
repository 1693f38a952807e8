"""
Record Normalizer for Ledgerflow

Converts heterogeneous record shapes into the canonical Record:
- Ledger backend rows ("expense_date", "category_name", ...)
- Extracted document rows ("date", "description", ...)
- Bank statement rows ("transaction_date", "narration", ...)

Invalid amounts normalize to 0, invalid or missing dates to None.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ledgerflow.models.records import Record

AMOUNT_FIELDS = ("amount", "value", "total", "expense_amount", "net_amount")
DATE_FIELDS = ("date", "expense_date", "transaction_date", "posted_date", "booking_date")
DESCRIPTION_FIELDS = ("description", "memo", "narration", "merchant", "merchant_name", "category_name")
CATEGORY_FIELDS = ("category", "category_name")
ID_FIELDS = ("source_id", "id", "expense_id", "transaction_id")

DEFAULT_CATEGORY = "other"

MONTH_NAMES = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

# Tried in order; day-first slashes win over month-first for ambiguous dates
NUMERIC_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
)

_MONTH_FIRST = re.compile(r"^([a-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})$")
_DAY_FIRST = re.compile(r"^(\d{1,2})(?:st|nd|rd|th)?\s+([a-z]+)\.?,?\s+(\d{4})$")
_AMOUNT_NOISE = re.compile(r"[^\d.\-]")

RawRecord = Union[Mapping[str, Any], Record]


def _first(raw: Mapping[str, Any], fields: Iterable[str]) -> Any:
    for name in fields:
        value = raw.get(name)
        if value is not None and value != "":
            return value
    return None


def parse_amount(value: Any) -> Decimal:
    """
    Parse an amount into a Decimal.

    Examples:
        "1,200.50" -> Decimal("1200.50")
        "₹500"     -> Decimal("500")
        "abc"      -> Decimal("0")
    """
    if value is None or isinstance(value, bool):
        return Decimal("0")
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")
    if isinstance(value, (int, float)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return Decimal("0")
        return parsed if parsed.is_finite() else Decimal("0")

    text = _AMOUNT_NOISE.sub("", str(value))
    if not text or text in {"-", ".", "-."}:
        return Decimal("0")
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def normalize_date(value: Any, today: Optional[date] = None) -> Optional[date]:
    """
    Normalize a date in any supported format.

    Supported:
    - date / datetime instances
    - "2026-02-03", "2026/02/03", "03/02/2026", "03-02-2026"
    - "Feb 3, 2026", "February 3 2026", "3 Feb 2026"
    - ISO datetimes ("2026-02-03T10:00:00Z")
    - "today" / "yesterday"
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    stripped = value.strip()
    text = stripped.lower()
    if not text:
        return None

    if text in ("today", "yesterday"):
        base = today or date.today()
        return base if text == "today" else base - timedelta(days=1)

    for fmt in NUMERIC_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    month_first = _MONTH_FIRST.match(text)
    if month_first:
        month_name, day, year = month_first.groups()
        return _build_date(year, MONTH_NAMES.get(month_name), day)

    day_first = _DAY_FIRST.match(text)
    if day_first:
        day, month_name, year = day_first.groups()
        return _build_date(year, MONTH_NAMES.get(month_name), day)

    try:
        return datetime.fromisoformat(stripped.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _build_date(year: str, month: Optional[int], day: str) -> Optional[date]:
    if month is None:
        return None
    try:
        return date(int(year), month, int(day))
    except ValueError:
        return None


def normalize_text(value: Any) -> str:
    if value is None:
        return ""
    return " ".join(str(value).split()).lower()


def normalize_record(raw: RawRecord, source: str = "unknown") -> Record:
    """Map a raw record onto the canonical comparable form."""
    if isinstance(raw, Record):
        return raw

    source_id = _first(raw, ID_FIELDS)
    category = normalize_text(_first(raw, CATEGORY_FIELDS)) or DEFAULT_CATEGORY

    return Record(
        amount=parse_amount(_first(raw, AMOUNT_FIELDS)),
        date=normalize_date(_first(raw, DATE_FIELDS)),
        description=normalize_text(_first(raw, DESCRIPTION_FIELDS)),
        category=category,
        source_id=str(source_id) if source_id is not None else None,
        source=source,
        raw=dict(raw),
    )


def normalize_records(raws: Optional[Iterable[RawRecord]], source: str = "unknown") -> List[Record]:
    return [normalize_record(raw, source) for raw in (raws or [])]


def describe_record(record: Record) -> Dict[str, Any]:
    """Compact, JSON-friendly view used in logs and summaries."""
    return {
        "amount": float(record.amount),
        "date": record.date.isoformat() if record.date else None,
        "description": record.description,
        "category": record.category,
        "source_id": record.source_id,
    }


_DATE_TOKENS = (
    re.compile(r"\b\d{4}[-/]\d{2}[-/]\d{2}\b"),
    re.compile(r"\b\d{1,2}[/.-]\d{1,2}[/.-]\d{4}\b"),
    re.compile(r"\b[A-Za-z]{3,9}\.? \d{1,2}(?:st|nd|rd|th)?,? \d{4}\b"),
    re.compile(r"\b\d{1,2}(?:st|nd|rd|th)? [A-Za-z]{3,9}\.?,? \d{4}\b"),
)
_AMOUNT_TOKEN = re.compile(r"(?<![\w.,])[-+]?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?(?![\w.,]*\d)")


def find_date(line: str) -> Optional[Tuple[re.Match, date]]:
    for pattern in _DATE_TOKENS:
        for match in pattern.finditer(line):
            parsed = normalize_date(match.group())
            if parsed is not None:
                return match, parsed
    return None


def extract_records(text: Optional[str]) -> List[Dict[str, Any]]:
    """
    Pull expense rows out of plain document text, one row per line.

    A line counts when it holds a recognizable date followed by an amount:

        03/02/2026  Lunch at Cafe Blue    1,200.50    10,500.00

    The first amount with cents after the date is the expense (a trailing
    running balance is ignored); on lines without cents the last number is.
    The description is the text between date and amount, or the text
    before the date when that is empty.
    """
    rows: List[Dict[str, Any]] = []
    for number, line in enumerate((text or "").splitlines(), start=1):
        line = line.strip()
        found = find_date(line) if line else None
        if found is None:
            continue
        match, parsed = found

        amounts = list(_AMOUNT_TOKEN.finditer(line, match.end()))
        if not amounts:
            continue
        amount_match = next((m for m in amounts if "." in m.group()), amounts[-1])
        amount = parse_amount(amount_match.group())
        if amount == 0:
            continue

        description = line[match.end():amount_match.start()].strip(" \t|:-,")
        if not description:
            description = line[:match.start()].strip(" \t|:-,")
        rows.append({
            "date": parsed.isoformat(),
            "amount": str(abs(amount)),
            "description": " ".join(description.split()),
            "line": number,
        })
    return rows
