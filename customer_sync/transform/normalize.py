"""Scalar normalizers for identifiers, numbers and timestamps.

Every normalizer is fail-soft: values that cannot be interpreted come back
as ``None`` instead of raising.
"""

import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Canonical output for every timestamp column
CANONICAL_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

IDENTIFIER_STRIP_RE = re.compile(r"[^A-Za-z0-9_.\-]")
NUMBER_STRIP_RE = re.compile(r"[^0-9,.\-]")

# DD/MM/YYYY[ HH:MM[:SS]]
BR_DATE_RE = re.compile(
    r"^(\d{2})/(\d{2})/(\d{4})(?:\s+(\d{2}):(\d{2})(?::(\d{2}))?)?$"
)
# YYYY-MM-DD[ T]HH:MM:SS[Z] and plain YYYY-MM-DD
SQL_DATETIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})(?:[ T](\d{2}):(\d{2}):(\d{2})Z?)?$"
)
# Zero-date sentinels: 0000-..., 00/00/0000, DD/MM/0000
ZERO_DATE_RE = re.compile(r"^(0{4}-\d{2}-\d{2}|0{2}/0{2}/\d{4}|\d{2}/\d{2}/0{4}|0{4}-0{2})")

DATE_KEY_RE = re.compile(r"data|hora|_em$|criado|created_at|updated_at", re.IGNORECASE)

# Unix timestamps above this are treated as milliseconds (year 3000 in seconds)
EPOCH_MILLIS_THRESHOLD = 32503680000


def normalize_identifier(
    value: Any,
    strip_leading_zeros: bool = True,
) -> Optional[str]:
    """Normalize a loosely formatted identifier.

    Args:
        value: Raw identifier (string or number)
        strip_leading_zeros: Drop leading zeros ("007" -> "7"). An identifier
            made only of zeros collapses to "0".

    Returns:
        Cleaned identifier or None when nothing usable remains
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        if value.is_integer():
            value = int(value)

    cleaned = IDENTIFIER_STRIP_RE.sub("", str(value).strip())
    if not cleaned:
        return None

    if strip_leading_zeros:
        cleaned = cleaned.lstrip("0") or "0"

    return cleaned


def normalize_number(value: Any) -> Optional[float]:
    """Parse a locale-formatted number.

    "1.234,56" -> 1234.56 (dot thousands, comma decimal)
    "12,5"     -> 12.5
    "R$ 30.00" -> 30.0
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    cleaned = NUMBER_STRIP_RE.sub("", str(value))
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    try:
        number = float(cleaned)
    except ValueError:
        return None

    return number if math.isfinite(number) else None


def normalize_integer(value: Any) -> Optional[int]:
    """Parse a count. Fractions are truncated toward zero."""
    number = normalize_number(value)
    if number is None:
        return None
    return int(number)


def normalize_text(value: Any) -> Optional[str]:
    """Trim strings; blank strings become None."""
    if value is None:
        return None

    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None

    return str(value)


def is_zero_date(value: Any) -> bool:
    """Whether a value is a "no date" sentinel such as 0000-00-00 00:00:00."""
    if not isinstance(value, str):
        return False
    return bool(ZERO_DATE_RE.match(value.strip()))


def _format(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(CANONICAL_TIMESTAMP_FORMAT)


def _build(year: str, month: str, day: str, hour=None, minute=None, second=None) -> Optional[str]:
    try:
        dt = datetime(
            int(year),
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
        )
    except ValueError:
        return None
    return _format(dt)


def normalize_timestamp(value: Any) -> Optional[str]:
    """Normalize a timestamp to ``YYYY-MM-DDTHH:MM:SSZ`` (UTC).

    Recognized encodings:
        - DD/MM/YYYY[ HH:MM[:SS]]
        - YYYY-MM-DD[ T]HH:MM:SS[Z] and YYYY-MM-DD
        - any valid ISO-8601 string (offsets are converted to UTC)
        - datetime / date objects
        - Unix timestamps in seconds or milliseconds

    Zero-date sentinels and unparseable values return None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return _format(value)

    if isinstance(value, date):
        return _format(datetime(value.year, value.month, value.day))

    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            return None
        if value > EPOCH_MILLIS_THRESHOLD:
            value = value / 1000
        try:
            return _format(datetime.fromtimestamp(value, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text or is_zero_date(text):
        return None

    match = BR_DATE_RE.match(text)
    if match:
        day, month, year, hour, minute, second = match.groups()
        return _build(year, month, day, hour, minute, second)

    match = SQL_DATETIME_RE.match(text)
    if match:
        return _build(*match.groups())

    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Could not parse timestamp: {text}")
        return None

    return _format(dt.replace(microsecond=0))


def is_date_key(key: str) -> bool:
    """Whether a column name looks like it holds a date."""
    return bool(DATE_KEY_RE.search(key))


def sanitize_row(row: dict) -> dict:
    """Last-line cleanup applied to every row right before it is written.

    - date-like keys holding strings are re-normalized to canonical form
    - zero-date sentinels anywhere become None
    - blank strings become None
    """
    sanitized = {}

    for key, value in row.items():
        if isinstance(value, str):
            if not value.strip() or is_zero_date(value):
                value = None
            elif is_date_key(key):
                value = normalize_timestamp(value)
        sanitized[key] = value

    return sanitized
