import re
from datetime import date, datetime

_PHONE_STRIP = re.compile(r"[\s\-()]")
_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15


def normalize_phone(raw: str) -> str:
    """
    Normalize a phone number.

    Spaces, tabs, dashes and parentheses are dropped. A leading ``+`` is kept;
    without it the number is kept in local format. Raises ``ValueError`` when
    anything other than digits remains or the digit count is outside 10..15.
    """
    cleaned = _PHONE_STRIP.sub("", raw or "")
    prefix = ""
    if cleaned.startswith("+"):
        prefix, cleaned = "+", cleaned[1:]
    if not cleaned or not cleaned.isdigit() or not cleaned.isascii():
        raise ValueError("phone must contain digits only")
    if not MIN_PHONE_DIGITS <= len(cleaned) <= MAX_PHONE_DIGITS:
        raise ValueError(f"phone must have {MIN_PHONE_DIGITS}-{MAX_PHONE_DIGITS} digits")
    return prefix + cleaned


def parse_wire_date(value: str) -> date:
    """Parse an exact ``YYYY-MM-DD`` date."""
    value = value or ""
    if not _DATE_RE.fullmatch(value):
        raise ValueError(f"invalid date {value!r}, expected YYYY-MM-DD")
    return datetime.strptime(value, "%Y-%m-%d").date()


def normalize_name(value: str) -> str:
    return (value or "").strip().lower()
