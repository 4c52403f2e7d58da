"""Conversion between the canonical storage date and the display formats.

Every date persisted by the store uses ``YYYY-MM-DD``. Screens and operators
work with ``DD.MM.YYYY`` or ``DD-MM-YYYY``, occasionally with a time suffix
(``07-03-2024T14:05:00``). Conversion happens at the service boundary so that
display strings never reach the store.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Optional, Union

from . import log
from .constants import CANONICAL_DATE_FORMAT
from .errors import ValidationError


DateLike = Union[str, date, datetime]

_CANONICAL_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_DISPLAY_RE = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{4})(?:[T ,].*)?$")

DISPLAY_SEPARATORS = (".", "-")


def parse_date(value: DateLike) -> date:
    """Interpret ``value`` as a calendar date.

    Args:
        value (str | date | datetime): A ``date``/``datetime`` instance or a
            string in canonical (``YYYY-MM-DD``) or display (``DD.MM.YYYY``,
            ``DD-MM-YYYY``, ``DD/MM/YYYY``) form. A trailing time component
            introduced by ``T``, a space or a comma is ignored.

    Returns:
        date: The calendar day represented by ``value``.

    Raises:
        ValidationError: If ``value`` is empty, of an unsupported type, or
            does not describe a real calendar day.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"Unsupported date value: {value!r}")

    cleaned = value.replace('"', "").strip()
    if not cleaned:
        raise ValidationError("Date is required")

    match = _CANONICAL_RE.match(cleaned)
    if match:
        year, month, day = match.groups()
    else:
        match = _DISPLAY_RE.match(cleaned)
        if not match:
            log.warning("Unrecognised date string '%s'", value)
            raise ValidationError(f"Unrecognised date: {value!r}")
        day, month, year = match.groups()

    try:
        return date(int(year), int(month), int(day))
    except ValueError as exc:
        log.warning("Invalid calendar date '%s': %s", value, exc)
        raise ValidationError(f"Invalid date: {value!r}") from exc


def to_canonical(value: DateLike) -> str:
    """Return ``value`` in the ``YYYY-MM-DD`` storage form."""

    return parse_date(value).strftime(CANONICAL_DATE_FORMAT)


def to_display(value: DateLike, *, sep: str = ".") -> str:
    """Render a stored date as ``DD.MM.YYYY`` (or ``DD-MM-YYYY`` with ``sep="-"``)."""

    if sep not in DISPLAY_SEPARATORS:
        raise ValueError(f"Unsupported display separator: {sep!r}")
    parsed = parse_date(value)
    return f"{parsed.day:02d}{sep}{parsed.month:02d}{sep}{parsed.year:04d}"


def canonical_or_none(value: Optional[DateLike]) -> Optional[str]:
    """Normalise optional dates, keeping ``None`` and blanks as ``None``."""

    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return to_canonical(value)


def month_of(value: DateLike) -> str:
    """Return the ``YYYY-MM`` bucket a date falls into."""

    return to_canonical(value)[:7]


def today() -> str:
    """Today's date in canonical form."""

    return date.today().strftime(CANONICAL_DATE_FORMAT)


__all__ = [
    "DateLike",
    "parse_date",
    "to_canonical",
    "to_display",
    "canonical_or_none",
    "month_of",
    "today",
]
