"""Command strings for the utility provider's SMS gateway.

The provider accepts a verb followed by the meter number and, for
purchases, the amount, separated by single spaces (``BUY 54321678901
500``).  Everything here is pure: no I/O and no clock.
"""

from __future__ import annotations

import math
import re
from typing import Final

from src.models.enums import ResponseKind
from src.services.errors import InvalidParameters

_KENYAN_MOBILE_RE: Final[re.Pattern[str]] = re.compile(r"^(?:\+?254|0)?([17]\d{8})$")
_METER_RE: Final[re.Pattern[str]] = re.compile(r"^\d{6,13}$")

COMMAND_DELIMITER: Final[str] = " "

_VERBS: Final[dict[ResponseKind, str]] = {
    ResponseKind.BALANCE: "BAL",
    ResponseKind.TOKEN: "BUY",
    ResponseKind.UNITS: "UNITS",
}


def sanitize_phone(number: str) -> str:
    """Normalise a Kenyan mobile number to E.164 (``+2547XXXXXXXX``).

    Accepts ``+2547...``, ``2547...``, ``07...`` and the ``1`` prefixed
    ranges.  Spaces, dashes and parentheses are ignored.

    Raises
    ------
    InvalidParameters
        If the number is not a valid Kenyan mobile number.
    """
    cleaned = re.sub(r"[\s\-\(\)]+", "", (number or "").strip())
    match = _KENYAN_MOBILE_RE.match(cleaned)
    if not match:
        raise InvalidParameters(
            f"Invalid Kenyan mobile number: {number!r}. "
            "Expected +2547XXXXXXXX, 2547XXXXXXXX or 07XXXXXXXX."
        )
    return f"+254{match.group(1)}"


def normalize_meter(meter_number: str) -> str:
    cleaned = re.sub(r"\s+", "", meter_number or "")
    if not cleaned:
        raise InvalidParameters("meter_number is required")
    if not _METER_RE.match(cleaned):
        raise InvalidParameters(
            f"Invalid meter number {meter_number!r}: expected 6-13 digits."
        )
    return cleaned


def _format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"


def build_command(
    kind: ResponseKind,
    meter_number: str,
    amount: float | None = None,
) -> str:
    """Build the provider command for *kind*.

    >>> build_command(ResponseKind.TOKEN, "54321678901", 500)
    'BUY 54321678901 500'
    """
    meter = normalize_meter(meter_number)
    parts = [_VERBS[ResponseKind(kind)], meter]

    if kind == ResponseKind.TOKEN:
        if amount is None:
            raise InvalidParameters("amount is required for a token purchase")
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidParameters(f"amount must be a positive number, got {amount}")
        parts.append(_format_amount(amount))

    return COMMAND_DELIMITER.join(parts)
