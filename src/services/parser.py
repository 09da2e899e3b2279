"""Turn provider reply text into structured results.

Each response kind has an ordered table of extraction rules.  A rule
names one output field, one or more patterns (the first that matches
wins) and a converter; a field whose patterns all miss, or whose
captured text does not convert, is simply absent.  Only the required
fields decide whether a reply is usable:

=========  ==========================================
balance    ``outstanding_balance`` or ``bill_amount``
token      ``token_code``
units      ``current_units``
=========  ==========================================

A reply without them is treated like no reply at all and produces an
:class:`~src.models.results.UnconfirmedResult` with reason
``unparseable``.

Parsing matched text never reads the clock or a random source, so the
same correlation result always parses to the same fields.
"""

from __future__ import annotations

import re
import secrets
import string
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Final

import structlog

from src.models.correlation import CorrelationResult, utcnow
from src.models.enums import AccountStatus, FallbackReason, ResponseKind
from src.models.results import (
    BillSnapshot,
    ConfirmedResult,
    ResultFields,
    TokenTransaction,
    UnconfirmedResult,
    UnitsReading,
)

logger = structlog.get_logger(__name__)

_NUMBER: Final[str] = r"(\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)(?!\d|,\d|[./-]\d)"
_DATE: Final[str] = r"(\d{1,2}[/-]\d{1,2}[/-]\d{2,4})"
_DATE_FORMATS: Final[tuple[str, ...]] = ("%d/%m/%Y", "%d-%m-%Y", "%d/%m/%y", "%d-%m-%y")
_TOKEN_ALPHABET: Final[str] = string.ascii_uppercase + string.digits


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def _to_float(text: str) -> float:
    return float(text.replace(",", ""))


def _to_int(text: str) -> int:
    return int(float(text.replace(",", "")))


def _to_date(text: str) -> date:
    """Parse a day-first date; raises ``ValueError`` if no format fits."""
    normalised = text.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(normalised, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date {text!r}")


def _to_status(text: str) -> AccountStatus:
    word = text.lower()
    if word == "connected":
        return AccountStatus.ACTIVE
    return AccountStatus(word)


def _to_token(text: str) -> str:
    digits = re.sub(r"\D", "", text)
    if len(digits) != 20:
        raise ValueError("token code must have 20 digits")
    return digits


def _to_reference(text: str) -> str:
    return text.upper()


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ExtractionRule:
    field: str
    patterns: tuple[re.Pattern[str], ...]
    convert: Callable[[str], Any]

    def extract(self, text: str) -> Any | None:
        for pattern in self.patterns:
            match = pattern.search(text)
            if match is None:
                continue
            try:
                return self.convert(match.group(1))
            except ValueError:
                return None
        return None


def _rule(field: str, convert: Callable[[str], Any], *patterns: str) -> ExtractionRule:
    return ExtractionRule(
        field=field,
        patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns),
        convert=convert,
    )


_UNITS_RULE = _rule(
    "units",
    _to_float,
    rf"\b(?:units?|kwh)\b\D{{0,15}}?{_NUMBER}",
    rf"{_NUMBER}\s*kwh\b",
    rf"{_NUMBER}\s*units?\b",
)
_READING_RULE = _rule("reading", _to_int, rf"\breading\b\D*?{_NUMBER}")
_STATUS_RULE = _rule(
    "status",
    _to_status,
    r"\b(?:status|state)\b\W*(active|inactive|disconnected|connected)\b",
)

BALANCE_RULES: Final[tuple[ExtractionRule, ...]] = (
    _rule("outstanding_balance", _to_float, rf"\b(?:balance|bal|amount)\b\D*?{_NUMBER}"),
    _rule("bill_amount", _to_float, rf"\b(?:bill|due)\b\D*?{_NUMBER}"),
    _READING_RULE,
    _rule("due_date", _to_date, rf"\b(?:due|expires?)\b.*?{_DATE}"),
    _rule("account_number", str, r"\b(?:account|acc|a/c)\b(?:\s*(?:no|number)\b\.?)?\D*?(\d+)"),
    _STATUS_RULE,
    _rule("last_payment_amount", _to_float, rf"\b(?:last\s+payment|paid)\b\D*?{_NUMBER}"),
    _rule("last_payment_date", _to_date, rf"\b(?:last\s+payment|paid)\b.*?\b(?:on|date)\b\D*?{_DATE}"),
)

TOKEN_RULES: Final[tuple[ExtractionRule, ...]] = (
    _rule("token_code", _to_token, r"(?<!\d)(\d{4}(?:[ -]?\d{4}){4})(?!\d)"),
    _UNITS_RULE,
    _rule("amount", _to_float, rf"\b(?:ksh|kes|cost)\b\.?:?\s*{_NUMBER}"),
    _rule(
        "reference",
        _to_reference,
        r"\b(?:ref(?:erence)?|receipt)\b(?:\s*(?:no|number)\b)?\W*([A-Z0-9]{5,})",
    ),
)

UNITS_RULES: Final[tuple[ExtractionRule, ...]] = (
    _UNITS_RULE,
    _READING_RULE,
    _STATUS_RULE,
)

RULES: Final[dict[ResponseKind, tuple[ExtractionRule, ...]]] = {
    ResponseKind.BALANCE: BALANCE_RULES,
    ResponseKind.TOKEN: TOKEN_RULES,
    ResponseKind.UNITS: UNITS_RULES,
}

REQUIRED_FIELDS: Final[dict[ResponseKind, tuple[frozenset[str], ...]]] = {
    # Each inner set is an alternative: any one of its fields suffices.
    ResponseKind.BALANCE: (frozenset({"outstanding_balance", "bill_amount"}),),
    ResponseKind.TOKEN: (frozenset({"token_code"}),),
    ResponseKind.UNITS: (frozenset({"units"}),),
}

NOTICES: Final[dict[FallbackReason, str]] = {
    FallbackReason.TIMEOUT: "Unconfirmed: no reply from the provider before the deadline.",
    FallbackReason.UNPARSEABLE: "Unconfirmed: the provider's reply could not be read.",
    FallbackReason.CANCELLED: "Unconfirmed: the request was cancelled before a reply arrived.",
}
_TOKEN_NOTICE_SUFFIX: Final[str] = (
    " The token code shown is a placeholder and will not load on the meter."
)


def extract_fields(kind: ResponseKind, text: str) -> dict[str, Any]:
    """Apply the rule table for *kind*; absent fields are left out."""
    found: dict[str, Any] = {}
    for rule in RULES[kind]:
        value = rule.extract(text)
        if value is not None:
            found[rule.field] = value
    return found


def has_required_fields(kind: ResponseKind, found: Mapping[str, Any]) -> bool:
    return all(any(name in found for name in group) for group in REQUIRED_FIELDS[kind])


def billing_period(moment: datetime | date) -> str:
    return moment.strftime("%b %Y")


def fallback_token_code(amount: float, epoch_ms: int) -> str:
    """Placeholder token: amount, clock digits, random suffix; max 20 chars."""
    amount_part = str(int(amount)).zfill(4)
    suffix = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(6))
    return f"{amount_part}{str(epoch_ms)[-8:]}{suffix}"[:20]


class ResponseParser:
    """Builds structured results from correlation outcomes.

    *clock* is only consulted on the fallback path.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    def parse(
        self,
        correlation: CorrelationResult,
        response_kind: ResponseKind,
        request_params: Mapping[str, Any],
    ) -> ConfirmedResult | UnconfirmedResult:
        log = logger.bind(request_id=correlation.request_id, kind=str(response_kind))

        if not correlation.matched or correlation.raw_text is None:
            reason = correlation.reason or FallbackReason.TIMEOUT
            log.info("parser.fallback", reason=str(reason))
            return self.fallback(correlation, response_kind, request_params, reason)

        found = extract_fields(response_kind, correlation.raw_text)
        if not has_required_fields(response_kind, found):
            log.warning(
                "parser.unparseable",
                extracted=sorted(found),
                text_length=len(correlation.raw_text),
            )
            return self.fallback(
                correlation, response_kind, request_params, FallbackReason.UNPARSEABLE,
            )

        fields = self._build_fields(response_kind, found, correlation, request_params)
        log.info("parser.parsed", extracted=sorted(found))
        return ConfirmedResult(
            request_id=correlation.request_id,
            response_kind=response_kind,
            fields=fields,
            raw_text=correlation.raw_text,
            resolved_at=correlation.resolved_at,
        )

    def fallback(
        self,
        correlation: CorrelationResult,
        response_kind: ResponseKind,
        request_params: Mapping[str, Any],
        reason: FallbackReason,
    ) -> UnconfirmedResult:
        """Synthesise placeholder data that is clearly marked unconfirmed."""
        now = self._clock()
        meter_number = str(request_params["meter_number"])
        notice = NOTICES[reason]

        fields: ResultFields
        if response_kind == ResponseKind.TOKEN:
            amount = float(request_params["amount"])
            epoch_ms = int(now.timestamp() * 1000)
            fields = TokenTransaction(
                meter_number=meter_number,
                token_code=fallback_token_code(amount, epoch_ms),
                reference_number=f"SMS{epoch_ms}",
                amount=amount,
                requested_amount=amount,
                units=amount,
                transaction_date=now,
            )
            notice += _TOKEN_NOTICE_SUFFIX
        elif response_kind == ResponseKind.BALANCE:
            fields = BillSnapshot(
                meter_number=meter_number,
                account_number=str(request_params.get("account_number") or meter_number),
                billing_period=billing_period(now),
                status=AccountStatus.UNKNOWN,
            )
        else:
            fields = UnitsReading(meter_number=meter_number)

        return UnconfirmedResult(
            request_id=correlation.request_id,
            response_kind=response_kind,
            fields=fields,
            reason=reason,
            notice=notice,
            raw_text=correlation.raw_text,
            resolved_at=correlation.resolved_at,
        )

    # ------------------------------------------------------------------

    @staticmethod
    def _build_fields(
        kind: ResponseKind,
        found: Mapping[str, Any],
        correlation: CorrelationResult,
        request_params: Mapping[str, Any],
    ) -> ResultFields:
        meter_number = str(request_params["meter_number"])

        if kind == ResponseKind.BALANCE:
            return BillSnapshot(
                meter_number=meter_number,
                account_number=found.get("account_number")
                or str(request_params.get("account_number") or meter_number),
                outstanding_balance=found.get("outstanding_balance"),
                bill_amount=found.get("bill_amount"),
                current_reading=found.get("reading"),
                due_date=found.get("due_date"),
                billing_period=billing_period(correlation.resolved_at),
                last_payment_amount=found.get("last_payment_amount"),
                last_payment_date=found.get("last_payment_date"),
                status=found.get("status", AccountStatus.UNKNOWN),
            )

        if kind == ResponseKind.TOKEN:
            requested = request_params.get("amount")
            return TokenTransaction(
                meter_number=meter_number,
                token_code=found["token_code"],
                reference_number=found.get("reference"),
                amount=found.get("amount"),
                requested_amount=float(requested) if requested is not None else None,
                units=found.get("units"),
                transaction_date=correlation.resolved_at,
            )

        return UnitsReading(
            meter_number=meter_number,
            current_units=found.get("units"),
            last_reading=found.get("reading"),
            status=found.get("status", AccountStatus.UNKNOWN),
        )
