"""Structured results returned to callers and written to storage.

Carrier-confirmed data and synthetic placeholders are two distinct
types, :class:`ConfirmedResult` and :class:`UnconfirmedResult`, joined
in the :data:`StructuredResult` discriminated union on ``source``.
Code that is about to treat a token code as real must go through
:func:`require_confirmed`.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from src.models.correlation import utcnow
from src.models.enums import AccountStatus, FallbackReason, ResponseKind


class BillSnapshot(BaseModel):
    meter_number: str
    account_number: str
    account_name: str = "SMS User"
    outstanding_balance: float | None = None
    bill_amount: float | None = None
    current_reading: int | None = None
    due_date: date | None = None
    billing_period: str
    last_payment_amount: float | None = None
    last_payment_date: date | None = None
    status: AccountStatus = AccountStatus.UNKNOWN


class TokenTransaction(BaseModel):
    meter_number: str
    token_code: str
    reference_number: str | None = None
    amount: float | None = None  # KSh as stated by the provider
    requested_amount: float | None = None
    units: float | None = None
    transaction_date: datetime = Field(default_factory=utcnow)


class UnitsReading(BaseModel):
    meter_number: str
    current_units: float | None = None
    last_reading: int | None = None
    status: AccountStatus = AccountStatus.UNKNOWN


ResultFields = BillSnapshot | TokenTransaction | UnitsReading


class ConfirmedResult(BaseModel):
    """Data extracted from a reply the provider actually sent."""

    source: Literal["matched"] = "matched"
    request_id: str
    response_kind: ResponseKind
    fields: ResultFields
    raw_text: str
    resolved_at: datetime = Field(default_factory=utcnow)

    @property
    def confirmed(self) -> bool:
        return True


class UnconfirmedResult(BaseModel):
    """Placeholder data synthesised when no usable reply arrived.

    The ``notice`` is meant to be shown to the end user as-is.
    """

    source: Literal["fallback"] = "fallback"
    request_id: str
    response_kind: ResponseKind
    fields: ResultFields
    reason: FallbackReason
    notice: str
    raw_text: str | None = None
    resolved_at: datetime = Field(default_factory=utcnow)

    @property
    def confirmed(self) -> bool:
        return False


StructuredResult = Annotated[
    Union[ConfirmedResult, UnconfirmedResult],
    Field(discriminator="source"),
]


class UnconfirmedResultError(ValueError):
    """Raised when fallback data is used where confirmed data is required."""

    def __init__(self, result: UnconfirmedResult) -> None:
        self.result = result
        super().__init__(
            f"Result {result.request_id} is unconfirmed ({result.reason}); "
            "its values were not sent by the provider."
        )


def require_confirmed(result: ConfirmedResult | UnconfirmedResult) -> ConfirmedResult:
    """Return *result* if it is carrier-confirmed, else raise."""
    if isinstance(result, ConfirmedResult) and result.source == "matched":
        return result
    raise UnconfirmedResultError(result)  # type: ignore[arg-type]
