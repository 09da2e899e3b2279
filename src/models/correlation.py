"""Correlation records: outbound commands awaiting a reply, and the
inbound messages that may answer them.

The aggregator channel carries no request identifiers, so a
:class:`PendingCorrelation` describes what an eventual reply must look
like (phone number, message kind, arrival time) rather than which reply
it is.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from src.models.enums import (
    ACCEPTED_MESSAGE_KINDS,
    CorrelationStatus,
    DeliveryState,
    FallbackReason,
    InboundChannel,
    MessageKind,
    ResponseKind,
    ResultSource,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class PendingCorrelation(BaseModel):
    """An outbound command whose reply has not been recognised yet.

    Status changes go through :meth:`resolve`, which allows exactly one
    transition out of ``pending``.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    phone_number: str
    response_kind: ResponseKind
    meter_number: str
    command: str
    amount: float | None = None
    created_at: datetime = Field(default_factory=utcnow)
    deadline: datetime
    status: CorrelationStatus = CorrelationStatus.PENDING
    resolved_at: datetime | None = None
    matched_message_id: str | None = None
    reply_text: str | None = None
    provider_message_id: str | None = None
    delivery_status: DeliveryState = DeliveryState.QUEUED
    delivery_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, ResponseKind]:
        return (self.phone_number, self.response_kind)

    @property
    def is_pending(self) -> bool:
        return self.status == CorrelationStatus.PENDING

    @property
    def accepted_kinds(self) -> frozenset[MessageKind]:
        return ACCEPTED_MESSAGE_KINDS[self.response_kind]

    def resolve(self, status: CorrelationStatus, *, at: datetime | None = None) -> bool:
        """Move to a terminal *status*; return ``False`` if already terminal."""
        if not status.is_terminal:
            raise ValueError(f"{status!r} is not a terminal status")
        if self.status.is_terminal:
            return False
        self.status = status
        self.resolved_at = at or utcnow()
        return True

    def accepts(self, message: InboundMessage) -> bool:
        """Whether *message* is eligible to answer this correlation."""
        return (
            message.phone_number == self.phone_number
            and message.received_at >= self.created_at
            and message.classified_kind in self.accepted_kinds
        )


class InboundMessage(BaseModel):
    """A message delivered by the aggregator webhook (SMS or USSD)."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    phone_number: str
    text: str
    sender: str
    received_at: datetime = Field(default_factory=utcnow)
    classified_kind: MessageKind
    channel: InboundChannel = InboundChannel.SMS
    metadata: dict[str, Any] = Field(default_factory=dict)


class CorrelationResult(BaseModel):
    """Outcome of waiting for a reply, before parsing."""

    request_id: str
    source: ResultSource
    raw_text: str | None = None
    reason: FallbackReason | None = None
    resolved_at: datetime = Field(default_factory=utcnow)

    @property
    def matched(self) -> bool:
        return self.source == ResultSource.MATCHED
