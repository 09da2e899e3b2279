from __future__ import annotations

from enum import StrEnum


class ResponseKind(StrEnum):
    __slots__ = ()

    BALANCE = "balance"
    TOKEN = "token"
    UNITS = "units"


class MessageKind(StrEnum):
    __slots__ = ()

    BALANCE = "balance"
    TOKEN = "token"
    GENERAL = "general"
    USER_COMMAND = "user_command"


class CorrelationStatus(StrEnum):
    __slots__ = ()

    PENDING = "pending"
    MATCHED = "matched"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not CorrelationStatus.PENDING


class ResultSource(StrEnum):
    __slots__ = ()

    MATCHED = "matched"
    FALLBACK = "fallback"


class FallbackReason(StrEnum):
    __slots__ = ()

    TIMEOUT = "timeout"
    UNPARSEABLE = "unparseable"
    CANCELLED = "cancelled"


class DeliveryState(StrEnum):
    """Delivery states reported by the aggregator for a sent command."""

    __slots__ = ()

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    MOCK = "mock"


class InboundChannel(StrEnum):
    __slots__ = ()

    SMS = "sms"
    USSD = "ussd"


class AccountStatus(StrEnum):
    __slots__ = ()

    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


# Message kinds that may satisfy a correlation of each response kind.
# Units replies are filed as balance messages by the provider-side wording.
ACCEPTED_MESSAGE_KINDS: dict[ResponseKind, frozenset[MessageKind]] = {
    ResponseKind.BALANCE: frozenset({MessageKind.BALANCE}),
    ResponseKind.TOKEN: frozenset({MessageKind.TOKEN}),
    ResponseKind.UNITS: frozenset({MessageKind.BALANCE}),
}
