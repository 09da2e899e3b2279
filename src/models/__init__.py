from src.models.correlation import (
    CorrelationResult,
    InboundMessage,
    PendingCorrelation,
)
from src.models.enums import (
    ACCEPTED_MESSAGE_KINDS,
    AccountStatus,
    CorrelationStatus,
    DeliveryState,
    FallbackReason,
    InboundChannel,
    MessageKind,
    ResponseKind,
    ResultSource,
)
from src.models.results import (
    BillSnapshot,
    ConfirmedResult,
    StructuredResult,
    TokenTransaction,
    UnconfirmedResult,
    UnconfirmedResultError,
    UnitsReading,
    require_confirmed,
)

__all__ = [
    "ACCEPTED_MESSAGE_KINDS",
    "AccountStatus",
    "BillSnapshot",
    "ConfirmedResult",
    "CorrelationResult",
    "CorrelationStatus",
    "DeliveryState",
    "FallbackReason",
    "InboundChannel",
    "InboundMessage",
    "MessageKind",
    "PendingCorrelation",
    "ResponseKind",
    "ResultSource",
    "StructuredResult",
    "TokenTransaction",
    "UnconfirmedResult",
    "UnconfirmedResultError",
    "UnitsReading",
    "require_confirmed",
]
