"""Exception taxonomy for the correlation engine.

Errors raised before a command reaches the aggregator
(:class:`InvalidParameters`, :class:`CorrelationConflict`,
:class:`DispatchError`) leave no provider-side effect and are safe to
retry.  Nothing after a successful dispatch is raised to callers: a
missing reply becomes an unconfirmed result instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.models.results import UnconfirmedResultError

if TYPE_CHECKING:
    from src.models.correlation import PendingCorrelation


class MeterLinkError(Exception):
    """Base class for engine errors."""


class InvalidParameters(MeterLinkError):
    """Bad input to a command; rejected before any side effect."""


class CorrelationConflict(MeterLinkError):
    """A correlation is already pending for the same phone and kind."""

    def __init__(self, existing: PendingCorrelation) -> None:
        self.existing = existing
        super().__init__(
            f"A {existing.response_kind} request for {existing.phone_number} "
            f"is already pending (request {existing.id}, "
            f"deadline {existing.deadline.isoformat()})."
        )


class DispatchError(MeterLinkError):
    """The aggregator did not accept the outbound command."""


class CorrelationTimeout(MeterLinkError):
    """No reply before the deadline.

    Never raised to callers; used as the logged reason when a fallback
    result is produced.
    """


class PersistenceWarning(MeterLinkError):
    """Writing a structured result failed; logged and not propagated."""


class InvalidWebhookPayload(MeterLinkError):
    """A webhook callback matched neither a delivery report nor a message."""


__all__ = [
    "CorrelationConflict",
    "CorrelationTimeout",
    "DispatchError",
    "InvalidParameters",
    "InvalidWebhookPayload",
    "MeterLinkError",
    "PersistenceWarning",
    "UnconfirmedResultError",
]
