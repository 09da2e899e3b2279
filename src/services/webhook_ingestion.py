"""Webhook ingestion: the asynchronous half of the protocol.

The aggregator calls back for two unrelated event kinds:

* **delivery reports** (``id`` + ``status``): whether an outbound
  command reached the handset.  Recorded on the dispatched correlation
  for observability only.
* **inbound messages** (``from`` + ``text``): provider replies and
  messages typed by users.  Classified into a coarse
  :class:`~src.models.enums.MessageKind` and appended to the response
  log unconditionally.

USSD session callbacks (``sessionId`` + ``phoneNumber``) carry provider
menu text and go through the same classification table, preceded by a
service-code rule.

Classification is an ordered rule table, first match wins, so the
matching policy can be read and tested apart from the transport code.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from typing import Any, Final, Literal

import structlog
from pydantic import BaseModel

from src.models.correlation import InboundMessage
from src.models.enums import InboundChannel, MessageKind
from src.services.commands import sanitize_phone
from src.services.dispatcher import CommandDispatcher
from src.services.errors import InvalidParameters, InvalidWebhookPayload
from src.services.response_store import ResponseStore

logger = structlog.get_logger(__name__)

USSD_SENDER: Final[str] = "USSD_KPLC"


# ---------------------------------------------------------------------------
# Classification table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InboundCandidate:
    """The parts of an inbound message that classification looks at."""

    text: str
    sender: str
    from_provider: bool
    service_code: str | None = None


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    name: str
    kind: MessageKind
    matches: Callable[[InboundCandidate], bool]


_BALANCE_WORDS: Final[re.Pattern[str]] = re.compile(r"balance|bal|amount|bill", re.IGNORECASE)
_PURCHASE_WORDS: Final[re.Pattern[str]] = re.compile(r"token|units|ksh|purchase", re.IGNORECASE)
_BALANCE_SERVICE_CODE: Final[re.Pattern[str]] = re.compile(r"\*977")

CLASSIFICATION_RULES: Final[tuple[ClassificationRule, ...]] = (
    # Subscriber texts echo the same keywords as provider replies
    ClassificationRule(
        "subscriber_sender",
        MessageKind.USER_COMMAND,
        lambda c: not c.from_provider,
    ),
    ClassificationRule(
        "balance_keywords",
        MessageKind.BALANCE,
        lambda c: bool(_BALANCE_WORDS.search(c.text)),
    ),
    ClassificationRule(
        "purchase_keywords",
        MessageKind.TOKEN,
        lambda c: bool(_PURCHASE_WORDS.search(c.text)),
    ),
    ClassificationRule(
        "provider_sender",
        MessageKind.GENERAL,
        lambda c: c.from_provider,
    ),
)

USSD_CLASSIFICATION_RULES: Final[tuple[ClassificationRule, ...]] = (
    ClassificationRule(
        "balance_service_code",
        MessageKind.BALANCE,
        lambda c: bool(c.service_code and _BALANCE_SERVICE_CODE.search(c.service_code)),
    ),
    *CLASSIFICATION_RULES,
)


def classify(
    candidate: InboundCandidate,
    rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES,
) -> tuple[MessageKind, str]:
    """Return the kind and the name of the first matching rule.

    Messages no rule claims are user commands.
    """
    for rule in rules:
        if rule.matches(candidate):
            return rule.kind, rule.name
    return MessageKind.USER_COMMAND, "default"


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class IngestOutcome(BaseModel):
    event: Literal["delivery_report", "inbound_message"]
    phone_number: str | None = None
    classified_kind: MessageKind | None = None
    message_id: str | None = None
    delivery_matched: bool | None = None


def _field(payload: Mapping[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_phone(number: str) -> str:
    try:
        return sanitize_phone(number)
    except InvalidParameters:
        # Short codes and foreign numbers are filed as received
        return number


class WebhookIngestion:
    """Turns aggregator callbacks into response-log entries.

    Parameters
    ----------
    responses:
        The response log appended to.
    dispatcher:
        Receives delivery reports.
    provider_sender_ids:
        Sender ids that identify the utility provider.
    """

    __slots__ = ("_dispatcher", "_provider_senders", "_responses")

    def __init__(
        self,
        responses: ResponseStore,
        dispatcher: CommandDispatcher,
        *,
        provider_sender_ids: Collection[str] = ("95551", "+25495551", USSD_SENDER),
    ) -> None:
        self._responses = responses
        self._dispatcher = dispatcher
        self._provider_senders = frozenset(s.strip() for s in provider_sender_ids)

    def is_provider(self, sender: str) -> bool:
        return sender.strip() in self._provider_senders

    async def ingest(self, payload: Mapping[str, Any]) -> IngestOutcome:
        """Handle one SMS webhook callback.

        Raises
        ------
        InvalidWebhookPayload
            The payload is neither a delivery report nor a message.
        """
        message_id = _field(payload, "id")
        status = _field(payload, "status")
        if message_id and status:
            return self._handle_delivery_report(payload, message_id, status)

        sender = _field(payload, "from")
        text = payload.get("text")
        if sender and text is not None and str(text).strip():
            return await self._handle_inbound(payload, sender, str(text).strip())

        logger.warning("webhook.invalid_payload", fields=sorted(payload.keys()))
        raise InvalidWebhookPayload(
            "Callback has neither delivery report fields (id, status) "
            "nor message fields (from, text)."
        )

    async def ingest_ussd(self, payload: Mapping[str, Any]) -> IngestOutcome:
        """Handle one USSD session callback."""
        session_id = _field(payload, "sessionId")
        phone = _field(payload, "phoneNumber")
        if not session_id or not phone:
            logger.warning("webhook.invalid_ussd_payload", fields=sorted(payload.keys()))
            raise InvalidWebhookPayload("USSD callback requires sessionId and phoneNumber.")

        text = str(payload.get("text") or "").strip()
        service_code = _field(payload, "serviceCode")
        candidate = InboundCandidate(
            text=text,
            sender=USSD_SENDER,
            from_provider=True,
            service_code=service_code,
        )
        kind, rule = classify(candidate, USSD_CLASSIFICATION_RULES)

        message = InboundMessage(
            phone_number=_normalize_phone(phone),
            text=text,
            sender=USSD_SENDER,
            classified_kind=kind,
            channel=InboundChannel.USSD,
            metadata={
                "session_id": session_id,
                "service_code": service_code,
                "network_code": _field(payload, "networkCode"),
                "ussd_status": _field(payload, "status"),
                "classification_rule": rule,
                "auto_classified": True,
            },
        )
        await self._responses.append(message)
        logger.info(
            "webhook.ussd_stored",
            phone=message.phone_number,
            kind=str(kind),
            session_id=session_id,
        )
        return IngestOutcome(
            event="inbound_message",
            phone_number=message.phone_number,
            classified_kind=kind,
            message_id=message.id,
        )

    # ------------------------------------------------------------------

    def _handle_delivery_report(
        self,
        payload: Mapping[str, Any],
        message_id: str,
        status: str,
    ) -> IngestOutcome:
        matched = self._dispatcher.update_delivery_status(
            message_id,
            status,
            {
                "phone_number": _field(payload, "phoneNumber"),
                "network_code": _field(payload, "networkCode"),
                "retry_count": _field(payload, "retryCount"),
                "failure_reason": _field(payload, "failureReason"),
            },
        )
        return IngestOutcome(
            event="delivery_report",
            phone_number=_field(payload, "phoneNumber"),
            message_id=message_id,
            delivery_matched=matched,
        )

    async def _handle_inbound(
        self,
        payload: Mapping[str, Any],
        sender: str,
        text: str,
    ) -> IngestOutcome:
        from_provider = self.is_provider(sender)
        kind, rule = classify(InboundCandidate(text=text, sender=sender, from_provider=from_provider))

        destination = _field(payload, "to")
        # Provider replies belong to the subscriber they were sent to
        owner = destination if (from_provider and destination) else sender

        message = InboundMessage(
            phone_number=_normalize_phone(owner),
            text=text,
            sender=sender,
            classified_kind=kind,
            channel=InboundChannel.SMS,
            metadata={
                "provider_date": _field(payload, "date"),
                "message_id": _field(payload, "id"),
                "link_id": _field(payload, "linkId"),
                "destination": destination,
                "classification_rule": rule,
                "auto_classified": True,
                "classification_confidence": (
                    "high" if kind in (MessageKind.BALANCE, MessageKind.TOKEN) else "low"
                ),
            },
        )
        await self._responses.append(message)

        logger.info(
            "webhook.message_stored",
            phone=message.phone_number,
            sender=sender,
            kind=str(kind),
            rule=rule,
            text_length=len(text),
        )
        return IngestOutcome(
            event="inbound_message",
            phone_number=message.phone_number,
            classified_kind=kind,
            message_id=message.id,
        )
