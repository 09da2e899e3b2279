"""Outbound send through the telecom aggregator.

Two implementations share the :class:`AggregatorClient` interface:

* :class:`AfricasTalkingClient` posts to the Africa's Talking messaging
  API.  A send is accepted only when the first recipient reports
  ``Success``.
* :class:`MockAggregatorClient` accepts everything and logs the command;
  used in development when no credentials are configured.

Neither retries.  Retrying a token purchase without an idempotency key
could buy tokens twice, so the caller decides what to do with a
:class:`~src.services.errors.DispatchError`.
"""

from __future__ import annotations

from typing import Any, Final
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel, Field

from src.services.errors import DispatchError

logger = structlog.get_logger(__name__)

AT_LIVE_URL: Final[str] = "https://api.africastalking.com/version1"
AT_SANDBOX_URL: Final[str] = "https://api.sandbox.africastalking.com/version1"

_ACCEPTED_STATUS: Final[str] = "Success"


class SendReceipt(BaseModel):
    """Aggregator acknowledgement of an accepted send.

    ``message_id`` identifies the outbound SMS for delivery reports only;
    the provider's reply never carries it back.
    """

    message_id: str
    status: str
    cost: str | None = None
    mock: bool = False
    raw_response: dict[str, Any] = Field(default_factory=dict)


class AggregatorClient:
    """Abstract base for aggregator send implementations."""

    async def send(self, to: str, message: str, *, sender: str) -> SendReceipt:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class AfricasTalkingClient(AggregatorClient):
    """Africa's Talking SMS API.

    Parameters
    ----------
    username:
        Application username (``sandbox`` for the sandbox environment).
    api_key:
        Application API key, sent in the ``apiKey`` header.
    base_url:
        API root; defaults to the live environment, or the sandbox when
        *username* is ``sandbox``.
    """

    def __init__(
        self,
        username: str,
        api_key: str,
        *,
        base_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not username or not api_key:
            raise ValueError("Africa's Talking username and api_key are required.")
        self._username = username
        self._api_key = api_key
        self._base_url = (
            base_url or (AT_SANDBOX_URL if username == "sandbox" else AT_LIVE_URL)
        ).rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={
                "apiKey": api_key,
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def send(self, to: str, message: str, *, sender: str) -> SendReceipt:
        payload = {
            "username": self._username,
            "to": to,
            "message": message,
            "from": sender,
        }
        log = logger.bind(to=to, sender=sender)

        try:
            response = await self._client.post(f"{self._base_url}/messaging", data=payload)
        except httpx.HTTPError as exc:
            log.error("aggregator.transport_error", error=str(exc))
            raise DispatchError(f"Aggregator unreachable: {exc}") from exc

        if response.status_code >= 400:
            log.warning("aggregator.http_error", status=response.status_code)
            raise DispatchError(
                f"Aggregator rejected the send with HTTP {response.status_code}"
            )

        try:
            body: dict[str, Any] = response.json()
        except ValueError as exc:
            raise DispatchError("Aggregator returned a non-JSON response") from exc

        recipients = (body.get("SMSMessageData") or {}).get("Recipients") or []
        if not recipients:
            detail = (body.get("SMSMessageData") or {}).get("Message", "no recipients")
            log.warning("aggregator.no_recipients", detail=detail)
            raise DispatchError(f"Aggregator did not accept the send: {detail}")

        recipient = recipients[0]
        status = str(recipient.get("status", ""))
        if status != _ACCEPTED_STATUS:
            log.warning("aggregator.recipient_rejected", status=status)
            raise DispatchError(f"Aggregator rejected the send: {status or 'unknown status'}")

        receipt = SendReceipt(
            message_id=str(recipient.get("messageId", "")),
            status=status,
            cost=recipient.get("cost"),
            raw_response=body,
        )
        log.info("aggregator.sent", message_id=receipt.message_id, cost=receipt.cost)
        return receipt

    async def close(self) -> None:
        await self._client.aclose()


class MockAggregatorClient(AggregatorClient):
    """Mock aggregator for local development and testing."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    async def send(self, to: str, message: str, *, sender: str) -> SendReceipt:
        self.sent.append({"to": to, "message": message, "from": sender})
        logger.info(
            "mock_aggregator.sent",
            to=to,
            sender=sender,
            message_preview=message[:80],
        )
        return SendReceipt(
            message_id=f"ATXid_mock_{uuid4().hex[:12]}",
            status=_ACCEPTED_STATUS,
            mock=True,
        )


def create_aggregator(settings: Any) -> AggregatorClient:
    """Build the configured aggregator client, defaulting to the mock."""
    if settings.aggregator == "africastalking" and settings.aggregator_configured:
        return AfricasTalkingClient(
            settings.at_username,
            settings.at_api_key,
            base_url=settings.at_base_url or None,
            timeout=settings.aggregator_http_timeout,
        )
    if settings.aggregator == "africastalking":
        logger.warning("aggregator.credentials_missing_using_mock")
    return MockAggregatorClient()
