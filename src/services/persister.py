"""Write structured results to the result tables.

Persistence is best effort.  By the time a result reaches here the
caller already has it, so a failed write is logged and reported as
``False`` rather than raised.
"""

from __future__ import annotations

from typing import Any, Final

import structlog

from src.models.correlation import utcnow
from src.models.enums import ResponseKind
from src.models.results import ConfirmedResult, UnconfirmedResult
from src.services.errors import PersistenceWarning
from src.services.store import RecordStore

logger = structlog.get_logger(__name__)

RESULT_TABLES: Final[dict[ResponseKind, str]] = {
    ResponseKind.BALANCE: "kplc_bills",
    ResponseKind.TOKEN: "token_transactions",
    ResponseKind.UNITS: "units_readings",
}

ROW_SOURCE: Final[str] = "sms"


def build_row(user_id: str, result: ConfirmedResult | UnconfirmedResult) -> dict[str, Any]:
    row: dict[str, Any] = result.fields.model_dump(mode="json")
    row.update(
        user_id=user_id,
        request_id=result.request_id,
        source=ROW_SOURCE,
        confirmed=result.confirmed,
        result_source=result.source,
        reason=getattr(result, "reason", None),
        created_at=utcnow(),
    )
    return row


class ResultPersister:
    """Appends one row per result; no deduplication."""

    __slots__ = ("_persist_fallback", "_store")

    def __init__(self, store: RecordStore, *, persist_fallback: bool = True) -> None:
        self._store = store
        self._persist_fallback = persist_fallback

    async def persist(
        self,
        user_id: str,
        response_kind: ResponseKind,
        result: ConfirmedResult | UnconfirmedResult,
    ) -> bool:
        """Insert *result* for *user_id*; return whether a row was written."""
        log = logger.bind(
            request_id=result.request_id,
            kind=str(response_kind),
            confirmed=result.confirmed,
        )
        if not result.confirmed and not self._persist_fallback:
            log.debug("persister.fallback_skipped")
            return False

        table = RESULT_TABLES[response_kind]
        try:
            await self._store.insert(table, build_row(user_id, result))
        except Exception as exc:
            log.warning(
                "persister.write_failed",
                table=table,
                warning=PersistenceWarning.__name__,
                error=str(exc),
                exc_info=True,
            )
            return False

        log.info("persister.written", table=table)
        return True
