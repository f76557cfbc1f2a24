"""Webhook dispatch loop: verify -> dedup -> reconcile -> mark -> ack.

Per event, terminal on either branch:

    received -> already processed? -> yes: duplicate
                                   -> no:  resolve -> reconcile -> mark processed
                                           -> processed | unresolved | ignored

Ack contract (maps to the HTTP status the provider sees):
- processed / duplicate / unresolved / ignored -> 200 (redelivery would not help)
- rejected (signature or body)                 -> 400 (untrusted, never retried)
- retry (reconcile or mark-processed failure)  -> 500 (provider redelivers later)

Provider redelivery is the only retry mechanism; nothing is retried locally.
Reconciliation-path errors never escape ``handle``: an unacknowledged crash
would trigger a redelivery storm.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from billing_sync.errors import BillingSyncError, BodyReadError, SignatureInvalid, StoreWriteError
from billing_sync.webhooks.idempotency import EventLedger
from billing_sync.webhooks.models import EventRecord
from billing_sync.webhooks.reconciler import Reconciler, ReconcileStatus
from billing_sync.webhooks.verification import DEFAULT_TOLERANCE_SECONDS, verify_event

logger = logging.getLogger(__name__)


class Ack(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"
    REJECTED = "rejected"
    RETRY = "retry"


_STATUS_CODES = {
    Ack.PROCESSED: 200,
    Ack.DUPLICATE: 200,
    Ack.UNRESOLVED: 200,
    Ack.IGNORED: 200,
    Ack.REJECTED: 400,
    Ack.RETRY: 500,
}

_RECONCILE_ACKS = {
    ReconcileStatus.APPLIED: Ack.PROCESSED,
    ReconcileStatus.UNRESOLVED: Ack.UNRESOLVED,
    ReconcileStatus.IGNORED: Ack.IGNORED,
}


@dataclass(frozen=True)
class DispatchOutcome:
    ack: Ack
    event_id: str | None = None
    event_type: str | None = None
    account_id: str | None = None
    detail: str = ""

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self.ack]


class WebhookDispatcher:
    """Owns one ledger and one reconciler; safe to share across threads."""

    def __init__(
        self,
        ledger: EventLedger,
        reconciler: Reconciler,
        secrets: Sequence[str],
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self._ledger = ledger
        self._reconciler = reconciler
        self._secrets = list(secrets)
        self._tolerance = tolerance
        self._counts: Counter[str] = Counter()
        self._counts_lock = threading.Lock()

    def handle(self, body: bytes, signature_header: str | None) -> DispatchOutcome:
        """Full path for one delivery: verify the raw body, then dispatch."""
        try:
            event = verify_event(
                body, signature_header, self._secrets, tolerance=self._tolerance
            )
        except SignatureInvalid as e:
            logger.warning("Webhook signature rejected: %s", e.message)
            return self._finish(DispatchOutcome(Ack.REJECTED, detail=e.message))
        except BodyReadError as e:
            logger.warning("Webhook body rejected: %s", e.message)
            return self._finish(DispatchOutcome(Ack.REJECTED, detail=e.message))
        return self.dispatch(event)

    def dispatch(self, event: EventRecord) -> DispatchOutcome:
        """Run one verified event through the ledger and reconciler."""
        start = time.monotonic()
        self._ledger.record_received(event)

        try:
            already = self._ledger.is_processed(event.id)
        except BillingSyncError:
            # Merges are idempotent; a failed dedup read falls through to reprocessing
            logger.warning("Ledger read failed for %s, processing anyway", event.id, exc_info=True)
            already = False
        if already:
            logger.info("Duplicate event %s (%s), skipping", event.id, event.type)
            return self._finish(DispatchOutcome(Ack.DUPLICATE, event.id, event.type))

        try:
            result = self._reconciler.reconcile(event)
        except Exception as e:
            logger.error("Reconcile failed for %s (%s)", event.id, event.type, exc_info=True)
            self._ledger.record_failure(event.id, e)
            return self._finish(
                DispatchOutcome(Ack.RETRY, event.id, event.type, detail=type(e).__name__)
            )

        ack = _RECONCILE_ACKS[result.status]
        try:
            self._ledger.mark_processed(event.id, ack.value)
        except StoreWriteError:
            logger.error(
                "Failed to mark %s processed, provider will redeliver", event.id, exc_info=True
            )
            return self._finish(
                DispatchOutcome(
                    Ack.RETRY, event.id, event.type, result.account_id, detail="mark_processed"
                )
            )

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug("Event %s dispatched in %.1fms", event.id, elapsed_ms)
        return self._finish(DispatchOutcome(ack, event.id, event.type, result.account_id))

    def counts(self) -> dict[str, int]:
        with self._counts_lock:
            return dict(self._counts)

    def _finish(self, outcome: DispatchOutcome) -> DispatchOutcome:
        with self._counts_lock:
            self._counts[outcome.ack.value] += 1
            count = self._counts[outcome.ack.value]
        logger.info(
            "WEBHOOK_AUDIT event=%s type=%s outcome=%s account=%s count=%d",
            outcome.event_id or "unknown",
            outcome.event_type or "unknown",
            outcome.ack.value,
            outcome.account_id or "-",
            count,
        )
        return outcome
