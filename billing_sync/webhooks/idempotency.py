"""Idempotency ledger: durable record of every received event.

Security contract:
- Every verified event is logged under its provider event id before any
  account is touched
- An event counts as processed only once ``processed_at`` is set, and that
  happens only after reconciliation succeeded
- record_received failures are logged and swallowed; reconciliation is what
  matters for correctness
- mark_processed failures propagate as StoreWriteError; the dispatcher turns
  them into a retryable ack and the merge handlers tolerate the reprocess
- Optional Redis marker (``webhook:processed:{event_id}``, 24h TTL) short-
  circuits the store lookup; if Redis is down the ledger falls back to the
  store (fail-open)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

import redis

from billing_sync.errors import BillingSyncError, StoreWriteError
from billing_sync.store import DocumentStore
from billing_sync.webhooks.models import EventRecord, isoformat, utcnow

logger = logging.getLogger(__name__)

_MARKER_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:processed"

# Longest error text kept on a ledger row
_MAX_ERROR_LENGTH = 500


class ProcessedMarkerCache:
    """Redis-backed fast path for ``is_processed``."""

    def __init__(self, client: redis.Redis, ttl: int = _MARKER_TTL_SECONDS):
        self._redis = client
        self._ttl = ttl

    @classmethod
    def from_url(cls, redis_url: str) -> ProcessedMarkerCache:
        return cls(redis.from_url(redis_url, decode_responses=True))

    @staticmethod
    def _key(event_id: str) -> str:
        return f"{_KEY_PREFIX}:{event_id}"

    def is_marked(self, event_id: str) -> bool:
        try:
            return bool(self._redis.exists(self._key(event_id)))
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for processed check, falling back to store: %s",
                event_id,
                exc_info=True,
            )
            return False

    def mark(self, event_id: str) -> None:
        try:
            self._redis.set(self._key(event_id), "1", ex=self._ttl)
        except redis.RedisError:
            logger.warning("Failed to set processed marker: %s", event_id)


class EventLedger:
    """At-most-once authority for event application, keyed by event id."""

    def __init__(
        self,
        store: DocumentStore,
        cache: ProcessedMarkerCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._clock = clock

    def record_received(self, event: EventRecord) -> None:
        """Upsert the event row.  Safe to repeat; never raises."""
        try:
            self._store.upsert(event.id, event.to_ledger_fields())
        except BillingSyncError:
            logger.warning(
                "Ledger write failed for %s (%s), continuing", event.id, event.type, exc_info=True
            )

    def is_processed(self, event_id: str) -> bool:
        """True once ``mark_processed`` has succeeded for this id.

        Store read errors propagate to the caller.
        """
        if self._cache is not None and self._cache.is_marked(event_id):
            return True
        doc = self._store.get(event_id)
        return bool(doc and doc.data.get("processed_at"))

    def mark_processed(self, event_id: str, outcome: str) -> None:
        """Set ``processed_at``.  Call only after reconciliation completed.

        Raises:
            StoreWriteError: the marker could not be persisted
        """
        try:
            self._store.upsert(
                event_id,
                {"processed_at": isoformat(self._clock()), "outcome": outcome, "last_error": None},
            )
        except StoreWriteError:
            raise
        except BillingSyncError as e:
            raise StoreWriteError(str(e), key=event_id) from e
        if self._cache is not None:
            self._cache.mark(event_id)

    def record_failure(self, event_id: str, error: BaseException) -> None:
        """Best-effort note of the last reconciliation failure."""
        message = f"{type(error).__name__}: {error}"[:_MAX_ERROR_LENGTH]
        try:
            self._store.upsert(
                event_id, {"last_error": message, "last_failed_at": isoformat(self._clock())}
            )
        except BillingSyncError:
            logger.warning("Failed to record ledger failure for %s", event_id, exc_info=True)
