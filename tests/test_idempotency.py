"""Tests for the idempotency ledger and the Redis processed-marker cache."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import redis

from billing_sync.errors import StoreError, StoreWriteError
from billing_sync.store import Document
from billing_sync.webhooks.idempotency import EventLedger, ProcessedMarkerCache
from billing_sync.webhooks.verification import parse_envelope

from tests.conftest import FIXED_NOW, make_envelope


def _event(event_id: str = "evt_1"):
    return parse_envelope(
        make_envelope(event_id, "invoice.payment_failed", {"customer": "cus_1"}),
        received_at=FIXED_NOW,
    )


class TestProcessedMarkerCache:
    def test_marked_when_key_exists(self):
        client = MagicMock()
        client.exists.return_value = 1
        assert ProcessedMarkerCache(client).is_marked("evt_1") is True
        client.exists.assert_called_once_with("webhook:processed:evt_1")

    def test_not_marked_when_key_missing(self):
        client = MagicMock()
        client.exists.return_value = 0
        assert ProcessedMarkerCache(client).is_marked("evt_1") is False

    def test_redis_down_fails_open(self):
        client = MagicMock()
        client.exists.side_effect = redis.ConnectionError("down")
        assert ProcessedMarkerCache(client).is_marked("evt_1") is False

    def test_mark_sets_key_with_ttl(self):
        client = MagicMock()
        ProcessedMarkerCache(client).mark("evt_1")
        client.set.assert_called_once_with("webhook:processed:evt_1", "1", ex=86400)

    def test_mark_swallows_redis_errors(self):
        client = MagicMock()
        client.set.side_effect = redis.ConnectionError("down")
        ProcessedMarkerCache(client).mark("evt_1")


class TestEventLedger:
    def test_record_received_logs_event(self, ledger, events):
        ledger.record_received(_event())
        row = events.get("evt_1").data
        assert row["type"] == "invoice.payment_failed"
        assert row["payload"] == {"customer": "cus_1"}
        assert row["received_at"] == FIXED_NOW.isoformat()
        assert "processed_at" not in row

    def test_record_received_twice_is_harmless(self, ledger, events):
        ledger.record_received(_event())
        ledger.mark_processed("evt_1", "processed")
        ledger.record_received(_event())
        assert events.get("evt_1").data["processed_at"] == FIXED_NOW.isoformat()

    def test_not_processed_until_marked(self, ledger):
        ledger.record_received(_event())
        assert ledger.is_processed("evt_1") is False
        ledger.mark_processed("evt_1", "processed")
        assert ledger.is_processed("evt_1") is True

    def test_unknown_event_not_processed(self, ledger):
        assert ledger.is_processed("evt_never_seen") is False

    def test_mark_processed_records_outcome(self, ledger, events):
        ledger.mark_processed("evt_1", "unresolved")
        row = events.get("evt_1").data
        assert row["outcome"] == "unresolved"
        assert row["last_error"] is None

    def test_record_received_swallows_store_failure(self):
        store = MagicMock()
        store.upsert.side_effect = StoreWriteError("down", key="evt_1")
        EventLedger(store).record_received(_event())

    def test_mark_processed_failure_propagates(self):
        store = MagicMock()
        store.upsert.side_effect = StoreWriteError("down", key="evt_1")
        with pytest.raises(StoreWriteError):
            EventLedger(store).mark_processed("evt_1", "processed")

    def test_mark_processed_wraps_other_store_errors(self):
        store = MagicMock()
        store.upsert.side_effect = StoreError("timeout")
        with pytest.raises(StoreWriteError) as exc_info:
            EventLedger(store).mark_processed("evt_1", "processed")
        assert exc_info.value.key == "evt_1"

    def test_is_processed_read_failure_propagates(self):
        store = MagicMock()
        store.get.side_effect = StoreError("down")
        with pytest.raises(StoreError):
            EventLedger(store).is_processed("evt_1")

    def test_cache_hit_skips_store(self):
        store = MagicMock()
        cache = MagicMock(spec=ProcessedMarkerCache)
        cache.is_marked.return_value = True
        assert EventLedger(store, cache=cache).is_processed("evt_1") is True
        store.get.assert_not_called()

    def test_cache_miss_falls_back_to_store(self):
        store = MagicMock()
        store.get.return_value = Document("evt_1", {"processed_at": "2026-03-01T12:00:00+00:00"})
        cache = MagicMock(spec=ProcessedMarkerCache)
        cache.is_marked.return_value = False
        assert EventLedger(store, cache=cache).is_processed("evt_1") is True

    def test_cache_marked_after_store_write(self, events, clock):
        cache = MagicMock(spec=ProcessedMarkerCache)
        EventLedger(events, cache=cache, clock=clock).mark_processed("evt_1", "processed")
        cache.mark.assert_called_once_with("evt_1")

    def test_cache_not_marked_when_store_write_fails(self):
        store = MagicMock()
        store.upsert.side_effect = StoreWriteError("down")
        cache = MagicMock(spec=ProcessedMarkerCache)
        with pytest.raises(StoreWriteError):
            EventLedger(store, cache=cache).mark_processed("evt_1", "processed")
        cache.mark.assert_not_called()

    def test_record_failure_truncates_message(self, ledger, events):
        ledger.record_failure("evt_1", RuntimeError("x" * 2000))
        row = events.get("evt_1").data
        assert row["last_error"].startswith("RuntimeError: x")
        assert len(row["last_error"]) == 500
        assert row["last_failed_at"] == FIXED_NOW.isoformat()

    def test_record_failure_is_best_effort(self):
        store = MagicMock()
        store.upsert.side_effect = StoreWriteError("down")
        EventLedger(store).record_failure("evt_1", RuntimeError("boom"))
