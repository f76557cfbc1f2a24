"""Shared fixtures for the billing sync test suite."""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from billing_sync.provider import StripeClient
from billing_sync.store import InMemoryDocumentStore
from billing_sync.webhooks.dispatcher import WebhookDispatcher
from billing_sync.webhooks.idempotency import EventLedger
from billing_sync.webhooks.reconciler import Reconciler
from billing_sync.webhooks.resolver import AccountResolver
from billing_sync.webhooks.verification import compute_signature

WEBHOOK_SECRET = "whsec_test_primary"

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

SEED_ACCOUNTS = {
    "acct_alice": {
        "email": "alice@example.com",
        "billing_customer_id": "cus_alice",
        "subscription": {
            "status": "active",
            "plan_id": "price_basic",
            "product_id": "prod_basic",
            "cancel_at_period_end": True,
            "external_session_id": "cs_alice_old",
        },
    },
    "acct_bob": {"email": "bob@example.com"},
    "acct_carol": {"email": "shared@example.com"},
    "acct_dave": {"email": "shared@example.com"},
}


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for ``body``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def make_envelope(event_id: str, event_type: str, obj: dict, created: int = 1772366400) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }
    ).encode()


@pytest.fixture()
def sign():
    return sign_body


@pytest.fixture()
def envelope():
    return make_envelope


@pytest.fixture()
def clock():
    return lambda: FIXED_NOW


@pytest.fixture()
def accounts() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(SEED_ACCOUNTS)


@pytest.fixture()
def events() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def provider() -> MagicMock:
    """Provider double whose lookups find nothing useful by default."""
    mock = MagicMock(spec=StripeClient)
    mock.get_subscription.return_value = {}
    mock.get_customer.return_value = {"id": "cus_unknown", "deleted": True}
    mock.expand_checkout_line_items.return_value = []
    return mock


@pytest.fixture()
def reconciler(accounts, clock) -> Reconciler:
    return Reconciler(accounts, AccountResolver(accounts), clock=clock)


@pytest.fixture()
def ledger(events, clock) -> EventLedger:
    return EventLedger(events, clock=clock)


@pytest.fixture()
def dispatcher(ledger, reconciler) -> WebhookDispatcher:
    return WebhookDispatcher(ledger, reconciler, [WEBHOOK_SECRET])
