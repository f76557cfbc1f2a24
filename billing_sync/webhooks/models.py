"""Event, account and subscription models for the webhook engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from billing_sync.store import Document


class EventType(str, Enum):
    """Closed set of event variants the reconciler understands."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_FAILED = "invoice.payment_failed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: str | None) -> EventType:
        try:
            return cls(raw)
        except ValueError:
            return cls.UNRECOGNIZED


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class MatchTier(str, Enum):
    """Which step of the resolution cascade found the account."""

    ACCOUNT_ID = "account_id"
    BILLING_CUSTOMER_ID = "billing_customer_id"
    EMAIL = "email"


# ── Timestamp helpers ─────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch(value: Any) -> datetime | None:
    """Provider epoch seconds -> aware UTC datetime (None if absent/invalid)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Stored ISO 8601 string -> datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ── Events ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EventRecord:
    """A verified provider event.

    ``payload`` is the event's ``data.object`` snapshot.  Everything except
    ``processed_at`` is fixed once the event has been logged.
    """

    id: str
    type: str
    created_at: datetime | None
    payload: dict[str, Any]
    received_at: datetime
    processed_at: datetime | None = None

    @property
    def kind(self) -> EventType:
        return EventType.parse(self.type)

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any], received_at: datetime) -> EventRecord:
        data = envelope.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        return cls(
            id=str(envelope["id"]),
            type=str(envelope["type"]),
            created_at=from_epoch(envelope.get("created")),
            payload=obj if isinstance(obj, dict) else {},
            received_at=received_at,
        )

    def to_ledger_fields(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "created_at": isoformat(self.created_at),
            "payload": self.payload,
            "received_at": isoformat(self.received_at),
        }


# ── Accounts ──────────────────────────────────────────────────────────────


@dataclass
class SubscriptionState:
    """Subscription fields stored under ``account.subscription``."""

    status: str = SubscriptionStatus.NONE.value
    plan_id: str | None = None
    product_id: str | None = None
    billing_interval: str | None = None
    unit_amount: int | None = None
    currency: str | None = None
    mode: str | None = None
    checkout_status: str | None = None
    external_subscription_id: str | None = None
    external_session_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    last_payment_failed_at: datetime | None = None
    updated_at: datetime | None = None

    _TIMESTAMPS = ("current_period_end", "canceled_at", "last_payment_failed_at", "updated_at")

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> SubscriptionState:
        d = d or {}
        values = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        for name in cls._TIMESTAMPS:
            if name in values:
                values[name] = parse_timestamp(values[name])
        if values.get("status") is None:
            values.pop("status", None)
        if values.get("cancel_at_period_end") is None:
            values.pop("cancel_at_period_end", None)
        return cls(**values)


@dataclass
class AccountRecord:
    account_id: str
    email: str | None = None
    billing_customer_id: str | None = None
    subscription: SubscriptionState = field(default_factory=SubscriptionState)

    @classmethod
    def from_document(cls, doc: Document) -> AccountRecord:
        return cls(
            account_id=doc.key,
            email=doc.data.get("email"),
            billing_customer_id=doc.data.get("billing_customer_id"),
            subscription=SubscriptionState.from_dict(doc.data.get("subscription")),
        )


@dataclass(frozen=True)
class ResolutionHints:
    """Identifying fields extracted from an event, strongest first."""

    account_id: str | None = None
    billing_customer_id: str | None = None
    email: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.account_id or self.billing_customer_id or self.email)

    def redacted(self) -> dict[str, str | None]:
        """Hints for log lines, with the email local part masked."""
        email = self.email
        if email and "@" in email:
            email = "***@" + email.split("@", 1)[1]
        return {
            "account_id": self.account_id,
            "billing_customer_id": self.billing_customer_id,
            "email": email,
        }


@dataclass(frozen=True)
class AccountRef:
    account_id: str
    matched_by: MatchTier
    account: AccountRecord

    @property
    def needs_customer_backfill(self) -> bool:
        return not self.account.billing_customer_id
