"""Per-event-type reconciliation into account subscription state.

Handlers:
- checkout.session.completed       -> activate, link session/customer/price
- customer.subscription.created    -> sync status, price, period, cancel flag
- customer.subscription.updated    -> same as created
- customer.subscription.deleted    -> status=canceled, canceled_at=now
- invoice.payment_failed           -> last_payment_failed_at=now
- anything else                    -> logged, no mutation

Merge contract:
- Every write is a partial upsert: only fields the event actually carries are
  sent, absent fields are left untouched and never cleared.  Re-applying an
  event writes the same values again, so reprocessing after a lost
  processed-marker is harmless.
- ``subscription.updated_at`` is processing time, never the event timestamp.
- An account found without a billing customer id gets the event's customer
  id written back, so later events resolve by customer id.  A customer id
  already held by another account is never written, so each id maps to at
  most one account.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from billing_sync.errors import ResolutionFailed, UpstreamLookupError
from billing_sync.provider import StripeClient
from billing_sync.store import DocumentStore
from billing_sync.webhooks.models import (
    AccountRecord,
    AccountRef,
    EventRecord,
    EventType,
    ResolutionHints,
    SubscriptionStatus,
    from_epoch,
    isoformat,
    utcnow,
)
from billing_sync.webhooks.resolver import AccountResolver

logger = logging.getLogger(__name__)

# Metadata keys that carry the internal account id, strongest first
_ACCOUNT_METADATA_KEYS = ("account_id", "uid", "userId")


class ReconcileStatus(str, Enum):
    APPLIED = "applied"
    UNRESOLVED = "unresolved"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    account_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


# ── Payload extraction ────────────────────────────────────────────────────


def _as_id(value: Any) -> str | None:
    """Provider reference that may be a bare id or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def _metadata_account_id(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    for key in _ACCOUNT_METADATA_KEYS:
        value = metadata.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _first_price(items: Any) -> dict[str, Any] | None:
    """Price object of the first entry of a ``{"data": [...]}`` list."""
    if not isinstance(items, dict):
        return None
    data = items.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    price = data[0].get("price")
    return price if isinstance(price, dict) else None


def _price_fields(price: dict[str, Any]) -> dict[str, Any]:
    recurring = price.get("recurring") or {}
    return {
        "plan_id": price.get("id"),
        "product_id": _as_id(price.get("product")),
        "billing_interval": recurring.get("interval"),
        "unit_amount": price.get("unit_amount"),
        "currency": price.get("currency"),
    }


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    # Newer API versions moved the period onto the subscription items
    end = subscription.get("current_period_end")
    if end is None:
        data = (subscription.get("items") or {}).get("data") or []
        if data and isinstance(data[0], dict):
            end = data[0].get("current_period_end")
    return from_epoch(end)


# ── Reconciler ────────────────────────────────────────────────────────────


# One handler per EventType member; checked below so a new member cannot
# ship without one.
_HANDLER_NAMES: dict[EventType, str] = {
    EventType.CHECKOUT_COMPLETED: "_on_checkout_completed",
    EventType.SUBSCRIPTION_CREATED: "_on_subscription_changed",
    EventType.SUBSCRIPTION_UPDATED: "_on_subscription_changed",
    EventType.SUBSCRIPTION_DELETED: "_on_subscription_deleted",
    EventType.PAYMENT_FAILED: "_on_payment_failed",
    EventType.UNRECOGNIZED: "_on_unrecognized",
}

_missing = set(EventType) - set(_HANDLER_NAMES)
if _missing:
    raise RuntimeError(f"No reconcile handler for: {sorted(m.value for m in _missing)}")


class Reconciler:
    """Applies event-type-specific field merges to the resolved account."""

    def __init__(
        self,
        accounts: DocumentStore,
        resolver: AccountResolver,
        provider: StripeClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._accounts = accounts
        self._resolver = resolver
        self._provider = provider
        self._clock = clock
        self._handlers: dict[EventType, Callable[[EventRecord], ReconcileResult]] = {
            kind: getattr(self, name) for kind, name in _HANDLER_NAMES.items()
        }

    def reconcile(self, event: EventRecord) -> ReconcileResult:
        """Apply ``event``.  Store errors propagate; provider errors degrade."""
        try:
            return self._handlers[event.kind](event)
        except ResolutionFailed as e:
            logger.warning(
                "%s (%s): %s for %s, skipping", event.type, event.id, e.message, e.details["hints"]
            )
            return ReconcileResult(ReconcileStatus.UNRESOLVED)

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _on_checkout_completed(self, event: EventRecord) -> ReconcileResult:
        session = event.payload
        hints = ResolutionHints(
            account_id=_as_id(session.get("client_reference_id")) or _metadata_account_id(session),
            billing_customer_id=_as_id(session.get("customer")),
            email=(session.get("customer_details") or {}).get("email") or session.get("customer_email"),
        )
        ref = self._require(self._resolver.resolve(hints), hints)

        subscription = {
            "status": SubscriptionStatus.ACTIVE.value,
            "checkout_status": session.get("status") or "complete",
            "mode": session.get("mode"),
            "external_session_id": session.get("id"),
            "external_subscription_id": _as_id(session.get("subscription")),
        }
        subscription.update(self._checkout_price_fields(session, ref.account))

        return self._apply(event, ref, hints, subscription, relink_customer=True)

    def _on_subscription_changed(self, event: EventRecord) -> ReconcileResult:
        subscription = event.payload
        hints = self._subscription_hints(subscription)
        ref = self._require(self._resolve_with_customer_lookup(hints), hints)

        price = _first_price(subscription.get("items"))
        if price is None and subscription.get("id"):
            expanded = self._lookup(
                "subscription", lambda p: p.get_subscription(subscription["id"])
            )
            if expanded:
                subscription = {**expanded, **subscription, "items": expanded.get("items")}
                price = _first_price(subscription.get("items"))

        fields: dict[str, Any] = {
            "status": subscription.get("status"),
            "external_subscription_id": subscription.get("id"),
            "current_period_end": isoformat(_period_end(subscription)),
        }
        if price is not None:
            fields.update(_price_fields(price))
        if "cancel_at_period_end" in subscription:
            fields["cancel_at_period_end"] = bool(subscription["cancel_at_period_end"])
        return self._apply(event, ref, hints, fields)

    def _on_subscription_deleted(self, event: EventRecord) -> ReconcileResult:
        hints = self._subscription_hints(event.payload)
        ref = self._require(self._resolve_with_customer_lookup(hints), hints)

        fields = {
            "status": SubscriptionStatus.CANCELED.value,
            "canceled_at": isoformat(self._clock()),
        }
        return self._apply(event, ref, hints, fields)

    def _on_payment_failed(self, event: EventRecord) -> ReconcileResult:
        invoice = event.payload
        hints = ResolutionHints(billing_customer_id=_as_id(invoice.get("customer")))
        ref = self._require(self._resolver.resolve(hints), hints)

        fields = {"last_payment_failed_at": isoformat(self._clock())}
        logger.warning(
            "Payment failed for account %s (invoice %s, attempt %s)",
            ref.account_id,
            invoice.get("id"),
            invoice.get("attempt_count"),
        )
        return self._apply(event, ref, hints, fields)

    def _on_unrecognized(self, event: EventRecord) -> ReconcileResult:
        logger.info("Unhandled event type %s (%s), logged only", event.type, event.id)
        return ReconcileResult(ReconcileStatus.IGNORED)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _subscription_hints(subscription: dict[str, Any]) -> ResolutionHints:
        return ResolutionHints(
            account_id=_metadata_account_id(subscription),
            billing_customer_id=_as_id(subscription.get("customer")),
        )

    def _resolve_with_customer_lookup(self, hints: ResolutionHints) -> AccountRef | None:
        """Resolve; on a miss, fetch the customer's email and try once more."""
        ref = self._resolver.resolve(hints)
        if ref is not None or not hints.billing_customer_id or hints.email:
            return ref

        customer = self._lookup(
            "customer", lambda p: p.get_customer(hints.billing_customer_id)
        )
        email = customer.get("email") if customer and not customer.get("deleted") else None
        if not email:
            return None
        return self._resolver.resolve(dataclasses.replace(hints, email=email))

    def _checkout_price_fields(
        self, session: dict[str, Any], account: AccountRecord
    ) -> dict[str, Any]:
        """Price fields from inline line items, known state, or expansion."""
        inline = _first_price(session.get("line_items"))
        if inline is not None:
            return _price_fields(inline)

        metadata = session.get("metadata") or {}
        price_id = metadata.get("priceId") or metadata.get("price_id")
        known = account.subscription
        if known.product_id and known.plan_id and (
            known.plan_id == price_id
            or (price_id is None and known.external_session_id == session.get("id"))
        ):
            return {"plan_id": known.plan_id}

        session_id = session.get("id")
        if session_id:
            items = self._lookup(
                "checkout_line_items", lambda p: p.expand_checkout_line_items(session_id)
            )
            expanded = _first_price({"data": items}) if items else None
            if expanded is not None:
                return _price_fields(expanded)

        return {"plan_id": price_id}

    def _lookup(self, resource: str, call: Callable[[StripeClient], Any]) -> Any:
        """Provider call that degrades to None on failure or when unconfigured."""
        if self._provider is None:
            return None
        try:
            return call(self._provider)
        except UpstreamLookupError as e:
            logger.warning("Provider %s lookup failed, using inline fields: %s", resource, e)
            return None

    def _customer_link(
        self, ref: AccountRef, customer_id: str | None, relink: bool
    ) -> dict[str, Any]:
        """``billing_customer_id`` patch for ``ref``, or {} when it must not be written.

        A customer id belongs to at most one account: an id already held by a
        different account is never copied onto this one.
        """
        if not customer_id or customer_id == ref.account.billing_customer_id:
            return {}
        if not relink and not ref.needs_customer_backfill:
            return {}
        owner = self._accounts.query("billing_customer_id", customer_id)
        if owner is not None and owner.key != ref.account_id:
            logger.warning(
                "Billing customer %s already linked to account %s, not linking account %s",
                customer_id,
                owner.key,
                ref.account_id,
            )
            return {}
        logger.info(
            "Linking billing customer %s to account %s (matched by %s)",
            customer_id,
            ref.account_id,
            ref.matched_by.value,
        )
        return {"billing_customer_id": customer_id}

    def _apply(
        self,
        event: EventRecord,
        ref: AccountRef,
        hints: ResolutionHints,
        subscription_fields: dict[str, Any],
        relink_customer: bool = False,
    ) -> ReconcileResult:
        patch = self._customer_link(ref, hints.billing_customer_id, relink_customer)

        subscription = {k: v for k, v in subscription_fields.items() if v is not None}
        subscription["updated_at"] = isoformat(self._clock())
        patch["subscription"] = subscription

        self._accounts.upsert(ref.account_id, patch)
        logger.info(
            "Account %s updated for %s (%s, matched by %s)",
            ref.account_id,
            event.type,
            event.id,
            ref.matched_by.value,
        )
        return ReconcileResult(ReconcileStatus.APPLIED, ref.account_id, patch)

    @staticmethod
    def _require(ref: AccountRef | None, hints: ResolutionHints) -> AccountRef:
        if ref is None:
            raise ResolutionFailed(hints=hints.redacted())
        return ref
