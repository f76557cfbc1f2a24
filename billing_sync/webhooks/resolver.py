"""Account resolution cascade.

Maps the identifying hints carried by an event to one internal account:

1. account_id          -> direct lookup by primary key (explicit linkage set
                          when the checkout session was created)
2. billing_customer_id -> account whose stored customer id equals the hint
3. email               -> first account (ascending id) with that email;
                          heuristic, emails are not unique in practice

The first tier that yields an account wins; later tiers are not consulted.
An account_id that does not exist counts as a miss for tier 1.  A miss on
every tier returns None: the caller logs it and skips the event.
"""

from __future__ import annotations

import logging

from billing_sync.store import DocumentStore
from billing_sync.webhooks.models import AccountRecord, AccountRef, MatchTier, ResolutionHints

logger = logging.getLogger(__name__)


class AccountResolver:
    """Read-only lookups against the account store.  Store errors propagate."""

    def __init__(self, accounts: DocumentStore):
        self._accounts = accounts

    def resolve(self, hints: ResolutionHints) -> AccountRef | None:
        if hints.is_empty:
            logger.info("No resolution hints on event")
            return None

        if hints.account_id:
            doc = self._accounts.get(hints.account_id)
            if doc is not None:
                return AccountRef(doc.key, MatchTier.ACCOUNT_ID, AccountRecord.from_document(doc))
            logger.info("account_id hint %s not found, trying next tier", hints.account_id)

        if hints.billing_customer_id:
            doc = self._accounts.query("billing_customer_id", hints.billing_customer_id)
            if doc is not None:
                return AccountRef(
                    doc.key, MatchTier.BILLING_CUSTOMER_ID, AccountRecord.from_document(doc)
                )

        if hints.email:
            doc = self._accounts.query("email", hints.email)
            if doc is not None:
                logger.info("Account %s resolved by email match", doc.key)
                return AccountRef(doc.key, MatchTier.EMAIL, AccountRecord.from_document(doc))

        logger.warning("No account matched hints %s", hints.redacted())
        return None
