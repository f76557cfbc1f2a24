"""Tests for the account resolution cascade."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from billing_sync.errors import StoreError
from billing_sync.webhooks.models import MatchTier, ResolutionHints
from billing_sync.webhooks.resolver import AccountResolver


class TestAccountResolver:
    def test_account_id_tier(self, accounts):
        ref = AccountResolver(accounts).resolve(ResolutionHints(account_id="acct_bob"))
        assert ref.account_id == "acct_bob"
        assert ref.matched_by is MatchTier.ACCOUNT_ID

    def test_account_id_wins_over_customer_id(self, accounts):
        """First matching tier wins; later tiers are not consulted."""
        hints = ResolutionHints(account_id="acct_bob", billing_customer_id="cus_alice")
        ref = AccountResolver(accounts).resolve(hints)
        assert ref.account_id == "acct_bob"

    def test_unknown_account_id_falls_through(self, accounts):
        hints = ResolutionHints(account_id="acct_deleted", billing_customer_id="cus_alice")
        ref = AccountResolver(accounts).resolve(hints)
        assert ref.account_id == "acct_alice"
        assert ref.matched_by is MatchTier.BILLING_CUSTOMER_ID

    def test_customer_id_tier(self, accounts):
        ref = AccountResolver(accounts).resolve(ResolutionHints(billing_customer_id="cus_alice"))
        assert ref.account_id == "acct_alice"
        assert ref.account.subscription.plan_id == "price_basic"
        assert ref.needs_customer_backfill is False

    def test_email_tier(self, accounts):
        hints = ResolutionHints(billing_customer_id="cus_new", email="bob@example.com")
        ref = AccountResolver(accounts).resolve(hints)
        assert ref.account_id == "acct_bob"
        assert ref.matched_by is MatchTier.EMAIL
        assert ref.needs_customer_backfill is True

    def test_shared_email_picks_lowest_account_id(self, accounts):
        ref = AccountResolver(accounts).resolve(ResolutionHints(email="shared@example.com"))
        assert ref.account_id == "acct_carol"

    def test_full_miss_returns_none(self, accounts):
        hints = ResolutionHints(
            account_id="acct_nope", billing_customer_id="cus_nope", email="nobody@example.com"
        )
        assert AccountResolver(accounts).resolve(hints) is None

    def test_empty_hints_skip_store(self):
        store = MagicMock()
        assert AccountResolver(store).resolve(ResolutionHints()) is None
        store.get.assert_not_called()
        store.query.assert_not_called()

    def test_store_errors_propagate(self):
        store = MagicMock()
        store.get.side_effect = StoreError("down")
        with pytest.raises(StoreError):
            AccountResolver(store).resolve(ResolutionHints(account_id="acct_bob"))


class TestResolutionHints:
    def test_redacted_masks_email_local_part(self):
        hints = ResolutionHints(billing_customer_id="cus_1", email="jane.doe@example.com")
        assert hints.redacted() == {
            "account_id": None,
            "billing_customer_id": "cus_1",
            "email": "***@example.com",
        }

    def test_is_empty(self):
        assert ResolutionHints().is_empty
        assert not ResolutionHints(email="a@b.c").is_empty
