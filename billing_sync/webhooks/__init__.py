"""Webhook pipeline: verification, idempotency ledger, account resolution, reconciliation."""
