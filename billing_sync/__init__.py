"""Billing sync: verified Stripe webhooks reconciled onto account records."""

__version__ = "0.1.0"
