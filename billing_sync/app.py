"""FastAPI application factory for the billing sync service.

Services (stores, ledger, reconciler, dispatcher, provider client) are built
once per process in the lifespan, or injected by the caller (tests).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from billing_sync.config import Settings, configure_logging, get_settings
from billing_sync.provider import StripeClient
from billing_sync.routers import checkout, health
from billing_sync.store import DocumentStore, InMemoryDocumentStore, PostgresDocumentStore
from billing_sync.webhooks.dispatcher import WebhookDispatcher
from billing_sync.webhooks.handlers import register_webhook_routes
from billing_sync.webhooks.idempotency import EventLedger, ProcessedMarkerCache
from billing_sync.webhooks.reconciler import Reconciler
from billing_sync.webhooks.resolver import AccountResolver

logger = logging.getLogger(__name__)

_ACCOUNT_INDEX_FIELDS = ("billing_customer_id", "email")


@dataclass
class Services:
    settings: Settings
    accounts: DocumentStore
    events: DocumentStore
    ledger: EventLedger
    reconciler: Reconciler
    dispatcher: WebhookDispatcher
    provider: StripeClient | None = None

    def close(self) -> None:
        if self.provider is not None:
            self.provider.close()


def _build_stores(settings: Settings) -> tuple[DocumentStore, DocumentStore]:
    if not settings.database_url:
        logger.warning("DATABASE_URL not set, using in-memory stores (state is lost on restart)")
        return InMemoryDocumentStore(), InMemoryDocumentStore()

    accounts = PostgresDocumentStore(settings.database_url, settings.accounts_table)
    events = PostgresDocumentStore(settings.database_url, settings.events_table)
    accounts.init_table(index_fields=_ACCOUNT_INDEX_FIELDS)
    events.init_table()
    return accounts, events


def build_services(settings: Settings) -> Services:
    """Wire the webhook pipeline from settings."""
    accounts, events = _build_stores(settings)

    cache = None
    if settings.redis_url:
        cache = ProcessedMarkerCache.from_url(settings.redis_url)

    provider = None
    if settings.stripe_secret_key:
        provider = StripeClient(settings.stripe_secret_key, base_url=settings.stripe_api_base)
    else:
        logger.warning("STRIPE_SECRET_KEY not set, provider lookups and checkout are disabled")

    secrets = settings.trusted_secrets()
    if not secrets:
        logger.warning("No webhook signing secret configured, every delivery will be rejected")

    ledger = EventLedger(events, cache=cache)
    reconciler = Reconciler(accounts, AccountResolver(accounts), provider=provider)
    dispatcher = WebhookDispatcher(
        ledger, reconciler, secrets, tolerance=settings.webhook_tolerance_seconds
    )
    return Services(
        settings=settings,
        accounts=accounts,
        events=events,
        ledger=ledger,
        reconciler=reconciler,
        dispatcher=dispatcher,
        provider=provider,
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the FastAPI app.  Injected ``services`` are used as-is and not closed."""
    if settings is None:
        settings = services.settings if services is not None else get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "services", None) is None:
            owned = build_services(settings)
            app.state.services = owned
        logger.info("Billing sync started (%d webhook secret(s))", len(settings.trusted_secrets()))
        yield
        if owned is not None:
            owned.close()
            app.state.services = None
        logger.info("Billing sync stopped")

    app = FastAPI(title="Billing Sync", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    register_webhook_routes(app)
    limiter = Limiter(key_func=get_remote_address)
    app.include_router(checkout.create_router(limiter, settings.checkout_rate_limit))
    app.include_router(health.router)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, checkout.rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    return app
