"""Checkout API routes: create a hosted checkout session for a price.

The session carries the internal account id (client_reference_id and
metadata.uid) so the checkout.session.completed webhook resolves the account
on the first tier.
"""

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool

from billing_sync.errors import UpstreamLookupError

logger = logging.getLogger(__name__)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """429 with a Retry-After hint."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        {"error": "Rate limit exceeded", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def build_checkout_params(
    price_id: str,
    success_url: str,
    cancel_url: str,
    user_id: str | None = None,
    email: str | None = None,
) -> dict[str, Any]:
    """Stripe checkout session parameters for a recurring subscription."""
    return {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": user_id or None,
        "customer_email": email or None,
        "metadata": {"uid": user_id or "", "priceId": price_id, "source": "web"},
        "allow_promotion_codes": True,
        "billing_address_collection": "auto",
    }

def create_router(limiter: Limiter, rate_limit: str) -> APIRouter:
    """Checkout routes limited to ``rate_limit`` per client address on ``limiter``."""
    router = APIRouter(prefix="/api", tags=["checkout"])

    @router.post("/create-checkout-session")
    @limiter.limit(rate_limit)
    async def create_checkout_session(request: Request):
        """Create a checkout session. Body: {priceId, userId, email, successUrl, cancelUrl}."""
        services = request.app.state.services
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}

        price_id = body.get("priceId")
        if not price_id:
            return JSONResponse({"error": "Missing priceId"}, status_code=400)

        if services.provider is None:
            logger.error("Checkout requested but STRIPE_SECRET_KEY is not configured")
            return JSONResponse({"error": "Billing provider not configured"}, status_code=500)

        settings = services.settings
        origin = request.headers.get("origin", "").rstrip("/")
        success_url = body.get("successUrl") or settings.checkout_success_url or f"{origin}/app"
        cancel_url = body.get("cancelUrl") or settings.checkout_cancel_url or f"{origin}/billing"

        params = build_checkout_params(
            price_id,
            success_url,
            cancel_url,
            user_id=body.get("userId"),
            email=body.get("email"),
        )
        try:
            session = await run_in_threadpool(services.provider.create_checkout_session, params)
        except UpstreamLookupError as e:
            logger.error("create-checkout-session failed: %s", e.message)
            return JSONResponse({"error": e.message}, status_code=500)

        return {"url": session.get("url"), "id": session.get("id")}

    return router
