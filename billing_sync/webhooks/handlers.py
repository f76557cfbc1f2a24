"""Webhook HTTP handlers: FastAPI routes for inbound provider webhooks.

The handler:
1. Reads the raw body (needed byte-for-byte for HMAC verification)
2. Hands body + Stripe-Signature header to the dispatcher in the threadpool
3. Maps the dispatch outcome to 200 / 400 / 500

Security contract:
- Never return error details to the webhook caller beyond a short reason
- 200 for duplicates, unresolved accounts and unhandled types alike
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from billing_sync.webhooks.dispatcher import Ack, WebhookDispatcher

logger = logging.getLogger(__name__)

_RESPONSE_BODIES = {
    400: {"error": "Webhook rejected"},
    500: {"error": "Temporary failure, retry later"},
}


def _dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.services.dispatcher


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request):
        """Receive Stripe webhooks (signature-verified)."""
        try:
            body = await request.body()
        except ClientDisconnect:
            logger.warning("Client disconnected while sending webhook body")
            return JSONResponse(_RESPONSE_BODIES[400], status_code=400)

        signature = request.headers.get("stripe-signature")
        outcome = await run_in_threadpool(_dispatcher(request).handle, body, signature)

        if outcome.status_code == 200:
            content = {"received": True}
            if outcome.ack is Ack.DUPLICATE:
                content["duplicate"] = True
            return JSONResponse(content, status_code=200)
        return JSONResponse(_RESPONSE_BODIES[outcome.status_code], status_code=outcome.status_code)

    @app.get("/webhooks/status")
    async def webhook_status(request: Request):
        """Dispatch outcome counts since process start."""
        return {"counts": _dispatcher(request).counts()}

    logger.info("Webhook routes registered: /webhooks/stripe")
