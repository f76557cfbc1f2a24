"""Diagnostic routes: store ping and configuration presence."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/db-ping")
async def db_ping(request: Request):
    """Round-trip to the account store."""
    services = request.app.state.services
    ok = await run_in_threadpool(services.accounts.ping)
    if not ok:
        return JSONResponse({"ok": False, "error": "Account store unreachable"}, status_code=500)
    return {"ok": True, "store": type(services.accounts).__name__}


@router.get("/env-check")
async def env_check(request: Request):
    """Which settings are present. Never returns values."""
    settings = request.app.state.services.settings
    return {
        "STRIPE_SECRET_KEY": bool(settings.stripe_secret_key),
        "STRIPE_WEBHOOK_SECRET": bool(settings.trusted_secrets()),
        "DATABASE_URL": bool(settings.database_url),
        "REDIS_URL": bool(settings.redis_url),
        "webhook_secret_count": len(settings.trusted_secrets()),
    }
