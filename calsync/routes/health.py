"""
Health check endpoints.
"""

import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from calsync.engine.env import Env
from calsync.engine.notification_processor import NotificationProcessor
from calsync.routes.dependencies import get_env, get_processor

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "calsync"}


@router.get("/readyz")
async def readyz(env: Env = Depends(get_env), processor: NotificationProcessor = Depends(get_processor)):
    """Readiness check: key-value store reachable and notification worker alive."""
    checks = {}

    t0 = time.time()
    redis_ok = await env.store.ping()
    checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.time() - t0) * 1000, 1)}

    checks["notification_processor"] = {
        "ok": processor.is_running,
        "pending": processor.pending,
    }

    overall_ok = all(check["ok"] for check in checks.values())
    body = {"overall_ok": overall_ok, "provider": env.settings.CALENDAR_PROVIDER, "checks": checks}
    return JSONResponse(status_code=200 if overall_ok else 503, content=body)
