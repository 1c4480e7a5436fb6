"""
Request dependencies: the engine environment and notification processor
started in the app lifespan, and admin API key checks.
"""

import hmac

from fastapi import Header, HTTPException, Request, status

from calsync.engine.env import Env
from calsync.engine.notification_processor import NotificationProcessor


def get_env(request: Request) -> Env:
    env = getattr(request.app.state, "env", None)
    if env is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return env


def get_processor(request: Request) -> NotificationProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service not ready")
    return processor


def require_admin_key(request: Request, x_admin_key: str | None = Header(default=None)) -> None:
    expected = get_env(request).settings.ADMIN_API_KEY
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
