"""
Calendar provider webhook intake.

Graph validates a new subscription by POSTing a validationToken query
parameter that must be echoed back as text/plain. Change notifications are
queued for the notification processor and acknowledged with 202.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse

from calsync.engine.env import Env
from calsync.engine.notification_processor import NotificationProcessor, QueueFullError
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.api.notification_request import ChangeNotificationCollection
from calsync.models.api.sync_response import NotificationAcceptedResponse
from calsync.routes.dependencies import get_env, get_processor

logger = get_logger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/{provider}", status_code=status.HTTP_202_ACCEPTED, response_model=NotificationAcceptedResponse)
async def receive_notifications(
    provider: str,
    payload: ChangeNotificationCollection | None = None,
    validation_token: str | None = Query(default=None, alias="validationToken"),
    env: Env = Depends(get_env),
    processor: NotificationProcessor = Depends(get_processor),
):
    if provider != env.settings.CALENDAR_PROVIDER:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")

    if validation_token is not None:
        return PlainTextResponse(content=validation_token, status_code=status.HTTP_200_OK)

    if payload is None or not payload.value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No notifications in request")

    notifications = [n.to_domain() for n in payload.value]
    try:
        processor.enqueue(*notifications)
    except QueueFullError as e:
        logger.error("Dropped webhook notifications", count=len(notifications), error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    logger.debug("Webhook notifications queued", count=len(notifications))
    return NotificationAcceptedResponse(accepted=len(notifications))
