"""
Interactive message actions posted back by the chat platform.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from calsync.engine.env import Env
from calsync.engine.users import Users, UsersError
from calsync.engine.views import CONFIRM_STATUS_CHANGE_PATH, RESPOND_PATH
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.api.notification_request import PostActionRequest
from calsync.models.api.sync_response import PostActionResponse
from calsync.routes.dependencies import get_env
from calsync.services.calendar.remote_client import RemoteCalendarError
from calsync.services.chat.platform_client import ChatPlatformError
from calsync.services.store.kv_store import StoreError

logger = get_logger(__name__)

router = APIRouter(prefix="/actions", tags=["actions"])

# The chat platform adds the picked value of a select menu to the context
SELECTED_OPTION_KEY = "selected_option"


def _replace_post(text: str) -> PostActionResponse:
    return PostActionResponse(update={"message": text, "props": {}})


@router.post(f"/{CONFIRM_STATUS_CHANGE_PATH}", response_model=PostActionResponse)
async def confirm_status_change(body: PostActionRequest, env: Env = Depends(get_env)):
    try:
        text = await Users(env).confirm_status_change(body.user_id, body.context)
    except UsersError as e:
        logger.warning("Rejected status change action", user_id=body.user_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except (StoreError, ChatPlatformError) as e:
        logger.error("Error applying status change", user_id=body.user_id, error=str(e))
        return PostActionResponse(ephemeral_text=f"Error changing status: {e}")

    return _replace_post(text)


@router.post(f"/{RESPOND_PATH}", response_model=PostActionResponse)
async def respond_to_event(body: PostActionRequest, env: Env = Depends(get_env)):
    context = dict(body.context)
    selected = context.pop(SELECTED_OPTION_KEY, "")
    try:
        text = await Users(env).respond_to_event(body.user_id, context, selected)
    except UsersError as e:
        logger.warning("Rejected event response action", user_id=body.user_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except (StoreError, RemoteCalendarError) as e:
        logger.error("Error responding to event", user_id=body.user_id, error=str(e))
        return PostActionResponse(ephemeral_text=f"Error responding to event: {e}")

    return PostActionResponse(ephemeral_text=text)
