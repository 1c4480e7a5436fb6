"""
Admin endpoints to trigger a status sync pass outside the schedule.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from calsync.engine.availability import Availability, AvailabilityError, StatusSyncJobSummary
from calsync.engine.env import Env
from calsync.infrastructure.observability.logging import get_logger
from calsync.models.api.sync_response import JobSummaryResponse, SyncResponse
from calsync.routes.dependencies import get_env, require_admin_key

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_admin_key)])


def _response(result: str, summary: StatusSyncJobSummary) -> SyncResponse:
    return SyncResponse(result=result, summary=JobSummaryResponse(**summary.to_dict()))


@router.post("", response_model=SyncResponse)
async def sync_all(env: Env = Depends(get_env)):
    """Run a sync pass for every linked user."""
    try:
        result, summary = await Availability(env).sync_all()
    except AvailabilityError as e:
        logger.error("Manual sync failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)) from e

    logger.info("Manual sync completed", **summary.to_dict())
    return _response(result, summary)


@router.post("/{user_id}", response_model=SyncResponse)
async def sync_user(user_id: str, env: Env = Depends(get_env)):
    """Run a sync pass for one linked user."""
    try:
        result, summary = await Availability(env).sync(user_id)
    except AvailabilityError as e:
        logger.warning("Manual user sync failed", user_id=user_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)) from e

    return _response(result, summary)
