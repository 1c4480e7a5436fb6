"""
Sync API response models.
Used by routes for output formatting.
"""

from pydantic import BaseModel, Field


class JobSummaryResponse(BaseModel):
    """Counters for one status sync pass."""

    users_processed: int = Field(..., description="Users considered in this pass")
    users_status_changed: int = Field(..., description="Users whose status was changed")
    users_failed: int = Field(..., description="Users that could not be processed")


class SyncResponse(BaseModel):
    """Response for manually triggered status syncs."""

    result: str = Field(..., description="Human readable outcome of the pass")
    summary: JobSummaryResponse


class NotificationAcceptedResponse(BaseModel):
    accepted: int = Field(..., description="Number of notifications queued")


class PostActionResponse(BaseModel):
    """Response body understood by the chat platform's interactive messages."""

    update: dict | None = None
    ephemeral_text: str | None = None
