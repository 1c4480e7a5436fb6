# calsync/models/api/notification_request.py
"""
Webhook request models.
Used by the notification route to validate inbound provider payloads.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from calsync.models.domain.calendar_domain import Notification

# Renew when the subscription has less than this left before it expires
RENEW_RECOMMENDATION_WINDOW = timedelta(hours=24)

LIFECYCLE_REAUTHORIZATION_REQUIRED = "reauthorizationRequired"


class ResourceData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = ""
    odata_type: str = Field(default="", alias="@odata.type")


class ChangeNotificationRequest(BaseModel):
    """Single change notification as delivered by Microsoft Graph."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    subscription_id: str = Field(..., alias="subscriptionId")
    client_state: str = Field(default="", alias="clientState")
    change_type: str = Field(default="", alias="changeType")
    resource: str = Field(default="")
    resource_data: ResourceData | None = Field(default=None, alias="resourceData")
    subscription_expiration_datetime: datetime | None = Field(
        default=None, alias="subscriptionExpirationDateTime"
    )
    lifecycle_event: str | None = Field(default=None, alias="lifecycleEvent")

    def should_renew(self, now: datetime | None = None) -> bool:
        """Whether the provider signalled the subscription is about to lapse."""
        if self.lifecycle_event == LIFECYCLE_REAUTHORIZATION_REQUIRED:
            return True
        if self.subscription_expiration_datetime is None:
            return False
        now = now or datetime.now(UTC)
        expires = self.subscription_expiration_datetime
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=UTC)
        return expires - now < RENEW_RECOMMENDATION_WINDOW

    def to_domain(self) -> Notification:
        return Notification(
            subscription_id=self.subscription_id,
            change_type=self.change_type,
            client_state=self.client_state,
            resource=self.resource,
            event_id=self.resource_data.id if self.resource_data else "",
            is_bare=True,
            recommend_renew=self.should_renew(),
        )


class ChangeNotificationCollection(BaseModel):
    value: list[ChangeNotificationRequest] = Field(default_factory=list)


class PostActionRequest(BaseModel):
    """Payload the chat platform sends when a message button is clicked."""

    model_config = ConfigDict(extra="allow")

    user_id: str
    channel_id: str = ""
    post_id: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
