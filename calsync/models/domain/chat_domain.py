"""
Chat platform domain models.

Presence, custom status and message attachment shapes. Attachment field
names follow the chat platform's JSON keys so they can be dumped directly
into a post's ``props.attachments``.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

STATUS_ONLINE = "online"
STATUS_AWAY = "away"
STATUS_DND = "dnd"
STATUS_OFFLINE = "offline"

PRETTY_STATUSES = {
    STATUS_ONLINE: "Online",
    STATUS_AWAY: "Away",
    STATUS_DND: "Do Not Disturb",
    STATUS_OFFLINE: "Offline",
}


class UserStatus(BaseModel):
    user_id: str
    status: str
    manual: bool = False


class CustomStatus(BaseModel):
    emoji: str = ""
    text: str = ""
    duration: str = ""
    expires_at: datetime | None = None


class ChatUser(BaseModel):
    id: str
    username: str = ""
    props: dict[str, str] = Field(default_factory=dict)

    def get_custom_status(self) -> CustomStatus | None:
        """Parse the custom status stored in the user's props, if any."""
        raw = self.props.get("customStatus")
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not data or not (data.get("emoji") or data.get("text")):
            return None
        return CustomStatus.model_validate(data)


class AttachmentField(BaseModel):
    title: str
    value: str
    short: bool = True


class PostActionOption(BaseModel):
    text: str
    value: str


class PostActionIntegration(BaseModel):
    url: str
    context: dict[str, Any] = Field(default_factory=dict)


class PostAction(BaseModel):
    name: str
    type: str = "button"
    integration: PostActionIntegration
    options: list[PostActionOption] | None = None
    default_option: str = ""


class SlackAttachment(BaseModel):
    author_name: str = ""
    author_link: str = ""
    title: str = ""
    title_link: str = ""
    text: str = ""
    fallback: str = ""
    fields: list[AttachmentField] = Field(default_factory=list)
    actions: list[PostAction] = Field(default_factory=list)


class Post(BaseModel):
    channel_id: str
    message: str = ""
    props: dict[str, Any] = Field(default_factory=dict)

    def add_attachments(self, attachments: list[SlackAttachment]) -> None:
        self.props["attachments"] = [a.model_dump(exclude_none=True) for a in attachments]
