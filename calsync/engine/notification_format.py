"""
Attachments describing new and updated events for change notifications.
"""

from datetime import datetime

from calsync.engine.views import (
    ensure_subject,
    format_when,
    markdown_to_html_entities,
    sign_action_context,
)
from calsync.models.domain.calendar_domain import (
    RESPONSE_ACCEPTED,
    RESPONSE_DECLINED,
    RESPONSE_NONE,
    RESPONSE_TENTATIVE,
    Event,
)
from calsync.models.domain.chat_domain import (
    AttachmentField,
    PostAction,
    PostActionIntegration,
    PostActionOption,
    SlackAttachment,
)
from calsync.utils import fields
from calsync.utils.fields import Fields

FIELD_SUBJECT = "Subject"
FIELD_BODY_PREVIEW = "BodyPreview"
FIELD_IMPORTANCE = "Importance"
FIELD_DURATION = "Duration"
FIELD_WHEN = "When"
FIELD_LOCATION = "Location"
FIELD_ATTENDEES = "Attendees"
FIELD_ORGANIZER = "Organizer"
FIELD_RESPONSE_STATUS = "ResponseStatus"

IMPORTANT_NOTIFICATION_CHANGES = (FIELD_SUBJECT, FIELD_WHEN)

NOTIFICATION_FIELD_ORDER = (
    FIELD_WHEN,
    FIELD_LOCATION,
    FIELD_ATTENDEES,
    FIELD_IMPORTANCE,
)

OPTION_YES = "Yes"
OPTION_NOT_RESPONDED = "Not responded"
OPTION_NO = "No"
OPTION_MAYBE = "Maybe"

RESPONSE_OPTIONS = {
    RESPONSE_NONE: OPTION_NOT_RESPONDED,
    RESPONSE_ACCEPTED: OPTION_YES,
    RESPONSE_DECLINED: OPTION_NO,
    RESPONSE_TENTATIVE: OPTION_MAYBE,
}

NOT_DEFINED = "Not defined"


def _value_or_not_defined(value: str) -> str:
    return value or NOT_DEFINED


def format_duration(event: Event) -> str:
    if event.start is None or event.end is None:
        return ""
    total_minutes = round(event.duration().total_seconds() / 60)
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)

    if days > 0:
        return f"{days} day" if days == 1 else f"{days} days"
    if event.is_all_day:
        return "all-day"

    parts = []
    if hours == 1:
        parts.append("1 hour")
    elif hours > 1:
        parts.append(f"{hours} hours")
    if minutes > 0:
        parts.append(f"{minutes} minutes")
    return ", ".join(parts)


def _mailto(name: str, address: str) -> str:
    return f"[{name}](mailto:{address})"


def event_to_fields(event: Event, timezone: str, now: datetime | None = None) -> Fields:
    attendees = [_mailto(a.email_address.name, a.email_address.address) for a in event.attendees]
    organizer = event.organizer.email_address
    return {
        FIELD_SUBJECT: [ensure_subject(event.subject)],
        FIELD_BODY_PREVIEW: [_value_or_not_defined(event.body_preview)],
        FIELD_IMPORTANCE: [_value_or_not_defined(event.importance)],
        FIELD_WHEN: [_value_or_not_defined(format_when(event, timezone, now))],
        FIELD_DURATION: [_value_or_not_defined(format_duration(event))],
        FIELD_ORGANIZER: [_mailto(organizer.name, organizer.address)],
        FIELD_LOCATION: [_value_or_not_defined(event.location.display_name)],
        FIELD_RESPONSE_STATUS: [event.response_status.response if event.response_status else ""],
        FIELD_ATTENDEES: attendees or ["None"],
    }


def is_important_change(field_name: str) -> bool:
    return field_name in IMPORTANT_NOTIFICATION_CHANGES


def post_actions_for_event_response(
    event_id: str, response: str, url: str, user_id: str, secret: str
) -> list[PostAction]:
    """Select menu letting an invitee answer the invitation."""
    action = PostAction(
        name="Response",
        type="select",
        integration=PostActionIntegration(
            url=url, context=sign_action_context({"user_id": user_id, "event_id": event_id}, secret)
        ),
        options=[
            PostActionOption(text=o, value=o)
            for o in (OPTION_NOT_RESPONDED, OPTION_YES, OPTION_NO, OPTION_MAYBE)
        ],
        default_option=RESPONSE_OPTIONS.get(response, ""),
    )
    return [action]


def _base_attachment(event: Event) -> SlackAttachment:
    title = ensure_subject(event.subject)
    organizer = event.organizer.email_address
    return SlackAttachment(
        author_name=organizer.name,
        author_link="mailto:" + organizer.address,
        title=title,
        title_link=event.weblink,
        text=event.body_preview,
        fallback=f"[{title}]({event.weblink}): {event.body_preview}",
    )


def _needs_response(event: Event) -> bool:
    return event.response_requested and not event.is_organizer and not event.is_cancelled


def new_event_attachment(
    event: Event, timezone: str, respond_url: str, user_id: str, secret: str, now: datetime | None = None
) -> SlackAttachment:
    attachment = _base_attachment(event)
    attachment.title = "(new) " + attachment.title

    values = event_to_fields(event, timezone, now)
    for name in NOTIFICATION_FIELD_ORDER:
        attachment.fields.append(AttachmentField(title=name, value=fields.join(values[name])))

    if _needs_response(event):
        response = event.response_status.response if event.response_status else RESPONSE_NONE
        attachment.actions = post_actions_for_event_response(event.id, response, respond_url, user_id, secret)
    return attachment


def updated_event_attachment(
    event: Event,
    prior: Event,
    timezone: str,
    respond_url: str,
    user_id: str,
    secret: str,
    now: datetime | None = None,
) -> SlackAttachment | None:
    """
    Describe the important changes between the stored snapshot and the new
    event, or return None when nothing worth a message changed.
    """
    new_fields = event_to_fields(event, timezone, now)
    prior_fields = event_to_fields(prior, timezone, now)
    changes = fields.diff(prior_fields, new_fields)
    if not changes.changed:
        return None
    if not any(is_important_change(name) for name in changes.all()):
        return None

    attachment = _base_attachment(event)
    attachment.title = "(updated) " + attachment.title

    def render(values: Fields, name: str) -> str:
        return markdown_to_html_entities(fields.join(values[name]))

    for name in changes.added:
        if is_important_change(name):
            attachment.fields.append(AttachmentField(title=name, value=render(new_fields, name)))
    for name in changes.updated:
        if is_important_change(name):
            value = f"~~{render(prior_fields, name)}~~ → {render(new_fields, name)}"
            attachment.fields.append(AttachmentField(title=name, value=value))
    for name in changes.deleted:
        if is_important_change(name):
            attachment.fields.append(AttachmentField(title=name, value=f"~~{render(prior_fields, name)}~~"))

    if _needs_response(event):
        response = event.response_status.response if event.response_status else RESPONSE_NONE
        attachment.actions = post_actions_for_event_response(event.id, response, respond_url, user_id, secret)
    return attachment
