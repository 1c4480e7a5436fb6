"""
Chat renderings for calendar data: status change prompts, upcoming event
reminders, agenda tables.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime
from urllib.parse import unquote

from calsync.models.domain.calendar_domain import Event
from calsync.models.domain.chat_domain import (
    PRETTY_STATUSES,
    STATUS_DND,
    AttachmentField,
    PostAction,
    PostActionIntegration,
    SlackAttachment,
)
from calsync.utils.tz import get_zone

CONFIRM_STATUS_CHANGE_PATH = "confirm-status-change"
RESPOND_PATH = "respond"

NO_SUBJECT = "(No subject)"

_MARKDOWN_ENTITIES = {
    "*": "&#42;",
    "_": "&#95;",
    "~": "&#126;",
    "`": "&#96;",
    "#": "&#35;",
}


def ensure_subject(subject: str) -> str:
    return subject or NO_SUBJECT


def markdown_to_html_entities(text: str) -> str:
    return "".join(_MARKDOWN_ENTITIES.get(ch, ch) for ch in text)


def kitchen(value: datetime) -> str:
    """Clock time like 3:04PM."""
    hour = value.hour % 12 or 12
    return f"{hour}:{value.minute:02d}{'AM' if value.hour < 12 else 'PM'}"


def json_block(data) -> str:
    return "```json\n" + json.dumps(data, indent=2, default=str) + "\n```"


# Signed action contexts


def _context_signature(context: dict, secret: str) -> str:
    payload = json.dumps(context, sort_keys=True, separators=(",", ":"), default=str)
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_action_context(context: dict, secret: str) -> dict:
    """Return a copy of the context carrying an HMAC-SHA256 signature."""
    signed = {k: v for k, v in context.items() if k != "signature"}
    signed["signature"] = _context_signature(signed, secret)
    return signed


def verify_action_context(context: dict, secret: str) -> bool:
    signature = context.get("signature")
    if not isinstance(signature, str):
        return False
    unsigned = {k: v for k, v in context.items() if k != "signature"}
    return hmac.compare_digest(signature, _context_signature(unsigned, secret))


# Status change prompt


def render_event_will_start_line(subject: str, weblink: str, start: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    link = unquote(weblink)
    if start < now:
        if not subject:
            return f"[An event with no subject]({link}) is ongoing."
        return f"Your event [{subject}]({link}) is ongoing."
    if not subject:
        return f"[An event with no subject]({link}) will start soon."
    return f"Your event [{subject}]({link}) will start soon."


def _render_schedule_item(event: Event | None, status: str, now: datetime) -> str:
    if event is None:
        return f"You have no upcoming events.\nShall I change your status back to {PRETTY_STATUSES.get(status, status)}?"
    line = render_event_will_start_line(event.subject, event.weblink, event.start_utc(), now)
    return line + f"\nShall I change your status to {PRETTY_STATUSES.get(status, status)}?"


def _status_change_attachment(
    event: Event | None, status: str, url: str, user_id: str, secret: str, now: datetime
) -> SlackAttachment:
    yes_context = {
        "value": True,
        "change_to": status,
        "pretty_change_to": PRETTY_STATUSES.get(status, status),
        "has_event": False,
        "user_id": user_id,
    }
    no_context = {"value": False, "has_event": False, "user_id": user_id}

    if event is not None:
        event_context = {
            "has_event": True,
            "subject": event.subject,
            "weblink": event.weblink,
            "start_time": event.start_utc().isoformat(),
        }
        yes_context.update(event_context)
        no_context.update(event_context)

    title = "Status change"
    text = _render_schedule_item(event, status, now)
    return SlackAttachment(
        title=title,
        text=text,
        fallback=f"{title}: {text}",
        actions=[
            PostAction(
                name="Yes",
                integration=PostActionIntegration(url=url, context=sign_action_context(yes_context, secret)),
            ),
            PostAction(
                name="No",
                integration=PostActionIntegration(url=url, context=sign_action_context(no_context, secret)),
            ),
        ],
    )


def render_status_change_notification_view(
    events: list[Event],
    status: str,
    url: str,
    user_id: str,
    secret: str,
    now: datetime | None = None,
) -> SlackAttachment:
    """Yes/No prompt asking the user to confirm a status change."""
    now = now or datetime.now(UTC)
    for event in events:
        if event.start_utc() > now:
            return _status_change_attachment(event, status, url, user_id, secret, now)

    if events and status == STATUS_DND:
        return _status_change_attachment(events[-1], status, url, user_id, secret, now)

    return _status_change_attachment(None, status, url, user_id, secret, now)


# Event attachments


def format_when(event: Event, timezone: str, now: datetime | None = None) -> str:
    if event.start is None or event.end is None:
        return "n/a"
    now = now or datetime.now(UTC)
    zone = get_zone(timezone)
    start = event.start_utc().astimezone(zone)
    end = event.end_utc().astimezone(zone)
    day = start.strftime("%A, %B %d")
    if start.year != now.year:
        day += start.strftime(", %Y")
    return f"{day} · ({kitchen(start)} - {kitchen(end)})"


def render_event_attachment(event: Event, timezone: str, show_timezone: bool = False) -> SlackAttachment:
    """Compact attachment used for channel reminders."""
    when = format_when(event, timezone)
    if show_timezone:
        when += f" ({timezone})"
    fields = [AttachmentField(title="When", value=when)]
    if event.location.display_name:
        fields.append(AttachmentField(title="Location", value=event.location.display_name))
    title = ensure_subject(event.subject)
    return SlackAttachment(
        title=title,
        title_link=event.weblink,
        text=event.body_preview,
        fallback=f"[{title}]({event.weblink}): {when}",
        fields=fields,
    )


def render_upcoming_event_attachment(event: Event, timezone: str, now: datetime | None = None) -> SlackAttachment:
    """Direct message reminder for an event about to start."""
    attachment = render_event_attachment(event, timezone)
    attachment.text = render_event_will_start_line(event.subject, event.weblink, event.start_utc(), now)
    attachment.fallback = attachment.text
    return attachment


# Agenda


def render_calendar_view(events: list[Event], timezone: str) -> str:
    """Markdown agenda for one day, grouped under a date heading."""
    if not events:
        return "You have no upcoming events."

    zone = get_zone(timezone)
    lines: list[str] = []
    current_day = None
    for event in events:
        start = event.start_utc().astimezone(zone)
        end = event.end_utc().astimezone(zone)
        day = start.strftime("%A, %B %d")
        if day != current_day:
            if current_day is not None:
                lines.append("")
            lines.append(f"Times are shown in {timezone}")
            lines.append(f"#### {day}")
            lines.append("| Time | Subject |")
            lines.append("| :-- | :-- |")
            current_day = day
        when = "All day" if event.is_all_day else f"{kitchen(start)} - {kitchen(end)}"
        subject = markdown_to_html_entities(ensure_subject(event.subject))
        if event.weblink:
            subject = f"[{subject}]({event.weblink})"
        lines.append(f"| {when} | {subject} |")
    return "\n".join(lines)
