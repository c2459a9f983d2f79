"""Presentation of notification jobs as Discord-flavoured text."""
from datetime import datetime

from notifications.models import NotificationJob, RenderedMessage
from processor.models import ChangeKind, FieldChange

TITLE = "GDQ hype!"
TWITCH_BASE_URL = "https://www.twitch.tv/"


def _timestamp(value: datetime, style: str = 'F') -> str:
    # Discord renders <t:epoch:style> in the reader's timezone
    return f"<t:{int(value.timestamp())}:{style}>"


def _describe_change(change: FieldChange) -> str:
    if change.field == 'start_time':
        return (
            f"Moved from {_timestamp(change.before)} to {_timestamp(change.after)} "
            f"({_timestamp(change.after, 'R')})"
        )
    if change.field == 'name':
        return f"Renamed from **{change.before}**"
    if change.field == 'position':
        return f"Run order #{change.before} → #{change.after}"
    return f"{change.field}: {change.before} → {change.after}"


def render_message(job: NotificationJob, channel_name: str = 'gamesdonequick') -> RenderedMessage:
    """
    Render the message text for a notification job.

    Args:
        job: Job to render
        channel_name: Twitch channel linked at the bottom of the message

    Returns:
        RenderedMessage with title and description
    """
    event = job.event
    heading = f"**{event.name}**"
    if event.category:
        heading += f" ({event.category})"

    lines = []
    if job.kind == ChangeKind.ADDED:
        lines.append(f"New run scheduled: {heading}")
        if event.runners:
            lines.append(f"Runners: {event.runners}")
        lines.append(f"Starts {_timestamp(event.start_time)} ({_timestamp(event.start_time, 'R')})")
    elif job.kind == ChangeKind.REMOVED:
        lines.append(f"{heading} was removed from the schedule")
    else:
        lines.append(f"Schedule change for {heading}")
        changes = job.update.changes if job.update else ()
        lines.extend(_describe_change(change) for change in changes)

    lines.append(f"{TWITCH_BASE_URL}{channel_name}")
    return RenderedMessage(title=TITLE, description="\n".join(lines))
