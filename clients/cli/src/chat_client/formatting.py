"""Human-readable timestamps for message tooltips and the contact list."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into a local-time datetime."""

    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _month_day(moment: datetime) -> str:
    return f"{moment.strftime('%b')} {moment.day}"


def format_timestamp(value: object, now: Optional[datetime] = None) -> str:
    moment = parse_timestamp(value)
    if moment is None:
        return ""
    now = now or datetime.now()
    time_str = moment.strftime("%H:%M")
    if moment.date() == now.date():
        return time_str
    return f"{_month_day(moment)}, {time_str}"


def format_contact_time(value: object, now: Optional[datetime] = None) -> str:
    moment = parse_timestamp(value)
    if moment is None:
        return ""
    now = now or datetime.now()
    if moment.date() == now.date():
        return moment.strftime("%H:%M")
    if moment.date() == (now - timedelta(days=1)).date():
        return "Yesterday"
    return _month_day(moment)


def tooltip(sent_at: object, read_at: object = None, now: Optional[datetime] = None) -> str:
    """Hover text for a message: ``Sent: <t>`` plus an optional ``Read: <t>`` line."""

    lines = []
    sent = format_timestamp(sent_at, now)
    if sent:
        lines.append(f"Sent: {sent}")
    read = format_timestamp(read_at, now)
    if read:
        lines.append(f"Read: {read}")
    return "\n".join(lines)
