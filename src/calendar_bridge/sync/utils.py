"""
Stateless event helpers used by the engine and both backends.
"""

import hashlib
import logging
from collections.abc import Iterable
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from calendar_bridge.models import CalendarEvent
from calendar_bridge.models import RecurrenceRule

_logger = logging.getLogger(__name__)

# RRULE UNTIL forms: date-only (20260316) and UTC datetime (20260316T100000Z).
_UNTIL_FORMATS = ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d")


def compute_hash(event: CalendarEvent) -> str:
    """
    SHA256 over the fields that decide event equality.

    Only subject, start, end and last_modified participate; description,
    location and recurrence changes always travel with a newer
    last_modified anyway.
    """
    data = "|".join(
        [
            event.subject or "",
            event.start.isoformat(),
            event.end.isoformat(),
            event.last_modified.isoformat(),
        ]
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def sync_window(
    now: datetime, past_days: int, future_days: int
) -> tuple[datetime, datetime]:
    """Return (window_start, window_end) around ``now``."""
    return now - timedelta(days=past_days), now + timedelta(days=future_days)


def in_window(event: CalendarEvent, window_start: datetime, window_end: datetime) -> bool:
    """Return True unless the event lies entirely before or after the window.

    An event starting exactly at ``window_start`` is included, as is one
    still running when the window opens.  A recurring series that started
    earlier is included until its UNTIL date passes; COUNT-bounded series
    are kept, the backends already filtered them by occurrence.
    """
    if event.start > window_end:
        return False
    if event.start >= window_start or event.end > window_start:
        return True
    if event.recurrence is None:
        return False
    until = event.recurrence.until
    return until is None or ensure_aware(until) >= window_start


def clip_to_window(
    events: Iterable[CalendarEvent], window_start: datetime, window_end: datetime
) -> list[CalendarEvent]:
    return [e for e in events if in_window(e, window_start, window_end)]


def build_source_index(events: Iterable[CalendarEvent]) -> dict[str, CalendarEvent]:
    """Index mirrored events by the id of the event they mirror.

    Events without a source_id have never been mirrored and are left out.
    When two events claim the same source, the first one wins.
    """
    index: dict[str, CalendarEvent] = {}
    for event in events:
        if not event.source_id:
            continue
        if event.source_id in index:
            _logger.warning(
                "Duplicate mirror for %s: keeping %s, ignoring %s",
                event.source_id,
                index[event.source_id].id,
                event.id,
            )
            continue
        index[event.source_id] = event
    return index


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is well defined."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_until(value: str) -> datetime | None:
    for fmt in _UNTIL_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_rrule(rrule: str | None) -> RecurrenceRule | None:
    """Parse an ``RRULE:FREQ=...`` line (the prefix is optional).

    Unknown or malformed parts fall back to defaults rather than failing:
    FREQ defaults to DAILY and INTERVAL to 1.
    """
    if not rrule:
        return None
    text = rrule.strip()
    if text.upper().startswith("RRULE:"):
        text = text[6:]
    elif ":" in text:
        # EXRULE/RDATE/EXDATE lines are not recurrence rules
        return None

    parts = {}
    for part in text.split(";"):
        if not part:
            continue
        key, _, value = part.partition("=")
        parts[key.upper()] = value

    try:
        interval = int(parts.get("INTERVAL", "1"))
    except ValueError:
        interval = 1
    try:
        count = int(parts["COUNT"]) if "COUNT" in parts else None
    except ValueError:
        count = None
    until = _parse_until(parts["UNTIL"]) if "UNTIL" in parts else None

    return RecurrenceRule(
        type=parts.get("FREQ") or "DAILY",
        interval=interval,
        until=until,
        count=count,
        days_of_week=parts.get("BYDAY") or None,
    )


def format_rrule(rule: RecurrenceRule) -> str:
    """Render a RecurrenceRule as an ``RRULE:`` line."""
    parts = [f"FREQ={rule.type}"]
    if rule.interval and rule.interval != 1:
        parts.append(f"INTERVAL={rule.interval}")
    # UNTIL and COUNT are mutually exclusive in RFC 5545; UNTIL wins
    if rule.until is not None:
        until = ensure_aware(rule.until).astimezone(timezone.utc)
        parts.append(f"UNTIL={until.strftime('%Y%m%dT%H%M%SZ')}")
    elif rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    if rule.days_of_week:
        parts.append(f"BYDAY={rule.days_of_week}")
    return "RRULE:" + ";".join(parts)
