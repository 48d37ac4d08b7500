"""
Pure data models, no backend or sqlite imports.
"""

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/calendar-bridge-state.db"
DEFAULT_CONFIG = Path.home() / ".config/calendar-bridge.conf"
DEFAULT_CREDENTIALS_DIR = Path.home() / ".config/calendar-bridge/credentials"

DEFAULT_WINDOW_PAST_DAYS = 30
DEFAULT_WINDOW_FUTURE_DAYS = 180


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class BackendError(CalendarSyncError):
    """A calendar backend call failed (network, auth, quota, missing calendar)."""

    pass


class SyncCancelled(CalendarSyncError):
    """Raised inside a sync run when cancellation was requested."""

    pass


@dataclass(frozen=True)
class RecurrenceRule:
    """Recurrence metadata attached to a series master."""

    type: str
    interval: int = 1
    until: datetime | None = None
    count: int | None = None
    days_of_week: str | None = None  # RRULE BYDAY text, e.g. "MO,WE,FR"


@dataclass(frozen=True)
class CalendarEvent:
    """One calendar event, shared vocabulary between both backends.

    ``id`` is scoped to the backend that issued it.  ``source_id`` names the
    counterpart backend's event this one mirrors, or None when the event has
    not been mirrored yet.  ``last_modified`` is the only signal used for
    conflict resolution.
    """

    id: str
    subject: str | None
    start: datetime
    end: datetime
    last_modified: datetime
    description: str | None = None
    location: str | None = None
    time_zone: str | None = None
    is_all_day: bool = False
    recurrence: RecurrenceRule | None = None
    source_id: str | None = None

    def replace(self, **changes) -> "CalendarEvent":
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class CalendarInfo:
    """A calendar (or folder) that can be selected as a sync target."""

    id: str
    name: str
    account_id: str
    time_zone: str | None = None


@dataclass
class SyncState:
    """Per-(account, calendar) incremental sync state."""

    account_id: str
    calendar_id: str
    change_token: str | None
    last_sync_at: int
    local_calendar_id: str | None = None


@dataclass
class EventMapping:
    """Durable join between a cloud event id and its local counterpart."""

    account_id: str
    calendar_id: str
    foreign_event_id: str
    local_event_id: str
    content_hash: str
    last_modified: str | None = None


@dataclass
class SyncResult:
    """Outcome of one calendar sync, or the sum over a fleet run."""

    success: bool = True
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    error: str | None = None
    cancelled: bool = False

    def __add__(self, other: "SyncResult") -> "SyncResult":
        return SyncResult(
            success=self.success and other.success,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
            conflicts=self.conflicts + other.conflicts,
            error=other.error if other.error is not None else self.error,
            cancelled=self.cancelled or other.cancelled,
        )


@dataclass(frozen=True)
class SyncProgress:
    """Progress milestone emitted once per phase of a calendar sync."""

    account_id: str
    calendar_id: str
    status: str
    percent_complete: int


@dataclass
class SyncConfig:
    """Configuration for sync runs."""

    state_db_path: Path = DEFAULT_STATE_DB
    credentials_dir: Path = DEFAULT_CREDENTIALS_DIR
    window_past_days: int = DEFAULT_WINDOW_PAST_DAYS
    window_future_days: int = DEFAULT_WINDOW_FUTURE_DAYS
    verbose: bool = False
