"""
Shared pytest fixtures and event helpers.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calendar_bridge.db import StateStore
from calendar_bridge.models import CalendarEvent
from calendar_bridge.models import SyncConfig

ACCOUNT_ID = "alice@example.com"
CALENDAR_ID = "primary"

# Fixed "now" for every engine test; the default window is NOW-30d .. NOW+180d.
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MODIFIED = datetime(2026, 2, 24, 9, 0, tzinfo=timezone.utc)


def make_event(
    event_id: str,
    subject: str = "Test Event",
    start: datetime | None = None,
    duration: timedelta = timedelta(hours=1),
    last_modified: datetime = MODIFIED,
    source_id: str | None = None,
    **kwargs,
) -> CalendarEvent:
    """Return a one-hour event starting a day after NOW unless told otherwise."""
    start = start or NOW + timedelta(days=1)
    return CalendarEvent(
        id=event_id,
        subject=subject,
        start=start,
        end=start + duration,
        last_modified=last_modified,
        source_id=source_id,
        **kwargs,
    )


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_store(db_path):
    with StateStore(db_path) as store:
        yield store


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(state_db_path=db_path)
