"""
Calendar backend capability shared by the cloud and local calendar systems.
"""

from abc import ABC
from abc import abstractmethod
from datetime import datetime

from calendar_bridge.models import CalendarEvent
from calendar_bridge.models import CalendarInfo


class CalendarBackend(ABC):
    """Contract every calendar system implements.

    All calls block until the backend's write is durable.  Retrying transient
    failures is the backend's job; anything it cannot recover from is raised
    as ``BackendError``.
    """

    @abstractmethod
    def list_calendars(self, account_id: str) -> list[CalendarInfo]:
        """Return the calendars visible to ``account_id``."""

    @abstractmethod
    def list_events(
        self,
        account_id: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        change_token: str | None = None,
    ) -> list[CalendarEvent]:
        """Return the events of one calendar.

        With a ``change_token`` a backend that supports incremental retrieval
        may ignore the window and return only what changed since the token.
        Backends without token support ignore it.  Cancelled events are never
        returned.
        """

    @abstractmethod
    def create_event(
        self, account_id: str, calendar_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        """Store a new event and return it with the backend-assigned id."""

    @abstractmethod
    def update_event(
        self, account_id: str, calendar_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        """Overwrite the event identified by ``event.id``."""

    @abstractmethod
    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None:
        """Remove an event by id."""

    @abstractmethod
    def get_change_token(self, account_id: str, calendar_id: str) -> str | None:
        """Return a token representing the calendar as of now, or None."""
