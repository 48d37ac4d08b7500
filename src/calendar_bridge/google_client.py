"""
Google Calendar (v3 API) backend, the cloud, token-bearing side.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from datetime import timezone
from pathlib import Path
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calendar_bridge.backend import CalendarBackend
from calendar_bridge.models import BackendError
from calendar_bridge.models import CalendarEvent
from calendar_bridge.models import CalendarInfo
from calendar_bridge.sync.utils import ensure_aware
from calendar_bridge.sync.utils import format_rrule
from calendar_bridge.sync.utils import parse_rrule

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]

# Private extended property carrying the counterpart (local) event id.
SOURCE_ID_PROPERTY = "calendarBridgeSourceId"

_PAGE_SIZE = 2500
_NOT_FOUND_STATUSES = (404, 410)
_SYNC_TOKEN_EXPIRED = 410


def _parse_timestamp(value: str) -> datetime:
    # fromisoformat() only accepts a trailing "Z" on recent interpreters
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(value))


def _parse_event_time(value: dict) -> tuple[datetime, bool]:
    """Return (timestamp, is_all_day) for a Google start/end object."""
    if value.get("dateTime"):
        return _parse_timestamp(value["dateTime"]), False
    day = datetime.strptime(value["date"], "%Y-%m-%d")
    return day.replace(tzinfo=timezone.utc), True


def event_from_google(item: dict) -> CalendarEvent:
    """Map a Google Calendar event resource onto a CalendarEvent."""
    start, is_all_day = _parse_event_time(item.get("start", {}))
    end, _ = _parse_event_time(item.get("end", {}))

    recurrence = None
    for line in item.get("recurrence") or []:
        recurrence = parse_rrule(line)
        if recurrence:
            break

    # Whole seconds: LAST-MODIFIED on the local side has no sub-second part
    updated = item.get("updated")
    last_modified = _parse_timestamp(updated) if updated else datetime.now(timezone.utc)
    last_modified = last_modified.replace(microsecond=0)

    private = (item.get("extendedProperties") or {}).get("private") or {}

    return CalendarEvent(
        id=item["id"],
        subject=item.get("summary"),
        start=start,
        end=end,
        last_modified=last_modified,
        description=item.get("description"),
        location=item.get("location"),
        time_zone=item.get("start", {}).get("timeZone"),
        is_all_day=is_all_day,
        recurrence=recurrence,
        source_id=private.get(SOURCE_ID_PROPERTY),
    )


def _is_iana_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _event_time(value: datetime, event: CalendarEvent) -> dict:
    if event.is_all_day:
        return {"date": value.date().isoformat()}
    body = {"dateTime": value.isoformat()}
    # The API rejects anything but IANA names with 400
    if event.time_zone and _is_iana_zone(event.time_zone):
        body["timeZone"] = event.time_zone
    return body


def event_to_google(event: CalendarEvent) -> dict:
    """Build an insert/update request body.  The event id is never sent."""
    body = {
        "summary": event.subject or "",
        "description": event.description or "",
        "location": event.location or "",
        "start": _event_time(event.start, event),
        "end": _event_time(event.end, event),
    }
    if event.recurrence:
        body["recurrence"] = [format_rrule(event.recurrence)]
    if event.source_id:
        body["extendedProperties"] = {"private": {SOURCE_ID_PROPERTY: event.source_id}}
    return body


def credentials_from_dir(credentials_dir: Path) -> Callable[[str], Credentials]:
    """Return a loader for ``<credentials_dir>/<account_id>.json`` authorized-user files.

    Expired tokens are refreshed and written back.  Obtaining the file in the
    first place (the consent flow) happens elsewhere.
    """

    def _load(account_id: str) -> Credentials:
        path = credentials_dir / f"{account_id}.json"
        if not path.exists():
            raise BackendError(f"No Google credentials for {account_id} (expected {path})")
        creds = Credentials.from_authorized_user_file(str(path), SCOPES)
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise BackendError(f"Could not refresh credentials for {account_id}: {e}") from e
            path.write_text(creds.to_json())
            logger.debug("Refreshed Google credentials for %s", account_id)
        return creds

    return _load


class GoogleCalendarBackend(CalendarBackend):
    """Calendar backend over the Google Calendar v3 API.

    One API service is built per account on first use and cached; the cache
    is not locked, so callers must not overlap syncs for the same account.
    """

    def __init__(self, credentials_provider: Callable[[str], Credentials], num_retries: int = 3):
        self.credentials_provider = credentials_provider
        self.num_retries = num_retries
        self._services: dict = {}

    def _service(self, account_id: str):
        service = self._services.get(account_id)
        if service is None:
            credentials = self.credentials_provider(account_id)
            service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
            self._services[account_id] = service
        return service

    def _execute(self, request, what: str):
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as e:
            raise BackendError(f"Google Calendar {what} failed: {e}") from e

    def list_calendars(self, account_id: str) -> list[CalendarInfo]:
        service = self._service(account_id)
        calendars = []
        page_token = None
        while True:
            response = self._execute(
                service.calendarList().list(pageToken=page_token), "calendar list"
            )
            for item in response.get("items", []):
                calendars.append(
                    CalendarInfo(
                        id=item["id"],
                        name=item.get("summary") or item["id"],
                        account_id=account_id,
                        time_zone=item.get("timeZone"),
                    )
                )
            page_token = response.get("nextPageToken")
            if not page_token:
                return calendars

    def _list_pages(self, service, params: dict) -> list[dict]:
        items = []
        page_token = None
        while True:
            request = service.events().list(pageToken=page_token, **params)
            response = request.execute(num_retries=self.num_retries)
            items.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    def list_events(
        self,
        account_id: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        change_token: str | None = None,
    ) -> list[CalendarEvent]:
        service = self._service(account_id)
        params = {"calendarId": calendar_id, "maxResults": _PAGE_SIZE, "singleEvents": False}
        window_params = {
            "timeMin": ensure_aware(window_start).isoformat(),
            "timeMax": ensure_aware(window_end).isoformat(),
        }

        try:
            if change_token:
                try:
                    items = self._list_pages(service, {**params, "syncToken": change_token})
                except HttpError as e:
                    if e.resp.status != _SYNC_TOKEN_EXPIRED:
                        raise
                    logger.warning(
                        "Change token for %s/%s expired, falling back to a full fetch",
                        account_id,
                        calendar_id,
                    )
                    items = self._list_pages(service, {**params, **window_params})
            else:
                items = self._list_pages(service, {**params, **window_params})
        except HttpError as e:
            raise BackendError(f"Google Calendar event list failed: {e}") from e

        return [event_from_google(item) for item in items if item.get("status") != "cancelled"]

    def create_event(
        self, account_id: str, calendar_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        service = self._service(account_id)
        created = self._execute(
            service.events().insert(calendarId=calendar_id, body=event_to_google(event)),
            "event insert",
        )
        return event_from_google(created)

    def update_event(
        self, account_id: str, calendar_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        service = self._service(account_id)
        updated = self._execute(
            service.events().update(
                calendarId=calendar_id, eventId=event.id, body=event_to_google(event)
            ),
            "event update",
        )
        return event_from_google(updated)

    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None:
        service = self._service(account_id)
        try:
            service.events().delete(calendarId=calendar_id, eventId=event_id).execute(
                num_retries=self.num_retries
            )
        except HttpError as e:
            if e.resp.status in _NOT_FOUND_STATUSES:
                logger.debug("Event %s already gone from %s", event_id, calendar_id)
                return
            raise BackendError(f"Google Calendar event delete failed: {e}") from e

    def get_change_token(self, account_id: str, calendar_id: str) -> str | None:
        """Page through the whole calendar to reach its nextSyncToken."""
        service = self._service(account_id)
        page_token = None
        while True:
            response = self._execute(
                service.events().list(
                    calendarId=calendar_id,
                    maxResults=_PAGE_SIZE,
                    pageToken=page_token,
                    fields="nextPageToken,nextSyncToken",
                ),
                "change token fetch",
            )
            page_token = response.get("nextPageToken")
            if not page_token:
                return response.get("nextSyncToken")
