"""
Evolution Data Server backend: the local calendar store.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from datetime import timezone
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from calendar_bridge.backend import CalendarBackend
from calendar_bridge.models import BackendError
from calendar_bridge.models import CalendarEvent
from calendar_bridge.models import CalendarInfo
from calendar_bridge.sync.utils import ensure_aware
from calendar_bridge.sync.utils import format_rrule
from calendar_bridge.sync.utils import parse_rrule

logger = logging.getLogger(__name__)

# X-property carrying the id of the cloud event this local event mirrors.
SOURCE_ID_PROPERTY = "X-CALENDAR-BRIDGE-SOURCE-ID"

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"

# Resolves a TZID through the calendar's stored VTIMEZONEs.
ZoneLookup = Callable[[str], ICalGLib.Timezone | None]


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
    return "object not found" in str(e).lower()


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS API."""
    if isinstance(obj, str):
        return ICalGLib.Component.new_from_string(obj)
    return obj


def _vevent(comp: ICalGLib.Component) -> ICalGLib.Component | None:
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        return comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    return comp


def _text(vevent: ICalGLib.Component, kind: ICalGLib.PropertyKind, getter) -> str | None:
    prop = vevent.get_first_property(kind)
    if not prop:
        return None
    return getter(prop) or None


def _tzid(prop: ICalGLib.Property) -> str | None:
    param = prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER)
    return param.get_tzid() if param else None


def _olson_name(tzid: str) -> str | None:
    """Return the IANA zone name behind a TZID, or None.

    libical prefixes its builtin zones ("/freeassociation.sourceforge.net/
    Europe/Berlin"), so path suffixes of such ids are tried too.
    """
    candidates = [tzid]
    if tzid.startswith("/"):
        parts = tzid.strip("/").split("/")
        candidates += ["/".join(parts[i:]) for i in range(1, len(parts))]
    for name in candidates:
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            continue
        return name
    return None


def _find_vtimezone(
    root: ICalGLib.Component | None, tzid: str, zone_lookup: ZoneLookup | None
) -> ICalGLib.Timezone | None:
    zone = None
    if root is not None and root.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        zone = root.get_timezone(tzid)
    if zone is None and zone_lookup is not None:
        zone = zone_lookup(tzid)
    return zone


def _to_datetime(
    t: ICalGLib.Time,
    tzid: str | None,
    root: ICalGLib.Component | None = None,
    zone_lookup: ZoneLookup | None = None,
) -> datetime:
    if t.is_date():
        return datetime(t.get_year(), t.get_month(), t.get_day(), tzinfo=timezone.utc)
    naive = datetime(
        t.get_year(), t.get_month(), t.get_day(), t.get_hour(), t.get_minute(), t.get_second()
    )
    if not tzid or t.is_utc():
        return naive.replace(tzinfo=timezone.utc)

    name = _olson_name(tzid)
    if name is not None:
        return naive.replace(tzinfo=ZoneInfo(name)).astimezone(timezone.utc)

    # Exchange-style names ("W. Europe Standard Time") only resolve through
    # the VTIMEZONE shipped with the event or stored in the calendar
    zone = _find_vtimezone(root, tzid, zone_lookup)
    if zone is None:
        logger.warning(f"Unknown TZID {tzid!r}, treating {naive} as UTC")
        return naive.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(t.as_timet_with_zone(zone), timezone.utc)


def _is_cancelled(vevent: ICalGLib.Component) -> bool:
    status_prop = vevent.get_first_property(ICalGLib.PropertyKind.STATUS_PROPERTY)
    if not status_prop:
        return False
    try:
        return status_prop.get_status() == ICalGLib.PropertyStatus.CANCELLED
    except (AttributeError, TypeError):
        val = status_prop.get_value_as_string() or ""
        return val.strip().upper() == "CANCELLED"


def _source_id(vevent: ICalGLib.Component) -> str | None:
    x_prop = vevent.get_first_property(ICalGLib.PropertyKind.X_PROPERTY)
    while x_prop:
        if (x_prop.get_x_name() or "").upper() == SOURCE_ID_PROPERTY:
            return x_prop.get_x() or x_prop.get_value_as_string() or None
        x_prop = vevent.get_next_property(ICalGLib.PropertyKind.X_PROPERTY)
    return None


def event_from_component(
    comp: ICalGLib.Component, zone_lookup: ZoneLookup | None = None
) -> CalendarEvent | None:
    """Map an EDS VEVENT (or VCALENDAR wrapping one) onto a CalendarEvent.

    Times are converted to UTC.  ``time_zone`` is set only when the TZID
    names an IANA zone, since that is all the cloud side accepts.

    Returns None for events that must not take part in a sync: cancelled
    events, detached recurrence instances and components without DTSTART.
    """
    vevent = _vevent(comp)
    if vevent is None or _is_cancelled(vevent):
        return None
    if vevent.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY):
        return None

    dtstart_prop = vevent.get_first_property(ICalGLib.PropertyKind.DTSTART_PROPERTY)
    if not dtstart_prop:
        return None
    start_time = dtstart_prop.get_dtstart()
    tzid = _tzid(dtstart_prop)
    start = _to_datetime(start_time, tzid, comp, zone_lookup)

    dtend_prop = vevent.get_first_property(ICalGLib.PropertyKind.DTEND_PROPERTY)
    if dtend_prop:
        end = _to_datetime(dtend_prop.get_dtend(), _tzid(dtend_prop), comp, zone_lookup)
    else:
        end = start

    lm_prop = vevent.get_first_property(ICalGLib.PropertyKind.LASTMODIFIED_PROPERTY)
    if lm_prop:
        last_modified = _to_datetime(lm_prop.get_lastmodified(), None)
    else:
        last_modified = datetime.now(timezone.utc)

    rrule_prop = vevent.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
    recurrence = parse_rrule(rrule_prop.as_ical_string()) if rrule_prop else None

    return CalendarEvent(
        id=vevent.get_uid(),
        subject=_text(vevent, ICalGLib.PropertyKind.SUMMARY_PROPERTY, lambda p: p.get_summary()),
        start=start,
        end=end,
        last_modified=last_modified,
        description=_text(
            vevent, ICalGLib.PropertyKind.DESCRIPTION_PROPERTY, lambda p: p.get_description()
        ),
        location=_text(vevent, ICalGLib.PropertyKind.LOCATION_PROPERTY, lambda p: p.get_location()),
        time_zone=_olson_name(tzid) if tzid else None,
        is_all_day=bool(start_time.is_date()),
        recurrence=recurrence,
        source_id=_source_id(vevent),
    )


def _escape_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _utc_stamp(value: datetime) -> str:
    return ensure_aware(value).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def event_to_ical(event: CalendarEvent, uid: str) -> str:
    """Render a CalendarEvent as a VEVENT iCal string under ``uid``.

    Timed events are written in UTC.  LAST-MODIFIED carries the event's own
    timestamp so newest-wins compares like with like on the next run.
    """
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{_utc_stamp(datetime.now(timezone.utc))}",
        f"SUMMARY:{_escape_text(event.subject or '')}",
    ]
    if event.is_all_day:
        lines.append(f"DTSTART;VALUE=DATE:{event.start.strftime('%Y%m%d')}")
        lines.append(f"DTEND;VALUE=DATE:{event.end.strftime('%Y%m%d')}")
    else:
        lines.append(f"DTSTART:{_utc_stamp(event.start)}")
        lines.append(f"DTEND:{_utc_stamp(event.end)}")
    if event.description:
        lines.append(f"DESCRIPTION:{_escape_text(event.description)}")
    if event.location:
        lines.append(f"LOCATION:{_escape_text(event.location)}")
    if event.recurrence:
        lines.append(format_rrule(event.recurrence))
    lines.append(f"LAST-MODIFIED:{_utc_stamp(event.last_modified)}")
    if event.source_id:
        lines.append(f"{SOURCE_ID_PROPERTY}:{event.source_id}")
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def event_to_component(event: CalendarEvent, uid: str) -> ICalGLib.Component:
    return ICalGLib.Component.new_from_string(event_to_ical(event, uid))


class EDSCalendarClient:
    """Wrapper for Evolution Data Server calendar operations."""

    def __init__(self, registry: EDataServer.SourceRegistry, calendar_uid: str):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.client: ECal.Client | None = None

    def connect(self, timeout: int = 10):
        """Connect to the specified calendar in EDS."""
        source = self.registry.ref_source(self.calendar_uid)
        if not source:
            raise BackendError(f"Calendar with UID '{self.calendar_uid}' not found in EDS")

        try:
            self.client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, timeout, None
            )
        except GLib.Error as e:
            raise BackendError(
                f"Failed to connect to calendar {self.calendar_uid}: {e.message}"
            ) from e

    def get_events(self, sexp: str = "#t") -> list:
        """Retrieve the events matching an EDS s-expression ("#t" for all)."""
        if not self.client:
            raise BackendError("Client not connected")

        try:
            _, objects = self.client.get_object_list_sync(sexp, None)
            return objects
        except GLib.Error as e:
            raise BackendError(f"Failed to fetch events: {e.message}") from e

    def get_timezone(self, tzid: str) -> ICalGLib.Timezone | None:
        """Look up a VTIMEZONE stored in the calendar, None when absent."""
        if not self.client:
            raise BackendError("Client not connected")

        try:
            _, zone = self.client.get_timezone_sync(tzid, None)
        except GLib.Error as e:
            logger.debug(f"No VTIMEZONE {tzid!r} in {self.calendar_uid}: {e.message}")
            return None
        return zone

    def create_event(self, component: ICalGLib.Component) -> str | None:
        """Create a new event in the calendar."""
        if not self.client:
            raise BackendError("Client not connected")

        try:
            success, out_uid = self.client.create_object_sync(
                component, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise BackendError(f"Failed to create event: {e.message}") from e
        if not success:
            raise BackendError("Failed to create event")
        return out_uid

    def modify_event(self, component: ICalGLib.Component):
        """Modify an existing event in the calendar."""
        if not self.client:
            raise BackendError("Client not connected")

        try:
            success = self.client.modify_object_sync(
                component, ECal.ObjModType.ALL, ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise BackendError(f"Failed to modify event: {e.message}") from e
        if not success:
            raise BackendError("Failed to modify event")

    def remove_event(self, uid: str):
        """Remove an event from the calendar."""
        if not self.client:
            raise BackendError("Client not connected")

        success = self.client.remove_object_sync(
            uid,
            None,  # rid (recurrence-id)
            ECal.ObjModType.ALL,
            ECal.OperationFlags.NONE,
            None,  # cancellable
        )
        if not success:
            raise BackendError(f"Failed to remove event {uid}")


def _time_range_sexp(window_start: datetime, window_end: datetime) -> str:
    return (
        f'(occur-in-time-range? (make-time "{_utc_stamp(window_start)}") '
        f'(make-time "{_utc_stamp(window_end)}"))'
    )


class EDSCalendarBackend(CalendarBackend):
    """Calendar backend over local EDS calendars.

    EDS has no change tokens, so every fetch covers the full window.
    ``calendar_resolver`` maps a cloud (account, calendar) pair to the UID
    of the local calendar mirroring it; without one the calendar id is used
    as the EDS UID directly.
    """

    def __init__(
        self,
        registry: EDataServer.SourceRegistry | None = None,
        calendar_resolver: Callable[[str, str], str | None] | None = None,
    ):
        self._registry = registry
        self.calendar_resolver = calendar_resolver
        self._clients: dict[str, EDSCalendarClient] = {}

    @property
    def registry(self) -> EDataServer.SourceRegistry:
        if self._registry is None:
            try:
                self._registry = EDataServer.SourceRegistry.new_sync(None)
            except GLib.Error as e:
                raise BackendError(f"EDS registry unreachable: {e.message}") from e
        return self._registry

    def _client(self, account_id: str, calendar_id: str) -> EDSCalendarClient:
        uid = None
        if self.calendar_resolver is not None:
            uid = self.calendar_resolver(account_id, calendar_id)
        uid = uid or calendar_id
        client = self._clients.get(uid)
        if client is None:
            client = EDSCalendarClient(self.registry, uid)
            client.connect()
            self._clients[uid] = client
        return client

    def list_calendars(self, account_id: str) -> list[CalendarInfo]:
        sources = self.registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR)
        return [
            CalendarInfo(
                id=source.get_uid() or "",
                name=source.get_display_name() or "(unnamed)",
                account_id=account_id,
            )
            for source in sources
        ]

    def list_events(
        self,
        account_id: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
        change_token: str | None = None,
    ) -> list[CalendarEvent]:
        client = self._client(account_id, calendar_id)
        events = []
        for obj in client.get_events(_time_range_sexp(window_start, window_end)):
            event = event_from_component(parse_component(obj), client.get_timezone)
            if event is not None:
                events.append(event)
        return events

    def create_event(
        self, account_id: str, calendar_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        client = self._client(account_id, calendar_id)
        uid = str(uuid.uuid4())
        actual_uid = client.create_event(event_to_component(event, uid))
        if actual_uid:
            uid = actual_uid
            logger.debug(f"Server assigned UID: {uid}")
        return event.replace(id=uid)

    def update_event(
        self, account_id: str, calendar_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        client = self._client(account_id, calendar_id)
        client.modify_event(event_to_component(event, event.id))
        return event

    def delete_event(self, account_id: str, calendar_id: str, event_id: str) -> None:
        client = self._client(account_id, calendar_id)
        try:
            client.remove_event(event_id)
        except GLib.Error as e:
            if is_not_found_error(e):
                logger.debug(f"Event {event_id} already removed")
                return
            raise BackendError(f"Failed to remove event {event_id}: {e.message}") from e

    def get_change_token(self, account_id: str, calendar_id: str) -> str | None:
        return None
