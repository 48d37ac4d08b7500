"""
Tests for the EDS component mapping and the EDSCalendarBackend plumbing.

Components are real ICalGLib objects so libical parsing quirks are exercised;
the EDS client itself is a MagicMock, no daemon is needed.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone
from unittest.mock import MagicMock

import pytest

gi = pytest.importorskip("gi")
try:
    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
except ValueError:
    pytest.skip("EDS introspection data not installed", allow_module_level=True)
gi.require_version("GLib", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import GLib
from gi.repository import ICalGLib

from calendar_bridge.eds_client import SOURCE_ID_PROPERTY
from calendar_bridge.eds_client import EDSCalendarBackend
from calendar_bridge.eds_client import _time_range_sexp
from calendar_bridge.eds_client import event_from_component
from calendar_bridge.eds_client import event_to_ical
from calendar_bridge.eds_client import is_not_found_error
from calendar_bridge.models import BackendError
from calendar_bridge.models import RecurrenceRule
from tests.conftest import NOW
from tests.conftest import make_event


def _vevent(*extra: str, uid: str = "eds-1", dtstart: str = "DTSTART:20260302T100000Z") -> str:
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "SUMMARY:Team sync",
        dtstart,
        "DTEND:20260302T110000Z",
        "DTSTAMP:20260224T000000Z",
        *extra,
        "END:VEVENT",
    ]
    return "\r\n".join(lines) + "\r\n"


def _component(ical: str) -> ICalGLib.Component:
    return ICalGLib.Component.new_from_string(ical)


# ---------------------------------------------------------------------------
# event_from_component
# ---------------------------------------------------------------------------


class TestEventFromComponent:
    def test_basic_fields(self):
        event = event_from_component(
            _component(
                _vevent(
                    "LAST-MODIFIED:20260224T090000Z",
                    "LOCATION:Room 4",
                    "DESCRIPTION:Bring notes\\, please",
                )
            )
        )
        assert event.id == "eds-1"
        assert event.subject == "Team sync"
        assert event.start == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        assert event.end == datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc)
        assert event.last_modified == datetime(2026, 2, 24, 9, 0, tzinfo=timezone.utc)
        assert event.location == "Room 4"
        assert event.description == "Bring notes, please"
        assert not event.is_all_day
        assert event.source_id is None

    def test_source_id_from_x_property(self):
        event = event_from_component(_component(_vevent(f"{SOURCE_ID_PROPERTY}:g-42")))
        assert event.source_id == "g-42"

    def test_unrelated_x_property_ignored(self):
        event = event_from_component(_component(_vevent("X-MICROSOFT-CDO-BUSYSTATUS:BUSY")))
        assert event.source_id is None

    def test_all_day(self):
        ical = _vevent(dtstart="DTSTART;VALUE=DATE:20260305").replace(
            "DTEND:20260302T110000Z", "DTEND;VALUE=DATE:20260306"
        )
        event = event_from_component(_component(ical))
        assert event.is_all_day
        assert event.start == datetime(2026, 3, 5, tzinfo=timezone.utc)
        assert event.end == datetime(2026, 3, 6, tzinfo=timezone.utc)

    def test_tzid_converted_to_utc(self):
        ical = _vevent(dtstart="DTSTART;TZID=Europe/Berlin:20260302T100000")
        event = event_from_component(_component(ical))
        assert event.start == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert event.time_zone == "Europe/Berlin"

    def test_recurrence(self):
        event = event_from_component(_component(_vevent("RRULE:FREQ=WEEKLY;COUNT=4;BYDAY=MO")))
        assert event.recurrence == RecurrenceRule(type="WEEKLY", count=4, days_of_week="MO")

    def test_missing_last_modified_defaults_to_now(self):
        before = datetime.now(timezone.utc).replace(microsecond=0)
        event = event_from_component(_component(_vevent()))
        assert event.last_modified >= before

    def test_wrapped_in_vcalendar(self):
        ical = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\n" + _vevent() + "END:VCALENDAR\r\n"
        assert event_from_component(_component(ical)).id == "eds-1"

    def test_cancelled_is_skipped(self):
        assert event_from_component(_component(_vevent("STATUS:CANCELLED"))) is None

    def test_detached_instance_is_skipped(self):
        ical = _vevent("RECURRENCE-ID:20260302T100000Z")
        assert event_from_component(_component(ical)) is None

    def test_missing_dtstart_is_skipped(self):
        ical = "BEGIN:VEVENT\r\nUID:nostart\r\nSUMMARY:Broken\r\nEND:VEVENT\r\n"
        assert event_from_component(_component(ical)) is None


_WINDOWS_ZONE = "W. Europe Standard Time"
_VTIMEZONE = (
    "BEGIN:VTIMEZONE\r\n"
    f"TZID:{_WINDOWS_ZONE}\r\n"
    "BEGIN:STANDARD\r\n"
    "DTSTART:16010101T030000\r\n"
    "TZOFFSETFROM:+0200\r\n"
    "TZOFFSETTO:+0100\r\n"
    "RRULE:FREQ=YEARLY;BYDAY=-1SU;BYMONTH=10\r\n"
    "END:STANDARD\r\n"
    "BEGIN:DAYLIGHT\r\n"
    "DTSTART:16010101T020000\r\n"
    "TZOFFSETFROM:+0100\r\n"
    "TZOFFSETTO:+0200\r\n"
    "RRULE:FREQ=YEARLY;BYDAY=-1SU;BYMONTH=3\r\n"
    "END:DAYLIGHT\r\n"
    "END:VTIMEZONE\r\n"
)


def _windows_zone_vevent() -> str:
    return _vevent(dtstart=f"DTSTART;TZID={_WINDOWS_ZONE}:20260302T100000").replace(
        "DTEND:20260302T110000Z", f"DTEND;TZID={_WINDOWS_ZONE}:20260302T110000"
    )


class TestTimeZones:
    def test_libical_prefixed_tzid(self):
        ical = _vevent(
            dtstart="DTSTART;TZID=/freeassociation.sourceforge.net/Europe/Berlin:20260302T100000"
        )
        event = event_from_component(_component(ical))
        assert event.start == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert event.time_zone == "Europe/Berlin"

    def test_windows_tzid_resolved_through_vtimezone(self):
        ical = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\n" + _VTIMEZONE + _windows_zone_vevent()
        event = event_from_component(_component(ical + "END:VCALENDAR\r\n"))
        assert event.start == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert event.end == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        assert event.time_zone is None

    def test_windows_tzid_resolved_through_calendar_lookup(self):
        zone = ICalGLib.Timezone.new()
        zone.set_component(_component(_VTIMEZONE))
        looked_up = []

        def _lookup(tzid):
            looked_up.append(tzid)
            return zone

        event = event_from_component(_component(_windows_zone_vevent()), _lookup)

        assert looked_up[0] == _WINDOWS_ZONE
        assert event.start == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert event.time_zone is None

    def test_unresolvable_tzid_is_read_as_utc_without_zone(self):
        event = event_from_component(_component(_windows_zone_vevent()), lambda tzid: None)
        assert event.start == datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        assert event.time_zone is None


# ---------------------------------------------------------------------------
# event_to_ical
# ---------------------------------------------------------------------------


class TestEventToIcal:
    def test_written_event_reads_back(self):
        event = make_event(
            "g-1",
            "Quarterly; review, part 2",
            description="Line one\nLine two",
            location="Hall A",
            source_id="g-1",
            recurrence=RecurrenceRule(type="DAILY", count=3),
        )
        back = event_from_component(_component(event_to_ical(event, "eds-9")))

        assert back.id == "eds-9"
        assert back.subject == "Quarterly; review, part 2"
        assert back.description == "Line one\nLine two"
        assert back.location == "Hall A"
        assert back.start == event.start
        assert back.end == event.end
        assert back.last_modified == event.last_modified
        assert back.source_id == "g-1"
        assert back.recurrence == RecurrenceRule(type="DAILY", count=3)

    def test_timed_event_written_in_utc(self):
        plus_two = timezone(timedelta(hours=2))
        start = datetime(2026, 3, 2, 12, 0, tzinfo=plus_two)
        ical = event_to_ical(make_event("g-1", start=start), "eds-1")
        assert "DTSTART:20260302T100000Z" in ical

    def test_all_day_written_as_date(self):
        start = datetime(2026, 3, 5, tzinfo=timezone.utc)
        event = make_event("g-1", start=start, duration=timedelta(days=1), is_all_day=True)
        ical = event_to_ical(event, "eds-1")
        assert "DTSTART;VALUE=DATE:20260305" in ical
        assert "DTEND;VALUE=DATE:20260306" in ical

    def test_no_source_property_without_source_id(self):
        assert SOURCE_ID_PROPERTY not in event_to_ical(make_event("g-1"), "eds-1")


def test_time_range_sexp():
    sexp = _time_range_sexp(NOW, NOW + timedelta(days=1))
    assert sexp == (
        '(occur-in-time-range? (make-time "20260301T120000Z") '
        '(make-time "20260302T120000Z"))'
    )


def test_is_not_found_error():
    assert is_not_found_error(Exception("Object not found"))
    assert not is_not_found_error(Exception("Permission denied"))


# ---------------------------------------------------------------------------
# EDSCalendarBackend
# ---------------------------------------------------------------------------


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def backend(client):
    backend = EDSCalendarBackend(
        registry=MagicMock(), calendar_resolver=lambda account, calendar: "local-uid"
    )
    backend._clients["local-uid"] = client
    return backend


class TestEDSCalendarBackend:
    def test_list_events_drops_unsyncable(self, backend, client):
        client.get_events.return_value = [
            _vevent(uid="keep"),
            _vevent("STATUS:CANCELLED", uid="cancelled"),
        ]

        events = backend.list_events("alice", "primary", NOW, NOW + timedelta(days=1))

        assert [e.id for e in events] == ["keep"]
        assert client.get_events.call_args.args[0].startswith("(occur-in-time-range?")

    def test_create_uses_server_uid(self, backend, client):
        client.create_event.return_value = "server-uid"
        created = backend.create_event("alice", "primary", make_event("g-1", source_id="g-1"))
        assert created.id == "server-uid"
        assert created.source_id == "g-1"

    def test_update_writes_under_event_id(self, backend, client):
        backend.update_event("alice", "primary", make_event("eds-1", "Renamed"))
        component = client.modify_event.call_args.args[0]
        assert event_from_component(component).id == "eds-1"

    def test_delete_missing_event_is_ignored(self, backend, client):
        client.remove_event.side_effect = GLib.Error("Object not found")
        backend.delete_event("alice", "primary", "gone")

    def test_delete_other_error_raises(self, backend, client):
        client.remove_event.side_effect = GLib.Error("Permission denied")
        with pytest.raises(BackendError):
            backend.delete_event("alice", "primary", "eds-1")

    def test_no_change_tokens(self, backend):
        assert backend.get_change_token("alice", "primary") is None
