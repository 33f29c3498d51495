"""Tests for VEVENT <-> native dict conversion."""

from __future__ import annotations

from datetime import UTC, date, datetime
from zoneinfo import ZoneInfo

import pytest
from icalendar import Calendar

from calbridge.calendar.integrations.ics import (
    apply_native_to_vevent,
    build_calendar,
    parse_ical_events,
)
from calbridge.calendar.mappers.caldav import INTERNAL_PRODID, CalDavEventMapper
from calbridge.calendar.models import AttendeeStatus, RecurrenceFrequency
from tests.conftest import SAMPLE_ICS

pytestmark = pytest.mark.unit


def _standup(**kwargs):
    events = parse_ical_events(SAMPLE_ICS, **kwargs)
    return next(event for event in events if event["uid"] == "standup-1@example.com")


class TestParseIcalEvents:
    def test_all_events_parsed(self):
        assert [e["uid"] for e in parse_ical_events(SAMPLE_ICS)] == [
            "standup-1@example.com",
            "offsite-2@example.com",
        ]

    def test_timed_event_fields(self):
        native = _standup(url="https://dav.example.com/cal/", etag='"e1"')
        assert native["summary"] == "Standup"
        assert native["start"] == datetime(2026, 3, 2, 9, tzinfo=ZoneInfo("Europe/Berlin"))
        assert native["timezone"] == "Europe/Berlin"
        assert native["sequence"] == 3
        assert native["status"] == "CONFIRMED"
        assert native["organizer"] == "mailto:ada@example.com"
        assert native["url"] == "https://dav.example.com/cal/"
        assert native["etag"] == '"e1"'
        assert native["prodid"] == "-//Example Corp//CalDAV Server//EN"

    def test_attendees_keep_parameters(self):
        native = _standup()
        ada, bob = native["attendees"]
        assert ada[0] == "mailto:ada@example.com"
        assert set(ada[1:]) == {"CN=Ada", "PARTSTAT=ACCEPTED", "ROLE=CHAIR"}
        assert "PARTSTAT=NEEDS-ACTION" in bob

    def test_recurrence_fields(self):
        native = _standup()
        assert native["rrule"].startswith("RRULE:FREQ=WEEKLY")
        assert "COUNT=4" in native["rrule"]
        assert native["exdate"] == [datetime(2026, 3, 9, 8, tzinfo=UTC)]

    def test_all_day_event(self):
        offsite = parse_ical_events(SAMPLE_ICS)[1]
        assert offsite["start"] == date(2026, 4, 10)
        assert offsite["end"] == date(2026, 4, 11)
        assert "attendees" in offsite and offsite["attendees"] == []

    def test_output_feeds_mapper(self):
        event = CalDavEventMapper().to_unified(
            _standup(), calendar_id="/cal/", account_email="ada@example.com"
        )
        assert event.title == "Standup"
        assert [a.status for a in event.attendees] == [
            AttendeeStatus.ACCEPTED,
            AttendeeStatus.NEEDS_ACTION,
        ]
        assert event.attendees[0].is_organizer is True
        assert event.recurrence is not None
        assert event.recurrence.frequency == RecurrenceFrequency.WEEKLY
        assert event.recurrence.count == 4


class TestApplyNativeToVevent:
    def _component(self):
        calendar = Calendar.from_ical(SAMPLE_ICS)
        return next(iter(calendar.walk("VEVENT")))

    def test_patch_updates_only_given_keys(self):
        component = self._component()
        apply_native_to_vevent(component, {"summary": "Retro"})
        assert str(component["SUMMARY"]) == "Retro"
        assert str(component["LOCATION"]) == "Kitchen"
        assert int(component["SEQUENCE"]) == 4

    def test_empty_text_removes_property(self):
        component = self._component()
        apply_native_to_vevent(component, {"location": ""})
        assert component.get("LOCATION") is None

    def test_attendees_rewritten(self):
        component = self._component()
        apply_native_to_vevent(
            component,
            {"attendees": [["mailto:cy@example.com", "CN=Cy", "PARTSTAT=TENTATIVE"]]},
        )
        attendee = component["ATTENDEE"]
        assert str(attendee) == "mailto:cy@example.com"
        assert attendee.params["PARTSTAT"] == "TENTATIVE"

    def test_rrule_cleared(self):
        component = self._component()
        apply_native_to_vevent(component, {"rrule": None})
        assert component.get("RRULE") is None


class TestBuildCalendar:
    def test_stamped_with_internal_prodid(self):
        calendar = build_calendar(
            [
                {
                    "uid": "new-1",
                    "summary": "Lunch",
                    "start": datetime(2026, 3, 3, 12, tzinfo=UTC),
                    "end": datetime(2026, 3, 3, 13, tzinfo=UTC),
                }
            ]
        )
        (native,) = parse_ical_events(calendar.to_ical())
        assert native["prodid"] == INTERNAL_PRODID
        assert native["summary"] == "Lunch"
        assert native["sequence"] == 1
        assert native["start"] == datetime(2026, 3, 3, 12, tzinfo=UTC)
