"""Shared fixtures for the calbridge test suite."""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

import pytest

from calbridge.calendar.integrations.base import CalendarIntegration
from calbridge.calendar.models import (
    CalendarEntry,
    CalendarProviderKind,
    CalendarUpdateRequest,
    ConnectedCalendar,
    base_event_id,
)

ACCOUNT = "acct-1@calbridge.test"
OWNER_EMAIL = "owner@example.com"
CALENDAR_ID = "primary"


def google_event_payload(**overrides: Any) -> dict[str, Any]:
    """Native Google Calendar event with two attendees (accepted, tentative)."""
    payload: dict[str, Any] = {
        "id": "evt-1",
        "etag": '"3181161784712000"',
        "status": "confirmed",
        "htmlLink": "https://calendar.google.com/event?eid=evt-1",
        "updated": "2026-03-01T09:00:00.000Z",
        "summary": "Planning",
        "description": "Quarterly planning",
        "location": "Room 4",
        "colorId": "5",
        "organizer": {"email": OWNER_EMAIL, "self": True},
        "start": {"dateTime": "2026-03-02T10:00:00+00:00", "timeZone": "Europe/London"},
        "end": {"dateTime": "2026-03-02T11:00:00+00:00", "timeZone": "Europe/London"},
        "attendees": [
            {
                "email": OWNER_EMAIL,
                "displayName": "Owner",
                "responseStatus": "accepted",
                "organizer": True,
            },
            {"email": "guest@example.com", "responseStatus": "tentative", "optional": True},
        ],
        "guestsCanSeeOtherGuests": True,
    }
    payload.update(overrides)
    return payload


def make_connection(
    *,
    provider: CalendarProviderKind = CalendarProviderKind.GOOGLE,
    email: str = OWNER_EMAIL,
    calendar_id: str = CALENDAR_ID,
    enabled: bool = True,
    active: bool = True,
    payload: dict[str, Any] | None = None,
) -> ConnectedCalendar:
    return ConnectedCalendar(
        account_address=ACCOUNT,
        email=email,
        provider=provider,
        payload=payload or {"refresh_token": "rt-1"},
        calendars=[CalendarEntry(calendar_id=calendar_id, enabled=enabled, name="Work")],
        active=active,
    )


class FakeIntegration(CalendarIntegration):
    """In-memory integration that applies native patches to a stored event list."""

    provider = CalendarProviderKind.GOOGLE

    def __init__(
        self,
        events: list[dict[str, Any]] | None = None,
        *,
        update_error: Exception | None = None,
        fetch_error: Exception | None = None,
        apply_updates: bool = True,
        id_key: str = "id",
    ) -> None:
        super().__init__(account_address=ACCOUNT, email=OWNER_EMAIL)
        self.events = [copy.deepcopy(event) for event in events or []]
        self.update_error = update_error
        self.fetch_error = fetch_error
        self.apply_updates = apply_updates
        self.id_key = id_key
        self.update_calls: list[tuple[str, CalendarUpdateRequest, str]] = []
        self.fetch_calls: list[tuple[str, datetime, datetime]] = []
        self.closed = 0

    async def update_event(
        self,
        source_event_id: str,
        request: CalendarUpdateRequest,
        *,
        calendar_id: str,
    ) -> dict[str, Any]:
        self.update_calls.append((source_event_id, request, calendar_id))
        if self.update_error is not None:
            raise self.update_error
        # A master update also lands on its expanded instances, as on Google.
        is_master = base_event_id(source_event_id) == source_event_id
        updated: dict[str, Any] = {}
        for event in self.events:
            event_id = event.get(self.id_key) or ""
            if event_id != source_event_id and not (
                is_master and base_event_id(event_id) == source_event_id
            ):
                continue
            if self.apply_updates:
                patch = copy.deepcopy(request.event)
                patch.pop(self.id_key, None)
                event.update(patch)
            updated = updated or copy.deepcopy(event)
        return updated

    async def get_events(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        self.fetch_calls.append((calendar_id, start_at, end_at))
        if self.fetch_error is not None:
            raise self.fetch_error
        return copy.deepcopy(self.events)

    async def aclose(self) -> None:
        self.closed += 1


@pytest.fixture
def google_event() -> dict[str, Any]:
    return google_event_payload()


SAMPLE_ICS = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example Corp//CalDAV Server//EN
BEGIN:VEVENT
UID:standup-1@example.com
DTSTAMP:20260301T070000Z
DTSTART;TZID=Europe/Berlin:20260302T090000
DTEND;TZID=Europe/Berlin:20260302T091500
SUMMARY:Standup
DESCRIPTION:Daily sync
LOCATION:Kitchen
STATUS:CONFIRMED
SEQUENCE:3
LAST-MODIFIED:20260301T070000Z
ORGANIZER;CN=Ada:mailto:ada@example.com
ATTENDEE;CN=Ada;PARTSTAT=ACCEPTED;ROLE=CHAIR:mailto:ada@example.com
ATTENDEE;CN=Bob;PARTSTAT=NEEDS-ACTION:mailto:bob@example.com
RRULE:FREQ=WEEKLY;COUNT=4
EXDATE:20260309T080000Z
END:VEVENT
BEGIN:VEVENT
UID:offsite-2@example.com
DTSTAMP:20260301T070000Z
DTSTART;VALUE=DATE:20260410
DTEND;VALUE=DATE:20260411
SUMMARY:Offsite
END:VEVENT
END:VCALENDAR
"""
