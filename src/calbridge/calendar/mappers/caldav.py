"""CalDAV / WebDAV / iCalendar event mapper.

The native shape is the flat dictionary produced by
``calbridge.calendar.integrations.ics.vevent_to_native``: one key per VEVENT
property, with ATTENDEE values kept as iCalendar parameter lists such as
``["mailto:ada@example.com", "CN=Ada", "PARTSTAT=ACCEPTED", "ROLE=CHAIR"]``.
Plain strings and dictionaries are accepted as attendees too, since feeds
and test fixtures use both forms.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any

from dateutil import parser as date_parser

from calbridge.calendar.mappers.base import (
    EventMapper,
    coerce_zoneinfo,
    compact,
    derive_permissions,
    normalize_text,
)
from calbridge.calendar.meeting_links import first_meeting_url
from calbridge.calendar.models import (
    AttendeeStatus,
    CalendarProviderKind,
    EventStatus,
    UnifiedAttendee,
    UnifiedEvent,
    UnifiedRecurrence,
    base_event_id,
)
from calbridge.calendar.recurrence import parse_rrule, to_rrule_string

CALDAV_PROVIDER_KEY = "webdav"
# PRODID stamped on calendar objects written by this system.
INTERNAL_PRODID = "-//calbridge//EN"

CALDAV_EVENT_PASSTHROUGH_FIELDS: tuple[str, ...] = (
    "sequence",
    "organizer",
    "timezone",
    "recurrence_id",
    "url",
    "rrule",
    "transp",
    "class",
    "created",
    "conference",
    "prodid",
)
CALDAV_WRITABLE_FIELDS: tuple[str, ...] = (
    "sequence",
    "organizer",
    "timezone",
    "recurrence_id",
    "url",
    "transp",
    "class",
    "conference",
)

_CALDAV_TO_ATTENDEE_STATUS: dict[str, AttendeeStatus] = {
    "ACCEPTED": AttendeeStatus.ACCEPTED,
    "DECLINED": AttendeeStatus.DECLINED,
    "TENTATIVE": AttendeeStatus.TENTATIVE,
    "NEEDS-ACTION": AttendeeStatus.NEEDS_ACTION,
}
ATTENDEE_STATUS_TO_CALDAV: dict[AttendeeStatus, str] = {
    AttendeeStatus.ACCEPTED: "ACCEPTED",
    AttendeeStatus.DECLINED: "DECLINED",
    AttendeeStatus.TENTATIVE: "TENTATIVE",
    AttendeeStatus.NEEDS_ACTION: "NEEDS-ACTION",
}
_CALDAV_TO_EVENT_STATUS: dict[str, EventStatus] = {
    "CONFIRMED": EventStatus.CONFIRMED,
    "TENTATIVE": EventStatus.TENTATIVE,
    "CANCELLED": EventStatus.CANCELLED,
}

ORGANIZER_ROLE = "CHAIR"
ATTENDEE_ROLE = "REQ-PARTICIPANT"
MAILTO_PREFIX = "mailto:"

# Attendee parameters kept under provider_data["webdav"], keyed by the
# iCalendar parameter name.
_ATTENDEE_PARAMS: dict[str, str] = {
    "ROLE": "role",
    "CUTYPE": "cutype",
    "RSVP": "rsvp",
    "DELEGATED-FROM": "delegated_from",
    "DELEGATED-TO": "delegated_to",
    "SENT-BY": "sent_by",
}


def _strip_mailto(value: str) -> str:
    stripped = value.strip()
    if stripped.lower().startswith(MAILTO_PREFIX):
        stripped = stripped[len(MAILTO_PREFIX) :]
    return stripped.strip()


def _unquote(value: str) -> str:
    return value.replace('"', "").strip()


def parse_attendee(attendee: Any) -> tuple[str | None, dict[str, str]]:
    """Return ``(email, params)`` for any supported attendee representation.

    ``params`` is keyed by upper-case iCalendar parameter name.
    """
    if isinstance(attendee, str):
        email = _strip_mailto(attendee)
        return (email if "@" in email else None), {}

    if isinstance(attendee, (list, tuple)):
        email: str | None = None
        params: dict[str, str] = {}
        for item in attendee:
            if not isinstance(item, str):
                continue
            key, sep, value = item.partition("=")
            if sep and key.strip() and "@" not in key and ":" not in key:
                params[key.strip().upper()] = _unquote(value)
            elif email is None and ("@" in item or item.lower().startswith(MAILTO_PREFIX)):
                email = _strip_mailto(item)
        return email or None, params

    if isinstance(attendee, Mapping):
        raw_email = attendee.get("email") or attendee.get("value") or attendee.get("cal_address")
        email = _strip_mailto(raw_email) if isinstance(raw_email, str) else None
        params = {}
        aliases = {
            "CN": ("cn", "name", "common_name"),
            "PARTSTAT": ("partstat", "status"),
            "ROLE": ("role",),
            "CUTYPE": ("cutype",),
            "RSVP": ("rsvp",),
            "DELEGATED-FROM": ("delegated_from",),
            "DELEGATED-TO": ("delegated_to",),
            "SENT-BY": ("sent_by",),
        }
        for param, keys in aliases.items():
            for key in keys:
                value = attendee.get(key)
                if isinstance(value, bool):
                    params[param] = "TRUE" if value else "FALSE"
                    break
                if isinstance(value, str) and value.strip():
                    params[param] = _unquote(value)
                    break
        return email or None, params

    return None, {}


def _coerce_boundary(value: Any, timezone: str | None) -> tuple[datetime, bool]:
    zone = coerce_zoneinfo(timezone)
    if isinstance(value, datetime):
        return (value if value.tzinfo is not None else value.replace(tzinfo=zone)), False
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=zone), True
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = date_parser.isoparse(text)
        except ValueError as exc:
            raise ValueError(f"CalDAV event has an invalid date value: {text}") from exc
        is_date = "T" not in text.upper()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=zone)
        return parsed, is_date
    raise ValueError("CalDAV event is missing DTSTART/DTEND values")


def _coerce_optional_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.isoparse(value.strip())
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return None


class CalDavEventMapper(EventMapper):
    """Mapper for CalDAV servers (generic WebDAV, iCloud) and read-only iCal feeds."""

    provider_key = CALDAV_PROVIDER_KEY
    default_source = CalendarProviderKind.WEBDAV

    def source_event_id(self, native: Mapping[str, Any]) -> str | None:
        return normalize_text(native.get("uid"))

    def _internal_id(self, native: Mapping[str, Any], source_event_id: str | None) -> str:
        if source_event_id and native.get("prodid") == INTERNAL_PRODID:
            return base_event_id(source_event_id)
        return source_event_id or ""

    @staticmethod
    def _organizer_email(native: Mapping[str, Any]) -> str | None:
        email, _ = parse_attendee(native.get("organizer"))
        return email.lower() if email else None

    def _map_attendees(self, native: Mapping[str, Any]) -> list[UnifiedAttendee]:
        payload = native.get("attendees")
        if not isinstance(payload, list):
            return []
        organizer_email = self._organizer_email(native)
        attendees: list[UnifiedAttendee] = []
        for entry in payload:
            email, params = parse_attendee(entry)
            if email is None:
                continue
            role = params.get("ROLE", "").upper() or None
            status = _CALDAV_TO_ATTENDEE_STATUS.get(
                params.get("PARTSTAT", "").upper(), AttendeeStatus.NEEDS_ACTION
            )
            is_organizer = role == ORGANIZER_ROLE or (
                organizer_email is not None and email.lower() == organizer_email
            )
            extras = compact(
                {
                    field: params[param].upper() if param in ("ROLE", "CUTYPE", "RSVP") else params[param]
                    for param, field in _ATTENDEE_PARAMS.items()
                    if param in params
                }
            )
            attendees.append(
                UnifiedAttendee(
                    email=email,
                    name=normalize_text(params.get("CN")),
                    status=status,
                    is_organizer=is_organizer,
                    provider_data={CALDAV_PROVIDER_KEY: extras},
                )
            )
        return attendees

    def _map_recurrence(self, native: Mapping[str, Any]) -> UnifiedRecurrence | None:
        rule = native.get("rrule")
        recurrence = parse_rrule(
            rule if isinstance(rule, str) else None,
            provider_key=CALDAV_PROVIDER_KEY,
        )
        if recurrence is None:
            return None
        exdates = [
            parsed
            for parsed in (_coerce_optional_datetime(value) for value in native.get("exdate") or [])
            if parsed is not None
        ]
        if exdates:
            recurrence = recurrence.model_copy(update={"exclude_dates": exdates})
        return recurrence

    def to_unified(
        self,
        native: Mapping[str, Any],
        *,
        calendar_id: str,
        account_email: str,
        calendar_name: str | None = None,
        source: CalendarProviderKind | None = None,
    ) -> UnifiedEvent:
        source_event_id = self.source_event_id(native)
        timezone = normalize_text(native.get("timezone"))
        start, start_is_date = _coerce_boundary(native.get("start"), timezone)
        end_value = native.get("end")
        if end_value is None:
            end, end_is_date = (start + timedelta(days=1) if start_is_date else start), start_is_date
        else:
            end, end_is_date = _coerce_boundary(end_value, timezone)
        if end < start:
            end = start

        location = normalize_text(native.get("location"))
        meeting_url = first_meeting_url(
            conference_uri=normalize_text(native.get("conference")),
            video_link=None,
            location=location,
            domains=self.options.meeting_link_domains,
        )

        webdav_data = compact({key: native.get(key) for key in CALDAV_EVENT_PASSTHROUGH_FIELDS})
        if location is not None and location != meeting_url:
            webdav_data["location"] = location

        organizer_email = self._organizer_email(native)
        status_raw = native.get("status")
        description = native.get("description")
        return UnifiedEvent(
            id=self._internal_id(native, source_event_id),
            source_event_id=source_event_id,
            title=normalize_text(native.get("summary")) or self.options.default_title,
            description=description if isinstance(description, str) and description else None,
            start=start,
            end=end,
            is_all_day=start_is_date and end_is_date,
            source=source or self.default_source,
            calendar_id=calendar_id,
            calendar_name=calendar_name,
            account_email=account_email,
            meeting_url=meeting_url,
            web_link=normalize_text(native.get("url")),
            attendees=self._map_attendees(native),
            status=_CALDAV_TO_EVENT_STATUS.get(
                status_raw.upper() if isinstance(status_raw, str) else "",
                EventStatus.CONFIRMED,
            ),
            last_modified=_coerce_optional_datetime(native.get("last_modified")) or datetime.now(UTC),
            etag=normalize_text(native.get("etag")),
            provider_data={CALDAV_PROVIDER_KEY: webdav_data},
            # iCalendar has no way to hide the guest list.
            permissions=derive_permissions(
                is_owner=organizer_email is not None
                and organizer_email == account_email.strip().lower(),
                can_see_other_guests=True,
            ),
            recurrence=self._map_recurrence(native),
        )

    def _attendees_to_caldav(self, attendees: list[UnifiedAttendee]) -> list[list[str]]:
        result: list[list[str]] = []
        for attendee in attendees:
            if attendee.email is None:
                continue
            extras = attendee.provider_data.get(CALDAV_PROVIDER_KEY, {})
            role = extras.get("role") or (ORGANIZER_ROLE if attendee.is_organizer else ATTENDEE_ROLE)
            params = [f"{MAILTO_PREFIX}{attendee.email}"]
            if attendee.name:
                params.append(f"CN={attendee.name}")
            params.append(f"PARTSTAT={ATTENDEE_STATUS_TO_CALDAV[attendee.status]}")
            params.append(f"ROLE={role}")
            for param, field in _ATTENDEE_PARAMS.items():
                if param == "ROLE" or field not in extras:
                    continue
                params.append(f"{param}={extras[field]}")
            result.append(params)
        return result

    @staticmethod
    def _organizer_to_caldav(event: UnifiedEvent, stored: Any) -> Any:
        if stored:
            return stored
        for attendee in event.attendees:
            if attendee.is_organizer and attendee.email:
                return f"{MAILTO_PREFIX}{attendee.email}"
        return None

    @staticmethod
    def _recurrence_to_caldav(
        recurrence: UnifiedRecurrence | None,
    ) -> tuple[str | None, list[datetime] | None]:
        """Return the RRULE and EXDATE values for *recurrence*.

        A stored ``provider_recurrence["webdav"]`` rule wins over the
        structured fields; drop it to write an edited rule.
        """
        if recurrence is None:
            return None, None
        raw = recurrence.provider_recurrence.get(CALDAV_PROVIDER_KEY)
        rule = raw if isinstance(raw, str) and raw else to_rrule_string(recurrence)
        return rule, list(recurrence.exclude_dates) or None

    def from_unified(self, event: UnifiedEvent) -> dict[str, Any]:
        webdav_data = self.own_provider_data(event)
        if event.is_all_day:
            start: date | datetime = event.start.date()
            end: date | datetime = event.end.date()
            if end <= start:
                end = start + timedelta(days=1)
        else:
            start, end = event.start, event.end

        rule, exdates = self._recurrence_to_caldav(event.recurrence)
        body: dict[str, Any] = {
            "uid": event.source_event_id,
            "summary": event.title,
            "description": event.description or "",
            "start": start,
            "end": end,
            "location": event.meeting_url or webdav_data.get("location"),
            "attendees": self._attendees_to_caldav(event.attendees),
            "status": event.status.value.upper(),
            "etag": event.etag,
            "rrule": rule,
            "exdate": exdates,
        }
        for key in CALDAV_WRITABLE_FIELDS:
            if key in webdav_data:
                body[key] = webdav_data[key]
        body["organizer"] = self._organizer_to_caldav(event, webdav_data.get("organizer"))
        return compact(body)
