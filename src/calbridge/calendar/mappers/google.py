"""Google Calendar (API v3) event mapper."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any

from calbridge.calendar.mappers.base import (
    EventMapper,
    coerce_zoneinfo,
    compact,
    derive_permissions,
    normalize_text,
    parse_iso_datetime,
    rfc3339,
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
from calbridge.calendar.recurrence import (
    RRULE_PREFIX,
    parse_exdates,
    parse_rrule,
    to_exdate_line,
    to_rrule_string,
)

GOOGLE_PROVIDER_KEY = "google"
# Private extended property written on events this system created.
INTERNAL_MARKER_KEY = "updatedBy"
INTERNAL_MARKER_VALUE = "mww"
INTERNAL_MEETING_ID_KEY = "meetingId"

# Event fields without a unified equivalent, copied verbatim into provider_data.
GOOGLE_EVENT_PASSTHROUGH_FIELDS: tuple[str, ...] = (
    "colorId",
    "visibility",
    "transparency",
    "iCalUID",
    "sequence",
    "conferenceData",
    "gadget",
    "anyoneCanAddSelf",
    "guestsCanInviteOthers",
    "guestsCanModify",
    "guestsCanSeeOtherGuests",
    "privateCopy",
    "locked",
    "hangoutLink",
    "eventType",
    "attachments",
    "reminders",
    "source",
    "extendedProperties",
    "originalStartTime",
    "recurringEventId",
    "organizer",
    "creator",
)
# Passthrough fields the Events API rejects or ignores on write.
_GOOGLE_READ_ONLY_FIELDS = frozenset(
    {"iCalUID", "hangoutLink", "originalStartTime", "recurringEventId", "organizer", "creator"}
)
GOOGLE_ATTENDEE_PASSTHROUGH_FIELDS: tuple[str, ...] = (
    "id",
    "resource",
    "optional",
    "responseStatus",
    "comment",
    "additionalGuests",
    "self",
)
_GOOGLE_ATTENDEE_WRITABLE_FIELDS: tuple[str, ...] = (
    "id",
    "resource",
    "optional",
    "comment",
    "additionalGuests",
)

_GOOGLE_TO_ATTENDEE_STATUS: dict[str, AttendeeStatus] = {
    "accepted": AttendeeStatus.ACCEPTED,
    "declined": AttendeeStatus.DECLINED,
    "tentative": AttendeeStatus.TENTATIVE,
    "needsAction": AttendeeStatus.NEEDS_ACTION,
}
ATTENDEE_STATUS_TO_GOOGLE: dict[AttendeeStatus, str] = {
    AttendeeStatus.ACCEPTED: "accepted",
    AttendeeStatus.DECLINED: "declined",
    AttendeeStatus.TENTATIVE: "tentative",
    AttendeeStatus.NEEDS_ACTION: "needsAction",
}
_GOOGLE_TO_EVENT_STATUS: dict[str, EventStatus] = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "cancelled": EventStatus.CANCELLED,
}


def _parse_boundary(payload: Any) -> tuple[datetime, bool, str | None]:
    """Return (instant, is_date_only, timezone) for a Google EventDateTime."""
    if not isinstance(payload, Mapping):
        raise ValueError("Google Calendar event is missing start/end payloads")

    timezone = normalize_text(payload.get("timeZone"))
    date_time = parse_iso_datetime(payload.get("dateTime"))
    if date_time is not None:
        return date_time, False, timezone

    date_value = normalize_text(payload.get("date"))
    if date_value is not None:
        try:
            parsed = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date value: {date_value}") from exc
        tzinfo = coerce_zoneinfo(timezone)
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=tzinfo), True, timezone

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _conference_entry_uri(conference_data: Any) -> str | None:
    if not isinstance(conference_data, Mapping):
        return None
    entry_points = conference_data.get("entryPoints")
    if not isinstance(entry_points, list):
        return None
    candidates = [entry for entry in entry_points if isinstance(entry, Mapping)]
    for entry in candidates:
        if entry.get("entryPointType") == "video" and normalize_text(entry.get("uri")):
            return normalize_text(entry.get("uri"))
    for entry in candidates:
        uri = normalize_text(entry.get("uri"))
        if uri:
            return uri
    return None


class GoogleEventMapper(EventMapper):
    provider_key = GOOGLE_PROVIDER_KEY
    default_source = CalendarProviderKind.GOOGLE

    def source_event_id(self, native: Mapping[str, Any]) -> str | None:
        return normalize_text(native.get("id"))

    def _internal_id(self, native: Mapping[str, Any], source_event_id: str | None) -> str:
        extended = native.get("extendedProperties")
        private = extended.get("private") if isinstance(extended, Mapping) else None
        if isinstance(private, Mapping) and private.get(INTERNAL_MARKER_KEY) == INTERNAL_MARKER_VALUE:
            meeting_id = normalize_text(private.get(INTERNAL_MEETING_ID_KEY))
            if meeting_id:
                return meeting_id
            if source_event_id:
                return base_event_id(source_event_id)
        return source_event_id or normalize_text(native.get("iCalUID")) or ""

    def _is_owner(self, native: Mapping[str, Any], account_email: str) -> bool:
        organizer = native.get("organizer")
        if not isinstance(organizer, Mapping):
            return False
        if organizer.get("self") is True:
            return True
        email = normalize_text(organizer.get("email"))
        return email is not None and email.lower() == account_email.strip().lower()

    def _map_attendees(self, payload: Any) -> list[UnifiedAttendee]:
        if not isinstance(payload, list):
            return []
        attendees: list[UnifiedAttendee] = []
        for entry in payload:
            if not isinstance(entry, Mapping):
                continue
            email = normalize_text(entry.get("email"))
            if email is None:
                continue
            response_status = entry.get("responseStatus")
            status = _GOOGLE_TO_ATTENDEE_STATUS.get(
                response_status if isinstance(response_status, str) else "",
                AttendeeStatus.NEEDS_ACTION,
            )
            extras = compact({key: entry.get(key) for key in GOOGLE_ATTENDEE_PASSTHROUGH_FIELDS})
            attendees.append(
                UnifiedAttendee(
                    email=email,
                    name=normalize_text(entry.get("displayName")),
                    status=status,
                    is_organizer=entry.get("organizer") is True,
                    provider_data={GOOGLE_PROVIDER_KEY: extras},
                )
            )
        return attendees

    def _map_recurrence(self, payload: Any) -> UnifiedRecurrence | None:
        if not isinstance(payload, list) or not payload:
            return None
        lines = [line.strip() for line in payload if isinstance(line, str) and line.strip()]
        rule = next((line for line in lines if line.upper().startswith(RRULE_PREFIX)), None)
        recurrence = parse_rrule(rule, provider_key=GOOGLE_PROVIDER_KEY, raw=list(lines))
        if recurrence is None:
            return None
        exdates = parse_exdates(lines)
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
        start, start_is_date, start_timezone = _parse_boundary(native.get("start"))
        end, _, end_timezone = _parse_boundary(native.get("end"))
        if end < start:
            end = start

        status_raw = native.get("status")
        status = _GOOGLE_TO_EVENT_STATUS.get(
            status_raw if isinstance(status_raw, str) else "",
            EventStatus.CONFIRMED,
        )

        location = normalize_text(native.get("location"))
        meeting_url = first_meeting_url(
            conference_uri=_conference_entry_uri(native.get("conferenceData")),
            video_link=normalize_text(native.get("hangoutLink")),
            location=location,
            domains=self.options.meeting_link_domains,
        )

        google_data = compact({key: native.get(key) for key in GOOGLE_EVENT_PASSTHROUGH_FIELDS})
        if location is not None and location != meeting_url:
            google_data["location"] = location
        timezone = start_timezone or end_timezone
        if timezone is not None:
            google_data["timeZone"] = timezone

        description = native.get("description")
        return UnifiedEvent(
            id=self._internal_id(native, source_event_id),
            source_event_id=source_event_id,
            title=normalize_text(native.get("summary")) or self.options.default_title,
            description=description if isinstance(description, str) and description else None,
            start=start,
            end=end,
            is_all_day=start_is_date,
            source=source or self.default_source,
            calendar_id=calendar_id,
            calendar_name=calendar_name,
            account_email=account_email,
            meeting_url=meeting_url,
            web_link=normalize_text(native.get("htmlLink")),
            attendees=self._map_attendees(native.get("attendees")),
            status=status,
            last_modified=parse_iso_datetime(native.get("updated")) or datetime.now(UTC),
            etag=normalize_text(native.get("etag")),
            provider_data={GOOGLE_PROVIDER_KEY: google_data},
            permissions=derive_permissions(
                is_owner=self._is_owner(native, account_email),
                can_modify=native.get("guestsCanModify") is True,
                can_invite_others=native.get("guestsCanInviteOthers") is True,
                can_see_other_guests=native.get("guestsCanSeeOtherGuests") is True,
            ),
            recurrence=self._map_recurrence(native.get("recurrence")),
        )

    def _boundaries(
        self, event: UnifiedEvent, timezone: str | None
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        if event.is_all_day:
            start_date = event.start.date()
            end_date = event.end.date()
            if end_date <= start_date:
                end_date = start_date + timedelta(days=1)
            return {"date": start_date.isoformat()}, {"date": end_date.isoformat()}
        zone = timezone or "UTC"
        return (
            {"dateTime": rfc3339(event.start), "timeZone": zone},
            {"dateTime": rfc3339(event.end), "timeZone": zone},
        )

    def _attendees_to_google(self, attendees: list[UnifiedAttendee]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for attendee in attendees:
            if attendee.email is None:
                continue
            extras = attendee.provider_data.get(GOOGLE_PROVIDER_KEY, {})
            entry: dict[str, Any] = {
                "email": attendee.email,
                "displayName": attendee.name,
                "responseStatus": ATTENDEE_STATUS_TO_GOOGLE[attendee.status],
                "organizer": True if attendee.is_organizer else None,
            }
            for key in _GOOGLE_ATTENDEE_WRITABLE_FIELDS:
                entry[key] = extras.get(key)
            result.append(compact(entry))
        return result

    def _recurrence_to_google(self, recurrence: UnifiedRecurrence | None) -> list[str] | None:
        """Return the ``recurrence`` lines for *recurrence*.

        Raw lines kept under ``provider_recurrence["google"]`` are re-emitted
        as-is and win over the structured fields. Callers that edit the rule
        must drop that entry, otherwise the edit is not written.
        """
        if recurrence is None:
            return None
        raw = recurrence.provider_recurrence.get(GOOGLE_PROVIDER_KEY)
        if isinstance(raw, list) and raw:
            return list(raw)
        lines = [to_rrule_string(recurrence)]
        exdate_line = to_exdate_line(recurrence.exclude_dates)
        if exdate_line is not None:
            lines.append(exdate_line)
        return lines

    def from_unified(self, event: UnifiedEvent) -> dict[str, Any]:
        google_data = self.own_provider_data(event)
        start, end = self._boundaries(event, google_data.get("timeZone"))
        body: dict[str, Any] = {
            "id": event.source_event_id,
            "summary": event.title,
            "description": event.description or "",
            "start": start,
            "end": end,
            "location": event.meeting_url or google_data.get("location"),
            "attendees": self._attendees_to_google(event.attendees),
            "recurrence": self._recurrence_to_google(event.recurrence),
            "status": event.status.value,
        }
        for key in GOOGLE_EVENT_PASSTHROUGH_FIELDS:
            if key in _GOOGLE_READ_ONLY_FIELDS or key not in google_data:
                continue
            body[key] = google_data[key]
        return compact(body)
