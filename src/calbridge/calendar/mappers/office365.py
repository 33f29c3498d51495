"""Microsoft Graph (Office365 / Outlook) event mapper."""

from __future__ import annotations

import html
import re
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
)
from calbridge.calendar.meeting_links import extract_meeting_link, first_meeting_url
from calbridge.calendar.models import (
    AttendeeStatus,
    CalendarProviderKind,
    EventStatus,
    RecurrenceFrequency,
    UnifiedAttendee,
    UnifiedEvent,
    UnifiedRecurrence,
    Weekday,
)

OFFICE365_PROVIDER_KEY = "office365"
# singleValueExtendedProperties entry carrying the internal meeting id.
INTERNAL_MEETING_ID_PROPERTY = "meeting_id"

OFFICE365_EVENT_PASSTHROUGH_FIELDS: tuple[str, ...] = (
    "importance",
    "sensitivity",
    "showAs",
    "isOnlineMeeting",
    "onlineMeetingProvider",
    "onlineMeetingUrl",
    "onlineMeeting",
    "iCalUId",
    "categories",
    "reminderMinutesBeforeStart",
    "isReminderOn",
    "allowNewTimeProposals",
    "responseRequested",
    "hideAttendees",
    "locations",
    "seriesMasterId",
    "type",
    "organizer",
    "isOrganizer",
    "responseStatus",
    "singleValueExtendedProperties",
)
OFFICE365_WRITABLE_FIELDS: tuple[str, ...] = (
    "importance",
    "sensitivity",
    "showAs",
    "isOnlineMeeting",
    "onlineMeetingProvider",
    "categories",
    "reminderMinutesBeforeStart",
    "isReminderOn",
    "allowNewTimeProposals",
    "responseRequested",
    "hideAttendees",
    "singleValueExtendedProperties",
)

_GRAPH_TO_ATTENDEE_STATUS: dict[str, AttendeeStatus] = {
    "accepted": AttendeeStatus.ACCEPTED,
    "organizer": AttendeeStatus.ACCEPTED,
    "declined": AttendeeStatus.DECLINED,
    "tentativelyAccepted": AttendeeStatus.TENTATIVE,
    "none": AttendeeStatus.NEEDS_ACTION,
    "notResponded": AttendeeStatus.NEEDS_ACTION,
}
ATTENDEE_STATUS_TO_GRAPH: dict[AttendeeStatus, str] = {
    AttendeeStatus.ACCEPTED: "accepted",
    AttendeeStatus.DECLINED: "declined",
    AttendeeStatus.TENTATIVE: "tentativelyAccepted",
    AttendeeStatus.NEEDS_ACTION: "none",
}

_GRAPH_TO_FREQUENCY: dict[str, RecurrenceFrequency] = {
    "daily": RecurrenceFrequency.DAILY,
    "weekly": RecurrenceFrequency.WEEKLY,
    "absoluteMonthly": RecurrenceFrequency.MONTHLY,
    "relativeMonthly": RecurrenceFrequency.MONTHLY,
    "absoluteYearly": RecurrenceFrequency.YEARLY,
    "relativeYearly": RecurrenceFrequency.YEARLY,
}
_GRAPH_TO_WEEKDAY: dict[str, Weekday] = {
    "monday": Weekday.MO,
    "tuesday": Weekday.TU,
    "wednesday": Weekday.WE,
    "thursday": Weekday.TH,
    "friday": Weekday.FR,
    "saturday": Weekday.SA,
    "sunday": Weekday.SU,
}
_WEEKDAY_TO_GRAPH = {value: key for key, value in _GRAPH_TO_WEEKDAY.items()}
_GRAPH_INDEX_TO_POSITION: dict[str, int] = {
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "last": -1,
}
_POSITION_TO_GRAPH_INDEX = {value: key for key, value in _GRAPH_INDEX_TO_POSITION.items()}

_TAG_PATTERN = re.compile(r"<[^>]*>")
_OFFSET_PATTERN = re.compile(r"(Z|[+-]\d{2}:?\d{2})$")
_GRAPH_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _parse_graph_datetime(payload: Any) -> tuple[datetime, str | None]:
    """Graph sends ``{"dateTime": "2024-01-15T14:30:00.0000000", "timeZone": "UTC"}``."""
    if not isinstance(payload, Mapping):
        raise ValueError("Microsoft Graph event is missing start/end payloads")
    raw = normalize_text(payload.get("dateTime"))
    timezone = normalize_text(payload.get("timeZone"))
    parsed = parse_iso_datetime(raw)
    if raw is None or parsed is None:
        raise ValueError("Microsoft Graph event is missing start/end dateTime values")
    if not _OFFSET_PATTERN.search(raw):
        parsed = parsed.replace(tzinfo=coerce_zoneinfo(timezone))
    return parsed, timezone


def _extract_description(body: Any) -> str | None:
    if not isinstance(body, Mapping):
        return None
    content = body.get("content")
    if not isinstance(content, str) or not content:
        return None
    if str(body.get("contentType", "")).lower() == "html":
        content = html.unescape(_TAG_PATTERN.sub("", content)).strip()
    return content or None


def _format_graph_date(value: date) -> str:
    return value.isoformat()


class Office365EventMapper(EventMapper):
    provider_key = OFFICE365_PROVIDER_KEY
    default_source = CalendarProviderKind.OFFICE

    def source_event_id(self, native: Mapping[str, Any]) -> str | None:
        return normalize_text(native.get("id"))

    def _internal_id(self, native: Mapping[str, Any], source_event_id: str | None) -> str:
        properties = native.get("singleValueExtendedProperties")
        if isinstance(properties, list):
            for prop in properties:
                if not isinstance(prop, Mapping):
                    continue
                prop_id = str(prop.get("id", ""))
                if prop_id == INTERNAL_MEETING_ID_PROPERTY or prop_id.endswith(
                    f" Name {INTERNAL_MEETING_ID_PROPERTY}"
                ):
                    value = normalize_text(prop.get("value"))
                    if value:
                        return value
        return source_event_id or normalize_text(native.get("iCalUId")) or ""

    @staticmethod
    def _organizer_email(native: Mapping[str, Any]) -> str | None:
        organizer = native.get("organizer")
        if not isinstance(organizer, Mapping):
            return None
        address = organizer.get("emailAddress")
        if not isinstance(address, Mapping):
            return None
        email = normalize_text(address.get("address"))
        return email.lower() if email else None

    def _map_attendees(self, native: Mapping[str, Any]) -> list[UnifiedAttendee]:
        payload = native.get("attendees")
        if not isinstance(payload, list):
            return []
        organizer_email = self._organizer_email(native)
        attendees: list[UnifiedAttendee] = []
        for entry in payload:
            if not isinstance(entry, Mapping):
                continue
            address = entry.get("emailAddress")
            if not isinstance(address, Mapping):
                continue
            email = normalize_text(address.get("address"))
            if email is None:
                continue
            status_payload = entry.get("status")
            response = status_payload.get("response") if isinstance(status_payload, Mapping) else None
            status = _GRAPH_TO_ATTENDEE_STATUS.get(
                response if isinstance(response, str) else "",
                AttendeeStatus.NEEDS_ACTION,
            )
            is_organizer = response == "organizer" or (
                organizer_email is not None and email.lower() == organizer_email
            )
            extras = compact(
                {
                    "type": entry.get("type"),
                    "status": dict(status_payload) if isinstance(status_payload, Mapping) else None,
                }
            )
            attendees.append(
                UnifiedAttendee(
                    email=email,
                    name=normalize_text(address.get("name")),
                    status=status,
                    is_organizer=is_organizer,
                    provider_data={OFFICE365_PROVIDER_KEY: extras},
                )
            )
        return attendees

    def _map_recurrence(self, payload: Any) -> UnifiedRecurrence | None:
        if not isinstance(payload, Mapping):
            return None
        pattern = payload.get("pattern")
        recurrence_range = payload.get("range")
        if not isinstance(pattern, Mapping):
            return None
        frequency = _GRAPH_TO_FREQUENCY.get(str(pattern.get("type", "")))
        if frequency is None:
            return None
        if not isinstance(recurrence_range, Mapping):
            recurrence_range = {}

        interval = pattern.get("interval")
        days = pattern.get("daysOfWeek")
        by_day = [
            _GRAPH_TO_WEEKDAY[day]
            for day in (days if isinstance(days, list) else [])
            if isinstance(day, str) and day in _GRAPH_TO_WEEKDAY
        ]
        day_of_month = pattern.get("dayOfMonth")
        index = pattern.get("index")

        until: datetime | None = None
        count: int | None = None
        range_type = recurrence_range.get("type")
        if range_type == "endDate":
            end_date = normalize_text(recurrence_range.get("endDate"))
            if end_date:
                try:
                    parsed = date.fromisoformat(end_date)
                except ValueError:
                    parsed = None
                if parsed is not None:
                    until = datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC)
        elif range_type == "numbered":
            occurrences = recurrence_range.get("numberOfOccurrences")
            if isinstance(occurrences, int) and occurrences > 0:
                count = occurrences

        return UnifiedRecurrence(
            frequency=frequency,
            interval=interval if isinstance(interval, int) and interval > 0 else 1,
            count=count,
            until=until,
            by_day=by_day,
            by_month_day=day_of_month if isinstance(day_of_month, int) and day_of_month > 0 else None,
            by_set_pos=_GRAPH_INDEX_TO_POSITION.get(index) if isinstance(index, str) else None,
            provider_recurrence={
                OFFICE365_PROVIDER_KEY: {
                    "pattern": dict(pattern),
                    "range": dict(recurrence_range),
                }
            },
        )

    @staticmethod
    def _map_status(native: Mapping[str, Any]) -> EventStatus:
        if native.get("isCancelled") is True:
            return EventStatus.CANCELLED
        response_status = native.get("responseStatus")
        if isinstance(response_status, Mapping) and response_status.get("response") == "tentativelyAccepted":
            return EventStatus.TENTATIVE
        return EventStatus.CONFIRMED

    def _meeting_url(self, native: Mapping[str, Any], location: str | None) -> str | None:
        online_meeting = native.get("onlineMeeting")
        join_url = online_meeting.get("joinUrl") if isinstance(online_meeting, Mapping) else None
        url = first_meeting_url(
            conference_uri=normalize_text(join_url),
            video_link=normalize_text(native.get("onlineMeetingUrl")),
            location=location,
            domains=self.options.meeting_link_domains,
        )
        if url is not None:
            return url
        locations = native.get("locations")
        if isinstance(locations, list):
            for entry in locations:
                if not isinstance(entry, Mapping):
                    continue
                url = extract_meeting_link(
                    normalize_text(entry.get("displayName")),
                    self.options.meeting_link_domains,
                )
                if url is not None:
                    return url
        return None

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
        start, timezone = _parse_graph_datetime(native.get("start"))
        end, _ = _parse_graph_datetime(native.get("end"))
        if end < start:
            end = start

        location_payload = native.get("location")
        location = (
            normalize_text(location_payload.get("displayName"))
            if isinstance(location_payload, Mapping)
            else None
        )
        meeting_url = self._meeting_url(native, location)

        office_data = compact({key: native.get(key) for key in OFFICE365_EVENT_PASSTHROUGH_FIELDS})
        if location is not None and location != meeting_url:
            office_data["location"] = location
        if timezone is not None:
            office_data["timeZone"] = timezone

        is_owner = native.get("isOrganizer") is True
        return UnifiedEvent(
            id=self._internal_id(native, source_event_id),
            source_event_id=source_event_id,
            title=normalize_text(native.get("subject")) or self.options.default_title,
            description=_extract_description(native.get("body")),
            start=start,
            end=end,
            is_all_day=native.get("isAllDay") is True,
            source=source or self.default_source,
            calendar_id=calendar_id,
            calendar_name=calendar_name,
            account_email=account_email,
            meeting_url=meeting_url,
            web_link=normalize_text(native.get("webLink")),
            attendees=self._map_attendees(native),
            status=self._map_status(native),
            last_modified=parse_iso_datetime(native.get("lastModifiedDateTime")) or datetime.now(UTC),
            etag=normalize_text(native.get("changeKey")) or normalize_text(native.get("@odata.etag")),
            provider_data={OFFICE365_PROVIDER_KEY: office_data},
            permissions=derive_permissions(
                is_owner=is_owner,
                can_see_other_guests=native.get("hideAttendees") is False,
            ),
            recurrence=self._map_recurrence(native.get("recurrence")),
        )

    def _boundaries(
        self, event: UnifiedEvent, timezone: str | None
    ) -> tuple[dict[str, str], dict[str, str]]:
        if event.is_all_day:
            start_date = event.start.date()
            end_date = event.end.date()
            if end_date <= start_date:
                end_date = start_date + timedelta(days=1)
            zone = timezone or "UTC"
            return (
                {"dateTime": f"{_format_graph_date(start_date)}T00:00:00", "timeZone": zone},
                {"dateTime": f"{_format_graph_date(end_date)}T00:00:00", "timeZone": zone},
            )
        return (
            {"dateTime": event.start.astimezone(UTC).strftime(_GRAPH_DATETIME_FORMAT), "timeZone": "UTC"},
            {"dateTime": event.end.astimezone(UTC).strftime(_GRAPH_DATETIME_FORMAT), "timeZone": "UTC"},
        )

    def _attendees_to_graph(self, attendees: list[UnifiedAttendee]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for attendee in attendees:
            if attendee.email is None:
                continue
            extras = attendee.provider_data.get(OFFICE365_PROVIDER_KEY, {})
            result.append(
                {
                    "emailAddress": compact({"address": attendee.email, "name": attendee.name}),
                    "type": extras.get("type") or "required",
                    "status": {"response": ATTENDEE_STATUS_TO_GRAPH[attendee.status]},
                }
            )
        return result

    def _recurrence_to_graph(self, event: UnifiedEvent) -> dict[str, Any] | None:
        """Build the Graph ``recurrence`` object.

        The stored ``provider_recurrence["office365"]`` pattern wins over the
        structured fields, so an edited rule is only written once that entry
        is removed.
        """
        recurrence = event.recurrence
        if recurrence is None:
            return None
        raw = recurrence.provider_recurrence.get(OFFICE365_PROVIDER_KEY)
        if isinstance(raw, Mapping) and raw.get("pattern"):
            return {"pattern": dict(raw["pattern"]), "range": dict(raw.get("range") or {})}

        pattern_type = {
            RecurrenceFrequency.DAILY: "daily",
            RecurrenceFrequency.WEEKLY: "weekly",
            RecurrenceFrequency.MONTHLY: "relativeMonthly" if recurrence.by_set_pos else "absoluteMonthly",
            RecurrenceFrequency.YEARLY: "relativeYearly" if recurrence.by_set_pos else "absoluteYearly",
        }[recurrence.frequency]
        pattern: dict[str, Any] = {"type": pattern_type, "interval": recurrence.interval}
        if recurrence.by_day:
            pattern["daysOfWeek"] = [_WEEKDAY_TO_GRAPH[day] for day in recurrence.by_day]
        if recurrence.by_month_day is not None:
            pattern["dayOfMonth"] = recurrence.by_month_day
        if recurrence.by_set_pos is not None and recurrence.by_set_pos in _POSITION_TO_GRAPH_INDEX:
            pattern["index"] = _POSITION_TO_GRAPH_INDEX[recurrence.by_set_pos]
        if recurrence.frequency == RecurrenceFrequency.YEARLY:
            pattern["month"] = event.start.month

        recurrence_range: dict[str, Any] = {"startDate": _format_graph_date(event.start.date())}
        if recurrence.until is not None:
            recurrence_range["type"] = "endDate"
            recurrence_range["endDate"] = _format_graph_date(recurrence.until.date())
        elif recurrence.count is not None:
            recurrence_range["type"] = "numbered"
            recurrence_range["numberOfOccurrences"] = recurrence.count
        else:
            recurrence_range["type"] = "noEnd"
        return {"pattern": pattern, "range": recurrence_range}

    def from_unified(self, event: UnifiedEvent) -> dict[str, Any]:
        office_data = self.own_provider_data(event)
        start, end = self._boundaries(event, office_data.get("timeZone"))
        location = event.meeting_url or office_data.get("location")
        body: dict[str, Any] = {
            "id": event.source_event_id,
            "subject": event.title,
            "body": {"contentType": "text", "content": event.description or ""},
            "start": start,
            "end": end,
            "isAllDay": event.is_all_day,
            "location": {"displayName": location} if location else None,
            "attendees": self._attendees_to_graph(event.attendees),
            "recurrence": self._recurrence_to_graph(event),
        }
        for key in OFFICE365_WRITABLE_FIELDS:
            if key in office_data:
                body[key] = office_data[key]
        return compact(body)
