"""Conversion between icalendar VEVENT components and native CalDAV dicts.

The native dict is what ``CalDavEventMapper`` consumes and produces; this
module is the only place that touches ``icalendar`` objects directly.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime
from typing import Any

from icalendar import Calendar, Event, vCalAddress, vRecur

from calbridge.calendar.mappers.caldav import INTERNAL_PRODID, MAILTO_PREFIX

ICAL_VERSION = "2.0"
RRULE_PREFIX = "RRULE:"

# Native keys written back as plain text properties.
_TEXT_PROPERTIES: dict[str, str] = {
    "summary": "SUMMARY",
    "description": "DESCRIPTION",
    "location": "LOCATION",
    "status": "STATUS",
    "transp": "TRANSP",
    "class": "CLASS",
    "conference": "CONFERENCE",
}


def _text(component: Any, name: str) -> str | None:
    value = component.get(name)
    if value is None:
        return None
    if isinstance(value, list):
        value = value[0] if value else None
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _dt_value(component: Any, name: str) -> date | datetime | None:
    prop = component.get(name)
    if prop is None:
        return None
    return getattr(prop, "dt", None)


def _tzid(component: Any) -> str | None:
    prop = component.get("DTSTART")
    if prop is None:
        return None
    params = getattr(prop, "params", {}) or {}
    tzid = params.get("TZID")
    if tzid:
        return str(tzid)
    value = getattr(prop, "dt", None)
    tzinfo = getattr(value, "tzinfo", None)
    key = getattr(tzinfo, "key", None) or getattr(tzinfo, "zone", None)
    return str(key) if key else None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _address_to_params(address: Any) -> list[str]:
    params = getattr(address, "params", {}) or {}
    return [str(address)] + [f"{key}={value}" for key, value in params.items()]


def _exdates(component: Any) -> list[date | datetime]:
    dates: list[date | datetime] = []
    for entry in _as_list(component.get("EXDATE")):
        for item in getattr(entry, "dts", []):
            value = getattr(item, "dt", None)
            if value is not None:
                dates.append(value)
    return dates


def vevent_to_native(
    component: Any,
    *,
    url: str | None = None,
    etag: str | None = None,
    prodid: str | None = None,
) -> dict[str, Any]:
    """Flatten a VEVENT into the native dict used by the CalDAV mapper."""
    start = _dt_value(component, "DTSTART")
    end = _dt_value(component, "DTEND")
    if end is None and start is not None:
        duration = component.get("DURATION")
        if duration is not None and getattr(duration, "dt", None) is not None:
            end = start + duration.dt

    rrule = component.get("RRULE")
    sequence = component.get("SEQUENCE")
    organizer = component.get("ORGANIZER")
    native: dict[str, Any] = {
        "uid": _text(component, "UID"),
        "etag": etag,
        "url": url or _text(component, "URL"),
        "summary": _text(component, "SUMMARY"),
        "description": _text(component, "DESCRIPTION"),
        "location": _text(component, "LOCATION"),
        "sequence": int(sequence) if sequence is not None else None,
        "start": start,
        "end": end,
        "timezone": _tzid(component),
        "organizer": str(organizer) if organizer is not None else None,
        "attendees": [_address_to_params(address) for address in _as_list(component.get("ATTENDEE"))],
        "recurrence_id": _dt_value(component, "RECURRENCE-ID"),
        "status": _text(component, "STATUS"),
        "transp": _text(component, "TRANSP"),
        "class": _text(component, "CLASS"),
        "created": _dt_value(component, "CREATED"),
        "last_modified": _dt_value(component, "LAST-MODIFIED"),
        "rrule": f"{RRULE_PREFIX}{rrule.to_ical().decode()}" if rrule is not None else None,
        "exdate": _exdates(component),
        "conference": _text(component, "CONFERENCE"),
        "prodid": prodid,
    }
    return {key: value for key, value in native.items() if value is not None}


def parse_ical_events(
    data: bytes | str,
    *,
    url: str | None = None,
    etag: str | None = None,
) -> list[dict[str, Any]]:
    """Parse every VEVENT of an iCalendar document into native dicts."""
    calendar = Calendar.from_ical(data)
    prodid = _text(calendar, "PRODID")
    return [
        vevent_to_native(component, url=url, etag=etag, prodid=prodid)
        for component in calendar.walk("VEVENT")
    ]


def _build_address(value: Any) -> vCalAddress | None:
    """Build a vCalAddress from ``"mailto:x"`` or a parameter list."""
    if isinstance(value, str):
        items: list[str] = [value]
    elif isinstance(value, (list, tuple)):
        items = [item for item in value if isinstance(item, str)]
    else:
        return None
    if not items:
        return None

    address_text = items[0].strip()
    if not address_text.lower().startswith(MAILTO_PREFIX):
        address_text = f"{MAILTO_PREFIX}{address_text}"
    address = vCalAddress(address_text)
    for item in items[1:]:
        key, sep, param_value = item.partition("=")
        if sep and key.strip():
            address.params[key.strip().upper()] = param_value.strip().strip('"')
    return address


def _replace(component: Any, name: str, value: Any) -> None:
    component.pop(name, None)
    if value is not None and value != "":
        component.add(name, value)


def apply_native_to_vevent(component: Any, native: Mapping[str, Any]) -> None:
    """Write a native patch onto an existing VEVENT in place.

    Keys missing from *native* leave the matching property untouched.
    SEQUENCE is bumped on every write.
    """
    for key, prop in _TEXT_PROPERTIES.items():
        if key in native:
            _replace(component, prop, native[key])

    if "start" in native:
        _replace(component, "DTSTART", native["start"])
    if "end" in native:
        component.pop("DURATION", None)
        _replace(component, "DTEND", native["end"])

    if "organizer" in native:
        _replace(component, "ORGANIZER", _build_address(native["organizer"]))
    if "attendees" in native:
        component.pop("ATTENDEE", None)
        for attendee in native["attendees"] or []:
            address = _build_address(attendee)
            if address is not None:
                component.add("ATTENDEE", address)

    if "rrule" in native:
        rule = native["rrule"]
        component.pop("RRULE", None)
        if isinstance(rule, str) and rule.strip():
            body = rule.strip()
            if body.upper().startswith(RRULE_PREFIX):
                body = body[len(RRULE_PREFIX) :]
            component.add("RRULE", vRecur.from_ical(body))
    if "exdate" in native:
        component.pop("EXDATE", None)
        dates = list(native["exdate"] or [])
        if dates:
            component.add("EXDATE", dates)

    sequence = component.get("SEQUENCE")
    _replace(component, "SEQUENCE", (int(sequence) if sequence is not None else 0) + 1)
    now = datetime.now(UTC)
    _replace(component, "LAST-MODIFIED", now)
    _replace(component, "DTSTAMP", now)


def build_calendar(events: Iterable[Mapping[str, Any]]) -> Calendar:
    """Build a VCALENDAR stamped with this system's PRODID."""
    calendar = Calendar()
    calendar.add("PRODID", INTERNAL_PRODID)
    calendar.add("VERSION", ICAL_VERSION)
    for native in events:
        event = Event()
        event.add("UID", native["uid"])
        apply_native_to_vevent(event, native)
        calendar.add_component(event)
    return calendar
