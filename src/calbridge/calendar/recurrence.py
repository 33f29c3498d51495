"""RFC 5545 RRULE parsing and serialisation.

Rules are validated with ``dateutil.rrule.rrulestr`` and then decomposed into
a ``UnifiedRecurrence``. Anything dateutil rejects, or any frequency finer
than daily, yields ``None`` rather than an error.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime

from dateutil import parser as date_parser
from dateutil.rrule import rrulestr

from calbridge.calendar.models import RecurrenceFrequency, UnifiedRecurrence, Weekday

logger = logging.getLogger(__name__)

RRULE_PREFIX = "RRULE:"
EXDATE_PREFIX = "EXDATE"

_VALIDATION_DTSTART = datetime(2000, 1, 1)


def _split_rule(rule: str) -> dict[str, str]:
    body = rule.strip()
    if body.upper().startswith(RRULE_PREFIX):
        body = body[len(RRULE_PREFIX) :]
    parts: dict[str, str] = {}
    for part in body.split(";"):
        key, sep, value = part.partition("=")
        if sep and key.strip() and value.strip():
            parts[key.strip().upper()] = value.strip()
    return parts


def _is_valid_rule(rule: str) -> bool:
    body = rule.strip()
    if not body.upper().startswith(RRULE_PREFIX):
        body = f"{RRULE_PREFIX}{body}"
    try:
        rrulestr(body, dtstart=_VALIDATION_DTSTART, ignoretz=True)
    except (ValueError, TypeError):
        return False
    return True


def _parse_ical_datetime(value: str) -> datetime | None:
    try:
        parsed = date_parser.isoparse(value.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_by_day(value: str | None) -> tuple[list[Weekday], int | None]:
    """Return weekdays plus an ordinal prefix (``1MO`` → first Monday)."""
    if not value:
        return [], None
    days: list[Weekday] = []
    ordinal: int | None = None
    for raw in value.split(","):
        token = raw.strip().upper()
        digits = token.rstrip("MOTUWEHFRSA")
        day = token[len(digits) :]
        if digits:
            try:
                ordinal = int(digits)
            except ValueError:
                continue
        try:
            days.append(Weekday(day))
        except ValueError:
            continue
    return days, ordinal


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.split(",")[0])
    except ValueError:
        return None


def parse_exdates(lines: list[str]) -> list[datetime]:
    """Collect ``EXDATE`` values from a list of recurrence lines."""
    dates: list[datetime] = []
    for line in lines:
        if not line.upper().startswith(EXDATE_PREFIX):
            continue
        _, _, values = line.partition(":")
        for value in values.split(","):
            parsed = _parse_ical_datetime(value)
            if parsed is not None:
                dates.append(parsed)
    return dates


def parse_rrule(
    rule: str | None,
    *,
    provider_key: str | None = None,
    raw: object | None = None,
) -> UnifiedRecurrence | None:
    """Parse one RRULE line into a ``UnifiedRecurrence``.

    ``raw`` is stored under ``provider_recurrence[provider_key]`` so the
    originating provider can re-emit its own representation verbatim.
    """
    if not isinstance(rule, str) or not rule.strip():
        return None
    if not _is_valid_rule(rule):
        logger.debug("Ignoring unparseable recurrence rule: %s", rule)
        return None

    parts = _split_rule(rule)
    try:
        frequency = RecurrenceFrequency(parts.get("FREQ", "").upper())
    except ValueError:
        return None

    interval = _parse_int(parts.get("INTERVAL")) or 1
    count = _parse_int(parts.get("COUNT"))
    until = _parse_ical_datetime(parts["UNTIL"]) if "UNTIL" in parts else None
    by_day, ordinal = _parse_by_day(parts.get("BYDAY"))
    by_set_pos = _parse_int(parts.get("BYSETPOS"))
    if by_set_pos is None:
        by_set_pos = ordinal

    provider_recurrence: dict[str, object] = {}
    if provider_key is not None:
        provider_recurrence[provider_key] = raw if raw is not None else rule
    return UnifiedRecurrence(
        frequency=frequency,
        interval=max(interval, 1),
        count=count if count and count > 0 else None,
        until=until,
        by_day=by_day,
        by_month_day=_parse_int(parts.get("BYMONTHDAY")),
        by_set_pos=by_set_pos,
        provider_recurrence=provider_recurrence,
    )


def _format_until(value: datetime | date) -> str:
    if isinstance(value, datetime):
        normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return normalized.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
    return value.strftime("%Y%m%d")


def to_rrule_string(recurrence: UnifiedRecurrence) -> str:
    """Serialise a ``UnifiedRecurrence`` into an ``RRULE:`` line."""
    parts = [f"FREQ={recurrence.frequency.value}"]
    if recurrence.interval > 1:
        parts.append(f"INTERVAL={recurrence.interval}")
    if recurrence.by_day:
        days = ",".join(day.value for day in recurrence.by_day)
        parts.append(f"BYDAY={days}")
    if recurrence.by_month_day is not None:
        parts.append(f"BYMONTHDAY={recurrence.by_month_day}")
    if recurrence.by_set_pos is not None:
        parts.append(f"BYSETPOS={recurrence.by_set_pos}")
    if recurrence.until is not None:
        parts.append(f"UNTIL={_format_until(recurrence.until)}")
    elif recurrence.count is not None:
        parts.append(f"COUNT={recurrence.count}")
    return RRULE_PREFIX + ";".join(parts)


def to_exdate_line(dates: list[datetime]) -> str | None:
    if not dates:
        return None
    return f"{EXDATE_PREFIX}:" + ",".join(_format_until(value) for value in dates)
