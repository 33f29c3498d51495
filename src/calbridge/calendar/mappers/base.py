"""Mapper contract shared by all provider mappers."""

from __future__ import annotations

import abc
import copy
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calbridge.calendar.meeting_links import DEFAULT_MEETING_LINK_DOMAINS
from calbridge.calendar.models import (
    FULL_PERMISSIONS,
    CalendarProviderKind,
    MeetingPermission,
    UnifiedEvent,
)

DEFAULT_TITLE = "(No title)"


@dataclass(frozen=True)
class MappingOptions:
    """Tunable defaults applied while unifying provider payloads."""

    default_title: str = DEFAULT_TITLE
    meeting_link_domains: tuple[str, ...] = DEFAULT_MEETING_LINK_DOMAINS


class EventMapper(abc.ABC):
    """Pure converter between one provider's native schema and ``UnifiedEvent``.

    Implementations are stateless: ``to_unified`` never raises on missing
    optional fields and ``from_unified`` never mutates its input.
    """

    provider_key: str
    default_source: CalendarProviderKind

    def __init__(self, options: MappingOptions | None = None) -> None:
        self.options = options or MappingOptions()

    @abc.abstractmethod
    def source_event_id(self, native: Mapping[str, Any]) -> str | None:
        """Return the provider-native event id of a payload."""
        ...

    @abc.abstractmethod
    def to_unified(
        self,
        native: Mapping[str, Any],
        *,
        calendar_id: str,
        account_email: str,
        calendar_name: str | None = None,
        source: CalendarProviderKind | None = None,
    ) -> UnifiedEvent:
        """Convert a native provider event into a ``UnifiedEvent``."""
        ...

    @abc.abstractmethod
    def from_unified(self, event: UnifiedEvent) -> dict[str, Any]:
        """Convert a ``UnifiedEvent`` into a native provider patch."""
        ...

    def own_provider_data(self, event: UnifiedEvent) -> dict[str, Any]:
        """Return a deep copy of this provider's block of ``provider_data``."""
        return copy.deepcopy(event.provider_data.get(self.provider_key, {}))


def normalize_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def compact(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is ``None`` so partial updates never null fields."""
    return {key: value for key, value in payload.items() if value is not None}


def coerce_zoneinfo(timezone: str | None) -> tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 / RFC 3339 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    # Graph emits seven fractional digits; fromisoformat accepts at most six.
    head, dot, tail = normalized.partition(".")
    if dot:
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        normalized = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def derive_permissions(
    *,
    is_owner: bool,
    can_modify: bool = False,
    can_invite_others: bool = False,
    can_see_other_guests: bool = False,
) -> list[MeetingPermission]:
    """Owners get every permission; guests get one per granted flag."""
    if is_owner:
        return list(FULL_PERMISSIONS)
    permissions: list[MeetingPermission] = []
    if can_modify:
        permissions.append(MeetingPermission.EDIT_MEETING)
    if can_invite_others:
        permissions.append(MeetingPermission.INVITE_GUESTS)
    if can_see_other_guests:
        permissions.append(MeetingPermission.SEE_GUEST_LIST)
    return permissions
