"""Provider-agnostic calendar event model.

Every provider payload (Google Calendar, Microsoft Graph, CalDAV/iCalendar)
is converted into a ``UnifiedEvent`` on read and back into a native patch on
write. The unified objects are synthesized fresh on every read; the provider
copy stays authoritative.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# Recurring-instance ids carry the original start as a suffix, e.g.
# ``abc123_20240115T140000Z`` (Google) or ``abc123_20240115`` (all-day).
_INSTANCE_SUFFIX_PATTERN = re.compile(r"_\d{8}(T\d{6}Z?)?$")


class CalendarProviderKind(StrEnum):
    """Closed set of calendar sources an event can originate from."""

    GOOGLE = "google"
    OFFICE = "office365"
    WEBDAV = "webdav"
    ICLOUD = "icloud"
    WEBCAL = "webcal"
    MWW = "mww"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class AttendeeStatus(StrEnum):
    """RSVP state of an attendee, independent of provider vocabulary."""

    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"
    NEEDS_ACTION = "needs_action"


class MeetingPermission(StrEnum):
    EDIT_MEETING = "edit_meeting"
    INVITE_GUESTS = "invite_guests"
    SEE_GUEST_LIST = "see_guest_list"


FULL_PERMISSIONS: tuple[MeetingPermission, ...] = (
    MeetingPermission.EDIT_MEETING,
    MeetingPermission.INVITE_GUESTS,
    MeetingPermission.SEE_GUEST_LIST,
)


class ParticipantType(StrEnum):
    """Participant role tag used in provider update requests."""

    SCHEDULER = "scheduler"
    OWNER = "owner"
    INVITEE = "invitee"


class ParticipationStatus(StrEnum):
    """Three-state participation vocabulary used in provider update requests."""

    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    PENDING = "Pending"


class RecurrenceFrequency(StrEnum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(StrEnum):
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"


class UnifiedRecurrence(BaseModel):
    """Structured recurrence rule.

    ``provider_recurrence`` keeps each provider's raw rule (keyed by provider
    data key) so that a round trip through the same provider re-emits the
    exact original string.
    """

    model_config = ConfigDict(extra="forbid")

    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: AwareDatetime | None = None
    by_day: list[Weekday] = Field(default_factory=list)
    by_month_day: int | None = None
    by_set_pos: int | None = None
    exclude_dates: list[AwareDatetime] = Field(default_factory=list)
    provider_recurrence: dict[str, Any] = Field(default_factory=dict)


class UnifiedAttendee(BaseModel):
    """Attendee identity plus RSVP state.

    Identity is the email (case-insensitive) when present, else the account
    address.
    """

    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    name: str | None = None
    account_address: str | None = None
    status: AttendeeStatus = AttendeeStatus.NEEDS_ACTION
    is_organizer: bool = False
    provider_data: dict[str, dict[str, Any]] = Field(default_factory=dict)

    @field_validator("email", "name", "account_address")
    @classmethod
    def _strip_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @property
    def identity(self) -> str | None:
        if self.email:
            return self.email.lower()
        if self.account_address:
            return self.account_address.lower()
        return None


class UnifiedEvent(BaseModel):
    """Canonical event shape shared across provider implementations."""

    model_config = ConfigDict(extra="forbid")

    id: str
    source_event_id: str | None = None
    title: str
    description: str | None = None
    start: AwareDatetime
    end: AwareDatetime
    is_all_day: bool = False
    source: CalendarProviderKind
    calendar_id: str
    calendar_name: str | None = None
    account_email: str
    meeting_url: str | None = None
    web_link: str | None = None
    attendees: list[UnifiedAttendee] = Field(default_factory=list)
    status: EventStatus = EventStatus.CONFIRMED
    last_modified: AwareDatetime | None = None
    etag: str | None = None
    provider_data: dict[str, dict[str, Any]] = Field(default_factory=dict)
    permissions: list[MeetingPermission] = Field(default_factory=list)
    recurrence: UnifiedRecurrence | None = None

    @field_validator("attendees")
    @classmethod
    def _dedupe_attendees(cls, value: list[UnifiedAttendee]) -> list[UnifiedAttendee]:
        return merge_attendees(value)

    @model_validator(mode="after")
    def _validate_boundaries(self) -> UnifiedEvent:
        if self.end < self.start:
            raise ValueError("end must not be earlier than start")
        return self


def merge_attendees(attendees: list[UnifiedAttendee]) -> list[UnifiedAttendee]:
    """Collapse attendees sharing an identity into their first occurrence.

    Order of first appearance is kept. Attendees without any identity are
    kept as-is.
    """
    merged: list[UnifiedAttendee] = []
    by_identity: dict[str, int] = {}
    for attendee in attendees:
        identity = attendee.identity
        if identity is None:
            merged.append(attendee)
            continue
        index = by_identity.get(identity)
        if index is None:
            by_identity[identity] = len(merged)
            merged.append(attendee)
            continue

        existing = merged[index]
        status = existing.status
        if status == AttendeeStatus.NEEDS_ACTION:
            status = attendee.status
        provider_data = {key: dict(value) for key, value in attendee.provider_data.items()}
        for key, value in existing.provider_data.items():
            provider_data[key] = {**provider_data.get(key, {}), **value}
        merged[index] = existing.model_copy(
            update={
                "name": existing.name or attendee.name,
                "email": existing.email or attendee.email,
                "account_address": existing.account_address or attendee.account_address,
                "status": status,
                "is_organizer": existing.is_organizer or attendee.is_organizer,
                "provider_data": provider_data,
            }
        )
    return merged


def base_event_id(source_event_id: str) -> str:
    """Strip a recurring-instance suffix from a provider event id."""
    return _INSTANCE_SUFFIX_PATTERN.sub("", source_event_id)


class CalendarEntry(BaseModel):
    """One calendar inside a connected account."""

    model_config = ConfigDict(populate_by_name=True)

    calendar_id: str = Field(alias="calendarId")
    enabled: bool = False
    sync: bool = False
    name: str | None = None


class ConnectedCalendar(BaseModel):
    """A connected (account, email, provider) integration and its calendars."""

    model_config = ConfigDict(populate_by_name=True)

    account_address: str
    email: str
    provider: CalendarProviderKind
    payload: dict[str, Any] = Field(default_factory=dict)
    calendars: list[CalendarEntry] = Field(default_factory=list)
    active: bool = True


class UpdateParticipant(BaseModel):
    """Participant entry of a provider update request."""

    guest_email: str | None = None
    account_address: str | None = None
    name: str | None = None
    status: ParticipationStatus
    type: ParticipantType


class CalendarUpdateRequest(BaseModel):
    """Provider update request built from a unified event.

    ``event`` holds the native patch produced by the provider mapper;
    ``participants`` is the provider-neutral participant list.
    """

    source_event_id: str
    calendar_id: str
    provider: CalendarProviderKind
    title: str
    description: str
    start: AwareDatetime
    end: AwareDatetime
    is_all_day: bool = False
    meeting_url: str | None = None
    participants: list[UpdateParticipant] = Field(default_factory=list)
    event: dict[str, Any] = Field(default_factory=dict)
