"""Multi-provider calendar event unification and update reconciliation."""

from calbridge.calendar.availability import (
    ConditionRelation,
    TimeInterval,
    TimeSlot,
    merge_slots_intersection,
    merge_slots_union,
)
from calbridge.calendar.errors import (
    CalendarErrorKind,
    CalendarIntegrationError,
    CalendarNotFoundOrDisabledError,
    CalendarSyncError,
    CalendarValidationError,
    ConfirmationFailedError,
    EventConflictError,
    ProviderUpdateFailedError,
    UnsupportedProviderError,
)
from calbridge.calendar.integrations import (
    CalendarIntegration,
    OAuthAppCredentials,
    get_connected_calendar_integration,
)
from calbridge.calendar.mappers import EventMapper, MappingOptions, get_event_mapper
from calbridge.calendar.models import (
    AttendeeStatus,
    CalendarEntry,
    CalendarProviderKind,
    CalendarUpdateRequest,
    ConnectedCalendar,
    EventStatus,
    MeetingPermission,
    ParticipantType,
    ParticipationStatus,
    UnifiedAttendee,
    UnifiedEvent,
    UnifiedRecurrence,
    UpdateParticipant,
)
from calbridge.calendar.reconciler import CalendarBackendHelper, ReconcilerConfig
from calbridge.calendar.registry import (
    ConnectedCalendarRegistry,
    InMemoryConnectedCalendarRegistry,
    PostgresConnectedCalendarRegistry,
    resolve_calendar,
)

__all__ = [
    "AttendeeStatus",
    "CalendarBackendHelper",
    "CalendarEntry",
    "CalendarErrorKind",
    "CalendarIntegration",
    "CalendarIntegrationError",
    "CalendarNotFoundOrDisabledError",
    "CalendarProviderKind",
    "CalendarSyncError",
    "CalendarUpdateRequest",
    "CalendarValidationError",
    "ConditionRelation",
    "ConfirmationFailedError",
    "ConnectedCalendar",
    "ConnectedCalendarRegistry",
    "EventConflictError",
    "EventMapper",
    "EventStatus",
    "InMemoryConnectedCalendarRegistry",
    "MappingOptions",
    "MeetingPermission",
    "OAuthAppCredentials",
    "ParticipantType",
    "ParticipationStatus",
    "PostgresConnectedCalendarRegistry",
    "ProviderUpdateFailedError",
    "ReconcilerConfig",
    "TimeInterval",
    "TimeSlot",
    "UnifiedAttendee",
    "UnifiedEvent",
    "UnifiedRecurrence",
    "UnsupportedProviderError",
    "UpdateParticipant",
    "get_connected_calendar_integration",
    "get_event_mapper",
    "merge_slots_intersection",
    "merge_slots_union",
    "resolve_calendar",
]
