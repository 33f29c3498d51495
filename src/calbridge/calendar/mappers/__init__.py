"""Provider mappers between native event payloads and ``UnifiedEvent``."""

from __future__ import annotations

from calbridge.calendar.errors import UnsupportedProviderError
from calbridge.calendar.mappers.base import DEFAULT_TITLE, EventMapper, MappingOptions
from calbridge.calendar.mappers.caldav import CalDavEventMapper
from calbridge.calendar.mappers.google import GoogleEventMapper
from calbridge.calendar.mappers.office365 import Office365EventMapper
from calbridge.calendar.models import CalendarProviderKind

# Every CalendarProviderKind must appear here; ``None`` marks providers with
# no external payload to map.
_MAPPERS: dict[CalendarProviderKind, type[EventMapper] | None] = {
    CalendarProviderKind.GOOGLE: GoogleEventMapper,
    CalendarProviderKind.OFFICE: Office365EventMapper,
    CalendarProviderKind.WEBDAV: CalDavEventMapper,
    CalendarProviderKind.ICLOUD: CalDavEventMapper,
    CalendarProviderKind.WEBCAL: CalDavEventMapper,
    CalendarProviderKind.MWW: None,
}


def get_event_mapper(
    provider: CalendarProviderKind | str,
    options: MappingOptions | None = None,
) -> EventMapper:
    """Return the mapper for *provider*.

    Raises:
        UnsupportedProviderError: If the provider has no native payload format.
    """
    try:
        kind = CalendarProviderKind(provider)
    except ValueError as exc:
        raise UnsupportedProviderError(f"Unknown calendar provider: {provider!r}") from exc
    mapper_cls = _MAPPERS[kind]
    if mapper_cls is None:
        raise UnsupportedProviderError(f"No event mapper for calendar provider {kind.value!r}")
    mapper = mapper_cls(options)
    mapper.default_source = kind
    return mapper


__all__ = [
    "DEFAULT_TITLE",
    "CalDavEventMapper",
    "EventMapper",
    "GoogleEventMapper",
    "MappingOptions",
    "Office365EventMapper",
    "get_event_mapper",
]
