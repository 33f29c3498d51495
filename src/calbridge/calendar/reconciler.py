"""Update reconciliation: write a unified event through its provider and re-read it.

``CalendarBackendHelper.update_calendar_event`` runs a fixed chain of gates::

    validate -> resolve calendar -> acquire client -> submit update -> confirm

Every gate has a single failure exit that raises a ``CalendarSyncError``
subclass. There are no retries here; transport retries live in the
integration clients.

The same helper also collects busy slots for availability checks; see
``calbridge.calendar.availability`` for the merge rules.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from calbridge.calendar.availability import (
    ConditionRelation,
    TimeInterval,
    TimeSlot,
    merge_slots_intersection,
    merge_slots_union,
)
from calbridge.calendar.errors import (
    CalendarSyncError,
    CalendarValidationError,
    ConfirmationFailedError,
    EventConflictError,
    ProviderUpdateFailedError,
    UnsupportedProviderError,
    build_structured_error,
)
from calbridge.calendar.integrations import ProviderAppCredentials, get_connected_calendar_integration
from calbridge.calendar.integrations.base import CalendarIntegration
from calbridge.calendar.mappers import EventMapper, MappingOptions, get_event_mapper
from calbridge.calendar.models import (
    AttendeeStatus,
    CalendarProviderKind,
    CalendarUpdateRequest,
    ConnectedCalendar,
    EventStatus,
    ParticipantType,
    ParticipationStatus,
    UnifiedAttendee,
    UnifiedEvent,
    UpdateParticipant,
    base_event_id,
)
from calbridge.calendar.registry import ConnectedCalendarRegistry, ResolvedCalendar, resolve_calendar
from calbridge.core.logging import set_account_context
from calbridge.core.metrics import CalendarMetrics
from calbridge.core.telemetry import calendar_span, tag_calendar_span

if TYPE_CHECKING:
    from calbridge.config import CalbridgeConfig

logger = logging.getLogger(__name__)

DEFAULT_REFETCH_WINDOW = timedelta(hours=1)

OUTCOME_SUCCESS = "success"
OUTCOME_ERROR = "error"

PARTICIPATION_STATUS: dict[AttendeeStatus, ParticipationStatus] = {
    AttendeeStatus.ACCEPTED: ParticipationStatus.ACCEPTED,
    AttendeeStatus.DECLINED: ParticipationStatus.REJECTED,
    AttendeeStatus.TENTATIVE: ParticipationStatus.PENDING,
    AttendeeStatus.NEEDS_ACTION: ParticipationStatus.PENDING,
}

IntegrationFactory = Callable[
    [str, str, CalendarProviderKind, Mapping[str, Any]],
    CalendarIntegration | Awaitable[CalendarIntegration],
]


@dataclass(frozen=True)
class ReconcilerConfig:
    """Tunables for ``CalendarBackendHelper``.

    ``refetch_window`` pads both ends of the confirmation query.
    ``etag_precondition`` turns on the compare-before-write check; the
    default is last-write-wins.
    """

    refetch_window: timedelta = DEFAULT_REFETCH_WINDOW
    etag_precondition: bool = False
    mapping: MappingOptions = field(default_factory=MappingOptions)

    def __post_init__(self) -> None:
        if self.refetch_window <= timedelta(0):
            raise ValueError("refetch_window must be positive")


def to_update_participant(attendee: UnifiedAttendee) -> UpdateParticipant:
    """Convert an attendee into a provider-neutral update participant.

    The participant type depends only on the organizer flag.
    """
    return UpdateParticipant(
        guest_email=attendee.email,
        account_address=attendee.account_address,
        name=attendee.name,
        status=PARTICIPATION_STATUS[attendee.status],
        type=ParticipantType.OWNER if attendee.is_organizer else ParticipantType.INVITEE,
    )


def build_update_request(
    mapper: EventMapper,
    event: UnifiedEvent,
    *,
    source_event_id: str,
) -> CalendarUpdateRequest:
    return CalendarUpdateRequest(
        source_event_id=source_event_id,
        calendar_id=event.calendar_id,
        provider=event.source,
        title=event.title,
        description=event.description or "",
        start=event.start,
        end=event.end,
        is_all_day=event.is_all_day,
        meeting_url=event.meeting_url,
        participants=[to_update_participant(attendee) for attendee in event.attendees],
        event=mapper.from_unified(event),
    )


def find_native_event(
    mapper: EventMapper,
    natives: Sequence[Mapping[str, Any]],
    source_event_id: str,
) -> Mapping[str, Any] | None:
    """Locate *source_event_id* among re-fetched payloads.

    An exact id match wins. When *source_event_id* names a series master and
    the provider only lists expanded instances, the first instance of that
    series is used. An instance id is never confirmed by a sibling instance.
    """
    is_master = base_event_id(source_event_id) == source_event_id
    series_match: Mapping[str, Any] | None = None
    for native in natives:
        native_id = mapper.source_event_id(native)
        if native_id is None:
            continue
        if native_id == source_event_id:
            return native
        if is_master and series_match is None and base_event_id(native_id) == source_event_id:
            series_match = native
    return series_match


def merge_foreign_provider_data(
    result: UnifiedEvent,
    original: UnifiedEvent,
    provider_key: str,
) -> UnifiedEvent:
    """Copy other providers' ``provider_data`` blocks from *original* onto *result*.

    The block under *provider_key* always comes from the provider; every other
    key, at event and attendee level, is carried over from the caller's input.
    """
    provider_data = copy.deepcopy(result.provider_data)
    for key, block in original.provider_data.items():
        if key != provider_key:
            provider_data[key] = copy.deepcopy(block)

    original_attendees = {
        attendee.identity: attendee for attendee in original.attendees if attendee.identity
    }
    attendees: list[UnifiedAttendee] = []
    for attendee in result.attendees:
        source = original_attendees.get(attendee.identity) if attendee.identity else None
        foreign = (
            {key: block for key, block in source.provider_data.items() if key != provider_key}
            if source is not None
            else {}
        )
        if foreign:
            attendee = attendee.model_copy(
                update={"provider_data": {**attendee.provider_data, **copy.deepcopy(foreign)}}
            )
        attendees.append(attendee)

    return result.model_copy(update={"provider_data": provider_data, "attendees": attendees})


class CalendarBackendHelper:
    """Writes unified events back to their provider and returns the confirmed state.

    Also gathers busy slots across an account's connected calendars.
    """

    def __init__(
        self,
        registry: ConnectedCalendarRegistry,
        *,
        integration_factory: IntegrationFactory | None = None,
        credentials: ProviderAppCredentials | None = None,
        http_client: httpx.AsyncClient | None = None,
        config: ReconcilerConfig | None = None,
        metrics: CalendarMetrics | None = None,
    ) -> None:
        """``credentials`` and ``http_client`` feed the default integration
        factory; a custom ``integration_factory`` must supply its own.
        """
        if integration_factory is not None and (credentials is not None or http_client is not None):
            raise TypeError("credentials and http_client only apply to the default integration factory")
        self._registry = registry
        self._integration_factory = integration_factory or functools.partial(
            get_connected_calendar_integration,
            credentials=dict(credentials or {}),
            http_client=http_client,
        )
        self._config = config or ReconcilerConfig()
        self._metrics = metrics or CalendarMetrics()

    @classmethod
    def from_config(
        cls,
        config: CalbridgeConfig,
        registry: ConnectedCalendarRegistry,
        *,
        http_client: httpx.AsyncClient | None = None,
        metrics: CalendarMetrics | None = None,
    ) -> CalendarBackendHelper:
        """Build a helper wired to ``[calbridge.reconciler]`` and ``[calbridge.providers.*]``."""
        return cls(
            registry,
            credentials=config.providers,
            http_client=http_client,
            config=config.reconciler,
            metrics=metrics,
        )

    async def update_calendar_event(
        self,
        account_address: str,
        event: UnifiedEvent,
    ) -> UnifiedEvent:
        """Push *event* to its provider and return the provider's copy, unified.

        Raises:
            CalendarValidationError: ``source_event_id`` is missing; no I/O happened.
            CalendarNotFoundOrDisabledError: No enabled calendar matches the event.
            ProviderUpdateFailedError: No client could be built or the write failed.
            ConfirmationFailedError: The write returned but the event could not be re-read.
            EventConflictError: The etag precondition is enabled and did not hold.
        """
        set_account_context(account_address)
        started = time.monotonic()
        outcome = OUTCOME_SUCCESS
        with calendar_span("update_event", account_address=account_address) as span:
            tag_calendar_span(
                span,
                provider=event.source.value,
                calendar_id=event.calendar_id,
                source_event_id=event.source_event_id,
            )
            try:
                return await self._update(account_address, event)
            except CalendarSyncError as exc:
                outcome = exc.kind.value
                raise
            except Exception:
                outcome = OUTCOME_ERROR
                raise
            finally:
                self._metrics.record_update(
                    event.source.value,
                    outcome,
                    (time.monotonic() - started) * 1000,
                )

    async def _update(self, account_address: str, event: UnifiedEvent) -> UnifiedEvent:
        source_event_id = (event.source_event_id or "").strip()
        if not source_event_id:
            raise CalendarValidationError(context={"missing": ["source_event_id"]})

        resolved = await resolve_calendar(self._registry, account_address, event)
        try:
            mapper = get_event_mapper(event.source, self._config.mapping)
        except UnsupportedProviderError as exc:
            raise ProviderUpdateFailedError(
                context=build_structured_error(
                    exc, provider=event.source.value, calendar_id=event.calendar_id
                )
            ) from exc
        integration = await self._acquire_integration(account_address, resolved)
        try:
            if self._config.etag_precondition and event.etag:
                await self._check_etag(integration, mapper, event, source_event_id)

            request = build_update_request(mapper, event, source_event_id=source_event_id)
            await self._submit(integration, request, resolved)

            native = await self._refetch(integration, mapper, event, source_event_id)
            try:
                confirmed = mapper.to_unified(
                    native,
                    calendar_id=resolved.entry.calendar_id,
                    calendar_name=resolved.entry.name,
                    account_email=resolved.connection.email,
                    source=event.source,
                )
            except ValueError as exc:
                raise ConfirmationFailedError(
                    context={"source_event_id": source_event_id, "error": str(exc)[:200]}
                ) from exc
            logger.info(
                "Updated %s event %s on calendar %s",
                event.source.value,
                source_event_id,
                resolved.entry.calendar_id,
            )
            return merge_foreign_provider_data(confirmed, event, mapper.provider_key)
        finally:
            await integration.aclose()

    async def _acquire_integration(
        self,
        account_address: str,
        resolved: ResolvedCalendar,
    ) -> CalendarIntegration:
        connection = resolved.connection
        try:
            integration = self._integration_factory(
                account_address,
                connection.email,
                connection.provider,
                connection.payload,
            )
            if inspect.isawaitable(integration):
                integration = await integration
        except Exception as exc:
            context = build_structured_error(
                exc,
                provider=connection.provider.value,
                calendar_id=resolved.entry.calendar_id,
            )
            logger.warning("Could not build %s integration: %s", connection.provider.value, context["error"])
            raise ProviderUpdateFailedError(context=context) from exc
        return integration

    async def _check_etag(
        self,
        integration: CalendarIntegration,
        mapper: EventMapper,
        event: UnifiedEvent,
        source_event_id: str,
    ) -> None:
        try:
            natives = await integration.get_events(*self._window(event))
        except Exception as exc:
            context = build_structured_error(
                exc, provider=event.source.value, calendar_id=event.calendar_id
            )
            logger.warning("Etag precondition read failed: %s", context["error"])
            raise ProviderUpdateFailedError(context=context) from exc

        native = find_native_event(mapper, natives, source_event_id)
        current = None
        if native is not None:
            try:
                current = mapper.to_unified(
                    native,
                    calendar_id=event.calendar_id,
                    account_email=event.account_email,
                    source=event.source,
                ).etag
            except ValueError as exc:
                context = build_structured_error(
                    exc, provider=event.source.value, calendar_id=event.calendar_id
                )
                logger.warning("Etag precondition read returned an unmappable event: %s", context["error"])
                raise ProviderUpdateFailedError(context=context) from exc
        if current != event.etag:
            logger.info(
                "Etag mismatch for %s event %s: expected %s, found %s",
                event.source.value,
                source_event_id,
                event.etag,
                current,
            )
            raise EventConflictError(
                context={
                    "source_event_id": source_event_id,
                    "expected_etag": event.etag,
                    "current_etag": current,
                }
            )

    async def _submit(
        self,
        integration: CalendarIntegration,
        request: CalendarUpdateRequest,
        resolved: ResolvedCalendar,
    ) -> None:
        try:
            await integration.update_event(
                request.source_event_id,
                request,
                calendar_id=resolved.entry.calendar_id,
            )
        except Exception as exc:
            context = build_structured_error(
                exc,
                provider=request.provider.value,
                calendar_id=resolved.entry.calendar_id,
            )
            self._metrics.record_provider_error(request.provider.value, context.get("status_code"))
            logger.error(
                "Provider update of %s event %s failed: %s",
                request.provider.value,
                request.source_event_id,
                context["error"],
            )
            raise ProviderUpdateFailedError(context=context) from exc

    async def _refetch(
        self,
        integration: CalendarIntegration,
        mapper: EventMapper,
        event: UnifiedEvent,
        source_event_id: str,
    ) -> Mapping[str, Any]:
        calendar_id, window_start, window_end = self._window(event)
        try:
            natives = await integration.get_events(calendar_id, window_start, window_end)
        except Exception as exc:
            context = build_structured_error(
                exc, provider=event.source.value, calendar_id=calendar_id
            )
            self._metrics.record_provider_error(event.source.value, context.get("status_code"))
            logger.error("Re-fetch after update failed: %s", context["error"])
            raise ConfirmationFailedError(context=context) from exc

        native = find_native_event(mapper, natives, source_event_id)
        if native is None:
            logger.warning(
                "Updated %s event %s not found in %d events between %s and %s",
                event.source.value,
                source_event_id,
                len(natives),
                window_start.isoformat(),
                window_end.isoformat(),
            )
            raise ConfirmationFailedError(
                context={
                    "source_event_id": source_event_id,
                    "calendar_id": calendar_id,
                    "window_start": window_start.isoformat(),
                    "window_end": window_end.isoformat(),
                }
            )
        return native

    def _window(self, event: UnifiedEvent) -> tuple[str, datetime, datetime]:
        padding = self._config.refetch_window
        return event.calendar_id, event.start - padding, event.end + padding

    # -- availability -------------------------------------------------------

    merge_slots_union = staticmethod(merge_slots_union)
    merge_slots_intersection = staticmethod(merge_slots_intersection)

    async def get_busy_slots_for_account(
        self,
        account_address: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[TimeSlot]:
        """Collect busy slots from every active connection of *account_address*.

        Only enabled calendars are queried. A connection whose client cannot
        be built or whose provider call fails is logged and skipped; the
        slots of the other connections are still returned.
        """
        with calendar_span("busy_slots", account_address=account_address):
            connections = await self._registry.get_connected_calendars(
                account_address, active_only=True
            )
            results = await asyncio.gather(
                *(
                    self._connection_busy_slots(account_address, connection, start_at, end_at)
                    for connection in connections
                )
            )
        return [slot for slots in results for slot in slots]

    async def get_busy_slots_for_multiple_accounts(
        self,
        account_addresses: Sequence[str],
        start_at: datetime,
        end_at: datetime,
    ) -> list[TimeSlot]:
        results = await asyncio.gather(
            *(
                self.get_busy_slots_for_account(address, start_at, end_at)
                for address in account_addresses
            )
        )
        return [slot for slots in results for slot in slots]

    async def get_merged_busy_slots_for_multiple_accounts(
        self,
        account_addresses: Sequence[str],
        relation: ConditionRelation,
        start_at: datetime,
        end_at: datetime,
        *,
        raw: bool = False,
    ) -> list[TimeInterval]:
        """Busy time across accounts: union for ``AND``, intersection for ``OR``.

        With ``raw`` the unmerged slots are returned sorted by start.
        """
        slots = await self.get_busy_slots_for_multiple_accounts(
            account_addresses, start_at, end_at
        )
        if raw:
            return sorted(slots, key=lambda slot: slot.start)
        if relation == ConditionRelation.AND:
            return merge_slots_union(slots)
        return merge_slots_intersection(slots)

    async def _connection_busy_slots(
        self,
        account_address: str,
        connection: ConnectedCalendar,
        start_at: datetime,
        end_at: datetime,
    ) -> list[TimeSlot]:
        calendar_ids = [entry.calendar_id for entry in connection.calendars if entry.enabled]
        if not calendar_ids:
            return []

        integration: CalendarIntegration | None = None
        slots: list[TimeSlot] = []
        try:
            mapper = get_event_mapper(connection.provider, self._config.mapping)
            built = self._integration_factory(
                connection.account_address,
                connection.email,
                connection.provider,
                connection.payload,
            )
            integration = await built if inspect.isawaitable(built) else built
            for calendar_id in calendar_ids:
                natives = await integration.get_events(calendar_id, start_at, end_at)
                slots.extend(
                    self._natives_to_slots(
                        mapper, natives, account_address, connection, calendar_id
                    )
                )
        except Exception as exc:
            context = build_structured_error(
                exc,
                provider=connection.provider.value,
                calendar_id=",".join(calendar_ids),
            )
            self._metrics.record_provider_error(connection.provider.value, context.get("status_code"))
            logger.warning(
                "Skipping busy slots of %s connection %s: %s",
                connection.provider.value,
                connection.email,
                context["error"],
            )
            return []
        finally:
            if integration is not None:
                await integration.aclose()
        return slots

    def _natives_to_slots(
        self,
        mapper: EventMapper,
        natives: Sequence[Mapping[str, Any]],
        account_address: str,
        connection: ConnectedCalendar,
        calendar_id: str,
    ) -> list[TimeSlot]:
        slots: list[TimeSlot] = []
        for native in natives:
            try:
                event = mapper.to_unified(
                    native,
                    calendar_id=calendar_id,
                    account_email=connection.email,
                    source=connection.provider,
                )
            except ValueError as exc:
                logger.debug("Ignoring unmappable %s event: %s", connection.provider.value, exc)
                continue
            if event.status == EventStatus.CANCELLED:
                continue
            slots.append(
                TimeSlot(
                    start=event.start,
                    end=event.end,
                    source=connection.provider,
                    account_address=account_address,
                )
            )
        return slots


__all__ = [
    "DEFAULT_REFETCH_WINDOW",
    "PARTICIPATION_STATUS",
    "CalendarBackendHelper",
    "ReconcilerConfig",
    "build_update_request",
    "find_native_event",
    "merge_foreign_provider_data",
    "to_update_participant",
]
