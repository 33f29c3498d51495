"""Tests for CalendarBackendHelper.update_calendar_event."""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import calbridge.core.telemetry as _telemetry_mod
from calbridge.calendar.errors import (
    CalendarCredentialError,
    CalendarNotFoundOrDisabledError,
    CalendarRequestError,
    CalendarValidationError,
    ConfirmationFailedError,
    EventConflictError,
    ProviderUpdateFailedError,
)
from calbridge.calendar.mappers.google import GoogleEventMapper
from calbridge.calendar.models import (
    CalendarProviderKind,
    ParticipantType,
    ParticipationStatus,
    UnifiedEvent,
)
from calbridge.calendar.reconciler import (
    CalendarBackendHelper,
    ReconcilerConfig,
    find_native_event,
)
from calbridge.calendar.registry import InMemoryConnectedCalendarRegistry
from calbridge.config import parse_config
from tests.conftest import (
    ACCOUNT,
    CALENDAR_ID,
    OWNER_EMAIL,
    FakeIntegration,
    google_event_payload,
    make_connection,
)

pytestmark = pytest.mark.unit


class FakeMetrics:
    def __init__(self) -> None:
        self.updates: list[tuple[str, str]] = []
        self.provider_errors: list[tuple[str, int | None]] = []

    def record_update(self, provider: str, outcome: str, duration_ms: float) -> None:
        assert duration_ms >= 0
        self.updates.append((provider, outcome))

    def record_provider_error(self, provider: str, status_code: int | None) -> None:
        self.provider_errors.append((provider, status_code))


class CountingRegistry(InMemoryConnectedCalendarRegistry):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.lookups = 0

    async def get_connected_calendars(self, account_address, *, active_only=False):
        self.lookups += 1
        return await super().get_connected_calendars(account_address, active_only=active_only)


def unified_google_event(**overrides: Any) -> UnifiedEvent:
    event = GoogleEventMapper().to_unified(
        google_event_payload(),
        calendar_id=CALENDAR_ID,
        account_email=OWNER_EMAIL,
        calendar_name="Work",
    )
    return event.model_copy(update=overrides) if overrides else event


def make_helper(
    integration: FakeIntegration,
    *,
    registry: InMemoryConnectedCalendarRegistry | None = None,
    config: ReconcilerConfig | None = None,
    factory_calls: list[tuple] | None = None,
) -> tuple[CalendarBackendHelper, FakeMetrics]:
    def factory(*args):
        if factory_calls is not None:
            factory_calls.append(args)
        return integration

    metrics = FakeMetrics()
    helper = CalendarBackendHelper(
        registry if registry is not None else InMemoryConnectedCalendarRegistry([make_connection()]),
        integration_factory=factory,
        config=config,
        metrics=metrics,
    )
    return helper, metrics


class TestSuccessfulUpdate:
    async def test_title_update_round_trips(self):
        integration = FakeIntegration([google_event_payload()])
        helper, metrics = make_helper(integration)

        result = await helper.update_calendar_event(
            ACCOUNT, unified_google_event(title="Planning v2")
        )

        assert result.title == "Planning v2"
        assert result.calendar_name == "Work"
        assert result.account_email == OWNER_EMAIL
        assert len(result.attendees) == 2
        assert result.provider_data["google"]["colorId"] == "5"
        assert len(integration.update_calls) == 1
        source_event_id, request, calendar_id = integration.update_calls[0]
        assert (source_event_id, calendar_id) == ("evt-1", CALENDAR_ID)
        assert request.event["summary"] == "Planning v2"
        assert integration.closed == 1
        assert metrics.updates == [("google", "success")]

    async def test_factory_receives_connection(self):
        calls: list[tuple] = []
        integration = FakeIntegration([google_event_payload()])
        helper, _ = make_helper(integration, factory_calls=calls)
        await helper.update_calendar_event(ACCOUNT, unified_google_event())
        assert calls == [
            (ACCOUNT, OWNER_EMAIL, CalendarProviderKind.GOOGLE, {"refresh_token": "rt-1"})
        ]

    async def test_participants_typed_and_status_mapped(self):
        integration = FakeIntegration([google_event_payload()])
        helper, _ = make_helper(integration)
        await helper.update_calendar_event(ACCOUNT, unified_google_event())

        _, request, _ = integration.update_calls[0]
        assert [(p.guest_email, p.type, p.status) for p in request.participants] == [
            (OWNER_EMAIL, ParticipantType.OWNER, ParticipationStatus.ACCEPTED),
            ("guest@example.com", ParticipantType.INVITEE, ParticipationStatus.PENDING),
        ]

    async def test_refetch_window_brackets_event(self):
        integration = FakeIntegration([google_event_payload()])
        helper, _ = make_helper(integration)
        event = unified_google_event()
        await helper.update_calendar_event(ACCOUNT, event)

        ((calendar_id, window_start, window_end),) = integration.fetch_calls
        assert calendar_id == CALENDAR_ID
        assert window_start < event.start
        assert window_end > event.end
        assert event.start - window_start == timedelta(hours=1)

    async def test_custom_refetch_window(self):
        integration = FakeIntegration([google_event_payload()])
        config = ReconcilerConfig(refetch_window=timedelta(minutes=15))
        helper, _ = make_helper(integration, config=config)
        event = unified_google_event()
        await helper.update_calendar_event(ACCOUNT, event)
        ((_, _, window_end),) = integration.fetch_calls
        assert window_end - event.end == timedelta(minutes=15)

    async def test_foreign_provider_blocks_preserved(self):
        integration = FakeIntegration([google_event_payload()])
        helper, _ = make_helper(integration)
        event = unified_google_event()
        guest = event.attendees[1].model_copy(
            update={
                "provider_data": {
                    **event.attendees[1].provider_data,
                    "office365": {"type": "optional"},
                }
            }
        )
        event = event.model_copy(
            update={
                "provider_data": {**event.provider_data, "office365": {"importance": "high"}},
                "attendees": [event.attendees[0], guest],
            }
        )

        result = await helper.update_calendar_event(ACCOUNT, event)

        assert result.provider_data["office365"] == {"importance": "high"}
        assert result.attendees[1].provider_data["office365"] == {"type": "optional"}
        assert result.attendees[1].provider_data["google"]["optional"] is True

    async def test_async_factory(self):
        integration = FakeIntegration([google_event_payload()])

        async def factory(*args):
            return integration

        helper = CalendarBackendHelper(
            InMemoryConnectedCalendarRegistry([make_connection()]),
            integration_factory=factory,
            metrics=FakeMetrics(),
        )
        result = await helper.update_calendar_event(ACCOUNT, unified_google_event())
        assert result.source_event_id == "evt-1"
        assert integration.closed == 1

    async def test_series_master_confirmed_by_expanded_instance(self):
        integration = FakeIntegration([google_event_payload(id="evt-1_20260302T100000Z")])
        helper, _ = make_helper(integration)
        result = await helper.update_calendar_event(
            ACCOUNT, unified_google_event(title="Planning v2")
        )
        assert result.source_event_id == "evt-1_20260302T100000Z"
        assert result.title == "Planning v2"


class TestGates:
    @pytest.mark.parametrize("source_event_id", [None, "", "   "])
    async def test_missing_source_event_id_fails_before_io(self, source_event_id):
        registry = CountingRegistry([make_connection()])
        calls: list[tuple] = []
        integration = FakeIntegration([google_event_payload()])
        helper, metrics = make_helper(integration, registry=registry, factory_calls=calls)

        with pytest.raises(CalendarValidationError) as exc_info:
            await helper.update_calendar_event(
                ACCOUNT, unified_google_event(source_event_id=source_event_id)
            )

        assert exc_info.value.message == "Missing required fields"
        assert registry.lookups == 0
        assert calls == []
        assert metrics.updates == [("google", "validation")]

    async def test_disabled_calendar_never_reaches_provider(self):
        calls: list[tuple] = []
        integration = FakeIntegration([google_event_payload()])
        registry = InMemoryConnectedCalendarRegistry([make_connection(enabled=False)])
        helper, _ = make_helper(integration, registry=registry, factory_calls=calls)

        with pytest.raises(CalendarNotFoundOrDisabledError):
            await helper.update_calendar_event(ACCOUNT, unified_google_event())

        assert calls == []
        assert integration.update_calls == []

    async def test_unmappable_provider(self):
        registry = InMemoryConnectedCalendarRegistry(
            [make_connection(provider=CalendarProviderKind.MWW)]
        )
        helper, _ = make_helper(FakeIntegration(), registry=registry)
        with pytest.raises(ProviderUpdateFailedError) as exc_info:
            await helper.update_calendar_event(
                ACCOUNT, unified_google_event(source=CalendarProviderKind.MWW)
            )
        assert exc_info.value.context["error_type"] == "UnsupportedProviderError"

    async def test_factory_failure(self):
        def factory(*args):
            raise CalendarCredentialError("refresh_token=abc123 is missing a client id")

        helper = CalendarBackendHelper(
            InMemoryConnectedCalendarRegistry([make_connection()]),
            integration_factory=factory,
            metrics=FakeMetrics(),
        )
        with pytest.raises(ProviderUpdateFailedError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, unified_google_event())
        assert "abc123" not in exc_info.value.context["error"]
        assert isinstance(exc_info.value.__cause__, CalendarCredentialError)

    async def test_rate_limited_update(self):
        cause = CalendarRequestError(
            status_code=429,
            message="Rate limit exceeded for Bearer ya29.secret",
            provider="google",
        )
        integration = FakeIntegration([google_event_payload()], update_error=cause)
        helper, metrics = make_helper(integration)

        with pytest.raises(ProviderUpdateFailedError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, unified_google_event())

        error = exc_info.value
        assert error.message == "Failed to update calendar event"
        assert error.__cause__ is cause
        assert error.context["status_code"] == 429
        assert error.context["provider"] == "google"
        assert error.context["calendar_id"] == CALENDAR_ID
        assert "ya29.secret" not in error.context["error"]
        assert integration.fetch_calls == []
        assert integration.closed == 1
        assert metrics.provider_errors == [("google", 429)]
        assert metrics.updates == [("google", "provider_update_failed")]

    async def test_event_missing_after_update(self):
        integration = FakeIntegration([])
        helper, metrics = make_helper(integration)

        with pytest.raises(ConfirmationFailedError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, unified_google_event())

        assert exc_info.value.message == "Failed to retrieve updated event"
        assert exc_info.value.context["source_event_id"] == "evt-1"
        assert len(integration.update_calls) == 1
        assert integration.closed == 1
        assert metrics.updates == [("google", "confirmation_failed")]

    async def test_sibling_instance_does_not_confirm(self):
        integration = FakeIntegration([google_event_payload(id="evt-1_20260303T100000Z")])
        helper, metrics = make_helper(integration)
        event = unified_google_event(
            id="evt-1_20260302T100000Z",
            source_event_id="evt-1_20260302T100000Z",
            title="Edited",
        )

        with pytest.raises(ConfirmationFailedError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, event)

        assert exc_info.value.context["source_event_id"] == "evt-1_20260302T100000Z"
        assert integration.events[0]["summary"] == "Planning"
        assert metrics.updates == [("google", "confirmation_failed")]

    async def test_refetch_failure(self):
        integration = FakeIntegration(
            [google_event_payload()],
            fetch_error=CalendarRequestError(status_code=503, message="unavailable"),
        )
        helper, metrics = make_helper(integration)
        with pytest.raises(ConfirmationFailedError):
            await helper.update_calendar_event(ACCOUNT, unified_google_event())
        assert metrics.provider_errors == [("google", 503)]

    async def test_unexpected_error_still_closes_client(self):
        integration = FakeIntegration([google_event_payload()])
        helper, metrics = make_helper(integration)
        helper._refetch = _raise_runtime_error
        with pytest.raises(RuntimeError):
            await helper.update_calendar_event(ACCOUNT, unified_google_event())
        assert integration.closed == 1
        assert metrics.updates == [("google", "error")]


async def _raise_runtime_error(*args, **kwargs):
    raise RuntimeError("boom")


class TestEtagPrecondition:
    async def test_stale_etag_conflicts(self):
        integration = FakeIntegration([google_event_payload()])
        helper, metrics = make_helper(integration, config=ReconcilerConfig(etag_precondition=True))

        with pytest.raises(EventConflictError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, unified_google_event(etag='"stale"'))

        assert exc_info.value.context["current_etag"] == '"3181161784712000"'
        assert integration.update_calls == []
        assert metrics.updates == [("google", "conflict")]

    async def test_matching_etag_proceeds(self):
        integration = FakeIntegration([google_event_payload()])
        helper, _ = make_helper(integration, config=ReconcilerConfig(etag_precondition=True))
        await helper.update_calendar_event(ACCOUNT, unified_google_event(title="New"))
        assert len(integration.update_calls) == 1

    async def test_unmappable_current_copy(self):
        integration = FakeIntegration([google_event_payload(start={"timeZone": "UTC"})])
        helper, metrics = make_helper(integration, config=ReconcilerConfig(etag_precondition=True))

        with pytest.raises(ProviderUpdateFailedError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, unified_google_event(etag='"stale"'))

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert exc_info.value.context["error_type"] == "ValueError"
        assert integration.update_calls == []
        assert integration.closed == 1
        assert metrics.updates == [("google", "provider_update_failed")]

    async def test_disabled_by_default(self):
        integration = FakeIntegration([google_event_payload()])
        helper, _ = make_helper(integration)
        await helper.update_calendar_event(ACCOUNT, unified_google_event(etag='"stale"'))
        assert len(integration.update_calls) == 1


class TestReconcilerConfig:
    @pytest.mark.parametrize("window", [timedelta(0), timedelta(minutes=-5)])
    def test_window_must_be_positive(self, window):
        with pytest.raises(ValueError):
            ReconcilerConfig(refetch_window=window)


class TestFindNativeEvent:
    def test_exact_match_preferred(self):
        natives = [{"id": "evt-1_20260302T100000Z"}, {"id": "evt-1"}]
        assert find_native_event(GoogleEventMapper(), natives, "evt-1") == {"id": "evt-1"}

    def test_master_matches_expanded_instance(self):
        natives = [{"id": "other_20260302T100000Z"}, {"id": "evt-1_20260302T100000Z"}]
        assert find_native_event(GoogleEventMapper(), natives, "evt-1") == {
            "id": "evt-1_20260302T100000Z"
        }

    @pytest.mark.parametrize(
        "natives",
        [
            [{"id": "evt-1_20260303T100000Z"}],
            [{"id": "evt-1"}],
        ],
        ids=["sibling-instance", "series-master"],
    )
    def test_instance_needs_exact_match(self, natives):
        assert find_native_event(GoogleEventMapper(), natives, "evt-1_20260302T100000Z") is None

    def test_no_match(self):
        assert find_native_event(GoogleEventMapper(), [{"id": "other"}, {}], "evt-1") is None


class TestTracing:
    @pytest.fixture
    def exporter(self):
        trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
        trace._TRACER_PROVIDER = None
        _telemetry_mod._tracer_provider_installed = False
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        yield exporter
        provider.shutdown()
        trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
        trace._TRACER_PROVIDER = None

    async def test_span_attributes(self, exporter):
        helper, _ = make_helper(FakeIntegration([google_event_payload()]))
        await helper.update_calendar_event(ACCOUNT, unified_google_event())

        (span,) = exporter.get_finished_spans()
        assert span.name == "calbridge.calendar.update_event"
        assert span.attributes["calendar.provider"] == "google"
        assert span.attributes["calendar.id"] == CALENDAR_ID
        assert span.attributes["calendar.account_address"] == ACCOUNT

    async def test_failure_marks_span(self, exporter):
        helper, _ = make_helper(FakeIntegration([]))
        with pytest.raises(ConfirmationFailedError):
            await helper.update_calendar_event(ACCOUNT, unified_google_event())

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR


def _json_response(body: dict) -> httpx.Response:
    return httpx.Response(200, json=body, request=httpx.Request("GET", "https://example.invalid"))


class TestFromConfig:
    async def test_configured_app_credentials_reach_token_refresh(self):
        config = parse_config(
            {
                "calbridge": {
                    "providers": {"google": {"client_id": "cfg-id", "client_secret": "cfg-secret"}},
                    "reconciler": {"refetch_window_minutes": 30},
                }
            }
        )
        updated = google_event_payload(summary="Planning v2")
        client = MagicMock(spec=httpx.AsyncClient)
        client.post = AsyncMock(
            return_value=_json_response({"access_token": "access-token", "expires_in": 3600})
        )
        client.request = AsyncMock(
            side_effect=[_json_response(updated), _json_response({"items": [updated]})]
        )
        helper = CalendarBackendHelper.from_config(
            config,
            InMemoryConnectedCalendarRegistry([make_connection()]),
            http_client=client,
            metrics=FakeMetrics(),
        )

        result = await helper.update_calendar_event(
            ACCOUNT, unified_google_event(title="Planning v2")
        )

        assert result.title == "Planning v2"
        data = client.post.await_args.kwargs["data"]
        assert (data["client_id"], data["client_secret"], data["refresh_token"]) == (
            "cfg-id",
            "cfg-secret",
            "rt-1",
        )
        list_params = client.request.await_args_list[1].kwargs["params"]
        assert list_params["timeMax"] == "2026-03-02T11:30:00Z"

    async def test_missing_app_credentials_fail_update(self):
        helper = CalendarBackendHelper.from_config(
            parse_config({"calbridge": {}}),
            InMemoryConnectedCalendarRegistry([make_connection()]),
            http_client=MagicMock(spec=httpx.AsyncClient),
            metrics=FakeMetrics(),
        )
        with pytest.raises(ProviderUpdateFailedError) as exc_info:
            await helper.update_calendar_event(ACCOUNT, unified_google_event())
        assert isinstance(exc_info.value.__cause__, CalendarCredentialError)

    def test_credentials_require_default_factory(self):
        with pytest.raises(TypeError):
            CalendarBackendHelper(
                InMemoryConnectedCalendarRegistry(),
                integration_factory=lambda *args: FakeIntegration(),
                credentials={},
            )
