"""Unit tests for the CalDAV and read-only webcal integration clients."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from caldav.lib import error as dav_error

from calbridge.calendar.errors import (
    CalendarCredentialError,
    CalendarIntegrationError,
    CalendarIntegrationReadOnlyError,
    CalendarRequestError,
)
from calbridge.calendar.integrations.caldav import ICLOUD_CALDAV_URL, CalDavCalendarIntegration
from calbridge.calendar.integrations.webcal import WebcalCalendarIntegration, normalize_feed_url
from calbridge.calendar.models import CalendarProviderKind, CalendarUpdateRequest
from tests.conftest import ACCOUNT, SAMPLE_ICS

pytestmark = pytest.mark.unit

CALENDAR_URL = "https://dav.example.com/calendars/ada/work/"
START = datetime(2026, 3, 1, tzinfo=UTC)
END = datetime(2026, 3, 8, tzinfo=UTC)


class FakeDavObject:
    def __init__(self, data: str, url: str, etag: str | None = '"etag-1"') -> None:
        self.data = data
        self.url = url
        self.props = {"{DAV:}getetag": etag} if etag else {}
        self.saved = 0

    def save(self) -> None:
        self.saved += 1


class FakeDavCalendar:
    def __init__(self, objects: list[FakeDavObject], error: Exception | None = None) -> None:
        self.objects = objects
        self.error = error
        self.searches: list[dict] = []

    def event_by_uid(self, uid: str) -> FakeDavObject:
        if self.error is not None:
            raise self.error
        return self.objects[0]

    def search(self, **kwargs) -> list[FakeDavObject]:
        if self.error is not None:
            raise self.error
        self.searches.append(kwargs)
        return self.objects


class FakeDavClient:
    def __init__(self, calendar: FakeDavCalendar, **kwargs) -> None:
        self.calendar_obj = calendar
        self.kwargs = kwargs
        self.calendar_urls: list[str] = []
        self.closed = False

    def calendar(self, url: str) -> FakeDavCalendar:
        self.calendar_urls.append(url)
        return self.calendar_obj

    def close(self) -> None:
        self.closed = True


def _caldav(calendar: FakeDavCalendar, payload: dict | None = None, **kwargs):
    clients: list[FakeDavClient] = []

    def factory(**client_kwargs):
        client = FakeDavClient(calendar, **client_kwargs)
        clients.append(client)
        return client

    integration = CalDavCalendarIntegration(
        account_address=ACCOUNT,
        email="ada@example.com",
        payload=payload or {"url": "https://dav.example.com/", "password": "s3cret"},
        client_factory=factory,
        **kwargs,
    )
    return integration, clients


def _update_request(event: dict) -> CalendarUpdateRequest:
    return CalendarUpdateRequest(
        source_event_id="standup-1@example.com",
        calendar_id=CALENDAR_URL,
        provider=CalendarProviderKind.WEBDAV,
        title="Retro",
        description="",
        start=START,
        end=END,
        event=event,
    )


class TestCalDavIntegration:
    async def test_get_events_parses_objects(self):
        calendar = FakeDavCalendar([FakeDavObject(SAMPLE_ICS, f"{CALENDAR_URL}standup.ics")])
        integration, clients = _caldav(calendar)

        events = await integration.get_events(CALENDAR_URL, START, END)

        assert [e["uid"] for e in events] == ["standup-1@example.com", "offsite-2@example.com"]
        assert events[0]["etag"] == '"etag-1"'
        assert events[0]["url"] == f"{CALENDAR_URL}standup.ics"
        assert calendar.searches == [{"start": START, "end": END, "event": True, "expand": False}]
        assert clients[0].kwargs == {
            "url": "https://dav.example.com/",
            "username": "ada@example.com",
            "password": "s3cret",
        }
        assert clients[0].calendar_urls == [CALENDAR_URL]

    async def test_update_applies_patch_and_saves(self):
        obj = FakeDavObject(SAMPLE_ICS, f"{CALENDAR_URL}standup.ics")
        integration, _ = _caldav(FakeDavCalendar([obj]))

        native = await integration.update_event(
            "standup-1@example.com",
            _update_request(
                {"uid": "standup-1@example.com", "etag": '"stale"', "summary": "Retro"}
            ),
            calendar_id=CALENDAR_URL,
        )

        assert obj.saved == 1
        assert b"SUMMARY:Retro" in obj.data
        assert native["summary"] == "Retro"
        assert native["sequence"] == 4
        assert native["location"] == "Kitchen"
        assert native["etag"] == '"etag-1"'

    async def test_not_found_maps_to_404(self):
        calendar = FakeDavCalendar([], error=dav_error.NotFoundError("gone"))
        integration, _ = _caldav(calendar)
        with pytest.raises(CalendarRequestError) as exc_info:
            await integration.update_event(
                "standup-1@example.com", _update_request({}), calendar_id=CALENDAR_URL
            )
        assert exc_info.value.status_code == 404
        assert isinstance(exc_info.value.__cause__, dav_error.NotFoundError)

    async def test_authorization_error_maps_to_401(self):
        calendar = FakeDavCalendar([], error=dav_error.AuthorizationError("denied"))
        integration, _ = _caldav(calendar)
        with pytest.raises(CalendarRequestError) as exc_info:
            await integration.get_events(CALENDAR_URL, START, END)
        assert exc_info.value.status_code == 401

    async def test_aclose_closes_client(self):
        integration, clients = _caldav(FakeDavCalendar([FakeDavObject(SAMPLE_ICS, CALENDAR_URL)]))
        await integration.get_events(CALENDAR_URL, START, END)
        await integration.aclose()
        assert clients[0].closed is True

    def test_icloud_defaults_server_url(self):
        clients_seen: list[dict] = []
        integration = CalDavCalendarIntegration(
            account_address=ACCOUNT,
            email="ada@icloud.com",
            payload={"password": "app-specific"},
            provider=CalendarProviderKind.ICLOUD,
            client_factory=lambda **kwargs: clients_seen.append(kwargs),
        )
        integration._dav_client()
        assert clients_seen[0]["url"] == ICLOUD_CALDAV_URL
        assert integration.provider == CalendarProviderKind.ICLOUD

    @pytest.mark.parametrize(
        "payload",
        [{"password": "x"}, {"url": "https://dav.example.com/"}],
        ids=["no-url", "no-password"],
    )
    def test_missing_credentials(self, payload):
        with pytest.raises(CalendarCredentialError):
            CalDavCalendarIntegration(account_address=ACCOUNT, email="ada@example.com", payload=payload)


def _feed_client(response: httpx.Response | Exception) -> MagicMock:
    client = MagicMock(spec=httpx.AsyncClient)
    if isinstance(response, Exception):
        client.get = AsyncMock(side_effect=response)
    else:
        client.get = AsyncMock(return_value=response)
    client.aclose = AsyncMock()
    return client


def _webcal(client: MagicMock, url: str = "webcal://feeds.example.com/team.ics"):
    return WebcalCalendarIntegration(
        account_address=ACCOUNT,
        email="ada@example.com",
        payload={"url": url},
        http_client=client,
    )


class TestWebcalIntegration:
    def test_normalize_feed_url(self):
        assert normalize_feed_url(" webcal://x.example.com/a.ics ") == "https://x.example.com/a.ics"
        assert normalize_feed_url("https://x.example.com/a.ics") == "https://x.example.com/a.ics"

    async def test_events_filtered_to_window(self):
        request = httpx.Request("GET", "https://feeds.example.com/team.ics")
        client = _feed_client(httpx.Response(200, text=SAMPLE_ICS, request=request))

        events = await _webcal(client).get_events("ignored", START, END)

        assert [e["uid"] for e in events] == ["standup-1@example.com"]
        client.get.assert_awaited_once_with("https://feeds.example.com/team.ics")

    async def test_all_day_event_in_window(self):
        request = httpx.Request("GET", "https://feeds.example.com/team.ics")
        client = _feed_client(httpx.Response(200, text=SAMPLE_ICS, request=request))
        events = await _webcal(client).get_events(
            "ignored",
            datetime(2026, 4, 10, 12, tzinfo=UTC),
            datetime(2026, 4, 10, 13, tzinfo=UTC),
        )
        assert "offsite-2@example.com" in [e["uid"] for e in events]

    async def test_update_is_read_only(self):
        integration = _webcal(_feed_client(httpx.Response(200)))
        with pytest.raises(CalendarIntegrationReadOnlyError):
            await integration.update_event("x", MagicMock(), calendar_id="ignored")

    async def test_http_error_status(self):
        request = httpx.Request("GET", "https://feeds.example.com/team.ics")
        client = _feed_client(httpx.Response(410, text="Gone", request=request))
        with pytest.raises(CalendarRequestError) as exc_info:
            await _webcal(client).get_events("ignored", START, END)
        assert exc_info.value.status_code == 410

    async def test_transport_error(self):
        client = _feed_client(httpx.ConnectError("refused"))
        with pytest.raises(CalendarIntegrationError, match="Webcal feed request failed"):
            await _webcal(client).get_events("ignored", START, END)

    def test_missing_url(self):
        with pytest.raises(CalendarCredentialError):
            WebcalCalendarIntegration(account_address=ACCOUNT, email="a@example.com", payload={})
