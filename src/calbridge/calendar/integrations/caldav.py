"""CalDAV integration client (generic WebDAV servers and iCloud).

``caldav`` is a blocking library, so every server round trip runs in a
worker thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

import caldav
from caldav.lib import error as dav_error
from icalendar import Calendar

from calbridge.calendar.errors import CalendarCredentialError, CalendarRequestError
from calbridge.calendar.integrations.base import CalendarIntegration
from calbridge.calendar.integrations.ics import apply_native_to_vevent, parse_ical_events, vevent_to_native
from calbridge.calendar.models import CalendarProviderKind, CalendarUpdateRequest

logger = logging.getLogger(__name__)

ICLOUD_CALDAV_URL = "https://caldav.icloud.com"
GETETAG_PROPERTY = "{DAV:}getetag"


def _dav_status_code(exc: dav_error.DAVError) -> int:
    if isinstance(exc, dav_error.NotFoundError):
        return 404
    if isinstance(exc, dav_error.AuthorizationError):
        return 401
    return 502


def _object_etag(obj: Any) -> str | None:
    props = getattr(obj, "props", None)
    if isinstance(props, Mapping):
        etag = props.get(GETETAG_PROPERTY)
        if isinstance(etag, str) and etag.strip():
            return etag.strip()
    return None


def _object_data(obj: Any) -> str | bytes:
    data = obj.data
    if data is None:
        raise CalendarRequestError(
            status_code=502,
            message="CalDAV server returned an empty calendar object",
            provider="CalDAV",
        )
    return data


def _find_master_vevent(calendar: Calendar, uid: str) -> Any:
    candidates = [
        component
        for component in calendar.walk("VEVENT")
        if str(component.get("UID", "")).strip() == uid
    ]
    for component in candidates:
        if component.get("RECURRENCE-ID") is None:
            return component
    if candidates:
        return candidates[0]
    raise CalendarRequestError(
        status_code=404,
        message=f"Calendar object has no VEVENT with UID {uid}",
        provider="CalDAV",
    )


class CalDavCalendarIntegration(CalendarIntegration):
    """CalDAV client for one account; ``calendar_id`` is the calendar collection URL."""

    def __init__(
        self,
        *,
        account_address: str,
        email: str,
        payload: Mapping[str, Any],
        provider: CalendarProviderKind = CalendarProviderKind.WEBDAV,
        client_factory: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__(account_address=account_address, email=email)
        self.provider = provider
        url = payload.get("url") or (ICLOUD_CALDAV_URL if provider == CalendarProviderKind.ICLOUD else None)
        username = payload.get("username") or email
        password = payload.get("password")
        if not isinstance(url, str) or not url.strip():
            raise CalendarCredentialError("CalDAV connection payload is missing the server url")
        if not isinstance(password, str) or not password:
            raise CalendarCredentialError("CalDAV connection payload is missing the password")
        self._url = url.strip()
        self._username = str(username)
        self._password = password
        self._client_factory = client_factory or caldav.DAVClient
        self._client: Any | None = None

    def _dav_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory(
                url=self._url,
                username=self._username,
                password=self._password,
            )
        return self._client

    def _calendar(self, calendar_id: str) -> Any:
        return self._dav_client().calendar(url=calendar_id)

    def _update_event_sync(
        self,
        source_event_id: str,
        native: Mapping[str, Any],
        calendar_id: str,
    ) -> dict[str, Any]:
        logger.debug("Updating CalDAV object %s in %s", source_event_id, calendar_id)
        obj = self._calendar(calendar_id).event_by_uid(source_event_id)
        calendar = Calendar.from_ical(_object_data(obj))
        component = _find_master_vevent(calendar, source_event_id)
        apply_native_to_vevent(component, native)
        obj.data = calendar.to_ical()
        obj.save()
        prodid = calendar.get("PRODID")
        return vevent_to_native(
            component,
            url=str(obj.url),
            etag=_object_etag(obj),
            prodid=str(prodid) if prodid is not None else None,
        )

    def _get_events_sync(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        objects = self._calendar(calendar_id).search(
            start=start_at,
            end=end_at,
            event=True,
            expand=False,
        )
        events: list[dict[str, Any]] = []
        for obj in objects:
            events.extend(
                parse_ical_events(_object_data(obj), url=str(obj.url), etag=_object_etag(obj))
            )
        return events

    async def update_event(
        self,
        source_event_id: str,
        request: CalendarUpdateRequest,
        *,
        calendar_id: str,
    ) -> dict[str, Any]:
        native = {key: value for key, value in request.event.items() if key not in ("uid", "etag")}
        try:
            return await asyncio.to_thread(
                self._update_event_sync, source_event_id, native, calendar_id
            )
        except dav_error.DAVError as exc:
            raise CalendarRequestError(
                status_code=_dav_status_code(exc),
                message=str(exc),
                provider="CalDAV",
            ) from exc

    async def get_events(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._get_events_sync, calendar_id, start_at, end_at)
        except dav_error.DAVError as exc:
            raise CalendarRequestError(
                status_code=_dav_status_code(exc),
                message=str(exc),
                provider="CalDAV",
            ) from exc

    async def aclose(self) -> None:
        client, self._client = self._client, None
        close = getattr(client, "close", None)
        if callable(close):
            await asyncio.to_thread(close)
