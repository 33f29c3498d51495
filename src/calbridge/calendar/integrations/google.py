"""Google Calendar API v3 integration client."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from calbridge.calendar.errors import CalendarIntegrationError
from calbridge.calendar.integrations.base import CalendarIntegration
from calbridge.calendar.integrations.oauth import (
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    BearerJsonClient,
    OAuthAppCredentials,
    OAuthCredentials,
    OAuthTokenClient,
)
from calbridge.calendar.mappers.base import rfc3339
from calbridge.calendar.models import CalendarProviderKind, CalendarUpdateRequest

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_LIST_PAGE_SIZE = 250
# Safety valve against a provider that keeps returning page tokens.
GOOGLE_MAX_LIST_PAGES = 20


class GoogleCalendarIntegration(CalendarIntegration):
    """Google provider with OAuth refresh-token and authenticated request helpers."""

    provider = CalendarProviderKind.GOOGLE

    def __init__(
        self,
        *,
        account_address: str,
        email: str,
        payload: Mapping[str, Any],
        app_credentials: OAuthAppCredentials | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(account_address=account_address, email=email)
        credentials = OAuthCredentials.from_payload(payload, app=app_credentials)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
        oauth = OAuthTokenClient(
            credentials,
            self._http_client,
            token_url=GOOGLE_OAUTH_TOKEN_URL,
            provider="Google Calendar",
        )
        self._api = BearerJsonClient(
            oauth,
            self._http_client,
            base_url=GOOGLE_CALENDAR_API_BASE_URL,
            provider="Google Calendar",
        )

    async def update_event(
        self,
        source_event_id: str,
        request: CalendarUpdateRequest,
        *,
        calendar_id: str,
    ) -> dict[str, Any]:
        normalized_event_id = source_event_id.strip()
        if not normalized_event_id:
            raise ValueError("source_event_id must be a non-empty string")

        body = {key: value for key, value in request.event.items() if key != "id"}
        logger.debug(
            "Patching Google event %s on calendar %s (%d attendees)",
            normalized_event_id,
            calendar_id,
            len(body.get("attendees", [])),
        )
        return await self._api.request_json(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(normalized_event_id, safe='')}",
            params={"sendUpdates": "all", "conferenceDataVersion": 1},
            json_body=body,
        )

    async def get_events(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": GOOGLE_LIST_PAGE_SIZE,
            "timeMin": rfc3339(start_at),
            "timeMax": rfc3339(end_at),
        }
        path = f"/calendars/{quote(calendar_id, safe='')}/events"

        events: list[dict[str, Any]] = []
        for _ in range(GOOGLE_MAX_LIST_PAGES):
            payload = await self._api.request_json("GET", path, params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise CalendarIntegrationError(
                    "Google Calendar events.list response missing items array"
                )
            events.extend(item for item in items if isinstance(item, dict))

            page_token = payload.get("nextPageToken")
            if not isinstance(page_token, str) or not page_token:
                break
            params = {**params, "pageToken": page_token}
        else:
            logger.warning(
                "Google Calendar events.list for %s exceeded %d pages; result truncated",
                calendar_id,
                GOOGLE_MAX_LIST_PAGES,
            )
        return events

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
