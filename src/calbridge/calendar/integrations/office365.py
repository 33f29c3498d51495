"""Microsoft Graph (Office365 / Outlook) calendar integration client."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
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
from calbridge.calendar.models import CalendarProviderKind, CalendarUpdateRequest

logger = logging.getLogger(__name__)

MICROSOFT_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
MICROSOFT_CALENDAR_SCOPE = "offline_access Calendars.ReadWrite"
# Ask Graph to render every dateTime in UTC.
GRAPH_UTC_PREFER_HEADER = 'outlook.timezone="UTC"'
GRAPH_PAGE_SIZE = 100
GRAPH_MAX_LIST_PAGES = 20


def _graph_datetime(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class Office365CalendarIntegration(CalendarIntegration):
    provider = CalendarProviderKind.OFFICE

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
            token_url=MICROSOFT_OAUTH_TOKEN_URL,
            provider="Microsoft Graph",
            scope=MICROSOFT_CALENDAR_SCOPE,
        )
        self._api = BearerJsonClient(
            oauth,
            self._http_client,
            base_url=MICROSOFT_GRAPH_BASE_URL,
            provider="Microsoft Graph",
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
        return await self._api.request_json(
            "PATCH",
            f"/me/calendars/{quote(calendar_id, safe='')}/events/{quote(normalized_event_id, safe='')}",
            json_body=body,
            extra_headers={"Prefer": GRAPH_UTC_PREFER_HEADER},
        )

    async def get_events(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        path: str = f"/me/calendars/{quote(calendar_id, safe='')}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": _graph_datetime(start_at),
            "endDateTime": _graph_datetime(end_at),
            "$top": GRAPH_PAGE_SIZE,
        }

        events: list[dict[str, Any]] = []
        for _ in range(GRAPH_MAX_LIST_PAGES):
            payload = await self._api.request_json(
                "GET",
                path,
                params=params,
                extra_headers={"Prefer": GRAPH_UTC_PREFER_HEADER},
            )
            items = payload.get("value")
            if not isinstance(items, list):
                raise CalendarIntegrationError(
                    "Microsoft Graph calendarView response missing value array"
                )
            events.extend(item for item in items if isinstance(item, dict))

            # nextLink already carries every query parameter.
            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                break
            path, params = next_link, None
        else:
            logger.warning(
                "Microsoft Graph calendarView for %s exceeded %d pages; result truncated",
                calendar_id,
                GRAPH_MAX_LIST_PAGES,
            )
        return events

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
