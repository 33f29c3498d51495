"""Read-only iCal feed (webcal://) integration client."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any

import httpx

from calbridge.calendar.errors import (
    CalendarCredentialError,
    CalendarIntegrationError,
    CalendarIntegrationReadOnlyError,
    CalendarRequestError,
)
from calbridge.calendar.integrations.base import CalendarIntegration
from calbridge.calendar.integrations.ics import parse_ical_events
from calbridge.calendar.integrations.oauth import DEFAULT_HTTP_TIMEOUT_SECONDS, safe_error_message
from calbridge.calendar.models import CalendarProviderKind, CalendarUpdateRequest

logger = logging.getLogger(__name__)

WEBCAL_SCHEME = "webcal://"


def normalize_feed_url(url: str) -> str:
    """Rewrite ``webcal://`` to ``https://``; other schemes pass through."""
    stripped = url.strip()
    if stripped.lower().startswith(WEBCAL_SCHEME):
        return f"https://{stripped[len(WEBCAL_SCHEME):]}"
    return stripped


def _as_utc(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def _overlaps(native: Mapping[str, Any], start_at: datetime, end_at: datetime) -> bool:
    start = native.get("start")
    if not isinstance(start, date):
        return False
    event_start = _as_utc(start)
    end = native.get("end")
    if isinstance(end, date):
        event_end = _as_utc(end)
    else:
        event_end = event_start + (timedelta(days=1) if not isinstance(start, datetime) else timedelta())
    if native.get("rrule"):
        # Series are kept whenever they start before the window closes.
        return event_start < end_at
    return event_start < end_at and event_end > start_at


class WebcalCalendarIntegration(CalendarIntegration):
    """Subscribed iCal feed. ``calendar_id`` is ignored in favour of the feed URL."""

    provider = CalendarProviderKind.WEBCAL

    def __init__(
        self,
        *,
        account_address: str,
        email: str,
        payload: Mapping[str, Any],
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(account_address=account_address, email=email)
        url = payload.get("url")
        if not isinstance(url, str) or not url.strip():
            raise CalendarCredentialError("Webcal connection payload is missing the feed url")
        self._feed_url = normalize_feed_url(url)
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=DEFAULT_HTTP_TIMEOUT_SECONDS, follow_redirects=True
        )

    async def update_event(
        self,
        source_event_id: str,
        request: CalendarUpdateRequest,
        *,
        calendar_id: str,
    ) -> dict[str, Any]:
        raise CalendarIntegrationReadOnlyError(
            f"Webcal feed {self._feed_url} is read-only; event {source_event_id} cannot be updated"
        )

    async def get_events(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        try:
            response = await self._http_client.get(self._feed_url)
        except httpx.HTTPError as exc:
            raise CalendarIntegrationError(f"Webcal feed request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
                provider="Webcal",
            )

        try:
            events = parse_ical_events(response.content, url=self._feed_url)
        except ValueError as exc:
            raise CalendarIntegrationError(f"Webcal feed is not valid iCalendar: {exc}") from exc
        matching = [event for event in events if _overlaps(event, start_at, end_at)]
        logger.debug(
            "Webcal feed %s: %d of %d events inside window",
            self._feed_url,
            len(matching),
            len(events),
        )
        return matching

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
