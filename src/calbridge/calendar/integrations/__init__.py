"""Provider integration clients and the connection-keyed factory."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import httpx

from calbridge.calendar.errors import UnsupportedProviderError
from calbridge.calendar.integrations.base import CalendarIntegration
from calbridge.calendar.integrations.caldav import CalDavCalendarIntegration
from calbridge.calendar.integrations.google import GoogleCalendarIntegration
from calbridge.calendar.integrations.oauth import OAuthAppCredentials
from calbridge.calendar.integrations.office365 import Office365CalendarIntegration
from calbridge.calendar.integrations.webcal import WebcalCalendarIntegration
from calbridge.calendar.models import CalendarProviderKind

ProviderAppCredentials = Mapping[CalendarProviderKind, OAuthAppCredentials]
_Builder = Callable[..., CalendarIntegration]


def _build_google(
    account_address: str,
    email: str,
    payload: Mapping[str, Any],
    provider: CalendarProviderKind,
    credentials: ProviderAppCredentials,
    http_client: httpx.AsyncClient | None,
) -> CalendarIntegration:
    return GoogleCalendarIntegration(
        account_address=account_address,
        email=email,
        payload=payload,
        app_credentials=credentials.get(provider),
        http_client=http_client,
    )


def _build_office365(
    account_address: str,
    email: str,
    payload: Mapping[str, Any],
    provider: CalendarProviderKind,
    credentials: ProviderAppCredentials,
    http_client: httpx.AsyncClient | None,
) -> CalendarIntegration:
    return Office365CalendarIntegration(
        account_address=account_address,
        email=email,
        payload=payload,
        app_credentials=credentials.get(provider),
        http_client=http_client,
    )


def _build_caldav(
    account_address: str,
    email: str,
    payload: Mapping[str, Any],
    provider: CalendarProviderKind,
    credentials: ProviderAppCredentials,
    http_client: httpx.AsyncClient | None,
) -> CalendarIntegration:
    return CalDavCalendarIntegration(
        account_address=account_address,
        email=email,
        payload=payload,
        provider=provider,
    )


def _build_webcal(
    account_address: str,
    email: str,
    payload: Mapping[str, Any],
    provider: CalendarProviderKind,
    credentials: ProviderAppCredentials,
    http_client: httpx.AsyncClient | None,
) -> CalendarIntegration:
    return WebcalCalendarIntegration(
        account_address=account_address,
        email=email,
        payload=payload,
        http_client=http_client,
    )


# Every CalendarProviderKind must appear here; ``None`` marks providers that
# have no external calendar behind them.
_BUILDERS: dict[CalendarProviderKind, _Builder | None] = {
    CalendarProviderKind.GOOGLE: _build_google,
    CalendarProviderKind.OFFICE: _build_office365,
    CalendarProviderKind.WEBDAV: _build_caldav,
    CalendarProviderKind.ICLOUD: _build_caldav,
    CalendarProviderKind.WEBCAL: _build_webcal,
    CalendarProviderKind.MWW: None,
}


def get_connected_calendar_integration(
    account_address: str,
    email: str,
    provider: CalendarProviderKind | str,
    payload: Mapping[str, Any] | None,
    *,
    credentials: ProviderAppCredentials | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> CalendarIntegration:
    """Build the integration client for one connected calendar.

    Args:
        account_address: Owning account.
        email: Provider account identity of the connection.
        provider: Provider tag of the connection.
        payload: The connection's stored auth payload.
        credentials: OAuth app credentials per provider, for token refresh.
        http_client: Shared client; when omitted each integration owns one.

    Raises:
        UnsupportedProviderError: For internal or unknown providers.
        CalendarCredentialError: When *payload* lacks what the provider needs.
    """
    try:
        kind = CalendarProviderKind(provider)
    except ValueError as exc:
        raise UnsupportedProviderError(f"Unknown calendar provider: {provider!r}") from exc
    builder = _BUILDERS[kind]
    if builder is None:
        raise UnsupportedProviderError(
            f"Calendar provider {kind.value!r} has no external integration"
        )
    return builder(account_address, email, payload or {}, kind, credentials or {}, http_client)


__all__ = [
    "CalDavCalendarIntegration",
    "CalendarIntegration",
    "GoogleCalendarIntegration",
    "OAuthAppCredentials",
    "Office365CalendarIntegration",
    "ProviderAppCredentials",
    "WebcalCalendarIntegration",
    "get_connected_calendar_integration",
]
