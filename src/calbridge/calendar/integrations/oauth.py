"""OAuth refresh-token handling and bearer-authenticated JSON requests.

Shared by the Google Calendar and Microsoft Graph integrations. Connection
payloads hold the user's tokens; the OAuth application credentials
(``client_id`` / ``client_secret``) come from configuration.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calbridge.calendar.errors import (
    MAX_ERROR_MESSAGE_LENGTH,
    CalendarCredentialError,
    CalendarIntegrationError,
    CalendarRequestError,
    CalendarTokenRefreshError,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_EXPIRES_IN_SECONDS = 3600
# Access tokens are refreshed this long before their reported expiry.
TOKEN_EXPIRY_MARGIN_SECONDS = 60
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class OAuthAppCredentials:
    """OAuth application registration used for refresh-token exchange."""

    client_id: str
    client_secret: str


class OAuthCredentials(BaseModel):
    """Client credentials plus the connection's refresh token."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    access_token: str | None = None
    access_token_expires_at: datetime | None = None

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        app: OAuthAppCredentials | None = None,
    ) -> OAuthCredentials:
        """Build credentials from a connection payload.

        ``client_id``/``client_secret`` found in the payload (top level or
        nested under ``installed``/``web``) win over *app*.
        """
        credential_data = {
            "client_id": _extract_credential_value(payload, "client_id")
            or (app.client_id if app else None),
            "client_secret": _extract_credential_value(payload, "client_secret")
            or (app.client_secret if app else None),
            "refresh_token": _extract_credential_value(payload, "refresh_token"),
        }

        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            field_list = ", ".join(missing)
            raise CalendarCredentialError(
                f"Connection credentials are missing required field(s): {field_list}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            field_list = ", ".join(invalid)
            raise CalendarCredentialError(
                f"Connection credentials must contain non-empty string field(s): {field_list}"
            )

        access_token = payload.get("access_token")
        return cls(
            client_id=str(credential_data["client_id"]),
            client_secret=str(credential_data["client_secret"]),
            refresh_token=str(credential_data["refresh_token"]),
            access_token=access_token.strip()
            if isinstance(access_token, str) and access_token.strip()
            else None,
            access_token_expires_at=_coerce_expiry(payload),
        )


def _extract_credential_value(payload: Mapping[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, Mapping) and key in nested:
            return nested[key]
    return None


def _coerce_expiry(payload: Mapping[str, Any]) -> datetime | None:
    """Read a stored token expiry.

    Google client libraries store ``expiry_date`` in epoch milliseconds;
    other stores use ``expires_at`` as epoch seconds or ISO text.
    """
    expiry_ms = payload.get("expiry_date")
    if isinstance(expiry_ms, int | float) and not isinstance(expiry_ms, bool):
        return datetime.fromtimestamp(expiry_ms / 1000, tz=UTC)
    expires_at = payload.get("expires_at")
    if isinstance(expires_at, int | float) and not isinstance(expires_at, bool):
        return datetime.fromtimestamp(expires_at, tz=UTC)
    if isinstance(expires_at, str) and expires_at.strip():
        normalized = expires_at.strip()
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip()) or DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, whitespace-collapsed error message from an API response.

    Google and Microsoft Graph both wrap errors as ``{"error": {"message": ...}}``;
    OAuth token endpoints use ``{"error": "...", "error_description": "..."}``.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:MAX_ERROR_MESSAGE_LENGTH]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:MAX_ERROR_MESSAGE_LENGTH]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:MAX_ERROR_MESSAGE_LENGTH]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:MAX_ERROR_MESSAGE_LENGTH]
    return "Request failed without an error payload"


class OAuthTokenClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: OAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        token_url: str,
        provider: str,
        scope: str | None = None,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token_url = token_url
        self._provider = provider
        self._scope = scope
        self._access_token: str | None = credentials.access_token
        self._access_token_expires_at: datetime | None = None
        if credentials.access_token_expires_at is not None:
            self._access_token_expires_at = credentials.access_token_expires_at - timedelta(
                seconds=TOKEN_EXPIRY_MARGIN_SECONDS
            )
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        data = {
            "client_id": self._credentials.client_id,
            "client_secret": self._credentials.client_secret,
            "refresh_token": self._credentials.refresh_token,
            "grant_type": "refresh_token",
        }
        if self._scope:
            data["scope"] = self._scope
        try:
            response = await self._http_client.post(
                self._token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"{self._provider} OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                f"{self._provider} OAuth token refresh failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                f"{self._provider} OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                f"{self._provider} OAuth token response is missing a non-empty access_token"
            )

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        expires_in_seconds = _coerce_expires_in_seconds(expires_in_raw)
        refresh_ttl_seconds = max(expires_in_seconds - TOKEN_EXPIRY_MARGIN_SECONDS, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


class BearerJsonClient:
    """Authenticated JSON requests with 401 refresh and rate-limit retry."""

    def __init__(
        self,
        oauth: OAuthTokenClient,
        http_client: httpx.AsyncClient,
        *,
        base_url: str,
        provider: str,
    ) -> None:
        self._oauth = oauth
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._provider = provider

    def _url(self, path: str) -> str:
        if path.startswith(("https://", "http://")):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self._base_url}{normalized_path}"

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
                provider=self._provider,
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarIntegrationError(
                f"{self._provider} API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarIntegrationError(
                f"{self._provider} API returned an unexpected JSON payload shape"
            )
        return payload

    async def request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = self._url(path)

        response = await self._request_once(
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=True,
            )

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self._provider,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarIntegrationError(f"{self._provider} request failed: {exc}") from exc
