"""Shared contract for provider integration clients."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any

from calbridge.calendar.models import CalendarProviderKind, CalendarUpdateRequest


class CalendarIntegration(abc.ABC):
    """Adapter for one connected (account, email, provider) integration.

    ``update_event`` and ``get_events`` speak the provider's native event
    shape (the dictionaries produced and consumed by the provider mapper).
    Transport retries belong here, never in the reconciler.
    """

    provider: CalendarProviderKind

    def __init__(self, *, account_address: str, email: str) -> None:
        self.account_address = account_address
        self._email = email

    def get_connected_email(self) -> str:
        """Return the provider account identity this client authenticates as."""
        return self._email

    @abc.abstractmethod
    async def update_event(
        self,
        source_event_id: str,
        request: CalendarUpdateRequest,
        *,
        calendar_id: str,
    ) -> dict[str, Any]:
        """Apply ``request.event`` to the provider copy of *source_event_id*.

        ``request.event`` is the native patch and already carries the
        attendee list in the provider's own shape. ``request.participants``
        is the provider-neutral form for integrations whose API takes
        participants separately; the Google, Graph and CalDAV clients do
        not read it.

        Returns the provider's native representation after the write.
        """
        ...

    @abc.abstractmethod
    async def get_events(
        self,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[dict[str, Any]]:
        """Return native events of *calendar_id* overlapping ``[start_at, end_at)``."""
        ...

    async def aclose(self) -> None:
        """Release transport resources owned by this client."""
        return None

    async def __aenter__(self) -> CalendarIntegration:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
