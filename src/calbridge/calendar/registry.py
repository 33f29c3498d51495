"""Connected calendar registry and update-target resolution."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError

from calbridge.calendar.errors import CalendarNotFoundOrDisabledError
from calbridge.calendar.models import CalendarEntry, ConnectedCalendar, UnifiedEvent

logger = logging.getLogger(__name__)

CONNECTED_CALENDARS_TABLE = "connected_calendars"


class ConnectedCalendarRegistry(Protocol):
    """Read-only lookup of an account's calendar connections."""

    async def get_connected_calendars(
        self,
        account_address: str,
        *,
        active_only: bool = False,
    ) -> list[ConnectedCalendar]:
        """Return the connections of *account_address*.

        With ``active_only`` set, connections disabled at the account level
        are excluded.
        """
        ...


class InMemoryConnectedCalendarRegistry:
    """Registry backed by a list of ``ConnectedCalendar`` records."""

    def __init__(self, connections: Sequence[ConnectedCalendar] = ()) -> None:
        self._connections: list[ConnectedCalendar] = list(connections)

    def add(self, connection: ConnectedCalendar) -> None:
        self._connections.append(connection)

    async def get_connected_calendars(
        self,
        account_address: str,
        *,
        active_only: bool = False,
    ) -> list[ConnectedCalendar]:
        address = account_address.strip().lower()
        return [
            connection.model_copy(deep=True)
            for connection in self._connections
            if connection.account_address.strip().lower() == address
            and (connection.active or not active_only)
        ]


def _normalize_json(value: Any, default: Any) -> Any:
    """Decode a JSON/JSONB column that asyncpg may hand back as text."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    if value is None:
        return default
    return value


class PostgresConnectedCalendarRegistry:
    """Registry reading the ``connected_calendars`` table through asyncpg.

    *pool* is anything exposing asyncpg's ``fetch`` coroutine: an
    ``asyncpg.Pool`` or a ``calbridge.db.Database``.
    """

    def __init__(self, pool: Any, *, table: str = CONNECTED_CALENDARS_TABLE) -> None:
        self._pool = pool
        self._table = table

    async def get_connected_calendars(
        self,
        account_address: str,
        *,
        active_only: bool = False,
    ) -> list[ConnectedCalendar]:
        query = f"""
            SELECT account_address, email, provider, payload, calendars, active
            FROM {self._table}
            WHERE lower(account_address) = lower($1)
        """
        if active_only:
            query += " AND active = TRUE"
        query += " ORDER BY provider, email"

        rows = await self._pool.fetch(query, account_address.strip())
        connections: list[ConnectedCalendar] = []
        for row in rows:
            record = dict(row)
            try:
                connections.append(
                    ConnectedCalendar(
                        account_address=record["account_address"],
                        email=record["email"],
                        provider=record["provider"],
                        payload=_normalize_json(record.get("payload"), {}),
                        calendars=_normalize_json(record.get("calendars"), []),
                        active=bool(record.get("active", True)),
                    )
                )
            except ValidationError as exc:
                logger.warning(
                    "Skipping malformed connected calendar row for provider=%s email=%s: %s",
                    record.get("provider"),
                    record.get("email"),
                    exc.errors()[0]["msg"] if exc.errors() else exc,
                )
        return connections


@dataclass(frozen=True)
class ResolvedCalendar:
    """The connection and calendar entry authoritative for an update."""

    connection: ConnectedCalendar
    entry: CalendarEntry


def find_enabled_calendar(
    connections: Sequence[ConnectedCalendar],
    event: UnifiedEvent,
) -> ResolvedCalendar | None:
    email = event.account_email.strip().lower()
    for connection in connections:
        if connection.provider != event.source or connection.email.strip().lower() != email:
            continue
        for entry in connection.calendars:
            if entry.calendar_id == event.calendar_id and entry.enabled:
                return ResolvedCalendar(connection=connection, entry=entry)
    return None


async def resolve_calendar(
    registry: ConnectedCalendarRegistry,
    account_address: str,
    event: UnifiedEvent,
) -> ResolvedCalendar:
    """Find the enabled calendar an update of *event* must go through.

    Runs against fresh registry state on every call. A missing connection, a
    missing calendar entry and a disabled entry all raise the same
    ``CalendarNotFoundOrDisabledError``.
    """
    connections = await registry.get_connected_calendars(account_address, active_only=True)
    resolved = find_enabled_calendar(connections, event)
    if resolved is None:
        logger.info(
            "No enabled %s calendar %s for %s (connections checked: %d)",
            event.source.value,
            event.calendar_id,
            event.account_email,
            len(connections),
        )
        raise CalendarNotFoundOrDisabledError(
            context={
                "provider": event.source.value,
                "calendar_id": event.calendar_id,
                "account_email": event.account_email,
            }
        )
    return resolved
