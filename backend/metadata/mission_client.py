"""
Mission metadata client.

Looks up the identifier of the most recently started mission. One
connection per call, always released before returning or raising.

The PyMySQL driver is blocking, so each lookup runs in a worker thread
and only suspends the calling archival task.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, Protocol

import pymysql

from constants import MISSION_DB_CONNECT_TIMEOUT_S, MISSION_QUERY
from observability.logger import log_event, now_ms

if TYPE_CHECKING:
    from config import AppConfig


class MissionLookupError(Exception):
    """The metadata store could not be queried (retryable)."""


class NoActiveMission(MissionLookupError):
    """The missions table has no rows. Asking again will not help."""
    retryable = False


class MissionSource(Protocol):
    async def current_mission_id(self) -> str: ...


class MissionClient:
    """
    Queries the metadata store once per archival cycle.

    `connect` returns a DB-API connection; injected so tests can pass a fake.
    """

    def __init__(self, connect: Callable[[], Any]) -> None:
        self._connect = connect

    @classmethod
    def from_config(cls, config: AppConfig) -> MissionClient:
        def connect() -> Any:
            return pymysql.connect(
                host=config.db_host,
                port=config.db_port,
                user=config.db_user,
                password=config.db_password,
                database=config.db_name,
                connect_timeout=MISSION_DB_CONNECT_TIMEOUT_S,
            )

        return cls(connect)

    async def current_mission_id(self) -> str:
        """
        Raises:
            NoActiveMission if the store has zero missions.
            MissionLookupError if the store is unreachable or the query fails.
        """
        return await asyncio.to_thread(self._query_latest)

    def _query_latest(self) -> str:
        try:
            connection = self._connect()
        except (pymysql.MySQLError, OSError) as exc:
            raise MissionLookupError(f"connect failed: {exc}") from exc

        try:
            with connection.cursor() as cursor:
                cursor.execute(MISSION_QUERY)
                row = cursor.fetchone()
        except (pymysql.MySQLError, OSError) as exc:
            raise MissionLookupError(f"query failed: {exc}") from exc
        finally:
            _close_quietly(connection)

        if row is None:
            raise NoActiveMission("no mission rows in metadata store")

        return str(row[0])


def _close_quietly(connection: Any) -> None:
    """Release a connection; a failing close never replaces the lookup result."""
    try:
        connection.close()
    except (pymysql.MySQLError, OSError) as exc:
        log_event({
            "ts_ms": now_ms(),
            "event_type": "MISSION_DB_CLOSE_FAILED",
            "exception": type(exc).__name__,
            "message": str(exc),
        })
