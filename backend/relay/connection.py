"""
Relay connection wrapper.

Connection liveness is tracked here, separately from the Starlette socket
state, so the registry can drop a peer the moment a send fails even if the
socket has not yet reported its own closure.

Liveness: OPEN | CLOSING | CLOSED

Each connection owns a small bounded outbox. The broadcaster only ever
enqueues; a per-connection sender task (owned by the registry) drains it.
A listener that stops reading therefore fills its own outbox and loses
new chunks, without holding up the producer or any other listener.

Drop rule:
- outbox full: drop the NEW chunk (already-queued audio stays in order)

Producers and listeners are not distinguished; any peer may send chunks.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from itertools import count

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from constants import RELAY_OUTBOX_MAX_CHUNKS


# Errors raised by a send on a peer that went away mid-broadcast.
# Starlette raises RuntimeError after a close frame; uvicorn raises
# ClientDisconnected (an OSError) when the transport is gone.
SEND_ERRORS: tuple[type[BaseException], ...] = (
    WebSocketDisconnect,
    RuntimeError,
    OSError,
)

_connection_ids = count(1)


class ConnectionState(Enum):
    """Relay-side liveness of one peer."""
    OPEN = "OPEN"
    CLOSING = "CLOSING"   # close observed, not yet removed
    CLOSED = "CLOSED"


class RelayConnection:
    """One accepted WebSocket peer."""

    def __init__(
        self,
        websocket: WebSocket,
        *,
        connection_id: str | None = None,
        outbox_size: int = RELAY_OUTBOX_MAX_CHUNKS,
    ) -> None:
        if outbox_size <= 0:
            raise ValueError("outbox_size must be > 0")

        self._ws = websocket
        self.connection_id = connection_id or f"conn_{next(_connection_ids)}"
        self.state = ConnectionState.OPEN

        self._outbox: asyncio.Queue[bytes] = asyncio.Queue(maxsize=outbox_size)
        self.dropped = 0

    @property
    def is_open(self) -> bool:
        """True only while both our state and the socket say CONNECTED."""
        if self.state is not ConnectionState.OPEN:
            return False
        return (
            self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    # -------------------------
    # Outbox
    # -------------------------

    def offer(self, chunk: bytes) -> bool:
        """
        Queue a chunk for delivery without waiting.

        Returns:
            True if queued
            False if dropped (outbox full)
        """
        try:
            self._outbox.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def next_chunk(self) -> bytes:
        """Wait for the oldest queued chunk."""
        return await self._outbox.get()

    def pending(self) -> int:
        return self._outbox.qsize()

    async def send(self, chunk: bytes) -> None:
        """Send one chunk verbatim. Raises one of SEND_ERRORS on transport failure."""
        await self._ws.send_bytes(chunk)

    # -------------------------
    # Liveness
    # -------------------------

    def mark_closing(self) -> None:
        if self.state is ConnectionState.OPEN:
            self.state = ConnectionState.CLOSING

    def mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED

    def __repr__(self) -> str:
        return f"RelayConnection({self.connection_id!r}, {self.state.value})"
