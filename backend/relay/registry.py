"""
Connection registry and broadcaster.

Responsibilities:
- Track accepted relay connections (no duplicates, no known-closed entries)
- Feed every inbound chunk to the window accumulator
- Fan each chunk out, unmodified, to the other tracked connections
- Treat a send to a non-open peer as an implicit close

Non-responsibilities:
- No backpressure: a slow listener never delays any other peer or the
  accumulator. Its bounded outbox overflows and new chunks are dropped
  for that listener only (best-effort delivery)
- No archival logic (the accumulator is the only hand-off)

Sender policy:
    By default a chunk is NOT echoed back to the connection that sent it.
    echo_to_sender=True broadcasts to every tracked connection, source
    included, and relies on the client to ignore its own echo.

Concurrency:
    All mutation happens on the event loop thread. Broadcast iterates a
    snapshot of the tracked set, so removals during a broadcast never
    skip or double-visit a peer. Broadcast only enqueues; one sender task
    per connection does the socket I/O, preserving per-peer order.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from observability.logger import log_event, now_ms
from relay.connection import SEND_ERRORS, RelayConnection


class ChunkSink(Protocol):
    """Anything that accepts raw chunks (the window accumulator in practice)."""

    def append(self, chunk: bytes) -> None: ...


class ConnectionRegistry:
    """
    Owns the tracked connection set.

    A dict is used as an insertion-ordered set so broadcast order is stable.
    """

    def __init__(self, sink: ChunkSink, *, echo_to_sender: bool = False) -> None:
        self._sink = sink
        self._echo_to_sender = echo_to_sender
        self._connections: dict[RelayConnection, None] = {}
        self._senders: dict[RelayConnection, asyncio.Task[None]] = {}
        self._stopping: set[asyncio.Task[None]] = set()
        self._lagging: set[RelayConnection] = set()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def register(self, connection: RelayConnection) -> None:
        """Track a newly accepted connection. Idempotent."""
        if connection in self._connections:
            return

        self._connections[connection] = None

        log_event({
            "ts_ms": now_ms(),
            "event_type": "RELAY_CONNECTED",
            "connection_id": connection.connection_id,
            "connections": len(self._connections),
        })

    def on_close(self, connection: RelayConnection, reason: str = "client_disconnect") -> None:
        """Remove a connection that reported closure. Idempotent."""
        self._drop(connection, reason=reason)

    def connections(self) -> tuple[RelayConnection, ...]:
        """Snapshot of tracked connections, in registration order."""
        return tuple(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return connection in self._connections

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    async def on_chunk(self, source: RelayConnection, chunk: bytes) -> int:
        """
        Accumulate `chunk`, then queue it for every target connection.

        Returns:
            Number of connections the chunk was queued for.

        Never waits on peer I/O; delivery happens in per-connection
        sender tasks. Non-open peers are removed.
        """
        self._sink.append(chunk)

        queued = 0
        for conn in self.connections():
            if conn is source and not self._echo_to_sender:
                continue
            if not conn.is_open:
                self._drop(conn, reason="not_open")
                continue

            self._ensure_sender(conn)
            if conn.offer(chunk):
                self._lagging.discard(conn)
                queued += 1
            elif conn not in self._lagging:
                self._lagging.add(conn)
                log_event({
                    "ts_ms": now_ms(),
                    "event_type": "RELAY_CHUNK_DROPPED",
                    "connection_id": conn.connection_id,
                    "reason": "outbox_full",
                    "dropped_total": conn.dropped,
                })

        return queued

    async def close(self) -> None:
        """Stop every sender task. Queued chunks are discarded."""
        for conn in list(self._senders):
            self._cancel_sender(conn)
        if self._stopping:
            await asyncio.gather(*self._stopping, return_exceptions=True)
            self._stopping.clear()

    # ------------------------------------------------------------------
    # Sender tasks
    # ------------------------------------------------------------------

    def _ensure_sender(self, conn: RelayConnection) -> None:
        task = self._senders.get(conn)
        if task is not None and not task.done():
            return
        self._senders[conn] = asyncio.create_task(self._deliver(conn))

    def _cancel_sender(self, conn: RelayConnection) -> None:
        """Idempotent: safe to call even if no sender exists."""
        task = self._senders.pop(conn, None)
        if task is not None and not task.done():
            task.cancel()
            self._stopping.add(task)
            task.add_done_callback(self._stopping.discard)

    async def _deliver(self, conn: RelayConnection) -> None:
        """Drain one connection's outbox in order until a send fails or the task is cancelled."""
        while True:
            chunk = await conn.next_chunk()
            if not conn.is_open:
                self._senders.pop(conn, None)
                self._drop(conn, reason="not_open")
                return

            try:
                await conn.send(chunk)
            except SEND_ERRORS as exc:
                log_event({
                    "ts_ms": now_ms(),
                    "event_type": "RELAY_SEND_FAILED",
                    "connection_id": conn.connection_id,
                    "exception": type(exc).__name__,
                    "message": str(exc),
                })
                self._senders.pop(conn, None)
                self._drop(conn, reason="send_failed")
                return

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _drop(self, conn: RelayConnection, *, reason: str) -> None:
        conn.mark_closed()
        self._cancel_sender(conn)
        self._lagging.discard(conn)
        if conn not in self._connections:
            return

        del self._connections[conn]
        log_event({
            "ts_ms": now_ms(),
            "event_type": "RELAY_DISCONNECTED",
            "connection_id": conn.connection_id,
            "reason": reason,
            "connections": len(self._connections),
        })
