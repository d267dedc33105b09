"""
Route registration.

Relay app:
- WebSocket `/`: every peer may send binary chunks; each chunk is
  accumulated and fanned out to the other peers

Web app:
- GET /audio   -> listener page
- /image/*     -> static images
- /js/*        -> static scripts
"""

from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from observability.logger import log_event, now_ms
from relay.connection import RelayConnection
from relay.registry import ConnectionRegistry


LISTENER_PAGE = "audio_client.html"


def register_relay_routes(app: FastAPI) -> None:
    """Register the relay WebSocket endpoint on the relay app."""

    @app.websocket("/")
    async def relay_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        registry: ConnectionRegistry = app.state.runtime.registry
        connection = RelayConnection(ws)
        registry.register(connection)

        try:
            while True:
                msg = await ws.receive()

                if msg["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(code=msg.get("code", 1000))

                chunk = msg.get("bytes")
                if chunk is not None:
                    await registry.on_chunk(connection, chunk)
                elif msg.get("text") is not None:
                    log_event({
                        "ts_ms": now_ms(),
                        "event_type": "RELAY_TEXT_IGNORED",
                        "connection_id": connection.connection_id,
                        "payload_len": len(msg["text"]),
                    })

        except WebSocketDisconnect:
            registry.on_close(connection)

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "ts_ms": now_ms(),
                "event_type": "RELAY_FATAL_ERROR",
                "connection_id": connection.connection_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            registry.on_close(connection, reason="server_error")


def register_web_routes(app: FastAPI, *, static_dir: Path) -> None:
    """Register the listener page and static asset mounts on the web app."""
    page = static_dir / LISTENER_PAGE

    @app.get("/audio")
    async def listener_page() -> FileResponse: # pyright: ignore[reportUnusedFunction]
        return FileResponse(page, media_type="text/html")

    app.mount("/image", StaticFiles(directory=static_dir / "image"), name="image")
    app.mount("/js", StaticFiles(directory=static_dir / "js"), name="js")
