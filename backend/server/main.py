"""
Process entry point.

Runs the relay app and the web app on their own ports inside one event
loop, so both share the same registry and accumulator. When either
server exits, the other is asked to exit too; the relay lifespan then
archives the last partial window.
"""

from __future__ import annotations

import asyncio

import uvicorn
from dotenv import load_dotenv

from config import AppConfig
from observability.logger import log_event, now_ms
from server.app import build_runtime, create_relay_app, create_web_app


async def serve(config: AppConfig) -> None:
    runtime = build_runtime(config)

    servers = [
        uvicorn.Server(uvicorn.Config(
            create_relay_app(runtime),
            host=config.host,
            port=config.ws_port,
            log_level="info",
        )),
        uvicorn.Server(uvicorn.Config(
            create_web_app(config),
            host=config.host,
            port=config.http_port,
            log_level="info",
        )),
    ]

    log_event({
        "ts_ms": now_ms(),
        "event_type": "SERVER_STARTED",
        "env": config.env,
        "ws_port": config.ws_port,
        "http_port": config.http_port,
        "archive_window_s": config.archive_window_s,
    })

    tasks = [asyncio.create_task(server.serve()) for server in servers]
    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

    for server in servers:
        server.should_exit = True

    await asyncio.gather(*tasks, return_exceptions=True)

    for task in done:
        exc = task.exception()
        if exc is not None:
            raise exc


def main() -> None:
    load_dotenv()
    config = AppConfig.load_from_env()
    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
