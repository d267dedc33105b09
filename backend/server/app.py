"""
FastAPI app factories.

Responsibilities:
- Build the relay component graph once per process
- Create the relay app (WebSocket fan-out, owns the window scheduler)
- Create the web app (listener page + static assets)

The two apps are served on separate ports (see server.main).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from fastapi import FastAPI

from archive.accumulator import WindowAccumulator
from archive.pipeline import ArchivePipeline
from archive.publisher import ArchiveKeyFactory, ArchivePublisher, BlobStore, S3BlobStore
from archive.scheduler import WindowScheduler
from archive.transcoder import FfmpegTranscoder, Transcoder
from config import AppConfig
from metadata.mission_client import MissionClient, MissionSource
from relay.registry import ConnectionRegistry

from server.routes import register_relay_routes, register_web_routes


@dataclass(frozen=True)
class RelayRuntime:
    """Process-wide relay state, shared by every connection."""
    accumulator: WindowAccumulator
    registry: ConnectionRegistry
    pipeline: ArchivePipeline
    scheduler: WindowScheduler


def build_runtime(
    config: AppConfig,
    *,
    missions: MissionSource | None = None,
    transcoder: Transcoder | None = None,
    store: BlobStore | None = None,
) -> RelayRuntime:
    """
    Wire accumulator, registry and archival pipeline.

    Collaborators default to the production adapters built from `config`;
    tests pass fakes.
    """
    accumulator = WindowAccumulator()
    registry = ConnectionRegistry(
        accumulator,
        echo_to_sender=config.relay_echo_to_sender,
    )

    publisher = ArchivePublisher(
        store=store if store is not None else S3BlobStore.from_config(config),
        keys=ArchiveKeyFactory(config.archive_timezone),
    )
    pipeline = ArchivePipeline(
        missions=missions if missions is not None else MissionClient.from_config(config),
        transcoder=(
            transcoder
            if transcoder is not None
            else FfmpegTranscoder(ffmpeg_bin=config.ffmpeg_bin)
        ),
        publisher=publisher,
        work_dir=config.archive_work_dir,
    )
    scheduler = WindowScheduler(
        accumulator,
        pipeline,
        period_s=config.archive_window_s,
    )

    return RelayRuntime(
        accumulator=accumulator,
        registry=registry,
        pipeline=pipeline,
        scheduler=scheduler,
    )


def create_relay_app(runtime: RelayRuntime) -> FastAPI:
    """
    Relay app: one WebSocket endpoint.

    The lifespan owns the scheduler: started on startup, flushed and
    awaited on shutdown so the last partial window is archived. Relay
    sender tasks are stopped after the flush.
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        runtime.scheduler.start()
        try:
            yield
        finally:
            await runtime.scheduler.stop(flush=True)
            await runtime.registry.close()

    app = FastAPI(title="Audio Relay", lifespan=lifespan)
    app.state.runtime = runtime

    register_relay_routes(app)

    return app


def create_web_app(config: AppConfig) -> FastAPI:
    """Web app: listener page and static assets. No API routes."""
    app = FastAPI(title="Audio Relay Listener", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config = config

    register_web_routes(app, static_dir=config.static_dir)

    return app
