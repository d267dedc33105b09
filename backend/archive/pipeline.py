"""
Archival pipeline: one drained window -> one archived object.

Cycle:
    resolve mission -> write raw -> transcode -> publish -> clean up

Responsibilities:
- Resolve the mission identifier once per cycle (never cached)
- Give every cycle its own temp files so overlapping cycles never collide
- Remove the raw temp file on every exit path
- Report the outcome as a CycleReport; never raise into the scheduler

Non-responsibilities:
- Timing of cycles (archive.scheduler)
- Key naming and upload mechanics (archive.publisher)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Protocol
from uuid import uuid4

from archive.accumulator import DrainedWindow
from archive.publisher import UploadError
from archive.retry import Stage, with_retries
from archive.transcoder import Transcoder
from constants import ARCHIVE_EXTENSION, RAW_EXTENSION
from metadata.mission_client import MissionLookupError, MissionSource
from observability.logger import log_event, now_ms
from observability.metrics import timed


class CycleOutcome(str, Enum):
    EMPTY = "empty"
    ARCHIVED = "archived"
    METADATA_FAILED = "metadata_failed"
    TRANSCODE_FAILED = "transcode_failed"
    UPLOAD_FAILED = "upload_failed"
    ERROR = "error"


@dataclass(frozen=True)
class CycleReport:
    window_id: int
    outcome: CycleOutcome
    mission_id: str | None = None
    key: str | None = None
    error: str | None = None


class Publisher(Protocol):
    async def publish(
        self,
        encoded_path: Path,
        mission_id: str,
        *,
        raw_path: Path | None = None,
        window_id: int | None = None,
    ) -> str: ...


def _write_raw(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(payload)


class ArchivePipeline:
    """Runs archival cycles against injected collaborators."""

    def __init__(
        self,
        *,
        missions: MissionSource,
        transcoder: Transcoder,
        publisher: Publisher,
        work_dir: Path,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._missions = missions
        self._transcoder = transcoder
        self._publisher = publisher
        self._work_dir = work_dir
        self._sleep = sleep

    async def run_cycle(self, window: DrainedWindow) -> CycleReport:
        """Archive one drained window. Never raises (except on cancellation)."""
        if window.is_empty:
            return CycleReport(window_id=window.window_id, outcome=CycleOutcome.EMPTY)

        try:
            report = await self._archive(window)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            report = self._failed(window, CycleOutcome.ERROR, exc)

        if report.outcome is CycleOutcome.ARCHIVED:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "ARCHIVE_CYCLE_COMPLETE",
                "window_id": window.window_id,
                "mission_id": report.mission_id,
                "key": report.key,
            })
        return report

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _archive(self, window: DrainedWindow) -> CycleReport:
        try:
            mission_id = await with_retries(
                Stage.METADATA,
                self._missions.current_mission_id,
                retry_on=(MissionLookupError,),
                window_id=window.window_id,
                sleep=self._sleep,
            )
        except MissionLookupError as exc:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "MISSION_LOOKUP_FAILED",
                "window_id": window.window_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            return self._failed(window, CycleOutcome.METADATA_FAILED, exc)

        stem = f"audio_{window.window_id}_{uuid4().hex[:12]}"
        raw_path = self._work_dir / f"{stem}.{RAW_EXTENSION}"
        output_path = self._work_dir / f"{stem}.{ARCHIVE_EXTENSION}"

        try:
            await asyncio.to_thread(_write_raw, raw_path, window.payload())

            with timed(
                "transcode",
                window_id=window.window_id,
                details={"bytes": window.byte_count},
            ):
                result = await self._transcoder.transcode(raw_path, output_path)

            if not result.ok:
                output_path.unlink(missing_ok=True)
                log_event({
                    "ts_ms": now_ms(),
                    "event_type": "TRANSCODE_FAILED",
                    "window_id": window.window_id,
                    "returncode": result.returncode,
                    "stderr": result.stderr[-500:],
                })
                return CycleReport(
                    window_id=window.window_id,
                    outcome=CycleOutcome.TRANSCODE_FAILED,
                    mission_id=mission_id,
                    error=result.stderr or f"exit status {result.returncode}",
                )

            try:
                key = await self._publisher.publish(
                    output_path,
                    mission_id,
                    raw_path=raw_path,
                    window_id=window.window_id,
                )
            except UploadError as exc:
                return replace(
                    self._failed(window, CycleOutcome.UPLOAD_FAILED, exc),
                    mission_id=mission_id,
                )
        finally:
            raw_path.unlink(missing_ok=True)

        return CycleReport(
            window_id=window.window_id,
            outcome=CycleOutcome.ARCHIVED,
            mission_id=mission_id,
            key=key,
        )

    @staticmethod
    def _failed(
        window: DrainedWindow,
        outcome: CycleOutcome,
        exc: BaseException,
    ) -> CycleReport:
        log_event({
            "ts_ms": now_ms(),
            "event_type": "ARCHIVE_CYCLE_FAILED",
            "window_id": window.window_id,
            "outcome": outcome.value,
            "exception": type(exc).__name__,
            "message": str(exc),
        })
        return CycleReport(
            window_id=window.window_id,
            outcome=outcome,
            error=f"{type(exc).__name__}: {exc}",
        )
