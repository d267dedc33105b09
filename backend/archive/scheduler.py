"""
Window scheduler.

A single background task drains the accumulator on a fixed period and
hands each non-empty window to the archival pipeline as its own task, so
a slow cycle (transcoder, upload) never delays the next tick or the
relay path.

stop(flush=True) archives whatever is left in the current window and
waits for in-flight cycles before returning.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from archive.accumulator import DrainedWindow, WindowAccumulator
from archive.pipeline import CycleReport
from observability.logger import log_event, now_ms


class CycleRunner(Protocol):
    async def run_cycle(self, window: DrainedWindow) -> CycleReport: ...


class WindowScheduler:
    def __init__(
        self,
        accumulator: WindowAccumulator,
        pipeline: CycleRunner,
        *,
        period_s: float,
    ) -> None:
        if period_s <= 0:
            raise ValueError("period_s must be > 0")

        self._accumulator = accumulator
        self._pipeline = pipeline
        self._period_s = period_s
        self._timer: asyncio.Task[None] | None = None
        self._cycles: set[asyncio.Task[CycleReport]] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def in_flight(self) -> int:
        return len(self._cycles)

    def start(self) -> None:
        """Start the periodic drain. Idempotent."""
        if self.running:
            return

        self._timer = asyncio.create_task(self._run())
        log_event({
            "ts_ms": now_ms(),
            "event_type": "SCHEDULER_STARTED",
            "period_s": self._period_s,
        })

    async def stop(self, *, flush: bool = True) -> None:
        """Cancel the timer, optionally archive the open window, await cycles."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass

        if flush:
            self.tick()

        pending = list(self._cycles)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        log_event({
            "ts_ms": now_ms(),
            "event_type": "SCHEDULER_STOPPED",
            "flushed": flush,
            "cycles_awaited": len(pending),
        })

    def tick(self) -> asyncio.Task[CycleReport] | None:
        """
        Drain once and dispatch the window.

        Returns the cycle task, or None for an empty window.
        Must be called on the running event loop.
        """
        window = self._accumulator.drain()

        if window.is_empty:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "WINDOW_EMPTY",
                "window_id": window.window_id,
            })
            return None

        log_event({
            "ts_ms": now_ms(),
            "event_type": "WINDOW_DRAINED",
            "window_id": window.window_id,
            "chunks": len(window.chunks),
            "bytes": window.byte_count,
        })

        task = asyncio.create_task(self._pipeline.run_cycle(window))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._period_s)
            self.tick()
