"""
Stage timing for the archival cycle.

`timed()` wraps one stage (transcode, upload) and emits exactly one
METRIC_TIMER event when the block exits, success or failure.

Durations come from the monotonic clock; ts_ms stays wall-clock so the
event lines up with the rest of the log.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from observability.logger import log_event, now_ms


def _elapsed_ms(start_ns: int) -> int:
    return (time.monotonic_ns() - start_ns) // 1_000_000


@contextmanager
def timed(
    name: str,
    *,
    window_id: int | None = None,
    details: dict[str, Any] | None = None,
) -> Iterator[None]:
    """
    Usage:
        with timed("transcode", window_id=window.window_id):
            result = await transcoder.transcode(raw_path, output_path)

    Exceptions raised inside the block propagate after the metric is emitted.
    """
    start_ns = time.monotonic_ns()
    try:
        yield
    finally:
        log_event({
            "ts_ms": now_ms(),
            "event_type": "METRIC_TIMER",
            "metric": name,
            "value_ms": _elapsed_ms(start_ns),
            "window_id": window_id,
            "details": details or {},
        })
