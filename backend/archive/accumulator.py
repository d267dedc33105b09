# backend/archive/accumulator.py
"""
Window accumulator.

- Exactly one current buffer at any instant
- append() and drain() are synchronous: no suspension point, so on a
  single event loop a drain can never interleave with an append
- drain() swaps in a fresh buffer in the same step it captures the old
  one: no chunk lost, no chunk counted twice
- Empty drains are returned as empty windows; the caller decides to skip

If this is ever driven from real OS threads, the swap in drain() and the
append must be guarded by one lock.
"""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class DrainedWindow:
    """
    The chunks collected between two drains.

    window_id:
        Monotonic window counter, starting at 1. Used for logging and
        temp-file naming only.

    chunks:
        Inbound chunks in arrival order, never mutated.

    started_at / drained_at:
        Wall-clock seconds bounding the window. Observability only.
    """
    window_id: int
    chunks: tuple[bytes, ...]
    started_at: float
    drained_at: float

    @property
    def is_empty(self) -> bool:
        return not self.chunks

    @property
    def byte_count(self) -> int:
        return sum(len(c) for c in self.chunks)

    def payload(self) -> bytes:
        """Concatenated raw PCM for the whole window."""
        return b"".join(self.chunks)


class WindowAccumulator:
    """Owns the in-flight window buffer."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._window_id = 1
        self._started_at = time.time()

    # -------------------------
    # Core operations
    # -------------------------

    def append(self, chunk: bytes) -> None:
        """Add one inbound chunk to the current window."""
        self._chunks.append(chunk)

    def drain(self) -> DrainedWindow:
        """
        Atomically capture the current window and start a new one.

        Returns the captured window (possibly empty).
        """
        chunks, self._chunks = self._chunks, []
        now = time.time()

        window = DrainedWindow(
            window_id=self._window_id,
            chunks=tuple(chunks),
            started_at=self._started_at,
            drained_at=now,
        )

        self._window_id += 1
        self._started_at = now
        return window

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._chunks)

    def is_empty(self) -> bool:
        return not self._chunks

    @property
    def current_window_id(self) -> int:
        return self._window_id

    def snapshot(self) -> dict[str, int]:
        """Lightweight snapshot for logging."""
        return {
            "window_id": self._window_id,
            "chunks": len(self._chunks),
            "bytes": sum(len(c) for c in self._chunks),
        }
