"""
Transcoder adapter (ffmpeg).

Converts one window of raw PCM into a compressed archive file.

Role in the system:
- Receives a raw s16le file path and a target output path.
- Runs one ffmpeg process per call, with a fixed gain adjustment.
- Reports the outcome as a TranscodeResult; never raises for a failed
  process, so callers branch on `ok` instead of catching.

Architectural constraints:
- No retries here (see archive.retry).
- No cleanup of the input file (the pipeline owns it).
- A failed run removes any partial output it left behind.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from constants import (
    AUDIO_CHANNELS,
    AUDIO_FFMPEG_INPUT_FORMAT,
    AUDIO_SAMPLE_RATE_HZ,
    TRANSCODE_GAIN_DB,
)


@dataclass(frozen=True)
class TranscodeResult:
    """
    Outcome of one transcoder invocation.

    returncode is None when the process could not be started at all.
    """
    ok: bool
    output_path: Path
    returncode: int | None = None
    stderr: str = ""


class Transcoder(Protocol):
    async def transcode(self, raw_path: Path, output_path: Path) -> TranscodeResult: ...


class FfmpegTranscoder:
    """Runs the external ffmpeg binary as an asyncio subprocess."""

    def __init__(
        self,
        *,
        ffmpeg_bin: str = "ffmpeg",
        sample_rate_hz: int = AUDIO_SAMPLE_RATE_HZ,
        channels: int = AUDIO_CHANNELS,
        gain_db: int = TRANSCODE_GAIN_DB,
    ) -> None:
        self._ffmpeg_bin = ffmpeg_bin
        self._sample_rate_hz = sample_rate_hz
        self._channels = channels
        self._gain_db = gain_db

    def build_command(self, raw_path: Path, output_path: Path) -> list[str]:
        return [
            self._ffmpeg_bin,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-f", AUDIO_FFMPEG_INPUT_FORMAT,
            "-ar", str(self._sample_rate_hz),
            "-ac", str(self._channels),
            "-i", str(raw_path),
            "-filter:a", f"volume={self._gain_db}dB",
            str(output_path),
        ]

    async def transcode(self, raw_path: Path, output_path: Path) -> TranscodeResult:
        cmd = self.build_command(raw_path, output_path)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return TranscodeResult(
                ok=False,
                output_path=output_path,
                stderr=f"{type(exc).__name__}: {exc}",
            )

        _, stderr_raw = await proc.communicate()
        stderr = stderr_raw.decode("utf-8", errors="replace").strip()

        if proc.returncode != 0 or not output_path.exists():
            output_path.unlink(missing_ok=True)
            return TranscodeResult(
                ok=False,
                output_path=output_path,
                returncode=proc.returncode,
                stderr=stderr,
            )

        return TranscodeResult(
            ok=True,
            output_path=output_path,
            returncode=proc.returncode,
            stderr=stderr,
        )
