"""
BEHAVIOURAL CONSTANTS
---------------------
Single source of truth for the relay and archival invariants.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- Deployment-specific values (ports, credentials, bucket) live in config.py.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono @ 11.025kHz, agreed out-of-band with the producer)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 11_025
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit, little-endian)
AUDIO_FFMPEG_INPUT_FORMAT: Final[str] = "s16le"

# =============================================================================
# Windowing
# =============================================================================

ARCHIVE_WINDOW_S: Final[float] = 20.0

# =============================================================================
# Transcoding
# =============================================================================

TRANSCODE_GAIN_DB: Final[int] = 10
ARCHIVE_EXTENSION: Final[str] = "mp3"
RAW_EXTENSION: Final[str] = "raw"

# =============================================================================
# Archive objects
# =============================================================================

ARCHIVE_CONTENT_TYPE: Final[str] = "audio/mp3"
ARCHIVE_BUCKET_DEFAULT: Final[str] = "dronesense-audio-bucket"
# POSIX sign convention: Etc/GMT-3 is UTC+3
ARCHIVE_TIMEZONE_DEFAULT: Final[str] = "Etc/GMT-3"
# DD-MM-YYYY_HH:mm:ss
ARCHIVE_KEY_TIME_FORMAT: Final[str] = "%d-%m-%Y_%H:%M:%S"
ARCHIVE_KEY_PREFIX: Final[str] = "audio_"

# =============================================================================
# Metadata store
# =============================================================================

MISSION_QUERY: Final[str] = (
    "SELECT mission_id FROM missions ORDER BY start_date DESC LIMIT 1"
)
MISSION_DB_PORT_DEFAULT: Final[int] = 3306
MISSION_DB_CONNECT_TIMEOUT_S: Final[int] = 10

# =============================================================================
# Retry policy (per archival cycle)
# =============================================================================
# Worst case adds well under one window to a cycle.

METADATA_RETRY_DELAYS_MS: Final[Tuple[int, ...]] = (250, 1000)
UPLOAD_RETRY_DELAYS_MS: Final[Tuple[int, ...]] = (500, 2000)

# =============================================================================
# Relay
# =============================================================================

RELAY_ECHO_TO_SENDER_DEFAULT: Final[bool] = False
# Per-listener outbox. A listener this far behind loses new chunks until it
# catches up; roughly a few seconds of audio at typical producer chunk sizes.
RELAY_OUTBOX_MAX_CHUNKS: Final[int] = 32
RELAY_WS_PORT_DEFAULT: Final[int] = 443
HTTP_PORT_DEFAULT: Final[int] = 8000
