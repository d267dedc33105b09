"""
Archive publisher.

Uploads one encoded window to the blob store under a deterministic key,
then removes the local intermediate files.

Key format:
    <missionId>/audio_<DD-MM-YYYY_HH:mm:ss>.mp3

The timestamp is rendered in a fixed timezone at second precision. Two
keys issued within the same second get a numeric disambiguator
(`audio_<ts>_1.mp3`, `audio_<ts>_2.mp3`, ...) so back-to-back cycles never
overwrite each other.

On upload failure the encoded file is kept on disk for the operator and
UploadError is raised; nothing is re-queued.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol
from zoneinfo import ZoneInfo

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from archive.retry import Stage, with_retries
from constants import (
    ARCHIVE_CONTENT_TYPE,
    ARCHIVE_EXTENSION,
    ARCHIVE_KEY_PREFIX,
    ARCHIVE_KEY_TIME_FORMAT,
    ARCHIVE_TIMEZONE_DEFAULT,
)
from observability.logger import log_event, now_ms
from observability.metrics import timed

if TYPE_CHECKING:
    from config import AppConfig


class UploadError(Exception):
    """The blob store did not acknowledge the object."""


# ------------------------------------------------------------------
# Blob store
# ------------------------------------------------------------------

class BlobStore(Protocol):
    async def put_object(self, key: str, body: bytes, content_type: str) -> None: ...


class S3BlobStore:
    """
    S3 bucket behind the BlobStore interface.

    boto3 is blocking; each put runs in a worker thread.
    """

    def __init__(self, *, bucket: str, client: Any) -> None:
        self._bucket = bucket
        self._client = client

    @property
    def bucket(self) -> str:
        return self._bucket

    @classmethod
    def from_config(cls, config: AppConfig) -> S3BlobStore:
        client = boto3.client(
            "s3",
            aws_access_key_id=config.aws_access_key_id,
            aws_secret_access_key=config.aws_secret_access_key,
            region_name=config.aws_region,
        )
        return cls(bucket=config.archive_bucket, client=client)

    async def put_object(self, key: str, body: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"{type(exc).__name__}: {exc}") from exc


# ------------------------------------------------------------------
# Keys
# ------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_archive_key(mission_id: str, when: datetime, *, suffix: int = 0) -> str:
    """Render `<mission>/audio_<DD-MM-YYYY_HH:mm:ss>[_<suffix>].mp3`."""
    stamp = when.strftime(ARCHIVE_KEY_TIME_FORMAT)
    tail = f"_{suffix}" if suffix else ""
    return f"{mission_id}/{ARCHIVE_KEY_PREFIX}{stamp}{tail}.{ARCHIVE_EXTENSION}"


class ArchiveKeyFactory:
    """
    Issues archive keys in a fixed timezone.

    Only the most recently issued (mission, second) pair is remembered;
    a wall clock stepping backwards past an older key is not detected.
    """

    def __init__(
        self,
        tz: str | tzinfo = ARCHIVE_TIMEZONE_DEFAULT,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._tz = ZoneInfo(tz) if isinstance(tz, str) else tz
        self._clock = clock
        self._last_base: str | None = None
        self._repeat = 0

    def next_key(self, mission_id: str) -> str:
        when = self._clock().astimezone(self._tz)
        base = format_archive_key(mission_id, when)

        if base == self._last_base:
            self._repeat += 1
        else:
            self._last_base = base
            self._repeat = 0

        return format_archive_key(mission_id, when, suffix=self._repeat)


# ------------------------------------------------------------------
# Publisher
# ------------------------------------------------------------------

class ArchivePublisher:
    """Upload + local cleanup for one encoded window."""

    def __init__(
        self,
        *,
        store: BlobStore,
        keys: ArchiveKeyFactory,
        content_type: str = ARCHIVE_CONTENT_TYPE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._keys = keys
        self._content_type = content_type
        self._sleep = sleep

    async def publish(
        self,
        encoded_path: Path,
        mission_id: str,
        *,
        raw_path: Path | None = None,
        window_id: int | None = None,
    ) -> str:
        """
        Upload `encoded_path` for `mission_id`.

        Returns:
            The object key on success.

        Raises:
            UploadError once retries are exhausted. The encoded file is
            retained in that case.
        """
        body = await asyncio.to_thread(encoded_path.read_bytes)
        key = self._keys.next_key(mission_id)

        try:
            with timed(
                "archive_upload",
                window_id=window_id,
                details={"key": key, "bytes": len(body)},
            ):
                await with_retries(
                    Stage.UPLOAD,
                    lambda: self._store.put_object(key, body, self._content_type),
                    retry_on=(UploadError,),
                    window_id=window_id,
                    sleep=self._sleep,
                )
        except UploadError as exc:
            log_event({
                "ts_ms": now_ms(),
                "event_type": "ARCHIVE_UPLOAD_FAILED",
                "window_id": window_id,
                "key": key,
                "retained_path": str(encoded_path),
                "message": str(exc),
            })
            raise

        encoded_path.unlink(missing_ok=True)
        if raw_path is not None:
            raw_path.unlink(missing_ok=True)

        log_event({
            "ts_ms": now_ms(),
            "event_type": "ARCHIVE_UPLOADED",
            "window_id": window_id,
            "mission_id": mission_id,
            "key": key,
            "bytes": len(body),
        })

        return key
