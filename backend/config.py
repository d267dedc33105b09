"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object
- Fail at startup when required values are absent

Non-responsibilities:
- No relay or archival logic
- No behavioural constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from constants import (
    ARCHIVE_BUCKET_DEFAULT,
    ARCHIVE_TIMEZONE_DEFAULT,
    ARCHIVE_WINDOW_S,
    HTTP_PORT_DEFAULT,
    MISSION_DB_PORT_DEFAULT,
    RELAY_ECHO_TO_SENDER_DEFAULT,
    RELAY_WS_PORT_DEFAULT,
)


REQUIRED_ENV_VARS: tuple[str, ...] = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_REGION",
    "RDS_HOST",
    "RDS_USERNAME",
    "RDS_PASSWORD",
    "RDS_DB_NAME",
)

DEFAULT_STATIC_DIR = Path(__file__).resolve().parent / "static"


class ConfigError(RuntimeError):
    """Raised when the process environment cannot produce a valid AppConfig."""


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the component builders in server.app.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    host: str
    ws_port: int
    http_port: int

    # ------------------------------------------------------------------
    # Blob store (S3)
    # ------------------------------------------------------------------

    aws_access_key_id: str
    aws_secret_access_key: str
    aws_region: str
    archive_bucket: str

    # ------------------------------------------------------------------
    # Metadata store (MySQL)
    # ------------------------------------------------------------------

    db_host: str
    db_port: int
    db_user: str
    db_password: str
    db_name: str

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    archive_window_s: float
    archive_timezone: str
    archive_work_dir: Path
    ffmpeg_bin: str

    # ------------------------------------------------------------------
    # Relay / HTTP surface
    # ------------------------------------------------------------------

    relay_echo_to_sender: bool
    static_dir: Path

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env(environ: Mapping[str, str] | None = None) -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ConfigError if required variables are missing or a numeric
            variable cannot be parsed.
        """
        env = os.environ if environ is None else environ

        missing = [name for name in REQUIRED_ENV_VARS if not env.get(name)]
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        return AppConfig(
            env=env.get("ENV", "dev"),
            host=env.get("HOST", "0.0.0.0"),
            ws_port=_int(env, "WS_PORT", RELAY_WS_PORT_DEFAULT),
            http_port=_int(env, "HTTP_PORT", HTTP_PORT_DEFAULT),

            aws_access_key_id=env["AWS_ACCESS_KEY_ID"],
            aws_secret_access_key=env["AWS_SECRET_ACCESS_KEY"],
            aws_region=env["AWS_REGION"],
            archive_bucket=env.get("ARCHIVE_BUCKET", ARCHIVE_BUCKET_DEFAULT),

            db_host=env["RDS_HOST"],
            db_port=_int(env, "RDS_PORT", MISSION_DB_PORT_DEFAULT),
            db_user=env["RDS_USERNAME"],
            db_password=env["RDS_PASSWORD"],
            db_name=env["RDS_DB_NAME"],

            archive_window_s=_float(env, "ARCHIVE_WINDOW_S", ARCHIVE_WINDOW_S),
            archive_timezone=env.get("ARCHIVE_TIMEZONE", ARCHIVE_TIMEZONE_DEFAULT),
            archive_work_dir=Path(
                env.get("ARCHIVE_WORK_DIR") or tempfile.gettempdir()
            ),
            ffmpeg_bin=env.get("FFMPEG_BIN", "ffmpeg"),

            relay_echo_to_sender=_bool(
                env, "RELAY_ECHO_SENDER", RELAY_ECHO_TO_SENDER_DEFAULT
            ),
            static_dir=Path(env.get("STATIC_DIR") or DEFAULT_STATIC_DIR),
        )


# ------------------------------------------------------------------
# Parsing helpers
# ------------------------------------------------------------------

def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got {raw!r}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw == "1"
