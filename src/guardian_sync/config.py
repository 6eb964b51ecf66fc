# src/guardian_sync/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object shared by the server and the headless client.
- No secrets required at import time (the JWT secret has a dev default).
- Intervals and retry bounds are tunable without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "GUARDIAN"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except Exception:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    server_db_path: Path
    client_db_path: Path

    # ---- HTTP server ----
    host: str
    port: int
    cors_origins: list[str]

    # ---- Auth boundary ----
    jwt_secret: str
    token_ttl_hours: int

    # ---- Notification channel ----
    heartbeat_interval_seconds: float
    reconnect_delay_seconds: float
    reconnect_max_attempts: int

    # ---- Reminder scheduler ----
    reminder_interval_seconds: float
    reminder_lookahead_minutes: int
    reminder_timezone: str

    # ---- Client sync ----
    server_url: str
    poll_interval_seconds: float
    reconnect_settle_seconds: float
    request_timeout_seconds: float

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "guardian-sync")
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/guardian"))
        server_db_path = _env_path(_k("SERVER_DB_PATH"), data_dir / "server.sqlite3")
        client_db_path = _env_path(_k("CLIENT_DB_PATH"), data_dir / "client.sqlite3")

        host = _env(_k("HOST"), "127.0.0.1")
        port = _env_int(_k("PORT"), 3001)
        cors_origins = _env_list(
            _k("CORS_ORIGINS"),
            ["http://localhost:5173", "http://127.0.0.1:5173"],
        )

        # Dev default only; set GUARDIAN_JWT_SECRET in any shared deployment.
        jwt_secret = _env(_k("JWT_SECRET"), "dev-secret-change-me")
        token_ttl_hours = _env_int(_k("TOKEN_TTL_HOURS"), 24)

        heartbeat_interval_seconds = _env_float(_k("HEARTBEAT_INTERVAL_SECONDS"), 30.0)
        reconnect_delay_seconds = _env_float(_k("RECONNECT_DELAY_SECONDS"), 3.0)
        reconnect_max_attempts = _env_int(_k("RECONNECT_MAX_ATTEMPTS"), 5)

        reminder_interval_seconds = _env_float(_k("REMINDER_INTERVAL_SECONDS"), 60.0)
        reminder_lookahead_minutes = _env_int(_k("REMINDER_LOOKAHEAD_MINUTES"), 30)
        reminder_timezone = _env(_k("REMINDER_TIMEZONE"), "UTC")

        server_url = _env(_k("SERVER_URL"), f"http://{host}:{port}").rstrip("/")
        poll_interval_seconds = _env_float(_k("POLL_INTERVAL_SECONDS"), 5.0)
        reconnect_settle_seconds = _env_float(_k("RECONNECT_SETTLE_SECONDS"), 1.0)
        request_timeout_seconds = _env_float(_k("REQUEST_TIMEOUT_SECONDS"), 10.0)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            server_db_path=server_db_path,
            client_db_path=client_db_path,
            host=host,
            port=port,
            cors_origins=cors_origins,
            jwt_secret=jwt_secret,
            token_ttl_hours=token_ttl_hours,
            heartbeat_interval_seconds=heartbeat_interval_seconds,
            reconnect_delay_seconds=reconnect_delay_seconds,
            reconnect_max_attempts=reconnect_max_attempts,
            reminder_interval_seconds=reminder_interval_seconds,
            reminder_lookahead_minutes=reminder_lookahead_minutes,
            reminder_timezone=reminder_timezone,
            server_url=server_url,
            poll_interval_seconds=poll_interval_seconds,
            reconnect_settle_seconds=reconnect_settle_seconds,
            request_timeout_seconds=request_timeout_seconds,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
