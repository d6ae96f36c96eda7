"""Runtime configuration for the continuation engine."""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_DB_PATH = ".tasker.db"


@dataclass(slots=True)
class EngineSettings:
    """Store and propagation settings."""

    sqlite_busy_timeout_ms: int = 5_000
    propagation_depth_cap: int = 10
    dispatch_scan_limit: int = 20
    resume_grace_seconds: float = 30.0


@dataclass(slots=True)
class LivenessSettings:
    """Event-trigger throttle and polling fallback settings."""

    trigger_enabled: bool = True
    trigger_min_interval_seconds: float = 1.0
    poll_interval_seconds: float = 3.0
    poll_max_consecutive_empty: int = 5
    poll_pause_seconds: float = 10.0


@dataclass(slots=True)
class ServiceSettings:
    """Wrapped service proxy settings."""

    base_url: str = "http://127.0.0.1:54321"
    auth_token: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class WorkerSettings:
    """Worker identity and watchdog thresholds."""

    worker_id: str = field(default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}")
    stale_frame_seconds: int = 900
    stale_lock_seconds: int = 900
    log_level: str = "INFO"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    engine: EngineSettings = field(default_factory=EngineSettings)
    liveness: LivenessSettings = field(default_factory=LivenessSettings)
    services: ServiceSettings = field(default_factory=ServiceSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        worker_defaults = WorkerSettings()
        return cls(
            db_path=db_path or Path(os.getenv("TASKER_DB_PATH", DEFAULT_DB_PATH)),
            engine=EngineSettings(
                sqlite_busy_timeout_ms=_env_int("TASKER_SQLITE_BUSY_TIMEOUT_MS", 5_000),
                propagation_depth_cap=_env_int("TASKER_PROPAGATION_DEPTH_CAP", 10),
                dispatch_scan_limit=_env_int("TASKER_DISPATCH_SCAN_LIMIT", 20),
                resume_grace_seconds=_env_float("TASKER_RESUME_GRACE_SECONDS", 30.0),
            ),
            liveness=LivenessSettings(
                trigger_enabled=_env_bool("TASKER_TRIGGER_ENABLED", True),
                trigger_min_interval_seconds=_env_float(
                    "TASKER_TRIGGER_MIN_INTERVAL_SECONDS",
                    1.0,
                ),
                poll_interval_seconds=_env_float("TASKER_POLL_INTERVAL_SECONDS", 3.0),
                poll_max_consecutive_empty=_env_int("TASKER_POLL_MAX_CONSECUTIVE_EMPTY", 5),
                poll_pause_seconds=_env_float("TASKER_POLL_PAUSE_SECONDS", 10.0),
            ),
            services=ServiceSettings(
                base_url=os.getenv("TASKER_SERVICES_BASE_URL", "http://127.0.0.1:54321").strip(),
                auth_token=os.getenv("TASKER_SERVICES_AUTH_TOKEN") or None,
                timeout_seconds=_env_float("TASKER_SERVICES_TIMEOUT_SECONDS", 30.0),
                max_retries=_env_int("TASKER_SERVICES_MAX_RETRIES", 3),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("TASKER_WORKER_ID", "").strip() or worker_defaults.worker_id,
                stale_frame_seconds=_env_int("TASKER_STALE_FRAME_SECONDS", 900),
                stale_lock_seconds=_env_int("TASKER_STALE_LOCK_SECONDS", 900),
                log_level=os.getenv("TASKER_LOG_LEVEL", "INFO").strip().upper(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.engine.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.engine.propagation_depth_cap <= 0:
            raise ValueError("TASKER_PROPAGATION_DEPTH_CAP must be > 0.")
        if self.engine.dispatch_scan_limit <= 0:
            raise ValueError("TASKER_DISPATCH_SCAN_LIMIT must be > 0.")
        if self.engine.resume_grace_seconds < 0:
            raise ValueError("TASKER_RESUME_GRACE_SECONDS must be >= 0.")
        if self.liveness.trigger_min_interval_seconds < 0:
            raise ValueError("TASKER_TRIGGER_MIN_INTERVAL_SECONDS must be >= 0.")
        if self.liveness.poll_interval_seconds <= 0:
            raise ValueError("TASKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.liveness.poll_max_consecutive_empty <= 0:
            raise ValueError("TASKER_POLL_MAX_CONSECUTIVE_EMPTY must be > 0.")
        if self.liveness.poll_pause_seconds < 0:
            raise ValueError("TASKER_POLL_PAUSE_SECONDS must be >= 0.")
        parsed = urlparse(self.services.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid TASKER_SERVICES_BASE_URL: "
                f"{self.services.base_url!r}. Expected an absolute http:// or https:// URL.",
            )
        if self.services.timeout_seconds <= 0:
            raise ValueError("TASKER_SERVICES_TIMEOUT_SECONDS must be > 0.")
        if self.services.max_retries < 0:
            raise ValueError("TASKER_SERVICES_MAX_RETRIES must be >= 0.")
        if not self.worker.worker_id:
            raise ValueError("TASKER_WORKER_ID must not be empty.")
        if self.worker.stale_frame_seconds <= 0:
            raise ValueError("TASKER_STALE_FRAME_SECONDS must be > 0.")
        if self.worker.stale_lock_seconds <= 0:
            raise ValueError("TASKER_STALE_LOCK_SECONDS must be > 0.")
        if not isinstance(logging.getLevelName(self.worker.log_level), int):
            raise ValueError(f"Invalid TASKER_LOG_LEVEL: {self.worker.log_level!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
