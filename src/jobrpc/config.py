"""Runtime configuration for the RPC job queue, daemon, and caller."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class DaemonSettings:
    """Worker daemon settings."""

    secret: str | None = None
    max_concurrent: int = 20
    poll_interval_seconds: float = 2.0
    stale_after_seconds: int = 300
    sweep_interval_seconds: float = 60.0
    error_backoff_seconds: float = 5.0
    worker_id: str = field(default_factory=lambda: _default_worker_id())
    verbose: bool = False


@dataclass(slots=True)
class CallerSettings:
    """Defaults applied to call_remote when options are not passed explicitly."""

    secret: str | None = None
    timeout_seconds: float = 55.0
    poll_interval_seconds: float = 0.5
    cache_ttl_seconds: int = 3_600


@dataclass(slots=True)
class HandlerSettings:
    """Handler registry settings."""

    root: str = "handlers"
    modules: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path(".jobrpc.db")
    sqlite_busy_timeout_ms: int = 5_000
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    caller: CallerSettings = field(default_factory=CallerSettings)
    handlers: HandlerSettings = field(default_factory=HandlerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        secret = os.getenv("JOBRPC_SECRET") or None
        return cls(
            db_path=db_path or Path(os.getenv("JOBRPC_DB_PATH", ".jobrpc.db")),
            sqlite_busy_timeout_ms=int(os.getenv("JOBRPC_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            daemon=DaemonSettings(
                secret=secret,
                max_concurrent=int(os.getenv("JOBRPC_MAX_CONCURRENT", "20")),
                poll_interval_seconds=float(os.getenv("JOBRPC_POLL_INTERVAL_SECONDS", "2.0")),
                stale_after_seconds=int(os.getenv("JOBRPC_STALE_AFTER_SECONDS", "300")),
                sweep_interval_seconds=float(os.getenv("JOBRPC_SWEEP_INTERVAL_SECONDS", "60")),
                error_backoff_seconds=float(os.getenv("JOBRPC_ERROR_BACKOFF_SECONDS", "5.0")),
                worker_id=os.getenv("JOBRPC_WORKER_ID", "").strip() or _default_worker_id(),
                verbose=_env_bool("JOBRPC_VERBOSE", default=False),
            ),
            caller=CallerSettings(
                secret=secret,
                timeout_seconds=float(os.getenv("JOBRPC_CALL_TIMEOUT_SECONDS", "55")),
                poll_interval_seconds=float(
                    os.getenv("JOBRPC_CALL_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                cache_ttl_seconds=int(os.getenv("JOBRPC_CALL_CACHE_TTL_SECONDS", "3600")),
            ),
            handlers=HandlerSettings(
                root=os.getenv("JOBRPC_HANDLER_ROOT", "handlers").strip() or "handlers",
                modules=_collect_handler_modules(),
            ),
        )

    def validate_for_daemon(self) -> None:
        """Raise configuration error if daemon settings cannot run a poll loop."""

        if self.daemon.max_concurrent <= 0:
            raise ValueError("JOBRPC_MAX_CONCURRENT must be a positive integer.")
        if self.daemon.poll_interval_seconds <= 0:
            raise ValueError("JOBRPC_POLL_INTERVAL_SECONDS must be > 0.")
        if self.daemon.stale_after_seconds <= 0:
            raise ValueError("JOBRPC_STALE_AFTER_SECONDS must be > 0.")
        if self.daemon.sweep_interval_seconds <= 0:
            raise ValueError("JOBRPC_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.daemon.error_backoff_seconds < 0:
            raise ValueError("JOBRPC_ERROR_BACKOFF_SECONDS must be >= 0.")

    def validate_for_caller(self) -> None:
        """Raise configuration error if caller defaults are unusable."""

        if self.caller.timeout_seconds <= 0:
            raise ValueError("JOBRPC_CALL_TIMEOUT_SECONDS must be > 0.")
        if self.caller.poll_interval_seconds <= 0:
            raise ValueError("JOBRPC_CALL_POLL_INTERVAL_SECONDS must be > 0.")
        if self.caller.cache_ttl_seconds <= 0:
            raise ValueError("JOBRPC_CALL_CACHE_TTL_SECONDS must be > 0.")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _collect_handler_modules() -> tuple[str, ...]:
    raw = os.getenv("JOBRPC_HANDLER_MODULES", "").strip()
    if not raw:
        return ()
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)


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
