"""Bootstrap module for the harvesting subsystem.

Central responsibilities:
- Load and validate settings from environment (.env supported by the Settings class)
- Configure structured logging (structlog + optional rotating file handler)
- Expose Prometheus metric instruments (counters, histograms)
- Provide a shared context object for the service and API layers

Design notes:
- Idempotent initialization: bootstrap() builds the context once, force=True rebuilds it
- Session knobs declared here are only defaults; a running session works on an
  immutable SessionConfig derived from them (see harvester.models)
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import asyncio
import logging
from logging.handlers import RotatingFileHandler
import sys
import time

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from prometheus_client import Counter, Histogram, Gauge

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Application settings loaded from environment.

    Defaults are safe for local development (headless browser, local SQLite file).
    """

    app_name: str = Field("feed-harvester", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")  # ~2MB
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")
    quiet_startup: bool = Field(False, alias="QUIET_STARTUP")

    # Target feed
    feed_url: str = Field("https://www.xiaohongshu.com/explore", alias="FEED_URL")
    base_url: str = Field("https://www.xiaohongshu.com", alias="BASE_URL")

    # Browser
    playwright_headless: bool = Field(True, alias="PLAYWRIGHT_HEADLESS")
    playwright_mock_mode: bool = Field(False, alias="PLAYWRIGHT_MOCK_MODE")  # Synthetic feed (no real browser)
    navigation_timeout_ms: int = Field(30000, alias="NAVIGATION_TIMEOUT_MS")
    viewport_width: int = Field(1280, alias="VIEWPORT_WIDTH")
    viewport_height: int = Field(900, alias="VIEWPORT_HEIGHT")
    locale: str = Field("zh-CN", alias="LOCALE")
    storage_state: str = Field("storage_state.json", alias="STORAGE_STATE")

    # Session defaults (the 1-10 "speed" slider of the extension, 5 = neutral)
    scroll_speed: int = Field(5, alias="SCROLL_SPEED")
    scroll_interval_ms: int = Field(3000, alias="SCROLL_INTERVAL_MS")
    interval_jitter_ms: int = Field(1000, alias="INTERVAL_JITTER_MS")
    max_scrolls: int = Field(100, alias="MAX_SCROLLS")
    smart_stop: bool = Field(True, alias="SMART_STOP")
    collect_title: bool = Field(True, alias="COLLECT_TITLE")
    collect_author: bool = Field(True, alias="COLLECT_AUTHOR")
    collect_stats: bool = Field(True, alias="COLLECT_STATS")
    collect_images: bool = Field(True, alias="COLLECT_IMAGES")
    collect_time: bool = Field(True, alias="COLLECT_TIME")

    # Scroll / readiness tuning
    min_scroll_distance: int = Field(200, alias="MIN_SCROLL_DISTANCE")
    max_scroll_distance: int = Field(800, alias="MAX_SCROLL_DISTANCE")
    scroll_duration_min_ms: int = Field(800, alias="SCROLL_DURATION_MIN_MS")
    scroll_duration_max_ms: int = Field(2000, alias="SCROLL_DURATION_MAX_MS")
    readiness_settle_ms: int = Field(1000, alias="READINESS_SETTLE_MS")
    readiness_poll_ms: int = Field(500, alias="READINESS_POLL_MS")
    readiness_max_wait_ms: int = Field(5000, alias="READINESS_MAX_WAIT_MS")
    fault_backoff_ms: int = Field(5000, alias="FAULT_BACKOFF_MS")

    # Intelligent container detection
    detection_min_size_px: int = Field(100, alias="DETECTION_MIN_SIZE_PX")
    # Empty string disables the framework marker criterion
    framework_marker_prefix: str = Field("data-v-", alias="FRAMEWORK_MARKER_PREFIX")

    # Mock feed
    mock_batch_size: int = Field(12, alias="MOCK_BATCH_SIZE")
    mock_max_cards: int = Field(60, alias="MOCK_MAX_CARDS")

    # Storage & exports
    sqlite_path: str = Field("harvester.sqlite3", alias="SQLITE_PATH")
    export_dir: str = Field("exports", alias="EXPORT_DIR")

    # API
    app_host: str = Field("127.0.0.1", alias="APP_HOST")
    app_port: int = Field(8000, alias="APP_PORT")
    enable_metrics: bool = Field(True, alias="ENABLE_METRICS")

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:  # noqa: D401
        return (v or "INFO").strip().upper()

    @field_validator("scroll_speed")
    @classmethod
    def _check_speed(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError("SCROLL_SPEED must be between 1 and 10")
        return v

    @property
    def marker_prefix(self) -> Optional[str]:
        return self.framework_marker_prefix or None

    # Pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------

_SENSITIVE_KEYS = {"cookie", "cookies", "authorization", "token", "password", "storage_state"}


def redact_sensitive(logger, method_name, event_dict):  # noqa: D401
    """Shallow redaction of cookies/tokens that end up in the log context."""

    def _scrub(value):
        if isinstance(value, dict):
            out = {}
            for k, v in value.items():
                ks = str(k).lower()
                if ks in _SENSITIVE_KEYS or any(sk in ks for sk in ("token", "password", "cookie")):
                    out[k] = "[REDACTED]"
                else:
                    out[k] = _scrub(v)
            return out
        if isinstance(value, (list, tuple)):
            return [_scrub(v) for v in value]
        return value

    return _scrub(event_dict)


def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured JSON logging with structlog over the stdlib root logger."""
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(numeric_level)


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
HARVEST_SESSIONS_TOTAL = Counter(
    "harvest_sessions_total", "Collection sessions ended, by stop reason", labelnames=("reason",)
)
HARVEST_SCROLLS_TOTAL = Counter(
    "harvest_scrolls_total", "Completed scroll actions"
)
HARVEST_ROUNDS_TOTAL = Counter(
    "harvest_rounds_total", "Collection rounds by outcome", labelnames=("outcome",)
)
HARVEST_RECORDS_ACCEPTED = Counter(
    "harvest_records_accepted_total", "New unique records merged into the accumulated set"
)
HARVEST_EXTRACTION_FAULTS = Counter(
    "harvest_extraction_faults_total", "Containers skipped because field extraction failed"
)
HARVEST_READINESS_TIMEOUTS = Counter(
    "harvest_readiness_timeouts_total", "Readiness waits that ended without observing growth"
)
HARVEST_SCROLL_FAULTS = Counter(
    "harvest_scroll_faults_total", "Scroll actions that raised an error"
)
HARVEST_STORAGE_FAILURES = Counter(
    "harvest_storage_failures_total", "Repository writes that failed", labelnames=("operation",)
)
HARVEST_ROUND_DURATION = Histogram(
    "harvest_round_duration_seconds", "Duration of a scroll/wait/extract round in seconds"
)
HARVEST_ACCUMULATED_RECORDS = Gauge(
    "harvest_accumulated_records", "Current size of the accumulated record set"
)


# ------------------------------------------------------------
# Context dataclass
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger

    def has_saved_session(self) -> bool:
        try:
            path = Path(self.settings.storage_state)
            return path.exists() and path.stat().st_size > 4
        except OSError:
            return False


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


async def bootstrap(force: bool = False) -> AppContext:
    """Create (or return existing) application context.

    Args:
        force: Recreate the context even if already initialized (tests, settings reload).
    """
    global _context_singleton
    if _context_singleton and not force:
        return _context_singleton

    async with _context_lock:
        if _context_singleton and not force:
            return _context_singleton

        t0 = time.perf_counter()
        settings = Settings()  # Loads from env automatically
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")

        for d in (settings.export_dir, Path(settings.sqlite_path).parent):
            try:
                Path(d).mkdir(parents=True, exist_ok=True)
            except OSError as e:  # pragma: no cover
                logger.warning("directory_creation_failed", path=str(d), error=str(e))

        ctx = AppContext(settings=settings, logger=logger.bind(subsystem="core"))
        log_method = logger.debug if settings.quiet_startup else logger.info
        log_method(
            "bootstrap_complete",
            elapsed=f"{time.perf_counter() - t0:.3f}s",
            feed_url=settings.feed_url,
            mock_mode=settings.playwright_mock_mode,
            sqlite_path=settings.sqlite_path,
        )
        _context_singleton = ctx
        return ctx


# ------------------------------------------------------------
# Helper accessors
# ------------------------------------------------------------
async def get_context() -> AppContext:
    """Public accessor for the global application context."""
    return await bootstrap()


def reset_context() -> None:
    """Drop the cached context so the next get_context() reloads settings."""
    global _context_singleton
    _context_singleton = None
