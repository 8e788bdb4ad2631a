"""Harvest service: the single command handler behind the HTTP API and the CLI.

Owns the browser session, the collection controller, the repository and the
exporter. Commands mirror the extension's message surface: start, pause,
resume, stop, status, records (sorted, filtered, summarised), export, clear,
get/update/reset settings, storage info, ping.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Mapping, Optional

import structlog

from .browser import BrowserSession
from .controller import CollectionController, Notifier
from .errors import ConfigError, StorageError
from .export import ExportResult, export_records
from .extractor import RecordExtractor
from .models import CollectionState, CommandResult, Record, SessionConfig
from .repository import SqliteRepository
from .stats import TimeBound, filter_by_collected, record_statistics, sort_records

logger = structlog.get_logger(__name__)


class HarvestService:
    def __init__(
        self,
        settings,
        *,
        repository: Optional[SqliteRepository] = None,
        session: Optional[BrowserSession] = None,
        extractor: Optional[RecordExtractor] = None,
    ) -> None:
        self.settings = settings
        self.repository = repository or SqliteRepository(settings.sqlite_path)
        self.session = session or BrowserSession(settings)
        self.extractor = extractor or RecordExtractor.from_settings(settings)
        self.controller: Optional[CollectionController] = None
        self.listeners: list[Notifier] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------ listeners
    def add_listener(self, listener: Notifier) -> None:
        if listener not in self.listeners:
            self.listeners.append(listener)

    def remove_listener(self, listener: Notifier) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def _dispatch(self, event: dict[str, Any]) -> None:
        for listener in list(self.listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:  # noqa: BLE001 - one listener must not starve others
                logger.warning("listener_failed", event=event.get("type"), error=str(exc))

    # ------------------------------------------------------------ settings
    def session_config(self, overrides: Optional[Mapping[str, Any]] = None) -> SessionConfig:
        """Defaults from Settings, then saved settings, then ``overrides``.

        Raises ConfigError for invalid overrides. Invalid saved settings are
        logged and ignored.
        """
        config = SessionConfig.from_settings(self.settings)
        try:
            saved = self.repository.load_settings()
        except StorageError as exc:
            logger.warning("saved_settings_unreadable", error=str(exc))
            saved = None
        if saved:
            try:
                config = config.merge(saved)
            except (ConfigError, TypeError, ValueError) as exc:
                logger.warning("saved_settings_invalid", error=str(exc))
        return config.merge(overrides) if overrides else config

    def get_settings(self) -> dict[str, Any]:
        return self.session_config().to_dict()

    def update_settings(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        config = self.session_config(payload)
        self.repository.save_settings(config.to_dict())
        logger.info("settings_updated", keys=sorted(payload.keys()))
        return config.to_dict()

    def reset_settings(self) -> dict[str, Any]:
        self.repository.clear_settings()
        logger.info("settings_reset")
        return self.get_settings()

    # ------------------------------------------------------------ commands
    async def _ensure_controller(self) -> CollectionController:
        async with self._lock:
            if self.controller is None:
                page = await self.session.open()
                self.controller = CollectionController(
                    page,
                    extractor=self.extractor,
                    repository=self.repository,
                    notifier=self._dispatch,
                )
            return self.controller

    async def start(self, overrides: Optional[Mapping[str, Any]] = None, *, resume_previous: bool = False) -> CommandResult:
        config = self.session_config(overrides)
        controller = await self._ensure_controller()
        return await controller.start(config, resume_previous=resume_previous)

    async def pause(self) -> CommandResult:
        if self.controller is None:
            return CommandResult(False, CollectionState.IDLE, "collection is not running")
        return await self.controller.pause()

    async def resume(self) -> CommandResult:
        if self.controller is None:
            return CommandResult(False, CollectionState.IDLE, "collection is not paused")
        return await self.controller.resume()

    async def stop(self) -> CommandResult:
        if self.controller is None:
            return CommandResult(False, CollectionState.IDLE, "no collection in progress")
        return await self.controller.stop()

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current session to end; True at once when none was started."""
        if self.controller is None:
            return True
        return await self.controller.wait_stopped(timeout)

    def status(self) -> dict[str, Any]:
        if self.controller is None:
            status: dict[str, Any] = {
                "state": CollectionState.IDLE.value,
                "record_count": 0,
                "scroll_count": 0,
                "started_at": None,
                "consecutive_empty_rounds": 0,
                "stop_reason": None,
                "last_error": None,
            }
        else:
            status = self.controller.get_status()
        status["mock_mode"] = self.session.mock
        return status

    def current_records(self) -> list[Record]:
        """Records of the live session, or the stored ones when no session exists in this process."""
        if self.controller is not None:
            return list(self.controller.records)
        return self.repository.load_records()

    def query_records(
        self,
        *,
        sort_by: Optional[str] = None,
        order: str = "desc",
        start: TimeBound = None,
        end: TimeBound = None,
    ) -> list[Record]:
        """Current records narrowed to a collection-time window, optionally sorted.

        Raises ConfigError for an unknown sort field or an unreadable time bound.
        """
        items = self.current_records()
        if start is not None or end is not None:
            items = filter_by_collected(items, start, end)
        if sort_by:
            items = sort_records(items, sort_by, order)
        return items

    def records(self, skip: int = 0, limit: Optional[int] = None, **query: Any) -> list[Record]:
        items = self.query_records(**query)[skip:]
        return items if limit is None else items[:limit]

    def data_stats(self) -> dict[str, int]:
        return record_statistics(self.current_records())

    async def clear(self) -> CommandResult:
        if self.controller is not None:
            return await self.controller.reset()
        self.repository.clear_records()
        return CommandResult(True, CollectionState.IDLE)

    def export(self, fmt: str) -> ExportResult:
        return export_records(self.current_records(), fmt, self.settings.export_dir)

    def storage_info(self) -> dict[str, Any]:
        return self.repository.storage_info()

    async def page_stats(self) -> dict[str, Any]:
        """Live view of the feed page; empty when no browser session is open."""
        if not self.session.is_open:
            return {"open": False}
        stats = await self.extractor.page_stats(self.session.page)
        return {"open": True, **stats}

    def ping(self) -> dict[str, Any]:
        return {"pong": True, "state": self.status()["state"]}

    async def close(self) -> None:
        if self.controller is not None and self.controller.state in (
            CollectionState.RUNNING,
            CollectionState.PAUSED,
        ):
            await self.controller.stop()
        await self.session.close()
        self.controller = None
