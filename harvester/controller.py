"""Collection controller: the state machine that drives a harvesting session.

Lifecycle:
    idle -> running <-> paused -> stopped
    stopped -> running (a fresh start)

One round:
    baseline snapshot -> scroll -> wait for new content -> extract -> merge
    -> persist -> notify -> evaluate stop -> schedule next round

Design notes:
- A single asyncio.Task runs the loop. Pause and stop cancel it wherever it is
  suspended (delay, animation frame, readiness poll).
- Every arming of the loop gets a new epoch. Code resuming after an await checks
  the epoch and the state before touching shared state, so results of a stale
  run are dropped.
- The initial harvest of already-rendered cards is not fed to the stop evaluator.
- A scroll fault makes the round a zero-yield round and the next delay becomes
  the fault backoff.
- Reaching the bottom only stops the session when the readiness wait also saw
  no growth (a lazy feed grows right after hitting its current end).
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import random
import time
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from .bootstrap import (
    HARVEST_ACCUMULATED_RECORDS,
    HARVEST_RECORDS_ACCEPTED,
    HARVEST_ROUND_DURATION,
    HARVEST_ROUNDS_TOTAL,
    HARVEST_SCROLL_FAULTS,
    HARVEST_SCROLLS_TOTAL,
    HARVEST_SESSIONS_TOTAL,
    HARVEST_STORAGE_FAILURES,
)
from .errors import StorageError, record_failure
from .extractor import RecordExtractor
from .models import CollectionState, CommandResult, Record, SessionConfig, StopReason, now_ms
from .page import FeedPage
from .readiness import ContentReadinessDetector
from .scroll import ScrollDriver, ScrollTuning
from .stop import StopDecision, StopEvaluator
from .store import AccumulatedSet
from .timing import fault_backoff_delay, next_round_delay

logger = structlog.get_logger(__name__)

Notifier = Callable[[dict[str, Any]], Union[None, Awaitable[None]]]

# Event names pushed to the notifier
STATUS_UPDATE = "status_update"
DATA_UPDATE = "data_update"
COLLECTION_COMPLETE = "collection_complete"
ERROR = "error"


class CollectionController:
    def __init__(
        self,
        page: FeedPage,
        *,
        extractor: Optional[RecordExtractor] = None,
        repository=None,
        notifier: Optional[Notifier] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.page = page
        self.extractor = extractor or RecordExtractor()
        self.repository = repository
        self.notifier = notifier
        self.store = AccumulatedSet()
        self.evaluator = StopEvaluator()
        self.state = CollectionState.IDLE
        self.config: Optional[SessionConfig] = None
        self.scroll_count = 0
        self.started_at: Optional[int] = None
        self.stop_reason: Optional[StopReason] = None
        self.last_error: Optional[str] = None
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._epoch = 0
        self._task: Optional[asyncio.Task] = None
        self._pending_delay_ms: float = 0.0
        self._driver: Optional[ScrollDriver] = None
        self._readiness: Optional[ContentReadinessDetector] = None
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------ commands
    async def start(self, config: Optional[SessionConfig] = None, *, resume_previous: bool = False) -> CommandResult:
        if self.state in (CollectionState.RUNNING, CollectionState.PAUSED):
            return CommandResult(False, self.state, f"collection already {self.state.value}")
        config = config or SessionConfig()
        self.config = config
        self.scroll_count = 0
        self.evaluator.reset()
        self.stop_reason = None
        self.last_error = None
        self.started_at = now_ms()
        self._driver = ScrollDriver(self.page, ScrollTuning.from_config(config), rng=self._rng, sleep=self._sleep)
        self._readiness = ContentReadinessDetector.from_config(self.page, self.extractor, config, sleep=self._sleep)

        # the stored copy always mirrors the accumulated set of the current session
        self.store.clear()
        if self.repository is not None:
            if resume_previous:
                try:
                    restored = self.store.restore(self.repository.load_records())
                    logger.info("collection_restored", records=restored)
                except StorageError as exc:
                    HARVEST_STORAGE_FAILURES.labels(operation="load").inc()
                    logger.warning("collection_restore_failed", error=str(exc))
            else:
                try:
                    self.repository.clear_records()
                except StorageError as exc:
                    HARVEST_STORAGE_FAILURES.labels(operation="clear").inc()
                    record_failure("storage", exc)
                    logger.warning("previous_records_clear_failed", error=str(exc))
        HARVEST_ACCUMULATED_RECORDS.set(len(self.store))

        self.state = CollectionState.RUNNING
        self._stopped = asyncio.Event()
        epoch = self._arm()
        logger.info("collection_started", config=config.to_dict(), resume_previous=resume_previous)
        await self._emit_status()
        self._task = asyncio.create_task(self._run(epoch, initial=True))
        return CommandResult(True, self.state)

    async def pause(self) -> CommandResult:
        if self.state is not CollectionState.RUNNING:
            return CommandResult(False, self.state, "collection is not running")
        self.state = CollectionState.PAUSED
        self._arm()
        await self._cancel_task()
        logger.info("collection_paused", records=len(self.store), scrolls=self.scroll_count)
        await self._emit_status()
        return CommandResult(True, self.state)

    async def resume(self) -> CommandResult:
        if self.state is not CollectionState.PAUSED:
            return CommandResult(False, self.state, "collection is not paused")
        self.state = CollectionState.RUNNING
        epoch = self._arm()
        logger.info("collection_resumed", next_delay_ms=round(self._pending_delay_ms))
        await self._emit_status()
        self._task = asyncio.create_task(self._run(epoch))
        return CommandResult(True, self.state)

    async def stop(self) -> CommandResult:
        if self.state not in (CollectionState.RUNNING, CollectionState.PAUSED):
            return CommandResult(False, self.state, "no collection in progress")
        self._arm()
        await self._cancel_task()
        await self._finish(StopReason.USER)
        return CommandResult(True, self.state)

    async def reset(self) -> CommandResult:
        """Forget collected records (memory and repository); only while not collecting."""
        if self.state in (CollectionState.RUNNING, CollectionState.PAUSED):
            return CommandResult(False, self.state, "stop the collection before clearing data")
        self.store.clear()
        if self.repository is not None:
            self.repository.clear_records()
        self.scroll_count = 0
        self.evaluator.reset()
        self.stop_reason = None
        self.started_at = None
        self.state = CollectionState.IDLE
        HARVEST_ACCUMULATED_RECORDS.set(0)
        await self._emit_status()
        return CommandResult(True, self.state)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "record_count": len(self.store),
            "scroll_count": self.scroll_count,
            "started_at": self.started_at,
            "consecutive_empty_rounds": self.evaluator.consecutive_empty_rounds,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "last_error": self.last_error,
        }

    @property
    def records(self) -> tuple[Record, ...]:
        return self.store.records

    async def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current session to end; False on timeout."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------ loop
    def _arm(self) -> int:
        self._epoch += 1
        return self._epoch

    def _live(self, epoch: int) -> bool:
        return epoch == self._epoch and self.state is CollectionState.RUNNING

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self, epoch: int, *, initial: bool = False) -> None:
        try:
            if initial:
                await self._initial_harvest(epoch)
            while self._live(epoch):
                await self._sleep(self._pending_delay_ms / 1000)
                if not self._live(epoch):
                    return
                decision = await self._round(epoch)
                if decision is None or not self._live(epoch):
                    return
                if decision:
                    await self._finish(decision.reason or StopReason.USER)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - unexpected loop failure ends the session
            logger.exception("collection_loop_failed", error=str(exc))
            record_failure("controller", exc)
            self.last_error = str(exc)
            await self._emit(ERROR, stage="loop", error=str(exc))
            if self._live(epoch):
                await self._finish(StopReason.ERROR)

    def _session_parts(self) -> tuple[SessionConfig, ScrollDriver, ContentReadinessDetector]:
        if self.config is None or self._driver is None or self._readiness is None:
            raise RuntimeError("collection loop running without a started session")
        return self.config, self._driver, self._readiness

    async def _initial_harvest(self, epoch: int) -> None:
        config, _, _ = self._session_parts()
        records = await self._extract(epoch)
        if not self._live(epoch):
            return
        accepted = self.store.merge_new(records)
        if accepted:
            await self._accept(accepted, initial=True)
        self._pending_delay_ms = next_round_delay(config, self._rng)
        logger.info("initial_harvest_complete", found=len(records), accepted=len(accepted))

    async def _extract(self, epoch: int) -> list[Record]:
        try:
            return await self.extractor.extract(self.page, self.config)
        except Exception as exc:  # noqa: BLE001 - a failed extraction is an empty round
            record_failure("extraction", exc)
            logger.warning("extraction_failed", error=str(exc))
            return []

    async def _round(self, epoch: int) -> Optional[StopDecision]:
        config, driver, readiness = self._session_parts()
        t0 = time.perf_counter()
        fault = False
        reached_bottom = False
        accepted: list[Record] = []

        try:
            baseline = await readiness.snapshot()
            result = await driver.scroll(should_continue=lambda: self._live(epoch))
        except Exception as exc:  # noqa: BLE001 - scroll faults become zero-yield rounds
            fault = True
            HARVEST_SCROLL_FAULTS.inc()
            record_failure("scroll", exc)
            self.last_error = str(exc)
            logger.warning("scroll_failed", error=str(exc), backoff_ms=config.fault_backoff_ms)
            await self._emit(ERROR, stage="scroll", error=str(exc))
        if not self._live(epoch):
            return None

        if not fault:
            if result.interrupted:
                return None
            self.scroll_count += 1
            HARVEST_SCROLLS_TOTAL.inc()
            grew = await readiness.wait_until_ready(
                baseline.item_count,
                previous_content_height=baseline.content_height,
                should_continue=lambda: self._live(epoch),
            )
            if not self._live(epoch):
                return None
            records = await self._extract(epoch)
            if not self._live(epoch):
                return None
            accepted = self.store.merge_new(records)
            if accepted:
                await self._accept(accepted)
            reached_bottom = result.reached_bottom and not grew

        decision = self.evaluator.should_stop(
            self.scroll_count, len(accepted), config, reached_bottom=reached_bottom
        )
        self._pending_delay_ms = fault_backoff_delay(config) if fault else next_round_delay(config, self._rng)

        outcome = "fault" if fault else ("yield" if accepted else "empty")
        HARVEST_ROUNDS_TOTAL.labels(outcome=outcome).inc()
        HARVEST_ROUND_DURATION.observe(time.perf_counter() - t0)
        logger.info(
            "round_complete",
            scroll_count=self.scroll_count,
            accepted=len(accepted),
            total=len(self.store),
            empty_rounds=self.evaluator.consecutive_empty_rounds,
            outcome=outcome,
            stop=decision.reason.value if decision else None,
        )
        return decision

    async def _accept(self, accepted: list[Record], *, initial: bool = False) -> None:
        HARVEST_RECORDS_ACCEPTED.inc(len(accepted))
        HARVEST_ACCUMULATED_RECORDS.set(len(self.store))
        self._persist(accepted)
        await self._emit(
            DATA_UPDATE,
            new_records=[r.to_dict() for r in accepted],
            new_count=len(accepted),
            total=len(self.store),
            initial=initial,
        )

    def _persist(self, records) -> None:
        if self.repository is None:
            return
        try:
            self.repository.save_records(records)
        except StorageError as exc:
            HARVEST_STORAGE_FAILURES.labels(operation="save").inc()
            record_failure("storage", exc)
            logger.warning("records_persist_failed", error=str(exc))

    async def _finish(self, reason: StopReason) -> None:
        if self.state is CollectionState.STOPPED:
            return
        self.state = CollectionState.STOPPED
        self.stop_reason = reason
        self._persist(self.store.records)
        HARVEST_SESSIONS_TOTAL.labels(reason=reason.value).inc()
        logger.info(
            "collection_stopped",
            reason=reason.value,
            records=len(self.store),
            scrolls=self.scroll_count,
        )
        await self._emit_status()
        await self._emit(
            COLLECTION_COMPLETE,
            reason=reason.value,
            record_count=len(self.store),
            scroll_count=self.scroll_count,
        )
        self._stopped.set()

    # ------------------------------------------------------------------ events
    async def _emit_status(self) -> None:
        await self._emit(STATUS_UPDATE, **self.get_status())

    async def _emit(self, event_type: str, **payload: Any) -> None:
        if self.notifier is None:
            return
        event = {"type": event_type, **payload}
        try:
            result = self.notifier(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a broken listener must not break collection
            logger.warning("notifier_failed", event=event_type, error=str(exc))
