from __future__ import annotations

import logging
import threading
import time
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from tubefeed.services.ingestion_service import IngestionService
from tubefeed.telemetry import TelemetryClient

LOGGER = logging.getLogger("tubefeed.scheduler")


class SchedulerService:
    """
    Runs ingestion cycles on a fixed wall-clock cadence, one at a time.

    Ticks fire on a monotonic grid anchored at `start()`; the first one fires
    immediately. A tick that arrives while a cycle is still running is dropped,
    not queued.
    """

    def __init__(
        self,
        ingestion_service: IngestionService,
        interval_seconds: int,
        *,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._ingestion_service = ingestion_service
        self._interval_seconds = max(1, interval_seconds)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._worker: threading.Thread | None = None
        self._flag_lock = threading.Lock()
        self._cycle_in_progress = False
        self._skipped_ticks = 0

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_in_progress

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tubefeed-scheduler")
        self._thread.daemon = True
        self._thread.start()
        LOGGER.info("scheduler started interval_seconds=%s", self._interval_seconds)

    def stop(self, *, timeout: float = 3.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.wait_for_idle(timeout=timeout)
        LOGGER.info("scheduler stopped")

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        worker = self._worker
        if worker is not None:
            worker.join(timeout=timeout)
        return not self._cycle_in_progress

    def tick(self) -> bool:
        """Start a cycle on a worker thread unless one is already running."""
        tick_id = uuid4().hex
        with self._flag_lock:
            if self._cycle_in_progress:
                self._skipped_ticks += 1
                LOGGER.info("scheduler tick skipped; previous cycle still running tick_id=%s", tick_id)
                self._telemetry.emit("scheduler.tick.skip", tick_id=tick_id)
                return False
            self._cycle_in_progress = True

        try:
            worker = threading.Thread(
                target=self._run_guarded_cycle,
                args=(tick_id,),
                name=f"tubefeed-ingest-{tick_id[:8]}",
            )
            worker.daemon = True
            self._worker = worker
            worker.start()
        except BaseException:
            self._clear_flag()
            raise
        return True

    def _run_loop(self) -> None:
        next_tick = time.monotonic()
        while not self._stop_event.is_set():
            now = time.monotonic()
            if now >= next_tick:
                try:
                    self.tick()
                except Exception:
                    LOGGER.exception("scheduler tick could not start a cycle")
                next_tick += self._interval_seconds
                # Grid points missed entirely are dropped, not replayed.
                while next_tick <= now:
                    next_tick += self._interval_seconds
            self._stop_event.wait(max(0.0, next_tick - time.monotonic()))

    def _run_guarded_cycle(self, tick_id: str) -> None:
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id)
        telemetry = self._telemetry.bind(tick_id=tick_id)
        started_at = time.perf_counter()
        telemetry.emit("scheduler.tick.start")
        try:
            result = self._ingestion_service.run_background_cycle()
        except Exception as exc:
            telemetry.emit(
                "scheduler.tick.error",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("scheduler tick failed tick_id=%s", tick_id, exc_info=True)
        else:
            telemetry.emit(
                "scheduler.tick.finish",
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome=result.outcome,
                inserted=result.inserted,
            )
        finally:
            self._clear_flag()
            reset_contextvars(**tick_tokens)

    def _clear_flag(self) -> None:
        with self._flag_lock:
            self._cycle_in_progress = False
