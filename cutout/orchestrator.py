from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from .config import METRICS_INTERVAL, PAUSE_POLL_INTERVAL
from .contracts import AssetJob, AssetStatus, CutoutResult
from .errors import JobCancelled, categorize
from .io import save_mask_png, save_rgba_png
from .pipeline import CutoutPipeline
from .quality import analyze
from .settings import SettingsSnapshot, SettingsStore
from .store import AssetCollection

logger = logging.getLogger(__name__)

Backoff = Callable[[int], float]


def exponential_backoff(failures: int, base: float = 0.5) -> float:
    """Seconds to wait before the next attempt, given how many attempts have failed so far."""
    return (2.0**failures) * base


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunControl:
    """
    Signals for one batch run, handed to every job when it is spawned.

    `resumed` is set while the run is not paused.
    """

    cancelled: threading.Event = field(default_factory=threading.Event)
    resumed: threading.Event = field(default_factory=threading.Event)

    def __post_init__(self) -> None:
        self.resumed.set()

    def wait_while_paused(self, poll_interval: float) -> bool:
        """Block until resumed. False if the run was cancelled meanwhile."""
        while not self.resumed.is_set():
            if self.cancelled.is_set():
                return False
            self.resumed.wait(poll_interval)
        return not self.cancelled.is_set()

    def sleep(self, seconds: float) -> bool:
        """Cancellable sleep. False if cancelled before the time ran out."""
        if seconds <= 0:
            return not self.cancelled.is_set()
        return not self.cancelled.wait(seconds)


class BatchOrchestrator:
    """
    Runs the cutout pipeline over every pending item of an asset collection.

    One task per item on a thread pool sized to the concurrency limit (the pool is the
    gate), with pause / resume / cancel, per-item retries with backoff, and throughput
    metrics refreshed on a timer. The public attributes below are safe to read from
    any thread for display.
    """

    def __init__(
        self,
        store: AssetCollection,
        settings: SettingsStore,
        output_dir: str,
        pipeline: Optional[CutoutPipeline] = None,
        *,
        backoff: Backoff = exponential_backoff,
        pause_poll_interval: float = PAUSE_POLL_INTERVAL,
        metrics_interval: float = METRICS_INTERVAL,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.settings = settings
        self.output_dir = Path(output_dir)
        self.pipeline = pipeline or CutoutPipeline()
        self.backoff = backoff
        self.pause_poll_interval = pause_poll_interval
        self.metrics_interval = metrics_interval
        self.log = log or logger

        self.is_running = False
        self.is_paused = False
        self.is_cancelled = False
        self.total_count = 0
        self.completed_count = 0
        self.failed_count = 0
        self.start_time: Optional[datetime] = None
        self.elapsed_seconds = 0.0
        self.images_per_minute = 0.0

        self._lock = threading.Lock()
        self._control: Optional[RunControl] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._tasks: Dict[str, Future] = {}
        self._scheduled: Set[str] = set()
        self._started_monotonic = 0.0
        self._metrics_stop: Optional[threading.Event] = None
        self._finished = threading.Event()
        self._finished.set()

    # ------------------------------------------------------------------ control

    def start(self) -> None:
        if self.is_running:
            return

        snapshot = self.settings.snapshot()
        if snapshot.model_name is not None and snapshot.model_name != self.pipeline.model_name:
            self.pipeline.update_model(snapshot.model_name)

        with self._lock:
            if self.is_running:
                return
            pending = self.store.pending_items()
            self.is_running = True
            self.is_paused = False
            self.is_cancelled = False
            self.completed_count = 0
            self.failed_count = 0
            self.total_count = len(pending)
            self.start_time = _now()
            self.elapsed_seconds = 0.0
            self.images_per_minute = 0.0
            self._started_monotonic = time.monotonic()
            self._control = RunControl()
            self._tasks = {}
            self._scheduled = set()
            self._finished.clear()

            if self.total_count == 0:
                self.log.info("Batch has no pending items")
                self._end_run()
                return

            limit = snapshot.batch.concurrency_limit
            self._executor = ThreadPoolExecutor(max_workers=limit, thread_name_prefix="cutout-job")
            self._start_metrics_timer()
            self.log.info("Batch started: %d items, concurrency %d", self.total_count, limit)
            for item in pending:
                self._schedule(item.id)

    def pause(self) -> None:
        with self._lock:
            self.is_paused = True
            if self._control is not None:
                self._control.resumed.clear()
        self.log.info("Batch paused")

    def resume(self) -> None:
        with self._lock:
            self.is_paused = False
            if self._control is not None:
                self._control.resumed.set()
            self.log.info("Batch resumed")
            if not self.is_running:
                return
            for item in self.store.pending_items():
                if item.id in self._tasks:
                    continue
                if item.id not in self._scheduled:
                    # Added to the collection after start().
                    self.total_count += 1
                self._schedule(item.id)

    def cancel(self) -> None:
        with self._lock:
            self.is_cancelled = True
            if self._control is not None:
                self._control.cancelled.set()
                self._control.resumed.set()
            for future in self._tasks.values():
                future.cancel()
            self._tasks.clear()
            if self.is_running:
                self._end_run()
        self.log.warning("Batch cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current run ends. True if it ended within `timeout`."""
        return self._finished.wait(timeout)

    # ------------------------------------------------------------------ metrics

    @property
    def eta_minutes(self) -> Optional[float]:
        if self.images_per_minute <= 0:
            return None
        remaining = max(0, self.total_count - self.completed_count - self.failed_count)
        return remaining / self.images_per_minute

    def _refresh_metrics(self) -> None:
        with self._lock:
            self.elapsed_seconds = time.monotonic() - self._started_monotonic
            if self.elapsed_seconds > 0:
                self.images_per_minute = self.completed_count / (self.elapsed_seconds / 60.0)

    def _start_metrics_timer(self) -> None:
        stop = threading.Event()
        self._metrics_stop = stop

        def _loop() -> None:
            while not stop.wait(self.metrics_interval):
                self._refresh_metrics()

        threading.Thread(target=_loop, name="cutout-metrics", daemon=True).start()

    # ------------------------------------------------------------------ run bookkeeping (lock held)

    def _schedule(self, item_id: str) -> None:
        control = self._control
        self._scheduled.add(item_id)
        self._tasks[item_id] = self._executor.submit(self._run_job, item_id, control)

    def _end_run(self) -> None:
        self.is_running = False
        if self._metrics_stop is not None:
            self._metrics_stop.set()
            self._metrics_stop = None
        self.elapsed_seconds = time.monotonic() - self._started_monotonic
        if self.elapsed_seconds > 0:
            self.images_per_minute = self.completed_count / (self.elapsed_seconds / 60.0)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._finished.set()

    def _record(self, control: RunControl, *, completed: int = 0, failed: int = 0) -> None:
        with self._lock:
            if control is self._control:
                self.completed_count += completed
                self.failed_count += failed

    def _job_finished(self, item_id: str, control: RunControl) -> None:
        with self._lock:
            if control is not self._control:
                return
            self._tasks.pop(item_id, None)
            if self.is_running and self.completed_count + self.failed_count >= self.total_count:
                self.log.info(
                    "Batch finished: %d done, %d failed in %.1fs",
                    self.completed_count,
                    self.failed_count,
                    time.monotonic() - self._started_monotonic,
                )
                self._end_run()

    # ------------------------------------------------------------------ per job

    def _run_job(self, item_id: str, control: RunControl) -> None:
        try:
            self._execute(item_id, control)
        except JobCancelled as e:
            self.log.info("Job %s stopped: %s", item_id, e.message)
        except Exception as e:  # noqa: BLE001 - bookkeeping failure outside the attempt loop
            self.log.exception("Job %s crashed", item_id)
            self._mark_failed(item_id, e, control)
        finally:
            self._job_finished(item_id, control)

    def _execute(self, item_id: str, control: RunControl) -> None:
        if control.cancelled.is_set():
            raise JobCancelled("cancelled before start")

        max_retries = self.settings.snapshot().batch.effective_max_retries
        for attempt in range(max_retries + 1):
            if not control.wait_while_paused(self.pause_poll_interval):
                raise JobCancelled("cancelled while paused")

            # Settings are re-read for every attempt.
            snapshot = self.settings.snapshot()
            self._begin_attempt(item_id, attempt)
            try:
                result = self._attempt(item_id, snapshot, control)
            except JobCancelled:
                raise
            except Exception as e:  # noqa: BLE001 - retry/give-up decisions live here
                if control.cancelled.is_set():
                    raise JobCancelled(f"cancelled during attempt ({e})") from e
                retryable = getattr(e, "retryable", True)
                if not retryable or attempt >= max_retries:
                    self._mark_failed(item_id, e, control)
                    return
                delay = self.backoff(attempt + 1)
                self.log.warning(
                    "Attempt %d for %s failed (%s), retrying in %.1fs",
                    attempt + 1,
                    item_id,
                    e,
                    delay,
                    extra={"context": {"item_id": item_id, "category": categorize(e).value}},
                )
                self.store.update(item_id, _set_status(AssetStatus.PENDING))
                if not control.sleep(delay):
                    raise JobCancelled("cancelled during backoff")
                continue

            if control.cancelled.is_set():
                raise JobCancelled("cancelled before finalizing")
            self._mark_finished(item_id, result, control)
            return

    def _begin_attempt(self, item_id: str, attempt: int) -> None:
        def _begin(item: AssetJob) -> None:
            item.status = AssetStatus.PROCESSING
            if attempt == 0 or item.processing_info.started_at is None:
                item.processing_info.started_at = _now()
                item.processing_info.finished_at = None
                item.processing_info.duration_seconds = None
            item.error_message = None
            item.processing_progress = 0.05
            item.processing_info.attempts = attempt + 1

        self.store.update(item_id, _begin)

    def _attempt(self, item_id: str, snapshot: SettingsSnapshot, control: RunControl) -> CutoutResult:
        item = self.store.get(item_id)
        if item is None:
            raise JobCancelled("item removed from the collection")

        self.store.update(item_id, lambda it: it.advance_progress(0.35))
        result = self.pipeline.process(
            item.source,
            snapshot.cutout,
            preserve_color_metadata=snapshot.batch.preserve_exif,
        )
        if control.cancelled.is_set():
            raise JobCancelled("cancelled during processing")
        self.store.update(item_id, lambda it: it.advance_progress(0.7))

        output_path = self.output_dir / f"{item_id}.png"
        mask_path = self.output_dir / f"{item_id}-mask.png"
        size_bytes = save_rgba_png(
            result.output,
            output_path,
            exif=result.exif,
            icc_profile=result.icc_profile,
            compress_level=snapshot.batch.png_compress_level,
        )
        save_mask_png(result.mask, mask_path)
        if result.shadow_layer is not None:
            save_rgba_png(result.shadow_layer, self.output_dir / f"{item_id}-shadow.png")

        metrics = analyze(result.mask, result.size, snapshot.quality)
        width, height = result.size

        def _store_result(it: AssetJob) -> None:
            it.output_path = str(output_path)
            it.mask_path = str(mask_path)
            it.quality = metrics
            it.processing_info.warnings = list(result.warnings)
            it.processing_info.confidence_score = result.confidence
            it.processing_info.pixel_width = width
            it.processing_info.pixel_height = height
            it.processing_info.file_size_bytes = size_bytes

        self.store.update(item_id, _store_result)
        return result

    def _mark_finished(self, item_id: str, result: CutoutResult, control: RunControl) -> None:
        def _finish(item: AssetJob) -> None:
            item.status = AssetStatus.NEEDS_REVIEW if result.warnings else AssetStatus.DONE
            item.processing_progress = 1.0
            _stamp_finish(item)

        self.store.update(item_id, _finish)
        self._record(control, completed=1)
        self.log.info("Item %s done (confidence=%.2f, warnings=%d)", item_id, result.confidence, len(result.warnings))

    def _mark_failed(self, item_id: str, error: BaseException, control: RunControl) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__

        def _fail(item: AssetJob) -> None:
            item.status = AssetStatus.FAILED
            item.error_message = message
            item.processing_progress = 1.0
            _stamp_finish(item)

        self.store.update(item_id, _fail)
        self._record(control, failed=1)
        self.log.error(
            "Item %s failed: %s",
            item_id,
            message,
            extra={"context": {"item_id": item_id, "category": categorize(error).value}},
        )


def _set_status(status: AssetStatus):
    def _apply(item: AssetJob) -> None:
        item.status = status

    return _apply


def _stamp_finish(item: AssetJob) -> None:
    info = item.processing_info
    info.finished_at = _now()
    if info.started_at is not None:
        info.duration_seconds = (info.finished_at - info.started_at).total_seconds()
