from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Protocol

from .app_logging import log_with_fields
from .config import MAX_CONCURRENT_LIMIT, SchedulerConfig
from .models import JobOutcome, JobRecord, JobStatus
from .store import Store

WAKE_TICK = "tick"
WAKE_START = "start"
WAKE_SLOT_FREED = "slot_freed"
WAKE_STOP = "stop"


class Pipeline(Protocol):
    def run(self, job: JobRecord) -> JobOutcome: ...


class Scheduler:
    """Keeps up to ``max_concurrent`` job pipelines in flight.

    Wake-ups arrive on a channel: the periodic tick, explicit ``start``
    requests from intake, and ``slot_freed`` posted shortly after a pipeline
    ends. Every wake-up runs one fill cycle on the scheduler thread, so the
    capacity check and the claims that follow it never race each other.
    """

    def __init__(
        self,
        store: Store,
        pipeline: Pipeline,
        config: SchedulerConfig,
        logger: logging.Logger,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.config = config
        self.logger = logger
        self._events: queue.Queue[str] = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=MAX_CONCURRENT_LIMIT, thread_name_prefix="job")
        self._in_flight: set[Future[None]] = set()
        self._in_flight_lock = threading.Lock()
        self._stopping = threading.Event()

    def wake(self, reason: str = WAKE_START) -> None:
        self._events.put(reason)

    def stop(self) -> None:
        self._stopping.set()
        self._events.put(WAKE_STOP)

    def bootstrap(self) -> None:
        reclaimed = self.store.reclaim_expired_leases()
        log_with_fields(self.logger, logging.INFO, "scheduler_bootstrap", reclaimed=reclaimed)

    def run_forever(self) -> None:
        self.bootstrap()
        self.fill_slots()
        while not self._stopping.is_set():
            try:
                reason = self._events.get(timeout=self.config.tick_seconds)
            except queue.Empty:
                reason = WAKE_TICK
            if reason == WAKE_STOP:
                break
            self.fill_slots(reason)
        log_with_fields(self.logger, logging.INFO, "scheduler_stopped")

    def run_once(self, timeout: float | None = None) -> int:
        self.bootstrap()
        launched = self.fill_slots()
        self.wait_idle(timeout)
        return launched

    def fill_slots(self, reason: str = WAKE_START) -> int:
        self.store.reclaim_expired_leases()
        if self.store.is_paused():
            log_with_fields(self.logger, logging.DEBUG, "scheduler_paused", reason=reason)
            return 0

        max_concurrent = self.store.get_max_concurrent(self.config.max_concurrent)
        active = self.store.count_by_status(JobStatus.PROCESSING)
        free = max_concurrent - active
        if free <= 0:
            log_with_fields(
                self.logger,
                logging.DEBUG,
                "scheduler_at_capacity",
                active=active,
                max_concurrent=max_concurrent,
            )
            return 0

        launched = 0
        for slot in range(free):
            if self._stopping.is_set() or self.store.is_paused():
                break
            if slot > 0 and self.config.launch_stagger_seconds > 0:
                time.sleep(self.config.launch_stagger_seconds)
            job = self.store.claim_oldest_pending(lease_seconds=self.config.lease_seconds)
            if job is None:
                break
            self.store.add_event(job.job_id, "claimed", {"reason": reason})
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_claimed",
                job_id=job.job_id,
                company=job.company_label,
                slot=f"{active + launched + 1}/{max_concurrent}",
            )
            self._launch(job)
            launched += 1
        return launched

    def _launch(self, job: JobRecord) -> None:
        future = self._executor.submit(self._run_pipeline, job)
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future[None]) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def _run_pipeline(self, job: JobRecord) -> None:
        try:
            self.pipeline.run(job)
        except Exception:
            self.logger.exception("pipeline_crashed job_id=%s", job.job_id)
        finally:
            self._schedule_refill()

    def _schedule_refill(self) -> None:
        if self._stopping.is_set():
            return
        timer = threading.Timer(self.config.refill_delay_seconds, self._refill)
        timer.daemon = True
        timer.start()

    def _refill(self) -> None:
        if not self._stopping.is_set():
            self.wake(WAKE_SLOT_FREED)

    def in_flight(self) -> int:
        with self._in_flight_lock:
            return len(self._in_flight)

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._in_flight_lock:
            pending = list(self._in_flight)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self.stop()
        self._executor.shutdown(wait=wait_for_jobs)
