from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import threading
import time
import unittest

from formpilot.models import JobOutcome, JobRecord, JobStatus
from formpilot.scheduler import Scheduler
from formpilot.store import Store
from formpilot.utils import utc_now_iso

from fakes import fast_scheduler_config, quiet_logger


class SlowPipeline:
    """Completes every job after ``delay`` seconds, tracking overlap."""

    def __init__(self, store: Store, delay: float = 0.05) -> None:
        self.store = store
        self.delay = delay
        self.active = 0
        self.peak_active = 0
        self.peak_processing = 0
        self.seen: list[str] = []
        self._lock = threading.Lock()

    def run(self, job: JobRecord) -> JobOutcome:
        with self._lock:
            self.active += 1
            self.seen.append(job.job_id)
            self.peak_active = max(self.peak_active, self.active)
            self.peak_processing = max(self.peak_processing, self.store.count_by_status(JobStatus.PROCESSING))
        time.sleep(self.delay)
        self.store.update_job(
            job.job_id,
            status=JobStatus.COMPLETED,
            completed_at=utc_now_iso(),
            claim_token=job.claim_token,
        )
        with self._lock:
            self.active -= 1
        return JobOutcome(success=True)


class SchedulerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        self.store = Store(Path(self._temp_dir.name) / "formpilot.db")
        self.store.init_schema()

    def tearDown(self) -> None:
        self.store.close()
        self._temp_dir.cleanup()

    def _wait_for(self, predicate, timeout: float = 10.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.02)
        return predicate()

    def test_bounded_concurrency(self) -> None:
        job_ids = [self.store.insert_job(f"https://site{index}.example.com").job_id for index in range(5)]
        pipeline = SlowPipeline(self.store)
        scheduler = Scheduler(self.store, pipeline, fast_scheduler_config(max_concurrent=2), quiet_logger())

        loop = threading.Thread(target=scheduler.run_forever, daemon=True)
        loop.start()
        try:
            finished = self._wait_for(lambda: self.store.count_by_status(JobStatus.COMPLETED) == 5)
        finally:
            scheduler.shutdown()
            loop.join(timeout=5)

        self.assertTrue(finished)
        self.assertLessEqual(pipeline.peak_active, 2)
        self.assertLessEqual(pipeline.peak_processing, 2)
        self.assertCountEqual(pipeline.seen, job_ids)
        self.assertFalse(loop.is_alive())

    def test_pause_is_respected(self) -> None:
        for index in range(3):
            self.store.insert_job(f"https://site{index}.example.com")
        self.store.set_paused(True)
        pipeline = SlowPipeline(self.store)
        scheduler = Scheduler(self.store, pipeline, fast_scheduler_config(), quiet_logger())
        try:
            for _ in range(5):
                self.assertEqual(scheduler.fill_slots(), 0)
            self.assertEqual(self.store.count_by_status(JobStatus.PENDING), 3)
            self.assertEqual(pipeline.seen, [])
        finally:
            scheduler.shutdown()

    def test_run_once_fills_free_slots_only(self) -> None:
        for index in range(5):
            self.store.insert_job(f"https://site{index}.example.com")
        pipeline = SlowPipeline(self.store, delay=0)
        scheduler = Scheduler(self.store, pipeline, fast_scheduler_config(max_concurrent=3), quiet_logger())
        try:
            launched = scheduler.run_once(timeout=5)
        finally:
            scheduler.shutdown()
        self.assertEqual(launched, 3)
        self.assertEqual(self.store.count_by_status(JobStatus.COMPLETED), 3)
        self.assertEqual(self.store.count_by_status(JobStatus.PENDING), 2)

    def test_stored_limit_overrides_config(self) -> None:
        for index in range(3):
            self.store.insert_job(f"https://site{index}.example.com")
        self.store.set_max_concurrent(1)
        pipeline = SlowPipeline(self.store, delay=0)
        scheduler = Scheduler(self.store, pipeline, fast_scheduler_config(max_concurrent=3), quiet_logger())
        try:
            self.assertEqual(scheduler.run_once(timeout=5), 1)
        finally:
            scheduler.shutdown()

    def test_pipeline_crash_frees_slot(self) -> None:
        class CrashingPipeline:
            def run(self, job: JobRecord) -> JobOutcome:
                raise RuntimeError("boom")

        self.store.insert_job("https://example.com")
        scheduler = Scheduler(self.store, CrashingPipeline(), fast_scheduler_config(), quiet_logger())
        try:
            self.assertEqual(scheduler.run_once(timeout=5), 1)
            self.assertTrue(self._wait_for(lambda: scheduler.in_flight() == 0))
        finally:
            scheduler.shutdown()


if __name__ == "__main__":
    unittest.main()
