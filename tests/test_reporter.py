from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any
import unittest

import requests

from formpilot.config import ReporterConfig
from formpilot.models import JobOutcome, JobRecord, JobStatus
from formpilot.reporter import HttpReporter, NullReporter, ResultRecorder, build_reporter
from formpilot.store import Store
from formpilot.utils import utc_now

from fakes import quiet_logger


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "") -> None:
        self.status_code = status_code
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response or FakeResponse()
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, json: dict[str, Any], timeout: float) -> FakeResponse:
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _job(lead_id: str = "lead-7") -> JobRecord:
    return JobRecord(
        job_id="job-1",
        target_url="https://example.com",
        company_label="Example",
        external_lead_id=lead_id,
        payload={},
        status=JobStatus.PROCESSING,
        created_at="2026-01-01T00:00:00+00:00",
    )


CONFIG = ReporterConfig(base_url="https://crm.example.com", timeout_seconds=3)


class HttpReporterTest(unittest.TestCase):
    def test_posts_result_batch(self) -> None:
        session = FakeSession()
        reporter = HttpReporter(CONFIG, quiet_logger(), session=session)
        reporter.report(_job(), JobOutcome(success=False, error="FormNotFound: no contact form found"))

        self.assertEqual(len(session.calls), 1)
        call = session.calls[0]
        self.assertEqual(call["url"], "https://crm.example.com/api/leads/update-send-result")
        self.assertEqual(call["timeout"], 3)
        result = call["json"]["results"][0]
        self.assertEqual(result["leadId"], "lead-7")
        self.assertEqual(result["status"], "failed")
        self.assertEqual(result["error"], "FormNotFound: no contact form found")
        self.assertIn("sentAt", result)

    def test_success_omits_error(self) -> None:
        reporter = HttpReporter(CONFIG, quiet_logger(), session=FakeSession())
        payload = reporter.build_payload(_job(), JobOutcome(success=True))
        self.assertEqual(payload["results"][0]["status"], "success")
        self.assertNotIn("error", payload["results"][0])

    def test_transport_errors_are_swallowed(self) -> None:
        session = FakeSession(error=requests.ConnectionError("refused"))
        reporter = HttpReporter(CONFIG, quiet_logger(), session=session)
        reporter.report(_job(), JobOutcome(success=True))
        rejected = FakeSession(response=FakeResponse(500, "server error"))
        HttpReporter(CONFIG, quiet_logger(), session=rejected).report(_job(), JobOutcome(success=True))
        self.assertEqual(len(rejected.calls), 1)

    def test_job_without_lead_is_not_reported(self) -> None:
        session = FakeSession()
        HttpReporter(CONFIG, quiet_logger(), session=session).report(_job(lead_id=""), JobOutcome(success=True))
        self.assertEqual(session.calls, [])

    def test_build_reporter_without_base_url(self) -> None:
        self.assertIsInstance(build_reporter(ReporterConfig(), quiet_logger()), NullReporter)
        with self.assertRaises(ValueError):
            HttpReporter(ReporterConfig(), quiet_logger())


class RecordingReporter:
    def __init__(self) -> None:
        self.statuses: list[str] = []

    def report(self, job: JobRecord, outcome: JobOutcome) -> None:
        self.statuses.append(outcome.report_status)


class ExplodingReporter:
    def report(self, job: JobRecord, outcome: JobOutcome) -> None:
        raise RuntimeError("reporter down")


class ResultRecorderTest(unittest.TestCase):
    def test_reporter_failure_does_not_undo_terminal_write(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = Store(Path(temp_dir) / "formpilot.db")
            store.init_schema()
            store.insert_job("https://example.com", external_lead_id="lead-1")
            job = store.claim_oldest_pending()
            assert job is not None
            recorder = ResultRecorder(store, ExplodingReporter(), quiet_logger())

            written = recorder.record(job, JobOutcome(success=True, final_url="https://example.com/thanks"))

            self.assertTrue(written)
            stored = store.get_job(job.job_id)
            assert stored is not None
            self.assertEqual(stored.status, JobStatus.COMPLETED)
            self.assertEqual(stored.final_url, "https://example.com/thanks")
            store.close()

    def test_result_from_reclaimed_run_is_not_reported(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = Store(Path(temp_dir) / "formpilot.db")
            store.init_schema()
            store.insert_job("https://example.com", external_lead_id="lead-1")
            started = utc_now()
            stale = store.claim_oldest_pending(lease_seconds=30, now=started)
            assert stale is not None
            store.reclaim_expired_leases(now=started + timedelta(seconds=31))
            fresh = store.claim_oldest_pending(lease_seconds=30)
            assert fresh is not None
            reporter = RecordingReporter()
            recorder = ResultRecorder(store, reporter, quiet_logger())

            self.assertFalse(recorder.record(stale, JobOutcome(success=False, error="TabLoadTimeout: slow")))
            self.assertTrue(recorder.record(fresh, JobOutcome(success=True)))

            self.assertEqual(reporter.statuses, ["success"])
            stored = store.get_job(fresh.job_id)
            assert stored is not None
            self.assertEqual(stored.status, JobStatus.COMPLETED)
            self.assertIsNone(stored.last_error)
            store.close()

    def test_result_for_deleted_job_is_still_reported(self) -> None:
        with TemporaryDirectory() as temp_dir:
            store = Store(Path(temp_dir) / "formpilot.db")
            store.init_schema()
            store.insert_job("https://example.com", external_lead_id="lead-1")
            job = store.claim_oldest_pending()
            assert job is not None
            store.delete_job(job.job_id)
            reporter = RecordingReporter()

            written = ResultRecorder(store, reporter, quiet_logger()).record(job, JobOutcome(success=True))

            self.assertFalse(written)
            self.assertEqual(reporter.statuses, ["success"])
            store.close()


if __name__ == "__main__":
    unittest.main()
