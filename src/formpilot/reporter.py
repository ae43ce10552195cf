from __future__ import annotations

import logging
from typing import Protocol

import requests

from .app_logging import log_with_fields
from .config import ReporterConfig
from .models import JobOutcome, JobRecord, JobStatus
from .store import Store
from .utils import utc_now_iso

ERROR_PREVIEW_CHARS = 100


class Reporter(Protocol):
    def report(self, job: JobRecord, outcome: JobOutcome) -> None: ...


class NullReporter:
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def report(self, job: JobRecord, outcome: JobOutcome) -> None:
        log_with_fields(
            self.logger,
            logging.INFO,
            "report_skipped",
            job_id=job.job_id,
            lead_id=job.external_lead_id,
            reason="no reporter.base_url configured",
        )


class HttpReporter:
    """Posts send results to the system of record. Never raises."""

    def __init__(
        self,
        config: ReporterConfig,
        logger: logging.Logger,
        session: requests.Session | None = None,
    ) -> None:
        if not config.base_url:
            raise ValueError("HttpReporter requires `reporter.base_url`")
        self.config = config
        self.logger = logger
        self.session = session or requests.Session()
        self.url = f"{config.base_url}{config.endpoint}"

    def build_payload(self, job: JobRecord, outcome: JobOutcome) -> dict[str, object]:
        result: dict[str, object] = {
            "leadId": job.external_lead_id,
            "status": outcome.report_status,
            "sentAt": utc_now_iso(),
        }
        if outcome.error:
            result["error"] = outcome.error
        return {"results": [result]}

    def report(self, job: JobRecord, outcome: JobOutcome) -> None:
        if not job.external_lead_id:
            log_with_fields(self.logger, logging.INFO, "report_skipped", job_id=job.job_id, reason="no lead id")
            return
        try:
            response = self.session.post(
                self.url,
                json=self.build_payload(job, outcome),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "report_failed",
                job_id=job.job_id,
                lead_id=job.external_lead_id,
                error=str(exc),
            )
            return
        if response.ok:
            log_with_fields(
                self.logger,
                logging.INFO,
                "report_sent",
                job_id=job.job_id,
                lead_id=job.external_lead_id,
                status=outcome.report_status,
            )
        else:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "report_rejected",
                job_id=job.job_id,
                lead_id=job.external_lead_id,
                http_status=response.status_code,
                body=response.text[:ERROR_PREVIEW_CHARS],
            )


def build_reporter(config: ReporterConfig, logger: logging.Logger) -> Reporter:
    if config.base_url:
        return HttpReporter(config, logger)
    return NullReporter(logger)


class ResultRecorder:
    """Writes a job's terminal state, then tells the reporter about it."""

    def __init__(self, store: Store, reporter: Reporter, logger: logging.Logger) -> None:
        self.store = store
        self.reporter = reporter
        self.logger = logger

    def record(self, job: JobRecord, outcome: JobOutcome) -> bool:
        now = utc_now_iso()
        if outcome.success:
            written = self.store.update_job(
                job.job_id,
                status=JobStatus.COMPLETED,
                completed_at=now,
                final_url=outcome.final_url,
                diagnostics=outcome.diagnostics,
                claim_token=job.claim_token,
            )
            event_type = "completed"
        else:
            written = self.store.update_job(
                job.job_id,
                status=JobStatus.FAILED,
                failed_at=now,
                last_error=outcome.error or "Unknown error",
                final_url=outcome.final_url,
                diagnostics=outcome.diagnostics,
                claim_token=job.claim_token,
            )
            event_type = "failed"

        if written:
            self.store.add_event(job.job_id, event_type, {"error": outcome.error, "final_url": outcome.final_url})
        elif self.store.get_job(job.job_id) is not None:
            # The row outlived this claim: reclaimed after lease expiry or already terminal.
            log_with_fields(
                self.logger,
                logging.WARNING,
                "stale_result_dropped",
                job_id=job.job_id,
                success=outcome.success,
                error=outcome.error,
            )
            return False
        else:
            log_with_fields(self.logger, logging.WARNING, "terminal_write_skipped", job_id=job.job_id, reason="deleted")
        log_with_fields(
            self.logger,
            logging.INFO if outcome.success else logging.ERROR,
            f"job_{event_type}",
            job_id=job.job_id,
            company=job.company_label,
            final_url=outcome.final_url,
            error=outcome.error,
        )

        try:
            self.reporter.report(job, outcome)
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "report_crashed", job_id=job.job_id, error=str(exc))
        return written
