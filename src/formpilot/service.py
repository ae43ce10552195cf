from __future__ import annotations

import logging
from typing import Any, Iterable

from .app_logging import log_with_fields
from .config import validate_max_concurrent
from .models import JobRecord, JobRequest, JobStatus
from .scheduler import WAKE_START, Scheduler
from .store import Store
from .utils import is_http_url

_URL_KEYS = ("target_url", "targetUrl", "url")
_COMPANY_KEYS = ("company_label", "companyLabel", "company")
_LEAD_KEYS = ("external_lead_id", "externalLeadId", "lead_id", "leadId")
_PAYLOAD_KEYS = ("payload", "form_data", "formData")


def _first(item: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def parse_job_request(item: object) -> JobRequest:
    if not isinstance(item, dict):
        raise ValueError("job item must be a mapping")
    target_url = str(_first(item, _URL_KEYS) or "").strip()
    if not is_http_url(target_url):
        raise ValueError(f"job item has no usable http(s) url: {target_url!r}")
    payload = _first(item, _PAYLOAD_KEYS) or {}
    if not isinstance(payload, dict):
        raise ValueError("job payload must be a mapping")
    return JobRequest(
        target_url=target_url,
        company_label=str(_first(item, _COMPANY_KEYS) or ""),
        external_lead_id=str(_first(item, _LEAD_KEYS) or ""),
        payload=payload,
    )


class QueueService:
    """Intake and status operations used by the CLI and embedding callers."""

    def __init__(
        self,
        store: Store,
        logger: logging.Logger,
        scheduler: Scheduler | None = None,
        default_max_concurrent: int = 3,
    ) -> None:
        self.store = store
        self.logger = logger
        self.scheduler = scheduler
        self.default_max_concurrent = default_max_concurrent

    def submit_batch(self, items: Iterable[object]) -> int:
        accepted = 0
        for index, item in enumerate(items):
            try:
                request = parse_job_request(item)
            except ValueError as exc:
                log_with_fields(self.logger, logging.WARNING, "job_rejected", index=index, error=str(exc))
                continue
            job = self.store.insert_job(
                request.target_url,
                company_label=request.company_label,
                external_lead_id=request.external_lead_id,
                payload=request.payload,
            )
            self.store.add_event(job.job_id, "queued", {"url": job.target_url})
            accepted += 1
        log_with_fields(self.logger, logging.INFO, "batch_accepted", count=accepted)
        if accepted and self.scheduler is not None:
            self.scheduler.wake(WAKE_START)
        return accepted

    def status(self, include_jobs: bool = True) -> dict[str, Any]:
        output: dict[str, Any] = {
            "counts": self.store.summary_counts(),
            "paused": self.store.is_paused(),
            "max_concurrent": self.max_concurrent(),
        }
        if include_jobs:
            output["jobs"] = [job.to_dict() for job in self.store.list_jobs()]
        return output

    def max_concurrent(self) -> int:
        return self.store.get_max_concurrent(self.default_max_concurrent)

    def pause(self) -> None:
        self.store.set_paused(True)
        log_with_fields(self.logger, logging.INFO, "processing_paused")

    def resume(self) -> None:
        self.store.set_paused(False)
        log_with_fields(self.logger, logging.INFO, "processing_resumed")
        if self.scheduler is not None:
            self.scheduler.wake(WAKE_START)

    def clear_finished(self) -> int:
        removed = self.store.clear_by_status(JobStatus.COMPLETED) + self.store.clear_by_status(JobStatus.FAILED)
        log_with_fields(self.logger, logging.INFO, "finished_jobs_cleared", count=removed)
        return removed

    def clear_all(self) -> int:
        removed = self.store.clear_all()
        log_with_fields(self.logger, logging.INFO, "all_jobs_cleared", count=removed)
        return removed

    def set_max_concurrent(self, value: int) -> int:
        validate_max_concurrent(value)
        self.store.set_max_concurrent(value)
        log_with_fields(self.logger, logging.INFO, "max_concurrent_set", max_concurrent=value)
        if self.scheduler is not None:
            self.scheduler.wake(WAKE_START)
        return value

    def resubmit(self, job_id: str) -> JobRecord | None:
        """Queue a fresh copy of a failed job; the failed record stays as is."""
        job = self.store.get_job(job_id)
        if job is None or job.status != JobStatus.FAILED:
            return None
        copy = self.store.insert_job(
            job.target_url,
            company_label=job.company_label,
            external_lead_id=job.external_lead_id,
            payload=job.payload,
            retry_count=job.retry_count,
        )
        self.store.add_event(copy.job_id, "resubmitted", {"from_job_id": job.job_id})
        if self.scheduler is not None:
            self.scheduler.wake(WAKE_START)
        return copy
