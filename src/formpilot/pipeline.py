from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from .agent import FILL_AND_SUBMIT_FORM, AgentChannel, AgentResponse
from .app_logging import log_with_fields
from .browser import BrowserError
from .config import PipelineConfig
from .discovery import DiscoveryResult, FormDiscovery
from .errors import FormNotFound, PipelineError, SubmissionTimeout
from .models import JobOutcome, JobRecord
from .reporter import ResultRecorder
from .store import Store
from .tabs import Tab, TabManager


def _format_diagnostics(discovery: DiscoveryResult | None, response: AgentResponse | None) -> str | None:
    sections: list[str] = []
    if discovery is not None and discovery.attempts:
        sections.append(f"form discovery ({len(discovery.attempts)} attempts):\n{discovery.timeline()}")
    if response is not None and response.debug_logs:
        sections.append("agent log:\n" + "\n".join(response.debug_logs))
    if response is not None and response.debug_info:
        sections.append(f"agent debug info: {response.debug_info}")
    return "\n\n".join(sections) or None


class JobPipeline:
    def __init__(
        self,
        store: Store,
        tabs: TabManager,
        agent: AgentChannel,
        discovery: FormDiscovery,
        recorder: ResultRecorder,
        config: PipelineConfig,
        logger: logging.Logger,
        lease_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.tabs = tabs
        self.agent = agent
        self.discovery = discovery
        self.recorder = recorder
        self.config = config
        self.logger = logger
        self.lease_seconds = lease_seconds

    def run(self, job: JobRecord) -> JobOutcome:
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_started",
            job_id=job.job_id,
            company=job.company_label,
            url=job.target_url,
        )
        discovery: DiscoveryResult | None = None
        response: AgentResponse | None = None
        try:
            with self.tabs.session(job.target_url) as tab:
                self.store.add_event(job.job_id, "tab_opened", {"url": job.target_url, "tab_id": tab.tab_id})
                self.tabs.await_load(tab)
                discovery = self.discovery.run(tab, job.target_url, on_attempt=lambda _: self._heartbeat(job))
                if not discovery.found:
                    raise FormNotFound(
                        f"no contact form found ({len(discovery.attempts)} pages tried: {discovery.summary()})"
                    )
                self.store.add_event(job.job_id, "form_found", {"form_url": discovery.form_url})
                self._heartbeat(job)
                response = self._submit(tab, job)
                if response.success and not response.final_url:
                    response.final_url = self.tabs.current_url(tab)
                outcome = self._outcome(discovery, response)
        except PipelineError as exc:
            outcome = JobOutcome(
                success=False,
                error=exc.describe(),
                diagnostics=_format_diagnostics(discovery, response),
            )
        except BrowserError as exc:
            outcome = JobOutcome(
                success=False,
                error=f"BrowserError: {exc}",
                diagnostics=_format_diagnostics(discovery, response),
            )
        except Exception as exc:
            self.logger.exception("job_pipeline_crashed")
            outcome = JobOutcome(
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                diagnostics=_format_diagnostics(discovery, response),
            )
        self.recorder.record(job, outcome)
        return outcome

    def _heartbeat(self, job: JobRecord) -> None:
        if self.lease_seconds:
            self.store.renew_lease(job.job_id, job.claim_token, self.lease_seconds)

    def _submit(self, tab: Tab, job: JobRecord) -> AgentResponse:
        timeout = self.config.submit_timeout_seconds
        request = {"type": FILL_AND_SUBMIT_FORM, "payload": job.payload}
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"submit-{job.job_id[:8]}")
        try:
            future = executor.submit(self.agent.dispatch, tab, request)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError as exc:
                log_with_fields(self.logger, logging.ERROR, "submission_timeout", job_id=job.job_id, timeout=timeout)
                raise SubmissionTimeout(f"submission timed out ({timeout / 60:g} min)") from exc
        finally:
            # A stuck dispatch is abandoned; closing the tab makes it fail.
            executor.shutdown(wait=False)

    def _outcome(self, discovery: DiscoveryResult | None, response: AgentResponse) -> JobOutcome:
        diagnostics = _format_diagnostics(discovery, response)
        if response.success:
            final_url = response.final_url or (discovery.form_url if discovery is not None else None)
            return JobOutcome(success=True, final_url=final_url, diagnostics=diagnostics)
        return JobOutcome(
            success=False,
            error=response.error or "Unknown error",
            final_url=response.final_url,
            diagnostics=diagnostics,
        )
