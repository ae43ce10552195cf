from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .app_logging import log_with_fields
from .browser import Browser, BrowserError
from .config import AgentConfig
from .errors import AgentUnresponsive, CommunicationFailure
from .tabs import Tab

PING = "PING"
CHECK_FOR_FORM = "CHECK_FOR_FORM"
FIND_CONTACT_PAGE = "FIND_CONTACT_PAGE"
FILL_AND_SUBMIT_FORM = "FILL_AND_SUBMIT_FORM"

COMMUNICATION_FAILURE_MESSAGE = "no usable reply from the automation agent"

SuccessClassifier = Callable[[str], bool]


class UrlKeywordClassifier:
    """Treats a URL as a post-submission page when it contains a keyword."""

    def __init__(self, keywords: tuple[str, ...] | list[str]) -> None:
        self.keywords = tuple(keyword.lower() for keyword in keywords if keyword)

    def __call__(self, url: str) -> bool:
        lowered = url.lower()
        return any(keyword in lowered for keyword in self.keywords)


@dataclass(slots=True)
class AgentResponse:
    success: bool
    ready: bool = False
    has_form: bool = False
    debug_info: dict[str, Any] | None = None
    candidates: list[str] = field(default_factory=list)
    final_url: str | None = None
    error: str | None = None
    debug_logs: list[str] = field(default_factory=list)
    communication_failure: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AgentResponse:
        candidates = payload.get("candidates") or []
        debug_logs = payload.get("debugLogs") or payload.get("diagnostics") or []
        if isinstance(debug_logs, str):
            debug_logs = debug_logs.splitlines()
        debug_info = payload.get("debugInfo")
        return cls(
            success=bool(payload.get("success", False)),
            ready=bool(payload.get("ready", False)),
            has_form=bool(payload.get("hasForm", False)),
            debug_info=debug_info if isinstance(debug_info, dict) else None,
            candidates=[str(item) for item in candidates if item],
            final_url=payload.get("finalUrl") or None,
            error=payload.get("error") or None,
            debug_logs=[str(line) for line in debug_logs],
        )

    @classmethod
    def communication_failed(cls, error: str | None = None) -> AgentResponse:
        message = COMMUNICATION_FAILURE_MESSAGE if error is None else f"{COMMUNICATION_FAILURE_MESSAGE} ({error})"
        return cls(success=False, error=CommunicationFailure(message).describe(), communication_failure=True)


class AgentChannel:
    def __init__(
        self,
        browser: Browser,
        config: AgentConfig,
        logger: logging.Logger,
        success_classifier: SuccessClassifier | None = None,
    ) -> None:
        self.browser = browser
        self.config = config
        self.logger = logger
        self.success_classifier = success_classifier or UrlKeywordClassifier(config.success_keywords)
        self._signatures = tuple(signature.lower() for signature in config.navigation_signatures)

    def ensure_ready(self, tab: Tab) -> None:
        try:
            self.browser.inject_agent(tab.tab_id)
        except BrowserError as exc:
            # Already present, or the page refused it; the pings decide.
            log_with_fields(self.logger, logging.DEBUG, "agent_inject_failed", tab_id=tab.tab_id, error=str(exc))

        for attempt in range(1, self.config.ping_attempts + 1):
            try:
                reply = self.browser.send_message(
                    tab.tab_id,
                    {"type": PING},
                    timeout=self.config.ping_timeout_seconds,
                )
                if reply.get("ready"):
                    return
            except BrowserError as exc:
                log_with_fields(
                    self.logger,
                    logging.DEBUG,
                    "agent_ping_failed",
                    tab_id=tab.tab_id,
                    attempt=attempt,
                    error=str(exc),
                )
            if attempt < self.config.ping_attempts:
                time.sleep(self.config.ping_interval_seconds)

        log_with_fields(self.logger, logging.WARNING, "agent_unresponsive", tab_id=tab.tab_id)
        raise AgentUnresponsive(f"automation agent did not answer {self.config.ping_attempts} pings")

    def is_navigation_error(self, message: str) -> bool:
        lowered = message.lower()
        return any(signature in lowered for signature in self._signatures)

    def dispatch(self, tab: Tab, request: dict[str, Any], retries: int | None = None) -> AgentResponse:
        self.ensure_ready(tab)
        attempts = self.config.dispatch_retries if retries is None else retries
        request_type = request.get("type")
        # Submission has its own, longer deadline in the pipeline.
        timeout = None if request_type == FILL_AND_SUBMIT_FORM else self.config.dispatch_timeout_seconds
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            try:
                reply = self.browser.send_message(tab.tab_id, request, timeout=timeout)
                return AgentResponse.from_payload(reply)
            except BrowserError as exc:
                last_error = str(exc)
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "agent_dispatch_failed",
                    tab_id=tab.tab_id,
                    request=request_type,
                    attempt=attempt,
                    error=last_error,
                )
                if self.is_navigation_error(last_error):
                    landed = self._success_page_url(tab)
                    if landed is not None:
                        log_with_fields(
                            self.logger,
                            logging.INFO,
                            "agent_navigated_to_success_page",
                            tab_id=tab.tab_id,
                            request=request_type,
                            url=landed,
                        )
                        return AgentResponse(success=True, final_url=landed)
            if attempt < attempts:
                time.sleep(self.config.retry_delay_seconds)
        return AgentResponse.communication_failed(last_error)

    def _success_page_url(self, tab: Tab) -> str | None:
        try:
            url = self.browser.tab_url(tab.tab_id)
        except BrowserError:
            return None
        if url and self.success_classifier(url):
            return url
        return None
