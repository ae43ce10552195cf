from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable

from .agent import CHECK_FOR_FORM, FIND_CONTACT_PAGE, AgentChannel, AgentResponse
from .app_logging import log_with_fields
from .errors import AgentUnresponsive, NavigationError, PipelineError, TabLoadTimeout
from .tabs import Tab, TabManager
from .utils import is_http_url, origin_of, resolve_url, utc_now_iso

FORM_FOUND = "form_found"
NO_FORM = "no_form"
ERROR = "error"

STEP_OK = "success"
STEP_SKIPPED = "skipped"
STEP_TIMEOUT = "timeout"
STEP_ERROR = "error"


@dataclass(slots=True)
class AttemptRecord:
    index: int
    from_url: str
    to_url: str
    timestamp: str = field(default_factory=utc_now_iso)
    navigation: str = STEP_SKIPPED
    navigation_error: str | None = None
    load: str = STEP_SKIPPED
    load_error: str | None = None
    agent_ready: bool = False
    has_form: bool | None = None
    debug_info: dict[str, Any] | None = None
    error: str | None = None
    result: str = NO_FORM

    def summary(self) -> dict[str, Any]:
        debug = self.debug_info or {}
        return {
            "url": self.to_url,
            "result": self.result,
            "hasForm": self.has_form,
            "formCount": debug.get("formCount"),
            "inputCount": debug.get("inputCount"),
        }


@dataclass(slots=True)
class DiscoveryResult:
    form_url: str | None
    attempts: list[AttemptRecord]

    @property
    def found(self) -> bool:
        return self.form_url is not None

    def summary(self) -> str:
        return json.dumps([attempt.summary() for attempt in self.attempts], ensure_ascii=False)

    def timeline(self) -> str:
        return json.dumps([asdict(attempt) for attempt in self.attempts], ensure_ascii=False, indent=2, default=str)


def build_candidates(
    current_url: str,
    reported: Iterable[str],
    fallback_paths: Iterable[str] = (),
    same_origin_only: bool = True,
) -> list[str]:
    """Ranked, de-duplicated candidate pages with the current page first."""
    output = [current_url]
    seen = {current_url}
    origin = origin_of(current_url)
    fallback = [resolve_url(origin + "/", path) for path in fallback_paths]
    for raw in [*reported, *fallback]:
        if not raw or not raw.strip():
            continue
        url = resolve_url(current_url, raw)
        if not is_http_url(url):
            continue
        if same_origin_only and origin_of(url) != origin:
            continue
        if url in seen:
            continue
        seen.add(url)
        output.append(url)
    return output


class FormDiscovery:
    """Finds a page holding a contact form.

    The current page is checked first; after that the agent's ranked
    candidates (plus the conventional path catalog) are visited one by one
    until a form turns up. A candidate failing never ends the search.
    """

    def __init__(
        self,
        tabs: TabManager,
        agent: AgentChannel,
        logger: logging.Logger,
        fallback_paths: Iterable[str] = (),
        same_origin_only: bool = True,
    ) -> None:
        self.tabs = tabs
        self.agent = agent
        self.logger = logger
        self.fallback_paths = tuple(fallback_paths)
        self.same_origin_only = same_origin_only

    def run(
        self,
        tab: Tab,
        initial_url: str,
        on_attempt: Callable[[AttemptRecord], None] | None = None,
    ) -> DiscoveryResult:
        attempts: list[AttemptRecord] = []

        def finish(record: AttemptRecord) -> None:
            attempts.append(record)
            log_with_fields(
                self.logger,
                logging.INFO,
                "discovery_attempt",
                tab_id=tab.tab_id,
                index=record.index,
                url=record.to_url,
                result=record.result,
                error=record.error,
            )
            if on_attempt is not None:
                on_attempt(record)

        current = AttemptRecord(index=0, from_url=initial_url, to_url=initial_url, navigation=STEP_OK, load=STEP_OK)
        self._probe(tab, current)
        finish(current)
        if current.result == FORM_FOUND:
            return DiscoveryResult(form_url=initial_url, attempts=attempts)

        page_url = self.tabs.current_url(tab) or initial_url
        reported: list[str] = []
        try:
            response = self.agent.dispatch(tab, {"type": FIND_CONTACT_PAGE})
            reported = response.candidates
            if response.communication_failure:
                log_with_fields(self.logger, logging.WARNING, "candidate_search_failed", error=response.error)
        except AgentUnresponsive as exc:
            log_with_fields(self.logger, logging.WARNING, "candidate_search_failed", error=exc.describe())

        candidates = build_candidates(page_url, reported, self.fallback_paths, self.same_origin_only)
        if initial_url != page_url and initial_url in candidates:
            candidates.remove(initial_url)
        log_with_fields(
            self.logger,
            logging.INFO,
            "discovery_candidates",
            tab_id=tab.tab_id,
            count=len(candidates),
            first=candidates[1:6],
        )

        for index, candidate in enumerate(candidates[1:], start=1):
            record = AttemptRecord(index=index, from_url=self.tabs.current_url(tab) or page_url, to_url=candidate)
            try:
                self.tabs.navigate(tab, candidate)
                record.navigation = STEP_OK
                self.tabs.await_load(tab)
                record.load = STEP_OK
                self._probe(tab, record)
            except TabLoadTimeout as exc:
                record.load = STEP_TIMEOUT
                record.load_error = str(exc)
                record.error = exc.describe()
                record.result = ERROR
            except NavigationError as exc:
                if record.navigation == STEP_OK:
                    record.load = STEP_ERROR
                    record.load_error = str(exc)
                else:
                    record.navigation = STEP_ERROR
                    record.navigation_error = str(exc)
                record.error = exc.describe()
                record.result = ERROR
            finish(record)
            if record.result == FORM_FOUND:
                return DiscoveryResult(form_url=candidate, attempts=attempts)

        log_with_fields(self.logger, logging.INFO, "discovery_exhausted", tab_id=tab.tab_id, attempts=len(attempts))
        return DiscoveryResult(form_url=None, attempts=attempts)

    def _probe(self, tab: Tab, record: AttemptRecord) -> None:
        try:
            response: AgentResponse = self.agent.dispatch(tab, {"type": CHECK_FOR_FORM})
        except PipelineError as exc:
            record.agent_ready = False
            record.error = exc.describe()
            record.result = ERROR
            return
        record.agent_ready = True
        if response.communication_failure:
            record.error = response.error
            record.result = ERROR
            return
        record.has_form = response.has_form
        record.debug_info = response.debug_info
        record.result = FORM_FOUND if response.has_form else NO_FORM
