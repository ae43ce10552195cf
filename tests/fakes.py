from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from formpilot.agent import CHECK_FOR_FORM, FILL_AND_SUBMIT_FORM, FIND_CONTACT_PAGE, PING
from formpilot.browser import TAB_COMPLETE, TAB_LOADING, BrowserError
from formpilot.config import AgentConfig, PipelineConfig, SchedulerConfig, TabConfig


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_formpilot")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def fast_tab_config() -> TabConfig:
    return TabConfig(load_timeout_seconds=0.2, settle_seconds=0, poll_interval_seconds=0.01)


def fast_agent_config(**overrides: Any) -> AgentConfig:
    values: dict[str, Any] = {
        "ping_attempts": 2,
        "ping_interval_seconds": 0,
        "ping_timeout_seconds": 1,
        "dispatch_retries": 2,
        "retry_delay_seconds": 0,
        "dispatch_timeout_seconds": 1,
    }
    values.update(overrides)
    return AgentConfig(**values)


def fast_scheduler_config(**overrides: Any) -> SchedulerConfig:
    values: dict[str, Any] = {
        "max_concurrent": 3,
        "tick_seconds": 0.05,
        "launch_stagger_seconds": 0,
        "refill_delay_seconds": 0,
        "lease_seconds": 60,
    }
    values.update(overrides)
    return SchedulerConfig(**values)


def fast_pipeline_config(submit_timeout_seconds: float = 5) -> PipelineConfig:
    return PipelineConfig(submit_timeout_seconds=submit_timeout_seconds)


class FakeBrowser:
    """In-memory browser whose pages are described by URL sets.

    ``forms`` lists URLs that hold a contact form, ``candidates`` maps a URL
    to what ``FIND_CONTACT_PAGE`` reports there and ``unreachable`` lists URLs
    that never finish loading.
    """

    def __init__(
        self,
        forms: set[str] | None = None,
        candidates: dict[str, list[str]] | None = None,
        unreachable: set[str] | None = None,
        submit_reply: dict[str, Any] | None = None,
    ) -> None:
        self.forms = set(forms or ())
        self.candidates = dict(candidates or {})
        self.unreachable = set(unreachable or ())
        self.submit_reply = submit_reply or {"success": True}
        self.submit_hook: Callable[[int, dict[str, Any]], dict[str, Any]] | None = None
        self.ready = True
        self.tabs: dict[int, str] = {}
        self.closed: list[int] = []
        self.messages: list[tuple[int, str]] = []
        self._next_id = 1
        self._lock = threading.Lock()

    def open_tab(self, url: str) -> int:
        with self._lock:
            tab_id = self._next_id
            self._next_id += 1
            self.tabs[tab_id] = url
        return tab_id

    def _require(self, tab_id: int) -> str:
        with self._lock:
            if tab_id not in self.tabs:
                raise BrowserError(f"No tab with id: {tab_id}")
            return self.tabs[tab_id]

    def tab_status(self, tab_id: int) -> str:
        return TAB_LOADING if self._require(tab_id) in self.unreachable else TAB_COMPLETE

    def tab_url(self, tab_id: int) -> str:
        return self._require(tab_id)

    def navigate(self, tab_id: int, url: str) -> None:
        self._require(tab_id)
        with self._lock:
            self.tabs[tab_id] = url

    def close_tab(self, tab_id: int) -> None:
        self._require(tab_id)
        with self._lock:
            del self.tabs[tab_id]
            self.closed.append(tab_id)

    def inject_agent(self, tab_id: int) -> None:
        self._require(tab_id)

    def open_tab_count(self) -> int:
        with self._lock:
            return len(self.tabs)

    def send_message(self, tab_id: int, message: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        url = self._require(tab_id)
        kind = message["type"]
        with self._lock:
            self.messages.append((tab_id, kind))
        if kind == PING:
            return {"ready": self.ready}
        if kind == CHECK_FOR_FORM:
            has_form = url in self.forms
            return {
                "success": True,
                "hasForm": has_form,
                "debugInfo": {"formCount": int(has_form), "inputCount": 5 if has_form else 0},
            }
        if kind == FIND_CONTACT_PAGE:
            return {"success": True, "candidates": list(self.candidates.get(url, []))}
        if kind == FILL_AND_SUBMIT_FORM:
            if self.submit_hook is not None:
                return self.submit_hook(tab_id, message)
            return dict(self.submit_reply)
        raise BrowserError(f"unknown message type: {kind}")


class SilentBrowser(FakeBrowser):
    """Never answers the listed message types; gives up only when a timeout is passed."""

    def __init__(self, silent: set[str], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.silent = set(silent)
        self.timeouts: list[tuple[str, float | None]] = []
        self.release = threading.Event()

    def send_message(self, tab_id: int, message: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        kind = message["type"]
        with self._lock:
            self.timeouts.append((kind, timeout))
        if kind not in self.silent:
            return super().send_message(tab_id, message, timeout)
        if timeout is None:
            self.release.wait(4)
            raise RuntimeError(f"{kind} was sent without a timeout")
        self.release.wait(timeout)
        raise BrowserError(f"browser call timed out after {timeout}s")
