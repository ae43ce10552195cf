from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from .app_logging import log_with_fields
from .browser import TAB_COMPLETE, Browser, BrowserError
from .config import TabConfig
from .errors import NavigationError, TabLoadTimeout


@dataclass(slots=True)
class Tab:
    tab_id: int
    opened_url: str
    closed: bool = False


class TabManager:
    """One background tab per job, always closed when the job ends."""

    def __init__(self, browser: Browser, config: TabConfig, logger: logging.Logger) -> None:
        self.browser = browser
        self.config = config
        self.logger = logger

    def open(self, url: str) -> Tab:
        try:
            tab_id = self.browser.open_tab(url)
        except BrowserError as exc:
            raise NavigationError(f"could not open tab for {url}: {exc}") from exc
        log_with_fields(self.logger, logging.INFO, "tab_opened", tab_id=tab_id, url=url)
        return Tab(tab_id=tab_id, opened_url=url)

    def await_load(self, tab: Tab, timeout: float | None = None) -> None:
        limit = self.config.load_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + limit
        while True:
            try:
                status = self.browser.tab_status(tab.tab_id)
            except BrowserError as exc:
                raise NavigationError(f"tab {tab.tab_id} is gone: {exc}") from exc
            if status == TAB_COMPLETE:
                break
            if time.monotonic() >= deadline:
                log_with_fields(self.logger, logging.WARNING, "tab_load_timeout", tab_id=tab.tab_id, timeout=limit)
                raise TabLoadTimeout(f"Tab load timeout ({limit:g}s)")
            time.sleep(self.config.poll_interval_seconds)
        # Let client-side rendering settle before the agent looks at the DOM.
        if self.config.settle_seconds > 0:
            time.sleep(self.config.settle_seconds)

    def navigate(self, tab: Tab, url: str) -> None:
        try:
            self.browser.navigate(tab.tab_id, url)
        except BrowserError as exc:
            raise NavigationError(f"navigation to {url} failed: {exc}") from exc

    def current_url(self, tab: Tab) -> str | None:
        try:
            return self.browser.tab_url(tab.tab_id)
        except BrowserError:
            return None

    def close(self, tab: Tab) -> None:
        if tab.closed:
            return
        tab.closed = True
        try:
            self.browser.close_tab(tab.tab_id)
            log_with_fields(self.logger, logging.INFO, "tab_closed", tab_id=tab.tab_id)
        except BrowserError as exc:
            log_with_fields(self.logger, logging.INFO, "tab_close_ignored", tab_id=tab.tab_id, error=str(exc))

    @contextmanager
    def session(self, url: str) -> Iterator[Tab]:
        tab = self.open(url)
        try:
            yield tab
        finally:
            self.close(tab)
