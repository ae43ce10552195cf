from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Coroutine, Protocol, TypeVar

from playwright.async_api import Browser as PlaywrightChromium
from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from .app_logging import log_with_fields
from .config import AgentConfig, BrowserConfig

T = TypeVar("T")

TAB_LOADING = "loading"
TAB_COMPLETE = "complete"

LAUNCH_ARGS = [
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
]


class BrowserError(RuntimeError):
    pass


class BrowserTimeout(BrowserError):
    pass


class Browser(Protocol):
    def open_tab(self, url: str) -> int: ...

    def tab_status(self, tab_id: int) -> str: ...

    def tab_url(self, tab_id: int) -> str: ...

    def navigate(self, tab_id: int, url: str) -> None: ...

    def close_tab(self, tab_id: int) -> None: ...

    def inject_agent(self, tab_id: int) -> None: ...

    def send_message(self, tab_id: int, message: dict[str, Any], timeout: float | None = None) -> dict[str, Any]: ...


class PlaywrightBrowser:
    """Chromium driven through Playwright's async API on a dedicated thread.

    Playwright objects are bound to the event loop that created them, so the
    loop lives on one daemon thread and every public method marshals its work
    there with ``run_coroutine_threadsafe``. Pipelines on other threads block
    only on their own futures, which lets several tabs make progress at once.
    """

    def __init__(self, config: BrowserConfig, agent_config: AgentConfig, logger: logging.Logger) -> None:
        self.config = config
        self.agent_config = agent_config
        self.logger = logger
        self._agent_source: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._playwright: Playwright | None = None
        self._chromium: PlaywrightChromium | None = None
        self._context: BrowserContext | None = None
        self._pages: dict[int, Page] = {}
        self._ids = itertools.count(1)

    def start(self) -> None:
        if self._thread is not None:
            return
        script_path = self.agent_config.script_path
        if script_path is None:
            raise BrowserError("`agent.script_path` must point at the automation agent bundle")
        self._agent_source = script_path.read_text(encoding="utf-8")
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, args=(self._loop,), name="BrowserLoop", daemon=True)
        self._thread.start()
        self._call(self._launch())
        log_with_fields(self.logger, logging.INFO, "browser_started", headless=self.config.headless)

    def stop(self) -> None:
        if self._loop is None or self._thread is None:
            return
        try:
            self._call(self._shutdown(), timeout=30)
        except BrowserError as exc:
            log_with_fields(self.logger, logging.WARNING, "browser_stop_failed", error=str(exc))
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._loop.close()
        self._thread = None
        self._loop = None
        log_with_fields(self.logger, logging.INFO, "browser_stopped")

    def _run_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        loop.run_forever()

    def _call(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        if self._loop is None:
            coro.close()
            raise BrowserError("browser is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise BrowserTimeout(f"browser call timed out after {timeout}s") from exc
        except PlaywrightError as exc:
            raise BrowserError(str(exc)) from exc

    async def _launch(self) -> None:
        self._playwright = await async_playwright().start()
        self._chromium = await self._playwright.chromium.launch(headless=self.config.headless, args=LAUNCH_ARGS)
        self._context = await self._chromium.new_context(user_agent=self.config.user_agent)
        self._context.set_default_navigation_timeout(self.config.navigation_timeout_seconds * 1000)

    async def _shutdown(self) -> None:
        for page in list(self._pages.values()):
            if not page.is_closed():
                await page.close()
        self._pages.clear()
        if self._context is not None:
            await self._context.close()
        if self._chromium is not None:
            await self._chromium.close()
        if self._playwright is not None:
            await self._playwright.stop()

    def _page(self, tab_id: int) -> Page:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            raise BrowserError(f"tab {tab_id} is closed")
        return page

    async def _open(self, url: str) -> int:
        if self._context is None:
            raise BrowserError("browser is not running")
        page = await self._context.new_page()
        tab_id = next(self._ids)
        try:
            await page.goto(url, wait_until="commit")
        except PlaywrightError:
            await page.close()
            raise
        self._pages[tab_id] = page
        return tab_id

    async def _status(self, tab_id: int) -> str:
        try:
            state = await self._page(tab_id).evaluate("() => document.readyState")
        except PlaywrightError:
            # The document is being replaced mid-navigation.
            return TAB_LOADING
        return TAB_COMPLETE if state == "complete" else TAB_LOADING

    async def _url(self, tab_id: int) -> str:
        return self._page(tab_id).url

    async def _navigate(self, tab_id: int, url: str) -> None:
        await self._page(tab_id).goto(url, wait_until="commit")

    async def _close(self, tab_id: int) -> None:
        page = self._pages.pop(tab_id, None)
        if page is not None and not page.is_closed():
            await page.close()

    async def _inject(self, tab_id: int) -> None:
        await self._page(tab_id).evaluate(self._agent_source)

    async def _send(self, tab_id: int, message: dict[str, Any]) -> dict[str, Any]:
        result = await self._page(tab_id).evaluate(
            "([name, message]) => window[name].handle(message)",
            [self.agent_config.global_name, message],
        )
        if not isinstance(result, dict):
            raise BrowserError(f"agent returned a non-object reply to {message.get('type')}")
        return result

    def open_tab(self, url: str) -> int:
        return self._call(self._open(url), timeout=self.config.navigation_timeout_seconds + 5)

    def tab_status(self, tab_id: int) -> str:
        try:
            return self._call(self._status(tab_id), timeout=self.config.status_timeout_seconds)
        except BrowserTimeout:
            # The page's main thread is busy; keep polling until the load deadline.
            return TAB_LOADING

    def tab_url(self, tab_id: int) -> str:
        return self._call(self._url(tab_id), timeout=30)

    def navigate(self, tab_id: int, url: str) -> None:
        self._call(self._navigate(tab_id, url), timeout=self.config.navigation_timeout_seconds + 5)

    def close_tab(self, tab_id: int) -> None:
        self._call(self._close(tab_id), timeout=30)

    def inject_agent(self, tab_id: int) -> None:
        self._call(self._inject(tab_id), timeout=30)

    def send_message(self, tab_id: int, message: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        return self._call(self._send(tab_id, message), timeout=timeout)
