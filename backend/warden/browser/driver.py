"""Browser effector boundary.

The health validator, the session replay code and the agent gate only ever
talk to a :class:`BrowserDriver`.  The driver is an explicitly owned resource:
whoever constructs it (the FastAPI app, the scheduler, a test) passes it in
and eventually calls :meth:`BrowserDriver.close_browser`.

Every probe acquires its own context + page through :meth:`acquire_page`,
which always releases both again, whatever the probe outcome.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import asynccontextmanager
from contextlib import contextmanager
from typing import Any
from typing import AsyncIterator
from typing import Dict
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from warden.config import get_settings
from warden.constants import DEFAULT_USER_AGENT
from warden.constants import DEFAULT_VIEWPORT

logger = logging.getLogger(__name__)


class BrowserError(Exception):
    """Any failure reported by the browser (navigation, selector, script)."""


class BrowserTimeoutError(BrowserError):
    """A navigation or selector wait exceeded its timeout."""


class BrowserDriver(abc.ABC):
    """Minimal set of browser operations the policy layer depends on."""

    # Lifecycle ----------------------------------------------------------

    @abc.abstractmethod
    async def new_context(self, *, user_agent: Optional[str] = None) -> Any:
        """Open an isolated context; *user_agent* replaces the default one."""

    @abc.abstractmethod
    async def new_page(self, context: Any) -> Any: ...

    @abc.abstractmethod
    async def close_page(self, page: Any) -> None: ...

    @abc.abstractmethod
    async def close_context(self, context: Any) -> None: ...

    @abc.abstractmethod
    async def close_browser(self) -> None: ...

    # Page state ---------------------------------------------------------

    @abc.abstractmethod
    async def set_user_agent(self, page: Any, user_agent: str) -> None:
        """Override the user agent of an open page, ``navigator.userAgent`` included."""

    @abc.abstractmethod
    async def set_cookies(self, page: Any, cookies: Sequence[Dict[str, Any]]) -> None: ...

    @abc.abstractmethod
    async def get_cookies(self, page: Any) -> List[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def add_init_script(self, page: Any, script: str) -> None:
        """Run *script* in every document of *page* before its own scripts."""

    @abc.abstractmethod
    async def evaluate_in_page(self, page: Any, script: str, arg: Any = None) -> Any: ...

    # Navigation & interaction -------------------------------------------

    @abc.abstractmethod
    async def goto(self, page: Any, url: str, *, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    async def wait_for_selector(self, page: Any, selector: str, *, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    async def wait_for_navigation(self, page: Any, *, timeout_ms: int) -> None: ...

    @abc.abstractmethod
    async def click(self, page: Any, selector: str) -> None: ...

    @abc.abstractmethod
    async def has_selector(self, page: Any, selector: str) -> bool:
        """Return True when any *visible* element matches *selector*."""

    @abc.abstractmethod
    async def download(self, page: Any, selector: str, *, timeout_ms: int) -> str:
        """Click *selector*, wait for the download and return its file name."""

    @abc.abstractmethod
    async def current_url(self, page: Any) -> str: ...

    @abc.abstractmethod
    async def page_title(self, page: Any) -> str: ...

    # Helpers ------------------------------------------------------------

    @asynccontextmanager
    async def acquire_page(self, *, user_agent: Optional[str] = None) -> AsyncIterator[Any]:
        """Yield a page in a fresh context and release both afterwards."""

        context = await self.new_context(user_agent=user_agent)
        page = None
        try:
            page = await self.new_page(context)
            yield page
        finally:
            if page is not None:
                try:
                    await self.close_page(page)
                except Exception as exc:  # noqa: BLE001 – release must not mask the probe result
                    logger.warning("Failed to close page: %s", exc)
            try:
                await self.close_context(context)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to close browser context: %s", exc)


# ---------------------------------------------------------------------------
# Playwright implementation
# ---------------------------------------------------------------------------

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except PlaywrightTimeoutError as exc:
        raise BrowserTimeoutError(f"{action} timed out: {exc.message}") from exc
    except PlaywrightError as exc:
        raise BrowserError(f"{action} failed: {exc.message}") from exc


class PlaywrightBrowserDriver(BrowserDriver):
    """Chromium via Playwright; the browser is launched on first use."""

    def __init__(self, *, headless: Optional[bool] = None, launch_args: Optional[List[str]] = None):
        self.headless = get_settings().browser_headless if headless is None else headless
        self.launch_args = list(launch_args or _LAUNCH_ARGS)
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is None:
                logger.info("Launching Chromium (headless=%s)", self.headless)
                with _translate_errors("browser launch"):
                    self._playwright = await async_playwright().start()
                    self._browser = await self._playwright.chromium.launch(
                        headless=self.headless,
                        args=self.launch_args,
                    )
        return self._browser

    async def new_context(self, *, user_agent: Optional[str] = None) -> Any:
        browser = await self._ensure_browser()
        with _translate_errors("new context"):
            return await browser.new_context(viewport=DEFAULT_VIEWPORT, user_agent=user_agent or DEFAULT_USER_AGENT)

    async def new_page(self, context: Any) -> Any:
        with _translate_errors("new page"):
            return await context.new_page()

    async def close_page(self, page: Any) -> None:
        with _translate_errors("close page"):
            await page.close()

    async def close_context(self, context: Any) -> None:
        with _translate_errors("close context"):
            await context.close()

    async def close_browser(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def set_user_agent(self, page: Any, user_agent: str) -> None:
        # Chromium only; covers request headers and navigator.userAgent
        with _translate_errors("set user agent"):
            cdp = await page.context.new_cdp_session(page)
            try:
                await cdp.send("Network.setUserAgentOverride", {"userAgent": user_agent})
            finally:
                await cdp.detach()

    async def set_cookies(self, page: Any, cookies: Sequence[Dict[str, Any]]) -> None:
        with _translate_errors("set cookies"):
            await page.context.add_cookies(list(cookies))

    async def get_cookies(self, page: Any) -> List[Dict[str, Any]]:
        with _translate_errors("read cookies"):
            return await page.context.cookies()

    async def add_init_script(self, page: Any, script: str) -> None:
        with _translate_errors("add init script"):
            await page.add_init_script(script=script)

    async def evaluate_in_page(self, page: Any, script: str, arg: Any = None) -> Any:
        with _translate_errors("evaluate"):
            return await page.evaluate(script, arg)

    async def goto(self, page: Any, url: str, *, timeout_ms: int) -> None:
        with _translate_errors(f"navigation to {url}"):
            await page.goto(url, wait_until="networkidle", timeout=timeout_ms)

    async def wait_for_selector(self, page: Any, selector: str, *, timeout_ms: int) -> None:
        with _translate_errors(f"waiting for selector {selector}"):
            await page.wait_for_selector(selector, timeout=timeout_ms)

    async def wait_for_navigation(self, page: Any, *, timeout_ms: int) -> None:
        # The triggering click has already run; wait for its load to settle
        with _translate_errors("waiting for navigation"):
            await page.wait_for_load_state("load", timeout=timeout_ms)
            await page.wait_for_load_state("networkidle", timeout=timeout_ms)

    async def click(self, page: Any, selector: str) -> None:
        with _translate_errors(f"click on {selector}"):
            await page.click(selector)

    async def has_selector(self, page: Any, selector: str) -> bool:
        with _translate_errors(f"query {selector}"):
            for handle in await page.query_selector_all(selector):
                if await handle.is_visible():
                    return True
            return False

    async def download(self, page: Any, selector: str, *, timeout_ms: int) -> str:
        with _translate_errors(f"download via {selector}"):
            async with page.expect_download(timeout=timeout_ms) as download_info:
                await page.click(selector)
            download = await download_info.value
            return download.suggested_filename

    async def current_url(self, page: Any) -> str:
        return page.url

    async def page_title(self, page: Any) -> str:
        with _translate_errors("read title"):
            return await page.title()


__all__ = [
    "BrowserDriver",
    "BrowserError",
    "BrowserTimeoutError",
    "PlaywrightBrowserDriver",
]
