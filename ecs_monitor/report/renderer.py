"""Headless browser rendering for report charts and PDFs.

The compiler only talks to the narrow ``Renderer`` protocol so tests can
substitute a stub instead of launching Chromium.  ``PlaywrightRenderer`` is an
async context manager: the browser and the Playwright driver are released on
every exit path, including errors raised inside the ``async with`` block.
"""

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from types import TracebackType
from typing import Protocol

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ecs_monitor.errors import RenderingError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
CHROMIUM_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

# JS expression the report page sets once every chart has drawn
READY_EXPRESSION = "window.__chartsReady === true"


class Renderer(Protocol):
    async def load(self, html_path: Path) -> None: ...

    async def wait_ready(self) -> None: ...

    async def capture_region(self, selector: str, output_path: Path) -> None: ...

    async def capture_pdf(self, output_path: Path) -> None: ...

    async def close(self) -> None: ...


RendererFactory = Callable[[], AbstractAsyncContextManager[Renderer]]


class PlaywrightRenderer:
    """Renderer backed by one short-lived headless Chromium instance."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._timeout_ms = timeout_seconds * 1000
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._page: Page | None = None

    async def __aenter__(self) -> "PlaywrightRenderer":
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=True, args=CHROMIUM_ARGS)
            self._page = await self._browser.new_page(viewport={"width": 1000, "height": 800})
            self._page.set_default_timeout(self._timeout_ms)
        except PlaywrightError as exc:
            await self.close()
            raise RenderingError("launch", str(exc)) from exc
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _require_page(self) -> Page:
        if self._page is None:
            msg = "renderer used outside of its async context"
            raise RuntimeError(msg)
        return self._page

    async def load(self, html_path: Path) -> None:
        page = self._require_page()
        try:
            await page.goto(html_path.resolve().as_uri(), wait_until="networkidle")
        except PlaywrightError as exc:
            raise RenderingError("load", str(exc)) from exc

    async def wait_ready(self) -> None:
        page = self._require_page()
        try:
            await page.wait_for_function(READY_EXPRESSION)
        except PlaywrightError as exc:
            raise RenderingError("wait_ready", str(exc)) from exc

    async def capture_region(self, selector: str, output_path: Path) -> None:
        page = self._require_page()
        try:
            await page.locator(selector).screenshot(path=str(output_path))
        except PlaywrightError as exc:
            raise RenderingError(f"capture {selector}", str(exc)) from exc

    async def capture_pdf(self, output_path: Path) -> None:
        page = self._require_page()
        try:
            await page.emulate_media(media="screen")
            await page.pdf(path=str(output_path), format="A4", print_background=True)
        except PlaywrightError as exc:
            raise RenderingError("pdf", str(exc)) from exc

    async def close(self) -> None:
        """Release page, browser and driver. Safe to call more than once."""
        browser, playwright = self._browser, self._playwright
        self._page = None
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except PlaywrightError:
                logger.warning("Failed to close headless browser cleanly", exc_info=True)
        if playwright is not None:
            try:
                await playwright.stop()
            except PlaywrightError:
                logger.warning("Failed to stop Playwright driver cleanly", exc_info=True)


def playwright_renderer_factory(timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> RendererFactory:
    """Return a factory producing fresh PlaywrightRenderer contexts."""

    def _factory() -> AbstractAsyncContextManager[Renderer]:
        return PlaywrightRenderer(timeout_seconds=timeout_seconds)

    return _factory
