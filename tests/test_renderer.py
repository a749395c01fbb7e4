"""Tests for the Playwright-backed renderer using a mocked driver."""

from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError

from ecs_monitor.errors import RenderingError
from ecs_monitor.report.renderer import (
    CHROMIUM_ARGS,
    READY_EXPRESSION,
    PlaywrightRenderer,
    playwright_renderer_factory,
)


def _driver() -> dict[str, Any]:
    """Build a mocked playwright -> browser -> page chain."""
    screenshot = AsyncMock()
    locator = MagicMock()
    locator.screenshot = screenshot

    page = MagicMock()
    page.goto = AsyncMock()
    page.wait_for_function = AsyncMock()
    page.emulate_media = AsyncMock()
    page.pdf = AsyncMock()
    page.locator = MagicMock(return_value=locator)
    page.set_default_timeout = MagicMock()

    browser = MagicMock()
    browser.new_page = AsyncMock(return_value=page)
    browser.close = AsyncMock()

    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock()

    manager = MagicMock()
    manager.start = AsyncMock(return_value=playwright)

    return {"manager": manager, "playwright": playwright, "browser": browser, "page": page, "screenshot": screenshot}


@pytest.fixture
def driver() -> Iterator[dict[str, Any]]:
    mocks = _driver()
    with patch("ecs_monitor.report.renderer.async_playwright", return_value=mocks["manager"]):
        yield mocks


class TestLifecycle:
    async def test_launches_headless_chromium(self, driver: dict[str, Any]) -> None:
        async with PlaywrightRenderer(timeout_seconds=2.5):
            pass

        driver["playwright"].chromium.launch.assert_awaited_once_with(headless=True, args=CHROMIUM_ARGS)
        driver["page"].set_default_timeout.assert_called_once_with(2500.0)

    async def test_closes_browser_and_driver_on_exit(self, driver: dict[str, Any]) -> None:
        async with PlaywrightRenderer():
            pass

        driver["browser"].close.assert_awaited_once()
        driver["playwright"].stop.assert_awaited_once()

    async def test_closes_on_error_inside_block(self, driver: dict[str, Any]) -> None:
        with pytest.raises(ValueError, match="boom"):
            async with PlaywrightRenderer():
                raise ValueError("boom")

        driver["browser"].close.assert_awaited_once()
        driver["playwright"].stop.assert_awaited_once()

    async def test_launch_failure_is_rendering_error_and_stops_driver(self, driver: dict[str, Any]) -> None:
        driver["playwright"].chromium.launch.side_effect = PlaywrightError("Executable doesn't exist")

        with pytest.raises(RenderingError, match="launch"):
            async with PlaywrightRenderer():
                pass

        driver["playwright"].stop.assert_awaited_once()
        driver["browser"].close.assert_not_awaited()

    async def test_close_is_idempotent(self, driver: dict[str, Any]) -> None:
        renderer = PlaywrightRenderer()
        await renderer.__aenter__()

        await renderer.close()
        await renderer.close()

        driver["browser"].close.assert_awaited_once()

    async def test_close_failure_is_logged_not_raised(self, driver: dict[str, Any]) -> None:
        driver["browser"].close.side_effect = PlaywrightError("Target closed")

        async with PlaywrightRenderer():
            pass

        driver["playwright"].stop.assert_awaited_once()

    async def test_use_outside_context_raises(self) -> None:
        with pytest.raises(RuntimeError, match="outside of its async context"):
            await PlaywrightRenderer().wait_ready()

    async def test_factory_returns_fresh_renderers(self) -> None:
        factory = playwright_renderer_factory(timeout_seconds=1.0)
        assert factory() is not factory()


class TestSteps:
    async def test_load_uses_file_uri(self, driver: dict[str, Any], tmp_path: Path) -> None:
        html = tmp_path / "report.html"
        html.write_text("<html></html>")

        async with PlaywrightRenderer() as renderer:
            await renderer.load(html)

        driver["page"].goto.assert_awaited_once_with(html.resolve().as_uri(), wait_until="networkidle")

    async def test_wait_ready_polls_ready_flag(self, driver: dict[str, Any]) -> None:
        async with PlaywrightRenderer() as renderer:
            await renderer.wait_ready()

        driver["page"].wait_for_function.assert_awaited_once_with(READY_EXPRESSION)

    async def test_capture_region_screenshots_locator(self, driver: dict[str, Any], tmp_path: Path) -> None:
        async with PlaywrightRenderer() as renderer:
            await renderer.capture_region("#cpuChart", tmp_path / "cpu.png")

        driver["page"].locator.assert_called_once_with("#cpuChart")
        driver["screenshot"].assert_awaited_once_with(path=str(tmp_path / "cpu.png"))

    async def test_capture_pdf_prints_a4_with_background(self, driver: dict[str, Any], tmp_path: Path) -> None:
        async with PlaywrightRenderer() as renderer:
            await renderer.capture_pdf(tmp_path / "full-report.pdf")

        driver["page"].emulate_media.assert_awaited_once_with(media="screen")
        driver["page"].pdf.assert_awaited_once_with(
            path=str(tmp_path / "full-report.pdf"), format="A4", print_background=True
        )

    @pytest.mark.parametrize(
        ("attribute", "step"),
        [
            ("goto", "load"),
            ("wait_for_function", "wait_ready"),
            ("pdf", "pdf"),
        ],
    )
    async def test_playwright_errors_become_rendering_errors(
        self, driver: dict[str, Any], tmp_path: Path, attribute: str, step: str
    ) -> None:
        getattr(driver["page"], attribute).side_effect = PlaywrightError("Timeout 60000ms exceeded")

        async with PlaywrightRenderer() as renderer:
            with pytest.raises(RenderingError) as exc_info:
                if step == "load":
                    await renderer.load(tmp_path / "report.html")
                elif step == "wait_ready":
                    await renderer.wait_ready()
                else:
                    await renderer.capture_pdf(tmp_path / "full-report.pdf")

        assert exc_info.value.step == step
        assert "Timeout" in str(exc_info.value)

    async def test_capture_error_names_selector(self, driver: dict[str, Any], tmp_path: Path) -> None:
        driver["screenshot"].side_effect = PlaywrightError("Element is not visible")

        async with PlaywrightRenderer() as renderer:
            with pytest.raises(RenderingError) as exc_info:
                await renderer.capture_region("#memoryChart", tmp_path / "memory.png")

        assert exc_info.value.step == "capture #memoryChart"


# ---------------------------------------------------------------------------
# Real browser (opt-in)
# ---------------------------------------------------------------------------


@pytest.mark.e2e
class TestRealChromium:
    async def test_renders_page_to_png_and_pdf(self, tmp_path: Path) -> None:
        html = tmp_path / "report.html"
        html.write_text(
            '<html><body><div id="box" style="width:50px;height:50px;background:red"></div>'
            "<script>window.__chartsReady = true;</script></body></html>"
        )

        async with PlaywrightRenderer(timeout_seconds=30) as renderer:
            await renderer.load(html)
            await renderer.wait_ready()
            await renderer.capture_region("#box", tmp_path / "box.png")
            await renderer.capture_pdf(tmp_path / "out.pdf")

        assert (tmp_path / "box.png").read_bytes().startswith(b"\x89PNG")
        assert (tmp_path / "out.pdf").read_bytes().startswith(b"%PDF")
