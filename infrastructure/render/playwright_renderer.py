"""Headless Chromium renderer built on Playwright.

The browser is launched lazily on first use and shared across jobs; every
render gets its own context so cookies and storage never leak between
destinations. Any failure is reported as RenderError, which the workflow
treats as a partial-capability run rather than a failed job.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from errors import RenderError
from infrastructure.render.protocol import RenderedPage
from shared.logging import get_logger

log = get_logger(__name__)

_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
]

# Rendered text beyond this is irrelevant for scoring
MAX_TEXT_CHARS = 50_000


class PlaywrightRenderer:
    def __init__(self, *, take_screenshot: bool = True) -> None:
        self.take_screenshot = take_screenshot
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _get_browser(self) -> Browser:
        if self._browser is None or not self._browser.is_connected():
            async with self._lock:
                if self._browser is None or not self._browser.is_connected():
                    if self._playwright is None:
                        self._playwright = await async_playwright().start()
                    self._browser = await self._playwright.chromium.launch(
                        headless=True, args=_BROWSER_ARGS
                    )
                    log.info("renderer_browser_launched")
        return self._browser

    async def render(self, url: str, timeout_seconds: float) -> RenderedPage:
        try:
            browser = await self._get_browser()
        except PlaywrightError as e:
            raise RenderError(f"browser unavailable: {e}") from e

        context = None
        try:
            context = await browser.new_context(java_script_enabled=True)
            page = await context.new_page()
            await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=int(timeout_seconds * 1000),
            )
            title = await page.title()
            text = await page.inner_text("body")
            screenshot_sha256 = None
            if self.take_screenshot:
                png = await page.screenshot(full_page=False)
                screenshot_sha256 = hashlib.sha256(png).hexdigest()
            return RenderedPage(
                final_url=page.url,
                title=title,
                text=text[:MAX_TEXT_CHARS],
                screenshot_sha256=screenshot_sha256,
            )
        except PlaywrightTimeoutError as e:
            raise RenderError(f"render timed out after {timeout_seconds}s") from e
        except PlaywrightError as e:
            raise RenderError(str(e)) from e
        finally:
            if context is not None:
                await self._close_context(context)

    async def _close_context(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except PlaywrightError as e:
            # Browser already gone; the context died with it
            log.warning("renderer_context_close_failed", error=str(e))

    async def aclose(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
