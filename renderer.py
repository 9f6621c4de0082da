from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from errors import RenderFailure


logger = logging.getLogger("page_cloner")

Emit = Callable[..., None]


@dataclass
class Snapshot:
    html: str
    final_url: str


class PlaywrightRenderer:
    """Render a page in headless Chromium and return its settled HTML."""

    def __init__(
        self,
        headless: bool = True,
        navigation_timeout: float = 60.0,
        viewport: Optional[Dict[str, int]] = None,
        user_agent: Optional[str] = None,
        settle_seconds: float = 2.0,
        scroll_pause: float = 0.5,
        max_scroll_iterations: int = 20,
        idle_timeout: float = 5.0,
    ) -> None:
        self.headless = headless
        self.navigation_timeout = navigation_timeout
        self.viewport = viewport or {"width": 1366, "height": 768}
        self.user_agent = user_agent
        self.settle_seconds = settle_seconds
        self.scroll_pause = scroll_pause
        self.max_scroll_iterations = max_scroll_iterations
        self.idle_timeout = idle_timeout

    def render(self, url: str, emit: Optional[Emit] = None) -> Snapshot:
        def _log(kind: str, message: str) -> None:
            if emit is not None:
                emit(kind, message)

        try:
            with sync_playwright() as playwright:
                _log("pipeline", "Launching browser...")
                browser = playwright.chromium.launch(
                    headless=self.headless,
                    args=["--no-sandbox", "--disable-setuid-sandbox"],
                )
                try:
                    context = browser.new_context(viewport=self.viewport, user_agent=self.user_agent)
                    page = context.new_page()
                    page.on("console", lambda msg: _log("console", f"[{msg.type}] {msg.text}"))
                    page.on("pageerror", lambda err: _log("console", f"[error] {err}"))
                    page.on(
                        "request",
                        lambda req: _log("network", f">> {req.method} {req.resource_type} {req.url[:100]}"),
                    )
                    page.on("response", lambda res: _log("network", f"<< {res.status} {res.url[:100]}"))

                    _log("pipeline", "Navigating to page...")
                    page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout * 1000)

                    _log("pipeline", "Waiting for initial content load...")
                    time.sleep(self.settle_seconds)

                    _log("pipeline", "Auto-scrolling to load lazy content...")
                    self._auto_scroll(page, _log)

                    _log("pipeline", "Waiting for network idle...")
                    try:
                        page.wait_for_load_state("networkidle", timeout=self.idle_timeout * 1000)
                    except PlaywrightTimeoutError:
                        _log("pipeline", "Network idle timeout - continuing anyway")

                    _log("pipeline", "Extracting rendered HTML...")
                    return Snapshot(html=page.content(), final_url=page.url)
                finally:
                    browser.close()
        except PlaywrightError as exc:
            logger.debug("Render of %s failed", url, exc_info=True)
            raise RenderFailure(str(exc).splitlines()[0] if str(exc) else "Browser error") from exc

    def _auto_scroll(self, page, log: Callable[[str, str], None]) -> None:
        previous = -1
        current = page.evaluate("() => document.body ? document.body.scrollHeight : 0")
        iterations = 0
        while current != previous and iterations < self.max_scroll_iterations:
            previous = current
            page.evaluate("() => window.scrollTo(0, document.body ? document.body.scrollHeight : 0)")
            time.sleep(self.scroll_pause)
            current = page.evaluate("() => document.body ? document.body.scrollHeight : 0")
            iterations += 1
            log("pipeline", f"Scroll iteration {iterations}: height={current}")
        page.evaluate("() => window.scrollTo(0, 0)")
