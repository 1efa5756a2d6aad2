"""
Browser action execution for Agentic Workspace.

Provides the ``ActionExecutor`` contract the orchestrator drives and a
Playwright implementation of it.

Failures are reported as ``AutomationError``. A missing element means
the page no longer matches what the step expected (drift) and is
flagged with ``precondition_failed`` so the orchestrator replans instead
of retrying blindly; timeouts are plain retryable errors.
"""

import logging
from typing import Any, Optional, Protocol

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .errors import AutomationError
from .types import Observation, Step
from .utils import clean_text, format_selector, truncate_text

logger = logging.getLogger("agentic_workspace.executor")


class ActionExecutor(Protocol):
    """What the orchestrator needs from the browser boundary."""

    async def execute(self, step: Step) -> Observation:
        """Run one step; raise ``AutomationError`` on failure."""
        ...

    async def observe(self) -> dict[str, Any]:
        """Current page state (url, title, text); used before retries."""
        ...


class PlaywrightExecutor:
    """Executes browser steps via Playwright's async API.

    Args:
        page: Page to drive; if None, ``start()`` launches Chromium
        headless: Launch mode used by ``start()``
        default_timeout: Default timeout in milliseconds
    """

    def __init__(
        self,
        page: Optional[Page] = None,
        headless: bool = False,
        default_timeout: int = 10000,
    ):
        self.page = page
        self.headless = headless
        self.default_timeout = default_timeout
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def start(self) -> "PlaywrightExecutor":
        if self.page is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self.page = await self._browser.new_page()
            self.page.set_default_timeout(self.default_timeout)
        return self

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightExecutor":
        return await self.start()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def execute(self, step: Step) -> Observation:
        """Execute a browser step.

        Raises:
            AutomationError: On failure; ``precondition_failed`` marks drift
        """
        method_map = {
            "goto": self.goto,
            "click": self.click,
            "type": self.type_text,
            "press": self.press,
            "scroll": self.scroll,
            "wait_for": self.wait_for,
            "extract": self.extract,
            "submit": self.submit,
            "back": self.back,
            "forward": self.forward,
        }
        method = method_map.get(step.action)
        if method is None:
            raise AutomationError(f"Unknown action: {step.action}", precondition_failed=True)
        if self.page is None:
            raise AutomationError("Browser is not started")

        try:
            return await method(**step.args)
        except AutomationError:
            raise
        except PlaywrightTimeoutError as e:
            raise AutomationError(f"Timeout: {e}") from e
        except TypeError as e:
            # Bad arguments from the planner will not improve on retry
            raise AutomationError(f"Invalid arguments for {step.action}: {e}", precondition_failed=True) from e
        except Exception as e:
            raise AutomationError(f"Error: {type(e).__name__}: {e}") from e

    async def observe(self) -> dict[str, Any]:
        if self.page is None:
            return {"url": "", "title": "", "text": ""}
        try:
            text = await self.page.inner_text("body", timeout=3000)
        except PlaywrightError as e:
            logger.debug("Could not read page text: %s", e)
            text = ""
        try:
            title = await self.page.title()
        except PlaywrightError as e:
            # Closed page or crashed target
            raise AutomationError(f"Could not observe page: {e}") from e
        return {
            "url": self.page.url,
            "title": title,
            "text": truncate_text(clean_text(text), 4000),
        }

    async def _require(self, selector: str):
        """Locate an element or report drift."""
        locator = self.page.locator(selector)
        if await locator.count() == 0:
            raise AutomationError(
                f"Element not found: {selector}",
                precondition_failed=True,
                data={"selector": selector, "url": self.page.url},
            )
        return locator.first

    async def goto(self, url: str) -> Observation:
        # Ensure URL has protocol
        if not url.startswith(("http://", "https://", "file://")):
            url = "https://" + url
        await self.page.goto(url, wait_until="domcontentloaded")
        return Observation(
            success=True,
            message=f"Navigated to {url}",
            data={"title": await self.page.title()},
            url=self.page.url,
        )

    async def click(self, selector: str, text: str = "", timeout_ms: int = 10000) -> Observation:
        selector = format_selector(selector)
        element = await self._require(selector)
        await element.click(timeout=timeout_ms)
        try:
            await self.page.wait_for_load_state("domcontentloaded", timeout=5000)
        except PlaywrightTimeoutError:
            logger.debug("No load event after clicking %s", selector)
        return Observation(success=True, message=f"Clicked: {selector}", url=self.page.url)

    async def type_text(self, selector: str, text: str, clear_first: bool = True) -> Observation:
        selector = format_selector(selector)
        element = await self._require(selector)
        if clear_first:
            await element.fill(text, timeout=5000)
        else:
            await element.type(text, timeout=5000)
        return Observation(
            success=True,
            message=f"Typed into: {selector}",
            data={"chars_typed": len(text)},
            url=self.page.url,
        )

    async def press(self, key: str) -> Observation:
        await self.page.keyboard.press(key)
        if key in ("Enter", "Return"):
            try:
                await self.page.wait_for_load_state("domcontentloaded", timeout=5000)
            except PlaywrightTimeoutError:
                logger.debug("Page did not navigate after %s", key)
        return Observation(success=True, message=f"Pressed: {key}", url=self.page.url)

    async def scroll(self, amount: int = 800, direction: str = "down") -> Observation:
        delta = -abs(int(amount)) if direction == "up" else int(amount)
        await self.page.evaluate("(dy) => window.scrollBy(0, dy)", delta)
        return Observation(
            success=True,
            message=f"Scrolled {'down' if delta > 0 else 'up'} by {abs(delta)}px",
            url=self.page.url,
        )

    async def wait_for(self, selector: Optional[str] = None, timeout_ms: int = 10000) -> Observation:
        if selector:
            selector = format_selector(selector)
            await self.page.wait_for_selector(selector, timeout=timeout_ms)
            return Observation(success=True, message=f"Found element: {selector}", url=self.page.url)
        await self.page.wait_for_timeout(timeout_ms)
        return Observation(success=True, message=f"Waited {timeout_ms}ms", url=self.page.url)

    async def extract(self, selector: str, attribute: str = "innerText") -> Observation:
        selector = format_selector(selector)
        element = await self._require(selector)
        if attribute == "innerText":
            value = await element.inner_text()
        elif attribute == "innerHTML":
            value = await element.inner_html()
        else:
            value = await element.get_attribute(attribute) or ""
        return Observation(
            success=True,
            message=f"Extracted {attribute} from {selector}: {truncate_text(clean_text(value), 200)}",
            data={"value": value},
            url=self.page.url,
        )

    async def submit(self, selector: str = "form") -> Observation:
        selector = format_selector(selector)
        form = await self._require(selector)
        await form.evaluate("(f) => f.requestSubmit ? f.requestSubmit() : f.submit()")
        try:
            await self.page.wait_for_load_state("domcontentloaded", timeout=5000)
        except PlaywrightTimeoutError:
            logger.debug("No load event after submitting %s", selector)
        return Observation(success=True, message=f"Submitted: {selector}", url=self.page.url)

    async def back(self) -> Observation:
        await self.page.go_back()
        return Observation(success=True, message="Navigated back", url=self.page.url)

    async def forward(self) -> Observation:
        await self.page.go_forward()
        return Observation(success=True, message="Navigated forward", url=self.page.url)
