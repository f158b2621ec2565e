"""Browser sessions and the valuation-site lookup flow (Playwright async API)."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from etl.antibot.fingerprint import create_stealth_context
from etl.antibot.retry import RateLimitedError, UpstreamHTTPError, UpstreamNotFoundError
from etl.config import ScraperConfig
from etl.models import ValuationData

LOGGER = logging.getLogger(__name__)

SEARCH_MODAL_BUTTON = '[data-testid="home-page-multi-intent-search-modal-button"]'
SEARCH_INPUT = "#multi-intent-search-modal-default-screen"
SUGGESTION_OPTION = ".mapOptionToListNode__OptionContainer-sc-lnbl9x-1"
VALUATION_SECTION = ".PropertyValuationSubBrick__PropertyValuationSubBrickContainer-sc-1uh1dob-0"
CONFIDENCE = '[data-testid="valuation-sub-brick-confidence"]'
PRICE_TEXT = '[data-testid="valuation-sub-brick-price-text"]'
ESTIMATE_RANGE = '[data-testid="valuation-sub-brick-estimate-range"]'
PRICE_PER_METER = ".kRRzuL"
LAST_UPDATED = ".ibzsLI"
RENTAL_PERIOD = ".PropertyValuationSubBrick__PriceSubtitleText-sc-1uh1dob-4"
RENTAL_MESSAGE = ".PropertyValuationSubBrick__EmptyEstimateMessage-sc-1uh1dob-11"

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]

# Valuation is the first sub-brick, rental estimate the second.
_EXTRACT_SCRIPT = f"""
() => {{
    const text = (root, selector) => {{
        const node = root ? root.querySelector(selector) : null;
        return node ? node.textContent.trim() : null;
    }};
    const sections = document.querySelectorAll('{VALUATION_SECTION}');
    const rental = sections[1] || null;
    return {{
        confidence: text(document, '{CONFIDENCE}'),
        estimatedValue: text(document, '{PRICE_TEXT}'),
        pricePerMeter: text(document, '{PRICE_PER_METER}'),
        priceRange: text(document, '{ESTIMATE_RANGE}'),
        lastUpdated: text(document, '{LAST_UPDATED}'),
        rental: {{
            confidence: text(rental, '{CONFIDENCE}'),
            value: text(rental, '{PRICE_TEXT}'),
            period: text(rental, '{RENTAL_PERIOD}'),
            message: text(rental, '{RENTAL_MESSAGE}'),
        }},
    }};
}}
"""


class PropertyNotFoundError(UpstreamNotFoundError):
    """The valuation site offered no suggestion for the address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"No property found for address: {address}")
        self.address = address


class BrowserSessionFactory:
    """Opens one isolated browser session per lookup attempt.

    With a websocket endpoint the session runs on a remote anti-detect browser
    (CDP); otherwise a local Chromium is launched with a stealth fingerprint.
    Every session is closed on exit, whatever the outcome of the attempt.
    """

    def __init__(
        self,
        ws_endpoint: Optional[str] = None,
        headless: bool = True,
        connect_timeout: float = 15.0,
    ) -> None:
        self.ws_endpoint = ws_endpoint
        self.headless = headless
        self.connect_timeout = connect_timeout

    @classmethod
    def from_config(cls, config: ScraperConfig) -> BrowserSessionFactory:
        return cls(ws_endpoint=config.ws_endpoint, headless=config.headless)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Page]:
        playwright = await async_playwright().start()
        browser: Optional[Browser] = None
        page: Optional[Page] = None
        try:
            browser = await asyncio.wait_for(self._open(playwright), self.connect_timeout)
            page = await self._first_page(browser)
            yield page
        finally:
            await self._close(playwright, browser, page)

    async def _open(self, playwright: Playwright) -> Browser:
        if self.ws_endpoint:
            LOGGER.debug("Connecting to remote browser")
            return await playwright.chromium.connect_over_cdp(self.ws_endpoint)
        return await playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)

    async def _first_page(self, browser: Browser) -> Page:
        if self.ws_endpoint:
            context = browser.contexts[0] if browser.contexts else await browser.new_context()
            return context.pages[0] if context.pages else await context.new_page()
        context = await create_stealth_context(browser)
        return await context.new_page()

    async def _close(
        self,
        playwright: Playwright,
        browser: Optional[Browser],
        page: Optional[Page],
    ) -> None:
        try:
            if self.ws_endpoint and page is not None and not page.is_closed():
                # lets the remote provider end the billed run right away
                cdp = await page.context.new_cdp_session(page)
                await cdp.send("Rebrowser.finishRun")
        except Exception as exc:
            LOGGER.debug("Remote run finish skipped: %s", exc)
        try:
            if browser is not None:
                await browser.close()
        except Exception as exc:
            LOGGER.warning("Failed to close browser session: %s", exc)
        finally:
            await playwright.stop()


class ValuationSearcher:
    """Search -> pick suggestion -> read the valuation bricks."""

    def __init__(
        self,
        site_url: str,
        navigation_timeout: float = 30.0,
        selector_timeout: float = 10.0,
        suggestion_timeout: float = 20.0,
        settle_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.site_url = site_url
        self.navigation_timeout = navigation_timeout
        self.selector_timeout = selector_timeout
        self.suggestion_timeout = suggestion_timeout
        self.settle_delay = settle_delay
        self._sleep = sleep

    async def lookup(self, page: Page, address: str) -> ValuationData:
        await self._open_home(page)

        await page.wait_for_selector(SEARCH_MODAL_BUTTON, timeout=self.selector_timeout * 1000)
        await page.click(SEARCH_MODAL_BUTTON)
        await page.wait_for_selector(SEARCH_INPUT, timeout=self.selector_timeout * 1000)
        await page.locator(SEARCH_INPUT).press_sequentially(address, delay=50)

        try:
            await page.wait_for_selector(
                SUGGESTION_OPTION,
                state="visible",
                timeout=self.suggestion_timeout * 1000,
            )
        except PlaywrightTimeoutError as exc:
            raise PropertyNotFoundError(address) from exc

        await self._sleep(self.settle_delay)
        await page.click(SUGGESTION_OPTION)
        await self._sleep(self.settle_delay)

        payload: Dict[str, Any] = await page.evaluate(_EXTRACT_SCRIPT)
        valuation = ValuationData.model_validate({**payload, "status": "found"})
        LOGGER.info(
            "Valuation for %s: %s (%s confidence)",
            address,
            valuation.estimated_value,
            valuation.confidence,
        )
        return valuation

    async def _open_home(self, page: Page) -> None:
        response = await page.goto(
            self.site_url,
            wait_until="networkidle",
            timeout=self.navigation_timeout * 1000,
        )
        if response is None or response.status < 400:
            return
        if response.status == 429:
            raise RateLimitedError(f"HTTP 429 from {self.site_url}")
        raise UpstreamHTTPError(response.status, f"HTTP {response.status} from {self.site_url}")
