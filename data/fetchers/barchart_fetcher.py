"""
Active-contract futures quote for KC (Arabica) and RM (Robusta) via Barchart.

Barchart renders its futures-prices table from a JSON API call made by
the page itself, and it serves automation-looking clients a different
page.  So instead of calling the API directly we drive a real headless
Chrome, let the page load, and read the JSON response off the browser's
network log.

Flow for one extraction:
    1. Start headless Chrome (container-safe flags, performance logging on)
    2. Override user agent + Accept-Language to look like desktop Chrome
    3. Navigate and wait for the page to load (PAGE_LOAD_TIMEOUT)
    4. Read the <h1> heading — it names the active contract, e.g. "(RMH26)"
    5. Wait up to QUOTE_WAIT_TIMEOUT for the quotes API response body
    6. Return the row whose symbol matches the active contract

The browser is always shut down, whatever happens in between.

Key concepts:
    - Chrome's "performance" log exposes DevTools Network.* events
    - Network.getResponseBody fetches a response body by request id
    - WebDriverWait(...).until(callable) is a bounded "wait for X" loop
"""

import base64
import json
import logging
import re

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from config import (
    BARCHART_URLS, COMMODITIES, QUOTE_API_PATH,
    BROWSER_USER_AGENT, BROWSER_PLATFORM, BROWSER_ACCEPT_LANGUAGE, BROWSER_FLAGS,
    CHROME_BINARY, CHROMEDRIVER_PATH,
    PAGE_LOAD_TIMEOUT, QUOTE_WAIT_TIMEOUT, QUOTE_POLL_INTERVAL,
)

logger = logging.getLogger(__name__)


class QuoteShapeError(ValueError):
    """The page did not look the way we expect (e.g. no active symbol in the heading)."""


def _build_driver():
    """Start a headless Chrome configured for scraping inside a container."""
    options = webdriver.ChromeOptions()
    options.add_argument("--headless=new")
    for flag in BROWSER_FLAGS:
        options.add_argument(flag)
    options.add_argument(f"--user-agent={BROWSER_USER_AGENT}")
    options.add_argument("--lang=en-US")
    # Network.* DevTools events end up in the performance log
    options.set_capability("goog:loggingPrefs", {"performance": "ALL"})
    if CHROME_BINARY:
        options.binary_location = CHROME_BINARY

    driver_path = CHROMEDRIVER_PATH or ChromeDriverManager().install()
    driver = webdriver.Chrome(service=Service(driver_path), options=options)
    return driver


def _disguise(driver):
    """Make outgoing requests look like a desktop browser."""
    driver.execute_cdp_cmd("Network.enable", {})
    driver.execute_cdp_cmd("Network.setUserAgentOverride", {
        "userAgent": BROWSER_USER_AGENT,
        "acceptLanguage": BROWSER_ACCEPT_LANGUAGE,
        "platform": BROWSER_PLATFORM,
    })
    driver.execute_cdp_cmd("Network.setExtraHTTPHeaders", {
        "headers": {"Accept-Language": BROWSER_ACCEPT_LANGUAGE},
    })


class QuoteResponseWatcher:
    """
    Watches the browser's network log for the quotes API response.

    Only the first response whose URL contains ``api_path`` is used.
    An instance is passed straight to ``WebDriverWait.until``: each poll
    drains new log entries and returns True once that response has been
    read (successfully or not).  The parsed JSON ends up in ``payload``.
    """

    def __init__(self, api_path: str = QUOTE_API_PATH):
        self.api_path = api_path
        self.request_id = None
        self.payload = None
        self.done = False

    def _drain(self, driver):
        for entry in driver.get_log("performance"):
            if self.request_id is not None:
                continue
            try:
                message = json.loads(entry["message"])["message"]
            except (KeyError, TypeError, json.JSONDecodeError):
                continue
            if message.get("method") != "Network.responseReceived":
                continue
            params = message.get("params", {})
            url = params.get("response", {}).get("url", "")
            if self.api_path in url:
                self.request_id = params.get("requestId")
                logger.debug("Quote response seen: %s (request %s)", url, self.request_id)

    def __call__(self, driver) -> bool:
        if self.done:
            return True

        self._drain(driver)
        if self.request_id is None:
            return False

        try:
            result = driver.execute_cdp_cmd(
                "Network.getResponseBody", {"requestId": self.request_id},
            )
        except WebDriverException:
            # Headers arrived but the body isn't buffered yet
            return False

        self.done = True
        try:
            body = result["body"]
            if result.get("base64Encoded"):
                body = base64.b64decode(body).decode("utf-8")
            self.payload = json.loads(body)
        except (KeyError, TypeError, ValueError):
            logger.error("Failed to parse JSON response from the quotes API")
        return True


def parse_active_symbol(heading: str, symbol_root: str) -> str:
    """
    Pull the active contract symbol out of the page heading.

    >>> parse_active_symbol("Robusta Coffee Mar '26 (RMH26)", "RM")
    'RMH26'

    Raises
    ------
    QuoteShapeError
        If the heading has no "(<root>...)" token.
    """
    match = re.search(rf"\(({re.escape(symbol_root)}[A-Z0-9]+)\)", heading or "")
    if not match:
        raise QuoteShapeError(
            f'Could not extract active symbol from header text: "{heading}"'
        )
    return match.group(1)


def select_quote(payload: dict, symbol: str) -> dict | None:
    """Return the first row of the quotes payload for ``symbol``, or None."""
    rows = payload.get("data") if isinstance(payload, dict) else None
    rows = rows or []
    for row in rows:
        if row.get("symbol") == symbol:
            return row

    logger.error("No quote row for %s among %d rows", symbol, len(rows))
    return None


def extract_quote(
    target_url: str,
    symbol_root: str,
    driver_factory=_build_driver,
    page_timeout: float = PAGE_LOAD_TIMEOUT,
    quote_timeout: float = QUOTE_WAIT_TIMEOUT,
    poll_interval: float = QUOTE_POLL_INTERVAL,
) -> dict | None:
    """
    Load a Barchart futures page and return the active contract's quote row.

    Parameters
    ----------
    target_url : str
        Futures-prices page, e.g. config.BARCHART_URLS["ROBUSTA"].
    symbol_root : str
        Two-letter exchange code the active symbol starts with ("KC", "RM").
    driver_factory : callable
        Returns a started WebDriver.  Swapped out in tests.

    Returns
    -------
    dict or None
        The raw quote row (``{"symbol": ..., "raw": {...}}``), or None when
        no quote JSON arrived in time or no row matches the active symbol.

    Raises
    ------
    QuoteShapeError
        If the heading doesn't name an active contract.
    selenium.common.exceptions.TimeoutException
        If the page doesn't finish loading (or show its heading) within
        ``page_timeout``.
    """
    driver = driver_factory()
    try:
        _disguise(driver)
        watcher = QuoteResponseWatcher()

        # Bounds driver.get(); the <h1> wait below has its own timeout
        driver.set_page_load_timeout(page_timeout)
        logger.info("Loading %s ...", target_url)
        driver.get(target_url)

        heading = WebDriverWait(driver, page_timeout).until(
            EC.presence_of_element_located((By.TAG_NAME, "h1"))
        ).text
        active_symbol = parse_active_symbol(heading, symbol_root)
        logger.info("Active contract on top: %s", active_symbol)

        try:
            WebDriverWait(driver, quote_timeout, poll_frequency=poll_interval).until(watcher)
        except TimeoutException:
            logger.warning("Quote response did not arrive within %ss", quote_timeout)

        if watcher.payload is None:
            logger.error("Failed to fetch data from Barchart: no valid data received")
            return None

        return select_quote(watcher.payload, active_symbol)

    finally:
        driver.quit()


def fetch_active_quote(commodity: str, **kwargs) -> dict | None:
    """Extract the active contract quote for "ARABICA" or "ROBUSTA"."""
    return extract_quote(
        BARCHART_URLS[commodity],
        COMMODITIES[commodity]["symbol_root"],
        **kwargs,
    )


# ── Quick self-test ─────────────────────────────────────────────────
if __name__ == "__main__":
    from config import setup_logging
    setup_logging(log_dir=None)

    for name in BARCHART_URLS:
        quote = fetch_active_quote(name)
        if quote is None:
            logger.info("%s: no quote", name)
        else:
            raw = quote.get("raw", {})
            logger.info("%s: %s last = %s (%s)", name, quote.get("symbol"),
                        raw.get("dailyLastPrice"), raw.get("dailyDate1dAgo"))
